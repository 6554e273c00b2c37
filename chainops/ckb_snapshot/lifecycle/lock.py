"""
Run-level exclusive lock.

Two overlapping runs would stop the node twice and interleave archive
writes, so the whole lifecycle holds an advisory flock on a lock file.
The lock is taken non-blocking: a second invocation fails immediately
instead of queueing behind the first.

Invariants:
    - At most one holder per lock file on a host
    - The lock is released when the process exits, even on a crash
"""

from __future__ import annotations

import fcntl
import logging
import os
from pathlib import Path
from typing import IO, Optional

from ..errors import RunLockedError

logger = logging.getLogger(__name__)


class RunLock:
    """Exclusive advisory lock around a snapshot run.

    Example:
        >>> with RunLock("/home/orangepi/snapshots/.snapshot.lock"):
        ...     await controller.run()
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._file: Optional[IO[str]] = None

    @property
    def held(self) -> bool:
        return self._file is not None

    def acquire(self) -> None:
        """Take the lock.

        Raises:
            RunLockedError: If another process holds it
        """
        if self._file is not None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        f = open(self.path, "a+")
        try:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            f.seek(0)
            owner = f.read().strip()
            f.close()
            raise RunLockedError(
                f"Another snapshot run holds {self.path}"
                + (f" (pid {owner})" if owner else ""),
                lock_file=str(self.path),
            )
        f.seek(0)
        f.truncate()
        f.write(str(os.getpid()))
        f.flush()
        self._file = f
        logger.debug("Run lock acquired", extra={"lock_file": str(self.path)})

    def release(self) -> None:
        if self._file is None:
            return
        try:
            self._file.seek(0)
            self._file.truncate()
            fcntl.flock(self._file.fileno(), fcntl.LOCK_UN)
        finally:
            self._file.close()
            self._file = None
        logger.debug("Run lock released", extra={"lock_file": str(self.path)})

    def __enter__(self) -> RunLock:
        self.acquire()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()
