"""
Archive producer: tar + zstd of the node database directory.

The archive is a single zstd frame over a POSIX tar stream whose only
top-level entry is the data directory's basename, so

    tar --use-compress-program=zstd -xf <archive> -C ~/.ckb/data/

recreates the original layout.

Two modes:
- File-staged: written to <dest>.partial, then renamed to <dest>.
  The SHA-256 digest is computed inline while writing.
- Streaming: compressed bytes go into a StreamFanout; nothing is
  materialized on local disk.

Invariants:
    - A failed attempt never leaves a file under the final archive name
    - No resumable or partial archives; every run starts fresh
    - read_complete fires once every source file has been read, which is
      when the node no longer needs to stay down
    - Cancelling create_file or stream returns only after the worker
      thread has stopped reading the source directory

How to change safely:
    - Keep the arcname layout; consumers extract into ~/.ckb/data/
    - Test extraction with the system tar + zstd after format changes
"""

from __future__ import annotations

import asyncio
import functools
import logging
import os
import tarfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO, Callable, Optional

import zstandard

from ..attest.digest import StreamDigest
from ..config import ArchiveConfig
from ..errors import ArchiveError
from .fanout import StreamFanout

logger = logging.getLogger(__name__)

ReadCompleteCallback = Callable[[], None]


@dataclass
class ArchiveResult:
    """Result of producing an archive.

    Attributes:
        size_bytes: Compressed size
        sha256: Hex digest of the compressed bytes (file mode only)
        path: Final archive path (file mode only)
        files: Number of regular files archived
    """

    size_bytes: int
    sha256: str = ""
    path: Optional[str] = None
    files: int = 0


class _HashingWriter:
    """File wrapper that digests everything written through it."""

    def __init__(self, fileobj: BinaryIO) -> None:
        self._fileobj = fileobj
        self.digest = StreamDigest()

    def write(self, data: bytes) -> int:
        self.digest.update(data)
        return self._fileobj.write(data)

    def flush(self) -> None:
        self._fileobj.flush()


class _CancellableSink:
    """Sink wrapper that stops the worker thread once cancel is set."""

    def __init__(self, sink: Any, cancel: threading.Event) -> None:
        self._sink = sink
        self._cancel = cancel

    def write(self, data: bytes) -> int:
        if self._cancel.is_set():
            raise ArchiveError("Archive cancelled")
        return self._sink.write(data)

    def flush(self) -> None:
        self._sink.flush()


def _check_cancel(cancel: Optional[threading.Event]) -> None:
    if cancel is not None and cancel.is_set():
        raise ArchiveError("Archive cancelled")


class ArchiveProducer:
    """Produces tar.zst archives of a directory.

    Attributes:
        level: zstd compression level
        threads: zstd worker threads (0 = all cores)
        chunk_bytes: Output chunk size handed to the sink

    Example:
        >>> producer = ArchiveProducer.from_config(config.archive)
        >>> result = await producer.create_file(data_dir, "/snapshots/x.tar.zst")
    """

    def __init__(self, level: int = 3, threads: int = 0, chunk_bytes: int = 1024 * 1024) -> None:
        self.level = level
        self.threads = threads
        self.chunk_bytes = chunk_bytes

    @classmethod
    def from_config(cls, config: ArchiveConfig) -> ArchiveProducer:
        return cls(
            level=config.zstd_level,
            threads=config.zstd_threads,
            chunk_bytes=config.chunk_bytes,
        )

    def _compressor(self) -> zstandard.ZstdCompressor:
        # zstd -T0 semantics: 0 means one worker per core.
        threads = -1 if self.threads == 0 else self.threads
        return zstandard.ZstdCompressor(level=self.level, threads=threads)

    @staticmethod
    def _check_source(source_dir: Path) -> None:
        if not source_dir.is_dir():
            raise ArchiveError(f"Source directory not found: {source_dir}", path=str(source_dir))

    def _write_tar(
        self,
        source_dir: Path,
        sink: Any,
        on_read_complete: Optional[ReadCompleteCallback],
        cancel: Optional[threading.Event] = None,
    ) -> int:
        """Write tar.zst of source_dir into sink; returns the file count."""
        files = 0

        def _count(info: tarfile.TarInfo) -> tarfile.TarInfo:
            nonlocal files
            _check_cancel(cancel)
            if info.isfile():
                files += 1
            return info

        if cancel is not None:
            sink = _CancellableSink(sink, cancel)
        compressor = self._compressor()
        with compressor.stream_writer(sink, write_size=self.chunk_bytes, closefd=False) as zwriter:
            with tarfile.open(fileobj=zwriter, mode="w|", format=tarfile.PAX_FORMAT) as tar:
                tar.add(str(source_dir), arcname=source_dir.name, recursive=True, filter=_count)
                _check_cancel(cancel)
                if on_read_complete is not None:
                    on_read_complete()
        return files

    async def _run_worker(
        self,
        func: Callable[..., Any],
        *args: Any,
        on_cancel: Optional[Callable[[BaseException], None]] = None,
    ) -> Any:
        """Run func(*args, cancel=event) in the default executor.

        If the awaiting task is cancelled or interrupted, the event is set
        and this waits for the worker thread to stop before re-raising, so
        the caller never resumes while the source directory is being read.
        A result produced despite the cancel is discarded.
        """
        loop = asyncio.get_running_loop()
        cancel = threading.Event()
        future = loop.run_in_executor(None, functools.partial(func, *args, cancel=cancel))
        try:
            return await asyncio.shield(future)
        except BaseException as e:
            if not future.done():
                cancel.set()
                if on_cancel is not None:
                    on_cancel(e)
                logger.warning(
                    f"Archive interrupted by {type(e).__name__}; waiting for worker to stop"
                )
                while not future.done():
                    try:
                        await asyncio.wait({future})
                    except asyncio.CancelledError:
                        continue
            if not future.cancelled() and future.exception() is None:
                self._discard(future.result())
            raise

    @staticmethod
    def _discard(result: Any) -> None:
        if isinstance(result, ArchiveResult) and result.path:
            Path(result.path).unlink(missing_ok=True)
            logger.warning(f"Removed archive finished after cancel: {result.path}")

    def write_file(
        self,
        source_dir: str | Path,
        dest_path: str | Path,
        on_read_complete: Optional[ReadCompleteCallback] = None,
        cancel: Optional[threading.Event] = None,
    ) -> ArchiveResult:
        """Write the archive to dest_path (blocking).

        Raises:
            ArchiveError: If reading, compressing or writing fails, or cancel is set
        """
        source_dir = Path(source_dir)
        dest_path = Path(dest_path)
        self._check_source(source_dir)
        partial = dest_path.with_name(dest_path.name + ".partial")
        dest_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            with open(partial, "wb") as f:
                writer = _HashingWriter(f)
                files = self._write_tar(source_dir, writer, on_read_complete, cancel)
                f.flush()
                os.fsync(f.fileno())
            _check_cancel(cancel)
            os.replace(partial, dest_path)
        except (OSError, tarfile.TarError, zstandard.ZstdError) as e:
            partial.unlink(missing_ok=True)
            raise ArchiveError(f"Failed to archive {source_dir}: {e}", path=str(dest_path))
        except BaseException:
            partial.unlink(missing_ok=True)
            raise

        logger.info(
            "Archive written",
            extra={
                "path": str(dest_path),
                "size_bytes": writer.digest.size_bytes,
                "files": files,
            },
        )
        return ArchiveResult(
            size_bytes=writer.digest.size_bytes,
            sha256=writer.digest.hexdigest(),
            path=str(dest_path),
            files=files,
        )

    async def create_file(
        self,
        source_dir: str | Path,
        dest_path: str | Path,
        on_read_complete: Optional[ReadCompleteCallback] = None,
    ) -> ArchiveResult:
        """Async wrapper running write_file in the default executor."""
        return await self._run_worker(self.write_file, source_dir, dest_path, on_read_complete)

    def _stream_blocking(
        self,
        source_dir: Path,
        fanout: StreamFanout,
        on_read_complete: Optional[ReadCompleteCallback],
        cancel: Optional[threading.Event] = None,
    ) -> int:
        files = self._write_tar(source_dir, fanout, on_read_complete, cancel)
        fanout.close()
        return files

    async def stream(
        self,
        source_dir: str | Path,
        fanout: StreamFanout,
        on_read_complete: Optional[ReadCompleteCallback] = None,
    ) -> ArchiveResult:
        """Stream the archive into fanout without touching local disk.

        The fan-out is aborted on failure so that consumers stop waiting.

        Raises:
            ArchiveError: If production fails or a consumer aborted the stream
        """
        source_dir = Path(source_dir)
        try:
            self._check_source(source_dir)
            files = await self._run_worker(
                self._stream_blocking, source_dir, fanout, on_read_complete,
                on_cancel=fanout.abort,
            )
        except ArchiveError as e:
            fanout.abort(e)
            raise
        except (OSError, tarfile.TarError, zstandard.ZstdError) as e:
            error = ArchiveError(f"Failed to stream {source_dir}: {e}", path=str(source_dir))
            fanout.abort(error)
            raise error
        except BaseException as e:
            fanout.abort(e)
            raise

        logger.info(
            "Archive streamed",
            extra={"source": str(source_dir), "size_bytes": fanout.bytes_written, "files": files},
        )
        return ArchiveResult(size_bytes=fanout.bytes_written, files=files)
