"""
SHA-256 digests and sha256sum-compatible checksum files.

Checksum file format (one line, two spaces, trailing newline):

    <64 hex chars>  <archive filename>

so that `sha256sum -c <file>` works next to the archive.
"""

from __future__ import annotations

import hashlib
import re
from pathlib import Path
from typing import AsyncIterable, Iterable

from ..errors import ChecksumMismatchError

_CHUNK = 1024 * 1024
_LINE_RE = re.compile(r"^(?P<digest>[0-9a-fA-F]{64}) [ *](?P<name>.+)$")


class StreamDigest:
    """Incremental SHA-256 over a byte stream, also counting bytes."""

    def __init__(self) -> None:
        self._hash = hashlib.sha256()
        self.size_bytes = 0

    def update(self, chunk: bytes) -> None:
        self._hash.update(chunk)
        self.size_bytes += len(chunk)

    def hexdigest(self) -> str:
        return self._hash.hexdigest()

    async def consume(self, chunks: AsyncIterable[bytes]) -> str:
        """Drain an async byte stream and return its digest."""
        async for chunk in chunks:
            self.update(chunk)
        return self.hexdigest()


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def sha256_stream(chunks: Iterable[bytes]) -> str:
    digest = StreamDigest()
    for chunk in chunks:
        digest.update(chunk)
    return digest.hexdigest()


def sha256_file(path: str | Path) -> str:
    """Compute SHA-256 hex digest of a file."""
    sha256 = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK), b""):
            sha256.update(chunk)
    return sha256.hexdigest()


def format_checksum_line(digest: str, filename: str) -> str:
    return f"{digest}  {filename}\n"


def write_checksum_file(path: str | Path, digest: str, filename: str) -> Path:
    """Write a sha256sum-style checksum file for `filename`."""
    path = Path(path)
    path.write_text(format_checksum_line(digest, filename), encoding="utf-8")
    return path


def parse_checksum_line(text: str) -> tuple[str, str]:
    """Parse the first line of a checksum file.

    Returns:
        (lowercase hex digest, filename)

    Raises:
        ValueError: If the line is not in sha256sum format
    """
    line = text.strip().splitlines()[0] if text.strip() else ""
    match = _LINE_RE.match(line)
    if not match:
        raise ValueError(f"Not a sha256sum line: {line!r}")
    return match.group("digest").lower(), match.group("name")


def read_checksum_file(path: str | Path) -> tuple[str, str]:
    return parse_checksum_line(Path(path).read_text(encoding="utf-8"))


def verify_file_checksum(archive_path: str | Path, checksum_path: str | Path) -> str:
    """Recompute the archive digest and compare it with the checksum file.

    Returns:
        The verified digest

    Raises:
        ChecksumMismatchError: If the digests differ
        ValueError: If the checksum file is malformed
    """
    expected, _ = read_checksum_file(checksum_path)
    actual = sha256_file(archive_path)
    if actual != expected:
        raise ChecksumMismatchError(
            f"Checksum mismatch for {Path(archive_path).name}",
            expected=expected,
            actual=actual,
        )
    return actual
