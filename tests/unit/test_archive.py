"""
Unit tests for archive production and the stream fan-out.

Tests cover:
- File-staged archives: layout, inline digest, no partial leftovers
- Cancellation of the worker thread
- Streamed archives reaching several consumers byte-identically
- Abort propagation between producer and consumers
"""

import asyncio
import io
import tarfile
import threading

import pytest
import zstandard

from chainops.ckb_snapshot.archive import ArchiveProducer, StreamFanout
from chainops.ckb_snapshot.attest import StreamDigest, sha256_bytes, sha256_file
from chainops.ckb_snapshot.errors import ArchiveError


def extract_names(data: bytes) -> list:
    """List member names of a tar.zst blob."""
    reader = zstandard.ZstdDecompressor().stream_reader(io.BytesIO(data))
    with tarfile.open(fileobj=reader, mode="r|") as tar:
        return [member.name for member in tar]


async def collect(chunks) -> bytes:
    buffer = bytearray()
    async for chunk in chunks:
        buffer.extend(chunk)
    return bytes(buffer)


class TestFileArchive:
    """Tests for file-staged archives."""

    @pytest.mark.asyncio
    async def test_archive_layout_and_digest(self, data_dir, tmp_path):
        """The archive holds one top-level dir and its inline digest is exact."""
        dest = tmp_path / "out" / "snap.tar.zst"
        read_complete = []

        result = await ArchiveProducer(level=1, threads=1).create_file(
            data_dir, dest, on_read_complete=lambda: read_complete.append(True)
        )

        assert dest.is_file()
        assert result.path == str(dest)
        assert result.sha256 == sha256_file(dest)
        assert result.size_bytes == dest.stat().st_size
        assert result.files == 6
        assert read_complete == [True]

        names = extract_names(dest.read_bytes())
        assert all(name == "db" or name.startswith("db/") for name in names)
        assert "db/CURRENT" in names
        assert "db/sst/000002.sst" in names

    @pytest.mark.asyncio
    async def test_no_partial_left_behind(self, data_dir, tmp_path):
        dest = tmp_path / "snap.tar.zst"

        await ArchiveProducer(level=1).create_file(data_dir, dest)

        assert not (tmp_path / "snap.tar.zst.partial").exists()

    @pytest.mark.asyncio
    async def test_missing_source(self, tmp_path):
        """A missing data directory fails without creating the archive."""
        dest = tmp_path / "snap.tar.zst"

        with pytest.raises(ArchiveError):
            await ArchiveProducer().create_file(tmp_path / "nope", dest)

        assert not dest.exists()

    @pytest.mark.asyncio
    async def test_overwrites_same_day_archive(self, data_dir, tmp_path):
        """A rerun with the same name replaces the earlier archive."""
        dest = tmp_path / "snap.tar.zst"
        dest.write_bytes(b"stale")

        result = await ArchiveProducer(level=1).create_file(data_dir, dest)

        assert dest.read_bytes() != b"stale"
        assert result.sha256 == sha256_file(dest)

    def test_cancel_event_leaves_nothing(self, data_dir, tmp_path):
        """A set cancel event stops the worker before the final rename."""
        dest = tmp_path / "snap.tar.zst"
        cancel = threading.Event()
        cancel.set()
        read_complete = []

        with pytest.raises(ArchiveError, match="cancelled"):
            ArchiveProducer(level=1).write_file(
                data_dir, dest, on_read_complete=lambda: read_complete.append(True), cancel=cancel
            )

        assert not dest.exists()
        assert not (tmp_path / "snap.tar.zst.partial").exists()
        assert read_complete == []


class TestStreamFanout:
    """Tests for StreamFanout."""

    @pytest.mark.asyncio
    async def test_every_consumer_sees_every_byte(self):
        fanout = StreamFanout(consumers=2, max_chunks=2)
        first = asyncio.create_task(collect(fanout.reader(0)))
        second = asyncio.create_task(collect(fanout.reader(1)))

        def produce():
            for i in range(20):
                fanout.write(bytes([i]) * 1000)
            fanout.close()

        await asyncio.get_running_loop().run_in_executor(None, produce)
        a, b = await asyncio.gather(first, second)

        assert a == b
        assert len(a) == 20_000
        assert fanout.bytes_written == 20_000

    @pytest.mark.asyncio
    async def test_consumer_failure_aborts_producer(self):
        """A failing consumer stops the producer and the other consumer."""
        fanout = StreamFanout(consumers=2, max_chunks=2)

        async def failing_consumer(chunks):
            async for _ in chunks:
                raise RuntimeError("upload refused")

        good = asyncio.create_task(collect(fanout.reader(0)))
        bad = asyncio.create_task(fanout.guard(failing_consumer(fanout.reader(1))))

        def produce():
            for _ in range(100):
                fanout.write(b"x" * 1000)
            fanout.close()

        with pytest.raises(ArchiveError):
            await asyncio.get_running_loop().run_in_executor(None, produce)
        with pytest.raises(RuntimeError):
            await bad
        with pytest.raises(ArchiveError):
            await good

        assert fanout.aborted
        assert isinstance(fanout.error, RuntimeError)

    @pytest.mark.asyncio
    async def test_rejects_tiny_buffer(self):
        with pytest.raises(ValueError):
            StreamFanout(consumers=2, max_chunks=1)


class TestStreamArchive:
    """Tests for streamed archives."""

    @pytest.mark.asyncio
    async def test_stream_digest_matches_bytes(self, data_dir):
        """The digest consumer agrees with an independent hash of the stream."""
        fanout = StreamFanout(consumers=2, max_chunks=4)
        digest = StreamDigest()
        digest_task = asyncio.create_task(digest.consume(fanout.reader(0)))
        bytes_task = asyncio.create_task(collect(fanout.reader(1)))
        read_complete = []

        result = await ArchiveProducer(level=1, chunk_bytes=8192).stream(
            data_dir, fanout, on_read_complete=lambda: read_complete.append(True)
        )
        sha, data = await asyncio.gather(digest_task, bytes_task)

        assert sha == sha256_bytes(data)
        assert result.size_bytes == len(data) == digest.size_bytes
        assert read_complete == [True]
        assert "db/MANIFEST-000042" in extract_names(data)

    @pytest.mark.asyncio
    async def test_stream_missing_source_aborts_consumers(self, tmp_path):
        fanout = StreamFanout(consumers=1, max_chunks=2)
        consumer = asyncio.create_task(collect(fanout.reader(0)))

        with pytest.raises(ArchiveError):
            await ArchiveProducer().stream(tmp_path / "nope", fanout)
        with pytest.raises(ArchiveError):
            await consumer
