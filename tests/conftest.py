"""
Shared fixtures for the ckb-snapshot test suite.
"""

import os
from pathlib import Path

import nacl.signing
import pytest

from chainops.ckb_snapshot.config import (
    ArchiveConfig,
    NodeConfig,
    PublishConfig,
    RetentionConfig,
    SigningBackend,
    SigningConfig,
    SnapshotConfig,
)


@pytest.fixture
def data_dir(tmp_path) -> Path:
    """A small stand-in for the node's RocksDB directory."""
    db = tmp_path / "ckb" / "data" / "db"
    (db / "sst").mkdir(parents=True)
    (db / "CURRENT").write_text("MANIFEST-000042\n")
    (db / "MANIFEST-000042").write_bytes(os.urandom(4096))
    (db / "OPTIONS-000007").write_text("[Version]\n  rocksdb_version=8.1.1\n")
    for i in range(3):
        (db / "sst" / f"00000{i}.sst").write_bytes(os.urandom(64 * 1024) + b"\0" * 64 * 1024)
    return db


@pytest.fixture
def signing_key() -> nacl.signing.SigningKey:
    return nacl.signing.SigningKey.generate()


@pytest.fixture
def key_file(tmp_path, signing_key) -> Path:
    path = tmp_path / "signing.key"
    path.write_text(signing_key.encode().hex() + "\n")
    return path


@pytest.fixture
def make_config(tmp_path, data_dir, key_file):
    """Factory for SnapshotConfig rooted in tmp_path."""

    def _make(upload=False, streaming=False, dry_run=False, max_local=3, max_remote=3,
              prune_remote=False) -> SnapshotConfig:
        config = SnapshotConfig(
            node=NodeConfig(data_dir=str(data_dir), quiesce_seconds=0, use_sudo=False),
            archive=ArchiveConfig(
                snapshot_dir=str(tmp_path / "snapshots"),
                zstd_level=1,
                zstd_threads=1,
                streaming=streaming,
                chunk_bytes=16 * 1024,
                buffer_chunks=4,
            ),
            signing=SigningConfig(backend=SigningBackend.ED25519, key_file=str(key_file)),
            publish=PublishConfig(upload=upload, public_base_url="https://snapshots.example.org"),
            retention=RetentionConfig(
                max_local=max_local, max_remote=max_remote, prune_remote=prune_remote
            ),
            dry_run=dry_run,
            lock_file=str(tmp_path / "run.lock"),
        )
        config.validate()
        return config

    return _make


@pytest.fixture
def config(make_config) -> SnapshotConfig:
    return make_config()


@pytest.fixture
def upload_config(make_config) -> SnapshotConfig:
    return make_config(upload=True)

