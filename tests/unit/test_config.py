"""
Unit tests for configuration loading and validation.

Tests cover:
- Defaults and environment parsing
- R2 endpoint derivation
- Validation of inconsistent settings
- CLI overrides
"""

from pathlib import Path

import pytest

from chainops.ckb_snapshot.config import (
    ArchiveConfig,
    NodeConfig,
    PublishConfig,
    S3Config,
    SigningBackend,
    SigningConfig,
    SnapshotConfig,
)


class TestDefaults:
    """Tests for default values."""

    def test_defaults_match_reference_host(self):
        """Defaults describe the reference Orange Pi deployment."""
        config = SnapshotConfig()

        assert config.node.rpc_url == "http://localhost:8114"
        assert config.node.service_name == "ckb"
        assert config.node.network == "mainnet"
        assert config.archive.zstd_level == 3
        assert config.archive.compression_label == "zstd-3"
        assert config.retention.max_local == 3
        assert config.publish.upload is False
        assert config.dry_run is False

    def test_lock_path_defaults_inside_snapshot_dir(self):
        """Without LOCK_FILE the lock lives in the snapshot directory."""
        config = SnapshotConfig(archive=ArchiveConfig(snapshot_dir="/srv/snapshots"))

        assert config.lock_path == Path("/srv/snapshots/.snapshot.lock")

    def test_url_for_joins_base_url(self):
        """Public URLs join the base URL and the filename with one slash."""
        publish = PublishConfig(public_base_url="https://snapshots.example.org/")

        assert publish.url_for("latest.json") == "https://snapshots.example.org/latest.json"


class TestFromEnv:
    """Tests for environment parsing."""

    def test_reads_environment(self, monkeypatch, tmp_path):
        """Environment variables populate every section."""
        monkeypatch.setenv("CKB_RPC", "http://10.0.0.5:8114")
        monkeypatch.setenv("CKB_DATA_DIR", str(tmp_path))
        monkeypatch.setenv("CKB_NETWORK", "testnet")
        monkeypatch.setenv("ZSTD_LEVEL", "9")
        monkeypatch.setenv("MAX_SNAPSHOTS", "5")
        monkeypatch.setenv("UPLOAD", "true")
        monkeypatch.setenv("S3_BUCKET", "ckb-test")

        config = SnapshotConfig.from_env()

        assert config.node.rpc_url == "http://10.0.0.5:8114"
        assert config.node.network == "testnet"
        assert config.archive.zstd_level == 9
        assert config.retention.max_local == 5
        assert config.retention.max_remote == 5
        assert config.publish.upload is True
        assert config.s3.bucket == "ckb-test"

    def test_r2_endpoint_derived_from_account(self, monkeypatch):
        """R2_ACCOUNT_ID yields the Cloudflare R2 endpoint."""
        monkeypatch.delenv("S3_ENDPOINT", raising=False)
        monkeypatch.setenv("R2_ACCOUNT_ID", "abc123")

        s3 = S3Config.from_env()

        assert s3.endpoint_url == "https://abc123.r2.cloudflarestorage.com"
        assert s3.region == "auto"

    def test_explicit_endpoint_wins(self, monkeypatch):
        """S3_ENDPOINT takes precedence over R2_ACCOUNT_ID."""
        monkeypatch.setenv("S3_ENDPOINT", "http://minio:9000")
        monkeypatch.setenv("R2_ACCOUNT_ID", "abc123")

        assert S3Config.from_env().endpoint_url == "http://minio:9000"

    def test_invalid_signing_backend(self, monkeypatch):
        """Unknown signing backends are rejected."""
        monkeypatch.setenv("SIGNING_BACKEND", "rsa")

        with pytest.raises(ValueError, match="SIGNING_BACKEND"):
            SigningConfig.from_env()


class TestValidation:
    """Tests for SnapshotConfig.validate."""

    def test_zstd_level_out_of_range(self):
        config = SnapshotConfig(archive=ArchiveConfig(zstd_level=23))

        with pytest.raises(ValueError, match="ZSTD_LEVEL"):
            config.validate()

    def test_streaming_requires_upload(self):
        """Streaming has nowhere to go without remote storage."""
        config = SnapshotConfig(archive=ArchiveConfig(streaming=True))

        with pytest.raises(ValueError, match="SNAPSHOT_STREAMING"):
            config.validate()

    def test_ed25519_requires_key_file(self):
        config = SnapshotConfig(signing=SigningConfig(backend=SigningBackend.ED25519))

        with pytest.raises(ValueError, match="SIGNING_KEY_FILE"):
            config.validate()

    def test_fanout_buffer_minimum(self):
        config = SnapshotConfig(archive=ArchiveConfig(buffer_chunks=1))

        with pytest.raises(ValueError, match="STREAM_BUFFER_CHUNKS"):
            config.validate()

    @pytest.mark.parametrize("network", ["Mainnet", "testnet.v2", "main net", ""])
    def test_network_outside_stem_grammar(self, network):
        """Names retention could not parse back are rejected up front."""
        config = SnapshotConfig(node=NodeConfig(network=network))

        with pytest.raises(ValueError, match="CKB_NETWORK"):
            config.validate()

    @pytest.mark.parametrize("network", ["mainnet", "testnet", "dev_chain-2"])
    def test_parseable_networks_accepted(self, network):
        SnapshotConfig(node=NodeConfig(network=network)).validate()


class TestOverrides:
    """Tests for CLI flag overrides."""

    def test_overrides_replace_fields(self):
        """Flags override the environment values."""
        config = SnapshotConfig().with_overrides(upload=True, dry_run=True, prune_remote=True)

        assert config.publish.upload is True
        assert config.dry_run is True
        assert config.retention.prune_remote is True

    def test_none_keeps_existing_values(self):
        """Unset flags leave the configuration untouched."""
        base = SnapshotConfig(publish=PublishConfig(upload=True))

        config = base.with_overrides(upload=None, dry_run=None)

        assert config.publish.upload is True
        assert config.dry_run is False

    def test_overrides_are_validated(self):
        """An override producing an invalid combination fails."""
        with pytest.raises(ValueError):
            SnapshotConfig().with_overrides(streaming=True)
