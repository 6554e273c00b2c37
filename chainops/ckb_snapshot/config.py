"""
Configuration management for the snapshot pipeline.

All configuration is done via environment variables, optionally overridden
by CLI flags. This module provides typed, immutable configuration classes
built once at startup and passed into every component; pipeline code never
reads the environment itself.

Invariants:
    - All settings have defaults matching the reference Orange Pi host
    - Configuration objects are frozen after construction
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that keep existing hosts working
    - Document new variables in the section docstrings below
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path

from .models import network_round_trips

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


class SigningBackend(Enum):
    """Supported detached-signature tools."""

    GPG = "gpg"
    ED25519 = "ed25519"


@dataclass(frozen=True)
class NodeConfig:
    """CKB node configuration.

    Attributes:
        rpc_url: JSON-RPC endpoint of the node
        rpc_timeout_seconds: Timeout for a single RPC call
        service_name: systemd unit controlling the node
        data_dir: RocksDB directory to archive
        network: Network identifier written into filenames and metadata
        quiesce_seconds: Delay after stop before the open-handle check
        use_sudo: Prefix systemctl with sudo
    """

    rpc_url: str = "http://localhost:8114"
    rpc_timeout_seconds: float = 10.0
    service_name: str = "ckb"
    data_dir: str = "/home/orangepi/.ckb/data/db"
    network: str = "mainnet"
    quiesce_seconds: float = 3.0
    use_sudo: bool = True

    @classmethod
    def from_env(cls) -> NodeConfig:
        """Load configuration from environment variables."""
        return cls(
            rpc_url=os.getenv("CKB_RPC", "http://localhost:8114"),
            rpc_timeout_seconds=float(os.getenv("CKB_RPC_TIMEOUT", "10")),
            service_name=os.getenv("CKB_SERVICE", "ckb"),
            data_dir=os.getenv("CKB_DATA_DIR", "/home/orangepi/.ckb/data/db"),
            network=os.getenv("CKB_NETWORK", "mainnet"),
            quiesce_seconds=float(os.getenv("CKB_QUIESCE_SECONDS", "3")),
            use_sudo=_env_bool("CKB_USE_SUDO", "true"),
        )


@dataclass(frozen=True)
class ArchiveConfig:
    """Archive production configuration.

    Attributes:
        snapshot_dir: Local directory for staged archives and sidecar files
        zstd_level: Compression level (1 = fastest, 22 = smallest)
        zstd_threads: Compression worker threads (0 = all cores)
        streaming: Stream the archive straight to storage instead of staging it
        chunk_bytes: Chunk size flowing through the stream fan-out
        buffer_chunks: Per-consumer buffer depth of the fan-out
    """

    snapshot_dir: str = "/home/orangepi/snapshots"
    zstd_level: int = 3
    zstd_threads: int = 0
    streaming: bool = False
    chunk_bytes: int = 1024 * 1024
    buffer_chunks: int = 8

    @property
    def compression_label(self) -> str:
        return f"zstd-{self.zstd_level}"

    @classmethod
    def from_env(cls) -> ArchiveConfig:
        """Load configuration from environment variables."""
        return cls(
            snapshot_dir=os.getenv("SNAPSHOT_DIR", "/home/orangepi/snapshots"),
            zstd_level=int(os.getenv("ZSTD_LEVEL", "3")),
            zstd_threads=int(os.getenv("ZSTD_THREADS", "0")),
            streaming=_env_bool("SNAPSHOT_STREAMING", "false"),
            chunk_bytes=int(os.getenv("STREAM_CHUNK_BYTES", str(1024 * 1024))),
            buffer_chunks=int(os.getenv("STREAM_BUFFER_CHUNKS", "8")),
        )


@dataclass(frozen=True)
class SigningConfig:
    """Signature configuration.

    Attributes:
        backend: Signature tool to use
        gpg_key: GPG key id or email; empty uses gpg's default identity
        gpg_binary: gpg executable
        gpg_home: Optional GNUPGHOME override
        key_file: Ed25519 private seed (hex) for the ed25519 backend
        public_key: Ed25519 public key (hex) used for verification
    """

    backend: SigningBackend = SigningBackend.GPG
    gpg_key: str = ""
    gpg_binary: str = "gpg"
    gpg_home: str | None = None
    key_file: str | None = None
    public_key: str | None = None

    @classmethod
    def from_env(cls) -> SigningConfig:
        """Load configuration from environment variables."""
        backend_str = os.getenv("SIGNING_BACKEND", "gpg").lower()
        try:
            backend = SigningBackend(backend_str)
        except ValueError:
            raise ValueError(
                f"Invalid SIGNING_BACKEND '{backend_str}'. Must be one of: gpg, ed25519"
            )
        return cls(
            backend=backend,
            gpg_key=os.getenv("GPG_KEY", ""),
            gpg_binary=os.getenv("GPG_BINARY", "gpg"),
            gpg_home=os.getenv("GPG_HOME"),
            key_file=os.getenv("SIGNING_KEY_FILE"),
            public_key=os.getenv("SIGNING_PUBLIC_KEY"),
        )


@dataclass(frozen=True)
class S3Config:
    """S3-compatible object storage configuration (AWS S3, Cloudflare R2, MinIO).

    Attributes:
        bucket: Bucket name
        region: Region name ("auto" for R2)
        endpoint_url: Custom endpoint URL
        prefix: Key prefix inside the bucket
        access_key_id: Access key ID (optional, uses the credential chain)
        secret_access_key: Secret access key (optional)
        part_size_bytes: Multipart upload part size
    """

    bucket: str = "ckb-snapshots"
    region: str = "auto"
    endpoint_url: str | None = None
    prefix: str = ""
    access_key_id: str | None = None
    secret_access_key: str | None = None
    part_size_bytes: int = 64 * 1024 * 1024

    @classmethod
    def from_env(cls) -> S3Config:
        """Load configuration from environment variables."""
        endpoint = os.getenv("S3_ENDPOINT")
        account_id = os.getenv("R2_ACCOUNT_ID")
        if not endpoint and account_id:
            endpoint = f"https://{account_id}.r2.cloudflarestorage.com"
        return cls(
            bucket=os.getenv("S3_BUCKET", "ckb-snapshots"),
            region=os.getenv("S3_REGION", "auto"),
            endpoint_url=endpoint,
            prefix=os.getenv("S3_PREFIX", ""),
            access_key_id=os.getenv("AWS_ACCESS_KEY_ID"),
            secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
            part_size_bytes=int(os.getenv("S3_PART_SIZE_BYTES", str(64 * 1024 * 1024))),
        )


@dataclass(frozen=True)
class PublishConfig:
    """Publishing configuration.

    Attributes:
        upload: Whether to publish to remote storage
        public_base_url: Base URL readers download from
        created_by: Value of the metadata "created_by" field
        extract_target: Directory shown in the extract instruction
    """

    upload: bool = False
    public_base_url: str = "https://snapshots.wyltekindustries.com"
    created_by: str = "toastmanAu/ckb-snapshot"
    extract_target: str = "~/.ckb/data/"

    def url_for(self, name: str) -> str:
        """Public URL of a published file."""
        if not self.public_base_url:
            return name
        return f"{self.public_base_url.rstrip('/')}/{name}"

    @classmethod
    def from_env(cls) -> PublishConfig:
        """Load configuration from environment variables."""
        return cls(
            upload=_env_bool("UPLOAD", "false"),
            public_base_url=os.getenv(
                "PUBLIC_BASE_URL", "https://snapshots.wyltekindustries.com"
            ),
            created_by=os.getenv("CREATED_BY", "toastmanAu/ckb-snapshot"),
            extract_target=os.getenv("EXTRACT_TARGET", "~/.ckb/data/"),
        )


@dataclass(frozen=True)
class RetentionConfig:
    """Retention configuration.

    Attributes:
        max_local: Generations kept in the local snapshot directory
        max_remote: Generations kept in remote storage
        prune_remote: Whether to prune remote storage after publishing
    """

    max_local: int = 3
    max_remote: int = 3
    prune_remote: bool = False

    @classmethod
    def from_env(cls) -> RetentionConfig:
        """Load configuration from environment variables."""
        max_local = os.getenv("MAX_SNAPSHOTS", "3")
        return cls(
            max_local=int(max_local),
            max_remote=int(os.getenv("MAX_REMOTE_SNAPSHOTS", max_local)),
            prune_remote=_env_bool("PRUNE_REMOTE", "false"),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "text"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "text"),
        )


@dataclass(frozen=True)
class SnapshotConfig:
    """Complete pipeline configuration.

    Aggregates all sections and provides validation.

    Attributes:
        node: Node RPC and service configuration
        archive: Archive production configuration
        signing: Signature configuration
        s3: Object storage configuration
        publish: Publishing configuration
        retention: Retention configuration
        observability: Logging configuration
        dry_run: Log actions without performing them
        lock_file: Run-level lock file (defaults inside snapshot_dir)
    """

    node: NodeConfig = field(default_factory=NodeConfig)
    archive: ArchiveConfig = field(default_factory=ArchiveConfig)
    signing: SigningConfig = field(default_factory=SigningConfig)
    s3: S3Config = field(default_factory=S3Config)
    publish: PublishConfig = field(default_factory=PublishConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)
    dry_run: bool = False
    lock_file: str | None = None

    @property
    def lock_path(self) -> Path:
        if self.lock_file:
            return Path(self.lock_file)
        return Path(self.archive.snapshot_dir) / ".snapshot.lock"

    @classmethod
    def from_env(cls) -> SnapshotConfig:
        """Load complete configuration from environment variables.

        Returns:
            SnapshotConfig with all sections populated from environment.

        Raises:
            ValueError: If configuration is missing or invalid.
        """
        config = cls(
            node=NodeConfig.from_env(),
            archive=ArchiveConfig.from_env(),
            signing=SigningConfig.from_env(),
            s3=S3Config.from_env(),
            publish=PublishConfig.from_env(),
            retention=RetentionConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
            dry_run=_env_bool("DRY_RUN", "false"),
            lock_file=os.getenv("LOCK_FILE"),
        )
        config.validate()
        return config

    def with_overrides(
        self,
        upload: bool | None = None,
        dry_run: bool | None = None,
        streaming: bool | None = None,
        prune_remote: bool | None = None,
    ) -> SnapshotConfig:
        """Return a copy with CLI flag overrides applied and validated."""
        config = self
        if upload is not None:
            config = replace(config, publish=replace(config.publish, upload=upload))
        if streaming is not None:
            config = replace(config, archive=replace(config.archive, streaming=streaming))
        if prune_remote is not None:
            config = replace(
                config, retention=replace(config.retention, prune_remote=prune_remote)
            )
        if dry_run is not None:
            config = replace(config, dry_run=dry_run)
        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not network_round_trips(self.node.network):
            raise ValueError(
                f"CKB_NETWORK must be lowercase letters, digits, '_' or '-': {self.node.network!r}"
            )
        if not 1 <= self.archive.zstd_level <= 22:
            raise ValueError("ZSTD_LEVEL must be between 1 and 22")
        if self.archive.chunk_bytes <= 0 or self.archive.buffer_chunks < 2:
            raise ValueError("STREAM_CHUNK_BYTES must be positive and STREAM_BUFFER_CHUNKS >= 2")
        if self.retention.max_local < 1 or self.retention.max_remote < 1:
            raise ValueError("MAX_SNAPSHOTS and MAX_REMOTE_SNAPSHOTS must be at least 1")
        if self.signing.backend == SigningBackend.ED25519 and not self.signing.key_file:
            raise ValueError("SIGNING_KEY_FILE is required when SIGNING_BACKEND=ed25519")
        if self.archive.streaming and not self.publish.upload:
            raise ValueError("SNAPSHOT_STREAMING requires UPLOAD=true")
        if self.publish.upload and not self.s3.bucket:
            raise ValueError("S3_BUCKET is required when UPLOAD=true")
        if self.s3.part_size_bytes < 5 * 1024 * 1024:
            raise ValueError("S3_PART_SIZE_BYTES must be at least 5 MiB")

        if not os.path.exists(self.node.data_dir):
            logger.warning(f"Data directory does not exist: {self.node.data_dir}")

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Snapshot configuration loaded",
            extra={
                "data_dir": self.node.data_dir,
                "snapshot_dir": self.archive.snapshot_dir,
                "service": self.node.service_name,
                "rpc_url": self.node.rpc_url,
                "network": self.node.network,
                "compression": self.archive.compression_label,
                "streaming": self.archive.streaming,
                "signing_backend": self.signing.backend.value,
                "upload": self.publish.upload,
                "s3_bucket": self.s3.bucket if self.publish.upload else None,
                "s3_endpoint": self.s3.endpoint_url if self.publish.upload else None,
                "max_snapshots": self.retention.max_local,
                "dry_run": self.dry_run,
            },
        )
