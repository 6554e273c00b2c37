"""
Error types for the snapshot pipeline.

This module defines every exception raised by pipeline components:
- SnapshotError: Base exception
- RpcUnavailableError: Node RPC unreachable (non-fatal, height degrades)
- ServiceControlError: systemctl stop/start failed
- DatabaseLockedError: Data directory still held open after stop
- ArchiveError: tar/zstd production failed
- SigningError: Detached signature could not be produced
- UploadError: An artifact could not be published
- StorageError: Object store operation failed
- ChecksumMismatchError / SignatureInvalidError / IdentityMismatchError:
  Verification failures on the consumer side
- RunLockedError: Another run holds the run lock

Invariants:
    - All errors inherit from SnapshotError
    - Each error has a stable code for programmatic handling
    - Messages never contain credentials
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class SnapshotError(Exception):
    """Base exception for all snapshot pipeline errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "SNAPSHOT_ERROR"
        self.details = details or {}

    def __str__(self) -> str:
        return self.message


class RpcUnavailableError(SnapshotError):
    """Node RPC endpoint could not answer.

    Raised when:
    - The endpoint is unreachable or times out
    - The response is not valid JSON-RPC
    - The result field is missing or not a hex integer
    """

    def __init__(self, message: str, endpoint: Optional[str] = None) -> None:
        super().__init__(message, code="RPC_UNAVAILABLE", details={"endpoint": endpoint})


class ServiceControlError(SnapshotError):
    """Starting or stopping the node service failed."""

    def __init__(
        self,
        message: str,
        service: Optional[str] = None,
        action: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="SERVICE_CONTROL_ERROR",
            details={"service": service, "action": action},
        )


class DatabaseLockedError(SnapshotError):
    """The database directory is still held open after the service stopped."""

    def __init__(self, message: str, holders: Optional[list[str]] = None) -> None:
        super().__init__(message, code="DATABASE_LOCKED", details={"holders": holders or []})


class ArchiveError(SnapshotError):
    """Producing the compressed archive failed."""

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(message, code="ARCHIVE_ERROR", details={"path": path})


class SigningError(SnapshotError):
    """Producing the detached signature failed."""

    def __init__(self, message: str, key: Optional[str] = None) -> None:
        super().__init__(message, code="SIGNING_ERROR", details={"key": key})


class StorageError(SnapshotError):
    """An object store operation failed."""

    def __init__(self, message: str, key: Optional[str] = None) -> None:
        super().__init__(message, code="STORAGE_ERROR", details={"key": key})


class UploadError(SnapshotError):
    """Publishing an artifact failed.

    The latest pointer is never updated after an UploadError.
    """

    def __init__(self, message: str, artifact: Optional[str] = None) -> None:
        super().__init__(message, code="UPLOAD_ERROR", details={"artifact": artifact})


class ChecksumMismatchError(SnapshotError):
    """Recomputed digest differs from the published checksum."""

    def __init__(self, message: str, expected: str = "", actual: str = "") -> None:
        super().__init__(
            message,
            code="CHECKSUM_MISMATCH",
            details={"expected": expected, "actual": actual},
        )


class SignatureInvalidError(SnapshotError):
    """Detached signature does not verify against the checksum file."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="SIGNATURE_INVALID")


class IdentityMismatchError(SnapshotError):
    """Signature is valid but was made by an unexpected signer."""

    def __init__(self, message: str, expected: str = "", actual: str = "") -> None:
        super().__init__(
            message,
            code="IDENTITY_MISMATCH",
            details={"expected": expected, "actual": actual},
        )


class RunLockedError(SnapshotError):
    """Another snapshot run holds the run lock."""

    def __init__(self, message: str, lock_file: Optional[str] = None) -> None:
        super().__init__(message, code="RUN_LOCKED", details={"lock_file": lock_file})
