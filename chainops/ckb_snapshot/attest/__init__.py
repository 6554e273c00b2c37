"""
Integrity attestation for snapshot archives.

This module provides:
- SHA-256 digests (whole file, incremental, async stream)
- sha256sum-compatible checksum files
- Detached signatures over checksum files (GPG or Ed25519)

Invariants:
    - The digest covers exactly the published archive bytes
    - The signature covers the checksum file, binding digest and filename
"""

from .digest import (
    StreamDigest,
    format_checksum_line,
    parse_checksum_line,
    read_checksum_file,
    sha256_bytes,
    sha256_file,
    sha256_stream,
    verify_file_checksum,
    write_checksum_file,
)
from .signing import (
    Ed25519Signer,
    GpgSigner,
    SignatureCheck,
    Signer,
    create_signer,
    identity_matches,
    parse_gpg_status,
    signature_path,
)

__all__ = [
    "StreamDigest",
    "sha256_bytes",
    "sha256_file",
    "sha256_stream",
    "format_checksum_line",
    "parse_checksum_line",
    "read_checksum_file",
    "write_checksum_file",
    "verify_file_checksum",
    "Signer",
    "SignatureCheck",
    "GpgSigner",
    "Ed25519Signer",
    "create_signer",
    "identity_matches",
    "parse_gpg_status",
    "signature_path",
]
