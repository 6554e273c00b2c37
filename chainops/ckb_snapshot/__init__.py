"""
CKB Snapshot - verifiable chain snapshots for a CKB full node.

This package stops a running node, archives its RocksDB directory into a
single zstd-compressed tarball, restarts the node, attests the archive with
a SHA-256 checksum and a detached signature, publishes everything to object
storage and prunes old generations.

Architecture:
    ┌──────────┐   tip / version   ┌─────────────────────┐
    │ CKB node │◀──────────────────│ LifecycleController │
    │ (RPC +   │   stop / start    │                     │
    │ systemd) │◀──────────────────│                     │
    └──────────┘                   └──────────┬──────────┘
                                              │
              ┌───────────────┬───────────────┼───────────────┐
              ▼               ▼               ▼               ▼
       ┌────────────┐  ┌────────────┐  ┌─────────────┐  ┌────────────┐
       │  Archive   │  │   Attest   │  │  Publisher  │  │ Retention  │
       │ (tar+zstd) │  │(sha256+sig)│  │(S3/R2 and   │  │ (prune N)  │
       └────────────┘  └────────────┘  │ latest.json)│  └────────────┘
                                       └─────────────┘

Invariants:
    - Every exit path after the node is stopped attempts a restart
    - The archive is never produced while the node holds files open
    - latest.json is written only after all four artifacts are published
    - A pruned generation loses all four artifacts together

How to change safely:
    - The published file layout is consumed by third parties; keep it stable
    - Add metadata fields, never rename or remove existing ones
    - Test failure paths with the fakes in tests/ before touching the controller
"""

from ._version import __version__

__all__ = ["__version__"]
