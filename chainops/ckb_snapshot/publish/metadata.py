"""
Metadata and pointer documents.

Both documents are consumed by third-party download scripts, so field names
and nesting are fixed. Example metadata (F = archive filename):

    {
      "network": "mainnet",
      "block_height": 14023311,
      "date": "20260301",
      "filename": F,
      "sha256": "...",
      "created_by": "toastmanAu/ckb-snapshot",
      "node_version": "ckb 0.200.0",
      "compressed_size_bytes": 123,
      "compression": "zstd-3",
      "urls": {"snapshot": ..., "sha256": ..., "sig": ...},
      "instructions": {"download", "verify", "verify_sig", "extract", "note"}
    }
"""

from __future__ import annotations

import json
from typing import Any, Dict

from ..config import SigningBackend, SnapshotConfig
from ..models import ArtifactKind, Snapshot

EXTRACT_NOTE = "Stop your CKB node before extracting. Start it after."


def assign_urls(snapshot: Snapshot, config: SnapshotConfig) -> None:
    """Fill snapshot.urls with the public URL of every artifact."""
    for kind in ArtifactKind:
        snapshot.urls[kind] = config.publish.url_for(snapshot.artifact_name(kind))


def build_metadata(snapshot: Snapshot, config: SnapshotConfig) -> Dict[str, Any]:
    """Build the per-generation metadata document."""
    if not snapshot.urls:
        assign_urls(snapshot, config)
    filename = snapshot.filename
    checksum_name = snapshot.artifact_name(ArtifactKind.CHECKSUM)
    sig_name = snapshot.artifact_name(ArtifactKind.SIGNATURE)

    if config.signing.backend == SigningBackend.ED25519:
        verify_sig = f"ckb-snapshot-verify {filename} --backend ed25519 --public-key <key>"
    else:
        verify_sig = f"gpg --verify {sig_name} {checksum_name}"

    return {
        "network": snapshot.network,
        "block_height": snapshot.metadata_height(),
        "date": snapshot.date,
        "filename": filename,
        "sha256": snapshot.sha256,
        "created_by": config.publish.created_by,
        "node_version": snapshot.node_version,
        "compressed_size_bytes": snapshot.size_bytes,
        "compression": snapshot.compression,
        "urls": {
            "snapshot": snapshot.urls[ArtifactKind.ARCHIVE],
            "sha256": snapshot.urls[ArtifactKind.CHECKSUM],
            "sig": snapshot.urls[ArtifactKind.SIGNATURE],
        },
        "instructions": {
            "download": f"wget {snapshot.urls[ArtifactKind.ARCHIVE]}",
            "verify": f"sha256sum -c {checksum_name}",
            "verify_sig": verify_sig,
            "extract": (
                f"tar --use-compress-program=zstd -xf {filename} "
                f"-C {config.publish.extract_target}"
            ),
            "note": EXTRACT_NOTE,
        },
    }


def build_pointer(snapshot: Snapshot, config: SnapshotConfig) -> Dict[str, Any]:
    """Build the latest.json pointer document."""
    if not snapshot.urls:
        assign_urls(snapshot, config)
    return {
        "latest": snapshot.filename,
        "block_height": snapshot.metadata_height(),
        "date": snapshot.date,
        "snapshot_url": snapshot.urls[ArtifactKind.ARCHIVE],
        "sha256_url": snapshot.urls[ArtifactKind.CHECKSUM],
        "sig_url": snapshot.urls[ArtifactKind.SIGNATURE],
        "meta_url": snapshot.urls[ArtifactKind.METADATA],
    }


def render_json(document: Dict[str, Any]) -> bytes:
    return (json.dumps(document, indent=2) + "\n").encode("utf-8")


def pointer_target(document_bytes: bytes) -> str | None:
    """Archive filename a latest.json document points at, if parseable."""
    try:
        document = json.loads(document_bytes.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    latest = document.get("latest") if isinstance(document, dict) else None
    return latest if isinstance(latest, str) else None

