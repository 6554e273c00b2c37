"""
Data model for snapshot generations.

A generation is one snapshot's complete artifact set, identified by a
filename stem:

    ckb-<network>-snapshot-<YYYYMMDD>-block<height>.tar.zst          archive
    ckb-<network>-snapshot-<YYYYMMDD>-block<height>.tar.zst.sha256   checksum
    ckb-<network>-snapshot-<YYYYMMDD>-block<height>.tar.zst.sha256.sig
    ckb-<network>-snapshot-<YYYYMMDD>-block<height>.json             metadata

When the node RPC cannot be reached the height token is "unknown" in the
filename and 0 in the metadata document.

Invariants:
    - Filenames are derived only from network, date and height
    - Checksum and signature always belong to exactly one archive
    - Recency is an explicit (date, height) key, never string order

How to change safely:
    - The filename layout is public; changing it breaks downstream mirrors
    - Add fields to Snapshot with defaults
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

ARCHIVE_SUFFIX = ".tar.zst"
POINTER_NAME = "latest.json"
UNKNOWN_HEIGHT_LABEL = "unknown"
METADATA_UNKNOWN_HEIGHT = 0

_STEM_RE = re.compile(
    r"^ckb-(?P<network>[a-z0-9_]+(?:-[a-z0-9_]+)*?)-snapshot-"
    r"(?P<date>\d{8})-block(?P<height>\d+|unknown)$"
)


class ArtifactKind(Enum):
    """The four artifact kinds that make up a generation."""

    ARCHIVE = "archive"
    CHECKSUM = "checksum"
    SIGNATURE = "signature"
    METADATA = "metadata"

    def filename(self, stem: str) -> str:
        """Return the artifact filename for a generation stem."""
        if self is ArtifactKind.ARCHIVE:
            return f"{stem}{ARCHIVE_SUFFIX}"
        if self is ArtifactKind.CHECKSUM:
            return f"{stem}{ARCHIVE_SUFFIX}.sha256"
        if self is ArtifactKind.SIGNATURE:
            return f"{stem}{ARCHIVE_SUFFIX}.sha256.sig"
        return f"{stem}.json"


# Publish order; the pointer is written after all of these.
PUBLISH_ORDER = (
    ArtifactKind.ARCHIVE,
    ArtifactKind.CHECKSUM,
    ArtifactKind.SIGNATURE,
    ArtifactKind.METADATA,
)


def height_label(block_height: Optional[int]) -> str:
    """Render a block height for filenames."""
    return UNKNOWN_HEIGHT_LABEL if block_height is None else str(block_height)


def snapshot_stem(network: str, date: str, block_height: Optional[int]) -> str:
    """Build the deterministic filename stem for a generation.

    Args:
        network: Network identifier (e.g. "mainnet")
        date: Zero-padded UTC date, YYYYMMDD
        block_height: Tip height, or None when unknown

    Returns:
        Stem shared by all four artifacts
    """
    return f"ckb-{network}-snapshot-{date}-block{height_label(block_height)}"


@dataclass
class Snapshot:
    """One snapshot generation.

    Attributes:
        network: Network identifier
        block_height: Tip height at stop time, None if the RPC was unreachable
        date: Creation date (YYYYMMDD, UTC)
        stem: Filename stem shared by all artifacts
        size_bytes: Compressed archive size
        compression: Compression identifier, e.g. "zstd-3"
        sha256: Hex digest of the archive bytes
        node_version: Node software version string
        urls: Public URL per artifact kind
        paths: Local path per artifact kind (file-staged runs)
    """

    network: str
    block_height: Optional[int]
    date: str
    stem: str
    compression: str
    size_bytes: int = 0
    sha256: str = ""
    node_version: str = "unknown"
    urls: Dict[ArtifactKind, str] = field(default_factory=dict)
    paths: Dict[ArtifactKind, str] = field(default_factory=dict)

    @property
    def filename(self) -> str:
        """Archive filename."""
        return ArtifactKind.ARCHIVE.filename(self.stem)

    def artifact_name(self, kind: ArtifactKind) -> str:
        """Filename of one of this generation's artifacts."""
        return kind.filename(self.stem)

    def metadata_height(self) -> int:
        """Block height as written to JSON documents."""
        return METADATA_UNKNOWN_HEIGHT if self.block_height is None else self.block_height

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging and reports."""
        return {
            "network": self.network,
            "block_height": self.metadata_height(),
            "date": self.date,
            "filename": self.filename,
            "size_bytes": self.size_bytes,
            "compression": self.compression,
            "sha256": self.sha256,
            "node_version": self.node_version,
        }


# Longest suffix first so ".tar.zst.sha256.sig" is not read as ".tar.zst".
_SUFFIX_KINDS = (
    (f"{ARCHIVE_SUFFIX}.sha256.sig", ArtifactKind.SIGNATURE),
    (f"{ARCHIVE_SUFFIX}.sha256", ArtifactKind.CHECKSUM),
    (ARCHIVE_SUFFIX, ArtifactKind.ARCHIVE),
    (".json", ArtifactKind.METADATA),
)


def split_artifact_key(key: str) -> Optional[tuple[str, str, ArtifactKind]]:
    """Split a store key into (prefix, stem, kind).

    Returns:
        The parts, or None if the key is not a snapshot artifact
    """
    prefix, _, name = key.rpartition("/")
    for suffix, kind in _SUFFIX_KINDS:
        if name.endswith(suffix):
            stem = name[: -len(suffix)]
            if _STEM_RE.match(stem):
                return (f"{prefix}/" if prefix else "", stem, kind)
            return None
    return None


@dataclass(frozen=True)
class Generation:
    """A generation discovered in a store.

    Attributes:
        stem: Filename stem
        prefix: Key prefix the artifacts were found under
        network: Network identifier parsed from the name
        date: Date as an integer YYYYMMDD
        block_height: Parsed height, None for "unknown"
    """

    stem: str
    prefix: str
    network: str
    date: int
    block_height: Optional[int]

    @property
    def recency(self) -> tuple[int, int]:
        """Numeric recency key: newer sorts greater."""
        return (self.date, -1 if self.block_height is None else self.block_height)

    @property
    def filename(self) -> str:
        return ArtifactKind.ARCHIVE.filename(self.stem)

    def key(self, kind: ArtifactKind) -> str:
        """Store key of one of this generation's artifacts."""
        return f"{self.prefix}{kind.filename(self.stem)}"

    @classmethod
    def from_stem(cls, stem: str, prefix: str = "") -> Optional[Generation]:
        match = _STEM_RE.match(stem)
        if not match:
            return None
        height = match.group("height")
        return cls(
            stem=stem,
            prefix=prefix,
            network=match.group("network"),
            date=int(match.group("date")),
            block_height=None if height == UNKNOWN_HEIGHT_LABEL else int(height),
        )

    @classmethod
    def from_key(cls, key: str) -> Optional[Generation]:
        """Parse a generation from the key of any of its artifacts.

        Returns:
            Generation, or None if the key is not a snapshot artifact
        """
        parts = split_artifact_key(key)
        if parts is None:
            return None
        prefix, stem, _ = parts
        return cls.from_stem(stem, prefix)


def network_round_trips(network: str) -> bool:
    """Whether generations named for network can be parsed back from their keys.

    Retention only sees generations whose stems parse, so a network name
    outside the stem grammar would make every generation unprunable.
    """
    generation = Generation.from_stem(snapshot_stem(network, "19700101", 0))
    return generation is not None and generation.network == network
