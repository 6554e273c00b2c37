"""
Publisher: uploads a generation and then moves the latest pointer.

Upload order is archive, checksum, signature, metadata, then latest.json.
A reader polling the bucket mid-publish never sees a checksum without its
archive, and once it sees a new latest.json every referenced artifact is
already present.

Invariants:
    - Each artifact is confirmed with exists() before the next one starts
    - latest.json is written only after all four artifacts are confirmed
    - Any failure raises UploadError and leaves the previous pointer intact
    - No retries; a failed publish is re-run by the operator

How to change safely:
    - Never reorder PUBLISH_ORDER or move the pointer write earlier
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional

from ..config import SnapshotConfig
from ..errors import StorageError, UploadError
from ..models import POINTER_NAME, PUBLISH_ORDER, ArtifactKind, Snapshot
from ..storage.base import ObjectStore, content_type_for
from .metadata import build_pointer, render_json

logger = logging.getLogger(__name__)


@dataclass
class PublishResult:
    """Result of publishing one generation.

    Attributes:
        keys: Store key per artifact kind
        pointer_key: Key of the updated pointer
        duration_ms: Total publish duration
    """

    keys: Dict[ArtifactKind, str] = field(default_factory=dict)
    pointer_key: Optional[str] = None
    duration_ms: int = 0


class Publisher:
    """Publishes snapshot generations to an object store.

    Attributes:
        store: Destination store
        config: Pipeline configuration (for URLs in the pointer)
        local_store: Optional store receiving a copy of latest.json

    Example:
        >>> publisher = Publisher(remote_store, config)
        >>> await publisher.publish(snapshot, snapshot.paths)
    """

    def __init__(
        self,
        store: ObjectStore,
        config: SnapshotConfig,
        local_store: Optional[ObjectStore] = None,
    ) -> None:
        self.store = store
        self.config = config
        self.local_store = local_store

    async def _confirm(self, kind: ArtifactKind, key: str) -> None:
        try:
            present = await self.store.exists(key)
        except StorageError as e:
            raise UploadError(f"Cannot confirm {kind.value} {key}: {e}", artifact=kind.value)
        if not present:
            raise UploadError(
                f"{kind.value} {key} not visible after upload", artifact=kind.value
            )

    async def _upload(self, kind: ArtifactKind, key: str, path: str | Path) -> None:
        logger.info(f"Uploading {kind.value}", extra={"key": self.store.describe(key)})
        try:
            await self.store.upload_file(path, key, content_type_for(key))
        except (StorageError, OSError) as e:
            raise UploadError(f"Failed to upload {kind.value} {key}: {e}", artifact=kind.value)
        await self._confirm(kind, key)

    async def publish(
        self,
        snapshot: Snapshot,
        artifacts: Mapping[ArtifactKind, str | Path],
    ) -> PublishResult:
        """Upload all four artifacts in order, then update the pointer.

        Args:
            snapshot: Generation being published
            artifacts: Local path of every artifact kind

        Raises:
            UploadError: If any artifact or the pointer fails
        """
        return await self._publish(snapshot, artifacts, PUBLISH_ORDER)

    async def publish_sidecars(
        self,
        snapshot: Snapshot,
        artifacts: Mapping[ArtifactKind, str | Path],
    ) -> PublishResult:
        """Publish checksum, signature and metadata for an archive that was
        already streamed to the store, then update the pointer.

        Raises:
            UploadError: If the archive is missing or any upload fails
        """
        archive_key = snapshot.artifact_name(ArtifactKind.ARCHIVE)
        await self._confirm(ArtifactKind.ARCHIVE, archive_key)
        result = await self._publish(
            snapshot,
            artifacts,
            tuple(kind for kind in PUBLISH_ORDER if kind is not ArtifactKind.ARCHIVE),
        )
        result.keys[ArtifactKind.ARCHIVE] = archive_key
        return result

    async def _publish(
        self,
        snapshot: Snapshot,
        artifacts: Mapping[ArtifactKind, str | Path],
        order: tuple[ArtifactKind, ...],
    ) -> PublishResult:
        start_time = time.time()
        missing = [kind.value for kind in order if kind not in artifacts]
        if missing:
            raise UploadError(
                f"Cannot publish {snapshot.stem}: missing {', '.join(missing)}",
                artifact=missing[0],
            )

        result = PublishResult()
        for kind in order:
            key = snapshot.artifact_name(kind)
            await self._upload(kind, key, artifacts[kind])
            result.keys[kind] = key

        result.pointer_key = await self.update_pointer(snapshot)
        result.duration_ms = int((time.time() - start_time) * 1000)

        logger.info(
            "Published snapshot",
            extra={
                "archive": snapshot.filename,
                "block_height": snapshot.metadata_height(),
                "duration_ms": result.duration_ms,
            },
        )
        return result

    async def update_pointer(self, snapshot: Snapshot) -> str:
        """Overwrite latest.json to reference snapshot.

        Callers must have confirmed every artifact of snapshot first.
        """
        document = render_json(build_pointer(snapshot, self.config))
        try:
            await self.store.upload_bytes(POINTER_NAME, document, "application/json")
        except StorageError as e:
            raise UploadError(f"Failed to update {POINTER_NAME}: {e}", artifact="pointer")

        if self.local_store is not None:
            await self.local_store.upload_bytes(POINTER_NAME, document, "application/json")

        logger.info("Updated latest.json", extra={"latest": snapshot.filename})
        return POINTER_NAME
