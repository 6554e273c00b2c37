"""
Unit tests for metadata documents and the publisher.

Tests cover:
- Metadata and latest.json field layout
- Upload order with the pointer written last
- Pointer left untouched when any artifact fails
"""

import json

import pytest

from chainops.ckb_snapshot.config import SigningBackend, SigningConfig, SnapshotConfig, PublishConfig
from chainops.ckb_snapshot.errors import UploadError
from chainops.ckb_snapshot.models import POINTER_NAME, ArtifactKind, Snapshot, snapshot_stem
from chainops.ckb_snapshot.publish import (
    Publisher,
    build_metadata,
    build_pointer,
    pointer_target,
    render_json,
)
from chainops.ckb_snapshot.storage import InMemoryObjectStore

BASE_URL = "https://snapshots.example.org"


def make_snapshot(height=18_000_000, date="20260301") -> Snapshot:
    return Snapshot(
        network="mainnet",
        block_height=height,
        date=date,
        stem=snapshot_stem("mainnet", date, height),
        compression="zstd-3",
        size_bytes=1234,
        sha256="ab" * 32,
        node_version="0.119.0",
    )


@pytest.fixture
def publish_config() -> SnapshotConfig:
    return SnapshotConfig(publish=PublishConfig(upload=True, public_base_url=BASE_URL))


@pytest.fixture
def artifacts(tmp_path):
    snapshot = make_snapshot()
    paths = {}
    for kind in ArtifactKind:
        path = tmp_path / snapshot.artifact_name(kind)
        path.write_bytes(kind.value.encode())
        paths[kind] = path
    return snapshot, paths


class TestMetadata:
    """Tests for metadata documents."""

    def test_metadata_fields(self, publish_config):
        snapshot = make_snapshot()

        doc = build_metadata(snapshot, publish_config)

        assert list(doc) == [
            "network", "block_height", "date", "filename", "sha256", "created_by",
            "node_version", "compressed_size_bytes", "compression", "urls", "instructions",
        ]
        assert doc["block_height"] == 18_000_000
        assert doc["filename"] == "ckb-mainnet-snapshot-20260301-block18000000.tar.zst"
        assert doc["urls"]["snapshot"] == f"{BASE_URL}/{doc['filename']}"
        assert doc["urls"]["sig"].endswith(".tar.zst.sha256.sig")
        assert set(doc["instructions"]) == {"download", "verify", "verify_sig", "extract", "note"}
        assert doc["instructions"]["verify"] == f"sha256sum -c {doc['filename']}.sha256"
        assert doc["instructions"]["verify_sig"].startswith("gpg --verify")
        assert "-C ~/.ckb/data/" in doc["instructions"]["extract"]

    def test_unknown_height_is_zero(self, publish_config):
        doc = build_metadata(make_snapshot(height=None), publish_config)

        assert doc["block_height"] == 0
        assert doc["filename"].endswith("-blockunknown.tar.zst")

    def test_ed25519_verify_instruction(self):
        config = SnapshotConfig(
            signing=SigningConfig(backend=SigningBackend.ED25519, key_file="/k")
        )

        doc = build_metadata(make_snapshot(), config)

        assert "--backend ed25519" in doc["instructions"]["verify_sig"]

    def test_pointer_fields(self, publish_config):
        snapshot = make_snapshot()

        doc = build_pointer(snapshot, publish_config)

        assert list(doc) == [
            "latest", "block_height", "date", "snapshot_url", "sha256_url", "sig_url", "meta_url",
        ]
        assert doc["latest"] == snapshot.filename
        assert doc["meta_url"] == f"{BASE_URL}/{snapshot.stem}.json"

    def test_pointer_target_roundtrip(self, publish_config):
        snapshot = make_snapshot()

        rendered = render_json(build_pointer(snapshot, publish_config))

        assert rendered.endswith(b"\n")
        assert pointer_target(rendered) == snapshot.filename
        assert pointer_target(b"{not json") is None
        assert pointer_target(b"[]") is None


class TestPublisher:
    """Tests for Publisher."""

    @pytest.mark.asyncio
    async def test_upload_order_pointer_last(self, publish_config, artifacts):
        snapshot, paths = artifacts
        store = InMemoryObjectStore()

        result = await Publisher(store, publish_config).publish(snapshot, paths)

        assert store.put_keys() == [
            snapshot.artifact_name(ArtifactKind.ARCHIVE),
            snapshot.artifact_name(ArtifactKind.CHECKSUM),
            snapshot.artifact_name(ArtifactKind.SIGNATURE),
            snapshot.artifact_name(ArtifactKind.METADATA),
            POINTER_NAME,
        ]
        assert result.pointer_key == POINTER_NAME
        pointer = json.loads(store.objects[POINTER_NAME])
        assert pointer["latest"] == snapshot.filename

    @pytest.mark.asyncio
    async def test_failure_leaves_previous_pointer(self, publish_config, artifacts):
        """A failed signature upload never moves latest.json."""
        snapshot, paths = artifacts
        store = InMemoryObjectStore(fail_uploads={".sig"})
        previous = render_json(build_pointer(make_snapshot(date="20260228"), publish_config))
        store.objects[POINTER_NAME] = previous

        with pytest.raises(UploadError) as exc_info:
            await Publisher(store, publish_config).publish(snapshot, paths)

        assert exc_info.value.details["artifact"] == "signature"
        assert store.objects[POINTER_NAME] == previous
        assert snapshot.artifact_name(ArtifactKind.METADATA) not in store.objects

    @pytest.mark.asyncio
    async def test_missing_artifact_rejected_before_upload(self, publish_config, artifacts):
        snapshot, paths = artifacts
        del paths[ArtifactKind.METADATA]
        store = InMemoryObjectStore()

        with pytest.raises(UploadError):
            await Publisher(store, publish_config).publish(snapshot, paths)

        assert store.operations == []

    @pytest.mark.asyncio
    async def test_sidecars_require_streamed_archive(self, publish_config, artifacts):
        snapshot, paths = artifacts
        store = InMemoryObjectStore()

        with pytest.raises(UploadError):
            await Publisher(store, publish_config).publish_sidecars(snapshot, paths)

        assert POINTER_NAME not in store.objects

    @pytest.mark.asyncio
    async def test_sidecars_after_stream(self, publish_config, artifacts):
        snapshot, paths = artifacts
        store = InMemoryObjectStore()
        await store.upload_bytes(snapshot.filename, b"streamed")

        result = await Publisher(store, publish_config).publish_sidecars(snapshot, paths)

        assert store.put_keys()[1:] == [
            snapshot.artifact_name(ArtifactKind.CHECKSUM),
            snapshot.artifact_name(ArtifactKind.SIGNATURE),
            snapshot.artifact_name(ArtifactKind.METADATA),
            POINTER_NAME,
        ]
        assert result.keys[ArtifactKind.ARCHIVE] == snapshot.filename

    @pytest.mark.asyncio
    async def test_pointer_copied_to_local_store(self, publish_config, artifacts):
        snapshot, paths = artifacts
        remote, local = InMemoryObjectStore(), InMemoryObjectStore()

        await Publisher(remote, publish_config, local_store=local).publish(snapshot, paths)

        assert local.objects[POINTER_NAME] == remote.objects[POINTER_NAME]
