"""
Unit tests for the snapshot data model.

Tests cover:
- Deterministic filenames and the unknown-height sentinel
- Artifact key parsing
- Numeric recency ordering of generations
"""

from chainops.ckb_snapshot.models import (
    ArtifactKind,
    Generation,
    Snapshot,
    network_round_trips,
    snapshot_stem,
    split_artifact_key,
)


class TestFilenames:
    """Tests for filename derivation."""

    def test_stem_embeds_date_and_height(self):
        assert (
            snapshot_stem("mainnet", "20260301", 18_123_456)
            == "ckb-mainnet-snapshot-20260301-block18123456"
        )

    def test_unknown_height_sentinel(self):
        """An unreachable RPC yields 'unknown' in the name."""
        assert snapshot_stem("mainnet", "20260301", None).endswith("-blockunknown")

    def test_artifact_filenames(self):
        """All four artifacts share the stem."""
        stem = "ckb-mainnet-snapshot-20260301-block100"

        assert ArtifactKind.ARCHIVE.filename(stem) == f"{stem}.tar.zst"
        assert ArtifactKind.CHECKSUM.filename(stem) == f"{stem}.tar.zst.sha256"
        assert ArtifactKind.SIGNATURE.filename(stem) == f"{stem}.tar.zst.sha256.sig"
        assert ArtifactKind.METADATA.filename(stem) == f"{stem}.json"

    def test_metadata_height_is_zero_when_unknown(self):
        snapshot = Snapshot(
            network="mainnet",
            block_height=None,
            date="20260301",
            stem=snapshot_stem("mainnet", "20260301", None),
            compression="zstd-3",
        )

        assert snapshot.metadata_height() == 0
        assert snapshot.to_dict()["block_height"] == 0


class TestSplitArtifactKey:
    """Tests for split_artifact_key."""

    def test_each_kind_is_recognized(self):
        stem = "ckb-mainnet-snapshot-20260301-block100"
        for kind in ArtifactKind:
            assert split_artifact_key(kind.filename(stem)) == ("", stem, kind)

    def test_signature_not_mistaken_for_checksum(self):
        """The longest suffix wins."""
        parts = split_artifact_key("ckb-mainnet-snapshot-20260301-block1.tar.zst.sha256.sig")

        assert parts[2] is ArtifactKind.SIGNATURE

    def test_prefix_is_kept(self):
        parts = split_artifact_key("mirror/ckb-testnet-snapshot-20260301-blockunknown.json")

        assert parts == ("mirror/", "ckb-testnet-snapshot-20260301-blockunknown", ArtifactKind.METADATA)

    def test_foreign_keys_ignored(self):
        assert split_artifact_key("latest.json") is None
        assert split_artifact_key("notes.txt") is None
        assert split_artifact_key("ckb-mainnet-snapshot-2026-block1.tar.zst") is None


class TestGeneration:
    """Tests for Generation parsing and ordering."""

    def test_from_key_any_kind(self):
        """A generation is recognizable from any of its artifacts."""
        gen = Generation.from_key("ckb-mainnet-snapshot-20260301-block42.tar.zst.sha256")

        assert gen.stem == "ckb-mainnet-snapshot-20260301-block42"
        assert gen.date == 20260301
        assert gen.block_height == 42
        assert gen.key(ArtifactKind.ARCHIVE) == "ckb-mainnet-snapshot-20260301-block42.tar.zst"

    def test_recency_is_numeric(self):
        """block10 is newer than block9 although it sorts lower as a string."""
        older = Generation.from_stem("ckb-mainnet-snapshot-20260301-block9")
        newer = Generation.from_stem("ckb-mainnet-snapshot-20260301-block10")

        assert newer.recency > older.recency
        assert newer.stem < older.stem

    def test_date_dominates_height(self):
        yesterday = Generation.from_stem("ckb-mainnet-snapshot-20260228-block999999")
        today = Generation.from_stem("ckb-mainnet-snapshot-20260301-blockunknown")

        assert today.recency > yesterday.recency

    def test_unknown_height_sorts_before_known_on_same_day(self):
        unknown = Generation.from_stem("ckb-mainnet-snapshot-20260301-blockunknown")
        known = Generation.from_stem("ckb-mainnet-snapshot-20260301-block1")

        assert unknown.block_height is None
        assert known.recency > unknown.recency

    def test_invalid_stem(self):
        assert Generation.from_stem("ckb-snapshot") is None

    def test_network_round_trip(self):
        """Hyphenated lowercase names parse back; others do not."""
        assert network_round_trips("mainnet")
        assert network_round_trips("dev_chain-2")
        assert not network_round_trips("Mainnet")
        assert not network_round_trips("testnet.v2")
