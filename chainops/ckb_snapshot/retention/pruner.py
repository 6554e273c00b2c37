"""
Retention manager: keep the N most recent generations in a store.

Generations are discovered from the keys of any of their artifacts and
ordered by an explicit numeric recency key (date, then block height), not
by string order of filenames. The generation referenced by latest.json is
always retained, even when it falls outside the window, so pruning can
never leave a dangling pointer.

Invariants:
    - After prune(n), the n most recent generations remain, plus the
      pointer target if it is older
    - A removed generation loses all four artifact kinds together
    - Deleting an artifact that does not exist is not an error

How to change safely:
    - Never delete by anything other than a parsed generation stem
"""

from __future__ import annotations

import logging
from typing import Dict, Optional

from ..models import POINTER_NAME, ArtifactKind, Generation, split_artifact_key
from ..publish.metadata import pointer_target
from ..storage.base import ObjectStore

logger = logging.getLogger(__name__)


class RetentionManager:
    """Prunes old generations from an object store.

    Attributes:
        store: Store to prune (local directory or remote bucket)
        dry_run: Log deletions without performing them

    Example:
        >>> manager = RetentionManager(LocalObjectStore("/home/orangepi/snapshots"))
        >>> removed = await manager.prune(keep_n=3)
    """

    def __init__(self, store: ObjectStore, dry_run: bool = False) -> None:
        self.store = store
        self.dry_run = dry_run

    async def list_generations(self) -> list[Generation]:
        """List generations in the store, newest first."""
        generations: Dict[str, Generation] = {}
        for obj in await self.store.list():
            parts = split_artifact_key(obj.key)
            if parts is None:
                continue
            prefix, stem, _ = parts
            if prefix:
                # Generations live at the store root; ignore nested copies.
                continue
            if stem not in generations:
                generation = Generation.from_stem(stem, prefix)
                if generation is not None:
                    generations[stem] = generation
        return sorted(generations.values(), key=lambda g: (g.recency, g.stem), reverse=True)

    async def pointer_stem(self) -> Optional[str]:
        """Stem of the generation latest.json references, if any."""
        if not await self.store.exists(POINTER_NAME):
            return None
        target = pointer_target(await self.store.read_bytes(POINTER_NAME))
        if target is None:
            logger.warning("latest.json is unreadable; no generation is protected")
            return None
        parts = split_artifact_key(target)
        return parts[1] if parts else None

    async def remove_generation(self, generation: Generation) -> int:
        """Delete all four artifacts of a generation.

        Returns:
            Number of objects actually deleted
        """
        deleted = 0
        for kind in ArtifactKind:
            key = generation.key(kind)
            if self.dry_run:
                logger.info(f"DRY-RUN: delete {self.store.describe(key)}")
                continue
            if await self.store.delete(key):
                deleted += 1
        return deleted

    async def prune(self, keep_n: int) -> list[str]:
        """Keep the keep_n most recent generations and remove the rest.

        Args:
            keep_n: Number of generations to retain (at least 1)

        Returns:
            Stems of the removed generations, newest first

        Raises:
            ValueError: If keep_n < 1
            StorageError: If listing, reading the pointer or deleting fails
        """
        if keep_n < 1:
            raise ValueError("keep_n must be at least 1")

        generations = await self.list_generations()
        protected = await self.pointer_stem()
        removed = []

        for generation in generations[keep_n:]:
            if generation.stem == protected:
                logger.info(
                    "Retaining pointer target outside retention window",
                    extra={"stem": generation.stem},
                )
                continue
            deleted = await self.remove_generation(generation)
            logger.info(
                f"Removing: {generation.filename}",
                extra={"store": self.store.describe(), "objects_deleted": deleted},
            )
            removed.append(generation.stem)

        logger.info(
            f"Pruned {len(removed)} generations (keeping {keep_n})",
            extra={"store": self.store.describe(), "found": len(generations)},
        )
        return removed
