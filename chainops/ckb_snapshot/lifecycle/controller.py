"""
Lifecycle controller: one snapshot run from node stop to pruning.

Sequence:
    1. Query tip height and node version (sentinel on RPC failure)
    2. Derive the generation stem from the UTC date and height
    3. Stop the node service; from here on the service is "down"
    4. Wait the quiesce interval, then check for open handles under the
       database directory; if any remain, restart and fail
    5. Produce the archive (file-staged or streamed to storage)
    6. Restart the node as soon as every source file has been read
    7. Checksum, sign, write metadata, publish, prune

Invariants:
    - Every exit path after step 3 attempts a restart, including
      KeyboardInterrupt and asyncio.CancelledError
    - On interrupt the archive worker thread has stopped before the restart
    - The archive step never runs while another process holds the database
    - Restart happens before any slow network upload work finishes
    - Failures after restart never delete the local archive
    - Only one run per lock file executes at a time

How to change safely:
    - Route every node stop through _stop_and_check and every start through _restart
    - New post-restart steps go into _finish; they must not touch the node
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

from ..archive import ArchiveProducer, StreamFanout
from ..attest.digest import StreamDigest, write_checksum_file
from ..attest.signing import Signer
from ..config import SnapshotConfig
from ..errors import (
    DatabaseLockedError,
    RpcUnavailableError,
    ServiceControlError,
    StorageError,
    UploadError,
)
from ..models import ArtifactKind, Snapshot, snapshot_stem
from ..node.service import OpenHandleProbe, ServiceController
from ..publish.metadata import assign_urls, build_metadata, render_json
from ..publish.publisher import Publisher, PublishResult
from ..retention import RetentionManager
from ..storage.base import ObjectStore, content_type_for
from .lock import RunLock

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
Sleep = Callable[[float], Awaitable[Any]]


class NodeRpc(Protocol):
    """The node queries the controller needs."""

    async def get_tip_block_number(self) -> int: ...

    async def get_node_version(self) -> str: ...


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RunReport:
    """Outcome of a snapshot run.

    Attributes:
        snapshot: The generation produced (or planned, in dry-run mode)
        published: Publish result, None when upload is disabled
        pruned_local: Stems removed from the local snapshot directory
        pruned_remote: Stems removed from remote storage
        warnings: Non-fatal problems encountered along the way
        dry_run: Whether the run only logged its actions
        duration_ms: Wall time of the run
    """

    snapshot: Snapshot
    published: Optional[PublishResult] = None
    pruned_local: list[str] = field(default_factory=list)
    pruned_remote: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    dry_run: bool = False
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "snapshot": self.snapshot.to_dict(),
            "published": self.published is not None,
            "pruned_local": list(self.pruned_local),
            "pruned_remote": list(self.pruned_remote),
            "warnings": list(self.warnings),
            "dry_run": self.dry_run,
            "duration_ms": self.duration_ms,
        }


class LifecycleController:
    """Runs the snapshot lifecycle against a live node.

    All collaborators are injected so tests can substitute fakes for the
    node, the service manager and storage.

    Attributes:
        config: Pipeline configuration
        rpc: Node RPC client
        service: Service manager for the node
        probe: Open-handle probe for the database directory
        producer: Archive producer
        signer: Detached-signature backend
        local_store: Store rooted at the local snapshot directory
        remote_store: Remote store; required when uploading

    Example:
        >>> controller = LifecycleController(config, rpc, service, probe,
        ...                                  producer, signer, local, remote)
        >>> report = await controller.run()
    """

    def __init__(
        self,
        config: SnapshotConfig,
        rpc: NodeRpc,
        service: ServiceController,
        probe: OpenHandleProbe,
        producer: ArchiveProducer,
        signer: Signer,
        local_store: ObjectStore,
        remote_store: Optional[ObjectStore] = None,
        clock: Clock = utc_now,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if config.publish.upload and remote_store is None:
            raise ValueError("A remote store is required when upload is enabled")
        self.config = config
        self.rpc = rpc
        self.service = service
        self.probe = probe
        self.producer = producer
        self.signer = signer
        self.local_store = local_store
        self.remote_store = remote_store
        self.clock = clock
        self.sleep = sleep
        self._service_down = False
        self._warnings: list[str] = []

    @property
    def dry_run(self) -> bool:
        return self.config.dry_run

    @property
    def snapshot_dir(self) -> Path:
        return Path(self.config.archive.snapshot_dir)

    async def run(self) -> RunReport:
        """Execute one snapshot run under the run lock.

        Returns:
            RunReport describing the generation and side effects

        Raises:
            RunLockedError: If another run holds the lock
            ServiceControlError: If the node cannot be stopped or restarted
            DatabaseLockedError: If the database is still open after stop
            ArchiveError: If archive production fails
            SigningError: If signing fails (the local archive is kept)
            UploadError: If publishing fails (the pointer is left unchanged)
        """
        start_time = time.time()
        with RunLock(self.config.lock_path):
            report = await self._run()
        report.duration_ms = int((time.time() - start_time) * 1000)
        logger.info("Snapshot run complete", extra=report.to_dict())
        return report

    async def _run(self) -> RunReport:
        snapshot = await self._plan()
        report = RunReport(snapshot=snapshot, dry_run=self.dry_run)
        report.warnings = self._warnings

        logger.info(
            f"Creating snapshot: {snapshot.filename}",
            extra={"block_height": snapshot.metadata_height(), "streaming": self.config.archive.streaming},
        )

        if self.dry_run:
            self._log_dry_run(snapshot)
        elif self.config.archive.streaming:
            await self._streamed_archive(snapshot)
        else:
            await self._staged_archive(snapshot)

        if not self.dry_run:
            await self._finish(snapshot, report)

        await self._prune(report)
        return report

    async def _plan(self) -> Snapshot:
        network = self.config.node.network
        try:
            height: Optional[int] = await self.rpc.get_tip_block_number()
        except RpcUnavailableError as e:
            logger.warning(f"Could not get block height, using 'unknown': {e}")
            self._warnings.append(f"block height unavailable: {e}")
            height = None

        try:
            version = await self.rpc.get_node_version()
        except RpcUnavailableError as e:
            logger.warning(f"Could not get node version: {e}")
            self._warnings.append(f"node version unavailable: {e}")
            version = "unknown"

        date = self.clock().strftime("%Y%m%d")
        snapshot = Snapshot(
            network=network,
            block_height=height,
            date=date,
            stem=snapshot_stem(network, date, height),
            compression=self.config.archive.compression_label,
            node_version=version,
        )
        assign_urls(snapshot, self.config)
        return snapshot

    def _log_dry_run(self, snapshot: Snapshot) -> None:
        service = self.config.node.service_name
        data_dir = self.config.node.data_dir
        logger.info(f"DRY-RUN: stop service {service}")
        logger.info(f"DRY-RUN: wait {self.config.node.quiesce_seconds}s and check open handles under {data_dir}")
        if self.config.archive.streaming and self.remote_store is not None:
            target = self.remote_store.describe(snapshot.filename)
        else:
            target = str(self.snapshot_dir / snapshot.filename)
        logger.info(f"DRY-RUN: archive {data_dir} -> {target} ({snapshot.compression})")
        logger.info(f"DRY-RUN: start service {service}")
        logger.info(f"DRY-RUN: checksum and sign {snapshot.artifact_name(ArtifactKind.CHECKSUM)}")
        if self.config.publish.upload:
            logger.info(f"DRY-RUN: publish {snapshot.stem} and update latest.json")

    # Service-down window

    async def _stop_and_check(self) -> None:
        node = self.config.node
        self._service_down = True
        logger.info(f"Stopping {node.service_name}...")
        await self.service.stop()
        await self.sleep(node.quiesce_seconds)

        holders = await self.probe.check(node.data_dir)
        if holders:
            logger.error(
                "Database still locked after stop",
                extra={"holders": [str(h) for h in holders]},
            )
            await self._restart()
            raise DatabaseLockedError(
                f"CKB DB still locked: {node.data_dir}. Service restarted.",
                holders=[str(h) for h in holders],
            )

    async def _restart(self) -> None:
        if not self._service_down:
            return
        self._service_down = False
        logger.info(f"Restarting {self.config.node.service_name}...")
        await self.service.start()

    async def _restart_after_failure(self, error: BaseException) -> None:
        """Restart while another exception is propagating.

        A restart failure is logged and the original error is kept.
        """
        try:
            await self._restart()
        except ServiceControlError as restart_error:
            logger.error(
                f"Restart failed after {type(error).__name__}: {restart_error}",
                exc_info=True,
            )

    async def _staged_archive(self, snapshot: Snapshot) -> None:
        archive_path = self.snapshot_dir / snapshot.filename
        try:
            await self._stop_and_check()
            result = await self.producer.create_file(self.config.node.data_dir, archive_path)
        except BaseException as e:
            await self._restart_after_failure(e)
            raise
        await self._restart()

        snapshot.size_bytes = result.size_bytes
        snapshot.sha256 = result.sha256
        snapshot.paths[ArtifactKind.ARCHIVE] = str(archive_path)

    async def _streamed_archive(self, snapshot: Snapshot) -> None:
        assert self.remote_store is not None
        loop = asyncio.get_running_loop()
        read_complete = asyncio.Event()
        fanout = StreamFanout(consumers=2, max_chunks=self.config.archive.buffer_chunks)
        digest = StreamDigest()
        key = snapshot.filename
        tasks: list[asyncio.Task] = []

        def on_read_complete() -> None:
            loop.call_soon_threadsafe(read_complete.set)

        try:
            await self._stop_and_check()
            tasks = [
                asyncio.create_task(fanout.guard(digest.consume(fanout.reader(0)))),
                asyncio.create_task(
                    fanout.guard(
                        self.remote_store.upload_stream(
                            key, fanout.reader(1), content_type_for(key)
                        )
                    )
                ),
                asyncio.create_task(
                    self.producer.stream(self.config.node.data_dir, fanout, on_read_complete)
                ),
            ]
            producer_task = tasks[2]
            read_waiter = asyncio.create_task(read_complete.wait())
            try:
                await asyncio.wait({producer_task, read_waiter}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                read_waiter.cancel()
            if read_complete.is_set():
                logger.info("Database fully read; restarting node while upload drains")
                await self._restart()

            results = await asyncio.gather(*tasks, return_exceptions=True)
        except BaseException as e:
            fanout.abort(e)
            for task in tasks:
                task.cancel()
            # The producer task returns only once its worker thread has stopped.
            await asyncio.gather(*tasks, return_exceptions=True)
            await self._restart_after_failure(e)
            raise

        failures = [r for r in results if isinstance(r, BaseException)]
        if failures:
            await self._restart_after_failure(failures[0])
            cause = fanout.error or failures[0]
            if isinstance(cause, StorageError):
                raise UploadError(
                    f"Failed to stream {key}: {cause}", artifact=ArtifactKind.ARCHIVE.value
                ) from cause
            raise cause
        await self._restart()

        if digest.size_bytes != fanout.bytes_written:
            raise UploadError(
                f"Digest saw {digest.size_bytes} bytes, producer wrote {fanout.bytes_written}",
                artifact=ArtifactKind.ARCHIVE.value,
            )
        snapshot.size_bytes = fanout.bytes_written
        snapshot.sha256 = digest.hexdigest()

    # After restart

    async def _finish(self, snapshot: Snapshot, report: RunReport) -> None:
        logger.info(
            "Archive complete",
            extra={"size_bytes": snapshot.size_bytes, "sha256": snapshot.sha256},
        )

        self.snapshot_dir.mkdir(parents=True, exist_ok=True)
        checksum_name = snapshot.artifact_name(ArtifactKind.CHECKSUM)
        checksum_path = write_checksum_file(
            self.snapshot_dir / checksum_name, snapshot.sha256, snapshot.filename
        )
        snapshot.paths[ArtifactKind.CHECKSUM] = str(checksum_path)

        logger.info("Signing checksum...")
        sig_path = await self.signer.sign(checksum_path)
        snapshot.paths[ArtifactKind.SIGNATURE] = str(sig_path)

        meta_name = snapshot.artifact_name(ArtifactKind.METADATA)
        await self.local_store.upload_bytes(
            meta_name, render_json(build_metadata(snapshot, self.config)), "application/json"
        )
        snapshot.paths[ArtifactKind.METADATA] = str(self.snapshot_dir / meta_name)
        logger.info(f"Metadata written: {meta_name}")

        if not self.config.publish.upload:
            return

        assert self.remote_store is not None
        publisher = Publisher(self.remote_store, self.config, local_store=self.local_store)
        if self.config.archive.streaming:
            report.published = await publisher.publish_sidecars(snapshot, snapshot.paths)
        else:
            report.published = await publisher.publish(snapshot, snapshot.paths)

    async def _prune(self, report: RunReport) -> None:
        retention = self.config.retention
        logger.info(f"Pruning old snapshots (keeping {retention.max_local})...")
        report.pruned_local = await RetentionManager(self.local_store, dry_run=self.dry_run).prune(
            retention.max_local
        )

        if not (retention.prune_remote and self.config.publish.upload):
            return
        assert self.remote_store is not None
        report.pruned_remote = await RetentionManager(
            self.remote_store, dry_run=self.dry_run
        ).prune(retention.max_remote)
