"""
Snapshot CLI entry point.

Usage:
    ckb-snapshot [--upload] [--dry-run] [--stream] [--prune-remote] [-v]
    ckb-snapshot --list [--upload]

Configuration comes from environment variables (see config.py); flags
override the matching variables for this invocation.

Exit codes:
    0: snapshot created (and published, with --upload)
    1: configuration error
    2: pipeline failure, including another run holding the lock

Invariants:
    - SIGINT and SIGTERM cancel the run; the node is restarted before exit
    - Remote storage clients are closed on every exit path
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from typing import Optional

import json_log_formatter

from .archive import ArchiveProducer
from .attest.signing import create_signer
from .config import SnapshotConfig
from .errors import SnapshotError
from .lifecycle import LifecycleController, RunReport
from .node import NodeRpcClient, OpenHandleProbe, SystemdServiceController
from .retention import RetentionManager
from .storage import LocalObjectStore, create_object_store

logger = logging.getLogger(__name__)


def setup_logging(config: SnapshotConfig, verbose: bool = False) -> None:
    """Configure logging based on configuration.

    Args:
        config: Pipeline configuration
        verbose: Force DEBUG level
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)
    if verbose:
        level = logging.DEBUG

    if config.observability.log_format == "json":
        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("aiobotocore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


async def run_snapshot(config: SnapshotConfig) -> RunReport:
    """Wire the production components together and run once."""
    loop = asyncio.get_running_loop()
    task = asyncio.current_task()
    if task is not None:
        loop.add_signal_handler(signal.SIGTERM, task.cancel)

    local_store = LocalObjectStore(config.archive.snapshot_dir)
    remote_store = create_object_store(config) if config.publish.upload else None
    try:
        async with NodeRpcClient(config.node) as rpc:
            controller = LifecycleController(
                config,
                rpc=rpc,
                service=SystemdServiceController.from_config(config.node),
                probe=OpenHandleProbe(),
                producer=ArchiveProducer.from_config(config.archive),
                signer=create_signer(config.signing),
                local_store=local_store,
                remote_store=remote_store,
            )
            return await controller.run()
    finally:
        if remote_store is not None:
            await remote_store.close()
        loop.remove_signal_handler(signal.SIGTERM)


async def list_generations(config: SnapshotConfig) -> None:
    """Print the generations in the local directory and, with upload, the bucket."""
    stores = [LocalObjectStore(config.archive.snapshot_dir)]
    if config.publish.upload:
        stores.append(create_object_store(config))
    try:
        for store in stores:
            print(f"{store.describe()}:")
            for generation in await RetentionManager(store).list_generations():
                print(f"  {generation.filename}")
    finally:
        for store in stores:
            await store.close()


def _parse_args(argv: Optional[list[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Create, sign and publish a CKB node database snapshot"
    )
    parser.add_argument(
        "--upload", action="store_true", default=None, help="Publish to remote storage"
    )
    parser.add_argument(
        "--dry-run", action="store_true", default=None, help="Log actions without performing them"
    )
    parser.add_argument(
        "--stream",
        action="store_true",
        default=None,
        help="Stream the archive to storage without staging it locally (implies --upload)",
    )
    parser.add_argument(
        "--prune-remote",
        action="store_true",
        default=None,
        help="Prune old generations from remote storage too",
    )
    parser.add_argument(
        "--list",
        action="store_true",
        help="List stored generations (remote too with --upload) and exit",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> None:
    """Main entry point."""
    args = _parse_args(argv)

    # Load configuration
    try:
        config = SnapshotConfig.from_env().with_overrides(
            upload=True if args.stream else args.upload,
            dry_run=args.dry_run,
            streaming=args.stream,
            prune_remote=args.prune_remote,
        )
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config, verbose=args.verbose)

    if args.list:
        try:
            asyncio.run(list_generations(config))
        except SnapshotError as e:
            print(f"Listing failed: {e}", file=sys.stderr)
            sys.exit(2)
        sys.exit(0)

    config.log_config()

    try:
        report = asyncio.run(run_snapshot(config))
    except SnapshotError as e:
        logger.error(f"Snapshot failed: {e}", extra={"code": e.code, "details": e.details})
        sys.exit(2)
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.error("Snapshot interrupted")
        sys.exit(2)

    snapshot = report.snapshot
    prefix = "DRY-RUN: " if report.dry_run else ""
    print(f"{prefix}Snapshot complete: {snapshot.filename}")
    print(f"  Block height: {snapshot.metadata_height()}")
    print(f"  Size: {snapshot.size_bytes} bytes")
    print(f"  SHA256: {snapshot.sha256 or 'n/a'}")
    print(f"  Published: {'yes' if report.published else 'no'}")
    print(f"  Pruned: {len(report.pruned_local)} local, {len(report.pruned_remote)} remote")
    for warning in report.warnings:
        print(f"  Warning: {warning}")
    sys.exit(0)


if __name__ == "__main__":
    main()
