"""
Archive module for the snapshot pipeline.

This module produces the compressed database archive:
- ArchiveProducer: tar + zstd of a directory, to a file or a stream
- StreamFanout: broadcast of one archive stream to several consumers

Invariants:
    - Archives are full and independent; no incremental snapshots
    - A failure mid-archive invalidates the whole attempt
"""

from .fanout import StreamFanout
from .producer import ArchiveProducer, ArchiveResult

__all__ = ["ArchiveProducer", "ArchiveResult", "StreamFanout"]
