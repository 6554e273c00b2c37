"""
Publishing of snapshot generations.

This module handles:
- Metadata and latest.json document construction
- Ordered upload of archive, checksum, signature and metadata
- The pointer update that makes a generation discoverable

Invariants:
    - The pointer never references a generation with missing artifacts
"""

from .metadata import assign_urls, build_metadata, build_pointer, pointer_target, render_json
from .publisher import Publisher, PublishResult

__all__ = [
    "Publisher",
    "PublishResult",
    "assign_urls",
    "build_metadata",
    "build_pointer",
    "pointer_target",
    "render_json",
]
