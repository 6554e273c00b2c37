"""
Object storage abstraction for snapshot artifacts.

This module provides a pluggable store interface supporting:
- S3-compatible services (AWS S3, Cloudflare R2, MinIO)
- A local directory (the snapshot staging area)
- In-memory (for testing)

Invariants:
    - Uploads return only after durable storage is confirmed
    - Deletes are idempotent
"""

from .base import ObjectStore, StoredObject, content_type_for, create_object_store
from .local import LocalObjectStore
from .memory import InMemoryObjectStore
from .s3 import S3ObjectStore

__all__ = [
    # Protocol and types
    "ObjectStore",
    "StoredObject",
    "content_type_for",
    # Factory
    "create_object_store",
    # Implementations
    "LocalObjectStore",
    "S3ObjectStore",
    "InMemoryObjectStore",
]
