"""
Snapshot store abstraction for anvil-keeper.

This module provides single-slot durable storage for the node state:
- Local file (default, atomic rename)
- S3 object (via aiobotocore)
- In-memory (for testing)

Invariants:
    - One slot, overwritten by every successful capture
    - An empty or missing slot means "no prior state", never an error
"""

from .base import (
    SnapshotNotFoundError,
    SnapshotStore,
    StoreError,
    WriteError,
    create_snapshot_store,
)
from .file import FileSnapshotStore
from .memory import InMemorySnapshotStore
from .s3 import S3SnapshotStore

__all__ = [
    # Protocol and errors
    "SnapshotStore",
    "StoreError",
    "SnapshotNotFoundError",
    "WriteError",
    # Factory
    "create_snapshot_store",
    # Implementations
    "FileSnapshotStore",
    "S3SnapshotStore",
    "InMemorySnapshotStore",
]
