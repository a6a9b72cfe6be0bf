"""
Base protocol and errors for the snapshot store.

A snapshot store is a single durable slot holding one opaque blob. Every
successful write replaces the previous content; there is no history.

Invariants:
    - read() never returns an empty blob; an empty slot is "not found"
    - write() either replaces the slot completely or leaves it untouched
    - The store never interprets the bytes it holds

How to change safely:
    - Protocol changes require updating all implementations
    - Keep writes atomic, the slot is the only recoverable copy of the node state
"""

from __future__ import annotations

from abc import abstractmethod
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..config import ServiceConfig


class StoreError(Exception):
    """Base exception for snapshot store operations."""

    pass


class SnapshotNotFoundError(StoreError):
    """The slot holds no snapshot. Not a failure condition."""

    pass


class WriteError(StoreError):
    """The snapshot could not be persisted."""

    pass


@runtime_checkable
class SnapshotStore(Protocol):
    """Protocol for single-slot snapshot storage.

    Example:
        >>> store = FileSnapshotStore("anvil_state.txt")
        >>> await store.write(b"...")
        >>> data = await store.read()
    """

    @abstractmethod
    async def read(self) -> bytes:
        """Read the stored snapshot.

        Raises:
            SnapshotNotFoundError: If the slot is missing or empty
            StoreError: If the slot exists but cannot be read
        """
        ...

    @abstractmethod
    async def write(self, data: bytes) -> None:
        """Replace the stored snapshot.

        Raises:
            WriteError: If the write fails
        """
        ...

    @abstractmethod
    async def exists(self) -> bool:
        """Whether the slot currently holds a snapshot."""
        ...

    @abstractmethod
    def describe(self) -> str:
        """Human readable location of the slot, for logs."""
        ...


def create_snapshot_store(config: ServiceConfig) -> SnapshotStore:
    """Factory function to create a snapshot store from configuration.

    Args:
        config: Service configuration

    Returns:
        Appropriate SnapshotStore implementation

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import StoreBackend
    from .file import FileSnapshotStore
    from .s3 import S3SnapshotStore

    if config.store_backend == StoreBackend.FILE:
        return FileSnapshotStore(config.file_store.path)
    elif config.store_backend == StoreBackend.S3:
        return S3SnapshotStore(config.s3)
    else:
        raise ValueError(f"Unsupported store backend: {config.store_backend}")
