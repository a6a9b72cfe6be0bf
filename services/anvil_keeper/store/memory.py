"""
In-memory snapshot store for testing.

Keeps the slot in a bytes attribute and records every write so tests can
assert on the order and content of persisted snapshots.
"""

from __future__ import annotations

import logging

from .base import SnapshotNotFoundError, StoreError, WriteError

logger = logging.getLogger(__name__)


class InMemorySnapshotStore:
    """In-memory implementation of SnapshotStore.

    Attributes:
        data: Current slot content, None when empty
        writes: Every blob written, oldest first
    """

    def __init__(self, data: bytes | None = None) -> None:
        self.data = data
        self.writes: list[bytes] = []
        self._write_failures: list[Exception] = []
        self._read_error: Exception | None = None

    def describe(self) -> str:
        return "memory://snapshot"

    async def exists(self) -> bool:
        return bool(self.data)

    async def read(self) -> bytes:
        if self._read_error is not None:
            raise self._read_error
        if not self.data:
            raise SnapshotNotFoundError("No snapshot in memory store")
        return self.data

    async def write(self, data: bytes) -> None:
        if self._write_failures:
            raise self._write_failures.pop(0)
        self.data = data
        self.writes.append(data)

    # Testing helpers

    def fail_writes(self, count: int = 1, error: Exception | None = None) -> None:
        """Make the next `count` writes raise."""
        for _ in range(count):
            self._write_failures.append(error or WriteError("injected write failure"))

    def fail_reads(self, error: Exception | None = None) -> None:
        """Make read() raise."""
        self._read_error = error or StoreError("injected read failure")
