"""
In-memory chain client implementation for testing.

This module provides a simulated node for:
- Unit tests
- Integration tests of the snapshot coordinator
- Local development without an Anvil binary

Invariants:
    - All data is lost on process exit
    - Dumps reflect the simulated chain at the moment they start
    - Helpers never reorder events; tests decide what is emitted

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with ChainClient protocol
    - Add features to help with testing scenarios
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import time

from .base import (
    ChainConnectionError,
    DumpError,
    LoadError,
    ProgressEvent,
    ProgressSubscription,
)

logger = logging.getLogger(__name__)


class InMemoryChainClient:
    """In-memory implementation of ChainClient for testing.

    The simulated state is a small JSON document holding the block number,
    so every dump is distinguishable from the previous one.

    Attributes:
        block_number: Current simulated block number
        accept_loads: Whether load_state() reports success
        dump_calls: Number of dump_state() calls started
        max_concurrent_dumps: Highest number of dumps seen running at once
        loaded: Blobs passed to load_state()

    Example:
        >>> client = InMemoryChainClient(block_number=5)
        >>> await client.connect()
        >>> sub = await client.subscribe_progress()
        >>> client.mine()
        >>> (await sub.next()).number
        6
    """

    def __init__(self, block_number: int = 0, accept_loads: bool = True) -> None:
        """Initialize the simulated node.

        Args:
            block_number: Starting block number
            accept_loads: Whether load_state() reports success
        """
        self.block_number = block_number
        self.accept_loads = accept_loads

        self.dump_calls = 0
        self.dumped_blocks: list[int] = []
        self.max_concurrent_dumps = 0
        self.loaded: list[bytes] = []

        self._connected = False
        self._active_dumps = 0
        self._dump_gate: asyncio.Event | None = None
        self._dump_failures: list[Exception] = []
        self._load_error: Exception | None = None
        self._subscriptions: list[ProgressSubscription] = []
        self._sub_ids = itertools.count(1)

    @property
    def is_connected(self) -> bool:
        """Whether connected (always true after connect())."""
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("InMemoryChainClient connected")

    async def close(self) -> None:
        """Close and drop all subscriptions."""
        self._connected = False
        for subscription in list(self._subscriptions):
            await subscription.unsubscribe()
        logger.debug("InMemoryChainClient closed")

    async def current_progress(self) -> int:
        """Return the simulated block number."""
        self._require_connection()
        return self.block_number

    async def dump_state(self) -> bytes:
        """Dump the simulated state.

        Blocks while dumps are paused. Raises injected failures first.
        """
        self._require_connection()
        self.dump_calls += 1
        self._active_dumps += 1
        self.max_concurrent_dumps = max(self.max_concurrent_dumps, self._active_dumps)
        try:
            block = self.block_number
            if self._dump_gate is not None:
                await self._dump_gate.wait()
            if self._dump_failures:
                raise self._dump_failures.pop(0)
            self.dumped_blocks.append(block)
            return self.encode_state(block)
        finally:
            self._active_dumps -= 1

    async def load_state(self, data: bytes) -> bool:
        """Record the blob and report the configured outcome."""
        self._require_connection()
        if self._load_error is not None:
            raise self._load_error
        self.loaded.append(data)
        if not self.accept_loads:
            return False
        self.block_number = self.decode_state(data)
        return True

    async def subscribe_progress(self) -> ProgressSubscription:
        """Subscribe to simulated block arrivals."""
        self._require_connection()
        subscription = ProgressSubscription(
            f"mem-{next(self._sub_ids)}", on_unsubscribe=self._unsubscribe
        )
        self._subscriptions.append(subscription)
        return subscription

    async def _unsubscribe(self, subscription: ProgressSubscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def _require_connection(self) -> None:
        if not self._connected:
            raise ChainConnectionError("Not connected")

    @staticmethod
    def encode_state(block: int) -> bytes:
        """Encode the simulated state for a block."""
        return json.dumps({"block": block}).encode("utf-8")

    @staticmethod
    def decode_state(data: bytes) -> int:
        """Decode the block number from a simulated state blob."""
        return int(json.loads(data.decode("utf-8"))["block"])

    # Testing helpers

    @property
    def active_dumps(self) -> int:
        """Number of dumps currently running."""
        return self._active_dumps

    def mine(self, count: int = 1) -> list[int]:
        """Advance the chain and emit one event per new block."""
        numbers = []
        for _ in range(count):
            self.block_number += 1
            self.emit(self.block_number)
            numbers.append(self.block_number)
        return numbers

    def emit(self, number: int) -> None:
        """Emit a progress event without touching the chain head."""
        self.block_number = max(self.block_number, number)
        for subscription in self._subscriptions:
            subscription.deliver(ProgressEvent(number=number))

    def emit_error(self, error: Exception) -> None:
        """Push an error onto every subscription's error channel."""
        for subscription in self._subscriptions:
            subscription.fail(error)

    def pause_dumps(self) -> None:
        """Make every dump block until resume_dumps()."""
        self._dump_gate = asyncio.Event()

    def resume_dumps(self) -> None:
        """Release paused dumps."""
        if self._dump_gate is not None:
            self._dump_gate.set()
            self._dump_gate = None

    def fail_dumps(self, count: int = 1, error: Exception | None = None) -> None:
        """Make the next `count` dumps raise."""
        for _ in range(count):
            self._dump_failures.append(error or DumpError("injected dump failure"))

    def fail_loads(self, error: Exception | None = None) -> None:
        """Make load_state() raise."""
        self._load_error = error or LoadError("injected load failure")

    async def wait_for_dumps(self, count: int, timeout: float = 5.0) -> bool:
        """Wait until at least `count` dumps have started (testing helper).

        Returns:
            True if count reached, False if timeout
        """
        start = time.time()
        while time.time() - start < timeout:
            if self.dump_calls >= count:
                return True
            await asyncio.sleep(0.01)
        return False
