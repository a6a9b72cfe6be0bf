"""
Base protocol and types for the chain client abstraction.

This module defines the ChainClient protocol that all node backends must
implement, along with the progress event type, the subscription handle and
the chain error hierarchy.

Invariants:
    - ProgressEvent numbers are delivered in non-decreasing order
    - A subscription never raises from next(); failures go to its error channel
    - dump_state() returns the node's complete state as opaque bytes

How to change safely:
    - Protocol changes require updating all implementations
    - The snapshot byte encoding belongs to the node, never interpret it here
    - Keep load_state() returning bool so "rejected" stays distinct from "failed"
"""

from __future__ import annotations

import asyncio
import logging
from abc import abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..config import ServiceConfig

logger = logging.getLogger(__name__)


class ChainError(Exception):
    """Base exception for chain client operations."""

    pass


class ChainConnectionError(ChainError):
    """Connection to the node failed or was lost."""

    pass


class ChainTimeoutError(ChainError):
    """A node call did not answer in time."""

    pass


class DumpError(ChainError):
    """The node failed to dump its state."""

    pass


class LoadError(ChainError):
    """The node failed to load a state blob."""

    pass


class SubscriptionError(ChainError):
    """The progress subscription reported an error."""

    pass


@dataclass(frozen=True)
class ProgressEvent:
    """A single unit of upstream progress (a block).

    Attributes:
        number: Block number
        block_hash: Block hash, if the node reported one
    """

    number: int
    block_hash: str | None = None

    def __post_init__(self) -> None:
        if self.number < 0:
            raise ValueError(f"Progress number must be non-negative, got {self.number}")

    def __str__(self) -> str:
        return f"block {self.number}"


class ProgressSubscription:
    """Handle for a live progress subscription.

    Events and errors are delivered on two separate channels so a consumer
    can wait on both without one blocking the other.

    Example:
        >>> sub = await client.subscribe_progress()
        >>> event = await sub.next()
        >>> print(event.number)
        >>> await sub.unsubscribe()
    """

    def __init__(
        self,
        subscription_id: str,
        on_unsubscribe: Callable[[ProgressSubscription], Awaitable[None]] | None = None,
    ) -> None:
        self.subscription_id = subscription_id
        self._on_unsubscribe = on_unsubscribe
        self._events: asyncio.Queue[ProgressEvent] = asyncio.Queue()
        self._errors: asyncio.Queue[Exception] = asyncio.Queue()
        self._active = True

    @property
    def active(self) -> bool:
        """Whether the subscription is still delivering."""
        return self._active

    def deliver(self, event: ProgressEvent) -> None:
        """Queue an event for the consumer (producer side)."""
        if self._active:
            self._events.put_nowait(event)

    def fail(self, error: Exception) -> None:
        """Queue an error for the consumer (producer side)."""
        if self._active:
            self._errors.put_nowait(error)

    async def next(self) -> ProgressEvent:
        """Wait for the next progress event."""
        return await self._events.get()

    async def error(self) -> Exception:
        """Wait for the next subscription error."""
        return await self._errors.get()

    def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        return self

    async def __anext__(self) -> ProgressEvent:
        if not self._active and self._events.empty():
            raise StopAsyncIteration
        return await self.next()

    async def unsubscribe(self) -> None:
        """Stop the subscription. Safe to call more than once."""
        if not self._active:
            return
        self._active = False
        if self._on_unsubscribe is not None:
            await self._on_unsubscribe(self)
        logger.debug("Unsubscribed from progress", extra={"subscription_id": self.subscription_id})


@runtime_checkable
class ChainClient(Protocol):
    """Protocol for chain node backends.

    Ordering contract:
        - Progress events are delivered in non-decreasing block order
        - The client does not reorder or deduplicate events

    Example:
        >>> client = AnvilChainClient(config.anvil)
        >>> await client.connect()
        >>> state = await client.dump_state()
    """

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the node.

        Raises:
            ChainConnectionError: If connection fails
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close the connection and release resources."""
        ...

    @abstractmethod
    async def current_progress(self) -> int:
        """Get the node's current block number."""
        ...

    @abstractmethod
    async def dump_state(self) -> bytes:
        """Dump the node's full state.

        Raises:
            DumpError: If the node cannot produce its state
        """
        ...

    @abstractmethod
    async def load_state(self, data: bytes) -> bool:
        """Load a previously dumped state into the node.

        Returns:
            True if the node applied the state, False if it rejected it

        Raises:
            LoadError: If the call itself failed
        """
        ...

    @abstractmethod
    async def subscribe_progress(self) -> ProgressSubscription:
        """Subscribe to new block arrivals.

        Raises:
            SubscriptionError: If the subscription cannot be created
        """
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether currently connected to the node."""
        ...


def create_chain_client(config: ServiceConfig) -> ChainClient:
    """Factory function to create a chain client from configuration.

    Args:
        config: Service configuration

    Returns:
        ChainClient implementation for the configured node
    """
    from .anvil import AnvilChainClient

    return AnvilChainClient(config.anvil)
