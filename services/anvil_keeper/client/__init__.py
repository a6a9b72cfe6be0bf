"""
Chain client abstraction for anvil-keeper.

This module provides the interface to the supervised node:
- Anvil over WebSocket JSON-RPC (production)
- In-memory simulated node (for testing)

Invariants:
    - dump_state() returns opaque bytes owned by the node
    - load_state() distinguishes "rejected" (False) from "failed" (LoadError)
    - Subscription errors never end the event channel by themselves

How to change safely:
    - New backends must implement ChainClient protocol
    - Test dump/load round trips against a real node
"""

from .anvil import AnvilChainClient, JsonRpcError
from .base import (
    ChainClient,
    ChainConnectionError,
    ChainError,
    ChainTimeoutError,
    DumpError,
    LoadError,
    ProgressEvent,
    ProgressSubscription,
    SubscriptionError,
    create_chain_client,
)
from .memory import InMemoryChainClient

__all__ = [
    # Protocol and types
    "ChainClient",
    "ProgressEvent",
    "ProgressSubscription",
    "ChainError",
    "ChainConnectionError",
    "ChainTimeoutError",
    "DumpError",
    "LoadError",
    "SubscriptionError",
    "JsonRpcError",
    # Factory
    "create_chain_client",
    # Implementations
    "AnvilChainClient",
    "InMemoryChainClient",
]
