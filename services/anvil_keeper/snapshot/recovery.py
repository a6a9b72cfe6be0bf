"""
Startup recovery for anvil-keeper.

Runs once, before the worker loop starts and before subscribing to blocks:

    stored snapshot?
      no  -> prime: capture the node's current state so a snapshot exists
      yes -> load it into the node; a rejected or failed load is fatal

Invariants:
    - Recovery finishes before anything else touches the store
    - After recovery returns, the store holds a snapshot
    - "No data" and "data rejected" are never confused
    - An unreadable store is fatal; only a missing or empty slot primes
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from ..client.base import ChainClient, LoadError
from ..store.base import SnapshotNotFoundError, SnapshotStore
from .errors import RecoveryError
from .worker import SnapshotWorker

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecoveryResult:
    """Outcome of startup recovery.

    Attributes:
        loaded: A stored snapshot was loaded into the node
        primed: No snapshot existed and a priming capture was taken
        progress: Node block number once recovery finished
    """

    loaded: bool
    primed: bool
    progress: int


async def recover(
    client: ChainClient,
    store: SnapshotStore,
    worker: SnapshotWorker,
) -> RecoveryResult:
    """Load persisted state into the node, or prime the store.

    Args:
        client: Connected chain client
        store: Snapshot store
        worker: Worker used for the priming capture (its loop must not be running)

    Returns:
        RecoveryResult describing what happened

    Raises:
        RecoveryError: If a stored snapshot was rejected or could not be loaded
        CaptureError: If the priming capture failed
        StoreError: If the store could not be read (only a missing slot primes)
    """
    try:
        data = await store.read()
    except SnapshotNotFoundError:
        logger.info("No Anvil state found", extra={"store": store.describe()})
        progress = await client.current_progress()
        await worker.capture(progress)
        logger.info("Primed snapshot store", extra={"block": progress})
        return RecoveryResult(loaded=False, primed=True, progress=progress)

    try:
        applied = await client.load_state(data)
    except LoadError as e:
        raise RecoveryError(f"Failed to load the Anvil state from {store.describe()}: {e}") from e

    if not applied:
        raise RecoveryError(f"Anvil rejected the state stored at {store.describe()}")

    progress = await client.current_progress()
    logger.info(
        "Loaded the Anvil state",
        extra={"store": store.describe(), "size_bytes": len(data), "block": progress},
    )
    return RecoveryResult(loaded=True, primed=False, progress=progress)
