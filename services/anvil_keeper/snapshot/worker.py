"""
Snapshot worker for anvil-keeper.

The SnapshotWorker performs captures: dump the node state, then write it to
the snapshot store. It takes one request at a time from a depth-1 slot and
hands back a completion that the coordinator must consume before the worker
accepts anything else.

Capture sequence:
    1. client.dump_state()  -> opaque bytes
    2. store.write(bytes)   -> overwrites the single slot
    3. completion(SnapshotInfo)

Invariants:
    - Captures run strictly one after another
    - A completion is consumed before the next request is taken
    - A failed dump is never written; a retry repeats the whole capture
    - Exhausted retries raise CaptureError and end the worker

How to change safely:
    - Mutual exclusion is owned by the scheduler; the slot only detects misuse
    - Keep retries inside capture() so they never overlap another capture
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass
from typing import Any

from ..client.base import ChainClient, ChainError
from ..store.base import SnapshotStore, StoreError
from .errors import CaptureError, WorkerBusyError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SnapshotRequest:
    """A block whose state should be reflected in the next snapshot.

    Attributes:
        number: Block number that triggered the capture
        final: Whether this is the shutdown capture
    """

    number: int
    final: bool = False


@dataclass(frozen=True)
class SnapshotInfo:
    """Information about a persisted snapshot.

    Attributes:
        number: Block number the capture was requested for
        size_bytes: Size of the persisted blob
        checksum: SHA-256 of the persisted blob
        captured_at_ms: When the write finished (Unix ms)
        attempts: Attempts needed, 1 when nothing was retried
        final: Whether this was the shutdown capture
    """

    number: int
    size_bytes: int
    checksum: str
    captured_at_ms: int
    attempts: int = 1
    final: bool = False


class SnapshotWorker:
    """Runs dump-then-persist captures one at a time.

    Attributes:
        client: Chain client to dump from
        store: Snapshot store to write to
        max_retries: Retries per capture before giving up (0 = fail fast)
        retry_delay_ms: Delay before the first retry
        retry_backoff: Multiplier applied to the delay after each retry

    Example:
        >>> worker = SnapshotWorker(client, store)
        >>> task = asyncio.create_task(worker.run())
        >>> worker.submit(SnapshotRequest(42))
        >>> info = await worker.completed()
    """

    def __init__(
        self,
        client: ChainClient,
        store: SnapshotStore,
        max_retries: int = 3,
        retry_delay_ms: int = 500,
        retry_backoff: float = 2.0,
    ) -> None:
        """Initialize the worker.

        Args:
            client: ChainClient instance
            store: SnapshotStore instance
            max_retries: Retries per capture before giving up
            retry_delay_ms: Initial retry delay in milliseconds
            retry_backoff: Delay multiplier between retries
        """
        self.client = client
        self.store = store
        self.max_retries = max_retries
        self.retry_delay_ms = retry_delay_ms
        self.retry_backoff = retry_backoff

        self._requests: asyncio.Queue[SnapshotRequest] = asyncio.Queue(maxsize=1)
        self._completions: asyncio.Queue[SnapshotInfo] = asyncio.Queue(maxsize=1)
        self._running = False
        self._snapshot_count = 0
        self._retry_count = 0
        self._consecutive_failures = 0
        self._last_snapshot: SnapshotInfo | None = None

    def submit(self, request: SnapshotRequest) -> None:
        """Place a request in the slot.

        Raises:
            WorkerBusyError: If a request is already waiting
        """
        try:
            self._requests.put_nowait(request)
        except asyncio.QueueFull:
            raise WorkerBusyError(
                f"Snapshot request for block {request.number} submitted while another is waiting"
            ) from None

    async def completed(self) -> SnapshotInfo:
        """Wait for and consume the next completion."""
        info = await self._completions.get()
        self._completions.task_done()
        return info

    async def run(self) -> None:
        """Process requests until cancelled.

        Raises:
            CaptureError: If a capture fails after all retries
        """
        if self._running:
            logger.warning("Snapshot worker already running")
            return

        self._running = True
        logger.info("Starting snapshot worker", extra={"max_retries": self.max_retries})

        try:
            while True:
                request = await self._requests.get()
                info = await self.capture(request.number, final=request.final)

                # Rendezvous: wait until the coordinator has taken the completion
                await self._completions.put(info)
                await self._completions.join()

        except asyncio.CancelledError:
            logger.info("Snapshot worker cancelled")
            raise
        except CaptureError as e:
            logger.error(f"Snapshot worker stopped: {e}", exc_info=True)
            raise
        finally:
            self._running = False

    async def capture(self, number: int, final: bool = False) -> SnapshotInfo:
        """Dump the node state and persist it.

        Also used directly by startup recovery before run() is started.

        Args:
            number: Block number the capture is for
            final: Whether this is the shutdown capture

        Returns:
            SnapshotInfo for the persisted blob

        Raises:
            CaptureError: If every attempt failed
        """
        delay = self.retry_delay_ms / 1000
        attempts = self.max_retries + 1

        for attempt in range(1, attempts + 1):
            try:
                data = await self.client.dump_state()
                await self.store.write(data)
                break
            except (ChainError, StoreError) as e:
                self._consecutive_failures += 1
                if attempt == attempts:
                    raise CaptureError(number, attempt, e) from e

                self._retry_count += 1
                logger.warning(
                    f"Snapshot capture failed, retrying in {delay:.2f}s: {e}",
                    extra={"block": number, "attempt": attempt, "max_retries": self.max_retries},
                )
                await asyncio.sleep(delay)
                delay *= self.retry_backoff

        info = SnapshotInfo(
            number=number,
            size_bytes=len(data),
            checksum=f"sha256:{hashlib.sha256(data).hexdigest()}",
            captured_at_ms=int(time.time() * 1000),
            attempts=attempt,
            final=final,
        )

        self._consecutive_failures = 0
        self._snapshot_count += 1
        self._last_snapshot = info
        logger.info(
            f"Captured snapshot at block {number}",
            extra={
                "block": number,
                "size_bytes": info.size_bytes,
                "attempts": attempt,
                "final": final,
                "store": self.store.describe(),
            },
        )
        return info

    @property
    def last_snapshot(self) -> SnapshotInfo | None:
        """The most recent successful capture."""
        return self._last_snapshot

    @property
    def stats(self) -> dict[str, Any]:
        """Get worker statistics."""
        return {
            "running": self._running,
            "snapshot_count": self._snapshot_count,
            "retry_count": self._retry_count,
            "degraded": self._consecutive_failures > 0,
            "last_snapshot_block": self._last_snapshot.number if self._last_snapshot else None,
        }
