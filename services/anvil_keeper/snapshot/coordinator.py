"""
Snapshot coordinator for anvil-keeper.

The SnapshotCoordinator owns the event loop that keeps the stored snapshot
in step with the node. It waits on whichever happens first of:

    - next block from the progress subscription
    - completion from the snapshot worker
    - error from the progress subscription
    - worker failure (fatal capture error)
    - shutdown request

and feeds each one through the scheduler's transition(), then performs the
returned actions (submit a capture, report an error).

Lifecycle:
    1. Startup recovery (load stored state or prime the store)
    2. Start the worker loop
    3. Subscribe to new blocks
    4. Event loop until the final capture completes

Invariants:
    - Only this loop submits work, so at most one capture is outstanding
    - Shutdown waits for the in-flight capture, then captures latest_seen
    - Blocks are no longer read once shutdown has been handled
    - Subscription errors are reported and never stop the loop

How to change safely:
    - Put decisions in scheduler.transition(), keep this module plumbing
    - Test shutdown during an in-flight capture after any change here
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from ..client.base import ChainClient, ProgressSubscription
from ..store.base import SnapshotStore
from .errors import DrainTimeoutError, SnapshotError
from .recovery import RecoveryResult, recover
from .scheduler import (
    Action,
    CaptureCompleted,
    Event,
    Phase,
    ProgressReceived,
    ReportSubscriptionError,
    SchedulerState,
    ShutdownRequested,
    SubmitCapture,
    SubscriptionFailed,
    initial_state,
    transition,
)
from .worker import SnapshotRequest, SnapshotWorker

logger = logging.getLogger(__name__)

# Handling order when several sources are ready in the same wakeup
_SOURCES = ("completion", "progress", "error", "worker", "shutdown")


class SnapshotCoordinator:
    """Debounces block arrivals into snapshot captures.

    Attributes:
        client: Chain client (connected)
        store: Snapshot store
        worker: Snapshot worker performing the captures
        drain_timeout_seconds: Optional deadline for the shutdown drain

    Example:
        >>> coordinator = SnapshotCoordinator(client, store)
        >>> task = asyncio.create_task(coordinator.run())
        >>> coordinator.request_shutdown()
        >>> await task  # returns after the final snapshot is persisted
    """

    def __init__(
        self,
        client: ChainClient,
        store: SnapshotStore,
        worker: SnapshotWorker | None = None,
        drain_timeout_seconds: float | None = None,
    ) -> None:
        """Initialize the coordinator.

        Args:
            client: ChainClient instance, already connected
            store: SnapshotStore instance
            worker: SnapshotWorker (created with defaults if not provided)
            drain_timeout_seconds: Deadline for the shutdown drain, None waits forever
        """
        self.client = client
        self.store = store
        self.worker = worker or SnapshotWorker(client, store)
        self.drain_timeout_seconds = drain_timeout_seconds

        self._state = initial_state()
        self._running = False
        self._recovery: RecoveryResult | None = None
        self._shutdown_event = asyncio.Event()
        self._subscribed = asyncio.Event()
        self._subscription_errors = 0

    @property
    def state(self) -> SchedulerState:
        """Current scheduler state."""
        return self._state

    @property
    def recovery(self) -> RecoveryResult | None:
        """Outcome of startup recovery, once it has run."""
        return self._recovery

    def request_shutdown(self) -> None:
        """Ask the coordinator to drain and stop."""
        self._shutdown_event.set()

    async def wait_subscribed(self) -> None:
        """Wait until recovery is done and blocks are being received."""
        await self._subscribed.wait()

    async def run(self) -> None:
        """Run recovery, then the event loop until the final capture.

        Raises:
            RecoveryError: If stored state could not be loaded
            CaptureError: If a capture failed after its retries
            DrainTimeoutError: If the drain deadline expired
        """
        if self._running:
            logger.warning("Snapshot coordinator already running")
            return

        self._running = True
        subscription: ProgressSubscription | None = None
        worker_task: asyncio.Task | None = None

        try:
            self._recovery = await recover(self.client, self.store, self.worker)
            self._state = initial_state(self._recovery.progress)

            worker_task = asyncio.create_task(self.worker.run())
            subscription = await self.client.subscribe_progress()
            self._subscribed.set()

            await self._event_loop(subscription, worker_task)
            logger.info(
                "Snapshot coordinator stopped",
                extra={"latest_seen": self._state.latest_seen},
            )

        except asyncio.CancelledError:
            logger.info("Snapshot coordinator cancelled")
            raise
        except Exception as e:
            logger.error(f"Snapshot coordinator error: {e}", exc_info=True)
            raise

        finally:
            if subscription is not None:
                await subscription.unsubscribe()
            if worker_task is not None:
                worker_task.cancel()
                await asyncio.gather(worker_task, return_exceptions=True)
            self._running = False

    async def _event_loop(
        self,
        subscription: ProgressSubscription,
        worker_task: asyncio.Task,
    ) -> None:
        loop = asyncio.get_running_loop()
        waiters: dict[str, asyncio.Task] = {}
        deadline: float | None = None

        try:
            while not self._state.terminal:
                self._arm(waiters, subscription, worker_task)

                timeout = None
                if deadline is not None:
                    timeout = max(0.0, deadline - loop.time())

                done, _ = await asyncio.wait(
                    waiters.values(),
                    timeout=timeout,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if not done:
                    raise DrainTimeoutError(
                        f"Final snapshot for block {self._state.latest_seen} not persisted "
                        f"within {self.drain_timeout_seconds}s"
                    )

                for source in _SOURCES:
                    task = waiters.get(source)
                    if task is None or task not in done:
                        continue
                    del waiters[source]
                    self._handle(source, task)
                    if self._state.terminal:
                        break

                if self._state.draining:
                    progress = waiters.pop("progress", None)
                    if progress is not None:
                        progress.cancel()
                    if deadline is None and self.drain_timeout_seconds is not None:
                        deadline = loop.time() + self.drain_timeout_seconds

        finally:
            leftovers = [task for task in waiters.values() if task is not worker_task]
            for task in leftovers:
                task.cancel()
            await asyncio.gather(*leftovers, return_exceptions=True)

    def _arm(
        self,
        waiters: dict[str, asyncio.Task],
        subscription: ProgressSubscription,
        worker_task: asyncio.Task,
    ) -> None:
        """Make sure every source we still listen to has a waiting task."""
        if "completion" not in waiters:
            waiters["completion"] = asyncio.create_task(self.worker.completed())
        if "progress" not in waiters and not self._state.draining:
            waiters["progress"] = asyncio.create_task(subscription.next())
        if "error" not in waiters:
            waiters["error"] = asyncio.create_task(subscription.error())
        if "shutdown" not in waiters and not self._state.draining:
            waiters["shutdown"] = asyncio.create_task(self._shutdown_event.wait())
        if "worker" not in waiters:
            waiters["worker"] = worker_task

    def _handle(self, source: str, task: asyncio.Task) -> None:
        if source == "worker":
            if task.cancelled():
                raise SnapshotError("Snapshot worker was cancelled")
            error = task.exception()
            if error is not None:
                raise error
            raise SnapshotError("Snapshot worker exited unexpectedly")

        result = task.result()
        event: Event
        if source == "completion":
            event = CaptureCompleted(result.number)
        elif source == "progress":
            event = ProgressReceived(result.number)
        elif source == "error":
            event = SubscriptionFailed(result)
        else:
            event = ShutdownRequested()

        self._apply(event)

    def _apply(self, event: Event) -> None:
        previous = self._state.phase
        self._state, actions = transition(self._state, event)

        for action in actions:
            self._execute(action)

        current = self._state.phase
        if current != previous:
            logger.debug(
                "Scheduler transition",
                extra={"from": previous.value, "to": current.value, "event": type(event).__name__},
            )
            if current == Phase.DRAINING:
                logger.info(
                    "Shutdown requested, taking final snapshot",
                    extra={"latest_seen": self._state.latest_seen},
                )
            elif current == Phase.TERMINAL:
                logger.info("Final snapshot persisted", extra={"block": self._state.latest_seen})

    def _execute(self, action: Action) -> None:
        if isinstance(action, SubmitCapture):
            self.worker.submit(SnapshotRequest(action.number, final=action.final))
        elif isinstance(action, ReportSubscriptionError):
            self._subscription_errors += 1
            logger.warning(f"Subscription err: {action.error}")

    @property
    def stats(self) -> dict[str, Any]:
        """Get coordinator statistics."""
        return {
            "running": self._running,
            "phase": self._state.phase.value,
            "latest_seen": self._state.latest_seen,
            "pending": self._state.pending,
            "subscription_errors": self._subscription_errors,
            "worker": self.worker.stats,
        }
