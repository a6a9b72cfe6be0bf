"""
Integration tests for SnapshotCoordinator with the in-memory node and store.

Tests cover:
- Startup with and without stored state
- Debounced captures and coalescing
- Shutdown drain from idle and during a capture
- Subscription errors, fatal capture errors, drain deadline
- Service wiring with injected collaborators
"""

import asyncio

import pytest

from services.anvil_keeper.client.base import SubscriptionError
from services.anvil_keeper.client.memory import InMemoryChainClient
from services.anvil_keeper.config import ServiceConfig, SnapshotConfig
from services.anvil_keeper.main import Service
from services.anvil_keeper.snapshot.coordinator import SnapshotCoordinator
from services.anvil_keeper.snapshot.errors import CaptureError, DrainTimeoutError
from services.anvil_keeper.snapshot.scheduler import Phase
from services.anvil_keeper.snapshot.worker import SnapshotWorker
from services.anvil_keeper.store.memory import InMemorySnapshotStore


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll until predicate() is true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail("condition not reached in time")
        await asyncio.sleep(0.005)


async def start(coordinator: SnapshotCoordinator) -> asyncio.Task:
    """Run the coordinator until it is subscribed to blocks."""
    task = asyncio.create_task(coordinator.run())
    await asyncio.wait_for(coordinator.wait_subscribed(), timeout=2.0)
    return task


def written_blocks(store: InMemorySnapshotStore) -> list[int]:
    return [InMemoryChainClient.decode_state(blob) for blob in store.writes]


class TestCoordinatorIntegration:
    """Integration tests for SnapshotCoordinator."""

    @pytest.fixture
    def client(self):
        """Simulated node at genesis."""
        return InMemoryChainClient(block_number=0)

    @pytest.fixture
    def store(self):
        """Store already holding a genesis snapshot, so no priming happens."""
        return InMemorySnapshotStore(data=InMemoryChainClient.encode_state(0))

    @pytest.fixture
    def coordinator(self, client, store):
        worker = SnapshotWorker(client, store, max_retries=0)
        return SnapshotCoordinator(client, store, worker=worker)

    @pytest.mark.asyncio
    async def test_startup_without_state_primes_once(self, client):
        """Empty store: one priming capture before the first block is handled."""
        store = InMemorySnapshotStore()
        client.block_number = 17
        await client.connect()
        coordinator = SnapshotCoordinator(client, store)

        task = await start(coordinator)

        assert coordinator.recovery.primed is True
        assert client.dump_calls == 1
        assert written_blocks(store) == [17]
        assert coordinator.state.latest_seen == 17

        coordinator.request_shutdown()
        await asyncio.wait_for(task, timeout=2.0)

    @pytest.mark.asyncio
    async def test_startup_with_state_loads_without_priming(self, client, store, coordinator):
        """Stored snapshot is loaded and no capture happens at startup."""
        await client.connect()

        task = await start(coordinator)

        assert coordinator.recovery.loaded is True
        assert client.loaded == [InMemoryChainClient.encode_state(0)]
        assert client.dump_calls == 0
        assert store.writes == []

        coordinator.request_shutdown()
        await asyncio.wait_for(task, timeout=2.0)

    @pytest.mark.asyncio
    async def test_block_during_capture_is_captured_next(self, client, store, coordinator):
        """1 while idle, 2 while capturing: 2 is captured after 1 completes."""
        await client.connect()
        task = await start(coordinator)
        client.pause_dumps()

        client.emit(1)
        assert await client.wait_for_dumps(1, timeout=2.0)
        client.emit(2)
        await wait_until(lambda: coordinator.state.pending == 2)

        client.resume_dumps()
        await wait_until(lambda: len(store.writes) == 2 and coordinator.state.phase == Phase.IDLE)

        assert written_blocks(store) == [1, 2]
        assert client.max_concurrent_dumps == 1

        coordinator.request_shutdown()
        await asyncio.wait_for(task, timeout=2.0)

    @pytest.mark.asyncio
    async def test_rapid_blocks_coalesce(self, client, store, coordinator):
        """10..13 during a capture: two captures in total, the second for 13."""
        await client.connect()
        task = await start(coordinator)
        client.pause_dumps()

        client.emit(10)
        assert await client.wait_for_dumps(1, timeout=2.0)
        for number in (11, 12, 13):
            client.emit(number)
        await wait_until(lambda: coordinator.state.latest_seen == 13)
        assert coordinator.state.pending == 13

        client.resume_dumps()
        await wait_until(lambda: coordinator.state.phase == Phase.IDLE)

        assert client.dump_calls == 2
        assert coordinator.worker.last_snapshot.number == 13
        assert written_blocks(store) == [10, 13]

        coordinator.request_shutdown()
        await asyncio.wait_for(task, timeout=2.0)

    @pytest.mark.asyncio
    async def test_shutdown_while_idle_captures_latest_seen(self, client):
        """latest_seen=42 and idle: exactly one final capture for 42."""
        client.block_number = 42
        store = InMemorySnapshotStore(data=InMemoryChainClient.encode_state(42))
        await client.connect()
        coordinator = SnapshotCoordinator(client, store)
        task = await start(coordinator)

        coordinator.request_shutdown()
        await asyncio.wait_for(task, timeout=2.0)

        assert client.dump_calls == 1
        assert written_blocks(store) == [42]
        assert coordinator.worker.last_snapshot.final is True
        assert coordinator.state.phase == Phase.TERMINAL

    @pytest.mark.asyncio
    async def test_shutdown_during_capture_waits_and_captures_latest(
        self, client, store, coordinator
    ):
        """In-flight capture finishes, then latest_seen is captured last."""
        await client.connect()
        task = await start(coordinator)
        client.pause_dumps()

        client.emit(5)
        assert await client.wait_for_dumps(1, timeout=2.0)
        client.emit(6)
        client.emit(7)
        await wait_until(lambda: coordinator.state.latest_seen == 7)

        coordinator.request_shutdown()
        await wait_until(lambda: coordinator.state.draining)
        assert not task.done()

        client.resume_dumps()
        await asyncio.wait_for(task, timeout=2.0)

        assert written_blocks(store) == [5, 7]
        last = coordinator.worker.last_snapshot
        assert (last.number, last.final) == (7, True)
        assert client.max_concurrent_dumps == 1

    @pytest.mark.asyncio
    async def test_burst_keeps_mutual_exclusion_and_no_loss(self, client, store, coordinator):
        """A burst of blocks never overlaps captures; shutdown persists the newest."""
        await client.connect()
        task = await start(coordinator)

        for number in range(1, 51):
            client.emit(number)
            if number % 7 == 0:
                await asyncio.sleep(0)
        await wait_until(lambda: coordinator.state.latest_seen == 50)

        coordinator.request_shutdown()
        await asyncio.wait_for(task, timeout=2.0)

        assert client.max_concurrent_dumps == 1
        assert written_blocks(store)[-1] == 50
        assert coordinator.worker.last_snapshot.number == 50
        assert len(store.writes) == client.dump_calls

    @pytest.mark.asyncio
    async def test_subscription_error_is_reported_without_transition(
        self, client, store, coordinator
    ):
        """An error mid-stream is counted and the loop keeps going."""
        await client.connect()
        task = await start(coordinator)

        client.emit(1)
        await wait_until(lambda: coordinator.state.phase == Phase.IDLE and len(store.writes) == 1)
        before = coordinator.state

        client.emit_error(SubscriptionError("connection reset"))
        await wait_until(lambda: coordinator.stats["subscription_errors"] == 1)

        assert coordinator.state == before

        client.emit(2)
        await wait_until(lambda: len(store.writes) == 2)

        coordinator.request_shutdown()
        await asyncio.wait_for(task, timeout=2.0)

    @pytest.mark.asyncio
    async def test_capture_failure_is_fatal(self, client, store, coordinator):
        """A failed capture ends run() with CaptureError."""
        await client.connect()
        task = await start(coordinator)
        client.fail_dumps(1)

        client.emit(1)

        with pytest.raises(CaptureError):
            await asyncio.wait_for(task, timeout=2.0)
        assert store.writes == []

    @pytest.mark.asyncio
    async def test_capture_retry_keeps_running(self, client, store):
        """With retries enabled a transient failure is absorbed."""
        await client.connect()
        worker = SnapshotWorker(client, store, max_retries=2, retry_delay_ms=1)
        coordinator = SnapshotCoordinator(client, store, worker=worker)
        task = await start(coordinator)
        client.fail_dumps(1)

        client.emit(1)
        await wait_until(lambda: len(store.writes) == 1)

        assert coordinator.stats["worker"]["retry_count"] == 1
        coordinator.request_shutdown()
        await asyncio.wait_for(task, timeout=2.0)

    @pytest.mark.asyncio
    async def test_drain_deadline(self, client, store):
        """A final capture that hangs past the deadline raises DrainTimeoutError."""
        await client.connect()
        coordinator = SnapshotCoordinator(client, store, drain_timeout_seconds=0.1)
        task = await start(coordinator)
        client.pause_dumps()

        coordinator.request_shutdown()

        with pytest.raises(DrainTimeoutError):
            await asyncio.wait_for(task, timeout=2.0)
        client.resume_dumps()
        assert store.writes == []

    @pytest.mark.asyncio
    async def test_shutdown_before_subscription(self, client, store, coordinator):
        """A shutdown requested during startup still ends with a final capture."""
        await client.connect()
        coordinator.request_shutdown()

        await asyncio.wait_for(coordinator.run(), timeout=2.0)

        assert written_blocks(store) == [0]
        assert coordinator.state.terminal


class TestServiceIntegration:
    """Service wiring with injected in-memory collaborators."""

    @pytest.mark.asyncio
    async def test_service_runs_until_shutdown(self):
        client = InMemoryChainClient(block_number=3)
        store = InMemorySnapshotStore()
        config = ServiceConfig(snapshot=SnapshotConfig(max_retries=0))
        service = Service(config, client=client, store=store)

        task = asyncio.create_task(service.start())
        await wait_until(lambda: service.coordinator is not None)
        await asyncio.wait_for(service.coordinator.wait_subscribed(), timeout=2.0)

        client.emit(4)
        await wait_until(lambda: len(store.writes) == 2)

        service.request_shutdown()
        await asyncio.wait_for(task, timeout=2.0)
        await service.stop()

        assert written_blocks(store) == [3, 4, 4]
        assert not client.is_connected

    @pytest.mark.asyncio
    async def test_shutdown_requested_before_start(self):
        client = InMemoryChainClient(block_number=8)
        store = InMemorySnapshotStore()
        service = Service(ServiceConfig(), client=client, store=store)

        service.request_shutdown()
        await asyncio.wait_for(service.start(), timeout=2.0)
        await service.stop()

        # Priming capture, then the final capture
        assert written_blocks(store) == [8, 8]
