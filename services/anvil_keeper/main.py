"""
anvil-keeper - Main entry point.

This module starts the keeper with all components:
- Chain client (Anvil WebSocket JSON-RPC)
- Snapshot store (file or S3)
- Snapshot coordinator (recovery, debounced captures, final capture)

Usage:
    python -m services.anvil_keeper.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - Nothing is subscribed before startup recovery has finished
    - SIGINT/SIGTERM trigger a drain, never an abrupt exit
    - Any fatal snapshot error ends the process with status 1

How to change safely:
    - Test the shutdown sequence against a real node
    - Keep signal handling here, the coordinator only knows request_shutdown()
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

import json_log_formatter

from .client import ChainClient, create_chain_client
from .config import ServiceConfig
from .snapshot import SnapshotCoordinator, SnapshotWorker
from .store import SnapshotStore, create_snapshot_store

logger = logging.getLogger(__name__)


def setup_logging(config: ServiceConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Service configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("aiobotocore").setLevel(logging.WARNING)


class Service:
    """anvil-keeper orchestrator.

    Manages the lifecycle of all components:
    - Chain client connection
    - Snapshot store
    - Snapshot coordinator

    Attributes:
        config: Service configuration
        client: Chain client instance
        store: Snapshot store instance
        coordinator: Snapshot coordinator

    Example:
        >>> service = Service()
        >>> await service.start()  # returns after the final snapshot
        >>> await service.stop()
    """

    def __init__(
        self,
        config: ServiceConfig | None = None,
        client: ChainClient | None = None,
        store: SnapshotStore | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            config: Optional service configuration (loaded from env if not provided)
            client: Optional chain client (built from config if not provided)
            store: Optional snapshot store (built from config if not provided)
        """
        self.config = config or ServiceConfig.from_env()
        self.client = client
        self.store = store
        self.coordinator: SnapshotCoordinator | None = None
        self._running = False
        self._shutdown_requested = False

    async def start(self) -> None:
        """Start the service and run until the final snapshot is persisted."""
        if self._running:
            logger.warning("Service already running")
            return

        logger.info("Starting anvil-keeper")
        self.config.log_config()
        self._running = True

        try:
            self.client = self.client or create_chain_client(self.config)
            await self.client.connect()
            logger.info("Connected to the Anvil process")

            self.store = self.store or create_snapshot_store(self.config)

            worker = SnapshotWorker(
                client=self.client,
                store=self.store,
                max_retries=self.config.snapshot.max_retries,
                retry_delay_ms=self.config.snapshot.retry_delay_ms,
                retry_backoff=self.config.snapshot.retry_backoff,
            )
            self.coordinator = SnapshotCoordinator(
                client=self.client,
                store=self.store,
                worker=worker,
                drain_timeout_seconds=self.config.snapshot.drain_timeout_seconds,
            )
            if self._shutdown_requested:
                self.coordinator.request_shutdown()

            await self.coordinator.run()

        except Exception as e:
            logger.error(f"anvil-keeper failed: {e}", exc_info=True)
            raise

    async def stop(self) -> None:
        """Release connections."""
        if not self._running:
            return

        logger.info("Stopping anvil-keeper")

        if self.client is not None:
            await self.client.close()

        close_store = getattr(self.store, "close", None)
        if close_store is not None:
            await close_store()

        self._running = False
        logger.info("anvil-keeper stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown (final snapshot, then exit)."""
        self._shutdown_requested = True
        if self.coordinator is not None:
            self.coordinator.request_shutdown()


def main() -> None:
    """Main entry point."""
    # Load configuration
    try:
        config = ServiceConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    # Setup logging
    setup_logging(config)

    # Create service
    service = Service(config)

    # Setup signal handlers
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        service.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    # Run service
    exit_code = 0
    try:
        loop.run_until_complete(service.start())
    except Exception:
        exit_code = 1
    finally:
        loop.run_until_complete(service.stop())
        loop.close()

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
