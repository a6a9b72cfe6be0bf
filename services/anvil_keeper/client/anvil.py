"""
Anvil chain client over WebSocket JSON-RPC.

This module talks to a running Anvil node through its WebSocket endpoint
(the same port as its HTTP RPC). One connection carries both request/response
calls and the newHeads subscription notifications.

RPC methods used:
    - eth_blockNumber: current block number (hex quantity)
    - anvil_dumpState: full node state as a hex string
    - anvil_loadState: load a state string, returns bool
    - eth_subscribe("newHeads") / eth_unsubscribe: block arrivals

Invariants:
    - Each request id is used once; responses are matched by id
    - A lost connection fails every pending call and every subscription
    - State bytes are the UTF-8 encoding of the string Anvil returned,
      and are passed back verbatim on load

How to change safely:
    - Test against a real `anvil` binary before changing wire handling
    - Keep max_msg_size unlimited, state dumps can be very large
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any

import aiohttp

from .base import (
    ChainConnectionError,
    ChainError,
    ChainTimeoutError,
    DumpError,
    LoadError,
    ProgressEvent,
    ProgressSubscription,
    SubscriptionError,
)

logger = logging.getLogger(__name__)


class JsonRpcError(ChainError):
    """The node answered a call with a JSON-RPC error object."""

    def __init__(self, method: str, code: int | None, message: str) -> None:
        super().__init__(f"{method} failed ({code}): {message}")
        self.method = method
        self.code = code
        self.message = message


def parse_quantity(value: Any) -> int:
    """Parse a JSON-RPC hex quantity ("0x1a") into an int."""
    if isinstance(value, int):
        return value
    if not isinstance(value, str) or not value.startswith("0x"):
        raise ValueError(f"Not a hex quantity: {value!r}")
    return int(value, 16)


class AnvilChainClient:
    """ChainClient implementation for an Anvil node.

    Attributes:
        config: AnvilConfig with endpoint and timeouts

    Example:
        >>> client = AnvilChainClient(AnvilConfig(ws_url="ws://127.0.0.1:8545"))
        >>> await client.connect()
        >>> print(await client.current_progress())
        >>> await client.close()
    """

    def __init__(self, config: Any) -> None:
        """Initialize the client.

        Args:
            config: AnvilConfig instance with connection settings
        """
        self.config = config
        self._session: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader_task: asyncio.Task | None = None
        self._ids = itertools.count(1)
        self._pending: dict[int, tuple[str, asyncio.Future]] = {}
        self._subscriptions: dict[str, ProgressSubscription] = {}

    @property
    def is_connected(self) -> bool:
        """Whether the WebSocket is open."""
        return self._ws is not None and not self._ws.closed

    async def connect(self) -> None:
        """Dial the node, retrying until it is ready.

        Each attempt is bounded by the dial timeout. The node may still be
        starting, so refused connections are retried up to connect_retries.

        Raises:
            ChainConnectionError: If every attempt fails
        """
        if self.is_connected:
            return

        self._session = aiohttp.ClientSession()
        attempts = max(1, self.config.connect_retries)
        last_error: Exception | None = None

        for attempt in range(1, attempts + 1):
            try:
                self._ws = await asyncio.wait_for(
                    self._session.ws_connect(self.config.ws_url, max_msg_size=0),
                    timeout=self.config.dial_timeout_seconds,
                )
                break
            except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
                last_error = e
                logger.debug(
                    "Node not reachable yet",
                    extra={"ws_url": self.config.ws_url, "attempt": attempt, "error": str(e)},
                )
                if attempt < attempts:
                    await asyncio.sleep(self.config.connect_retry_delay_ms / 1000)
        else:
            await self._session.close()
            self._session = None
            raise ChainConnectionError(
                f"Failed to connect to {self.config.ws_url} after {attempts} attempts: {last_error}"
            ) from last_error

        self._reader_task = asyncio.create_task(self._read_loop())
        logger.info("Connected to Anvil", extra={"ws_url": self.config.ws_url})

    async def close(self) -> None:
        """Close the connection, failing anything still waiting on it."""
        if self._ws is not None:
            try:
                await self._ws.close()
            except Exception as e:
                logger.warning(f"Error closing websocket: {e}")
            self._ws = None

        if self._reader_task is not None:
            self._reader_task.cancel()
            await asyncio.gather(self._reader_task, return_exceptions=True)
            self._reader_task = None

        if self._session is not None:
            await self._session.close()
            self._session = None

        self._fail_pending(ChainConnectionError("Client closed"))
        logger.info("Anvil connection closed")

    async def current_progress(self) -> int:
        """Get the current block number."""
        return parse_quantity(await self._call("eth_blockNumber"))

    async def dump_state(self) -> bytes:
        """Dump the node state via anvil_dumpState.

        Raises:
            DumpError: If the call fails or returns something other than a string
        """
        try:
            result = await self._call("anvil_dumpState")
        except ChainError as e:
            raise DumpError(f"anvil_dumpState failed: {e}") from e

        if not isinstance(result, str):
            raise DumpError(f"anvil_dumpState returned {type(result).__name__}, expected str")
        return result.encode("utf-8")

    async def load_state(self, data: bytes) -> bool:
        """Load a state blob via anvil_loadState.

        Raises:
            LoadError: If the call fails or the blob is not valid UTF-8
        """
        try:
            state = data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise LoadError(f"State blob is not valid UTF-8: {e}") from e

        try:
            result = await self._call("anvil_loadState", [state])
        except ChainError as e:
            raise LoadError(f"anvil_loadState failed: {e}") from e
        return bool(result)

    async def subscribe_progress(self) -> ProgressSubscription:
        """Subscribe to newHeads.

        Raises:
            SubscriptionError: If eth_subscribe fails
        """
        try:
            subscription_id = await self._call("eth_subscribe", ["newHeads"])
        except ChainError as e:
            raise SubscriptionError(f"eth_subscribe failed: {e}") from e

        subscription = ProgressSubscription(str(subscription_id), on_unsubscribe=self._unsubscribe)
        self._subscriptions[subscription.subscription_id] = subscription
        logger.info("Subscribed to new blocks", extra={"subscription_id": subscription_id})
        return subscription

    async def _unsubscribe(self, subscription: ProgressSubscription) -> None:
        self._subscriptions.pop(subscription.subscription_id, None)
        if not self.is_connected:
            return
        try:
            await self._call("eth_unsubscribe", [subscription.subscription_id])
        except ChainError as e:
            logger.warning(f"eth_unsubscribe failed: {e}")

    async def _call(self, method: str, params: list[Any] | None = None) -> Any:
        """Send one JSON-RPC request and wait for its response."""
        if not self.is_connected:
            raise ChainConnectionError("Not connected")

        request_id = next(self._ids)
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = (method, future)

        try:
            await self._ws.send_json(
                {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params or []}
            )
            return await asyncio.wait_for(future, timeout=self.config.request_timeout_seconds)
        except asyncio.TimeoutError as e:
            raise ChainTimeoutError(
                f"{method} timed out after {self.config.request_timeout_seconds}s"
            ) from e
        except (aiohttp.ClientError, ConnectionResetError) as e:
            raise ChainConnectionError(f"{method} send failed: {e}") from e
        finally:
            self._pending.pop(request_id, None)

    async def _read_loop(self) -> None:
        """Dispatch incoming frames to pending calls and subscriptions."""
        ws = self._ws
        error: Exception = ChainConnectionError("Connection to node closed")
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        self._dispatch(msg.json())
                    except (ValueError, AttributeError, TypeError) as e:
                        logger.warning(
                            f"Ignoring malformed frame from node: {e}",
                            extra={"frame": str(msg.data)[:200]},
                        )
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    error = ChainConnectionError(f"Websocket error: {ws.exception()}")
                    break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = ChainConnectionError(f"Websocket read failed: {e}")
            logger.error(f"Anvil read loop error: {e}", exc_info=True)

        # Nothing reads the socket any more, so calls must fail fast
        if not ws.closed:
            await ws.close()
        self._fail_pending(error)
        for subscription in list(self._subscriptions.values()):
            subscription.fail(SubscriptionError(str(error)))

    def _dispatch(self, payload: Any) -> None:
        if isinstance(payload, list):
            for item in payload:
                self._dispatch(item)
            return
        if not isinstance(payload, dict):
            logger.warning("Ignoring malformed JSON-RPC frame", extra={"frame": repr(payload)[:200]})
            return

        if payload.get("method") == "eth_subscription":
            self._dispatch_notification(payload.get("params") or {})
            return

        entry = self._pending.get(payload.get("id"))
        if entry is None:
            return
        method, future = entry
        if future.done():
            return

        if payload.get("error") is not None:
            err = payload["error"]
            if isinstance(err, dict):
                code, message = err.get("code"), str(err.get("message", ""))
            else:
                code, message = None, str(err)
            future.set_exception(JsonRpcError(method, code, message))
        else:
            future.set_result(payload.get("result"))

    def _dispatch_notification(self, params: dict[str, Any]) -> None:
        subscription = self._subscriptions.get(str(params.get("subscription")))
        if subscription is None:
            return

        header = params.get("result")
        try:
            if not isinstance(header, dict):
                raise ValueError(f"expected a block header, got {header!r}")
            event = ProgressEvent(
                number=parse_quantity(header.get("number")),
                block_hash=header.get("hash"),
            )
        except ValueError as e:
            subscription.fail(SubscriptionError(f"Malformed newHeads notification: {e}"))
            return
        subscription.deliver(event)

    def _fail_pending(self, error: Exception) -> None:
        for _, future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()
