"""
Integration tests for AnvilChainClient against a local JSON-RPC WebSocket node.

The fake node speaks the subset of the Anvil RPC the keeper uses, served
with aiohttp on a loopback port.

Tests cover:
- Connecting and dial retries
- Block number, dump and load calls
- newHeads notifications and unsubscribe
- JSON-RPC errors and call timeouts
- Malformed frames from the node
- Connection loss reaching subscriptions and pending calls
"""

import asyncio
import json

import pytest
from aiohttp import WSMsgType, web
from aiohttp.test_utils import unused_port

from services.anvil_keeper.client.anvil import AnvilChainClient, JsonRpcError, parse_quantity
from services.anvil_keeper.client.base import (
    ChainConnectionError,
    ChainTimeoutError,
    DumpError,
    LoadError,
    SubscriptionError,
)
from services.anvil_keeper.config import AnvilConfig


class FakeAnvilNode:
    """Minimal Anvil stand-in: eth_blockNumber, anvil_*State, newHeads."""

    def __init__(self) -> None:
        self.port = unused_port()
        self.block = 0
        self.state = "0x1f8b0800"
        self.accept_loads = True
        self.errors: dict[str, str] = {}
        self.bare_errors: dict[str, str] = {}
        self.silent: set[str] = set()
        self.methods: list[str] = []
        self.subscriptions: dict[str, web.WebSocketResponse] = {}
        self.sockets: list[web.WebSocketResponse] = []
        self._runner: web.AppRunner | None = None

    @property
    def ws_url(self) -> str:
        return f"ws://127.0.0.1:{self.port}"

    async def __aenter__(self) -> "FakeAnvilNode":
        app = web.Application()
        app.router.add_get("/", self._handle)
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, "127.0.0.1", self.port)
        await site.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.drop_connections()
        await self._runner.cleanup()

    async def send_raw(self, frame: str) -> None:
        """Push a raw text frame to every connected client."""
        for ws in list(self.sockets):
            await ws.send_str(frame)

    async def drop_connections(self) -> None:
        for ws in list(self.sockets):
            await ws.close()
        self.sockets.clear()
        self.subscriptions.clear()

    async def mine(self) -> None:
        """Advance one block and notify every subscriber."""
        self.block += 1
        header = {"number": hex(self.block), "hash": f"0x{self.block:064x}"}
        for sub_id, ws in list(self.subscriptions.items()):
            await ws.send_json(
                {
                    "jsonrpc": "2.0",
                    "method": "eth_subscription",
                    "params": {"subscription": sub_id, "result": header},
                }
            )

    async def _handle(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(max_msg_size=0)
        await ws.prepare(request)
        self.sockets.append(ws)
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                await self._reply(ws, msg.json())
        return ws

    async def _reply(self, ws: web.WebSocketResponse, request: dict) -> None:
        method = request["method"]
        params = request.get("params") or []
        self.methods.append(method)
        if method in self.silent:
            return

        response = {"jsonrpc": "2.0", "id": request["id"]}
        if method in self.bare_errors:
            response["error"] = self.bare_errors[method]
        elif method in self.errors:
            response["error"] = {"code": -32603, "message": self.errors[method]}
        elif method == "eth_blockNumber":
            response["result"] = hex(self.block)
        elif method == "anvil_dumpState":
            response["result"] = self.state
        elif method == "anvil_loadState":
            if self.accept_loads:
                self.state = params[0]
            response["result"] = self.accept_loads
        elif method == "eth_subscribe":
            sub_id = hex(len(self.subscriptions) + 0x100)
            self.subscriptions[sub_id] = ws
            response["result"] = sub_id
        elif method == "eth_unsubscribe":
            response["result"] = self.subscriptions.pop(params[0], None) is not None
        else:
            response["error"] = {"code": -32601, "message": "Method not found"}
        await ws.send_json(response)


def make_config(ws_url: str, **overrides) -> AnvilConfig:
    settings = {
        "ws_url": ws_url,
        "dial_timeout_seconds": 1.0,
        "connect_retries": 1,
        "connect_retry_delay_ms": 10,
        "request_timeout_seconds": 2.0,
    }
    settings.update(overrides)
    return AnvilConfig(**settings)


class TestParseQuantity:
    """Tests for parse_quantity()."""

    def test_hex(self):
        assert parse_quantity("0x1a") == 26

    def test_rejects_decimal_string(self):
        with pytest.raises(ValueError):
            parse_quantity("26")


class TestAnvilChainClient:
    """Tests for AnvilChainClient."""

    @pytest.mark.asyncio
    async def test_connect_and_block_number(self):
        async with FakeAnvilNode() as node:
            node.block = 26
            client = AnvilChainClient(make_config(node.ws_url))

            await client.connect()
            try:
                assert client.is_connected
                assert await client.current_progress() == 26
            finally:
                await client.close()

            assert not client.is_connected

    @pytest.mark.asyncio
    async def test_dump_and_load_pass_state_verbatim(self):
        async with FakeAnvilNode() as node:
            client = AnvilChainClient(make_config(node.ws_url))
            await client.connect()
            try:
                assert await client.dump_state() == b"0x1f8b0800"

                assert await client.load_state(b"0xabcdef") is True
                assert node.state == "0xabcdef"
            finally:
                await client.close()

    @pytest.mark.asyncio
    async def test_large_state_round_trip(self):
        """Dumps bigger than aiohttp's default frame limit still go through."""
        async with FakeAnvilNode() as node:
            node.state = "0x" + "ab" * (3 * 1024 * 1024)
            client = AnvilChainClient(make_config(node.ws_url))
            await client.connect()
            try:
                blob = await client.dump_state()
                assert len(blob) == len(node.state)
                assert await client.load_state(blob) is True
            finally:
                await client.close()

    @pytest.mark.asyncio
    async def test_rejected_load_returns_false(self):
        async with FakeAnvilNode() as node:
            node.accept_loads = False
            client = AnvilChainClient(make_config(node.ws_url))
            await client.connect()
            try:
                assert await client.load_state(b"0xabcdef") is False
            finally:
                await client.close()

    @pytest.mark.asyncio
    async def test_rpc_errors_are_mapped(self):
        async with FakeAnvilNode() as node:
            node.errors["anvil_dumpState"] = "state too large"
            node.errors["anvil_loadState"] = "invalid state"
            client = AnvilChainClient(make_config(node.ws_url))
            await client.connect()
            try:
                with pytest.raises(DumpError) as dump_info:
                    await client.dump_state()
                assert isinstance(dump_info.value.__cause__, JsonRpcError)
                assert dump_info.value.__cause__.code == -32603

                with pytest.raises(LoadError):
                    await client.load_state(b"0x00")
            finally:
                await client.close()

    @pytest.mark.asyncio
    async def test_non_utf8_blob_is_load_error(self):
        async with FakeAnvilNode() as node:
            client = AnvilChainClient(make_config(node.ws_url))
            await client.connect()
            try:
                with pytest.raises(LoadError):
                    await client.load_state(b"\xff\xfe")
                assert "anvil_loadState" not in node.methods
            finally:
                await client.close()

    @pytest.mark.asyncio
    async def test_call_timeout(self):
        async with FakeAnvilNode() as node:
            node.silent.add("eth_blockNumber")
            client = AnvilChainClient(make_config(node.ws_url, request_timeout_seconds=0.1))
            await client.connect()
            try:
                with pytest.raises(ChainTimeoutError):
                    await client.current_progress()
            finally:
                await client.close()

    @pytest.mark.asyncio
    async def test_new_heads_are_delivered(self):
        async with FakeAnvilNode() as node:
            client = AnvilChainClient(make_config(node.ws_url))
            await client.connect()
            try:
                subscription = await client.subscribe_progress()
                for _ in range(3):
                    await node.mine()

                events = [
                    await asyncio.wait_for(subscription.next(), timeout=1.0) for _ in range(3)
                ]
                assert [event.number for event in events] == [1, 2, 3]
                assert events[0].block_hash == f"0x{1:064x}"

                await subscription.unsubscribe()
                assert "eth_unsubscribe" in node.methods
                assert node.subscriptions == {}
            finally:
                await client.close()

    @pytest.mark.asyncio
    async def test_connection_loss_reaches_subscription(self):
        async with FakeAnvilNode() as node:
            client = AnvilChainClient(make_config(node.ws_url))
            await client.connect()
            try:
                subscription = await client.subscribe_progress()

                await node.drop_connections()

                error = await asyncio.wait_for(subscription.error(), timeout=1.0)
                assert isinstance(error, SubscriptionError)
                with pytest.raises(ChainConnectionError):
                    await client.current_progress()
            finally:
                await client.close()

    @pytest.mark.asyncio
    async def test_malformed_frames_do_not_stop_the_client(self):
        """Bad frames are reported or skipped; blocks and calls keep working."""
        async with FakeAnvilNode() as node:
            client = AnvilChainClient(make_config(node.ws_url, request_timeout_seconds=1.0))
            await client.connect()
            try:
                subscription = await client.subscribe_progress()

                params = {"subscription": subscription.subscription_id, "result": "0x5"}
                await node.send_raw(
                    json.dumps({"jsonrpc": "2.0", "method": "eth_subscription", "params": params})
                )
                await node.send_raw("not json at all")
                await node.send_raw(json.dumps({"jsonrpc": "2.0", "method": "eth_subscription"}))

                error = await asyncio.wait_for(subscription.error(), timeout=1.0)
                assert isinstance(error, SubscriptionError)

                await node.mine()
                event = await asyncio.wait_for(subscription.next(), timeout=1.0)
                assert event.number == 1

                assert client.is_connected
                assert await client.current_progress() == 1
            finally:
                await client.close()

    @pytest.mark.asyncio
    async def test_bare_string_rpc_error_fails_the_call(self):
        """A JSON-RPC error that is not an object still fails the call at once."""
        async with FakeAnvilNode() as node:
            node.bare_errors["anvil_dumpState"] = "out of memory"
            client = AnvilChainClient(make_config(node.ws_url, request_timeout_seconds=1.0))
            await client.connect()
            try:
                with pytest.raises(DumpError) as dump_info:
                    await client.dump_state()
                assert isinstance(dump_info.value.__cause__, JsonRpcError)
                assert dump_info.value.__cause__.message == "out of memory"
                assert client.is_connected
            finally:
                await client.close()

    @pytest.mark.asyncio
    async def test_lost_connection_fails_calls_fast(self):
        """After the node goes away calls raise ChainConnectionError, not a timeout."""
        async with FakeAnvilNode() as node:
            client = AnvilChainClient(make_config(node.ws_url, request_timeout_seconds=5.0))
            await client.connect()
            try:
                subscription = await client.subscribe_progress()
                await node.drop_connections()
                await asyncio.wait_for(subscription.error(), timeout=1.0)

                assert not client.is_connected
                with pytest.raises(ChainConnectionError):
                    await asyncio.wait_for(client.current_progress(), timeout=1.0)
            finally:
                await client.close()

    @pytest.mark.asyncio
    async def test_dial_retries_until_node_is_up(self):
        node = FakeAnvilNode()
        client = AnvilChainClient(
            make_config(node.ws_url, connect_retries=50, connect_retry_delay_ms=20)
        )

        connecting = asyncio.create_task(client.connect())
        await asyncio.sleep(0.1)
        async with node:
            await asyncio.wait_for(connecting, timeout=3.0)
            try:
                assert client.is_connected
            finally:
                await client.close()

    @pytest.mark.asyncio
    async def test_unreachable_node(self):
        config = make_config(
            f"ws://127.0.0.1:{unused_port()}",
            dial_timeout_seconds=0.2,
            connect_retries=2,
            connect_retry_delay_ms=10,
        )
        client = AnvilChainClient(config)

        with pytest.raises(ChainConnectionError, match="after 2 attempts"):
            await client.connect()

        assert not client.is_connected
