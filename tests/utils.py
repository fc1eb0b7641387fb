import asyncio
import inspect
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

import anyio
from aiohttp import ClientResponse, web
from aiohttp.test_utils import TestClient, TestServer

from aiohttp_mcp_bridge import AppBuilder, BridgeConfig

RPCReply = Callable[[dict[str, Any]], web.Response | Awaitable[web.Response]]


def default_rpc_reply(envelope: dict[str, Any]) -> web.Response:
    return web.json_response({"jsonrpc": "2.0", "id": envelope.get("id"), "result": {"ok": True}})


class FakeUpstream:
    """Upstream backend double with a stream and a JSON-RPC endpoint."""

    def __init__(self) -> None:
        # Chunks written to the stream of a session before it ends
        self.chunks: dict[str, list[bytes]] = {}
        # Sessions whose stream answers with this status
        self.fail_status: dict[str, int] = {}
        # Sessions whose stream answers with a single JSON document
        self.json_answers: dict[str, Any] = {}
        self.json_content_type = "application/json"
        # Sessions whose stream connection is cut after the chunks are written
        self.aborted: set[str] = set()
        # Sessions whose stream stays open until released
        self.held: set[str] = set()
        self.release = asyncio.Event()
        self.rpc_reply: RPCReply = default_rpc_reply
        self.stream_requests: list[str] = []
        self.rpc_requests: list[dict[str, Any]] = []

    def build(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/stream", self.stream_handler)
        app.router.add_post("/jsonrpc", self.rpc_handler)
        return app

    async def stream_handler(self, request: web.Request) -> web.StreamResponse:
        session_id = request.query.get("id", "")
        self.stream_requests.append(session_id)

        if session_id in self.fail_status:
            return web.Response(status=self.fail_status[session_id], text="upstream failure")
        if session_id in self.json_answers:
            return web.json_response(self.json_answers[session_id], content_type=self.json_content_type)

        response = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
        await response.prepare(request)
        for chunk in self.chunks.get(session_id, []):
            await response.write(chunk)
            await asyncio.sleep(0.05)
        if session_id in self.aborted:
            assert request.transport is not None
            request.transport.abort()
            return response
        if session_id in self.held:
            await self.release.wait()
        return response

    async def rpc_handler(self, request: web.Request) -> web.Response:
        envelope = await request.json()
        self.rpc_requests.append(envelope)
        reply = self.rpc_reply(envelope)
        if inspect.isawaitable(reply):
            reply = await reply
        return reply


@dataclass
class BridgeEnv:
    client: TestClient[web.Request, web.Application]
    builder: AppBuilder
    upstream: FakeUpstream


@asynccontextmanager
async def aiohttp_server(app: web.Application) -> AsyncIterator[TestServer]:
    server = TestServer(app)
    await server.start_server()
    yield server
    await server.close()


@asynccontextmanager
async def aiohttp_client(app: web.Application) -> AsyncIterator[TestClient[web.Request, web.Application]]:
    client = TestClient(TestServer(app))
    await client.start_server()
    yield client
    await client.close()


@asynccontextmanager
async def bridge_env(heartbeat_interval: float = 0.1, rpc_timeout: float = 5.0) -> AsyncIterator[BridgeEnv]:
    """Run the bridge against a fake upstream."""
    upstream = FakeUpstream()
    async with aiohttp_server(upstream.build()) as upstream_server:
        base_url = f"http://{upstream_server.host}:{upstream_server.port}"
        config = BridgeConfig(
            upstream_stream_url=f"{base_url}/stream",
            upstream_rpc_url=f"{base_url}/jsonrpc",
            heartbeat_interval=heartbeat_interval,
            rpc_timeout=rpc_timeout,
            server_name="test-bridge",
            server_version="9.9.9",
        )
        builder = AppBuilder(config)
        try:
            async with aiohttp_client(builder.build()) as client:
                yield BridgeEnv(client=client, builder=builder, upstream=upstream)
        finally:
            upstream.release.set()


async def read_event(response: ClientResponse, skip_heartbeats: bool = True, timeout: float = 5.0) -> str:
    """Read the next SSE event block, without its terminating blank line."""
    lines: list[str] = []
    with anyio.fail_after(timeout):
        while True:
            raw = await response.content.readline()
            if not raw:
                raise EOFError("Stream closed")
            line = raw.decode("utf-8").rstrip("\r\n")
            if line:
                lines.append(line)
                continue
            if not lines:
                continue
            if skip_heartbeats and all(item.startswith(":") for item in lines):
                lines = []
                continue
            return "\n".join(lines)


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    with anyio.fail_after(timeout):
        while not predicate():
            await anyio.sleep(0.01)
