"""
Shared pytest fixtures for the llmws test suite.

Provides:
- ``FakeLLMWSServer``: an in-process aiohttp WebSocket server driven by a
  per-connection behaviour coroutine
- ``llmws_server``: factory fixture starting fake servers, closed on teardown
- ``dead_url``: a ws:// URL on a port nothing listens on
- canned behaviours for the common protocol exchanges
"""

import json
import socket
from typing import Any, Awaitable, Callable, Optional

import pytest
import pytest_asyncio
from aiohttp import WSMsgType, web
from aiohttp.test_utils import TestServer


class ServerConnection:
    """Server side of one client connection."""

    def __init__(self, ws: web.WebSocketResponse, index: int, log: list[dict]) -> None:
        self.ws = ws
        self.index = index
        self._log = log

    async def recv(self) -> dict:
        msg = await self.ws.receive()
        if msg.type != WSMsgType.TEXT:
            raise ConnectionError(f"client went away ({msg.type})")
        payload = json.loads(msg.data)
        self._log.append(payload)
        return payload

    async def send(self, payload: dict) -> None:
        await self.ws.send_str(json.dumps(payload))

    async def send_raw(self, text: str) -> None:
        await self.ws.send_str(text)

    async def wait_closed(self) -> None:
        """Swallow client frames until the client closes the socket."""
        while True:
            msg = await self.ws.receive()
            if msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED,
                            WSMsgType.ERROR):
                return
            if msg.type == WSMsgType.TEXT:
                self._log.append(json.loads(msg.data))


Behaviour = Callable[[ServerConnection], Awaitable[None]]


class FakeLLMWSServer:
    """Scriptable LLMWS server; each connection runs *behaviour*."""

    def __init__(self, behaviour: Behaviour) -> None:
        self.behaviour = behaviour
        self.connections = 0
        self.received: list[dict] = []
        app = web.Application()
        app.router.add_get("/", self._handle)
        self._server = TestServer(app)

    @property
    def url(self) -> str:
        return f"ws://{self._server.host}:{self._server.port}/"

    def inference_frames(self) -> list[dict]:
        return [m for m in self.received if m.get("type") == "inference"]

    async def start(self) -> None:
        await self._server.start_server()

    async def close(self) -> None:
        await self._server.close()

    async def _handle(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        self.connections += 1
        conn = ServerConnection(ws, self.connections, self.received)
        try:
            await self.behaviour(conn)
        except ConnectionError:
            pass
        finally:
            if not ws.closed:
                await ws.close()
        return ws


@pytest_asyncio.fixture
async def llmws_server():
    """Factory: ``server = await llmws_server(behaviour)``."""
    started: list[FakeLLMWSServer] = []

    async def _start(behaviour: Behaviour) -> FakeLLMWSServer:
        server = FakeLLMWSServer(behaviour)
        await server.start()
        started.append(server)
        return server

    yield _start
    for server in started:
        await server.close()


@pytest.fixture
def dead_url() -> str:
    """A ws:// URL whose port was just released, so connecting is refused."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]
    return f"ws://127.0.0.1:{port}/"


# ---------------------------------------------------------------------------
# Canned behaviours
# ---------------------------------------------------------------------------

def streaming_behaviour(tokens: list[str], *, session_id: Optional[str] = "remote-1",
                        tokens_in: int = 5, max_tokens: int = 64,
                        total_tokens: Optional[int] = None,
                        welcome_extra: Optional[dict[str, Any]] = None) -> Behaviour:
    """hello → welcome → inference → start → tokens → done."""

    async def behaviour(conn: ServerConnection) -> None:
        await conn.recv()
        welcome: dict[str, Any] = {"type": "welcome", **(welcome_extra or {})}
        if session_id is not None:
            welcome["session_id"] = session_id
        await conn.send(welcome)
        await conn.recv()
        await conn.send({"type": "start", "tokens_in": tokens_in, "max_tokens": max_tokens})
        for token in tokens:
            await conn.send({"type": "token", "data": token})
        done: dict[str, Any] = {"type": "done"}
        if total_tokens is not None:
            done["total_tokens"] = total_tokens
        await conn.send(done)
        await conn.wait_closed()

    return behaviour


def error_behaviour(message: str) -> Behaviour:
    """hello → welcome → inference → error frame."""

    async def behaviour(conn: ServerConnection) -> None:
        await conn.recv()
        await conn.send({"type": "welcome", "session_id": "remote-err"})
        await conn.recv()
        await conn.send({"type": "error", "message": message})
        await conn.wait_closed()

    return behaviour


def silent_behaviour() -> Behaviour:
    """Accepts the socket and never says anything."""

    async def behaviour(conn: ServerConnection) -> None:
        await conn.wait_closed()

    return behaviour
