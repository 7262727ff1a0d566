"""
WebSocket session and message framing for LLMWS servers.

``MessageQueue`` turns pushed raw text frames into parsed JSON records and
lets the protocol code pull them with a deadline via ``next(timeout)``.
``SocketSession`` owns one aiohttp WebSocket connection: it opens with a
bounded connect timeout, pumps inbound frames into the queue from a reader
task, and closes with a short grace period before tearing the transport down.

Failure is sticky: the first connection error or close is recorded and
re-raised to every pending and future ``next()`` once the buffer is drained.
"""

import asyncio
import contextlib
import json
import logging
import re
from collections import deque
from typing import Any, Optional

import aiohttp

from llmws.core.types import (
    ConnectTimeoutError,
    ReadTimeoutError,
    SocketClosedError,
)

logger = logging.getLogger(__name__)

MAX_PAYLOAD_BYTES = 25 * 1024 * 1024
CLOSE_GRACE_SECONDS = 1.0

_LINE_SPLIT = re.compile(r"\r?\n")


def parse_frame_lines(raw: str) -> list[dict]:
    """Parse newline-delimited JSON.  Blank, invalid and non-object lines are dropped."""
    out: list[dict] = []
    for line in _LINE_SPLIT.split(raw):
        line = line.strip()
        if not line:
            continue
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Dropping unparsable frame line: %s", line[:200])
            continue
        if isinstance(parsed, dict):
            out.append(parsed)
    return out


# ---------------------------------------------------------------------------
# Message queue
# ---------------------------------------------------------------------------

class MessageQueue:
    """Buffer of parsed inbound messages with timeout-bounded consumption."""

    def __init__(self) -> None:
        self._buffer: deque[dict] = deque()
        self._waiters: deque[asyncio.Future] = deque()
        self._terminal_error: Optional[BaseException] = None

    @property
    def terminal_error(self) -> Optional[BaseException]:
        return self._terminal_error

    async def next(self, timeout: float) -> dict:
        """Return the oldest message, waiting up to *timeout* seconds for one."""
        if self._buffer:
            return self._buffer.popleft()
        if self._terminal_error is not None:
            raise self._terminal_error

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            return await asyncio.wait_for(waiter, timeout=max(timeout, 0.001))
        except asyncio.TimeoutError:
            raise ReadTimeoutError(f"LLMWS read timeout ({timeout:.1f}s)") from None
        finally:
            with contextlib.suppress(ValueError):
                self._waiters.remove(waiter)

    def feed(self, raw: str) -> None:
        """Push one raw inbound payload (may hold several lines)."""
        for message in parse_frame_lines(raw):
            self._push(message)

    def _push(self, message: dict) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(message)
                return
        self._buffer.append(message)

    def fail(self, error: BaseException) -> None:
        """Record the terminal error (first one wins) and reject all waiters."""
        if self._terminal_error is None:
            self._terminal_error = error
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_exception(self._terminal_error)


# ---------------------------------------------------------------------------
# Socket session
# ---------------------------------------------------------------------------

class SocketSession:
    """One WebSocket connection to one target.

    Use as ``async with SocketSession(url, connect_timeout=...) as sock:``.
    """

    def __init__(self, url: str, *, connect_timeout: float,
                 max_payload: int = MAX_PAYLOAD_BYTES,
                 close_grace: float = CLOSE_GRACE_SECONDS) -> None:
        self.url = url
        self._connect_timeout = connect_timeout
        self._max_payload = max_payload
        self._close_grace = close_grace
        self._http: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._reader: Optional[asyncio.Task] = None
        self.queue = MessageQueue()

    async def __aenter__(self) -> "SocketSession":
        await self.open()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def open(self) -> None:
        self._http = aiohttp.ClientSession()
        try:
            self._ws = await asyncio.wait_for(
                self._http.ws_connect(
                    self.url,
                    max_msg_size=self._max_payload,
                    autoping=True,
                ),
                timeout=max(self._connect_timeout, 0.001),
            )
        except asyncio.TimeoutError:
            await self._http.close()
            raise ConnectTimeoutError(
                f"LLMWS connect timeout ({self._connect_timeout:.1f}s)"
            ) from None
        except BaseException:
            await self._http.close()
            raise
        self._reader = asyncio.create_task(self._pump(), name=f"llmws-reader:{self.url}")
        logger.debug("Connected to %s", self.url)

    async def send_json(self, payload: dict) -> None:
        if self._ws is None or self._ws.closed:
            raise self.queue.terminal_error or SocketClosedError("LLMWS socket is not open")
        await self._ws.send_str(json.dumps(payload))

    async def next_message(self, timeout: float) -> dict:
        return await self.queue.next(timeout)

    async def _pump(self) -> None:
        ws = self._ws
        assert ws is not None
        try:
            while True:
                msg = await ws.receive()
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self.queue.feed(msg.data)
                elif msg.type == aiohttp.WSMsgType.BINARY:
                    self.queue.feed(msg.data.decode("utf-8", errors="replace"))
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    self.queue.fail(SocketClosedError(
                        f"LLMWS socket error: {ws.exception() or msg.data}"))
                    return
                elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING,
                                  aiohttp.WSMsgType.CLOSED):
                    reason = msg.extra or ""
                    self.queue.fail(SocketClosedError(
                        f"LLMWS socket closed ({ws.close_code}): {reason}"))
                    return
        except asyncio.CancelledError:
            self.queue.fail(SocketClosedError("LLMWS socket closed by client"))
            raise
        except Exception as exc:  # noqa: BLE001
            self.queue.fail(exc)

    async def close(self) -> None:
        """Close gracefully; force the transport down after the grace period."""
        ws, http, reader = self._ws, self._http, self._reader
        self._ws = self._http = self._reader = None
        try:
            if ws is not None and not ws.closed:
                try:
                    await asyncio.wait_for(ws.close(), timeout=self._close_grace)
                except asyncio.TimeoutError:
                    logger.debug("Close handshake with %s timed out, terminating", self.url)
                except Exception as exc:  # noqa: BLE001
                    logger.debug("Error closing %s: %s", self.url, exc)
        finally:
            if reader is not None:
                reader.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await reader
            if http is not None:
                await http.close()
