"""Tests for newline-delimited framing, the message queue and the socket session."""

import asyncio

import pytest

from llmws.backends.socket_session import MessageQueue, SocketSession, parse_frame_lines
from llmws.core.types import ConnectTimeoutError, ReadTimeoutError, SocketClosedError

from conftest import silent_behaviour


class TestParseFrameLines:
    def test_multiple_lines_in_one_payload(self):
        raw = '{"type": "token", "data": "a"}\r\n\n{"type": "token", "data": "b"}\n'
        assert [m["data"] for m in parse_frame_lines(raw)] == ["a", "b"]

    def test_invalid_and_non_object_lines_dropped(self):
        raw = 'not json\n[1, 2]\n"str"\n{"type": "done"}'
        assert parse_frame_lines(raw) == [{"type": "done"}]


class TestMessageQueue:
    """Buffering, deadlines and sticky failure."""

    @pytest.mark.asyncio
    async def test_buffered_message_returned_immediately(self):
        queue = MessageQueue()
        queue.feed('{"type": "a"}\n{"type": "b"}')
        assert (await queue.next(0.01))["type"] == "a"
        assert (await queue.next(0.01))["type"] == "b"

    @pytest.mark.asyncio
    async def test_waiter_resolved_by_later_feed(self):
        queue = MessageQueue()
        pending = asyncio.create_task(queue.next(1.0))
        await asyncio.sleep(0)
        queue.feed('{"type": "late"}')
        assert (await pending)["type"] == "late"

    @pytest.mark.asyncio
    async def test_timeout(self):
        queue = MessageQueue()
        with pytest.raises(ReadTimeoutError):
            await queue.next(0.05)

    @pytest.mark.asyncio
    async def test_first_error_is_sticky(self):
        queue = MessageQueue()
        pending = asyncio.create_task(queue.next(1.0))
        await asyncio.sleep(0)
        first = SocketClosedError("first")
        queue.fail(first)
        queue.fail(SocketClosedError("second"))
        with pytest.raises(SocketClosedError) as exc_info:
            await pending
        assert exc_info.value is first
        with pytest.raises(SocketClosedError) as exc_info:
            await queue.next(1.0)
        assert exc_info.value is first

    @pytest.mark.asyncio
    async def test_buffer_drains_before_error(self):
        queue = MessageQueue()
        queue.feed('{"type": "done"}')
        queue.fail(SocketClosedError("gone"))
        assert (await queue.next(0.01))["type"] == "done"
        with pytest.raises(SocketClosedError):
            await queue.next(0.01)

    @pytest.mark.asyncio
    async def test_timed_out_waiter_does_not_swallow_next_message(self):
        queue = MessageQueue()
        with pytest.raises(ReadTimeoutError):
            await queue.next(0.01)
        queue.feed('{"type": "kept"}')
        assert (await queue.next(0.01))["type"] == "kept"


class TestSocketSession:
    @pytest.mark.asyncio
    async def test_round_trip(self, llmws_server):
        async def echo(conn):
            hello = await conn.recv()
            await conn.send_raw('{"type": "welcome", "echo": %d}\n{"type": "x"}' % len(hello))
            await conn.wait_closed()

        server = await llmws_server(echo)
        async with SocketSession(server.url, connect_timeout=2.0) as sock:
            await sock.send_json({})
            assert await sock.next_message(2.0) == {"type": "welcome", "echo": 0}
            assert await sock.next_message(2.0) == {"type": "x"}
        assert server.received == [{}]

    @pytest.mark.asyncio
    async def test_server_close_fails_pending_read(self, llmws_server):
        async def hang_up(conn):
            await conn.recv()

        server = await llmws_server(hang_up)
        async with SocketSession(server.url, connect_timeout=2.0) as sock:
            await sock.send_json({})
            with pytest.raises(SocketClosedError):
                await sock.next_message(2.0)

    @pytest.mark.asyncio
    async def test_idle_server_times_out(self, llmws_server):
        server = await llmws_server(silent_behaviour())
        async with SocketSession(server.url, connect_timeout=2.0) as sock:
            with pytest.raises(ReadTimeoutError):
                await sock.next_message(0.1)

    @pytest.mark.asyncio
    async def test_connect_refused(self, dead_url):
        with pytest.raises(OSError):
            async with SocketSession(dead_url, connect_timeout=2.0):
                pass

    @pytest.mark.asyncio
    async def test_connect_timeout(self, monkeypatch):
        async def never_connects(self, *args, **kwargs):
            await asyncio.sleep(10)

        monkeypatch.setattr("aiohttp.ClientSession.ws_connect", never_connects)
        with pytest.raises(ConnectTimeoutError):
            async with SocketSession("ws://127.0.0.1:1/", connect_timeout=0.05):
                pass
