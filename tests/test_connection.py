"""Tests for the per-guild connection state machine and event wiring."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from structlog.testing import capture_logs

from conftest import STRANGER_ID, FakeClient, make_guild
from guildwire.connection import ConnectionEvent, ConnectionState, GuildConnection
from guildwire.dispatcher import OutcomeKind
from guildwire.exceptions import ConnectionFault


def _connection(registry, dispatcher, client=None, guild=None):
    return GuildConnection(guild or make_guild(), client or FakeClient(), registry, dispatcher)


async def _started(conn):
    """Run conn.start() in a task and wait until it is connected."""
    task = asyncio.create_task(conn.start())
    for _ in range(20):
        if conn.state is ConnectionState.CONNECTED:
            break
        await asyncio.sleep(0)
    return task


class TestStateMachine:

    def test_constructed_and_bound(self, registry, dispatcher):
        client = FakeClient()
        conn = _connection(registry, dispatcher, client)
        assert conn.state is ConnectionState.CONSTRUCTED
        assert client.connection is conn
        assert conn.guild_id == 1

    @pytest.mark.asyncio
    async def test_start_connects_and_stop_disconnects(self, registry, dispatcher):
        conn = _connection(registry, dispatcher)
        task = await _started(conn)
        assert conn.state is ConnectionState.CONNECTED

        await conn.stop()
        await asyncio.wait_for(task, timeout=1)
        assert conn.state is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_reconnect_cycle(self, registry, dispatcher):
        conn = _connection(registry, dispatcher)
        task = await _started(conn)

        conn.mark_reconnecting()
        assert conn.state is ConnectionState.RECONNECTING
        conn.mark_connected()
        assert conn.state is ConnectionState.CONNECTED

        await conn.stop()
        await asyncio.wait_for(task, timeout=1)

    @pytest.mark.asyncio
    async def test_no_reconnect_after_stop(self, registry, dispatcher):
        conn = _connection(registry, dispatcher)
        task = await _started(conn)
        await conn.stop()
        await asyncio.wait_for(task, timeout=1)

        conn.mark_reconnecting()
        conn.mark_connected()
        assert conn.state is ConnectionState.DISCONNECTED

    def test_reconnecting_only_from_connected(self, registry, dispatcher):
        conn = _connection(registry, dispatcher)
        conn.mark_reconnecting()
        assert conn.state is ConnectionState.CONSTRUCTED

    @pytest.mark.asyncio
    async def test_start_after_stop_is_skipped(self, registry, dispatcher):
        client = FakeClient()
        conn = _connection(registry, dispatcher, client)
        await conn.stop()
        await conn.start()
        assert client.sessions == 0
        assert conn.state is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_stop_before_start_and_twice(self, registry, dispatcher):
        client = FakeClient()
        conn = _connection(registry, dispatcher, client)
        await conn.stop()
        await conn.stop()
        assert client.close_calls == 1
        assert conn.stop_requested

    @pytest.mark.asyncio
    async def test_login_failure_raises_connection_fault(self, registry, dispatcher):
        client = FakeClient(fail=RuntimeError("401 Unauthorized"))
        conn = _connection(registry, dispatcher, client)

        with pytest.raises(ConnectionFault) as exc_info:
            await conn.start()

        assert exc_info.value.guild_id == 1
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert exc_info.value.is_retryable
        assert conn.state is ConnectionState.DISCONNECTED


class TestEvents:

    @pytest.mark.asyncio
    async def test_ready_emitted_with_connection(self, registry, dispatcher):
        conn = _connection(registry, dispatcher)
        ready = AsyncMock()
        conn.subscribe(ConnectionEvent.READY, ready)

        task = await _started(conn)
        ready.assert_awaited_once_with(conn)

        await conn.stop()
        await asyncio.wait_for(task, timeout=1)

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_block_others(self, registry, dispatcher):
        conn = _connection(registry, dispatcher)
        first = AsyncMock(side_effect=RuntimeError("handler broke"))
        second = AsyncMock()
        conn.subscribe(ConnectionEvent.CLIENT_ERROR, first)
        conn.subscribe(ConnectionEvent.CLIENT_ERROR, second)

        exc = ValueError("gateway")
        with capture_logs() as logs:
            await conn.emit(ConnectionEvent.CLIENT_ERROR, exc, "on_message")

        second.assert_awaited_once_with(conn, exc, "on_message")
        assert any(e["event"] == "event_handler_failed" for e in logs)


class TestMessages:

    def _send_reply(self):
        return {"send": AsyncMock(), "reply": AsyncMock()}

    def test_parse_with_prefix(self, registry, dispatcher):
        conn = _connection(registry, dispatcher)
        inv = conn.parse("!DEPLOY app phone", user_id=5, user_name="u", **self._send_reply())
        assert inv.command.name == "deploy"
        assert inv.args == ["app", "phone"]
        assert inv.prefix == "!"
        assert inv.guild_id == 1

    def test_parse_unknown_command_keeps_token(self, registry, dispatcher):
        conn = _connection(registry, dispatcher)
        inv = conn.parse("!nonexistent", user_id=5, user_name="u", **self._send_reply())
        assert inv.command is None
        assert inv.command_name == "nonexistent"

    def test_parse_plain_chat(self, registry, dispatcher):
        conn = _connection(registry, dispatcher)
        assert conn.parse("hello", user_id=5, user_name="u", **self._send_reply()) is None

    def test_empty_prefix_answers_mentions_only(self, registry, dispatcher):
        conn = _connection(registry, dispatcher, guild=make_guild(prefix=""))
        kwargs = dict(user_id=5, user_name="u", mention_prefixes=("<@42>",), **self._send_reply())
        assert conn.parse("!restart", **kwargs) is None
        inv = conn.parse("<@42> restart", **kwargs)
        assert inv.command.name == "restart"
        assert inv.prefix == "<@42>"

    @pytest.mark.asyncio
    async def test_invocation_before_ready_is_dropped(self, registry):
        dispatcher = MagicMock()
        dispatcher.execute = AsyncMock()
        conn = _connection(registry, dispatcher)
        inv = conn.parse("!echo hi", user_id=5, user_name="u", **self._send_reply())

        assert await conn.process(inv) is None
        dispatcher.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_ready_precedes_command_events(self, registry, dispatcher):
        conn = _connection(registry, dispatcher)
        order = []

        async def on_ready(connection):
            order.append("ready")

        async def on_command(connection, invocation, outcome):
            order.append(outcome.kind.value)

        conn.subscribe(ConnectionEvent.READY, on_ready)
        conn.subscribe(ConnectionEvent.COMMAND_ERRORED, on_command)

        early = conn.parse("!restart", user_id=STRANGER_ID, user_name="u", **self._send_reply())
        await conn.process(early)

        task = await _started(conn)
        late = conn.parse("!restart", user_id=STRANGER_ID, user_name="u", **self._send_reply())
        outcome = await conn.process(late)

        assert outcome.kind is OutcomeKind.PERMISSION_DENIED
        assert order == ["ready", "permission_denied"]

        await conn.stop()
        await asyncio.wait_for(task, timeout=1)
