"""Tests for process-fault handling and owner crash notification."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
import yaml
from structlog.testing import capture_logs

from conftest import FakeClient, SampleCommands, make_guild
from guildwire.config import Config
from guildwire.connection import GuildConnection
from guildwire.crash import CRASH_MESSAGE, CrashNotifier, FaultHandlerRegistry
from guildwire.exceptions import ProcessFault
from guildwire.supervisor import ConnectionSupervisor

OWNER_A = 501
OWNER_B = 502


def _connections(registry, dispatcher, guilds, client):
    return [GuildConnection(g, client, registry, dispatcher) for g in guilds[:1]]


def _terminating():
    return ProcessFault(RuntimeError("fatal"), is_terminating=True)


class TestCrashNotifier:

    @pytest.mark.asyncio
    async def test_non_terminating_fault_does_nothing(self, registry, dispatcher):
        guilds = [make_guild(guild_id=1, owner_id=OWNER_A)]
        client = FakeClient(known_guilds={1}, members={OWNER_A: "owner-a"})
        conns = _connections(registry, dispatcher, guilds, client)
        notifier = CrashNotifier(lambda: conns, guilds)

        await notifier(ProcessFault(RuntimeError("stray"), is_terminating=False))

        assert client.sent == []

    @pytest.mark.asyncio
    async def test_one_message_per_owner(self, registry, dispatcher):
        guilds = [make_guild(guild_id=1, owner_id=OWNER_A)]
        client = FakeClient(known_guilds={1}, members={OWNER_A: "owner-a"})
        conns = _connections(registry, dispatcher, guilds, client)
        notifier = CrashNotifier(lambda: conns, guilds)

        with capture_logs() as logs:
            await notifier(_terminating())

        assert client.sent == [("owner-a", CRASH_MESSAGE)]
        assert any(e["event"] == "crash_notice_sent" for e in logs)

    @pytest.mark.asyncio
    async def test_every_known_guild_notified_in_order(self, registry, dispatcher):
        guilds = [
            make_guild(guild_id=1, owner_id=OWNER_A),
            make_guild(guild_id=2, owner_id=OWNER_B),
            make_guild(guild_id=3, owner_id=OWNER_A),
        ]
        # guild 3 is not visible to the client and is skipped
        client = FakeClient(
            known_guilds={1, 2}, members={OWNER_A: "owner-a", OWNER_B: "owner-b"}
        )
        conns = _connections(registry, dispatcher, guilds, client)
        notifier = CrashNotifier(lambda: conns, guilds, message="down")

        await notifier(_terminating())

        assert client.sent == [("owner-a", "down"), ("owner-b", "down")]

    @pytest.mark.asyncio
    async def test_missing_owner_aborts_remaining_notifications(self, registry, dispatcher):
        guilds = [
            make_guild(guild_id=1, owner_id=OWNER_A),
            make_guild(guild_id=2, owner_id=OWNER_B),
        ]
        client = FakeClient(known_guilds={1, 2}, members={OWNER_B: "owner-b"})
        conns = _connections(registry, dispatcher, guilds, client)
        notifier = CrashNotifier(lambda: conns, guilds)

        with capture_logs() as logs:
            await notifier(_terminating())

        assert client.sent == []
        missing = [e for e in logs if e["event"] == "crash_owner_not_found"]
        assert len(missing) == 1
        assert missing[0]["msg"] == f"Failed to get owner from id {OWNER_A}."

    @pytest.mark.asyncio
    async def test_missing_owner_aborts_other_connections(self, registry, dispatcher):
        guilds = [
            make_guild(guild_id=1, owner_id=OWNER_A),
            make_guild(guild_id=2, owner_id=OWNER_B),
        ]
        first = FakeClient(known_guilds={1})
        second = FakeClient(known_guilds={2}, members={OWNER_B: "owner-b"})
        conns = [
            GuildConnection(guilds[0], first, registry, dispatcher),
            GuildConnection(guilds[1], second, registry, dispatcher),
        ]
        notifier = CrashNotifier(lambda: conns, guilds)

        await notifier(_terminating())

        assert second.sent == []

    @pytest.mark.asyncio
    async def test_send_failure_continues(self, registry, dispatcher):
        guilds = [
            make_guild(guild_id=1, owner_id=OWNER_A),
            make_guild(guild_id=2, owner_id=OWNER_B),
        ]
        client = FakeClient(
            known_guilds={1, 2}, members={OWNER_A: "owner-a", OWNER_B: "owner-b"}
        )
        sent = []

        async def send(member, content):
            if member == "owner-a":
                raise RuntimeError("DMs disabled")
            sent.append(member)

        client.send_direct_message = send
        conns = _connections(registry, dispatcher, guilds, client)
        notifier = CrashNotifier(lambda: conns, guilds)

        with capture_logs() as logs:
            await notifier(_terminating())

        assert sent == ["owner-b"]
        assert any(e["event"] == "crash_notice_failed" for e in logs)

    @pytest.mark.asyncio
    async def test_never_raises(self, registry, dispatcher):
        def broken_snapshot():
            raise RuntimeError("supervisor gone")

        notifier = CrashNotifier(broken_snapshot, [make_guild()])

        with capture_logs() as logs:
            await notifier(_terminating())

        assert any(e["event"] == "crash_notification_failed" for e in logs)

    @pytest.mark.asyncio
    async def test_bounded_by_timeout(self, registry, dispatcher):
        guilds = [make_guild(guild_id=1, owner_id=OWNER_A)]
        client = FakeClient(known_guilds={1})

        async def hang(guild_id, user_id):
            await asyncio.sleep(10)

        client.resolve_member = hang
        conns = _connections(registry, dispatcher, guilds, client)
        notifier = CrashNotifier(lambda: conns, guilds, timeout=0.05)

        with capture_logs() as logs:
            await asyncio.wait_for(notifier(_terminating()), timeout=1)

        failed = [e for e in logs if e["event"] == "crash_notification_failed"]
        assert failed[0]["error_type"] == "TimeoutError"


class TestFaultHandlerRegistry:

    @pytest.mark.asyncio
    async def test_report_logs_then_runs_handlers_in_order(self):
        faults = FaultHandlerRegistry()
        order = []

        async def first(fault):
            order.append(("first", fault.is_terminating))

        async def second(fault):
            order.append(("second", fault.is_terminating))

        faults.register(first)
        faults.register(second)

        with capture_logs() as logs:
            fault = await faults.report(ValueError("bad"), is_terminating=True)

        assert order == [("first", True), ("second", True)]
        assert isinstance(fault, ProcessFault)
        assert str(fault).startswith("ValueError: bad")
        events = [e["event"] for e in logs]
        assert events.index("unhandled_exception_caught") < events.index("unhandled_exception")

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_stop_others(self):
        faults = FaultHandlerRegistry()
        later = AsyncMock()
        faults.register(AsyncMock(side_effect=RuntimeError("handler broke")))
        faults.register(later)

        with capture_logs() as logs:
            await faults.report(ValueError("bad"))

        later.assert_awaited_once()
        assert any(e["event"] == "fault_handler_failed" for e in logs)

    @pytest.mark.asyncio
    async def test_report_accepts_process_fault(self):
        faults = FaultHandlerRegistry()
        original = ProcessFault(KeyError("x"), is_terminating=True)
        assert await faults.report(original) is original

    @pytest.mark.asyncio
    async def test_install_routes_loop_exceptions(self):
        faults = FaultHandlerRegistry()
        handler = AsyncMock()
        faults.register(handler)
        loop = asyncio.get_running_loop()

        faults.install(loop)
        try:
            loop.call_exception_handler({"message": "stray", "exception": ValueError("late")})
            for _ in range(5):
                await asyncio.sleep(0)
        finally:
            faults.uninstall(loop)

        handler.assert_awaited_once()
        fault = handler.await_args.args[0]
        assert fault.is_terminating is False
        assert isinstance(fault.cause, ValueError)
        assert loop.get_exception_handler() is None

    @pytest.mark.asyncio
    async def test_loop_message_without_exception(self):
        faults = FaultHandlerRegistry()
        handler = AsyncMock()
        faults.register(handler)

        with capture_logs() as logs:
            faults._loop_exception_handler(MagicMock(), {"message": "socket warning"})

        handler.assert_not_awaited()
        assert logs[0]["event"] == "async_error"

    @pytest.mark.asyncio
    async def test_exception_escaping_a_callback_is_terminating(self):
        stop = MagicMock()
        faults = FaultHandlerRegistry(on_terminate=stop)
        handler = AsyncMock()
        faults.register(handler)
        loop = asyncio.get_running_loop()

        def explode():
            raise MemoryError("out of memory")

        faults.install(loop)
        try:
            loop.call_soon(explode)
            for _ in range(5):
                await asyncio.sleep(0)
        finally:
            faults.uninstall(loop)

        fault = handler.await_args.args[0]
        assert fault.is_terminating is True
        assert isinstance(fault.cause, MemoryError)
        assert faults.fatal is fault
        stop.assert_called_once_with()

    @pytest.mark.asyncio
    async def test_terminate_hook_runs_after_handlers(self):
        order = []

        async def notify(fault):
            order.append("notify")

        faults = FaultHandlerRegistry(on_terminate=lambda: order.append("stop"))
        faults.register(notify)

        await faults.report(RuntimeError("wedged"), is_terminating=True)

        assert order == ["notify", "stop"]

    @pytest.mark.asyncio
    async def test_only_first_terminating_fault_notifies(self):
        stop = MagicMock()
        faults = FaultHandlerRegistry(on_terminate=stop)
        handler = AsyncMock()
        faults.register(handler)

        first = await faults.report(RuntimeError("first"), is_terminating=True)
        second = await faults.report(RuntimeError("second"), is_terminating=True)

        assert first.is_terminating is True
        assert second.is_terminating is False
        assert faults.fatal is first
        stop.assert_called_once_with()

    @pytest.mark.asyncio
    async def test_transport_error_is_not_terminating(self):
        stop = MagicMock()
        faults = FaultHandlerRegistry(on_terminate=stop)
        handler = AsyncMock()
        faults.register(handler)
        loop = asyncio.get_running_loop()

        faults._loop_exception_handler(loop, {
            "message": "Fatal error on SSL transport",
            "exception": ConnectionResetError("peer reset"),
            "transport": MagicMock(),
        })
        for _ in range(5):
            await asyncio.sleep(0)

        assert handler.await_args.args[0].is_terminating is False
        assert faults.fatal is None
        stop.assert_not_called()


class TestFatalFaultUnderSupervisor:

    @pytest.mark.asyncio
    async def test_background_fault_notifies_owner_then_stops(self, tmp_path):
        (tmp_path / "settings.yaml").write_text(yaml.safe_dump(
            {"guilds": [{"id": 1, "token": "tok", "owner_id": OWNER_A}]}
        ))
        config = Config(config_dir=tmp_path)
        clients = []
        sent = []

        def factory(guild_config, options):
            client = FakeClient(
                guild_config, options,
                known_guilds={guild_config.guild_id},
                members={guild_config.owner_id: "owner-a"},
            )

            async def send(member, content):
                sent.append((member, content, client.is_closed()))

            client.send_direct_message = send
            clients.append(client)
            return client

        listener = MagicMock(start=AsyncMock(), stop=AsyncMock())
        sup = ConnectionSupervisor(
            config, client_factory=factory, listener=listener, groups=(SampleCommands,)
        )
        faults = FaultHandlerRegistry(on_terminate=sup.request_stop)
        faults.register(CrashNotifier(sup.snapshot, config.guilds))
        loop = asyncio.get_running_loop()

        def explode():
            raise MemoryError("heap exhausted")

        faults.install(loop)
        try:
            running = asyncio.create_task(sup.run())
            for _ in range(50):
                await asyncio.sleep(0)
            assert sup.status() == {1: "connected"}

            loop.call_soon(explode)
            await asyncio.wait_for(running, timeout=2)
        finally:
            faults.uninstall(loop)

        # The owner is told while the connection is still open
        assert sent == [("owner-a", CRASH_MESSAGE, False)]
        assert clients[0].close_calls == 1
        assert sup.status() == {1: "disconnected"}
        assert isinstance(faults.fatal.cause, MemoryError)
