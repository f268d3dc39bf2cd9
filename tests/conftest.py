"""Shared fakes for guildwire tests."""

import asyncio
from typing import List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from guildwire.commands.base import (
    BaseCommandGroup,
    CommandInvocation,
    CommandRegistry,
    GroupContext,
    Parameter,
)
from guildwire.config import GuildConfig
from guildwire.connection import ConnectionEvent
from guildwire.dispatcher import Dispatcher

OWNER_ID = 1000
STRANGER_ID = 2000


class FakeClient:
    """In-memory ChatClient.

    run_session() marks the connection connected, raises READY and then
    blocks until close() is called. ``fail`` makes the login raise.
    """

    def __init__(self, guild_config=None, options=None, *, fail=None,
                 known_guilds=(), members=None, auto_ready=True):
        self.guild_config = guild_config
        self.options = options
        self.connection = None
        self.fail = fail
        self.auto_ready = auto_ready
        self.known_guilds = set(known_guilds)
        self.members = dict(members or {})
        self.sent: List[tuple] = []
        self.sessions = 0
        self.close_calls = 0
        self._closed = False
        self._close_event: Optional[asyncio.Event] = None

    def bind(self, connection):
        self.connection = connection

    async def run_session(self):
        self.sessions += 1
        if self.fail is not None:
            raise self.fail
        self._close_event = asyncio.Event()
        if self.auto_ready:
            self.connection.mark_connected()
            await self.connection.emit(ConnectionEvent.READY)
        if not self._closed:
            await self._close_event.wait()

    async def close(self):
        self.close_calls += 1
        self._closed = True
        if self._close_event is not None:
            self._close_event.set()

    def is_closed(self):
        return self._closed

    def knows_guild(self, guild_id):
        return guild_id in self.known_guilds

    async def resolve_member(self, guild_id, user_id):
        return self.members.get(user_id)

    async def send_direct_message(self, member, content):
        self.sent.append((member, content))

    async def describe(self):
        return {
            "application": "guildwire-test",
            "description": "",
            "owners": ["owner#0001"],
            "user_id": 42,
            "user_name": "guildwire#0042",
        }


class SampleCommands(BaseCommandGroup):
    """Small command group covering every dispatch path."""

    name = "sample"

    def get_commands(self):
        return [
            self.command("echo", self.echo, (Parameter("text"),), checks=()),
            self.command(
                "deploy",
                self.deploy,
                (Parameter("app"), Parameter("device", optional=True)),
            ),
            self.command("repeat", self.repeat, (Parameter("times", int),), checks=()),
            self.command("restart", self.restart),
            self.command("boom", self.boom, checks=()),
        ]

    def get_triggers(self):
        return {"ping": self.ping}

    async def echo(self, invocation, text):
        return text

    async def deploy(self, invocation, app, device=None):
        return f"deployed {app} to {device or 'all'}"

    async def repeat(self, invocation, times):
        return "x" * times

    async def restart(self, invocation):
        return "restarting"

    async def boom(self, invocation):
        raise RuntimeError()

    async def ping(self, payload):
        return {"pong": payload.get("value")}


def make_guild(guild_id=1, owner_id=OWNER_ID, prefix="!", token="token-1", admins=()):
    return GuildConfig(
        guild_id=guild_id,
        token=token,
        owner_id=owner_id,
        command_prefix=prefix,
        admin_ids=tuple(admins),
    )


def make_registry(*groups) -> CommandRegistry:
    ctx = GroupContext(config=MagicMock(), runner=MagicMock())
    registry = CommandRegistry()
    for group_cls in groups or (SampleCommands,):
        registry.register(group_cls(ctx))
    registry.freeze()
    return registry


def make_invocation(registry, content, *, user_id=OWNER_ID, guild=None, prefix="!"):
    """Parse ``content`` into an invocation with AsyncMock send/reply."""
    guild = guild or make_guild(prefix=prefix)
    parsed = registry.parse(content, [prefix])
    assert parsed is not None, content
    used_prefix, token, args = parsed
    return CommandInvocation(
        user_id=user_id,
        user_name=f"user{user_id}",
        content=content,
        command_name=token,
        args=args,
        guild_config=guild,
        prefix=used_prefix,
        send=AsyncMock(),
        reply=AsyncMock(),
        command=registry.resolve(token),
    )


@pytest.fixture
def registry():
    return make_registry()


@pytest.fixture
def dispatcher():
    return Dispatcher(ignore_extra_arguments=True)
