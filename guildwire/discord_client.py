"""discord.py adapter for the ChatClient protocol.

Each supervised guild gets its own DiscordGuildClient. discord.py owns
the gateway protocol; with ``reconnect=True`` it retries dropped
sessions with exponential backoff for as long as the client is open,
which is the indefinite-reconnect policy the supervisor asks for.
"""

import sys
from functools import partial
from typing import Any, Dict, Optional

import discord
import structlog

from .commands.base import Reply
from .config import GuildConfig
from .connection import ClientOptions, ConnectionEvent, GuildConnection

logger = structlog.get_logger("guildwire.bot")


def _build_intents(options: ClientOptions) -> discord.Intents:
    intents = discord.Intents.none()
    intents.guilds = True
    intents.members = options.cache_members
    intents.presences = options.cache_presences
    intents.guild_messages = True
    intents.guild_typing = True
    intents.dm_messages = True
    intents.message_content = True
    return intents


class DiscordGuildClient(discord.Client):
    """discord.Client bound to one GuildConnection."""

    def __init__(self, guild_config: GuildConfig, options: ClientOptions):
        intents = _build_intents(options)
        member_cache_flags = (
            discord.MemberCacheFlags.from_intents(intents)
            if options.cache_members
            else discord.MemberCacheFlags.none()
        )
        super().__init__(
            intents=intents,
            member_cache_flags=member_cache_flags,
            chunk_guilds_at_startup=options.cache_members,
        )
        self.guild_config = guild_config
        self.options = options
        self.connection: Optional[GuildConnection] = None

    def bind(self, connection: GuildConnection) -> None:
        self.connection = connection

    async def run_session(self) -> None:
        await self.start(self.guild_config.token, reconnect=self.options.auto_reconnect)

    # --- discord.py events ---

    async def on_ready(self) -> None:
        self.connection.mark_connected()
        await self.connection.emit(ConnectionEvent.READY)

    async def on_resumed(self) -> None:
        self.connection.mark_connected()

    async def on_disconnect(self) -> None:
        self.connection.mark_reconnecting()

    async def on_error(self, event_method: str, /, *args: Any, **kwargs: Any) -> None:
        exc = sys.exc_info()[1]
        await self.connection.emit(ConnectionEvent.CLIENT_ERROR, exc, event_method)

    async def on_message(self, message: discord.Message) -> None:
        if message.author.bot or self.user is None:
            return

        invocation = self.connection.parse(
            message.content,
            user_id=message.author.id,
            user_name=str(message.author),
            send=partial(self._send_text, message.channel),
            reply=partial(self._send_reply, message.channel),
            mention_prefixes=(f"<@{self.user.id}>", f"<@!{self.user.id}>"),
        )
        if invocation is None:
            return
        await self.connection.process(invocation)

    # --- ChatClient protocol ---

    def knows_guild(self, guild_id: int) -> bool:
        return self.get_guild(guild_id) is not None

    async def resolve_member(self, guild_id: int, user_id: int) -> Optional[discord.Member]:
        guild = self.get_guild(guild_id)
        if guild is None:
            return None
        member = guild.get_member(user_id)
        if member is not None:
            return member
        try:
            return await guild.fetch_member(user_id)
        except discord.HTTPException as e:
            logger.debug(
                "member_fetch_failed", guild_id=guild_id, user_id=user_id, error=str(e)
            )
            return None

    async def send_direct_message(self, member: discord.abc.User, content: str) -> None:
        await member.send(content)

    async def describe(self) -> Dict[str, Any]:
        app = await self.application_info()
        if app.team is not None:
            owners = [str(m) for m in app.team.members]
        else:
            owners = [str(app.owner)]
        return {
            "application": app.name,
            "description": app.description,
            "owners": owners,
            "user_id": self.user.id if self.user else None,
            "user_name": str(self.user),
        }

    # --- Helpers ---

    @staticmethod
    async def _send_text(channel: discord.abc.Messageable, text: str) -> None:
        await channel.send(text)

    @staticmethod
    async def _send_reply(channel: discord.abc.Messageable, reply: Reply) -> None:
        embed = discord.Embed(
            title=reply.title,
            description=reply.description,
            colour=discord.Colour(reply.color),
        )
        await channel.send(embed=embed)


def create_discord_client(guild_config: GuildConfig, options: ClientOptions) -> DiscordGuildClient:
    """Default client factory used by the supervisor."""
    return DiscordGuildClient(guild_config, options)
