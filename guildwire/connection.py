"""Per-guild connection handle.

A GuildConnection pairs one GuildConfig with the chat client that
serves it, tracks the connection state machine, and exposes a fixed
set of lifecycle events that the supervisor subscribes to::

    CONSTRUCTED → CONNECTING → CONNECTED ⇄ RECONNECTING → DISCONNECTED

Only stop() (or a failed login) reaches DISCONNECTED; once stop has
been requested, reconnect notifications from the client are ignored.

Key classes:
    ChatClient: Protocol implemented by the Discord adapter.
    ClientOptions: Connection policy handed to client factories.
    GuildConnection: State, event subscriptions and message routing.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    Sequence,
)

import structlog

from .commands.base import CommandInvocation, CommandRegistry, Reply
from .config import GuildConfig
from .exceptions import ConnectionFault

if TYPE_CHECKING:
    from .dispatcher import DispatchOutcome, Dispatcher

logger = structlog.get_logger("guildwire.bot")


class ConnectionEvent(str, Enum):
    """Events a connection raises to its subscribers."""
    READY = "ready"
    CLIENT_ERROR = "client_error"
    COMMAND_EXECUTED = "command_executed"
    COMMAND_ERRORED = "command_errored"


class ConnectionState(str, Enum):
    CONSTRUCTED = "constructed"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True)
class ClientOptions:
    """Connection policy applied to every guild client.

    With auto_reconnect the client retries a dropped session with
    backoff for as long as it has not been closed.
    """
    auto_reconnect: bool = True
    cache_members: bool = True
    cache_presences: bool = True


class ChatClient(Protocol):
    """What the supervisor needs from a platform client."""

    def bind(self, connection: "GuildConnection") -> None:
        """Attach the connection that receives this client's events."""

    async def run_session(self) -> None:
        """Log in and stay connected until close() is called."""

    async def close(self) -> None:
        ...

    def is_closed(self) -> bool:
        ...

    def knows_guild(self, guild_id: int) -> bool:
        """Whether the client currently sees the guild."""

    async def resolve_member(self, guild_id: int, user_id: int) -> Optional[Any]:
        """Return the guild member, or None if it cannot be found."""

    async def send_direct_message(self, member: Any, content: str) -> None:
        ...

    async def describe(self) -> Dict[str, Any]:
        """Identity facts for the ready log (application, owners, user)."""


EventHandler = Callable[..., Awaitable[None]]


class GuildConnection:
    """One supervised guild: config, client, state and event wiring.

    Args:
        guild_config: Static settings for the guild.
        client: Platform client dedicated to this guild.
        registry: Frozen command registry shared by all connections.
        dispatcher: Executes invocations received on this connection.
    """

    def __init__(
        self,
        guild_config: GuildConfig,
        client: ChatClient,
        registry: CommandRegistry,
        dispatcher: "Dispatcher",
    ):
        self.guild_config = guild_config
        self.client = client
        self.registry = registry
        self.dispatcher = dispatcher
        self.state = ConnectionState.CONSTRUCTED
        self._handlers: Dict[ConnectionEvent, List[EventHandler]] = {
            event: [] for event in ConnectionEvent
        }
        self._stop_requested = False
        client.bind(self)

    @property
    def guild_id(self) -> int:
        return self.guild_config.guild_id

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def __repr__(self) -> str:
        return f"GuildConnection(guild_id={self.guild_id}, state={self.state.value})"

    # --- Events ---

    def subscribe(self, event: ConnectionEvent, handler: EventHandler) -> None:
        """Register ``handler(connection, *args)`` for an event."""
        self._handlers[ConnectionEvent(event)].append(handler)

    async def emit(self, event: ConnectionEvent, *args: Any) -> None:
        """Call every handler for ``event`` in subscription order.

        A failing handler is logged and does not prevent the others.
        """
        for handler in list(self._handlers[event]):
            try:
                await handler(self, *args)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "event_handler_failed",
                    guild_id=self.guild_id,
                    event_name=event.value,
                    handler=getattr(handler, "__name__", repr(handler)),
                    error=str(e),
                    exc_info=e,
                )

    # --- Lifecycle ---

    def _transition(self, new_state: ConnectionState) -> None:
        if new_state is self.state:
            return
        logger.debug(
            "connection_state_changed",
            guild_id=self.guild_id,
            old=self.state.value,
            new=new_state.value,
        )
        self.state = new_state

    async def start(self) -> None:
        """Connect and stay connected until stopped.

        Raises:
            ConnectionFault: The client could not log in or its session
                ended with an error.
        """
        if self._stop_requested:
            logger.debug("connection_start_skipped", guild_id=self.guild_id)
            return
        self._transition(ConnectionState.CONNECTING)
        try:
            await self.client.run_session()
        except asyncio.CancelledError:
            self._transition(ConnectionState.DISCONNECTED)
            raise
        except Exception as e:
            self._transition(ConnectionState.DISCONNECTED)
            raise ConnectionFault(
                f"Connection for guild {self.guild_id} failed: {e}",
                guild_id=self.guild_id,
            ) from e
        self._transition(ConnectionState.DISCONNECTED)

    async def stop(self) -> None:
        """Request disconnect. Safe to call repeatedly and before start()."""
        self._stop_requested = True
        self._transition(ConnectionState.DISCONNECTED)
        if not self.client.is_closed():
            await self.client.close()

    def mark_connected(self) -> None:
        """Called by the client when the gateway session is (re)established."""
        if self._stop_requested:
            return
        self._transition(ConnectionState.CONNECTED)

    def mark_reconnecting(self) -> None:
        """Called by the client when the gateway drops a live session."""
        if self._stop_requested or self.state is not ConnectionState.CONNECTED:
            return
        self._transition(ConnectionState.RECONNECTING)

    # --- Messages ---

    def parse(
        self,
        content: str,
        *,
        user_id: int,
        user_name: str,
        send: Callable[[str], Awaitable[None]],
        reply: Callable[[Reply], Awaitable[None]],
        mention_prefixes: Sequence[str] = (),
    ) -> Optional[CommandInvocation]:
        """Build an invocation from a raw message, or None if it is not a command.

        The guild's prefix is used when set; otherwise the bot only
        answers when mentioned.
        """
        prefix = self.guild_config.command_prefix
        prefixes = [prefix] if prefix else list(mention_prefixes)
        parsed = self.registry.parse(content, prefixes)
        if parsed is None:
            return None
        used_prefix, token, args = parsed
        return CommandInvocation(
            user_id=user_id,
            user_name=user_name,
            content=content,
            command_name=token,
            args=args,
            guild_config=self.guild_config,
            prefix=used_prefix,
            send=send,
            reply=reply,
            command=self.registry.resolve(token),
        )

    async def process(self, invocation: CommandInvocation) -> Optional["DispatchOutcome"]:
        """Dispatch one invocation and publish its outcome.

        The outcome's responders have finished by the time this returns.
        Invocations arriving while the connection is not CONNECTED are
        dropped so READY always precedes command events.
        """
        if self.state is not ConnectionState.CONNECTED:
            logger.debug(
                "invocation_dropped",
                guild_id=self.guild_id,
                state=self.state.value,
            )
            return None

        outcome = await self.dispatcher.execute(invocation)
        event = (
            ConnectionEvent.COMMAND_EXECUTED
            if outcome.ok
            else ConnectionEvent.COMMAND_ERRORED
        )
        await self.emit(event, invocation, outcome)
        return outcome
