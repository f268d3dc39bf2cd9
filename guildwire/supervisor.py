"""Multi-guild connection supervisor.

Owns one GuildConnection per configured guild, the shared (frozen)
command registry, the dispatcher and the trigger listener. Each
connection runs in its own task so a guild that fails to connect never
blocks the others.

Key classes:
    ConnectionSupervisor: Construct, start, stop and observe connections.
"""

import asyncio
import socket
from typing import Callable, Dict, Iterable, Optional, Tuple, Type

import structlog

from .commands import DEFAULT_GROUPS, BaseCommandGroup, CommandRegistry, DeviceRunner, GroupContext
from .config import Config, GuildConfig
from .connection import (
    ChatClient,
    ClientOptions,
    ConnectionEvent,
    GuildConnection,
)
from .dispatcher import Dispatcher
from .exceptions import ConfigurationError, ConnectionFault
from .trigger_listener import TriggerListener

logger = structlog.get_logger("guildwire.bot")

ClientFactory = Callable[[GuildConfig, ClientOptions], ChatClient]

# Seconds stop() waits for connection tasks to wind down before cancelling them
SHUTDOWN_GRACE_SECONDS = 10.0


class ConnectionSupervisor:
    """Supervises one chat client connection per configured guild.

    Construction registers the command groups and freezes the registry
    before any connection exists, so dispatch never sees a registry
    that is still changing.

    Args:
        config: Loaded configuration.
        registry: Command registry to populate (a new one by default).
        client_factory: Builds the client for a guild. Defaults to the
            discord.py adapter.
        listener: Trigger listener. Built from config by default.
        groups: Command group classes to register.
        options: Connection policy applied to every client.

    Raises:
        ConfigurationError: A guild has no token or is configured twice.
        DuplicateCommandError: Two groups declare the same command.
    """

    def __init__(
        self,
        config: Config,
        registry: Optional[CommandRegistry] = None,
        client_factory: Optional[ClientFactory] = None,
        listener: Optional[TriggerListener] = None,
        groups: Iterable[Type[BaseCommandGroup]] = DEFAULT_GROUPS,
        options: ClientOptions = ClientOptions(),
    ):
        guilds = config.guilds
        logger.debug(
            "supervisor_config",
            host=config.host,
            port=config.port,
            guilds=len(guilds),
        )
        self.config = config
        self.options = options
        self.ready_timeout = config.ready_timeout

        self.registry = registry if registry is not None else CommandRegistry()
        group_ctx = GroupContext(
            config=config,
            runner=DeviceRunner(config.device_commands, config.command_timeout),
        )
        for group_cls in groups:
            self.registry.register(group_cls(group_ctx))
        self.registry.freeze()

        self.dispatcher = Dispatcher(
            ignore_extra_arguments=config.ignore_extra_arguments
        )

        if client_factory is None:
            from .discord_client import create_discord_client
            client_factory = create_discord_client

        self._connections: Dict[int, GuildConnection] = {}
        for guild in guilds:
            if not guild.token:
                raise ConfigurationError(
                    f"Guild {guild.guild_id} has no token configured",
                    setting_name="guilds.token",
                    guild_id=guild.guild_id,
                )
            if guild.guild_id in self._connections:
                raise ConfigurationError(
                    f"Guild {guild.guild_id} is configured more than once",
                    setting_name="guilds",
                    guild_id=guild.guild_id,
                )
            connection = GuildConnection(
                guild, client_factory(guild, options), self.registry, self.dispatcher
            )
            connection.subscribe(ConnectionEvent.READY, self._on_ready)
            connection.subscribe(ConnectionEvent.CLIENT_ERROR, self._on_client_error)
            connection.subscribe(
                ConnectionEvent.COMMAND_EXECUTED, self.dispatcher.on_command_executed
            )
            connection.subscribe(
                ConnectionEvent.COMMAND_ERRORED, self.dispatcher.on_command_errored
            )
            self._connections[guild.guild_id] = connection

        self.listener = listener or TriggerListener(
            config.host,
            config.port,
            get_trigger=self.registry.get_trigger,
            status=self.status,
            secret=config.trigger_secret,
        )

        self._tasks: Dict[int, asyncio.Task] = {}
        self._active = 0
        self._failed = 0
        self._started = False
        self._stopped = False
        self._stop_event = asyncio.Event()

    # --- Introspection ---

    @property
    def connections(self) -> Dict[int, GuildConnection]:
        return dict(self._connections)

    def snapshot(self) -> Tuple[GuildConnection, ...]:
        """Current connections, read without locking (used at crash time)."""
        return tuple(self._connections.values())

    def status(self) -> Dict[int, str]:
        return {gid: conn.state.value for gid, conn in self._connections.items()}

    @property
    def every_connection_failed(self) -> bool:
        """True once every connection has ended with a ConnectionFault."""
        return bool(self._connections) and self._failed == len(self._connections)

    # --- Lifecycle ---

    async def start(self) -> None:
        """Start every connection and the trigger listener.

        Connections run in independent tasks; this returns once they
        have been launched, not once they are connected.
        """
        if self._started or self._stopped:
            return
        self._started = True
        logger.info("connecting_to_discord", guilds=len(self._connections))

        for guild_id, connection in self._connections.items():
            self._active += 1
            self._tasks[guild_id] = asyncio.create_task(
                self._run_connection(connection), name=f"guild-{guild_id}"
            )

        try:
            await self.listener.start()
        except OSError as e:
            logger.error(
                "trigger_listener_start_failed",
                host=self.listener.host,
                port=self.listener.port,
                error=str(e),
            )
        else:
            if self._stopped:
                # stop() ran while the listener was still binding
                await self.listener.stop()

    async def _run_connection(self, connection: GuildConnection) -> None:
        try:
            await connection.start()
        except ConnectionFault as e:
            self._failed += 1
            logger.error(
                "connection_failed",
                guild_id=connection.guild_id,
                error=str(e),
                exc_info=e.__cause__,
            )
        else:
            logger.info("connection_closed", guild_id=connection.guild_id)
        finally:
            self._active -= 1
            if self._active == 0:
                self._stop_event.set()

    async def stop(self) -> None:
        """Disconnect every guild and stop the listener.

        Idempotent, and safe to call when some connections never
        finished starting. Disconnect failures are logged, not raised.
        """
        if self._stopped:
            return
        self._stopped = True
        logger.info("disconnecting_from_discord", guilds=len(self._connections))

        connections = list(self._connections.values())
        results = await asyncio.gather(
            *(c.stop() for c in connections), return_exceptions=True
        )
        for connection, result in zip(connections, results):
            if isinstance(result, BaseException):
                logger.warning(
                    "disconnect_failed",
                    guild_id=connection.guild_id,
                    error_type=type(result).__name__,
                    error=str(result),
                )

        try:
            await self.listener.stop()
        except Exception as e:
            logger.warning("trigger_listener_stop_failed", error=str(e))

        pending = [t for t in self._tasks.values() if not t.done()]
        if pending:
            _, still_running = await asyncio.wait(pending, timeout=SHUTDOWN_GRACE_SECONDS)
            for task in still_running:
                task.cancel()

        self._stop_event.set()
        logger.info("supervisor_stopped")

    def request_stop(self) -> None:
        """Ask run() to return. Safe to call from a signal handler."""
        self._stop_event.set()

    async def run(self) -> None:
        """Start, wait for request_stop() or for every connection to end, then stop.

        If this raises, connections are left open so fault handlers can
        still reach the guilds; the caller is responsible for stop().
        """
        await self.start()
        await self._stop_event.wait()
        await self.stop()

    # --- Connection event handlers ---

    async def _on_ready(self, connection: GuildConnection) -> None:
        logger.info("discord_connected", guild_id=connection.guild_id)
        try:
            info = await asyncio.wait_for(
                connection.client.describe(), timeout=self.ready_timeout
            )
        except Exception as e:
            logger.warning(
                "identity_lookup_failed",
                guild_id=connection.guild_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            info = {}

        logger.info(
            "discord_identity",
            guild_id=connection.guild_id,
            application=info.get("application"),
            description=info.get("description"),
            owners=info.get("owners", []),
            user_id=info.get("user_id"),
            user_name=info.get("user_name"),
            machine=socket.gethostname(),
        )

    async def _on_client_error(
        self,
        connection: GuildConnection,
        exc: Optional[BaseException],
        event_method: Optional[str] = None,
    ) -> None:
        logger.error(
            "client_error",
            guild_id=connection.guild_id,
            event_method=event_method,
            error_type=type(exc).__name__ if exc else None,
            error=str(exc) if exc else None,
            exc_info=exc,
        )
