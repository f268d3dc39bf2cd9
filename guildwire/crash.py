"""Process-fault handling and crash notification.

FaultHandlerRegistry is the single place unrecoverable faults are
reported. report() always runs in the same order: log the fault, then
run every registered handler (best effort), then, for the first
terminating fault, call the on_terminate hook so the process can exit.

CrashNotifier is the handler that direct-messages each guild's owner
before the process terminates.
"""

import asyncio
import sys
from typing import Awaitable, Callable, List, Optional, Sequence

import structlog

from .config import GuildConfig
from .connection import GuildConnection
from .exceptions import ProcessFault

logger = structlog.get_logger("guildwire.crash")

CRASH_MESSAGE = (
    "⚠️ guildwire has crashed and is shutting down. "
    "It will not respond to commands until it is restarted. "
    "Check the logs on the host for details."
)

FaultHandler = Callable[[ProcessFault], Awaitable[None]]

# Loop exception-handler context keys naming code a fault escaped from
ESCAPED_FROM = ("task", "future", "handle")


def log_task_exception(task: asyncio.Task):
    """Log exceptions from fire-and-forget tasks instead of silently swallowing them."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc:
        logger.error("background_task_failed", error=str(exc), exc_type=type(exc).__name__)


class FaultHandlerRegistry:
    """Ordered registry of process-fault handlers.

    Args:
        on_terminate: Called once after the first terminating fault has
            been reported, e.g. to ask the supervisor to stop.
    """

    def __init__(self, on_terminate: Optional[Callable[[], None]] = None):
        self._handlers: List[FaultHandler] = []
        self._previous_excepthook = None
        self._on_terminate = on_terminate
        self.fatal: Optional[ProcessFault] = None

    def register(self, handler: FaultHandler) -> None:
        self._handlers.append(handler)

    async def report(
        self, exc: BaseException, is_terminating: bool = False
    ) -> ProcessFault:
        """Log a fault and run every handler. Never raises.

        Args:
            exc: The fault, or an already-built ProcessFault.
            is_terminating: Whether the process is about to exit.
        """
        if isinstance(exc, ProcessFault):
            fault = exc
        else:
            fault = ProcessFault(exc, is_terminating=is_terminating)

        if fault.is_terminating:
            if self.fatal is not None:
                # Owners were already told; later faults are only logged
                fault.is_terminating = False
            else:
                self.fatal = fault

        logger.debug("unhandled_exception_caught", terminating=fault.is_terminating)
        logger.error(
            "unhandled_exception",
            error_type=type(fault.cause).__name__,
            error=str(fault.cause),
            terminating=fault.is_terminating,
            exc_info=fault.cause,
        )

        for handler in list(self._handlers):
            try:
                await handler(fault)
            except Exception as e:
                logger.error(
                    "fault_handler_failed",
                    handler=getattr(handler, "__name__", type(handler).__name__),
                    error=str(e),
                )

        if fault.is_terminating and self._on_terminate is not None:
            self._on_terminate()
        return fault

    def install(self, loop: asyncio.AbstractEventLoop) -> None:
        """Route stray task exceptions and uncaught sync exceptions here.

        An exception that escaped a task, future or callback is
        terminating. Transport and protocol errors reported by the loop
        itself are logged and the loop keeps running. Uncaught
        synchronous exceptions arrive after the loop has gone, so they
        can only be logged.
        """
        loop.set_exception_handler(self._loop_exception_handler)
        if self._previous_excepthook is None:
            self._previous_excepthook = sys.excepthook
            sys.excepthook = self._excepthook

    def uninstall(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        if loop is not None:
            loop.set_exception_handler(None)
        if self._previous_excepthook is not None:
            sys.excepthook = self._previous_excepthook
            self._previous_excepthook = None

    def _loop_exception_handler(self, loop: asyncio.AbstractEventLoop, context: dict) -> None:
        exc = context.get("exception")
        if exc is None:
            logger.error("async_error", message=context.get("message", "Unknown async error"))
            return
        escaped = any(key in context for key in ESCAPED_FROM)
        task = loop.create_task(self.report(exc, is_terminating=escaped))
        task.add_done_callback(log_task_exception)

    def _excepthook(self, exc_type, exc, tb) -> None:
        logger.critical(
            "uncaught_exception",
            error_type=exc_type.__name__,
            error=str(exc),
            exc_info=(exc_type, exc, tb),
        )


class CrashNotifier:
    """Direct-messages guild owners when the process is going down.

    Args:
        snapshot: Returns the supervised connections at fault time.
        guilds: Configured guilds, in configuration order.
        message: Text sent verbatim to each owner.
        timeout: Upper bound in seconds for the whole notification pass.
    """

    def __init__(
        self,
        snapshot: Callable[[], Sequence[GuildConnection]],
        guilds: Sequence[GuildConfig],
        message: str = CRASH_MESSAGE,
        timeout: float = 30.0,
    ):
        self._snapshot = snapshot
        self._guilds = tuple(guilds)
        self.message = message
        self.timeout = timeout

    async def __call__(self, fault: ProcessFault) -> None:
        await self.handle(fault)

    async def handle(self, fault: ProcessFault) -> None:
        """Notify owners if the fault is terminating. Never raises."""
        if not fault.is_terminating:
            return
        try:
            await asyncio.wait_for(self._notify_owners(), timeout=self.timeout)
        except Exception as e:
            logger.error(
                "crash_notification_failed",
                error_type=type(e).__name__,
                error=str(e),
            )

    async def _notify_owners(self) -> None:
        # The first owner that cannot be resolved ends the whole pass,
        # including guilds on other connections.
        for connection in tuple(self._snapshot()):
            client = connection.client
            if client is None:
                continue
            for guild in self._guilds:
                if not client.knows_guild(guild.guild_id):
                    continue

                owner = await client.resolve_member(guild.guild_id, guild.owner_id)
                if owner is None:
                    logger.warning(
                        "crash_owner_not_found",
                        guild_id=guild.guild_id,
                        owner_id=guild.owner_id,
                        msg=f"Failed to get owner from id {guild.owner_id}.",
                    )
                    return

                try:
                    await client.send_direct_message(owner, self.message)
                except Exception as e:
                    logger.warning(
                        "crash_notice_failed",
                        guild_id=guild.guild_id,
                        owner_id=guild.owner_id,
                        error=str(e),
                    )
                else:
                    logger.info(
                        "crash_notice_sent",
                        guild_id=guild.guild_id,
                        owner_id=guild.owner_id,
                    )
