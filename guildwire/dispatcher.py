"""Command dispatch and failure classification.

Every invocation produces exactly one DispatchOutcome. The outcome is
decided once, at the point of failure, by classify(); responders are
then selected by its kind and never re-inspect the exception type.

Precedence (first match wins):
    PermissionDenied → InvalidArguments → CommandNotFound → UnexpectedFault

Only PERMISSION_DENIED and INVALID_ARGUMENTS answer the user. Unknown
commands are logged as warnings and left unanswered so probing users
learn nothing about which commands exist.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Callable, Dict, Optional

import structlog

from .commands.base import Command, CommandInvocation, Reply
from .exceptions import CommandNotFound, InvalidArguments, PermissionDenied

if TYPE_CHECKING:
    from .connection import GuildConnection

logger = structlog.get_logger("guildwire.dispatch")

DENIED_MARKER = "⛔"  # no entry
INVALID_MARKER = "❌"  # cross mark


class OutcomeKind(str, Enum):
    """Closed set of dispatch results."""
    SUCCESS = "success"
    PERMISSION_DENIED = "permission_denied"
    INVALID_ARGUMENTS = "invalid_arguments"
    COMMAND_NOT_FOUND = "command_not_found"
    UNEXPECTED_FAULT = "unexpected_fault"


@dataclass(frozen=True)
class DispatchOutcome:
    """Tagged result of executing one CommandInvocation.

    Attributes:
        kind: Which of the five outcomes occurred.
        command: The resolved command, if any (drives usage examples).
        cause: The exception behind a failure outcome.
    """
    kind: OutcomeKind
    command: Optional[Command] = None
    cause: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.kind is OutcomeKind.SUCCESS

    @classmethod
    def success(cls, command: Command) -> "DispatchOutcome":
        return cls(OutcomeKind.SUCCESS, command)


def classify(exc: BaseException, command: Optional[Command] = None) -> DispatchOutcome:
    """Map any exception to exactly one failure outcome."""
    if isinstance(exc, PermissionDenied):
        kind = OutcomeKind.PERMISSION_DENIED
    elif isinstance(exc, InvalidArguments):
        kind = OutcomeKind.INVALID_ARGUMENTS
    elif isinstance(exc, CommandNotFound):
        kind = OutcomeKind.COMMAND_NOT_FOUND
    else:
        kind = OutcomeKind.UNEXPECTED_FAULT
    return DispatchOutcome(kind, command, exc)


def permission_denied_reply() -> Reply:
    return Reply(
        title="Access denied",
        description=(
            f"{DENIED_MARKER} You do not have the permissions required "
            "to execute this command."
        ),
    )


def invalid_arguments_reply(command: Command, prefix: str) -> Reply:
    """Describe every parameter of the canonical overload plus a usage example.

    ``prefix`` is the guild's configured prefix; mention-only guilds
    (empty prefix) show a literal ``<prefix>`` placeholder.
    """
    params = command.parameters
    if params:
        lines = "\n".join(
            f"Parameter **{p.name}** expects type **{p.type_name}**." for p in params
        )
    else:
        lines = "This command takes no parameters."
    example = (
        f"Command Example: ```{command.usage(prefix or '<prefix>')}```\n"
        "*Parameters in brackets are optional.*"
    )
    return Reply(
        title=f"{INVALID_MARKER} Invalid Argument(s)",
        description=f"{lines}\n\n{example}",
    )


Responder = Callable[[CommandInvocation, DispatchOutcome], Awaitable[None]]


class Dispatcher:
    """Executes invocations and renders their outcomes.

    execute() runs on the connection that received the message; the
    on_command_* methods are subscribed to every connection's
    COMMAND_EXECUTED / COMMAND_ERRORED events by the supervisor.

    Args:
        ignore_extra_arguments: Drop surplus arguments instead of
            treating them as invalid.
    """

    def __init__(self, ignore_extra_arguments: bool = True):
        self.ignore_extra_arguments = ignore_extra_arguments
        self._responders: Dict[OutcomeKind, Responder] = {
            OutcomeKind.PERMISSION_DENIED: self._respond_permission_denied,
            OutcomeKind.INVALID_ARGUMENTS: self._respond_invalid_arguments,
            OutcomeKind.COMMAND_NOT_FOUND: self._respond_command_not_found,
            OutcomeKind.UNEXPECTED_FAULT: self._respond_unexpected_fault,
        }

    async def execute(self, invocation: CommandInvocation) -> DispatchOutcome:
        """Run checks, bind arguments and call the command.

        Never raises except for task cancellation.
        """
        command = invocation.command
        try:
            if command is None:
                raise CommandNotFound(
                    f"No command named '{invocation.command_name}'",
                    command_name=invocation.command_name,
                )
            await command.run_checks(invocation)
            args = command.bind(invocation.args, self.ignore_extra_arguments)
            result = await command.callback(invocation, *args)
            if result:
                await invocation.send(result)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return classify(exc, command)
        return DispatchOutcome.success(command)

    async def on_command_executed(
        self,
        connection: "GuildConnection",
        invocation: CommandInvocation,
        outcome: DispatchOutcome,
    ) -> None:
        logger.debug(
            "command_executed",
            guild_id=connection.guild_id,
            user=invocation.user_name,
            command=outcome.command.qualified_name,
        )

    async def on_command_errored(
        self,
        connection: "GuildConnection",
        invocation: CommandInvocation,
        outcome: DispatchOutcome,
    ) -> None:
        logger.debug(
            "command_errored",
            guild_id=connection.guild_id,
            user=invocation.user_name,
            kind=outcome.kind.value,
        )
        await self._responders[outcome.kind](invocation, outcome)

    # --- Responders ---

    async def _respond_permission_denied(
        self, invocation: CommandInvocation, outcome: DispatchOutcome
    ) -> None:
        logger.warning(
            "command_access_denied",
            user=invocation.user_name,
            user_id=invocation.user_id,
            command=outcome.command.qualified_name,
        )
        await self._safe_reply(invocation, permission_denied_reply())

    async def _respond_invalid_arguments(
        self, invocation: CommandInvocation, outcome: DispatchOutcome
    ) -> None:
        logger.info(
            "command_invalid_arguments",
            user=invocation.user_name,
            command=outcome.command.qualified_name,
            args=invocation.args,
        )
        reply = invalid_arguments_reply(
            outcome.command, invocation.guild_config.command_prefix
        )
        await self._safe_reply(invocation, reply)

    async def _respond_command_not_found(
        self, invocation: CommandInvocation, outcome: DispatchOutcome
    ) -> None:
        logger.warning(
            "command_not_found",
            user=invocation.user_name,
            content=invocation.content,
            msg=(
                f"User {invocation.user_name} tried executing command "
                f"{invocation.content} but command does not exist."
            ),
        )

    async def _respond_unexpected_fault(
        self, invocation: CommandInvocation, outcome: DispatchOutcome
    ) -> None:
        cause = outcome.cause
        logger.error(
            "command_unexpected_error",
            user=invocation.user_name,
            command=outcome.command.name if outcome.command else invocation.content,
            error_type=type(cause).__name__,
            error=str(cause) or "<no message>",
            exc_info=cause,
        )

    async def _safe_reply(self, invocation: CommandInvocation, reply: Reply) -> None:
        try:
            await invocation.reply(reply)
        except Exception as e:
            logger.warning(
                "reply_failed",
                user=invocation.user_name,
                title=reply.title,
                error=str(e),
            )
