"""Base classes for the command framework.

Defines the abstractions for declaring, registering and resolving bot
commands. Commands are grouped into classes that extend
BaseCommandGroup, then registered once with a CommandRegistry that is
frozen before any connection starts and read concurrently afterwards.

Key classes:
    Parameter: One declared argument (name, converter, optional flag).
    Command: Name, overloads, permission checks and async callback.
    CommandInvocation: One parsed user request, discarded after dispatch.
    Reply: Structured response rendered by the client adapter.
    GroupContext: Dependency container shared by all command groups.
    BaseCommandGroup: ABC that command groups must implement.
    CommandRegistry: Maps command names to Command objects.
"""

from __future__ import annotations

import inspect
import shlex
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Sequence,
    Tuple,
    Union,
)

import structlog

from ..exceptions import DuplicateCommandError, InvalidArguments, PermissionDenied

if TYPE_CHECKING:
    from ..config import Config, GuildConfig
    from .runner import DeviceRunner

logger = structlog.get_logger("guildwire.dispatch")

# Handler signature: async (invocation, *converted_args) -> Optional[str]
CommandCallback = Callable[..., Awaitable[Optional[str]]]
Check = Callable[["CommandInvocation"], Union[bool, Awaitable[bool]]]
# Trigger signature: async (payload: dict) -> dict
TriggerHandler = Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]

_TYPE_NAMES = {str: "text", int: "integer", float: "number", bool: "yes/no"}
_TRUE_WORDS = frozenset({"true", "yes", "y", "on", "1", "enable"})
_FALSE_WORDS = frozenset({"false", "no", "n", "off", "0", "disable"})


@dataclass(frozen=True)
class Parameter:
    """A declared command argument.

    Attributes:
        name: Parameter name shown in usage and error messages.
        type: Converter type (str, int, float or bool).
        optional: Whether the argument may be omitted.
        default: Value used when an optional argument is omitted.
    """
    name: str
    type: type = str
    optional: bool = False
    default: Any = None

    @property
    def type_name(self) -> str:
        return _TYPE_NAMES.get(self.type, self.type.__name__)

    def convert(self, raw: str) -> Any:
        """Convert a raw argument string, raising ValueError on mismatch."""
        if self.type is bool:
            word = raw.lower()
            if word in _TRUE_WORDS:
                return True
            if word in _FALSE_WORDS:
                return False
            raise ValueError(f"{raw!r} is not a boolean")
        return self.type(raw)


Overload = Tuple[Parameter, ...]


@dataclass(frozen=True)
class Reply:
    """A structured response: rendered as an embed by the client adapter."""
    title: str
    description: str
    color: int = 0xFF0000


@dataclass
class CommandInvocation:
    """A parsed user request.

    Created per incoming message and discarded once dispatch completes.
    ``send`` posts plain text to the originating channel, ``reply`` posts
    a structured Reply.
    """
    user_id: int
    user_name: str
    content: str
    command_name: str
    args: List[str]
    guild_config: "GuildConfig"
    prefix: str
    send: Callable[[str], Awaitable[None]]
    reply: Callable[[Reply], Awaitable[None]]
    command: Optional["Command"] = None

    @property
    def guild_id(self) -> int:
        return self.guild_config.guild_id


def owner_only(invocation: CommandInvocation) -> bool:
    """Check: the invoking user is the guild owner or a configured admin."""
    return invocation.guild_config.is_privileged(invocation.user_id)


@dataclass
class Command:
    """A registered command.

    Attributes:
        name: Invocation name (matched case-insensitively).
        callback: Async handler; a returned string is sent to the channel.
        overloads: Accepted parameter lists, tried in declaration order.
            The first one is canonical and drives usage examples.
        description: One-line help text.
        checks: Permission predicates; any falsy result denies access.
        group: Name of the owning command group.
    """
    name: str
    callback: CommandCallback
    overloads: Tuple[Overload, ...] = ((),)
    description: str = ""
    checks: Tuple[Check, ...] = ()
    group: Optional[str] = None

    @property
    def qualified_name(self) -> str:
        return f"{self.group} {self.name}" if self.group else self.name

    @property
    def parameters(self) -> Overload:
        """Parameters of the canonical (first) overload."""
        return self.overloads[0] if self.overloads else ()

    async def run_checks(self, invocation: CommandInvocation) -> None:
        """Run every check in order.

        Raises:
            PermissionDenied: On the first failing check.
        """
        for check in self.checks:
            result = check(invocation)
            if inspect.isawaitable(result):
                result = await result
            if not result:
                raise PermissionDenied(
                    f"Check {getattr(check, '__name__', check)!s} failed",
                    command=self.name,
                    user_id=invocation.user_id,
                )

    def bind(self, args: Sequence[str], ignore_extra: bool = True) -> List[Any]:
        """Convert raw arguments against the first matching overload.

        Raises:
            InvalidArguments: No overload accepts the arguments.
        """
        errors = []
        for overload in self.overloads or ((),):
            try:
                return _bind_overload(overload, args, ignore_extra)
            except ValueError as e:
                errors.append(str(e))
        raise InvalidArguments(
            f"Arguments do not match any overload of {self.name}",
            command=self.name,
            errors="; ".join(errors),
        )

    def usage(self, prefix: str) -> str:
        """Example invocation built from the canonical overload."""
        parts = [f"{prefix}{self.name}"]
        parts.extend(
            f"[{p.name}]" if p.optional else p.name for p in self.parameters
        )
        return " ".join(parts)


def _bind_overload(
    overload: Overload, args: Sequence[str], ignore_extra: bool
) -> List[Any]:
    required = sum(1 for p in overload if not p.optional)
    if len(args) < required:
        raise ValueError(f"expected at least {required} argument(s), got {len(args)}")
    if len(args) > len(overload) and not ignore_extra:
        raise ValueError(f"expected at most {len(overload)} argument(s), got {len(args)}")

    values = []
    for i, param in enumerate(overload):
        if i < len(args):
            try:
                values.append(param.convert(args[i]))
            except (TypeError, ValueError):
                raise ValueError(
                    f"{param.name} expects {param.type_name}, got {args[i]!r}"
                ) from None
        else:
            values.append(param.default)
    return values


@dataclass
class GroupContext:
    """Dependency container for command groups.

    Provides typed access to shared services without coupling groups to
    the supervisor.
    """
    config: "Config"
    runner: "DeviceRunner"
    extras: Dict[str, Any] = field(default_factory=dict)


class BaseCommandGroup(ABC):
    """Abstract base class for command groups.

    Subclasses implement get_commands() to declare their commands and
    may implement get_triggers() to expose handlers to the trigger
    listener.

    Args:
        ctx: Shared GroupContext dependency container.
    """

    name: str = ""

    def __init__(self, ctx: GroupContext):
        self.ctx = ctx

    @abstractmethod
    def get_commands(self) -> List[Command]:
        """Return the commands exposed by this group."""
        ...

    def get_triggers(self) -> Dict[str, TriggerHandler]:
        """Return {trigger_name: async_handler} for out-of-band requests."""
        return {}

    def command(
        self,
        name: str,
        callback: CommandCallback,
        *overloads: Overload,
        description: str = "",
        checks: Tuple[Check, ...] = (owner_only,),
    ) -> Command:
        """Build a Command owned by this group."""
        return Command(
            name=name,
            callback=callback,
            overloads=tuple(overloads) or ((),),
            description=description,
            checks=checks,
            group=self.name or type(self).__name__,
        )


class CommandRegistry:
    """Maps command names to Command objects.

    Populated once while the supervisor is constructed, then frozen.
    After freeze() the registry is read-only and safe for concurrent
    dispatch from every connection.
    """

    def __init__(self):
        self._commands: Dict[str, Command] = {}
        self._triggers: Dict[str, TriggerHandler] = {}
        self._frozen = False

    def register(self, group: BaseCommandGroup) -> None:
        """Register every command (and trigger) of a command group.

        Args:
            group: Command group whose commands will be added.

        Raises:
            DuplicateCommandError: A command or trigger name is already
                taken. Nothing from the group is registered.
            RuntimeError: The registry has been frozen.
        """
        if self._frozen:
            raise RuntimeError("Command registry is frozen")

        group_name = group.name or type(group).__name__
        incoming: Dict[str, Command] = {}
        for cmd in group.get_commands():
            key = cmd.name.lower()
            if key in self._commands or key in incoming:
                raise DuplicateCommandError(
                    f"Command '{cmd.name}' is already registered",
                    command_name=cmd.name,
                    group=group_name,
                )
            incoming[key] = cmd

        triggers = group.get_triggers()
        for trigger_name in triggers:
            if trigger_name.lower() in self._triggers:
                raise DuplicateCommandError(
                    f"Trigger '{trigger_name}' is already registered",
                    command_name=trigger_name,
                    group=group_name,
                )

        self._commands.update(incoming)
        self._triggers.update({k.lower(): v for k, v in triggers.items()})
        logger.debug(
            "command_group_registered",
            group=group_name,
            commands=sorted(incoming),
            triggers=sorted(triggers),
        )

    def freeze(self) -> None:
        """Reject any further registration."""
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def resolve(self, name: str, prefix: Optional[str] = None) -> Optional[Command]:
        """Look up a command, case-insensitively.

        A leading ``prefix`` is stripped exactly once, so ``!deploy``
        and ``deploy`` both resolve with prefix ``!`` but ``!!deploy``
        does not.
        """
        token = name.strip().lower()
        if prefix and token.startswith(prefix.lower()):
            token = token[len(prefix):]
        return self._commands.get(token)

    @staticmethod
    def parse(
        content: str, prefixes: Sequence[str]
    ) -> Optional[Tuple[str, str, List[str]]]:
        """Split a raw message into (prefix, command token, arguments).

        Returns None if the message does not start with any prefix or
        carries no command token. Arguments honour shell-style quoting;
        unbalanced quotes fall back to whitespace splitting.
        """
        text = content.strip()
        for prefix in prefixes:
            if not prefix or not text.lower().startswith(prefix.lower()):
                continue
            rest = text[len(prefix):].lstrip()
            try:
                parts = shlex.split(rest)
            except ValueError:
                parts = rest.split()
            if not parts:
                return None
            return prefix, parts[0], parts[1:]
        return None

    def get_trigger(self, name: str) -> Optional[TriggerHandler]:
        """Look up a trigger handler by name."""
        return self._triggers.get(name.lower())

    @property
    def command_names(self) -> frozenset:
        """All registered command names."""
        return frozenset(self._commands.keys())

    @property
    def commands(self) -> List[Command]:
        return list(self._commands.values())
