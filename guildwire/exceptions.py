"""Custom exception hierarchy for guildwire.

Every failure the bot can observe falls into one of four families:

    ConfigurationError: fatal, raised before any connection starts.
    ConnectionFault: recoverable, absorbed by the reconnect policy.
    DispatchFailure: per-invocation, fully handled by the dispatcher.
    ProcessFault: fatal, routed through the crash notifier before exit.

The ErrorCategory enum drives retry/escalation decisions and is carried
on every exception for structured logging.
"""

from enum import Enum
from typing import Any, Optional


class ErrorCategory(str, Enum):
    """Classification of errors for retry decisions."""
    TRANSIENT = "transient"          # Worth retrying (network drop, gateway resume)
    PERMANENT = "permanent"          # Not worth retrying (bad input, denied)
    INFRASTRUCTURE = "infrastructure"  # Config or environment issues


class GuildwireError(Exception):
    """Base exception for all guildwire errors.

    Attributes:
        message: Human-readable error description.
        category: Error classification for retry/escalation decisions.
        module: Originating module name (e.g. "supervisor").
        context: Arbitrary key-value pairs for structured logging.
    """

    def __init__(
        self,
        message: str = "",
        *,
        category: ErrorCategory = ErrorCategory.PERMANENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.message = message
        self.category = category
        self.module = module
        self.context = context
        super().__init__(message)

    @property
    def is_retryable(self) -> bool:
        """Whether this error is worth retrying."""
        return self.category == ErrorCategory.TRANSIENT

    def __str__(self) -> str:
        parts = [self.message or self.__class__.__name__]
        if self.module:
            parts.append(f"[module={self.module}]")
        if self.context:
            ctx = ", ".join(f"{k}={v}" for k, v in self.context.items())
            parts.append(f"({ctx})")
        return " ".join(parts)

    def __repr__(self) -> str:
        cls = self.__class__.__name__
        return (
            f"{cls}({self.message!r}, category={self.category.value!r}, "
            f"module={self.module!r})"
        )


# ---------------------------------------------------------------------------
# Configuration exceptions
# ---------------------------------------------------------------------------

class ConfigurationError(GuildwireError):
    """Invalid or missing configuration.

    Defaults to INFRASTRUCTURE because config issues are environmental
    and won't resolve by retrying.
    """

    def __init__(
        self,
        message: str = "",
        *,
        setting_name: Optional[str] = None,
        category: ErrorCategory = ErrorCategory.INFRASTRUCTURE,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.setting_name = setting_name
        super().__init__(
            message, category=category, module=module or "config", **context
        )


class DuplicateCommandError(GuildwireError):
    """Two command groups tried to register the same command name."""

    def __init__(
        self,
        message: str = "",
        *,
        command_name: Optional[str] = None,
        category: ErrorCategory = ErrorCategory.INFRASTRUCTURE,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.command_name = command_name
        super().__init__(
            message, category=category, module=module or "commands", **context
        )


# ---------------------------------------------------------------------------
# Connection / process exceptions
# ---------------------------------------------------------------------------

class ConnectionFault(GuildwireError):
    """A guild connection failed to connect or dropped unexpectedly.

    Attributes:
        guild_id: The guild whose connection faulted.
    """

    def __init__(
        self,
        message: str = "",
        *,
        guild_id: Optional[int] = None,
        category: ErrorCategory = ErrorCategory.TRANSIENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.guild_id = guild_id
        super().__init__(
            message, category=category, module=module or "connection", **context
        )


class ProcessFault(GuildwireError):
    """An unrecoverable fault observed at process level.

    Attributes:
        cause: The original exception.
        is_terminating: Whether the process is about to exit.
    """

    def __init__(
        self,
        cause: BaseException,
        *,
        is_terminating: bool = False,
        category: ErrorCategory = ErrorCategory.INFRASTRUCTURE,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.cause = cause
        self.is_terminating = is_terminating
        super().__init__(
            f"{type(cause).__name__}: {cause}",
            category=category,
            module=module or "crash",
            **context,
        )


class DeviceCommandError(GuildwireError):
    """An external device tool could not be run or timed out.

    Attributes:
        action: The configured action (e.g. "deploy", "reboot").
    """

    def __init__(
        self,
        message: str = "",
        *,
        action: Optional[str] = None,
        category: ErrorCategory = ErrorCategory.TRANSIENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.action = action
        super().__init__(
            message, category=category, module=module or "devices", **context
        )


# ---------------------------------------------------------------------------
# Dispatch exceptions
# ---------------------------------------------------------------------------

class DispatchFailure(GuildwireError):
    """Base class for failures raised while dispatching one invocation."""

    def __init__(
        self,
        message: str = "",
        *,
        category: ErrorCategory = ErrorCategory.PERMANENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        super().__init__(
            message, category=category, module=module or "dispatch", **context
        )


class PermissionDenied(DispatchFailure):
    """The invoking user failed one of the command's checks."""


class InvalidArguments(DispatchFailure):
    """The supplied arguments match none of the command's overloads."""


class CommandNotFound(DispatchFailure):
    """The command token does not name a registered command.

    Attributes:
        command_name: The unresolved token.
    """

    def __init__(
        self,
        message: str = "",
        *,
        command_name: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.command_name = command_name
        super().__init__(message, **context)
