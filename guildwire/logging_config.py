"""Logging configuration for guildwire.

Every structlog logger in the package is named ``guildwire.<subsystem>``
and backed by the stdlib logger of the same name, so one event lands in
three places: its subsystem file, the combined guildwire.log and the
console.

    root              -> console
      guildwire       -> logs/guildwire.log
        .bot          -> logs/bot.log       (supervisor, connections)
        .dispatch     -> logs/dispatch.log  (command outcomes)
        .crash        -> logs/crash.log     (process faults)
        .http         -> logs/http.log      (trigger listener)
        .devices      -> logs/devices.log   (device tools)

setup_logging() is called twice: once with defaults before the config is
read, and again with the loaded Config.
"""

import logging
import logging.handlers
import re
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import structlog

SUBSYSTEMS = ("bot", "dispatch", "crash", "http", "devices")

LOGGER_PREFIX = "guildwire"

REDACTED = "***REDACTED***"

# Discord bot tokens (user id . timestamp . hmac) and Authorization values
TOKEN_PATTERNS = (
    re.compile(r"[MNO][a-zA-Z0-9_-]{23,25}\.[a-zA-Z0-9_-]{6}\.[a-zA-Z0-9_-]{27,38}"),
    re.compile(r"Bot\s+[a-zA-Z0-9_.-]{20,}"),
    re.compile(r"Bearer\s+[a-zA-Z0-9_./-]{20,}"),
)


def _redact(value: Any) -> Any:
    if isinstance(value, str):
        for pattern in TOKEN_PATTERNS:
            value = pattern.sub(REDACTED, value)
        return value
    if isinstance(value, dict):
        return {k: _redact(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return type(value)(_redact(v) for v in value)
    return value


def sanitize_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """structlog processor that redacts bot tokens anywhere in an event."""
    for key in list(event_dict):
        event_dict[key] = _redact(event_dict[key])
    return event_dict


@dataclass
class LogSettings:
    """Resolved logging options, from Config or built-in defaults."""

    log_dir: Path = Path(__file__).parent.parent / "logs"
    level: int = logging.INFO
    subsystem_levels: Dict[str, int] = field(default_factory=dict)
    max_bytes: int = 10 * 1024 * 1024
    backup_count: int = 5
    cache_loggers: bool = False

    @classmethod
    def from_config(cls, config) -> "LogSettings":
        level = _level(config.logging_level, logging.INFO)
        return cls(
            log_dir=config.log_dir,
            level=level,
            subsystem_levels={
                name: _level(value, level)
                for name, value in config.logging_subsystem_levels.items()
            },
            max_bytes=config.logging_max_file_size_mb * 1024 * 1024,
            backup_count=config.logging_backup_count,
            cache_loggers=True,
        )

    def level_for(self, subsystem: str) -> int:
        return self.subsystem_levels.get(subsystem, self.level)


def _level(name: Optional[str], default: int) -> int:
    if not name:
        return default
    return getattr(logging, str(name).upper(), default)


def _file_formatter() -> logging.Formatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(colors=False),
        ],
    )


def _reset(name: Optional[str], level: int) -> logging.Logger:
    log = logging.getLogger(name)
    log.setLevel(level)
    log.handlers.clear()
    return log


def _attach_file(
    log: logging.Logger,
    path: Path,
    level: int,
    settings: LogSettings,
    formatter: logging.Formatter,
) -> None:
    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=settings.max_bytes,
        backupCount=settings.backup_count,
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    log.addHandler(handler)


def setup_logging(config=None) -> None:
    """Route structlog through stdlib handlers for the console and log files.

    Args:
        config: Loaded Config. Without one, defaults are used and
            loggers are not cached, so the second call still takes
            effect for loggers created in between.
    """
    settings = LogSettings.from_config(config) if config is not None else LogSettings()

    try:
        settings.log_dir.mkdir(parents=True, exist_ok=True)
        to_files = True
    except OSError as exc:
        print(
            f"WARNING: Cannot create log directory {settings.log_dir}: {exc}. "
            "Falling back to console-only logging.",
            file=sys.stderr,
        )
        to_files = False

    # Handlers filter; loggers pass everything through
    root = _reset(None, logging.DEBUG)
    console = logging.StreamHandler(sys.stdout)
    console.setLevel(settings.level)
    console.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
    root.addHandler(console)

    # Gateway chatter from discord.py is INFO-level noise
    logging.getLogger("discord").setLevel(logging.ERROR)

    formatter = _file_formatter()
    combined = _reset(LOGGER_PREFIX, logging.DEBUG)
    if to_files:
        _attach_file(
            combined, settings.log_dir / "guildwire.log", settings.level, settings, formatter
        )

    for subsystem in SUBSYSTEMS:
        level = settings.level_for(subsystem)
        sub = _reset(f"{LOGGER_PREFIX}.{subsystem}", level)
        if to_files:
            _attach_file(sub, settings.log_dir / f"{subsystem}.log", level, settings, formatter)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            sanitize_secrets,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=settings.cache_loggers,
    )
