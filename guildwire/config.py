"""Configuration management for guildwire.

Loads YAML settings (settings.yaml) and environment variables (.env)
into a typed Config object. Property getters provide safe access with
sensible defaults for the supervisor, the trigger listener, the
command groups and logging.

Key classes:
    GuildConfig: Immutable per-guild settings (token, owner, prefix).
    Config: Central configuration manager.

Key functions:
    get_config: Singleton accessor for the global Config instance.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import structlog
import yaml
from dotenv import load_dotenv

from .exceptions import ConfigurationError

logger = structlog.get_logger("guildwire.bot")

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8008
DEFAULT_PREFIX = "!"


@dataclass(frozen=True)
class GuildConfig:
    """Static configuration for one supervised guild.

    Attributes:
        guild_id: Discord guild (server) id.
        token: Bot token used by this guild's client.
        owner_id: User notified on crashes and allowed past owner checks.
        command_prefix: Text prefix for commands. Empty means the bot
            only answers when mentioned.
        admin_ids: Additional users allowed past owner checks.
    """
    guild_id: int
    token: str
    owner_id: int
    command_prefix: str = DEFAULT_PREFIX
    admin_ids: Tuple[int, ...] = field(default_factory=tuple)

    def is_privileged(self, user_id: int) -> bool:
        """Whether a user is the owner or a configured admin."""
        return user_id == self.owner_id or user_id in self.admin_ids


def _as_int(value, setting_name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(
            f"{setting_name} must be an integer, got {value!r}",
            setting_name=setting_name,
        ) from None


def _parse_guild(entry: dict, index: int) -> GuildConfig:
    """Build a GuildConfig from one ``guilds`` list entry."""
    if not isinstance(entry, dict):
        raise ConfigurationError(
            f"guilds[{index}] must be a mapping", setting_name="guilds"
        )
    guild_id = _as_int(entry.get("id"), f"guilds[{index}].id")

    token = entry.get("token") or ""
    token_env = entry.get("token_env")
    if token_env:
        token = os.environ.get(token_env, "") or token
    if not token:
        raise ConfigurationError(
            f"Guild {guild_id} has no token configured",
            setting_name=f"guilds[{index}].token",
            guild_id=guild_id,
        )

    owner_id = _as_int(entry.get("owner_id"), f"guilds[{index}].owner_id")
    admins = entry.get("admins") or []
    if not isinstance(admins, list):
        raise ConfigurationError(
            f"guilds[{index}].admins must be a list",
            setting_name=f"guilds[{index}].admins",
        )

    prefix = entry.get("prefix", DEFAULT_PREFIX)
    return GuildConfig(
        guild_id=guild_id,
        token=token,
        owner_id=owner_id,
        command_prefix="" if prefix is None else str(prefix),
        admin_ids=tuple(_as_int(a, f"guilds[{index}].admins") for a in admins),
    )


class Config:
    """Central configuration manager for guildwire.

    Loads settings.yaml and .env from the config directory. No mutation
    after __init__, so reads are safe from any connection's callbacks.

    Args:
        config_dir: Path to the config directory. Defaults to
            ``<repo_root>/config/``.
    """

    def __init__(self, config_dir: Optional[Path] = None):
        if config_dir is None:
            config_dir = Path(__file__).parent.parent / "config"
        self.config_dir = config_dir

        # Load environment variables
        env_file = config_dir / ".env"
        if env_file.exists():
            load_dotenv(env_file)

        self.settings = self._load_yaml("settings.yaml")

    def _load_yaml(self, filename: str) -> dict:
        """Load a YAML configuration file."""
        filepath = self.config_dir / filename
        if filepath.exists():
            with open(filepath, "r") as f:
                return yaml.safe_load(f) or {}
        return {}

    @property
    def guilds(self) -> Tuple[GuildConfig, ...]:
        """Configured guilds, in file order.

        Raises:
            ConfigurationError: An entry is malformed or lacks a token.
        """
        entries = self.settings.get("guilds", [])
        if not isinstance(entries, list):
            raise ConfigurationError("guilds must be a list", setting_name="guilds")
        return tuple(_parse_guild(entry, i) for i, entry in enumerate(entries))

    def validate(self):
        """Validate critical settings at startup.

        Unlike most settings, guild and listener problems are fatal:
        the supervisor must not start half configured.

        Raises:
            ConfigurationError: On the first invalid setting found.
        """
        guilds = self.guilds
        if not guilds:
            raise ConfigurationError(
                "At least one guild must be configured", setting_name="guilds"
            )
        seen = set()
        for guild in guilds:
            if guild.guild_id in seen:
                raise ConfigurationError(
                    f"Guild {guild.guild_id} is configured more than once",
                    setting_name="guilds",
                    guild_id=guild.guild_id,
                )
            seen.add(guild.guild_id)

        port = self.port
        if not 0 < port < 65536:
            raise ConfigurationError(
                f"listener.port must be between 1 and 65535, got {port}",
                setting_name="listener.port",
            )

        if self.command_timeout <= 0:
            raise ConfigurationError(
                "command_timeout must be > 0", setting_name="command_timeout"
            )

        if not self.trigger_secret:
            logger.warning(
                "trigger_secret_missing",
                msg="Trigger endpoints accept unauthenticated requests",
            )

    # --- Trigger listener ---

    @property
    def host(self) -> str:
        """Trigger listener bind address."""
        return self.settings.get("listener", {}).get("host", DEFAULT_HOST)

    @property
    def port(self) -> int:
        """Trigger listener port."""
        return _as_int(
            self.settings.get("listener", {}).get("port", DEFAULT_PORT),
            "listener.port",
        )

    @property
    def trigger_secret(self) -> str:
        """Shared secret for trigger requests. Env var GUILDWIRE_TRIGGER_SECRET takes precedence."""
        return (
            os.environ.get("GUILDWIRE_TRIGGER_SECRET")
            or self.settings.get("listener", {}).get("secret", "")
        )

    # --- Dispatch ---

    @property
    def ignore_extra_arguments(self) -> bool:
        """Whether surplus command arguments are dropped instead of rejected."""
        return self.settings.get("ignore_extra_arguments", True)

    @property
    def ready_timeout(self) -> float:
        """Seconds allowed for the identity lookup in the ready handler."""
        return float(self.settings.get("ready_timeout", 10.0))

    # --- Command groups ---

    @property
    def devices(self) -> Dict[str, str]:
        """Device name -> UDID mapping."""
        devices = self.settings.get("devices", {})
        if not isinstance(devices, dict):
            logger.error("devices_invalid_type", type=type(devices).__name__)
            return {}
        return {str(name): str(udid) for name, udid in devices.items()}

    @property
    def apps(self) -> Dict[str, str]:
        """App name -> build artifact path mapping."""
        apps = self.settings.get("apps", {})
        if not isinstance(apps, dict):
            logger.error("apps_invalid_type", type=type(apps).__name__)
            return {}
        return {str(name): str(Path(path).expanduser()) for name, path in apps.items()}

    @property
    def device_commands(self) -> Dict[str, List[str]]:
        """Action name -> argv template (``deploy``, ``reboot``)."""
        return self.settings.get("device_commands", {})

    @property
    def command_timeout(self) -> int:
        """Timeout in seconds for a single device tool invocation (default 10 minutes)."""
        return self.settings.get("command_timeout", 600)

    # --- Logging ---

    @property
    def log_dir(self) -> Path:
        """Get log directory path."""
        configured = self.settings.get("log_dir")
        if configured:
            return Path(configured).expanduser()
        return Path(__file__).parent.parent / "logs"

    @property
    def logging_level(self) -> str:
        """Global log level (default INFO). Controls console and combined file."""
        log_config = self.settings.get("logging", {})
        return log_config.get("level", "INFO")

    @property
    def logging_subsystem_levels(self) -> dict:
        """Per-subsystem log level overrides. E.g. {"dispatch": "DEBUG"}."""
        log_config = self.settings.get("logging", {})
        return log_config.get("subsystem_levels", {})

    @property
    def logging_max_file_size_mb(self) -> int:
        """Max size per log file in MB before rotation (default 10)."""
        log_config = self.settings.get("logging", {})
        return log_config.get("max_file_size_mb", 10)

    @property
    def logging_backup_count(self) -> int:
        """Number of rotated log files to keep (default 5)."""
        log_config = self.settings.get("logging", {})
        return log_config.get("backup_count", 5)


# Global config instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get or create the global config instance."""
    global _config
    if _config is None:
        _config = Config()
    return _config
