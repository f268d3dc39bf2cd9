"""Command framework and command groups for the guildwire bot.

Provides the BaseCommandGroup ABC, GroupContext dependency container,
and CommandRegistry for mapping command names to Command objects.
"""

from .base import (
    BaseCommandGroup,
    Command,
    CommandInvocation,
    CommandRegistry,
    GroupContext,
    Parameter,
    Reply,
    owner_only,
)
from .deployment import DeploymentCommands
from .devices import DeviceCommands
from .runner import DeviceRunner

# Groups registered by the supervisor, in registration order
DEFAULT_GROUPS = (DeploymentCommands, DeviceCommands)

__all__ = [
    "BaseCommandGroup",
    "Command",
    "CommandInvocation",
    "CommandRegistry",
    "DEFAULT_GROUPS",
    "DeploymentCommands",
    "DeviceCommands",
    "DeviceRunner",
    "GroupContext",
    "Parameter",
    "Reply",
    "owner_only",
]
