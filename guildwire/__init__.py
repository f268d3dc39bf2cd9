"""guildwire - multi-guild Discord bot with device deployment commands."""

__version__ = "1.0.0"
