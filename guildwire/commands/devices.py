"""Device control commands.

Handles: devices, reboot, restart.
"""

from __future__ import annotations

from typing import List

import structlog

from .base import BaseCommandGroup, Command, CommandInvocation, Parameter
from .deployment import _format_results

logger = structlog.get_logger("guildwire.devices")


class DeviceCommands(BaseCommandGroup):
    """Lists and power-cycles configured devices."""

    name = "devices"

    def get_commands(self) -> List[Command]:
        return [
            self.command(
                "devices",
                self.handle_devices,
                description="List configured devices.",
            ),
            self.command(
                "reboot",
                self.handle_reboot,
                (Parameter("device"),),
                description="Reboot one device.",
            ),
            self.command(
                "restart",
                self.handle_restart,
                description="Reboot every device.",
            ),
        ]

    async def handle_devices(self, invocation: CommandInvocation) -> str:
        devices = self.ctx.config.devices
        if not devices:
            return "No devices configured."
        lines = [f"- **{name}**: `{udid}`" for name, udid in sorted(devices.items())]
        return "Devices:\n" + "\n".join(lines)

    async def handle_reboot(self, invocation: CommandInvocation, device: str) -> str:
        devices = self.ctx.config.devices
        if device not in devices:
            return f"Unknown device `{device}`. Use `devices` to list them."

        logger.info("reboot_requested", user=invocation.user_name, device=device)
        code, output = await self.ctx.runner.run("reboot", device=device, udid=devices[device])
        return _format_results("Reboot", [(device, code, output)])

    async def handle_restart(self, invocation: CommandInvocation) -> str:
        devices = self.ctx.config.devices
        if not devices:
            return "No devices configured."

        logger.info("restart_all_requested", user=invocation.user_name, count=len(devices))
        results = []
        for name in sorted(devices):
            code, output = await self.ctx.runner.run("reboot", device=name, udid=devices[name])
            results.append((name, code, output))
        return _format_results("Restart", results)
