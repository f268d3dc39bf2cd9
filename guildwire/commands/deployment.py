"""Deployment control commands.

Handles: apps, deploy. Also exposes the ``deploy`` trigger so build
pipelines can push a fresh artifact through the trigger listener.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

import structlog
from pydantic import BaseModel, Field, ValidationError

from .base import BaseCommandGroup, Command, CommandInvocation, Parameter
from .runner import truncate

logger = structlog.get_logger("guildwire.devices")


class DeployRequest(BaseModel):
    """Body of a POST /triggers/deploy request."""
    app: str = Field(..., min_length=1, description="Configured app name")
    device: Optional[str] = Field(default=None, description="Device name; all devices when omitted")


class DeploymentCommands(BaseCommandGroup):
    """Installs configured app builds on configured devices."""

    name = "deployment"

    def get_commands(self) -> List[Command]:
        return [
            self.command(
                "apps",
                self.handle_apps,
                description="List deployable apps.",
            ),
            self.command(
                "deploy",
                self.handle_deploy,
                (Parameter("app"), Parameter("device", optional=True)),
                description="Install an app on one device, or on all devices.",
            ),
        ]

    def get_triggers(self):
        return {"deploy": self.trigger_deploy}

    async def handle_apps(self, invocation: CommandInvocation) -> str:
        apps = self.ctx.config.apps
        if not apps:
            return "No apps configured."
        lines = [f"- **{name}**: `{path}`" for name, path in sorted(apps.items())]
        return "Deployable apps:\n" + "\n".join(lines)

    async def handle_deploy(
        self, invocation: CommandInvocation, app: str, device: Optional[str] = None
    ) -> str:
        """Deploy ``app`` to ``device`` (or every device when omitted)."""
        problem = self._validate(app, device)
        if problem:
            return problem

        logger.info(
            "deploy_requested",
            user=invocation.user_name,
            guild_id=invocation.guild_id,
            app=app,
            device=device or "*",
        )
        results = await self._deploy(app, device)
        return _format_results(f"Deploy {app}", results)

    async def trigger_deploy(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Trigger entry point: ``{"app": ..., "device": ...?}``."""
        try:
            request = DeployRequest.model_validate(payload)
        except ValidationError as e:
            return {"ok": False, "error": f"Invalid deploy request: {e.error_count()} error(s)"}

        app, device = request.app, request.device
        problem = self._validate(app, device)
        if problem:
            return {"ok": False, "error": problem}

        logger.info("deploy_triggered", app=app, device=device or "*")
        results = await self._deploy(app, device)
        return {
            "ok": all(code == 0 for _, code, _ in results),
            "results": [
                {"device": name, "returncode": code} for name, code, _ in results
            ],
        }

    def _validate(self, app: str, device: Optional[str]) -> Optional[str]:
        if app not in self.ctx.config.apps:
            return f"Unknown app `{app}`. Use `apps` to list them."
        if device is not None and device not in self.ctx.config.devices:
            return f"Unknown device `{device}`. Use `devices` to list them."
        if not self.ctx.config.devices:
            return "No devices configured."
        return None

    async def _deploy(
        self, app: str, device: Optional[str]
    ) -> List[Tuple[str, int, str]]:
        devices = self.ctx.config.devices
        targets = [device] if device else sorted(devices)
        app_path = self.ctx.config.apps[app]

        results = []
        for name in targets:
            code, output = await self.ctx.runner.run(
                "deploy", device=name, udid=devices[name], app=app, app_path=app_path,
            )
            results.append((name, code, output))
        return results


def _format_results(title: str, results: List[Tuple[str, int, str]]) -> str:
    lines = [f"**{title}**"]
    for name, code, output in results:
        status = "ok" if code == 0 else f"failed (exit {code})"
        lines.append(f"- {name}: {status}")
        if code != 0 and output:
            lines.append(f"```{truncate(output, 300)}```")
    return "\n".join(lines)
