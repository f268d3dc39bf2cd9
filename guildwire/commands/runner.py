"""External tool runner shared by the deployment and device groups.

Device actions are operator-configured argv templates, for example::

    device_commands:
      deploy: ["ios-deploy", "--id", "{udid}", "--bundle", "{app_path}"]
      reboot: ["idevicediagnostics", "-u", "{udid}", "restart"]

Templates are rendered per call and executed without a shell.
"""

import asyncio
from typing import Dict, List, Sequence, Tuple

import structlog

from ..exceptions import ConfigurationError, DeviceCommandError

logger = structlog.get_logger("guildwire.devices")


def truncate(s: str, limit: int = 1500) -> str:
    """Trim tool output so it fits in a single chat message."""
    if not s:
        return ""
    if len(s) <= limit:
        return s
    return s[: max(0, limit - 3)] + "..."


class DeviceRunner:
    """Renders and runs device action templates.

    Args:
        templates: Action name -> argv template.
        timeout: Seconds before a running tool is killed.
    """

    def __init__(self, templates: Dict[str, Sequence[str]], timeout: int = 600):
        self.templates = dict(templates or {})
        self.timeout = timeout

    def render(self, action: str, **values: str) -> List[str]:
        """Fill an action's argv template.

        Raises:
            ConfigurationError: The action has no template, or the
                template references an unknown placeholder.
        """
        template = self.templates.get(action)
        if not template:
            raise ConfigurationError(
                f"No device command configured for '{action}'",
                setting_name=f"device_commands.{action}",
            )
        try:
            return [str(part).format(**values) for part in template]
        except (KeyError, IndexError) as e:
            raise ConfigurationError(
                f"device_commands.{action} uses unknown placeholder {e}",
                setting_name=f"device_commands.{action}",
            ) from None

    async def run(self, action: str, **values: str) -> Tuple[int, str]:
        """Run an action and return (exit code, combined output).

        Raises:
            DeviceCommandError: The tool is missing or timed out.
        """
        cmd = self.render(action, **values)
        logger.info("device_command_start", action=action, tool=cmd[0], target=values.get("device"))

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise DeviceCommandError(
                f"Cannot run {cmd[0]}: {e}", action=action
            ) from e

        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise DeviceCommandError(
                f"{action} timed out after {self.timeout}s", action=action
            ) from None

        output = (stdout or b"").decode("utf-8", errors="replace").strip()
        logger.info(
            "device_command_finished",
            action=action,
            returncode=process.returncode,
            output_length=len(output),
        )
        return process.returncode, output
