"""HTTP trigger listener.

Lets out-of-band systems (build pipelines, monitoring) reach the bot:

    GET  /health           → {"status": "ok", "guilds": {id: state}}
    POST /triggers/{name}  → run a trigger exposed by a command group

When a shared secret is configured, trigger requests must carry it in
the ``X-Trigger-Token`` header.
"""

import hmac
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog
from aiohttp import web

logger = structlog.get_logger("guildwire.http")

TOKEN_HEADER = "X-Trigger-Token"

TriggerLookup = Callable[[str], Optional[Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]]]
StatusProvider = Callable[[], Dict[Any, str]]


class TriggerListener:
    """aiohttp server exposing health and trigger routes.

    Args:
        host: Bind address.
        port: Bind port.
        get_trigger: Resolves a trigger name to its async handler.
        status: Returns per-guild connection states for /health.
        secret: Shared secret required on trigger requests (optional).
    """

    def __init__(
        self,
        host: str,
        port: int,
        get_trigger: TriggerLookup,
        status: Optional[StatusProvider] = None,
        secret: str = "",
    ):
        self.host = host
        self.port = port
        self._get_trigger = get_trigger
        self._status = status or (lambda: {})
        self._secret = secret
        self._runner: Optional[web.AppRunner] = None
        self.app = self._build_app()

    def _build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self._handle_health)
        app.router.add_post("/triggers/{name}", self._handle_trigger)
        return app

    @property
    def running(self) -> bool:
        return self._runner is not None

    async def start(self) -> None:
        """Bind and start serving. No-op if already running."""
        if self._runner is not None:
            return
        runner = web.AppRunner(self.app, access_log=None)
        await runner.setup()
        site = web.TCPSite(runner, self.host, self.port)
        try:
            await site.start()
        except OSError:
            await runner.cleanup()
            raise
        self._runner = runner
        logger.info("trigger_listener_started", host=self.host, port=self.port)

    async def stop(self) -> None:
        """Stop serving. Safe to call repeatedly and before start()."""
        runner, self._runner = self._runner, None
        if runner is None:
            return
        await runner.cleanup()
        logger.info("trigger_listener_stopped")

    # --- Routes ---

    async def _handle_health(self, request: web.Request) -> web.Response:
        guilds = {str(k): v for k, v in self._status().items()}
        return web.json_response({"status": "ok", "guilds": guilds})

    async def _handle_trigger(self, request: web.Request) -> web.Response:
        name = request.match_info["name"]

        if self._secret:
            supplied = request.headers.get(TOKEN_HEADER, "")
            if not hmac.compare_digest(supplied.encode(), self._secret.encode()):
                logger.warning("trigger_unauthorized", trigger=name, remote=request.remote)
                return web.json_response({"error": "unauthorized"}, status=401)

        handler = self._get_trigger(name)
        if handler is None:
            logger.warning("trigger_not_found", trigger=name, remote=request.remote)
            return web.json_response({"error": f"unknown trigger: {name}"}, status=404)

        if request.can_read_body:
            try:
                payload = await request.json()
            except ValueError:
                return web.json_response({"error": "body must be JSON"}, status=400)
        else:
            payload = {}
        if not isinstance(payload, dict):
            return web.json_response({"error": "body must be a JSON object"}, status=400)

        logger.info("trigger_received", trigger=name, remote=request.remote)
        try:
            result = await handler(payload)
        except Exception as e:
            logger.error(
                "trigger_failed", trigger=name, error_type=type(e).__name__, error=str(e),
            )
            return web.json_response({"error": "trigger failed"}, status=500)
        return web.json_response(result, status=202)
