"""
HTTP server for SyncDB.

A thin aiohttp adapter around the Dispatcher. It owns the request
envelope only:
- POST <path>: JSON body in, ``{"methodResponses": [...]}`` out
- GET /health: liveness and the account served

Invariants:
    - A body that is not JSON is answered with 400 notJSON
    - A RequestError is answered with its own status and object
    - Method-level failures are inside methodResponses, never HTTP errors

How to change safely:
    - Keep method semantics in the Dispatcher, not in route handlers
    - New routes must not bypass the Dispatcher for engine access
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import Any, Optional

from aiohttp import web

from ..config import HttpConfig
from .dispatch import ERROR_NOT_JSON, Dispatcher, RequestError

logger = logging.getLogger(__name__)


def create_http_app(dispatcher: Dispatcher, config: Optional[HttpConfig] = None) -> web.Application:
    """Create the aiohttp application serving ``dispatcher``.

    Args:
        dispatcher: Dispatcher bound to the account's engine
        config: HTTP configuration (path to serve on)

    Returns:
        aiohttp Application instance
    """
    config = config or HttpConfig()
    app = web.Application()

    app.router.add_post(config.path, lambda r: handle_api(r, dispatcher))
    app.router.add_get("/health", lambda r: handle_health(r, dispatcher))

    @web.middleware
    async def error_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except Exception as e:
            logger.error(f"HTTP handler error: {e}", exc_info=True)
            return web.json_response(
                {"type": "serverFail", "status": 500, "detail": str(e)},
                status=500,
            )

    app.middlewares.append(error_middleware)

    return app


async def handle_api(request: web.Request, dispatcher: Dispatcher) -> web.Response:
    """Handle POST <path> - Run a batch of method calls."""
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        error = RequestError(ERROR_NOT_JSON, detail="Request body is not valid JSON")
        return web.json_response(error.to_dict(), status=error.status)

    try:
        method_responses = await dispatcher.process(body)
    except RequestError as e:
        return web.json_response(e.to_dict(), status=e.status)

    result: dict[str, Any] = {"methodResponses": method_responses}
    created_ids = body.get("createdIds")
    if isinstance(created_ids, dict):
        result["createdIds"] = created_ids
    return web.json_response(result)


async def handle_health(request: web.Request, dispatcher: Dispatcher) -> web.Response:
    """Handle GET /health - Health check."""
    return web.json_response({"healthy": True, "accountId": dispatcher.engine.account_id})


class HttpServer:
    """Runs the aiohttp application on a TCP site.

    Attributes:
        dispatcher: Dispatcher the routes call into
        config: Host, port and path to serve on
    """

    def __init__(self, dispatcher: Dispatcher, config: Optional[HttpConfig] = None) -> None:
        self.dispatcher = dispatcher
        self.config = config or HttpConfig()
        self._runner: Optional[web.AppRunner] = None

    async def start(self) -> None:
        """Start serving. Returns once the socket is bound."""
        if self._runner is not None:
            logger.warning("HTTP server already running")
            return

        app = create_http_app(self.dispatcher, self.config)
        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, self.config.host, self.config.port)
        await site.start()
        self._runner = runner

        logger.info(
            f"HTTP server running on http://{self.config.host}:{self.config.port}{self.config.path}"
        )

    async def stop(self) -> None:
        if self._runner is None:
            return
        logger.info("Stopping HTTP server")
        await self._runner.cleanup()
        self._runner = None

    @property
    def is_running(self) -> bool:
        return self._runner is not None
