"""
API Server - aiohttp application serving the management API and the
WebSocket control channel.
"""

from typing import Optional

from aiohttp import web

from gesturevision.core.logging_utils import get_module_logger

from .middleware import (
    RateLimiter,
    create_rate_limit_middleware,
    error_handling_middleware,
    request_logging_middleware,
)
from .routes import setup_all_routes


logger = get_module_logger("APIServer")


class APIServer:
    """
    HTTP and WebSocket server for the control plane.

    The server shares the event loop with the rest of the control plane;
    route handlers reach the components through ``request.app[...]``.
    """

    def __init__(
        self,
        config_store,
        registry,
        hub,
        reconciler=None,
        host: str = "0.0.0.0",
        port: int = 9001,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self.config_store = config_store
        self.registry = registry
        self.hub = hub
        self.reconciler = reconciler
        self.host = host
        self.port = port
        self.rate_limiter = rate_limiter or RateLimiter()

        self._app: Optional[web.Application] = None
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None
        self._running = False

    def create_app(self) -> web.Application:
        """Create and configure the aiohttp application."""
        # rate limit -> request logging -> error handling
        middlewares = [
            create_rate_limit_middleware(self.rate_limiter),
            request_logging_middleware,
            error_handling_middleware,
        ]
        app = web.Application(middlewares=middlewares)

        app["config_store"] = self.config_store
        app["registry"] = self.registry
        app["reconciler"] = self.reconciler
        app["hub"] = self.hub

        setup_all_routes(app, self.hub)
        return app

    async def start(self) -> None:
        """Start the server (non-blocking)."""
        if self._running:
            logger.warning("API server already running")
            return

        self._app = self.create_app()
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()

        self._site = web.TCPSite(self._runner, self.host, self.port)
        await self._site.start()

        self._running = True
        logger.info("Server listening on http://%s:%d (WebSocket at /ws)", self.host, self.port)

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if not self._running:
            return

        logger.info("Stopping API server...")

        if self._site:
            await self._site.stop()
            self._site = None

        if self._runner:
            await self._runner.cleanup()
            self._runner = None

        self._app = None
        self._running = False
        logger.info("API server stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"
