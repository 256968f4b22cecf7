"""System Routes - health check and WebSocket upgrade."""

from aiohttp import web


HEALTH_TEXT = "GestureVision Backend is running."


def setup_system_routes(app: web.Application, hub) -> None:
    """Register system routes."""
    app.router.add_get("/", health_handler)
    app.router.add_get("/ws", hub.handle)


async def health_handler(request: web.Request) -> web.Response:
    """GET / - Liveness text."""
    return web.Response(text=HEALTH_TEXT)
