"""Configuration Routes - global configuration endpoints."""

from aiohttp import web

from gesturevision.core.config.store import ConfigStore

from ..middleware import parse_json_body


def setup_config_routes(app: web.Application) -> None:
    """Register configuration routes."""
    app.router.add_get("/api/config", get_config_handler)
    app.router.add_patch("/api/config", patch_config_handler)


async def get_config_handler(request: web.Request) -> web.Response:
    """GET /api/config - Current validated configuration."""
    store: ConfigStore = request.app["config_store"]
    return web.json_response(store.get())


async def patch_config_handler(request: web.Request) -> web.Response:
    """PATCH /api/config - Merge a partial document into the configuration."""
    store: ConfigStore = request.app["config_store"]
    body, err = await parse_json_body(request)
    if err:
        return err
    result = await store.patch(body)
    return web.json_response(result.to_dict(), status=200 if result.success else 400)
