"""Plugin Routes - manifests, per-plugin configuration and management."""

from aiohttp import web

from gesturevision.core.plugins.registry import PluginRegistry

from ..middleware import create_error_response, parse_json_body, result_to_response


def setup_plugin_routes(app: web.Application) -> None:
    """Register plugin routes."""
    app.router.add_post("/api/plugins/manage/install", install_plugin_handler)
    app.router.add_post("/api/plugins/manage/{plugin_id}/uninstall", uninstall_plugin_handler)
    app.router.add_post("/api/plugins/manage/{plugin_id}/state", set_plugin_state_handler)

    app.router.add_get("/api/plugins/manifests", get_manifests_handler)
    app.router.add_get("/api/plugins/{plugin_id}/config", get_plugin_config_handler)
    app.router.add_patch("/api/plugins/{plugin_id}/config", patch_plugin_config_handler)
    app.router.add_post("/api/plugins/{plugin_id}/test", test_plugin_connection_handler)


async def get_manifests_handler(request: web.Request) -> web.Response:
    """GET /api/plugins/manifests - All manifests with status and locales."""
    registry: PluginRegistry = request.app["registry"]
    return web.json_response(await registry.get_manifests())


async def get_plugin_config_handler(request: web.Request) -> web.Response:
    """GET /api/plugins/{plugin_id}/config - Cached global config of a plugin."""
    registry: PluginRegistry = request.app["registry"]
    plugin_id = request.match_info["plugin_id"]
    if registry.get_plugin(plugin_id) is None:
        return create_error_response("PLUGIN_NOT_FOUND", f"Plugin '{plugin_id}' not found", status=404)
    return web.json_response(await registry.get_global_config(plugin_id))


async def patch_plugin_config_handler(request: web.Request) -> web.Response:
    """PATCH /api/plugins/{plugin_id}/config - Validate and save a plugin's global config."""
    registry: PluginRegistry = request.app["registry"]
    plugin_id = request.match_info["plugin_id"]
    body, err = await parse_json_body(request, required=False)
    if err:
        return err
    if registry.get_plugin(plugin_id) is None:
        return create_error_response("PLUGIN_NOT_FOUND", f"Plugin '{plugin_id}' not found", status=404)
    result = await registry.save_global_config(plugin_id, body)
    return web.json_response(result.to_dict(), status=200 if result.success else 400)


async def test_plugin_connection_handler(request: web.Request) -> web.Response:
    """POST /api/plugins/{plugin_id}/test - Ask a plugin to test its connection."""
    registry: PluginRegistry = request.app["registry"]
    body, err = await parse_json_body(request, required=False)
    if err:
        return err
    result = await registry.test_connection(request.match_info["plugin_id"], body or None)
    return web.json_response(result)


async def install_plugin_handler(request: web.Request) -> web.Response:
    """POST /api/plugins/manage/install - Clone and load a plugin repository."""
    registry: PluginRegistry = request.app["registry"]
    body, err = await parse_json_body(request)
    if err:
        return err
    url = body.get("url")
    if not isinstance(url, str) or not url:
        return create_error_response("MISSING_URL", "'url' field is required", status=400)
    result = await registry.install(url)
    if not result.success and "already exists" in result.message:
        return web.json_response(result.to_dict(), status=409)
    return result_to_response(result.to_dict())


async def uninstall_plugin_handler(request: web.Request) -> web.Response:
    """POST /api/plugins/manage/{plugin_id}/uninstall - Remove a plugin."""
    registry: PluginRegistry = request.app["registry"]
    result = await registry.uninstall(request.match_info["plugin_id"])
    return result_to_response(result.to_dict())


async def set_plugin_state_handler(request: web.Request) -> web.Response:
    """POST /api/plugins/manage/{plugin_id}/state - Enable or disable a plugin."""
    registry: PluginRegistry = request.app["registry"]
    body, err = await parse_json_body(request)
    if err:
        return err
    state = body.get("state")
    if state not in ("enabled", "disabled"):
        return create_error_response(
            "INVALID_STATE",
            "Invalid state provided. Must be 'enabled' or 'disabled'.",
            status=400,
        )
    result = await registry.set_state(request.match_info["plugin_id"], state)
    return result_to_response(result.to_dict())
