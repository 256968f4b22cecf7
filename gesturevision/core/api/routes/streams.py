"""Stream Routes - RTSP source ROI updates and media server hooks."""

from aiohttp import web

from gesturevision.core.config.store import ConfigStore

from ..middleware import create_error_response, parse_json_body


def setup_stream_routes(app: web.Application) -> None:
    """Register stream routes."""
    app.router.add_patch("/api/rtsp/{path_name}/roi", patch_roi_handler)
    app.router.add_post("/api/mtx-hook/{status}/{path_name}", mtx_hook_handler)


async def patch_roi_handler(request: web.Request) -> web.Response:
    """PATCH /api/rtsp/{path_name}/roi - Replace the ROI of one RTSP source."""
    store: ConfigStore = request.app["config_store"]
    body, err = await parse_json_body(request)
    if err:
        return err
    result = await store.set_source_roi(request.match_info["path_name"], body)
    if result.success:
        return web.json_response(result.to_dict())
    status = 404 if "not found" in result.message else 400
    return web.json_response(result.to_dict(), status=status)


async def mtx_hook_handler(request: web.Request) -> web.Response:
    """POST /api/mtx-hook/{status}/{path_name} - runOnReady/runOnNotReady callback."""
    reconciler = request.app["reconciler"]
    hook_status = request.match_info["status"]
    path_name = request.match_info["path_name"]
    if reconciler is None:
        return create_error_response("RECONCILER_UNAVAILABLE", "Media path reconciler not available", status=503)
    status = await reconciler.report_hook(path_name, hook_status)
    if status is None:
        return create_error_response(
            "INVALID_HOOK_STATUS",
            f"Unknown hook status '{hook_status}'",
            status=400,
        )
    return web.json_response({"pathName": path_name, "status": status})
