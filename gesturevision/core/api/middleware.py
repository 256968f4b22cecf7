"""
API Middleware - error formatting, request logging and rate limiting.

Every error leaves the API in the same shape:

    {
        "error": {"code": "ERROR_CODE", "message": "...", "details": {...}},
        "status": 400
    }
"""

import time
import traceback
from collections import deque
from typing import Callable, Deque, Dict, Optional, Tuple

from aiohttp import web

from gesturevision.core.logging_utils import get_module_logger


logger = get_module_logger("APIMiddleware")

MANAGE_PREFIX = "/api/plugins/manage"
MANAGE_RATE_LIMIT = 20
MANAGE_RATE_WINDOW = 15 * 60.0


@web.middleware
async def request_logging_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
    """Log method, path, status and timing of each request at debug level."""
    start_time = time.perf_counter()
    response = await handler(request)
    elapsed_ms = (time.perf_counter() - start_time) * 1000
    logger.debug("%s %s -> %s (%.1f ms)", request.method, request.path, response.status, elapsed_ms)
    return response


@web.middleware
async def error_handling_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
    """Catch everything a handler raises and format it as a JSON error response."""
    try:
        return await handler(request)
    except web.HTTPException as e:
        if e.status < 400:
            raise
        return create_error_response(
            e.reason.upper().replace(" ", "_") if e.reason else "HTTP_ERROR",
            e.text or str(e),
            status=e.status,
        )
    except ValueError as e:
        logger.warning("Validation error on %s: %s", request.path, e)
        return create_error_response("VALIDATION_ERROR", str(e), status=400)
    except Exception as e:
        logger.error("Unexpected error on %s %s: %s\n%s", request.method, request.path, e, traceback.format_exc())
        return create_error_response(
            "INTERNAL_ERROR",
            "An unexpected error occurred",
            status=500,
            details={"type": type(e).__name__, "message": str(e)},
        )


class RateLimiter:
    """Sliding-window request counter keyed by client address."""

    def __init__(self, limit: int = MANAGE_RATE_LIMIT, window: float = MANAGE_RATE_WINDOW, clock: Callable[[], float] = time.monotonic):
        self.limit = limit
        self.window = window
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = {}

    def hit(self, key: str) -> Tuple[bool, float]:
        """Record a request for ``key``. Returns (allowed, retry_after_seconds)."""
        now = self._clock()
        hits = self._hits.setdefault(key, deque())
        while hits and now - hits[0] >= self.window:
            hits.popleft()
        if len(hits) >= self.limit:
            return False, self.window - (now - hits[0])
        hits.append(now)
        return True, 0.0

    def reset(self) -> None:
        self._hits.clear()


def create_rate_limit_middleware(limiter: RateLimiter, path_prefix: str = MANAGE_PREFIX):
    """Build a middleware applying ``limiter`` to paths under ``path_prefix``."""

    @web.middleware
    async def rate_limit_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        if not request.path.startswith(path_prefix):
            return await handler(request)
        remote = request.remote or "unknown"
        allowed, retry_after = limiter.hit(remote)
        if not allowed:
            logger.warning("Rate limit exceeded for %s on %s", remote, request.path)
            response = create_error_response(
                "RATE_LIMITED",
                "Too many plugin management requests from this IP, please try again after 15 minutes",
                status=429,
            )
            response.headers["Retry-After"] = str(int(retry_after) + 1)
            return response
        return await handler(request)

    return rate_limit_middleware


def create_error_response(code: str, message: str, status: int = 400, details: Optional[dict] = None) -> web.Response:
    """Create standardized error response."""
    error = {"error": {"code": code, "message": message}, "status": status}
    if details:
        error["error"]["details"] = details
    return web.json_response(error, status=status)


async def parse_json_body(request: web.Request, required: bool = True):
    """Parse a JSON object body. Returns (body, error_response)."""
    try:
        body = await request.json()
    except Exception:
        if required:
            return None, create_error_response("INVALID_BODY", "Request body must be valid JSON", status=400)
        return {}, None
    if not isinstance(body, dict):
        return None, create_error_response("INVALID_BODY", "Request body must be a JSON object", status=400)
    if required and not body:
        return None, create_error_response("EMPTY_BODY", "Request body must contain data", status=400)
    return body, None


def result_to_response(result: dict, not_found_status: int = 404) -> web.Response:
    """Map a ``{success, message}`` result to 200, 404 (for "not found") or 400."""
    if result.get("success"):
        return web.json_response(result)
    status = not_found_status if "not found" in str(result.get("message", "")).lower() else 400
    return web.json_response(result, status=status)
