"""HTTP client for the MediaMTX control API (v3)."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import aiohttp

from ..connection.retry_policy import MEDIA_SERVER_RETRY_POLICY, RetryPolicy
from ..logging_utils import get_module_logger

REQUEST_TIMEOUT = 5.0
RETRYABLE_ERRORS = (aiohttp.ClientConnectionError, asyncio.TimeoutError)


class MtxApiError(Exception):
    """The media server answered with an error status or could not be reached."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status

    @property
    def not_found(self) -> bool:
        return self.status == 404


class MtxApiClient:
    """Thin wrapper over the path-configuration endpoints.

    Connection refusals and timeouts are retried according to
    ``retry_policy``; HTTP error statuses are raised immediately as
    :class:`MtxApiError`.
    """

    def __init__(
        self,
        base_url: str,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = REQUEST_TIMEOUT,
        retry_policy: RetryPolicy = MEDIA_SERVER_RETRY_POLICY,
    ):
        self.base_url = base_url.rstrip("/")
        self.logger = get_module_logger("MtxApi")
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._retry_policy = retry_policy

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _request_once(self, method: str, endpoint: str, body: Any) -> Any:
        url = f"{self.base_url}{endpoint}"
        session = self._get_session()
        async with session.request(method, url, json=body, timeout=self._timeout) as response:
            text = await response.text()
            if response.status >= 400:
                raise MtxApiError(
                    f"MediaMTX API error ({method} {endpoint}): {response.status} {response.reason}. Body: {text}",
                    status=response.status,
                )
            if not text or "application/json" not in response.headers.get("Content-Type", ""):
                return None
            return await response.json(content_type=None)

    async def call(self, endpoint: str, method: str = "GET", body: Any = None) -> Any:
        def _log_retry(attempt: int, error: BaseException) -> None:
            self.logger.warning(
                "Attempt %d to reach %s%s after %s",
                attempt, self.base_url, endpoint, type(error).__name__,
            )

        try:
            return await self._retry_policy.call(
                lambda: self._request_once(method, endpoint, body),
                retry_on=RETRYABLE_ERRORS,
                on_retry=_log_retry,
            )
        except asyncio.TimeoutError as e:
            raise MtxApiError(f"MediaMTX API call timed out ({method} {endpoint})") from e
        except aiohttp.ClientError as e:
            raise MtxApiError(f"MediaMTX API call failed ({method} {endpoint}): {e}") from e

    async def list_paths(self) -> List[Dict[str, Any]]:
        data = await self.call("/v3/config/paths/list")
        items = (data or {}).get("items") or []
        return [item for item in items if isinstance(item, dict) and item.get("name")]

    async def replace_path(self, name: str, payload: Dict[str, Any]) -> None:
        await self.call(f"/v3/config/paths/replace/{quote(name, safe='')}", "POST", payload)

    async def delete_path(self, name: str) -> None:
        await self.call(f"/v3/config/paths/delete/{quote(name, safe='')}", "DELETE")
