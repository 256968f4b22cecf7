"""
Control Client - WebSocket client for the control channel.

Wraps an aiohttp WebSocket with:
- request/response correlation (:class:`RequestTracker`)
- listeners for pushed messages, keyed by message type
- an application-level ping that drops a silent connection
- reconnect with capped exponential backoff, ending in ``FAILED``
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import json
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import aiohttp

from gesturevision.core.asyncio_utils import cancel_task, create_logged_task
from gesturevision.core.logging_utils import get_module_logger
from gesturevision.core.ws.protocol import MessageType, encode

from .request_tracker import DEFAULT_REQUEST_TIMEOUT, NotConnectedError, RequestTracker
from .retry_policy import RECONNECT_POLICY, RetryPolicy

logger = get_module_logger("ControlClient")

PING_INTERVAL = 30.0
PONG_TIMEOUT = 10.0

Listener = Callable[[Any], Any]


class ConnectionStatus(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


async def _invoke(callback: Callable[..., Any], *args: Any) -> None:
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.error("Listener %s failed: %s", getattr(callback, "__name__", callback), e, exc_info=True)


class ControlClient:
    """
    Client side of the control channel.

    Usage:
        client = ControlClient("ws://gesturevision:9001/ws")
        client.on("FULL_CONFIG_UPDATE", handle_config)
        await client.connect()
        result = await client.request("PATCH_CONFIG", {"targetFpsPreference": 15})
        await client.disconnect()
    """

    def __init__(
        self,
        url: str,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        ping_interval: float = PING_INTERVAL,
        pong_timeout: float = PONG_TIMEOUT,
        reconnect_policy: RetryPolicy = RECONNECT_POLICY,
    ):
        self.url = url
        self.request_timeout = request_timeout
        self.ping_interval = ping_interval
        self.pong_timeout = pong_timeout
        self.reconnect_policy = reconnect_policy

        self._session = session
        self._owns_session = session is None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._status = ConnectionStatus.DISCONNECTED
        self._tracker = RequestTracker()
        self._closing = False

        self._receive_task: Optional[asyncio.Task] = None
        self._ping_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None

        self._ping_ids = itertools.count(1)
        self._pong_waiters: Dict[Any, asyncio.Future] = {}

        self._listeners: Dict[str, List[Listener]] = {}
        self._status_listeners: List[Callable[[ConnectionStatus], Any]] = []
        self._error_listeners: List[Callable[[str], Any]] = []

    # ------------------------------------------------------------------
    # Observers

    def on(self, message_type: str, callback: Listener) -> Callable[[], None]:
        """Call ``callback(payload)`` for every pushed message of ``message_type``.

        Returns a function that removes the listener.
        """
        self._listeners.setdefault(message_type, []).append(callback)

        def _remove() -> None:
            callbacks = self._listeners.get(message_type, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return _remove

    def on_status(self, callback: Callable[[ConnectionStatus], Any]) -> None:
        self._status_listeners.append(callback)

    def on_error(self, callback: Callable[[str], Any]) -> None:
        """Called once reconnecting gives up."""
        self._error_listeners.append(callback)

    # ------------------------------------------------------------------
    # State

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def is_connected(self) -> bool:
        return self._status == ConnectionStatus.CONNECTED and self._ws is not None and not self._ws.closed

    @property
    def pending_requests(self) -> int:
        return self._tracker.pending_count

    async def _set_status(self, status: ConnectionStatus) -> None:
        if status == self._status:
            return
        logger.debug("Status %s -> %s", self._status.value, status.value)
        self._status = status
        for callback in list(self._status_listeners):
            await _invoke(callback, status)

    # ------------------------------------------------------------------
    # Connection lifecycle

    async def connect(self) -> bool:
        """Open the connection; on failure a reconnect loop is started.

        Returns:
            True if connected on the first attempt
        """
        if self.is_connected:
            return True
        self._closing = False
        await self._set_status(ConnectionStatus.CONNECTING)
        try:
            await self._open()
            return True
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            logger.warning("Connection to %s failed: %s", self.url, e)
            self._start_reconnect()
            return False

    async def disconnect(self) -> None:
        """Close the connection and stop reconnecting."""
        self._closing = True
        await cancel_task(self._reconnect_task)
        self._reconnect_task = None
        await cancel_task(self._ping_task)
        self._ping_task = None

        ws = self._ws
        if ws is not None and not ws.closed:
            await ws.close()
        await cancel_task(self._receive_task)
        self._receive_task = None
        self._ws = None

        self._tracker.fail_all(NotConnectedError("Client disconnected"))
        self._fail_pong_waiters()
        await self._set_status(ConnectionStatus.DISCONNECTED)

        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def _open(self) -> None:
        ws = await self._get_session().ws_connect(self.url)
        self._ws = ws
        await self._set_status(ConnectionStatus.CONNECTED)
        logger.info("Connected to %s", self.url)
        self._receive_task = create_logged_task(
            self._receive_loop(ws),
            logger=logger,
            context="control-client-receive",
        )
        if self.ping_interval > 0:
            self._ping_task = create_logged_task(
                self._ping_loop(ws),
                logger=logger,
                context="control-client-ping",
            )

    def _start_reconnect(self) -> None:
        if self._closing:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_task = create_logged_task(
            self._reconnect_loop(),
            logger=logger,
            context="control-client-reconnect",
        )

    async def _reconnect_loop(self) -> None:
        policy = self.reconnect_policy
        for attempt in range(policy.max_attempts):
            await self._set_status(ConnectionStatus.RECONNECTING)
            delay = policy.backoff(attempt)
            logger.info("Reconnecting to %s in %.1fs (attempt %d/%d)", self.url, delay, attempt + 1, policy.max_attempts)
            await asyncio.sleep(delay)
            if self._closing:
                return
            try:
                await self._open()
                return
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
                logger.warning("Reconnect attempt %d failed: %s", attempt + 1, e)

        message = f"Could not reconnect to {self.url} after {policy.max_attempts} attempts"
        logger.error(message)
        await self._set_status(ConnectionStatus.FAILED)
        for callback in list(self._error_listeners):
            await _invoke(callback, message)

    async def _on_closed(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        if self._ws is ws:
            self._ws = None
        await cancel_task(self._ping_task)
        self._ping_task = None
        self._tracker.fail_all(NotConnectedError("Connection closed"))
        self._fail_pong_waiters()

        if self._closing:
            await self._set_status(ConnectionStatus.DISCONNECTED)
            return
        logger.warning("Connection to %s lost (close code %s)", self.url, ws.close_code)
        await self._set_status(ConnectionStatus.DISCONNECTED)
        self._start_reconnect()

    # ------------------------------------------------------------------
    # Receiving

    async def _receive_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    await self._handle_text(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.warning("Connection error: %s", ws.exception())
                    break
        finally:
            if not ws.closed:
                await ws.close()
            await self._on_closed(ws)

    async def _handle_text(self, raw: str) -> None:
        try:
            message = json.loads(raw)
        except ValueError:
            logger.warning("Discarding unparseable message: %.200s", raw)
            return
        if not isinstance(message, dict):
            return

        message_type = message.get("type")
        payload = message.get("payload")

        if message_type == MessageType.PONG:
            pong_id = payload.get("id") if isinstance(payload, dict) else None
            waiter = self._pong_waiters.pop(pong_id, None)
            if waiter is not None and not waiter.done():
                waiter.set_result(True)
            return

        if self._tracker.resolve(message):
            return

        if message_type == MessageType.ERROR:
            logger.warning("Server error: %s", payload)

        for callback in list(self._listeners.get(message_type, [])):
            await _invoke(callback, payload)

    # ------------------------------------------------------------------
    # Keepalive

    def _fail_pong_waiters(self) -> None:
        for waiter in self._pong_waiters.values():
            if not waiter.done():
                waiter.set_result(False)
        self._pong_waiters.clear()

    async def _ping_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        while not ws.closed:
            await asyncio.sleep(self.ping_interval)
            if not await self.ping(ws):
                logger.warning("No pong within %.1fs, dropping connection", self.pong_timeout)
                self._ping_task = None
                await ws.close()
                return

    async def ping(self, ws: Optional[aiohttp.ClientWebSocketResponse] = None) -> bool:
        """Send an application ping and wait for the matching pong."""
        ws = ws or self._ws
        if ws is None or ws.closed:
            return False
        ping_id = next(self._ping_ids)
        waiter = asyncio.get_running_loop().create_future()
        self._pong_waiters[ping_id] = waiter
        try:
            await ws.send_str(encode({"type": MessageType.PING, "payload": {"id": ping_id}}))
            return bool(await asyncio.wait_for(waiter, timeout=self.pong_timeout))
        except (asyncio.TimeoutError, ConnectionError):
            return False
        finally:
            self._pong_waiters.pop(ping_id, None)

    # ------------------------------------------------------------------
    # Sending

    async def _send(self, message: Dict[str, Any]) -> None:
        if not self.is_connected:
            raise NotConnectedError(f"Not connected to {self.url}")
        await self._ws.send_str(encode(message))

    async def send(self, message_type: str, payload: Any = None) -> None:
        """Send a message without waiting for a reply."""
        await self._send({"type": message_type, "payload": payload})

    async def request(self, message_type: str, payload: Any = None, timeout: Optional[float] = None) -> Any:
        """Send a request and return the reply's payload.

        Raises:
            NotConnectedError: not connected
            RequestTimeoutError: no reply in time
            RequestFailedError: the server replied with ``ERROR``
        """
        if not self.is_connected:
            raise NotConnectedError(f"Not connected to {self.url}")
        return await self._tracker.send_and_wait(
            self._send,
            message_type,
            payload,
            timeout=self.request_timeout if timeout is None else timeout,
        )
