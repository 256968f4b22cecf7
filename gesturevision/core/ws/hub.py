"""
Client hub - owns the set of connected WebSocket clients.

Accepts connections, sends each new client the initial state before reading
anything from it, feeds inbound frames to the :class:`MessageRouter`,
broadcasts internal events to every client and terminates clients that stop
answering pings.
"""

from __future__ import annotations

import asyncio
import itertools
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from aiohttp import WSMsgType, web

from ..asyncio_utils import cancel_task, create_logged_task
from ..events import (
    ConfigChange,
    CustomGesturesChange,
    Event,
    EventBus,
    InternalEvent,
    ManifestsChange,
    PluginConfigChange,
    StreamStatusChange,
)
from ..logging_utils import get_module_logger
from .protocol import MessageType, encode, make_message

if TYPE_CHECKING:
    from .router import MessageRouter

KEEPALIVE_INTERVAL = 30.0

_client_ids = itertools.count(1)


class ClientConnection:
    """One connected client."""

    def __init__(self, ws: web.WebSocketResponse, request: Optional[web.Request] = None):
        self.ws = ws
        self.request = request
        self.client_id = next(_client_ids)
        self.is_alive = True

    @property
    def closed(self) -> bool:
        return self.ws.closed

    async def send(self, message: Dict[str, Any]) -> None:
        await self.ws.send_str(encode(message))

    async def reply(self, request: Dict[str, Any], message_type: str, payload: Any) -> None:
        await self.send(make_message(message_type, payload, request.get("messageId")))

    def terminate(self) -> None:
        """Drop the connection without a closing handshake."""
        transport = self.request.transport if self.request is not None else None
        if transport is not None:
            transport.abort()
        else:
            create_logged_task(self.ws.close(), context=f"close-client-{self.client_id}")

    def __repr__(self) -> str:
        return f"ClientConnection(id={self.client_id})"


class ClientHub:
    """Registry of live client connections."""

    def __init__(
        self,
        event_bus: EventBus,
        router: "MessageRouter",
        *,
        keepalive_interval: float = KEEPALIVE_INTERVAL,
    ):
        self.logger = get_module_logger("ClientHub")
        self.event_bus = event_bus
        self.router = router
        self.keepalive_interval = keepalive_interval
        self._clients: Dict[int, ClientConnection] = {}
        self._keepalive_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Registry

    @property
    def clients(self) -> List[ClientConnection]:
        return list(self._clients.values())

    @property
    def client_count(self) -> int:
        return len(self._clients)

    def register(self, ws: web.WebSocketResponse, request: Optional[web.Request] = None) -> ClientConnection:
        client = ClientConnection(ws, request)
        self._clients[client.client_id] = client
        self.logger.info("Client %d connected (%d total)", client.client_id, len(self._clients))
        return client

    def unregister(self, client: ClientConnection) -> None:
        if self._clients.pop(client.client_id, None) is not None:
            self.logger.info("Client %d disconnected (%d remaining)", client.client_id, len(self._clients))

    # ------------------------------------------------------------------
    # Lifecycle

    def attach(self) -> None:
        self.event_bus.add_observer(
            self._on_event,
            events={
                InternalEvent.CONFIG_RELOADED,
                InternalEvent.MANIFESTS_CHANGED,
                InternalEvent.PLUGIN_CONFIG_CHANGED,
                InternalEvent.STREAM_STATUS_CHANGED,
                InternalEvent.CUSTOM_GESTURES_CHANGED,
            },
        )

    def start(self) -> None:
        self.attach()
        if self._keepalive_task is None or self._keepalive_task.done():
            self._keepalive_task = create_logged_task(
                self._keepalive_loop(),
                logger=self.logger,
                context="ws-keepalive",
            )

    async def stop(self) -> None:
        self.event_bus.remove_observer(self._on_event)
        await cancel_task(self._keepalive_task)
        self._keepalive_task = None
        for client in self.clients:
            try:
                await client.ws.close()
            except (ConnectionError, RuntimeError) as e:
                self.logger.debug("Error closing client %d: %s", client.client_id, e)
            self.unregister(client)

    # ------------------------------------------------------------------
    # Connection handling

    async def handle(self, request: web.Request) -> web.WebSocketResponse:
        """aiohttp handler for the WebSocket endpoint."""
        ws = web.WebSocketResponse(autoping=False)
        await ws.prepare(request)
        client = self.register(ws, request)
        try:
            try:
                initial_state = await self.router.build_initial_state()
                await client.send(make_message(MessageType.INITIAL_STATE, initial_state))
            except Exception as e:
                self.logger.error("Error sending initial state to client %d, terminating: %s", client.client_id, e)
                client.terminate()
                return ws

            async for msg in ws:
                client.is_alive = True
                if msg.type == WSMsgType.TEXT:
                    await self.router.handle_text(client, msg.data)
                elif msg.type == WSMsgType.PING:
                    await ws.pong(msg.data)
                elif msg.type == WSMsgType.BINARY:
                    await self.router.handle_text(client, msg.data.decode("utf-8", errors="replace"))
                elif msg.type == WSMsgType.ERROR:
                    self.logger.warning("Client %d connection error: %s", client.client_id, ws.exception())
                    break
        finally:
            self.unregister(client)
        return ws

    # ------------------------------------------------------------------
    # Broadcast

    async def broadcast(self, message: Dict[str, Any]) -> int:
        """Send ``message`` to every open client; returns how many succeeded."""
        data = encode(message)
        delivered = 0
        for client in self.clients:
            if client.closed:
                continue
            try:
                await client.ws.send_str(data)
                delivered += 1
            except Exception as e:
                self.logger.warning(
                    "Broadcast of %s to client %d failed: %s",
                    message.get("type"), client.client_id, e,
                )
        return delivered

    async def _on_event(self, event: Event) -> None:
        payload = event.payload
        if event.kind is InternalEvent.CONFIG_RELOADED and isinstance(payload, ConfigChange):
            await self.broadcast(make_message(MessageType.FULL_CONFIG_UPDATE, {"config": payload.config}))
        elif event.kind is InternalEvent.MANIFESTS_CHANGED and isinstance(payload, ManifestsChange):
            await self.broadcast(make_message(MessageType.PLUGINS_MANIFESTS_UPDATED, {"manifests": payload.manifests}))
        elif event.kind is InternalEvent.PLUGIN_CONFIG_CHANGED and isinstance(payload, PluginConfigChange):
            await self.broadcast(
                make_message(
                    MessageType.PLUGIN_CONFIG_UPDATED,
                    {"pluginId": payload.plugin_id, "config": payload.config},
                )
            )
        elif event.kind is InternalEvent.STREAM_STATUS_CHANGED and isinstance(payload, StreamStatusChange):
            await self.broadcast(
                make_message(
                    MessageType.STREAM_STATUS_UPDATE,
                    {"pathName": payload.path_name, "status": payload.status, "message": payload.message},
                )
            )
        elif event.kind is InternalEvent.CUSTOM_GESTURES_CHANGED and isinstance(payload, CustomGesturesChange):
            await self.broadcast(
                make_message(MessageType.CUSTOM_GESTURES_METADATA_LIST, {"definitions": payload.definitions})
            )

    # ------------------------------------------------------------------
    # Liveness

    async def sweep(self) -> List[ClientConnection]:
        """Terminate clients silent since the last sweep, ping the rest."""
        terminated = []
        for client in self.clients:
            if not client.is_alive:
                self.logger.warning("Client %d missed keepalive, terminating", client.client_id)
                client.terminate()
                self.unregister(client)
                terminated.append(client)
                continue
            client.is_alive = False
            try:
                await client.ws.ping()
            except Exception as e:
                self.logger.warning("Ping to client %d failed: %s", client.client_id, e)
                client.terminate()
                self.unregister(client)
                terminated.append(client)
        return terminated

    async def _keepalive_loop(self) -> None:
        while True:
            await asyncio.sleep(self.keepalive_interval)
            await self.sweep()
