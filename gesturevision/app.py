"""Composition root: builds the control plane components and runs them."""

from __future__ import annotations

import asyncio
from typing import Optional

from gesturevision.core import paths
from gesturevision.core.api.server import APIServer
from gesturevision.core.config.repository import ConfigRepository
from gesturevision.core.config.store import ConfigStore
from gesturevision.core.events import EventBus
from gesturevision.core.logging_utils import get_module_logger
from gesturevision.core.media.mtx_api import MtxApiClient
from gesturevision.core.media.reconciler import MediaPathReconciler
from gesturevision.core.plugins.registry import PluginRegistry
from gesturevision.core.settings import ServerSettings
from gesturevision.core.ws.hub import ClientHub
from gesturevision.core.ws.router import MessageRouter


class ControlPlane:
    """Owns every long-lived component of one control plane process."""

    def __init__(self, settings: ServerSettings):
        self.logger = get_module_logger("ControlPlane")
        self.settings = settings

        self.event_bus = EventBus()
        self.repository = ConfigRepository(settings.config_path)
        self.registry = PluginRegistry(settings.plugins_dir, self.repository, self.event_bus)
        self.config_store = ConfigStore(
            self.repository,
            self.event_bus,
            action_settings_validator=self.registry.validate_action_settings,
        )
        self.mtx_api = MtxApiClient(settings.mtx_api_base_url)
        self.reconciler = MediaPathReconciler(
            self.config_store,
            self.mtx_api,
            self.event_bus,
            webhook_base_url=settings.webhook_base_url,
        )
        self.router = MessageRouter(
            self.config_store,
            self.registry,
            self.reconciler,
            custom_gestures_dir=settings.custom_gestures_dir,
            event_bus=self.event_bus,
        )
        self.hub = ClientHub(self.event_bus, self.router)
        self.server = APIServer(
            self.config_store,
            self.registry,
            self.hub,
            self.reconciler,
            host=settings.host,
            port=settings.port,
        )

        self._stop_event = asyncio.Event()
        self._started = False

    async def start(self) -> None:
        if self._started:
            return
        self.logger.info("Starting control plane (config: %s)", self.settings.config_path)

        await asyncio.to_thread(
            paths.ensure_directories,
            self.settings.plugins_dir,
            self.settings.custom_gestures_dir,
        )
        await self.config_store.load()
        await self.registry.initialize()
        self.reconciler.attach()
        self.hub.start()

        self.reconciler.request_sync()
        await self.server.start()
        self._started = True

    async def stop(self) -> None:
        if not self._started:
            return
        self.logger.info("Stopping control plane...")
        await self.hub.stop()
        await self.server.stop()
        await self.reconciler.close()
        await self.registry.destroy()
        await self.config_store.close()
        await self.mtx_api.close()
        self._started = False
        self.logger.info("Control plane stopped")

    def request_shutdown(self) -> None:
        self._stop_event.set()

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Start, wait until shutdown is requested, then stop."""
        stop_event = stop_event or self._stop_event
        await self.start()
        try:
            await stop_event.wait()
        finally:
            await self.stop()
