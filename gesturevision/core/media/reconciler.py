"""
Media-Path Reconciler - keeps the media server's path table in step with
the RTSP sources in the configuration.

Desired state is the set of configured sources keyed by normalized name;
actual state is whatever the media server lists. A sync deletes stale paths
first and then upserts missing or changed ones. Each call's failure is
logged and the rest of the batch still runs.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from ..asyncio_utils import cancel_task, create_logged_task
from ..config.store import ConfigStore
from ..events import ConfigChange, Event, EventBus, InternalEvent, StreamStatusChange
from ..logging_utils import get_module_logger
from ..naming import normalize_name
from .mtx_api import MtxApiClient, MtxApiError

ON_DEMAND_TIMEOUT = "15s"

STATUS_ACTIVE = "active"
STATUS_INACTIVE = "inactive"
STATUS_UNKNOWN = "unknown"
STATUS_ERROR = "error"


class StreamControlError(Exception):
    """Configuring an on-demand path on the media server failed."""


class StreamNotConfiguredError(StreamControlError):
    """No RTSP source with a URL matches the requested path name."""


@dataclass
class SyncReport:
    deleted: List[str] = field(default_factory=list)
    upserted: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def call_count(self) -> int:
        return len(self.deleted) + len(self.upserted) + len(self.failed)


class MediaPathReconciler:
    """Diffs desired against actual paths and applies the difference."""

    def __init__(
        self,
        config_store: ConfigStore,
        api: MtxApiClient,
        event_bus: EventBus,
        *,
        webhook_base_url: str,
    ):
        self.logger = get_module_logger("MediaReconciler")
        self.config_store = config_store
        self.api = api
        self.event_bus = event_bus
        self.webhook_base_url = webhook_base_url.rstrip("/")
        self._sync_lock = asyncio.Lock()
        self._sync_requested = False
        self._attached = False
        self.sync_task: Optional[asyncio.Task[SyncReport]] = None

    # ------------------------------------------------------------------
    # Trigger policy

    def attach(self) -> None:
        if self._attached:
            return
        self.event_bus.add_observer(
            self._on_config_event,
            events={InternalEvent.CONFIG_RELOADED, InternalEvent.CONFIG_PATCHED},
        )
        self._attached = True

    def detach(self) -> None:
        self.event_bus.remove_observer(self._on_config_event)
        self._attached = False

    async def _on_config_event(self, event: Event) -> None:
        change = event.payload
        if isinstance(change, ConfigChange) and change.rtsp_changed is False:
            return
        self.request_sync()

    def request_sync(self) -> asyncio.Task[SyncReport]:
        """Start a background sync, or fold this trigger into the current one.

        A trigger that arrives before the queued sync has started is already
        covered by it; one that arrives while it runs causes exactly one
        follow-up sync.
        """
        if self.sync_task is not None and not self.sync_task.done():
            self._sync_requested = True
            return self.sync_task
        self.sync_task = create_logged_task(self.sync(), logger=self.logger, context="MediaReconciler.sync")
        return self.sync_task

    async def sync(self) -> SyncReport:
        async with self._sync_lock:
            self._sync_requested = False
            report = await self._sync()
            while self._sync_requested:
                self._sync_requested = False
                report = await self._sync()
        return report

    async def close(self) -> None:
        self.detach()
        await cancel_task(self.sync_task)
        self.sync_task = None

    # ------------------------------------------------------------------
    # Diffing

    def desired_paths(self) -> Dict[str, Dict[str, Any]]:
        return {
            normalize_name(source["name"]): source
            for source in self.config_store.rtsp_sources()
            if source.get("name") and source.get("url")
        }

    @staticmethod
    def needs_update(desired: Dict[str, Any], actual: Optional[Dict[str, Any]]) -> bool:
        if actual is None:
            return True
        return (
            desired.get("url") != actual.get("source")
            or bool(desired.get("sourceOnDemand")) != bool(actual.get("sourceOnDemand"))
        )

    def _webhook_command(self, status: str, key: str) -> str:
        return f"curl -X POST {self.webhook_base_url}/api/mtx-hook/{status}/{quote(key, safe='')}"

    def build_path_payload(self, key: str, source: Dict[str, Any]) -> Dict[str, Any]:
        on_demand = bool(source.get("sourceOnDemand"))
        payload: Dict[str, Any] = {"source": source.get("url"), "sourceOnDemand": on_demand}
        if on_demand:
            payload["sourceOnDemandStartTimeout"] = ON_DEMAND_TIMEOUT
            payload["sourceOnDemandCloseAfter"] = ON_DEMAND_TIMEOUT
        else:
            payload["runOnReady"] = self._webhook_command("ready", key)
            payload["runOnNotReady"] = self._webhook_command("notReady", key)
        return payload

    async def _sync(self) -> SyncReport:
        report = SyncReport()
        desired = self.desired_paths()
        try:
            actual = {item["name"]: item for item in await self.api.list_paths()}
        except MtxApiError as e:
            self.logger.error("Cannot list media server paths: %s", e)
            report.error = str(e)
            return report

        to_delete = [name for name in actual if name not in desired]
        to_upsert = [name for name, source in desired.items() if self.needs_update(source, actual.get(name))]

        for name in to_delete:
            try:
                await self.api.delete_path(name)
            except MtxApiError as e:
                if e.not_found:
                    report.deleted.append(name)
                    continue
                self.logger.warning("Failed to delete path '%s': %s", name, e)
                report.failed[name] = str(e)
            else:
                report.deleted.append(name)

        for name in to_upsert:
            try:
                await self.api.replace_path(name, self.build_path_payload(name, desired[name]))
            except MtxApiError as e:
                self.logger.error("Failed to sync path '%s': %s", name, e)
                report.failed[name] = str(e)
            else:
                report.upserted.append(name)

        if report.call_count:
            self.logger.info(
                "Path sync: %d deleted, %d upserted, %d failed",
                len(report.deleted), len(report.upserted), len(report.failed),
            )
        return report

    # ------------------------------------------------------------------
    # On-demand control

    async def _publish_status(self, path_name: str, status: str, message: Optional[str] = None) -> None:
        await self.event_bus.publish(
            InternalEvent.STREAM_STATUS_CHANGED,
            StreamStatusChange(path_name=path_name, status=status, message=message),
        )

    async def connect_on_demand_stream(self, path_name: str) -> None:
        source = self.desired_paths().get(path_name)
        if source is None:
            raise StreamNotConfiguredError(
                f"Configuration for RTSP source '{path_name}' not found or URL is missing."
            )
        try:
            await self.api.replace_path(path_name, self.build_path_payload(path_name, source))
        except MtxApiError as e:
            await self._publish_status(path_name, STATUS_ERROR, f"Failed API interaction: {e}")
            raise StreamControlError(f"Failed to configure on-demand path '{path_name}': {e}") from e
        await self._publish_status(path_name, STATUS_UNKNOWN, "Path config ensured, awaiting client connection.")

    async def disconnect_on_demand_stream(self, path_name: str) -> None:
        try:
            await self.api.delete_path(path_name)
        except MtxApiError as e:
            if not e.not_found:
                self.logger.warning("Failed to delete path '%s': %s", path_name, e)
        await self._publish_status(path_name, STATUS_INACTIVE, "Disconnected on demand by request.")

    async def report_hook(self, path_name: str, hook_status: str) -> Optional[str]:
        """Translate a media server ready/notReady hook into a stream status."""
        status = {"ready": STATUS_ACTIVE, "notReady": STATUS_INACTIVE}.get(hook_status)
        if status is None:
            return None
        await self._publish_status(path_name, status, f"Stream {hook_status} (reported by media server).")
        return status
