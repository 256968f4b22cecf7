"""
Internal event channel.

Components publish typed events here instead of holding references to each
other: the config store and plugin registry publish, the client hub and the
media reconciler subscribe. Delivery is sequential in subscription order and
an observer failure never reaches the publisher.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from .logging_utils import get_module_logger


class InternalEvent(Enum):
    CONFIG_RELOADED = "config_reloaded"
    CONFIG_PATCHED = "config_patched"
    MANIFESTS_CHANGED = "manifests_changed"
    PLUGIN_CONFIG_CHANGED = "plugin_config_changed"
    STREAM_STATUS_CHANGED = "stream_status_changed"
    CUSTOM_GESTURES_CHANGED = "custom_gestures_changed"


@dataclass
class ConfigChange:
    """Emitted after the configuration document changed."""
    config: Dict[str, Any]
    rtsp_changed: bool = True


@dataclass
class ManifestsChange:
    manifests: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class PluginConfigChange:
    plugin_id: str
    config: Optional[Dict[str, Any]]


@dataclass
class StreamStatusChange:
    path_name: str
    status: str
    message: Optional[str] = None


@dataclass
class CustomGesturesChange:
    definitions: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class Event:
    kind: InternalEvent
    payload: Any


EventObserver = Callable[[Event], Awaitable[None]]


class EventBus:
    """Publish/subscribe hub for :class:`InternalEvent` notifications."""

    def __init__(self):
        self.logger = get_module_logger("EventBus")
        self._observers: List[EventObserver] = []
        self._event_filters: Dict[EventObserver, Optional[Set[InternalEvent]]] = {}

    def add_observer(
        self,
        observer: EventObserver,
        events: Optional[Set[InternalEvent]] = None,
    ) -> None:
        """
        Register an observer.

        Args:
            observer: Async callback receiving :class:`Event`
            events: Event kinds to receive (None = all)
        """
        if observer not in self._observers:
            self._observers.append(observer)
            self._event_filters[observer] = events

    def remove_observer(self, observer: EventObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)
            self._event_filters.pop(observer, None)

    @property
    def observer_count(self) -> int:
        return len(self._observers)

    async def publish(self, kind: InternalEvent, payload: Any = None) -> None:
        event = Event(kind=kind, payload=payload)
        for observer in list(self._observers):
            event_filter = self._event_filters.get(observer)
            if event_filter is not None and kind not in event_filter:
                continue
            try:
                await observer(event)
            except Exception as e:
                self.logger.error(
                    "Observer %s error handling %s: %s",
                    getattr(observer, "__qualname__", repr(observer)),
                    kind.value,
                    e,
                    exc_info=True,
                )
