"""Unit test fixtures for isolated, fast test execution.

This file provides:
- An event bus plus a recorder that captures everything published on it
- A config store backed by a temporary file (file watching disabled)
- A factory that lays out plugin directories on disk
"""

from __future__ import annotations

import copy
import json
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest

from gesturevision.core.config.repository import ConfigRepository
from gesturevision.core.config.schemas import DEFAULT_CONFIG
from gesturevision.core.config.store import ConfigStore
from gesturevision.core.events import Event, EventBus, InternalEvent


# =============================================================================
# Sample Documents
# =============================================================================

def make_config(**overrides: Any) -> Dict[str, Any]:
    """A valid configuration document with one RTSP source and one binding."""
    config = copy.deepcopy(DEFAULT_CONFIG)
    config["rtspSources"] = [
        {"name": "Front Door", "url": "rtsp://10.0.0.5:554/stream", "sourceOnDemand": False},
    ]
    config["gestureConfigs"] = [
        {
            "gesture": "OPEN_PALM",
            "confidence": 70,
            "duration": 1,
            "actionConfig": {"pluginId": "webhook", "settings": {"url": "http://example.test"}},
        },
    ]
    config.update(overrides)
    return config


@pytest.fixture
def sample_config() -> Dict[str, Any]:
    return make_config()


# =============================================================================
# Event Fixtures
# =============================================================================

class EventRecorder:
    """Observer that records every event it receives."""

    def __init__(self, bus: EventBus, events=None):
        self.events: List[Event] = []
        bus.add_observer(self, events)

    async def __call__(self, event: Event) -> None:
        self.events.append(event)

    @property
    def kinds(self) -> List[InternalEvent]:
        return [event.kind for event in self.events]

    def of(self, kind: InternalEvent) -> List[Any]:
        return [event.payload for event in self.events if event.kind == kind]

    def clear(self) -> None:
        self.events.clear()


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def recorder(event_bus: EventBus) -> EventRecorder:
    return EventRecorder(event_bus)


# =============================================================================
# Config Fixtures
# =============================================================================

@pytest.fixture
def config_path(tmp_path: Path) -> Path:
    return tmp_path / "config.json"


@pytest.fixture
def repository(config_path: Path) -> ConfigRepository:
    return ConfigRepository(config_path)


@pytest.fixture
def config_store(repository: ConfigRepository, event_bus: EventBus) -> ConfigStore:
    """Store without a file watcher; tests call ``load()`` themselves."""
    return ConfigStore(repository, event_bus, watch=False)


@pytest.fixture
def write_config(config_path: Path) -> Callable[[Dict[str, Any]], Path]:
    def _write(document: Dict[str, Any]) -> Path:
        config_path.write_text(json.dumps(document), encoding="utf-8")
        return config_path

    return _write


# =============================================================================
# Plugin Fixtures
# =============================================================================

@pytest.fixture
def plugins_dir(tmp_path: Path) -> Path:
    path = tmp_path / "plugins"
    path.mkdir()
    return path


@pytest.fixture
def make_plugin(plugins_dir: Path) -> Callable[..., Path]:
    """Factory for plugin directories.

    Example:
        make_plugin("webhook", code=PLUGIN_SOURCE, global_config={"url": "..."})
    """

    def factory(
        plugin_id: str,
        *,
        code: Optional[str] = None,
        global_config: Optional[Dict[str, Any]] = None,
        locales: Optional[Dict[str, Dict[str, str]]] = None,
        manifest_overrides: Optional[Dict[str, Any]] = None,
    ) -> Path:
        plugin_dir = plugins_dir / plugin_id
        plugin_dir.mkdir()
        manifest: Dict[str, Any] = {
            "id": plugin_id,
            "name": plugin_id.title(),
            "version": "1.0.0",
            "description": f"{plugin_id} test plugin",
            "capabilities": {"providesActions": code is not None},
        }
        if code is not None:
            (plugin_dir / "backend.py").write_text(code, encoding="utf-8")
            manifest["backendEntry"] = "backend.py"
        if global_config is not None:
            config_name = f"{plugin_id}.config.json"
            (plugin_dir / config_name).write_text(json.dumps(global_config), encoding="utf-8")
            manifest["globalConfigFileName"] = config_name
            manifest["capabilities"]["hasGlobalSettings"] = True
        if locales:
            locales_dir = plugin_dir / "locales"
            locales_dir.mkdir()
            for lang, strings in locales.items():
                (locales_dir / f"{lang}.json").write_text(json.dumps(strings), encoding="utf-8")
        if manifest_overrides:
            manifest.update(manifest_overrides)
        (plugin_dir / "manifest.json").write_text(json.dumps(manifest), encoding="utf-8")
        return plugin_dir

    return factory
