"""
Plugin contract.

A plugin is a Python module inside its plugin directory that defines a
:class:`BasePlugin` subclass. Every hook has a no-op default so plugins only
override what they provide; a bare ``BasePlugin`` also stands in for
disabled plugins without importing any of their code.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Optional, Protocol, Type

from pydantic import BaseModel

if TYPE_CHECKING:
    from .manifest import PluginManifest
    from .registry import PluginRegistry


@dataclass
class ActionDetails:
    """What triggered an action."""
    gesture_name: str
    confidence: Optional[float] = None
    timestamp: float = field(default_factory=lambda: time.time() * 1000)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ActionDetails":
        return cls(
            gesture_name=str(data.get("gestureName", "")),
            confidence=data.get("confidence"),
            timestamp=data.get("timestamp") or time.time() * 1000,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "gestureName": self.gesture_name,
            "confidence": self.confidence,
            "timestamp": self.timestamp,
        }


@dataclass
class ActionResult:
    success: bool
    message: str = ""
    details: Any = None

    @classmethod
    def ok(cls, message: str, details: Any = None) -> "ActionResult":
        return cls(success=True, message=message, details=details)

    @classmethod
    def error(cls, message: str, details: Any = None) -> "ActionResult":
        return cls(success=False, message=message, details=details)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"success": self.success, "message": self.message}
        if self.details is not None:
            result["details"] = self.details
        return result


@dataclass
class PluginContext:
    """Services handed to a plugin in :meth:`BasePlugin.init`."""
    plugin_id: str
    registry: "PluginRegistry"

    async def get_plugin_global_config(self) -> Optional[Dict[str, Any]]:
        return await self.registry.get_global_config(self.plugin_id)


class ActionHandler(Protocol):
    async def execute(
        self,
        settings: Any,
        details: ActionDetails,
        global_config: Optional[Dict[str, Any]],
        context: PluginContext,
    ) -> ActionResult:
        ...


class BasePlugin:
    """Default implementation of every plugin hook."""

    global_config_schema: Optional[Type[BaseModel]] = None
    action_config_schema: Optional[Type[BaseModel]] = None

    def __init__(
        self,
        manifest: Optional["PluginManifest"] = None,
        action_handler: Optional[ActionHandler] = None,
    ):
        self.manifest = manifest
        self.context: Optional[PluginContext] = None
        self._action_handler = action_handler

    async def init(self, context: PluginContext) -> None:
        self.context = context

    def get_action_handler(self) -> Optional[ActionHandler]:
        return self._action_handler

    def get_global_config_schema(self) -> Optional[Type[BaseModel]]:
        return self.global_config_schema

    def get_action_config_schema(self) -> Optional[Type[BaseModel]]:
        return self.action_config_schema

    async def on_global_config_update(self, config: Optional[Dict[str, Any]]) -> None:
        pass

    async def test_connection(self, config: Any) -> Dict[str, Any]:
        return {
            "success": False,
            "messageKey": "testNotSupported",
            "error": {"code": "NOT_SUPPORTED"},
        }

    async def destroy(self) -> None:
        pass
