"""
Message router - dispatches inbound client messages to handlers.

Handlers are looked up by message ``type``. Replies to requests echo the
request's ``messageId`` so the client can correlate them; failures are
reported to the sender as ``ERROR`` messages and never close the connection.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional

from ..config.store import ConfigStore
from ..custom_gestures import (
    GestureFileResult,
    delete_custom_gesture_async,
    save_custom_gesture_async,
    scan_custom_gestures_async,
    update_custom_gesture_async,
)
from ..events import CustomGesturesChange, EventBus, InternalEvent
from ..logging_utils import get_module_logger
from ..media.reconciler import MediaPathReconciler
from ..plugins.base import ActionDetails
from ..plugins.registry import PluginRegistry
from .protocol import ErrorCode, MessageType, ProtocolError, make_error, parse_message

if TYPE_CHECKING:
    from .hub import ClientConnection

Handler = Callable[["ClientConnection", Dict[str, Any]], Awaitable[None]]


def _require_dict(message: Dict[str, Any], description: str) -> Dict[str, Any]:
    payload = message.get("payload")
    if not isinstance(payload, dict):
        raise ProtocolError(ErrorCode.INVALID_PAYLOAD, f"{message['type']} payload must be {description}.")
    return payload


class MessageRouter:
    def __init__(
        self,
        config_store: ConfigStore,
        registry: PluginRegistry,
        reconciler: Optional[MediaPathReconciler] = None,
        *,
        custom_gestures_dir: Optional[Path] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.logger = get_module_logger("MessageRouter")
        self.config_store = config_store
        self.registry = registry
        self.reconciler = reconciler
        self.custom_gestures_dir = custom_gestures_dir
        self.event_bus = event_bus or config_store.event_bus
        self._handlers: Dict[str, Handler] = {
            MessageType.PING: self._handle_ping,
            MessageType.GET_FULL_CONFIG: self._handle_get_full_config,
            MessageType.PATCH_CONFIG: self._handle_patch_config,
            MessageType.GET_PLUGIN_GLOBAL_CONFIG: self._handle_get_plugin_config,
            MessageType.PATCH_PLUGIN_GLOBAL_CONFIG: self._handle_patch_plugin_config,
            MessageType.TEST_PLUGIN_CONNECTION: self._handle_test_plugin_connection,
            MessageType.DISPATCH_ACTION: self._handle_dispatch_action,
            MessageType.RTSP_CONNECT_REQUEST: self._handle_rtsp_connect,
            MessageType.RTSP_DISCONNECT_REQUEST: self._handle_rtsp_disconnect,
            MessageType.GET_CUSTOM_GESTURES_METADATA: self._handle_get_custom_gestures,
            MessageType.UPLOAD_CUSTOM_GESTURE: self._handle_upload_custom_gesture,
            MessageType.UPDATE_CUSTOM_GESTURE: self._handle_update_custom_gesture,
            MessageType.DELETE_CUSTOM_GESTURE: self._handle_delete_custom_gesture,
        }

    @property
    def message_types(self):
        return sorted(self._handlers)

    def register_handler(self, message_type: str, handler: Handler) -> None:
        self._handlers[message_type] = handler

    # ------------------------------------------------------------------
    # Entry points

    async def build_initial_state(self) -> Dict[str, Any]:
        return {
            "globalConfig": self.config_store.get(),
            "manifests": await self.registry.get_manifests(),
            "pluginConfigs": await self.registry.get_plugin_configs(),
            "customGestureMetadata": await self._custom_gesture_metadata(),
        }

    async def handle_text(self, client: "ClientConnection", raw: str) -> None:
        try:
            message = parse_message(raw)
        except ProtocolError as e:
            self.logger.warning("Invalid message from client %d: %s", client.client_id, e.message)
            await self._send_error(client, e.code, e.message)
            return
        await self.route(client, message)

    async def route(self, client: "ClientConnection", message: Dict[str, Any]) -> None:
        message_type = message["type"]
        message_id = message.get("messageId")
        handler = self._handlers.get(message_type)
        if handler is None:
            self.logger.warning("Unhandled message type: %s", message_type)
            await self._send_error(client, ErrorCode.UNKNOWN_TYPE, f"Unknown message type: {message_type}", message_id)
            return
        try:
            await handler(client, message)
        except ProtocolError as e:
            await self._send_error(client, e.code, e.message, message_id, e.details)
        except Exception as e:
            self.logger.error("Error processing '%s': %s", message_type, e, exc_info=True)
            await self._send_error(client, ErrorCode.PROCESSING_ERROR, f"Error processing message: {e}", message_id)

    async def _send_error(
        self,
        client: "ClientConnection",
        code: str,
        text: str,
        message_id: Any = None,
        details: Any = None,
    ) -> None:
        try:
            await client.send(make_error(code, text, details, message_id))
        except Exception as e:
            self.logger.error("Failed to send %s error to client %d: %s", code, client.client_id, e)

    # ------------------------------------------------------------------
    # Handlers

    async def _handle_ping(self, client: "ClientConnection", message: Dict[str, Any]) -> None:
        payload = message.get("payload") if isinstance(message.get("payload"), dict) else {}
        await client.reply(message, MessageType.PONG, {"id": payload.get("id")})

    async def _handle_get_full_config(self, client: "ClientConnection", message: Dict[str, Any]) -> None:
        await client.reply(message, MessageType.FULL_CONFIG_UPDATE, {"config": self.config_store.get()})

    async def _handle_patch_config(self, client: "ClientConnection", message: Dict[str, Any]) -> None:
        patch = _require_dict(message, "an object")
        result = await self.config_store.patch(patch)
        payload = result.to_dict()
        payload.pop("rtspChanged", None)
        if result.success and "updatedConfig" not in payload:
            payload["updatedConfig"] = self.config_store.get()
        await client.reply(message, MessageType.CONFIG_SAVE_RESULT, payload)

    async def _handle_get_plugin_config(self, client: "ClientConnection", message: Dict[str, Any]) -> None:
        payload = _require_dict(message, "an object with a pluginId")
        plugin_id = payload.get("pluginId")
        if not plugin_id:
            raise ProtocolError(ErrorCode.INVALID_PAYLOAD, "GET_PLUGIN_GLOBAL_CONFIG requires a pluginId.")
        config = await self.registry.get_global_config(plugin_id)
        await client.reply(message, MessageType.PLUGIN_GLOBAL_CONFIG_DATA, {"pluginId": plugin_id, "config": config})

    async def _handle_patch_plugin_config(self, client: "ClientConnection", message: Dict[str, Any]) -> None:
        payload = _require_dict(message, "an object with pluginId and config")
        plugin_id = payload.get("pluginId")
        config = payload.get("config")
        if not plugin_id or not isinstance(config, dict):
            raise ProtocolError(
                ErrorCode.INVALID_PAYLOAD,
                "PATCH_PLUGIN_GLOBAL_CONFIG requires pluginId and a config payload object.",
            )
        result = await self.registry.save_global_config(plugin_id, config)
        ack = {"pluginId": plugin_id, **result.to_dict()}
        if result.success:
            ack["config"] = await self.registry.get_global_config(plugin_id)
        await client.reply(message, MessageType.PLUGIN_CONFIG_PATCH_ACK, ack)

    async def _handle_test_plugin_connection(self, client: "ClientConnection", message: Dict[str, Any]) -> None:
        payload = _require_dict(message, "an object with a pluginId")
        plugin_id = payload.get("pluginId")
        if not plugin_id:
            raise ProtocolError(ErrorCode.INVALID_PAYLOAD, "TEST_PLUGIN_CONNECTION requires a pluginId.")
        result = await self.registry.test_connection(plugin_id, payload.get("config"))
        await client.reply(message, MessageType.PLUGIN_TEST_CONNECTION_RESULT, {"pluginId": plugin_id, **result})

    async def _handle_dispatch_action(self, client: "ClientConnection", message: Dict[str, Any]) -> None:
        payload = _require_dict(message, "an object with gestureConfig and details")
        binding = payload.get("gestureConfig")
        details = payload.get("details")
        if binding is None and isinstance(details, dict):
            binding = self.config_store.find_binding(details.get("gestureName"))
        if not isinstance(binding, dict) or not isinstance(details, dict):
            raise ProtocolError(
                ErrorCode.INVALID_PAYLOAD,
                "DISPATCH_ACTION payload requires gestureConfig and details.",
            )
        result = await self.registry.dispatch(binding, ActionDetails.from_dict(details))
        action_config = binding.get("actionConfig") or {}
        await client.reply(
            message,
            MessageType.ACTION_RESULT,
            {
                "gestureName": binding.get("gesture") or binding.get("pose"),
                "pluginId": action_config.get("pluginId") or "none",
                **result.to_dict(),
            },
        )

    def _path_name(self, message: Dict[str, Any]) -> str:
        payload = _require_dict(message, "an object with a pathName")
        path_name = payload.get("pathName")
        if not path_name or not isinstance(path_name, str):
            raise ProtocolError(ErrorCode.INVALID_PAYLOAD, f"{message['type']} requires a pathName.")
        if self.reconciler is None:
            raise ProtocolError(ErrorCode.SERVER_ERROR, "Media path reconciler not available.")
        return path_name

    async def _handle_rtsp_connect(self, client: "ClientConnection", message: Dict[str, Any]) -> None:
        path_name = self._path_name(message)
        await self.reconciler.connect_on_demand_stream(path_name)

    async def _handle_rtsp_disconnect(self, client: "ClientConnection", message: Dict[str, Any]) -> None:
        path_name = self._path_name(message)
        await self.reconciler.disconnect_on_demand_stream(path_name)

    async def _custom_gesture_metadata(self):
        if self.custom_gestures_dir is None:
            return []
        definitions = await scan_custom_gestures_async(self.custom_gestures_dir)
        return [definition.to_dict() for definition in definitions]

    async def _handle_get_custom_gestures(self, client: "ClientConnection", message: Dict[str, Any]) -> None:
        await client.reply(
            message,
            MessageType.CUSTOM_GESTURES_METADATA_LIST,
            {"definitions": await self._custom_gesture_metadata()},
        )

    def _gestures_dir(self) -> Path:
        if self.custom_gestures_dir is None:
            raise ProtocolError(ErrorCode.SERVER_ERROR, "Custom gestures directory not configured.")
        return self.custom_gestures_dir

    async def _publish_custom_gestures(self) -> None:
        await self.event_bus.publish(
            InternalEvent.CUSTOM_GESTURES_CHANGED,
            CustomGesturesChange(definitions=await self._custom_gesture_metadata()),
        )

    async def _rewrite_bindings(self, rewrite: Callable[[List[Dict[str, Any]]], List[Dict[str, Any]]]) -> bool:
        """Apply ``rewrite`` to the gesture bindings and patch them if anything changed."""
        bindings = self.config_store.get().get("gestureConfigs", [])
        updated = rewrite(bindings)
        if updated == bindings:
            return True
        result = await self.config_store.patch({"gestureConfigs": updated})
        return result.success

    @staticmethod
    def _binding_name(binding: Dict[str, Any]) -> Optional[str]:
        return binding.get("gesture") if "gesture" in binding else binding.get("pose")

    async def _handle_upload_custom_gesture(self, client: "ClientConnection", message: Dict[str, Any]) -> None:
        payload = _require_dict(message, "an object with name, type and codeString")
        name = payload.get("name")
        gesture_type = payload.get("type")
        code = payload.get("codeString")
        if not name or not gesture_type or not code:
            raise ProtocolError(ErrorCode.INVALID_PAYLOAD, "UPLOAD_CUSTOM_GESTURE requires name, type, and codeString.")
        result = await save_custom_gesture_async(
            self._gestures_dir(), name, payload.get("description"), gesture_type, code
        )
        await client.reply(
            message,
            MessageType.UPLOAD_CUSTOM_GESTURE_ACK,
            {**_gesture_ack(result), "newDefinition": _definition(result), "source": payload.get("source")},
        )
        if result.success:
            await self._publish_custom_gestures()

    async def _handle_update_custom_gesture(self, client: "ClientConnection", message: Dict[str, Any]) -> None:
        payload = _require_dict(message, "an object with id, oldName and newName")
        gesture_id = payload.get("id")
        old_name = payload.get("oldName")
        new_name = payload.get("newName")
        if not gesture_id or not old_name or not new_name:
            raise ProtocolError(ErrorCode.INVALID_PAYLOAD, "UPDATE_CUSTOM_GESTURE requires id, oldName, and newName.")
        result = await update_custom_gesture_async(
            self._gestures_dir(), gesture_id, new_name, payload.get("newDescription")
        )

        ack = _gesture_ack(result)
        if result.success and result.definition.name != old_name:
            renamed_to = result.definition.name

            def rename(bindings):
                return [
                    {**b, ("gesture" if "gesture" in b else "pose"): renamed_to}
                    if self._binding_name(b) == old_name else b
                    for b in bindings
                ]

            if not await self._rewrite_bindings(rename):
                ack = {"success": False, "message": "File updated, but failed to update associated actions in config.json."}

        await client.reply(
            message,
            MessageType.UPDATE_CUSTOM_GESTURE_ACK,
            {**ack, "updatedDefinition": _definition(result)},
        )
        if ack["success"]:
            await self._publish_custom_gestures()

    async def _handle_delete_custom_gesture(self, client: "ClientConnection", message: Dict[str, Any]) -> None:
        payload = _require_dict(message, "an object with id and name")
        gesture_id = payload.get("id")
        gesture_name = payload.get("name")
        if not gesture_id or not gesture_name:
            raise ProtocolError(ErrorCode.INVALID_PAYLOAD, "DELETE_CUSTOM_GESTURE requires id and name.")
        result = await delete_custom_gesture_async(self._gestures_dir(), gesture_id)

        ack = _gesture_ack(result)
        if result.success:
            def drop(bindings):
                return [b for b in bindings if self._binding_name(b) != gesture_name]

            if not await self._rewrite_bindings(drop):
                ack = {"success": False, "message": "File deleted, but failed to update main config list."}

        await client.reply(
            message,
            MessageType.DELETE_CUSTOM_GESTURE_ACK,
            {**ack, "deletedId": gesture_id if result.success else None, "deletedName": gesture_name},
        )
        if ack["success"]:
            await self._publish_custom_gestures()


def _gesture_ack(result: GestureFileResult) -> Dict[str, Any]:
    return {"success": result.success, "message": result.message}


def _definition(result: GestureFileResult) -> Optional[Dict[str, Any]]:
    return result.definition.to_dict() if result.definition else None
