"""Wire format of the client channel: ``{type, payload, messageId?}`` JSON objects."""

from __future__ import annotations

import json
from typing import Any, Dict, Optional


class MessageType:
    # server -> client pushes
    INITIAL_STATE = "INITIAL_STATE"
    FULL_CONFIG_UPDATE = "FULL_CONFIG_UPDATE"
    PLUGINS_MANIFESTS_UPDATED = "PLUGINS_MANIFESTS_UPDATED"
    PLUGIN_CONFIG_UPDATED = "PLUGIN_CONFIG_UPDATED"
    STREAM_STATUS_UPDATE = "STREAM_STATUS_UPDATE"

    # client -> server requests and their replies
    GET_FULL_CONFIG = "GET_FULL_CONFIG"
    PATCH_CONFIG = "PATCH_CONFIG"
    CONFIG_SAVE_RESULT = "CONFIG_SAVE_RESULT"
    GET_PLUGIN_GLOBAL_CONFIG = "GET_PLUGIN_GLOBAL_CONFIG"
    PLUGIN_GLOBAL_CONFIG_DATA = "PLUGIN_GLOBAL_CONFIG_DATA"
    PATCH_PLUGIN_GLOBAL_CONFIG = "PATCH_PLUGIN_GLOBAL_CONFIG"
    PLUGIN_CONFIG_PATCH_ACK = "PLUGIN_CONFIG_PATCH_ACK"
    TEST_PLUGIN_CONNECTION = "TEST_PLUGIN_CONNECTION"
    PLUGIN_TEST_CONNECTION_RESULT = "PLUGIN_TEST_CONNECTION_RESULT"
    DISPATCH_ACTION = "DISPATCH_ACTION"
    ACTION_RESULT = "ACTION_RESULT"
    RTSP_CONNECT_REQUEST = "RTSP_CONNECT_REQUEST"
    RTSP_DISCONNECT_REQUEST = "RTSP_DISCONNECT_REQUEST"
    GET_CUSTOM_GESTURES_METADATA = "GET_CUSTOM_GESTURES_METADATA"
    CUSTOM_GESTURES_METADATA_LIST = "CUSTOM_GESTURES_METADATA_LIST"
    UPLOAD_CUSTOM_GESTURE = "UPLOAD_CUSTOM_GESTURE"
    UPLOAD_CUSTOM_GESTURE_ACK = "UPLOAD_CUSTOM_GESTURE_ACK"
    UPDATE_CUSTOM_GESTURE = "UPDATE_CUSTOM_GESTURE"
    UPDATE_CUSTOM_GESTURE_ACK = "UPDATE_CUSTOM_GESTURE_ACK"
    DELETE_CUSTOM_GESTURE = "DELETE_CUSTOM_GESTURE"
    DELETE_CUSTOM_GESTURE_ACK = "DELETE_CUSTOM_GESTURE_ACK"

    PING = "ping"
    PONG = "pong"
    ERROR = "ERROR"


class ErrorCode:
    INVALID_MESSAGE = "INVALID_MESSAGE"
    UNKNOWN_TYPE = "UNKNOWN_TYPE"
    PROCESSING_ERROR = "PROCESSING_ERROR"
    INVALID_PAYLOAD = "INVALID_PAYLOAD"
    SERVER_ERROR = "SERVER_ERROR"


class ProtocolError(Exception):
    """A message could not be handled; reported to the sender as ``ERROR``."""

    def __init__(self, code: str, message: str, details: Any = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details


def make_message(
    message_type: str,
    payload: Any = None,
    message_id: Optional[Any] = None,
) -> Dict[str, Any]:
    message: Dict[str, Any] = {"type": message_type, "payload": payload}
    if message_id is not None:
        message["messageId"] = message_id
    return message


def make_error(
    code: str,
    text: str,
    details: Any = None,
    message_id: Optional[Any] = None,
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"code": code, "message": text}
    if details is not None:
        payload["details"] = details
    return make_message(MessageType.ERROR, payload, message_id)


def encode(message: Dict[str, Any]) -> str:
    return json.dumps(message, default=str)


def parse_message(raw: str) -> Dict[str, Any]:
    try:
        message = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ProtocolError(ErrorCode.INVALID_MESSAGE, "Could not parse message.") from e
    if not isinstance(message, dict) or not isinstance(message.get("type"), str):
        raise ProtocolError(ErrorCode.INVALID_MESSAGE, "Message must be an object with a string 'type'.")
    return message
