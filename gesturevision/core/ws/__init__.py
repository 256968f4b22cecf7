"""WebSocket control channel: wire format, message router and client hub."""

from .protocol import ErrorCode, MessageType, ProtocolError

__all__ = ['ErrorCode', 'MessageType', 'ProtocolError']
