"""
Connection handling for the control channel and the media server.

- Request tracking with correlation IDs and timeouts
- Retry policies with exponential backoff
- A reconnecting WebSocket client
"""

from .request_tracker import (
    NotConnectedError,
    RequestError,
    RequestFailedError,
    RequestTimeoutError,
    RequestTracker,
)
from .retry_policy import MEDIA_SERVER_RETRY_POLICY, RECONNECT_POLICY, RetryPolicy
from .ws_client import ConnectionStatus, ControlClient

__all__ = [
    # Request tracking
    'NotConnectedError',
    'RequestError',
    'RequestFailedError',
    'RequestTimeoutError',
    'RequestTracker',
    # Retry
    'MEDIA_SERVER_RETRY_POLICY',
    'RECONNECT_POLICY',
    'RetryPolicy',
    # Client
    'ConnectionStatus',
    'ControlClient',
]
