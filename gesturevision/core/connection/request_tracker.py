"""
Request Tracker - request/response correlation over the control channel.

Every outgoing request gets a unique integer ``messageId``; the reply that
echoes it resolves the waiting caller. Pending entries are removed whether the
request resolves, fails or times out.
"""

from __future__ import annotations

import asyncio
import itertools
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

from gesturevision.core.logging_utils import get_module_logger
from gesturevision.core.ws.protocol import MessageType

logger = get_module_logger("RequestTracker")

DEFAULT_REQUEST_TIMEOUT = 5.0


class RequestError(Exception):
    """Base class for request failures."""


class NotConnectedError(RequestError):
    """The control channel is not connected."""


class RequestTimeoutError(RequestError):
    def __init__(self, message_type: str, message_id: int, timeout: float):
        self.message_type = message_type
        self.message_id = message_id
        self.timeout = timeout
        super().__init__(f"Request {message_type} (id {message_id}) timed out after {timeout}s")


class RequestFailedError(RequestError):
    """The server answered a request with an ``ERROR`` message."""

    def __init__(self, message: str, code: Optional[str] = None, details: Any = None):
        self.code = code
        self.details = details
        super().__init__(message)


@dataclass
class PendingRequest:
    message_id: int
    message_type: str
    sent_at: float
    future: asyncio.Future = field(default_factory=lambda: asyncio.get_running_loop().create_future())

    def elapsed_ms(self) -> float:
        return (time.monotonic() - self.sent_at) * 1000


class RequestTracker:
    """
    Tracks requests awaiting replies.

    Usage:
        tracker = RequestTracker()
        payload = await tracker.send_and_wait(send, "GET_FULL_CONFIG", {}, timeout=5.0)
        ...
        tracker.resolve(incoming_message)  # from the receive loop
    """

    def __init__(self):
        self._pending: Dict[int, PendingRequest] = {}
        self._ids = itertools.count(1)

    def next_id(self) -> int:
        return next(self._ids)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def is_pending(self, message_id: int) -> bool:
        return message_id in self._pending

    async def send_and_wait(
        self,
        send_func: Callable[[Dict[str, Any]], Awaitable[None]],
        message_type: str,
        payload: Any = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> Any:
        """
        Send a request and wait for the correlated reply.

        Args:
            send_func: Coroutine function that writes one envelope to the channel
            message_type: Request type
            payload: Request payload
            timeout: Seconds to wait for the reply

        Returns:
            The reply's payload

        Raises:
            RequestTimeoutError: no reply within ``timeout``
            RequestFailedError: the reply was an ``ERROR`` message
        """
        message_id = self.next_id()
        pending = PendingRequest(message_id=message_id, message_type=message_type, sent_at=time.monotonic())
        self._pending[message_id] = pending

        logger.debug("Sending request %d (type=%s, timeout=%.1fs)", message_id, message_type, timeout)
        try:
            await send_func({"type": message_type, "payload": payload, "messageId": message_id})
            return await asyncio.wait_for(pending.future, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Request %d timed out after %.1fs (type=%s)", message_id, timeout, message_type)
            raise RequestTimeoutError(message_type, message_id, timeout) from None
        finally:
            self._pending.pop(message_id, None)

    def resolve(self, message: Dict[str, Any]) -> bool:
        """
        Match an incoming message against the pending requests.

        Returns:
            True if the message answered a pending request
        """
        message_id = message.get("messageId")
        pending = self._pending.get(message_id) if message_id is not None else None
        if pending is None or pending.future.done():
            return False

        payload = message.get("payload")
        if message.get("type") == MessageType.ERROR:
            payload = payload if isinstance(payload, dict) else {}
            pending.future.set_exception(RequestFailedError(
                payload.get("message") or "Request failed",
                code=payload.get("code"),
                details=payload.get("details"),
            ))
        else:
            pending.future.set_result(payload)

        logger.debug("Request %d resolved in %.1fms", message_id, pending.elapsed_ms())
        return True

    def fail_all(self, error: Exception) -> int:
        """Fail every pending request with ``error``; returns how many were failed."""
        failed = 0
        for pending in list(self._pending.values()):
            if not pending.future.done():
                pending.future.set_exception(error)
                failed += 1
        self._pending.clear()
        return failed
