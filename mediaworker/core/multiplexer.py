from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from loguru import logger

from mediaworker.core.channel import FramedChannel
from mediaworker.core.errors import CallTimeoutError, ChannelClosedError, RemoteError
from mediaworker.core.messages import Message, Notification, Request, Response
from mediaworker.core.utils.json_render import compact_json
from mediaworker.core.utils.tasks import run_detached

Listener = Callable[[Dict[str, Any]], Any]

# Sentinel meaning "use the multiplexer's default timeout".
DEFAULT = object()


@dataclass
class PendingCall:
    id: int
    method: str
    created_at: float
    timeout_deadline: Optional[float]
    result_slot: asyncio.Future


class RequestMultiplexer:
    """Correlate requests with responses and fan out notifications.

    Every ``call()`` gets a fresh, monotonically increasing id and suspends
    only its own caller; responses may settle calls in any order. Notifications
    are routed by ``(target_id, event)`` and dropped when nobody listens.
    """

    def __init__(self, channel: FramedChannel, default_timeout: Optional[float] = 15.0) -> None:
        self._channel = channel
        self._default_timeout = default_timeout
        self._next_id = 1
        self._pending: Dict[int, PendingCall] = {}
        self._listeners: Dict[Tuple[str, str], List[Listener]] = {}
        self._closed = False
        self._close_reason = "channel closed"
        channel.on_message(self._on_message)
        channel.on_close(self._on_channel_close)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def _allocate_id(self) -> int:
        request_id = self._next_id
        self._next_id += 1
        return request_id

    def build_request(self, method: str, target_id: Optional[str] = None, data: Optional[Dict[str, Any]] = None) -> Request:
        """Build a request with a fresh id that will not be tracked for a response."""
        return Request(id=self._allocate_id(), method=method, data=dict(data or {}), target_id=target_id)

    async def call(
        self,
        method: str,
        target_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
        timeout: Any = DEFAULT,
    ) -> Any:
        if self._closed:
            raise ChannelClosedError(f"Cannot call {method!r}: {self._close_reason}")
        if timeout is DEFAULT:
            timeout = self._default_timeout
        loop = asyncio.get_running_loop()
        request = self.build_request(method, target_id, data)
        now = loop.time()
        pending = PendingCall(
            id=request.id,
            method=method,
            created_at=now,
            timeout_deadline=None if timeout is None else now + timeout,
            result_slot=loop.create_future(),
        )
        self._pending[request.id] = pending
        logger.trace(f"[mux] -> {request.id} {method} target={target_id} {compact_json(request.data)}")
        try:
            return await asyncio.wait_for(self._send_and_wait(request, pending), timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[mux] request {request.id} {method} timed out after {timeout}s")
            raise CallTimeoutError(method, request.id, timeout) from None
        finally:
            self._pending.pop(request.id, None)

    async def _send_and_wait(self, request: Request, pending: PendingCall) -> Any:
        await self._channel.write(request)
        return await pending.result_slot

    async def send_oneway(self, method: str, target_id: Optional[str] = None, data: Optional[Dict[str, Any]] = None) -> None:
        """Write a request without waiting for (or tracking) its response."""
        if self._closed:
            raise ChannelClosedError(f"Cannot send {method!r}: {self._close_reason}")
        await self._channel.write(self.build_request(method, target_id, data))

    def subscribe(self, target_id: str, event: str, listener: Listener) -> Callable[[], None]:
        """Register a notification listener; returns a callable that removes it."""
        key = (target_id, event)
        self._listeners.setdefault(key, []).append(listener)

        def unsubscribe() -> None:
            listeners = self._listeners.get(key)
            if listeners and listener in listeners:
                listeners.remove(listener)
                if not listeners:
                    del self._listeners[key]

        return unsubscribe

    def unsubscribe_target(self, target_id: str) -> None:
        for key in [k for k in self._listeners if k[0] == target_id]:
            del self._listeners[key]

    def close(self, reason: str = "multiplexer closed") -> None:
        """Stop accepting calls and fail every outstanding one, in id order."""
        if self._closed:
            return
        self._closed = True
        self._close_reason = reason
        self._listeners.clear()
        pending = [self._pending.pop(request_id) for request_id in sorted(self._pending)]
        if pending:
            logger.debug(f"[mux] failing {len(pending)} pending call(s): {reason}")
        for call in pending:
            if not call.result_slot.done():
                call.result_slot.set_exception(
                    ChannelClosedError(f"Request {call.method!r} (id={call.id}) aborted: {reason}")
                )

    def _on_channel_close(self, exc: Optional[BaseException]) -> None:
        reason = "channel closed" if exc is None else f"channel closed ({exc})"
        self.close(reason)

    def _on_message(self, message: Message) -> None:
        if isinstance(message, Response):
            self._on_response(message)
        elif isinstance(message, Notification):
            self._on_notification(message)
        else:
            logger.warning(f"[mux] dropping unexpected request from engine: {message.method} (id={message.id})")

    def _on_response(self, response: Response) -> None:
        pending = self._pending.pop(response.id, None)
        if pending is None or pending.result_slot.done():
            logger.debug(f"[mux] discarding response for unknown or settled request {response.id}")
            return
        logger.trace(f"[mux] <- {response.id} ok={response.ok} {compact_json(response.data)}")
        error = response.error
        if response.ok or error is None:
            pending.result_slot.set_result(response.data)
        else:
            pending.result_slot.set_exception(RemoteError(pending.method, error.reason, error.detail))

    def _on_notification(self, notification: Notification) -> None:
        listeners = self._listeners.get((notification.target_id, notification.event))
        if not listeners:
            logger.trace(f"[mux] no listener for {notification.target_id}/{notification.event}; dropped")
            return
        for listener in list(listeners):
            try:
                res = listener(notification.data)
                if asyncio.iscoroutine(res):
                    run_detached(res, f"listener for {notification.target_id}/{notification.event}")
            except Exception:
                logger.exception(f"[mux] exception in listener for {notification.target_id}/{notification.event}")
