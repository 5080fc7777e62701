"""Wire message model shared by the channel and the multiplexer.

Three message shapes travel over the engine channel:

- ``Request``: ``{"id", "method", "targetId"?, "data"}``, host to engine.
- ``Response``: ``{"id", "ok", "data"?, "error"?}``, engine to host.
- ``Notification``: ``{"targetId", "event", "data"}``, engine to host.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from mediaworker.core.errors import ProtocolError


@dataclass(frozen=True)
class Request:
    id: int
    method: str
    data: Dict[str, Any] = field(default_factory=dict)
    target_id: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        wire: Dict[str, Any] = {"id": self.id, "method": self.method}
        if self.target_id is not None:
            wire["targetId"] = self.target_id
        wire["data"] = self.data
        return wire


@dataclass(frozen=True)
class ErrorInfo:
    reason: str
    detail: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        wire: Dict[str, Any] = {"reason": self.reason}
        if self.detail is not None:
            wire["detail"] = self.detail
        return wire


@dataclass(frozen=True)
class Response:
    id: int
    ok: bool
    data: Any = None
    error: Optional[ErrorInfo] = None

    def to_wire(self) -> Dict[str, Any]:
        wire: Dict[str, Any] = {"id": self.id, "ok": self.ok}
        if self.data is not None:
            wire["data"] = self.data
        if self.error is not None:
            wire["error"] = self.error.to_wire()
        return wire


@dataclass(frozen=True)
class Notification:
    target_id: str
    event: str
    data: Dict[str, Any] = field(default_factory=dict)

    def to_wire(self) -> Dict[str, Any]:
        return {"targetId": self.target_id, "event": self.event, "data": self.data}


Message = Union[Request, Response, Notification]


def _is_id(value: Any) -> bool:
    # bool is an int subclass; a JSON true is never a valid id.
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def _parse_request(obj: Dict[str, Any]) -> Request:
    request_id = obj.get("id")
    method = obj.get("method")
    target_id = obj.get("targetId")
    data = obj.get("data", {})
    if not _is_id(request_id):
        raise ProtocolError(f"Request id must be a non-negative integer, got {request_id!r}")
    if not isinstance(method, str) or not method:
        raise ProtocolError("Request method must be a non-empty string")
    if target_id is not None and not isinstance(target_id, str):
        raise ProtocolError("Request targetId must be a string")
    if not isinstance(data, dict):
        raise ProtocolError("Request data must be an object")
    return Request(id=request_id, method=method, data=data, target_id=target_id)


def _parse_response(obj: Dict[str, Any]) -> Response:
    response_id = obj.get("id")
    ok = obj.get("ok")
    if not _is_id(response_id):
        raise ProtocolError(f"Response id must be a non-negative integer, got {response_id!r}")
    if not isinstance(ok, bool):
        raise ProtocolError("Response ok flag must be a boolean")
    error: Optional[ErrorInfo] = None
    raw_error = obj.get("error")
    if raw_error is not None:
        if not isinstance(raw_error, dict) or not isinstance(raw_error.get("reason"), str):
            raise ProtocolError("Response error must be an object with a string reason")
        detail = raw_error.get("detail")
        if detail is not None and not isinstance(detail, str):
            raise ProtocolError("Response error detail must be a string")
        error = ErrorInfo(reason=raw_error["reason"], detail=detail)
    elif not ok:
        raise ProtocolError(f"Failed response {response_id} carries no error")
    return Response(id=response_id, ok=ok, data=obj.get("data"), error=error)


def _parse_notification(obj: Dict[str, Any]) -> Notification:
    target_id = obj.get("targetId")
    event = obj.get("event")
    data = obj.get("data", {})
    if not isinstance(target_id, str):
        raise ProtocolError("Notification targetId must be a string")
    if not isinstance(event, str) or not event:
        raise ProtocolError("Notification event must be a non-empty string")
    if not isinstance(data, dict):
        raise ProtocolError("Notification data must be an object")
    return Notification(target_id=target_id, event=event, data=data)


def parse_message(obj: Any) -> Message:
    """Turn one decoded JSON value into a typed message.

    Raises ``ProtocolError`` when the value matches none of the known shapes.
    """
    if not isinstance(obj, dict):
        raise ProtocolError(f"Message must be a JSON object, got {type(obj).__name__}")
    if "method" in obj:
        return _parse_request(obj)
    if "ok" in obj:
        return _parse_response(obj)
    if "event" in obj:
        return _parse_notification(obj)
    raise ProtocolError(f"Unknown message shape with keys {sorted(obj)}")


def encode_message(message: Message) -> bytes:
    return json.dumps(message.to_wire(), separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def decode_message(payload: bytes) -> Message:
    try:
        obj = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise ProtocolError(f"Frame payload is not valid JSON: {exc}") from exc
    except RecursionError as exc:
        raise ProtocolError("Frame payload is nested too deeply") from exc
    return parse_message(obj)
