from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .errors import ProtocolError, ProtocolErrorKind

SERVER_VERSION = "1.0.0"
SERVICE_NAME = "websocket-bridge"
HEALTH_PATH = "/health"

CLOSE_NORMAL = 1000
CLOSE_OVERLOADED = 1013

INVALID_MESSAGE_TEXT = "Invalid message format"


class MessageType(str, Enum):
    TEXT = "text"
    NOTIFICATION = "notification"
    COMMAND = "command"
    COPILOT = "copilot"
    CODE_EXTRACTION = "code-extraction"
    ELEMENT_EDIT = "element-edit"
    ERROR = "error"
    CONNECTION = "connection"


class MessageSource(str, Enum):
    HOST = "host"
    CLIENT = "client"


# Envelopes that share the {type, ...} shape but carry no id.
CONTROL_TYPES = frozenset({"ping", "pong", "connection", "error"})


def now_ms() -> int:
    return int(time.time() * 1000)


def _to_base36(value: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    if value <= 0:
        return "0"
    out: list[str] = []
    while value:
        value, rem = divmod(value, 36)
        out.append(digits[rem])
    return "".join(reversed(out))


def generate_id() -> str:
    """Correlation id: base36 millisecond clock plus a random suffix. Not globally unique."""
    return f"{_to_base36(now_ms())}-{uuid.uuid4().hex[:9]}"


@dataclass(frozen=True, slots=True)
class BridgeMessage:
    id: str
    type: str
    source: str
    content: str
    timestamp: int | float
    metadata: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "source": self.source,
            "content": self.content,
            "timestamp": self.timestamp,
        }
        if self.metadata is not None:
            data["metadata"] = self.metadata
        return data


def new_message(
    content: str,
    type: MessageType | str = MessageType.TEXT,
    source: MessageSource | str = MessageSource.CLIENT,
    metadata: dict[str, Any] | None = None,
) -> BridgeMessage:
    return BridgeMessage(
        id=generate_id(),
        type=type.value if isinstance(type, MessageType) else str(type),
        source=source.value if isinstance(source, MessageSource) else str(source),
        content=content,
        timestamp=now_ms(),
        metadata=metadata,
    )


def serialize(message: BridgeMessage | dict[str, Any]) -> str:
    payload = message.to_dict() if isinstance(message, BridgeMessage) else message
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def parse_frame(raw: str | bytes) -> Any | ProtocolError:
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = bytes(raw).decode("utf-8")
        except UnicodeDecodeError as exc:
            return ProtocolError(ProtocolErrorKind.MALFORMED, f"not utf-8: {exc.reason}")
    try:
        return json.loads(raw)
    except ValueError as exc:
        return ProtocolError(ProtocolErrorKind.MALFORMED, str(exc))


def validate_envelope(data: Any) -> BridgeMessage | ProtocolError:
    if not isinstance(data, dict):
        return ProtocolError(ProtocolErrorKind.INVALID_SHAPE, "message must be an object")

    for key in ("id", "type", "source"):
        value = data.get(key)
        if not isinstance(value, str) or not value:
            return ProtocolError(ProtocolErrorKind.INVALID_SHAPE, key)
    if not isinstance(data.get("content"), str):
        return ProtocolError(ProtocolErrorKind.INVALID_SHAPE, "content")
    if not _is_number(data.get("timestamp")):
        return ProtocolError(ProtocolErrorKind.INVALID_SHAPE, "timestamp")

    metadata = data.get("metadata")
    return BridgeMessage(
        id=data["id"],
        type=data["type"],
        source=data["source"],
        content=data["content"],
        timestamp=data["timestamp"],
        metadata=metadata if isinstance(metadata, dict) else None,
    )


def validate(raw: str | bytes) -> BridgeMessage | ProtocolError:
    """Parse one text frame and check its structure.

    Purely structural: unknown ``type``/``source`` values pass so collaborators
    can introduce new message kinds without touching the bridge.
    """
    data = parse_frame(raw)
    if isinstance(data, ProtocolError):
        return data
    return validate_envelope(data)


def is_control_envelope(data: Any) -> bool:
    return isinstance(data, dict) and data.get("type") in CONTROL_TYPES and "id" not in data


def welcome_envelope(port: int) -> dict[str, Any]:
    return {
        "type": "connection",
        "status": "connected",
        "timestamp": now_ms(),
        "serverInfo": {"version": SERVER_VERSION, "port": int(port)},
    }


def error_envelope(error: ProtocolError) -> dict[str, Any]:
    return {
        "type": "error",
        "message": INVALID_MESSAGE_TEXT,
        "reason": error.kind.value,
        "timestamp": now_ms(),
    }


def ping_envelope() -> dict[str, Any]:
    return {"type": "ping", "timestamp": now_ms()}


def pong_envelope() -> dict[str, Any]:
    return {"type": "pong", "timestamp": now_ms()}


def reconnect_delay_ms(attempt: int, *, base_ms: int = 1000, max_ms: int = 10000) -> int:
    """Backoff for 1-indexed reconnect attempt ``attempt``: 1s, 2s, 4s, 8s, then capped."""
    n = max(1, int(attempt))
    # Cap the exponent so large attempt counts don't build huge ints.
    return int(min(base_ms * (2 ** min(n - 1, 30)), max_ms))
