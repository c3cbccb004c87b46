from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class BridgeError(Exception):
    pass


class DiscoveryError(BridgeError):
    """Host health probe failed: unreachable, timed out, or another service answered."""


class TransportError(BridgeError):
    pass


class CapacityExceeded(BridgeError):
    pass


class BindError(BridgeError):
    def __init__(self, host: str, port: int, detail: str) -> None:
        super().__init__(f"Bridge bind failed on {host}:{port}: {detail}")
        self.host = host
        self.port = port
        self.detail = detail


class ProtocolErrorKind(str, Enum):
    MALFORMED = "malformed"
    INVALID_SHAPE = "invalid_shape"


@dataclass(frozen=True, slots=True)
class ProtocolError:
    """Validation failure for one inbound frame. Returned, never raised."""

    kind: ProtocolErrorKind
    detail: str = ""

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.detail}" if self.detail else self.kind.value
