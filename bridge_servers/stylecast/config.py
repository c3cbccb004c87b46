from __future__ import annotations

import ipaddress
import logging
import os
from dataclasses import dataclass

from .protocol import HEALTH_PATH

_LOGGER = logging.getLogger("stylecast.bridge.config")

DEFAULT_PORT = 47823
DEFAULT_MAX_CONNECTIONS = 10
DEFAULT_MAX_RECONNECT_ATTEMPTS = 5
MAX_FRAME_BYTES = 1024 * 1024


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name) or default)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.environ.get(name) or default)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = (os.environ.get(name) or "").strip().lower()
    if not raw:
        return default
    return raw not in {"0", "false", "no", "off"}


def is_loopback_host(host: str) -> bool:
    if host.lower() == "localhost":
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


@dataclass
class BridgeConfig:
    host: str = "127.0.0.1"
    port: int = DEFAULT_PORT
    max_connections: int = DEFAULT_MAX_CONNECTIONS
    max_reconnect_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS
    auto_start: bool = True
    heartbeat_interval: float = 30.0
    liveness_interval: float = 30.0
    discovery_timeout: float = 3.0
    open_timeout: float = 5.0
    max_frame_bytes: int = MAX_FRAME_BYTES
    reconnect_base_ms: int = 1000
    reconnect_max_ms: int = 10000

    def __post_init__(self) -> None:
        self.host = (self.host or "").strip() or "127.0.0.1"
        if not is_loopback_host(self.host):
            _LOGGER.warning("bridge host %s is not a loopback address; the channel has no authentication", self.host)
        self.port = self.clamp_port(self.port)
        self.max_connections = self.clamp_max_connections(self.max_connections)
        self.max_reconnect_attempts = max(0, int(self.max_reconnect_attempts))

    @staticmethod
    def clamp_port(raw: int) -> int:
        return max(1024, min(65535, int(raw)))

    @staticmethod
    def clamp_max_connections(raw: int) -> int:
        return max(1, min(100, int(raw)))

    @classmethod
    def from_env(cls) -> BridgeConfig:
        return cls(
            host=os.environ.get("STYLECAST_HOST", "127.0.0.1"),
            port=_env_int("STYLECAST_PORT", DEFAULT_PORT),
            max_connections=_env_int("STYLECAST_MAX_CONNECTIONS", DEFAULT_MAX_CONNECTIONS),
            max_reconnect_attempts=_env_int("STYLECAST_MAX_RECONNECT_ATTEMPTS", DEFAULT_MAX_RECONNECT_ATTEMPTS),
            auto_start=_env_bool("STYLECAST_AUTO_START", True),
            heartbeat_interval=_env_float("STYLECAST_HEARTBEAT_INTERVAL", 30.0),
            liveness_interval=_env_float("STYLECAST_LIVENESS_INTERVAL", 30.0),
        )

    @property
    def ws_url(self) -> str:
        return f"ws://{self.host}:{self.port}"

    @property
    def health_url(self) -> str:
        return f"http://{self.host}:{self.port}{HEALTH_PATH}"
