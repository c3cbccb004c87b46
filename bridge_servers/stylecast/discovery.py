from __future__ import annotations

import json
import urllib.request
from dataclasses import dataclass

from .errors import DiscoveryError
from .protocol import HEALTH_PATH, SERVICE_NAME


@dataclass(frozen=True, slots=True)
class HealthReport:
    host: str
    port: int
    connected: bool
    client_count: int
    uptime_ms: int
    timestamp: str


def probe_host(host: str, port: int, *, timeout: float = 3.0) -> HealthReport:
    """Stateless reachability check against the host's ``/health`` endpoint.

    Cheap enough to run before every session attempt, and quiet: a refused GET
    does not leave a failed WebSocket handshake behind on either side.
    """
    url = f"http://{host}:{int(port)}{HEALTH_PATH}"
    req = urllib.request.Request(
        url,
        method="GET",
        headers={"Accept": "application/json", "Cache-Control": "no-store"},
    )
    try:
        with urllib.request.urlopen(req, timeout=max(0.05, float(timeout))) as resp:  # noqa: S310
            status = int(getattr(resp, "status", 200))
            raw = resp.read()
    except TimeoutError as exc:
        raise DiscoveryError(f"Bridge host at {host}:{port} is not responding") from exc
    except OSError as exc:
        raise DiscoveryError(f"Cannot reach bridge host at {host}:{port}: {exc}") from exc

    if status != 200:
        raise DiscoveryError(f"Bridge host responded with status {status}")

    try:
        data = json.loads(raw.decode("utf-8"))
    except ValueError as exc:
        raise DiscoveryError("Bridge host returned a non-JSON health response") from exc
    if not isinstance(data, dict) or data.get("service") != SERVICE_NAME:
        raise DiscoveryError(f"Different service running on port {port}")

    try:
        client_count = int(data.get("clientCount") or 0)
    except (TypeError, ValueError):
        client_count = 0
    try:
        uptime = int(data.get("uptime") or 0)
    except (TypeError, ValueError):
        uptime = 0

    return HealthReport(
        host=str(host),
        port=int(data["port"]) if isinstance(data.get("port"), int) else int(port),
        connected=bool(data.get("connected")),
        client_count=max(0, client_count),
        uptime_ms=max(0, uptime),
        timestamp=str(data.get("timestamp") or ""),
    )
