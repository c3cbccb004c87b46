from __future__ import annotations

import contextlib
import json
import socket
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

import pytest

from bridge_servers.stylecast.client import BridgeClient, ClientState
from bridge_servers.stylecast.config import BridgeConfig
from bridge_servers.stylecast.errors import DiscoveryError, TransportError
from bridge_servers.stylecast.host_gateway import HostGateway
from bridge_servers.stylecast.protocol import BridgeMessage, MessageSource, new_message


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return int(s.getsockname()[1])


def _wait_until(predicate: Any, timeout: float = 3.0) -> bool:
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return bool(predicate())


def _fast_config(port: int, **overrides: Any) -> BridgeConfig:
    opts: dict[str, Any] = {
        "port": port,
        "discovery_timeout": 1.0,
        "open_timeout": 2.0,
        "reconnect_base_ms": 50,
        "reconnect_max_ms": 200,
    }
    opts.update(overrides)
    return BridgeConfig(**opts)


def test_client_roundtrip_with_gateway() -> None:
    port = _free_port()
    host_seen: list[BridgeMessage] = []
    host_got = threading.Event()

    def _host_handler(msg: BridgeMessage) -> None:
        host_seen.append(msg)
        host_got.set()

    gw = HostGateway(_host_handler, config=_fast_config(port))
    gw.start()
    client = BridgeClient(_fast_config(port))
    statuses: list[bool] = []
    received: list[BridgeMessage] = []
    client.on_status_change(statuses.append)
    client.on_message(received.append)
    try:
        client.connect()
        assert client.state is ClientState.CONNECTED
        assert client.is_connected() is True
        assert statuses == [True]
        assert _wait_until(lambda: gw.client_count() == 1)

        assert client.send_message("from client", "element-edit") is True
        assert host_got.wait(2.0)
        assert host_seen[0].content == "from client"
        assert host_seen[0].type == "element-edit"
        assert host_seen[0].source == "client"
        assert host_seen[0].metadata == {}

        out = new_message("from host", "notification", MessageSource.HOST)
        assert gw.broadcast(out) == 1
        assert _wait_until(lambda: len(received) == 1)
        assert received[0] == out

        info = client.connection_info()
        assert info == {
            "connected": True,
            "state": "connected",
            "port": port,
            "reconnectAttempts": 0,
            "maxReconnectAttempts": 5,
        }

        client.disconnect()
        assert client.state is ClientState.DISCONNECTED
        assert client.is_connected() is False
        assert client.is_reconnect_pending() is False
        assert statuses == [True, False]
        assert _wait_until(lambda: gw.client_count() == 0)
    finally:
        client.close()
        gw.stop()


def test_concurrent_connect_opens_one_session() -> None:
    port = _free_port()
    counts: list[int] = []
    gw = HostGateway(None, config=_fast_config(port), on_connection_change=counts.append)
    gw.start()
    client = BridgeClient(_fast_config(port))
    try:
        errors: list[BaseException] = []

        def _connect() -> None:
            try:
                client.connect()
            except BaseException as exc:  # noqa: BLE001
                errors.append(exc)

        threads = [threading.Thread(target=_connect) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5.0)

        assert errors == []
        assert _wait_until(client.is_connected)
        time.sleep(0.2)
        assert gw.client_count() == 1
        assert counts == [1]
    finally:
        client.close()
        gw.stop()


def test_connect_without_host_schedules_reconnect_and_disconnect_cancels_it() -> None:
    port = _free_port()
    client = BridgeClient(_fast_config(port, reconnect_base_ms=300))
    statuses: list[bool] = []
    client.on_status_change(statuses.append)
    try:
        with pytest.raises(DiscoveryError):
            client.connect()
        assert client.state is ClientState.RECONNECTING
        assert client.reconnect_attempts == 1
        assert client.is_reconnect_pending() is True
        assert statuses == [False]

        client.disconnect()
        assert client.is_reconnect_pending() is False
        assert client.state is ClientState.DISCONNECTED

        time.sleep(0.6)
        assert client.reconnect_attempts == 1
        assert client.state is ClientState.DISCONNECTED
        assert statuses == [False]
    finally:
        client.close()


class _OtherServiceHandler(BaseHTTPRequestHandler):
    def do_GET(self) -> None:  # noqa: N802
        body = json.dumps({"status": "ok", "service": "something-else"}).encode("utf-8")
        self.send_response(200)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, *_args: Any) -> None:
        pass


def test_connect_refuses_a_different_service() -> None:
    port = _free_port()
    server = ThreadingHTTPServer(("127.0.0.1", port), _OtherServiceHandler)
    t = threading.Thread(target=server.serve_forever, daemon=True)
    t.start()
    client = BridgeClient(_fast_config(port, max_reconnect_attempts=0))
    try:
        with pytest.raises(DiscoveryError, match=f"Different service running on port {port}"):
            client.connect()
        assert client.state is ClientState.EXHAUSTED
        assert client.is_connected() is False
    finally:
        client.close()
        server.shutdown()
        server.server_close()


def test_reconnect_exhausts_then_reset_allows_a_fresh_connect() -> None:
    port = _free_port()
    client = BridgeClient(_fast_config(port, max_reconnect_attempts=2, reconnect_base_ms=20))
    statuses: list[bool] = []
    client.on_status_change(statuses.append)
    gw: HostGateway | None = None
    try:
        with pytest.raises(DiscoveryError):
            client.connect()
        assert _wait_until(lambda: client.state is ClientState.EXHAUSTED)
        assert client.reconnect_attempts == 2
        assert statuses == [False, False, False]
        assert client.is_reconnect_pending() is False

        client.reset()
        assert client.state is ClientState.DISCONNECTED
        assert client.reconnect_attempts == 0

        gw = HostGateway(None, config=_fast_config(port))
        gw.start()
        client.connect()
        assert client.is_connected() is True
    finally:
        client.close()
        if gw is not None:
            gw.stop()


def test_resume_after_exhaustion_reconnects_once_host_is_back() -> None:
    port = _free_port()
    client = BridgeClient(_fast_config(port, max_reconnect_attempts=0))
    gw = HostGateway(None, config=_fast_config(port))
    try:
        with pytest.raises(DiscoveryError):
            client.connect()
        assert client.state is ClientState.EXHAUSTED

        # No host yet: resume logs and stays down.
        client.resume()
        assert client.is_connected() is False

        gw.start()
        client.resume()
        assert client.is_connected() is True

        client.disconnect()
        client.resume()
        assert client.is_connected() is False
    finally:
        client.close()
        gw.stop()


def test_abnormal_close_triggers_reconnect() -> None:
    port = _free_port()
    gw = HostGateway(None, config=_fast_config(port))
    gw.start()
    client = BridgeClient(_fast_config(port))
    statuses: list[bool] = []
    client.on_status_change(statuses.append)
    try:
        client.connect()
        assert _wait_until(lambda: gw.client_count() == 1)

        def _drop_all() -> None:
            for session in list(gw._sessions.values()):
                session.ws.transport.abort()

        assert gw._loop is not None
        gw._loop.call_soon_threadsafe(_drop_all)

        assert _wait_until(lambda: statuses == [True, False, True])
        assert client.is_connected() is True
        assert client.reconnect_attempts == 0
        assert _wait_until(lambda: gw.client_count() == 1)
    finally:
        client.close()
        gw.stop()


def test_client_reconnects_to_restarted_host() -> None:
    port = _free_port()
    gw = HostGateway(None, config=_fast_config(port))
    gw.start()
    client = BridgeClient(_fast_config(port, reconnect_base_ms=400))
    statuses: list[bool] = []
    client.on_status_change(statuses.append)
    replacement: HostGateway | None = None
    try:
        client.connect()
        assert _wait_until(lambda: gw.client_count() == 1)

        def _crash() -> None:
            for session in list(gw._sessions.values()):
                session.ws.transport.abort()

        assert gw._loop is not None
        gw._loop.call_soon_threadsafe(_crash)
        gw.stop()

        assert _wait_until(lambda: client.state is ClientState.RECONNECTING)
        replacement = HostGateway(None, config=_fast_config(port))
        replacement.start()

        assert _wait_until(client.is_connected, timeout=5.0)
        assert _wait_until(lambda: replacement is not None and replacement.client_count() == 1)
        assert statuses[0] is True
        assert statuses[-1] is True
    finally:
        client.close()
        gw.stop()
        if replacement is not None:
            replacement.stop()


def test_normal_close_from_host_does_not_reconnect() -> None:
    port = _free_port()
    gw = HostGateway(None, config=_fast_config(port))
    gw.start()
    client = BridgeClient(_fast_config(port))
    try:
        client.connect()
        gw.stop()
        assert _wait_until(lambda: client.state is ClientState.DISCONNECTED)
        time.sleep(0.2)
        assert client.state is ClientState.DISCONNECTED
        assert client.is_reconnect_pending() is False
        assert client.reconnect_attempts == 0
    finally:
        client.close()
        gw.stop()


def test_overloaded_host_counts_as_unexpected_close() -> None:
    port = _free_port()
    gw = HostGateway(None, config=_fast_config(port, max_connections=1))
    gw.start()
    first = BridgeClient(_fast_config(port))
    second = BridgeClient(_fast_config(port, max_reconnect_attempts=0))
    try:
        first.connect()
        assert _wait_until(lambda: gw.client_count() == 1)

        with contextlib.suppress(Exception):
            second.connect()
        assert _wait_until(lambda: second.state is ClientState.EXHAUSTED)
        assert first.is_connected() is True
        assert gw.client_count() == 1
    finally:
        second.close()
        first.close()
        gw.stop()


def test_observer_failures_are_isolated_and_unsubscribe_works() -> None:
    port = _free_port()
    gw = HostGateway(None, config=_fast_config(port))
    gw.start()
    client = BridgeClient(_fast_config(port))
    received: list[str] = []
    dropped: list[str] = []

    def _broken(_msg: BridgeMessage) -> None:
        raise RuntimeError("observer bug")

    client.on_message(_broken)
    client.on_message(lambda m: received.append(m.content))
    unsubscribe = client.on_message(lambda m: dropped.append(m.content))
    unsubscribe()
    try:
        client.connect()
        gw.broadcast(new_message("one", source=MessageSource.HOST))
        gw.broadcast(new_message("two", source=MessageSource.HOST))
        assert _wait_until(lambda: received == ["one", "two"])
        assert dropped == []
        assert client.is_connected() is True
    finally:
        client.close()
        gw.stop()


def test_host_rejection_is_delivered_as_error_message() -> None:
    port = _free_port()
    gw = HostGateway(None, config=_fast_config(port))
    gw.start()
    client = BridgeClient(_fast_config(port))
    received: list[BridgeMessage] = []
    client.on_message(received.append)
    try:
        client.connect()
        assert client.send({"id": "x", "type": "text"}) is True
        assert _wait_until(lambda: len(received) == 1)
        err = received[0]
        assert err.type == "error"
        assert err.source == "host"
        assert err.content == "Invalid message format"
        assert err.metadata == {"reason": "invalid_shape"}
        assert client.is_connected() is True
    finally:
        client.close()
        gw.stop()


def test_heartbeat_pings_reach_host_but_not_handlers(monkeypatch: pytest.MonkeyPatch) -> None:
    port = _free_port()
    host_seen: list[BridgeMessage] = []
    gw = HostGateway(host_seen.append, config=_fast_config(port))
    pings: list[float] = []
    deliver = gw._on_frame

    async def _counting(session: Any, raw: str | bytes) -> None:
        if json.loads(raw).get("type") == "ping":
            pings.append(time.monotonic())
        await deliver(session, raw)

    monkeypatch.setattr(gw, "_on_frame", _counting)
    gw.start()
    client = BridgeClient(_fast_config(port, heartbeat_interval=0.05))
    received: list[BridgeMessage] = []
    client.on_message(received.append)
    try:
        client.connect()
        assert _wait_until(lambda: len(pings) >= 4)
        assert host_seen == []
        assert received == []
        assert client.is_connected() is True

        client.disconnect()
        stopped_at = len(pings)
        time.sleep(0.2)
        assert len(pings) == stopped_at
    finally:
        client.close()
        gw.stop()


def test_send_while_disconnected_returns_false() -> None:
    client = BridgeClient(_fast_config(_free_port()))
    try:
        assert client.is_connected() is False
        assert client.send_message("nobody home") is False
        assert client.send(new_message("nobody home")) is False
        info = client.connection_info()
        assert info["connected"] is False
        assert info["state"] == "disconnected"
    finally:
        client.close()


def test_connect_from_the_client_loop_does_not_block_it() -> None:
    port = _free_port()
    gw = HostGateway(None, config=_fast_config(port))
    gw.start()
    client = BridgeClient(_fast_config(port))
    statuses: list[bool] = []
    client.on_status_change(statuses.append)
    try:
        client.connect()
        client.disconnect()
        assert client.state is ClientState.DISCONNECTED

        assert client._loop is not None
        client._loop.call_soon_threadsafe(client.connect)
        assert _wait_until(client.is_connected, timeout=3.0)
        assert statuses == [True, False, True]
        assert _wait_until(lambda: gw.client_count() == 1)
    finally:
        client.close()
        gw.stop()


def test_observer_can_reconnect_from_inside_a_callback() -> None:
    port = _free_port()
    counts: list[int] = []
    gw = HostGateway(None, config=_fast_config(port), on_connection_change=counts.append)
    gw.start()
    client = BridgeClient(_fast_config(port))
    seen: list[str] = []

    def _on_message(msg: BridgeMessage) -> None:
        seen.append(msg.content)
        if msg.content == "cycle":
            client.disconnect()
            client.reset()
            client.connect()

    client.on_message(_on_message)
    try:
        client.connect()
        assert gw.broadcast(new_message("cycle", "command", MessageSource.HOST)) == 1
        assert _wait_until(lambda: counts == [1, 0, 1] or counts == [1, 2, 1])
        assert _wait_until(client.is_connected)

        assert gw.broadcast(new_message("after", source=MessageSource.HOST)) == 1
        assert _wait_until(lambda: seen == ["cycle", "after"])
    finally:
        client.close()
        gw.stop()


class _SlowHealthHandler(BaseHTTPRequestHandler):
    def do_GET(self) -> None:  # noqa: N802
        time.sleep(1.5)
        self.send_response(503)
        self.end_headers()

    def log_message(self, *_args: Any) -> None:
        pass


def test_connect_timeout_reports_failure_and_schedules_reconnect() -> None:
    port = _free_port()
    server = ThreadingHTTPServer(("127.0.0.1", port), _SlowHealthHandler)
    t = threading.Thread(target=server.serve_forever, daemon=True)
    t.start()
    client = BridgeClient(_fast_config(port, discovery_timeout=3.0, reconnect_base_ms=5000, reconnect_max_ms=5000))
    statuses: list[bool] = []
    client.on_status_change(statuses.append)
    try:
        with pytest.raises(TransportError, match="timed out"):
            client.connect(timeout=0.3)
        assert _wait_until(lambda: client.state is ClientState.RECONNECTING)
        assert client.is_reconnect_pending() is True
        assert client.reconnect_attempts == 1
        assert statuses == [False]
    finally:
        client.close()
        server.shutdown()
        server.server_close()


def test_host_and_port_overrides_leave_shared_config_alone() -> None:
    shared = BridgeConfig(port=47000)
    client = BridgeClient(shared, host="localhost", port=48000)
    try:
        assert shared.host == "127.0.0.1"
        assert shared.port == 47000
        assert client.config.host == "localhost"
        assert client.config.port == 48000
        assert client.connection_info()["port"] == 48000
        assert BridgeClient(shared).config is shared
    finally:
        client.close()
