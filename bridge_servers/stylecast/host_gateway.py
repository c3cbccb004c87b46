from __future__ import annotations

import asyncio
import concurrent.futures
import contextlib
import inspect
import json
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import websockets
from websockets.datastructures import Headers
from websockets.exceptions import ConnectionClosed
from websockets.http11 import Response
from websockets.protocol import State

from .config import BridgeConfig
from .errors import BindError, CapacityExceeded, ProtocolError
from .protocol import (
    CLOSE_NORMAL,
    CLOSE_OVERLOADED,
    HEALTH_PATH,
    SERVICE_NAME,
    BridgeMessage,
    error_envelope,
    is_control_envelope,
    now_ms,
    parse_frame,
    pong_envelope,
    serialize,
    validate_envelope,
    welcome_envelope,
)

_LOGGER = logging.getLogger("stylecast.bridge.host")

MessageHandler = Callable[[BridgeMessage], Any]
ConnectionChangeHandler = Callable[[int], None]


class GatewayState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass(frozen=True, slots=True)
class ConnectionStatus:
    connected: bool
    client_count: int
    port: int
    uptime_ms: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "connected": self.connected,
            "clientCount": self.client_count,
            "port": self.port,
            "uptime": self.uptime_ms,
        }


@dataclass
class _Session:
    session_id: str
    ws: Any
    connected_at_ms: int
    # Cleared when a liveness ping goes out, set again by the matching pong.
    alive: bool = True

    def mark_alive(self, pong_waiter: asyncio.Future) -> None:
        if not pong_waiter.cancelled() and pong_waiter.exception() is None:
            self.alive = True


def _is_open(ws: Any) -> bool:
    return getattr(ws, "state", None) is State.OPEN


class HostGateway:
    """Localhost WebSocket acceptor for bridge clients.

    Sync API for the embedding application (start / stop / broadcast / status);
    the server itself runs on an asyncio loop in a dedicated daemon thread.
    The same port answers a plain ``GET /health`` so clients can check
    reachability before opening a session.
    """

    def __init__(
        self,
        on_message: MessageHandler | None,
        *,
        config: BridgeConfig | None = None,
        on_connection_change: ConnectionChangeHandler | None = None,
    ) -> None:
        self.config = config or BridgeConfig.from_env()
        self._on_message = on_message
        self._on_connection_change = on_connection_change

        self._lock = threading.Lock()
        self._ready = threading.Event()
        self._state = GatewayState.STOPPED

        self._loop: asyncio.AbstractEventLoop | None = None
        self._loop_thread_id: int | None = None
        self._thread: threading.Thread | None = None
        self._stopped: asyncio.Event | None = None

        self._server: Any | None = None
        self._bind_error: BindError | None = None
        self._liveness_task: asyncio.Task | None = None
        self._handler_tasks: set[asyncio.Task] = set()

        self._sessions: dict[str, _Session] = {}
        self._next_session = 1
        self._started_at_ms = 0

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    @property
    def host(self) -> str:
        return self.config.host

    @property
    def port(self) -> int:
        return self.config.port

    @property
    def state(self) -> GatewayState:
        with self._lock:
            return self._state

    def is_running(self) -> bool:
        return self.state is GatewayState.RUNNING

    def start(self, *, wait_timeout: float = 5.0) -> None:
        """Bind the listener. Raises BindError if the port is taken; never retries."""
        with self._lock:
            if self._state in (GatewayState.RUNNING, GatewayState.STARTING):
                return
            self._state = GatewayState.STARTING
            self._bind_error = None

        self._ready.clear()
        t = threading.Thread(target=self._run_thread, name="stylecast-host-gateway", daemon=True)
        self._thread = t
        t.start()

        if not self._ready.wait(timeout=max(0.05, float(wait_timeout))):
            self._abort_start()
            raise BindError(self.host, self.port, "timed out waiting for the listener")

        with self._lock:
            bind_error = self._bind_error
        if bind_error is not None:
            t.join(timeout=1.0)
            with self._lock:
                self._state = GatewayState.STOPPED
            _LOGGER.error("%s", bind_error)
            raise bind_error

        with self._lock:
            self._state = GatewayState.RUNNING
        _LOGGER.info("bridge listening on %s:%s", self.host, self.port)

    def stop(self, *, timeout: float = 2.0) -> None:
        with self._lock:
            if self._state is not GatewayState.RUNNING:
                return
            self._state = GatewayState.STOPPING

        loop = self._loop
        if loop is not None and loop.is_running():
            fut = asyncio.run_coroutine_threadsafe(self._shutdown_async(), loop)
            try:
                fut.result(timeout=timeout)
            except concurrent.futures.TimeoutError:
                _LOGGER.warning("bridge shutdown did not finish within %.1fs", timeout)

        t = self._thread
        if t is not None:
            t.join(timeout=timeout)

        with self._lock:
            self._state = GatewayState.STOPPED
            self._started_at_ms = 0
            self._sessions.clear()
        _LOGGER.info("bridge stopped")

    def status(self) -> ConnectionStatus:
        with self._lock:
            running = self._state is GatewayState.RUNNING
            count = len(self._sessions)
            started = self._started_at_ms
        return ConnectionStatus(
            connected=running,
            client_count=count,
            port=self.port,
            uptime_ms=max(0, now_ms() - started) if running and started else 0,
        )

    def client_count(self) -> int:
        with self._lock:
            return len(self._sessions)

    # ─────────────────────────────────────────────────────────────────────────
    # Outbound
    # ─────────────────────────────────────────────────────────────────────────

    def broadcast(self, message: BridgeMessage | dict[str, Any], *, timeout: float = 5.0) -> int:
        """Send one message to every open session; returns how many sends succeeded.

        Called from a handler on the gateway loop, the sends are scheduled and
        the number of targeted sessions is returned instead.
        """
        loop = self._loop
        if not self.is_running() or loop is None:
            return 0
        if threading.get_ident() == self._loop_thread_id:
            raw = serialize(message)
            targets = self._open_sockets()
            for ws in targets:
                self._track(loop.create_task(ws.send(raw)))
            return len(targets)
        fut = asyncio.run_coroutine_threadsafe(self._broadcast_async(message), loop)
        try:
            return int(fut.result(timeout=timeout))
        except concurrent.futures.TimeoutError:
            _LOGGER.warning("broadcast timed out after %.1fs", timeout)
            return 0

    def send_to(self, session_id: str, payload: BridgeMessage | dict[str, Any], *, timeout: float = 5.0) -> bool:
        loop = self._loop
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None or loop is None or not _is_open(session.ws):
            return False
        if threading.get_ident() == self._loop_thread_id:
            self._track(loop.create_task(self._send_json(session.ws, payload)))
            return True
        fut = asyncio.run_coroutine_threadsafe(self._send_json(session.ws, payload), loop)
        try:
            fut.result(timeout=timeout)
        except (ConnectionClosed, concurrent.futures.TimeoutError):
            return False
        return True

    def session_ids(self) -> list[str]:
        with self._lock:
            return list(self._sessions)

    # ─────────────────────────────────────────────────────────────────────────
    # Internals (async)
    # ─────────────────────────────────────────────────────────────────────────

    def _run_thread(self) -> None:
        asyncio.run(self._run_async())

    def _abort_start(self) -> None:
        loop = self._loop
        stopped = self._stopped
        if loop is not None and stopped is not None:
            with contextlib.suppress(RuntimeError):
                loop.call_soon_threadsafe(stopped.set)
        with self._lock:
            self._state = GatewayState.STOPPED

    async def _run_async(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._loop_thread_id = threading.get_ident()
        self._stopped = asyncio.Event()

        try:
            server = await websockets.serve(
                self._handler,
                self.host,
                self.port,
                process_request=self._process_request,
                max_size=self.config.max_frame_bytes,
                # Liveness is driven by our own probe loop.
                ping_interval=None,
            )
        except OSError as exc:
            with self._lock:
                self._bind_error = BindError(self.host, self.port, exc.strerror or str(exc))
            self._ready.set()
            return

        self._server = server
        with self._lock:
            self._started_at_ms = now_ms()
        self._liveness_task = asyncio.create_task(self._liveness_loop())
        self._ready.set()

        await self._stopped.wait()

    async def _shutdown_async(self) -> None:
        task = self._liveness_task
        self._liveness_task = None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        with self._lock:
            sockets = [s.ws for s in self._sessions.values()]
        if sockets:
            await asyncio.gather(
                *(ws.close(CLOSE_NORMAL, "Server shutting down") for ws in sockets),
                return_exceptions=True,
            )

        srv = self._server
        self._server = None
        if srv is not None:
            srv.close()
            await srv.wait_closed()

        if self._stopped is not None:
            self._stopped.set()

    async def _handler(self, ws: Any) -> None:
        with self._lock:
            full = len(self._sessions) >= self.config.max_connections
            if not full:
                session = _Session(session_id=f"session-{self._next_session}", ws=ws, connected_at_ms=now_ms())
                self._next_session += 1
                self._sessions[session.session_id] = session
                count = len(self._sessions)

        if full:
            reason = CapacityExceeded(f"{self.config.max_connections} connections already open")
            _LOGGER.warning("rejecting client from %s: %s", getattr(ws, "remote_address", None), reason)
            await ws.close(CLOSE_OVERLOADED, "Server overloaded")
            return

        _LOGGER.info("client connected from %s (%s, total=%d)", getattr(ws, "remote_address", None), session.session_id, count)
        self._notify_connection_change(count)

        try:
            await self._send_json(ws, welcome_envelope(self.port))
            async for raw in ws:
                await self._on_frame(session, raw)
        except ConnectionClosed:
            pass
        finally:
            with self._lock:
                self._sessions.pop(session.session_id, None)
                count = len(self._sessions)
            _LOGGER.info("client disconnected: %s code=%s", session.session_id, getattr(ws, "close_code", None))
            self._notify_connection_change(count)

    async def _on_frame(self, session: _Session, raw: str | bytes) -> None:
        data = parse_frame(raw)
        if is_control_envelope(data) and data.get("type") == "ping":
            await self._send_json(session.ws, pong_envelope())
            return

        result = data if isinstance(data, ProtocolError) else validate_envelope(data)
        if isinstance(result, ProtocolError):
            _LOGGER.warning("invalid message from %s: %s", session.session_id, result)
            await self._send_json(session.ws, error_envelope(result))
            return

        _LOGGER.debug("received %s message %s from %s", result.type, result.id, session.session_id)
        self._dispatch(result)

    def _dispatch(self, message: BridgeMessage) -> None:
        handler = self._on_message
        if handler is None:
            return
        loop = asyncio.get_running_loop()
        if inspect.iscoroutinefunction(handler):
            self._track(loop.create_task(handler(message)))
        else:
            # Plain handlers may block; keep them off the loop serving every session.
            self._track(loop.create_task(asyncio.to_thread(self._run_handler, handler, message)))

    @staticmethod
    def _run_handler(handler: MessageHandler, message: BridgeMessage) -> None:
        try:
            handler(message)
        except Exception:
            _LOGGER.exception("message handler failed for %s message %s", message.type, message.id)

    def _track(self, task: asyncio.Task) -> None:
        self._handler_tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._handler_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None and not isinstance(exc, ConnectionClosed):
            _LOGGER.error("bridge task failed: %s", exc, exc_info=exc)

    def _notify_connection_change(self, count: int) -> None:
        cb = self._on_connection_change
        if cb is None:
            return
        try:
            cb(count)
        except Exception:
            _LOGGER.exception("connection-change observer failed")

    def _open_sockets(self) -> list[Any]:
        with self._lock:
            return [s.ws for s in self._sessions.values() if _is_open(s.ws)]

    async def _broadcast_async(self, message: BridgeMessage | dict[str, Any]) -> int:
        raw = serialize(message)
        targets = self._open_sockets()
        results = await asyncio.gather(*(ws.send(raw) for ws in targets), return_exceptions=True)
        sent = sum(1 for r in results if not isinstance(r, BaseException))
        _LOGGER.info("broadcast message to %d clients", sent)
        return sent

    async def _liveness_loop(self) -> None:
        interval = max(0.01, float(self.config.liveness_interval))
        while True:
            await asyncio.sleep(interval)
            await self._liveness_sweep()

    async def _liveness_sweep(self) -> None:
        with self._lock:
            sessions = list(self._sessions.values())
        for session in sessions:
            if not session.alive:
                _LOGGER.warning("terminating unresponsive session %s", session.session_id)
                session.ws.transport.abort()
                continue
            session.alive = False
            try:
                pong_waiter = await session.ws.ping()
            except ConnectionClosed:
                continue
            pong_waiter.add_done_callback(session.mark_alive)

    # ─────────────────────────────────────────────────────────────────────────
    # HTTP discovery
    # ─────────────────────────────────────────────────────────────────────────

    def _process_request(self, _conn: Any, request: Any) -> Response | None:
        if str(request.headers.get("Upgrade") or "").lower() == "websocket":
            return None
        path = str(getattr(request, "path", "") or "").split("?", 1)[0]
        if path == HEALTH_PATH:
            return self._json_response(200, "OK", self._health_payload())
        return self._json_response(404, "Not Found", {"error": "Not Found"})

    def _health_payload(self) -> dict[str, Any]:
        return {
            "status": "ok",
            "service": SERVICE_NAME,
            **self.status().to_dict(),
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        }

    @staticmethod
    def _json_response(status: int, reason: str, payload: dict[str, Any]) -> Response:
        body = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
        headers = Headers()
        headers["Content-Type"] = "application/json"
        headers["Content-Length"] = str(len(body))
        headers["Cache-Control"] = "no-store"
        headers["Access-Control-Allow-Origin"] = "*"
        return Response(status, reason, headers, body)

    async def _send_json(self, ws: Any, payload: BridgeMessage | dict[str, Any]) -> None:
        await ws.send(serialize(payload))
