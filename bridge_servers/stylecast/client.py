from __future__ import annotations

import asyncio
import concurrent.futures
import contextlib
import dataclasses
import logging
import threading
from collections.abc import Callable
from enum import Enum
from typing import Any

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI
from websockets.protocol import State

from .config import BridgeConfig
from .discovery import probe_host
from .errors import BridgeError, DiscoveryError, ProtocolError, TransportError
from .protocol import (
    CLOSE_NORMAL,
    BridgeMessage,
    MessageSource,
    MessageType,
    is_control_envelope,
    new_message,
    now_ms,
    parse_frame,
    ping_envelope,
    reconnect_delay_ms,
    serialize,
    validate_envelope,
)

_LOGGER = logging.getLogger("stylecast.bridge.client")

MessageObserver = Callable[[BridgeMessage], None]
StatusObserver = Callable[[bool], None]


class ClientState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    EXHAUSTED = "exhausted"


class BridgeClient:
    """Single-session connection manager for the short-lived client side.

    Probes the host's health endpoint before each session attempt, reconnects
    with capped exponential backoff after unexpected loss, and keeps an idle
    session warm with application-level pings. Public methods are sync; the
    session, timers and observers all run on a private loop thread.
    """

    def __init__(
        self,
        config: BridgeConfig | None = None,
        *,
        host: str | None = None,
        port: int | None = None,
    ) -> None:
        base = config or BridgeConfig.from_env()
        overrides: dict[str, Any] = {}
        if host is not None:
            overrides["host"] = host
        if port is not None:
            overrides["port"] = port
        # The caller may share this config with a HostGateway; never mutate it.
        self.config = dataclasses.replace(base, **overrides) if overrides else base

        self._lock = threading.Lock()
        self._state = ClientState.DISCONNECTED
        self._manual_disconnect = False
        self._reconnect_attempts = 0

        self._loop: asyncio.AbstractEventLoop | None = None
        self._loop_thread_id: int | None = None
        self._thread: threading.Thread | None = None

        self._ws: Any | None = None
        self._reader_task: asyncio.Task | None = None
        self._heartbeat_task: asyncio.Task | None = None
        self._reconnect_handle: asyncio.TimerHandle | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()

        self._message_observers: dict[int, MessageObserver] = {}
        self._status_observers: dict[int, StatusObserver] = {}
        self._next_token = 1

    # ─────────────────────────────────────────────────────────────────────────
    # State
    # ─────────────────────────────────────────────────────────────────────────

    @property
    def state(self) -> ClientState:
        with self._lock:
            return self._state

    @property
    def reconnect_attempts(self) -> int:
        with self._lock:
            return self._reconnect_attempts

    def is_connected(self) -> bool:
        with self._lock:
            ws = self._ws
            state = self._state
        return state is ClientState.CONNECTED and ws is not None and ws.state is State.OPEN

    def is_reconnect_pending(self) -> bool:
        handle = self._reconnect_handle
        return handle is not None and not handle.cancelled()

    def connection_info(self) -> dict[str, Any]:
        with self._lock:
            state = self._state
            attempts = self._reconnect_attempts
        return {
            "connected": self.is_connected(),
            "state": state.value,
            "port": self.config.port,
            "reconnectAttempts": attempts,
            "maxReconnectAttempts": self.config.max_reconnect_attempts,
        }

    # ─────────────────────────────────────────────────────────────────────────
    # Observers
    # ─────────────────────────────────────────────────────────────────────────

    def on_message(self, callback: MessageObserver) -> Callable[[], None]:
        return self._register(self._message_observers, callback)

    def on_status_change(self, callback: StatusObserver) -> Callable[[], None]:
        return self._register(self._status_observers, callback)

    def _register(self, table: dict[int, Any], callback: Any) -> Callable[[], None]:
        with self._lock:
            token = self._next_token
            self._next_token += 1
            table[token] = callback

        def _unsubscribe() -> None:
            with self._lock:
                table.pop(token, None)

        return _unsubscribe

    def _notify_status(self, connected: bool) -> None:
        with self._lock:
            observers = list(self._status_observers.values())
        for cb in observers:
            try:
                cb(connected)
            except Exception:
                _LOGGER.exception("status observer failed")

    def _notify_message(self, message: BridgeMessage) -> None:
        with self._lock:
            observers = list(self._message_observers.values())
        for cb in observers:
            try:
                cb(message)
            except Exception:
                _LOGGER.exception("message observer failed for %s message %s", message.type, message.id)

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    def connect(self, *, timeout: float | None = None) -> None:
        """Probe the host and open one session.

        Returns immediately if a session is already open or being opened.
        Raises DiscoveryError when the host does not answer its health probe and
        TransportError when the WebSocket handshake fails; either way a
        reconnect is scheduled while attempts remain.

        Called from an observer on the client loop, the attempt is scheduled
        and this returns at once; the outcome arrives through status observers.
        """
        with self._lock:
            if self._state in (ClientState.CONNECTING, ClientState.CONNECTED):
                return
            self._state = ClientState.CONNECTING
            self._manual_disconnect = False

        loop = self._ensure_loop()
        if threading.get_ident() == self._loop_thread_id:
            task = loop.create_task(self._reconnect_attempt())
            self._reconnect_task = task
            self._track(task)
            return

        budget = timeout
        if budget is None:
            budget = self.config.discovery_timeout + self.config.open_timeout + 2.0
        fut = asyncio.run_coroutine_threadsafe(self._connect_async(), loop)
        try:
            fut.result(timeout=budget)
        except concurrent.futures.TimeoutError as exc:
            fut.cancel()
            loop.call_soon_threadsafe(self._connect_timed_out)
            raise TransportError(f"Bridge connect timed out after {budget:.1f}s") from exc

    def disconnect(self, *, timeout: float = 2.0) -> None:
        with self._lock:
            self._manual_disconnect = True
        loop = self._loop
        if loop is None or not loop.is_running():
            with self._lock:
                self._state = ClientState.DISCONNECTED
            return
        if threading.get_ident() == self._loop_thread_id:
            # Detach now so a connect() from the same callback starts a fresh session.
            self._cancel_timers()
            with self._lock:
                ws = self._ws
                self._ws = None
                self._state = ClientState.DISCONNECTED
            if ws is not None:
                self._track(loop.create_task(ws.close(CLOSE_NORMAL, "Manual disconnect")))
                self._notify_status(False)
            return
        fut = asyncio.run_coroutine_threadsafe(self._disconnect_async(), loop)
        try:
            fut.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            _LOGGER.warning("bridge disconnect did not finish within %.1fs", timeout)

    def reset(self) -> None:
        """Leave EXHAUSTED and zero the attempt counter without reconnecting."""
        with self._lock:
            self._reconnect_attempts = 0
            self._manual_disconnect = False
            if self._state is ClientState.EXHAUSTED:
                self._state = ClientState.DISCONNECTED

    def resume(self) -> None:
        """Re-probe after the hosting process was suspended; session state is unknown."""
        with self._lock:
            manual = self._manual_disconnect
            ws = self._ws
            if manual:
                return
            if self._state is ClientState.CONNECTED and (ws is None or ws.state is not State.OPEN):
                self._state = ClientState.DISCONNECTED
        if self.is_connected():
            return
        loop = self._loop
        if threading.get_ident() == self._loop_thread_id:
            self._cancel_reconnect()
        elif loop is not None and loop.is_running():
            asyncio.run_coroutine_threadsafe(self._cancel_reconnect_async(), loop).result(timeout=2.0)
        with self._lock:
            if self._state in (ClientState.RECONNECTING, ClientState.EXHAUSTED):
                self._state = ClientState.DISCONNECTED
        try:
            self.connect()
        except BridgeError as exc:
            _LOGGER.info("resume could not reach the bridge host: %s", exc)

    def close(self, *, timeout: float = 2.0) -> None:
        self.disconnect(timeout=timeout)
        loop = self._loop
        if loop is not None and loop.is_running():
            loop.call_soon_threadsafe(loop.stop)
        t = self._thread
        if t is not None:
            t.join(timeout=timeout)
        self._loop = None
        self._thread = None

    # ─────────────────────────────────────────────────────────────────────────
    # Outbound
    # ─────────────────────────────────────────────────────────────────────────

    def send(self, message: BridgeMessage | dict[str, Any], *, timeout: float = 5.0) -> bool:
        with self._lock:
            ws = self._ws
        loop = self._loop
        if ws is None or loop is None or ws.state is not State.OPEN:
            return False
        try:
            raw = serialize(message)
        except (TypeError, ValueError):
            _LOGGER.warning("refusing to send unserializable message")
            return False
        if threading.get_ident() == self._loop_thread_id:
            self._track(loop.create_task(ws.send(raw)))
            return True
        fut = asyncio.run_coroutine_threadsafe(ws.send(raw), loop)
        try:
            fut.result(timeout=timeout)
        except (ConnectionClosed, concurrent.futures.TimeoutError, OSError):
            return False
        return True

    def send_message(
        self,
        content: str,
        type: MessageType | str = MessageType.TEXT,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        return self.send(new_message(content, type, MessageSource.CLIENT, metadata if metadata is not None else {}))

    # ─────────────────────────────────────────────────────────────────────────
    # Internals (async)
    # ─────────────────────────────────────────────────────────────────────────

    def _ensure_loop(self) -> asyncio.AbstractEventLoop:
        with self._lock:
            loop = self._loop
            if loop is not None and self._thread is not None and self._thread.is_alive():
                return loop
            loop = asyncio.new_event_loop()
            self._loop = loop
            ready = threading.Event()
            t = threading.Thread(target=self._run_thread, args=(loop, ready), name="stylecast-bridge-client", daemon=True)
            self._thread = t
        t.start()
        ready.wait(timeout=2.0)
        return loop

    def _run_thread(self, loop: asyncio.AbstractEventLoop, ready: threading.Event) -> None:
        asyncio.set_event_loop(loop)
        self._loop_thread_id = threading.get_ident()
        loop.call_soon(ready.set)
        try:
            loop.run_forever()
        finally:
            pending = [t for t in asyncio.all_tasks(loop) if not t.done()]
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
            loop.close()

    async def _connect_async(self) -> None:
        try:
            await self._open_session()
        except asyncio.CancelledError:
            with self._lock:
                if self._state is ClientState.CONNECTING:
                    self._state = ClientState.DISCONNECTED
            raise

    async def _open_session(self) -> None:
        self._cancel_reconnect()
        host, port = self.config.host, self.config.port

        try:
            await asyncio.to_thread(probe_host, host, port, timeout=self.config.discovery_timeout)
        except DiscoveryError as exc:
            _LOGGER.info("bridge host discovery failed: %s", exc)
            self._handle_failure()
            raise

        try:
            ws = await websockets.connect(
                self.config.ws_url,
                open_timeout=self.config.open_timeout,
                max_size=self.config.max_frame_bytes,
                ping_interval=None,
            )
        except (OSError, asyncio.TimeoutError, InvalidHandshake, InvalidURI) as exc:
            _LOGGER.info("bridge session open failed: %s", exc)
            self._handle_failure()
            raise TransportError(f"Cannot open bridge session on {host}:{port}: {exc}") from exc

        with self._lock:
            manual = self._manual_disconnect
            if not manual:
                self._ws = ws
                self._reconnect_attempts = 0
                self._state = ClientState.CONNECTED
        if manual:
            # disconnect() won the race while the handshake was in flight.
            await ws.close(CLOSE_NORMAL, "Manual disconnect")
            return

        self._reader_task = asyncio.create_task(self._read_loop(ws))
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(ws))
        _LOGGER.info("bridge connected to %s", self.config.ws_url)
        self._notify_status(True)

    async def _read_loop(self, ws: Any) -> None:
        try:
            async for raw in ws:
                self._on_frame(raw)
        except ConnectionClosed:
            pass
        finally:
            self._on_session_closed(ws)

    def _on_frame(self, raw: str | bytes) -> None:
        data = parse_frame(raw)
        if is_control_envelope(data):
            mtype = data.get("type")
            if mtype == "error":
                # Host rejected one of our frames; collaborators see it as an error message.
                self._notify_message(
                    new_message(
                        str(data.get("message") or "Invalid message format"),
                        MessageType.ERROR,
                        MessageSource.HOST,
                        {"reason": data.get("reason")} if data.get("reason") else None,
                    )
                )
            elif mtype == "connection":
                _LOGGER.debug("bridge welcome: %s", data.get("serverInfo"))
            return

        result = data if isinstance(data, ProtocolError) else validate_envelope(data)
        if isinstance(result, ProtocolError):
            _LOGGER.debug("dropping invalid frame from host: %s", result)
            return
        self._notify_message(result)

    def _on_session_closed(self, ws: Any) -> None:
        with self._lock:
            if self._ws is not ws:
                return
            self._ws = None
            manual = self._manual_disconnect
            self._state = ClientState.DISCONNECTED
        self._stop_heartbeat()

        code = getattr(ws, "close_code", None)
        _LOGGER.info("bridge session closed (code=%s, manual=%s)", code, manual)
        self._notify_status(False)

        if not manual and code != CLOSE_NORMAL:
            self._schedule_reconnect()

    def _connect_timed_out(self) -> None:
        with self._lock:
            if self._state is ClientState.CONNECTED or self._manual_disconnect:
                return
        _LOGGER.info("bridge connect attempt abandoned after timeout")
        self._handle_failure()

    def _handle_failure(self) -> None:
        self._notify_status(False)
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        loop = asyncio.get_running_loop()
        with self._lock:
            if self._manual_disconnect:
                self._state = ClientState.DISCONNECTED
                return
            if self._reconnect_attempts >= self.config.max_reconnect_attempts:
                self._state = ClientState.EXHAUSTED
                attempts = self._reconnect_attempts
                exhausted = True
            else:
                self._reconnect_attempts += 1
                attempts = self._reconnect_attempts
                self._state = ClientState.RECONNECTING
                exhausted = False
        if exhausted:
            _LOGGER.warning("bridge reconnect gave up after %d attempts", attempts)
            return

        delay_ms = reconnect_delay_ms(
            attempts,
            base_ms=self.config.reconnect_base_ms,
            max_ms=self.config.reconnect_max_ms,
        )
        self._cancel_reconnect()
        self._reconnect_handle = loop.call_later(delay_ms / 1000.0, self._fire_reconnect)
        _LOGGER.info("bridge reconnect %d/%d in %dms", attempts, self.config.max_reconnect_attempts, delay_ms)

    def _fire_reconnect(self) -> None:
        self._reconnect_handle = None
        with self._lock:
            if self._state is not ClientState.RECONNECTING or self._manual_disconnect:
                return
            self._state = ClientState.CONNECTING
        self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect_attempt())

    async def _reconnect_attempt(self) -> None:
        try:
            await self._connect_async()
        except BridgeError:
            # _connect_async already scheduled the next attempt (or gave up).
            pass

    async def _heartbeat_loop(self, ws: Any) -> None:
        interval = max(0.01, float(self.config.heartbeat_interval))
        while True:
            await asyncio.sleep(interval)
            if ws.state is not State.OPEN:
                return
            try:
                await ws.send(serialize(ping_envelope()))
            except ConnectionClosed:
                return
            _LOGGER.debug("heartbeat sent at %d", now_ms())

    async def _disconnect_async(self) -> None:
        self._cancel_timers()
        await self._close_session()

    async def _close_session(self) -> None:
        with self._lock:
            ws = self._ws
            if ws is None:
                self._state = ClientState.DISCONNECTED
        if ws is not None:
            await ws.close(CLOSE_NORMAL, "Manual disconnect")
            reader = self._reader_task
            if reader is not None:
                with contextlib.suppress(asyncio.CancelledError, ConnectionClosed):
                    await reader
        with self._lock:
            # A status observer may already have started a fresh connect.
            if self._ws is None and self._state is not ClientState.CONNECTING:
                self._state = ClientState.DISCONNECTED

    async def _cancel_reconnect_async(self) -> None:
        self._cancel_reconnect()

    def _cancel_timers(self) -> None:
        self._cancel_reconnect()
        self._stop_heartbeat()
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and not task.done():
            task.cancel()

    def _cancel_reconnect(self) -> None:
        handle = self._reconnect_handle
        self._reconnect_handle = None
        if handle is not None:
            handle.cancel()

    def _stop_heartbeat(self) -> None:
        task = self._heartbeat_task
        self._heartbeat_task = None
        if task is not None and not task.done():
            task.cancel()

    def _track(self, task: asyncio.Task) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None and not isinstance(exc, ConnectionClosed):
            _LOGGER.error("bridge client task failed: %s", exc, exc_info=exc)
