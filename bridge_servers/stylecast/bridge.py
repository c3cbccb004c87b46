from __future__ import annotations

import logging
from collections.abc import Callable
from enum import Enum
from typing import Any

from .client import BridgeClient, MessageObserver, StatusObserver
from .config import BridgeConfig
from .errors import BridgeError
from .host_gateway import ConnectionChangeHandler, ConnectionStatus, HostGateway, MessageHandler
from .protocol import MessageSource, MessageType, new_message

_LOGGER = logging.getLogger("stylecast.bridge")


class SendOutcome(str, Enum):
    SENT = "sent"
    # Nothing went out: the host is unreachable or the session is down.
    NOT_CONNECTED = "not_connected"


class HostBridge:
    """Embedder glue for the host process: one gateway, one message handler."""

    def __init__(
        self,
        handler: MessageHandler | None,
        *,
        config: BridgeConfig | None = None,
        on_connection_change: ConnectionChangeHandler | None = None,
    ) -> None:
        self.gateway = HostGateway(handler, config=config, on_connection_change=on_connection_change)

    def start(self) -> None:
        self.gateway.start()

    def stop(self) -> None:
        self.gateway.stop()

    def is_running(self) -> bool:
        return self.gateway.is_running()

    def send(
        self,
        content: str,
        type: MessageType | str = MessageType.TEXT,
        metadata: dict[str, Any] | None = None,
    ) -> int:
        if not self.gateway.is_running():
            return 0
        return self.gateway.broadcast(new_message(content, type, MessageSource.HOST, metadata))

    def notify(self, content: str, level: str = "info") -> int:
        return self.send(content, MessageType.NOTIFICATION, {"level": level or "info"})

    def status(self) -> ConnectionStatus:
        return self.gateway.status()


class ClientBridge:
    """Embedder glue for the client process.

    Owns exactly one BridgeClient, constructed by the embedder and passed
    around explicitly. Collaborator callbacks are registered once here.
    """

    def __init__(
        self,
        *,
        config: BridgeConfig | None = None,
        client: BridgeClient | None = None,
        on_message: MessageObserver | None = None,
        on_status: StatusObserver | None = None,
    ) -> None:
        self.client = client or BridgeClient(config)
        self._unsubscribers: list[Callable[[], None]] = []
        if on_message is not None:
            self._unsubscribers.append(self.client.on_message(on_message))
        if on_status is not None:
            self._unsubscribers.append(self.client.on_status_change(on_status))

    def start(self) -> bool:
        """Connect once; the client keeps retrying in the background on failure."""
        try:
            self.client.connect()
        except BridgeError as exc:
            _LOGGER.info("bridge not available yet: %s", exc)
            return False
        return True

    def reconnect(self) -> None:
        self.client.disconnect()
        self.client.reset()
        self.client.connect()

    def send(
        self,
        content: str,
        type: MessageType | str = MessageType.TEXT,
        metadata: dict[str, Any] | None = None,
    ) -> SendOutcome:
        if not self.client.is_connected():
            return SendOutcome.NOT_CONNECTED
        if self.client.send_message(content, type, metadata):
            return SendOutcome.SENT
        return SendOutcome.NOT_CONNECTED

    def status(self) -> dict[str, Any]:
        return self.client.connection_info()

    def stop(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        self.client.close()
