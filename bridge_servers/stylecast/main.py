"""
Host process entry point for the Stylecast bridge.

Runs the localhost gateway until SIGINT/SIGTERM. Settings come from the
STYLECAST_* environment variables (see config.py).
"""

from __future__ import annotations

import logging
import os
import signal
import sys
import threading

from .bridge import HostBridge
from .config import BridgeConfig
from .errors import BindError
from .protocol import BridgeMessage


def _log_level(raw: str | None) -> int:
    level = logging.getLevelName((raw or "INFO").strip().upper())
    return level if isinstance(level, int) else logging.INFO


logging.basicConfig(
    level=_log_level(os.environ.get("STYLECAST_LOG_LEVEL")),
    format="%(asctime)s %(levelname)s %(message)s",
)
logger = logging.getLogger("stylecast.bridge")


def _log_message(message: BridgeMessage) -> None:
    logger.info("received %s message %s from %s (%d chars)", message.type, message.id, message.source, len(message.content))


def main() -> None:
    config = BridgeConfig.from_env()
    if not config.auto_start:
        logger.info("STYLECAST_AUTO_START is off; not starting the bridge")
        return

    bridge = HostBridge(
        _log_message,
        config=config,
        on_connection_change=lambda count: logger.info("connected clients: %d", count),
    )
    try:
        bridge.start()
    except BindError as exc:
        logger.error("%s. Close the application using port %d or set STYLECAST_PORT.", exc, config.port)
        sys.exit(1)

    done = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: done.set())
    signal.signal(signal.SIGTERM, lambda *_: done.set())
    try:
        while not done.wait(timeout=1.0):
            pass
    finally:
        bridge.stop()


if __name__ == "__main__":
    main()
