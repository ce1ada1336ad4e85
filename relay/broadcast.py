"""
Broadcast Relay — best-effort fan-out of JSON payloads to WebSocket listeners.

No backlog, no ordering across listeners, no acknowledgment: a payload
posted while nobody is connected is simply dropped.
"""
from __future__ import annotations

import json
import structlog
from typing import Any

logger = structlog.get_logger()


class BroadcastRelay:
    def __init__(self):
        self._listeners: set[Any] = set()

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def register(self, ws: Any) -> None:
        self._listeners.add(ws)
        logger.info("relay_listener_connected", listeners=len(self._listeners))

    def unregister(self, ws: Any) -> None:
        self._listeners.discard(ws)
        logger.info("relay_listener_disconnected", listeners=len(self._listeners))

    async def broadcast(self, payload: dict[str, Any]) -> int:
        """Send ``payload`` verbatim to every listener. Returns how many received it."""
        message = json.dumps(payload)
        delivered = 0
        for ws in list(self._listeners):
            try:
                await ws.send_text(message)
                delivered += 1
            except Exception as e:
                logger.warning("relay_send_failed", error=str(e))
                self._listeners.discard(ws)

        logger.info("relay_broadcast", delivered=delivered, listeners=len(self._listeners))
        return delivered
