from __future__ import annotations

import asyncio
from typing import Any, Protocol

import structlog

from ci_monitor.services.live.events import Event

logger = structlog.get_logger(__name__)

# RFC 6455 "internal error"; tells the subscriber to reconnect
DROPPED_CLOSE_CODE = 1011


class Connection(Protocol):
    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


class ConnectionRegistry:
    """Open subscriber connections, in registration order."""

    def __init__(self, *, send_timeout_seconds: float = 5.0) -> None:
        self._connections: dict[Connection, None] = {}
        self._send_timeout_seconds = send_timeout_seconds
        self._broadcast_lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, connection: object) -> bool:
        return connection in self._connections

    def add(self, connection: Connection) -> None:
        self._connections[connection] = None
        logger.info("connection_added", connections=len(self._connections))

    def remove(self, connection: Connection) -> None:
        if connection in self._connections:
            del self._connections[connection]
            logger.info("connection_removed", connections=len(self._connections))

    async def send(self, connection: Connection, event: Event) -> bool:
        return await self._deliver(connection, event.to_dict(), event.type)

    async def broadcast(self, event: Event) -> int:
        """Send to every registered connection; returns the delivered count.

        Broadcasts are serialized so each connection sees events in call order.
        A connection whose send fails or times out is dropped and closed.
        """
        payload = event.to_dict()
        async with self._broadcast_lock:
            snapshot = list(self._connections)
            delivered = 0
            for connection in snapshot:
                if await self._deliver(connection, payload, event.type):
                    delivered += 1

        logger.debug("event_broadcast", event_type=event.type, delivered=delivered, targets=len(snapshot))
        return delivered

    async def _deliver(self, connection: Connection, payload: dict[str, Any], event_type: str) -> bool:
        try:
            await asyncio.wait_for(connection.send_json(payload), timeout=self._send_timeout_seconds)
        except Exception as exc:
            logger.warning("connection_send_failed", event_type=event_type, error=repr(exc))
            self.remove(connection)
            await self._close_dropped(connection)
            return False
        return True

    async def _close_dropped(self, connection: Connection) -> None:
        # closing ends the subscriber session so the client can reconnect
        try:
            await asyncio.wait_for(
                connection.close(code=DROPPED_CLOSE_CODE),
                timeout=self._send_timeout_seconds,
            )
        except Exception as exc:
            logger.debug("connection_close_failed", error=repr(exc))
