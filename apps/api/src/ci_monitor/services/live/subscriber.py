from __future__ import annotations

import json
from typing import Any, Literal

import structlog
from fastapi import WebSocket
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ci_monitor.services.live.engine import RunMonitor
from ci_monitor.services.live.events import Connected, ErrorEvent
from ci_monitor.services.live.registry import Connection, ConnectionRegistry

logger = structlog.get_logger(__name__)

UNKNOWN_MESSAGE_TYPE = "Unknown message type"
PROVIDER_UNAVAILABLE = "GitHub service not available - check credentials"


class StartMonitoringCommand(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    type: Literal["start_monitoring"]
    run_id: int = Field(alias="runId", gt=0)


async def handle_command(
    connection: Connection,
    data: Any,
    *,
    registry: ConnectionRegistry,
    monitor: RunMonitor | None,
) -> None:
    command_type = data.get("type") if isinstance(data, dict) else None
    logger.info("subscriber_command", command=command_type)

    if command_type not in {"start_monitoring", "stop_monitoring", "get_latest_run"}:
        await registry.send(connection, ErrorEvent(UNKNOWN_MESSAGE_TYPE))
        return

    if monitor is None:
        if command_type != "stop_monitoring":
            await registry.send(connection, ErrorEvent(PROVIDER_UNAVAILABLE))
        return

    if command_type == "start_monitoring":
        try:
            command = StartMonitoringCommand.model_validate(data)
        except ValidationError:
            await registry.send(connection, ErrorEvent("runId is required"))
            return
        monitor.start_watch(command.run_id)
    elif command_type == "stop_monitoring":
        monitor.stop_watch()
    else:
        await monitor.discover_latest()


def _decode_frame(message: dict[str, Any]) -> Any:
    """JSON payload of a text or binary frame; raises ValueError if it has none."""
    text = message.get("text")
    if text is None:
        raw = message.get("bytes")
        if raw is None:
            raise ValueError("empty frame")
        text = raw.decode("utf-8")
    return json.loads(text)


async def serve_subscriber(
    websocket: WebSocket,
    *,
    registry: ConnectionRegistry,
    monitor: RunMonitor | None,
) -> None:
    await websocket.accept()
    client = f"{websocket.client.host}:{websocket.client.port}" if websocket.client else "unknown"
    registry.add(websocket)
    logger.info("subscriber_connected", client=client, connections=len(registry))

    if not await registry.send(websocket, Connected()):
        return

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                logger.info("subscriber_disconnected", client=client, code=message.get("code"))
                break
            try:
                data = _decode_frame(message)
            except ValueError:
                logger.warning("subscriber_message_not_json", client=client)
                continue
            await handle_command(websocket, data, registry=registry, monitor=monitor)
    finally:
        registry.remove(websocket)
