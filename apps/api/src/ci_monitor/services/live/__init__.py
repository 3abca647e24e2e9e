from ci_monitor.services.live.engine import RunMonitor, WatchState
from ci_monitor.services.live.events import (
    Connected,
    ErrorEvent,
    Event,
    LatestRun,
    RunCompleted,
    RunUpdate,
    parse_event,
)
from ci_monitor.services.live.registry import Connection, ConnectionRegistry

__all__ = [
    "Connected",
    "Connection",
    "ConnectionRegistry",
    "ErrorEvent",
    "Event",
    "LatestRun",
    "RunCompleted",
    "RunMonitor",
    "RunUpdate",
    "WatchState",
    "parse_event",
]
