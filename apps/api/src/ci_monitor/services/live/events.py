"""Messages pushed to subscribers, one JSON object each, tagged by `type`."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar, Union

from ci_monitor.errors import ProviderError
from ci_monitor.services.github.app_auth import utcnow
from ci_monitor.services.github.types import JobRecord, RunRecord, format_timestamp, parse_timestamp


@dataclass(frozen=True)
class Connected:
    type: ClassVar[str] = "connected"

    message: str = "WebSocket connection established"
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "message": self.message,
            "timestamp": format_timestamp(self.timestamp),
        }


@dataclass(frozen=True)
class LatestRun:
    type: ClassVar[str] = "latest_run"

    run: RunRecord

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "run": self.run.to_dict()}


@dataclass(frozen=True)
class RunUpdate:
    type: ClassVar[str] = "run_update"

    run: RunRecord
    jobs: tuple[JobRecord, ...]
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "run": self.run.to_dict(),
            "jobs": [job.to_dict() for job in self.jobs],
            "timestamp": format_timestamp(self.timestamp),
        }


@dataclass(frozen=True)
class RunCompleted:
    type: ClassVar[str] = "run_completed"

    run: RunRecord
    jobs: tuple[JobRecord, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "run": self.run.to_dict(),
            "jobs": [job.to_dict() for job in self.jobs],
        }


@dataclass(frozen=True)
class ErrorEvent:
    type: ClassVar[str] = "error"

    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "message": self.message}


Event = Union[Connected, LatestRun, RunUpdate, RunCompleted, ErrorEvent]


def _jobs(payload: dict[str, Any]) -> tuple[JobRecord, ...]:
    raw = payload.get("jobs") or []
    if not isinstance(raw, list):
        raise ValueError("jobs must be a list")
    return tuple(JobRecord.from_dict(job) for job in raw)


def _timestamp(payload: dict[str, Any]) -> datetime:
    parsed = parse_timestamp(payload.get("timestamp"))
    if parsed is None:
        raise ValueError("timestamp is required")
    return parsed


def parse_event(payload: Any) -> Event:
    """Subscriber-side decoding of a pushed message; raises ValueError."""
    try:
        return _parse_event(payload)
    except (ProviderError, TypeError) as exc:
        raise ValueError(str(exc)) from exc


def _parse_event(payload: Any) -> Event:
    if not isinstance(payload, dict):
        raise ValueError("event must be a JSON object")

    event_type = payload.get("type")
    if event_type == Connected.type:
        return Connected(message=str(payload.get("message", "")), timestamp=_timestamp(payload))
    if event_type == LatestRun.type:
        return LatestRun(run=RunRecord.from_dict(payload.get("run")))
    if event_type == RunUpdate.type:
        return RunUpdate(
            run=RunRecord.from_dict(payload.get("run")),
            jobs=_jobs(payload),
            timestamp=_timestamp(payload),
        )
    if event_type == RunCompleted.type:
        return RunCompleted(run=RunRecord.from_dict(payload.get("run")), jobs=_jobs(payload))
    if event_type == ErrorEvent.type:
        return ErrorEvent(message=str(payload.get("message", "")))
    raise ValueError(f"unknown event type: {event_type!r}")
