from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Generic, TypeVar

from ci_monitor.errors import ProviderError

T = TypeVar("T")

RUN_QUEUED = "queued"
RUN_IN_PROGRESS = "in_progress"
RUN_COMPLETED = "completed"
ACTIVE_RUN_STATUSES = frozenset({RUN_QUEUED, RUN_IN_PROGRESS})


def parse_timestamp(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        normalized = value.strip()
        if normalized.endswith("Z"):
            normalized = f"{normalized[:-1]}+00:00"
        try:
            parsed = datetime.fromisoformat(normalized)
        except ValueError as exc:
            raise ProviderError(f"Invalid timestamp: {value!r}") from exc
    else:
        raise ProviderError(f"Invalid timestamp: {value!r}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _require(payload: dict[str, Any], key: str) -> Any:
    if key not in payload or payload[key] is None:
        raise ProviderError(f"Invalid payload: missing {key}")
    return payload[key]


def _require_mapping(payload: Any, kind: str) -> dict[str, Any]:
    if not isinstance(payload, dict):
        raise ProviderError(f"Invalid {kind} payload: expected an object")
    return payload


@dataclass(frozen=True)
class BearerToken:
    value: str = field(repr=False)
    expires_at: datetime

    def remaining(self, now: datetime) -> timedelta:
        return self.expires_at - now

    def is_valid_for(self, margin: timedelta, now: datetime) -> bool:
        return self.remaining(now) > margin


@dataclass(frozen=True)
class StepRecord:
    number: int
    name: str
    status: str
    conclusion: str | None
    started_at: datetime | None
    completed_at: datetime | None

    @classmethod
    def from_api(cls, payload: Any) -> StepRecord:
        data = _require_mapping(payload, "step")
        return cls(
            number=int(_require(data, "number")),
            name=str(data.get("name") or ""),
            status=str(_require(data, "status")),
            conclusion=data.get("conclusion"),
            started_at=parse_timestamp(data.get("started_at")),
            completed_at=parse_timestamp(data.get("completed_at")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "number": self.number,
            "name": self.name,
            "status": self.status,
            "conclusion": self.conclusion,
            "started_at": format_timestamp(self.started_at),
            "completed_at": format_timestamp(self.completed_at),
        }


@dataclass(frozen=True)
class JobRecord:
    id: int
    name: str
    status: str
    conclusion: str | None
    started_at: datetime | None
    completed_at: datetime | None
    steps: tuple[StepRecord, ...] = ()

    @classmethod
    def from_api(cls, payload: Any) -> JobRecord:
        data = _require_mapping(payload, "job")
        raw_steps = data.get("steps") or []
        if not isinstance(raw_steps, list):
            raise ProviderError("Invalid job payload: steps must be a list")
        steps = sorted((StepRecord.from_api(step) for step in raw_steps), key=lambda s: s.number)
        return cls(
            id=int(_require(data, "id")),
            name=str(data.get("name") or ""),
            status=str(_require(data, "status")),
            conclusion=data.get("conclusion"),
            started_at=parse_timestamp(data.get("started_at")),
            completed_at=parse_timestamp(data.get("completed_at")),
            steps=tuple(steps),
        )

    @classmethod
    def from_dict(cls, payload: Any) -> JobRecord:
        # wire shape matches the upstream shape for jobs and steps
        return cls.from_api(payload)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status,
            "conclusion": self.conclusion,
            "started_at": format_timestamp(self.started_at),
            "completed_at": format_timestamp(self.completed_at),
            "steps": [step.to_dict() for step in self.steps],
        }


@dataclass(frozen=True)
class RunRecord:
    id: int
    name: str
    status: str
    conclusion: str | None
    created_at: datetime | None
    updated_at: datetime | None
    url: str
    commit_sha: str

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_RUN_STATUSES

    @property
    def is_completed(self) -> bool:
        return self.status == RUN_COMPLETED

    @classmethod
    def from_api(cls, payload: Any) -> RunRecord:
        data = _require_mapping(payload, "run")
        return cls(
            id=int(_require(data, "id")),
            name=str(data.get("name") or ""),
            status=str(_require(data, "status")),
            conclusion=data.get("conclusion"),
            created_at=parse_timestamp(data.get("created_at")),
            updated_at=parse_timestamp(data.get("updated_at")),
            url=str(data.get("html_url") or ""),
            commit_sha=str(data.get("head_sha") or ""),
        )

    @classmethod
    def from_dict(cls, payload: Any) -> RunRecord:
        data = _require_mapping(payload, "run")
        return cls(
            id=int(_require(data, "id")),
            name=str(data.get("workflow_name") or ""),
            status=str(_require(data, "status")),
            conclusion=data.get("conclusion"),
            created_at=parse_timestamp(data.get("created_at")),
            updated_at=parse_timestamp(data.get("updated_at")),
            url=str(data.get("html_url") or ""),
            commit_sha=str(data.get("head_sha") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "workflow_name": self.name,
            "status": self.status,
            "conclusion": self.conclusion,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
            "html_url": self.url,
            "head_sha": self.commit_sha,
        }


@dataclass(frozen=True)
class CommitResult:
    sha: str
    message: str
    url: str | None

    def to_dict(self) -> dict[str, Any]:
        return {"sha": self.sha, "message": self.message, "url": self.url}


@dataclass(frozen=True)
class ProviderResult(Generic[T]):
    """Outcome of an upstream call; failures are carried, never raised."""

    success: bool
    value: T | None = None
    error: str | None = None

    @classmethod
    def ok(cls, value: T) -> ProviderResult[T]:
        return cls(success=True, value=value)

    @classmethod
    def failed(cls, error: str) -> ProviderResult[T]:
        return cls(success=False, error=error)
