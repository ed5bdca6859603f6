# models.py
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class JobKind(str, Enum):
    REFRESH_METADATA = "RefreshMetadata"
    USER_CLEANUP = "UserCleanup"
    CALCULATE_SUMMARY = "CalculateSummary"
    PULL_INTEGRATIONS = "PullIntegrations"

    @classmethod
    def parse(cls, value):
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            valid = ", ".join(k.value for k in cls)
            raise ValueError(f"unknown job kind {value!r} (expected one of: {valid})") from None


class JobState(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"

    @property
    def terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC ISO string, so SQLite string order matches time order."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass
class Job:
    id: str
    kind: JobKind
    payload: Dict[str, Any] = field(default_factory=dict)
    state: JobState = JobState.PENDING
    attempts: int = 0
    max_attempts: int = 3
    scheduled_for: datetime = field(default_factory=utc_now)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    error: Optional[str] = None
    worker_id: Optional[str] = None
    lease_until: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None

    @classmethod
    def from_row(cls, row) -> "Job":
        return cls(
            id=row["id"],
            kind=JobKind(row["kind"]),
            payload=json.loads(row["payload"]) if row["payload"] else {},
            state=JobState(row["state"]),
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            scheduled_for=from_iso(row["scheduled_for"]),
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
            error=row["error"],
            worker_id=row["worker_id"],
            lease_until=from_iso(row["lease_until"]),
            started_at=from_iso(row["started_at"]),
            finished_at=from_iso(row["finished_at"]),
            duration_seconds=row["duration_seconds"],
        )

    def snapshot(self) -> "JobSnapshot":
        return JobSnapshot(
            id=self.id,
            kind=self.kind,
            state=self.state,
            attempts=self.attempts,
            max_attempts=self.max_attempts,
            scheduled_for=self.scheduled_for,
            created_at=self.created_at,
            updated_at=self.updated_at,
            error=self.error,
        )


@dataclass(frozen=True)
class JobSnapshot:
    """Read-only view of a job handed to API callers."""

    id: str
    kind: JobKind
    state: JobState
    attempts: int
    max_attempts: int
    scheduled_for: datetime
    created_at: datetime
    updated_at: datetime
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "state": self.state.value,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "scheduled_for": to_iso(self.scheduled_for),
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
            "error": self.error,
        }


@dataclass
class RecurringJobDefinition:
    kind: JobKind
    every_n_hours: float
    payload: Dict[str, Any] = field(default_factory=dict)
    next_fire_time: Optional[datetime] = None  # set by the cron trigger on registration
