"""Data models for persisted run state."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from storage."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width ISO-8601 UTC string; sorts lexically in time order."""
    if value is None:
        return None
    return as_utc(value).isoformat(timespec="microseconds")


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return as_utc(datetime.fromisoformat(value))


class RunState(str, Enum):
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    WAITING_DELAY = "waiting_delay"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RunState.COMPLETED, RunState.FAILED)


CLAIMABLE_STATES = (RunState.QUEUED, RunState.WAITING_DELAY)

# Columns ``update_run_state`` may touch besides ``state``.
RUN_UPDATE_FIELDS = frozenset(
    {"current_node_id", "next_wake_at", "started_at", "completed_at", "error"}
)


def step_type_value(step_type: Any) -> str:
    """Plain string for a step type given as text or an enum member."""
    return step_type.value if isinstance(step_type, Enum) else str(step_type)


def check_update_fields(fields: dict[str, Any]) -> None:
    unknown = set(fields) - RUN_UPDATE_FIELDS
    if unknown:
        raise ValueError(f"Unsupported run fields: {', '.join(sorted(unknown))}")


class Run(BaseModel):
    """One execution instance of a journey."""

    id: str
    journey_id: str
    patient_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    state: RunState = RunState.QUEUED
    current_node_id: Optional[str] = None
    next_wake_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    def is_ready(self, now: datetime) -> bool:
        """Whether a claim at ``now`` could succeed."""
        return self.state in CLAIMABLE_STATES and (
            self.next_wake_at is None or self.next_wake_at <= now
        )


class RunStep(BaseModel):
    """Append-only audit entry for one action taken against a run."""

    id: int
    run_id: str
    node_id: Optional[str] = None
    type: str
    payload: Optional[dict[str, Any]] = None
    created_at: datetime = Field(default_factory=utcnow)
