from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Column, DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel

from ..persistence.models import utcnow


class JourneyRow(SQLModel, table=True):
    """Stored journey definition (camelCase document in ``payload``)."""

    __tablename__ = "journeys"

    id: str = Field(primary_key=True)
    name: str
    payload: dict = Field(sa_column=Column(JSON, nullable=False))
    # ``metadata`` is reserved on SQLModel classes
    journey_metadata: Optional[dict] = Field(
        default=None, sa_column=Column("metadata", JSON)
    )
    created_at: datetime = Field(
        default_factory=utcnow, sa_column=Column(DateTime(timezone=True), nullable=False)
    )


class RunRow(SQLModel, table=True):
    """One execution instance of a journey."""

    __tablename__ = "runs"
    __table_args__ = (
        UniqueConstraint("journey_id", "idempotency_key", name="runs_journey_idempotency"),
    )

    id: str = Field(primary_key=True)
    journey_id: str = Field(index=True)
    patient_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    state: str = Field(default="queued", index=True)
    current_node_id: Optional[str] = None
    next_wake_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True))
    )
    started_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True))
    )
    completed_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True))
    )
    error: Optional[str] = None
    created_at: datetime = Field(
        default_factory=utcnow, sa_column=Column(DateTime(timezone=True), nullable=False)
    )


class RunStepRow(SQLModel, table=True):
    """Append-only audit entry for a run."""

    __tablename__ = "run_steps"

    id: Optional[int] = Field(default=None, primary_key=True)
    run_id: str = Field(index=True)
    node_id: Optional[str] = None
    type: str
    payload: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(
        default_factory=utcnow, sa_column=Column(DateTime(timezone=True), nullable=False)
    )
