from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlmodel import SQLModel

from ..contracts import Journey, parse_journey
from ..persistence.models import (
    CLAIMABLE_STATES,
    Run,
    RunState,
    RunStep,
    as_utc,
    check_update_fields,
    step_type_value,
)
from ..persistence.repository import RunRepository
from .models import JourneyRow, RunRow, RunStepRow

_CLAIMABLE = [state.value for state in CLAIMABLE_STATES]


def _to_run(row: RunRow) -> Run:
    return Run(
        id=row.id,
        journey_id=row.journey_id,
        patient_id=row.patient_id,
        idempotency_key=row.idempotency_key,
        state=RunState(row.state),
        current_node_id=row.current_node_id,
        next_wake_at=as_utc(row.next_wake_at),
        started_at=as_utc(row.started_at),
        completed_at=as_utc(row.completed_at),
        error=row.error,
        created_at=as_utc(row.created_at),
    )


def _to_journey(row: JourneyRow) -> Journey:
    return parse_journey({**row.payload, "id": row.id})


class RunDB(RunRepository):
    """Run repository on SQLModel tables and an async SQLAlchemy engine.

    Works with any async driver URL, e.g. ``sqlite+aiosqlite:///runs.db`` or
    ``postgresql+asyncpg://...``. Tables are created on first use.
    """

    def __init__(self, database_url: str) -> None:
        connect_args = (
            {"check_same_thread": False} if database_url.startswith("sqlite") else {}
        )
        self.engine = create_async_engine(
            database_url, echo=False, future=True, connect_args=connect_args
        )
        self._initialized = False

    async def init_db(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        self._initialized = True

    async def dispose(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        if not self._initialized:
            await self.init_db()
        async with AsyncSession(self.engine, expire_on_commit=False) as session:
            yield session

    # ------------------------------------------------------------------
    async def save_journey(self, journey: Journey) -> str:
        journey_id = journey.id or str(uuid.uuid4())
        journey = journey.model_copy(update={"id": journey_id})
        row = JourneyRow(
            id=journey_id,
            name=journey.name,
            payload=journey.to_payload(),
            journey_metadata=journey.metadata,
        )
        async with self.session() as session:
            await session.merge(row)
            await session.commit()
        return journey_id

    async def get_journey(self, journey_id: str) -> Journey | None:
        async with self.session() as session:
            row = await session.get(JourneyRow, journey_id)
        return _to_journey(row) if row else None

    async def list_journeys(self) -> list[Journey]:
        async with self.session() as session:
            result = await session.execute(select(JourneyRow).order_by(JourneyRow.created_at))
            rows = result.scalars().all()
        return [_to_journey(row) for row in rows]

    async def create_run(
        self,
        journey_id: str,
        patient_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> tuple[Run, bool]:
        if idempotency_key is not None:
            existing = await self._find_by_idempotency_key(journey_id, idempotency_key)
            if existing is not None:
                return existing, False

        row = RunRow(
            id=str(uuid.uuid4()),
            journey_id=journey_id,
            patient_id=patient_id,
            idempotency_key=idempotency_key,
            state=RunState.QUEUED.value,
        )
        async with self.session() as session:
            session.add(row)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                existing = await self._find_by_idempotency_key(journey_id, idempotency_key)
                if existing is None:
                    raise
                return existing, False
            await session.refresh(row)
        return _to_run(row), True

    async def _find_by_idempotency_key(
        self, journey_id: str, idempotency_key: str | None
    ) -> Run | None:
        async with self.session() as session:
            result = await session.execute(
                select(RunRow).where(
                    RunRow.journey_id == journey_id,
                    RunRow.idempotency_key == idempotency_key,
                )
            )
            row = result.scalars().first()
        return _to_run(row) if row else None

    async def get_run(self, run_id: str) -> Run | None:
        async with self.session() as session:
            row = await session.get(RunRow, run_id)
        return _to_run(row) if row else None

    async def list_runs(self, state: RunState | str | None = None) -> list[Run]:
        query = select(RunRow).order_by(RunRow.created_at)
        if state is not None:
            query = query.where(RunRow.state == RunState(state).value)
        async with self.session() as session:
            result = await session.execute(query)
            rows = result.scalars().all()
        return [_to_run(row) for row in rows]

    async def update_run_state(
        self, run_id: str, state: RunState | str, fields: dict[str, Any] | None = None
    ) -> None:
        fields = fields or {}
        check_update_fields(fields)
        async with self.session() as session:
            await session.execute(
                update(RunRow)
                .where(RunRow.id == run_id)
                .values(state=RunState(state).value, **fields)
            )
            await session.commit()

    async def claim_run_for_processing(self, run_id: str, now: datetime) -> bool:
        async with self.session() as session:
            result = await session.execute(
                update(RunRow)
                .where(
                    RunRow.id == run_id,
                    RunRow.state.in_(_CLAIMABLE),
                    or_(RunRow.next_wake_at.is_(None), RunRow.next_wake_at <= now),
                )
                .values(state=RunState.IN_PROGRESS.value, started_at=now)
            )
            await session.commit()
        return result.rowcount == 1

    async def append_run_step(
        self,
        run_id: str,
        node_id: str | None,
        step_type: str,
        payload: dict[str, Any] | None = None,
    ) -> int:
        row = RunStepRow(
            run_id=run_id,
            node_id=node_id,
            type=step_type_value(step_type),
            payload=payload,
        )
        async with self.session() as session:
            session.add(row)
            await session.commit()
            await session.refresh(row)
        return int(row.id)

    async def get_run_steps(self, run_id: str) -> list[RunStep]:
        async with self.session() as session:
            result = await session.execute(
                select(RunStepRow).where(RunStepRow.run_id == run_id).order_by(RunStepRow.id)
            )
            rows = result.scalars().all()
        return [
            RunStep(
                id=row.id,
                run_id=row.run_id,
                node_id=row.node_id,
                type=row.type,
                payload=row.payload,
                created_at=as_utc(row.created_at),
            )
            for row in rows
        ]

    async def find_ready_runs(self, limit: int, now: datetime) -> list[Run]:
        async with self.session() as session:
            result = await session.execute(
                select(RunRow)
                .where(
                    RunRow.state.in_(_CLAIMABLE),
                    or_(RunRow.next_wake_at.is_(None), RunRow.next_wake_at <= now),
                )
                .order_by(RunRow.created_at)
                .limit(limit)
            )
            rows = result.scalars().all()
        return [_to_run(row) for row in rows]
