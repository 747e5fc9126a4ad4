"""PostgreSQL implementation of the run repository."""

from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any

import asyncpg

from ..contracts import Journey, parse_journey
from .models import (
    Run,
    RunState,
    RunStep,
    as_utc,
    check_update_fields,
    step_type_value,
)
from .repository import RunRepository

_RUN_COLUMNS = (
    "id, journey_id, patient_id, idempotency_key, state, current_node_id, "
    "next_wake_at, started_at, completed_at, error, created_at"
)


def _json_value(value: Any) -> Any:
    # asyncpg hands JSONB back as text unless a codec is registered
    if isinstance(value, str):
        return json.loads(value)
    return value


def _row_to_run(row: asyncpg.Record) -> Run:
    return Run(
        id=row["id"],
        journey_id=row["journey_id"],
        patient_id=row["patient_id"],
        idempotency_key=row["idempotency_key"],
        state=RunState(row["state"]),
        current_node_id=row["current_node_id"],
        next_wake_at=as_utc(row["next_wake_at"]),
        started_at=as_utc(row["started_at"]),
        completed_at=as_utc(row["completed_at"]),
        error=row["error"],
        created_at=as_utc(row["created_at"]),
    )


class PostgresRunRepository(RunRepository):
    """Persist journeys, runs and run steps using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS journeys (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                payload JSONB NOT NULL,
                metadata JSONB,
                created_at TIMESTAMPTZ NOT NULL DEFAULT now()
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
                id TEXT PRIMARY KEY,
                journey_id TEXT NOT NULL,
                patient_id TEXT,
                idempotency_key TEXT,
                state TEXT NOT NULL,
                current_node_id TEXT,
                next_wake_at TIMESTAMPTZ,
                started_at TIMESTAMPTZ,
                completed_at TIMESTAMPTZ,
                error TEXT,
                created_at TIMESTAMPTZ NOT NULL DEFAULT now()
            )
            """
        )
        await conn.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS runs_journey_idempotency
            ON runs (journey_id, idempotency_key)
            WHERE idempotency_key IS NOT NULL
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS run_steps (
                id BIGSERIAL PRIMARY KEY,
                run_id TEXT NOT NULL,
                node_id TEXT,
                type TEXT NOT NULL,
                payload JSONB,
                created_at TIMESTAMPTZ NOT NULL DEFAULT now()
            )
            """
        )

    # ------------------------------------------------------------------
    async def save_journey(self, journey: Journey) -> str:
        journey_id = journey.id or str(uuid.uuid4())
        journey = journey.model_copy(update={"id": journey_id})
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO journeys (id, name, payload, metadata) VALUES ($1, $2, $3, $4)
                ON CONFLICT (id) DO UPDATE
                SET name = EXCLUDED.name, payload = EXCLUDED.payload, metadata = EXCLUDED.metadata
                """,
                journey_id,
                journey.name,
                json.dumps(journey.to_payload()),
                json.dumps(journey.metadata) if journey.metadata is not None else None,
            )
        finally:
            await conn.close()
        return journey_id

    async def get_journey(self, journey_id: str) -> Journey | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT id, payload FROM journeys WHERE id = $1", journey_id
            )
        finally:
            await conn.close()
        if not row:
            return None
        return parse_journey({**_json_value(row["payload"]), "id": row["id"]})

    async def list_journeys(self) -> list[Journey]:
        conn = await self._connect()
        try:
            rows = await conn.fetch("SELECT id, payload FROM journeys ORDER BY created_at")
        finally:
            await conn.close()
        return [parse_journey({**_json_value(r["payload"]), "id": r["id"]}) for r in rows]

    async def create_run(
        self,
        journey_id: str,
        patient_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> tuple[Run, bool]:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"""
                INSERT INTO runs (id, journey_id, patient_id, idempotency_key, state)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (journey_id, idempotency_key) WHERE idempotency_key IS NOT NULL
                DO NOTHING
                RETURNING {_RUN_COLUMNS}
                """,
                str(uuid.uuid4()),
                journey_id,
                patient_id,
                idempotency_key,
                RunState.QUEUED.value,
            )
            if row is not None:
                return _row_to_run(row), True
            existing = await conn.fetchrow(
                f"SELECT {_RUN_COLUMNS} FROM runs WHERE journey_id = $1 AND idempotency_key = $2",
                journey_id,
                idempotency_key,
            )
        finally:
            await conn.close()
        return _row_to_run(existing), False

    async def get_run(self, run_id: str) -> Run | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {_RUN_COLUMNS} FROM runs WHERE id = $1", run_id
            )
        finally:
            await conn.close()
        return _row_to_run(row) if row else None

    async def list_runs(self, state: RunState | str | None = None) -> list[Run]:
        conn = await self._connect()
        try:
            if state is None:
                rows = await conn.fetch(
                    f"SELECT {_RUN_COLUMNS} FROM runs ORDER BY created_at"
                )
            else:
                rows = await conn.fetch(
                    f"SELECT {_RUN_COLUMNS} FROM runs WHERE state = $1 ORDER BY created_at",
                    RunState(state).value,
                )
        finally:
            await conn.close()
        return [_row_to_run(r) for r in rows]

    async def update_run_state(
        self, run_id: str, state: RunState | str, fields: dict[str, Any] | None = None
    ) -> None:
        fields = fields or {}
        check_update_fields(fields)
        parts = ["state = $1"]
        values: list[Any] = [RunState(state).value]
        for name, value in fields.items():
            values.append(value)
            parts.append(f"{name} = ${len(values)}")
        values.append(run_id)
        conn = await self._connect()
        try:
            await conn.execute(
                f"UPDATE runs SET {', '.join(parts)} WHERE id = ${len(values)}",
                *values,
            )
        finally:
            await conn.close()

    async def claim_run_for_processing(self, run_id: str, now: datetime) -> bool:
        conn = await self._connect()
        try:
            status = await conn.execute(
                """
                UPDATE runs SET state = $1, started_at = $2
                WHERE id = $3 AND state IN ($4, $5)
                  AND (next_wake_at IS NULL OR next_wake_at <= $2)
                """,
                RunState.IN_PROGRESS.value,
                now,
                run_id,
                RunState.QUEUED.value,
                RunState.WAITING_DELAY.value,
            )
        finally:
            await conn.close()
        # asyncpg returns the command tag, e.g. "UPDATE 1"
        return status.split()[-1] == "1"

    async def append_run_step(
        self,
        run_id: str,
        node_id: str | None,
        step_type: str,
        payload: dict[str, Any] | None = None,
    ) -> int:
        conn = await self._connect()
        try:
            step_id = await conn.fetchval(
                "INSERT INTO run_steps (run_id, node_id, type, payload) VALUES ($1, $2, $3, $4) RETURNING id",
                run_id,
                node_id,
                step_type_value(step_type),
                json.dumps(payload) if payload is not None else None,
            )
        finally:
            await conn.close()
        return int(step_id)

    async def get_run_steps(self, run_id: str) -> list[RunStep]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT id, run_id, node_id, type, payload, created_at FROM run_steps WHERE run_id = $1 ORDER BY id",
                run_id,
            )
        finally:
            await conn.close()
        return [
            RunStep(
                id=r["id"],
                run_id=r["run_id"],
                node_id=r["node_id"],
                type=r["type"],
                payload=_json_value(r["payload"]),
                created_at=as_utc(r["created_at"]),
            )
            for r in rows
        ]

    async def find_ready_runs(self, limit: int, now: datetime) -> list[Run]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"""
                SELECT {_RUN_COLUMNS} FROM runs
                WHERE state IN ($1, $2) AND (next_wake_at IS NULL OR next_wake_at <= $3)
                ORDER BY created_at ASC
                LIMIT $4
                """,
                RunState.QUEUED.value,
                RunState.WAITING_DELAY.value,
                now,
                limit,
            )
        finally:
            await conn.close()
        return [_row_to_run(r) for r in rows]
