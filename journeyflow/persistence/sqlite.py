"""SQLite implementation of the run repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any

from ..contracts import Journey, parse_journey
from .models import (
    Run,
    RunState,
    RunStep,
    check_update_fields,
    from_iso,
    step_type_value,
    to_iso,
    utcnow,
)
from .repository import RunRepository

_RUN_COLUMNS = (
    "id, journey_id, patient_id, idempotency_key, state, current_node_id, "
    "next_wake_at, started_at, completed_at, error, created_at"
)
_TIMESTAMP_FIELDS = {"next_wake_at", "started_at", "completed_at"}


class SQLiteRunRepository(RunRepository):
    """Persist journeys, runs and run steps using SQLite.

    Timestamps are stored as fixed-width ISO-8601 UTC strings so that the
    claim and readiness queries can compare them as text.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS journeys (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    metadata TEXT,
                    created_at TEXT NOT NULL
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS runs (
                    id TEXT PRIMARY KEY,
                    journey_id TEXT NOT NULL,
                    patient_id TEXT,
                    idempotency_key TEXT,
                    state TEXT NOT NULL,
                    current_node_id TEXT,
                    next_wake_at TEXT,
                    started_at TEXT,
                    completed_at TEXT,
                    error TEXT,
                    created_at TEXT NOT NULL
                )
                """
            )
            cur.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS runs_journey_idempotency
                ON runs (journey_id, idempotency_key)
                """
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS runs_ready ON runs (state, next_wake_at)"
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS run_steps (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id TEXT NOT NULL,
                    node_id TEXT,
                    type TEXT NOT NULL,
                    payload TEXT,
                    created_at TEXT NOT NULL
                )
                """
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS run_steps_run_id ON run_steps (run_id, id)"
            )
            self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> sqlite3.Cursor:
        with self._lock:
            cur = self._conn.cursor()
            try:
                cur.execute(query, params)
            except Exception:
                self._conn.rollback()
                raise
            self._conn.commit()
            return cur

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    @staticmethod
    def _row_to_run(row: sqlite3.Row) -> Run:
        return Run(
            id=row["id"],
            journey_id=row["journey_id"],
            patient_id=row["patient_id"],
            idempotency_key=row["idempotency_key"],
            state=RunState(row["state"]),
            current_node_id=row["current_node_id"],
            next_wake_at=from_iso(row["next_wake_at"]),
            started_at=from_iso(row["started_at"]),
            completed_at=from_iso(row["completed_at"]),
            error=row["error"],
            created_at=from_iso(row["created_at"]),
        )

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Repository API
    async def save_journey(self, journey: Journey) -> str:
        journey_id = journey.id or str(uuid.uuid4())
        journey = journey.model_copy(update={"id": journey_id})
        await asyncio.to_thread(
            self._execute,
            "INSERT OR REPLACE INTO journeys (id, name, payload, metadata, created_at) VALUES (?, ?, ?, ?, ?)",
            journey_id,
            journey.name,
            json.dumps(journey.to_payload()),
            json.dumps(journey.metadata) if journey.metadata is not None else None,
            to_iso(utcnow()),
        )
        return journey_id

    async def get_journey(self, journey_id: str) -> Journey | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT id, payload FROM journeys WHERE id = ?", journey_id
        )
        if not row:
            return None
        return parse_journey({**json.loads(row["payload"]), "id": row["id"]})

    async def list_journeys(self) -> list[Journey]:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT id, payload FROM journeys ORDER BY created_at"
        )
        return [parse_journey({**json.loads(r["payload"]), "id": r["id"]}) for r in rows]

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

        run = Run(
            id=str(uuid.uuid4()),
            journey_id=journey_id,
            patient_id=patient_id,
            idempotency_key=idempotency_key,
        )
        try:
            await asyncio.to_thread(
                self._execute,
                "INSERT INTO runs (id, journey_id, patient_id, idempotency_key, state, created_at) VALUES (?, ?, ?, ?, ?, ?)",
                run.id,
                journey_id,
                patient_id,
                idempotency_key,
                run.state.value,
                to_iso(run.created_at),
            )
        except sqlite3.IntegrityError:
            # A concurrent trigger with the same key won the insert.
            existing = await self._find_by_idempotency_key(journey_id, idempotency_key)
            if existing is None:
                raise
            return existing, False
        return run, True

    async def _find_by_idempotency_key(
        self, journey_id: str, idempotency_key: str | None
    ) -> Run | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_RUN_COLUMNS} FROM runs WHERE journey_id = ? AND idempotency_key = ? LIMIT 1",
            journey_id,
            idempotency_key,
        )
        return self._row_to_run(row) if row else None

    async def get_run(self, run_id: str) -> Run | None:
        row = await asyncio.to_thread(
            self._fetchone, f"SELECT {_RUN_COLUMNS} FROM runs WHERE id = ?", run_id
        )
        return self._row_to_run(row) if row else None

    async def list_runs(self, state: RunState | str | None = None) -> list[Run]:
        if state is None:
            rows = await asyncio.to_thread(
                self._fetchall, f"SELECT {_RUN_COLUMNS} FROM runs ORDER BY created_at"
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                f"SELECT {_RUN_COLUMNS} FROM runs WHERE state = ? ORDER BY created_at",
                RunState(state).value,
            )
        return [self._row_to_run(r) for r in rows]

    async def update_run_state(
        self, run_id: str, state: RunState | str, fields: dict[str, Any] | None = None
    ) -> None:
        fields = fields or {}
        check_update_fields(fields)
        parts = ["state = ?"]
        values: list[Any] = [RunState(state).value]
        for name, value in fields.items():
            parts.append(f"{name} = ?")
            values.append(to_iso(value) if name in _TIMESTAMP_FIELDS else value)
        values.append(run_id)
        await asyncio.to_thread(
            self._execute,
            f"UPDATE runs SET {', '.join(parts)} WHERE id = ?",
            *values,
        )

    async def claim_run_for_processing(self, run_id: str, now: datetime) -> bool:
        now_iso = to_iso(now)
        cur = await asyncio.to_thread(
            self._execute,
            """
            UPDATE runs SET state = ?, started_at = ?
            WHERE id = ? AND state IN (?, ?)
              AND (next_wake_at IS NULL OR next_wake_at <= ?)
            """,
            RunState.IN_PROGRESS.value,
            now_iso,
            run_id,
            RunState.QUEUED.value,
            RunState.WAITING_DELAY.value,
            now_iso,
        )
        return cur.rowcount == 1

    async def append_run_step(
        self,
        run_id: str,
        node_id: str | None,
        step_type: str,
        payload: dict[str, Any] | None = None,
    ) -> int:
        cur = await asyncio.to_thread(
            self._execute,
            "INSERT INTO run_steps (run_id, node_id, type, payload, created_at) VALUES (?, ?, ?, ?, ?)",
            run_id,
            node_id,
            step_type_value(step_type),
            json.dumps(payload) if payload is not None else None,
            to_iso(utcnow()),
        )
        return int(cur.lastrowid)

    async def get_run_steps(self, run_id: str) -> list[RunStep]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT id, run_id, node_id, type, payload, created_at FROM run_steps WHERE run_id = ? ORDER BY id",
            run_id,
        )
        return [
            RunStep(
                id=r["id"],
                run_id=r["run_id"],
                node_id=r["node_id"],
                type=r["type"],
                payload=json.loads(r["payload"]) if r["payload"] else None,
                created_at=from_iso(r["created_at"]),
            )
            for r in rows
        ]

    async def find_ready_runs(self, limit: int, now: datetime) -> list[Run]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"""
            SELECT {_RUN_COLUMNS} FROM runs
            WHERE state IN (?, ?) AND (next_wake_at IS NULL OR next_wake_at <= ?)
            ORDER BY created_at ASC
            LIMIT ?
            """,
            RunState.QUEUED.value,
            RunState.WAITING_DELAY.value,
            to_iso(now),
            limit,
        )
        return [self._row_to_run(r) for r in rows]
