"""In-memory implementation of the run repository."""

from __future__ import annotations

import threading
import uuid
from datetime import datetime
from typing import Any, Dict, List, Tuple

from ..contracts import Journey
from .models import (
    Run,
    RunState,
    RunStep,
    check_update_fields,
    step_type_value,
    utcnow,
)
from .repository import RunRepository


class InMemoryRunRepository(RunRepository):
    """Store journeys and runs in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._journeys: Dict[str, Journey] = {}
        self._runs: Dict[str, Run] = {}
        self._steps: Dict[str, List[RunStep]] = {}
        self._idempotency: Dict[Tuple[str, str], str] = {}
        self._step_id = 0
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    async def save_journey(self, journey: Journey) -> str:
        journey_id = journey.id or str(uuid.uuid4())
        self._journeys[journey_id] = journey.model_copy(update={"id": journey_id})
        return journey_id

    async def get_journey(self, journey_id: str) -> Journey | None:
        return self._journeys.get(journey_id)

    async def list_journeys(self) -> list[Journey]:
        return list(self._journeys.values())

    async def create_run(
        self,
        journey_id: str,
        patient_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> tuple[Run, bool]:
        with self._lock:
            if idempotency_key is not None:
                existing = self._idempotency.get((journey_id, idempotency_key))
                if existing is not None:
                    return self._runs[existing].model_copy(deep=True), False
            run = Run(
                id=str(uuid.uuid4()),
                journey_id=journey_id,
                patient_id=patient_id,
                idempotency_key=idempotency_key,
            )
            self._runs[run.id] = run
            self._steps[run.id] = []
            if idempotency_key is not None:
                self._idempotency[(journey_id, idempotency_key)] = run.id
            return run.model_copy(deep=True), True

    async def get_run(self, run_id: str) -> Run | None:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def list_runs(self, state: RunState | str | None = None) -> list[Run]:
        wanted = RunState(state) if state is not None else None
        return [
            run.model_copy(deep=True)
            for run in sorted(self._runs.values(), key=lambda r: r.created_at)
            if wanted is None or run.state == wanted
        ]

    async def update_run_state(
        self, run_id: str, state: RunState | str, fields: dict[str, Any] | None = None
    ) -> None:
        fields = fields or {}
        check_update_fields(fields)
        with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                return
            self._runs[run_id] = run.model_copy(
                update={"state": RunState(state), **fields}
            )

    async def claim_run_for_processing(self, run_id: str, now: datetime) -> bool:
        with self._lock:
            run = self._runs.get(run_id)
            if run is None or not run.is_ready(now):
                return False
            self._runs[run_id] = run.model_copy(
                update={"state": RunState.IN_PROGRESS, "started_at": now}
            )
            return True

    async def append_run_step(
        self,
        run_id: str,
        node_id: str | None,
        step_type: str,
        payload: dict[str, Any] | None = None,
    ) -> int:
        with self._lock:
            self._step_id += 1
            step = RunStep(
                id=self._step_id,
                run_id=run_id,
                node_id=node_id,
                type=step_type_value(step_type),
                payload=payload,
                created_at=utcnow(),
            )
            self._steps.setdefault(run_id, []).append(step)
            return step.id

    async def get_run_steps(self, run_id: str) -> list[RunStep]:
        return [step.model_copy(deep=True) for step in self._steps.get(run_id, [])]

    async def find_ready_runs(self, limit: int, now: datetime) -> list[Run]:
        ready = [
            run
            for run in sorted(self._runs.values(), key=lambda r: r.created_at)
            if run.is_ready(now)
        ]
        return [run.model_copy(deep=True) for run in ready[:limit]]
