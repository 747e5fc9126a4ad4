"""Entry points used by whatever triggers journeys (CLI, web handlers, jobs)."""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from .contracts import Journey, parse_journey
from .errors import JourneyNotFoundError, RunNotFoundError
from .executor import RunExecutor
from .persistence import Run, RunRepository, RunStep
from .steplog import StepType

logger = logging.getLogger(__name__)


class TriggerResult(BaseModel):
    run_id: str
    created: bool


class RunStatus(BaseModel):
    """Monitoring view of a run and its full step history."""

    run: Run
    steps: List[RunStep]


class JourneyService:
    """Create journeys, trigger runs and report on them."""

    def __init__(self, executor: RunExecutor) -> None:
        self._executor = executor

    @property
    def repository(self) -> RunRepository:
        return self._executor.repository

    async def create_journey(
        self, definition: Dict[str, Any] | Journey, journey_id: Optional[str] = None
    ) -> str:
        """Validate and store a journey definition, returning its id."""
        if isinstance(definition, Journey):
            definition = definition.to_payload()
        journey = parse_journey(definition, strict=True)
        journey = journey.model_copy(
            update={"id": journey_id or journey.id or str(uuid.uuid4())}
        )
        stored_id = await self.repository.save_journey(journey)
        logger.info(f"Created journey {stored_id} ({journey.name})")
        return stored_id

    async def trigger(
        self,
        journey_id: str,
        patient_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        request_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        auto_start: bool = True,
    ) -> TriggerResult:
        """Create (or reuse) a run of ``journey_id``.

        The idempotency key falls back to ``request_id``. Re-triggering with a
        key already used for this journey returns the existing run and neither
        records a second ``triggered`` step nor starts it again. With
        ``auto_start`` the run is only accepted for processing; the call does
        not wait for it.
        """
        journey = await self.repository.get_journey(journey_id)
        if journey is None:
            raise JourneyNotFoundError(journey_id)

        key = idempotency_key or request_id
        run, created = await self.repository.create_run(journey_id, patient_id, key)
        if not created:
            logger.info(f"Reusing run {run.id} for journey {journey_id} key={key}")
            return TriggerResult(run_id=run.id, created=False)

        await self._executor.steps.append(
            run.id,
            None,
            StepType.TRIGGERED,
            {"requestId": request_id, "context": context},
        )
        logger.info(f"Triggered run {run.id} for journey {journey_id}")
        if auto_start:
            self._executor.start_run(run.id)
        return TriggerResult(run_id=run.id, created=True)

    async def start(self, run_id: str) -> None:
        """Manually accept an existing run for processing."""
        if await self.repository.get_run(run_id) is None:
            raise RunNotFoundError(run_id)
        self._executor.start_run(run_id)

    async def status(self, run_id: str) -> RunStatus:
        run = await self.repository.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        steps = await self._executor.steps.history(run_id)
        return RunStatus(run=run, steps=steps)
