"""Repository abstraction for journey and run persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

from ..contracts import Journey
from .models import Run, RunState, RunStep


class RunRepository(Protocol):
    """Protocol for run store backends.

    ``claim_run_for_processing`` is the one operation that must be atomic: it
    is a single conditional update so that concurrent callers for the same
    run race safely and exactly one of them wins.
    """

    async def save_journey(self, journey: Journey) -> str:
        """Persist a journey definition and return its id."""

    async def get_journey(self, journey_id: str) -> Journey | None:
        """Retrieve a journey by id."""

    async def list_journeys(self) -> list[Journey]:
        """Return all stored journeys."""

    async def create_run(
        self,
        journey_id: str,
        patient_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> tuple[Run, bool]:
        """Create a queued run.

        When ``idempotency_key`` matches an existing run of the same journey,
        that run is returned instead and the flag is ``False``.
        """

    async def get_run(self, run_id: str) -> Run | None:
        """Retrieve a run by id."""

    async def list_runs(self, state: RunState | str | None = None) -> list[Run]:
        """Return runs, optionally filtered by state."""

    async def update_run_state(
        self, run_id: str, state: RunState | str, fields: dict[str, Any] | None = None
    ) -> None:
        """Set ``state`` plus any of the given fields. No ownership check."""

    async def claim_run_for_processing(self, run_id: str, now: datetime) -> bool:
        """Atomically move a ready queued/waiting run to ``in_progress``."""

    async def append_run_step(
        self,
        run_id: str,
        node_id: str | None,
        step_type: str,
        payload: dict[str, Any] | None = None,
    ) -> int:
        """Append an audit entry and return its id."""

    async def get_run_steps(self, run_id: str) -> list[RunStep]:
        """Return a run's steps in ascending id order."""

    async def find_ready_runs(self, limit: int, now: datetime) -> list[Run]:
        """Return up to ``limit`` claimable runs, oldest first."""
