"""Append-only audit trail of everything the executor does to a run."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from .persistence import RunRepository, RunStep


class StepType(str, Enum):
    TRIGGERED = "triggered"
    STARTED = "started"
    MESSAGE_SENT = "message_sent"
    DELAY_SET = "delay_set"
    DELAY_RESUMED = "delay_resumed"
    CONDITION_EVALUATED = "condition_evaluated"
    COMPLETED = "completed"
    ERROR = "error"


class StepLog:
    """Writer and reader for a run's steps.

    Steps are never updated or deleted. Callers append a step before
    persisting the state change it describes, so the log is never behind the
    run row.
    """

    def __init__(self, repository: RunRepository) -> None:
        self._repository = repository

    async def append(
        self,
        run_id: str,
        node_id: Optional[str],
        step_type: StepType | str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> int:
        value = step_type.value if isinstance(step_type, StepType) else step_type
        return await self._repository.append_run_step(run_id, node_id, value, payload)

    async def record_error(
        self,
        run_id: str,
        node_id: Optional[str],
        message: str,
        error: Optional[str] = None,
    ) -> int:
        """Append an ``error`` step; ``error`` is the code stored on the run."""
        payload: Dict[str, Any] = {"message": message}
        if error is not None:
            payload["error"] = error
        return await self.append(run_id, node_id, StepType.ERROR, payload)

    async def history(self, run_id: str) -> List[RunStep]:
        return await self._repository.get_run_steps(run_id)

    async def trigger_context(self, run_id: str) -> Dict[str, Any]:
        """Patient context supplied when the run was triggered.

        Runs do not store context themselves; it lives in the payload of the
        first ``triggered`` step. Returns an empty mapping when there is none.
        """
        for step in await self.history(run_id):
            if step.type == StepType.TRIGGERED.value:
                context = (step.payload or {}).get("context")
                return dict(context) if isinstance(context, dict) else {}
        return {}
