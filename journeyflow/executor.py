"""Run executor: drives a run through its journey's nodes.

Every invocation of :meth:`RunExecutor.process` first claims the run through
the store's atomic conditional update, so any number of timer fires, poller
sweeps and manual starts can race on the same run and at most one of them
advances it. Each state change is written to the step log before the run row
is updated.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Optional, Set

from .conditions import evaluate_condition
from .config import JourneyflowConfig, load_config
from .constants import DEFAULT_MAX_STEPS, DEFAULT_MESSAGE_TOPIC
from .contracts import ConditionNode, DelayNode, MessageNode, OutboundMessage
from .errors import InvalidJourneyError
from .graph import JourneyGraph
from .persistence import Run, RunRepository, RunState, get_repository
from .persistence.models import to_iso, utcnow
from .scheduler import DelayScheduler, ReadinessPoller
from .steplog import StepLog, StepType
from .transports import BaseTransport, get_transport

logger = logging.getLogger(__name__)


class ProcessOutcome(str, Enum):
    """What a single ``process`` invocation did."""

    NOT_FOUND = "not_found"
    NOT_DUE = "not_due"
    NOT_CLAIMED = "not_claimed"
    SUSPENDED = "suspended"
    COMPLETED = "completed"
    FAILED = "failed"


class RunExecutor:
    """Resumable interpreter for journey runs."""

    def __init__(
        self,
        repository: RunRepository,
        scheduler: Optional[DelayScheduler] = None,
        transport: Optional[BaseTransport] = None,
        message_topic: str = DEFAULT_MESSAGE_TOPIC,
        max_steps: int = DEFAULT_MAX_STEPS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._steps = StepLog(repository)
        self.scheduler = scheduler or DelayScheduler()
        self._transport = transport
        self.message_topic = message_topic
        self.max_steps = max_steps
        self._clock = clock
        self._poller: Optional[ReadinessPoller] = None
        self._background: Set[asyncio.Task] = set()

    @classmethod
    def from_config(
        cls,
        config: Optional[JourneyflowConfig] = None,
        repository: Optional[RunRepository] = None,
        transport: Optional[BaseTransport] = None,
    ) -> "RunExecutor":
        config = config or load_config()
        return cls(
            repository or get_repository(config=config),
            transport=transport or get_transport(config=config),
            message_topic=config.transport.topic,
            max_steps=config.executor.max_steps,
        )

    @property
    def repository(self) -> RunRepository:
        return self._repository

    @property
    def steps(self) -> StepLog:
        return self._steps

    @property
    def poller(self) -> Optional[ReadinessPoller]:
        return self._poller

    # ------------------------------------------------------------------
    # Core state machine
    async def process(
        self, run_id: str, max_steps: Optional[int] = None
    ) -> ProcessOutcome:
        """Advance ``run_id`` as far as it can go right now.

        Safe to call any number of times, concurrently, for the same run.
        Returns without touching the run when it is not due yet or another
        invocation holds it.
        """
        limit = self.max_steps if max_steps is None else max_steps
        run = await self._repository.get_run(run_id)
        if run is None:
            logger.error(f"Run not found: {run_id}")
            return ProcessOutcome.NOT_FOUND

        now = self._clock()
        if (
            run.state == RunState.WAITING_DELAY
            and run.next_wake_at is not None
            and run.next_wake_at > now
        ):
            logger.debug(f"Run {run_id} waiting until {to_iso(run.next_wake_at)}")
            return ProcessOutcome.NOT_DUE

        if run.state.is_terminal or not await self._repository.claim_run_for_processing(
            run_id, now
        ):
            logger.debug(f"Run {run_id} not claimable (state={run.state.value})")
            return ProcessOutcome.NOT_CLAIMED

        try:
            journey = await self._repository.get_journey(run.journey_id)
        except InvalidJourneyError as exc:
            return await self._fail(run_id, None, "invalid_journey", str(exc))
        if journey is None:
            return await self._fail(run_id, None, "journey_not_found", "journey not found")

        graph = JourneyGraph(journey)
        context = await self._steps.trigger_context(run_id)
        current = run.current_node_id or graph.start_node_id
        logger.debug(
            f"Processing run {run_id} journey={journey.id} from node={current}"
        )

        steps_taken = 0
        while current is not None and steps_taken < limit:
            steps_taken += 1
            node = graph.find(current)
            if node is None:
                return await self._fail(
                    run_id, current, f"node_not_found:{current}", "node not found"
                )

            if isinstance(node, MessageNode):
                current = await self._run_message(run, node)
            elif isinstance(node, DelayNode):
                if not await self._delay_elapsed(run_id):
                    await self._suspend(run_id, node)
                    return ProcessOutcome.SUSPENDED
                current = await self._resume_delay(run_id, node)
            elif isinstance(node, ConditionNode):
                current = await self._run_condition(run_id, node, context)
            else:
                error = f"unknown_node_type:{node.type}"
                return await self._fail(run_id, node.id, error, error)

        if current is not None:
            return await self._fail(
                run_id, None, "max_steps_exceeded", "max steps exceeded"
            )

        await self._steps.append(run_id, None, StepType.COMPLETED, {})
        await self._repository.update_run_state(
            run_id,
            RunState.COMPLETED,
            {"completed_at": self._clock(), "current_node_id": None},
        )
        logger.info(f"Run {run_id} completed")
        return ProcessOutcome.COMPLETED

    async def _run_message(self, run: Run, node: MessageNode) -> Optional[str]:
        await self._steps.append(run.id, node.id, StepType.STARTED, {})
        await self._repository.update_run_state(
            run.id, RunState.IN_PROGRESS, {"current_node_id": node.id}
        )
        await self._deliver(run, node)
        await self._steps.append(
            run.id, node.id, StepType.MESSAGE_SENT, {"message": node.message}
        )
        await self._repository.update_run_state(
            run.id, RunState.IN_PROGRESS, {"current_node_id": node.next}
        )
        return node.next

    async def _deliver(self, run: Run, node: MessageNode) -> None:
        # At-least-once: a crash before message_sent is recorded repeats this.
        logger.info(f"Sending message for run {run.id}, node {node.id}")
        if self._transport is None:
            return
        await self._transport.publish(
            self.message_topic,
            OutboundMessage(
                run_id=run.id,
                journey_id=run.journey_id,
                patient_id=run.patient_id,
                node_id=node.id,
                body=node.message,
            ),
        )

    async def _delay_elapsed(self, run_id: str) -> bool:
        """Whether the persisted wake time for this run has already passed."""
        persisted = await self._repository.get_run(run_id)
        return (
            persisted is not None
            and persisted.next_wake_at is not None
            and persisted.next_wake_at <= self._clock()
        )

    async def _resume_delay(self, run_id: str, node: DelayNode) -> Optional[str]:
        await self._steps.append(
            run_id,
            node.id,
            StepType.DELAY_RESUMED,
            {"delaySeconds": node.delay_seconds, "resumedAt": to_iso(self._clock())},
        )
        await self._repository.update_run_state(
            run_id,
            RunState.IN_PROGRESS,
            {"current_node_id": node.next, "next_wake_at": None},
        )
        return node.next

    async def _suspend(self, run_id: str, node: DelayNode) -> None:
        await self._steps.append(run_id, node.id, StepType.STARTED, {})
        next_wake = self._clock() + timedelta(seconds=node.delay_seconds)
        await self._steps.append(
            run_id,
            node.id,
            StepType.DELAY_SET,
            {"delaySeconds": node.delay_seconds, "nextWake": to_iso(next_wake)},
        )
        await self._repository.update_run_state(
            run_id,
            RunState.WAITING_DELAY,
            {"current_node_id": node.id, "next_wake_at": next_wake},
        )
        self.scheduler.schedule(run_id, node.delay_seconds, self._wake)
        logger.debug(f"Run {run_id} suspended at {node.id} until {to_iso(next_wake)}")

    async def _wake(self, run_id: str) -> None:
        await self.process(run_id)

    async def _run_condition(
        self, run_id: str, node: ConditionNode, context: Dict[str, Any]
    ) -> Optional[str]:
        outcome = evaluate_condition(node.condition, context)
        await self._steps.append(run_id, node.id, StepType.STARTED, {})
        await self._repository.update_run_state(
            run_id, RunState.IN_PROGRESS, {"current_node_id": node.id}
        )
        await self._steps.append(
            run_id, node.id, StepType.CONDITION_EVALUATED, outcome.to_payload()
        )
        target = node.true_next if outcome.result else node.false_next
        await self._repository.update_run_state(
            run_id, RunState.IN_PROGRESS, {"current_node_id": target}
        )
        return target

    async def _fail(
        self, run_id: str, node_id: Optional[str], error: str, message: str
    ) -> ProcessOutcome:
        await self._steps.record_error(run_id, node_id, message, error)
        await self._repository.update_run_state(run_id, RunState.FAILED, {"error": error})
        logger.error(f"Run {run_id} failed: {error}")
        return ProcessOutcome.FAILED

    # ------------------------------------------------------------------
    # Kick-off and lifecycle
    def start_run(self, run_id: str) -> asyncio.Task:
        """Accept ``run_id`` for processing without waiting for it.

        The returned task may be awaited; failures are logged either way.
        """
        task = asyncio.get_running_loop().create_task(
            self.process(run_id), name=f"journeyflow-run-{run_id}"
        )
        self._background.add(task)
        task.add_done_callback(lambda t: self._background_done(run_id, t))
        return task

    def _background_done(self, run_id: str, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Processing run {run_id} failed: {exc}", exc_info=exc)

    def start_poller(
        self, interval_seconds: float, batch_size: int
    ) -> ReadinessPoller:
        """Start the readiness poller; meant to be called once at startup."""
        if self._poller is not None and self._poller.running:
            return self._poller
        self._poller = ReadinessPoller(
            self._repository,
            self.process,
            interval_seconds=interval_seconds,
            batch_size=batch_size,
            clock=self._clock,
        )
        self._poller.start()
        return self._poller

    async def stop_poller(self) -> None:
        if self._poller is not None:
            await self._poller.stop()
            self._poller = None

    async def shutdown(self) -> None:
        """Stop the poller, finish in-flight processing, drop timers and disconnect."""
        await self.stop_poller()
        while self._background:
            waiting = list(self._background)
            await asyncio.gather(*waiting, return_exceptions=True)
            self._background.difference_update(waiting)
        # Background runs may have armed timers; aclose cancels them last.
        await self.scheduler.aclose()
        if self._transport is not None:
            await self._transport.disconnect()
