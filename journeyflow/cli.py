"""Command line interface for managing journeys and running the worker."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer
import yaml

from journeyflow import JourneyService, RunExecutor, get_repository
from journeyflow.config import JourneyflowConfig, load_config
from journeyflow.contracts import ConditionNode, DelayNode, MessageNode
from journeyflow.errors import InvalidJourneyError, JourneyNotFoundError
from journeyflow.persistence import RunState

app = typer.Typer(help="CLI for journeyflow journeys and runs")

# Command groups
journey_app = typer.Typer(help="Commands for managing journey definitions")
run_app = typer.Typer(help="Commands for triggering and inspecting runs")

app.add_typer(journey_app, name="journey")
app.add_typer(run_app, name="run")


def _build_executor(config: Optional[JourneyflowConfig] = None) -> RunExecutor:
    config = config or load_config()
    return RunExecutor.from_config(config, repository=get_repository())


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(
        None, help="Logging level (defaults to the configured log_level)"
    ),
) -> None:
    """journeyflow CLI entry point."""
    level = (log_level or load_config().log_level).upper()
    logging.basicConfig(
        level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )


@journey_app.command("create")
def journey_create(
    path: Path,
    journey_id: Optional[str] = typer.Option(None, "--id", help="Explicit journey id"),
) -> None:
    """
    Store a journey definition from a JSON or YAML file.

    The definition is validated first: every node reference must resolve,
    node ids must be unique and condition operators must be supported.

    Example:
        journeyflow journey create ./journeys/onboarding.yaml
        # Output: Created journey 6f1c...
    """
    try:
        data = yaml.safe_load(path.read_text())
    except (OSError, yaml.YAMLError) as exc:
        typer.secho(f"Could not read {path}: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    service = JourneyService(_build_executor())
    try:
        new_id = asyncio.run(service.create_journey(data, journey_id=journey_id))
    except InvalidJourneyError as exc:
        typer.secho("Invalid journey:", fg=typer.colors.RED)
        for problem in exc.problems:
            typer.secho(f"  - {problem}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Created journey {new_id}")


@journey_app.command("show")
def journey_show(journey_id: str) -> None:
    """Show a journey's nodes and how they connect."""
    repo = get_repository()
    journey = asyncio.run(repo.get_journey(journey_id))
    if journey is None:
        typer.echo("Journey not found")
        raise typer.Exit(code=1)
    typer.echo(f"Journey {journey.id}: {journey.name}")
    typer.echo(f"Start: {journey.start_node_id or '(first node)'}")
    for node in journey.nodes:
        if isinstance(node, MessageNode):
            detail = f"-> {node.next}"
        elif isinstance(node, DelayNode):
            detail = f"{node.delay_seconds}s -> {node.next}"
        elif isinstance(node, ConditionNode):
            cond = node.condition
            detail = (
                f"{cond.left_key} {cond.operator} {cond.right_value!r} "
                f"? {node.true_next} : {node.false_next}"
            )
        else:
            detail = ""
        typer.echo(f"- {node.id} {node.type} {detail}".rstrip())


@journey_app.command("list")
def journey_list() -> None:
    """List stored journeys."""
    repo = get_repository()
    journeys = asyncio.run(repo.list_journeys())
    if not journeys:
        typer.echo("No journeys found")
        return
    for journey in journeys:
        typer.echo(f"{journey.id}\t{journey.name}\t{len(journey.nodes)} nodes")


@run_app.command("trigger")
def run_trigger(
    journey_id: str,
    context: Optional[str] = typer.Option(
        None, help="Patient context as a JSON object"
    ),
    patient_id: Optional[str] = typer.Option(None, help="Patient identifier"),
    idempotency_key: Optional[str] = typer.Option(
        None, help="Re-triggering with the same key returns the same run"
    ),
    request_id: Optional[str] = typer.Option(
        None, help="Caller request id; used as idempotency key when none is given"
    ),
    start: bool = typer.Option(True, "--start/--no-start", help="Process immediately"),
) -> None:
    """
    Trigger a run of a journey and process it until it completes or waits.

    Runs that reach a DELAY are left in waiting_delay; a running
    ``journeyflow worker`` resumes them once their wake time passes.

    Example:
        journeyflow run trigger 6f1c... --context '{"age": 20}' --request-id r-1
        # Output: Run 0a9e... created
        #         State: completed
    """
    parsed_context = None
    if context:
        try:
            parsed_context = json.loads(context)
        except json.JSONDecodeError as exc:
            typer.secho(f"Invalid context JSON: {exc}", fg=typer.colors.RED)
            raise typer.Exit(code=1)
        if not isinstance(parsed_context, dict):
            typer.secho("Context must be a JSON object", fg=typer.colors.RED)
            raise typer.Exit(code=1)

    async def _trigger():
        executor = _build_executor()
        service = JourneyService(executor)
        try:
            result = await service.trigger(
                journey_id,
                patient_id=patient_id,
                idempotency_key=idempotency_key,
                request_id=request_id,
                context=parsed_context,
                auto_start=False,
            )
            if start and result.created:
                await executor.process(result.run_id)
            run = await executor.repository.get_run(result.run_id)
        finally:
            await executor.shutdown()
        return result, run

    try:
        result, run = asyncio.run(_trigger())
    except JourneyNotFoundError:
        typer.echo("Journey not found")
        raise typer.Exit(code=1)
    typer.echo(f"Run {result.run_id} {'created' if result.created else 'already exists'}")
    typer.echo(f"State: {run.state.value}")


@run_app.command("start")
def run_start(run_id: str) -> None:
    """Process an existing run now (no-op if it is not due or already claimed)."""

    async def _start():
        executor = _build_executor()
        try:
            if await executor.repository.get_run(run_id) is None:
                return None
            return await executor.process(run_id)
        finally:
            await executor.shutdown()

    outcome = asyncio.run(_start())
    if outcome is None:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    typer.echo(f"Run {run_id}: {outcome.value}")


@run_app.command("show")
def run_show(run_id: str) -> None:
    """
    Show a run's state and its full step history.

    Example:
        journeyflow run show 0a9e...
        # Output: Run 0a9e...: waiting_delay
        #         Next wake: 2024-01-01T10:05:00.000000+00:00
        #         - [1] triggered {"requestId": "r-1", "context": {"age": 20}}
        #         - [2] started d1 {}
    """
    repo = get_repository()
    run = asyncio.run(repo.get_run(run_id))
    if run is None:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    steps = asyncio.run(repo.get_run_steps(run_id))
    typer.echo(f"Run {run.id}: {run.state.value}")
    typer.echo(f"Journey: {run.journey_id}")
    if run.current_node_id:
        typer.echo(f"Current node: {run.current_node_id}")
    if run.next_wake_at:
        typer.echo(f"Next wake: {run.next_wake_at.isoformat()}")
    if run.error:
        typer.echo(f"Error: {run.error}")
    for step in steps:
        node = f" {step.node_id}" if step.node_id else ""
        payload = f" {json.dumps(step.payload)}" if step.payload else ""
        typer.echo(f"- [{step.id}] {step.type}{node}{payload}")


@run_app.command("list")
def run_list(
    state: Optional[RunState] = typer.Option(None, help="Only runs in this state"),
) -> None:
    """List runs with their current state."""
    repo = get_repository()
    runs = asyncio.run(repo.list_runs(state))
    if not runs:
        typer.echo("No runs found")
        return
    for run in runs:
        typer.echo(f"{run.id}\t{run.journey_id}\t{run.state.value}")


@app.command("worker")
def worker(
    interval: Optional[float] = typer.Option(
        None, help="Seconds between readiness sweeps (default from config)"
    ),
    batch_size: Optional[int] = typer.Option(
        None, help="Maximum runs processed per sweep (default from config)"
    ),
    lifespan: Optional[float] = typer.Option(
        None, help="Stop after this many seconds (default: run until interrupted)"
    ),
) -> None:
    """
    Run the readiness poller, resuming every run whose wake time has passed.

    Example:
        journeyflow worker --interval 2
        journeyflow worker --lifespan 60
    """
    config = load_config()
    if not config.poller.enabled:
        typer.echo("Readiness poller is disabled (poller.enabled: false)")
        return

    async def _work() -> None:
        executor = _build_executor(config)
        executor.start_poller(
            interval or config.poller.interval_seconds,
            batch_size or config.poller.batch_size,
        )
        try:
            if lifespan:
                await asyncio.sleep(lifespan)
            else:
                await asyncio.Event().wait()
        finally:
            await executor.shutdown()

    typer.echo("Starting journeyflow worker")
    asyncio.run(_work())


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
