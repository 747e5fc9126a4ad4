"""Contract tests run against every local repository backend."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from journeyflow.contracts import parse_journey
from journeyflow.db import RunDB
from journeyflow.persistence import (
    InMemoryRunRepository,
    RunState,
    SQLiteRunRepository,
    get_repository,
)

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture(params=["inmemory", "sqlite", "sqlmodel"])
async def repository(request, tmp_path):
    if request.param == "inmemory":
        yield InMemoryRunRepository()
    elif request.param == "sqlite":
        repo = SQLiteRunRepository(tmp_path / "runs.db")
        yield repo
        repo.close()
    else:
        repo = RunDB(f"sqlite+aiosqlite:///{tmp_path / 'runs_sqlmodel.db'}")
        await repo.init_db()
        yield repo
        await repo.dispose()


def _journey(**overrides):
    data = {
        "name": "welcome",
        "startNodeId": "m1",
        "nodes": [
            {"id": "m1", "type": "MESSAGE", "message": "Welcome", "next": "d1"},
            {"id": "d1", "type": "DELAY", "delaySeconds": 3600, "next": None},
        ],
        "metadata": {"owner": "care-team"},
    }
    data.update(overrides)
    return parse_journey(data)


@pytest.mark.asyncio
async def test_journey_round_trip(repository):
    journey_id = await repository.save_journey(_journey(id="j1"))

    stored = await repository.get_journey(journey_id)
    assert journey_id == "j1"
    assert stored == _journey(id="j1")
    assert await repository.get_journey("missing") is None
    assert [j.id for j in await repository.list_journeys()] == ["j1"]


@pytest.mark.asyncio
async def test_create_run_defaults(repository):
    run, created = await repository.create_run("j1", patient_id="p1")

    assert created is True
    assert run.state is RunState.QUEUED
    assert run.patient_id == "p1"
    assert run.current_node_id is None
    assert run.next_wake_at is None
    assert run.created_at.tzinfo is not None
    assert await repository.get_run(run.id) == run
    assert await repository.get_run("missing") is None


@pytest.mark.asyncio
async def test_idempotency_key_is_scoped_to_journey(repository):
    first, created = await repository.create_run("j1", idempotency_key="k1")
    again, created_again = await repository.create_run("j1", idempotency_key="k1")
    other, created_other = await repository.create_run("j2", idempotency_key="k1")

    assert created and not created_again and created_other
    assert again.id == first.id
    assert other.id != first.id


@pytest.mark.asyncio
async def test_update_run_state_sets_fields(repository):
    run, _ = await repository.create_run("j1")
    wake = NOW + timedelta(minutes=5)

    await repository.update_run_state(
        run.id, RunState.WAITING_DELAY, {"current_node_id": "d1", "next_wake_at": wake}
    )

    stored = await repository.get_run(run.id)
    assert stored.state is RunState.WAITING_DELAY
    assert stored.current_node_id == "d1"
    assert stored.next_wake_at == wake

    await repository.update_run_state(run.id, "failed", {"error": "boom"})
    stored = await repository.get_run(run.id)
    assert stored.state is RunState.FAILED
    assert stored.error == "boom"
    assert [r.id for r in await repository.list_runs(RunState.FAILED)] == [run.id]
    assert await repository.list_runs("completed") == []


@pytest.mark.asyncio
async def test_update_run_state_rejects_unknown_fields(repository):
    run, _ = await repository.create_run("j1")
    with pytest.raises(ValueError, match="journey_id"):
        await repository.update_run_state(run.id, RunState.QUEUED, {"journey_id": "x"})


@pytest.mark.asyncio
async def test_claim_respects_state_and_wake_time(repository):
    queued, _ = await repository.create_run("j1")
    waiting, _ = await repository.create_run("j1")
    await repository.update_run_state(
        waiting.id, RunState.WAITING_DELAY, {"next_wake_at": NOW + timedelta(seconds=10)}
    )

    assert await repository.claim_run_for_processing(queued.id, NOW) is True
    claimed = await repository.get_run(queued.id)
    assert claimed.state is RunState.IN_PROGRESS
    assert claimed.started_at == NOW
    assert await repository.claim_run_for_processing(queued.id, NOW) is False

    assert await repository.claim_run_for_processing(waiting.id, NOW) is False
    later = NOW + timedelta(seconds=10)
    assert await repository.claim_run_for_processing(waiting.id, later) is True
    assert await repository.claim_run_for_processing("missing", NOW) is False


@pytest.mark.asyncio
async def test_terminal_runs_cannot_be_claimed(repository):
    run, _ = await repository.create_run("j1")
    await repository.update_run_state(run.id, RunState.COMPLETED)

    assert await repository.claim_run_for_processing(run.id, NOW) is False


@pytest.mark.asyncio
async def test_only_one_concurrent_claim_wins(repository):
    run, _ = await repository.create_run("j1")

    results = await asyncio.gather(
        *(repository.claim_run_for_processing(run.id, NOW) for _ in range(10))
    )

    assert results.count(True) == 1


@pytest.mark.asyncio
async def test_find_ready_runs(repository):
    queued, _ = await repository.create_run("j1")
    due, _ = await repository.create_run("j1")
    future, _ = await repository.create_run("j1")
    done, _ = await repository.create_run("j1")
    await repository.update_run_state(
        due.id, RunState.WAITING_DELAY, {"next_wake_at": NOW - timedelta(seconds=1)}
    )
    await repository.update_run_state(
        future.id, RunState.WAITING_DELAY, {"next_wake_at": NOW + timedelta(seconds=1)}
    )
    await repository.update_run_state(done.id, RunState.COMPLETED)

    ready = await repository.find_ready_runs(10, NOW)
    assert {r.id for r in ready} == {queued.id, due.id}
    assert len(await repository.find_ready_runs(1, NOW)) == 1


@pytest.mark.asyncio
async def test_steps_are_ordered_per_run(repository):
    first = await repository.append_run_step("r1", None, "triggered", {"context": {"a": 1}})
    await repository.append_run_step("r2", "x", "started")
    second = await repository.append_run_step("r1", "n1", "started", None)
    third = await repository.append_run_step("r1", "n1", "message_sent", {"message": "hi"})

    steps = await repository.get_run_steps("r1")
    assert [s.id for s in steps] == [first, second, third]
    assert [s.type for s in steps] == ["triggered", "started", "message_sent"]
    assert steps[0].payload == {"context": {"a": 1}}
    assert steps[0].node_id is None
    assert steps[1].payload is None
    assert await repository.get_run_steps("nobody") == []


def test_get_repository_selects_backend(tmp_path, monkeypatch):
    from journeyflow import persistence

    monkeypatch.delenv("JOURNEYFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("JOURNEYFLOW_CONFIG", str(tmp_path / "absent.yaml"))
    monkeypatch.setattr(persistence, "_repository_instance", None)

    assert isinstance(get_repository(), InMemoryRunRepository)
    assert get_repository() is get_repository()

    sqlite_repo = get_repository(f"sqlite://{tmp_path / 'plain.db'}")
    assert isinstance(sqlite_repo, SQLiteRunRepository)
    sqlite_repo.close()

    assert isinstance(get_repository(f"sqlite+aiosqlite:///{tmp_path / 'sm.db'}"), RunDB)

    with pytest.raises(ValueError, match="Unsupported database backend"):
        get_repository("mysql://nope")
