from datetime import datetime, timedelta, timezone

import pytest

from journeyflow import JourneyService, RunExecutor
from journeyflow.db import RunDB
from journeyflow.db.models import JourneyRow, RunRow
from journeyflow.executor import ProcessOutcome
from journeyflow.persistence import RunState


@pytest.mark.asyncio
async def test_run_db_lifecycle(tmp_path, linear_journey):
    db = RunDB(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await db.init_db()
    executor = RunExecutor(db)
    service = JourneyService(executor)

    journey_id = await service.create_journey(linear_journey, journey_id="welcome")
    result = await service.trigger(journey_id, request_id="r-1", auto_start=False)
    assert await executor.process(result.run_id) is ProcessOutcome.COMPLETED

    async with db.session() as session:
        row = await session.get(RunRow, result.run_id)
        assert row.state == "completed"
        assert row.idempotency_key == "r-1"
        journey_row = await session.get(JourneyRow, "welcome")
        assert journey_row.name == "linear"
        assert journey_row.payload["startNodeId"] == "A"

    steps = await db.get_run_steps(result.run_id)
    assert [s.type for s in steps][-1] == "completed"
    await executor.shutdown()
    await db.dispose()


@pytest.mark.asyncio
async def test_run_db_wake_times_are_utc(tmp_path):
    db = RunDB(f"sqlite+aiosqlite:///{tmp_path / 'wake.db'}")
    run, _ = await db.create_run("j1")
    wake = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    await db.update_run_state(run.id, RunState.WAITING_DELAY, {"next_wake_at": wake})

    stored = await db.get_run(run.id)
    assert stored.next_wake_at == wake
    assert stored.next_wake_at.tzinfo is not None
    assert await db.find_ready_runs(10, wake - timedelta(seconds=1)) == []
    assert [r.id for r in await db.find_ready_runs(10, wake)] == [run.id]
    await db.dispose()
