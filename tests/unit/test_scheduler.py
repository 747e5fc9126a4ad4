"""Timer and poller wake-up tests."""

import asyncio
from datetime import timedelta

import pytest

from journeyflow.persistence import InMemoryRunRepository, RunState
from journeyflow.scheduler import DelayScheduler, ReadinessPoller


class Recorder:
    def __init__(self, fail_for=()):
        self.calls = []
        self.fail_for = set(fail_for)

    async def __call__(self, run_id):
        self.calls.append(run_id)
        if run_id in self.fail_for:
            raise RuntimeError(f"cannot process {run_id}")


@pytest.mark.asyncio
async def test_timer_fires_once():
    scheduler = DelayScheduler(grace_seconds=0)
    wake = Recorder()

    scheduler.schedule("r1", 0.01, wake)
    assert scheduler.is_scheduled("r1")
    await asyncio.sleep(0.1)

    assert wake.calls == ["r1"]
    assert scheduler.pending_count == 0
    await scheduler.aclose()


@pytest.mark.asyncio
async def test_rescheduling_replaces_previous_timer():
    scheduler = DelayScheduler(grace_seconds=0)
    wake = Recorder()

    scheduler.schedule("r1", 0.01, wake)
    scheduler.schedule("r1", 0.02, wake)
    assert scheduler.pending_count == 1
    await asyncio.sleep(0.1)

    assert wake.calls == ["r1"]
    await scheduler.aclose()


@pytest.mark.asyncio
async def test_cancel_all_drops_timers():
    scheduler = DelayScheduler()
    wake = Recorder()
    scheduler.schedule("r1", 0.01, wake)
    scheduler.schedule("r2", 0.01, wake)

    assert scheduler.cancel_all() == 2
    await asyncio.sleep(0.05)

    assert wake.calls == []
    assert scheduler.cancel("r1") is False


@pytest.mark.asyncio
async def test_failing_wake_callback_is_logged(caplog):
    scheduler = DelayScheduler(grace_seconds=0)
    scheduler.schedule("r1", 0, Recorder(fail_for={"r1"}))

    await asyncio.sleep(0.05)
    await scheduler.aclose()

    assert "Resuming run r1 failed" in caplog.text


@pytest.mark.asyncio
async def test_aclose_cancels_timers_rearmed_by_running_wakeups():
    scheduler = DelayScheduler(grace_seconds=0)
    started = asyncio.Event()

    async def wake(run_id):
        started.set()
        await asyncio.sleep(0.02)
        scheduler.schedule(run_id, 60, wake)

    scheduler.schedule("r1", 0, wake)
    await started.wait()
    await scheduler.aclose()

    assert scheduler.pending_count == 0


async def _ready_runs(repo, clock_now, count):
    ids = []
    for _ in range(count):
        run, _ = await repo.create_run("j1")
        await repo.update_run_state(
            run.id, RunState.WAITING_DELAY, {"next_wake_at": clock_now - timedelta(seconds=1)}
        )
        ids.append(run.id)
    return ids


@pytest.mark.asyncio
async def test_sweep_processes_ready_runs_in_batches(clock):
    repo = InMemoryRunRepository()
    ids = await _ready_runs(repo, clock.now, 3)
    later, _ = await repo.create_run("j1")
    await repo.update_run_state(
        later.id, RunState.WAITING_DELAY, {"next_wake_at": clock.now + timedelta(hours=1)}
    )
    process = Recorder()
    poller = ReadinessPoller(repo, process, interval_seconds=1, batch_size=2, clock=clock)

    assert await poller.sweep() == 2
    assert process.calls == ids[:2]


@pytest.mark.asyncio
async def test_sweep_continues_after_a_failing_run(clock, caplog):
    repo = InMemoryRunRepository()
    ids = await _ready_runs(repo, clock.now, 2)
    process = Recorder(fail_for={ids[0]})
    poller = ReadinessPoller(repo, process, interval_seconds=1, clock=clock)

    assert await poller.sweep() == 2
    assert process.calls == ids
    assert f"Poller failed to process run {ids[0]}" in caplog.text


@pytest.mark.asyncio
async def test_poller_sweeps_immediately_on_start(clock):
    repo = InMemoryRunRepository()
    ids = await _ready_runs(repo, clock.now, 1)
    process = Recorder()
    poller = ReadinessPoller(repo, process, interval_seconds=60, clock=clock)

    poller.start()
    await asyncio.sleep(0.05)
    assert poller.running
    await poller.stop()

    assert process.calls == ids
    assert not poller.running


def test_poller_rejects_bad_settings():
    repo = InMemoryRunRepository()
    with pytest.raises(ValueError):
        ReadinessPoller(repo, Recorder(), interval_seconds=0)
    with pytest.raises(ValueError):
        ReadinessPoller(repo, Recorder(), batch_size=0)


class BrokenRepository(InMemoryRunRepository):
    async def find_ready_runs(self, limit, now):
        raise ConnectionError("database unavailable")


@pytest.mark.asyncio
async def test_poller_survives_failing_sweeps(caplog):
    poller = ReadinessPoller(BrokenRepository(), Recorder(), interval_seconds=0.01)

    poller.start()
    await asyncio.sleep(0.05)
    assert poller.running
    await poller.stop()

    assert "Readiness sweep failed" in caplog.text
