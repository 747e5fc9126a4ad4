"""Shared fixtures for journeyflow tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from journeyflow import JourneyService, RunExecutor
from journeyflow.persistence import InMemoryRunRepository
from journeyflow.transports import InMemoryTransport


class FakeClock:
    """Controllable replacement for ``utcnow`` in the executor and poller."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def repo() -> InMemoryRunRepository:
    return InMemoryRunRepository()


@pytest.fixture
def transport() -> InMemoryTransport:
    return InMemoryTransport()


@pytest_asyncio.fixture
async def executor(repo, transport, clock):
    executor = RunExecutor(repo, transport=transport, clock=clock)
    yield executor
    await executor.shutdown()


@pytest.fixture
def service(executor) -> JourneyService:
    return JourneyService(executor)


@pytest.fixture
def linear_journey() -> dict:
    return {
        "name": "linear",
        "startNodeId": "A",
        "nodes": [
            {"id": "A", "type": "MESSAGE", "message": "hello", "next": "B"},
            {"id": "B", "type": "MESSAGE", "message": "goodbye", "next": None},
        ],
    }


@pytest.fixture
def age_check_journey() -> dict:
    return {
        "name": "age-check",
        "startNodeId": "c1",
        "nodes": [
            {
                "id": "c1",
                "type": "CONDITION",
                "condition": {"leftKey": "age", "operator": ">=", "rightValue": 18},
                "trueNext": "adult",
                "falseNext": "minor",
            },
            {"id": "adult", "type": "MESSAGE", "message": "adult pathway", "next": None},
            {"id": "minor", "type": "MESSAGE", "message": "minor pathway", "next": None},
        ],
    }


@pytest.fixture
def delay_journey():
    """Factory: DELAY(delay_seconds) followed by a MESSAGE."""

    def build(delay_seconds: float = 1) -> dict:
        return {
            "name": "delayed",
            "startNodeId": "d1",
            "nodes": [
                {"id": "d1", "type": "DELAY", "delaySeconds": delay_seconds, "next": "m1"},
                {"id": "m1", "type": "MESSAGE", "message": "after delay", "next": None},
            ],
        }

    return build
