"""Persistence layer for journeys, runs and run steps."""

from __future__ import annotations

import os
from typing import Optional

from ..config import JourneyflowConfig, load_config
from .inmemory import InMemoryRunRepository
from .models import Run, RunState, RunStep
from .postgres import PostgresRunRepository
from .repository import RunRepository
from .sqlite import SQLiteRunRepository

_repository_instance: RunRepository | None = None

_SQLALCHEMY_PREFIXES = ("sqlite+aiosqlite://", "postgresql+asyncpg://")


def get_repository(
    database_url: Optional[str] = None, config: Optional[JourneyflowConfig] = None
) -> RunRepository:
    """Factory function to obtain a run repository.

    The repository backend is selected based on ``database_url`` which can be
    provided explicitly, via environment variable ``JOURNEYFLOW_DATABASE_URL``
    or ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory repository is returned.

    ``sqlite://<path>`` and ``postgres(ql)://`` use the plain drivers; URLs
    naming an async SQLAlchemy driver (``sqlite+aiosqlite://``,
    ``postgresql+asyncpg://``) use the SQLModel-backed :class:`RunDB`.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("JOURNEYFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or getattr(config, "database_url", None)
    )

    if not database_url:
        _repository_instance = InMemoryRunRepository()
        return _repository_instance

    if database_url.startswith(_SQLALCHEMY_PREFIXES):
        from ..db import RunDB

        _repository_instance = RunDB(database_url)
    elif database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _repository_instance = SQLiteRunRepository(path)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        _repository_instance = PostgresRunRepository(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _repository_instance


__all__ = [
    "Run",
    "RunState",
    "RunStep",
    "RunRepository",
    "InMemoryRunRepository",
    "SQLiteRunRepository",
    "PostgresRunRepository",
    "get_repository",
]
