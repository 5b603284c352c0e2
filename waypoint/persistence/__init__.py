"""Durable store for workflows, executions, triggers and the audit log."""

from __future__ import annotations

import os
from typing import Optional

from ..config import WaypointConfig, load_config
from ..errors import ConfigurationError
from .inmemory import InMemoryWorkflowRepository
from .postgres import PostgresWorkflowRepository
from .repository import WorkflowRepository
from .sqlite import SQLiteWorkflowRepository


def get_repository(
    database_url: Optional[str] = None, config: Optional[WaypointConfig] = None
) -> WorkflowRepository:
    """Build the repository for ``database_url``.

    The URL falls back to ``WAYPOINT_DATABASE_URL``, ``DATABASE_URL`` and
    then the configuration. ``sqlite://<path>`` and ``postgres(ql)://...``
    are understood; no URL at all gives an in-memory repository. Each call
    builds a new repository, so processes share state only through the
    database.
    """
    config = config or load_config()
    url = (
        database_url
        or os.getenv("WAYPOINT_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )
    if not url:
        return InMemoryWorkflowRepository()

    scheme, _, rest = url.partition("://")
    if scheme == "sqlite":
        return SQLiteWorkflowRepository(rest)
    if scheme in ("postgres", "postgresql"):
        return PostgresWorkflowRepository(url)
    raise ConfigurationError(f"Unsupported database backend: {scheme}")


__all__ = [
    "InMemoryWorkflowRepository",
    "PostgresWorkflowRepository",
    "SQLiteWorkflowRepository",
    "WorkflowRepository",
    "get_repository",
]
