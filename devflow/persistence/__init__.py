"""Persistence layer for devflow pipeline state."""

from __future__ import annotations

import logging
import os
from typing import Optional

from ..config import DevflowConfig, load_config
from .inmemory import InMemoryWorkflowRepository
from .models import PendingQuestion, RunRecord, StepRecord, WorkItem
from .repository import WorkflowRepository
from .sqlite import SQLiteWorkflowRepository

logger = logging.getLogger(__name__)

_repository_instance: WorkflowRepository | None = None


def resolve_database_url(
    database_url: Optional[str] = None, config: Optional[DevflowConfig] = None
) -> Optional[str]:
    """Explicit argument, then the environment, then configuration."""
    if database_url:
        return database_url
    from_env = os.getenv("DEVFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if from_env:
        return from_env
    return (config or load_config()).database_url


def open_repository(database_url: Optional[str]) -> WorkflowRepository:
    """Build a repository for ``database_url`` without caching it."""
    if not database_url or database_url.startswith("memory://"):
        return InMemoryWorkflowRepository()

    scheme, _, location = database_url.partition("://")
    if scheme == "sqlite":
        return SQLiteWorkflowRepository(location or ":memory:")
    if scheme in ("postgres", "postgresql"):
        from .postgres import PostgresWorkflowRepository

        return PostgresWorkflowRepository(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


def get_repository(
    database_url: Optional[str] = None, config: Optional[DevflowConfig] = None
) -> WorkflowRepository:
    """Return the process repository, opening it on first use.

    Passing ``database_url`` or ``config`` always opens a fresh repository and
    makes it the process default.
    """
    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    url = resolve_database_url(database_url, config)
    _repository_instance = open_repository(url)
    logger.debug(f"Using {type(_repository_instance).__name__}")
    return _repository_instance


__all__ = [
    "InMemoryWorkflowRepository",
    "PendingQuestion",
    "RunRecord",
    "SQLiteWorkflowRepository",
    "StepRecord",
    "WorkItem",
    "WorkflowRepository",
    "get_repository",
    "open_repository",
    "resolve_database_url",
]
