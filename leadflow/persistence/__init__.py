"""Persistence layer for workflow, stage and notification state."""

from __future__ import annotations

from typing import Optional

from ..config import LeadflowConfig, load_config
from .inmemory import InMemoryAutomationRepository
from .models import (
    DeliveryRecord,
    DeliveryStatus,
    Notification,
    StageTransitionLog,
    StepExecution,
    StepStatus,
    Task,
)
from .repository import AutomationRepository
from .sqlite import SQLiteAutomationRepository

_repository_instance: AutomationRepository | None = None


def get_repository(
    database_url: Optional[str] = None, config: Optional[LeadflowConfig] = None
) -> AutomationRepository:
    """Factory function to obtain an automation repository.

    The backend is selected from ``database_url``, which can be provided
    explicitly or through configuration (``load_config`` already applies the
    ``LEADFLOW_DATABASE_URL`` and ``DATABASE_URL`` environment variables).
    When no database is configured, an in-memory repository is returned.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = database_url or config.database_url

    if not database_url:
        _repository_instance = InMemoryAutomationRepository()
        return _repository_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _repository_instance = SQLiteAutomationRepository(path)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _repository_instance


__all__ = [
    "AutomationRepository",
    "DeliveryRecord",
    "DeliveryStatus",
    "InMemoryAutomationRepository",
    "Notification",
    "SQLiteAutomationRepository",
    "StageTransitionLog",
    "StepExecution",
    "StepStatus",
    "Task",
    "get_repository",
]
