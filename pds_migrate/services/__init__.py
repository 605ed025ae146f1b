"""
PDS Migrate Services

Service layer: stage orchestration, notifications and user-facing operations.
"""

from .migration_service import MigrationService  # noqa: F401
from .notifier import LoggingNotifier, Notifier  # noqa: F401
from .orchestrator import MigrationOrchestrator  # noqa: F401
from .scheduler import StageScheduler  # noqa: F401

__all__ = [
    "MigrationService",
    "MigrationOrchestrator",
    "StageScheduler",
    "Notifier",
    "LoggingNotifier",
]
