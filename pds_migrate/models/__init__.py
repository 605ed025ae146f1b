"""Data models for PDS migrations."""

from .enums import (  # noqa: F401
    ErrorKind,
    MigrationStatus,
    MigrationType,
    ServerRole,
    Severity,
)
from .migration import Migration, clean_handle  # noqa: F401

__all__ = [
    "ErrorKind",
    "MigrationStatus",
    "MigrationType",
    "ServerRole",
    "Severity",
    "Migration",
    "clean_handle",
]
