"""Core exceptions for PDS migration operations.

Kept free of runtime imports from ``models`` so the model layer can raise
these without an import cycle.
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ..models.enums import ErrorKind


class PDSMigrateError(Exception):
    """Base exception for PDS migration operations."""


class ConfigurationError(PDSMigrateError):
    """Configuration validation or loading failed."""


class MigrationValidationError(PDSMigrateError):
    """Migration record failed validation."""


class InvalidTransitionError(PDSMigrateError):
    """Requested status change is not an edge of the stage graph."""


class StaleMigrationError(PDSMigrateError):
    """The stored migration moved on (e.g. was cancelled) while a stage ran."""


class MigrationError(PDSMigrateError):
    """A classified failure raised by the client, transfer engine or stages.

    Callers switch on ``kind`` rather than on subclasses. ``retry_after`` is
    the server's hint in seconds (rate limits only); ``status`` the HTTP status
    when one was involved; ``code`` the remote error name.
    """

    def __init__(
        self,
        kind: "ErrorKind",
        message: str,
        *,
        retry_after: float | None = None,
        status: int | None = None,
        code: str | None = None,
        retryable: bool | None = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.retry_after = retry_after
        self.status = status
        self.code = code
        self._retryable = retryable

    @property
    def retryable(self) -> bool:
        """Whether retrying the same operation could change the outcome."""
        if self._retryable is not None:
            return self._retryable
        return self.kind.retryable

    def __repr__(self) -> str:
        return f"MigrationError(kind={self.kind.value!r}, message={self.message!r})"
