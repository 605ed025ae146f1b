"""
User notifications

Email templating lives outside this package; the engine only calls the
``Notifier`` interface. ``LoggingNotifier`` records every notice to the
migration log and is the default.
"""

from abc import ABC, abstractmethod
from typing import Any

from ..core.logging_config import get_migration_logger
from ..models.migration import Migration


class Notifier(ABC):
    """Delivers user-facing notices about a migration."""

    @abstractmethod
    async def rotation_key_created(self, migration: Migration, private_key_hex: str) -> None:
        """Send the user their recovery rotation key."""

    @abstractmethod
    async def plc_token_requested(self, migration: Migration) -> None:
        """Tell the user to look for the PLC confirmation email from their old PDS."""

    @abstractmethod
    async def migration_completed(self, migration: Migration, password: str | None) -> None:
        """Send the completion notice with the new account password."""

    @abstractmethod
    async def migration_failed(self, migration: Migration, advisory: dict[str, Any] | None) -> None:
        """Tell the user the migration failed and what to do next."""

    @abstractmethod
    async def plc_otp(self, migration: Migration, code: str) -> None:
        """Send the one-time code guarding PLC token submission."""


class LoggingNotifier(Notifier):
    """Notifier that only writes structured log events."""

    def __init__(self):
        self.logger = get_migration_logger("notifier")

    async def rotation_key_created(self, migration: Migration, private_key_hex: str) -> None:
        # the key itself never reaches the log
        self.logger.info(
            "Rotation key notice", migration_id=migration.id, email=migration.email
        )

    async def plc_token_requested(self, migration: Migration) -> None:
        self.logger.info("PLC token requested notice", migration_id=migration.id)

    async def migration_completed(self, migration: Migration, password: str | None) -> None:
        self.logger.info(
            "Migration completed notice",
            migration_id=migration.id,
            new_handle=migration.new_handle,
            includes_password=password is not None,
        )

    async def migration_failed(self, migration: Migration, advisory: dict[str, Any] | None) -> None:
        self.logger.info(
            "Migration failed notice",
            migration_id=migration.id,
            kind=advisory.get("kind") if advisory else None,
        )

    async def plc_otp(self, migration: Migration, code: str) -> None:
        self.logger.info("PLC OTP notice", migration_id=migration.id)
