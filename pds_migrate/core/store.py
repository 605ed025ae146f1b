"""SQLite-backed persistence for migration records.

Each row holds the JSON-serialized Migration plus the few columns that are
queried directly (DID, status, heavy I/O slot). Operations that read and then
write (creation, token rotation, claims, field updates, admission) run inside ``BEGIN IMMEDIATE``
transactions so concurrent stage executions cannot interleave them.
"""

import sqlite3
from collections.abc import Iterable
from pathlib import Path

import aiosqlite
import structlog

from ..constants import ACTIVE_MIGRATION_MESSAGE
from ..models.enums import HEAVY_IO_STATUSES, TERMINAL_STATUSES, MigrationStatus, ServerRole
from ..models.migration import TOKEN_PREFIX_FOR_ROLE, Migration, utcnow
from .exceptions import MigrationValidationError, PDSMigrateError
from .secrets import SecretBox

logger = structlog.get_logger()

_TERMINAL_VALUES = tuple(status.value for status in TERMINAL_STATUSES)
_HEAVY_VALUES = tuple(status.value for status in HEAVY_IO_STATUSES)


def _placeholders(values: Iterable) -> str:
    return ", ".join("?" for _ in values)


class MigrationStore:
    """Durable checkpoint log of migrations."""

    def __init__(self, db_path: Path, box: SecretBox):
        self.db_path = Path(db_path)
        self.box = box

    def _connect(self) -> aiosqlite.Connection:
        # autocommit mode: transactions are opened explicitly where needed
        return aiosqlite.connect(self.db_path, isolation_level=None)

    async def initialize(self) -> None:
        """Initialize database schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        async with self._connect() as db:
            await db.execute("PRAGMA journal_mode=WAL")
            await db.execute("""
                CREATE TABLE IF NOT EXISTS migrations (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    token TEXT NOT NULL UNIQUE,
                    did TEXT NOT NULL,
                    status TEXT NOT NULL,
                    heavy_io_slot INTEGER NOT NULL DEFAULT 0,
                    data TEXT NOT NULL,  -- JSON serialized Migration
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            await db.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS idx_migrations_active_did ON migrations(did) "
                f"WHERE status NOT IN ({', '.join(repr(v) for v in _TERMINAL_VALUES)})"
            )
            await db.execute("CREATE INDEX IF NOT EXISTS idx_migrations_status ON migrations(status)")

        logger.info("Migration store initialized", db_path=str(self.db_path))

    async def create(self, migration: Migration) -> Migration:
        """Insert a new migration, enforcing one active migration per DID.

        Raises:
            MigrationValidationError: If the DID already has an active migration
        """
        async with self._connect() as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                cursor = await db.execute(
                    f"SELECT COUNT(*) FROM migrations WHERE did = ? "
                    f"AND status NOT IN ({_placeholders(_TERMINAL_VALUES)})",
                    (migration.did, *_TERMINAL_VALUES),
                )
                (active,) = await cursor.fetchone()
                if active:
                    raise MigrationValidationError(f"DID {migration.did} {ACTIVE_MIGRATION_MESSAGE}")

                now = utcnow()
                migration.created_at = migration.updated_at = now
                cursor = await db.execute(
                    "INSERT INTO migrations (token, did, status, data, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (
                        migration.token,
                        migration.did,
                        migration.status.value,
                        migration.model_dump_json(),
                        now.isoformat(),
                        now.isoformat(),
                    ),
                )
                migration.id = cursor.lastrowid
                await db.execute(
                    "UPDATE migrations SET data = ? WHERE id = ?",
                    (migration.model_dump_json(), migration.id),
                )
                await db.commit()
            except sqlite3.IntegrityError as e:
                await db.rollback()
                raise MigrationValidationError(
                    f"DID {migration.did} {ACTIVE_MIGRATION_MESSAGE}"
                ) from e
            except BaseException:
                await db.rollback()
                raise

        migration.attach_box(self.box)
        logger.info("Migration created", migration_id=migration.id, did=migration.did)
        return migration

    async def get(self, migration_id: int) -> Migration | None:
        async with self._connect() as db:
            cursor = await db.execute("SELECT data FROM migrations WHERE id = ?", (migration_id,))
            row = await cursor.fetchone()
        return self._load(row)

    async def get_by_token(self, token: str) -> Migration | None:
        async with self._connect() as db:
            cursor = await db.execute("SELECT data FROM migrations WHERE token = ?", (token,))
            row = await cursor.fetchone()
        return self._load(row)

    async def list_active(self) -> list[Migration]:
        """Non-terminal migrations, oldest first (used to resume after restart)."""
        async with self._connect() as db:
            cursor = await db.execute(
                f"SELECT data FROM migrations WHERE status NOT IN ({_placeholders(_TERMINAL_VALUES)}) "
                "ORDER BY id",
                _TERMINAL_VALUES,
            )
            rows = await cursor.fetchall()
        return [self._load(row) for row in rows]

    async def save(
        self, migration: Migration, expected_status: MigrationStatus | None = None
    ) -> bool:
        """Write the full record. Leaving a heavy I/O status releases its slot.

        Args:
            migration: Record to write
            expected_status: Only write if the stored status still equals this,
                so a stage cannot overwrite a concurrent cancellation

        Returns:
            False if ``expected_status`` no longer matched and nothing was written
        """
        if migration.id is None:
            raise PDSMigrateError("Cannot save a migration that was never created")
        migration.updated_at = utcnow()
        query = (
            "UPDATE migrations SET status = ?, data = ?, updated_at = ?, "
            f"heavy_io_slot = CASE WHEN ? IN ({_placeholders(_HEAVY_VALUES)}) "
            "THEN heavy_io_slot ELSE 0 END WHERE id = ?"
        )
        params: tuple = (
            migration.status.value,
            migration.model_dump_json(),
            migration.updated_at.isoformat(),
            migration.status.value,
            *_HEAVY_VALUES,
            migration.id,
        )
        if expected_status is not None:
            query += " AND status = ?"
            params = (*params, expected_status.value)
        async with self._connect() as db:
            cursor = await db.execute(query, params)
            written = cursor.rowcount > 0
        if not written:
            logger.warning(
                "Migration changed underneath writer, save skipped",
                migration_id=migration.id,
                expected_status=expected_status.value if expected_status else None,
            )
        return written

    async def save_tokens(self, migration: Migration, role: ServerRole) -> None:
        """Persist one role's rotated token pair without touching other fields.

        The stored record is re-read inside the transaction, so a concurrent
        writer's progress or status is never overwritten by this call.
        """
        prefix = TOKEN_PREFIX_FOR_ROLE[role]
        fields = (
            f"encrypted_{prefix}_access_token",
            f"encrypted_{prefix}_refresh_token",
            f"{prefix}_tokens_expires_at",
        )
        await self._merge_fields(migration, fields)
        logger.debug("Session tokens persisted", migration_id=migration.id, role=role.value)

    async def save_fields(
        self, migration: Migration, fields: Iterable[str], *, blocked_by: Iterable[str] = ()
    ) -> bool:
        """Write only ``fields`` of ``migration`` onto the stored record.

        The write is refused when the stored status differs from the
        migration's or any of the ``blocked_by`` progress keys is set on the
        stored record, so progress written by a running stage is never
        overwritten.

        Returns:
            False if the write was refused
        """
        written = await self._merge_fields(
            migration, tuple(fields), check_status=True, blocked_by=tuple(blocked_by)
        )
        if not written:
            logger.warning(
                "Migration changed underneath writer, field update skipped",
                migration_id=migration.id,
            )
        return written

    async def _merge_fields(
        self,
        migration: Migration,
        fields: tuple[str, ...],
        *,
        check_status: bool = False,
        blocked_by: tuple[str, ...] = (),
    ) -> bool:
        async with self._connect() as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                cursor = await db.execute("SELECT data FROM migrations WHERE id = ?", (migration.id,))
                row = await cursor.fetchone()
                if row is None:
                    raise PDSMigrateError(f"Migration {migration.id} no longer exists")
                stored = Migration.model_validate_json(row[0])
                if (check_status and stored.status is not migration.status) or any(
                    stored.progress_data.get(key) for key in blocked_by
                ):
                    await db.commit()
                    return False
                for field in fields:
                    setattr(stored, field, getattr(migration, field))
                stored.updated_at = utcnow()
                await db.execute(
                    "UPDATE migrations SET data = ?, updated_at = ? WHERE id = ?",
                    (stored.model_dump_json(), stored.updated_at.isoformat(), migration.id),
                )
                await db.commit()
            except BaseException:
                await db.rollback()
                raise
        return True

    async def claim_progress(
        self,
        migration: Migration,
        key: str,
        value: str,
        *,
        blocked_by: Iterable[str] = (),
        held: tuple[str, str] | None = None,
    ) -> bool:
        """Atomically record ``value`` under ``progress_data[key]``.

        The claim is refused when the stored status differs from the
        migration's, when ``key`` already holds ``value``, when any of the
        ``blocked_by`` progress keys is set, or when ``held`` names a
        ``(key, value)`` pair the stored progress no longer has. A value left
        by a different owner belongs to an earlier run and is taken over. Only
        ``key`` is written; the rest of the stored record is left as it is.

        Returns:
            True if the claim was recorded (and mirrored onto ``migration``)
        """
        async with self._connect() as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                cursor = await db.execute("SELECT data FROM migrations WHERE id = ?", (migration.id,))
                row = await cursor.fetchone()
                if row is None:
                    raise PDSMigrateError(f"Migration {migration.id} no longer exists")
                stored = Migration.model_validate_json(row[0])
                progress = stored.progress_data
                if (
                    stored.status is not migration.status
                    or progress.get(key) == value
                    or any(progress.get(blocker) for blocker in blocked_by)
                    or (held is not None and progress.get(held[0]) != held[1])
                ):
                    await db.commit()
                    return False
                progress[key] = value
                stored.updated_at = utcnow()
                await db.execute(
                    "UPDATE migrations SET data = ?, updated_at = ? WHERE id = ?",
                    (stored.model_dump_json(), stored.updated_at.isoformat(), migration.id),
                )
                await db.commit()
            except BaseException:
                await db.rollback()
                raise
        migration.progress_data[key] = value
        return True

    async def try_admit(self, migration_id: int, ceiling: int) -> tuple[bool, int]:
        """Atomically take a heavy I/O slot if fewer than ``ceiling`` are held.

        Returns:
            Tuple of (admitted, slots held by other migrations)
        """
        async with self._connect() as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                cursor = await db.execute(
                    "SELECT heavy_io_slot FROM migrations WHERE id = ?", (migration_id,)
                )
                row = await cursor.fetchone()
                if row is None:
                    raise PDSMigrateError(f"Migration {migration_id} no longer exists")
                held = await self._count_slots(db, exclude_id=migration_id)
                if row[0]:
                    await db.commit()
                    return True, held
                admitted = held < ceiling
                if admitted:
                    await db.execute(
                        "UPDATE migrations SET heavy_io_slot = 1 WHERE id = ?", (migration_id,)
                    )
                await db.commit()
                return admitted, held
            except BaseException:
                await db.rollback()
                raise

    async def count_heavy_io(self) -> int:
        """Migrations currently holding a heavy I/O slot."""
        async with self._connect() as db:
            return await self._count_slots(db)

    async def delete(self, migration_id: int) -> bool:
        """Remove a terminal migration.

        Raises:
            PDSMigrateError: If the migration is still active
        """
        migration = await self.get(migration_id)
        if migration is None:
            return False
        if not migration.status.is_terminal:
            raise PDSMigrateError(
                f"Refusing to delete active migration {migration.token} ({migration.status.value})"
            )
        async with self._connect() as db:
            await db.execute("DELETE FROM migrations WHERE id = ?", (migration_id,))
        logger.info("Migration deleted", migration_id=migration_id)
        return True

    @staticmethod
    async def _count_slots(db: aiosqlite.Connection, exclude_id: int | None = None) -> int:
        query = (
            "SELECT COUNT(*) FROM migrations WHERE heavy_io_slot = 1 "
            f"AND status IN ({_placeholders(_HEAVY_VALUES)})"
        )
        params: tuple = _HEAVY_VALUES
        if exclude_id is not None:
            query += " AND id != ?"
            params = (*params, exclude_id)
        cursor = await db.execute(query, params)
        (count,) = await cursor.fetchone()
        return count

    def _load(self, row) -> Migration | None:
        if row is None:
            return None
        return Migration.model_validate_json(row[0]).attach_box(self.box)
