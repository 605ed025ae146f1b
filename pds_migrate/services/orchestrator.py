"""
Migration Orchestrator

Drives migrations through their stages. Each stage job reloads the record,
checks that the stage still applies, runs it with a PDSClient bound to the
migration, and then either enqueues the next stage, reschedules itself, or
records the failure. Stage-level retries (bounded attempts with exponential
backoff) sit on top of the client's own rate-limit retries.
"""

import asyncio
import errno
from collections.abc import Callable

import structlog

from ..constants import PLC_TOKEN_REQUESTED_AT
from ..core.admission import AdmissionController
from ..core.error_classifier import explain_error
from ..core.exceptions import InvalidTransitionError, MigrationError, StaleMigrationError
from ..core.pds_client import PDSClient
from ..core.settings import MigrationSettings
from ..core.store import MigrationStore
from ..core.xrpc import XrpcTransport
from ..models.enums import ErrorKind, MigrationStatus
from ..models.migration import Migration
from .notifier import Notifier
from .scheduler import StageScheduler
from .stages import (
    STAGES,
    ActivateAccountStage,
    CreateAccountStage,
    ImportBlobsStage,
    ImportPrefsStage,
    ImportRepoStage,
    Stage,
    StageContext,
    StageOutcome,
    StageResult,
    UpdatePlcStage,
    WaitForPlcTokenStage,
)

ClientFactory = Callable[[Migration], PDSClient]

# Written when an attempt starts, leaving progress to the stages
JOB_ATTEMPT_FIELDS = ("current_job_step", "current_job_attempt", "current_job_max_attempts")

# Stage entered automatically when a migration reaches a status
STAGE_FOR_STATUS: dict[MigrationStatus, str] = {
    MigrationStatus.PENDING_ACCOUNT: CreateAccountStage.name,
    MigrationStatus.ACCOUNT_CREATED: CreateAccountStage.name,
    MigrationStatus.PENDING_REPO: ImportRepoStage.name,
    MigrationStatus.PENDING_BLOBS: ImportBlobsStage.name,
    MigrationStatus.PENDING_PREFS: ImportPrefsStage.name,
    MigrationStatus.PENDING_PLC: WaitForPlcTokenStage.name,
    MigrationStatus.PENDING_ACTIVATION: ActivateAccountStage.name,
}


class MigrationOrchestrator:
    """Stage state machine runner."""

    def __init__(
        self,
        store: MigrationStore,
        settings: MigrationSettings,
        notifier: Notifier,
        admission: AdmissionController,
        *,
        transport: XrpcTransport | None = None,
        scheduler: StageScheduler | None = None,
        client_factory: ClientFactory | None = None,
    ):
        self.store = store
        self.settings = settings
        self.notifier = notifier
        self.scheduler = scheduler or StageScheduler(settings.stage_workers)
        if client_factory is None:
            if transport is None:
                raise ValueError("Either transport or client_factory is required")

            def client_factory(migration: Migration) -> PDSClient:
                return PDSClient.for_migration(migration, transport, store, settings)

        self.client_factory = client_factory
        self.context = StageContext(store, settings, notifier, admission)
        self.stages: dict[str, Stage] = {cls.name: cls(self.context) for cls in STAGES}
        # one stage at a time per migration within this process
        self._locks: dict[int, asyncio.Lock] = {}
        self.logger = structlog.get_logger("migration").bind(component="orchestrator")

    # Scheduling

    def enqueue(self, stage_name: str, migration_id: int, *, delay: float = 0.0, attempt: int = 1) -> None:
        self.scheduler.enqueue(
            lambda: self.run_stage(stage_name, migration_id, attempt),
            name=f"{stage_name}:{migration_id}:{attempt}",
            delay=delay,
        )

    def enqueue_next(self, migration: Migration) -> None:
        """Enqueue the stage that handles the migration's current status, if any."""
        stage_name = STAGE_FOR_STATUS.get(migration.status)
        if stage_name is not None:
            self.enqueue(stage_name, migration.id)

    def request_plc_update(self, migration: Migration) -> None:
        """Start the directory update after the user submitted their PLC token."""
        self.enqueue(UpdatePlcStage.name, migration.id)

    async def resume(self) -> int:
        """Re-enqueue every active migration after a restart.

        Returns:
            Number of migrations resumed
        """
        resumed = 0
        for migration in await self.store.list_active():
            stage_name = self._resume_stage(migration)
            if stage_name is None:
                self.logger.info(
                    "Nothing to resume", migration_id=migration.id, status=migration.status.value
                )
                continue
            self.enqueue(stage_name, migration.id)
            resumed += 1
        self.logger.info("Resumed active migrations", count=resumed)
        return resumed

    @staticmethod
    def _resume_stage(migration: Migration) -> str | None:
        if migration.status is MigrationStatus.PENDING_PLC:
            if not migration.progress_data.get(PLC_TOKEN_REQUESTED_AT):
                return WaitForPlcTokenStage.name
            # a submitted token, or an update cut short, resumes the update itself
            if migration.encrypted_plc_token or migration.plc_submission_started:
                return UpdatePlcStage.name
            return None
        return STAGE_FOR_STATUS.get(migration.status)

    async def stop(self) -> None:
        await self.scheduler.stop()

    # Execution

    async def run_stage(
        self, stage_name: str, migration_id: int, attempt: int = 1
    ) -> StageOutcome | None:
        """Run one stage attempt for one migration.

        Attempts for the same migration are serialized, so a duplicate job
        (a resubmitted PLC token, a resume) waits and then sees the state the
        first one left behind.

        Returns:
            The stage's outcome, or None when the stage failed or no longer applied
        """
        lock = self._locks.setdefault(migration_id, asyncio.Lock())
        async with lock:
            return await self._run_stage(stage_name, migration_id, attempt)

    async def _run_stage(
        self, stage_name: str, migration_id: int, attempt: int
    ) -> StageOutcome | None:
        stage = self.stages[stage_name]
        migration = await self.store.get(migration_id)
        if migration is None:
            self.logger.warning("Migration vanished", migration_id=migration_id, stage=stage_name)
            return None
        if not stage.applies_to(migration):
            self.logger.info(
                "Stage no longer applies",
                migration_id=migration_id,
                stage=stage_name,
                status=migration.status.value,
            )
            return StageOutcome.skipped(f"status is {migration.status.value}")

        log = self.logger.bind(migration_id=migration_id, stage=stage_name, attempt=attempt)
        migration.start_job_attempt(stage_name, self.settings.stage_max_attempts, attempt)
        try:
            if not await self.store.save_fields(migration, JOB_ATTEMPT_FIELDS):
                raise StaleMigrationError(f"Migration {migration_id} changed before {stage_name} started")
            outcome = await stage.run(migration, self.client_factory(migration))
        except MigrationError as e:
            await self._handle_failure(stage, migration, e, attempt)
            return None
        except (StaleMigrationError, InvalidTransitionError) as e:
            log.info("Migration changed while stage ran, stopping", error=str(e))
            return None
        except OSError as e:
            kind = ErrorKind.DISK_SPACE if e.errno == errno.ENOSPC else ErrorKind.GENERIC
            await self._handle_failure(stage, migration, MigrationError(kind, str(e)), attempt)
            return None
        except Exception as e:
            log.exception("Unexpected stage error", error=str(e))
            await self._fail(
                migration, stage.final_error(migration, MigrationError(ErrorKind.GENERIC, str(e)))
            )
            return None

        await self._apply_outcome(stage, migration, outcome, attempt)
        return outcome

    async def _apply_outcome(
        self, stage: Stage, migration: Migration, outcome: StageOutcome, attempt: int
    ) -> None:
        if outcome.result is StageResult.RESCHEDULE:
            self.logger.info(
                "Stage rescheduled",
                migration_id=migration.id,
                stage=stage.name,
                delay=outcome.delay,
                reason=outcome.reason,
            )
            self.enqueue(stage.name, migration.id, delay=outcome.delay, attempt=attempt)
            return

        if migration.is_active:
            migration.clear_job_attempt()
            await self.store.save(migration, expected_status=migration.status)
        if outcome.result is StageResult.ADVANCED:
            self.enqueue_next(migration)

    async def _handle_failure(
        self, stage: Stage, migration: Migration, error: MigrationError, attempt: int
    ) -> None:
        if error.retryable and attempt < self.settings.stage_max_attempts:
            delay = error.retry_after or self.settings.stage_retry_base_delay * 2 ** (attempt - 1)
            migration.last_error = error.message
            migration.increment_job_attempt()
            if await self.store.save(migration, expected_status=migration.status):
                self.logger.warning(
                    "Stage failed, retrying",
                    migration_id=migration.id,
                    stage=stage.name,
                    attempt=attempt,
                    kind=error.kind.value,
                    delay=delay,
                    error=error.message,
                )
                self.enqueue(stage.name, migration.id, delay=delay, attempt=attempt + 1)
            return

        await self._fail(migration, stage.final_error(migration, error))

    async def _fail(self, migration: Migration, error: MigrationError) -> None:
        previous = migration.status
        try:
            migration.mark_failed(error.message, error.kind.value)
        except InvalidTransitionError:
            self.logger.info("Migration already terminal", migration_id=migration.id)
            return
        migration.clear_job_attempt()
        if not await self.store.save(migration, expected_status=previous):
            return
        self.logger.error(
            "Migration failed",
            migration_id=migration.id,
            status=previous.value,
            kind=error.kind.value,
            error=error.message,
        )
        advisory = explain_error(migration)
        try:
            await self.notifier.migration_failed(migration, advisory.to_dict() if advisory else None)
        except Exception as e:
            self.logger.warning("Failure notification failed", migration_id=migration.id, error=str(e))
