"""
Migration Stages

One class per stage of the migration. A stage is handed a freshly loaded
Migration that is in one of its ``statuses``; it performs its remote work
through the PDSClient, persists progress and transitions, and reports what
should happen next as a StageOutcome. Failures are raised as MigrationError
and handled by the orchestrator.
"""

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import structlog

from ..constants import (
    ACCOUNT_ACTIVATED_AT,
    COMPLETED_AT,
    CREATE_ACCOUNT,
    CREDENTIALS_EXPIRED_MESSAGE,
    DESTINATION_ACCOUNT_CREATED_AT,
    DESTINATION_ACCOUNT_REQUESTED_AT,
    DESTINATION_PASSWORD_EXPIRED_MESSAGE,
    ERR_EXPIRED_TOKEN,
    ERR_INVALID_TOKEN,
    ERR_REPO_DEACTIVATED,
    EXISTING_ACCOUNT_DEACTIVATED,
    HEAVY_IO_ADMITTED_AT,
    OLD_PDS_DEACTIVATION_ERROR,
    ORPHANED_ACCOUNT_MESSAGE,
    PLC_CODE_EXPIRED_MESSAGE,
    PLC_OPERATION_SUBMITTED_AT,
    PLC_OPERATION_SUBMITTING_AT,
    PLC_SUBMISSION_INTERRUPTED_MESSAGE,
    PLC_TOKEN_MISSING_MESSAGE,
    PLC_TOKEN_REQUESTED_AT,
    PLC_UPDATE_CLAIMED_BY,
    PREFERENCES_COUNT,
    REPO_SIZE_BYTES,
    ROTATION_KEY_GENERATED_AT,
    ROTATION_KEY_PUBLIC,
)
from ..core.admission import AdmissionController
from ..core.exceptions import MigrationError, StaleMigrationError
from ..core.pds_client import PDSClient
from ..core.secrets import generate_rotation_key
from ..core.settings import MigrationSettings
from ..core.store import MigrationStore
from ..core.transfer import BlobTransferEngine, RepoTransfer, remove_work_dir
from ..models.enums import ErrorKind, MigrationStatus, MigrationType, ServerRole
from ..models.migration import Migration, utcnow
from .notifier import Notifier


class StageResult(Enum):
    ADVANCED = "advanced"
    RESCHEDULE = "reschedule"
    WAITING = "waiting"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class StageOutcome:
    """What the orchestrator should do after a stage returns."""

    result: StageResult
    delay: float = 0.0
    reason: str | None = None

    @classmethod
    def advanced(cls) -> "StageOutcome":
        return cls(StageResult.ADVANCED)

    @classmethod
    def reschedule(cls, delay: float, reason: str) -> "StageOutcome":
        return cls(StageResult.RESCHEDULE, delay=delay, reason=reason)

    @classmethod
    def waiting(cls, reason: str) -> "StageOutcome":
        return cls(StageResult.WAITING, reason=reason)

    @classmethod
    def skipped(cls, reason: str) -> "StageOutcome":
        return cls(StageResult.SKIPPED, reason=reason)


@dataclass
class StageContext:
    """Collaborators shared by every stage."""

    store: MigrationStore
    settings: MigrationSettings
    notifier: Notifier
    admission: AdmissionController
    # identifies this process in durable claims
    owner: str = field(default_factory=lambda: uuid.uuid4().hex)

    async def checkpoint(
        self, migration: Migration, expected_status: MigrationStatus | None = None
    ) -> None:
        """Persist the record unless it moved on since it was loaded.

        Raises:
            StaleMigrationError: If the stored status no longer matches
        """
        expected = expected_status or migration.status
        if not await self.store.save(migration, expected_status=expected):
            raise StaleMigrationError(
                f"Migration {migration.id} is no longer {expected.value}"
            )


class Stage(ABC):
    """Base class for migration stages."""

    name: str = "stage"
    statuses: tuple[MigrationStatus, ...] = ()

    def __init__(self, context: StageContext):
        self.context = context
        self.logger = structlog.get_logger("migration").bind(component=self.name)

    @property
    def settings(self) -> MigrationSettings:
        return self.context.settings

    @property
    def work_root(self) -> Path:
        return self.settings.work_dir

    def applies_to(self, migration: Migration) -> bool:
        return migration.status in self.statuses

    @abstractmethod
    async def run(self, migration: Migration, client: PDSClient) -> StageOutcome:
        """Do this stage's work for ``migration``."""

    def final_error(self, migration: Migration, error: MigrationError) -> MigrationError:
        """The error recorded when this stage gives up on ``migration``."""
        return error

    async def advance(self, migration: Migration) -> None:
        """Move to the next status and persist it."""
        previous = migration.status
        migration.transition_to(migration.next_status)
        await self.context.checkpoint(migration, expected_status=previous)
        self.logger.info(
            "Migration advanced",
            migration_id=migration.id,
            from_status=previous.value,
            to_status=migration.status.value,
        )

    async def _notify(self, event: str, *args: Any) -> None:
        """Send a notice; failures are logged and never block the migration."""
        try:
            await getattr(self.context.notifier, event)(*args)
        except Exception as e:
            self.logger.warning("Notification failed", notice=event, error=str(e))


class CreateAccountStage(Stage):
    """Create (or, for inbound migrations, verify) the destination account."""

    name = "create_account"
    statuses = (MigrationStatus.PENDING_ACCOUNT, MigrationStatus.ACCOUNT_CREATED)

    async def run(self, migration: Migration, client: PDSClient) -> StageOutcome:
        if migration.status is MigrationStatus.PENDING_ACCOUNT:
            if migration.migration_type is MigrationType.MIGRATION_IN:
                await self._verify_existing_account(migration, client)
            else:
                await self._create_account(migration, client)
            await self.advance(migration)
        await self.advance(migration)
        return StageOutcome.advanced()

    async def _create_account(self, migration: Migration, client: PDSClient) -> None:
        password = migration.password
        if not password:
            raise MigrationError(ErrorKind.CREDENTIALS_NEED_REAUTH, DESTINATION_PASSWORD_EXPIRED_MESSAGE)

        if not migration.progress_data.get(DESTINATION_ACCOUNT_CREATED_AT):
            server = await client.describe_server(ServerRole.DESTINATION)
            service_did = server.get("did")
            if not service_did:
                raise MigrationError(
                    ErrorKind.GENERIC,
                    f"Destination {migration.new_pds_host} did not report a service DID",
                )
            if not await self._check_orphaned_account(migration, client):
                service_auth = await client.get_service_auth(service_did, CREATE_ACCOUNT)
                migration.set_progress(**{DESTINATION_ACCOUNT_REQUESTED_AT: utcnow().isoformat()})
                await self.context.checkpoint(migration)
                await client.create_account(
                    migration.new_handle, migration.email, password, service_auth, migration.invite_code
                )
            migration.set_progress(**{DESTINATION_ACCOUNT_CREATED_AT: utcnow().isoformat()})
            await self.context.checkpoint(migration)
            self.logger.info(
                "Destination account created", migration_id=migration.id, handle=migration.new_handle
            )

        await client.login_destination()

    async def _check_orphaned_account(self, migration: Migration, client: PDSClient) -> bool:
        """Refuse to create over an existing repo for this DID on the destination.

        Returns:
            True when the deactivated repo found is the one an interrupted
            earlier attempt of this migration created
        """
        try:
            await client.describe_repo(ServerRole.DESTINATION)
        except MigrationError as e:
            if e.code == ERR_REPO_DEACTIVATED:
                if await self._created_by_earlier_attempt(migration, client):
                    return True
                raise MigrationError(
                    ErrorKind.ACCOUNT_EXISTS, ORPHANED_ACCOUNT_MESSAGE, status=e.status, code=e.code
                ) from e
            if e.kind is ErrorKind.GENERIC:
                # not found: the expected case
                return False
            raise
        raise MigrationError(ErrorKind.ACCOUNT_EXISTS, "Account already exists on target PDS")

    async def _created_by_earlier_attempt(self, migration: Migration, client: PDSClient) -> bool:
        # only our generated password can log in to an account we created
        if not migration.progress_data.get(DESTINATION_ACCOUNT_REQUESTED_AT):
            return False
        try:
            await client.login_destination()
        except MigrationError as e:
            if e.kind is ErrorKind.AUTHENTICATION:
                return False
            raise
        self.logger.info(
            "Resuming with destination account from an interrupted attempt", migration_id=migration.id
        )
        return True

    async def _verify_existing_account(self, migration: Migration, client: PDSClient) -> None:
        access = await client.verify_existing_account_access()
        migration.set_progress(**{EXISTING_ACCOUNT_DEACTIVATED: access["deactivated"]})
        self.logger.info(
            "Existing destination account verified",
            migration_id=migration.id,
            deactivated=access["deactivated"],
        )


class ImportRepoStage(Stage):
    name = "import_repo"
    statuses = (MigrationStatus.PENDING_REPO,)

    async def run(self, migration: Migration, client: PDSClient) -> StageOutcome:
        result = await RepoTransfer(client, self.work_root).transfer(migration)
        migration.set_progress(**{REPO_SIZE_BYTES: result["repo_size_bytes"]})
        await self.advance(migration)
        return StageOutcome.advanced()


class ImportBlobsStage(Stage):
    """Heavy I/O stage: gated by admission control."""

    name = "import_blobs"
    statuses = (MigrationStatus.PENDING_BLOBS,)

    async def run(self, migration: Migration, client: PDSClient) -> StageOutcome:
        if not await self.context.admission.admit(migration):
            return StageOutcome.reschedule(
                self.settings.admission_retry_delay, "Heavy I/O capacity exhausted"
            )
        migration.set_progress(**{HEAVY_IO_ADMITTED_AT: utcnow().isoformat()})

        engine = BlobTransferEngine(
            client,
            lambda: self.context.checkpoint(migration),
            self.work_root,
            parallel=self.settings.parallel_blobs,
            checkpoint_every=self.settings.progress_update_interval,
        )
        result = await engine.transfer(migration)
        if result["failed_blobs"]:
            self.logger.warning(
                "Continuing with failed blobs",
                migration_id=migration.id,
                failed=len(result["failed_blobs"]),
            )
        await self.advance(migration)
        return StageOutcome.advanced()


class ImportPrefsStage(Stage):
    name = "import_prefs"
    statuses = (MigrationStatus.PENDING_PREFS,)

    async def run(self, migration: Migration, client: PDSClient) -> StageOutcome:
        preferences = await client.get_preferences()
        await client.put_preferences(preferences)
        migration.set_progress(**{PREFERENCES_COUNT: len(preferences)})
        await self.advance(migration)
        return StageOutcome.advanced()


class WaitForPlcTokenStage(Stage):
    """Store a recovery rotation key, then ask the source to email a PLC token.

    The key is durably stored and the user notified before the token request,
    so a user who goes on to submit the token always has their recovery key.
    """

    name = "wait_for_plc_token"
    statuses = (MigrationStatus.PENDING_PLC,)

    async def run(self, migration: Migration, client: PDSClient) -> StageOutcome:
        if migration.plc_submission_started:
            return StageOutcome.skipped("PLC operation already submitted")
        if migration.progress_data.get(PLC_TOKEN_REQUESTED_AT):
            return StageOutcome.waiting("PLC token already requested")

        if migration.rotation_key is None:
            key = generate_rotation_key()
            migration.set_secret("rotation_key", key.private_key_hex)
            migration.set_progress(
                **{
                    ROTATION_KEY_PUBLIC: key.did_key,
                    ROTATION_KEY_GENERATED_AT: utcnow().isoformat(),
                }
            )
            await self.context.checkpoint(migration)
            self.logger.info(
                "Rotation key generated", migration_id=migration.id, did_key=key.did_key
            )
            await self._notify("rotation_key_created", migration, key.private_key_hex)

        try:
            await client.request_plc_token()
        except MigrationError as e:
            raise MigrationError(
                e.kind,
                f"Failed to request PLC token: {e.message}",
                retry_after=e.retry_after,
                status=e.status,
                code=e.code,
                retryable=e.kind not in (ErrorKind.CREDENTIALS_NEED_REAUTH, ErrorKind.TWO_FACTOR_REQUIRED),
            ) from e

        migration.set_progress(**{PLC_TOKEN_REQUESTED_AT: utcnow().isoformat()})
        await self.context.checkpoint(migration)
        await self._notify("plc_token_requested", migration)
        return StageOutcome.waiting("Awaiting PLC token from user")


class UpdatePlcStage(Stage):
    """Sign and submit the directory update moving the identity to the destination.

    Submission is the point of no return: failures before it are retryable,
    failures from it onward are critical. Signing starts only after a durable
    claim, and ``plc_operation_submitting_at`` is recorded before the submit
    call, so no two runs submit and an interrupted submission is never retried
    blindly.
    """

    name = "update_plc"
    statuses = (MigrationStatus.PENDING_PLC,)

    async def run(self, migration: Migration, client: PDSClient) -> StageOutcome:
        if migration.progress_data.get(PLC_OPERATION_SUBMITTED_AT):
            await self.advance(migration)
            return StageOutcome.advanced()
        if migration.progress_data.get(PLC_OPERATION_SUBMITTING_AT):
            raise MigrationError(ErrorKind.CRITICAL_PLC, PLC_SUBMISSION_INTERRUPTED_MESSAGE)

        plc_token = self._require_plc_token(migration)
        _, source_refresh = migration.session_tokens(ServerRole.SOURCE)
        if source_refresh is None:
            raise MigrationError(ErrorKind.CREDENTIALS_NEED_REAUTH, CREDENTIALS_EXPIRED_MESSAGE)

        await self._claim(migration)
        try:
            credentials = await client.get_recommended_credentials()
            operation = await client.sign_plc_operation(
                plc_token, credentials, migration.progress_data.get(ROTATION_KEY_PUBLIC)
            )
        except MigrationError as e:
            # released when the orchestrator records the failure
            migration.progress_data.pop(PLC_UPDATE_CLAIMED_BY, None)
            raise self._before_submission_error(e) from e

        await self._mark_submitting(migration)
        try:
            await client.submit_plc_operation(operation)
        except MigrationError as e:
            raise MigrationError(
                ErrorKind.CRITICAL_PLC,
                f"CRITICAL: PLC update failed after submission - {e.message}",
                status=e.status,
                code=e.code,
            ) from e

        migration.progress_data.pop(PLC_UPDATE_CLAIMED_BY, None)
        migration.set_progress(**{PLC_OPERATION_SUBMITTED_AT: utcnow().isoformat()})
        migration.clear_plc_token()
        await self.context.checkpoint(migration)
        self.logger.info("PLC operation submitted", migration_id=migration.id)
        await self.advance(migration)
        return StageOutcome.advanced()

    def final_error(self, migration: Migration, error: MigrationError) -> MigrationError:
        if not migration.plc_submission_started or error.kind is ErrorKind.CRITICAL_PLC:
            return error
        return MigrationError(
            ErrorKind.CRITICAL_PLC,
            f"CRITICAL: PLC update failed after submission - {error.message}",
            status=error.status,
            code=error.code,
        )

    async def _claim(self, migration: Migration) -> None:
        """Take the durable PLC update claim for this process.

        Raises:
            StaleMigrationError: If another run holds the claim or already
                started the submission
        """
        previous = migration.progress_data.get(PLC_UPDATE_CLAIMED_BY)
        claimed = await self.context.store.claim_progress(
            migration,
            PLC_UPDATE_CLAIMED_BY,
            self.context.owner,
            blocked_by=(PLC_OPERATION_SUBMITTING_AT, PLC_OPERATION_SUBMITTED_AT),
        )
        if not claimed:
            raise StaleMigrationError(f"PLC update for migration {migration.id} is already running")
        if previous and previous != self.context.owner:
            self.logger.warning(
                "Took over PLC update claim from an interrupted run", migration_id=migration.id
            )

    async def _mark_submitting(self, migration: Migration) -> None:
        """Record that submission is about to start, if this run still holds the claim."""
        marked = await self.context.store.claim_progress(
            migration,
            PLC_OPERATION_SUBMITTING_AT,
            utcnow().isoformat(),
            blocked_by=(PLC_OPERATION_SUBMITTING_AT, PLC_OPERATION_SUBMITTED_AT),
            held=(PLC_UPDATE_CLAIMED_BY, self.context.owner),
        )
        if not marked:
            raise StaleMigrationError(f"PLC update claim for migration {migration.id} was taken over")

    @staticmethod
    def _require_plc_token(migration: Migration) -> str:
        plc_token = migration.plc_token
        if plc_token:
            return plc_token
        if migration.encrypted_plc_token and migration.plc_token_expires_at:
            raise MigrationError(
                ErrorKind.PLC_TOKEN_EXPIRED,
                f"PLC token has expired (expired at: {migration.plc_token_expires_at.isoformat()}). "
                "Please request a new token.",
            )
        raise MigrationError(ErrorKind.PLC_TOKEN_EXPIRED, PLC_TOKEN_MISSING_MESSAGE)

    def _before_submission_error(self, error: MigrationError) -> MigrationError:
        if error.kind is ErrorKind.CREDENTIALS_NEED_REAUTH:
            return error
        if error.kind is ErrorKind.GENERIC and error.code in (ERR_EXPIRED_TOKEN, ERR_INVALID_TOKEN):
            # the source rejected the emailed confirmation code
            return MigrationError(
                ErrorKind.PLC_TOKEN_EXPIRED, PLC_CODE_EXPIRED_MESSAGE, status=error.status, code=error.code
            )
        return MigrationError(
            ErrorKind.PLC_PRE_SUBMISSION_FAILURE,
            f"PLC update failed (before submission) - {error.message}",
            retry_after=max(error.retry_after or 0, self.settings.plc_retry_delay),
            status=error.status,
            code=error.code,
        )


class ActivateAccountStage(Stage):
    """Activate the destination, retire the source and close out the migration."""

    name = "activate_account"
    statuses = (MigrationStatus.PENDING_ACTIVATION,)

    async def run(self, migration: Migration, client: PDSClient) -> StageOutcome:
        if not migration.progress_data.get(ACCOUNT_ACTIVATED_AT):
            try:
                await client.activate_account()
            except MigrationError as e:
                raise MigrationError(
                    e.kind,
                    f"Failed to activate account: {e.message}",
                    retry_after=e.retry_after,
                    status=e.status,
                    code=e.code,
                    retryable=e.retryable,
                ) from e
            migration.set_progress(**{ACCOUNT_ACTIVATED_AT: utcnow().isoformat()})
            await self.context.checkpoint(migration)

        try:
            await client.deactivate_account()
        except MigrationError as e:
            migration.set_progress(**{OLD_PDS_DEACTIVATION_ERROR: e.message})
            self.logger.warning(
                "Could not deactivate source account", migration_id=migration.id, error=e.message
            )

        password = migration.password
        migration.clear_old_pds_tokens()
        migration.set_progress(**{COMPLETED_AT: utcnow().isoformat()})
        previous = migration.status
        migration.mark_complete()
        await self.context.checkpoint(migration, expected_status=previous)
        self.logger.info("Migration completed", migration_id=migration.id, did=migration.did)
        remove_work_dir(self.work_root, migration)

        await self._notify("migration_completed", migration, password)
        migration.clear_credentials()
        await self.context.store.save(migration)
        return StageOutcome.advanced()

    def final_error(self, migration: Migration, error: MigrationError) -> MigrationError:
        # the directory already points at the destination
        return MigrationError(
            ErrorKind.CRITICAL_PLC,
            f"CRITICAL: PLC update failed after submission - {error.message}",
            status=error.status,
            code=error.code,
        )


STAGES: tuple[type[Stage], ...] = (
    CreateAccountStage,
    ImportRepoStage,
    ImportBlobsStage,
    ImportPrefsStage,
    WaitForPlcTokenStage,
    UpdatePlcStage,
    ActivateAccountStage,
)
