"""
Migration Service

Business logic behind the user-facing operations: submitting a migration,
reading its status, cancelling it, and the PLC token handoff.
"""

import secrets
from typing import Any

import structlog
from pydantic import ValidationError

from ..constants import (
    BLOB_PROGRESS,
    PLC_OPERATION_SUBMITTED_AT,
    PLC_OPERATION_SUBMITTING_AT,
    PLC_TOKEN_REQUESTED_AT,
    PLC_UPDATE_CLAIMED_BY,
)
from ..core.error_classifier import explain_error
from ..core.exceptions import MigrationValidationError
from ..core.pds_client import PDSClient
from ..core.secrets import SecretBox
from ..core.settings import MigrationSettings
from ..core.store import MigrationStore
from ..core.xrpc import XrpcTransport
from ..models.enums import MigrationStatus, MigrationType, ServerRole
from ..models.migration import Migration
from .notifier import Notifier
from .orchestrator import MigrationOrchestrator
from .stages import WaitForPlcTokenStage

GENERATED_PASSWORD_BYTES = 24

# Progress keys set while the directory update runs; PLC token writes wait for them
PLC_UPDATE_KEYS = (PLC_UPDATE_CLAIMED_BY, PLC_OPERATION_SUBMITTING_AT, PLC_OPERATION_SUBMITTED_AT)
OTP_FIELDS = ("plc_otp", "plc_otp_expires_at", "plc_otp_attempts")
PLC_TOKEN_FIELDS = ("encrypted_plc_token", "plc_token_expires_at")


class MigrationService:
    """Service for submitting and steering account migrations."""

    def __init__(
        self,
        store: MigrationStore,
        box: SecretBox,
        transport: XrpcTransport,
        orchestrator: MigrationOrchestrator,
        notifier: Notifier,
        settings: MigrationSettings,
    ):
        self.store = store
        self.box = box
        self.transport = transport
        self.orchestrator = orchestrator
        self.notifier = notifier
        self.settings = settings
        self.logger = structlog.get_logger("migration").bind(component="migration_service")

    async def submit(
        self,
        did: str,
        old_handle: str,
        new_handle: str,
        old_pds_host: str,
        new_pds_host: str,
        email: str,
        password: str,
        migration_type: MigrationType = MigrationType.MIGRATION_OUT,
        invite_code: str | None = None,
        auth_factor_token: str | None = None,
        locale: str = "en",
        new_pds_password: str | None = None,
    ) -> dict[str, Any]:
        """Validate, authenticate against the source and start a migration.

        The user's password is used for the source login here and never
        stored. Outbound migrations get a generated destination password;
        inbound migrations log in to the destination with ``new_pds_password``,
        the user's credential for the account already on the new PDS. The
        source password is never sent to the destination.

        Raises:
            MigrationValidationError: Invalid input, or the DID already has an
                active migration
            MigrationError: TWO_FACTOR_REQUIRED when the source wants an
                emailed code; AUTHENTICATION for bad credentials
        """
        try:
            migration = Migration(
                did=did,
                old_handle=old_handle,
                new_handle=new_handle,
                old_pds_host=old_pds_host,
                new_pds_host=new_pds_host,
                email=email,
                migration_type=migration_type,
                locale=locale,
            )
        except ValidationError as e:
            raise MigrationValidationError(_validation_message(e)) from e

        if migration_type is MigrationType.MIGRATION_IN and not new_pds_password:
            raise MigrationValidationError(
                "Inbound migrations need the password for the account on the new PDS"
            )
        if migration_type is MigrationType.MIGRATION_OUT and new_pds_password:
            raise MigrationValidationError(
                "Outbound migrations generate the new PDS password, do not supply one"
            )

        migration.attach_box(self.box)
        if migration_type is MigrationType.MIGRATION_OUT:
            migration.set_secret("password", secrets.token_urlsafe(GENERATED_PASSWORD_BYTES))
        if invite_code:
            migration.set_secret("invite_code", invite_code.strip())

        client = PDSClient.for_migration(migration, self.transport, self.store, self.settings)
        await client.login(ServerRole.SOURCE, migration.old_handle, password, auth_factor_token)
        if migration_type is MigrationType.MIGRATION_IN:
            await client.login(ServerRole.DESTINATION, migration.did, new_pds_password)

        migration = await self.store.create(migration)
        self.orchestrator.enqueue_next(migration)
        self.logger.info(
            "Migration submitted",
            migration_id=migration.id,
            did=migration.did,
            migration_type=migration.migration_type.value,
            new_pds_host=migration.new_pds_host,
        )
        return {
            "success": True,
            "token": migration.token,
            "did": migration.did,
            "status": migration.status.value,
        }

    async def status(self, token: str) -> dict[str, Any]:
        migration = await self._get(token)
        progress = {k: v for k, v in migration.progress_data.items() if k != BLOB_PROGRESS}
        result: dict[str, Any] = {
            "token": migration.token,
            "did": migration.did,
            "status": migration.status.value,
            "migration_type": migration.migration_type.value,
            "progress_percentage": migration.progress_percentage,
            "estimated_time_remaining": migration.estimated_time_remaining,
            "progress": progress,
            "can_cancel": migration.can_cancel,
            "current_job_step": migration.current_job_step,
            "current_job_attempt": migration.current_job_attempt,
            "current_job_max_attempts": migration.current_job_max_attempts,
            "job_retrying": migration.job_retrying,
            "last_error": migration.last_error,
            "credentials_expires_at": (
                migration.credentials_expires_at.isoformat()
                if migration.credentials_expires_at
                else None
            ),
            "created_at": migration.created_at.isoformat(),
            "updated_at": migration.updated_at.isoformat(),
        }
        advisory = explain_error(migration)
        if advisory is not None:
            result["advisory"] = advisory.to_dict()
        return result

    async def cancel(self, token: str) -> dict[str, Any]:
        """Cancel a migration that has not reached the PLC stage.

        Raises:
            MigrationValidationError: If the migration can no longer be cancelled
        """
        migration = await self._get(token)
        if not migration.can_cancel:
            raise MigrationValidationError(
                f"Migration {migration.token} cannot be cancelled in status {migration.status.value}"
            )
        previous = migration.status
        migration.cancel()
        if not await self.store.save(migration, expected_status=previous):
            raise MigrationValidationError(
                f"Migration {migration.token} changed while cancelling, please retry"
            )
        self.logger.info("Migration cancelled", migration_id=migration.id, status=previous.value)
        return {"success": True, "token": migration.token, "status": migration.status.value}

    async def request_plc_otp(self, token: str) -> dict[str, Any]:
        """Issue the one-time code that guards PLC token submission."""
        migration = await self._require_pending_plc(token)
        code = migration.generate_plc_otp()
        await self._save_plc_fields(migration, OTP_FIELDS)
        try:
            await self.notifier.plc_otp(migration, code)
        except Exception as e:
            self.logger.warning("PLC OTP notification failed", migration_id=migration.id, error=str(e))
        return {
            "success": True,
            "token": migration.token,
            "expires_at": migration.plc_otp_expires_at.isoformat(),
        }

    async def submit_plc_token(self, token: str, plc_token: str, otp: str) -> dict[str, Any]:
        """Accept the emailed PLC token and start the directory update.

        Raises:
            MigrationValidationError: Wrong stage, blank token, or OTP rejected
        """
        migration = await self._require_pending_plc(token)
        if migration.plc_submission_started:
            raise MigrationValidationError("PLC operation already submitted")
        if not plc_token or not plc_token.strip():
            raise MigrationValidationError("PLC token is required")

        ok, error = migration.verify_plc_otp(otp)
        if not ok:
            # persist the attempt counter
            await self._save_plc_fields(migration, OTP_FIELDS)
            self.logger.warning("PLC OTP rejected", migration_id=migration.id, reason=error)
            raise MigrationValidationError(error)

        migration.set_secret("plc_token", plc_token.strip())
        await self._save_plc_fields(migration, OTP_FIELDS + PLC_TOKEN_FIELDS)
        self.orchestrator.request_plc_update(migration)
        self.logger.info("PLC token submitted", migration_id=migration.id)
        return {"success": True, "token": migration.token, "status": migration.status.value}

    async def retry_plc_request(self, token: str) -> dict[str, Any]:
        """Ask the source to email a fresh PLC token."""
        migration = await self._require_pending_plc(token)
        if migration.plc_submission_started:
            raise MigrationValidationError("PLC operation already submitted")
        migration.progress_data.pop(PLC_TOKEN_REQUESTED_AT, None)
        migration.clear_plc_token()
        await self._save_plc_fields(migration, ("progress_data",) + PLC_TOKEN_FIELDS)
        self.orchestrator.enqueue(WaitForPlcTokenStage.name, migration.id)
        self.logger.info("PLC token re-requested", migration_id=migration.id)
        return {"success": True, "token": migration.token}

    async def _get(self, token: str) -> Migration:
        migration = await self.store.get_by_token(token.strip())
        if migration is None:
            raise MigrationValidationError(f"Migration {token} not found")
        return migration

    async def _require_pending_plc(self, token: str) -> Migration:
        migration = await self._get(token)
        if migration.status is not MigrationStatus.PENDING_PLC:
            raise MigrationValidationError(
                f"Migration {migration.token} is not waiting for a PLC token "
                f"(status {migration.status.value})"
            )
        return migration

    async def _save_plc_fields(self, migration: Migration, fields: tuple[str, ...]) -> None:
        if not await self.store.save_fields(migration, fields, blocked_by=PLC_UPDATE_KEYS):
            raise MigrationValidationError(
                f"Migration {migration.token} is updating its PLC identity or changed, please retry"
            )


def _validation_message(error: ValidationError) -> str:
    return "; ".join(str(item["msg"]).removeprefix("Value error, ") for item in error.errors())
