"""Migration record: stage graph, encrypted secrets and progress helpers."""

import re
import secrets
from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import BaseModel, Field, PrivateAttr, field_validator

from ..constants import (
    BLOB_BYTES_TOTAL,
    BLOB_BYTES_TRANSFERRED,
    BLOB_PROGRESS,
    BLOBS_COMPLETED,
    BLOBS_STARTED_AT,
    BLOBS_TOTAL,
    CANCELLED_MESSAGE,
    CREDENTIALS_TTL,
    MIGRATION_TOKEN_ALPHABET,
    MIGRATION_TOKEN_LENGTH,
    MIGRATION_TOKEN_PREFIX,
    PLC_OPERATION_SUBMITTED_AT,
    PLC_OPERATION_SUBMITTING_AT,
    PLC_OTP_MAX_ATTEMPTS,
    PLC_OTP_TTL,
    PLC_TOKEN_TTL,
)
from ..core.exceptions import InvalidTransitionError, PDSMigrateError
from .enums import MigrationStatus, MigrationType, ServerRole

DID_PATTERN = re.compile(r"^did:(plc|web):[a-zA-Z0-9._:%-]+$")
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
HANDLE_LABEL_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9-]*[a-z0-9])?$")
BIDI_CHARACTERS = re.compile("[\u200e\u200f\u202a-\u202e\u2066-\u2069]")
TOKEN_PATTERN = re.compile(rf"^{MIGRATION_TOKEN_PREFIX}[A-Z0-9]{{{MIGRATION_TOKEN_LENGTH}}}$")

NEXT_STATUS: dict[MigrationStatus, MigrationStatus] = {
    MigrationStatus.PENDING_DOWNLOAD: MigrationStatus.PENDING_BACKUP,
    MigrationStatus.PENDING_BACKUP: MigrationStatus.BACKUP_READY,
    MigrationStatus.BACKUP_READY: MigrationStatus.PENDING_ACCOUNT,
    MigrationStatus.PENDING_ACCOUNT: MigrationStatus.ACCOUNT_CREATED,
    MigrationStatus.ACCOUNT_CREATED: MigrationStatus.PENDING_REPO,
    MigrationStatus.PENDING_REPO: MigrationStatus.PENDING_BLOBS,
    MigrationStatus.PENDING_BLOBS: MigrationStatus.PENDING_PREFS,
    MigrationStatus.PENDING_PREFS: MigrationStatus.PENDING_PLC,
    MigrationStatus.PENDING_PLC: MigrationStatus.PENDING_ACTIVATION,
    MigrationStatus.PENDING_ACTIVATION: MigrationStatus.COMPLETED,
}

# Minimum progress shown for each stage
STAGE_PROGRESS: dict[MigrationStatus, int] = {
    MigrationStatus.PENDING_ACCOUNT: 0,
    MigrationStatus.ACCOUNT_CREATED: 10,
    MigrationStatus.PENDING_REPO: 20,
    MigrationStatus.PENDING_BLOBS: 20,
    MigrationStatus.PENDING_PREFS: 70,
    MigrationStatus.PENDING_PLC: 80,
    MigrationStatus.PENDING_ACTIVATION: 90,
    MigrationStatus.COMPLETED: 100,
}

# secret name -> (ciphertext field, expiry field or None, default lifetime in seconds)
SECRET_FIELDS: dict[str, tuple[str, str | None, int | None]] = {
    "password": ("encrypted_password", "credentials_expires_at", CREDENTIALS_TTL),
    "plc_token": ("encrypted_plc_token", "plc_token_expires_at", PLC_TOKEN_TTL),
    "invite_code": ("encrypted_invite_code", "invite_code_expires_at", CREDENTIALS_TTL),
    "old_access_token": ("encrypted_old_access_token", "old_tokens_expires_at", CREDENTIALS_TTL),
    "old_refresh_token": ("encrypted_old_refresh_token", "old_tokens_expires_at", CREDENTIALS_TTL),
    "new_access_token": ("encrypted_new_access_token", "new_tokens_expires_at", CREDENTIALS_TTL),
    "new_refresh_token": ("encrypted_new_refresh_token", "new_tokens_expires_at", CREDENTIALS_TTL),
    "rotation_key": ("encrypted_rotation_key", None, None),
}

TOKEN_PREFIX_FOR_ROLE = {ServerRole.SOURCE: "old", ServerRole.DESTINATION: "new"}


def utcnow() -> datetime:
    return datetime.now(UTC)


def clean_handle(handle: str | None) -> str | None:
    """Normalize a user-entered handle.

    Strips whitespace, a leading ``@`` and invisible bidirectional control
    characters (commonly pasted from rich text), then lowercases.
    """
    if handle is None:
        return None
    cleaned = BIDI_CHARACTERS.sub("", handle).strip()
    cleaned = cleaned.lstrip("@")
    return cleaned.lower()


def is_valid_handle(handle: str) -> bool:
    if not handle or len(handle) > 253 or "." not in handle:
        return False
    return all(
        len(label) <= 63 and HANDLE_LABEL_PATTERN.match(label) for label in handle.split(".")
    )


def generate_migration_token() -> str:
    body = "".join(secrets.choice(MIGRATION_TOKEN_ALPHABET) for _ in range(MIGRATION_TOKEN_LENGTH))
    return f"{MIGRATION_TOKEN_PREFIX}{body}"


class Migration(BaseModel):
    """One account migration and its durable checkpoint state."""

    id: int | None = None
    token: str = Field(default_factory=generate_migration_token)
    did: str
    migration_type: MigrationType = MigrationType.MIGRATION_OUT
    old_pds_host: str
    new_pds_host: str
    old_handle: str
    new_handle: str
    email: str
    locale: str = "en"
    status: MigrationStatus = MigrationStatus.PENDING_ACCOUNT
    progress_data: dict[str, Any] = Field(default_factory=dict)

    encrypted_password: str | None = None
    encrypted_plc_token: str | None = None
    encrypted_invite_code: str | None = None
    encrypted_old_access_token: str | None = None
    encrypted_old_refresh_token: str | None = None
    encrypted_new_access_token: str | None = None
    encrypted_new_refresh_token: str | None = None
    encrypted_rotation_key: str | None = None
    credentials_expires_at: datetime | None = None
    plc_token_expires_at: datetime | None = None
    invite_code_expires_at: datetime | None = None
    old_tokens_expires_at: datetime | None = None
    new_tokens_expires_at: datetime | None = None

    plc_otp: str | None = None
    plc_otp_expires_at: datetime | None = None
    plc_otp_attempts: int = 0

    current_job_step: str | None = None
    current_job_attempt: int = 0
    current_job_max_attempts: int = 3
    retry_count: int = 0
    last_error: str | None = None
    error_code: str | None = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    _box: Any = PrivateAttr(default=None)

    @field_validator("old_handle", "new_handle", mode="before")
    @classmethod
    def _clean_handles(cls, value: Any) -> Any:
        return clean_handle(value) if isinstance(value, str) else value

    @field_validator("old_handle", "new_handle")
    @classmethod
    def _validate_handle(cls, value: str) -> str:
        if not is_valid_handle(value):
            raise ValueError(f"Invalid handle format: {value}")
        return value

    @field_validator("did")
    @classmethod
    def _validate_did(cls, value: str) -> str:
        value = value.strip()
        if not DID_PATTERN.match(value):
            raise ValueError(f"Invalid DID format: {value}")
        return value

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        value = value.strip()
        if not EMAIL_PATTERN.match(value):
            raise ValueError(f"Invalid email format: {value}")
        return value

    @field_validator("token")
    @classmethod
    def _validate_token(cls, value: str) -> str:
        if not TOKEN_PATTERN.match(value):
            raise ValueError(f"Invalid migration token format: {value}")
        return value

    @field_validator("old_pds_host", "new_pds_host")
    @classmethod
    def _normalize_host(cls, value: str) -> str:
        value = value.strip().rstrip("/")
        if not value.startswith(("https://", "http://")):
            value = f"https://{value}"
        return value

    # Stage graph

    def can_transition_to(self, new_status: MigrationStatus) -> bool:
        if self.status.is_terminal:
            return False
        if new_status is MigrationStatus.FAILED:
            return True
        if new_status is MigrationStatus.CANCELLED:
            return self.status.cancellable
        return NEXT_STATUS.get(self.status) is new_status

    def transition_to(self, new_status: MigrationStatus) -> None:
        if not self.can_transition_to(new_status):
            raise InvalidTransitionError(
                f"Cannot move migration {self.token} from {self.status.value} to {new_status.value}"
            )
        self.status = new_status
        self.updated_at = utcnow()

    @property
    def next_status(self) -> MigrationStatus | None:
        return NEXT_STATUS.get(self.status)

    @property
    def can_cancel(self) -> bool:
        return self.status.cancellable

    @property
    def is_active(self) -> bool:
        return not self.status.is_terminal

    @property
    def plc_submission_started(self) -> bool:
        """Whether the directory update may already have reached the directory."""
        return bool(
            self.progress_data.get(PLC_OPERATION_SUBMITTING_AT)
            or self.progress_data.get(PLC_OPERATION_SUBMITTED_AT)
        )

    def mark_failed(self, error: str, error_code: str | None = None) -> None:
        self.transition_to(MigrationStatus.FAILED)
        self.last_error = error
        self.error_code = error_code or None
        self.retry_count += 1

    def mark_complete(self) -> None:
        self.transition_to(MigrationStatus.COMPLETED)
        self.last_error = None
        self.error_code = None

    def cancel(self) -> None:
        self.transition_to(MigrationStatus.CANCELLED)
        self.last_error = CANCELLED_MESSAGE
        self.error_code = "cancelled"
        self.clear_credentials()

    # Secrets

    def attach_box(self, box: Any) -> "Migration":
        """Bind the SecretBox used to seal and open this record's secrets."""
        self._box = box
        return self

    def set_secret(self, name: str, value: str | None, ttl: float | None = None) -> None:
        cipher_field, expiry_field, default_ttl = SECRET_FIELDS[name]
        if value is None:
            setattr(self, cipher_field, None)
            return
        if self._box is None:
            raise PDSMigrateError("Migration has no secret box attached")
        setattr(self, cipher_field, self._box.encrypt(value))
        if expiry_field is not None:
            lifetime = default_ttl if ttl is None else ttl
            setattr(self, expiry_field, utcnow() + timedelta(seconds=lifetime))

    def get_secret(self, name: str) -> str | None:
        """Decrypt a secret, or None once its own expiry has passed."""
        cipher_field, expiry_field, _ = SECRET_FIELDS[name]
        ciphertext = getattr(self, cipher_field)
        if ciphertext is None or self._box is None:
            return None
        if expiry_field is not None and self._expired(getattr(self, expiry_field)):
            return None
        return self._box.decrypt(ciphertext)

    def secret_expired(self, name: str) -> bool:
        _, expiry_field, _ = SECRET_FIELDS[name]
        if expiry_field is None:
            return False
        return self._expired(getattr(self, expiry_field))

    @staticmethod
    def _expired(expires_at: datetime | None) -> bool:
        return expires_at is None or expires_at <= utcnow()

    @property
    def password(self) -> str | None:
        return self.get_secret("password")

    @property
    def plc_token(self) -> str | None:
        return self.get_secret("plc_token")

    @property
    def invite_code(self) -> str | None:
        return self.get_secret("invite_code")

    @property
    def rotation_key(self) -> str | None:
        return self.get_secret("rotation_key")

    def session_tokens(self, role: ServerRole) -> tuple[str | None, str | None]:
        prefix = TOKEN_PREFIX_FOR_ROLE[role]
        return self.get_secret(f"{prefix}_access_token"), self.get_secret(f"{prefix}_refresh_token")

    def set_session_tokens(self, role: ServerRole, access: str, refresh: str) -> None:
        prefix = TOKEN_PREFIX_FOR_ROLE[role]
        self.set_secret(f"{prefix}_access_token", access)
        self.set_secret(f"{prefix}_refresh_token", refresh)

    def clear_credentials(self) -> None:
        self.encrypted_password = None
        self.credentials_expires_at = None
        self.clear_plc_token()

    def clear_plc_token(self) -> None:
        self.encrypted_plc_token = None
        self.plc_token_expires_at = None

    def clear_old_pds_tokens(self) -> None:
        self.encrypted_old_access_token = None
        self.encrypted_old_refresh_token = None
        self.old_tokens_expires_at = None

    # Job attempt tracking

    def start_job_attempt(self, step: str, max_attempts: int, attempt: int = 1) -> None:
        self.current_job_step = step
        self.current_job_attempt = attempt
        self.current_job_max_attempts = max_attempts

    def increment_job_attempt(self) -> None:
        self.current_job_attempt += 1

    def clear_job_attempt(self) -> None:
        self.current_job_step = None
        self.current_job_attempt = 0

    @property
    def job_attempts_remaining(self) -> int:
        return max(self.current_job_max_attempts - self.current_job_attempt, 0)

    @property
    def job_retrying(self) -> bool:
        return self.current_job_attempt > 1

    # Progress

    def set_progress(self, **values: Any) -> None:
        self.progress_data.update(values)
        self.updated_at = utcnow()

    def update_blob_progress(self, cid: str, total_size: int, bytes_transferred: int) -> None:
        blobs = self.progress_data.setdefault(BLOB_PROGRESS, {})
        blobs[cid] = {
            "id": cid,
            "total_size": total_size,
            "bytes_transferred": bytes_transferred,
            "last_update": utcnow().isoformat(),
        }

    @property
    def progress_percentage(self) -> int:
        if self.status is MigrationStatus.PENDING_BLOBS:
            fraction = self._blob_fraction()
            return 20 + int(50 * fraction)
        return STAGE_PROGRESS.get(self.status, 0)

    def _blob_fraction(self) -> float:
        total_bytes = self.progress_data.get(BLOB_BYTES_TOTAL) or 0
        if total_bytes > 0:
            transferred = self.progress_data.get(BLOB_BYTES_TRANSFERRED, 0)
            return min(transferred / total_bytes, 1.0)
        total = self.progress_data.get(BLOBS_TOTAL) or 0
        if total > 0:
            return min(self.progress_data.get(BLOBS_COMPLETED, 0) / total, 1.0)
        return 0.0

    @property
    def estimated_time_remaining(self) -> float | None:
        """Seconds left in the blob stage, from the observed transfer rate."""
        if self.status is not MigrationStatus.PENDING_BLOBS:
            return None
        started = self.progress_data.get(BLOBS_STARTED_AT)
        fraction = self._blob_fraction()
        if not started or fraction <= 0:
            return None
        elapsed = (utcnow() - datetime.fromisoformat(started)).total_seconds()
        if elapsed <= 0:
            return None
        return round(elapsed / fraction - elapsed, 1)

    # PLC confirmation OTP

    def generate_plc_otp(self) -> str:
        code = f"{secrets.randbelow(1_000_000):06d}"
        self.plc_otp = code
        self.plc_otp_expires_at = utcnow() + timedelta(seconds=PLC_OTP_TTL)
        self.plc_otp_attempts = 0
        return code

    def verify_plc_otp(self, code: str) -> tuple[bool, str | None]:
        if self.plc_otp is None:
            return False, "Invalid OTP"
        if self.plc_otp_attempts >= PLC_OTP_MAX_ATTEMPTS:
            return False, "Too many failed attempts"
        if self._expired(self.plc_otp_expires_at):
            return False, "OTP has expired"
        if not secrets.compare_digest(self.plc_otp, code.strip()):
            self.plc_otp_attempts += 1
            if self.plc_otp_attempts >= PLC_OTP_MAX_ATTEMPTS:
                return False, "Too many failed attempts"
            return False, "Invalid OTP"
        self.plc_otp = None
        self.plc_otp_expires_at = None
        self.plc_otp_attempts = 0
        return True, None
