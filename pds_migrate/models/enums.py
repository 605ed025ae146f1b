"""Enum definitions for PDS migrations."""

from enum import Enum


class MigrationStatus(Enum):
    """Migration stage, declared in stage order.

    Members compare ordinally through ``rank``; the terminal statuses sort
    after every active stage.
    """

    PENDING_DOWNLOAD = "pending_download"
    PENDING_BACKUP = "pending_backup"
    BACKUP_READY = "backup_ready"
    PENDING_ACCOUNT = "pending_account"
    ACCOUNT_CREATED = "account_created"
    PENDING_REPO = "pending_repo"
    PENDING_BLOBS = "pending_blobs"
    PENDING_PREFS = "pending_prefs"
    PENDING_PLC = "pending_plc"
    PENDING_ACTIVATION = "pending_activation"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def rank(self) -> int:
        return _STATUS_ORDER.index(self)

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_heavy_io(self) -> bool:
        return self in HEAVY_IO_STATUSES

    @property
    def cancellable(self) -> bool:
        return not self.is_terminal and self.rank < MigrationStatus.PENDING_PLC.rank

    def __lt__(self, other: "MigrationStatus") -> bool:
        if not isinstance(other, MigrationStatus):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: "MigrationStatus") -> bool:
        if not isinstance(other, MigrationStatus):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: "MigrationStatus") -> bool:
        if not isinstance(other, MigrationStatus):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: "MigrationStatus") -> bool:
        if not isinstance(other, MigrationStatus):
            return NotImplemented
        return self.rank >= other.rank


_STATUS_ORDER = list(MigrationStatus)

TERMINAL_STATUSES = frozenset(
    {MigrationStatus.COMPLETED, MigrationStatus.FAILED, MigrationStatus.CANCELLED}
)
HEAVY_IO_STATUSES = frozenset({MigrationStatus.PENDING_DOWNLOAD, MigrationStatus.PENDING_BLOBS})


class MigrationType(Enum):
    """Direction of a migration relative to this service."""

    MIGRATION_OUT = "migration_out"  # create a new account on the destination
    MIGRATION_IN = "migration_in"  # re-claim an existing destination account


class ServerRole(Enum):
    """Which side of the migration a session belongs to."""

    SOURCE = "source"
    DESTINATION = "destination"


class Severity(Enum):
    """Display severity of a classified failure."""

    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ErrorKind(Enum):
    """Closed set of failure kinds shared by the client, engine and classifier."""

    CREDENTIALS_NEED_REAUTH = "credentials_need_reauth"
    PLC_TOKEN_EXPIRED = "plc_token_expired"
    PLC_PRE_SUBMISSION_FAILURE = "plc_pre_submission_failure"
    CRITICAL_PLC = "critical_plc"
    RATE_LIMIT = "rate_limit"
    NETWORK = "network"
    AUTHENTICATION = "authentication"
    TWO_FACTOR_REQUIRED = "two_factor_required"
    ACCOUNT_EXISTS = "account_exists"
    INVITE_CODE = "invite_code"
    IDENTITY_MISMATCH = "identity_mismatch"
    BLOB_NOT_FOUND = "blob_not_found"
    DATA_CORRUPTION = "data_corruption"
    DISK_SPACE = "disk_space"
    CANCELLED = "cancelled"
    GENERIC = "generic"

    @property
    def retryable(self) -> bool:
        return self not in _TERMINAL_KINDS


_TERMINAL_KINDS = frozenset(
    {
        ErrorKind.CREDENTIALS_NEED_REAUTH,
        ErrorKind.PLC_TOKEN_EXPIRED,
        ErrorKind.CRITICAL_PLC,
        ErrorKind.TWO_FACTOR_REQUIRED,
        ErrorKind.ACCOUNT_EXISTS,
        ErrorKind.INVITE_CODE,
        ErrorKind.IDENTITY_MISMATCH,
        ErrorKind.DISK_SPACE,
        ErrorKind.CANCELLED,
    }
)
