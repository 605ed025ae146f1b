"""Centralized constants for PDS migrations to eliminate duplicate strings."""

# XRPC method names (com.atproto.server)
CREATE_SESSION = "com.atproto.server.createSession"
REFRESH_SESSION = "com.atproto.server.refreshSession"
CREATE_ACCOUNT = "com.atproto.server.createAccount"
ACTIVATE_ACCOUNT = "com.atproto.server.activateAccount"
DEACTIVATE_ACCOUNT = "com.atproto.server.deactivateAccount"
CHECK_ACCOUNT_STATUS = "com.atproto.server.checkAccountStatus"
DESCRIBE_SERVER = "com.atproto.server.describeServer"
GET_SERVICE_AUTH = "com.atproto.server.getServiceAuth"

# XRPC method names (repo / sync)
DESCRIBE_REPO = "com.atproto.repo.describeRepo"
IMPORT_REPO = "com.atproto.repo.importRepo"
UPLOAD_BLOB = "com.atproto.repo.uploadBlob"
LIST_MISSING_BLOBS = "com.atproto.repo.listMissingBlobs"
GET_REPO = "com.atproto.sync.getRepo"
LIST_BLOBS = "com.atproto.sync.listBlobs"
GET_BLOB = "com.atproto.sync.getBlob"

# XRPC method names (preferences / identity)
GET_PREFERENCES = "app.bsky.actor.getPreferences"
PUT_PREFERENCES = "app.bsky.actor.putPreferences"
REQUEST_PLC_SIGNATURE = "com.atproto.identity.requestPlcOperationSignature"
GET_RECOMMENDED_CREDENTIALS = "com.atproto.identity.getRecommendedDidCredentials"
SIGN_PLC_OPERATION = "com.atproto.identity.signPlcOperation"
SUBMIT_PLC_OPERATION = "com.atproto.identity.submitPlcOperation"

# Remote error names
ERR_AUTH_FACTOR_REQUIRED = "AuthFactorTokenRequired"
ERR_RATE_LIMIT_EXCEEDED = "RateLimitExceeded"
ERR_EXPIRED_TOKEN = "ExpiredToken"
ERR_INVALID_TOKEN = "InvalidToken"
ERR_REPO_DEACTIVATED = "RepoDeactivated"
ERR_REPO_NOT_FOUND = "RepoNotFound"
ERR_BLOB_NOT_FOUND = "BlobNotFound"
ERR_INVALID_INVITE_CODE = "InvalidInviteCode"
ACCOUNT_EXISTS_ERRORS = frozenset({"AccountExists", "HandleNotAvailable", "DidAlreadyExists"})

# Token formats
MIGRATION_TOKEN_PREFIX = "EURO-"
MIGRATION_TOKEN_LENGTH = 16
MIGRATION_TOKEN_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"

# Secret lifetimes (seconds)
CREDENTIALS_TTL = 48 * 3600
PLC_TOKEN_TTL = 3600
SERVICE_AUTH_TTL = 3600
PLC_OTP_TTL = 15 * 60
PLC_OTP_MAX_ATTEMPTS = 5

# Blob transfer
BLOB_MAX_ATTEMPTS = 3
BLOB_CHUNK_SIZE = 64 * 1024
FAILED_BLOB_MANIFEST = "FAILED_BLOB_UPLOADS.txt"
UNKNOWN_BLOB_SIZE = -1

# Progress data keys
FAILED_BLOBS = "failed_blobs"
BLOB_PROGRESS = "blobs"
BLOBS_TOTAL = "blobs_total"
BLOBS_COMPLETED = "blobs_completed"
BLOBS_FAILED = "blobs_failed"
BLOB_BYTES_TRANSFERRED = "blob_bytes_transferred"
BLOB_BYTES_TOTAL = "blob_bytes_total"
BLOBS_STARTED_AT = "blobs_started_at"
HEAVY_IO_ADMITTED_AT = "heavy_io_admitted_at"
ROTATION_KEY_PUBLIC = "rotation_key_public"
ROTATION_KEY_GENERATED_AT = "rotation_key_generated_at"
PLC_TOKEN_REQUESTED_AT = "plc_token_requested_at"
PLC_UPDATE_CLAIMED_BY = "plc_update_claimed_by"
PLC_OPERATION_SUBMITTING_AT = "plc_operation_submitting_at"
PLC_OPERATION_SUBMITTED_AT = "plc_operation_submitted_at"
DESTINATION_ACCOUNT_REQUESTED_AT = "destination_account_requested_at"
DESTINATION_ACCOUNT_CREATED_AT = "destination_account_created_at"
EXISTING_ACCOUNT_DEACTIVATED = "existing_account_deactivated"
REPO_SIZE_BYTES = "repo_size_bytes"
PREFERENCES_COUNT = "preferences_count"
ACCOUNT_ACTIVATED_AT = "account_activated_at"
OLD_PDS_DEACTIVATION_ERROR = "old_pds_deactivation_error"
COMPLETED_AT = "completed_at"

# Messages the error classifier keys on
CANCELLED_MESSAGE = "Migration cancelled by user"
ACTIVE_MIGRATION_MESSAGE = "already has an active migration in progress"
ORPHANED_ACCOUNT_MESSAGE = "DID already exists - orphaned account detected"
PLC_TOKEN_MISSING_MESSAGE = "PLC token is missing. Please request a new token."
CREDENTIALS_EXPIRED_MESSAGE = (
    "Credentials expired: old PDS session no longer available. "
    "Please re-authenticate to continue."
)
PLC_CODE_EXPIRED_MESSAGE = (
    "PLC confirmation code expired. The code from your old PDS is only valid "
    "for a limited time. Please request a new one."
)
DESTINATION_PASSWORD_EXPIRED_MESSAGE = (
    "Credentials expired: new PDS password no longer available. "
    "Please re-authenticate to continue."
)
PLC_SUBMISSION_INTERRUPTED_MESSAGE = (
    "CRITICAL: PLC update failed after submission - the submission was interrupted "
    "and its outcome is unknown. Check the DID document before retrying."
)
