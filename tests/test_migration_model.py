"""Tests for the Migration model: validation, stage graph, secrets and progress."""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from pds_migrate.constants import (
    BLOB_BYTES_TOTAL,
    BLOB_BYTES_TRANSFERRED,
    BLOBS_COMPLETED,
    BLOBS_STARTED_AT,
    BLOBS_TOTAL,
    CANCELLED_MESSAGE,
    PLC_OTP_MAX_ATTEMPTS,
)
from pds_migrate.core.exceptions import InvalidTransitionError
from pds_migrate.models.enums import ErrorKind, MigrationStatus, ServerRole
from pds_migrate.models.migration import clean_handle, generate_migration_token, utcnow


class TestValidation:
    """Input normalization and validation."""

    def test_handles_are_cleaned(self, make_migration):
        migration = make_migration(
            old_handle="  @Alice.Old.Example\u202c ", new_handle="\u200eBob.New.Example"
        )
        assert migration.old_handle == "alice.old.example"
        assert migration.new_handle == "bob.new.example"

    def test_clean_handle_passes_none(self):
        assert clean_handle(None) is None

    @pytest.mark.parametrize("handle", ["nodots", "-bad.example", "bad-.example", "a..example", "sp ace.example"])
    def test_invalid_handles_rejected(self, make_migration, handle):
        with pytest.raises(ValidationError, match="Invalid handle format"):
            make_migration(new_handle=handle)

    @pytest.mark.parametrize("did", ["did:plc:abc123", "did:web:example.com"])
    def test_valid_dids(self, make_migration, did):
        assert make_migration(did=did).did == did

    @pytest.mark.parametrize("did", ["plc:abc", "did:key:zabc", "did:plc:", "did:plc:has space"])
    def test_invalid_dids_rejected(self, make_migration, did):
        with pytest.raises(ValidationError, match="Invalid DID format"):
            make_migration(did=did)

    def test_invalid_email_rejected(self, make_migration):
        with pytest.raises(ValidationError, match="Invalid email format"):
            make_migration(email="not-an-email")

    def test_hosts_normalized(self, make_migration):
        migration = make_migration(old_pds_host="old.example/", new_pds_host="https://new.example/")
        assert migration.old_pds_host == "https://old.example"
        assert migration.new_pds_host == "https://new.example"

    def test_generated_token_format(self):
        token = generate_migration_token()
        assert token.startswith("EURO-")
        assert len(token) == len("EURO-") + 16
        assert token[5:].isalnum() and token[5:].upper() == token[5:]

    def test_malformed_token_rejected(self, make_migration):
        with pytest.raises(ValidationError, match="Invalid migration token format"):
            make_migration(token="EURO-short")


class TestStageGraph:
    """Transitions follow the stage order; terminal statuses are final."""

    def test_default_status(self, make_migration):
        assert make_migration().status is MigrationStatus.PENDING_ACCOUNT

    def test_forward_walk_to_completion(self, make_migration):
        migration = make_migration()
        seen = [migration.status]
        while migration.next_status is not None:
            migration.transition_to(migration.next_status)
            seen.append(migration.status)
        assert seen[-1] is MigrationStatus.COMPLETED
        assert seen == sorted(seen)

    def test_cannot_skip_stages(self, make_migration):
        migration = make_migration()
        with pytest.raises(InvalidTransitionError):
            migration.transition_to(MigrationStatus.PENDING_BLOBS)

    def test_fail_from_any_active_status(self, make_migration):
        migration = make_migration(status=MigrationStatus.PENDING_ACTIVATION)
        migration.mark_failed("boom", "network")
        assert migration.status is MigrationStatus.FAILED
        assert migration.error_code == "network"
        assert migration.retry_count == 1

    def test_mark_failed_empty_code_stored_as_none(self, make_migration):
        migration = make_migration()
        migration.mark_failed("boom", "")
        assert migration.error_code is None

    @pytest.mark.parametrize(
        "status", [MigrationStatus.COMPLETED, MigrationStatus.FAILED, MigrationStatus.CANCELLED]
    )
    def test_terminal_statuses_are_final(self, make_migration, status):
        migration = make_migration(status=status)
        assert not migration.is_active
        with pytest.raises(InvalidTransitionError):
            migration.transition_to(MigrationStatus.FAILED)

    @pytest.mark.parametrize(
        "status",
        [
            MigrationStatus.PENDING_ACCOUNT,
            MigrationStatus.ACCOUNT_CREATED,
            MigrationStatus.PENDING_REPO,
            MigrationStatus.PENDING_BLOBS,
            MigrationStatus.PENDING_PREFS,
        ],
    )
    def test_cancel_allowed_before_plc(self, make_migration, box, status):
        migration = make_migration(status=status)
        migration.set_secret("password", "pw")
        migration.cancel()
        assert migration.status is MigrationStatus.CANCELLED
        assert migration.last_error == CANCELLED_MESSAGE
        assert migration.password is None

    @pytest.mark.parametrize(
        "status", [MigrationStatus.PENDING_PLC, MigrationStatus.PENDING_ACTIVATION]
    )
    def test_cancel_refused_from_plc_onward(self, make_migration, status):
        migration = make_migration(status=status)
        assert not migration.can_cancel
        with pytest.raises(InvalidTransitionError):
            migration.cancel()

    def test_status_ordering(self):
        assert MigrationStatus.PENDING_REPO < MigrationStatus.PENDING_PLC
        assert MigrationStatus.COMPLETED > MigrationStatus.PENDING_ACTIVATION
        assert MigrationStatus.PENDING_BLOBS.is_heavy_io
        assert not MigrationStatus.PENDING_REPO.is_heavy_io

    def test_error_kind_retryability(self):
        assert ErrorKind.NETWORK.retryable
        assert ErrorKind.RATE_LIMIT.retryable
        assert ErrorKind.PLC_PRE_SUBMISSION_FAILURE.retryable
        assert not ErrorKind.CRITICAL_PLC.retryable
        assert not ErrorKind.CREDENTIALS_NEED_REAUTH.retryable
        assert not ErrorKind.DISK_SPACE.retryable
        assert not ErrorKind.PLC_TOKEN_EXPIRED.retryable


class TestSecrets:
    """Encrypted secret fields and their expiry."""

    def test_secret_round_trip_is_encrypted(self, make_migration):
        migration = make_migration()
        migration.set_secret("password", "s3cret")
        assert migration.encrypted_password != "s3cret"
        assert "s3cret" not in migration.model_dump_json()
        assert migration.password == "s3cret"
        assert migration.credentials_expires_at > utcnow() + timedelta(hours=47)

    def test_expired_secret_reads_as_none(self, make_migration):
        migration = make_migration()
        migration.set_secret("plc_token", "abc", ttl=-1)
        assert migration.encrypted_plc_token is not None
        assert migration.plc_token is None
        assert migration.secret_expired("plc_token")

    def test_rotation_key_never_expires(self, make_migration):
        migration = make_migration()
        migration.set_secret("rotation_key", "ff" * 32)
        assert migration.rotation_key == "ff" * 32
        assert not migration.secret_expired("rotation_key")

    def test_session_tokens_per_role(self, make_migration):
        migration = make_migration()
        migration.set_session_tokens(ServerRole.SOURCE, "a1", "r1")
        migration.set_session_tokens(ServerRole.DESTINATION, "a2", "r2")
        assert migration.session_tokens(ServerRole.SOURCE) == ("a1", "r1")
        assert migration.session_tokens(ServerRole.DESTINATION) == ("a2", "r2")

        migration.clear_old_pds_tokens()
        assert migration.session_tokens(ServerRole.SOURCE) == (None, None)
        assert migration.session_tokens(ServerRole.DESTINATION) == ("a2", "r2")

    def test_clear_credentials_keeps_rotation_key(self, make_migration):
        migration = make_migration()
        migration.set_secret("password", "pw")
        migration.set_secret("plc_token", "tok")
        migration.set_secret("rotation_key", "aa" * 32)
        migration.clear_credentials()
        assert migration.password is None
        assert migration.plc_token is None
        assert migration.rotation_key == "aa" * 32


class TestProgress:
    """Progress percentage and time estimates."""

    @pytest.mark.parametrize(
        "status,expected",
        [
            (MigrationStatus.PENDING_ACCOUNT, 0),
            (MigrationStatus.ACCOUNT_CREATED, 10),
            (MigrationStatus.PENDING_REPO, 20),
            (MigrationStatus.PENDING_PREFS, 70),
            (MigrationStatus.PENDING_PLC, 80),
            (MigrationStatus.PENDING_ACTIVATION, 90),
            (MigrationStatus.COMPLETED, 100),
        ],
    )
    def test_stage_percentages(self, make_migration, status, expected):
        assert make_migration(status=status).progress_percentage == expected

    def test_blob_stage_uses_bytes(self, make_migration):
        migration = make_migration(status=MigrationStatus.PENDING_BLOBS)
        migration.set_progress(**{BLOB_BYTES_TOTAL: 1000, BLOB_BYTES_TRANSFERRED: 500})
        assert migration.progress_percentage == 45

    def test_blob_stage_falls_back_to_counts(self, make_migration):
        migration = make_migration(status=MigrationStatus.PENDING_BLOBS)
        migration.set_progress(**{BLOBS_TOTAL: 4, BLOBS_COMPLETED: 4})
        assert migration.progress_percentage == 70

    def test_estimated_time_remaining(self, make_migration):
        migration = make_migration(status=MigrationStatus.PENDING_BLOBS)
        started = utcnow() - timedelta(seconds=100)
        migration.set_progress(
            **{BLOBS_TOTAL: 4, BLOBS_COMPLETED: 2, BLOBS_STARTED_AT: started.isoformat()}
        )
        remaining = migration.estimated_time_remaining
        assert remaining == pytest.approx(100, abs=2)

    def test_no_estimate_outside_blob_stage(self, make_migration):
        assert make_migration(status=MigrationStatus.PENDING_REPO).estimated_time_remaining is None

    def test_blob_progress_entries(self, make_migration):
        migration = make_migration()
        migration.update_blob_progress("bafyblob", 10, 10)
        entry = migration.progress_data["blobs"]["bafyblob"]
        assert entry["total_size"] == 10
        assert entry["bytes_transferred"] == 10

    def test_job_attempt_tracking(self, make_migration):
        migration = make_migration()
        migration.start_job_attempt("import_repo", 3)
        assert not migration.job_retrying
        migration.increment_job_attempt()
        assert migration.job_retrying
        assert migration.job_attempts_remaining == 1
        migration.clear_job_attempt()
        assert migration.current_job_step is None
        assert migration.current_job_attempt == 0


class TestPlcOtp:
    """One-time code guarding PLC token submission."""

    def test_valid_code_accepted_once(self, make_migration):
        migration = make_migration(status=MigrationStatus.PENDING_PLC)
        code = migration.generate_plc_otp()
        assert len(code) == 6 and code.isdigit()
        assert migration.verify_plc_otp(code) == (True, None)
        assert migration.verify_plc_otp(code) == (False, "Invalid OTP")

    def test_wrong_code_counts_attempts(self, make_migration):
        migration = make_migration()
        code = migration.generate_plc_otp()
        wrong = "000000" if code != "000000" else "111111"
        for _ in range(PLC_OTP_MAX_ATTEMPTS - 1):
            assert migration.verify_plc_otp(wrong) == (False, "Invalid OTP")
        assert migration.verify_plc_otp(wrong) == (False, "Too many failed attempts")
        assert migration.verify_plc_otp(code) == (False, "Too many failed attempts")

    def test_expired_code(self, make_migration):
        migration = make_migration()
        code = migration.generate_plc_otp()
        migration.plc_otp_expires_at = utcnow() - timedelta(seconds=1)
        assert migration.verify_plc_otp(code) == (False, "OTP has expired")
