"""Tests for the stage runner: scheduling, retries, failures and resume."""

import asyncio
import errno
import sqlite3
from unittest.mock import MagicMock

import pytest

from pds_migrate.constants import (
    PLC_OPERATION_SUBMITTED_AT,
    PLC_TOKEN_REQUESTED_AT,
    PLC_UPDATE_CLAIMED_BY,
    ROTATION_KEY_PUBLIC,
)
from pds_migrate.core.admission import AdmissionController, StaticAdmissionPolicy
from pds_migrate.core.exceptions import MigrationError
from pds_migrate.models.enums import ErrorKind, MigrationStatus
from pds_migrate.services.orchestrator import MigrationOrchestrator
from pds_migrate.services.stages import StageResult


class RecordingScheduler:
    """Scheduler stand-in that keeps jobs until the test runs them."""

    def __init__(self):
        self.jobs = []

    def enqueue(self, job, *, name, delay=0.0):
        self.jobs.append((name, delay, job))

    @property
    def names(self):
        return [name for name, _, _ in self.jobs]

    @property
    def delays(self):
        return [delay for _, delay, _ in self.jobs]

    async def run_all(self, limit=50):
        """Run queued jobs in order (including ones they enqueue)."""
        ran = 0
        while self.jobs and ran < limit:
            _, _, job = self.jobs.pop(0)
            await job()
            ran += 1
        return ran

    async def stop(self):
        self.jobs.clear()


@pytest.fixture
def scheduler():
    return RecordingScheduler()


@pytest.fixture
def orchestrator(store, settings, notifier, admission, scheduler, pds_client):
    return MigrationOrchestrator(
        store,
        settings,
        notifier,
        admission,
        scheduler=scheduler,
        client_factory=lambda migration: pds_client,
    )


class TestConstruction:
    def test_requires_transport_or_factory(self, store, settings, notifier, admission):
        with pytest.raises(ValueError):
            MigrationOrchestrator(store, settings, notifier, admission, scheduler=MagicMock())


class TestRunStage:
    @pytest.mark.asyncio
    async def test_advanced_stage_enqueues_next(self, orchestrator, scheduler, store, migration):
        outcome = await orchestrator.run_stage("create_account", migration.id)

        assert outcome.result is StageResult.ADVANCED
        assert scheduler.names == [f"import_repo:{migration.id}:1"]
        stored = await store.get(migration.id)
        assert stored.status is MigrationStatus.PENDING_REPO
        assert stored.current_job_step is None

    @pytest.mark.asyncio
    async def test_stage_that_no_longer_applies_is_skipped(self, orchestrator, scheduler, pds_client, migration):
        outcome = await orchestrator.run_stage("import_prefs", migration.id)

        assert outcome.result is StageResult.SKIPPED
        assert scheduler.jobs == []
        pds_client.get_preferences.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_migration(self, orchestrator, scheduler):
        assert await orchestrator.run_stage("create_account", 999) is None
        assert scheduler.jobs == []

    @pytest.mark.asyncio
    async def test_retryable_failure_backs_off(self, orchestrator, scheduler, store, pds_client, migration, move_to):
        migration = await move_to(migration, MigrationStatus.PENDING_REPO)
        pds_client.export_repo.side_effect = MigrationError(ErrorKind.NETWORK, "connection reset")

        assert await orchestrator.run_stage("import_repo", migration.id) is None
        assert await orchestrator.run_stage("import_repo", migration.id, attempt=2) is None

        assert scheduler.names == [f"import_repo:{migration.id}:2", f"import_repo:{migration.id}:3"]
        assert scheduler.delays == [30.0, 60.0]
        stored = await store.get(migration.id)
        assert stored.status is MigrationStatus.PENDING_REPO
        assert stored.last_error == "connection reset"

    @pytest.mark.asyncio
    async def test_retry_after_honored(self, orchestrator, scheduler, pds_client, migration, move_to):
        migration = await move_to(migration, MigrationStatus.PENDING_REPO)
        pds_client.export_repo.side_effect = MigrationError(ErrorKind.RATE_LIMIT, "HTTP 429", retry_after=120)

        await orchestrator.run_stage("import_repo", migration.id)

        assert scheduler.delays == [120]

    @pytest.mark.asyncio
    async def test_exhausted_attempts_fail(self, orchestrator, scheduler, store, notifier, pds_client, migration, move_to):
        migration = await move_to(migration, MigrationStatus.PENDING_REPO)
        pds_client.export_repo.side_effect = MigrationError(ErrorKind.NETWORK, "connection reset")

        await orchestrator.run_stage("import_repo", migration.id, attempt=3)

        assert scheduler.jobs == []
        stored = await store.get(migration.id)
        assert stored.status is MigrationStatus.FAILED
        assert stored.error_code == "network"
        assert stored.last_error == "connection reset"
        notifier.migration_failed.assert_awaited_once()
        advisory = notifier.migration_failed.await_args.args[1]
        assert advisory["kind"] == "network"

    @pytest.mark.asyncio
    async def test_terminal_error_fails_immediately(self, orchestrator, scheduler, store, pds_client, migration):
        pds_client.create_account.side_effect = MigrationError(ErrorKind.INVITE_CODE, "Invalid invite code")

        await orchestrator.run_stage("create_account", migration.id)

        assert scheduler.jobs == []
        stored = await store.get(migration.id)
        assert stored.status is MigrationStatus.FAILED
        assert stored.error_code == "invite_code"

    @pytest.mark.asyncio
    async def test_failure_notification_errors_are_contained(self, orchestrator, store, notifier, pds_client, migration):
        pds_client.create_account.side_effect = MigrationError(ErrorKind.INVITE_CODE, "Invalid invite code")
        notifier.migration_failed.side_effect = RuntimeError("smtp down")

        await orchestrator.run_stage("create_account", migration.id)

        assert (await store.get(migration.id)).status is MigrationStatus.FAILED

    @pytest.mark.asyncio
    async def test_cancelled_while_running(self, orchestrator, scheduler, store, pds_client, migration, move_to):
        migration = await move_to(migration, MigrationStatus.PENDING_REPO)

        async def cancel_midway(path):
            current = await store.get(migration.id)
            current.cancel()
            await store.save(current)
            return 4096

        pds_client.export_repo.side_effect = cancel_midway

        assert await orchestrator.run_stage("import_repo", migration.id) is None
        assert scheduler.jobs == []
        assert (await store.get(migration.id)).status is MigrationStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_disk_full_fails_without_retry(self, orchestrator, scheduler, store, pds_client, migration, move_to):
        migration = await move_to(migration, MigrationStatus.PENDING_REPO)
        pds_client.export_repo.side_effect = OSError(errno.ENOSPC, "No space left on device")

        await orchestrator.run_stage("import_repo", migration.id)

        stored = await store.get(migration.id)
        assert stored.status is MigrationStatus.FAILED
        assert stored.error_code == "disk_space"
        assert scheduler.jobs == []

    @pytest.mark.asyncio
    async def test_unexpected_exception_fails_generic(self, orchestrator, scheduler, store, pds_client, migration, move_to):
        migration = await move_to(migration, MigrationStatus.PENDING_PREFS)
        pds_client.get_preferences.side_effect = KeyError("preferences")

        assert await orchestrator.run_stage("import_prefs", migration.id) is None

        stored = await store.get(migration.id)
        assert stored.status is MigrationStatus.FAILED
        assert stored.error_code == "generic"
        assert scheduler.jobs == []

    @pytest.mark.asyncio
    async def test_admission_denied_reschedules_same_attempt(
        self, store, settings, notifier, scheduler, pds_client, migration, move_to
    ):
        orchestrator = MigrationOrchestrator(
            store,
            settings,
            notifier,
            AdmissionController(store, StaticAdmissionPolicy(0)),
            scheduler=scheduler,
            client_factory=lambda m: pds_client,
        )
        migration = await move_to(migration, MigrationStatus.PENDING_BLOBS)

        outcome = await orchestrator.run_stage("import_blobs", migration.id, attempt=2)

        assert outcome.result is StageResult.RESCHEDULE
        assert scheduler.names == [f"import_blobs:{migration.id}:2"]
        assert scheduler.delays == [settings.admission_retry_delay]

    @pytest.mark.asyncio
    async def test_activation_gives_up_as_critical(self, orchestrator, store, pds_client, migration, move_to):
        migration = await move_to(migration, MigrationStatus.PENDING_ACTIVATION)
        pds_client.activate_account.side_effect = MigrationError(ErrorKind.NETWORK, "HTTP 503", status=503)

        await orchestrator.run_stage("activate_account", migration.id, attempt=3)

        stored = await store.get(migration.id)
        assert stored.status is MigrationStatus.FAILED
        assert stored.error_code == "critical_plc"
        assert stored.last_error.startswith("CRITICAL: PLC update failed after submission")

    @pytest.mark.asyncio
    async def test_unexpected_exception_after_activation_is_critical(self, orchestrator, store, pds_client, migration, move_to):
        migration = await move_to(migration, MigrationStatus.PENDING_ACTIVATION)
        pds_client.activate_account.side_effect = KeyError("did")

        assert await orchestrator.run_stage("activate_account", migration.id) is None

        stored = await store.get(migration.id)
        assert stored.status is MigrationStatus.FAILED
        assert stored.error_code == "critical_plc"


class TestPlcUpdate:
    """The directory update must be submitted at most once."""

    @pytest.fixture
    async def plc_migration(self, migration, move_to):
        migration.set_progress(**{ROTATION_KEY_PUBLIC: "did:key:zUserKey", PLC_TOKEN_REQUESTED_AT: "x"})
        migration.set_secret("plc_token", "emailed-token")
        return await move_to(migration, MigrationStatus.PENDING_PLC)

    @pytest.fixture
    def slow_sign(self, pds_client):
        async def sign(*args):
            await asyncio.sleep(0.05)
            return {"type": "plc_operation", "sig": "abc"}

        pds_client.sign_plc_operation.side_effect = sign
        return sign

    @pytest.mark.asyncio
    async def test_concurrent_runs_submit_once(self, orchestrator, scheduler, store, pds_client, plc_migration, slow_sign):
        outcomes = await asyncio.gather(
            orchestrator.run_stage("update_plc", plc_migration.id),
            orchestrator.run_stage("update_plc", plc_migration.id),
        )

        assert pds_client.submit_plc_operation.await_count == 1
        assert sorted(outcome.result.value for outcome in outcomes) == ["advanced", "skipped"]
        assert scheduler.names == [f"activate_account:{plc_migration.id}:1"]
        stored = await store.get(plc_migration.id)
        assert stored.status is MigrationStatus.PENDING_ACTIVATION
        assert PLC_UPDATE_CLAIMED_BY not in stored.progress_data

    @pytest.mark.asyncio
    async def test_runners_sharing_a_store_submit_once(
        self, orchestrator, store, settings, notifier, admission, pds_client, plc_migration, slow_sign
    ):
        other = MigrationOrchestrator(
            store,
            settings,
            notifier,
            admission,
            scheduler=RecordingScheduler(),
            client_factory=lambda migration: pds_client,
        )

        await asyncio.gather(
            orchestrator.run_stage("update_plc", plc_migration.id),
            other.run_stage("update_plc", plc_migration.id),
        )

        assert pds_client.submit_plc_operation.await_count == 1
        assert (await store.get(plc_migration.id)).status is MigrationStatus.PENDING_ACTIVATION

    @pytest.mark.asyncio
    async def test_store_failure_after_submission_is_critical(
        self, orchestrator, scheduler, store, notifier, pds_client, plc_migration, monkeypatch
    ):
        save = store.save
        failed = []

        async def flaky_save(migration, expected_status=None):
            if pds_client.submit_plc_operation.await_count and not failed:
                failed.append(migration.id)
                raise sqlite3.OperationalError("database is locked")
            return await save(migration, expected_status)

        monkeypatch.setattr(store, "save", flaky_save)

        assert await orchestrator.run_stage("update_plc", plc_migration.id) is None

        assert failed == [plc_migration.id]
        stored = await store.get(plc_migration.id)
        assert stored.status is MigrationStatus.FAILED
        assert stored.error_code == "critical_plc"
        assert stored.last_error == "CRITICAL: PLC update failed after submission - database is locked"
        assert scheduler.jobs == []
        notifier.migration_failed.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unexpected_exception_before_submission_is_generic(self, orchestrator, store, pds_client, plc_migration):
        pds_client.get_recommended_credentials.side_effect = KeyError("rotationKeys")

        await orchestrator.run_stage("update_plc", plc_migration.id)

        stored = await store.get(plc_migration.id)
        assert stored.error_code == "generic"
        pds_client.submit_plc_operation.assert_not_awaited()


class TestResume:
    @pytest.mark.asyncio
    async def test_resume_enqueues_active_migrations(self, orchestrator, scheduler, store, make_migration, move_to):
        first = await store.create(make_migration(did="did:plc:one"))
        second = await move_to(await store.create(make_migration(did="did:plc:two")), MigrationStatus.PENDING_BLOBS)
        waiting = await store.create(make_migration(did="did:plc:three"))
        waiting.set_progress(**{PLC_TOKEN_REQUESTED_AT: "2026-01-01T00:00:00+00:00"})
        await move_to(waiting, MigrationStatus.PENDING_PLC)
        done = await store.create(make_migration(did="did:plc:four"))
        done.cancel()
        await store.save(done)

        assert await orchestrator.resume() == 2
        assert sorted(scheduler.names) == sorted(
            [f"create_account:{first.id}:1", f"import_blobs:{second.id}:1"]
        )

    @pytest.mark.asyncio
    async def test_submitted_token_resumes_update(self, orchestrator, scheduler, migration, move_to):
        migration.set_progress(**{PLC_TOKEN_REQUESTED_AT: "2026-01-01T00:00:00+00:00"})
        migration.set_secret("plc_token", "emailed")
        migration = await move_to(migration, MigrationStatus.PENDING_PLC)

        assert await orchestrator.resume() == 1
        assert scheduler.names == [f"update_plc:{migration.id}:1"]

    @pytest.mark.asyncio
    async def test_interrupted_update_resumes(self, orchestrator, scheduler, store, migration, move_to):
        migration.set_progress(
            **{PLC_TOKEN_REQUESTED_AT: "2026-01-01T00:00:00+00:00", PLC_OPERATION_SUBMITTED_AT: "2026-01-01T00:05:00+00:00"}
        )
        migration = await move_to(migration, MigrationStatus.PENDING_PLC)

        assert await orchestrator.resume() == 1
        await scheduler.run_all(limit=1)

        assert (await store.get(migration.id)).status is MigrationStatus.PENDING_ACTIVATION

    @pytest.mark.asyncio
    async def test_stop_stops_scheduler(self, orchestrator, scheduler):
        scheduler.enqueue(lambda: None, name="x")
        await orchestrator.stop()
        assert scheduler.jobs == []


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_full_migration(self, orchestrator, scheduler, store, notifier, pds_client, migration):
        pds_client.list_all_blobs.return_value = ["bafy1", "bafy2"]
        pds_client.get_account_status.return_value = {"expectedBlobs": 2, "importedBlobs": 2}

        orchestrator.enqueue_next(migration)
        await scheduler.run_all()

        waiting = await store.get(migration.id)
        assert waiting.status is MigrationStatus.PENDING_PLC
        assert waiting.progress_data[PLC_TOKEN_REQUESTED_AT]
        notifier.plc_token_requested.assert_awaited_once()

        waiting.set_secret("plc_token", "emailed-token")
        await store.save(waiting)
        orchestrator.request_plc_update(waiting)
        await scheduler.run_all()

        done = await store.get(migration.id)
        assert done.status is MigrationStatus.COMPLETED
        assert done.progress_percentage == 100
        assert done.password is None
        pds_client.submit_plc_operation.assert_awaited_once()
        pds_client.activate_account.assert_awaited_once()
        notifier.migration_completed.assert_awaited_once()
        notifier.migration_failed.assert_not_awaited()
