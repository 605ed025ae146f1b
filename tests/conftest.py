"""Shared pytest fixtures for migration engine tests."""

import base64
import json
import time
from collections.abc import Callable
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from cryptography.fernet import Fernet

from pds_migrate.constants import ERR_REPO_NOT_FOUND
from pds_migrate.core.admission import AdmissionController, StaticAdmissionPolicy
from pds_migrate.core.exceptions import MigrationError
from pds_migrate.core.secrets import SecretBox
from pds_migrate.core.settings import MigrationSettings
from pds_migrate.core.store import MigrationStore
from pds_migrate.models.enums import ErrorKind, MigrationStatus, ServerRole
from pds_migrate.models.migration import Migration
from pds_migrate.services.notifier import Notifier
from pds_migrate.services.stages import StageContext

TEST_DID = "did:plc:abc123xyz"


@pytest.fixture
def settings(tmp_path: Path) -> MigrationSettings:
    """Settings pointing every path into the test's temporary directory."""
    return MigrationSettings(
        _env_file=None,
        db_path=tmp_path / "migrations.db",
        work_dir=tmp_path / "work",
        log_dir=tmp_path / "logs",
        admission_policy="static",
        max_concurrent_heavy_io=8,
        stage_max_attempts=3,
        stage_retry_base_delay=30.0,
        plc_retry_delay=30.0,
        admission_retry_delay=30.0,
    )


@pytest.fixture
def box() -> SecretBox:
    return SecretBox(Fernet.generate_key())


@pytest.fixture
async def store(settings: MigrationSettings, box: SecretBox) -> MigrationStore:
    """Initialized SQLite store in a temporary directory."""
    store = MigrationStore(settings.db_path, box)
    await store.initialize()
    return store


@pytest.fixture
def make_migration(box: SecretBox) -> Callable[..., Migration]:
    """Factory for valid, unsaved migrations bound to the test SecretBox."""

    def _make(**overrides) -> Migration:
        values = {
            "did": TEST_DID,
            "old_handle": "alice.old.example",
            "new_handle": "alice.new.example",
            "old_pds_host": "https://old.example",
            "new_pds_host": "https://new.example",
            "email": "alice@example.com",
        }
        values.update(overrides)
        return Migration(**values).attach_box(box)

    return _make


@pytest.fixture
async def migration(store: MigrationStore, make_migration) -> Migration:
    """A stored outbound migration with a generated password and source session."""
    migration = make_migration()
    migration.set_secret("password", "generated-destination-password")
    migration.set_session_tokens(ServerRole.SOURCE, "old-access", "old-refresh")
    return await store.create(migration)


@pytest.fixture
def move_to(store: MigrationStore):
    """Force a stored migration into ``status`` (bypassing the stage graph)."""

    async def _move(migration: Migration, status: MigrationStatus) -> Migration:
        migration.status = status
        await store.save(migration)
        return await store.get(migration.id)

    return _move


@pytest.fixture
def make_jwt() -> Callable[..., str]:
    """Build an unsigned JWT whose ``exp`` is ``expires_in`` seconds from now."""

    def _make(expires_in: float = 3600, **claims) -> str:
        def encode(data: dict) -> str:
            raw = base64.urlsafe_b64encode(json.dumps(data).encode()).decode()
            return raw.rstrip("=")

        payload = {"exp": int(time.time() + expires_in), **claims}
        return f"{encode({'alg': 'ES256K', 'typ': 'JWT'})}.{encode(payload)}.signature"

    return _make


@pytest.fixture
def notifier() -> AsyncMock:
    return AsyncMock(spec=Notifier)


@pytest.fixture
def admission(store: MigrationStore) -> AdmissionController:
    return AdmissionController(store, StaticAdmissionPolicy(8))


@pytest.fixture
def stage_context(store, settings, notifier, admission) -> StageContext:
    return StageContext(store, settings, notifier, admission)


@pytest.fixture
def pds_client() -> MagicMock:
    """PDSClient stand-in answering every call the way a healthy pair of servers would."""
    client = MagicMock()
    client.describe_server = AsyncMock(return_value={"did": "did:web:new.example"})
    client.describe_repo = AsyncMock(
        side_effect=MigrationError(
            ErrorKind.GENERIC,
            "com.atproto.repo.describeRepo failed: HTTP 400 RepoNotFound: Could not find repo",
            status=400,
            code=ERR_REPO_NOT_FOUND,
        )
    )
    client.get_service_auth = AsyncMock(return_value="service-auth-jwt")
    client.create_account = AsyncMock(return_value={"did": TEST_DID})
    client.login_destination = AsyncMock(return_value="new-access")
    client.verify_existing_account_access = AsyncMock(
        return_value={"exists": True, "deactivated": True}
    )
    client.export_repo = AsyncMock(return_value=4096)
    client.import_repo = AsyncMock(return_value=None)
    client.list_all_blobs = AsyncMock(return_value=[])
    client.get_blob = AsyncMock(return_value=100)
    client.upload_blob = AsyncMock(return_value={})
    client.get_account_status = AsyncMock(
        return_value={"activated": False, "expectedBlobs": 0, "importedBlobs": 0}
    )
    client.collect_all_missing_blobs = AsyncMock(return_value=[])
    client.get_preferences = AsyncMock(
        return_value=[{"$type": "app.bsky.actor.defs#adultContentPref", "enabled": False}]
    )
    client.put_preferences = AsyncMock(return_value=None)
    client.request_plc_token = AsyncMock(return_value=None)
    client.get_recommended_credentials = AsyncMock(
        return_value={"rotationKeys": ["did:key:zServerKey"], "alsoKnownAs": ["at://alice.new.example"]}
    )
    client.sign_plc_operation = AsyncMock(return_value={"type": "plc_operation", "sig": "abc"})
    client.submit_plc_operation = AsyncMock(return_value=None)
    client.activate_account = AsyncMock(return_value=None)
    client.deactivate_account = AsyncMock(return_value=None)
    return client


@pytest.fixture
def mock_context():
    """Mock middleware context for testing."""
    context = MagicMock()
    context.method = "tools/call"
    context.source = "client"
    context.type = "request"
    context.timestamp = 1234567890.0
    context.message = SimpleNamespace(
        name="submit_migration",
        arguments={"did": TEST_DID, "password": "hunter2"},
    )
    return context
