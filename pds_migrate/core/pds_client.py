"""Rate-limit-aware protocol client for one migration's two servers.

Every remote operation goes through ``with_rate_limit_retry``. Authenticated
calls fetch a fresh access token from the role's SessionManager and, when the
server still answers 401, force one refresh and try again.
"""

import asyncio
import random
import time
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TypeVar

import structlog

from ..constants import (
    ACTIVATE_ACCOUNT,
    CHECK_ACCOUNT_STATUS,
    CREATE_ACCOUNT,
    DEACTIVATE_ACCOUNT,
    DESCRIBE_REPO,
    DESCRIBE_SERVER,
    DESTINATION_PASSWORD_EXPIRED_MESSAGE,
    ERR_EXPIRED_TOKEN,
    GET_BLOB,
    GET_PREFERENCES,
    GET_RECOMMENDED_CREDENTIALS,
    GET_REPO,
    GET_SERVICE_AUTH,
    IMPORT_REPO,
    LIST_BLOBS,
    LIST_MISSING_BLOBS,
    PUT_PREFERENCES,
    REQUEST_PLC_SIGNATURE,
    SERVICE_AUTH_TTL,
    SIGN_PLC_OPERATION,
    SUBMIT_PLC_OPERATION,
    UPLOAD_BLOB,
)
from ..models.enums import ErrorKind, ServerRole
from ..models.migration import Migration
from .exceptions import MigrationError
from .retry import with_rate_limit_retry
from .session import SessionManager
from .settings import MigrationSettings
from .store import MigrationStore
from .xrpc import XrpcTransport

T = TypeVar("T")

LIST_PAGE_SIZE = 500


def verify_created_did(requested: str, response: dict[str, Any], strict: bool = False) -> None:
    """Check that createAccount answered for the DID we asked for.

    Raises:
        MigrationError: IDENTITY_MISMATCH naming both DIDs
    """
    returned = response.get("did")
    if returned is None:
        if strict:
            raise MigrationError(
                ErrorKind.IDENTITY_MISMATCH,
                f"DID mismatch: requested {requested}, server response did not include a DID",
            )
        structlog.get_logger().warning(
            "createAccount response did not include a DID", requested_did=requested
        )
        return
    if returned != requested:
        raise MigrationError(
            ErrorKind.IDENTITY_MISMATCH,
            f"DID mismatch: requested {requested}, server created {returned}",
        )


def response_field(response: Any, key: str, method: str) -> Any:
    """Pull a required field out of an XRPC response body.

    Raises:
        MigrationError: GENERIC when the body lacks ``key``
    """
    if not isinstance(response, dict) or response.get(key) is None:
        raise MigrationError(ErrorKind.GENERIC, f"{method} response missing '{key}'")
    return response[key]


class PDSClient:
    """XRPC operations against the source and destination PDS of one migration."""

    def __init__(
        self,
        migration: Migration,
        transport: XrpcTransport,
        source: SessionManager,
        destination: SessionManager,
        settings: MigrationSettings,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ):
        self.migration = migration
        self.did = migration.did
        self.transport = transport
        self.sessions = {ServerRole.SOURCE: source, ServerRole.DESTINATION: destination}
        self.hosts = {
            ServerRole.SOURCE: migration.old_pds_host,
            ServerRole.DESTINATION: migration.new_pds_host,
        }
        self.settings = settings
        self.sleep = sleep
        self.rng = rng
        self.logger = structlog.get_logger("migration").bind(
            component="pds_client", migration_id=migration.id
        )

    @classmethod
    def for_migration(
        cls,
        migration: Migration,
        transport: XrpcTransport,
        store: MigrationStore,
        settings: MigrationSettings,
        **kwargs: Any,
    ) -> "PDSClient":
        """Build a client whose sessions persist rotated tokens to ``store``."""

        def session_for(role: ServerRole, host: str) -> SessionManager:
            access, refresh = migration.session_tokens(role)

            async def persist(new_access: str, new_refresh: str) -> None:
                migration.set_session_tokens(role, new_access, new_refresh)
                # records not yet created are written whole by MigrationStore.create
                if migration.id is not None:
                    await store.save_tokens(migration, role)

            async def reload() -> tuple[str | None, str | None]:
                stored = await store.get(migration.id)
                if stored is None:
                    return None, None
                return stored.session_tokens(role)

            return SessionManager(
                transport,
                host,
                role,
                access,
                refresh,
                persist,
                reload=reload if migration.id is not None else None,
                safety_buffer=settings.session_safety_buffer,
                migration_id=migration.id,
            )

        return cls(
            migration,
            transport,
            session_for(ServerRole.SOURCE, migration.old_pds_host),
            session_for(ServerRole.DESTINATION, migration.new_pds_host),
            settings,
            **kwargs,
        )

    # Plumbing

    async def _call(self, name: str, operation: Callable[[], Awaitable[T]]) -> T:
        return await with_rate_limit_retry(
            operation,
            name=name,
            max_retries=self.settings.max_rate_limit_retries,
            base_delay=self.settings.rate_limit_base_delay,
            max_delay=self.settings.rate_limit_max_delay,
            sleep=self.sleep,
            rng=self.rng,
        )

    async def _authed(
        self, role: ServerRole, name: str, operation: Callable[[str], Awaitable[T]]
    ) -> T:
        session = self.sessions[role]

        async def attempt() -> T:
            token = await session.ensure_fresh()
            try:
                return await operation(token)
            except MigrationError as e:
                if not self._token_rejected(e):
                    raise
                self.logger.info("Access token rejected, refreshing once", operation=name)
                token = await session.ensure_fresh(force=True)
                return await operation(token)

        return await self._call(name, attempt)

    @staticmethod
    def _token_rejected(error: MigrationError) -> bool:
        return error.kind is ErrorKind.AUTHENTICATION and (
            error.status == 401 or error.code == ERR_EXPIRED_TOKEN
        )

    def _host(self, role: ServerRole) -> str:
        return self.hosts[role]

    # Sessions

    async def login(
        self, role: ServerRole, identifier: str, password: str, auth_factor_token: str | None = None
    ) -> str:
        """Password login; raises TWO_FACTOR_REQUIRED distinctly from AUTHENTICATION."""
        session = self.sessions[role]
        return await self._call(
            f"{role.value}.createSession",
            lambda: session.login(identifier, password, auth_factor_token),
        )

    async def login_destination(self) -> str:
        """Log in to the destination with the DID and the generated password."""
        password = self.migration.password
        if not password:
            raise MigrationError(
                ErrorKind.CREDENTIALS_NEED_REAUTH,
                DESTINATION_PASSWORD_EXPIRED_MESSAGE,
            )
        return await self.login(ServerRole.DESTINATION, self.did, password)

    # Server and account lifecycle

    async def describe_server(self, role: ServerRole = ServerRole.DESTINATION) -> dict[str, Any]:
        host = self._host(role)
        return await self._call(
            DESCRIBE_SERVER, lambda: self.transport.query(host, DESCRIBE_SERVER)
        )

    async def get_service_auth(self, audience: str, lexicon_method: str) -> str:
        """Ask the source for a service-auth JWT scoped to ``lexicon_method``."""

        async def op(token: str) -> str:
            params = {
                "aud": audience,
                "lxm": lexicon_method,
                "exp": int(time.time()) + SERVICE_AUTH_TTL,
            }
            response = await self.transport.query(
                self._host(ServerRole.SOURCE), GET_SERVICE_AUTH, params, token
            )
            return response_field(response, "token", GET_SERVICE_AUTH)

        return await self._authed(ServerRole.SOURCE, GET_SERVICE_AUTH, op)

    async def describe_repo(self, role: ServerRole) -> dict[str, Any]:
        host = self._host(role)
        return await self._call(
            DESCRIBE_REPO, lambda: self.transport.query(host, DESCRIBE_REPO, {"repo": self.did})
        )

    async def create_account(
        self, handle: str, email: str, password: str, service_auth: str, invite_code: str | None
    ) -> dict[str, Any]:
        """Create the destination account reusing the migration's DID."""
        body = {"did": self.did, "handle": handle, "email": email, "password": password}
        if invite_code:
            body["inviteCode"] = invite_code
        host = self._host(ServerRole.DESTINATION)
        response = await self._call(
            CREATE_ACCOUNT,
            lambda: self.transport.procedure(host, CREATE_ACCOUNT, body, token=service_auth),
        )
        verify_created_did(self.did, response, strict=self.settings.strict_did_check)
        return response

    async def get_account_status(self) -> dict[str, Any]:
        """Destination's view of the account, including expected vs imported blobs."""

        async def op(token: str) -> dict[str, Any]:
            return await self.transport.query(
                self._host(ServerRole.DESTINATION), CHECK_ACCOUNT_STATUS, token=token
            )

        return await self._authed(ServerRole.DESTINATION, CHECK_ACCOUNT_STATUS, op)

    async def activate_account(self) -> None:
        async def op(token: str) -> dict[str, Any]:
            return await self.transport.procedure(
                self._host(ServerRole.DESTINATION), ACTIVATE_ACCOUNT, token=token
            )

        await self._authed(ServerRole.DESTINATION, ACTIVATE_ACCOUNT, op)

    async def deactivate_account(self) -> None:
        async def op(token: str) -> dict[str, Any]:
            return await self.transport.procedure(
                self._host(ServerRole.SOURCE), DEACTIVATE_ACCOUNT, {}, token=token
            )

        await self._authed(ServerRole.SOURCE, DEACTIVATE_ACCOUNT, op)

    # Repository

    async def export_repo(self, dest: Path) -> int:
        """Download the source repository CAR file to ``dest``."""

        async def op(token: str) -> int:
            return await self.transport.download(
                self._host(ServerRole.SOURCE), GET_REPO, {"did": self.did}, dest, token
            )

        return await self._authed(ServerRole.SOURCE, GET_REPO, op)

    async def import_repo(self, car_path: Path) -> None:
        async def op(token: str) -> dict[str, Any]:
            with car_path.open("rb") as fh:
                return await self.transport.procedure(
                    self._host(ServerRole.DESTINATION),
                    IMPORT_REPO,
                    token=token,
                    data=fh,
                    content_type="application/vnd.ipld.car",
                    timeout=self.settings.blob_timeout,
                )

        await self._authed(ServerRole.DESTINATION, IMPORT_REPO, op)

    # Blobs

    async def list_blobs(self, cursor: str | None = None) -> tuple[list[str], str | None]:
        params: dict[str, Any] = {"did": self.did, "limit": LIST_PAGE_SIZE}
        if cursor:
            params["cursor"] = cursor

        async def op(token: str) -> dict[str, Any]:
            return await self.transport.query(
                self._host(ServerRole.SOURCE), LIST_BLOBS, params, token
            )

        response = await self._authed(ServerRole.SOURCE, LIST_BLOBS, op)
        return list(response.get("cids", [])), response.get("cursor")

    async def list_all_blobs(self) -> list[str]:
        """Follow the listBlobs cursor to the end."""
        cids: list[str] = []
        cursor = None
        while True:
            page, cursor = await self.list_blobs(cursor)
            cids.extend(page)
            if not cursor or not page:
                return cids

    async def get_blob(self, cid: str, dest: Path) -> int:
        async def op(token: str) -> int:
            return await self.transport.download(
                self._host(ServerRole.SOURCE), GET_BLOB, {"did": self.did, "cid": cid}, dest, token
            )

        return await self._authed(ServerRole.SOURCE, GET_BLOB, op)

    async def upload_blob(self, path: Path, mime_type: str = "application/octet-stream") -> dict:
        async def op(token: str) -> dict[str, Any]:
            with path.open("rb") as fh:
                return await self.transport.procedure(
                    self._host(ServerRole.DESTINATION),
                    UPLOAD_BLOB,
                    token=token,
                    data=fh,
                    content_type=mime_type,
                    timeout=self.settings.blob_timeout,
                )

        return await self._authed(ServerRole.DESTINATION, UPLOAD_BLOB, op)

    async def list_missing_blobs(self, cursor: str | None = None) -> tuple[list[str], str | None]:
        params: dict[str, Any] = {"limit": LIST_PAGE_SIZE}
        if cursor:
            params["cursor"] = cursor

        async def op(token: str) -> dict[str, Any]:
            return await self.transport.query(
                self._host(ServerRole.DESTINATION), LIST_MISSING_BLOBS, params, token
            )

        response = await self._authed(ServerRole.DESTINATION, LIST_MISSING_BLOBS, op)
        cids = [entry["cid"] for entry in response.get("blobs", []) if entry.get("cid")]
        return cids, response.get("cursor")

    async def collect_all_missing_blobs(self) -> list[str]:
        cids: list[str] = []
        cursor = None
        while True:
            page, cursor = await self.list_missing_blobs(cursor)
            cids.extend(page)
            if not cursor or not page:
                return cids

    # Preferences

    async def get_preferences(self) -> list[dict[str, Any]]:
        async def op(token: str) -> dict[str, Any]:
            return await self.transport.query(
                self._host(ServerRole.SOURCE), GET_PREFERENCES, token=token
            )

        response = await self._authed(ServerRole.SOURCE, GET_PREFERENCES, op)
        return response.get("preferences", [])

    async def put_preferences(self, preferences: list[dict[str, Any]]) -> None:
        async def op(token: str) -> dict[str, Any]:
            return await self.transport.procedure(
                self._host(ServerRole.DESTINATION),
                PUT_PREFERENCES,
                {"preferences": preferences},
                token=token,
            )

        await self._authed(ServerRole.DESTINATION, PUT_PREFERENCES, op)

    # Identity directory

    async def request_plc_token(self) -> None:
        """Ask the source to email the user a PLC operation confirmation token."""

        async def op(token: str) -> dict[str, Any]:
            return await self.transport.procedure(
                self._host(ServerRole.SOURCE), REQUEST_PLC_SIGNATURE, token=token
            )

        await self._authed(ServerRole.SOURCE, REQUEST_PLC_SIGNATURE, op)

    async def get_recommended_credentials(self) -> dict[str, Any]:
        async def op(token: str) -> dict[str, Any]:
            return await self.transport.query(
                self._host(ServerRole.DESTINATION), GET_RECOMMENDED_CREDENTIALS, token=token
            )

        return await self._authed(ServerRole.DESTINATION, GET_RECOMMENDED_CREDENTIALS, op)

    async def sign_plc_operation(
        self, plc_token: str, credentials: dict[str, Any], rotation_did_key: str | None
    ) -> dict[str, Any]:
        """Have the source sign the directory update; the result is opaque here."""
        rotation_keys = list(credentials.get("rotationKeys", []))
        if rotation_did_key and rotation_did_key not in rotation_keys:
            rotation_keys.insert(0, rotation_did_key)
        body = {
            "token": plc_token,
            "rotationKeys": rotation_keys,
            "alsoKnownAs": credentials.get("alsoKnownAs", []),
            "verificationMethods": credentials.get("verificationMethods", {}),
            "services": credentials.get("services", {}),
        }

        async def op(token: str) -> dict[str, Any]:
            return await self.transport.procedure(
                self._host(ServerRole.SOURCE), SIGN_PLC_OPERATION, body, token=token
            )

        response = await self._authed(ServerRole.SOURCE, SIGN_PLC_OPERATION, op)
        return response_field(response, "operation", SIGN_PLC_OPERATION)

    async def submit_plc_operation(self, operation: dict[str, Any]) -> None:
        async def op(token: str) -> dict[str, Any]:
            return await self.transport.procedure(
                self._host(ServerRole.DESTINATION),
                SUBMIT_PLC_OPERATION,
                {"operation": operation},
                token=token,
            )

        await self._authed(ServerRole.DESTINATION, SUBMIT_PLC_OPERATION, op)

    async def verify_existing_account_access(self) -> dict[str, bool]:
        """Confirm an existing destination account is reachable (inbound migrations).

        Returns:
            ``{"exists": ..., "deactivated": ...}``
        """
        status = await self.get_account_status()
        return {"exists": True, "deactivated": not status.get("activated", False)}
