"""Session lifecycle for one (migration, server) pair.

Tokens are rehydrated from the Migration's encrypted fields when the manager
is built and written back through the injected ``persist`` coroutine after
every login or refresh, before the new access token is handed out. A manager
built later for the same migration therefore sees the rotated tokens and does
not authenticate again while they are valid.
"""

import asyncio
import base64
import binascii
import json
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta

import structlog

from ..constants import CREATE_SESSION, ERR_EXPIRED_TOKEN, ERR_INVALID_TOKEN, REFRESH_SESSION
from ..models.enums import ErrorKind, ServerRole
from .exceptions import MigrationError
from .xrpc import XrpcTransport

PersistTokens = Callable[[str, str], Awaitable[None]]
ReloadTokens = Callable[[], Awaitable[tuple[str | None, str | None]]]

_REJECTED_REFRESH_CODES = {ERR_EXPIRED_TOKEN, ERR_INVALID_TOKEN}


def decode_jwt_expiry(token: str | None) -> datetime | None:
    """Read the ``exp`` claim of a JWT without verifying it."""
    if not token:
        return None
    parts = token.split(".")
    if len(parts) != 3:
        return None
    payload = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(payload))
    except (binascii.Error, ValueError):
        return None
    exp = claims.get("exp") if isinstance(claims, dict) else None
    if not isinstance(exp, (int, float)):
        return None
    return datetime.fromtimestamp(exp, UTC)


class SessionManager:
    """Owns the live access/refresh tokens for one server of one migration."""

    def __init__(
        self,
        transport: XrpcTransport,
        host: str,
        role: ServerRole,
        access_token: str | None,
        refresh_token: str | None,
        persist: PersistTokens,
        *,
        reload: ReloadTokens | None = None,
        safety_buffer: int = 60,
        migration_id: int | None = None,
    ):
        self.transport = transport
        self.host = host
        self.role = role
        self.persist = persist
        self.reload = reload
        self.safety_buffer = timedelta(seconds=safety_buffer)
        self._access_token = access_token
        self._refresh_token = refresh_token
        self._lock = asyncio.Lock()
        self.logger = structlog.get_logger("migration").bind(
            component="session", role=role.value, migration_id=migration_id
        )

    def get_access_token(self) -> str | None:
        return self._access_token

    def get_refresh_token(self) -> str | None:
        return self._refresh_token

    def access_token_valid(self) -> bool:
        expires_at = decode_jwt_expiry(self._access_token)
        if expires_at is None:
            return False
        return expires_at - self.safety_buffer > datetime.now(UTC)

    async def ensure_fresh(self, force: bool = False) -> str:
        """Return a usable access token, refreshing it first when needed.

        Args:
            force: Refresh even if the cached token looks valid (after a 401)

        Raises:
            MigrationError: AUTHENTICATION when no refresh token is available or
                the server rejects it
        """
        async with self._lock:
            if not force and self.access_token_valid():
                return self._access_token
            stale = self._access_token
            if force and stale is not None and await self._adopt_stored_tokens(stale):
                return self._access_token
            await self._refresh()
            return self._access_token

    async def login(
        self, identifier: str, password: str, auth_factor_token: str | None = None
    ) -> str:
        """Create a session with a password, once per manager.

        Raises:
            MigrationError: TWO_FACTOR_REQUIRED when the server asks for an
                emailed code; AUTHENTICATION for bad credentials
        """
        async with self._lock:
            if self.access_token_valid():
                return self._access_token
            body = {"identifier": identifier, "password": password}
            if auth_factor_token:
                body["authFactorToken"] = auth_factor_token
            response = await self.transport.procedure(self.host, CREATE_SESSION, body)
            await self._store(response, "password login")
            return self._access_token

    async def _refresh(self) -> None:
        if not self._refresh_token:
            raise MigrationError(
                ErrorKind.AUTHENTICATION, f"No {self.role.value} refresh token available"
            )
        try:
            response = await self.transport.procedure(
                self.host, REFRESH_SESSION, token=self._refresh_token
            )
        except MigrationError as e:
            if not self._is_rejected_refresh(e):
                raise
            if await self._adopt_stored_tokens(self._access_token) and self.access_token_valid():
                return
            raise MigrationError(
                ErrorKind.AUTHENTICATION,
                f"{self.role.value} session refresh rejected: {e.message}",
                status=e.status,
                code=e.code,
                retryable=True,
            ) from e
        await self._store(response, "refresh")

    async def _adopt_stored_tokens(self, stale_access: str | None) -> bool:
        """Pick up tokens another worker rotated since this manager was built."""
        if self.reload is None:
            return False
        stored_access, stored_refresh = await self.reload()
        if not stored_refresh or stored_access == stale_access:
            return False
        self._access_token = stored_access
        self._refresh_token = stored_refresh
        self.logger.info("Adopted tokens rotated by another worker")
        return True

    async def _store(self, response: dict, how: str) -> None:
        access = response.get("accessJwt")
        refresh = response.get("refreshJwt")
        if not access or not refresh:
            raise MigrationError(
                ErrorKind.AUTHENTICATION, f"{self.role.value} {how} returned no tokens"
            )
        self._access_token = access
        self._refresh_token = refresh
        await self.persist(access, refresh)
        self.logger.info(
            "Session tokens rotated",
            how=how,
            expires_at=str(decode_jwt_expiry(access)),
        )

    @staticmethod
    def _is_rejected_refresh(error: MigrationError) -> bool:
        return error.kind is ErrorKind.AUTHENTICATION or error.code in _REJECTED_REFRESH_CODES
