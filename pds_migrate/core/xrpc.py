"""aiohttp transport for XRPC calls against a PDS.

The transport knows nothing about sessions or retries: it issues one HTTP
request and turns every failure into a ``MigrationError`` with the right
``ErrorKind``.
"""

import asyncio
import errno
import re
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from pathlib import Path
from typing import Any

import aiohttp
import structlog

from ..constants import (
    ACCOUNT_EXISTS_ERRORS,
    BLOB_CHUNK_SIZE,
    ERR_AUTH_FACTOR_REQUIRED,
    ERR_BLOB_NOT_FOUND,
    ERR_INVALID_INVITE_CODE,
    ERR_RATE_LIMIT_EXCEEDED,
    GET_BLOB,
)
from ..models.enums import ErrorKind
from .exceptions import MigrationError

logger = structlog.get_logger()

_RATE_LIMIT_PATTERN = re.compile(r"429|RateLimitExceeded|rate limit", re.IGNORECASE)


def is_rate_limit_message(message: str | None) -> bool:
    """Detect a rate-limit failure from free text."""
    return bool(message) and bool(_RATE_LIMIT_PATTERN.search(message))


def parse_retry_after(headers: Any) -> float | None:
    """Read a retry hint from ``Retry-After`` (seconds or HTTP date) or ``RateLimit-Reset``.

    Returns:
        Seconds to wait, or None when the server gave no usable hint
    """
    value = headers.get("Retry-After")
    if value:
        value = value.strip()
        if value.isdigit():
            return float(value)
        try:
            when = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
        return max((when - datetime.now(UTC)).total_seconds(), 0.0)

    reset = headers.get("RateLimit-Reset")
    if reset and reset.strip().isdigit():
        return max(float(reset) - datetime.now(UTC).timestamp(), 0.0)
    return None


def error_from_response(
    status: int, payload: dict[str, Any] | None, text: str, headers: Any, method: str
) -> MigrationError:
    """Map a failed XRPC response onto the error taxonomy."""
    payload = payload or {}
    code = payload.get("error")
    detail = payload.get("message") or text.strip() or f"HTTP {status}"
    message = f"{method} failed: HTTP {status}" + (f" {code}" if code else "") + f": {detail}"

    if (
        status == 429
        or code == ERR_RATE_LIMIT_EXCEEDED
        or is_rate_limit_message(payload.get("message"))
    ):
        kind = ErrorKind.RATE_LIMIT
        return MigrationError(
            kind, message, retry_after=parse_retry_after(headers), status=status, code=code
        )
    if code == ERR_AUTH_FACTOR_REQUIRED:
        kind = ErrorKind.TWO_FACTOR_REQUIRED
    elif code in ACCOUNT_EXISTS_ERRORS:
        kind = ErrorKind.ACCOUNT_EXISTS
    elif code == ERR_INVALID_INVITE_CODE:
        kind = ErrorKind.INVITE_CODE
    elif code == ERR_BLOB_NOT_FOUND or (status == 404 and method == GET_BLOB):
        kind = ErrorKind.BLOB_NOT_FOUND
    elif status == 401:
        kind = ErrorKind.AUTHENTICATION
    elif status >= 500:
        kind = ErrorKind.NETWORK
    else:
        kind = ErrorKind.GENERIC
    return MigrationError(kind, message, status=status, code=code)


class XrpcTransport:
    """Shared aiohttp session for XRPC requests to any host."""

    def __init__(self, timeout: float = 60.0, blob_timeout: float = 600.0, pool_size: int = 20):
        """Initialize the transport.

        Args:
            timeout: Total timeout for ordinary calls, in seconds
            blob_timeout: Total timeout for repo and blob transfers, in seconds
            pool_size: Connection pool limit
        """
        self.timeout = timeout
        self.blob_timeout = blob_timeout
        self.pool_size = pool_size
        self._session: aiohttp.ClientSession | None = None

    async def __aenter__(self) -> "XrpcTransport":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def start(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                connector=aiohttp.TCPConnector(limit=self.pool_size),
            )

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def query(
        self,
        host: str,
        method: str,
        params: dict[str, Any] | None = None,
        token: str | None = None,
    ) -> dict[str, Any]:
        """Issue an XRPC query (HTTP GET) and return the JSON body."""
        return await self._request("GET", host, method, params=params, token=token)

    async def procedure(
        self,
        host: str,
        method: str,
        body: dict[str, Any] | None = None,
        token: str | None = None,
        data: Any = None,
        content_type: str | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Issue an XRPC procedure (HTTP POST) and return the JSON body, if any."""
        return await self._request(
            "POST",
            host,
            method,
            json=body,
            data=data,
            token=token,
            content_type=content_type,
            timeout=timeout,
        )

    async def download(
        self,
        host: str,
        method: str,
        params: dict[str, Any],
        dest: Path,
        token: str | None = None,
    ) -> int:
        """Stream a binary XRPC response into ``dest``.

        Returns:
            Number of bytes written
        """
        session = self._require_session()
        url = self._url(host, method)
        written = 0
        try:
            async with session.get(
                url,
                params=params,
                headers=self._headers(token),
                timeout=aiohttp.ClientTimeout(total=self.blob_timeout),
            ) as response:
                if response.status >= 400:
                    raise await self._error(response, method)
                with dest.open("wb") as fh:
                    async for chunk in response.content.iter_chunked(BLOB_CHUNK_SIZE):
                        fh.write(chunk)
                        written += len(chunk)
        except aiohttp.ClientError as e:
            raise MigrationError(ErrorKind.NETWORK, f"{method} failed: {e}") from e
        except asyncio.TimeoutError as e:
            raise MigrationError(ErrorKind.NETWORK, f"{method} timed out") from e
        except OSError as e:
            kind = ErrorKind.DISK_SPACE if e.errno == errno.ENOSPC else ErrorKind.GENERIC
            raise MigrationError(kind, f"{method} could not write {dest.name}: {e}") from e
        return written

    async def _request(
        self,
        http_method: str,
        host: str,
        method: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        data: Any = None,
        token: str | None = None,
        content_type: str | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        session = self._require_session()
        headers = self._headers(token)
        if content_type:
            headers["Content-Type"] = content_type
        kwargs: dict[str, Any] = {"params": params, "headers": headers}
        if json is not None:
            kwargs["json"] = json
        if data is not None:
            kwargs["data"] = data
        if timeout is not None:
            kwargs["timeout"] = aiohttp.ClientTimeout(total=timeout)

        logger.debug("XRPC request", http_method=http_method, host=host, method=method)
        try:
            async with session.request(http_method, self._url(host, method), **kwargs) as response:
                if response.status >= 400:
                    raise await self._error(response, method)
                if response.content_type == "application/json":
                    return await response.json()
                await response.read()
                return {}
        except aiohttp.ClientError as e:
            raise MigrationError(ErrorKind.NETWORK, f"{method} failed: {e}") from e
        except asyncio.TimeoutError as e:
            raise MigrationError(ErrorKind.NETWORK, f"{method} timed out") from e

    @staticmethod
    async def _error(response: aiohttp.ClientResponse, method: str) -> MigrationError:
        text = await response.text()
        payload = None
        if response.content_type == "application/json":
            try:
                payload = await response.json()
            except (aiohttp.ContentTypeError, ValueError):
                payload = None
        error = error_from_response(response.status, payload, text, response.headers, method)
        logger.debug(
            "XRPC error response",
            method=method,
            status=response.status,
            kind=error.kind.value,
            code=error.code,
        )
        return error

    def _require_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            raise MigrationError(ErrorKind.GENERIC, "XRPC transport is not started")
        return self._session

    @staticmethod
    def _url(host: str, method: str) -> str:
        return f"{host.rstrip('/')}/xrpc/{method}"

    @staticmethod
    def _headers(token: str | None) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}"} if token else {}
