"""
FastMCP PDS Migration Server

Exposes the account migration engine as MCP tools: submit a migration, follow
its status, cancel it, and hand over the PLC confirmation token.
"""

import argparse
import os
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Annotated, Any

from dotenv import load_dotenv
from fastmcp import FastMCP
from pydantic import Field

from .core.admission import AdmissionController, build_policy
from .core.config_loader import load_config
from .core.exceptions import ConfigurationError, MigrationError, PDSMigrateError
from .core.logging_config import get_server_logger, setup_logging
from .core.secrets import SecretBox
from .core.settings import MigrationSettings
from .core.store import MigrationStore
from .core.xrpc import XrpcTransport
from .middleware import ErrorHandlingMiddleware, LoggingMiddleware
from .models.enums import MigrationType
from .services import LoggingNotifier, MigrationOrchestrator, MigrationService, Notifier


class PDSMigrateServer:
    """FastMCP server wrapping the migration service."""

    def __init__(self, settings: MigrationSettings, notifier: Notifier | None = None):
        self.settings = settings
        self.logger = get_server_logger()
        self.app: FastMCP | None = None

        self.box = SecretBox(settings.encryption_key)
        self.store = MigrationStore(settings.db_path, self.box)
        self.transport = XrpcTransport(
            timeout=settings.http_timeout,
            blob_timeout=settings.blob_timeout,
            pool_size=settings.http_pool_size,
        )
        self.notifier = notifier or LoggingNotifier()
        self.admission = AdmissionController(self.store, build_policy(settings))
        self.orchestrator = MigrationOrchestrator(
            self.store, settings, self.notifier, self.admission, transport=self.transport
        )
        self.migration_service = MigrationService(
            self.store, self.box, self.transport, self.orchestrator, self.notifier, settings
        )

        self.logger.info(
            "PDS migration server initialized",
            db_path=str(settings.db_path),
            work_dir=str(settings.work_dir),
            admission_policy=settings.admission_policy,
            stage_workers=settings.stage_workers,
        )

    async def start(self) -> None:
        """Open the store and HTTP pool, then resume interrupted migrations."""
        await self.store.initialize()
        await self.transport.start()
        await self.orchestrator.resume()

    async def stop(self) -> None:
        await self.orchestrator.stop()
        await self.transport.close()

    @asynccontextmanager
    async def _lifespan(self, _app: FastMCP) -> AsyncIterator[None]:
        await self.start()
        try:
            yield
        finally:
            await self.stop()

    def _initialize_app(self) -> None:
        """Initialize FastMCP app, middleware, and register tools."""
        self.app = FastMCP("PDS Migration Manager", lifespan=self._lifespan)
        self._configure_middleware()

        self.app.tool(
            self.submit_migration,
            annotations={
                "title": "Start Account Migration",
                "readOnlyHint": False,
                "destructiveHint": False,
                "idempotentHint": False,  # one active migration per DID
                "openWorldHint": True,  # logs in to the source PDS
            },
        )
        self.app.tool(
            self.migration_status,
            annotations={
                "title": "Migration Status",
                "readOnlyHint": True,
                "destructiveHint": False,
                "idempotentHint": True,
                "openWorldHint": False,
            },
        )
        self.app.tool(
            self.cancel_migration,
            annotations={
                "title": "Cancel Migration",
                "readOnlyHint": False,
                "destructiveHint": True,
                "idempotentHint": False,
                "openWorldHint": False,
            },
        )
        self.app.tool(
            self.request_plc_otp,
            annotations={
                "title": "Request PLC Submission Code",
                "readOnlyHint": False,
                "destructiveHint": False,
                "idempotentHint": False,
                "openWorldHint": False,
            },
        )
        self.app.tool(
            self.submit_plc_token,
            annotations={
                "title": "Submit PLC Token",
                "readOnlyHint": False,
                "destructiveHint": True,  # moves the identity to the new PDS
                "idempotentHint": False,
                "openWorldHint": True,
            },
        )
        self.app.tool(
            self.retry_plc_request,
            annotations={
                "title": "Request New PLC Token",
                "readOnlyHint": False,
                "destructiveHint": False,
                "idempotentHint": False,
                "openWorldHint": True,
            },
        )

    def _configure_middleware(self) -> None:
        """Configure FastMCP middleware stack."""
        if self.app is None:
            return
        # Error handling first to catch all errors
        self.app.add_middleware(
            ErrorHandlingMiddleware(
                include_traceback=self.settings.log_level.upper() == "DEBUG",
                track_error_stats=True,
            )
        )
        self.app.add_middleware(LoggingMiddleware(include_payloads=True))

    async def _call(self, operation) -> dict[str, Any]:
        """Run a service call, turning expected failures into a structured reply."""
        try:
            return await operation
        except MigrationError as e:
            return {
                "success": False,
                "error": e.message,
                "error_kind": e.kind.value,
                "retryable": e.retryable,
            }
        except PDSMigrateError as e:
            return {"success": False, "error": str(e)}

    async def submit_migration(
        self,
        did: Annotated[str, Field(description="Account DID (did:plc:... or did:web:...)")],
        old_handle: Annotated[str, Field(description="Current handle on the old PDS")],
        new_handle: Annotated[str, Field(description="Handle to use on the new PDS")],
        old_pds_host: Annotated[str, Field(description="Old PDS URL")],
        new_pds_host: Annotated[str, Field(description="New PDS URL")],
        email: Annotated[str, Field(description="Contact email for the new account")],
        password: Annotated[str, Field(description="Password for the old PDS account")],
        migration_type: Annotated[
            MigrationType, Field(description="migration_out creates the account, migration_in reuses it")
        ] = MigrationType.MIGRATION_OUT,
        invite_code: Annotated[
            str | None, Field(default=None, description="Invite code for the new PDS")
        ] = None,
        auth_factor_token: Annotated[
            str | None, Field(default=None, description="Emailed sign-in code, if the old PDS asks for one")
        ] = None,
        locale: Annotated[str, Field(default="en", description="Locale for notifications")] = "en",
        new_pds_password: Annotated[
            str | None,
            Field(default=None, description="Password for the existing new PDS account (migration_in only)"),
        ] = None,
    ) -> dict[str, Any]:
        """Start migrating an account to a new PDS.

        Returns a migration token used by every other tool. When the old PDS
        requires an emailed sign-in code the reply has error_kind
        two_factor_required; call again with auth_factor_token.
        """
        return await self._call(
            self.migration_service.submit(
                did=did,
                old_handle=old_handle,
                new_handle=new_handle,
                old_pds_host=old_pds_host,
                new_pds_host=new_pds_host,
                email=email,
                password=password,
                migration_type=migration_type,
                invite_code=invite_code,
                auth_factor_token=auth_factor_token,
                locale=locale,
                new_pds_password=new_pds_password,
            )
        )

    async def migration_status(
        self, token: Annotated[str, Field(description="Migration token (EURO-...)")]
    ) -> dict[str, Any]:
        """Progress, current stage, estimated time remaining and failure advice."""
        return await self._call(self.migration_service.status(token))

    async def cancel_migration(
        self, token: Annotated[str, Field(description="Migration token (EURO-...)")]
    ) -> dict[str, Any]:
        """Cancel a migration that has not reached the PLC stage."""
        return await self._call(self.migration_service.cancel(token))

    async def request_plc_otp(
        self, token: Annotated[str, Field(description="Migration token (EURO-...)")]
    ) -> dict[str, Any]:
        """Send the one-time code required to submit the PLC token."""
        return await self._call(self.migration_service.request_plc_otp(token))

    async def submit_plc_token(
        self,
        token: Annotated[str, Field(description="Migration token (EURO-...)")],
        plc_token: Annotated[str, Field(description="PLC token emailed by the old PDS")],
        otp: Annotated[str, Field(description="One-time code from request_plc_otp")],
    ) -> dict[str, Any]:
        """Submit the PLC token; this starts the irreversible identity update."""
        return await self._call(self.migration_service.submit_plc_token(token, plc_token, otp))

    async def retry_plc_request(
        self, token: Annotated[str, Field(description="Migration token (EURO-...)")]
    ) -> dict[str, Any]:
        """Ask the old PDS to email a new PLC token."""
        return await self._call(self.migration_service.retry_plc_request(token))

    def run(self) -> None:
        """Run the FastMCP server."""
        try:
            self._initialize_app()
            self.logger.info(
                "Starting PDS migration server", host=self.settings.host, port=self.settings.port
            )
            # FastMCP.run() is synchronous and manages its own event loop
            self.app.run(transport="http", host=self.settings.host, port=self.settings.port)
        except Exception as e:
            self.logger.error("Server startup failed", error=str(e))
            raise


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    load_dotenv()

    parser = argparse.ArgumentParser(description="FastMCP PDS Migration Server")
    parser.add_argument("--host", default=None, help="Server host")
    parser.add_argument("--port", type=int, default=None, help="Server port")
    parser.add_argument("--config", default=os.getenv("PDS_MIGRATE_CONFIG"), help="Configuration file path")
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    parser.add_argument(
        "--validate-config", action="store_true", help="Validate configuration and exit"
    )
    return parser.parse_args(argv)


def _apply_cli_overrides(settings: MigrationSettings, args: argparse.Namespace) -> MigrationSettings:
    overrides = {
        name: value
        for name, value in (("host", args.host), ("port", args.port), ("log_level", args.log_level))
        if value is not None
    }
    return settings.model_copy(update=overrides) if overrides else settings


def main() -> None:
    """Main entry point."""
    args = parse_args()

    try:
        settings = _apply_cli_overrides(load_config(args.config), args)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(2)

    setup_logging(
        log_dir=settings.log_dir,
        log_level=settings.log_level,
        max_file_size_mb=settings.log_file_size_mb,
    )
    logger = get_server_logger()

    if args.validate_config:
        logger.info("Configuration is valid", **settings.model_dump(exclude={"encryption_key"}, mode="json"))
        return

    server = PDSMigrateServer(settings)
    try:
        server.run()
    except KeyboardInterrupt:
        logger.info("Server shutdown requested")
    except Exception as e:
        logger.error("Server error", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
