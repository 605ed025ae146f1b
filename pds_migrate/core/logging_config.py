"""Logging configuration with dual output (console + files)."""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import structlog
from structlog.stdlib import BoundLogger, LoggerFactory, ProcessorFormatter

SENSITIVE_KEYWORDS = (
    "password",
    "passwd",
    "token",
    "secret",
    "private_key",
    "rotation_key",
    "otp",
    "authorization",
    "invite_code",
)

REDACTED = "[REDACTED]"


def is_sensitive_field(field_name: str) -> bool:
    """Check if a field name refers to a secret that must never be logged."""
    field_lower = field_name.lower()
    return any(keyword in field_lower for keyword in SENSITIVE_KEYWORDS)


def redact_secrets(_logger: Any, _method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """structlog processor replacing sensitive values with a placeholder."""
    for key in list(event_dict):
        if key == "event":
            continue
        if is_sensitive_field(key) and event_dict[key] is not None:
            event_dict[key] = REDACTED
    return event_dict


def setup_logging(
    log_dir: Path | str = Path("logs"),
    log_level: str = "INFO",
    max_file_size_mb: int = 10,
) -> None:
    """Setup dual logging system: console + files with automatic truncation.

    Creates two log files:
    - migrations.log: Stage, client and transfer events
    - server.log: MCP server and middleware events

    Args:
        log_dir: Directory for log files
        log_level: Log level name
        max_file_size_mb: Max file size before truncation (no backup files kept)
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)

    log_level_num = getattr(logging, log_level.upper(), logging.INFO)
    max_bytes = max_file_size_mb * 1024 * 1024

    logging.getLogger().handlers.clear()

    migrations_handler = RotatingFileHandler(
        log_dir / "migrations.log", maxBytes=max_bytes, backupCount=0, encoding="utf-8"
    )
    server_handler = RotatingFileHandler(
        log_dir / "server.log", maxBytes=max_bytes, backupCount=0, encoding="utf-8"
    )
    console_handler = logging.StreamHandler(sys.stdout)
    for handler in (migrations_handler, server_handler, console_handler):
        handler.setLevel(log_level_num)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level_num)
    root_logger.addHandler(console_handler)

    logging.getLogger("migration").addHandler(migrations_handler)
    logging.getLogger("server").addHandler(server_handler)
    logging.getLogger("middleware").addHandler(server_handler)

    renderer = (
        structlog.dev.ConsoleRenderer()
        if sys.stdout.isatty()
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            redact_secrets,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.TimeStamper(fmt="iso"),
            ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=LoggerFactory(),
        wrapper_class=BoundLogger,
        cache_logger_on_first_use=True,
    )
    console_handler.setFormatter(ProcessorFormatter(processor=renderer))
    json_formatter = ProcessorFormatter(processor=structlog.processors.JSONRenderer())
    migrations_handler.setFormatter(json_formatter)
    server_handler.setFormatter(json_formatter)

    get_server_logger().info(
        "Logging system initialized",
        log_dir=str(log_dir.absolute()),
        log_level=log_level,
        max_file_size_mb=max_file_size_mb,
    )


def get_migration_logger(component: str, **context: Any) -> Any:
    """Get a logger for engine components (writes to migrations.log)."""
    return structlog.get_logger("migration").bind(component=component, **context)


def get_server_logger() -> Any:
    """Get logger for general server operations (writes to server.log)."""
    return structlog.get_logger("server")


def get_middleware_logger() -> Any:
    """Get logger for middleware operations (writes to server.log)."""
    return structlog.get_logger("middleware")
