"""Runtime settings for the migration engine.

Provides centralized configuration using Pydantic BaseSettings with
environment variable support. The settings object is frozen: it is built once
at process start and handed to every component that needs it.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class MigrationSettings(BaseSettings):
    """Migration engine configuration."""

    db_path: Path = Field(
        Path("data/migrations.db"), alias="PDS_MIGRATE_DB_PATH", description="SQLite database file"
    )
    work_dir: Path = Field(
        Path("data/work"),
        alias="PDS_MIGRATE_WORK_DIR",
        description="Root for per-migration scratch directories",
    )
    encryption_key: str | None = Field(
        None,
        alias="PDS_MIGRATE_ENCRYPTION_KEY",
        description="Fernet key used to encrypt secrets at rest",
    )

    # Protocol client
    http_timeout: float = Field(60.0, alias="HTTP_TIMEOUT", description="Per-request timeout")
    blob_timeout: float = Field(
        600.0, alias="BLOB_TIMEOUT", description="Timeout for blob and repo transfers"
    )
    http_pool_size: int = Field(20, alias="HTTP_POOL_SIZE", description="Connector pool limit")
    max_rate_limit_retries: int = Field(
        4, alias="MAX_RATE_LIMIT_RETRIES", description="Retries after the first rate-limited call"
    )
    rate_limit_base_delay: float = Field(
        1.0, alias="RATE_LIMIT_BASE_DELAY", description="Backoff base without retry-after"
    )
    rate_limit_max_delay: float = Field(
        60.0, alias="RATE_LIMIT_MAX_DELAY", description="Backoff ceiling without retry-after"
    )
    session_safety_buffer: int = Field(
        60, alias="SESSION_SAFETY_BUFFER", description="Seconds before expiry to refresh"
    )
    strict_did_check: bool = Field(
        False,
        alias="STRICT_DID_CHECK",
        description="Treat a createAccount response without a DID as a mismatch",
    )

    # Blob transfer
    parallel_blobs: int = Field(5, alias="PARALLEL_BLOBS", description="Blob worker pool size")
    progress_update_interval: int = Field(
        10, alias="PROGRESS_UPDATE_INTERVAL", description="Checkpoint every Nth completed blob"
    )

    # Admission control
    admission_policy: Literal["static", "memory"] = Field(
        "static", alias="ADMISSION_POLICY", description="Heavy I/O ceiling policy"
    )
    max_concurrent_heavy_io: int = Field(
        8, alias="MAX_CONCURRENT_HEAVY_IO", description="Static heavy I/O ceiling"
    )
    memory_per_job_mb: int = Field(300, alias="MEMORY_PER_JOB_MB")
    memory_reserve_mb: int = Field(4096, alias="MEMORY_RESERVE_MB")
    min_concurrent: int = Field(4, alias="MIN_CONCURRENT_HEAVY_IO")
    max_concurrent: int = Field(30, alias="MAX_CONCURRENT_HEAVY_IO_CAP")
    admission_retry_delay: float = Field(
        30.0, alias="ADMISSION_RETRY_DELAY", description="Reschedule delay when denied"
    )

    # Stage scheduling
    stage_workers: int = Field(10, alias="STAGE_WORKERS", description="Concurrent stage runs")
    stage_max_attempts: int = Field(3, alias="STAGE_MAX_ATTEMPTS")
    stage_retry_base_delay: float = Field(30.0, alias="STAGE_RETRY_BASE_DELAY")
    plc_retry_delay: float = Field(30.0, alias="PLC_RETRY_DELAY")

    # Logging
    log_dir: Path = Field(Path("logs"), alias="LOG_DIR")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    log_file_size_mb: int = Field(10, alias="LOG_FILE_SIZE_MB")

    # MCP server
    host: str = Field("127.0.0.1", alias="FASTMCP_HOST")
    port: int = Field(8000, alias="FASTMCP_PORT")

    model_config = SettingsConfigDict(
        env_file=".env", extra="ignore", frozen=True, populate_by_name=True
    )
