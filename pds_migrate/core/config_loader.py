"""Configuration loading for the migration engine.

Settings come from, in increasing priority: field defaults, an optional YAML
file, the ``.env`` file and the process environment.
"""

import asyncio
import os
import re
from pathlib import Path
from typing import Any

import structlog
import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

from .exceptions import ConfigurationError
from .settings import MigrationSettings

logger = structlog.get_logger()

DEFAULT_CONFIG_FILE = "config/pds-migrate.yml"

# Environment variables that may be referenced from the YAML file
ALLOWED_ENV_VARS = {
    "HOME",
    "USER",
    "XDG_DATA_HOME",
    "XDG_STATE_HOME",
    "PDS_MIGRATE_DATA_DIR",
    "LOG_LEVEL",
}


def load_config(config_path: str | None = None) -> MigrationSettings:
    """Load settings from multiple sources (synchronous interface).

    Args:
        config_path: Optional path to YAML config file

    Returns:
        Loaded settings

    Raises:
        RuntimeError: If called from inside a running event loop
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(load_config_async(config_path))
    raise RuntimeError(
        "load_config() cannot be called from within an async context. "
        "Use 'await load_config_async()' instead."
    )


async def load_config_async(config_path: str | None = None) -> MigrationSettings:
    """Load settings from multiple sources (async interface).

    Args:
        config_path: Optional path to YAML config file

    Returns:
        Loaded settings

    Raises:
        ConfigurationError: If the file cannot be parsed or a value is invalid
    """
    load_dotenv()

    path = Path(config_path or os.getenv("PDS_MIGRATE_CONFIG", DEFAULT_CONFIG_FILE))
    values: dict[str, Any] = {}
    if path.exists():
        values = await _load_yaml_config(path)
        logger.debug("Loaded config file", path=str(path), keys=sorted(values))

    values = _apply_env_overrides(values)

    try:
        return MigrationSettings(**values)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration in {path}: {e}") from e


def _apply_env_overrides(values: dict[str, Any]) -> dict[str, Any]:
    """Drop file values whose environment variable is set so the environment wins."""
    result = {}
    for key, value in values.items():
        field = MigrationSettings.model_fields.get(key)
        env_name = field.alias if field and field.alias else key.upper()
        if env_name in os.environ:
            logger.debug("Environment overrides config file", setting=key, variable=env_name)
            continue
        result[key] = value
    return result


async def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """Load YAML configuration file."""
    try:
        content = await asyncio.to_thread(config_path.read_text)
        content = _expand_yaml_config(content)
        loaded = yaml.safe_load(content)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Failed to load config from {config_path}: {e}") from e

    if not isinstance(loaded, dict):
        return {}
    return loaded


def _expand_yaml_config(content: str) -> str:
    """Expand ``${VAR}`` references restricted to an allowlist."""

    def replace_var(match: re.Match) -> str:
        var_name = match.group(1)
        if var_name in ALLOWED_ENV_VARS:
            return os.getenv(var_name, match.group(0))
        logger.warning(
            "Environment variable not in allowlist, skipping expansion",
            variable=var_name,
        )
        return match.group(0)

    return re.sub(r"\$\{([^}]+)\}", replace_var, content)
