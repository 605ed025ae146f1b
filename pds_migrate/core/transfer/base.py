"""Abstract base class for data transfers between two PDS hosts."""

import re
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import structlog

from ...models.migration import Migration

logger = structlog.get_logger()

_UNSAFE_PATH_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def safe_filename(value: str) -> str:
    """Make an identifier (DID, CID) usable as a single path component."""
    return _UNSAFE_PATH_CHARS.sub("_", value)


def work_dir_for(work_root: Path, migration: Migration) -> Path:
    return Path(work_root) / f"migration_{migration.id}_{safe_filename(migration.did)}"


def remove_work_dir(work_root: Path, migration: Migration) -> bool:
    """Delete a migration's scratch directory, including any failure manifest.

    Returns:
        True if a directory was removed
    """
    work_dir = work_dir_for(work_root, migration)
    if not work_dir.exists():
        return False
    shutil.rmtree(work_dir, ignore_errors=True)
    logger.debug("Removed work directory", migration_id=migration.id, path=str(work_dir))
    return True


class BaseTransfer(ABC):
    """Abstract base class for repo and blob transfers.

    Every transfer stages data in a scratch directory owned by one migration,
    so concurrent migrations never share files.
    """

    def __init__(self, work_root: Path):
        self.work_root = Path(work_root)
        self.logger = logger.bind(component=self.__class__.__name__.lower())

    @abstractmethod
    async def transfer(self, migration: Migration) -> dict[str, Any]:
        """Move this transfer's data from the source to the destination.

        Args:
            migration: Migration whose data is transferred; progress is
                recorded in its ``progress_data``

        Returns:
            Dictionary with transfer results and statistics
        """

    @abstractmethod
    def get_transfer_type(self) -> str:
        """Get the name/type of this transfer."""

    def prepare_work_dir(self, migration: Migration) -> Path:
        work_dir = work_dir_for(self.work_root, migration)
        work_dir.mkdir(parents=True, exist_ok=True)
        return work_dir
