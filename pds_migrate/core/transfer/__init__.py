"""Transfer modules for moving repository and blob data between PDS hosts."""

from .base import BaseTransfer, remove_work_dir, work_dir_for  # noqa: F401
from .blobs import BlobTransferEngine  # noqa: F401
from .repo import RepoTransfer  # noqa: F401

__all__ = [
    "BaseTransfer",
    "BlobTransferEngine",
    "RepoTransfer",
    "remove_work_dir",
    "work_dir_for",
]
