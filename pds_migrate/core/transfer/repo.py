"""Repository (CAR file) transfer."""

from typing import Any

from ...models.migration import Migration
from ..pds_client import PDSClient
from .base import BaseTransfer, safe_filename


class RepoTransfer(BaseTransfer):
    """Export the repository CAR from the source and import it on the destination."""

    def __init__(self, client: PDSClient, work_root):
        super().__init__(work_root)
        self.client = client

    def get_transfer_type(self) -> str:
        return "repo"

    async def transfer(self, migration: Migration) -> dict[str, Any]:
        work_dir = self.prepare_work_dir(migration)
        car_path = work_dir / f"{safe_filename(migration.did)}.car"
        try:
            size = await self.client.export_repo(car_path)
            self.logger.info("Repository exported", migration_id=migration.id, size_bytes=size)
            await self.client.import_repo(car_path)
        finally:
            car_path.unlink(missing_ok=True)

        self.logger.info("Repository imported", migration_id=migration.id, size_bytes=size)
        return {"success": True, "repo_size_bytes": size}
