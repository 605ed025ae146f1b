"""Blob transfer with bounded parallelism and post-transfer reconciliation.

The engine is partial-failure tolerant: a blob that still fails after its
retries is recorded in ``failed_blobs`` and the remaining blobs carry on.
Reconciliation afterwards is advisory; its own failures are recorded in the
progress data and never raised.
"""

import asyncio
import errno
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from ...constants import (
    BLOB_BYTES_TRANSFERRED,
    BLOB_MAX_ATTEMPTS,
    BLOBS_COMPLETED,
    BLOBS_FAILED,
    BLOBS_STARTED_AT,
    BLOBS_TOTAL,
    FAILED_BLOB_MANIFEST,
    FAILED_BLOBS,
    UNKNOWN_BLOB_SIZE,
)
from ...models.enums import ErrorKind
from ...models.migration import Migration, utcnow
from ..exceptions import MigrationError
from ..pds_client import PDSClient
from .base import BaseTransfer, safe_filename

Checkpoint = Callable[[], Awaitable[None]]


class BlobTransferEngine(BaseTransfer):
    """Copies every blob of a migration from source to destination."""

    def __init__(
        self,
        client: PDSClient,
        checkpoint: Checkpoint,
        work_root: Path,
        *,
        parallel: int = 5,
        checkpoint_every: int = 10,
        max_attempts: int = BLOB_MAX_ATTEMPTS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize the engine.

        Args:
            client: Protocol client bound to the migration
            checkpoint: Coroutine persisting the migration's progress
            work_root: Root under which the per-migration scratch dir lives
            parallel: Worker pool size
            checkpoint_every: Persist progress after every Nth completed blob
            max_attempts: Attempts per blob before it is recorded as failed
            sleep: Awaitable sleep used for per-blob backoff
        """
        super().__init__(work_root)
        self.client = client
        self.checkpoint = checkpoint
        self.parallel = parallel
        self.checkpoint_every = checkpoint_every
        self.max_attempts = max_attempts
        self.sleep = sleep
        self._lock = asyncio.Lock()
        self._completed_since_checkpoint = 0

    def get_transfer_type(self) -> str:
        return "blobs"

    async def transfer(self, migration: Migration) -> dict[str, Any]:
        """Transfer all blobs, then reconcile against the destination.

        Raises:
            MigrationError: Only if the blob listing itself fails
        """
        work_dir = self.prepare_work_dir(migration)
        cids = await self.client.list_all_blobs()
        migration.set_progress(
            **{
                BLOBS_TOTAL: len(cids),
                BLOBS_COMPLETED: 0,
                BLOBS_FAILED: 0,
                BLOB_BYTES_TRANSFERRED: 0,
                BLOBS_STARTED_AT: utcnow().isoformat(),
                FAILED_BLOBS: [],
            }
        )
        await self.checkpoint()
        self.logger.info(
            "Starting blob transfer",
            migration_id=migration.id,
            total_blobs=len(cids),
            workers=min(self.parallel, len(cids)),
        )

        failed = await self._run_pool(migration, cids, work_dir)
        migration.progress_data[FAILED_BLOBS] = failed
        migration.progress_data[BLOBS_FAILED] = len(failed)

        reconciliation = await self.reconcile(migration, work_dir)

        failed = migration.progress_data[FAILED_BLOBS]
        if failed:
            self._write_failure_manifest(work_dir, failed)
        await self.checkpoint()

        self.logger.info(
            "Blob transfer finished",
            migration_id=migration.id,
            total_blobs=len(cids),
            completed=migration.progress_data[BLOBS_COMPLETED],
            failed=len(failed),
            reconciliation_status=reconciliation["reconciliation_status"],
        )
        return {
            "success": True,
            "total": len(cids),
            "completed": migration.progress_data[BLOBS_COMPLETED],
            "failed_blobs": list(failed),
            "reconciliation": reconciliation,
        }

    async def _run_pool(self, migration: Migration, cids: list[str], work_dir: Path) -> list[str]:
        queue: asyncio.Queue[str] = asyncio.Queue()
        for cid in cids:
            queue.put_nowait(cid)
        failed: list[str] = []

        async def worker() -> None:
            while True:
                try:
                    cid = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                size = await self._transfer_with_retries(migration, cid, work_dir)
                if size is None:
                    async with self._lock:
                        failed.append(cid)
                else:
                    await self._record_success(migration, cid, size)

        workers = [asyncio.create_task(worker()) for _ in range(min(self.parallel, len(cids)))]
        try:
            await asyncio.gather(*workers)
        except BaseException:
            for task in workers:
                task.cancel()
            raise
        # keep listing order so the failure set is reproducible
        failed_set = set(failed)
        return [cid for cid in cids if cid in failed_set]

    async def _record_success(self, migration: Migration, cid: str, size: int) -> None:
        async with self._lock:
            progress = migration.progress_data
            progress[BLOBS_COMPLETED] = progress.get(BLOBS_COMPLETED, 0) + 1
            if size != UNKNOWN_BLOB_SIZE:
                progress[BLOB_BYTES_TRANSFERRED] = progress.get(BLOB_BYTES_TRANSFERRED, 0) + size
            migration.update_blob_progress(cid, size, size)
            self._completed_since_checkpoint += 1
            due = self._completed_since_checkpoint >= self.checkpoint_every
            if due:
                self._completed_since_checkpoint = 0
        if due:
            await self.checkpoint()

    async def _transfer_with_retries(
        self, migration: Migration, cid: str, work_dir: Path
    ) -> int | None:
        """Transfer one blob; returns its size, or None once it has failed for good."""
        for attempt in range(self.max_attempts):
            try:
                return await self._transfer_one(cid, work_dir)
            except (MigrationError, OSError) as e:
                if isinstance(e, MigrationError):
                    kind, retryable = e.kind, e.retryable
                else:
                    kind = ErrorKind.DISK_SPACE if e.errno == errno.ENOSPC else ErrorKind.GENERIC
                    retryable = False
                last_attempt = attempt + 1 >= self.max_attempts
                if not retryable or last_attempt:
                    self.logger.error(
                        "Blob transfer failed",
                        migration_id=migration.id,
                        cid=cid,
                        attempts=attempt + 1,
                        kind=kind.value,
                        error=str(e),
                    )
                    return None
                delay = 2 ** (attempt + 2) if kind is ErrorKind.RATE_LIMIT else 2**attempt
                self.logger.warning(
                    "Blob transfer attempt failed, retrying",
                    migration_id=migration.id,
                    cid=cid,
                    attempt=attempt + 1,
                    kind=kind.value,
                    delay=delay,
                )
                await self.sleep(delay)
        return None

    async def _transfer_one(self, cid: str, work_dir: Path) -> int:
        path = work_dir / safe_filename(cid)
        try:
            size = await self.client.get_blob(cid, path)
            await self.client.upload_blob(path)
        finally:
            path.unlink(missing_ok=True)
        return size if size >= 0 else UNKNOWN_BLOB_SIZE

    async def reconcile(self, migration: Migration, work_dir: Path) -> dict[str, Any]:
        """Compare destination blob counts and retry the blobs it reports missing."""
        result: dict[str, Any] = {
            "reconciliation_status": "skipped",
            "reconciliation_recovered": 0,
            "reconciliation_still_missing": [],
        }
        try:
            status = await self.client.get_account_status()
        except MigrationError as e:
            result["reconciliation_error"] = f"Account status check failed: {e.message}"
            return self._finish_reconciliation(migration, result)

        expected = status.get("expectedBlobs")
        imported = status.get("importedBlobs")
        result["reconciliation_expected_blobs"] = expected
        result["reconciliation_imported_blobs"] = imported
        if expected is None or imported is None:
            result["reconciliation_error"] = "Account status did not include blob counts"
            return self._finish_reconciliation(migration, result)
        if expected == imported:
            result["reconciliation_status"] = "complete"
            result["reconciliation_missing_count"] = 0
            return self._finish_reconciliation(migration, result)

        try:
            missing = await self.client.collect_all_missing_blobs()
        except MigrationError as e:
            result["reconciliation_error"] = f"Missing blob listing failed: {e.message}"
            return self._finish_reconciliation(migration, result)

        result["reconciliation_missing_count"] = len(missing)
        self.logger.info(
            "Reconciling missing blobs",
            migration_id=migration.id,
            expected=expected,
            imported=imported,
            missing=len(missing),
        )
        still_missing = []
        for cid in missing:
            size = await self._transfer_with_retries(migration, cid, work_dir)
            if size is None:
                still_missing.append(cid)
            else:
                result["reconciliation_recovered"] += 1
                migration.update_blob_progress(cid, size, size)

        recovered = set(missing) - set(still_missing)
        failed = [cid for cid in migration.progress_data.get(FAILED_BLOBS, []) if cid not in recovered]
        failed.extend(cid for cid in still_missing if cid not in failed)
        migration.progress_data[FAILED_BLOBS] = failed
        migration.progress_data[BLOBS_FAILED] = len(failed)

        result["reconciliation_still_missing"] = still_missing
        result["reconciliation_status"] = "partial" if still_missing else "complete"
        return self._finish_reconciliation(migration, result)

    def _finish_reconciliation(self, migration: Migration, result: dict[str, Any]) -> dict[str, Any]:
        result["reconciliation_completed_at"] = utcnow().isoformat()
        migration.set_progress(**result)
        if "reconciliation_error" in result:
            self.logger.warning(
                "Blob reconciliation skipped",
                migration_id=migration.id,
                error=result["reconciliation_error"],
            )
        return result

    def _write_failure_manifest(self, work_dir: Path, failed: list[str]) -> None:
        manifest = work_dir / FAILED_BLOB_MANIFEST
        try:
            manifest.write_text("\n".join(failed) + "\n", encoding="utf-8")
        except OSError as e:
            self.logger.warning("Could not write failed blob manifest", path=str(manifest), error=str(e))
