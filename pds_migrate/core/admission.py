"""Admission control for heavy I/O migration stages.

A stage that moves bulk data asks ``AdmissionController.admit`` before it
starts. The controller counts migrations already holding a heavy I/O slot and
admits only while that count is below the policy's ceiling. Denied callers
reschedule themselves; nothing here ever waits.
"""

import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import psutil
import structlog

from ..models.migration import Migration
from .settings import MigrationSettings
from .store import MigrationStore

logger = structlog.get_logger()

CGROUP_V2_ROOT = Path("/sys/fs/cgroup")
CGROUP_V1_ROOT = Path("/sys/fs/cgroup/memory")
MB = 1024 * 1024
# cgroup v1 reports this (or larger) when no limit is set
CGROUP_V1_UNLIMITED = 1 << 60


class AdmissionPolicy(ABC):
    """Computes how many migrations may run heavy I/O at once."""

    @abstractmethod
    def max_concurrent(self) -> int:
        """Current ceiling."""

    def diagnostics(self) -> dict[str, Any]:
        return {"policy": self.__class__.__name__, "max_concurrent": self.max_concurrent()}


class StaticAdmissionPolicy(AdmissionPolicy):
    """A fixed, configured ceiling."""

    def __init__(self, limit: int):
        self.limit = limit

    def max_concurrent(self) -> int:
        return self.limit


class MemoryAdmissionPolicy(AdmissionPolicy):
    """Ceiling derived from available memory and a per-job budget.

    Memory sources, in order: cgroup v2, cgroup v1, then psutil's view of the
    host. Readings are cached for ``cache_ttl`` seconds.
    """

    def __init__(
        self,
        memory_per_job_mb: int = 300,
        memory_reserve_mb: int = 4096,
        min_concurrent: int = 4,
        max_concurrent: int = 30,
        fallback: int = 8,
        cache_ttl: float = 30.0,
        cgroup_v2_root: Path = CGROUP_V2_ROOT,
        cgroup_v1_root: Path = CGROUP_V1_ROOT,
    ):
        self.memory_per_job_mb = memory_per_job_mb
        self.memory_reserve_mb = memory_reserve_mb
        self.min_concurrent = min_concurrent
        self.max_concurrent_cap = max_concurrent
        self.fallback = fallback
        self.cache_ttl = cache_ttl
        self.cgroup_v2_root = cgroup_v2_root
        self.cgroup_v1_root = cgroup_v1_root
        self._cached: int | None = None
        self._cached_at = 0.0
        self.memory_source = "fallback"

    def max_concurrent(self) -> int:
        now = time.monotonic()
        if self._cached is None or now - self._cached_at > self.cache_ttl:
            self._cached = self._calculate()
            self._cached_at = now
        return self._cached

    def refresh(self) -> int:
        """Drop the cached reading and recompute."""
        self._cached = None
        return self.max_concurrent()

    def _calculate(self) -> int:
        available = self.available_memory_mb()
        if available is None:
            logger.info("Could not read system memory, using fallback", fallback=self.fallback)
            return self.fallback

        usable = available - self.memory_reserve_mb
        if usable <= 0:
            logger.warning(
                "Available memory below reserve, using minimum",
                available_mb=available,
                reserve_mb=self.memory_reserve_mb,
                minimum=self.min_concurrent,
            )
            return self.min_concurrent

        computed = usable // self.memory_per_job_mb
        result = max(self.min_concurrent, min(computed, self.max_concurrent_cap))
        logger.info(
            "Computed heavy I/O ceiling",
            available_mb=available,
            usable_mb=usable,
            per_job_mb=self.memory_per_job_mb,
            computed=computed,
            result=result,
            source=self.memory_source,
        )
        return result

    def available_memory_mb(self) -> int | None:
        for source, reader in (
            ("cgroup_v2", self._read_cgroup_v2),
            ("cgroup_v1", self._read_cgroup_v1),
            ("psutil", self._read_psutil),
        ):
            value = reader()
            if value is not None:
                self.memory_source = source
                return value
        self.memory_source = "fallback"
        return None

    def _read_cgroup_v2(self) -> int | None:
        limit_file = self.cgroup_v2_root / "memory.max"
        current_file = self.cgroup_v2_root / "memory.current"
        try:
            limit = limit_file.read_text().strip()
            if limit == "max":
                return None
            return (int(limit) - int(current_file.read_text().strip())) // MB
        except (OSError, ValueError):
            return None

    def _read_cgroup_v1(self) -> int | None:
        try:
            limit = int((self.cgroup_v1_root / "memory.limit_in_bytes").read_text().strip())
            if limit >= CGROUP_V1_UNLIMITED:
                return None
            usage = int((self.cgroup_v1_root / "memory.usage_in_bytes").read_text().strip())
            return (limit - usage) // MB
        except (OSError, ValueError):
            return None

    @staticmethod
    def _read_psutil() -> int | None:
        try:
            return psutil.virtual_memory().available // MB
        except (OSError, RuntimeError):
            return None

    def diagnostics(self) -> dict[str, Any]:
        available = self.available_memory_mb()
        computed = None
        if available is not None:
            computed = (available - self.memory_reserve_mb) // self.memory_per_job_mb
        return {
            "policy": self.__class__.__name__,
            "available_memory_mb": available,
            "memory_source": self.memory_source,
            "memory_reserve_mb": self.memory_reserve_mb,
            "memory_per_job_mb": self.memory_per_job_mb,
            "computed_max": computed,
            "clamped_max": self.max_concurrent(),
            "min_concurrent": self.min_concurrent,
            "max_concurrent": self.max_concurrent_cap,
        }


def build_policy(settings: MigrationSettings) -> AdmissionPolicy:
    if settings.admission_policy == "memory":
        return MemoryAdmissionPolicy(
            memory_per_job_mb=settings.memory_per_job_mb,
            memory_reserve_mb=settings.memory_reserve_mb,
            min_concurrent=settings.min_concurrent,
            max_concurrent=settings.max_concurrent,
            fallback=settings.max_concurrent_heavy_io,
        )
    return StaticAdmissionPolicy(settings.max_concurrent_heavy_io)


class AdmissionController:
    """Gates entry to heavy I/O stages across all migrations."""

    def __init__(self, store: MigrationStore, policy: AdmissionPolicy):
        self.store = store
        self.policy = policy

    async def admit(self, migration: Migration) -> bool:
        """Take a heavy I/O slot for ``migration`` if the ceiling allows.

        A migration that already holds a slot is always re-admitted.
        """
        ceiling = self.policy.max_concurrent()
        admitted, held = await self.store.try_admit(migration.id, ceiling)
        log = logger.info if admitted else logger.warning
        log(
            "Heavy I/O admission" if admitted else "Heavy I/O admission denied",
            migration_id=migration.id,
            held_by_others=held,
            ceiling=ceiling,
        )
        return admitted

    async def diagnostics(self) -> dict[str, Any]:
        info = self.policy.diagnostics()
        info["current_heavy_io_count"] = await self.store.count_heavy_io()
        return info
