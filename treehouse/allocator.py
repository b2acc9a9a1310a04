"""Per-process slot allocator.

The allocator turns the registry's primitives into the allocation policy:

1. A project/branch that already holds a slot keeps it (and is touched).
2. Otherwise the lowest free slot of the candidate pool is bound.
3. When the pool is full, the least recently seen allocation is reclaimed,
   but only if it has been idle longer than the staleness threshold and
   its slot belongs to this process's pool.

All public methods run under one lock, so calls from the same process
never interleave. Races with other processes are settled by the
registry's uniqueness constraints; a lost race is retried a bounded
number of times.
"""

import asyncio
import random
from collections.abc import Iterable

from treehouse.config import Settings, get_settings
from treehouse.db import Allocation, Registry
from treehouse.errors import (
    AllocationConflictError,
    NoUsableSlotsError,
    PoolExhaustedError,
    StorageError,
)
from treehouse.logging import get_logger
from treehouse.loopback import PoolSource, detect_pool_source
from treehouse.naming import format_ip

logger = get_logger(__name__)

# Used when the registry's range config cannot be read
FALLBACK_RANGE = (10, 99)


async def read_configured_range(registry: Registry) -> tuple[int, int]:
    """Read the allocation range from the registry's config table.

    Falls back to 10..99 if the values are missing, malformed or the
    registry cannot be read.
    """
    try:
        start = await registry.get_config("ip_range_start")
        end = await registry.get_config("ip_range_end")
        return (
            int(start) if start is not None else FALLBACK_RANGE[0],
            int(end) if end is not None else FALLBACK_RANGE[1],
        )
    except (StorageError, ValueError) as exc:
        logger.warning("range_config_unreadable", error=str(exc), fallback=FALLBACK_RANGE)
        return FALLBACK_RANGE


class Allocator:
    """Coordinates slot allocation for one process."""

    def __init__(
        self,
        registry: Registry,
        candidate_pool: Iterable[int],
        stale_threshold_days: int = 7,
        max_attempts: int = 5,
        retry_delay: float = 0.05,
    ) -> None:
        self._registry = registry
        self._pool = sorted(set(candidate_pool))
        self._pool_set = frozenset(self._pool)
        self._stale_threshold_days = stale_threshold_days
        self._max_attempts = max_attempts
        self._retry_delay = retry_delay
        self._lock = asyncio.Lock()

    @classmethod
    async def start(
        cls,
        registry: Registry | None = None,
        pool_source: PoolSource | None = None,
        settings: Settings | None = None,
        ip_range: tuple[int, int] | None = None,
        stale_threshold_days: int | None = None,
    ) -> "Allocator":
        """Initialize the registry schema and compute the candidate pool.

        Args:
            registry: Registry to use; opened from settings if omitted.
            pool_source: Loopback probe; detected from the OS if omitted.
            settings: Settings; the cached ones if omitted.
            ip_range: Explicit inclusive range. Skips discovery and the
                registry's range config, using every slot in the range.
            stale_threshold_days: Overrides the configured threshold.
        """
        settings = settings or get_settings()
        registry = registry or Registry.from_settings(settings)
        await registry.init_schema()

        if ip_range is not None:
            pool = list(range(ip_range[0], ip_range[1] + 1))
        else:
            range_start, range_end = await read_configured_range(registry)
            source = pool_source or detect_pool_source()
            available = await asyncio.to_thread(source.available_slots)
            pool = [slot for slot in available if range_start <= slot <= range_end]

        allocator = cls(
            registry,
            pool,
            stale_threshold_days=(
                stale_threshold_days
                if stale_threshold_days is not None
                else settings.stale_threshold_days
            ),
            max_attempts=settings.allocate_attempts,
            retry_delay=settings.allocate_retry_delay_ms / 1000,
        )
        allocator._log_pool_status(settings.ip_prefix)
        return allocator

    @property
    def candidate_pool(self) -> list[int]:
        """Slots this process may allocate, ascending."""
        return list(self._pool)

    @property
    def stale_threshold_days(self) -> int:
        return self._stale_threshold_days

    @property
    def registry(self) -> Registry:
        return self._registry

    async def close(self) -> None:
        """Release the registry's connections."""
        await self._registry.close()

    def _log_pool_status(self, prefix: str) -> None:
        count = len(self._pool)
        if count == 0:
            logger.warning("pool_empty", hint="Run: treehouse doctor")
        elif count < 10:
            logger.info(
                "pool_status",
                count=count,
                ips=[format_ip(slot, prefix) for slot in self._pool],
            )
        else:
            logger.info(
                "pool_status",
                count=count,
                first=format_ip(self._pool[0], prefix),
                last=format_ip(self._pool[-1], prefix),
            )

    async def get_or_allocate(self, project: str, branch: str) -> int:
        """Return the slot for project/branch, allocating one if needed.

        Raises:
            NoUsableSlotsError: The candidate pool is empty.
            PoolExhaustedError: Every slot is taken and none is reclaimable.
            AllocationConflictError: Other processes kept winning the slot.
            StorageError: The registry failed.
        """
        async with self._lock:
            existing = await self._registry.find_by_consumer(project, branch)
            if existing is not None:
                await self._registry.touch(existing.id)
                logger.debug("slot_reused", project=project, branch=branch, slot=existing.slot)
                return existing.slot

            allocation = await self._allocate_new(project, branch)
            logger.info("slot_allocated", project=project, branch=branch, slot=allocation.slot)
            return allocation.slot

    async def _allocate_new(self, project: str, branch: str) -> Allocation:
        if not self._pool:
            raise NoUsableSlotsError()

        attempt = 1
        while True:
            slot = await self._choose_slot()
            try:
                return await self._registry.allocate(project, branch, slot)
            except AllocationConflictError:
                logger.warning("slot_conflict", slot=slot, attempt=attempt)
                if attempt >= self._max_attempts:
                    raise
                attempt += 1
                # Jitter spreads out racers that all picked the same lowest slot
                await asyncio.sleep(self._backoff(attempt))

    def _backoff(self, attempt: int) -> float:
        return random.uniform(0, self._retry_delay * attempt)

    async def _choose_slot(self) -> int:
        used = set(await self._registry.used_slots())
        for slot in self._pool:
            if slot not in used:
                return slot
        return await self._reclaim()

    async def _reclaim(self) -> int:
        stale = await self._registry.stale_allocations(self._stale_threshold_days)
        if not stale:
            raise PoolExhaustedError(len(self._pool), self._stale_threshold_days)

        oldest = stale[0]
        # Never take a slot this process could not have allocated itself
        if oldest.slot not in self._pool_set:
            raise PoolExhaustedError(len(self._pool), self._stale_threshold_days)

        await self._registry.release(oldest.id)
        logger.info(
            "slot_reclaimed",
            slot=oldest.slot,
            previous_project=oldest.project,
            previous_branch=oldest.branch,
            last_seen_at=str(oldest.last_seen_at),
        )
        return oldest.slot

    async def release(self, project: str, branch: str) -> None:
        """Release the slot held by project/branch. No-op if none."""
        async with self._lock:
            allocation = await self._registry.find_by_consumer(project, branch)
            if allocation is None:
                return
            await self._registry.release(allocation.id)
            logger.info("slot_released", project=project, branch=branch, slot=allocation.slot)

    async def list(self) -> list[Allocation]:
        """All allocations, most recently seen first."""
        async with self._lock:
            return await self._registry.list_all()

    async def info(self, project: str, branch: str) -> Allocation | None:
        """The allocation for project/branch, if any."""
        async with self._lock:
            return await self._registry.find_by_consumer(project, branch)
