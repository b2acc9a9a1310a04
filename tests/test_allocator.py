"""Tests for the allocation policy."""

import asyncio

import pytest

from treehouse.allocator import Allocator
from treehouse.config import Settings
from treehouse.db import Registry
from treehouse.errors import (
    AllocationConflictError,
    NoUsableSlotsError,
    PoolExhaustedError,
    StorageError,
)
from treehouse.loopback import StaticPool


class RecordingAllocator(Allocator):
    """Allocator that records retry backoffs instead of sleeping."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.backoffs: list[int] = []

    def _backoff(self, attempt: int) -> float:
        self.backoffs.append(attempt)
        return 0


class StaleViewRegistry(Registry):
    """Registry whose first used_slots() answers miss a concurrent writer."""

    stale_reads = 1

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.used_slots_calls = 0

    async def used_slots(self) -> list[int]:
        self.used_slots_calls += 1
        if self.used_slots_calls <= self.stale_reads:
            return []
        return await super().used_slots()


@pytest.mark.asyncio
class TestGetOrAllocate:
    """Tests for get_or_allocate."""

    async def test_allocates_lowest_free_slot(self, registry):
        """Test slots are handed out lowest first."""
        allocator = Allocator(registry, [12, 10, 11])

        assert await allocator.get_or_allocate("app", "main") == 10
        assert await allocator.get_or_allocate("app", "dev") == 11
        assert await allocator.get_or_allocate("app", "feat") == 12

    async def test_same_key_returns_same_slot(self, registry, clock):
        """Test repeat calls reuse the slot and refresh last_seen_at."""
        allocator = Allocator(registry, [10, 11])

        first = await allocator.get_or_allocate("app", "main")
        before = await allocator.info("app", "main")
        clock.advance(hours=1)
        second = await allocator.get_or_allocate("app", "main")
        after = await allocator.info("app", "main")

        assert first == second == 10
        assert after.last_seen_at >= before.last_seen_at
        assert after.last_seen_at == clock.now
        assert after.allocated_at == before.allocated_at

    async def test_slots_stay_in_pool(self, registry):
        """Test every slot returned belongs to the candidate pool."""
        pool = [20, 30, 40]
        allocator = Allocator(registry, pool)

        slots = [await allocator.get_or_allocate("app", f"b{i}") for i in range(3)]

        assert sorted(slots) == pool

    async def test_skips_slots_used_by_other_pools(self, registry):
        """Test slots bound by other processes are not handed out again."""
        await registry.allocate("other", "main", 10)
        allocator = Allocator(registry, [10, 11])

        assert await allocator.get_or_allocate("app", "main") == 11

    async def test_release_then_lowest_free(self, registry):
        """Test a released slot is reused before higher ones."""
        allocator = Allocator(registry, [10, 11], stale_threshold_days=365)
        assert await allocator.get_or_allocate("app", "main") == 10
        assert await allocator.get_or_allocate("app", "dev") == 11

        await allocator.release("app", "main")

        assert await allocator.get_or_allocate("app", "other") == 10
        assert (await allocator.info("app", "dev")).slot == 11

    async def test_empty_pool_raises_no_usable_slots(self, registry):
        """Test an empty pool is a configuration problem, not exhaustion."""
        allocator = Allocator(registry, [])

        with pytest.raises(NoUsableSlotsError):
            await allocator.get_or_allocate("app", "main")

    async def test_existing_allocation_served_even_with_empty_pool(self, registry):
        """Test lookups of existing bindings do not need the pool."""
        await registry.allocate("app", "main", 50)
        allocator = Allocator(registry, [])

        assert await allocator.get_or_allocate("app", "main") == 50

    async def test_concurrent_calls_get_distinct_slots(self, registry):
        """Test calls from one process never race each other."""
        allocator = Allocator(registry, range(10, 15))

        slots = await asyncio.gather(
            *(allocator.get_or_allocate("app", f"b{i}") for i in range(5))
        )

        assert sorted(slots) == [10, 11, 12, 13, 14]

    async def test_concurrent_calls_same_key(self, registry):
        """Test concurrent calls for one key produce one allocation."""
        allocator = Allocator(registry, [10, 11, 12])

        slots = await asyncio.gather(
            *(allocator.get_or_allocate("app", "main") for _ in range(3))
        )

        assert slots == [10, 10, 10]
        assert len(await allocator.list()) == 1


@pytest.mark.asyncio
class TestReclamation:
    """Tests for lazy reclamation when the pool is full."""

    async def test_reclaims_oldest_stale_allocation(self, registry, clock):
        """Test a full pool reclaims the least recently seen allocation."""
        allocator = Allocator(registry, [10, 11], stale_threshold_days=0)
        assert await allocator.get_or_allocate("app", "main") == 10
        clock.advance(seconds=1)
        assert await allocator.get_or_allocate("app", "dev") == 11
        clock.advance(seconds=1)

        slot = await allocator.get_or_allocate("app", "feat")

        assert slot in {10, 11}
        assert slot == 10
        assert await allocator.info("app", "main") is None
        assert (await allocator.info("app", "dev")).slot == 11
        assert (await allocator.info("app", "feat")).slot == 10

    async def test_touch_protects_from_reclamation(self, registry, clock):
        """Test a recently touched allocation is not the one reclaimed."""
        allocator = Allocator(registry, [10, 11], stale_threshold_days=0)
        await allocator.get_or_allocate("app", "main")
        clock.advance(seconds=1)
        await allocator.get_or_allocate("app", "dev")
        clock.advance(seconds=1)
        await allocator.get_or_allocate("app", "main")
        clock.advance(seconds=1)

        assert await allocator.get_or_allocate("app", "feat") == 11
        assert await allocator.info("app", "dev") is None

    async def test_nothing_stale_raises_pool_exhausted(self, registry, clock):
        """Test a full pool with fresh allocations is exhausted."""
        allocator = Allocator(registry, [10, 11], stale_threshold_days=365)
        await allocator.get_or_allocate("app", "main")
        clock.advance(days=30)
        await allocator.get_or_allocate("app", "dev")
        clock.advance(days=30)

        with pytest.raises(PoolExhaustedError) as exc_info:
            await allocator.get_or_allocate("app", "feat")

        assert exc_info.value.pool_size == 2
        branches = sorted(a.branch for a in await allocator.list())
        assert branches == ["dev", "main"]

    async def test_stale_slot_outside_pool_is_not_reclaimed(self, registry, clock):
        """Test the oldest allocation is only reclaimed if its slot is usable here."""
        await registry.allocate("other", "ancient", 50)
        clock.advance(days=10)
        allocator = Allocator(registry, [10], stale_threshold_days=1)
        assert await allocator.get_or_allocate("app", "main") == 10

        with pytest.raises(PoolExhaustedError):
            await allocator.get_or_allocate("app", "dev")

        assert (await registry.find_by_slot(50)).branch == "ancient"
        assert (await registry.find_by_slot(10)).branch == "main"


@pytest.mark.asyncio
class TestConflicts:
    """Tests for losing a slot race against another process."""

    async def test_conflict_is_retried(self, db_path, clock):
        """Test a lost race recomputes the free slot and succeeds."""
        registry = StaleViewRegistry.open(db_path, clock=clock)
        try:
            await registry.init_schema()
            await registry.allocate("other", "main", 10)
            allocator = Allocator(registry, [10, 11])

            assert await allocator.get_or_allocate("app", "main") == 11
            assert registry.used_slots_calls == 2
        finally:
            await registry.close()

    async def test_conflict_raised_after_max_attempts(self, db_path, clock):
        """Test repeated conflicts surface as AllocationConflictError."""
        registry = StaleViewRegistry.open(db_path, clock=clock)
        registry.stale_reads = 100
        try:
            await registry.init_schema()
            await registry.allocate("other", "main", 10)
            allocator = Allocator(registry, [10, 11], max_attempts=3)

            with pytest.raises(AllocationConflictError) as exc_info:
                await allocator.get_or_allocate("app", "main")

            assert exc_info.value.slot == 10
            assert registry.used_slots_calls == 3
            assert await registry.find_by_consumer("app", "main") is None
        finally:
            await registry.close()


    async def test_retries_back_off(self, db_path, clock):
        """Test every retry waits a backoff that grows with the attempt."""
        registry = StaleViewRegistry.open(db_path, clock=clock)
        registry.stale_reads = 100
        try:
            await registry.init_schema()
            await registry.allocate("other", "main", 10)
            allocator = RecordingAllocator(registry, [10, 11], max_attempts=4)

            with pytest.raises(AllocationConflictError):
                await allocator.get_or_allocate("app", "main")

            assert allocator.backoffs == [2, 3, 4]
        finally:
            await registry.close()

    async def test_backoff_is_jittered_within_bound(self, registry):
        """Test backoff delays stay between zero and retry_delay * attempt."""
        allocator = Allocator(registry, [10], retry_delay=0.1)

        delays = [allocator._backoff(3) for _ in range(50)]

        assert all(0 <= delay <= 0.3 for delay in delays)
        assert len(set(delays)) > 1


@pytest.mark.asyncio
class TestReleaseListInfo:
    """Tests for release, list and info."""

    async def test_release_unknown_is_noop(self, registry):
        """Test releasing an unbound key succeeds."""
        allocator = Allocator(registry, [10])

        await allocator.release("app", "nonexistent")

    async def test_list(self, registry):
        """Test list returns all allocations."""
        allocator = Allocator(registry, [10, 11])
        assert await allocator.list() == []

        await allocator.get_or_allocate("app", "main")
        await allocator.get_or_allocate("app", "dev")

        assert len(await allocator.list()) == 2

    async def test_info(self, registry):
        """Test info returns the allocation or None."""
        allocator = Allocator(registry, [10])
        await allocator.get_or_allocate("app", "main")

        allocation = await allocator.info("app", "main")
        assert allocation.slot == 10
        assert allocation.display_name == "main.app"
        assert await allocator.info("app", "unknown") is None


@pytest.mark.asyncio
class TestStart:
    """Tests for building the candidate pool at startup."""

    async def test_pool_is_discovery_within_configured_range(self, registry):
        """Test the pool is the available slots inside the registry's range."""
        await registry.set_config("ip_range_start", "20")
        await registry.set_config("ip_range_end", "40")

        allocator = await Allocator.start(
            registry=registry,
            pool_source=StaticPool({10, 20, 30, 41}),
            settings=Settings(),
        )

        assert allocator.candidate_pool == [20, 30]

    async def test_default_range(self, registry):
        """Test the seeded 10-99 range filters discovered aliases."""
        allocator = await Allocator.start(
            registry=registry,
            pool_source=StaticPool({2, 10, 55, 99, 100}),
            settings=Settings(),
        )

        assert allocator.candidate_pool == [10, 55, 99]

    async def test_unreadable_range_falls_back(self, registry):
        """Test malformed range config falls back to 10-99."""
        await registry.set_config("ip_range_start", "abc")

        allocator = await Allocator.start(
            registry=registry,
            pool_source=StaticPool({5, 10, 50}),
            settings=Settings(),
        )

        assert allocator.candidate_pool == [10, 50]

    async def test_explicit_range_skips_discovery(self, registry):
        """Test an explicit range is used as the whole pool."""
        allocator = await Allocator.start(
            registry=registry,
            pool_source=StaticPool(set()),
            settings=Settings(),
            ip_range=(10, 12),
            stale_threshold_days=0,
        )

        assert allocator.candidate_pool == [10, 11, 12]
        assert allocator.stale_threshold_days == 0

    async def test_retry_policy_from_settings(self, registry):
        """Test attempts and retry delay come from the settings."""
        allocator = await Allocator.start(
            registry=registry,
            pool_source=StaticPool({10}),
            settings=Settings(allocate_attempts=2, allocate_retry_delay_ms=0),
        )

        assert allocator._max_attempts == 2
        assert allocator._retry_delay == 0

    async def test_threshold_from_settings(self, registry):
        """Test the staleness threshold defaults to the settings value."""
        allocator = await Allocator.start(
            registry=registry,
            pool_source=StaticPool({10}),
            settings=Settings(stale_threshold_days=3),
        )

        assert allocator.stale_threshold_days == 3

    async def test_storage_failure_propagates(self, tmp_path):
        """Test registry failures at startup reach the caller."""
        registry = Registry.open(tmp_path)
        try:
            with pytest.raises(StorageError):
                await Allocator.start(
                    registry=registry,
                    pool_source=StaticPool({10}),
                    settings=Settings(),
                )
        finally:
            await registry.close()
