"""SQLite-backed registry of slot allocations.

The registry is the single source of truth shared by every process on
the machine. Each method opens its own session and commits before
returning, so no lock is held between calls. Uniqueness constraints on
``slot`` and on ``(project, branch)`` settle races between processes.
"""

from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from pathlib import Path

from sqlalchemy import Connection, delete, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from sqlalchemy.schema import CreateIndex, CreateTable
from sqlmodel import col, select

from treehouse.config import Settings, get_settings
from treehouse.db.engine import (
    DEFAULT_BUSY_TIMEOUT_MS,
    create_registry_engine,
    create_session_factory,
)
from treehouse.db.models import (
    CONFIG_DEFAULTS,
    DEFAULT_PROJECT,
    Allocation,
    ConfigEntry,
    utc_now,
)
from treehouse.errors import AllocationConflictError, StorageError
from treehouse.logging import get_logger
from treehouse.naming import display_name

logger = get_logger(__name__)

_TABLES = (ConfigEntry.__table__, Allocation.__table__)


def _has_column(connection: Connection, table: str, column: str) -> bool:
    rows = connection.exec_driver_sql(f"PRAGMA table_info({table})").all()
    return any(row[1] == column for row in rows)


def _add_project_column(connection: Connection) -> bool:
    """Add ``allocations.project`` to registries created before it existed.

    Returns True if this call added the column.
    """
    if _has_column(connection, "allocations", "project"):
        return False
    try:
        connection.exec_driver_sql(
            "ALTER TABLE allocations ADD COLUMN project VARCHAR NOT NULL "
            f"DEFAULT '{DEFAULT_PROJECT}'"
        )
    except OperationalError:
        # Another process may have added it between the probe and the ALTER
        if _has_column(connection, "allocations", "project"):
            return False
        raise
    return True


def _create_schema(connection: Connection) -> bool:
    for table in _TABLES:
        connection.execute(CreateTable(table, if_not_exists=True))

    # Indexes reference project, so they come after the migration
    migrated = _add_project_column(connection)
    for index in Allocation.__table__.indexes:
        connection.execute(CreateIndex(index, if_not_exists=True))

    seed = sqlite_insert(ConfigEntry.__table__).values(
        [{"key": key, "value": value} for key, value in CONFIG_DEFAULTS.items()]
    )
    connection.execute(seed.on_conflict_do_nothing(index_elements=["key"]))
    return migrated


class Registry:
    """Durable store of allocations and configuration.

    Every failure of the underlying database is raised as StorageError
    with the driver exception chained.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._engine = engine
        self._session_factory = create_session_factory(engine)
        self._clock = clock

    @classmethod
    def open(
        cls,
        path: Path,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        echo: bool = False,
        clock: Callable[[], datetime] = utc_now,
    ) -> "Registry":
        """Open (creating if needed) the registry file at ``path``."""
        try:
            engine = create_registry_engine(path, busy_timeout_ms=busy_timeout_ms, echo=echo)
        except OSError as exc:
            raise StorageError(f"Cannot open registry at {path}: {exc}") from exc
        return cls(engine, clock=clock)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "Registry":
        """Open the registry configured by TREEHOUSE_* settings."""
        settings = settings or get_settings()
        return cls.open(
            settings.database_path,
            busy_timeout_ms=settings.busy_timeout_ms,
            echo=settings.debug,
        )

    async def close(self) -> None:
        """Dispose the engine and its pooled connections."""
        await self._engine.dispose()

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                raise StorageError(str(exc)) from exc
            except Exception:
                await session.rollback()
                raise

    # Schema

    async def init_schema(self) -> None:
        """Create or upgrade the schema and seed configuration defaults.

        Safe to call on every startup, from many processes at once.
        """
        try:
            async with self._engine.begin() as conn:
                migrated = await conn.run_sync(_create_schema)
        except SQLAlchemyError as exc:
            raise StorageError(str(exc)) from exc
        if migrated:
            logger.info("schema_migrated", column="project", default=DEFAULT_PROJECT)

    # Allocations

    async def allocate(self, project: str, branch: str, slot: int) -> Allocation:
        """Bind ``slot`` to project/branch, or return the existing binding.

        Raises:
            AllocationConflictError: The slot is bound to someone else.
        """
        async with self._session() as session:
            existing = await self._find_by_consumer(session, project, branch)
            if existing is not None:
                return existing

            now = self._clock()
            allocation = Allocation(
                project=project,
                branch=branch,
                slot=slot,
                display_name=display_name(project, branch),
                allocated_at=now,
                last_seen_at=now,
            )
            session.add(allocation)
            try:
                await session.flush()
            except IntegrityError as exc:
                await session.rollback()
                # Same consumer bound concurrently: that binding wins
                winner = await self._find_by_consumer(session, project, branch)
                if winner is not None:
                    return winner
                raise AllocationConflictError(slot) from exc
            await session.refresh(allocation)
            return allocation

    async def find_by_consumer(self, project: str, branch: str) -> Allocation | None:
        """Get the allocation for a project/branch."""
        async with self._session() as session:
            return await self._find_by_consumer(session, project, branch)

    async def _find_by_consumer(
        self, session: AsyncSession, project: str, branch: str
    ) -> Allocation | None:
        result = await session.execute(
            select(Allocation).where(
                Allocation.project == project,
                Allocation.branch == branch,
            )
        )
        return result.scalars().first()

    async def find_by_slot(self, slot: int) -> Allocation | None:
        """Get the allocation holding a slot."""
        async with self._session() as session:
            result = await session.execute(select(Allocation).where(Allocation.slot == slot))
            return result.scalars().first()

    async def list_all(self) -> list[Allocation]:
        """List allocations, most recently seen first."""
        async with self._session() as session:
            result = await session.execute(
                select(Allocation).order_by(
                    col(Allocation.last_seen_at).desc(),
                    col(Allocation.id).desc(),
                )
            )
            return list(result.scalars().all())

    async def touch(self, allocation_id: int) -> None:
        """Mark an allocation as seen now. Never moves the timestamp back."""
        now = self._clock()
        async with self._session() as session:
            await session.execute(
                update(Allocation)
                .where(
                    col(Allocation.id) == allocation_id,
                    col(Allocation.last_seen_at) < now,
                )
                .values(last_seen_at=now)
            )

    async def release(self, allocation_id: int) -> None:
        """Delete an allocation. Unknown ids are ignored."""
        async with self._session() as session:
            await session.execute(delete(Allocation).where(col(Allocation.id) == allocation_id))

    async def stale_allocations(self, days: int) -> list[Allocation]:
        """Allocations not seen for more than ``days`` days, oldest first."""
        cutoff = self._clock() - timedelta(days=days)
        async with self._session() as session:
            result = await session.execute(
                select(Allocation)
                .where(col(Allocation.last_seen_at) < cutoff)
                .order_by(col(Allocation.last_seen_at).asc(), col(Allocation.id).asc())
            )
            return list(result.scalars().all())

    async def used_slots(self) -> list[int]:
        """Slots currently bound to an allocation."""
        async with self._session() as session:
            result = await session.execute(select(Allocation.slot))
            return list(result.scalars().all())

    # Configuration

    async def get_config(self, key: str) -> str | None:
        """Get a configuration value."""
        async with self._session() as session:
            entry = await session.get(ConfigEntry, key)
            return entry.value if entry is not None else None

    async def set_config(self, key: str, value: str) -> None:
        """Insert or replace a configuration value."""
        stmt = sqlite_insert(ConfigEntry.__table__).values(key=key, value=value)
        async with self._session() as session:
            await session.execute(
                stmt.on_conflict_do_update(index_elements=["key"], set_={"value": value})
            )
