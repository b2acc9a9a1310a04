"""Database engine configuration.

Uses SQLAlchemy's async engine over aiosqlite. Every connection is
switched to WAL journaling with a bounded busy timeout, so many
processes can share one registry file: readers never block the writer
and a blocked writer waits instead of failing immediately.
"""

from pathlib import Path

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

DEFAULT_BUSY_TIMEOUT_MS = 5000


def create_registry_engine(
    path: Path,
    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
    echo: bool = False,
) -> AsyncEngine:
    """Create the async engine for a registry file.

    The parent directory is created if needed.
    """
    path = path.expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)

    engine = create_async_engine(
        f"sqlite+aiosqlite:///{path}",
        echo=echo,
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _configure_connection(dbapi_connection, connection_record) -> None:
        cursor = dbapi_connection.cursor()
        # Busy timeout first: switching to WAL itself may need the lock
        cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Build the session factory used by the registry."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
