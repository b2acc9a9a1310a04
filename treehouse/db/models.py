"""Database models for the Treehouse registry.

All models use SQLModel for Pydantic + SQLAlchemy integration.
These models hold:
- Active slot allocations per project/branch
- Operator configuration (the allocation range)
"""

from datetime import datetime, timezone

from sqlalchemy import DateTime, Index
from sqlalchemy.types import TypeDecorator
from sqlmodel import Field, SQLModel

DEFAULT_PROJECT = "unknown"

# Seeded on first initialization, never overwritten afterwards
CONFIG_DEFAULTS: dict[str, str] = {
    "ip_range_start": "10",
    "ip_range_end": "99",
}


def utc_now() -> datetime:
    """Get current UTC time."""
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Datetime stored as naive UTC and always loaded as aware UTC.

    SQLite has no timezone support, so the offset is normalized away on
    write and reattached on read.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class Allocation(SQLModel, table=True):
    """A slot bound to a project/branch pair.

    Only ``last_seen_at`` changes after creation.
    """

    __tablename__ = "allocations"
    __table_args__ = (
        Index("idx_allocations_project_branch", "project", "branch", unique=True),
        Index("idx_allocations_slot", "slot"),
        {"extend_existing": True, "sqlite_autoincrement": True},
    )

    id: int | None = Field(default=None, primary_key=True)
    project: str = Field(default=DEFAULT_PROJECT)
    branch: str
    slot: int = Field(unique=True)
    display_name: str
    allocated_at: datetime = Field(default_factory=utc_now, sa_type=UTCDateTime)
    last_seen_at: datetime = Field(default_factory=utc_now, sa_type=UTCDateTime)


class ConfigEntry(SQLModel, table=True):
    """A key/value configuration row."""

    __tablename__ = "config"
    __table_args__ = {"extend_existing": True}

    key: str = Field(primary_key=True)
    value: str
