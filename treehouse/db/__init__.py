"""Database module for the Treehouse registry."""

from treehouse.db.models import Allocation, ConfigEntry
from treehouse.db.registry import Registry

__all__ = [
    "Allocation",
    "ConfigEntry",
    "Registry",
]
