"""Treehouse - a home for your worktrees.

Allocates a unique loopback IP (127.0.0.10-99 by default) per
project/branch, persists the mapping in SQLite shared by every process on
the machine, and announces ``<branch>.<project>.local`` over mDNS.
"""

__version__ = "0.1.0"

from treehouse.naming import format_ip, parse_ip  # noqa: E402
from treehouse.runtime import (  # noqa: E402
    Workspace,
    allocate,
    info,
    list_allocations,
    release,
    setup,
    shutdown,
)

__all__ = [
    "__version__",
    "Workspace",
    "allocate",
    "format_ip",
    "info",
    "list_allocations",
    "parse_ip",
    "release",
    "setup",
    "shutdown",
]
