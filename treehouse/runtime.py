"""Process-wide entry points.

Each process gets one allocator, started lazily on first use:

    import treehouse

    ip = await treehouse.allocate("my-branch")
    # => "127.0.0.10"

For dev servers, ``setup`` does everything at once:

    workspace = await treehouse.setup(port=8000)
    uvicorn.run(app, host=workspace.ip, port=8000)
    # reachable at http://main.myapp.local:8000
"""

import asyncio

from pydantic import BaseModel

from treehouse.allocator import Allocator
from treehouse.config import get_settings
from treehouse.context import GitBranchResolver, detect_project
from treehouse.db import Allocation
from treehouse.errors import AnnounceError
from treehouse.logging import get_logger
from treehouse.mdns import Announcement, Announcer, DnsSdAnnouncer
from treehouse.naming import display_name, format_ip, hostname, parse_ip

logger = get_logger(__name__)

# Allocator instance (lazy initialization)
_allocator: Allocator | None = None
_start_lock = asyncio.Lock()


async def get_allocator() -> Allocator:
    """Get or start the process-wide allocator."""
    global _allocator
    async with _start_lock:
        if _allocator is None:
            _allocator = await Allocator.start()
    return _allocator


async def shutdown() -> None:
    """Close the process-wide allocator."""
    global _allocator
    if _allocator is not None:
        await _allocator.close()
        _allocator = None


async def allocate(branch: str, project: str | None = None) -> str:
    """Get or allocate the IP for project/branch.

    The project defaults to the detected project name. Every call
    refreshes the allocation's last-seen time.
    """
    project = project or detect_project()
    allocator = await get_allocator()
    slot = await allocator.get_or_allocate(project, branch)
    return format_ip(slot, get_settings().ip_prefix)


async def release(branch: str, project: str | None = None) -> None:
    """Release the allocation for project/branch."""
    project = project or detect_project()
    allocator = await get_allocator()
    await allocator.release(project, branch)


async def list_allocations() -> list[Allocation]:
    """List all allocations."""
    allocator = await get_allocator()
    return await allocator.list()


async def info(branch: str, project: str | None = None) -> Allocation | None:
    """Get allocation info for project/branch."""
    project = project or detect_project()
    allocator = await get_allocator()
    return await allocator.info(project, branch)


class Workspace(BaseModel):
    """Everything a dev server needs to bind to its allocated address."""

    project: str
    branch: str
    slot: int
    ip: str
    hostname: str
    announcement: Announcement | None = None

    @property
    def ip_tuple(self) -> tuple[int, ...]:
        return parse_ip(self.ip)


async def setup(
    port: int,
    project: str | None = None,
    branch: str | None = None,
    announce: bool = True,
    allocator: Allocator | None = None,
    announcer: Announcer | None = None,
) -> Workspace:
    """Detect project/branch, allocate an IP and announce it over mDNS.

    An mDNS failure is logged and leaves ``announcement`` unset; allocation
    failures are raised.
    """
    settings = get_settings()
    project = project or detect_project(settings=settings)
    if branch is None:
        branch = await asyncio.to_thread(GitBranchResolver().current)
    allocator = allocator or await get_allocator()

    slot = await allocator.get_or_allocate(project, branch)
    ip = format_ip(slot, settings.ip_prefix)
    name = display_name(project, branch)

    announcement = None
    if announce:
        announcer = announcer or DnsSdAnnouncer(domain=settings.domain)
        try:
            announcement = announcer.announce(name, ip, port)
        except AnnounceError as exc:
            logger.warning("mdns_unavailable", name=name, error=str(exc))

    return Workspace(
        project=project,
        branch=branch,
        slot=slot,
        ip=ip,
        hostname=hostname(name, settings.domain),
        announcement=announcement,
    )
