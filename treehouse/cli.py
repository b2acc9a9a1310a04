"""CLI interface for Treehouse.

Provides commands for:
- Allocating, inspecting and releasing IPs for project/branches
- Viewing and changing the allocation range
- Diagnosing and setting up loopback aliases
"""

import asyncio
import subprocess
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TypeVar

import click

from treehouse import __version__
from treehouse.allocator import Allocator, read_configured_range
from treehouse.config import Settings, get_settings
from treehouse.context import GitBranchResolver, detect_project
from treehouse.db import Allocation, Registry
from treehouse.errors import (
    BranchDetectionError,
    NoUsableSlotsError,
    PoolExhaustedError,
    TreehouseError,
)
from treehouse.logging import bind_context, clear_context, configure_logging, reset_logging
from treehouse.loopback import detect_pool_source, pf_rules
from treehouse.naming import format_ip, hostname

T = TypeVar("T")

DOCTOR_HINT = "Run: treehouse doctor"


def _run_with_allocator(settings: Settings, action: Callable[[Allocator], Awaitable[T]]) -> T:
    async def runner() -> T:
        allocator = await Allocator.start(settings=settings, pool_source=detect_pool_source())
        try:
            return await action(allocator)
        finally:
            await allocator.close()

    try:
        return asyncio.run(runner())
    except (NoUsableSlotsError, PoolExhaustedError) as exc:
        raise click.ClickException(f"{exc}\n{DOCTOR_HINT}") from exc
    except TreehouseError as exc:
        raise click.ClickException(f"Error: {exc}") from exc


def _run_with_registry(settings: Settings, action: Callable[[Registry], Awaitable[T]]) -> T:
    async def runner() -> T:
        registry = Registry.from_settings(settings)
        try:
            await registry.init_schema()
            return await action(registry)
        finally:
            await registry.close()

    try:
        return asyncio.run(runner())
    except TreehouseError as exc:
        raise click.ClickException(f"Error: {exc}") from exc


def _resolve_consumer(settings: Settings, branch: str | None, project: str | None) -> tuple[str, str]:
    if branch is None:
        try:
            branch = GitBranchResolver().current()
        except BranchDetectionError as exc:
            raise click.ClickException(f"Error getting branch: {exc}") from exc
    project = project or detect_project(settings=settings)
    bind_context(project=project, branch=branch)
    return project, branch


def _hostname(settings: Settings, allocation: Allocation) -> str:
    return hostname(allocation.display_name, settings.domain)


def _truncate(text: str, width: int) -> str:
    if len(text) <= width:
        return text
    return text[: width - 2] + ".."


def _print_allocation_table(settings: Settings, allocations: list[Allocation]) -> None:
    click.echo(f"{'PROJECT':<15} {'BRANCH':<20} {'IP':<15} HOSTNAME")
    click.echo("-" * 80)
    for allocation in allocations:
        click.echo(
            f"{_truncate(allocation.project, 15):<15} "
            f"{_truncate(allocation.branch, 20):<20} "
            f"{format_ip(allocation.slot, settings.ip_prefix):<15} "
            f"{_hostname(settings, allocation)}"
        )


@click.group()
@click.version_option(version=__version__, prog_name="treehouse")
@click.option(
    "--registry",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Registry database path (default: TREEHOUSE_REGISTRY_PATH)",
)
@click.option("--verbose", "-v", is_flag=True, help="Show debug logs on stderr")
@click.pass_context
def cli(ctx: click.Context, registry: Path | None, verbose: bool) -> None:
    """Treehouse - a home for your worktrees.

    Allocates a unique loopback IP per project/branch.
    """
    settings = get_settings()
    if registry is not None:
        settings = settings.model_copy(update={"registry_path": registry})
    clear_context()
    configure_logging(level="DEBUG" if verbose else settings.log_level)
    ctx.call_on_close(reset_logging)
    ctx.obj = settings


@cli.command("list")
@click.pass_obj
def list_allocations(settings: Settings) -> None:
    """List all IP allocations."""
    allocations = _run_with_allocator(settings, lambda allocator: allocator.list())

    if not allocations:
        click.echo("No allocations")
        return

    click.echo()
    _print_allocation_table(settings, allocations)
    click.echo()


@cli.command()
@click.argument("branch", required=False)
@click.option("--project", "-p", default=None, help="Project name (default: detected)")
@click.pass_obj
def info(settings: Settings, branch: str | None, project: str | None) -> None:
    """Show allocation info for BRANCH (default: current git branch)."""
    project, branch = _resolve_consumer(settings, branch, project)
    allocation = _run_with_allocator(settings, lambda allocator: allocator.info(project, branch))

    if allocation is None:
        click.echo(f"No allocation for {project}:{branch}")
        return

    click.echo(f"Project:    {allocation.project}")
    click.echo(f"Branch:     {allocation.branch}")
    click.echo(f"Hostname:   {_hostname(settings, allocation)}")
    click.echo(f"IP:         {format_ip(allocation.slot, settings.ip_prefix)}")
    click.echo(f"Allocated:  {allocation.allocated_at.isoformat()}")
    click.echo(f"Last seen:  {allocation.last_seen_at.isoformat()}")


@cli.command()
@click.argument("branch", required=False)
@click.option("--project", "-p", default=None, help="Project name (default: detected)")
@click.pass_obj
def allocate(settings: Settings, branch: str | None, project: str | None) -> None:
    """Allocate an IP for BRANCH (default: current git branch)."""
    project, branch = _resolve_consumer(settings, branch, project)

    async def action(allocator: Allocator) -> Allocation | None:
        await allocator.get_or_allocate(project, branch)
        return await allocator.info(project, branch)

    allocation = _run_with_allocator(settings, action)
    if allocation is None:
        # Reclaimed by another process in between
        raise click.ClickException(f"Allocation for {project}:{branch} disappeared, retry")

    click.echo()
    click.echo(f"Allocated IP for {project}:{branch}")
    click.echo()
    click.echo(f"  IP:       {format_ip(allocation.slot, settings.ip_prefix)}")
    click.echo(f"  Hostname: {_hostname(settings, allocation)}")
    click.echo()


@cli.command()
@click.argument("branch", required=False)
@click.option("--project", "-p", default=None, help="Project name (default: detected)")
@click.pass_obj
def release(settings: Settings, branch: str | None, project: str | None) -> None:
    """Release the allocation for BRANCH (default: current git branch)."""
    project, branch = _resolve_consumer(settings, branch, project)
    _run_with_allocator(settings, lambda allocator: allocator.release(project, branch))
    click.echo(f"Released allocation for: {project}:{branch}")


@cli.command("config")
@click.option("--start", type=click.IntRange(2, 254), default=None, help="Set IP range start")
@click.option("--end", type=click.IntRange(2, 254), default=None, help="Set IP range end")
@click.pass_obj
def config_command(settings: Settings, start: int | None, end: int | None) -> None:
    """View or set the allocation range stored in the registry."""

    async def action(registry: Registry) -> tuple[int, int]:
        if start is not None:
            await registry.set_config("ip_range_start", str(start))
            click.echo(f"Set ip_range_start = {start}")
        if end is not None:
            await registry.set_config("ip_range_end", str(end))
            click.echo(f"Set ip_range_end = {end}")
        return await read_configured_range(registry)

    range_start, range_end = _run_with_registry(settings, action)

    click.echo()
    click.echo("=== Treehouse Configuration ===")
    click.echo()
    click.echo(
        f"IP Range: {format_ip(range_start, settings.ip_prefix)} - "
        f"{format_ip(range_end, settings.ip_prefix)}"
    )
    if range_start > range_end:
        click.echo(click.style("Warning: range start is after range end", fg="yellow"))
    click.echo()


def ping_args(ip: str, platform: str | None = None) -> list[str]:
    """Arguments for a single one-second ping on ``platform``."""
    platform = platform or sys.platform
    if platform == "darwin":
        return ["-c", "1", "-t", "1", ip]
    if platform.startswith("linux"):
        return ["-c", "1", "-W", "1", ip]
    return ["-n", "1", "-w", "1000", ip]


def _ping(ip: str) -> bool:
    try:
        result = subprocess.run(["ping", *ping_args(ip)], capture_output=True, check=False)
    except OSError:
        return False
    return result.returncode == 0


def sample_slots(slots: list[int]) -> list[int]:
    """First, middle and last slot (deduplicated, in order)."""
    if len(slots) <= 2:
        return list(slots)
    picked = [slots[0], slots[len(slots) // 2], slots[-1]]
    return list(dict.fromkeys(picked))


def _check_loopback_aliases(settings: Settings) -> list[int]:
    click.echo("=== Loopback Aliases ===")
    source = detect_pool_source()
    available = sorted(source.available_slots())

    if not available:
        click.echo(f"Status: {click.style('NOT CONFIGURED', fg='red')}")
        click.echo()
        click.echo("No loopback aliases found. Treehouse needs these to work.")
        click.echo()
        click.echo("Quick setup (temporary, until reboot):")
        click.echo(f"  {source.setup_script(settings.ip_range_start, settings.ip_range_end)}")
        click.echo()
        click.echo("Or run each command:")
        for command in source.setup_commands(settings.ip_range_start, settings.ip_range_end)[:3]:
            click.echo(f"  {command}")
        click.echo("  ... (run `treehouse loopback` for full list)")
        return available

    click.echo(f"Status: {click.style('OK', fg='green')} ({len(available)} IPs available)")
    if len(available) <= 10:
        click.echo(f"IPs: {', '.join(format_ip(s, settings.ip_prefix) for s in available)}")
    else:
        click.echo(
            f"Range: {format_ip(available[0], settings.ip_prefix)} - "
            f"{format_ip(available[-1], settings.ip_prefix)}"
        )
    return available


def _check_connectivity(settings: Settings, available: list[int], ping_all: bool) -> None:
    click.echo("=== Connectivity Check ===")
    if not available:
        click.echo("Status: SKIPPED (no loopback aliases to check)")
        return

    targets = available if ping_all else sample_slots(available)
    total = len(targets)
    click.echo(f"Pinging {total} IP{'' if total == 1 else 's'}...")
    click.echo()

    ok_count = 0
    for slot in targets:
        ip = format_ip(slot, settings.ip_prefix)
        reachable = _ping(ip)
        ok_count += reachable
        click.echo(f"  {'✓' if reachable else '✗'} {ip}")
    click.echo()

    failed = total - ok_count
    if failed == 0:
        click.echo(f"Status: OK ({ok_count}/{total} reachable)")
    else:
        click.echo(f"Status: ISSUES ({failed}/{total} unreachable)")
        click.echo()
        click.echo("Some IPs failed ping. This may indicate:")
        click.echo("  - Loopback aliases not properly configured")
        click.echo("  - Firewall blocking ICMP on loopback")


def _check_registry(settings: Settings) -> bool:
    click.echo("=== Registry ===")
    path = settings.database_path
    exists = path.exists()
    click.echo(f"Path: {path}")
    click.echo(f"Status: {'OK' if exists else 'Will be created on first use'}")
    return exists


def _show_allocations(settings: Settings, registry_exists: bool) -> None:
    click.echo("=== Current Allocations ===")
    allocations: list[Allocation] = []
    if registry_exists:
        try:
            allocations = _run_with_registry(settings, lambda registry: registry.list_all())
        except click.ClickException as exc:
            click.echo(f"Error reading registry: {exc.message}")
            return

    if not allocations:
        click.echo("No allocations yet.")
        return

    click.echo()
    _print_allocation_table(settings, allocations)


@cli.command()
@click.option("--ping", is_flag=True, help="Ping a sample of loopback IPs")
@click.option("--ping-all", is_flag=True, help="Ping every loopback IP (slower)")
@click.pass_obj
def doctor(settings: Settings, ping: bool, ping_all: bool) -> None:
    """Check Treehouse setup and diagnose issues."""
    click.echo()
    available = _check_loopback_aliases(settings)
    click.echo()

    if ping or ping_all:
        _check_connectivity(settings, available, ping_all)
        click.echo()

    exists = _check_registry(settings)
    click.echo()
    _show_allocations(settings, exists)
    click.echo()


@cli.command()
@click.option("--start", type=click.IntRange(2, 254), default=10, show_default=True)
@click.option("--end", type=click.IntRange(2, 254), default=99, show_default=True)
@click.option("--script", is_flag=True, help="Print a single script line")
@click.option("--pf", is_flag=True, help="Also print PF hairpin NAT rules")
def loopback(start: int, end: int, script: bool, pf: bool) -> None:
    """Print commands that create loopback aliases.

    Pipe to a shell to apply: treehouse loopback | sudo sh
    """
    source = detect_pool_source()
    if script:
        click.echo("#!/bin/sh")
        click.echo("# Treehouse loopback setup")
        click.echo()
        click.echo("# Create loopback aliases")
        click.echo(source.setup_script(start, end))
    else:
        click.echo(f"# Loopback aliases for 127.0.0.{start} - 127.0.0.{end}")
        click.echo("# Run with: treehouse loopback | sudo sh")
        click.echo()
        for command in source.setup_commands(start, end):
            click.echo(command)

    if pf:
        click.echo()
        for line in pf_rules(start, end):
            click.echo(line)


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
