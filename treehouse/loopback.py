"""Loopback alias discovery.

Instead of trusting a configured range, the allocator asks the OS which
``127.0.0.x`` aliases actually exist and allocates from those.

- Linux: parses ``ip addr show lo``
- macOS: parses ``ifconfig lo0``
- anything else: no aliases
"""

import re
import subprocess
import sys
from collections.abc import Iterable
from typing import Protocol

from pydantic import BaseModel, ConfigDict

from treehouse.logging import get_logger

logger = get_logger(__name__)

_INET_RE = re.compile(r"inet 127\.0\.0\.(\d+)")


class PoolSource(Protocol):
    """Reports which slots are usable on this host."""

    def available_slots(self) -> set[int]: ...

    def setup_commands(self, range_start: int, range_end: int) -> list[str]: ...

    def setup_script(self, range_start: int, range_end: int) -> str: ...


def parse_loopback_aliases(output: str) -> set[int]:
    """Extract alias suffixes from ``ip addr``/``ifconfig`` output.

    ``127.0.0.1`` (and ``.0``) are never part of the pool.
    """
    return {int(match) for match in _INET_RE.findall(output) if int(match) > 1}


class CommandLoopback(BaseModel):
    """Pool source backed by an interface listing command."""

    model_config = ConfigDict(frozen=True)

    command: tuple[str, ...]
    alias_template: str
    script_template: str

    def available_slots(self) -> set[int]:
        try:
            result = subprocess.run(
                list(self.command),
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as exc:
            logger.warning("loopback_probe_failed", command=" ".join(self.command), error=str(exc))
            return set()
        if result.returncode != 0:
            logger.warning(
                "loopback_probe_failed",
                command=" ".join(self.command),
                error=(result.stderr or result.stdout).strip(),
            )
            return set()
        return parse_loopback_aliases(result.stdout)

    def setup_commands(self, range_start: int, range_end: int) -> list[str]:
        return [
            self.alias_template.format(suffix=i) for i in range(range_start, range_end + 1)
        ]

    def setup_script(self, range_start: int, range_end: int) -> str:
        return self.script_template.format(start=range_start, end=range_end)


LINUX = CommandLoopback(
    command=("ip", "addr", "show", "lo"),
    alias_template="sudo ip addr add 127.0.0.{suffix}/8 dev lo",
    script_template=(
        "for i in $(seq {start} {end}); do "
        "sudo ip addr add 127.0.0.$i/8 dev lo 2>/dev/null; done"
    ),
)

DARWIN = CommandLoopback(
    command=("ifconfig", "lo0"),
    alias_template="sudo ifconfig lo0 alias 127.0.0.{suffix} up",
    script_template=(
        "for i in $(seq {start} {end}); do sudo ifconfig lo0 alias 127.0.0.$i up; done"
    ),
)


class UnsupportedLoopback:
    """Fallback for platforms without a known probe."""

    def available_slots(self) -> set[int]:
        return set()

    def setup_commands(self, range_start: int, range_end: int) -> list[str]:
        return ["# Unsupported platform"]

    def setup_script(self, range_start: int, range_end: int) -> str:
        return "# Unsupported platform"


class StaticPool:
    """A fixed set of slots, for explicit ranges and tests."""

    def __init__(self, slots: Iterable[int]) -> None:
        self._slots = set(slots)

    def available_slots(self) -> set[int]:
        return set(self._slots)

    def setup_commands(self, range_start: int, range_end: int) -> list[str]:
        return []

    def setup_script(self, range_start: int, range_end: int) -> str:
        return ""


def detect_pool_source(platform: str | None = None) -> PoolSource:
    """Pick the pool source for the running OS."""
    platform = platform or sys.platform
    if platform == "darwin":
        return DARWIN
    if platform.startswith("linux"):
        return LINUX
    return UnsupportedLoopback()


def pf_rules(range_start: int, range_end: int, platform: str | None = None) -> list[str]:
    """Shell lines installing PF hairpin NAT so a server can reach itself.

    Only macOS needs this; other platforms get an explanatory comment.
    """
    platform = platform or sys.platform
    if platform == "darwin":
        lines = [
            "# PF NAT rules for hairpin routing (macOS)",
            "# This allows servers to connect to themselves via loopback IPs",
            "",
            "cat > /tmp/loopback_nat.conf << 'EOF'",
        ]
        lines.extend(
            f"nat on lo0 from 127.0.0.{i} to 127.0.0.{i} -> 127.0.0.1"
            for i in range(range_start, range_end + 1)
        )
        lines.extend(
            [
                "EOF",
                "",
                "# Add anchor to pf.conf if not present",
                "grep -q 'loopback_treehouse' /etc/pf.conf || {",
                "  sudo cp /etc/pf.conf /etc/pf.conf.backup",
                "  echo 'nat-anchor \"loopback_treehouse\"' | sudo tee -a /etc/pf.conf",
                "  echo 'load anchor \"loopback_treehouse\" from "
                "\"/etc/pf.anchors/loopback_treehouse\"' | sudo tee -a /etc/pf.conf",
                "}",
                "",
                "sudo cp /tmp/loopback_nat.conf /etc/pf.anchors/loopback_treehouse",
                "sudo pfctl -f /etc/pf.conf",
                "sudo pfctl -e 2>/dev/null || true",
            ]
        )
        return lines
    if platform.startswith("linux"):
        return [
            "# Linux typically doesn't need hairpin NAT for loopback",
            "# If you do need it, use iptables DNAT rules",
        ]
    return ["# PF rules not available on this platform"]
