"""Detection of the consumer key (project, branch) for the current directory.

Project detection order:
1. ``TREEHOUSE_PROJECT`` setting
2. ``[project].name`` from ``pyproject.toml``
3. The directory name
"""

import subprocess
import tomllib
from pathlib import Path
from typing import Protocol

from treehouse.config import Settings, get_settings
from treehouse.errors import BranchDetectionError


class BranchResolver(Protocol):
    """Names the branch (or other context) a directory is on."""

    def current(self, path: Path | None = None) -> str: ...


class GitBranchResolver:
    """Branch resolver that asks git."""

    def current(self, path: Path | None = None) -> str:
        cwd = path or Path.cwd()
        try:
            result = subprocess.run(
                ["git", "rev-parse", "--abbrev-ref", "HEAD"],
                cwd=cwd,
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as exc:
            raise BranchDetectionError(f"Cannot run git: {exc}") from exc
        if result.returncode != 0:
            raise BranchDetectionError((result.stderr or result.stdout).strip())
        return result.stdout.strip()


def _project_from_pyproject(directory: Path) -> str | None:
    pyproject = directory / "pyproject.toml"
    if not pyproject.is_file():
        return None
    try:
        with pyproject.open("rb") as f:
            data = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError):
        return None
    name = data.get("project", {}).get("name")
    return name if isinstance(name, str) and name else None


def detect_project(path: Path | None = None, settings: Settings | None = None) -> str:
    """Return the project name for ``path`` (default: working directory)."""
    settings = settings or get_settings()
    if settings.project:
        return settings.project
    directory = (path or Path.cwd()).resolve()
    return _project_from_pyproject(directory) or directory.name


def current_consumer_key(
    path: Path | None = None,
    resolver: BranchResolver | None = None,
    settings: Settings | None = None,
) -> tuple[str, str]:
    """Return ``(project, branch)`` for ``path``.

    Raises:
        BranchDetectionError: The branch cannot be determined.
    """
    resolver = resolver or GitBranchResolver()
    return detect_project(path, settings), resolver.current(path)
