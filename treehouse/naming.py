"""Name and address helpers.

Branch and project names become DNS labels; slots become loopback
addresses.
"""

import hashlib
import re

MAX_LABEL_LENGTH = 63
MAX_PROJECT_LENGTH = 20
HASH_LENGTH = 8

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def _clean(name: str) -> str:
    return _NON_ALNUM.sub("-", name.lower()).strip("-")


def _truncate_with_hash(label: str) -> str:
    if len(label) <= MAX_LABEL_LENGTH:
        return label
    # "-" plus the hash must still fit in one label
    prefix = label[: MAX_LABEL_LENGTH - HASH_LENGTH - 1].rstrip("-")
    digest = hashlib.md5(label.encode()).hexdigest()[:HASH_LENGTH]
    return f"{prefix}-{digest}"


def sanitize_branch(branch: str) -> str:
    """Turn a branch name into a DNS label.

    Lowercases, collapses every run of characters outside ``[a-z0-9]``
    into one dash and trims dashes from both ends. Labels longer than 63
    characters are cut and suffixed with a short hash of the full label so
    two long branches sharing a prefix stay distinct.

        >>> sanitize_branch("Feature/My Branch!")
        'feature-my-branch'
    """
    return _truncate_with_hash(_clean(branch))


def sanitize_project(project: str) -> str:
    """Turn a project name into a short DNS label (at most 20 characters)."""
    clean = _clean(project)
    if len(clean) <= MAX_PROJECT_LENGTH:
        return clean
    return clean[:MAX_PROJECT_LENGTH].strip("-")


def display_name(project: str, branch: str) -> str:
    """Return the ``<branch>.<project>`` name stored with an allocation."""
    return f"{sanitize_branch(branch)}.{sanitize_project(project)}"


def hostname(name: str, domain: str = "local") -> str:
    """Append the mDNS domain to a display name."""
    return f"{name}.{domain}"


def format_ip(slot: int, prefix: str = "127.0.0") -> str:
    """Format a slot as a full IPv4 address."""
    return f"{prefix}.{slot}"


def parse_ip(ip: str) -> tuple[int, ...]:
    """Split a dotted address into integers, e.g. for ``socket.bind``."""
    return tuple(int(part) for part in ip.split("."))
