"""Exceptions raised by Treehouse.

Callers can tell "nothing to allocate from" (NoUsableSlotsError) apart
from "release something first" (PoolExhaustedError) and from
"the registry is broken" (StorageError).
"""


class TreehouseError(Exception):
    """Base exception for Treehouse errors."""

    pass


class NoUsableSlotsError(TreehouseError):
    """Raised when the candidate pool is empty.

    Usually no loopback aliases exist inside the configured range.
    """

    def __init__(self) -> None:
        super().__init__("No usable loopback aliases in the configured range")


class PoolExhaustedError(TreehouseError):
    """Raised when every slot is bound and none is stale enough to reclaim."""

    def __init__(self, pool_size: int, stale_threshold_days: int) -> None:
        self.pool_size = pool_size
        self.stale_threshold_days = stale_threshold_days
        super().__init__(
            f"IP pool exhausted: all {pool_size} slots are in use and none "
            f"has been idle for more than {stale_threshold_days} days"
        )


class StorageError(TreehouseError):
    """Raised when the registry database fails.

    The driver exception is always chained as ``__cause__``.
    """

    pass


class AllocationConflictError(TreehouseError):
    """Raised when another process bound the chosen slot first."""

    def __init__(self, slot: int) -> None:
        self.slot = slot
        super().__init__(f"Slot {slot} was taken by another process")


class BranchDetectionError(TreehouseError):
    """Raised when the current branch cannot be determined."""

    pass


class AnnounceError(TreehouseError):
    """Raised when an mDNS announcement cannot be started."""

    pass
