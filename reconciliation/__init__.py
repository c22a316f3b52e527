"""Pull reconciliation: ledger stock written back to storefronts."""

from reconciliation.engine import (
    PullCategory,
    PullEngine,
    PullError,
    PullItemResult,
    PullLockedError,
    PullResult,
)

__all__ = [
    "PullCategory",
    "PullEngine",
    "PullError",
    "PullItemResult",
    "PullLockedError",
    "PullResult",
]
