"""Distributed lock manager for per-store pull/push exclusion."""

from locks.manager import LockManager

__all__ = ["LockManager"]
