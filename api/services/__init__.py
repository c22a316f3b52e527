"""API services."""

from api.services.runtime import SyncRuntime, get_runtime

__all__ = ["SyncRuntime", "get_runtime"]
