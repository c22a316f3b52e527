"""Operational sync endpoints.

Force pulls, forced movement retries, and read access to the queue, the
audit trail and the unmapped-SKU list.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from api.services.runtime import SyncRuntime, get_runtime
from core.models import MovementStatus, SyncType
from reconciliation.engine import PullError, PullLockedError
from storage.movements import count_movements_by_status, list_movements
from storage.stores import get_store
from storage.sync_logs import get_sync_log, list_sync_logs
from storage.unmapped_skus import list_unmapped_skus, resolve_unmapped_sku


router = APIRouter()


class PullRequest(BaseModel):
    """Body of a forced pull."""
    integration_id: Optional[str] = None
    skus: Optional[List[str]] = Field(default=None, description="Selective pull when given")
    dry_run: bool = False
    limit: Optional[int] = Field(default=None, gt=0)


# =============================================================================
# Triggers
# =============================================================================

@router.post("/stores/{store_id}/pull")
async def force_pull(
    store_id: str,
    body: Optional[PullRequest] = None,
    runtime: SyncRuntime = Depends(get_runtime),
) -> Dict[str, Any]:
    body = body or PullRequest()
    if get_store(store_id, db_path=runtime.db_path) is None:
        raise HTTPException(status_code=404, detail=f"Store {store_id} not found")
    try:
        result = await runtime.pull_engine.pull(
            store_id,
            body.integration_id,
            skus=body.skus,
            dry_run=body.dry_run,
            limit=body.limit,
            trigger="manual",
        )
    except PullLockedError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except PullError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return result.to_dict()


@router.post("/movements/{movement_id}/retry")
async def retry_movement(
    movement_id: str,
    runtime: SyncRuntime = Depends(get_runtime),
) -> Dict[str, Any]:
    try:
        outcome = await runtime.push_service.retry_movement(movement_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return outcome.to_dict()


# =============================================================================
# Queue and audit trail
# =============================================================================

@router.get("/movements")
async def get_movements(
    status: Optional[MovementStatus] = Query(None),
    store_id: Optional[str] = Query(None),
    limit: int = Query(100, gt=0, le=1000),
    runtime: SyncRuntime = Depends(get_runtime),
) -> List[Dict[str, Any]]:
    movements = list_movements(
        status=status.value if status else None,
        store_id=store_id,
        limit=limit,
        db_path=runtime.db_path,
    )
    return [m.model_dump(mode="json") for m in movements]


@router.get("/movements/stats")
async def movement_stats(
    store_id: Optional[str] = Query(None),
    runtime: SyncRuntime = Depends(get_runtime),
) -> Dict[str, int]:
    return count_movements_by_status(store_id=store_id, db_path=runtime.db_path)


@router.get("/stores/{store_id}/logs")
async def store_logs(
    store_id: str,
    sync_type: Optional[SyncType] = Query(None),
    limit: int = Query(50, gt=0, le=500),
    runtime: SyncRuntime = Depends(get_runtime),
) -> List[Dict[str, Any]]:
    logs = list_sync_logs(
        store_id=store_id,
        sync_type=sync_type.value if sync_type else None,
        limit=limit,
        db_path=runtime.db_path,
    )
    return [log.model_dump(mode="json", exclude={"items"}) for log in logs]


@router.get("/logs/{sync_log_id}")
async def sync_log_detail(
    sync_log_id: str,
    runtime: SyncRuntime = Depends(get_runtime),
) -> Dict[str, Any]:
    log = get_sync_log(sync_log_id, db_path=runtime.db_path)
    if log is None:
        raise HTTPException(status_code=404, detail=f"Sync log {sync_log_id} not found")
    return log.model_dump(mode="json")


# =============================================================================
# Unmapped SKUs
# =============================================================================

@router.get("/unmapped-skus")
async def unmapped_skus(
    store_id: Optional[str] = Query(None),
    tenant_id: Optional[str] = Query(None),
    include_resolved: bool = Query(False),
    runtime: SyncRuntime = Depends(get_runtime),
) -> List[Dict[str, Any]]:
    entries = list_unmapped_skus(
        tenant_id=tenant_id,
        store_id=store_id,
        include_resolved=include_resolved,
        db_path=runtime.db_path,
    )
    return [entry.model_dump(mode="json") for entry in entries]


@router.post("/unmapped-skus/{unmapped_id}/resolve")
async def resolve_unmapped(
    unmapped_id: str,
    runtime: SyncRuntime = Depends(get_runtime),
) -> Dict[str, Any]:
    if not resolve_unmapped_sku(unmapped_id, db_path=runtime.db_path):
        raise HTTPException(status_code=404, detail=f"Open unmapped SKU {unmapped_id} not found")
    return {"success": True, "id": unmapped_id}
