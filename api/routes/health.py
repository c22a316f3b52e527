"""Health check endpoints."""

from datetime import datetime
from typing import Any, Dict

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel

from api.services.runtime import SyncRuntime, get_runtime
from core import __version__
from core.observability import get_logger, get_metrics
from storage.db import connect
from storage.movements import count_movements_by_status


logger = get_logger(__name__)

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    timestamp: str
    version: str
    services: Dict[str, str]


@router.get("/health", response_model=HealthResponse)
async def health_check(response: Response, runtime: SyncRuntime = Depends(get_runtime)) -> HealthResponse:
    """Liveness plus a storage round trip."""
    storage_status = "up"
    try:
        conn = connect(runtime.db_path)
        try:
            conn.execute("SELECT 1").fetchone()
        finally:
            conn.close()
    except Exception as e:
        logger.warning(f"Health check storage probe failed: {e}")
        storage_status = "down"
        response.status_code = 503

    return HealthResponse(
        status="healthy" if storage_status == "up" else "degraded",
        timestamp=datetime.utcnow().isoformat(),
        version=__version__,
        services={"api": "up", "storage": storage_status},
    )


@router.get("/health/metrics")
async def metrics(runtime: SyncRuntime = Depends(get_runtime)) -> Dict[str, Any]:
    """In-process counters plus the current queue depth by status."""
    summary = get_metrics().get_summary()
    summary["queue"] = count_movements_by_status(db_path=runtime.db_path)
    return summary
