"""FastAPI server for the inventory sync engine.

Main entry point for the API server. With ``start_workers=True`` the push
worker and the pull scheduler run inside the API process and are drained on
shutdown.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import health, sync, webhooks
from api.services.runtime import SyncRuntime
from core import __version__
from core.observability import configure_logging, get_logger
from storage.db import init_db
from workers.push_worker import PushWorker
from workers.scheduler import PullScheduler

logger = get_logger(__name__)


def create_app(runtime: Optional[SyncRuntime] = None, start_workers: bool = False) -> FastAPI:
    """Create and configure the FastAPI application."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        rt: SyncRuntime = app.state.runtime
        init_db(rt.db_path)
        logger.info(f"Inventory sync API starting up (db {rt.db_path})")

        push_worker = scheduler = None
        if start_workers:
            push_worker = PushWorker(rt.push_service)
            scheduler = PullScheduler(rt.pull_engine)
            push_worker.start()
            scheduler.start()

        yield

        if scheduler is not None:
            await scheduler.stop()
        if push_worker is not None:
            await push_worker.stop()
        logger.info("Inventory sync API shutting down")

    app = FastAPI(
        title="Inventory Sync API",
        description="Webhook ingress and operational triggers for storefront/ledger stock sync",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    app.state.runtime = runtime or SyncRuntime()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router, tags=["Health"])
    app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])
    app.include_router(sync.router, prefix="/sync", tags=["Sync"])

    return app


def run(host: Optional[str] = None, port: Optional[int] = None, start_workers: bool = True) -> None:
    """Serve the API with uvicorn."""
    import uvicorn

    runtime = SyncRuntime()
    configure_logging(level=runtime.settings.log_level, json_format=runtime.settings.log_format == "json")
    uvicorn.run(
        create_app(runtime, start_workers=start_workers),
        host=host or runtime.settings.api_host,
        port=port or runtime.settings.api_port,
    )


if __name__ == "__main__":
    run()
