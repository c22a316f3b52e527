"""Worker entry point for the inventory sync engine.

Commands:
    push        run the push worker loop (drains the movement queue)
    scheduler   run the scheduled pull loop
    all         run both loops in one process
    api         serve the HTTP API (with both loops inside it)
    init-db     create the sqlite schema
    pull        run one pull for a store and print the result
    process     process one batch of pending movements and print the result

Loops stop on SIGINT/SIGTERM after the in-flight tick has drained.
"""

import argparse
import asyncio
import json
import signal
from typing import List, Optional

from core.config import get_settings
from core.observability import configure_logging, get_logger
from push.service import PushService
from reconciliation.engine import PullEngine
from storage.db import init_db
from workers.push_worker import PushWorker
from workers.scheduler import PullScheduler

logger = get_logger(__name__)


def _build_services():
    settings = get_settings()
    init_db(settings.db_path)
    engine = PullEngine(settings=settings)
    service = PushService(
        db_path=engine.db_path,
        settings=settings,
        lock_manager=engine.locks,
        pull_engine=engine,
    )
    return engine, service


async def run_loops(push: bool = True, scheduler: bool = True) -> None:
    """Run the selected loops until a termination signal arrives."""
    engine, service = _build_services()
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers; Ctrl+C still raises
            pass

    push_worker = PushWorker(service) if push else None
    pull_scheduler = PullScheduler(engine) if scheduler else None

    if push_worker:
        push_worker.start()
    if pull_scheduler:
        pull_scheduler.start()
    logger.info("Worker(s) running... (Ctrl+C to stop)")

    try:
        await stop.wait()
    finally:
        logger.info("Shutting down worker(s)")
        if pull_scheduler:
            await pull_scheduler.stop()
        if push_worker:
            await push_worker.stop()


async def run_pull(store_id: str, skus: Optional[List[str]], dry_run: bool, limit: Optional[int]) -> dict:
    engine, _ = _build_services()
    result = await engine.pull(store_id, skus=skus, dry_run=dry_run, limit=limit, trigger="manual")
    return result.to_dict()


async def run_process(limit: Optional[int]) -> dict:
    _, service = _build_services()
    result = await service.process_pending_movements(limit=limit)
    return result.to_dict()


def main(argv: Optional[List[str]] = None) -> None:
    """Entry point for the worker CLI."""
    parser = argparse.ArgumentParser(description="Inventory sync engine")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON log lines")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("push", help="Run the push worker loop")
    commands.add_parser("scheduler", help="Run the scheduled pull loop")
    commands.add_parser("all", help="Run push worker and scheduler")

    api = commands.add_parser("api", help="Serve the HTTP API")
    api.add_argument("--host", default=None)
    api.add_argument("--port", type=int, default=None)
    api.add_argument("--no-workers", action="store_true", help="Do not run the loops inside the API")

    commands.add_parser("init-db", help="Create the database schema")

    pull = commands.add_parser("pull", help="Run one pull for a store")
    pull.add_argument("store_id")
    pull.add_argument("--sku", action="append", dest="skus", help="Restrict to a SKU (repeatable)")
    pull.add_argument("--dry-run", action="store_true")
    pull.add_argument("--limit", type=int, default=None)

    process = commands.add_parser("process", help="Process one batch of pending movements")
    process.add_argument("--limit", type=int, default=None)

    args = parser.parse_args(argv)
    settings = get_settings()
    configure_logging(
        level=(args.log_level or settings.log_level).upper(),
        json_format=args.json_logs or settings.log_format == "json",
    )

    if args.command == "init-db":
        path = init_db(settings.db_path)
        print(f"Initialized {path}")
    elif args.command == "api":
        from api.server import run
        run(host=args.host, port=args.port, start_workers=not args.no_workers)
    elif args.command == "pull":
        print(json.dumps(asyncio.run(run_pull(args.store_id, args.skus, args.dry_run, args.limit)), indent=2))
    elif args.command == "process":
        print(json.dumps(asyncio.run(run_process(args.limit)), indent=2))
    else:
        asyncio.run(run_loops(
            push=args.command in ("push", "all"),
            scheduler=args.command in ("scheduler", "all"),
        ))


if __name__ == "__main__":
    main()
