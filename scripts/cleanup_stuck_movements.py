"""
Clean up movements stuck in the push queue.

Handles:
- pending/processing movements older than N days that already used 2+ attempts
- pending/processing movements whose last error was insufficient stock

Both are marked failed so they stop occupying the queue and show up in the
failed list, where an operator can force a retry once the cause is fixed.

Usage:
    python scripts/cleanup_stuck_movements.py [--dry-run] [--days 7] [--store-id STORE]
"""

import argparse
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from core.config import get_settings
from core.observability import configure_logging
from storage.db import PathLike
from storage.movements import fail_movement, find_open_with_error, find_stuck_movements


INSUFFICIENT_STOCK_PATTERNS = ("insufficient stock", "stock insuficiente")


@dataclass
class CleanupStats:
    stuck: int = 0
    insufficient_stock: int = 0

    @property
    def total(self) -> int:
        return self.stuck + self.insufficient_stock


def cleanup_stuck_movements(
    dry_run: bool = False,
    days: int = 7,
    store_id: Optional[str] = None,
    db_path: Optional[PathLike] = None,
) -> CleanupStats:
    stats = CleanupStats()
    cutoff = datetime.utcnow() - timedelta(days=days)

    print(f"Mode: {'DRY RUN (no changes)' if dry_run else 'APPLY'}")
    print(f"Age threshold: {days} days")
    if store_id:
        print(f"Store: {store_id}")
    print()

    print("Looking for stuck movements (2+ attempts)...")
    for movement in find_stuck_movements(cutoff, min_attempts=2, store_id=store_id, db_path=db_path):
        print(f"  {movement.id}: order {movement.order_id}, SKU {movement.sku}, "
              f"{movement.status.value}, attempts {movement.attempts}/{movement.max_attempts}")
        print(f"    error: {movement.error_message or 'n/a'}")
        if dry_run:
            stats.stuck += 1
            continue
        reason = movement.error_message or f"Stuck for more than {days} days; marked failed by cleanup"
        if fail_movement(movement.id, reason, db_path=db_path):
            stats.stuck += 1
    print(f"  {stats.stuck} stuck movement(s){' would be' if dry_run else ''} marked failed")
    print()

    print("Looking for open movements with insufficient stock...")
    seen = set()
    for pattern in INSUFFICIENT_STOCK_PATTERNS:
        for movement in find_open_with_error(pattern, store_id=store_id, db_path=db_path):
            if movement.id in seen:
                continue
            seen.add(movement.id)
            print(f"  {movement.id}: order {movement.order_id}, SKU {movement.sku}")
            if dry_run or fail_movement(movement.id, movement.error_message or "Insufficient stock", db_path=db_path):
                stats.insufficient_stock += 1
    print(f"  {stats.insufficient_stock} movement(s){' would be' if dry_run else ''} marked failed")
    print()

    return stats


def main():
    parser = argparse.ArgumentParser(description="Mark stuck push-queue movements as failed")
    parser.add_argument("--dry-run", action="store_true", help="Report without changing anything")
    parser.add_argument("--days", type=int, default=7, help="Minimum age in days (default: 7)")
    parser.add_argument("--store-id", default=None, help="Restrict to one store")
    parser.add_argument("--db", type=Path, default=None, help="Database path (default: SYNC_DB_PATH)")
    args = parser.parse_args()

    configure_logging(level=get_settings().log_level)
    stats = cleanup_stuck_movements(
        dry_run=args.dry_run,
        days=args.days,
        store_id=args.store_id,
        db_path=args.db,
    )

    print("=" * 40)
    print("CLEANUP SUMMARY")
    print(f"  Stuck movements:      {stats.stuck}")
    print(f"  Insufficient stock:   {stats.insufficient_stock}")
    print(f"  Total:                {stats.total}")
    print("=" * 40)
    if args.dry_run:
        print("DRY RUN - no changes were made")


if __name__ == "__main__":
    main()
