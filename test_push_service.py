"""
Push service tests.

Movements flow pending -> processing -> completed/failed against an
in-memory ledger and storefront:
1. Debits check ledger stock, post, update the cache and trigger a selective pull
2. Business errors fail at once; transient errors back off until max_attempts
3. A ledger 409 counts as success
4. Lock contention defers without spending an attempt
"""

import asyncio
from datetime import datetime, timedelta

import pytest

from core.models import MovementDirection, MovementStatus


def _movement(seeded, sku="ABC", quantity=3, direction=MovementDirection.DEBIT, order_id="1001",
              integration_id=None):
    from storage.movements import insert_movement_if_absent

    movement, _ = insert_movement_if_absent(
        tenant_id=seeded.tenant.id,
        store_id=seeded.store.id,
        integration_id=integration_id or seeded.integration.id,
        direction=direction,
        sku=sku,
        quantity=quantity,
        order_id=order_id,
        event_type="order_paid" if direction == MovementDirection.DEBIT else "order_cancelled",
        metadata={"product_name": f"Product {sku}"},
        db_path=seeded.db_path,
    )
    return movement


def _get(seeded, movement_id):
    from storage.movements import get_movement

    return get_movement(movement_id, db_path=seeded.db_path)


class TestSuccessfulPush:
    """The happy path through the state machine."""

    def test_debit_posts_and_corrects_storefront(self, seeded, push_service, storefront, ledger):
        """Order of 3 against ledger stock 10: posted, cached at 7, storefront pulled to 7."""
        from storage.product_cache import get_cached_product

        movement = _movement(seeded)
        result = asyncio.run(push_service.process_pending_movements())

        assert result.completed == 1
        assert result.failed == 0
        assert ledger.posted == [{
            "kind": MovementDirection.DEBIT,
            "warehouse_id": "WH-1",
            "sku": "ABC",
            "quantity": 3,
            "reference_id": "1001:ABC:debit",
        }]

        stored = _get(seeded, movement.id)
        assert stored.status == MovementStatus.COMPLETED
        assert stored.processed_at is not None
        assert stored.metadata["ledger_movement_id"] == "MOV-1"
        assert stored.metadata["stock_before"] == 10

        assert get_cached_product(seeded.store.id, "ABC", db_path=seeded.db_path).stock_quantity == 7
        assert storefront.updates == [("ABC", 7)]

    def test_credit_skips_stock_check(self, seeded, push_service, ledger):
        movement = _movement(seeded, quantity=2, direction=MovementDirection.CREDIT)
        outcome = asyncio.run(push_service.process_movement(movement))

        assert outcome.status == "completed"
        # Only the post-push pull reads stock
        assert ledger.stock_reads == [("ABC", "WH-1")]
        assert ledger.stock["ABC"] == 12
        assert ledger.posted[0]["reference_id"] == "1001:ABC:credit"

    def test_ledger_conflict_counts_as_success(self, seeded, push_service, ledger):
        """A 409 (already posted) completes the movement without a second post."""
        ledger.conflict_skus.add("ABC")
        movement = _movement(seeded)

        outcome = asyncio.run(push_service.process_movement(movement))

        assert outcome.status == "completed"
        assert outcome.category == "already_posted"
        assert ledger.posted == []
        stored = _get(seeded, movement.id)
        assert stored.status == MovementStatus.COMPLETED
        assert stored.metadata["already_existed"] is True

    def test_pushes_do_not_postpone_scheduled_pull(self, seeded, push_service, pull_engine):
        from storage.stores import get_store
        from workers.scheduler import PullScheduler

        asyncio.run(push_service.process_movement(_movement(seeded)))

        assert get_store(seeded.store.id, db_path=seeded.db_path).last_sync_at is None
        assert len(PullScheduler(pull_engine).due_integrations()) == 1

    def test_post_push_pull_failure_does_not_undo_completion(self, seeded, push_service, storefront):
        storefront.fail_updates.add("ABC")
        movement = _movement(seeded)

        outcome = asyncio.run(push_service.process_movement(movement))

        assert outcome.status == "completed"
        assert _get(seeded, movement.id).status == MovementStatus.COMPLETED


class TestTerminalFailures:
    """Business errors fail the movement immediately."""

    def test_insufficient_stock(self, seeded, push_service, ledger):
        from storage.unmapped_skus import get_unmapped_sku

        movement = _movement(seeded, quantity=20)
        outcome = asyncio.run(push_service.process_movement(movement))

        assert outcome.status == "failed"
        assert outcome.category == "insufficient_stock"
        assert ledger.posted == []
        stored = _get(seeded, movement.id)
        assert stored.status == MovementStatus.FAILED
        assert "Insufficient stock" in stored.error_message

        unmapped = get_unmapped_sku(seeded.store.id, "ABC", db_path=seeded.db_path)
        assert unmapped.reason == "insufficient_stock"

    def test_sku_missing_in_ledger(self, seeded, push_service):
        from storage.unmapped_skus import get_unmapped_sku

        movement = _movement(seeded, sku="NOPE")
        outcome = asyncio.run(push_service.process_movement(movement))

        assert outcome.category == "not_found_ledger"
        assert _get(seeded, movement.id).status == MovementStatus.FAILED
        assert get_unmapped_sku(seeded.store.id, "NOPE", db_path=seeded.db_path).occurrences == 1

    def test_missing_warehouse(self, seeded, push_service, ledger):
        from storage.stores import create_integration

        bare = create_integration(seeded.tenant.id, "No warehouse", {"api_key": "k"}, db_path=seeded.db_path)
        movement = _movement(seeded, integration_id=bare.id)

        outcome = asyncio.run(push_service.process_movement(movement))

        assert outcome.status == "failed"
        assert outcome.category == "warehouse_not_configured"
        assert ledger.posted == []


class TestTransientFailures:
    """Anything else is retried with exponential backoff."""

    def test_transient_error_schedules_retry(self, seeded, push_service, ledger):
        from connectors.http_client import ConnectorError

        ledger.post_error = ConnectorError("Service unavailable", "HTTP_503", 503)
        movement = _movement(seeded)
        before = datetime.utcnow()

        outcome = asyncio.run(push_service.process_movement(movement))

        assert outcome.status == "retry_scheduled"
        stored = _get(seeded, movement.id)
        assert stored.status == MovementStatus.PENDING
        assert stored.attempts == 1
        assert stored.next_attempt_at >= before + timedelta(minutes=2) - timedelta(seconds=5)

    def test_final_attempt_fails_movement(self, seeded, push_service, ledger):
        from storage.db import connect

        ledger.post_error = RuntimeError("connection reset")
        movement = _movement(seeded)
        conn = connect(seeded.db_path)
        try:
            conn.execute("UPDATE inventory_movements_queue SET attempts = 2 WHERE id = ?", (movement.id,))
        finally:
            conn.close()

        outcome = asyncio.run(push_service.process_movement(_get(seeded, movement.id)))

        assert outcome.status == "failed"
        assert outcome.category == "max_attempts"
        stored = _get(seeded, movement.id)
        assert stored.status == MovementStatus.FAILED
        assert stored.attempts == 3

    def test_retry_delay_doubles(self):
        from push.service import retry_delay

        assert retry_delay(1) == timedelta(minutes=2)
        assert retry_delay(2) == timedelta(minutes=4)
        assert retry_delay(3) == timedelta(minutes=8)


class TestLockingAndTenants:
    """Exclusion with pulls and tenant gating."""

    def test_lock_contention_defers_without_attempt(self, seeded, push_service, ledger):
        push_service.locks.acquire(seeded.store.id, "pull", "running-pull", ttl_seconds=600)
        movement = _movement(seeded)

        result = asyncio.run(push_service.process_pending_movements())

        assert result.deferred == 1
        assert ledger.posted == []
        stored = _get(seeded, movement.id)
        assert stored.status == MovementStatus.PENDING
        assert stored.attempts == 0
        assert stored.next_attempt_at > datetime.utcnow()

    def test_push_lock_released_after_processing(self, seeded, push_service):
        asyncio.run(push_service.process_movement(_movement(seeded, quantity=50)))

        assert not push_service.locks.has_active_lock(seeded.store.id)

    def test_inactive_tenant_is_skipped(self, seeded, push_service, ledger):
        from storage.stores import update_tenant

        update_tenant(seeded.tenant.id, is_active=False, db_path=seeded.db_path)
        movement = _movement(seeded)

        result = asyncio.run(push_service.process_pending_movements())

        assert result.skipped_tenants == 1
        assert result.processed == 0
        assert _get(seeded, movement.id).status == MovementStatus.PENDING

    def test_timezone_aware_expiry_is_compared_in_utc(self, seeded, push_service, ledger):
        """An expiry stored with an offset still gates the batch instead of breaking it."""
        from datetime import timezone

        from storage.stores import get_tenant, update_tenant

        update_tenant(
            seeded.tenant.id,
            expires_at=datetime.now(timezone.utc) + timedelta(days=30),
            db_path=seeded.db_path,
        )
        movement = _movement(seeded)

        result = asyncio.run(push_service.process_pending_movements())

        assert result.completed == 1
        assert _get(seeded, movement.id).status == MovementStatus.COMPLETED
        assert get_tenant(seeded.tenant.id, db_path=seeded.db_path).expires_at.tzinfo is None

    def test_expired_with_offset_is_skipped(self, seeded, push_service):
        from datetime import timezone

        from storage.stores import update_tenant

        update_tenant(
            seeded.tenant.id,
            expires_at=datetime.now(timezone(timedelta(hours=-5))) - timedelta(hours=1),
            db_path=seeded.db_path,
        )
        _movement(seeded)

        result = asyncio.run(push_service.process_pending_movements())

        assert result.skipped_tenants == 1


class TestBatchAndOperations:
    """Audit logs, forced retries and retention."""

    def test_one_push_log_per_store(self, seeded, push_service):
        from core.models import SyncStatus
        from storage.sync_logs import get_sync_log

        _movement(seeded, sku="ABC", quantity=1, order_id="1")
        _movement(seeded, sku="NOPE", quantity=1, order_id="2")

        result = asyncio.run(push_service.process_pending_movements())

        assert result.completed == 1
        assert result.failed == 1
        assert len(result.sync_log_ids) == 1
        log = get_sync_log(result.sync_log_ids[0], db_path=seeded.db_path)
        assert log.status == SyncStatus.PARTIAL
        assert log.synced_count == 1
        assert log.failed_count == 1
        assert log.details["categories"] == {"posted": 1, "not_found_ledger": 1}
        assert {item.sku for item in log.items} == {"ABC", "NOPE"}

    def test_retry_failed_movement(self, seeded, push_service, ledger):
        movement = _movement(seeded, quantity=20)
        asyncio.run(push_service.process_movement(movement))
        assert _get(seeded, movement.id).status == MovementStatus.FAILED

        ledger.stock["ABC"] = 25
        outcome = asyncio.run(push_service.retry_movement(movement.id))

        assert outcome.status == "completed"
        assert _get(seeded, movement.id).status == MovementStatus.COMPLETED

    def test_retry_rejects_unknown_and_open_movements(self, seeded, push_service):
        movement = _movement(seeded)

        with pytest.raises(LookupError):
            asyncio.run(push_service.retry_movement("missing"))
        with pytest.raises(ValueError):
            asyncio.run(push_service.retry_movement(movement.id))

    def test_clean_old_movements(self, seeded, push_service):
        from storage.movements import claim_movement, complete_movement

        old = _movement(seeded, order_id="old")
        recent = _movement(seeded, order_id="recent")
        for movement, when in ((old, datetime.utcnow() - timedelta(days=40)), (recent, datetime.utcnow())):
            claim_movement(movement.id, db_path=seeded.db_path)
            complete_movement(movement.id, now=when, db_path=seeded.db_path)

        assert push_service.clean_old_movements(days=30) == 1
        assert _get(seeded, old.id) is None
        assert _get(seeded, recent.id) is not None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
