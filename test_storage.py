"""
Storage layer tests.

Covers credential sealing, the product cache, unmapped SKU tracking,
sync log persistence and the stuck-movement cleanup script.
"""

import importlib.util
import json
from datetime import datetime, timedelta
from pathlib import Path

import pytest


def _load_cleanup_script():
    path = Path(__file__).parent / "scripts" / "cleanup_stuck_movements.py"
    spec = importlib.util.spec_from_file_location("cleanup_stuck_movements", path)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class TestCredentialSealing:
    """Credentials at rest."""

    def test_round_trip_with_key(self):
        from core.security import generate_encryption_key, open_credentials, seal_credentials

        key = generate_encryption_key()
        sealed = seal_credentials({"access_token": "shpat_x"}, "tenant-1", key)

        assert "shpat_x" not in sealed
        assert json.loads(sealed)["format"] == "aesgcm:v1"
        assert open_credentials(sealed, "tenant-1", key) == {"access_token": "shpat_x"}

    def test_other_tenant_cannot_open(self):
        from core.security import generate_encryption_key, open_credentials, seal_credentials

        key = generate_encryption_key()
        sealed = seal_credentials({"api_key": "k"}, "tenant-1", key)

        with pytest.raises(ValueError):
            open_credentials(sealed, "tenant-2", key)

    def test_missing_key_for_sealed_blob(self):
        from core.security import generate_encryption_key, open_credentials, seal_credentials

        sealed = seal_credentials({"api_key": "k"}, "tenant-1", generate_encryption_key())

        with pytest.raises(ValueError, match="CREDENTIALS_KEY"):
            open_credentials(sealed, "tenant-1", None)

    def test_plain_json_without_key(self):
        from core.security import open_credentials, seal_credentials

        sealed = seal_credentials({"api_key": "k"}, "tenant-1", None)

        assert json.loads(sealed) == {"api_key": "k"}
        assert open_credentials(sealed, "tenant-1", None) == {"api_key": "k"}
        assert open_credentials(None, "tenant-1", None) == {}

    def test_store_credentials_encrypted_in_column(self, temp_db, monkeypatch):
        from core.security import generate_encryption_key
        from storage.db import connect
        from storage.stores import create_store, create_tenant, get_store

        monkeypatch.setenv("CREDENTIALS_KEY", generate_encryption_key())
        tenant = create_tenant("Acme", db_path=temp_db)
        store = create_store(
            tenant.id, "Shop", "shopify", "acme.myshopify.com",
            {"access_token": "shpat_secret"}, db_path=temp_db,
        )

        conn = connect(temp_db)
        try:
            raw = conn.execute("SELECT credentials FROM stores WHERE id = ?", (store.id,)).fetchone()[0]
        finally:
            conn.close()

        assert "shpat_secret" not in raw
        assert get_store(store.id, db_path=temp_db).credentials == {"access_token": "shpat_secret"}


class TestProductCache:
    """store_products keyed by (store, sku)."""

    def test_upsert_then_delta(self, seeded):
        from core.models import ModifiedBy
        from storage.product_cache import apply_stock_delta, get_cached_product, upsert_product

        upsert_product(seeded.store.id, "ABC", 5, ModifiedBy.PULL, name="Widget", db_path=seeded.db_path)

        assert apply_stock_delta(seeded.store.id, "ABC", -2, db_path=seeded.db_path) == 3
        cached = get_cached_product(seeded.store.id, "ABC", db_path=seeded.db_path)
        assert cached.stock_quantity == 3
        assert cached.name == "Widget"
        assert cached.last_modified_by == ModifiedBy.PUSH

    def test_delta_floors_at_zero(self, seeded):
        from core.models import ModifiedBy
        from storage.product_cache import apply_stock_delta, upsert_product

        upsert_product(seeded.store.id, "ABC", 1, ModifiedBy.PULL, db_path=seeded.db_path)

        assert apply_stock_delta(seeded.store.id, "ABC", -5, db_path=seeded.db_path) == 0

    def test_delta_on_uncached_sku(self, seeded):
        from storage.product_cache import apply_stock_delta

        assert apply_stock_delta(seeded.store.id, "NOPE", 3, db_path=seeded.db_path) is None

    def test_upsert_keeps_known_fields(self, seeded):
        from core.models import ModifiedBy
        from storage.product_cache import get_cached_product, upsert_product

        upsert_product(seeded.store.id, "ABC", 5, ModifiedBy.PULL, platform_product_id="p-1", db_path=seeded.db_path)
        upsert_product(seeded.store.id, "ABC", 9, ModifiedBy.MANUAL, db_path=seeded.db_path)

        cached = get_cached_product(seeded.store.id, "ABC", db_path=seeded.db_path)
        assert cached.stock_quantity == 9
        assert cached.platform_product_id == "p-1"


class TestUnmappedSkus:
    """One row per (store, sku) with an occurrence counter."""

    def test_occurrences_accumulate(self, seeded):
        from storage.unmapped_skus import get_unmapped_sku, list_unmapped_skus, track_unmapped_sku

        track_unmapped_sku(seeded.tenant.id, seeded.store.id, "GHOST", "not_found_ledger", db_path=seeded.db_path)
        track_unmapped_sku(seeded.tenant.id, seeded.store.id, "GHOST", "not_found_ledger",
                           product_name="Ghost", db_path=seeded.db_path)

        entry = get_unmapped_sku(seeded.store.id, "GHOST", db_path=seeded.db_path)
        assert entry.occurrences == 2
        assert entry.product_name == "Ghost"
        assert len(list_unmapped_skus(store_id=seeded.store.id, db_path=seeded.db_path)) == 1

    def test_resolved_entry_reopens(self, seeded):
        from storage.unmapped_skus import (
            get_unmapped_sku,
            list_unmapped_skus,
            resolve_unmapped_sku,
            track_unmapped_sku,
        )

        track_unmapped_sku(seeded.tenant.id, seeded.store.id, "GHOST", "not_found_ledger", db_path=seeded.db_path)
        entry = get_unmapped_sku(seeded.store.id, "GHOST", db_path=seeded.db_path)

        assert resolve_unmapped_sku(entry.id, db_path=seeded.db_path)
        assert not resolve_unmapped_sku(entry.id, db_path=seeded.db_path)
        assert list_unmapped_skus(store_id=seeded.store.id, db_path=seeded.db_path) == []

        track_unmapped_sku(seeded.tenant.id, seeded.store.id, "GHOST", "insufficient_stock", db_path=seeded.db_path)
        reopened = get_unmapped_sku(seeded.store.id, "GHOST", db_path=seeded.db_path)
        assert not reopened.resolved
        assert reopened.reason == "insufficient_stock"


class TestSyncLogs:
    """Audit trail persistence."""

    def test_write_and_read_with_items(self, seeded):
        from core.models import ItemStatus, SyncLog, SyncLogItem, SyncStatus, SyncType
        from storage.db import new_id
        from storage.sync_logs import get_sync_log, list_sync_logs, write_sync_log

        log = SyncLog(
            id=new_id(),
            tenant_id=seeded.tenant.id,
            store_id=seeded.store.id,
            integration_id=seeded.integration.id,
            sync_type=SyncType.PULL,
            status=SyncStatus.PARTIAL,
            synced_count=1,
            failed_count=1,
            details={"trigger": "manual"},
            items=[
                SyncLogItem(sku="ABC", status=ItemStatus.SUCCESS, category="updated", stock_before=3, stock_after=5),
                SyncLogItem(sku="XYZ", status=ItemStatus.FAILED, category="update_error", error_message="422"),
            ],
        )
        write_sync_log(log, db_path=seeded.db_path)

        stored = get_sync_log(log.id, db_path=seeded.db_path)
        assert stored.status == SyncStatus.PARTIAL
        assert stored.details == {"trigger": "manual"}
        assert [(i.sku, i.category) for i in stored.items] == [("ABC", "updated"), ("XYZ", "update_error")]

        listed = list_sync_logs(store_id=seeded.store.id, sync_type="pull", db_path=seeded.db_path)
        assert [entry.id for entry in listed] == [log.id]
        assert listed[0].items == []

    def test_missing_log(self, temp_db):
        from storage.sync_logs import get_sync_log

        assert get_sync_log("nope", db_path=temp_db) is None


class TestCleanupScript:
    """scripts/cleanup_stuck_movements.py"""

    def _movement(self, seeded, sku, attempts, error_message, age_days):
        from core.models import MovementDirection
        from storage.db import connect, to_iso
        from storage.movements import insert_movement_if_absent

        movement, _ = insert_movement_if_absent(
            seeded.tenant.id, seeded.store.id, seeded.integration.id,
            MovementDirection.DEBIT, sku, 1, f"order-{sku}", "order_paid", db_path=seeded.db_path,
        )
        conn = connect(seeded.db_path)
        try:
            conn.execute(
                "UPDATE inventory_movements_queue SET attempts = ?, error_message = ?, created_at = ? WHERE id = ?",
                (attempts, error_message, to_iso(datetime.utcnow() - timedelta(days=age_days)), movement.id),
            )
        finally:
            conn.close()
        return movement

    def test_marks_stuck_and_insufficient_stock(self, seeded, capsys):
        from core.models import MovementStatus
        from storage.movements import get_movement

        cleanup = _load_cleanup_script()
        stuck = self._movement(seeded, "OLD", 2, "timeout", age_days=10)
        short = self._movement(seeded, "LOW", 1, "Stock insuficiente en bodega", age_days=0)
        fresh = self._movement(seeded, "NEW", 0, None, age_days=0)

        stats = cleanup.cleanup_stuck_movements(days=7, db_path=seeded.db_path)

        assert (stats.stuck, stats.insufficient_stock, stats.total) == (1, 1, 2)
        assert get_movement(stuck.id, db_path=seeded.db_path).status == MovementStatus.FAILED
        assert get_movement(short.id, db_path=seeded.db_path).status == MovementStatus.FAILED
        assert get_movement(fresh.id, db_path=seeded.db_path).status == MovementStatus.PENDING
        assert "DRY RUN" not in capsys.readouterr().out

    def test_dry_run_changes_nothing(self, seeded):
        from core.models import MovementStatus
        from storage.movements import get_movement

        cleanup = _load_cleanup_script()
        stuck = self._movement(seeded, "OLD", 3, "timeout", age_days=10)

        stats = cleanup.cleanup_stuck_movements(dry_run=True, days=7, db_path=seeded.db_path)

        assert stats.stuck == 1
        assert get_movement(stuck.id, db_path=seeded.db_path).status == MovementStatus.PENDING


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
