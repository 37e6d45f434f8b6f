"""
tests/test_queries.py
SQLGlot query builders and the read-only store reader.
"""

from datetime import timedelta

import pytest

from datum.storage.cursors import CursorStore, utcnow
from datum.storage.queries import StoreQueryBuilder, StoreReader
from datum.storage.writer import PersistenceWriter
from tests.builders import make_transfer


class TestStoreQueryBuilder:
    def test_freshness_all(self):
        sql = StoreQueryBuilder.freshness()
        assert "MAX(updated_at) AS last_updated_at" in sql
        assert "WHERE" not in sql

    def test_freshness_prefixes(self):
        sql = StoreQueryBuilder.freshness(("loan_nft:", "trove_manager:"))
        assert "LIKE 'loan_nft:%'" in sql
        assert "LIKE 'trove_manager:%'" in sql
        assert " OR " in sql

    def test_block_range_query(self):
        sql = StoreQueryBuilder.build_block_range_query(100, 200, "sp_deposit_ops", key="sp1")
        assert "BETWEEN 100 AND 200" in sql
        assert "pool_key = 'sp1'" in sql

    def test_block_range_rejects_non_event_table(self):
        with pytest.raises(ValueError):
            StoreQueryBuilder.build_block_range_query(1, 2, "scan_cursors")


class TestFreshness:
    def test_empty_store_is_stale(self, engine):
        freshness = StoreReader(engine).freshness()
        assert freshness.last_updated_at is None
        assert freshness.is_stale

    def test_recent_update_is_fresh(self, engine):
        CursorStore(engine).ensure("loan_nft:a:transfer", 1)
        freshness = StoreReader(engine).freshness()
        assert freshness.last_updated_at is not None
        assert not freshness.is_stale
        assert freshness.age_seconds < 60

    def test_old_update_is_stale(self, engine):
        CursorStore(engine).ensure("loan_nft:a:transfer", 1)
        freshness = StoreReader(engine).freshness(now=utcnow() + timedelta(hours=1))
        assert freshness.is_stale
        assert freshness.age_seconds > 3500

    def test_custom_threshold(self, engine):
        CursorStore(engine).ensure("loan_nft:a:transfer", 1)
        reader = StoreReader(engine)
        later = utcnow() + timedelta(minutes=10)
        assert not reader.freshness(now=later).is_stale
        assert reader.freshness(stale_after=timedelta(minutes=5), now=later).is_stale

    def test_per_category(self, engine):
        CursorStore(engine).ensure("sp:p:deposit_ops", 1)
        reader = StoreReader(engine)
        assert reader.freshness("loans").last_updated_at is None
        assert reader.freshness("stability_pool").last_updated_at is not None

    def test_unknown_category(self, engine):
        with pytest.raises(ValueError):
            StoreReader(engine).freshness("vaults")

    def test_to_dict(self, engine):
        CursorStore(engine).ensure("sp:p:deposit_ops", 1)
        payload = StoreReader(engine).freshness().to_dict()
        assert isinstance(payload["last_updated_at"], str)
        assert payload["is_stale"] is False


class TestStoreReader:
    def test_cursors(self, engine):
        store = CursorStore(engine)
        store.ensure("loan_nft:a:transfer", 10)
        store.advance("loan_nft:a:transfer", 99)
        (row,) = StoreReader(engine).cursors()
        assert row["cursor_key"] == "loan_nft:a:transfer"
        assert row["last_scanned_block"] == 99
        assert isinstance(row["updated_at"], str)

    def test_table_counts(self, engine):
        PersistenceWriter(engine).commit("flr_wflr", [make_transfer(i) for i in range(2)])
        counts = StoreReader(engine).table_counts()
        assert counts["loan_nft_transfers"] == 2
        assert counts["scan_cursors"] == 0
        assert "sp_deposit_updates" in counts

    def test_preview_newest_rows_oldest_first(self, engine):
        batch = [make_transfer(i, block=1000 + i) for i in range(5)]
        PersistenceWriter(engine).commit("flr_wflr", batch)
        df = StoreReader(engine).preview("loan_nft_transfers", limit=2)
        assert list(df["block_number"]) == [1003, 1004]

    def test_preview_unknown_table(self, engine):
        with pytest.raises(ValueError):
            StoreReader(engine).preview("nope")

    def test_events_in_range(self, engine):
        batch = [make_transfer(i, block=1000 + i) for i in range(5)]
        PersistenceWriter(engine).commit("flr_wflr", batch)
        df = StoreReader(engine).events_in_range("loan_nft_transfers", 1001, 1003, key="flr_wflr")
        assert list(df["block_number"]) == [1001, 1002, 1003]
