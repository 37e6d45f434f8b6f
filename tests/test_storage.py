"""
tests/test_storage.py
Cursor store, idempotent writer, target registry and reset.
"""

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from web3 import Web3

from datum.config import ScanTarget
from datum.errors import CursorNotFound
from datum.storage.cursors import CursorStore
from datum.storage.database import dialect_insert, reset_store
from datum.storage.queries import StoreReader
from datum.storage.registry import TargetRegistry
from datum.storage.schema import loan_nft_transfers, trove_events
from datum.storage.writer import PersistenceWriter
from datum.transform.events import RedemptionEvent, TroveEvent
from tests.builders import NFT_ADDR, POOL_ADDR, TROVE_MANAGER_ADDR, make_transfer, tx


def counts(engine):
    return StoreReader(engine).table_counts()


# ---------------------------------------------------------------------------
# Cursors
# ---------------------------------------------------------------------------

class TestCursorStore:
    def test_ensure_then_read(self, engine):
        store = CursorStore(engine)
        store.ensure("loan_nft:flr_wflr:transfer", 1000)
        cursor = store.read("loan_nft:flr_wflr:transfer")
        assert cursor.start_block == 1000
        assert cursor.last_scanned_block == 0
        assert cursor.updated_at is not None

    def test_ensure_does_not_overwrite(self, engine):
        store = CursorStore(engine)
        store.ensure("k", 1000)
        store.advance("k", 1500)
        store.ensure("k", 5)
        cursor = store.read("k")
        assert (cursor.start_block, cursor.last_scanned_block) == (1000, 1500)

    def test_read_missing(self, engine):
        with pytest.raises(CursorNotFound):
            CursorStore(engine).read("nope")

    def test_advance_missing(self, engine):
        with pytest.raises(CursorNotFound):
            CursorStore(engine).advance("nope", 10)

    def test_reset(self, engine):
        store = CursorStore(engine)
        store.ensure("k", 1)
        assert store.reset("k") is True
        assert store.reset("k") is False
        assert store.all() == []

    def test_all_sorted(self, engine):
        store = CursorStore(engine)
        store.ensure("sp:b:deposit_ops", 1)
        store.ensure("loan_nft:a:transfer", 1)
        assert [c.cursor_key for c in store.all()] == ["loan_nft:a:transfer", "sp:b:deposit_ops"]


# ---------------------------------------------------------------------------
# Writer
# ---------------------------------------------------------------------------

class TestPersistenceWriter:
    def test_commit_inserts(self, engine):
        writer = PersistenceWriter(engine)
        inserted = writer.commit("flr_wflr", [make_transfer(i) for i in range(3)])
        assert inserted == 3
        assert counts(engine)["loan_nft_transfers"] == 3

    def test_replay_is_idempotent(self, engine):
        writer = PersistenceWriter(engine)
        batch = [make_transfer(i) for i in range(3)]
        writer.commit("flr_wflr", batch)
        assert writer.commit("flr_wflr", batch) == 0
        assert counts(engine)["loan_nft_transfers"] == 3

    def test_duplicate_identity_keeps_first_row(self, engine):
        writer = PersistenceWriter(engine)
        writer.commit("flr_wflr", [make_transfer(1, token_id="first")])
        assert writer.commit("flr_wflr", [make_transfer(1, token_id="second")]) == 0
        with engine.connect() as conn:
            rows = conn.execute(select(loan_nft_transfers.c.token_id)).scalars().all()
        assert rows == ["first"]

    def test_same_tx_different_log_index(self, engine):
        writer = PersistenceWriter(engine)
        assert writer.commit("flr_wflr", [make_transfer(1, log_index=0), make_transfer(1, log_index=1)]) == 2

    def test_same_tx_different_target(self, engine):
        writer = PersistenceWriter(engine)
        writer.commit("a", [make_transfer(1, key="a")])
        writer.commit("b", [make_transfer(1, key="b")])
        assert counts(engine)["loan_nft_transfers"] == 2

    def test_batch_is_atomic(self, engine):
        writer = PersistenceWriter(engine)
        batch = [make_transfer(1), make_transfer(2, from_addr=None)]
        with pytest.raises(IntegrityError):
            writer.commit("flr_wflr", batch)
        assert counts(engine)["loan_nft_transfers"] == 0

    def test_mixed_tables_in_one_batch(self, engine):
        writer = PersistenceWriter(engine)
        redemption = RedemptionEvent(
            "flr_wflr", 1300, None, tx(9), 0,
            attempted_bold="1", actual_bold="1", eth_sent="1", eth_fee="0", price="2", redemption_price="2",
        )
        trove = TroveEvent("flr_wflr", 1300, None, tx(9), 1, event_name="TroveUpdated",
                           trove_id="7", data={"_debt": "10"})
        assert writer.commit("flr_wflr", [redemption, trove]) == 2
        table_counts = counts(engine)
        assert table_counts["redemption_events"] == 1
        assert table_counts["trove_events"] == 1
        with engine.connect() as conn:
            stored = conn.execute(select(trove_events.c.data_json, trove_events.c.block_timestamp)).one()
        assert stored == ('{"_debt": "10"}', None)

    def test_key_mismatch_rejected(self, engine):
        with pytest.raises(ValueError):
            PersistenceWriter(engine).commit("other", [make_transfer(1)])

    def test_empty_batch(self, engine):
        assert PersistenceWriter(engine).commit("flr_wflr", []) == 0


# ---------------------------------------------------------------------------
# Registry / reset
# ---------------------------------------------------------------------------

class TestTargetRegistry:
    def test_manager_kept_when_later_unknown(self, engine):
        registry = TargetRegistry(engine)
        target = ScanTarget("flr_wflr", "enosys_loans", Web3.to_checksum_address(NFT_ADDR), 1000)
        registry.register_loan_contract(target.with_secondary(TROVE_MANAGER_ADDR))
        registry.register_loan_contract(target)
        assert registry.trove_manager_address("flr_wflr") == Web3.to_checksum_address(TROVE_MANAGER_ADDR)

    def test_unknown_contract(self, engine):
        assert TargetRegistry(engine).trove_manager_address("nope") is None

    def test_register_pool_twice(self, engine):
        registry = TargetRegistry(engine)
        pool = ScanTarget("sp1", "enosys_loans", Web3.to_checksum_address(POOL_ADDR), 1000,
                          extras={"coll_symbol": "WFLR", "coll_decimals": 18})
        registry.register_stability_pool(pool)
        registry.register_stability_pool(pool)
        assert counts(engine)["stability_pools"] == 1


class TestResetStore:
    def seed(self, engine):
        store = CursorStore(engine)
        for key in ("loan_nft:a:transfer", "trove_manager:a:events", "sp:p:deposit_ops"):
            store.ensure(key, 1)
        PersistenceWriter(engine).commit("a", [make_transfer(1, key="a")])

    def test_reset_category(self, engine):
        self.seed(engine)
        removed = reset_store(engine, "stability_pool")
        assert removed["scan_cursors"] == 1
        assert [c.cursor_key for c in CursorStore(engine).all()] == [
            "loan_nft:a:transfer",
            "trove_manager:a:events",
        ]
        assert counts(engine)["loan_nft_transfers"] == 1

    def test_reset_everything(self, engine):
        self.seed(engine)
        removed = reset_store(engine)
        assert removed["scan_cursors"] == 3
        assert removed["loan_nft_transfers"] == 1
        assert CursorStore(engine).all() == []

    def test_unknown_category(self, engine):
        with pytest.raises(ValueError):
            reset_store(engine, "vaults")


class TestDialectInsert:
    def test_unsupported_backend(self):
        with pytest.raises(ValueError):
            dialect_insert("mysql", loan_nft_transfers)
