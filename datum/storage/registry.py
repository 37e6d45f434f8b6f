"""
storage/registry.py
Registry rows for configured loan contracts and stability pools.

The loan-contract row caches the trove manager address resolved at startup;
an upsert without a manager keeps the previously resolved one.
"""

from __future__ import annotations

import structlog
from sqlalchemy import Engine, func, select

from datum.config import ScanTarget
from datum.storage.cursors import utcnow
from datum.storage.database import dialect_insert
from datum.storage.schema import loan_contracts, stability_pools

log = structlog.get_logger(__name__)


class TargetRegistry:
    def __init__(self, engine: Engine):
        self.engine = engine

    def register_loan_contract(self, target: ScanTarget) -> None:
        stmt = dialect_insert(self.engine.dialect.name, loan_contracts).values(
            contract_key=target.key,
            protocol=target.protocol,
            address_eip55=target.address,
            default_start_block=target.default_start_block,
            trove_manager_address=target.secondary_address,
            updated_at=utcnow(),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["contract_key"],
            set_={
                "protocol": stmt.excluded.protocol,
                "address_eip55": stmt.excluded.address_eip55,
                "default_start_block": stmt.excluded.default_start_block,
                "trove_manager_address": func.coalesce(
                    stmt.excluded.trove_manager_address, loan_contracts.c.trove_manager_address
                ),
                "updated_at": stmt.excluded.updated_at,
            },
        )
        with self.engine.begin() as conn:
            conn.execute(stmt)
        log.debug("registry.loan_contract", key=target.key, trove_manager=target.secondary_address)

    def register_stability_pool(self, target: ScanTarget) -> None:
        stmt = dialect_insert(self.engine.dialect.name, stability_pools).values(
            pool_key=target.key,
            protocol=target.protocol,
            address_eip55=target.address,
            default_start_block=target.default_start_block,
            coll_symbol=target.extras["coll_symbol"],
            coll_decimals=target.extras["coll_decimals"],
            updated_at=utcnow(),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["pool_key"],
            set_={
                "protocol": stmt.excluded.protocol,
                "address_eip55": stmt.excluded.address_eip55,
                "default_start_block": stmt.excluded.default_start_block,
                "coll_symbol": stmt.excluded.coll_symbol,
                "coll_decimals": stmt.excluded.coll_decimals,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        with self.engine.begin() as conn:
            conn.execute(stmt)
        log.debug("registry.stability_pool", key=target.key)

    def trove_manager_address(self, contract_key: str) -> str | None:
        with self.engine.connect() as conn:
            return conn.execute(
                select(loan_contracts.c.trove_manager_address).where(
                    loan_contracts.c.contract_key == contract_key
                )
            ).scalar_one_or_none()
