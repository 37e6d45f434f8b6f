import json

import pytest

from datum.config import Settings
from datum.storage.database import open_engine
from tests.builders import NFT_ADDR, POOL_ADDR, TROVE_MANAGER_ADDR


@pytest.fixture
def engine(tmp_path):
    eng = open_engine(f"sqlite:///{tmp_path / 'datum.db'}")
    yield eng
    eng.dispose()


@pytest.fixture
def loan_contracts_file(tmp_path):
    path = tmp_path / "loan_contracts.json"
    path.write_text(json.dumps({
        "chains": {"FLR": {"contracts": [{
            "key": "flr_wflr",
            "protocol": "enosys_loans",
            "address": NFT_ADDR,
            "default_start_block": 1000,
            "trove_manager": TROVE_MANAGER_ADDR,
        }]}}
    }))
    return path


@pytest.fixture
def stability_pools_file(tmp_path):
    path = tmp_path / "stability_pools.json"
    path.write_text(json.dumps({
        "chains": {"FLR": {"contracts": [{
            "key": "flr_wflr_sp",
            "protocol": "enosys_loans",
            "address": POOL_ADDR,
            "default_start_block": 1000,
            "coll_symbol": "WFLR",
            "coll_decimals": 18,
        }]}}
    }))
    return path


@pytest.fixture
def settings(tmp_path, loan_contracts_file, stability_pools_file):
    return Settings(
        rpc_url="http://rpc.invalid",
        db_url=f"sqlite:///{tmp_path / 'datum.db'}",
        window_size=499,
        pause_ms=0,
        overlap_blocks=5,
        lock_dir=tmp_path / "locks",
        loan_contracts_path=loan_contracts_file,
        stability_pools_path=stability_pools_file,
    )
