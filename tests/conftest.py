import pytest

from engine import FinanceEngine
from setup_sqlite import create_database


@pytest.fixture
def db_path(tmp_path):
    path = tmp_path / "meinc_test.db"
    assert create_database(path)
    return path


@pytest.fixture
def engine(db_path):
    # No rate table: every conversion is 1:1
    return FinanceEngine(db_path, rate_provider=lambda api_key: None)


@pytest.fixture
def user_id(engine):
    result = engine.register_user("alice", "password123")
    assert result["success"], result
    return result["data"]["user_id"]


@pytest.fixture
def bank(engine, user_id):
    result = engine.create_account(user_id, "Bank", "BANK", 100)
    assert result["success"], result
    return result["data"]


def balance_of(engine, user_id, account_id):
    accounts = engine.get_accounts(user_id)["data"]
    return next(a["current_balance"] for a in accounts if a["account_id"] == account_id)
