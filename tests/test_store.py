import pytest

from store import CONFIRMED, FAILED, PENDING, BoundActions, ClientStore


@pytest.fixture
def store(engine, user_id, bank):
    client_store = ClientStore(BoundActions(engine, user_id))
    assert client_store.refresh()
    return client_store


def test_bound_actions_fill_in_the_user(engine, user_id, bank):
    actions = BoundActions(engine, user_id)
    assert actions.get_accounts()["data"][0]["account_id"] == bank["account_id"]


def test_refresh_loads_every_collection(store, bank):
    assert [a["account_id"] for a in store["accounts"]] == [bank["account_id"]]
    assert len(store["categories"]) == 9
    assert store["settings"]["base_currency"] == "CNY"
    assert store["transactions"] == []


def test_confirmed_change_refetches_affected_collections(store, bank):
    change = store.add_transaction(type="EXPENSE", amount=30, account_id=bank["account_id"])

    assert change.status == CONFIRMED
    assert change.error is None
    [stored] = store["transactions"]
    assert stored["transaction_id"] is not None
    assert "pending" not in stored
    assert store["accounts"][0]["current_balance"] == 70
    assert store.pending == []


def test_failed_change_restores_snapshot_and_keeps_error(store, bank):
    before = [dict(a) for a in store["accounts"]]
    change = store.add_transaction(type="EXPENSE", amount=-5, account_id=bank["account_id"])

    assert change.status == FAILED
    assert "positive" in change.error
    assert store["transactions"] == []
    assert store["accounts"] == before


def test_failed_delete_puts_the_row_back(store, bank):
    store.add_transaction(type="EXPENSE", amount=1, account_id=bank["account_id"])
    change = store.delete_account(bank["account_id"])

    assert change.status == FAILED
    assert [a["account_id"] for a in store["accounts"]] == [bank["account_id"]]


def test_optimistic_change_is_visible_while_pending():
    seen = {}

    class SlowBackend:
        def __init__(self):
            self.store = None

        def update_account(self, account_id, **changes):
            seen["name"] = self.store["accounts"][0]["name"]
            seen["status"] = self.store.changes[-1].status
            return {"success": True, "data": None}

        def get_accounts(self):
            return {"success": True, "data": [{"account_id": 1, "name": "Renamed"}]}

        def get_settings(self):
            return {"success": True, "data": {"base_currency": "CNY"}}

    backend = SlowBackend()
    client_store = ClientStore(backend)
    backend.store = client_store
    client_store.state["accounts"] = [{"account_id": 1, "name": "Old"}]

    change = client_store.update_account(1, name="Renamed")

    assert seen == {"name": "Renamed", "status": PENDING}
    assert change.status == CONFIRMED
