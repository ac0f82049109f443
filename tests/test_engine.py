import sqlite3
from datetime import date
from decimal import Decimal

import pytest

from conftest import balance_of
from demo_data import generate_demo_data
from engine import FinanceEngine


def data(result):
    assert result["success"], result
    return result["data"]


class TestUsers:
    def test_register_seeds_categories_and_settings(self, engine, user_id):
        categories = data(engine.get_categories(user_id))
        assert len(categories) == 9
        assert data(engine.get_settings(user_id))["base_currency"] == "CNY"

    def test_duplicate_username(self, engine, user_id):
        result = engine.register_user("alice", "another-password")
        assert not result["success"]
        assert result["code"] == "validation"

    def test_login(self, engine, user_id):
        assert data(engine.login_user("alice", "password123"))["user_id"] == user_id
        result = engine.login_user("alice", "wrong")
        assert result["code"] == "unauthorized"

    def test_actions_need_a_known_user(self, engine, user_id):
        assert engine.get_accounts(None)["code"] == "unauthorized"
        assert engine.get_accounts(user_id + 100)["code"] == "unauthorized"

    def test_delete_user_removes_their_data(self, engine, user_id, bank):
        data(engine.delete_user(user_id))
        assert engine.get_user(user_id) is None


class TestSettings:
    def test_base_currency_is_normalized(self, engine, user_id):
        assert data(engine.update_settings(user_id, base_currency="usd"))["base_currency"] == "USD"

    def test_invalid_base_currency(self, engine, user_id):
        assert engine.update_settings(user_id, base_currency="US")["code"] == "validation"

    def test_default_account_follows_settings(self, engine, user_id, bank):
        other = data(engine.create_account(user_id, "Wallet", "WALLET", 0))
        data(engine.update_settings(user_id, default_account_id=other["account_id"]))
        accounts = {a["account_id"]: a for a in data(engine.get_accounts(user_id))}
        assert accounts[other["account_id"]]["is_default"]
        assert not accounts[bank["account_id"]]["is_default"]

        tx = data(engine.add_transaction(user_id, type="EXPENSE", amount=5))
        assert tx["account_id"] == other["account_id"]


class TestAccountsAndTransactions:
    def test_expense_updates_balance(self, engine, user_id, bank):
        data(engine.add_transaction(user_id, type="EXPENSE", amount=30, account_id=bank["account_id"]))
        assert balance_of(engine, user_id, bank["account_id"]) == 70

    def test_cross_currency_transfer(self, engine, user_id):
        usd = data(engine.create_account(user_id, "USD", "BANK", 500, currency_code="USD"))
        eur = data(engine.create_account(user_id, "EUR", "BANK", 0, currency_code="EUR"))
        transfer = data(engine.add_transaction(
            user_id, type="TRANSFER", amount=100, account_id=usd["account_id"],
            transfer_to_account_id=eur["account_id"], target_amount=92,
        ))
        assert transfer["target_currency_code"] == "EUR"
        assert balance_of(engine, user_id, usd["account_id"]) == 400
        assert balance_of(engine, user_id, eur["account_id"]) == 92

        data(engine.delete_transaction(user_id, transfer["transaction_id"]))
        assert balance_of(engine, user_id, usd["account_id"]) == 500
        assert balance_of(engine, user_id, eur["account_id"]) == 0

    def test_transfer_to_same_account_is_rejected(self, engine, user_id, bank):
        result = engine.add_transaction(user_id, type="TRANSFER", amount=10, account_id=bank["account_id"],
                                        transfer_to_account_id=bank["account_id"])
        assert result["code"] == "validation"

    def test_moving_a_transaction_recomputes_both_accounts(self, engine, user_id, bank):
        wallet = data(engine.create_account(user_id, "Wallet", "WALLET", 50))
        tx = data(engine.add_transaction(user_id, type="EXPENSE", amount=20, account_id=bank["account_id"]))
        data(engine.update_transaction(user_id, tx["transaction_id"], account_id=wallet["account_id"]))
        assert balance_of(engine, user_id, bank["account_id"]) == 100
        assert balance_of(engine, user_id, wallet["account_id"]) == 30

    def test_invalid_amount(self, engine, user_id, bank):
        result = engine.add_transaction(user_id, type="EXPENSE", amount=-5, account_id=bank["account_id"])
        assert result["code"] == "validation"
        assert balance_of(engine, user_id, bank["account_id"]) == 100

    def test_account_with_transactions_cannot_be_deleted(self, engine, user_id, bank):
        data(engine.add_transaction(user_id, type="EXPENSE", amount=1, account_id=bank["account_id"]))
        assert engine.delete_account(user_id, bank["account_id"])["code"] == "validation"

    def test_other_users_rows_are_not_found(self, engine, user_id, bank):
        tx = data(engine.add_transaction(user_id, type="EXPENSE", amount=1, account_id=bank["account_id"]))
        bob = data(engine.register_user("bob", "password123"))["user_id"]

        assert engine.delete_transaction(bob, tx["transaction_id"])["code"] == "not_found"
        assert engine.add_transaction(bob, type="EXPENSE", amount=1, account_id=bank["account_id"])["code"] == "not_found"
        assert data(engine.get_transactions(bob)) == []

    def test_filters(self, engine, user_id, bank):
        groceries = next(c for c in data(engine.get_categories(user_id)) if c["name"] == "Groceries")
        data(engine.add_transaction(user_id, type="EXPENSE", amount=10, date="2024-01-01", merchant="Market",
                                    category_id=groceries["category_id"], account_id=bank["account_id"]))
        data(engine.add_transaction(user_id, type="INCOME", amount=50, date="2024-02-01", account_id=bank["account_id"]))

        assert len(data(engine.get_transactions(user_id, type="INCOME"))) == 1
        assert len(data(engine.get_transactions(user_id, search="mark"))) == 1
        assert len(data(engine.get_transactions(user_id, start_date="2024-01-15"))) == 1
        assert len(data(engine.get_transactions(user_id, category_id=groceries["category_id"]))) == 1
        newest = data(engine.get_transactions(user_id))[0]
        assert newest["date"] == "2024-02-01"

    def test_sync_balances(self, engine, user_id, bank):
        data(engine.add_transaction(user_id, type="INCOME", amount=20, account_id=bank["account_id"]))
        result = data(engine.sync_account_balances(user_id))
        assert result["count"] == 1
        assert result["updated"][bank["account_id"]] == 120

    def test_recalculate_is_idempotent_and_exact(self, engine, user_id, bank):
        for amount in (0.1, 0.2, 0.3):
            data(engine.add_transaction(user_id, type="INCOME", amount=amount, account_id=bank["account_id"]))
        data(engine.add_transaction(user_id, type="EXPENSE", amount=0.6, account_id=bank["account_id"]))

        first = data(engine.recalculate_account_balance(user_id, bank["account_id"]))
        second = data(engine.recalculate_account_balance(user_id, bank["account_id"]))
        assert str(first) == str(second) == "100.00"
        assert balance_of(engine, user_id, bank["account_id"]) == 100


class TestSplits:
    def expense(self, engine, user_id, bank, **fields):
        return data(engine.add_transaction(user_id, type="EXPENSE", amount=90, account_id=bank["account_id"],
                                           merchant="Mall", **fields))

    def test_split_into_equal_parts(self, engine, user_id, bank):
        parent = self.expense(engine, user_id, bank)
        children = data(engine.split_transaction(
            user_id, parent["transaction_id"], [{"amount": 30}, {"amount": 30}, {"amount": 30}],
        ))
        assert len(children) == 3
        assert all(c["source"] == "SPLIT" and c["split_parent_id"] == parent["transaction_id"] for c in children)
        assert children[0]["note"] == "Split 1 of Mall"

        parent_now = next(t for t in data(engine.get_transactions(user_id))
                          if t["transaction_id"] == parent["transaction_id"])
        assert parent_now["exclude_from_analytics"]
        assert parent_now["note"].startswith("[SPLIT]")
        assert balance_of(engine, user_id, bank["account_id"]) == 10

    def test_amounts_must_add_up(self, engine, user_id, bank):
        parent = self.expense(engine, user_id, bank)
        result = engine.split_transaction(
            user_id, parent["transaction_id"], [{"amount": 30}, {"amount": 30}, {"amount": 29}],
        )
        assert result["code"] == "validation"
        assert "must equal parent amount" in result["error"]
        assert data(engine.get_split_children(user_id, parent["transaction_id"])) == []

    def test_split_twice_is_rejected(self, engine, user_id, bank):
        parent = self.expense(engine, user_id, bank)
        data(engine.split_transaction(user_id, parent["transaction_id"], [{"amount": 90}]))
        assert engine.split_transaction(user_id, parent["transaction_id"], [{"amount": 90}])["code"] == "validation"

    def test_unsplit_restores_parent(self, engine, user_id, bank):
        parent = self.expense(engine, user_id, bank, note="weekly shop")
        data(engine.split_transaction(user_id, parent["transaction_id"], [{"amount": 45}, {"amount": 45}]))
        restored = data(engine.unsplit_transaction(user_id, parent["transaction_id"]))
        assert restored["note"] == "weekly shop"
        assert not restored["exclude_from_analytics"]
        assert data(engine.get_split_children(user_id, parent["transaction_id"])) == []

    def test_parent_amount_is_fixed_while_split(self, engine, user_id, bank):
        parent = self.expense(engine, user_id, bank)
        data(engine.split_transaction(user_id, parent["transaction_id"], [{"amount": 90}]))
        assert engine.update_transaction(user_id, parent["transaction_id"], amount=80)["code"] == "validation"

    def test_deleting_parent_removes_children(self, engine, user_id, bank):
        parent = self.expense(engine, user_id, bank)
        data(engine.split_transaction(user_id, parent["transaction_id"], [{"amount": 40}, {"amount": 50}]))
        data(engine.delete_transaction(user_id, parent["transaction_id"]))
        assert data(engine.get_transactions(user_id)) == []
        assert balance_of(engine, user_id, bank["account_id"]) == 100

    def test_cent_remainder_is_within_tolerance(self, engine, user_id, bank):
        parent = data(engine.add_transaction(user_id, type="EXPENSE", amount=100, account_id=bank["account_id"]))
        children = data(engine.split_transaction(
            user_id, parent["transaction_id"], [{"amount": "33.33"}, {"amount": "33.33"}, {"amount": "33.33"}],
        ))
        assert len(children) == 3
        assert balance_of(engine, user_id, bank["account_id"]) == 0

    def children_total(self, engine, user_id, parent_id):
        return sum(c["amount"] for c in data(engine.get_split_children(user_id, parent_id)))

    def test_split_item_amount_is_fixed(self, engine, user_id, bank):
        parent = self.expense(engine, user_id, bank)
        children = data(engine.split_transaction(
            user_id, parent["transaction_id"], [{"amount": 30}, {"amount": 30}, {"amount": 30}],
        ))
        result = engine.update_transaction(user_id, children[0]["transaction_id"], amount=80)
        assert result["code"] == "validation"
        assert self.children_total(engine, user_id, parent["transaction_id"]) == 90

        renamed = data(engine.update_transaction(user_id, children[0]["transaction_id"], note="Shoes", amount=30))
        assert renamed["note"] == "Shoes"

    def test_split_item_cannot_be_deleted_alone(self, engine, user_id, bank):
        parent = self.expense(engine, user_id, bank)
        children = data(engine.split_transaction(
            user_id, parent["transaction_id"], [{"amount": 30}, {"amount": 30}, {"amount": 30}],
        ))
        result = engine.delete_transaction(user_id, children[1]["transaction_id"])
        assert result["code"] == "validation"
        assert len(data(engine.get_split_children(user_id, parent["transaction_id"]))) == 3
        assert self.children_total(engine, user_id, parent["transaction_id"]) == 90
        assert balance_of(engine, user_id, bank["account_id"]) == 10


class TestInvestments:
    def test_fund_lifecycle(self, engine, user_id):
        bank = data(engine.create_account(user_id, "Bank", "BANK", 5000))
        fund = data(engine.add_investment(user_id, name="Index Fund", type="FUND", initial_amount=1000,
                                          account_id=bank["account_id"], start_date="2024-01-01"))
        accounts = {a["name"]: a for a in data(engine.get_accounts(user_id))}
        assert accounts["Bank"]["current_balance"] == 4000
        assert accounts["Investment Portfolio"]["current_balance"] == 1000

        closed = data(engine.close_investment(user_id, fund["investment_id"], 1100, end_date="2024-06-01"))
        assert closed["gain"] == 100
        assert closed["investment"]["status"] == "CLOSED"
        accounts = {a["name"]: a for a in data(engine.get_accounts(user_id))}
        assert accounts["Bank"]["current_balance"] == 5100
        assert accounts["Investment Portfolio"]["current_balance"] == 0

        assert engine.update_investment(user_id, fund["investment_id"], name="x")["code"] == "validation"

    def test_financial_investment_needs_an_account(self, engine, user_id):
        result = engine.add_investment(user_id, name="Stock", type="STOCK", initial_amount=100)
        assert result["code"] == "validation"

    def test_delete_investment_reverses_funding(self, engine, user_id, bank):
        fund = data(engine.add_investment(user_id, name="Deposit", type="DEPOSIT", initial_amount=60,
                                          account_id=bank["account_id"]))
        assert balance_of(engine, user_id, bank["account_id"]) == 40
        assert data(engine.delete_investment(user_id, fund["investment_id"]))["deleted_transactions"] == 1
        assert balance_of(engine, user_id, bank["account_id"]) == 100

    def test_update_amount_rewrites_funding_transfer(self, engine, user_id, bank):
        fund = data(engine.add_investment(user_id, name="Deposit", type="DEPOSIT", initial_amount=60,
                                          account_id=bank["account_id"]))
        data(engine.update_investment(user_id, fund["investment_id"], initial_amount=80))
        assert balance_of(engine, user_id, bank["account_id"]) == 20

    def test_record_depreciation_stops_at_salvage(self, engine, user_id):
        bank = data(engine.create_account(user_id, "Bank", "BANK", 5000))
        asset = data(engine.add_investment(user_id, name="Laptop", type="ASSET", initial_amount=1200,
                                           salvage_value=200, useful_life=3, account_id=bank["account_id"]))
        assert asset["current_amount"] == 1200

        data(engine.record_depreciation(user_id, asset["investment_id"], 300))
        fixed = next(a for a in data(engine.get_accounts(user_id)) if a["type"] == "ASSET")
        assert fixed["current_balance"] == 900

        updated = data(engine.record_depreciation(user_id, asset["investment_id"], 5000))
        assert updated["current_amount"] == 200
        result = engine.record_depreciation(user_id, asset["investment_id"], 10)
        assert result["code"] == "validation"

    def test_write_off_realizes_schedule_then_loss(self, engine, user_id):
        bank = data(engine.create_account(user_id, "Bank", "BANK", 5000))
        asset = data(engine.add_investment(user_id, name="Phone", type="ASSET", initial_amount=1200,
                                           useful_life=1, start_date="2024-01-01", account_id=bank["account_id"]))
        result = data(engine.write_off_investment(user_id, asset["investment_id"], reason="broken",
                                                  date="2024-07-01"))
        assert float(result["depreciation_realized"]) == pytest.approx(1200 / 365 * 182, abs=0.01)
        assert result["loss_amount"] + result["depreciation_realized"] == Decimal("1200.00")
        assert result["investment"]["status"] == "WRITTEN_OFF"
        fixed = next(a for a in data(engine.get_accounts(user_id)) if a["type"] == "ASSET")
        assert fixed["current_balance"] == pytest.approx(0, abs=0.01)

    def test_only_assets_can_be_written_off(self, engine, user_id, bank):
        fund = data(engine.add_investment(user_id, name="Fund", type="FUND", initial_amount=10,
                                          account_id=bank["account_id"]))
        assert engine.write_off_investment(user_id, fund["investment_id"])["code"] == "validation"

    def test_summary(self, engine, user_id, bank):
        data(engine.add_investment(user_id, name="Fund", type="FUND", initial_amount=50, current_amount=70,
                                   account_id=bank["account_id"]))
        summary = data(engine.get_investment_summary(user_id))
        assert summary["totalProfit"] == 20


class TestProjects:
    def test_stats(self, engine, user_id, bank):
        project = data(engine.create_project(user_id, name="Trip", type="TRIP", start_date="2024-03-01",
                                             end_date="2024-03-10", total_budget=1000))
        for amount in (200, 300):
            data(engine.add_transaction(user_id, type="EXPENSE", amount=amount, date="2024-03-02",
                                        account_id=bank["account_id"], project_id=project["project_id"]))
        stats = data(engine.get_project_stats(user_id, project["project_id"]))
        assert stats["budgetUtilization"] == pytest.approx(50)
        assert stats["amortizedDailyCost"] == pytest.approx(50)

        detail = data(engine.get_project(user_id, project["project_id"]))
        assert len(detail["transactions"]) == 2

    def test_end_before_start(self, engine, user_id):
        result = engine.create_project(user_id, name="Bad", start_date="2024-03-10", end_date="2024-03-01")
        assert result["code"] == "validation"
        assert data(engine.get_projects(user_id)) == []

    def test_delete_keeps_transactions(self, engine, user_id, bank):
        project = data(engine.create_project(user_id, name="Gig", type="SIDE_HUSTLE"))
        tx = data(engine.add_transaction(user_id, type="INCOME", amount=10, account_id=bank["account_id"],
                                         project_id=project["project_id"]))
        data(engine.delete_project(user_id, project["project_id"]))
        [kept] = data(engine.get_transactions(user_id))
        assert kept["transaction_id"] == tx["transaction_id"]
        assert kept["project_id"] is None


class TestRecurring:
    def test_missed_occurrences_are_booked(self, engine, user_id, bank):
        rule = data(engine.add_recurring_rule(user_id, name="Gym", amount=10, start_date="2024-01-15"))
        result = data(engine.process_due_recurring(user_id, today="2024-03-20"))
        assert result["processed"] == 3

        ledger = data(engine.get_transactions(user_id))
        assert {t["date"] for t in ledger} == {"2024-01-15", "2024-02-15", "2024-03-15"}
        assert all(t["source"] == "RECURRING" and t["merchant"] == "Gym" for t in ledger)
        assert balance_of(engine, user_id, bank["account_id"]) == 70

        [stored] = data(engine.get_recurring_rules(user_id))
        assert stored["rule_id"] == rule["rule_id"]
        assert stored["next_run_date"] == "2024-04-15"
        assert data(engine.process_due_recurring(user_id, today="2024-03-20"))["processed"] == 0

    def test_inactive_rules_do_not_fire(self, engine, user_id, bank):
        data(engine.add_recurring_rule(user_id, name="Old", amount=10, start_date="2024-01-01", is_active=False))
        assert data(engine.process_due_recurring(user_id, today="2024-03-01"))["processed"] == 0

    def test_interval_must_be_positive(self, engine, user_id):
        assert engine.add_recurring_rule(user_id, name="X", amount=1, interval=0)["code"] == "validation"

    def test_month_end_rule_keeps_its_day(self, engine, user_id, bank):
        data(engine.add_recurring_rule(user_id, name="Rent", amount=10, start_date="2024-01-31"))
        data(engine.process_due_recurring(user_id, today="2024-02-29"))
        assert data(engine.get_recurring_rules(user_id))[0]["next_run_date"] == "2024-03-31"

        data(engine.process_due_recurring(user_id, today="2024-05-31"))
        dates = sorted(t["date"] for t in data(engine.get_transactions(user_id)))
        assert dates == ["2024-01-31", "2024-02-29", "2024-03-31", "2024-04-30", "2024-05-31"]
        assert data(engine.get_recurring_rules(user_id))[0]["next_run_date"] == "2024-06-30"


class TestReports:
    def test_metrics_series(self, engine, user_id, bank):
        data(engine.add_transaction(user_id, type="EXPENSE", amount=30, date="2024-01-03",
                                    account_id=bank["account_id"]))
        result = data(engine.get_metrics(user_id, start_date="2024-01-01", end_date="2024-01-14",
                                         granularity="WEEKLY", today="2024-01-14"))
        assert result["granularity"] == "WEEKLY"
        assert [p["days"] for p in result["series"]] == [7, 7]
        assert result["series"][0]["expense"] == 30
        assert result["series"][-1]["capitalLevel"] == 70
        assert result["metrics"]["cashOnly"] == 70

    def test_metrics_validation(self, engine, user_id):
        assert engine.get_metrics(user_id, granularity="HOURLY")["code"] == "validation"
        result = engine.get_metrics(user_id, start_date="2024-02-01", end_date="2024-01-01")
        assert result["code"] == "validation"

    def test_dashboard(self, engine, user_id, bank):
        data(engine.add_transaction(user_id, type="INCOME", amount=50, account_id=bank["account_id"]))
        summary = data(engine.get_dashboard_summary(user_id))
        assert summary["totalCash"] == 150
        assert summary["thisMonthIncome"] == 50
        assert summary["baseCurrency"] == "CNY"

    def test_rates_are_fetched_without_holding_a_write_lock(self, db_path, user_id):
        writable = []

        def provider(api_key):
            # Another writer must get the database while rates are on the network
            conn = sqlite3.connect(str(db_path), timeout=0)
            try:
                conn.execute("BEGIN IMMEDIATE")
                conn.rollback()
                writable.append(True)
            finally:
                conn.close()
            return None

        engine = FinanceEngine(db_path, rate_provider=provider)
        data(engine.get_dashboard_summary(user_id))
        data(engine.get_metrics(user_id, start_date="2024-01-01", end_date="2024-01-07", today="2024-01-07"))
        assert writable == [True, True]

    def test_csv_export(self, engine, user_id, bank):
        data(engine.add_transaction(user_id, type="EXPENSE", amount=5, account_id=bank["account_id"],
                                    merchant="Cafe"))
        csv_text = data(engine.export_transactions_csv(user_id))
        assert csv_text.startswith("Date,Type,Category")
        assert '"Cafe"' in csv_text

    def test_import_matches_category_names(self, engine, user_id, bank):
        imported = data(engine.import_recognized_transactions(user_id, [
            {"amount": 12, "category": "groceries", "merchant": "Market", "date": "2024-05-01"},
            {"amount": 3, "category": "Unheard Of"},
        ]))
        assert imported[0]["category_id"] is not None
        assert imported[1]["category_id"] is None
        assert all(t["source"] == "AI_SCAN" for t in imported)


def test_demo_data(engine, user_id):
    info = generate_demo_data(engine, user_id, today=date(2024, 6, 30), seed=7)
    assert info["accounts_created"] == 4
    assert info["transactions_generated"] > 0

    metrics = data(engine.get_metrics(user_id, start_date="2024-03-01", end_date="2024-06-30",
                                      granularity="MONTHLY", today="2024-06-30"))
    assert len(metrics["series"]) == 4
    assert any(p["depreciationCost"] > 0 for p in metrics["series"])
    assert any(p["recurringCost"] > 0 for p in metrics["series"])
