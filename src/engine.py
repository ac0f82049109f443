"""
Me Inc. Finance - Balance & Valuation Engine

This module contains the FinanceEngine class: a stateless engine holding every
server-side action of the application. It treats a person as a small company
("Me Inc."): accounts hold capital, investments and fixed assets are funded by
transfers, assets depreciate, projects amortize their cost, recurring bills
fire into the ledger.

Key Design Principles:
- **Stateless**: all state lives in SQLite; each action opens its own
  connection and runs as one all-or-nothing database transaction.
- **User Segregation**: every action takes a user_id and only touches rows
  owned by that user. Foreign rows are reported as not found.
- **Derived Balances**: accounts.current_balance is a cache recomputed from
  the ledger for exactly the accounts an action touched.
- **Uniform Results**: actions never raise. They return
  {"success": True, "data": ...} or
  {"success": False, "error": message, "code": kind}.

The calculations themselves live in valuation.py, timeseries.py and
reports.py; this module loads rows, calls them and writes results back.
"""

import datetime
import functools
import os
import sqlite3
import traceback
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from pathlib import Path

import bcrypt

import rates
import reports
import timeseries
from models import (
    ACCOUNT_TYPES, CATEGORY_TYPES, DEPRECIATION_METHODS, FREQUENCIES, INVESTMENT_TYPES,
    PROJECT_STATUSES, PROJECT_TYPES, TRANSACTION_SOURCES, TRANSACTION_TYPES,
    Account, Category, Project, RecurringRule, Transaction,
    investment_from_row, to_date,
)
from setup_sqlite import get_db_path
from valuation import (
    advance_run_date, asset_book_value, calculate_account_balance, due_occurrences, make_converter,
    rule_anchor_day,
)


# Seeded for every new user (name, icon, type)
DEFAULT_CATEGORIES = [
    ('Food & Dining', '🍽️', 'EXPENSE'),
    ('Groceries', '🛒', 'EXPENSE'),
    ('Transport', '🚗', 'EXPENSE'),
    ('Digital & Tech', '💻', 'EXPENSE'),
    ('Housing', '🏠', 'EXPENSE'),
    ('Entertainment', '🎬', 'EXPENSE'),
    ('Medical', '💊', 'EXPENSE'),
    ('Game', '🎮', 'EXPENSE'),
    ('Salary', '💰', 'INCOME'),
]

# Holding accounts that investments are funded into
PORTFOLIO_ACCOUNT = ('Investment Portfolio', 'INVESTMENT', '💼', '#8884d8')
FIXED_ASSETS_ACCOUNT = ('Fixed Assets', 'ASSET', '💻', '#82ca9d')

# Categories booked by the investment lifecycle (name, icon, type)
DEPRECIATION_CATEGORY = ('Depreciation', '📉', 'EXPENSE')
RETURN_CATEGORY = ('Investment Return', '💰', 'INCOME')
LOSS_CATEGORY = ('Investment Loss', '📉', 'EXPENSE')
WRITE_OFF_CATEGORY = ('Asset Write-off', '🗑️', 'EXPENSE')

CENT = Decimal('0.01')
SPLIT_TOLERANCE = CENT
SPLIT_MARKER = '[SPLIT]'


# =============================================================================
# ERRORS & RESULTS
# =============================================================================

class ActionError(Exception):
    """An expected rejection; the message is safe to show to the user."""
    code = 'internal'


class UnauthorizedError(ActionError):
    code = 'unauthorized'


class NotFoundError(ActionError):
    code = 'not_found'


class ValidationError(ActionError):
    code = 'validation'


def ok(data=None):
    return {"success": True, "data": data}


def fail(message, code='internal'):
    return {"success": False, "error": message, "code": code}


def action(failure_message):
    """
    Run an engine method as one authenticated database transaction.

    The wrapped method is written as `method(self, cursor, user_id, ...)` and
    called as `engine.method(user_id, ...)`. Its return value becomes the
    result's data. ActionErrors roll back and become failed results with their
    own message; anything else rolls back, is printed with its traceback and is
    reported with `failure_message`.
    """
    def decorator(method):
        @functools.wraps(method)
        def wrapper(self, user_id, *args, **kwargs):
            if user_id is None:
                return fail("Unauthorized", UnauthorizedError.code)
            conn, cursor = self._get_db_connection()
            try:
                cursor.execute("SELECT user_id FROM users WHERE user_id = ?", (user_id,))
                if cursor.fetchone() is None:
                    raise UnauthorizedError("Unauthorized")
                data = method(self, cursor, user_id, *args, **kwargs)
                conn.commit()
                return ok(data)
            except ActionError as e:
                conn.rollback()
                return fail(str(e), e.code)
            except Exception as e:
                conn.rollback()
                print(f"[ENGINE] {failure_message}: {e}")
                traceback.print_exc()
                return fail(failure_message)
            finally:
                cursor.close()
                conn.close()
        return wrapper
    return decorator


def _parse_date(value, field='date', default=None):
    if value is None or value == '':
        return default
    try:
        return to_date(value)
    except ValueError:
        raise ValidationError(f"Invalid {field}: {value}")


def _money(value):
    """Any number as a Decimal rounded to cents."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def _parse_number(value, field):
    try:
        number = Decimal(str(value))
    except InvalidOperation:
        raise ValidationError(f"{field} must be a number.")
    if not number.is_finite():
        raise ValidationError(f"{field} must be a number.")
    return number


def _parse_amount(value, field='Amount', allow_zero=False):
    amount = _parse_number(value, field)
    if amount < 0 or (amount == 0 and not allow_zero):
        raise ValidationError(f"{field} must be positive.")
    return amount


def _choice(value, allowed, field):
    if value not in allowed:
        raise ValidationError(f"Invalid {field}: {value}")
    return value


class FinanceEngine:
    """
    Stateless personal finance engine for Me Inc.

    Methods are organized into functional groups:
    - Authentication: register and log in users
    - Settings: base currency, rate API key, default account
    - Categories, Accounts, Projects, Recurring Rules
    - Transactions: ledger rows, splits, recognized imports, CSV export
    - Investments: funding, depreciation, close, write-off
    - Reports: dashboard summary, metrics series, project stats

    Example:
        engine = FinanceEngine()
        result = engine.login_user("alice", "password123")
        if result["success"]:
            accounts = engine.get_accounts(result["data"]["user_id"])
    """

    def __init__(self, db_path=None, rate_provider=None):
        self.db_path = Path(db_path) if db_path else get_db_path()
        self.rate_provider = rate_provider or rates.get_exchange_rates

    # =============================================================================
    # SQLITE HELPER METHODS
    # =============================================================================

    @staticmethod
    def _to_money_str(value):
        """Format a number for TEXT money storage"""
        if value is None:
            return None
        if isinstance(value, Decimal):
            return str(value.quantize(CENT, rounding=ROUND_HALF_UP))
        if isinstance(value, (int, float)):
            return f"{value:.2f}"
        return str(value)

    @staticmethod
    def _from_money_str(value):
        """Read TEXT money back as Decimal"""
        if value is None or value == '':
            return Decimal('0.00')
        return Decimal(str(value))

    @staticmethod
    def _row_to_dict(row):
        if row is None:
            return None
        return dict(row)

    @staticmethod
    def _rows_to_dicts(rows):
        return [dict(row) for row in rows]

    def _get_db_connection(self):
        """
        Open a new connection with foreign keys enforced and Row access.

        Callers close both the connection and the cursor.
        """
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.db_path))
        conn.execute("PRAGMA foreign_keys = ON;")
        conn.row_factory = sqlite3.Row
        return conn, conn.cursor()

    @staticmethod
    def _insert(cursor, table, values):
        columns = ', '.join(values)
        placeholders = ', '.join('?' for _ in values)
        cursor.execute(f"INSERT INTO {table} ({columns}) VALUES ({placeholders})", tuple(values.values()))
        return cursor.lastrowid

    @staticmethod
    def _update(cursor, table, id_column, row_id, user_id, values):
        if not values:
            return
        assignments = ', '.join(f"{column} = ?" for column in values)
        cursor.execute(
            f"UPDATE {table} SET {assignments} WHERE {id_column} = ? AND user_id = ?",
            tuple(values.values()) + (row_id, user_id),
        )

    def _fetch_owned(self, cursor, table, id_column, row_id, user_id, label):
        cursor.execute(f"SELECT * FROM {table} WHERE {id_column} = ? AND user_id = ?", (row_id, user_id))
        row = cursor.fetchone()
        if row is None:
            raise NotFoundError(f"{label} not found")
        return row

    # =============================================================================
    # USER AUTHENTICATION
    # =============================================================================

    def register_user(self, username, password):
        """
        Register a new user with a bcrypt-hashed password.

        Seeds the default categories and a settings row in the same
        transaction. Returns the new user's id and name as data.
        """
        username = (username or '').strip()
        if not username or not password:
            return fail("Username and password are required.", ValidationError.code)

        conn, cursor = self._get_db_connection()
        try:
            cursor.execute("SELECT user_id FROM users WHERE username = ?", (username,))
            if cursor.fetchone():
                return fail("Username already exists.", ValidationError.code)

            password_hash = bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt())
            user_id = self._insert(cursor, 'users', {
                'username': username,
                'password_hash': password_hash.decode('utf-8'),
            })
            self._ensure_settings(cursor, user_id)
            self._seed_categories(cursor, user_id)
            conn.commit()
            return ok({"user_id": user_id, "username": username})
        except Exception as e:
            conn.rollback()
            print(f"[ENGINE] Failed to register user: {e}")
            traceback.print_exc()
            return fail("Failed to register user")
        finally:
            cursor.close()
            conn.close()

    def login_user(self, username, password):
        conn, cursor = self._get_db_connection()
        try:
            cursor.execute("SELECT user_id, username, password_hash FROM users WHERE username = ?", (username,))
            user = self._row_to_dict(cursor.fetchone())
            if not user or not password:
                return fail("Invalid username or password.", UnauthorizedError.code)
            if not bcrypt.checkpw(password.encode('utf-8'), user['password_hash'].encode('utf-8')):
                return fail("Invalid username or password.", UnauthorizedError.code)
            return ok({"user_id": user['user_id'], "username": user['username']})
        except Exception as e:
            print(f"[ENGINE] Failed to log in: {e}")
            traceback.print_exc()
            return fail("Failed to log in")
        finally:
            cursor.close()
            conn.close()

    @action("Failed to delete user")
    def delete_user(self, cursor, user_id):
        """Remove a user; cascading keys remove all of their data."""
        cursor.execute("DELETE FROM users WHERE user_id = ?", (user_id,))
        return {"user_id": user_id}

    def get_user(self, user_id):
        """Plain lookup for the session loader: user dict or None."""
        conn, cursor = self._get_db_connection()
        try:
            cursor.execute("SELECT user_id, username FROM users WHERE user_id = ?", (user_id,))
            return self._row_to_dict(cursor.fetchone())
        finally:
            cursor.close()
            conn.close()

    # =============================================================================
    # SETTINGS
    # =============================================================================

    def _ensure_settings(self, cursor, user_id):
        cursor.execute(
            "INSERT OR IGNORE INTO settings (user_id, base_currency) VALUES (?, ?)",
            (user_id, os.getenv('DEFAULT_BASE_CURRENCY', 'CNY')),
        )
        cursor.execute("SELECT * FROM settings WHERE user_id = ?", (user_id,))
        return self._row_to_dict(cursor.fetchone())

    def _default_account_id(self, cursor, user_id):
        """The explicit default account setting, else the account flagged default, else None."""
        settings = self._ensure_settings(cursor, user_id)
        if settings['default_account_id']:
            return settings['default_account_id']
        cursor.execute(
            "SELECT account_id FROM accounts WHERE user_id = ? AND is_default = 1 ORDER BY account_id LIMIT 1",
            (user_id,),
        )
        row = cursor.fetchone()
        return row['account_id'] if row else None

    def _set_default_account(self, cursor, user_id, account_id):
        cursor.execute("UPDATE accounts SET is_default = 0 WHERE user_id = ?", (user_id,))
        if account_id is not None:
            cursor.execute(
                "UPDATE accounts SET is_default = 1 WHERE user_id = ? AND account_id = ?",
                (user_id, account_id),
            )
        self._ensure_settings(cursor, user_id)
        cursor.execute("UPDATE settings SET default_account_id = ? WHERE user_id = ?", (account_id, user_id))

    def _converter(self, cursor, user_id):
        """
        (to_base, base_currency) for the user's settings. Missing rates give an identity converter.

        Settings are only read here, never created, so the action holds no
        write lock while the rate provider is on the network. Call it before
        the action writes anything.
        """
        cursor.execute("SELECT base_currency, exchange_rate_api_key FROM settings WHERE user_id = ?", (user_id,))
        settings = cursor.fetchone()
        base_currency = settings['base_currency'] if settings else os.getenv('DEFAULT_BASE_CURRENCY', 'CNY')
        rate_table = self.rate_provider(settings['exchange_rate_api_key'] if settings else None)
        if not rate_table:
            print(f"[ENGINE] No exchange rates available, reporting {base_currency} without conversion")
        return make_converter(rate_table, base_currency), base_currency

    @action("Failed to fetch settings")
    def get_settings(self, cursor, user_id):
        return self._ensure_settings(cursor, user_id)

    @action("Failed to update settings")
    def update_settings(self, cursor, user_id, **changes):
        self._ensure_settings(cursor, user_id)
        values = {}
        if 'base_currency' in changes:
            currency = (changes['base_currency'] or '').strip().upper()
            if len(currency) != 3:
                raise ValidationError("Base currency must be a 3-letter code.")
            values['base_currency'] = currency
        if 'exchange_rate_api_key' in changes:
            values['exchange_rate_api_key'] = changes['exchange_rate_api_key'] or None
        if 'language' in changes:
            values['language'] = changes['language'] or 'en'
        if 'default_account_id' in changes:
            account_id = changes['default_account_id']
            if account_id is not None:
                self._fetch_owned(cursor, 'accounts', 'account_id', account_id, user_id, "Account")
            self._set_default_account(cursor, user_id, account_id)
        self._update(cursor, 'settings', 'user_id', user_id, user_id, values)
        return self._ensure_settings(cursor, user_id)

    # =============================================================================
    # CATEGORIES
    # =============================================================================

    def _seed_categories(self, cursor, user_id):
        for name, icon, category_type in DEFAULT_CATEGORIES:
            cursor.execute(
                "INSERT OR IGNORE INTO categories (user_id, name, icon, type, is_default) VALUES (?, ?, ?, ?, 1)",
                (user_id, name, icon, category_type),
            )

    def _ensure_category(self, cursor, user_id, category):
        """Id of a lifecycle category, created on first use."""
        name, icon, category_type = category
        cursor.execute(
            "SELECT category_id FROM categories WHERE user_id = ? AND name = ? AND type = ?",
            (user_id, name, category_type),
        )
        row = cursor.fetchone()
        if row:
            return row['category_id']
        return self._insert(cursor, 'categories', {
            'user_id': user_id, 'name': name, 'icon': icon, 'type': category_type, 'is_default': 0,
        })

    def _load_categories(self, cursor, user_id):
        cursor.execute("SELECT * FROM categories WHERE user_id = ? ORDER BY type, name", (user_id,))
        return [Category.from_row(r) for r in cursor.fetchall()]

    @action("Failed to fetch categories")
    def get_categories(self, cursor, user_id):
        cursor.execute("SELECT COUNT(*) AS n FROM categories WHERE user_id = ?", (user_id,))
        if cursor.fetchone()['n'] == 0:
            self._seed_categories(cursor, user_id)
        return [c.to_dict() for c in self._load_categories(cursor, user_id)]

    @action("Failed to add category")
    def add_category(self, cursor, user_id, name, type='EXPENSE', icon=None):
        name = (name or '').strip()
        if not name:
            raise ValidationError("Category name is required.")
        _choice(type, CATEGORY_TYPES, 'category type')
        cursor.execute(
            "SELECT category_id FROM categories WHERE user_id = ? AND name = ? AND type = ?",
            (user_id, name, type),
        )
        if cursor.fetchone():
            raise ValidationError(f"Category '{name}' already exists.")
        category_id = self._insert(cursor, 'categories', {
            'user_id': user_id, 'name': name, 'icon': icon, 'type': type, 'is_default': 0,
        })
        return Category.from_row(
            self._fetch_owned(cursor, 'categories', 'category_id', category_id, user_id, "Category")
        ).to_dict()

    @action("Failed to update category")
    def update_category(self, cursor, user_id, category_id, **changes):
        self._fetch_owned(cursor, 'categories', 'category_id', category_id, user_id, "Category")
        values = {}
        if 'name' in changes:
            if not (changes['name'] or '').strip():
                raise ValidationError("Category name is required.")
            values['name'] = changes['name'].strip()
        if 'icon' in changes:
            values['icon'] = changes['icon']
        if 'type' in changes:
            values['type'] = _choice(changes['type'], CATEGORY_TYPES, 'category type')
        self._update(cursor, 'categories', 'category_id', category_id, user_id, values)
        return Category.from_row(
            self._fetch_owned(cursor, 'categories', 'category_id', category_id, user_id, "Category")
        ).to_dict()

    @action("Failed to delete category")
    def delete_category(self, cursor, user_id, category_id):
        """Delete a category; its transactions and rules keep a null category."""
        self._fetch_owned(cursor, 'categories', 'category_id', category_id, user_id, "Category")
        cursor.execute("DELETE FROM categories WHERE category_id = ? AND user_id = ?", (category_id, user_id))
        return {"category_id": category_id}

    # =============================================================================
    # ACCOUNTS
    # =============================================================================

    def _load_accounts(self, cursor, user_id):
        cursor.execute("SELECT * FROM accounts WHERE user_id = ? ORDER BY account_id", (user_id,))
        return [Account.from_row(r) for r in cursor.fetchall()]

    def _recalculate(self, cursor, user_id, account_id):
        """Recompute and store one account's cached balance. Missing accounts are 0.00."""
        cursor.execute(
            "SELECT initial_balance FROM accounts WHERE account_id = ? AND user_id = ?",
            (account_id, user_id),
        )
        row = cursor.fetchone()
        if row is None:
            return Decimal('0.00')
        cursor.execute(
            "SELECT * FROM transactions WHERE user_id = ? AND (account_id = ? OR transfer_to_account_id = ?)",
            (user_id, account_id, account_id),
        )
        ledger = [Transaction.from_row(r, money=self._from_money_str) for r in cursor.fetchall()]
        initial = self._from_money_str(row['initial_balance'])
        balance = calculate_account_balance(account_id, initial, ledger).quantize(CENT, rounding=ROUND_HALF_UP)
        cursor.execute(
            "UPDATE accounts SET current_balance = ? WHERE account_id = ? AND user_id = ?",
            (self._to_money_str(balance), account_id, user_id),
        )
        return balance

    def _recalculate_accounts(self, cursor, user_id, account_ids):
        for account_id in sorted({a for a in account_ids if a is not None}):
            self._recalculate(cursor, user_id, account_id)

    def _ensure_holding_account(self, cursor, user_id, holding, currency_code):
        name, account_type, icon, color = holding
        cursor.execute(
            "SELECT account_id FROM accounts WHERE user_id = ? AND name = ? AND type = ? ORDER BY account_id LIMIT 1",
            (user_id, name, account_type),
        )
        row = cursor.fetchone()
        if row:
            return row['account_id']
        print(f"[ENGINE] Creating '{name}' holding account for user {user_id}")
        return self._insert(cursor, 'accounts', {
            'user_id': user_id, 'name': name, 'type': account_type, 'currency_code': currency_code,
            'icon': icon, 'color': color,
        })

    @action("Failed to fetch accounts")
    def get_accounts(self, cursor, user_id):
        return [a.to_dict() for a in self._load_accounts(cursor, user_id)]

    @action("Failed to create account")
    def create_account(self, cursor, user_id, name, type='BANK', initial_balance=0, currency_code=None,
                       color=None, icon=None, is_default=False):
        """
        Create an account. Its balance starts at the initial balance.

        The user's first account, or one created with is_default, becomes the
        default account and demotes any other.
        """
        name = (name or '').strip()
        if not name:
            raise ValidationError("Account name is required.")
        _choice(type, ACCOUNT_TYPES, 'account type')
        initial = _parse_number(initial_balance or 0, 'Initial balance')
        currency_code = currency_code or self._ensure_settings(cursor, user_id)['base_currency']

        cursor.execute("SELECT COUNT(*) AS n FROM accounts WHERE user_id = ?", (user_id,))
        first_account = cursor.fetchone()['n'] == 0

        account_id = self._insert(cursor, 'accounts', {
            'user_id': user_id, 'name': name, 'type': type,
            'initial_balance': self._to_money_str(initial),
            'current_balance': self._to_money_str(initial),
            'currency_code': currency_code, 'color': color, 'icon': icon,
        })
        if is_default or first_account:
            self._set_default_account(cursor, user_id, account_id)
        return Account.from_row(
            self._fetch_owned(cursor, 'accounts', 'account_id', account_id, user_id, "Account")
        ).to_dict()

    @action("Failed to update account")
    def update_account(self, cursor, user_id, account_id, **changes):
        self._fetch_owned(cursor, 'accounts', 'account_id', account_id, user_id, "Account")
        values = {}
        for field in ('color', 'icon'):
            if field in changes:
                values[field] = changes[field]
        if 'name' in changes:
            if not (changes['name'] or '').strip():
                raise ValidationError("Account name is required.")
            values['name'] = changes['name'].strip()
        if 'type' in changes:
            values['type'] = _choice(changes['type'], ACCOUNT_TYPES, 'account type')
        if 'currency_code' in changes:
            values['currency_code'] = changes['currency_code']
        if 'initial_balance' in changes:
            values['initial_balance'] = self._to_money_str(_parse_number(changes['initial_balance'], 'Initial balance'))
        self._update(cursor, 'accounts', 'account_id', account_id, user_id, values)

        if changes.get('is_default'):
            self._set_default_account(cursor, user_id, account_id)
        if 'initial_balance' in values:
            self._recalculate(cursor, user_id, account_id)
        return Account.from_row(
            self._fetch_owned(cursor, 'accounts', 'account_id', account_id, user_id, "Account")
        ).to_dict()

    @action("Failed to delete account")
    def delete_account(self, cursor, user_id, account_id):
        """Delete an account that no transaction references."""
        self._fetch_owned(cursor, 'accounts', 'account_id', account_id, user_id, "Account")
        cursor.execute(
            "SELECT COUNT(*) AS n FROM transactions WHERE user_id = ? AND (account_id = ? OR transfer_to_account_id = ?)",
            (user_id, account_id, account_id),
        )
        if cursor.fetchone()['n'] > 0:
            raise ValidationError("Account has transactions. Delete or move them first.")
        cursor.execute("DELETE FROM accounts WHERE account_id = ? AND user_id = ?", (account_id, user_id))
        return {"account_id": account_id}

    @action("Failed to recalculate balance")
    def recalculate_account_balance(self, cursor, user_id, account_id):
        return self._recalculate(cursor, user_id, account_id)

    @action("Failed to sync balances")
    def sync_account_balances(self, cursor, user_id):
        """Recalculate every account of the user from the ledger."""
        updated = {}
        for account in self._load_accounts(cursor, user_id):
            updated[account.account_id] = self._recalculate(cursor, user_id, account.account_id)
        return {"updated": updated, "count": len(updated)}

    # =============================================================================
    # TRANSACTIONS
    # =============================================================================

    def _prepare_transaction(self, cursor, user_id, data):
        """
        Validate one complete set of transaction fields.

        Returns the column values ready for storage. A missing source account
        resolves to the default account.
        """
        tx_type = _choice(data.get('type'), TRANSACTION_TYPES, 'transaction type')
        amount = _parse_amount(data.get('amount'))
        date = _parse_date(data.get('date'), default=datetime.date.today())
        source = _choice(data.get('source') or 'MANUAL', TRANSACTION_SOURCES, 'source')

        account_id = data.get('account_id')
        if account_id is None:
            account_id = self._default_account_id(cursor, user_id)
        account = None
        if account_id is not None:
            account = self._fetch_owned(cursor, 'accounts', 'account_id', account_id, user_id, "Account")

        transfer_to = data.get('transfer_to_account_id')
        target_amount = data.get('target_amount')
        target_currency = data.get('target_currency_code')
        if tx_type == 'TRANSFER':
            if account_id is None or transfer_to is None:
                raise ValidationError("Transfers need a source and a destination account.")
            if transfer_to == account_id:
                raise ValidationError("Cannot transfer to the same account.")
            destination = self._fetch_owned(cursor, 'accounts', 'account_id', transfer_to, user_id, "Destination account")
            if target_amount not in (None, ''):
                target_amount = _parse_amount(target_amount, 'Target amount')
                target_currency = target_currency or destination['currency_code']
            else:
                target_amount = None
                target_currency = None
        else:
            transfer_to = None
            target_amount = None
            target_currency = None

        for column, table, label in (('category_id', 'categories', "Category"),
                                     ('project_id', 'projects', "Project"),
                                     ('investment_id', 'investments', "Investment")):
            if data.get(column) is not None:
                self._fetch_owned(cursor, table, column, data[column], user_id, label)

        fee = data.get('fee')
        if fee not in (None, ''):
            fee = _parse_amount(fee, 'Fee', allow_zero=True)
        else:
            fee = None

        currency_code = data.get('currency_code')
        if not currency_code:
            currency_code = account['currency_code'] if account else self._ensure_settings(cursor, user_id)['base_currency']

        return {
            'amount': self._to_money_str(amount),
            'currency_code': currency_code,
            'type': tx_type,
            'date': date.isoformat(),
            'account_id': account_id,
            'transfer_to_account_id': transfer_to,
            'target_amount': self._to_money_str(target_amount),
            'target_currency_code': target_currency,
            'fee': self._to_money_str(fee),
            'fee_currency_code': data.get('fee_currency_code') if fee is not None else None,
            'category_id': data.get('category_id'),
            'project_id': data.get('project_id'),
            'investment_id': data.get('investment_id'),
            'exclude_from_analytics': 1 if data.get('exclude_from_analytics') else 0,
            'merchant': data.get('merchant'),
            'note': data.get('note'),
            'source': source,
        }

    def _insert_transaction(self, cursor, user_id, values):
        """Store a ledger row and recompute the accounts it moves."""
        row = dict(values, user_id=user_id)
        transaction_id = self._insert(cursor, 'transactions', row)
        self._recalculate_accounts(cursor, user_id, [row.get('account_id'), row.get('transfer_to_account_id')])
        return transaction_id

    def _book(self, cursor, user_id, **fields):
        """Validated insert used by the investment lifecycle and recurring rules."""
        return self._insert_transaction(cursor, user_id, self._prepare_transaction(cursor, user_id, fields))

    def _transaction_dict(self, cursor, user_id, transaction_id):
        row = self._fetch_owned(cursor, 'transactions', 'transaction_id', transaction_id, user_id, "Transaction")
        return Transaction.from_row(row).to_dict()

    def _load_transactions(self, cursor, user_id, where="", params=()):
        cursor.execute(
            f"SELECT * FROM transactions WHERE user_id = ? {where} ORDER BY date, transaction_id",
            (user_id,) + tuple(params),
        )
        return [Transaction.from_row(r) for r in cursor.fetchall()]

    @action("Failed to fetch transactions")
    def get_transactions(self, cursor, user_id, account_id=None, type=None, category_id=None,
                         project_id=None, investment_id=None, start_date=None, end_date=None,
                         search=None, limit=None, offset=0):
        """Ledger rows, newest first, filtered by any combination of criteria."""
        query = "SELECT * FROM transactions WHERE user_id = ?"
        params = [user_id]
        if account_id is not None:
            query += " AND (account_id = ? OR transfer_to_account_id = ?)"
            params.extend([account_id, account_id])
        if type:
            query += " AND type = ?"
            params.append(type)
        for column, value in (('category_id', category_id), ('project_id', project_id),
                              ('investment_id', investment_id)):
            if value is not None:
                query += f" AND {column} = ?"
                params.append(value)
        if start_date:
            query += " AND date >= ?"
            params.append(_parse_date(start_date, 'start date').isoformat())
        if end_date:
            query += " AND date <= ?"
            params.append(_parse_date(end_date, 'end date').isoformat())
        if search:
            query += " AND (merchant LIKE ? OR note LIKE ?)"
            params.extend([f"%{search}%", f"%{search}%"])
        query += " ORDER BY date DESC, transaction_id DESC"
        if limit:
            query += " LIMIT ? OFFSET ?"
            params.extend([int(limit), int(offset or 0)])
        cursor.execute(query, params)
        return [Transaction.from_row(r).to_dict() for r in cursor.fetchall()]

    @action("Failed to add transaction")
    def add_transaction(self, cursor, user_id, **data):
        transaction_id = self._insert_transaction(cursor, user_id, self._prepare_transaction(cursor, user_id, data))
        return self._transaction_dict(cursor, user_id, transaction_id)

    @action("Failed to update transaction")
    def update_transaction(self, cursor, user_id, transaction_id, **changes):
        """
        Change a ledger row. Both the old and the new accounts are recomputed.

        The amount of a split parent is fixed while it has children, and so is
        the amount of each child.
        """
        existing = self._fetch_owned(cursor, 'transactions', 'transaction_id', transaction_id, user_id, "Transaction")
        current = Transaction.from_row(existing)
        merged = current.to_dict()
        merged.update(changes)

        amount_changed = (
            'amount' in changes
            and _parse_amount(changes['amount']) != self._from_money_str(existing['amount'])
        )
        if amount_changed and current.split_parent_id is not None:
            raise ValidationError("Split items keep their amounts. Unsplit the parent transaction to change them.")
        if amount_changed:
            cursor.execute("SELECT COUNT(*) AS n FROM transactions WHERE split_parent_id = ?", (transaction_id,))
            if cursor.fetchone()['n'] > 0:
                raise ValidationError("Unsplit the transaction before changing its amount.")

        values = self._prepare_transaction(cursor, user_id, merged)
        self._update(cursor, 'transactions', 'transaction_id', transaction_id, user_id, values)
        self._recalculate_accounts(cursor, user_id, [
            current.account_id, current.transfer_to_account_id,
            values['account_id'], values['transfer_to_account_id'],
        ])
        return self._transaction_dict(cursor, user_id, transaction_id)

    @action("Failed to delete transaction")
    def delete_transaction(self, cursor, user_id, transaction_id):
        """
        Delete a ledger row; a split parent takes its children with it.

        A single split item cannot be deleted on its own.
        """
        existing = Transaction.from_row(
            self._fetch_owned(cursor, 'transactions', 'transaction_id', transaction_id, user_id, "Transaction")
        )
        if existing.split_parent_id is not None:
            raise ValidationError("Split items cannot be deleted on their own. Unsplit the parent transaction instead.")
        cursor.execute(
            "DELETE FROM transactions WHERE split_parent_id = ? AND user_id = ?", (transaction_id, user_id)
        )
        cursor.execute(
            "DELETE FROM transactions WHERE transaction_id = ? AND user_id = ?", (transaction_id, user_id)
        )
        self._recalculate_accounts(cursor, user_id, [existing.account_id, existing.transfer_to_account_id])
        return {"transaction_id": transaction_id}

    @action("Failed to split transaction")
    def split_transaction(self, cursor, user_id, transaction_id, splits):
        """
        Break one transaction into categorized parts.

        Args:
            splits (list): dicts with `amount` and optional `category_id`,
                `project_id`, `note`. The amounts must add up to the parent's
                amount within 0.01.

        The children inherit date, type, currency, account and merchant and are
        marked source SPLIT. The parent stays on the ledger (it moved the
        money) but leaves analytics, and its note is tagged [SPLIT].
        """
        parent = Transaction.from_row(
            self._fetch_owned(cursor, 'transactions', 'transaction_id', transaction_id, user_id, "Transaction"),
            money=self._from_money_str,
        )
        if parent.split_parent_id is not None:
            raise ValidationError("A split item cannot be split again.")
        if parent.type == 'TRANSFER':
            raise ValidationError("Transfers cannot be split.")
        if not splits:
            raise ValidationError("At least one split is required.")

        amounts = [_parse_amount(split.get('amount'), 'Split amount') for split in splits]
        total = sum(amounts)
        if abs(total - parent.amount) > SPLIT_TOLERANCE:
            raise ValidationError(
                f"Split amounts ({total:.2f}) must equal parent amount ({parent.amount:.2f})"
            )

        cursor.execute("SELECT COUNT(*) AS n FROM transactions WHERE split_parent_id = ?", (transaction_id,))
        if cursor.fetchone()['n'] > 0:
            raise ValidationError("Transaction already has splits. Delete existing splits first.")

        label = parent.merchant or parent.note or 'transaction'
        children = []
        for index, (split, amount) in enumerate(zip(splits, amounts), start=1):
            category_id = split.get('category_id') or parent.category_id
            project_id = split.get('project_id')
            if category_id is not None:
                self._fetch_owned(cursor, 'categories', 'category_id', category_id, user_id, "Category")
            if project_id is not None:
                self._fetch_owned(cursor, 'projects', 'project_id', project_id, user_id, "Project")
            child_id = self._insert(cursor, 'transactions', {
                'user_id': user_id,
                'amount': self._to_money_str(amount),
                'currency_code': parent.currency_code,
                'type': parent.type,
                'date': parent.date.isoformat(),
                'account_id': parent.account_id,
                'category_id': category_id,
                'project_id': project_id,
                'merchant': parent.merchant,
                'note': split.get('note') or f"Split {index} of {label}",
                'source': 'SPLIT',
                'split_parent_id': transaction_id,
                'exclude_from_analytics': 1 if parent.exclude_from_analytics else 0,
            })
            children.append(child_id)

        note = f"{parent.note} {SPLIT_MARKER}" if parent.note else f"{SPLIT_MARKER} see child transactions"
        cursor.execute(
            "UPDATE transactions SET exclude_from_analytics = 1, note = ? WHERE transaction_id = ? AND user_id = ?",
            (note, transaction_id, user_id),
        )
        return [self._transaction_dict(cursor, user_id, child_id) for child_id in children]

    @action("Failed to unsplit transaction")
    def unsplit_transaction(self, cursor, user_id, transaction_id):
        """Remove the children of a split parent and put the parent back into analytics."""
        parent = Transaction.from_row(
            self._fetch_owned(cursor, 'transactions', 'transaction_id', transaction_id, user_id, "Transaction")
        )
        children = self._load_transactions(cursor, user_id, "AND split_parent_id = ?", (transaction_id,))
        if not children:
            raise ValidationError("Transaction is not split.")

        note = parent.note or ''
        if note.startswith(SPLIT_MARKER):
            note = None
        elif note.endswith(f" {SPLIT_MARKER}"):
            note = note[:-len(SPLIT_MARKER) - 1]
        was_excluded = children[0].exclude_from_analytics

        cursor.execute("DELETE FROM transactions WHERE split_parent_id = ? AND user_id = ?", (transaction_id, user_id))
        cursor.execute(
            "UPDATE transactions SET exclude_from_analytics = ?, note = ? WHERE transaction_id = ? AND user_id = ?",
            (1 if was_excluded else 0, note, transaction_id, user_id),
        )
        return self._transaction_dict(cursor, user_id, transaction_id)

    @action("Failed to fetch split items")
    def get_split_children(self, cursor, user_id, transaction_id):
        self._fetch_owned(cursor, 'transactions', 'transaction_id', transaction_id, user_id, "Transaction")
        return [t.to_dict() for t in self._load_transactions(cursor, user_id, "AND split_parent_id = ?", (transaction_id,))]

    @action("Failed to import transactions")
    def import_recognized_transactions(self, cursor, user_id, candidates):
        """
        Store candidate transactions produced by the receipt/transfer recognizer.

        Each candidate is a dict of transaction fields; a `category` name is
        matched case-insensitively against the user's categories of the same
        type. All candidates are stored, or none.
        """
        if not candidates:
            raise ValidationError("Nothing to import.")
        categories = self._load_categories(cursor, user_id)
        created = []
        for candidate in candidates:
            data = dict(candidate)
            data.setdefault('type', 'EXPENSE')
            category_name = data.pop('category', None)
            if category_name and data.get('category_id') is None:
                match = next(
                    (c for c in categories
                     if c.name.lower() == category_name.strip().lower() and c.type == data['type']),
                    None,
                )
                data['category_id'] = match.category_id if match else None
            data['source'] = 'AI_SCAN'
            created.append(self._insert_transaction(cursor, user_id, self._prepare_transaction(cursor, user_id, data)))
        return [self._transaction_dict(cursor, user_id, transaction_id) for transaction_id in created]

    @action("Failed to export transactions")
    def export_transactions_csv(self, cursor, user_id):
        return reports.export_transactions_csv(
            self._load_transactions(cursor, user_id),
            self._load_categories(cursor, user_id),
        )

    # =============================================================================
    # INVESTMENTS
    # =============================================================================

    def _load_investment(self, cursor, user_id, investment_id):
        return investment_from_row(
            self._fetch_owned(cursor, 'investments', 'investment_id', investment_id, user_id, "Investment")
        )

    def _load_investments(self, cursor, user_id, where="", params=()):
        cursor.execute(
            f"SELECT * FROM investments WHERE user_id = ? {where} ORDER BY start_date, investment_id",
            (user_id,) + tuple(params),
        )
        return [investment_from_row(r) for r in cursor.fetchall()]

    def _holding_account_id(self, cursor, user_id, investment):
        holding = FIXED_ASSETS_ACCOUNT if investment.is_asset else PORTFOLIO_ACCOUNT
        return self._ensure_holding_account(cursor, user_id, holding, investment.currency_code)

    @staticmethod
    def _require_active(investment):
        if not investment.is_active:
            raise ValidationError(f"Investment is {investment.status.lower().replace('_', ' ')}.")

    @action("Failed to fetch investments")
    def get_investments(self, cursor, user_id, status=None):
        if status:
            investments = self._load_investments(cursor, user_id, "AND status = ?", (status,))
        else:
            investments = self._load_investments(cursor, user_id)
        today = datetime.date.today()
        result = []
        for inv in investments:
            data = inv.to_dict()
            if inv.is_asset:
                data['book_value'] = asset_book_value(inv, today)
            result.append(data)
        return result

    @action("Failed to add investment")
    def add_investment(self, cursor, user_id, name, type, initial_amount, start_date=None, currency_code=None,
                       account_id=None, project_id=None, interest_rate=None, note=None, current_amount=None,
                       purchase_price=None, salvage_value=None, useful_life=None,
                       depreciation_type='STRAIGHT_LINE'):
        """
        Create an investment and its funding transfer in one transaction.

        Financial investments (STOCK, FUND, DEPOSIT, OTHER) require a source
        account and are moved into the "Investment Portfolio" account. Fixed
        assets move into the "Fixed Assets" account when a source account is
        given; without one the asset is recorded without a ledger movement.
        """
        name = (name or '').strip()
        if not name:
            raise ValidationError("Investment name is required.")
        _choice(type, INVESTMENT_TYPES, 'investment type')
        amount = _parse_amount(initial_amount, 'Initial amount')
        start = _parse_date(start_date, 'start date', default=datetime.date.today())
        is_asset = type == 'ASSET'

        if not is_asset and account_id is None:
            raise ValidationError("Source account is required for financial investments.")
        source_account = None
        if account_id is not None:
            source_account = self._fetch_owned(cursor, 'accounts', 'account_id', account_id, user_id, "Account")
        if project_id is not None:
            self._fetch_owned(cursor, 'projects', 'project_id', project_id, user_id, "Project")
        currency_code = currency_code or (
            source_account['currency_code'] if source_account else self._ensure_settings(cursor, user_id)['base_currency']
        )

        values = {
            'user_id': user_id, 'name': name, 'type': type,
            'initial_amount': self._to_money_str(amount),
            'currency_code': currency_code, 'account_id': account_id, 'project_id': project_id,
            'start_date': start.isoformat(), 'status': 'ACTIVE', 'note': note,
        }
        if is_asset:
            cost = _parse_amount(purchase_price, 'Purchase price') if purchase_price not in (None, '') else amount
            salvage = Decimal('0.00')
            if salvage_value not in (None, ''):
                salvage = _parse_amount(salvage_value, 'Salvage value', allow_zero=True)
            if salvage > cost:
                raise ValidationError("Salvage value cannot exceed the purchase price.")
            life = int(useful_life) if useful_life not in (None, '') else 0
            if life < 0:
                raise ValidationError("Useful life cannot be negative.")
            values.update({
                'purchase_price': self._to_money_str(cost),
                'salvage_value': self._to_money_str(salvage),
                'useful_life': life,
                'depreciation_type': _choice(depreciation_type or 'STRAIGHT_LINE', DEPRECIATION_METHODS, 'depreciation method'),
                'last_depreciation_date': start.isoformat(),
                'current_amount': self._to_money_str(cost),
            })
            funding = cost
        else:
            values['interest_rate'] = float(interest_rate) if interest_rate not in (None, '') else None
            values['current_amount'] = self._to_money_str(
                _parse_amount(current_amount, 'Current amount', allow_zero=True)
                if current_amount not in (None, '') else amount
            )
            funding = amount

        investment_id = self._insert(cursor, 'investments', values)
        investment = self._load_investment(cursor, user_id, investment_id)

        if account_id is not None:
            holding_id = self._holding_account_id(cursor, user_id, investment)
            label = "Asset Acquisition" if is_asset else "Investment"
            self._book(
                cursor, user_id,
                type='TRANSFER', amount=funding, currency_code=currency_code, date=start,
                account_id=account_id, transfer_to_account_id=holding_id,
                investment_id=investment_id, project_id=project_id,
                merchant=FIXED_ASSETS_ACCOUNT[0] if is_asset else PORTFOLIO_ACCOUNT[0],
                note=f"{label}: {name}",
            )
        return investment.to_dict()

    @action("Failed to update investment")
    def update_investment(self, cursor, user_id, investment_id, **changes):
        """
        Edit an active investment.

        A new initial amount (or purchase price for assets) rewrites the
        funding transfer so the ledger keeps matching the investment.
        """
        investment = self._load_investment(cursor, user_id, investment_id)
        self._require_active(investment)

        values = {}
        for field in ('name', 'note'):
            if field in changes:
                values[field] = changes[field]
        if 'project_id' in changes:
            if changes['project_id'] is not None:
                self._fetch_owned(cursor, 'projects', 'project_id', changes['project_id'], user_id, "Project")
            values['project_id'] = changes['project_id']
        if 'current_amount' in changes:
            values['current_amount'] = self._to_money_str(
                _parse_amount(changes['current_amount'], 'Current amount', allow_zero=True)
            )
        if 'start_date' in changes:
            values['start_date'] = _parse_date(changes['start_date'], 'start date').isoformat()

        new_funding = None
        if 'initial_amount' in changes:
            values['initial_amount'] = self._to_money_str(_parse_amount(changes['initial_amount'], 'Initial amount'))
            if not investment.is_asset or not investment.purchase_price:
                new_funding = self._from_money_str(values['initial_amount'])

        if investment.is_asset:
            if 'purchase_price' in changes:
                cost = _parse_amount(changes['purchase_price'], 'Purchase price')
                values['purchase_price'] = self._to_money_str(cost)
                if investment.current_amount == investment.cost and 'current_amount' not in changes:
                    values['current_amount'] = self._to_money_str(cost)
                new_funding = cost
            if 'salvage_value' in changes:
                values['salvage_value'] = self._to_money_str(
                    _parse_amount(changes['salvage_value'], 'Salvage value', allow_zero=True)
                )
            if 'useful_life' in changes:
                values['useful_life'] = int(changes['useful_life'] or 0)
            if 'depreciation_type' in changes:
                values['depreciation_type'] = _choice(changes['depreciation_type'], DEPRECIATION_METHODS, 'depreciation method')
        elif 'interest_rate' in changes:
            values['interest_rate'] = changes['interest_rate']

        self._update(cursor, 'investments', 'investment_id', investment_id, user_id, values)

        if new_funding is not None or 'start_date' in values:
            cursor.execute(
                "SELECT * FROM transactions WHERE investment_id = ? AND user_id = ? AND type = 'TRANSFER' "
                "ORDER BY transaction_id LIMIT 1",
                (investment_id, user_id),
            )
            funding = cursor.fetchone()
            if funding:
                updates = {}
                if new_funding is not None:
                    updates['amount'] = self._to_money_str(new_funding)
                if 'start_date' in values:
                    updates['date'] = values['start_date']
                self._update(cursor, 'transactions', 'transaction_id', funding['transaction_id'], user_id, updates)
                self._recalculate_accounts(cursor, user_id, [funding['account_id'], funding['transfer_to_account_id']])

        return self._load_investment(cursor, user_id, investment_id).to_dict()

    @action("Failed to delete investment")
    def delete_investment(self, cursor, user_id, investment_id):
        """Delete an investment together with every transaction linked to it."""
        self._load_investment(cursor, user_id, investment_id)
        linked = self._load_transactions(cursor, user_id, "AND investment_id = ?", (investment_id,))
        affected = []
        for tx in linked:
            affected.extend([tx.account_id, tx.transfer_to_account_id])
        cursor.execute("DELETE FROM transactions WHERE investment_id = ? AND user_id = ?", (investment_id, user_id))
        cursor.execute("DELETE FROM investments WHERE investment_id = ? AND user_id = ?", (investment_id, user_id))
        self._recalculate_accounts(cursor, user_id, affected)
        return {"investment_id": investment_id, "deleted_transactions": len(linked)}

    @action("Failed to record depreciation")
    def record_depreciation(self, cursor, user_id, investment_id, amount, date=None):
        """
        Realize depreciation of an active fixed asset on the ledger.

        The carrying amount drops by `amount`, never below salvage value; the
        decrement actually realized is booked as a "Depreciation" expense on
        the Fixed Assets account.
        """
        asset = self._load_investment(cursor, user_id, investment_id)
        if not asset.is_asset:
            raise ValidationError("Only fixed assets can be depreciated.")
        self._require_active(asset)
        amount = _parse_amount(amount, 'Depreciation amount')
        date = _parse_date(date, default=datetime.date.today())

        carrying = _money(asset.carrying_amount())
        new_value = max(carrying - amount, _money(asset.salvage_value))
        realized = carrying - new_value
        if realized <= 0:
            raise ValidationError("Asset is already at its salvage value.")

        self._update(cursor, 'investments', 'investment_id', investment_id, user_id, {
            'current_amount': self._to_money_str(new_value),
            'last_depreciation_date': date.isoformat(),
        })
        self._book(
            cursor, user_id,
            type='EXPENSE', amount=realized, currency_code=asset.currency_code, date=date,
            account_id=self._holding_account_id(cursor, user_id, asset),
            category_id=self._ensure_category(cursor, user_id, DEPRECIATION_CATEGORY),
            investment_id=investment_id, merchant='System', note=f"Depreciation: {asset.name}",
        )
        return self._load_investment(cursor, user_id, investment_id).to_dict()

    @action("Failed to close investment")
    def close_investment(self, cursor, user_id, investment_id, final_amount, account_id=None, end_date=None):
        """
        Redeem (or sell) an active investment.

        The principal still held (carrying amount for assets, initial amount
        otherwise) is transferred from the holding account to the destination
        account; the difference to `final_amount` is booked there as an
        "Investment Return" income or an "Investment Loss" expense.
        """
        investment = self._load_investment(cursor, user_id, investment_id)
        self._require_active(investment)
        final_amount = _parse_amount(final_amount, 'Final amount', allow_zero=True)
        end_date = _parse_date(end_date, 'end date', default=datetime.date.today())

        destination = account_id or investment.account_id or self._default_account_id(cursor, user_id)
        if destination is None:
            raise ValidationError("A destination account is required to close an investment.")
        self._fetch_owned(cursor, 'accounts', 'account_id', destination, user_id, "Account")

        holding_id = self._holding_account_id(cursor, user_id, investment)
        principal = _money(investment.carrying_amount() if investment.is_asset else investment.initial_amount)
        gain = _money(final_amount - principal)

        common = dict(currency_code=investment.currency_code, date=end_date,
                      investment_id=investment_id, project_id=investment.project_id)
        if principal > 0 and destination != holding_id:
            self._book(
                cursor, user_id, type='TRANSFER', amount=principal,
                account_id=holding_id, transfer_to_account_id=destination,
                note=f"{'Asset Sold' if investment.is_asset else 'Principal Return'}: {investment.name}",
                **common
            )
        if gain > SPLIT_TOLERANCE:
            self._book(
                cursor, user_id, type='INCOME', amount=gain, account_id=destination,
                category_id=self._ensure_category(cursor, user_id, RETURN_CATEGORY),
                note=f"Investment Return: {investment.name}", **common
            )
        elif gain < -SPLIT_TOLERANCE:
            self._book(
                cursor, user_id, type='EXPENSE', amount=-gain, account_id=destination,
                category_id=self._ensure_category(cursor, user_id, LOSS_CATEGORY),
                note=f"Investment Loss: {investment.name}", **common
            )

        self._update(cursor, 'investments', 'investment_id', investment_id, user_id, {
            'status': 'CLOSED',
            'current_amount': self._to_money_str(final_amount),
            'end_date': end_date.isoformat(),
        })
        return {"investment": self._load_investment(cursor, user_id, investment_id).to_dict(), "gain": gain}

    @action("Failed to write off asset")
    def write_off_investment(self, cursor, user_id, investment_id, reason=None, date=None):
        """
        Write off an active fixed asset.

        Scheduled depreciation that has not been realized yet is booked first,
        then the remaining book value is expensed as "Asset Write-off".
        Returns the loss amount.
        """
        asset = self._load_investment(cursor, user_id, investment_id)
        if not asset.is_asset:
            raise ValidationError("Only fixed assets can be written off.")
        self._require_active(asset)
        date = _parse_date(date, default=datetime.date.today())

        holding_id = self._holding_account_id(cursor, user_id, asset)
        carrying = _money(asset.carrying_amount())
        book_value = min(_money(asset_book_value(asset, date)), carrying)
        catch_up = carrying - book_value
        loss = book_value

        if catch_up > SPLIT_TOLERANCE:
            self._book(
                cursor, user_id, type='EXPENSE', amount=catch_up, currency_code=asset.currency_code, date=date,
                account_id=holding_id, investment_id=investment_id, merchant='System',
                category_id=self._ensure_category(cursor, user_id, DEPRECIATION_CATEGORY),
                note=f"Depreciation: {asset.name}",
            )
        if loss > SPLIT_TOLERANCE:
            self._book(
                cursor, user_id, type='EXPENSE', amount=loss, currency_code=asset.currency_code, date=date,
                account_id=holding_id, investment_id=investment_id, merchant='System',
                category_id=self._ensure_category(cursor, user_id, WRITE_OFF_CATEGORY),
                note=f"Write-off: {asset.name}" + (f" ({reason})" if reason else ""),
            )

        self._update(cursor, 'investments', 'investment_id', investment_id, user_id, {
            'status': 'WRITTEN_OFF',
            'current_amount': self._to_money_str(0),
            'end_date': date.isoformat(),
            'last_depreciation_date': date.isoformat(),
            'written_off_date': date.isoformat(),
            'written_off_reason': reason,
        })
        return {
            "investment": self._load_investment(cursor, user_id, investment_id).to_dict(),
            "loss_amount": loss,
            "depreciation_realized": max(catch_up, Decimal('0.00')),
        }

    @action("Failed to fetch investment summary")
    def get_investment_summary(self, cursor, user_id, today=None):
        to_base, base_currency = self._converter(cursor, user_id)
        return reports.investment_summary(
            self._load_investments(cursor, user_id), to_base, base_currency,
            _parse_date(today, default=datetime.date.today()),
        )

    # =============================================================================
    # PROJECTS
    # =============================================================================

    def _project_values(self, changes):
        values = {}
        if 'name' in changes:
            if not (changes['name'] or '').strip():
                raise ValidationError("Project name is required.")
            values['name'] = changes['name'].strip()
        if 'description' in changes:
            values['description'] = changes['description']
        if 'type' in changes:
            values['type'] = _choice(changes['type'], PROJECT_TYPES, 'project type')
        if 'status' in changes:
            values['status'] = _choice(changes['status'], PROJECT_STATUSES, 'project status')
        if 'start_date' in changes:
            values['start_date'] = _parse_date(changes['start_date'], 'start date').isoformat()
        if 'end_date' in changes:
            end = _parse_date(changes['end_date'], 'end date')
            values['end_date'] = end.isoformat() if end else None
        if 'total_budget' in changes:
            budget = changes['total_budget']
            values['total_budget'] = self._to_money_str(
                _parse_amount(budget, 'Budget', allow_zero=True)
            ) if budget not in (None, '') else None
        if 'currency_code' in changes:
            values['currency_code'] = changes['currency_code']
        return values

    @staticmethod
    def _check_project_window(project):
        if project.start_date and project.end_date and project.end_date < project.start_date:
            raise ValidationError("Project end date is before its start date.")

    def _load_project(self, cursor, user_id, project_id):
        return Project.from_row(self._fetch_owned(cursor, 'projects', 'project_id', project_id, user_id, "Project"))

    @action("Failed to fetch projects")
    def get_projects(self, cursor, user_id):
        cursor.execute("SELECT * FROM projects WHERE user_id = ? ORDER BY start_date DESC, project_id DESC", (user_id,))
        return [Project.from_row(r).to_dict() for r in cursor.fetchall()]

    @action("Failed to fetch project")
    def get_project(self, cursor, user_id, project_id):
        project = self._load_project(cursor, user_id, project_id)
        return {
            "project": project.to_dict(),
            "transactions": [t.to_dict() for t in self._load_transactions(cursor, user_id, "AND project_id = ?", (project_id,))],
            "investments": [i.to_dict() for i in self._load_investments(cursor, user_id, "AND project_id = ?", (project_id,))],
        }

    @action("Failed to create project")
    def create_project(self, cursor, user_id, name, type='OTHER', status='ACTIVE', start_date=None, end_date=None,
                       total_budget=None, currency_code=None, description=None):
        values = self._project_values(dict(
            name=name, type=type, status=status,
            start_date=start_date or datetime.date.today(), end_date=end_date,
            total_budget=total_budget, currency_code=currency_code, description=description,
        ))
        values['user_id'] = user_id
        project_id = self._insert(cursor, 'projects', values)
        project = self._load_project(cursor, user_id, project_id)
        self._check_project_window(project)
        return project.to_dict()

    @action("Failed to update project")
    def update_project(self, cursor, user_id, project_id, **changes):
        self._load_project(cursor, user_id, project_id)
        self._update(cursor, 'projects', 'project_id', project_id, user_id, self._project_values(changes))
        project = self._load_project(cursor, user_id, project_id)
        self._check_project_window(project)
        return project.to_dict()

    @action("Failed to delete project")
    def delete_project(self, cursor, user_id, project_id):
        """Delete a project; linked transactions and investments are kept, unlinked."""
        self._load_project(cursor, user_id, project_id)
        cursor.execute("DELETE FROM projects WHERE project_id = ? AND user_id = ?", (project_id, user_id))
        return {"project_id": project_id}

    @action("Failed to calculate project stats")
    def get_project_stats(self, cursor, user_id, project_id):
        project = self._load_project(cursor, user_id, project_id)
        to_base, base_currency = self._converter(cursor, user_id)
        return reports.project_stats(
            project,
            self._load_transactions(cursor, user_id, "AND project_id = ?", (project_id,)),
            self._load_investments(cursor, user_id, "AND project_id = ?", (project_id,)),
            to_base, base_currency,
        )

    # =============================================================================
    # RECURRING RULES
    # =============================================================================

    def _load_rules(self, cursor, user_id, where="", params=()):
        cursor.execute(
            f"SELECT * FROM recurring_rules WHERE user_id = ? {where} ORDER BY next_run_date, rule_id",
            (user_id,) + tuple(params),
        )
        return [RecurringRule.from_row(r) for r in cursor.fetchall()]

    def _rule_values(self, cursor, user_id, changes):
        values = {}
        if 'name' in changes:
            if not (changes['name'] or '').strip():
                raise ValidationError("Rule name is required.")
            values['name'] = changes['name'].strip()
        if 'amount' in changes:
            values['amount'] = self._to_money_str(_parse_amount(changes['amount']))
        if 'frequency' in changes:
            values['frequency'] = _choice(changes['frequency'], FREQUENCIES, 'frequency')
        if 'interval' in changes:
            try:
                interval = int(changes['interval']) if changes['interval'] not in (None, '') else 1
            except (TypeError, ValueError):
                raise ValidationError("Interval must be a whole number.")
            if interval < 1:
                raise ValidationError("Interval must be at least 1.")
            values['interval'] = interval
        for field in ('start_date', 'next_run_date'):
            if field in changes:
                values[field] = _parse_date(changes[field], field.replace('_', ' ')).isoformat()
        for column, table, label in (('category_id', 'categories', "Category"),
                                     ('account_id', 'accounts', "Account"),
                                     ('project_id', 'projects', "Project")):
            if column in changes:
                if changes[column] is not None:
                    self._fetch_owned(cursor, table, column, changes[column], user_id, label)
                values[column] = changes[column]
        if 'is_active' in changes:
            values['is_active'] = 1 if changes['is_active'] else 0
        if 'merchant' in changes:
            values['merchant'] = changes['merchant']
        if 'currency_code' in changes:
            values['currency_code'] = changes['currency_code']
        return values

    @action("Failed to fetch recurring rules")
    def get_recurring_rules(self, cursor, user_id):
        return [r.to_dict() for r in self._load_rules(cursor, user_id)]

    @action("Failed to add recurring rule")
    def add_recurring_rule(self, cursor, user_id, name, amount, frequency='MONTHLY', interval=1, start_date=None,
                           next_run_date=None, currency_code=None, category_id=None, account_id=None,
                           merchant=None, project_id=None, is_active=True):
        start = start_date or datetime.date.today()
        values = self._rule_values(cursor, user_id, dict(
            name=name, amount=amount, frequency=frequency, interval=interval,
            start_date=start, next_run_date=next_run_date or start,
            category_id=category_id, account_id=account_id, project_id=project_id,
            merchant=merchant, is_active=is_active,
        ))
        values['user_id'] = user_id
        values['currency_code'] = currency_code or self._ensure_settings(cursor, user_id)['base_currency']
        rule_id = self._insert(cursor, 'recurring_rules', values)
        return RecurringRule.from_row(
            self._fetch_owned(cursor, 'recurring_rules', 'rule_id', rule_id, user_id, "Recurring rule")
        ).to_dict()

    @action("Failed to update recurring rule")
    def update_recurring_rule(self, cursor, user_id, rule_id, **changes):
        self._fetch_owned(cursor, 'recurring_rules', 'rule_id', rule_id, user_id, "Recurring rule")
        self._update(cursor, 'recurring_rules', 'rule_id', rule_id, user_id, self._rule_values(cursor, user_id, changes))
        return RecurringRule.from_row(
            self._fetch_owned(cursor, 'recurring_rules', 'rule_id', rule_id, user_id, "Recurring rule")
        ).to_dict()

    @action("Failed to delete recurring rule")
    def delete_recurring_rule(self, cursor, user_id, rule_id):
        self._fetch_owned(cursor, 'recurring_rules', 'rule_id', rule_id, user_id, "Recurring rule")
        cursor.execute("DELETE FROM recurring_rules WHERE rule_id = ? AND user_id = ?", (rule_id, user_id))
        return {"rule_id": rule_id}

    @action("Failed to process recurring rules")
    def process_due_recurring(self, cursor, user_id, today=None):
        """
        Fire every due recurring rule into the ledger.

        One RECURRING expense per missed occurrence, dated on the occurrence.
        Afterwards every active rule's next_run_date lies after `today`.
        Rules without an account book on the default account.
        """
        today = _parse_date(today, default=datetime.date.today())
        default_account = self._default_account_id(cursor, user_id)
        created = []
        for rule in self._load_rules(cursor, user_id, "AND is_active = 1 AND next_run_date <= ?", (today.isoformat(),)):
            occurrences = due_occurrences(rule, today)
            for run_date in occurrences:
                created.append(self._book(
                    cursor, user_id,
                    type='EXPENSE', amount=rule.amount, currency_code=rule.currency_code, date=run_date,
                    account_id=rule.account_id or default_account,
                    category_id=rule.category_id, project_id=rule.project_id,
                    merchant=rule.merchant or rule.name, source='RECURRING',
                ))
            if occurrences:
                self._update(cursor, 'recurring_rules', 'rule_id', rule.rule_id, user_id, {
                    'last_run_date': occurrences[-1].isoformat(),
                    'next_run_date': advance_run_date(
                        occurrences[-1], rule.frequency, rule.interval, rule_anchor_day(rule)
                    ).isoformat(),
                })
                print(f"[ENGINE] Recurring '{rule.name}' fired {len(occurrences)} time(s)")
        return {"processed": len(created), "transaction_ids": created}

    # =============================================================================
    # REPORTS
    # =============================================================================

    @action("Failed to fetch dashboard summary")
    def get_dashboard_summary(self, cursor, user_id, today=None):
        to_base, base_currency = self._converter(cursor, user_id)
        return reports.dashboard_summary(
            self._load_accounts(cursor, user_id),
            self._load_transactions(cursor, user_id),
            self._load_investments(cursor, user_id),
            self._load_categories(cursor, user_id),
            to_base, base_currency,
            _parse_date(today, default=datetime.date.today()),
        )

    @action("Failed to calculate metrics")
    def get_metrics(self, cursor, user_id, start_date=None, end_date=None, granularity='DAILY', today=None):
        """
        Capital and burn-rate series between two dates (default: last 30 days).

        Returns the period records plus runway figures derived from the
        daily series.
        """
        today = _parse_date(today, default=datetime.date.today())
        end = _parse_date(end_date, 'end date', default=today)
        start = _parse_date(start_date, 'start date', default=end - datetime.timedelta(days=29))
        if end < start:
            raise ValidationError("End date is before start date.")
        _choice(granularity, timeseries.GRANULARITIES, 'granularity')

        to_base, base_currency = self._converter(cursor, user_id)
        accounts = self._load_accounts(cursor, user_id)
        assets = self._load_investments(cursor, user_id, "AND type = 'ASSET'")
        rules = self._load_rules(cursor, user_id, "AND is_active = 1")
        cursor.execute(
            "SELECT * FROM projects WHERE user_id = ? AND status != 'CANCELLED' "
            "AND start_date IS NOT NULL AND end_date IS NOT NULL",
            (user_id,),
        )
        projects = [Project.from_row(r) for r in cursor.fetchall()]
        project_transactions = {}
        for tx in self._load_transactions(cursor, user_id, "AND project_id IS NOT NULL"):
            project_transactions.setdefault(tx.project_id, []).append(tx)
        transactions = self._load_transactions(cursor, user_id, "AND date >= ?", (start.isoformat(),))

        daily = timeseries.build_daily_series(
            start, end, transactions, accounts, assets, rules, projects, project_transactions, to_base, today,
        )
        return {
            "baseCurrency": base_currency,
            "granularity": granularity,
            "series": timeseries.bucket_series(daily, granularity),
            "metrics": timeseries.series_metrics(daily, accounts, to_base),
        }
