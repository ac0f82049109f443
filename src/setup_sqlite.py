"""
Me Inc. Finance - SQLite Database Setup & Initialization

Creates the Me Inc. SQLite schema. Every user-owned table carries user_id
with ON DELETE CASCADE, so removing a user removes all of their data.

Database Schema Overview:
------------------------
- users: login credentials (bcrypt hashes)
- settings: per-user base currency, rate API key, default account
- accounts: bank/wallet/cash/credit accounts plus the investment and fixed
  asset holding accounts; current_balance is a cached derived value
- categories: income/expense categories, seeded per user
- projects: trips, jobs, side hustles, events used for cost attribution
- investments: financial investments and depreciating fixed assets
- transactions: the ledger (INCOME / EXPENSE / TRANSFER, splits)
- recurring_rules: bills that fire into the ledger when due
- schema_version: applied migrations

Money is TEXT with two decimals; dates are ISO 'YYYY-MM-DD' TEXT.
"""

import os
import sqlite3
from pathlib import Path


TABLES = [
    ('users', """
        CREATE TABLE IF NOT EXISTS users (
            user_id INTEGER PRIMARY KEY AUTOINCREMENT,
            username TEXT NOT NULL UNIQUE,
            password_hash TEXT NOT NULL,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
    """, []),

    ('accounts', """
        CREATE TABLE IF NOT EXISTS accounts (
            account_id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            type TEXT CHECK(type IN ('BANK', 'WALLET', 'CASH', 'CREDIT', 'INVESTMENT', 'ASSET', 'OTHER')) NOT NULL,
            initial_balance TEXT NOT NULL DEFAULT '0.00',
            current_balance TEXT NOT NULL DEFAULT '0.00',
            currency_code TEXT NOT NULL DEFAULT 'CNY',
            color TEXT,
            icon TEXT,
            is_default INTEGER NOT NULL DEFAULT 0,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES users(user_id) ON DELETE CASCADE
        )
    """, [
        "CREATE INDEX IF NOT EXISTS idx_accounts_user_id ON accounts(user_id);",
    ]),

    ('settings', """
        CREATE TABLE IF NOT EXISTS settings (
            user_id INTEGER PRIMARY KEY,
            base_currency TEXT NOT NULL DEFAULT 'CNY',
            exchange_rate_api_key TEXT,
            default_account_id INTEGER,
            language TEXT NOT NULL DEFAULT 'en',
            FOREIGN KEY (user_id) REFERENCES users(user_id) ON DELETE CASCADE,
            FOREIGN KEY (default_account_id) REFERENCES accounts(account_id) ON DELETE SET NULL
        )
    """, []),

    ('categories', """
        CREATE TABLE IF NOT EXISTS categories (
            category_id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            icon TEXT,
            type TEXT CHECK(type IN ('INCOME', 'EXPENSE')) NOT NULL DEFAULT 'EXPENSE',
            is_default INTEGER NOT NULL DEFAULT 0,
            FOREIGN KEY (user_id) REFERENCES users(user_id) ON DELETE CASCADE,
            UNIQUE(user_id, name, type)
        )
    """, [
        "CREATE INDEX IF NOT EXISTS idx_categories_user_id ON categories(user_id);",
    ]),

    ('projects', """
        CREATE TABLE IF NOT EXISTS projects (
            project_id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            description TEXT,
            type TEXT CHECK(type IN ('TRIP', 'JOB', 'SIDE_HUSTLE', 'EVENT', 'WORK', 'OTHER')) NOT NULL DEFAULT 'OTHER',
            status TEXT CHECK(status IN ('PLANNING', 'ACTIVE', 'COMPLETED', 'CANCELLED')) NOT NULL DEFAULT 'ACTIVE',
            start_date TEXT NOT NULL,
            end_date TEXT,
            total_budget TEXT,
            currency_code TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES users(user_id) ON DELETE CASCADE
        )
    """, [
        "CREATE INDEX IF NOT EXISTS idx_projects_user_id ON projects(user_id);",
    ]),

    ('investments', """
        CREATE TABLE IF NOT EXISTS investments (
            investment_id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            type TEXT CHECK(type IN ('STOCK', 'FUND', 'DEPOSIT', 'ASSET', 'OTHER')) NOT NULL,
            initial_amount TEXT NOT NULL,
            current_amount TEXT,
            currency_code TEXT NOT NULL DEFAULT 'CNY',
            interest_rate REAL,
            account_id INTEGER,
            project_id INTEGER,
            start_date TEXT NOT NULL,
            end_date TEXT,
            status TEXT CHECK(status IN ('ACTIVE', 'CLOSED', 'WRITTEN_OFF')) NOT NULL DEFAULT 'ACTIVE',
            note TEXT,
            purchase_price TEXT,
            salvage_value TEXT,
            useful_life INTEGER,
            depreciation_type TEXT CHECK(depreciation_type IN ('STRAIGHT_LINE', 'DECLINING_BALANCE')),
            last_depreciation_date TEXT,
            written_off_date TEXT,
            written_off_reason TEXT,
            FOREIGN KEY (user_id) REFERENCES users(user_id) ON DELETE CASCADE,
            FOREIGN KEY (account_id) REFERENCES accounts(account_id) ON DELETE SET NULL,
            FOREIGN KEY (project_id) REFERENCES projects(project_id) ON DELETE SET NULL
        )
    """, [
        "CREATE INDEX IF NOT EXISTS idx_investments_user_status ON investments(user_id, status);",
    ]),

    ('transactions', """
        CREATE TABLE IF NOT EXISTS transactions (
            transaction_id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            amount TEXT NOT NULL,
            currency_code TEXT NOT NULL DEFAULT 'CNY',
            type TEXT CHECK(type IN ('INCOME', 'EXPENSE', 'TRANSFER')) NOT NULL,
            date TEXT NOT NULL,
            account_id INTEGER,
            transfer_to_account_id INTEGER,
            target_amount TEXT,
            target_currency_code TEXT,
            fee TEXT,
            fee_currency_code TEXT,
            category_id INTEGER,
            project_id INTEGER,
            investment_id INTEGER,
            split_parent_id INTEGER,
            exclude_from_analytics INTEGER NOT NULL DEFAULT 0,
            merchant TEXT,
            note TEXT,
            source TEXT CHECK(source IN ('MANUAL', 'AI_SCAN', 'RECURRING', 'SPLIT')) NOT NULL DEFAULT 'MANUAL',
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES users(user_id) ON DELETE CASCADE,
            FOREIGN KEY (account_id) REFERENCES accounts(account_id),
            FOREIGN KEY (transfer_to_account_id) REFERENCES accounts(account_id),
            FOREIGN KEY (category_id) REFERENCES categories(category_id) ON DELETE SET NULL,
            FOREIGN KEY (project_id) REFERENCES projects(project_id) ON DELETE SET NULL,
            FOREIGN KEY (investment_id) REFERENCES investments(investment_id) ON DELETE SET NULL,
            FOREIGN KEY (split_parent_id) REFERENCES transactions(transaction_id) ON DELETE CASCADE
        )
    """, [
        "CREATE INDEX IF NOT EXISTS idx_transactions_user_date ON transactions(user_id, date);",
        "CREATE INDEX IF NOT EXISTS idx_transactions_account ON transactions(account_id);",
        "CREATE INDEX IF NOT EXISTS idx_transactions_transfer_to ON transactions(transfer_to_account_id);",
        "CREATE INDEX IF NOT EXISTS idx_transactions_split_parent ON transactions(split_parent_id);",
    ]),

    ('recurring_rules', """
        CREATE TABLE IF NOT EXISTS recurring_rules (
            rule_id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            amount TEXT NOT NULL,
            currency_code TEXT NOT NULL DEFAULT 'CNY',
            category_id INTEGER,
            frequency TEXT CHECK(frequency IN ('DAILY', 'WEEKLY', 'MONTHLY', 'YEARLY')) NOT NULL,
            interval INTEGER NOT NULL DEFAULT 1,
            start_date TEXT NOT NULL,
            next_run_date TEXT NOT NULL,
            last_run_date TEXT,
            is_active INTEGER NOT NULL DEFAULT 1,
            account_id INTEGER,
            merchant TEXT,
            project_id INTEGER,
            FOREIGN KEY (user_id) REFERENCES users(user_id) ON DELETE CASCADE,
            FOREIGN KEY (category_id) REFERENCES categories(category_id) ON DELETE SET NULL,
            FOREIGN KEY (account_id) REFERENCES accounts(account_id) ON DELETE SET NULL,
            FOREIGN KEY (project_id) REFERENCES projects(project_id) ON DELETE SET NULL
        )
    """, [
        "CREATE INDEX IF NOT EXISTS idx_recurring_rules_due ON recurring_rules(user_id, is_active, next_run_date);",
    ]),

    ('schema_version', """
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY,
            description TEXT NOT NULL,
            applied_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
    """, []),
]


def get_db_path():
    """Return the path to the SQLite database file (MEINC_DB_PATH overrides)."""
    override = os.getenv('MEINC_DB_PATH')
    if override:
        return Path(override)
    return Path(__file__).parent / "data" / "meinc.db"


def create_database(db_path=None):
    """
    Create every table and index that does not exist yet.

    Existing tables are left untouched; use reset_database() to start fresh.
    """
    db_path = Path(db_path) if db_path else get_db_path()
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(str(db_path))
    cursor = conn.cursor()
    cursor.execute("PRAGMA foreign_keys = ON;")

    print("--- Creating Me Inc. Database ---")
    print(f"Location: {db_path}")

    try:
        for name, ddl, indexes in TABLES:
            print(f"Creating table '{name}'...", end=" ")
            cursor.execute(ddl)
            for index_sql in indexes:
                cursor.execute(index_sql)
            print("OK")

        conn.commit()
        print("[OK] Database schema created successfully!")
        return True

    except sqlite3.Error as err:
        print(f"\n[ERROR] Error creating database: {err}")
        conn.rollback()
        return False

    finally:
        cursor.close()
        conn.close()


def reset_database(db_path=None):
    """Delete the database file and create an empty schema. All data is lost."""
    db_path = Path(db_path) if db_path else get_db_path()
    if db_path.exists():
        print(f"[WARNING] Deleting existing database at {db_path}")
        db_path.unlink()
    return create_database(db_path)


def verify_schema(db_path=None):
    """Check that every expected table exists and foreign keys can be enforced."""
    db_path = Path(db_path) if db_path else get_db_path()
    if not db_path.exists():
        print("[ERROR] Database does not exist")
        return False

    conn = sqlite3.connect(str(db_path))
    cursor = conn.cursor()
    try:
        cursor.execute("PRAGMA foreign_keys = ON;")
        for name, _, _ in TABLES:
            cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name=?", (name,))
            if not cursor.fetchone():
                print(f"[ERROR] Table '{name}' MISSING")
                return False
        cursor.execute("PRAGMA foreign_keys;")
        if not cursor.fetchone()[0]:
            print("[ERROR] Foreign key enforcement DISABLED")
            return False
        print("[OK] Schema verification complete")
        return True
    finally:
        cursor.close()
        conn.close()


if __name__ == "__main__":
    print("=" * 80)
    print("Me Inc. Finance - SQLite Database Setup")
    print("=" * 80)

    path = get_db_path()
    if path.exists():
        print(f"Database already exists at: {path}")
        choice = input("Choose an option:\n  1. Verify existing schema\n  2. Reset database (DELETES ALL DATA)\n  3. Cancel\n\nChoice: ")
        if choice == '1':
            verify_schema()
        elif choice == '2':
            confirm = input("\nType 'DELETE' to confirm: ")
            if confirm == 'DELETE':
                reset_database()
                verify_schema()
            else:
                print("Reset cancelled.")
        else:
            print("Cancelled.")
    else:
        create_database()
        verify_schema()
