"""
Me Inc. Finance - Database Migration Runner

Applies ordered SQL files from migrations/schema/ to an existing database.
Files are named NNN_description.sql; schema_version records every applied
version, and only versions above the current maximum are run.

Usage:
    python migration_runner.py          # apply pending migrations
    python migration_runner.py list     # show status
"""

import re
import sqlite3
import sys
from pathlib import Path

from setup_sqlite import get_db_path


MIGRATION_FILE = re.compile(r'^(\d{3})_(.+)\.sql$')


def get_migrations_path():
    """Return the path to the migrations folder"""
    return Path(__file__).parent.parent / "migrations" / "schema"


def get_current_version(conn):
    """Highest applied migration version, 0 for a database without any."""
    cursor = conn.cursor()
    try:
        cursor.execute("SELECT MAX(version) FROM schema_version")
        result = cursor.fetchone()
        return result[0] if result[0] is not None else 0
    except sqlite3.OperationalError:
        # No schema_version table yet
        return 0
    finally:
        cursor.close()


def discover_migrations(migrations_path=None):
    """All migration files as (version, path, description), ordered by version."""
    migrations_path = Path(migrations_path) if migrations_path else get_migrations_path()
    if not migrations_path.exists():
        return []

    migrations = []
    for file in migrations_path.glob('*.sql'):
        match = MIGRATION_FILE.match(file.name)
        if match:
            migrations.append((int(match.group(1)), file, match.group(2).replace('_', ' ')))
    return sorted(migrations, key=lambda m: m[0])


def apply_migration(conn, version, filepath, description):
    """Run one migration file and record it. Returns True on success."""
    print(f"[MIGRATION] Applying {version:03d}: {description}...", end=" ")
    try:
        sql = Path(filepath).read_text(encoding='utf-8')
        conn.executescript(sql)
        conn.execute(
            "INSERT INTO schema_version (version, description) VALUES (?, ?)",
            (version, description),
        )
        conn.commit()
        print("OK")
        return True
    except sqlite3.Error as e:
        print("FAILED")
        print(f"[MIGRATION] Error: {e}")
        conn.rollback()
        return False


def run_all_pending(db_path=None, migrations_path=None):
    """
    Apply every migration newer than the database's schema version.

    Stops at the first failure. Returns the number of migrations applied.
    """
    db_path = Path(db_path) if db_path else get_db_path()
    if not db_path.exists():
        print("[MIGRATION] Database does not exist. Run setup_sqlite.py first.")
        return 0

    conn = sqlite3.connect(str(db_path))
    conn.execute("PRAGMA foreign_keys = ON;")
    try:
        current_version = get_current_version(conn)
        pending = [m for m in discover_migrations(migrations_path) if m[0] > current_version]
        if not pending:
            return 0

        print(f"[MIGRATION] {len(pending)} pending migration(s)")
        applied = 0
        for version, filepath, description in pending:
            if not apply_migration(conn, version, filepath, description):
                print(f"[MIGRATION] Migration {version:03d} failed. Stopping.")
                break
            applied += 1
        return applied
    finally:
        conn.close()


def list_migrations(db_path=None, migrations_path=None):
    """Migration status rows: (version, description, applied)."""
    db_path = Path(db_path) if db_path else get_db_path()
    current_version = 0
    if db_path.exists():
        conn = sqlite3.connect(str(db_path))
        try:
            current_version = get_current_version(conn)
        finally:
            conn.close()
    return [
        (version, description, version <= current_version)
        for version, _, description in discover_migrations(migrations_path)
    ]


if __name__ == "__main__":
    if len(sys.argv) > 1 and sys.argv[1] == 'list':
        for version, description, applied in list_migrations():
            print(f"{version:03d}. {description:<40} {'[APPLIED]' if applied else '[PENDING]'}")
    else:
        count = run_all_pending()
        print(f"[OK] Applied {count} migration(s)." if count else "[OK] No pending migrations.")
