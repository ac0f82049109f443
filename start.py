#!/usr/bin/env python3
"""
Me Inc. Finance - Launcher

Steps:
1. Load .env settings
2. Database setup (restore from the latest backup, else create a fresh one)
3. Back up the database to Documents/MeInc_Data
4. Apply pending migrations
5. Start the Flask API and open the browser

Usage:
    python start.py
"""

import os
import shutil
import sys
import threading
import time
import traceback
import webbrowser
from datetime import datetime, timedelta
from pathlib import Path

from dotenv import load_dotenv

sys.path.insert(0, str(Path(__file__).parent / "src"))

from migration_runner import run_all_pending  # noqa: E402
from setup_sqlite import create_database, get_db_path  # noqa: E402

PORT = int(os.getenv('PORT', 5001))
DAILY_BACKUPS_KEPT = 7
BACKUP_PREFIX = 'meinc_'


# =============================================================================
# BACKUP AND RESTORE
# =============================================================================

def get_backup_dir():
    """Documents/MeInc_Data, or MEINC_BACKUP_DIR when set."""
    override = os.getenv('MEINC_BACKUP_DIR')
    backup_dir = Path(override) if override else Path.home() / 'Documents' / 'MeInc_Data'
    backup_dir.mkdir(parents=True, exist_ok=True)
    return backup_dir


def backup_database(db_path, now=None):
    """
    Copy the database next to the previous backups.

    latest.db is always overwritten; one dated copy is kept per day and only
    the newest DAILY_BACKUPS_KEPT dated copies survive.
    """
    if not db_path.exists():
        return None
    now = now or datetime.now()
    backup_dir = get_backup_dir()
    shutil.copy2(db_path, backup_dir / f"{BACKUP_PREFIX}latest.db")

    dated = backup_dir / f"{BACKUP_PREFIX}{now:%Y-%m-%d}.db"
    if not dated.exists():
        shutil.copy2(db_path, dated)

    cutoff = now - timedelta(days=DAILY_BACKUPS_KEPT)
    for old in backup_dir.glob(f"{BACKUP_PREFIX}????-??-??.db"):
        try:
            if datetime.strptime(old.stem[len(BACKUP_PREFIX):], '%Y-%m-%d') < cutoff:
                old.unlink()
        except ValueError:
            continue
    return backup_dir


def restore_latest_backup(db_path):
    latest = get_backup_dir() / f"{BACKUP_PREFIX}latest.db"
    if not latest.exists():
        return None
    db_path.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy2(latest, db_path)
    return datetime.fromtimestamp(latest.stat().st_mtime)


# =============================================================================
# STARTUP
# =============================================================================

def setup_database():
    db_path = get_db_path()

    if db_path.exists():
        print("[1/4] Database found... [OK]")
    else:
        restored_at = restore_latest_backup(db_path)
        if restored_at:
            print(f"[1/4] Restored backup from {restored_at:%B %d, %Y}... [OK]")
        else:
            print("[1/4] Creating new database...")
            if not create_database(db_path):
                print("[ERROR] Failed to create database. Check error messages above.")
                sys.exit(1)

    location = backup_database(db_path)
    print(f"[2/4] Backed up to {location}... [OK]")

    applied = run_all_pending(db_path)
    print(f"[3/4] Migrations... [OK] {applied} applied")


def start_server():
    from api import create_app

    url = f"http://127.0.0.1:{PORT}"
    print(f"[4/4] Starting Me Inc. server at {url}")
    print("  Press Ctrl+C to stop the server")

    def open_browser():
        time.sleep(1.5)
        webbrowser.open(url)

    if not os.getenv('MEINC_NO_BROWSER'):
        threading.Thread(target=open_browser, daemon=True).start()

    create_app().run(debug=False, port=PORT, use_reloader=False)


def main():
    load_dotenv()
    print("=" * 60)
    print("Me Inc. Finance")
    print("=" * 60)
    try:
        setup_database()
        start_server()
    except KeyboardInterrupt:
        print("\nServer stopped.")
    except Exception as e:
        print(f"\n[ERROR] An unexpected error occurred: {e}")
        traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
