#!/usr/bin/env python3
"""
Database initialization script for the credit ledger.

Creates the SQLite schema (accounts, reservations, ledger entries, payment
events, staging jobs) and optionally opens a credit account.

Usage:
    python scripts/init_ledger_db.py [--db-path PATH] [--open-account ORG_ID] [--signup-bonus N]

This script is idempotent - safe to run multiple times. Reopening an
existing account never grants the signup bonus twice.
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from magicstage.ledger.credit_ledger import CreditLedger
from magicstage.ledger.usage_recorder import UsageRecorder
from magicstage.storage.database import LedgerDatabase

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

EXPECTED_TABLES = {
    "credit_accounts",
    "reservations",
    "ledger_entries",
    "payment_events",
    "staging_jobs",
}


async def init_database(db_path: str) -> bool:
    """
    Initialize ledger database schema and verify the tables exist.

    Returns:
        bool: True if initialization succeeded
    """
    db = LedgerDatabase(db_path=db_path)
    try:
        await db.initialize()
    except Exception as e:
        logger.error(f"Database initialization failed: {e}", exc_info=True)
        return False

    def inspect(conn) -> dict[str, int]:
        tables = {
            row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
        }
        return {
            table: conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
            for table in sorted(tables & EXPECTED_TABLES)
        }

    counts = await db.run_read(inspect)
    db.close()

    missing = EXPECTED_TABLES - set(counts)
    if missing:
        logger.error(f"Missing tables: {missing}")
        return False

    logger.info(f"✓ Found tables: {', '.join(counts)}")
    for table, count in counts.items():
        logger.info(f"  {table}: {count} rows")

    logger.info("✓ Database initialization complete")
    return True


async def open_account(db_path: str, organization_id: str, signup_bonus: int) -> bool:
    db = LedgerDatabase(db_path=db_path)
    await db.initialize()
    try:
        ledger = CreditLedger(db, UsageRecorder(db))
        account = await ledger.open_account(organization_id, signup_bonus=signup_bonus)
    except Exception as e:
        logger.error(f"Opening account failed: {e}", exc_info=True)
        return False
    finally:
        db.close()

    logger.info(f"✓ Account {account.organization_id}: balance {account.balance}")
    return True


def main():
    parser = argparse.ArgumentParser(description="Initialize credit ledger database schema")
    parser.add_argument(
        "--db-path",
        default="./data/ledger.db",
        help="Path to SQLite database file (default: ./data/ledger.db)",
    )
    parser.add_argument(
        "--open-account",
        metavar="ORG_ID",
        help="Open a credit account for this organization",
    )
    parser.add_argument(
        "--signup-bonus",
        type=int,
        default=3,
        help="Signup bonus credits for --open-account (default: 3)",
    )

    args = parser.parse_args()

    if not asyncio.run(init_database(args.db_path)):
        logger.error("❌ Database initialization failed")
        sys.exit(1)

    if args.open_account:
        if not asyncio.run(open_account(args.db_path, args.open_account, args.signup_bonus)):
            sys.exit(1)

    logger.info("")
    logger.info("=== Ledger Ready ===")
    logger.info(f"Database path: {Path(args.db_path).absolute()}")


if __name__ == "__main__":
    main()
