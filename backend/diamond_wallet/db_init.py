"""
Diamond wallet index setup

Creates the account and transaction indexes through the stores'
ensure_indexes() (the same calls server startup makes) and stamps the
schema version. Accounts themselves are created lazily on first use.

Usage:
    python -m diamond_wallet.db_init [--dry-run]

Production runs require DIAMOND_INIT_CONFIRM=YES.
"""

import os
import sys
import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Tuple

from motor.motor_asyncio import AsyncIOMotorClient

from .account_store import ACCOUNT_INDEXES, AccountStore
from .config import ACCOUNTS_COLLECTION, TRANSACTIONS_COLLECTION
from .transaction_log import TRANSACTION_INDEXES, TransactionLog

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "v1.0.0"
META_COLLECTION = "diamond_wallet_meta"

INDEXES_BY_COLLECTION = {
    ACCOUNTS_COLLECTION: ACCOUNT_INDEXES,
    TRANSACTIONS_COLLECTION: TRANSACTION_INDEXES,
}


def check_environment() -> Tuple[bool, str]:
    """Returns (allowed, message); production needs explicit confirmation."""
    app_env = os.environ.get("ENVIRONMENT", "development")

    if app_env.lower() == "production" and os.environ.get("DIAMOND_INIT_CONFIRM") != "YES":
        return False, "Production environment: set DIAMOND_INIT_CONFIRM=YES to run index setup"

    return True, f"Environment: {app_env}"


async def missing_indexes(db) -> List[Tuple[str, str]]:
    """(collection, index name) pairs not yet present."""
    missing = []
    for collection_name, indexes in INDEXES_BY_COLLECTION.items():
        existing = await db[collection_name].index_information()
        for _, options in indexes:
            if options["name"] not in existing:
                missing.append((collection_name, options["name"]))
    return missing


async def apply_schema(db, dry_run: bool = False) -> List[str]:
    """Create missing indexes and stamp the version. Returns one line per step."""
    missing = await missing_indexes(db)
    prefix = "[DRY-RUN] Would create" if dry_run else "[CREATE]"
    lines = [f"{prefix} index '{name}' on '{collection}'" for collection, name in missing]

    if dry_run:
        return lines

    await AccountStore(db).ensure_indexes()
    await TransactionLog(db).ensure_indexes()
    await db[META_COLLECTION].update_one(
        {"_id": "diamond_wallet_init"},
        {"$set": {"version": SCHEMA_VERSION, "applied_at": datetime.now(timezone.utc).isoformat()}},
        upsert=True
    )
    lines.append(f"[UPDATE] Version stamp {SCHEMA_VERSION}")
    return lines


async def run_init(dry_run: bool = False):
    from dotenv import load_dotenv

    load_dotenv(Path(__file__).parent.parent / '.env')

    allowed, env_message = check_environment()
    logger.info(env_message)
    if not allowed:
        sys.exit(1)

    mongo_url = os.environ.get('MONGO_URL')
    db_name = os.environ.get('DB_NAME')
    if not mongo_url or not db_name:
        logger.error("Missing MONGO_URL or DB_NAME environment variables")
        sys.exit(1)

    client = AsyncIOMotorClient(mongo_url, serverSelectionTimeoutMS=5000)
    try:
        for line in await apply_schema(client[db_name], dry_run):
            logger.info(line)
    finally:
        client.close()


def main():
    import argparse

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )

    parser = argparse.ArgumentParser(description="Diamond wallet index setup")
    parser.add_argument('--dry-run', action='store_true', help='Print what would be done without making changes')
    args = parser.parse_args()

    asyncio.run(run_init(dry_run=args.dry_run))


if __name__ == "__main__":
    main()
