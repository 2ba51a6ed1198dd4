"""
Account Store

Durable keyed storage of one diamond account per user (diamond_accounts).

CRITICAL: Accounts are only ever written through save(), which is a
compare-and-swap on the account's version. Two writers that read the same
version can never both commit.
"""

import logging
from datetime import datetime
from typing import List, Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from .config import ACCOUNTS_COLLECTION, ACCOUNT_DEFAULTS
from .errors import NotFound, storage_call
from .models import Account
from .refill_scheduler import to_iso

logger = logging.getLogger(__name__)

# (index_spec, options)
ACCOUNT_INDEXES = [
    ([("user_id", 1)], {"unique": True, "name": "idx_user_id_unique"}),
    ([("last_refill_at", 1)], {"name": "idx_last_refill_at"}),
]


class AccountStore:
    """MongoDB-backed account records keyed by user_id."""

    def __init__(self, db, defaults: Optional[dict] = None):
        self.db = db
        self.collection = db[ACCOUNTS_COLLECTION]
        self.defaults = defaults or ACCOUNT_DEFAULTS

    def _new_account_doc(self, user_id: str, now: datetime) -> dict:
        now_iso = to_iso(now)
        return {
            "user_id": user_id,
            "balance": self.defaults["initial_balance"],
            "max_balance": self.defaults["max_balance"],
            "initial_balance": self.defaults["initial_balance"],
            "last_refill_at": now_iso,
            "version": 0,
            "pending_transactions": [],
            "created_at": now_iso,
            "updated_at": now_iso
        }

    @storage_call
    async def get(self, user_id: str, now: datetime) -> Account:
        """
        Get existing account or create it with defaults.

        Read and creation are one upsert, so concurrent first access
        initializes the account exactly once.
        """
        try:
            doc = await self.collection.find_one_and_update(
                {"user_id": user_id},
                {"$setOnInsert": self._new_account_doc(user_id, now)},
                upsert=True,
                projection={"_id": 0},
                return_document=ReturnDocument.AFTER
            )
        except DuplicateKeyError:
            # Lost the insert race against another first access
            doc = await self.collection.find_one({"user_id": user_id}, {"_id": 0})

        if not doc:
            raise NotFound(f"Account for user {user_id} missing after get-or-create")

        return Account(**doc)

    @storage_call
    async def find(self, user_id: str) -> Optional[Account]:
        """Read without creating."""
        doc = await self.collection.find_one({"user_id": user_id}, {"_id": 0})
        return Account(**doc) if doc else None

    @storage_call
    async def save(self, account: Account, expected_version: int) -> Optional[Account]:
        """
        Replace the mutable fields of an account if nobody wrote since expected_version.

        Returns:
            The stored account, or None on a version conflict
        """
        result = await self.collection.update_one(
            {"user_id": account.user_id, "version": expected_version},
            {
                "$set": {
                    "balance": account.balance,
                    "max_balance": account.max_balance,
                    "last_refill_at": account.last_refill_at,
                    "version": account.version,
                    "pending_transactions": account.pending_transactions,
                    "updated_at": account.updated_at
                }
            }
        )
        # The filter matched, so the stored document is exactly `account`
        return account if result.matched_count == 1 else None

    @storage_call
    async def clear_pending(self, user_id: str, version: int) -> bool:
        """Drop pending transactions once they are in the log. No-op if the version moved on."""
        result = await self.collection.update_one(
            {"user_id": user_id, "version": version},
            {"$set": {"pending_transactions": []}}
        )
        return result.modified_count > 0

    @storage_call
    async def user_ids_refilled_before(self, cutoff_iso: str) -> List[str]:
        cursor = self.collection.find(
            {"last_refill_at": {"$lt": cutoff_iso}},
            {"_id": 0, "user_id": 1}
        )
        docs = await cursor.to_list(length=None)
        return [doc["user_id"] for doc in docs]

    @storage_call
    async def delete(self, user_id: str, expected_version: Optional[int] = None) -> bool:
        """Delete the account; with expected_version, only if it was not written since."""
        query = {"user_id": user_id}
        if expected_version is not None:
            query["version"] = expected_version

        result = await self.collection.delete_one(query)
        if result.deleted_count:
            logger.info(f"Deleted diamond account for user {user_id}")
        return result.deleted_count > 0

    @storage_call
    async def ensure_indexes(self) -> None:
        for index_spec, options in ACCOUNT_INDEXES:
            await self.collection.create_index(index_spec, **options)
