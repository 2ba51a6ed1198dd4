"""
Transaction Log

Append-only history of balance-affecting events (diamond_transactions).
Backs idempotency lookups, history display and ledger audits.

Entries are never updated or deleted, except by purge() when the owning
user is removed.
"""

import logging
from typing import List, Optional, Sequence, Tuple

from .config import TRANSACTIONS_COLLECTION
from .errors import storage_call
from .models import LedgerTransaction

logger = logging.getLogger(__name__)

TRANSACTION_INDEXES = [
    ([("id", 1)], {"unique": True, "name": "idx_txn_id_unique"}),
    ([("user_id", 1), ("seq", -1)], {"name": "idx_user_seq"}),
    ([("user_id", 1), ("idempotency_key", 1), ("kind", 1)], {"name": "idx_user_idempotency_key_kind"}),
]


class TransactionLog:
    """MongoDB-backed transaction log."""

    def __init__(self, db):
        self.db = db
        self.collection = db[TRANSACTIONS_COLLECTION]

    @storage_call
    async def append(self, txn: LedgerTransaction) -> None:
        """
        Write an immutable entry.

        Keyed on the transaction id, so appending the same transaction
        twice leaves exactly one entry.
        """
        await self.collection.update_one(
            {"id": txn.id},
            {"$setOnInsert": txn.model_dump()},
            upsert=True
        )

    @storage_call
    async def find_by_idempotency_key(
        self,
        user_id: str,
        key: str,
        kinds: Sequence[str]
    ) -> Optional[LedgerTransaction]:
        """Earlier entry recorded under `key`, restricted to the given kinds."""
        doc = await self.collection.find_one(
            {"user_id": user_id, "idempotency_key": key, "kind": {"$in": list(kinds)}},
            {"_id": 0}
        )
        return LedgerTransaction(**doc) if doc else None

    @storage_call
    async def recent(self, user_id: str, limit: int = 50) -> List[LedgerTransaction]:
        """Most recent entries for a user, newest first."""
        cursor = self.collection.find(
            {"user_id": user_id},
            {"_id": 0}
        ).sort("seq", -1).limit(limit)

        docs = await cursor.to_list(length=limit)
        return [LedgerTransaction(**doc) for doc in docs]

    @storage_call
    async def all_for_user(self, user_id: str) -> List[LedgerTransaction]:
        """Full history for a user, oldest first."""
        cursor = self.collection.find({"user_id": user_id}, {"_id": 0}).sort("seq", 1)
        docs = await cursor.to_list(length=None)
        return [LedgerTransaction(**doc) for doc in docs]

    @storage_call
    async def sum_deltas(self, user_id: str) -> Tuple[int, int]:
        """Returns (sum of deltas, number of entries) for a user."""
        pipeline = [
            {"$match": {"user_id": user_id}},
            {"$group": {"_id": None, "total": {"$sum": "$delta"}, "count": {"$sum": 1}}}
        ]
        result = await self.collection.aggregate(pipeline).to_list(1)
        if not result:
            return 0, 0
        return int(result[0]["total"]), int(result[0]["count"])

    @storage_call
    async def purge(self, user_id: str) -> int:
        result = await self.collection.delete_many({"user_id": user_id})
        logger.info(f"Purged {result.deleted_count} diamond transactions for user {user_id}")
        return result.deleted_count

    @storage_call
    async def ensure_indexes(self) -> None:
        for index_spec, options in TRANSACTION_INDEXES:
            await self.collection.create_index(index_spec, **options)
