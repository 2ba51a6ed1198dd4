"""
Diamond Ledger Engine

The only code path that changes a diamond balance:
- consume: cost-gated spend for a feature action (idempotent per key)
- grant: purchases and manual credits, no refill ceiling
- refill: daily top-up up to max_balance
- get_balance / history / audit / delete_account

CRITICAL: Every mutation is one compare-and-swap on the account document.
The transactions produced by a mutation are stored on the account as
pending_transactions in that same write, then copied into the log. Any
later load flushes leftovers first, so the log always catches up before
the next decision and initial_balance + sum(delta) == balance holds.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .account_store import AccountStore
from .config import (
    ACTION_COSTS,
    CAS_MAX_ATTEMPTS,
    CREDIT_KINDS,
    DIAMOND_PACKS,
    ERROR_CODES,
    HISTORY_DEFAULT_LIMIT,
    HISTORY_MAX_LIMIT,
    KIND_CONSUMPTION,
    KIND_PURCHASE,
    KIND_REFILL,
    PURCHASED_BALANCE_CAP,
)
from .errors import (
    InvalidAmount,
    LedgerError,
    NotFound,
    StorageUnavailable,
    UnknownAction,
    UnknownPack,
)
from .models import (
    Account,
    AuditReport,
    BalanceSnapshot,
    ConsumeResult,
    LedgerTransaction,
    RefillResult,
)
from .refill_scheduler import RefillScheduler, parse_timestamp, to_iso, utc_now
from .transaction_log import TransactionLog

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    delta: int
    kind: str
    reason: str
    idempotency_key: Optional[str] = None
    details: Optional[dict] = None


@dataclass
class _Plan:
    """
    What one attempt decided to do.

    write=False returns `result` without touching storage. Otherwise the
    new balance/last_refill_at and entries are committed and on_commit
    builds the result from the stored account and its transactions.
    """
    write: bool
    balance: int = 0
    last_refill_at: str = ""
    entries: List[_Entry] = field(default_factory=list)
    result: Any = None
    on_commit: Optional[Callable[[Account, List[LedgerTransaction]], Any]] = None


class LedgerEngine:
    """Atomic per-user diamond balance operations."""

    def __init__(
        self,
        db,
        scheduler: Optional[RefillScheduler] = None,
        action_costs: Optional[Dict[str, int]] = None,
        clock: Optional[Callable[[], datetime]] = None,
        max_attempts: Optional[int] = None
    ):
        self.db = db
        self.accounts = AccountStore(db)
        self.log = TransactionLog(db)
        self.scheduler = scheduler or RefillScheduler()
        self.action_costs = action_costs if action_costs is not None else ACTION_COSTS
        self.clock = clock or utc_now
        self.max_attempts = max_attempts or CAS_MAX_ATTEMPTS

    # ==================== PUBLIC OPERATIONS ====================

    def cost_of(self, action: str) -> int:
        if action not in self.action_costs:
            raise UnknownAction(action)
        return self.action_costs[action]

    async def get_balance(self, user_id: str) -> BalanceSnapshot:
        """Current balance, applying a due refill first."""
        async def decide(account: Account, now: datetime) -> _Plan:
            balance, last_refill_at, entries, due = self._refill_step(account, now)
            if not due:
                return _Plan(write=False, result=self._snapshot(account, now))
            return _Plan(
                write=True,
                balance=balance,
                last_refill_at=last_refill_at,
                entries=entries,
                on_commit=lambda saved, txns: self._snapshot(saved, now)
            )

        return await self._apply(user_id, decide)

    async def consume(self, user_id: str, action: str, idempotency_key: str) -> ConsumeResult:
        """
        Spend the cost of `action` if the balance covers it.

        A retry with the same idempotency_key returns the balance recorded
        by the first successful attempt and charges nothing.
        """
        cost = self.cost_of(action)

        async def decide(account: Account, now: datetime) -> _Plan:
            existing = await self.log.find_by_idempotency_key(user_id, idempotency_key, (KIND_CONSUMPTION,))
            if existing:
                logger.info(f"Replayed consume for user {user_id} (key={idempotency_key})")
                return _Plan(write=False, result=ConsumeResult(
                    ok=True,
                    balance=existing.balance_after,
                    transaction_id=existing.id,
                    replayed=True
                ))

            balance, last_refill_at, entries, due = self._refill_step(account, now)

            if balance < cost:
                def rejected(saved: Account, txns: List[LedgerTransaction]) -> ConsumeResult:
                    return self._insufficient(saved.balance)

                if not due:
                    return _Plan(write=False, result=self._insufficient(balance))
                # Commit the day's refill even though the charge is refused
                return _Plan(
                    write=True,
                    balance=balance,
                    last_refill_at=last_refill_at,
                    entries=entries,
                    on_commit=rejected
                )

            entries.append(_Entry(
                delta=-cost,
                kind=KIND_CONSUMPTION,
                reason=action,
                idempotency_key=idempotency_key
            ))

            def charged(saved: Account, txns: List[LedgerTransaction]) -> ConsumeResult:
                logger.info(f"Consumed {cost} diamonds for user {user_id} (action={action}, balance={saved.balance})")
                return ConsumeResult(ok=True, balance=saved.balance, transaction_id=txns[-1].id)

            return _Plan(
                write=True,
                balance=balance - cost,
                last_refill_at=last_refill_at,
                entries=entries,
                on_commit=charged
            )

        return await self._apply(user_id, decide)

    async def grant(
        self,
        user_id: str,
        amount: int,
        kind: str = KIND_PURCHASE,
        reason: str = "purchase",
        idempotency_key: Optional[str] = None,
        details: Optional[dict] = None
    ) -> int:
        """
        Credit diamonds for a purchase or manual grant.

        Not bounded by max_balance; saturates at PURCHASED_BALANCE_CAP.

        Returns:
            The new balance
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidAmount(amount)
        if kind not in CREDIT_KINDS:
            raise ValueError(f"Grant kind must be one of {CREDIT_KINDS}, got {kind!r}")

        async def decide(account: Account, now: datetime) -> _Plan:
            if idempotency_key:
                existing = await self.log.find_by_idempotency_key(user_id, idempotency_key, CREDIT_KINDS)
                if existing:
                    logger.info(f"Replayed grant for user {user_id} (key={idempotency_key})")
                    return _Plan(write=False, result=existing.balance_after)

            balance, last_refill_at, entries, due = self._refill_step(account, now)

            added = min(amount, max(PURCHASED_BALANCE_CAP - balance, 0))
            if added < amount:
                logger.warning(
                    f"Grant for user {user_id} saturated at {PURCHASED_BALANCE_CAP}: "
                    f"requested={amount}, added={added}"
                )

            if added > 0:
                entries.append(_Entry(
                    delta=added,
                    kind=kind,
                    reason=reason,
                    idempotency_key=idempotency_key,
                    details={"requested": amount, **(details or {})}
                ))

            if not entries and not due:
                return _Plan(write=False, result=balance)

            def credited(saved: Account, txns: List[LedgerTransaction]) -> int:
                logger.info(f"Granted {added} diamonds to user {user_id} (kind={kind}, balance={saved.balance})")
                return saved.balance

            return _Plan(
                write=True,
                balance=balance + added,
                last_refill_at=last_refill_at,
                entries=entries,
                on_commit=credited
            )

        return await self._apply(user_id, decide)

    async def purchase_pack(self, user_id: str, pack_id: str, purchase_reference: str) -> int:
        """
        Credit a configured diamond pack.

        purchase_reference (store transaction id) makes redelivery of the
        same purchase a no-op.
        """
        pack = DIAMOND_PACKS.get(pack_id)
        if not pack:
            raise UnknownPack(pack_id)

        return await self.grant(
            user_id,
            pack["diamonds"],
            kind=KIND_PURCHASE,
            reason=f"pack:{pack_id}",
            idempotency_key=f"purchase:{purchase_reference}",
            details={
                "pack_id": pack_id,
                "price_jpy": pack["price_jpy"],
                "purchase_reference": purchase_reference
            }
        )

    async def refill(self, user_id: str) -> RefillResult:
        """
        Apply today's refill if it has not been used yet.

        applied is True only when diamonds were actually added.
        """
        async def decide(account: Account, now: datetime) -> _Plan:
            balance, last_refill_at, entries, due = self._refill_step(account, now)
            if not due:
                return _Plan(write=False, result=RefillResult(
                    applied=False,
                    balance=account.balance,
                    last_refill_at=account.last_refill_at
                ))

            def refilled(saved: Account, txns: List[LedgerTransaction]) -> RefillResult:
                return RefillResult(
                    applied=bool(txns),
                    balance=saved.balance,
                    last_refill_at=saved.last_refill_at
                )

            return _Plan(
                write=True,
                balance=balance,
                last_refill_at=last_refill_at,
                entries=entries,
                on_commit=refilled
            )

        return await self._apply(user_id, decide)

    async def refill_all(self) -> int:
        """
        Apply refills to every account not yet refilled today.

        Returns:
            Number of accounts that received diamonds
        """
        cutoff = to_iso(self.scheduler.start_of_day(self.clock()))
        user_ids = await self.accounts.user_ids_refilled_before(cutoff)

        refilled = 0
        for user_id in user_ids:
            try:
                result = await self.refill(user_id)
            except LedgerError as e:
                logger.error(f"Refill sweep failed for user {user_id}: {e}")
                continue
            if result.applied:
                refilled += 1

        return refilled

    async def history(self, user_id: str, limit: int = HISTORY_DEFAULT_LIMIT) -> List[LedgerTransaction]:
        """Recent transactions, newest first."""
        limit = max(1, min(int(limit), HISTORY_MAX_LIMIT))
        await self._load(user_id, self.clock())
        return await self.log.recent(user_id, limit)

    async def audit(self, user_id: str) -> AuditReport:
        """Check initial_balance + sum(delta) == balance for one user."""
        account = await self._load(user_id, self.clock())
        delta_sum, count = await self.log.sum_deltas(user_id)
        expected = account.initial_balance + delta_sum

        if expected != account.balance:
            logger.error(
                f"Ledger inconsistency for user {user_id}: "
                f"balance={account.balance}, expected={expected}"
            )

        return AuditReport(
            user_id=user_id,
            initial_balance=account.initial_balance,
            delta_sum=delta_sum,
            expected_balance=expected,
            balance=account.balance,
            transaction_count=count,
            consistent=expected == account.balance
        )

    async def delete_account(self, user_id: str) -> bool:
        """
        Remove a user's account and transactions (user deletion).

        The log is purged before the account goes, and the account is only
        deleted if nobody wrote to it in between. A request arriving after
        the delete starts a fresh account whose entries are left alone.
        """
        for attempt in range(1, self.max_attempts + 1):
            account = await self.accounts.find(user_id)
            if account is None:
                return False

            await self.log.purge(user_id)
            if await self.accounts.delete(user_id, expected_version=account.version):
                return True

            logger.warning(
                f"Diamond account {user_id} changed during delete "
                f"(attempt {attempt}/{self.max_attempts}), retrying"
            )

        logger.error(f"Gave up deleting diamond account {user_id} after {self.max_attempts} attempts")
        raise StorageUnavailable(ERROR_CODES["STORAGE_UNAVAILABLE"])

    # ==================== INTERNALS ====================

    def _insufficient(self, balance: int) -> ConsumeResult:
        return ConsumeResult(
            ok=False,
            balance=balance,
            reason="InsufficientBalance",
            error_code="INSUFFICIENT_BALANCE"
        )

    def _snapshot(self, account: Account, now: datetime) -> BalanceSnapshot:
        return BalanceSnapshot(
            user_id=account.user_id,
            balance=account.balance,
            max_balance=account.max_balance,
            last_refill_at=account.last_refill_at,
            next_refill_at=to_iso(self.scheduler.next_refill_at(now))
        )

    def _refill_step(self, account: Account, now: datetime):
        """
        Returns (balance, last_refill_at, entries, due) after a refill check.

        A due refill always advances last_refill_at; an entry is produced
        only when diamonds are added.
        """
        plan = self.scheduler.plan(
            account.balance,
            account.max_balance,
            parse_timestamp(account.last_refill_at),
            now
        )
        if not plan.due:
            return account.balance, account.last_refill_at, [], False

        entries = []
        if plan.delta > 0:
            entries.append(_Entry(delta=plan.delta, kind=KIND_REFILL, reason="daily_refill"))
            logger.info(f"Daily refill of {plan.delta} diamonds due for user {account.user_id}")

        return plan.new_balance, to_iso(now), entries, True

    async def _load(self, user_id: str, now: datetime) -> Account:
        """Get-or-create the account and flush any pending transactions to the log."""
        account = await self.accounts.get(user_id, now)
        if account.pending_transactions:
            await self._flush(account)
            account = account.model_copy(update={"pending_transactions": []})
        return account

    async def _flush(self, account: Account) -> None:
        for doc in account.pending_transactions:
            await self.log.append(LedgerTransaction(**doc))
        await self.accounts.clear_pending(account.user_id, account.version)

    def _build(self, account: Account, plan: _Plan, now: datetime):
        """Materialize the plan into transactions and the next account state."""
        running = account.balance
        occurred_at = to_iso(now)
        txns = []

        for offset, entry in enumerate(plan.entries, start=1):
            running += entry.delta
            txns.append(LedgerTransaction(
                id=uuid.uuid4().hex,
                user_id=account.user_id,
                seq=account.version + offset,
                delta=entry.delta,
                kind=entry.kind,
                reason=entry.reason,
                idempotency_key=entry.idempotency_key,
                balance_after=running,
                occurred_at=occurred_at,
                details=entry.details
            ))

        if running != plan.balance:
            logger.error(
                f"Plan for user {account.user_id} does not balance: "
                f"entries end at {running}, plan says {plan.balance}"
            )
            raise NotFound(f"Unbalanced plan for user {account.user_id}")

        updated = account.model_copy(update={
            "balance": plan.balance,
            "last_refill_at": plan.last_refill_at,
            "version": account.version + max(1, len(txns)),
            "pending_transactions": [txn.model_dump() for txn in txns],
            "updated_at": occurred_at
        })
        return updated, txns

    async def _apply(self, user_id: str, decide: Callable[[Account, datetime], Awaitable[_Plan]]):
        """
        Run load-decide-commit until the compare-and-swap wins.

        Storage errors propagate to the caller, which owns retry policy.
        """
        for attempt in range(1, self.max_attempts + 1):
            now = self.clock()
            account = await self._load(user_id, now)
            plan = await decide(account, now)

            if not plan.write:
                return plan.result

            updated, txns = self._build(account, plan, now)
            # Revalidates balance >= 0 before anything is written
            Account.model_validate(updated.model_dump())

            saved = await self.accounts.save(updated, expected_version=account.version)
            if saved is None:
                logger.warning(
                    f"Version conflict on diamond account {user_id} "
                    f"(attempt {attempt}/{self.max_attempts}), retrying"
                )
                continue

            await self._flush_committed(saved)
            return plan.on_commit(saved, txns)

        logger.error(f"Gave up on diamond account {user_id} after {self.max_attempts} conflicting attempts")
        raise StorageUnavailable(ERROR_CODES["STORAGE_UNAVAILABLE"])

    async def _flush_committed(self, saved: Account) -> None:
        """
        Copy freshly committed transactions into the log.

        The mutation is already durable on the account; if this copy fails
        the next load of the account completes it.
        """
        if not saved.pending_transactions:
            return
        try:
            await self._flush(saved)
        except StorageUnavailable as e:
            logger.warning(f"Deferred log flush for user {saved.user_id}: {e}")
