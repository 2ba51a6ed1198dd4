"""
Unit Tests for the Diamond Ledger Engine
========================================

Tests:
1. Lazy account creation with the initial balance
2. Consume: cost gating, idempotent retries, refill before charge
3. Grant / purchase: no refill ceiling, saturation, invalid amounts
4. Refill: once per calendar day, top-up only
5. Concurrency: no double spend, conflicting writers retry
6. Storage failures: translated, no partial mutation, deferred log flush
7. Audit: initial_balance + sum(delta) == balance after any sequence
"""

import asyncio
import random
from unittest.mock import AsyncMock, patch

import pytest
from pymongo.errors import ServerSelectionTimeoutError

from diamond_wallet.config import (
    ACCOUNTS_COLLECTION,
    ACTION_COSTS,
    INITIAL_BALANCE,
    MAX_BALANCE,
    PURCHASED_BALANCE_CAP,
)
from diamond_wallet.errors import InvalidAmount, NotFound, StorageUnavailable, UnknownAction, UnknownPack
from diamond_wallet.ledger_engine import LedgerEngine, _Entry, _Plan
from diamond_wallet.refill_scheduler import RefillScheduler, to_iso


async def drain_to(engine, user_id, target):
    """Spend camera actions until the balance equals target (15 -> 3 with cost 3)."""
    balance = (await engine.get_balance(user_id)).balance
    n = 0
    while balance > target:
        result = await engine.consume(user_id, "camera", f"drain-{user_id}-{n}")
        balance = result.balance
        n += 1
    assert balance == target


class TestAccountCreation:
    @pytest.mark.asyncio
    async def test_first_reference_creates_account(self, engine, clock):
        snapshot = await engine.get_balance("alice")

        assert snapshot.balance == INITIAL_BALANCE
        assert snapshot.max_balance == MAX_BALANCE
        assert snapshot.last_refill_at == to_iso(clock.now)

    @pytest.mark.asyncio
    async def test_new_account_has_no_transactions(self, engine):
        await engine.get_balance("alice")
        assert await engine.history("alice") == []

    @pytest.mark.asyncio
    async def test_next_refill_is_tokyo_midnight(self, engine):
        snapshot = await engine.get_balance("alice")
        # 2026-03-11 00:00 JST
        assert snapshot.next_refill_at == "2026-03-10T15:00:00.000000+00:00"


class TestConsume:
    @pytest.mark.asyncio
    async def test_charges_action_cost(self, engine):
        result = await engine.consume("alice", "camera", "k1")

        assert result.ok is True
        assert result.replayed is False
        assert result.balance == INITIAL_BALANCE - ACTION_COSTS["camera"]

        history = await engine.history("alice")
        assert len(history) == 1
        assert history[0].delta == -3
        assert history[0].kind == "consumption"
        assert history[0].reason == "camera"
        assert history[0].balance_after == 12
        assert history[0].id == result.transaction_id

    @pytest.mark.asyncio
    async def test_unknown_action_touches_no_storage(self, engine):
        with patch.object(engine.accounts, "get", new=AsyncMock()) as get:
            with pytest.raises(UnknownAction):
                await engine.consume("alice", "teleport", "k1")
            get.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_insufficient_balance_is_rejected_without_change(self, engine):
        await drain_to(engine, "alice", 3)

        result = await engine.consume("alice", "viewResult", "k-view")

        assert result.ok is False
        assert result.balance == 3
        assert result.error_code == "INSUFFICIENT_BALANCE"
        assert (await engine.get_balance("alice")).balance == 3
        assert all(t.reason != "viewResult" for t in await engine.history("alice"))

    @pytest.mark.asyncio
    async def test_exact_balance_reaches_zero(self, engine):
        await drain_to(engine, "alice", 3)

        result = await engine.consume("alice", "camera", "last")

        assert result.ok is True
        assert result.balance == 0

    @pytest.mark.asyncio
    async def test_same_key_charges_once(self, engine):
        first = await engine.consume("alice", "camera", "retry-me")
        second = await engine.consume("alice", "camera", "retry-me")

        assert first.ok and second.ok
        assert second.replayed is True
        assert second.balance == first.balance == 12
        assert second.transaction_id == first.transaction_id
        assert len(await engine.history("alice")) == 1

    @pytest.mark.asyncio
    async def test_replay_returns_recorded_balance_not_current(self, engine):
        await engine.consume("alice", "camera", "k1")
        await engine.consume("alice", "camera", "k2")

        replay = await engine.consume("alice", "camera", "k1")
        assert replay.balance == 12

    @pytest.mark.asyncio
    async def test_purchase_key_does_not_replay_as_consume(self, engine):
        await engine.purchase_pack("alice", "standard", "store-tx-1")

        result = await engine.consume("alice", "camera", "purchase:store-tx-1")

        assert result.ok is True
        assert result.replayed is False
        assert result.balance == INITIAL_BALANCE + 50 - 3
        assert (await engine.get_balance("alice")).balance == 62

    @pytest.mark.asyncio
    async def test_consume_key_does_not_swallow_grant(self, engine):
        await engine.consume("alice", "camera", "k1")

        balance = await engine.grant("alice", 50, idempotency_key="k1")

        assert balance == 62
        assert len(await engine.history("alice")) == 2

    @pytest.mark.asyncio
    async def test_keys_are_scoped_per_user(self, engine):
        await engine.consume("alice", "camera", "shared")
        bob = await engine.consume("bob", "camera", "shared")

        assert bob.replayed is False
        assert bob.balance == 12

    @pytest.mark.asyncio
    async def test_due_refill_applies_before_charge(self, engine, clock):
        await drain_to(engine, "alice", 0)
        clock.advance(days=1)

        result = await engine.consume("alice", "camera", "after-midnight")

        assert result.ok is True
        assert result.balance == MAX_BALANCE - 3
        kinds = [t.kind for t in await engine.history("alice", limit=2)]
        assert kinds == ["consumption", "refill"]

    @pytest.mark.asyncio
    async def test_rejected_consume_still_commits_refill(self, engine, clock):
        engine.action_costs = {**ACTION_COSTS, "bulk": 12}
        await drain_to(engine, "alice", 0)
        clock.advance(days=1)

        result = await engine.consume("alice", "bulk", "too-expensive")

        assert result.ok is False
        assert result.balance == MAX_BALANCE
        refill = await engine.refill("alice")
        assert refill.applied is False


class TestGrant:
    @pytest.mark.asyncio
    async def test_grant_exceeds_refill_ceiling(self, engine):
        balance = await engine.grant("alice", 50)

        assert balance == INITIAL_BALANCE + 50
        txn = (await engine.history("alice"))[0]
        assert txn.kind == "purchase"
        assert txn.delta == 50
        assert txn.details == {"requested": 50}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -1, True, 1.5, "10"])
    async def test_invalid_amounts(self, engine, amount):
        with pytest.raises(InvalidAmount):
            await engine.grant("alice", amount)
        assert await engine.accounts.find("alice") is None

    @pytest.mark.asyncio
    async def test_manual_grant_kind(self, engine):
        await engine.grant("alice", 5, kind="grant", reason="support_ticket")
        txn = (await engine.history("alice"))[0]
        assert txn.kind == "grant"
        assert txn.reason == "support_ticket"

    @pytest.mark.asyncio
    async def test_refill_kind_cannot_be_granted(self, engine):
        with pytest.raises(ValueError):
            await engine.grant("alice", 5, kind="refill")

    @pytest.mark.asyncio
    async def test_saturates_at_cap(self, engine):
        balance = await engine.grant("alice", 2000)

        assert balance == PURCHASED_BALANCE_CAP
        txn = (await engine.history("alice"))[0]
        assert txn.delta == PURCHASED_BALANCE_CAP - INITIAL_BALANCE
        assert txn.details["requested"] == 2000

    @pytest.mark.asyncio
    async def test_grant_at_cap_adds_nothing(self, engine):
        await engine.grant("alice", 2000)
        balance = await engine.grant("alice", 10)

        assert balance == PURCHASED_BALANCE_CAP
        assert len(await engine.history("alice")) == 1

    @pytest.mark.asyncio
    async def test_grant_idempotency_key(self, engine):
        first = await engine.grant("alice", 50, idempotency_key="order-1")
        second = await engine.grant("alice", 50, idempotency_key="order-1")

        assert first == second == 65
        assert len(await engine.history("alice")) == 1


class TestPurchasePack:
    @pytest.mark.asyncio
    async def test_credits_pack(self, engine):
        balance = await engine.purchase_pack("alice", "value", "store-txn-1")

        assert balance == INITIAL_BALANCE + 150
        txn = (await engine.history("alice"))[0]
        assert txn.reason == "pack:value"
        assert txn.idempotency_key == "purchase:store-txn-1"
        assert txn.details["price_jpy"] == 300

    @pytest.mark.asyncio
    async def test_redelivery_is_noop(self, engine):
        await engine.purchase_pack("alice", "standard", "store-txn-1")
        balance = await engine.purchase_pack("alice", "standard", "store-txn-1")

        assert balance == INITIAL_BALANCE + 50
        assert len(await engine.history("alice")) == 1

    @pytest.mark.asyncio
    async def test_unknown_pack(self, engine):
        with pytest.raises(UnknownPack):
            await engine.purchase_pack("alice", "mega", "store-txn-1")


class TestRefill:
    @pytest.mark.asyncio
    async def test_same_day_is_noop(self, engine):
        await engine.consume("alice", "camera", "k1")
        result = await engine.refill("alice")

        assert result.applied is False
        assert result.balance == 12

    @pytest.mark.asyncio
    async def test_next_day_tops_up_to_max(self, engine, clock):
        await drain_to(engine, "alice", 3)
        clock.advance(days=1)

        result = await engine.refill("alice")

        assert result.applied is True
        assert result.balance == MAX_BALANCE
        assert result.last_refill_at == to_iso(clock.now)
        txn = (await engine.history("alice"))[0]
        assert txn.kind == "refill"
        assert txn.delta == 7

    @pytest.mark.asyncio
    async def test_only_once_per_day(self, engine, clock):
        await drain_to(engine, "alice", 0)
        clock.advance(days=1)

        assert (await engine.refill("alice")).applied is True
        await engine.consume("alice", "camera", "spend")
        clock.advance(hours=3)

        second = await engine.refill("alice")
        assert second.applied is False
        assert second.balance == MAX_BALANCE - 3

    @pytest.mark.asyncio
    async def test_above_ceiling_advances_marker_only(self, engine, clock):
        await engine.grant("alice", 50)
        clock.advance(days=1)

        result = await engine.refill("alice")

        assert result.applied is False
        assert result.balance == 65
        assert result.last_refill_at == to_iso(clock.now)
        assert len(await engine.history("alice")) == 1

    @pytest.mark.asyncio
    async def test_get_balance_applies_due_refill(self, engine, clock):
        await drain_to(engine, "alice", 0)
        clock.advance(days=1)

        snapshot = await engine.get_balance("alice")
        assert snapshot.balance == MAX_BALANCE

    @pytest.mark.asyncio
    async def test_boundary_is_tokyo_midnight(self, engine, clock):
        await drain_to(engine, "alice", 0)
        # 10:00 -> 23:59 JST
        clock.advance(hours=13, minutes=59)
        assert (await engine.refill("alice")).applied is False

        clock.advance(minutes=2)
        assert (await engine.refill("alice")).applied is True

    @pytest.mark.asyncio
    async def test_refill_all(self, engine, clock):
        await drain_to(engine, "alice", 0)
        await drain_to(engine, "bob", 3)
        await engine.grant("carol", 50)
        clock.advance(days=1)

        refilled = await engine.refill_all()

        assert refilled == 2
        assert (await engine.get_balance("alice")).balance == MAX_BALANCE
        assert (await engine.get_balance("bob")).balance == MAX_BALANCE
        assert (await engine.get_balance("carol")).balance == 65

        # Everyone's marker moved, so a second sweep finds nothing
        assert await engine.refill_all() == 0


class TestWalkthrough:
    @pytest.mark.asyncio
    async def test_consume_grant_refill_sequence(self, engine, clock):
        assert (await engine.get_balance("alice")).balance == 15

        assert (await engine.consume("alice", "camera", "shot-1")).balance == 12
        assert await engine.grant("alice", 50) == 62

        same_day = await engine.refill("alice")
        assert same_day.applied is False
        assert same_day.balance == 62

        clock.advance(days=1)
        next_day = await engine.refill("alice")
        assert next_day.applied is False
        assert next_day.balance == 62
        assert next_day.last_refill_at == to_iso(clock.now)

        report = await engine.audit("alice")
        assert report.consistent is True
        assert report.delta_sum == 47
        assert report.transaction_count == 2


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_parallel_consumes_never_overspend(self, engine):
        await drain_to(engine, "alice", 3)

        results = await asyncio.gather(
            engine.consume("alice", "camera", "tap-a"),
            engine.consume("alice", "camera", "tap-b"),
        )

        assert sorted(r.ok for r in results) == [False, True]
        assert (await engine.get_balance("alice")).balance == 0
        assert (await engine.audit("alice")).consistent is True

    @pytest.mark.asyncio
    async def test_conflicting_writer_forces_retry(self, engine, db, clock):
        rival = LedgerEngine(db, scheduler=RefillScheduler("Asia/Tokyo"), clock=clock)
        await drain_to(engine, "alice", 3)

        original_save = engine.accounts.save
        calls = []

        async def racing_save(account, expected_version):
            calls.append(expected_version)
            if len(calls) == 1:
                # Another request commits between our read and our write
                await rival.consume("alice", "camera", "rival-tap")
            return await original_save(account, expected_version)

        engine.accounts.save = racing_save

        result = await engine.consume("alice", "camera", "my-tap")

        assert result.ok is False
        assert result.balance == 0
        assert len(calls) == 1
        assert (await rival.audit("alice")).consistent is True

    @pytest.mark.asyncio
    async def test_same_key_race_charges_once(self, engine, db, clock):
        rival = LedgerEngine(db, scheduler=RefillScheduler("Asia/Tokyo"), clock=clock)
        await engine.get_balance("alice")

        original_save = engine.accounts.save
        raced = []

        async def racing_save(account, expected_version):
            if not raced:
                raced.append(True)
                await rival.consume("alice", "camera", "double-tap")
            return await original_save(account, expected_version)

        engine.accounts.save = racing_save

        result = await engine.consume("alice", "camera", "double-tap")

        assert result.ok is True
        assert result.replayed is True
        assert result.balance == 12
        assert len(await engine.history("alice")) == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, engine):
        await engine.get_balance("alice")

        with patch.object(engine.accounts, "save", new=AsyncMock(return_value=None)) as save:
            with pytest.raises(StorageUnavailable):
                await engine.consume("alice", "camera", "k1")
            assert save.await_count == engine.max_attempts

        assert (await engine.get_balance("alice")).balance == INITIAL_BALANCE

    @pytest.mark.asyncio
    async def test_first_access_race_creates_one_account(self, engine, db):
        await asyncio.gather(*(engine.get_balance("alice") for _ in range(5)))
        assert await db[ACCOUNTS_COLLECTION].count_documents({"user_id": "alice"}) == 1


class TestStorageFailures:
    @pytest.mark.asyncio
    async def test_driver_errors_become_storage_unavailable(self, engine):
        failing = AsyncMock()
        failing.find_one_and_update.side_effect = ServerSelectionTimeoutError("no servers")
        engine.accounts.collection = failing

        with pytest.raises(StorageUnavailable):
            await engine.get_balance("alice")

    @pytest.mark.asyncio
    async def test_failure_before_commit_changes_nothing(self, engine):
        await engine.get_balance("alice")

        real_collection = engine.log.collection
        failing = AsyncMock()
        failing.find_one.side_effect = ServerSelectionTimeoutError("no servers")
        engine.log.collection = failing

        with pytest.raises(StorageUnavailable):
            await engine.consume("alice", "camera", "k1")

        engine.log.collection = real_collection
        assert (await engine.get_balance("alice")).balance == INITIAL_BALANCE
        assert await engine.history("alice") == []

    @pytest.mark.asyncio
    async def test_log_outage_after_commit_is_caught_up(self, engine, db):
        with patch.object(engine.log, "append", new=AsyncMock(side_effect=StorageUnavailable("log down"))):
            balance = await engine.grant("alice", 50)

        assert balance == 65
        raw = await db[ACCOUNTS_COLLECTION].find_one({"user_id": "alice"})
        assert len(raw["pending_transactions"]) == 1

        history = await engine.history("alice")

        assert [t.delta for t in history] == [50]
        raw = await db[ACCOUNTS_COLLECTION].find_one({"user_id": "alice"})
        assert raw["pending_transactions"] == []
        assert (await engine.audit("alice")).consistent is True

    @pytest.mark.asyncio
    async def test_pending_flush_precedes_idempotency_check(self, engine):
        with patch.object(engine.log, "append", new=AsyncMock(side_effect=StorageUnavailable("log down"))):
            await engine.consume("alice", "camera", "k1")

        replay = await engine.consume("alice", "camera", "k1")

        assert replay.replayed is True
        assert replay.balance == 12


class TestAudit:
    @pytest.mark.asyncio
    async def test_random_sequences_stay_consistent(self, engine, clock):
        rng = random.Random(7)
        actions = list(ACTION_COSTS)

        for step in range(150):
            op = rng.random()
            if op < 0.55:
                result = await engine.consume("alice", rng.choice(actions), f"op-{step}")
                assert result.balance >= 0
            elif op < 0.7:
                await engine.grant("alice", rng.randint(1, 120))
            elif op < 0.85:
                await engine.refill("alice")
            else:
                clock.advance(hours=rng.randint(1, 30))

            report = await engine.audit("alice")
            assert report.consistent is True, f"step {step}: {report}"
            assert report.balance >= 0

    @pytest.mark.asyncio
    async def test_history_limit_and_order(self, engine):
        for n in range(4):
            await engine.consume("alice", "historyView", f"k{n}")

        history = await engine.history("alice", limit=2)

        assert len(history) == 2
        assert history[0].seq > history[1].seq
        assert history[0].balance_after == INITIAL_BALANCE - 4


class TestDeleteAccount:
    @pytest.mark.asyncio
    async def test_removes_account_and_history(self, engine):
        await engine.consume("alice", "camera", "k1")

        assert await engine.delete_account("alice") is True
        assert await engine.accounts.find("alice") is None
        assert await engine.log.all_for_user("alice") == []

    @pytest.mark.asyncio
    async def test_missing_account(self, engine):
        assert await engine.delete_account("ghost") is False

    @pytest.mark.asyncio
    async def test_write_between_purge_and_delete_is_not_orphaned(self, engine, db, clock):
        rival = LedgerEngine(db, scheduler=RefillScheduler("Asia/Tokyo"), clock=clock)
        await engine.consume("alice", "camera", "k1")

        original_purge = engine.log.purge
        purges = []

        async def racing_purge(user_id):
            deleted = await original_purge(user_id)
            purges.append(deleted)
            if len(purges) == 1:
                await rival.consume("alice", "camera", "late-tap")
            return deleted

        engine.log.purge = racing_purge

        assert await engine.delete_account("alice") is True
        assert len(purges) == 2
        assert await engine.log.all_for_user("alice") == []

        report = await engine.audit("alice")
        assert report.balance == INITIAL_BALANCE
        assert report.consistent is True

    @pytest.mark.asyncio
    async def test_account_recreated_after_delete_keeps_its_log(self, engine, db, clock):
        rival = LedgerEngine(db, scheduler=RefillScheduler("Asia/Tokyo"), clock=clock)
        await engine.grant("alice", 50)

        original_delete = engine.accounts.delete

        async def delete_then_race(user_id, expected_version=None):
            deleted = await original_delete(user_id, expected_version=expected_version)
            await rival.consume("alice", "camera", "fresh-tap")
            return deleted

        engine.accounts.delete = delete_then_race

        assert await engine.delete_account("alice") is True

        report = await rival.audit("alice")
        assert report.balance == INITIAL_BALANCE - 3
        assert report.transaction_count == 1
        assert report.consistent is True

    @pytest.mark.asyncio
    async def test_next_reference_starts_fresh(self, engine):
        await engine.grant("alice", 50)
        await engine.delete_account("alice")

        assert (await engine.get_balance("alice")).balance == INITIAL_BALANCE


class TestPlanIntegrity:
    @pytest.mark.asyncio
    async def test_unbalanced_plan_raises_ledger_error(self, engine, clock):
        account = await engine.accounts.get("alice", clock.now)
        plan = _Plan(
            write=True,
            balance=99,
            last_refill_at=account.last_refill_at,
            entries=[_Entry(delta=-3, kind="consumption", reason="camera")]
        )

        with pytest.raises(NotFound):
            engine._build(account, plan, clock.now)
