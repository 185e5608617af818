import asyncio
from datetime import datetime, timezone

import pytest

from backend.coordinator import ReservationCoordinator
from backend.errors import (
    ConflictError,
    ForbiddenError,
    InvalidArgumentError,
    InvalidTransitionError,
    NotFoundError,
)
from backend.memory import MemoryTransactionLedger
from backend.schemas import Cancellation, ItemStatus, Transaction, TransactionStatus
from backend.stores import to_document


async def _item_status(repo, item_id="i1"):
    return (await repo.items.get(item_id)).status


async def _active(repo, item_id="i1"):
    return [t for t in await repo.transactions.find_all() if t.item_id == item_id and t.is_active]


def test_request_creates_pending_claim_and_leaves_item_available(repo, coordinator):
    async def run():
        txn = await coordinator.request_borrow("i1", "u2")
        assert txn.status is TransactionStatus.PENDING
        assert txn.lender_id == "u1"
        assert txn.borrower_id == "u2"
        assert txn.start_date is not None
        assert txn.borrow_date is None
        assert await _item_status(repo) is ItemStatus.AVAILABLE

        with pytest.raises(ConflictError) as err:
            await coordinator.request_borrow("i1", "u2")
        assert err.value.code == "active_claim_exists"
    asyncio.run(run())


def test_request_preconditions_in_order(repo, coordinator):
    async def run():
        with pytest.raises(NotFoundError) as err:
            await coordinator.request_borrow("nope", "u2")
        assert err.value.code == "item_not_found"

        with pytest.raises(ConflictError) as err:
            await coordinator.request_borrow("i1", "u1")
        assert err.value.code == "self_borrow"

        # owner is checked before the active claim
        await coordinator.request_borrow("i1", "u2")
        with pytest.raises(ConflictError) as err:
            await coordinator.request_borrow("i1", "u1")
        assert err.value.code == "self_borrow"
    asyncio.run(run())


def test_approve_marks_item_borrowed(repo, coordinator):
    async def run():
        txn = await coordinator.request_borrow("i1", "u2")

        with pytest.raises(ForbiddenError):
            await coordinator.decide_request(txn.id, "u2", "approved")
        assert await _item_status(repo) is ItemStatus.AVAILABLE

        approved = await coordinator.decide_request(txn.id, "u1", "approved")
        assert approved.status is TransactionStatus.APPROVED
        assert approved.borrow_date is not None
        assert await _item_status(repo) is ItemStatus.BORROWED

        with pytest.raises(InvalidTransitionError):
            await coordinator.decide_request(txn.id, "u1", "rejected")
    asyncio.run(run())


def test_reject_leaves_item_available_and_frees_the_claim(repo, coordinator):
    async def run():
        txn = await coordinator.request_borrow("i1", "u2")
        rejected = await coordinator.decide_request(txn.id, "u1", TransactionStatus.REJECTED)
        assert rejected.status is TransactionStatus.REJECTED
        assert rejected.borrow_date is None
        assert await _item_status(repo) is ItemStatus.AVAILABLE

        again = await coordinator.request_borrow("i1", "u3")
        assert again.status is TransactionStatus.PENDING
    asyncio.run(run())


def test_decide_validation(repo, coordinator):
    async def run():
        with pytest.raises(NotFoundError):
            await coordinator.decide_request("missing", "u1", "approved")

        txn = await coordinator.request_borrow("i1", "u2")
        for bad in ("cancelled", "pending", "maybe"):
            with pytest.raises(InvalidArgumentError):
                await coordinator.decide_request(txn.id, "u1", bad)
        assert (await repo.transactions.get(txn.id)).status is TransactionStatus.PENDING
    asyncio.run(run())


def test_approve_rolls_back_when_item_is_not_available(repo, coordinator):
    async def run():
        txn = await coordinator.request_borrow("i1", "u2")
        await repo.items.update_status("i1", ItemStatus.BORROWED)

        with pytest.raises(ConflictError) as err:
            await coordinator.decide_request(txn.id, "u1", "approved")
        assert err.value.code == "item_unavailable"
        assert (await repo.transactions.get(txn.id)).status is TransactionStatus.PENDING
    asyncio.run(run())


def test_return_after_approval(repo, coordinator):
    async def run():
        txn = await coordinator.request_borrow("i1", "u2")
        await coordinator.decide_request(txn.id, "u1", "approved")

        result = await coordinator.cancel_or_return("i1", "u2")
        assert result.transaction.id == txn.id
        assert result.transaction.status is TransactionStatus.CANCELLED
        assert result.item.status is ItemStatus.AVAILABLE
        assert result.swept == []
        assert await _item_status(repo) is ItemStatus.AVAILABLE
    asyncio.run(run())


def test_withdraw_pending_request(repo, coordinator):
    async def run():
        await coordinator.request_borrow("i1", "u2")
        result = await coordinator.cancel_or_return("i1", "u2")
        assert result.transaction.status is TransactionStatus.CANCELLED
        assert await _active(repo) == []
    asyncio.run(run())


def test_cancel_twice_fails_and_item_stays_available(repo, coordinator):
    async def run():
        txn = await coordinator.request_borrow("i1", "u2")
        await coordinator.decide_request(txn.id, "u1", "approved")
        await coordinator.cancel_or_return("i1", "u2")

        with pytest.raises(NotFoundError) as err:
            await coordinator.cancel_or_return("i1", "u2")
        assert err.value.code == "active_transaction_not_found"
        assert await _item_status(repo) is ItemStatus.AVAILABLE
    asyncio.run(run())


def test_cancelled_transaction_cannot_be_decided(repo, coordinator):
    async def run():
        txn = await coordinator.request_borrow("i1", "u2")
        await coordinator.cancel_or_return("i1", "u2")
        with pytest.raises(InvalidTransitionError):
            await coordinator.decide_request(txn.id, "u1", "approved")
        assert await _item_status(repo) is ItemStatus.AVAILABLE
    asyncio.run(run())


def test_cancel_sweeps_stray_active_claims(repo, coordinator):
    async def run():
        txn = await coordinator.request_borrow("i1", "u2")
        await coordinator.decide_request(txn.id, "u1", "approved")
        # A duplicate claim that slipped past the guards (e.g. legacy data)
        stray = Transaction(
            id="stray", item_id="i1", lender_id="u1", borrower_id="u3",
            start_date=datetime.now(timezone.utc),
        )
        doc = to_document(stray)
        doc["created_at"] = doc["updated_at"] = datetime.now(timezone.utc)
        repo._transactions["stray"] = doc

        result = await coordinator.cancel_or_return("i1", "u2")
        assert result.swept == ["stray"]
        assert (await repo.transactions.get("stray")).status is TransactionStatus.CANCELLED
        assert await _active(repo) == []
    asyncio.run(run())


def test_cancel_by_lender_follows_policy(repo):
    async def run():
        strict = ReservationCoordinator(repo)
        await strict.request_borrow("i1", "u2")
        with pytest.raises(ForbiddenError):
            await strict.cancel_or_return("i1", "u2", actor_id="u1")
        with pytest.raises(ForbiddenError):
            await strict.cancel_or_return("i1", "u2", actor_id="u3")

        lenient = ReservationCoordinator(repo, allow_lender_cancel=True)
        result = await lenient.cancel_or_return("i1", "u2", actor_id="u1")
        assert result.transaction.status is TransactionStatus.CANCELLED
    asyncio.run(run())
def test_cancel_unknown_item(repo, coordinator):
    async def run():
        with pytest.raises(NotFoundError) as err:
            await coordinator.cancel_or_return("nope", "u2")
        assert err.value.code == "active_transaction_not_found"
    asyncio.run(run())


def test_cancel_claim_on_missing_item_writes_nothing(repo, coordinator):
    async def run():
        # Claim whose item record has disappeared
        await repo.transactions.create(Transaction(
            id="orphan", item_id="gone", lender_id="u1", borrower_id="u2",
            start_date=datetime.now(timezone.utc),
        ))
        with pytest.raises(NotFoundError) as err:
            await coordinator.cancel_or_return("gone", "u2")
        assert err.value.code == "item_not_found"
        assert (await repo.transactions.get("orphan")).status is TransactionStatus.PENDING
    asyncio.run(run())


DELAY = 0.02


@pytest.fixture
def slow_ledger(monkeypatch):
    """Make the ledger's reads and status writes yield to the event loop."""
    get, find, update = (
        MemoryTransactionLedger.get,
        MemoryTransactionLedger.find_active_for_item,
        MemoryTransactionLedger.update_status,
    )

    async def slow_get(self, transaction_id):
        found = await get(self, transaction_id)
        await asyncio.sleep(DELAY)
        return found

    async def slow_find(self, item_id, borrower_id=None):
        found = await find(self, item_id, borrower_id)
        await asyncio.sleep(DELAY)
        return found

    async def slow_update(self, transaction_id, status, expected, **fields):
        await asyncio.sleep(DELAY)
        return await update(self, transaction_id, status, expected, **fields)

    monkeypatch.setattr(MemoryTransactionLedger, "get", slow_get)
    monkeypatch.setattr(MemoryTransactionLedger, "find_active_for_item", slow_find)
    monkeypatch.setattr(MemoryTransactionLedger, "update_status", slow_update)


@pytest.fixture
def contention(coordinator, monkeypatch):
    """Records, per lock request, whether another operation already held it."""
    seen = []
    lock_for = coordinator._lock_for

    def recording(item_id):
        lock = lock_for(item_id)
        seen.append(lock.locked())
        return lock

    monkeypatch.setattr(coordinator, "_lock_for", recording)
    return seen


async def _assert_availability_matches(repo, transaction_id):
    final = await repo.transactions.get(transaction_id)
    borrowed = await _item_status(repo) is ItemStatus.BORROWED
    assert borrowed == (final.status is TransactionStatus.APPROVED)
    return final


def test_concurrent_requests_produce_one_claim(repo, coordinator, slow_ledger, contention):
    async def run():
        results = await asyncio.gather(
            coordinator.request_borrow("i1", "u2"),
            coordinator.request_borrow("i1", "u3"),
            return_exceptions=True,
        )
        created = [r for r in results if isinstance(r, Transaction)]
        conflicts = [r for r in results if isinstance(r, ConflictError)]
        assert len(created) == 1
        assert len(conflicts) == 1
        assert conflicts[0].code == "active_claim_exists"
        assert len(await _active(repo)) == 1
        assert True in contention
    asyncio.run(run())


def test_many_concurrent_requests_still_one_claim(repo, slow_ledger):
    async def run():
        coordinator = ReservationCoordinator(repo)
        results = await asyncio.gather(
            *(coordinator.request_borrow("i1", borrower) for borrower in ("u2", "u3") * 5),
            return_exceptions=True,
        )
        assert sum(isinstance(r, Transaction) for r in results) == 1
        assert len(await _active(repo)) == 1
    asyncio.run(run())


def test_concurrent_decisions_have_one_winner(repo, coordinator, slow_ledger, contention):
    async def run():
        txn = await coordinator.request_borrow("i1", "u2")
        contention.clear()
        results = await asyncio.gather(
            coordinator.decide_request(txn.id, "u1", "approved"),
            coordinator.decide_request(txn.id, "u1", "rejected"),
            return_exceptions=True,
        )
        winners = [r for r in results if isinstance(r, Transaction)]
        losers = [r for r in results if isinstance(r, InvalidTransitionError)]
        assert len(winners) == 1 and len(losers) == 1
        # The loser waited for the lock and saw the decided state, it did not lose a write race
        assert contention == [False, True]
        assert losers[0].message == f"Request is already {winners[0].status.value}"
        await _assert_availability_matches(repo, txn.id)
    asyncio.run(run())


def test_cancel_racing_decision_cancel_first(repo, coordinator, slow_ledger, contention):
    async def run():
        txn = await coordinator.request_borrow("i1", "u2")
        contention.clear()
        decided, cancelled = await asyncio.gather(
            coordinator.decide_request(txn.id, "u1", "approved"),
            coordinator.cancel_or_return("i1", "u2"),
            return_exceptions=True,
        )
        # cancel takes the lock while decide is still locating the transaction
        assert isinstance(cancelled, Cancellation)
        assert isinstance(decided, InvalidTransitionError)
        assert decided.message == "Request is already cancelled"
        assert True in contention
        final = await _assert_availability_matches(repo, txn.id)
        assert final.status is TransactionStatus.CANCELLED
        assert await _item_status(repo) is ItemStatus.AVAILABLE
    asyncio.run(run())


def test_cancel_racing_decision_decide_first(repo, coordinator, slow_ledger, contention):
    async def run():
        txn = await coordinator.request_borrow("i1", "u2")
        contention.clear()

        async def cancel_while_deciding():
            await asyncio.sleep(DELAY * 1.5)
            return await coordinator.cancel_or_return("i1", "u2")

        decided, cancelled = await asyncio.gather(
            coordinator.decide_request(txn.id, "u1", "approved"),
            cancel_while_deciding(),
        )
        assert decided.status is TransactionStatus.APPROVED
        # the return waited for the approval to commit, then undid it cleanly
        assert contention == [False, True]
        assert cancelled.transaction.status is TransactionStatus.CANCELLED
        final = await _assert_availability_matches(repo, txn.id)
        assert final.status is TransactionStatus.CANCELLED
        assert await _item_status(repo) is ItemStatus.AVAILABLE
    asyncio.run(run())


def test_requests_on_different_items_are_independent(repo, coordinator):
    async def run():
        a, b = await asyncio.gather(
            coordinator.request_borrow("i1", "u2"),
            coordinator.request_borrow("i2", "u1"),
        )
        assert a.item_id == "i1" and b.item_id == "i2"
    asyncio.run(run())
