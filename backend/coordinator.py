"""Reservation coordinator: the only writer of transaction and item status.

Every operation runs under a per-item ``asyncio.Lock`` and inside one
``Repository.atomic()`` unit of work, so the active-claim check and the write
that depends on it can't interleave with another operation on the same item,
and a failure part-way leaves no partial state. The storage layer adds its
own guards (unique active claim per item, compare-and-swap on status) for
writers outside this process.
"""

import asyncio
import logging
import weakref
from datetime import datetime, timezone
from typing import Optional, Union
from uuid import uuid4

from .errors import (
    ConflictError,
    ForbiddenError,
    InvalidArgumentError,
    InvalidTransitionError,
    NotFoundError,
)
from .guard import can_cancel, can_decide
from .schemas import (
    DECISIONS,
    Cancellation,
    ItemStatus,
    Transaction,
    TransactionStatus,
)
from .stores import Repository

logger = logging.getLogger(__name__)


def parse_decision(decision: Union[str, TransactionStatus]) -> TransactionStatus:
    try:
        status = TransactionStatus(decision)
    except ValueError:
        raise InvalidArgumentError("Invalid status", code="invalid_status")
    if status not in DECISIONS:
        raise InvalidArgumentError("Invalid status", code="invalid_status")
    return status


class ReservationCoordinator:
    def __init__(self, repository: Repository, allow_lender_cancel: bool = False):
        self._repo = repository
        self._allow_lender_cancel = allow_lender_cancel
        # Locks vanish once no coroutine holds or waits on them
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, item_id: str) -> asyncio.Lock:
        lock = self._locks.get(item_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[item_id] = lock
        return lock

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    async def request_borrow(self, item_id: str, borrower_id: str) -> Transaction:
        """Open a pending claim on ``item_id`` for ``borrower_id``."""
        lock = self._lock_for(item_id)
        async with lock:
            async with self._repo.atomic() as uow:
                item = await uow.items.get(item_id)
                if item is None:
                    logger.info("Item not found with id: %s", item_id)
                    raise NotFoundError("Item not found", code="item_not_found")

                if item.owner_id == borrower_id:
                    logger.info("User %s attempted to borrow their own item %s", borrower_id, item_id)
                    raise ConflictError("You cannot borrow your own item", code="self_borrow")

                if await uow.transactions.find_active_for_item(item_id) is not None:
                    raise ConflictError(
                        "This item already has an active request or is borrowed",
                        code="active_claim_exists",
                    )

                transaction = await uow.transactions.create(Transaction(
                    id=str(uuid4()),
                    item_id=item_id,
                    lender_id=item.owner_id,
                    borrower_id=borrower_id,
                    status=TransactionStatus.PENDING,
                    start_date=self._now(),
                ))

        logger.info("Transaction created: %s (item %s, borrower %s)", transaction.id, item_id, borrower_id)
        return transaction

    async def decide_request(
        self,
        transaction_id: str,
        decider_id: str,
        decision: Union[str, TransactionStatus],
    ) -> Transaction:
        """Approve or reject a pending request. Approval marks the item borrowed."""
        found = await self._repo.transactions.get(transaction_id)
        if found is None:
            raise NotFoundError("Transaction not found", code="transaction_not_found")

        lock = self._lock_for(found.item_id)
        async with lock:
            async with self._repo.atomic() as uow:
                # Re-read under the lock; the first read only located the item
                transaction = await uow.transactions.get(transaction_id)
                if transaction is None:
                    raise NotFoundError("Transaction not found", code="transaction_not_found")

                if transaction.status is not TransactionStatus.PENDING:
                    raise InvalidTransitionError(
                        f"Request is already {transaction.status.value}",
                    )

                if not can_decide(decider_id, transaction):
                    raise ForbiddenError(
                        "Only the item owner can approve/reject requests",
                        code="not_lender",
                    )

                status = parse_decision(decision)
                fields = {}
                if status is TransactionStatus.APPROVED:
                    fields["borrow_date"] = self._now()

                updated = await uow.transactions.update_status(
                    transaction_id, status, expected=TransactionStatus.PENDING, **fields
                )
                if updated is None:
                    raise InvalidTransitionError("Request was decided concurrently")

                if status is TransactionStatus.APPROVED:
                    item = await uow.items.update_status(
                        transaction.item_id, ItemStatus.BORROWED, expected=ItemStatus.AVAILABLE
                    )
                    if item is None:
                        if await uow.items.get(transaction.item_id) is None:
                            raise NotFoundError("Item not found", code="item_not_found")
                        raise ConflictError("Item is not available", code="item_unavailable")

        logger.info("Transaction %s %s by %s", transaction_id, status.value, decider_id)
        return updated

    async def cancel_or_return(
        self,
        item_id: str,
        borrower_id: str,
        actor_id: Optional[str] = None,
    ) -> Cancellation:
        """Withdraw a pending request or return a borrowed item.

        The borrower's active transaction is cancelled, the item becomes
        available again, and any other active transaction on the item is
        cancelled in the same unit of work.
        """
        actor_id = actor_id or borrower_id
        lock = self._lock_for(item_id)
        async with lock:
            async with self._repo.atomic() as uow:
                transaction = await uow.transactions.find_active_for_item(item_id, borrower_id=borrower_id)
                if transaction is None:
                    logger.info("No active transaction for item %s and borrower %s", item_id, borrower_id)
                    raise NotFoundError("No active transaction found", code="active_transaction_not_found")

                if not can_cancel(actor_id, transaction, allow_lender=self._allow_lender_cancel):
                    raise ForbiddenError(
                        "Only the borrower can cancel or return this item",
                        code="not_borrower",
                    )

                if await uow.items.get(item_id) is None:
                    raise NotFoundError("Item not found", code="item_not_found")

                cancelled = await uow.transactions.update_status(
                    transaction.id, TransactionStatus.CANCELLED, expected=transaction.status
                )
                if cancelled is None:
                    raise InvalidTransitionError("Transaction changed concurrently")

                item = await uow.items.update_status(item_id, ItemStatus.AVAILABLE)

                swept = await uow.transactions.cancel_active_for_item(item_id)
                if swept:
                    logger.warning("Cancelled %d stray active transaction(s) for item %s: %s",
                                   len(swept), item_id, ", ".join(swept))

        logger.info("Transaction %s cancelled by %s; item %s available", cancelled.id, actor_id, item_id)
        return Cancellation(transaction=cancelled, item=item, swept=swept)
