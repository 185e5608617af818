"""In-process repository with the same guarantees as the MongoDB one.

Writes made inside ``atomic()`` are journalled (the prior document per key)
and restored in reverse order if the block raises, so a failed coordinator
operation leaves nothing behind.
"""

from __future__ import annotations

import copy
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .errors import ConflictError
from .schemas import Item, ItemStatus, Transaction, TransactionStatus, User
from .stores import check_transition, to_document

_MISSING = object()


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Journal:
    entries: List[Tuple[Dict[str, dict], str, Any]] = field(default_factory=list)

    def record(self, table: Dict[str, dict], key: str) -> None:
        before = table.get(key, _MISSING)
        self.entries.append((table, key, copy.deepcopy(before) if before is not _MISSING else _MISSING))

    def rollback(self) -> None:
        for table, key, before in reversed(self.entries):
            if before is _MISSING:
                table.pop(key, None)
            else:
                table[key] = before
        self.entries.clear()


class _Table:
    def __init__(self, rows: Dict[str, dict], journal: Optional[Journal] = None):
        self._rows = rows
        self._journal = journal

    def _write(self, key: str, doc: dict) -> None:
        if self._journal is not None:
            self._journal.record(self._rows, key)
        self._rows[key] = doc

    def _sorted(self, docs: Iterable[dict]) -> List[dict]:
        return sorted(docs, key=lambda d: d["created_at"], reverse=True)


class MemoryItemStore(_Table):
    async def get(self, item_id: str) -> Optional[Item]:
        doc = self._rows.get(item_id)
        return Item.model_validate(doc) if doc else None

    async def find_all(self, ids=None, owner_id=None, status=None) -> List[Item]:
        wanted = set(ids) if ids is not None else None
        docs = [
            d for d in self._rows.values()
            if (wanted is None or d["id"] in wanted)
            and (owner_id is None or d["owner_id"] == owner_id)
            and (status is None or d["status"] == ItemStatus(status).value)
        ]
        return [Item.model_validate(d) for d in self._sorted(docs)]

    async def create(self, item: Item) -> Item:
        if item.id in self._rows:
            raise ConflictError("Item already exists", code="duplicate_item")
        now = _now()
        doc = to_document(item)
        doc["created_at"] = now
        doc["updated_at"] = now
        self._write(item.id, doc)
        return Item.model_validate(doc)

    async def update_details(self, item_id: str, **fields) -> Optional[Item]:
        doc = self._rows.get(item_id)
        if doc is None:
            return None
        doc = {**doc, **fields, "updated_at": _now()}
        self._write(item_id, doc)
        return Item.model_validate(doc)

    async def update_status(self, item_id, status, expected=None) -> Optional[Item]:
        doc = self._rows.get(item_id)
        if doc is None:
            return None
        if expected is not None and doc["status"] != ItemStatus(expected).value:
            return None
        doc = {**doc, "status": ItemStatus(status).value, "updated_at": _now()}
        self._write(item_id, doc)
        return Item.model_validate(doc)


class MemoryTransactionLedger(_Table):
    async def get(self, transaction_id: str) -> Optional[Transaction]:
        doc = self._rows.get(transaction_id)
        return Transaction.model_validate(doc) if doc else None

    def _active_docs(self, item_id: str) -> List[dict]:
        return [d for d in self._rows.values() if d["item_id"] == item_id and d["active"]]

    async def find_active_for_item(self, item_id, borrower_id=None) -> Optional[Transaction]:
        for doc in self._sorted(self._active_docs(item_id)):
            if borrower_id is None or doc["borrower_id"] == borrower_id:
                return Transaction.model_validate(doc)
        return None

    async def find_all(self, user_id=None, statuses=None) -> List[Transaction]:
        wanted = {TransactionStatus(s).value for s in statuses} if statuses is not None else None
        docs = [
            d for d in self._rows.values()
            if (user_id is None or user_id in (d["borrower_id"], d["lender_id"]))
            and (wanted is None or d["status"] in wanted)
        ]
        return [Transaction.model_validate(d) for d in self._sorted(docs)]

    async def create(self, transaction: Transaction) -> Transaction:
        # Mirrors the unique partial index on (item_id, active) in MongoDB
        if transaction.is_active and self._active_docs(transaction.item_id):
            raise ConflictError(
                "This item already has an active request or is borrowed",
                code="active_claim_exists",
            )
        now = _now()
        doc = to_document(transaction)
        doc["created_at"] = now
        doc["updated_at"] = now
        self._write(transaction.id, doc)
        return Transaction.model_validate(doc)

    async def update_status(self, transaction_id, status, expected, **fields) -> Optional[Transaction]:
        status, expected = TransactionStatus(status), TransactionStatus(expected)
        check_transition(expected, status)
        doc = self._rows.get(transaction_id)
        if doc is None or doc["status"] != expected.value:
            return None
        doc = {
            **doc,
            **fields,
            "status": status.value,
            "active": status.is_active,
            "updated_at": _now(),
        }
        self._write(transaction_id, doc)
        return Transaction.model_validate(doc)

    async def cancel_active_for_item(self, item_id: str) -> List[str]:
        cancelled = []
        for doc in self._active_docs(item_id):
            check_transition(TransactionStatus(doc["status"]), TransactionStatus.CANCELLED)
            self._write(doc["id"], {
                **doc,
                "status": TransactionStatus.CANCELLED.value,
                "active": False,
                "updated_at": _now(),
            })
            cancelled.append(doc["id"])
        return cancelled


class MemoryUserDirectory(_Table):
    async def get(self, user_id: str) -> Optional[User]:
        doc = self._rows.get(user_id)
        return User.model_validate(doc) if doc else None

    async def get_many(self, user_ids) -> List[User]:
        return [User.model_validate(self._rows[u]) for u in set(user_ids) if u in self._rows]

    async def find_by_email(self, email: str) -> Optional[User]:
        email = email.lower()
        for doc in self._rows.values():
            if doc["email"] == email:
                return User.model_validate(doc)
        return None

    async def find_all(self) -> List[User]:
        return [User.model_validate(d) for d in self._sorted(self._rows.values())]

    async def create(self, user: User) -> User:
        if await self.find_by_email(user.email):
            raise ConflictError("Email already registered", code="email_taken")
        now = _now()
        doc = to_document(user)
        doc["email"] = doc["email"].lower()
        doc["created_at"] = now
        doc["updated_at"] = now
        self._write(user.id, doc)
        return User.model_validate(doc)


@dataclass
class MemoryUnitOfWork:
    items: MemoryItemStore
    transactions: MemoryTransactionLedger
    users: MemoryUserDirectory


class MemoryRepository:
    def __init__(self):
        self._items: Dict[str, dict] = {}
        self._transactions: Dict[str, dict] = {}
        self._users: Dict[str, dict] = {}
        self.items = MemoryItemStore(self._items)
        self.transactions = MemoryTransactionLedger(self._transactions)
        self.users = MemoryUserDirectory(self._users)

    @asynccontextmanager
    async def atomic(self):
        journal = Journal()
        uow = MemoryUnitOfWork(
            items=MemoryItemStore(self._items, journal),
            transactions=MemoryTransactionLedger(self._transactions, journal),
            users=MemoryUserDirectory(self._users, journal),
        )
        try:
            yield uow
        except BaseException:
            journal.rollback()
            raise

    async def ping(self) -> None:
        return None

    async def close(self) -> None:
        return None
