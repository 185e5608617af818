import functools
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from .config import Settings
from .errors import ConflictError, InternalError
from .schemas import Item, ItemStatus, Transaction, TransactionStatus, User
from .stores import check_transition, to_document

logger = logging.getLogger(__name__)

ACTIVE_VALUES = [s.value for s in (TransactionStatus.PENDING, TransactionStatus.APPROVED)]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def storage_call(fn):
    """Surface driver failures as ``InternalError``."""
    @functools.wraps(fn)
    async def wrapper(*args, **kwargs):
        try:
            return await fn(*args, **kwargs)
        except PyMongoError as exc:
            logger.error("Storage failure in %s: %s", fn.__qualname__, exc)
            raise InternalError(f"Storage failure in {fn.__qualname__}") from exc
    return wrapper


@dataclass
class MongoJournal:
    """Undo log used when multi-document transactions are unavailable."""

    entries: List[Tuple[object, str, Optional[dict]]] = field(default_factory=list)

    def record(self, collection, key: str, before: Optional[dict]) -> None:
        self.entries.append((collection, key, before))

    async def rollback(self) -> None:
        for collection, key, before in reversed(self.entries):
            if before is None:
                await collection.delete_one({"id": key})
            else:
                await collection.replace_one({"id": key}, before)
        self.entries.clear()


class _Collection:
    name = ""

    def __init__(self, db, session=None, journal: Optional[MongoJournal] = None):
        self._col = db[self.name]
        self._session = session
        self._journal = journal

    async def _find_one(self, flt: dict) -> Optional[dict]:
        return await self._col.find_one(flt, {"_id": 0}, session=self._session)

    async def _find(self, flt: dict) -> List[dict]:
        cursor = self._col.find(flt, {"_id": 0}, session=self._session).sort("created_at", DESCENDING)
        return [doc async for doc in cursor]

    async def _insert(self, doc: dict) -> dict:
        now = _now()
        doc["created_at"] = now
        doc["updated_at"] = now
        await self._col.insert_one(doc, session=self._session)
        doc.pop("_id", None)
        if self._journal is not None:
            self._journal.record(self._col, doc["id"], None)
        return doc

    async def _swap(self, flt: dict, updates: dict) -> Optional[dict]:
        """Conditionally update one document; returns it after the update, or None."""
        updates = {**updates, "updated_at": _now()}
        before = await self._col.find_one_and_update(
            flt,
            {"$set": updates},
            projection={"_id": 0},
            return_document=ReturnDocument.BEFORE,
            session=self._session,
        )
        if before is None:
            return None
        if self._journal is not None:
            self._journal.record(self._col, before["id"], before)
        return {**before, **updates}


class MongoItemStore(_Collection):
    name = "item"

    @storage_call
    async def get(self, item_id: str) -> Optional[Item]:
        doc = await self._find_one({"id": item_id})
        return Item.model_validate(doc) if doc else None

    @storage_call
    async def find_all(self, ids=None, owner_id=None, status=None) -> List[Item]:
        flt = {}
        if ids is not None:
            flt["id"] = {"$in": list(ids)}
        if owner_id is not None:
            flt["owner_id"] = owner_id
        if status is not None:
            flt["status"] = ItemStatus(status).value
        return [Item.model_validate(d) for d in await self._find(flt)]

    @storage_call
    async def create(self, item: Item) -> Item:
        try:
            doc = await self._insert(to_document(item))
        except DuplicateKeyError:
            raise ConflictError("Item already exists", code="duplicate_item")
        return Item.model_validate(doc)

    @storage_call
    async def update_details(self, item_id: str, **fields) -> Optional[Item]:
        doc = await self._swap({"id": item_id}, fields)
        return Item.model_validate(doc) if doc else None

    @storage_call
    async def update_status(self, item_id, status, expected=None) -> Optional[Item]:
        flt = {"id": item_id}
        if expected is not None:
            flt["status"] = ItemStatus(expected).value
        doc = await self._swap(flt, {"status": ItemStatus(status).value})
        return Item.model_validate(doc) if doc else None


class MongoTransactionLedger(_Collection):
    name = "transaction"

    @storage_call
    async def get(self, transaction_id: str) -> Optional[Transaction]:
        doc = await self._find_one({"id": transaction_id})
        return Transaction.model_validate(doc) if doc else None

    @storage_call
    async def find_active_for_item(self, item_id, borrower_id=None) -> Optional[Transaction]:
        flt = {"item_id": item_id, "status": {"$in": ACTIVE_VALUES}}
        if borrower_id is not None:
            flt["borrower_id"] = borrower_id
        doc = await self._find_one(flt)
        return Transaction.model_validate(doc) if doc else None

    @storage_call
    async def find_all(self, user_id=None, statuses=None) -> List[Transaction]:
        flt = {}
        if user_id is not None:
            flt["$or"] = [{"borrower_id": user_id}, {"lender_id": user_id}]
        if statuses is not None:
            flt["status"] = {"$in": [TransactionStatus(s).value for s in statuses]}
        return [Transaction.model_validate(d) for d in await self._find(flt)]

    @storage_call
    async def create(self, transaction: Transaction) -> Transaction:
        try:
            doc = await self._insert(to_document(transaction))
        except DuplicateKeyError:
            # one_active_claim_per_item tripped: another request won the race
            raise ConflictError(
                "This item already has an active request or is borrowed",
                code="active_claim_exists",
            )
        return Transaction.model_validate(doc)

    @storage_call
    async def update_status(self, transaction_id, status, expected, **fields) -> Optional[Transaction]:
        status, expected = TransactionStatus(status), TransactionStatus(expected)
        check_transition(expected, status)
        doc = await self._swap(
            {"id": transaction_id, "status": expected.value},
            {**fields, "status": status.value, "active": status.is_active},
        )
        return Transaction.model_validate(doc) if doc else None

    @storage_call
    async def cancel_active_for_item(self, item_id: str) -> List[str]:
        cancelled = []
        for doc in await self._find({"item_id": item_id, "status": {"$in": ACTIVE_VALUES}}):
            updated = await self._swap(
                {"id": doc["id"], "status": doc["status"]},
                {"status": TransactionStatus.CANCELLED.value, "active": False},
            )
            if updated is not None:
                cancelled.append(doc["id"])
        return cancelled


class MongoUserDirectory(_Collection):
    name = "user"

    @storage_call
    async def get(self, user_id: str) -> Optional[User]:
        doc = await self._find_one({"id": user_id})
        return User.model_validate(doc) if doc else None

    @storage_call
    async def get_many(self, user_ids) -> List[User]:
        return [User.model_validate(d) for d in await self._find({"id": {"$in": list(set(user_ids))}})]

    @storage_call
    async def find_by_email(self, email: str) -> Optional[User]:
        doc = await self._find_one({"email": email.lower()})
        return User.model_validate(doc) if doc else None

    @storage_call
    async def find_all(self) -> List[User]:
        return [User.model_validate(d) for d in await self._find({})]

    @storage_call
    async def create(self, user: User) -> User:
        doc = to_document(user)
        doc["email"] = doc["email"].lower()
        try:
            doc = await self._insert(doc)
        except DuplicateKeyError:
            raise ConflictError("Email already registered", code="email_taken")
        return User.model_validate(doc)


@dataclass
class MongoUnitOfWork:
    items: MongoItemStore
    transactions: MongoTransactionLedger
    users: MongoUserDirectory


class MongoRepository:
    """Owns the motor client. Construct once per process and ``close()`` at shutdown."""

    def __init__(self, client: AsyncIOMotorClient, database_name: str, use_transactions: bool = False):
        self._client = client
        self._db = client[database_name]
        self._use_transactions = use_transactions
        self.items = MongoItemStore(self._db)
        self.transactions = MongoTransactionLedger(self._db)
        self.users = MongoUserDirectory(self._db)

    @classmethod
    def from_settings(cls, settings: Settings) -> "MongoRepository":
        client = AsyncIOMotorClient(settings.database_url, tz_aware=True)
        return cls(client, settings.database_name, use_transactions=settings.mongo_transactions)

    def _bind(self, session=None, journal=None) -> MongoUnitOfWork:
        return MongoUnitOfWork(
            items=MongoItemStore(self._db, session, journal),
            transactions=MongoTransactionLedger(self._db, session, journal),
            users=MongoUserDirectory(self._db, session, journal),
        )

    @asynccontextmanager
    async def atomic(self):
        try:
            if self._use_transactions:
                async with await self._client.start_session() as session:
                    async with session.start_transaction():
                        yield self._bind(session=session)
            else:
                journal = MongoJournal()
                try:
                    yield self._bind(journal=journal)
                except BaseException:
                    await journal.rollback()
                    raise
        except PyMongoError as exc:
            logger.error("Unit of work failed: %s", exc)
            raise InternalError("Unit of work failed") from exc

    @storage_call
    async def ensure_indexes(self) -> None:
        await self._db["user"].create_index([("id", ASCENDING)], unique=True)
        await self._db["user"].create_index([("email", ASCENDING)], unique=True)
        await self._db["item"].create_index([("id", ASCENDING)], unique=True)
        await self._db["item"].create_index([("owner_id", ASCENDING)])
        await self._db["transaction"].create_index([("id", ASCENDING)], unique=True)
        await self._db["transaction"].create_index([("borrower_id", ASCENDING)])
        await self._db["transaction"].create_index([("lender_id", ASCENDING)])
        await self._db["transaction"].create_index(
            [("item_id", ASCENDING)],
            unique=True,
            partialFilterExpression={"active": True},
            name="one_active_claim_per_item",
        )

    @storage_call
    async def ping(self) -> None:
        # A simple ping to ensure we can talk to the database
        await self._db.command("ping")

    async def close(self) -> None:
        self._client.close()
