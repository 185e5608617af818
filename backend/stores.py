"""Storage interfaces consumed by the reservation coordinator.

Two implementations exist: ``database.MongoRepository`` (motor) for the
running service and ``memory.MemoryRepository`` for tests and local use.
Both hand out stores bound to a unit of work from ``Repository.atomic()``;
every write made through those stores commits or rolls back together.
"""

from __future__ import annotations

from typing import AsyncContextManager, Iterable, List, Optional, Protocol

from .errors import InvalidTransitionError
from .schemas import Item, ItemStatus, Transaction, TransactionStatus, User


class ItemStore(Protocol):
    async def get(self, item_id: str) -> Optional[Item]: ...

    async def find_all(
        self,
        ids: Optional[Iterable[str]] = None,
        owner_id: Optional[str] = None,
        status: Optional[ItemStatus] = None,
    ) -> List[Item]: ...

    async def create(self, item: Item) -> Item: ...

    async def update_details(self, item_id: str, **fields) -> Optional[Item]: ...

    async def update_status(
        self, item_id: str, status: ItemStatus, expected: Optional[ItemStatus] = None
    ) -> Optional[Item]: ...


class TransactionLedger(Protocol):
    async def get(self, transaction_id: str) -> Optional[Transaction]: ...

    async def find_active_for_item(
        self, item_id: str, borrower_id: Optional[str] = None
    ) -> Optional[Transaction]: ...

    async def find_all(
        self,
        user_id: Optional[str] = None,
        statuses: Optional[Iterable[TransactionStatus]] = None,
    ) -> List[Transaction]: ...

    async def create(self, transaction: Transaction) -> Transaction: ...

    async def update_status(
        self,
        transaction_id: str,
        status: TransactionStatus,
        expected: TransactionStatus,
        **fields,
    ) -> Optional[Transaction]: ...

    async def cancel_active_for_item(self, item_id: str) -> List[str]: ...


class UserDirectory(Protocol):
    async def get(self, user_id: str) -> Optional[User]: ...

    async def get_many(self, user_ids: Iterable[str]) -> List[User]: ...

    async def find_by_email(self, email: str) -> Optional[User]: ...

    async def find_all(self) -> List[User]: ...

    async def create(self, user: User) -> User: ...


class UnitOfWork(Protocol):
    items: ItemStore
    transactions: TransactionLedger
    users: UserDirectory


class Repository(UnitOfWork, Protocol):
    def atomic(self) -> AsyncContextManager[UnitOfWork]: ...

    async def ping(self) -> None: ...

    async def close(self) -> None: ...


def check_transition(current: TransactionStatus, new: TransactionStatus) -> None:
    """Raise ``InvalidTransitionError`` unless ``current -> new`` is allowed."""
    if not current.can_become(new):
        raise InvalidTransitionError(
            f"Cannot move a {current.value} transaction to {new.value}"
        )


def to_document(model: Item | Transaction | User) -> dict:
    """Snake-case storage document for a model, enums stored by value."""
    doc = model.model_dump(by_alias=False)
    status = doc.get("status")
    if status is not None and hasattr(status, "value"):
        doc["status"] = status.value
    if isinstance(model, Transaction):
        doc["active"] = model.status.is_active
    return doc
