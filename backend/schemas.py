from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from datetime import datetime

# Each class name lowercased corresponds to collection name.
# Wire format is camelCase (aliases), storage documents are snake_case.


class ItemStatus(str, Enum):
    AVAILABLE = "available"
    BORROWED = "borrowed"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return not ALLOWED_TRANSITIONS[self]

    def can_become(self, new: "TransactionStatus") -> bool:
        return new in ALLOWED_TRANSITIONS[self]


ACTIVE_STATUSES = frozenset({TransactionStatus.PENDING, TransactionStatus.APPROVED})
DECISIONS = frozenset({TransactionStatus.APPROVED, TransactionStatus.REJECTED})

ALLOWED_TRANSITIONS = {
    TransactionStatus.PENDING: frozenset(
        {TransactionStatus.APPROVED, TransactionStatus.REJECTED, TransactionStatus.CANCELLED}
    ),
    TransactionStatus.APPROVED: frozenset({TransactionStatus.CANCELLED}),
    TransactionStatus.REJECTED: frozenset(),
    TransactionStatus.CANCELLED: frozenset(),
}


class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class User(_Model):
    id: str
    name: str
    email: EmailStr
    password: Optional[str] = None  # hashed, responses use UserSummary
    created_at: Optional[datetime] = Field(None, exclude=True)
    updated_at: Optional[datetime] = Field(None, exclude=True)


class Item(_Model):
    id: str
    name: str
    description: str
    owner_id: str = Field(alias="ownerId")
    status: ItemStatus = ItemStatus.AVAILABLE
    created_at: Optional[datetime] = Field(None, exclude=True)
    updated_at: Optional[datetime] = Field(None, exclude=True)


class Transaction(_Model):
    id: str
    item_id: str = Field(alias="itemId")
    lender_id: str = Field(alias="lenderId")
    borrower_id: str = Field(alias="borrowerId")
    status: TransactionStatus = TransactionStatus.PENDING
    start_date: datetime = Field(alias="startDate")
    borrow_date: Optional[datetime] = Field(None, alias="borrowDate")
    end_date: Optional[datetime] = Field(None, alias="endDate")
    created_at: Optional[datetime] = Field(None, exclude=True)
    updated_at: Optional[datetime] = Field(None, exclude=True)

    @property
    def is_active(self) -> bool:
        return self.status.is_active


# Request bodies

class BorrowRequestIn(_Model):
    item_id: str = Field(alias="itemId", min_length=1)
    borrower_id: str = Field(alias="borrowerId", min_length=1)


class DecisionIn(_Model):
    # Kept as a plain string so unknown values surface as InvalidArgument (400)
    status: str
    user_id: str = Field(alias="userId", min_length=1)


class CancelIn(_Model):
    item_id: str = Field(alias="itemId", min_length=1)
    borrower_id: str = Field(alias="borrowerId", min_length=1)
    user_id: Optional[str] = Field(None, alias="userId")


class ItemIn(_Model):
    name: str = Field(min_length=1)
    description: str = Field(min_length=1)
    owner_id: str = Field(alias="ownerId", min_length=1)


class ItemUpdateIn(_Model):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    name: Optional[str] = None
    description: Optional[str] = None


# Response summaries

class UserSummary(_Model):
    id: str
    name: str
    email: str


class EnrichedTransaction(_Model):
    id: str
    item_id: str = Field(alias="itemId")
    borrower_id: str = Field(alias="borrowerId")
    lender_id: str = Field(alias="lenderId")
    status: TransactionStatus
    item: Optional[Item] = None
    borrower: Optional[UserSummary] = None
    lender: Optional[UserSummary] = None


class Cancellation(BaseModel):
    transaction: Transaction
    item: Item
    swept: List[str] = []
