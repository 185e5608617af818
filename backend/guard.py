"""Who may act on a transaction."""

from .schemas import Transaction


def can_decide(user_id: str, transaction: Transaction) -> bool:
    """Only the lender approves or rejects a request."""
    return user_id == transaction.lender_id


def can_cancel(user_id: str, transaction: Transaction, allow_lender: bool = False) -> bool:
    """The borrower may always withdraw or return; the lender only when enabled."""
    if user_id == transaction.borrower_id:
        return True
    return allow_lender and user_id == transaction.lender_id
