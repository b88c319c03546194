from datetime import datetime

from ..errors import BorrowLimitExceeded
from ..store.base import Transaction
from .documents import holding_reservations, open_loans


class BorrowPolicy:
    """Per-user limits, checked inside the transaction that would exceed them.

    Counting through ``txn.query`` puts the count in the transaction's read
    set, so two racing checkouts cannot both pass on the same count.
    """

    def __init__(self, max_active_loans: int = 5, max_active_reservations: int = 5):
        self.max_active_loans = max_active_loans
        self.max_active_reservations = max_active_reservations

    def assert_under_limit(self, txn: Transaction, user_id: str) -> None:
        count = len(open_loans(txn, userId=user_id))
        if count >= self.max_active_loans:
            raise BorrowLimitExceeded(
                f"User {user_id} already has {count} active loans (limit {self.max_active_loans})", user_id
            )

    def assert_reservations_under_limit(self, txn: Transaction, user_id: str, now: datetime) -> None:
        count = len(holding_reservations(txn, now, userId=user_id))
        if count >= self.max_active_reservations:
            raise BorrowLimitExceeded(
                f"User {user_id} already has {count} active reservations (limit {self.max_active_reservations})",
                user_id,
            )
