import logging
from datetime import datetime, timedelta
from typing import Callable

from ..core.clock import Clock, utc_now
from ..errors import AlreadyReturned, BookUnavailable, NotFound, ValidationFailed
from ..schemas.loan import Loan, LoanStatus
from ..schemas.reservation import ReservationStatus
from ..store.base import DocumentStore, QuerySnapshot, QuerySubscription, Transaction
from .availability import apply_availability
from .documents import (
    LOANS,
    holding_reservations,
    load_book,
    load_loan,
    loan_ref,
    new_id,
    open_loans,
    require_ids,
    reservation_ref,
)
from .policy import BorrowPolicy

logger = logging.getLogger(__name__)


class LoanManager:
    """Checkout, renewal and return of loans."""

    def __init__(self, store: DocumentStore, policy: BorrowPolicy, loan_days: int = 14, clock: Clock = utc_now):
        self._store = store
        self._policy = policy
        self._loan_days = loan_days
        self._clock = clock

    def checkout(self, book_id: str, user_id: str) -> Loan:
        """Lend ``book_id`` to ``user_id``.

        The book must have no open loan and no holding reservation, unless
        the oldest holding reservation belongs to this user, in which case
        that reservation is fulfilled by the checkout.

        ``Book.available`` is not consulted: the loans and reservations read
        here are what it caches, and the flag is rewritten from them before
        commit.
        """
        require_ids(book_id=book_id, user_id=user_id)

        def _checkout(txn: Transaction) -> Loan:
            now = self._clock()
            book = load_book(txn, book_id)
            if open_loans(txn, bookId=book_id):
                raise BookUnavailable(f"Book {book_id} is already on loan", book_id)
            queue = holding_reservations(txn, now, bookId=book_id)
            if queue and queue[0].user_id != user_id:
                raise BookUnavailable(f"Book {book_id} is held by another reservation", book_id)

            self._policy.assert_under_limit(txn, user_id)

            if queue:
                txn.update(reservation_ref(queue[0].id), {"status": ReservationStatus.COMPLETED.value})
            loan = Loan(
                id=new_id(),
                user_id=user_id,
                book_id=book_id,
                book_title=book.title,
                book_author=book.author,
                borrowed_at=now,
                due_date=now + timedelta(days=self._loan_days),
            )
            txn.set(loan_ref(loan.id), loan.to_document())
            apply_availability(txn, book_id, now)
            return loan

        loan = self._store.run_transaction(_checkout)
        logger.info("Loan %s: book %s checked out by %s until %s", loan.id, book_id, user_id, loan.due_date)
        return loan

    def return_book(self, loan_id: str) -> Loan:
        require_ids(loan_id=loan_id)

        def _return(txn: Transaction) -> Loan:
            now = self._clock()
            loan = load_loan(txn, loan_id)
            if not loan.is_open:
                raise AlreadyReturned(f"Loan {loan_id} was already returned", loan_id)
            returned = loan.model_copy(update={"returned_at": now, "status": LoanStatus.RETURNED})
            txn.set(loan_ref(loan_id), returned.to_document())
            apply_availability(txn, loan.book_id, now)
            return returned

        loan = self._store.run_transaction(_return)
        logger.info("Loan %s: book %s returned", loan.id, loan.book_id)
        return loan

    def renew(self, loan_id: str, additional_days: int) -> Loan:
        require_ids(loan_id=loan_id)
        if not isinstance(additional_days, int) or isinstance(additional_days, bool) or additional_days <= 0:
            raise ValidationFailed(f"additional_days must be a positive integer, got {additional_days!r}", loan_id)

        def _renew(txn: Transaction) -> Loan:
            loan = load_loan(txn, loan_id)
            if not loan.is_open:
                raise AlreadyReturned(f"Loan {loan_id} was already returned and cannot be renewed", loan_id)
            try:
                due_date = loan.due_date + timedelta(days=additional_days)
            except OverflowError as exc:
                raise ValidationFailed(
                    f"Renewing loan {loan_id} by {additional_days} days is out of range", loan_id
                ) from exc
            renewed = loan.model_copy(update={"due_date": due_date})
            txn.set(loan_ref(loan_id), renewed.to_document())
            return renewed

        loan = self._store.run_transaction(_renew)
        logger.info("Loan %s renewed until %s", loan.id, loan.due_date)
        return loan

    # read-only views, outside any transaction

    def get_loan(self, loan_id: str) -> Loan:
        require_ids(loan_id=loan_id)
        data = self._store.get(loan_ref(loan_id))
        if data is None:
            raise NotFound(f"Loan {loan_id} not found", loan_id)
        return Loan.from_document(loan_id, data)

    def get_active_loans(self, user_id: str) -> list[Loan]:
        require_ids(user_id=user_id)
        loans = [Loan.from_document(ref.doc_id, data) for ref, data in self._store.query(LOANS, userId=user_id, returnedAt=None)]
        return sorted(loans, key=lambda l: l.due_date, reverse=True)

    def get_loan_history(self, user_id: str, limit: int = 100) -> list[Loan]:
        require_ids(user_id=user_id)
        loans = [Loan.from_document(ref.doc_id, data) for ref, data in self._store.query(LOANS, userId=user_id)]
        return sorted(loans, key=lambda l: l.borrowed_at, reverse=True)[:limit]

    def count_active_loans(self, user_id: str) -> int:
        return len(self.get_active_loans(user_id))

    def watch_active_loans(self, user_id: str) -> "LoanStream":
        require_ids(user_id=user_id)
        return LoanStream(
            self._store.watch_query(LOANS, userId=user_id, returnedAt=None),
            key=lambda l: l.due_date,
        )

    def watch_loan_history(self, user_id: str, limit: int = 100) -> "LoanStream":
        require_ids(user_id=user_id)
        return LoanStream(self._store.watch_query(LOANS, userId=user_id), key=lambda l: l.borrowed_at, limit=limit)


class LoanStream:
    """Live list of a user's loans, newest first, re-emitted on every change."""

    def __init__(self, subscription: QuerySubscription, key: Callable[[Loan], datetime], limit: int | None = None):
        self._subscription = subscription
        self._key = key
        self._limit = limit

    def _loans(self, snapshot: QuerySnapshot) -> list[Loan]:
        loans = sorted(
            (Loan.from_document(ref.doc_id, data) for ref, data in snapshot.documents), key=self._key, reverse=True
        )
        return loans if self._limit is None else loans[: self._limit]

    def next(self, timeout: float | None = None) -> list[Loan] | None:
        snapshot = self._subscription.next(timeout)
        return None if snapshot is None else self._loans(snapshot)

    def cancel(self) -> None:
        self._subscription.cancel()

    def __iter__(self):
        for snapshot in self._subscription:
            yield self._loans(snapshot)
