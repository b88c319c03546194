"""Availability of a book derived from its open loans and holding reservations.

``Book.available`` is a cache of the rule below.  Lifecycle operations keep
it current inside their own transactions; ``recompute`` and
``reconcile_all`` rebuild it from ground truth.
"""

import logging
from datetime import datetime

from ..core.clock import Clock, utc_now
from ..errors import MalformedDocument
from ..schemas.book import Book
from ..store.base import DocumentStore, DocumentSubscription, Transaction
from .documents import BOOKS, book_ref, holding_reservations, load_book, open_loans, require_ids

logger = logging.getLogger(__name__)


def apply_availability(txn: Transaction, book_id: str, now: datetime) -> tuple[Book, bool]:
    """Rewrite the book's availability inside ``txn``.

    Returns the resulting book and whether anything had to change.
    """
    book = load_book(txn, book_id)
    loans = open_loans(txn, bookId=book_id)
    queue = holding_reservations(txn, now, bookId=book_id)
    available = not loans and not queue
    head = queue[0].id if queue else None
    if book.available == available and book.current_reservation_id == head:
        return book, False
    txn.update(book_ref(book_id), {"available": available, "currentReservationId": head})
    return book.model_copy(update={"available": available, "current_reservation_id": head}), True


class BookStream:
    """Live sequence of a book's state, one entry per committed change."""

    def __init__(self, subscription: DocumentSubscription):
        self._subscription = subscription

    def next(self, timeout: float | None = None) -> Book | None:
        snapshot = self._subscription.next(timeout)
        while snapshot is not None and not snapshot.exists:
            snapshot = self._subscription.next(timeout)
        if snapshot is None:
            return None
        return Book.from_document(snapshot.ref.doc_id, snapshot.data)

    def cancel(self) -> None:
        self._subscription.cancel()

    def __iter__(self):
        for snapshot in self._subscription:
            if snapshot.exists:
                yield Book.from_document(snapshot.ref.doc_id, snapshot.data)


class AvailabilityEngine:
    def __init__(self, store: DocumentStore, clock: Clock = utc_now):
        self._store = store
        self._clock = clock

    def recompute(self, book_id: str) -> Book:
        require_ids(book_id=book_id)
        book, changed = self._store.run_transaction(lambda txn: apply_availability(txn, book_id, self._clock()))
        if changed:
            logger.info("Book %s availability recomputed: available=%s", book_id, book.available)
        return book

    def reconcile_all(self) -> list[str]:
        """Recompute every book, one transaction each; return the ids that changed."""
        changed_ids = []
        for ref, _ in self._store.query(BOOKS):
            try:
                book, changed = self._store.run_transaction(
                    lambda txn, book_id=ref.doc_id: apply_availability(txn, book_id, self._clock())
                )
            except MalformedDocument as exc:
                logger.warning("Skipping book %s during reconciliation: %s", ref.doc_id, exc.reason)
                continue
            if changed:
                logger.warning("Healed availability drift on book %s (available=%s)", book.id, book.available)
                changed_ids.append(book.id)
        return changed_ids

    def watch(self, book_id: str) -> BookStream:
        require_ids(book_id=book_id)
        return BookStream(self._store.watch(book_ref(book_id)))
