"""Typed access to the ``books``, ``loans`` and ``reservations`` collections."""

import uuid
from datetime import datetime

from ..errors import NotFound, ValidationFailed
from ..schemas.book import Book
from ..schemas.loan import Loan
from ..schemas.reservation import HOLDING_STATUSES, Reservation
from ..store.base import DocumentRef, Transaction

BOOKS = "books"
LOANS = "loans"
RESERVATIONS = "reservations"

HOLDING = tuple(s.value for s in HOLDING_STATUSES)


def new_id() -> str:
    return uuid.uuid4().hex


def require_ids(**ids: str) -> None:
    for name, value in ids.items():
        if not isinstance(value, str) or not value.strip():
            raise ValidationFailed(f"{name} is required", value or None)
        if "/" in value:
            raise ValidationFailed(f"{name} must not contain '/'", value)


def book_ref(book_id: str) -> DocumentRef:
    return DocumentRef(BOOKS, book_id)


def loan_ref(loan_id: str) -> DocumentRef:
    return DocumentRef(LOANS, loan_id)


def reservation_ref(reservation_id: str) -> DocumentRef:
    return DocumentRef(RESERVATIONS, reservation_id)


def load_book(txn: Transaction, book_id: str) -> Book:
    data = txn.get(book_ref(book_id))
    if data is None:
        raise NotFound(f"Book {book_id} not found", book_id)
    return Book.from_document(book_id, data)


def load_loan(txn: Transaction, loan_id: str) -> Loan:
    data = txn.get(loan_ref(loan_id))
    if data is None:
        raise NotFound(f"Loan {loan_id} not found", loan_id)
    return Loan.from_document(loan_id, data)


def load_reservation(txn: Transaction, reservation_id: str) -> Reservation:
    data = txn.get(reservation_ref(reservation_id))
    if data is None:
        raise NotFound(f"Reservation {reservation_id} not found", reservation_id)
    return Reservation.from_document(reservation_id, data)


def open_loans(txn: Transaction, **where) -> list[Loan]:
    return [Loan.from_document(ref.doc_id, data) for ref, data in txn.query(LOANS, returnedAt=None, **where)]


def holding_reservations(txn: Transaction, now: datetime, **where) -> list[Reservation]:
    """Active/ready reservations that have not expired, oldest first."""
    found = [
        Reservation.from_document(ref.doc_id, data)
        for ref, data in txn.query(RESERVATIONS, status=HOLDING, **where)
    ]
    return sorted((r for r in found if r.is_blocking(now)), key=lambda r: (r.reserved_at, r.id))
