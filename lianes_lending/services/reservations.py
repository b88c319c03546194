import logging
from datetime import timedelta

from ..core.clock import Clock, utc_now
from ..errors import AlreadyTerminal, DuplicateReservation, MalformedDocument, NotFound, ValidationFailed
from ..schemas.reservation import Reservation, ReservationStatus
from ..store.base import DocumentStore, Transaction
from .availability import apply_availability
from .documents import (
    HOLDING,
    RESERVATIONS,
    holding_reservations,
    load_book,
    load_reservation,
    new_id,
    require_ids,
    reservation_ref,
)
from .policy import BorrowPolicy

logger = logging.getLogger(__name__)


class ReservationManager:
    """Reservations hold a book for one user until they expire.

    A reservation may be placed on a book that is currently lent out; it
    then queues behind the loan and holds the book once it is returned.
    """

    def __init__(
        self,
        store: DocumentStore,
        policy: BorrowPolicy,
        reservation_days: int = 7,
        pickup_days: int = 3,
        clock: Clock = utc_now,
    ):
        self._store = store
        self._policy = policy
        self._reservation_days = reservation_days
        self._pickup_days = pickup_days
        self._clock = clock

    def reserve(self, user_id: str, book_id: str, book_title: str | None = None, book_author: str | None = None) -> Reservation:
        require_ids(user_id=user_id, book_id=book_id)

        def _reserve(txn: Transaction) -> Reservation:
            now = self._clock()
            book = load_book(txn, book_id)
            if holding_reservations(txn, now, userId=user_id, bookId=book_id):
                raise DuplicateReservation(f"User {user_id} has already reserved book {book_id}", book_id)
            self._policy.assert_reservations_under_limit(txn, user_id, now)

            reservation = Reservation(
                id=new_id(),
                user_id=user_id,
                book_id=book_id,
                book_title=book_title or book.title,
                book_author=book_author or book.author,
                reserved_at=now,
                expires_at=now + timedelta(days=self._reservation_days),
            )
            txn.set(reservation_ref(reservation.id), reservation.to_document())
            apply_availability(txn, book_id, now)
            return reservation

        reservation = self._store.run_transaction(_reserve)
        logger.info("Reservation %s: book %s reserved by %s until %s", reservation.id, book_id, user_id, reservation.expires_at)
        return reservation

    def cancel(self, reservation_id: str) -> Reservation:
        require_ids(reservation_id=reservation_id)

        def _cancel(txn: Transaction) -> Reservation:
            reservation = load_reservation(txn, reservation_id)
            if reservation.is_terminal:
                raise AlreadyTerminal(f"Reservation {reservation_id} is already {reservation.status.value}", reservation_id)
            return self._transition(txn, reservation, ReservationStatus.CANCELLED)

        reservation = self._store.run_transaction(_cancel)
        logger.info("Reservation %s cancelled", reservation_id)
        return reservation

    def mark_ready(self, reservation_id: str) -> Reservation:
        """Staff marks the held copy as waiting for pickup."""
        require_ids(reservation_id=reservation_id)

        def _ready(txn: Transaction) -> Reservation:
            now = self._clock()
            reservation = load_reservation(txn, reservation_id)
            if reservation.is_terminal:
                raise AlreadyTerminal(f"Reservation {reservation_id} is already {reservation.status.value}", reservation_id)
            if reservation.is_expired(now):
                raise AlreadyTerminal(f"Reservation {reservation_id} has expired", reservation_id)
            if reservation.status != ReservationStatus.ACTIVE:
                raise ValidationFailed(f"Reservation {reservation_id} is already ready for pickup", reservation_id)
            return self._transition(
                txn, reservation, ReservationStatus.READY, expires_at=now + timedelta(days=self._pickup_days)
            )

        reservation = self._store.run_transaction(_ready)
        logger.info("Reservation %s ready for pickup until %s", reservation_id, reservation.expires_at)
        return reservation

    def expire_sweep(self) -> int:
        """Expire every holding reservation past its deadline.

        Each reservation is expired in its own small transaction, which
        re-checks the reservation, so concurrent or repeated sweeps are safe.
        Returns how many reservations this run expired.
        """
        now = self._clock()
        due = []
        for ref, data in self._store.query(RESERVATIONS, status=HOLDING):
            try:
                reservation = Reservation.from_document(ref.doc_id, data)
            except MalformedDocument as exc:
                logger.warning("Sweep skipping reservation %s: %s", ref.doc_id, exc.reason)
                continue
            if reservation.is_expired(now):
                due.append(reservation.id)

        expired = 0
        for reservation_id in due:
            if self._store.run_transaction(lambda txn, rid=reservation_id: self._expire_one(txn, rid)):
                expired += 1
        if expired:
            logger.info("Sweep expired %d reservation(s)", expired)
        return expired

    def _expire_one(self, txn: Transaction, reservation_id: str) -> bool:
        now = self._clock()
        reservation = load_reservation(txn, reservation_id)
        if reservation.is_terminal or not reservation.is_expired(now):
            return False
        self._transition(txn, reservation, ReservationStatus.EXPIRED)
        return True

    def _transition(self, txn: Transaction, reservation: Reservation, status: ReservationStatus, **changes) -> Reservation:
        updated = reservation.model_copy(update={"status": status, **changes})
        txn.set(reservation_ref(reservation.id), updated.to_document())
        apply_availability(txn, reservation.book_id, self._clock())
        return updated

    # read-only views, outside any transaction

    def _find(self, **where) -> list[Reservation]:
        found = [Reservation.from_document(ref.doc_id, data) for ref, data in self._store.query(RESERVATIONS, **where)]
        return sorted(found, key=lambda r: r.reserved_at, reverse=True)

    def get_reservation(self, reservation_id: str) -> Reservation:
        require_ids(reservation_id=reservation_id)
        data = self._store.get(reservation_ref(reservation_id))
        if data is None:
            raise NotFound(f"Reservation {reservation_id} not found", reservation_id)
        return Reservation.from_document(reservation_id, data)

    def get_user_reservations(self, user_id: str) -> list[Reservation]:
        require_ids(user_id=user_id)
        return self._find(userId=user_id)

    def get_active_reservations(self, user_id: str) -> list[Reservation]:
        require_ids(user_id=user_id)
        now = self._clock()
        return [r for r in self._find(userId=user_id, status=HOLDING) if r.is_blocking(now)]

    def get_book_reservations(self, book_id: str) -> list[Reservation]:
        require_ids(book_id=book_id)
        return [r for r in self._find(bookId=book_id) if r.status != ReservationStatus.CANCELLED]

    def reservation_count(self, book_id: str) -> int:
        require_ids(book_id=book_id)
        now = self._clock()
        return sum(1 for r in self._find(bookId=book_id, status=HOLDING) if r.is_blocking(now))

    def is_book_reserved_by_user(self, user_id: str, book_id: str) -> bool:
        require_ids(user_id=user_id, book_id=book_id)
        now = self._clock()
        return any(r.is_blocking(now) for r in self._find(userId=user_id, bookId=book_id, status=HOLDING))
