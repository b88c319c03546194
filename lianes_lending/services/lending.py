"""Entry point used by the HTTP layer and by other callers."""

from ..core.clock import Clock, utc_now
from ..core.config import Settings, get_settings
from ..db_connection import get_engine
from ..schemas.book import Book
from ..schemas.loan import Loan
from ..schemas.reservation import Reservation
from ..store.base import DocumentStore
from ..store.sql import SqlDocumentStore
from .availability import AvailabilityEngine, BookStream
from .catalog import BookCatalog
from .loans import LoanManager, LoanStream
from .policy import BorrowPolicy
from .reservations import ReservationManager


class LendingService:
    def __init__(self, store: DocumentStore, settings: Settings | None = None, clock: Clock = utc_now):
        settings = settings or Settings()
        self.store = store
        self.settings = settings
        self.policy = BorrowPolicy(settings.max_active_loans, settings.max_active_reservations)
        self.catalog = BookCatalog(store)
        self.availability = AvailabilityEngine(store, clock)
        self.loans = LoanManager(store, self.policy, settings.loan_days, clock)
        self.reservations = ReservationManager(
            store, self.policy, settings.reservation_days, settings.pickup_days, clock
        )

    def checkout(self, book_id: str, user_id: str) -> Loan:
        return self.loans.checkout(book_id, user_id)

    def return_book(self, loan_id: str) -> Loan:
        return self.loans.return_book(loan_id)

    def renew(self, loan_id: str, days: int) -> Loan:
        return self.loans.renew(loan_id, days)

    def reserve(self, user_id: str, book_id: str, title: str | None = None, author: str | None = None) -> str:
        return self.reservations.reserve(user_id, book_id, title, author).id

    def cancel_reservation(self, reservation_id: str) -> None:
        self.reservations.cancel(reservation_id)

    def get_active_loans(self, user_id: str) -> list[Loan]:
        return self.loans.get_active_loans(user_id)

    def get_active_reservations(self, user_id: str) -> list[Reservation]:
        return self.reservations.get_active_reservations(user_id)

    def recompute_availability(self, book_id: str) -> Book:
        return self.availability.recompute(book_id)

    def expire_sweep(self) -> int:
        return self.reservations.expire_sweep()

    def stream_book_availability(self, book_id: str) -> BookStream:
        return self.availability.watch(book_id)

    def watch_active_loans(self, user_id: str) -> LoanStream:
        return self.loans.watch_active_loans(user_id)

    def watch_loan_history(self, user_id: str) -> LoanStream:
        return self.loans.watch_loan_history(user_id)


def build_service(settings: Settings | None = None, store: DocumentStore | None = None, clock: Clock = utc_now) -> LendingService:
    """Wire a service against the configured SQL database unless a store is given."""
    settings = settings or get_settings()
    if store is None:
        store = SqlDocumentStore(
            get_engine(settings.database_url),
            max_retries=settings.tx_max_retries,
            backoff=settings.tx_backoff_seconds,
            timeout=settings.tx_timeout_seconds,
        )
        store.init_schema()
    return LendingService(store, settings, clock)
