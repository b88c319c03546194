from datetime import datetime
from enum import Enum

from pydantic import AwareDatetime, BaseModel, Field

from .base import Document


class ReservationStatus(str, Enum):
    ACTIVE = "active"
    READY = "ready"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    EXPIRED = "expired"


HOLDING_STATUSES = (ReservationStatus.ACTIVE, ReservationStatus.READY)
TERMINAL_STATUSES = (ReservationStatus.CANCELLED, ReservationStatus.COMPLETED, ReservationStatus.EXPIRED)

STATUS_TEXT = {
    ReservationStatus.ACTIVE: "Reserved",
    ReservationStatus.READY: "Ready for Pickup",
    ReservationStatus.CANCELLED: "Cancelled",
    ReservationStatus.COMPLETED: "Completed",
    ReservationStatus.EXPIRED: "Expired",
}


class ReservationCreate(BaseModel):
    user_id: str = Field(min_length=1)
    book_id: str = Field(min_length=1)
    book_title: str | None = None
    book_author: str | None = None


class Reservation(Document):
    user_id: str = Field(min_length=1)
    book_id: str = Field(min_length=1)
    book_title: str = ""
    book_author: str = ""
    reserved_at: AwareDatetime
    expires_at: AwareDatetime | None = None
    status: ReservationStatus = ReservationStatus.ACTIVE

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now > self.expires_at

    def is_blocking(self, now: datetime) -> bool:
        """Whether this reservation currently holds the book."""
        return self.status in HOLDING_STATUSES and not self.is_expired(now)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def status_text(self) -> str:
        return STATUS_TEXT[self.status]

    def days_remaining(self, now: datetime) -> int | None:
        if self.expires_at is None or self.is_expired(now):
            return None
        return (self.expires_at - now).days
