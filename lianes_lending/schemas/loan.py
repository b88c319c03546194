from datetime import datetime
from enum import Enum

from pydantic import AwareDatetime, BaseModel, Field, field_validator, model_validator

from .base import Document


class LoanStatus(str, Enum):
    ACTIVE = "active"
    RETURNED = "returned"
    OVERDUE = "overdue"


class CheckoutRequest(BaseModel):
    book_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)


class RenewRequest(BaseModel):
    days: int = Field(gt=0, le=365)


class Loan(Document):
    user_id: str = Field(min_length=1)
    book_id: str = Field(min_length=1)
    book_title: str = ""
    book_author: str = ""
    borrowed_at: AwareDatetime
    due_date: AwareDatetime
    returned_at: AwareDatetime | None = None
    status: LoanStatus = LoanStatus.ACTIVE

    @field_validator("status")
    @classmethod
    def _overdue_is_not_stored(cls, v: LoanStatus) -> LoanStatus:
        # overdue is derived from the due date, never trusted from storage
        return LoanStatus.ACTIVE if v == LoanStatus.OVERDUE else v

    @model_validator(mode="after")
    def _check_dates(self) -> "Loan":
        if self.due_date <= self.borrowed_at:
            raise ValueError("dueDate must be after borrowedAt")
        if self.returned_at is not None and self.status != LoanStatus.RETURNED:
            raise ValueError("a loan with returnedAt must have status returned")
        if self.returned_at is None and self.status == LoanStatus.RETURNED:
            raise ValueError("a returned loan needs returnedAt")
        return self

    @property
    def is_open(self) -> bool:
        return self.returned_at is None

    def is_overdue(self, now: datetime) -> bool:
        return self.is_open and now > self.due_date

    def display_status(self, now: datetime) -> LoanStatus:
        if self.is_overdue(now):
            return LoanStatus.OVERDUE
        return self.status

    def days_remaining(self, now: datetime) -> int:
        """Whole days until the due date, negative once overdue."""
        return (self.due_date - now).days
