"""Error kinds raised by the lending engine.

Every failure carries the ``kind`` used by the HTTP layer, the id of the
entity involved and a human readable reason.
"""


class LendingError(Exception):
    kind = "lending_error"

    def __init__(self, reason: str, entity_id: str | None = None):
        super().__init__(reason)
        self.reason = reason
        self.entity_id = entity_id

    def to_dict(self) -> dict:
        return {"error": self.kind, "entity_id": self.entity_id, "detail": self.reason}


class Conflict(LendingError):
    """A concurrent commit touched something this transaction read."""

    kind = "conflict"


class TransientFailure(LendingError):
    kind = "transient_failure"


class BookUnavailable(LendingError):
    kind = "book_unavailable"


class AlreadyReturned(LendingError):
    kind = "already_returned"


class AlreadyTerminal(LendingError):
    kind = "already_terminal"


class DuplicateReservation(LendingError):
    kind = "duplicate_reservation"


class BorrowLimitExceeded(LendingError):
    kind = "borrow_limit_exceeded"


class NotFound(LendingError):
    kind = "not_found"


class ValidationFailed(LendingError):
    kind = "validation_error"


class MalformedDocument(ValidationFailed):
    """A stored document could not be parsed into an entity."""

    kind = "malformed_document"
