import threading
from datetime import timedelta

import pytest

from lianes_lending.errors import AlreadyReturned, BookUnavailable, BorrowLimitExceeded, NotFound, ValidationFailed
from lianes_lending.schemas.loan import LoanStatus


def test_checkout_creates_loan_and_marks_book_unavailable(service, b1, clock):
    loan = service.checkout("b1", "u1")

    assert loan.status == LoanStatus.ACTIVE
    assert loan.borrowed_at == clock.now
    assert loan.due_date == clock.now + timedelta(days=14)
    assert (loan.book_title, loan.book_author) == ("Clean Architecture", "Robert C. Martin")
    assert service.catalog.get_book("b1").available is False
    assert service.loans.get_loan(loan.id) == loan


def test_checkout_of_lent_book_fails(service, b1):
    service.checkout("b1", "u1")
    with pytest.raises(BookUnavailable) as excinfo:
        service.checkout("b1", "u2")
    assert excinfo.value.entity_id == "b1"


def test_checkout_unknown_book(service):
    with pytest.raises(NotFound):
        service.checkout("nope", "u1")


@pytest.mark.parametrize("book_id,user_id", [("", "u1"), ("b1", ""), ("b1", "  "), ("books/b1", "u1")])
def test_checkout_rejects_bad_ids(service, b1, book_id, user_id):
    with pytest.raises(ValidationFailed):
        service.checkout(book_id, user_id)


def test_racing_checkout_loses_after_retry(service, b1, monkeypatch):
    """u2 commits between u1's reads and u1's commit; u1 retries and sees the loan."""
    original = service.policy.assert_under_limit
    raced = []

    def racing_check(txn, user_id):
        if user_id == "u1" and not raced:
            raced.append(service.checkout("b1", "u2"))
        original(txn, user_id)

    monkeypatch.setattr(service.policy, "assert_under_limit", racing_check)

    with pytest.raises(BookUnavailable):
        service.checkout("b1", "u1")
    open_loans = service.store.query("loans", bookId="b1", returnedAt=None)
    assert [data["userId"] for _, data in open_loans] == ["u2"]


def test_concurrent_checkouts_have_one_winner(service, b1):
    barrier = threading.Barrier(8)
    outcomes = []

    def attempt(user_id):
        barrier.wait()
        try:
            outcomes.append(service.checkout("b1", user_id))
        except BookUnavailable as exc:
            outcomes.append(exc)

    threads = [threading.Thread(target=attempt, args=(f"u{i}",)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    winners = [o for o in outcomes if not isinstance(o, BookUnavailable)]
    assert len(winners) == 1
    assert len(outcomes) == 8
    assert len(service.store.query("loans", bookId="b1", returnedAt=None)) == 1


def test_borrow_limit(service, add_book):
    for i in range(6):
        add_book(f"b{i}")
    for i in range(4):
        service.checkout(f"b{i}", "u1")

    fifth = service.checkout("b4", "u1")
    assert fifth.book_id == "b4"
    with pytest.raises(BorrowLimitExceeded) as excinfo:
        service.checkout("b5", "u1")
    assert excinfo.value.entity_id == "u1"
    assert service.catalog.get_book("b5").available is True
    assert service.loans.count_active_loans("u1") == 5


def test_returned_loans_do_not_count_towards_limit(service, add_book):
    for i in range(6):
        add_book(f"b{i}")
    loans = [service.checkout(f"b{i}", "u1") for i in range(5)]
    service.return_book(loans[0].id)
    assert service.checkout("b5", "u1").book_id == "b5"


def test_return_makes_book_available(service, b1, clock):
    loan = service.checkout("b1", "u1")
    clock.advance(days=3)

    returned = service.return_book(loan.id)

    assert returned.status == LoanStatus.RETURNED
    assert returned.returned_at == clock.now
    assert service.loans.get_loan(loan.id).returned_at == clock.now
    assert service.catalog.get_book("b1").available is True


def test_double_return_fails_and_leaves_book_alone(service, b1):
    loan = service.checkout("b1", "u1")
    service.return_book(loan.id)
    service.checkout("b1", "u2")

    with pytest.raises(AlreadyReturned):
        service.return_book(loan.id)
    assert service.catalog.get_book("b1").available is False


def test_return_unknown_loan(service):
    with pytest.raises(NotFound):
        service.return_book("missing")


def test_renew_extends_due_date_only(service, b1):
    loan = service.checkout("b1", "u1")
    renewed = service.renew(loan.id, 7)

    assert renewed.due_date == loan.due_date + timedelta(days=7)
    assert renewed.borrowed_at == loan.borrowed_at
    assert service.loans.get_loan(loan.id).due_date == renewed.due_date
    assert service.catalog.get_book("b1").available is False


@pytest.mark.parametrize("days", [0, -3, 1.5, True])
def test_renew_rejects_bad_days(service, b1, days):
    loan = service.checkout("b1", "u1")
    with pytest.raises(ValidationFailed):
        service.renew(loan.id, days)


def test_renew_returned_loan_fails(service, b1):
    loan = service.checkout("b1", "u1")
    service.return_book(loan.id)
    with pytest.raises(AlreadyReturned):
        service.renew(loan.id, 7)


def test_overdue_loan_can_still_be_returned_and_renewed(service, b1, clock):
    loan = service.checkout("b1", "u1")
    clock.advance(days=20)
    assert service.loans.get_loan(loan.id).is_overdue(clock.now)

    service.renew(loan.id, 10)
    assert service.return_book(loan.id).status == LoanStatus.RETURNED


def test_active_loans_and_history(service, add_book, clock):
    for book_id in ("b1", "b2", "b3"):
        add_book(book_id)
    first = service.checkout("b1", "u1")
    clock.advance(days=1)
    second = service.checkout("b2", "u1")
    clock.advance(days=1)
    third = service.checkout("b3", "u1")
    service.return_book(second.id)
    service.checkout("b2", "u2")

    assert [l.id for l in service.get_active_loans("u1")] == [third.id, first.id]
    assert [l.id for l in service.loans.get_loan_history("u1")] == [third.id, second.id, first.id]
    assert [l.id for l in service.loans.get_loan_history("u1", limit=1)] == [third.id]


def test_renew_out_of_range_fails_cleanly(service, b1):
    loan = service.checkout("b1", "u1")
    with pytest.raises(ValidationFailed):
        service.renew(loan.id, 5_000_000)
    assert service.loans.get_loan(loan.id).due_date == loan.due_date


def test_racing_checkouts_at_the_limit_admit_one(service, add_book):
    for i in range(6):
        add_book(f"b{i}")
    for i in range(4):
        service.checkout(f"b{i}", "u1")
    barrier = threading.Barrier(2)
    outcomes = []

    def attempt(book_id):
        barrier.wait()
        try:
            outcomes.append(service.checkout(book_id, "u1"))
        except BorrowLimitExceeded as exc:
            outcomes.append(exc)

    threads = [threading.Thread(target=attempt, args=(book_id,)) for book_id in ("b4", "b5")]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(outcomes) == 2
    assert len([o for o in outcomes if isinstance(o, BorrowLimitExceeded)]) == 1
    assert service.loans.count_active_loans("u1") == 5
    lent = next(o for o in outcomes if not isinstance(o, BorrowLimitExceeded)).book_id
    refused = ({"b4", "b5"} - {lent}).pop()
    assert service.catalog.get_book(lent).available is False
    assert service.catalog.get_book(refused).available is True


def test_watch_active_loans_follows_checkout_and_return(service, add_book, clock):
    add_book("b1")
    add_book("b2")
    stream = service.watch_active_loans("u1")
    assert stream.next(timeout=1) == []

    first = service.checkout("b1", "u1")
    assert [l.id for l in stream.next(timeout=1)] == [first.id]

    clock.advance(days=1)
    second = service.checkout("b2", "u1")
    assert [l.id for l in stream.next(timeout=1)] == [second.id, first.id]

    # another user's loan leaves this stream alone
    add_book("b3")
    service.checkout("b3", "u2")
    assert stream.next(timeout=0.05) is None

    service.return_book(first.id)
    assert [l.id for l in stream.next(timeout=1)] == [second.id]

    stream.cancel()
    assert stream.next(timeout=0.05) is None


def test_watch_loan_history_keeps_returned_loans(service, b1, clock):
    stream = service.loans.watch_loan_history("u1", limit=2)
    assert stream.next(timeout=1) == []

    first = service.checkout("b1", "u1")
    stream.next(timeout=1)
    service.return_book(first.id)
    history = stream.next(timeout=1)
    assert [(l.id, l.status) for l in history] == [(first.id, LoanStatus.RETURNED)]

    clock.advance(days=1)
    second = service.checkout("b1", "u1")
    clock.advance(days=1)
    service.renew(second.id, 3)
    updates = iter(lambda: stream.next(timeout=0.2), None)
    latest = list(updates)[-1]
    assert [l.id for l in latest] == [second.id, first.id]
    assert latest[0].due_date == second.due_date + timedelta(days=3)
    stream.cancel()


def test_watch_rejects_bad_user_id(service):
    with pytest.raises(ValidationFailed):
        service.watch_active_loans("")
