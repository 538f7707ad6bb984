import threading
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from library_service import ledger
from library_service.db import unit_of_work
from library_service.errors import (
    ConflictError,
    InvalidStateError,
    LibraryError,
    NotFoundError,
    StorageFailure,
)
from library_service.models import Book, Fine, Loan

NOW = datetime(2026, 3, 10, 12, 0, 0)


def _storage_error(*args, **kwargs):
    raise OperationalError("UPDATE book", {}, Exception("disk I/O error"))


# ----------------- issue -----------------

def test_issue_decrements_copies_and_uses_default_loan_period(store, add_book, add_member, fetch, count):
    book_id = add_book(total=3)
    member_id = add_member()

    loan = ledger.issue_loan(store, member_id, book_id, "librarian1", now=NOW)

    assert loan.id is not None
    assert loan.due_at == NOW + timedelta(days=14)
    assert loan.status == "BORROWED"
    assert loan.created_by == "librarian1"
    assert fetch(Book, book_id).available_copies == 2
    assert count(Loan) == 1
    assert count(Fine) == 0


def test_issue_honours_explicit_due_date(store, add_book, add_member):
    due = NOW + timedelta(days=3)
    loan = ledger.issue_loan(store, add_member(), add_book(), "lib", due_at=due, now=NOW)
    assert loan.due_at == due


def test_issue_custom_loan_period(store, add_book, add_member):
    loan = ledger.issue_loan(store, add_member(), add_book(), "lib", now=NOW, loan_days=7)
    assert loan.due_at == NOW + timedelta(days=7)


def test_issue_unknown_member(store, add_book, fetch, count):
    book_id = add_book()
    with pytest.raises(NotFoundError, match="Member not found"):
        ledger.issue_loan(store, 999, book_id, "lib", now=NOW)
    assert fetch(Book, book_id).available_copies == 1
    assert count(Loan) == 0


def test_issue_inactive_member(store, add_book, add_member, count):
    with pytest.raises(InvalidStateError, match="not active"):
        ledger.issue_loan(store, add_member(status="INACTIVE"), add_book(), "lib", now=NOW)
    assert count(Loan) == 0


def test_member_checks_run_before_book_checks(store, add_member):
    # inactive member and missing book: the member check wins
    with pytest.raises(InvalidStateError):
        ledger.issue_loan(store, add_member(status="INACTIVE"), 999, "lib", now=NOW)


def test_issue_unknown_book(store, add_member):
    with pytest.raises(NotFoundError, match="Book not found"):
        ledger.issue_loan(store, add_member(), 999, "lib", now=NOW)


def test_issue_book_flagged_unavailable(store, add_book, add_member, fetch):
    book_id = add_book(total=2, status="UNAVAILABLE")
    with pytest.raises(InvalidStateError, match="not available for borrowing"):
        ledger.issue_loan(store, add_member(), book_id, "lib", now=NOW)
    assert fetch(Book, book_id).available_copies == 2


def test_issue_without_copies(store, add_book, add_member):
    book_id = add_book(total=2, available=0)
    with pytest.raises(InvalidStateError, match="No copies available"):
        ledger.issue_loan(store, add_member(), book_id, "lib", now=NOW)


def test_issue_same_book_twice_to_member_conflicts(store, add_book, add_member, fetch, count):
    book_id = add_book(total=5)
    member_id = add_member()
    ledger.issue_loan(store, member_id, book_id, "lib", now=NOW)

    with pytest.raises(ConflictError, match="already has this book"):
        ledger.issue_loan(store, member_id, book_id, "lib", now=NOW)

    assert fetch(Book, book_id).available_copies == 4
    assert count(Loan, member_id=member_id, book_id=book_id, status="BORROWED") == 1


def test_reissue_after_return_is_allowed(store, add_book, add_member, count):
    book_id = add_book()
    member_id = add_member()
    first = ledger.issue_loan(store, member_id, book_id, "lib", now=NOW)
    ledger.return_loan(store, first.id, "lib", now=NOW + timedelta(days=1))

    ledger.issue_loan(store, member_id, book_id, "lib", now=NOW + timedelta(days=2))
    assert count(Loan, member_id=member_id, book_id=book_id) == 2
    assert count(Loan, status="BORROWED") == 1


def test_issue_rolls_back_when_copy_update_fails(store, add_book, add_member, fetch, count, monkeypatch):
    book_id = add_book()
    monkeypatch.setattr(ledger, "adjust_available_copies", _storage_error)

    with pytest.raises(StorageFailure):
        ledger.issue_loan(store, add_member(), book_id, "lib", now=NOW)

    assert count(Loan) == 0
    assert fetch(Book, book_id).available_copies == 1


def test_store_rejects_second_open_loan_for_same_pair(store, add_book, add_member):
    book_id = add_book(total=2)
    member_id = add_member()
    with pytest.raises(StorageFailure):
        with unit_of_work(store) as session:
            for _ in range(2):
                session.add(
                    Loan(member_id=member_id, book_id=book_id, due_at=NOW, status="BORROWED")
                )


def test_store_rejects_available_above_total(store, add_book):
    with pytest.raises(StorageFailure):
        add_book(total=1, available=2)


# ----------------- return -----------------

def test_single_copy_scenario(store, add_book, add_member, fetch, count):
    book_id = add_book(total=1)
    member_id = add_member()

    loan = ledger.issue_loan(store, member_id, book_id, "lib", now=NOW)
    assert fetch(Book, book_id).available_copies == 0
    assert loan.status == "BORROWED"
    assert loan.due_at == NOW + timedelta(days=14)

    with pytest.raises(InvalidStateError, match="No copies available"):
        ledger.issue_loan(store, add_member(), book_id, "lib", now=NOW)

    result = ledger.return_loan(store, loan.id, "lib", now=NOW + timedelta(days=5))

    assert result.fine_amount == Decimal("0.00")
    assert result.was_overdue is False
    assert result.fine_id is None
    assert fetch(Book, book_id).available_copies == 1
    stored = fetch(Loan, loan.id)
    assert stored.status == "RETURNED"
    assert stored.returned_at == NOW + timedelta(days=5)
    assert count(Fine) == 0


def test_return_overdue_creates_pending_fine(store, add_book, add_member, fetch):
    member_id = add_member()
    loan = ledger.issue_loan(
        store, member_id, add_book(), "lib", due_at=NOW - timedelta(days=3), now=NOW - timedelta(days=10)
    )

    result = ledger.return_loan(store, loan.id, "lib", now=NOW)

    assert result.was_overdue is True
    assert result.fine_amount == Decimal("3.00")
    fine = fetch(Fine, result.fine_id)
    assert fine.amount == Decimal("3.00")
    assert fine.status == "PENDING"
    assert fine.member_id == member_id
    assert fine.loan_id == loan.id
    assert fine.reason == "Overdue fine for 3 days"
    assert fine.paid_at is None


def test_partial_day_late_rounds_up(store, add_book, add_member):
    due = NOW - timedelta(hours=30)
    loan = ledger.issue_loan(store, add_member(), add_book(), "lib", due_at=due, now=due - timedelta(days=14))

    result = ledger.return_loan(store, loan.id, "lib", now=NOW)
    assert result.fine_amount == Decimal("2.00")


def test_fine_uses_configured_rate(store, add_book, add_member):
    loan = ledger.issue_loan(
        store, add_member(), add_book(), "lib", due_at=NOW - timedelta(days=4), now=NOW - timedelta(days=18)
    )
    result = ledger.return_loan(store, loan.id, "lib", now=NOW, fine_per_day=Decimal("0.25"))
    assert result.fine_amount == Decimal("1.00")


def test_return_exactly_on_due_time_is_not_overdue(store, add_book, add_member, count):
    loan = ledger.issue_loan(store, add_member(), add_book(), "lib", due_at=NOW, now=NOW - timedelta(days=14))
    result = ledger.return_loan(store, loan.id, "lib", now=NOW)
    assert result.was_overdue is False
    assert count(Fine) == 0


def test_second_return_is_rejected_without_mutation(store, add_book, add_member, fetch):
    book_id = add_book(total=2)
    loan = ledger.issue_loan(store, add_member(), book_id, "lib", now=NOW)
    ledger.return_loan(store, loan.id, "lib", now=NOW + timedelta(days=1))

    with pytest.raises(InvalidStateError, match="not currently borrowed"):
        ledger.return_loan(store, loan.id, "lib", now=NOW + timedelta(days=30))

    assert fetch(Book, book_id).available_copies == 2
    assert fetch(Loan, loan.id).returned_at == NOW + timedelta(days=1)


def test_return_unknown_loan(store):
    with pytest.raises(NotFoundError):
        ledger.return_loan(store, 42, "lib", now=NOW)


def test_return_rolls_back_when_fine_insert_fails(store, add_book, add_member, fetch, count, monkeypatch):
    book_id = add_book()
    loan = ledger.issue_loan(
        store, add_member(), book_id, "lib", due_at=NOW - timedelta(days=2), now=NOW - timedelta(days=16)
    )
    monkeypatch.setattr(ledger, "Fine", _storage_error)

    with pytest.raises(StorageFailure):
        ledger.return_loan(store, loan.id, "lib", now=NOW)

    stored = fetch(Loan, loan.id)
    assert stored.status == "BORROWED"
    assert stored.returned_at is None
    assert fetch(Book, book_id).available_copies == 0
    assert count(Fine) == 0


def test_persisted_fine_is_not_recomputed_later(store, add_book, add_member):
    member_id = add_member()
    loan = ledger.issue_loan(
        store, member_id, add_book(), "lib", due_at=NOW - timedelta(days=3), now=NOW - timedelta(days=17)
    )
    ledger.return_loan(store, loan.id, "lib", now=NOW)

    # months later the stored fine and the loan view are unchanged
    later = NOW + timedelta(days=90)
    fines = ledger.member_fines(store, member_id)
    assert [f["fine_amount"] for f in fines] == ["3.00"]

    [view] = ledger.member_loans(store, member_id, now=later)
    assert view["current_status"] == "RETURNED"
    assert view["fine_amount"] == "0.00"


def test_copy_count_stays_within_bounds(store, add_book, add_member, fetch):
    book_id = add_book(total=2)
    members = [add_member() for _ in range(3)]

    loans = []
    for member_id in members:
        try:
            loans.append(ledger.issue_loan(store, member_id, book_id, "lib", now=NOW))
        except InvalidStateError:
            pass
        book = fetch(Book, book_id)
        assert 0 <= book.available_copies <= book.total_copies

    assert len(loans) == 2
    for loan in loans:
        ledger.return_loan(store, loan.id, "lib", now=NOW)
        book = fetch(Book, book_id)
        assert 0 <= book.available_copies <= book.total_copies
    assert fetch(Book, book_id).available_copies == 2


# ----------------- concurrency -----------------

def _pause_before(monkeypatch, name, parties=2):
    """Make ``parties`` threads meet right before ``ledger.<name>`` runs."""
    barrier = threading.Barrier(parties, timeout=10)
    original = getattr(ledger, name)

    def wrapper(*args, **kwargs):
        barrier.wait()
        return original(*args, **kwargs)

    monkeypatch.setattr(ledger, name, wrapper)


def _run_together(*calls):
    results = [None] * len(calls)

    def run(i, call):
        try:
            call()
            results[i] = "ok"
        except LibraryError as exc:
            results[i] = exc.code

    threads = [threading.Thread(target=run, args=(i, call)) for i, call in enumerate(calls)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)
    return sorted(results, key=str)


def test_racing_issues_of_last_copy(store, add_book, add_member, fetch, count, monkeypatch):
    book_id = add_book(total=1)
    first, second = add_member(), add_member()
    # both threads have passed the availability check before either takes the copy
    _pause_before(monkeypatch, "adjust_available_copies")

    results = _run_together(
        lambda: ledger.issue_loan(store, first, book_id, "lib", now=NOW),
        lambda: ledger.issue_loan(store, second, book_id, "lib", now=NOW),
    )

    assert results == ["INVALID_STATE", "ok"]
    assert count(Loan, book_id=book_id, status="BORROWED") == 1
    assert fetch(Book, book_id).available_copies == 0


def test_racing_returns_of_same_loan(store, add_book, add_member, fetch, count, monkeypatch):
    book_id = add_book(total=1)
    loan = ledger.issue_loan(
        store, add_member(), book_id, "lib", due_at=NOW - timedelta(days=2), now=NOW - timedelta(days=16)
    )
    _pause_before(monkeypatch, "_close_loan")

    results = _run_together(
        lambda: ledger.return_loan(store, loan.id, "lib", now=NOW),
        lambda: ledger.return_loan(store, loan.id, "lib", now=NOW),
    )

    assert results == ["INVALID_STATE", "ok"]
    assert count(Fine) == 1
    assert fetch(Book, book_id).available_copies == 1
    assert fetch(Loan, loan.id).status == "RETURNED"
