from datetime import datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest

from library_service import ledger
from library_service.errors import NotFoundError, ValidationError
from library_service.models import Fine, Loan

NOW = datetime(2026, 3, 10, 12, 0, 0)


@pytest.mark.parametrize(
    "late, expected",
    [
        (timedelta(days=-1), 0),
        (timedelta(0), 0),
        (timedelta(seconds=1), 1),
        (timedelta(hours=24), 1),
        (timedelta(hours=30), 2),
        (timedelta(days=3), 3),
        (timedelta(days=3, microseconds=1), 4),
    ],
)
def test_days_overdue_rounds_elapsed_time_up(late, expected):
    assert ledger.days_overdue(NOW - late, NOW) == expected


def test_accrued_fine_is_zero_before_due():
    assert ledger.accrued_fine(NOW + timedelta(days=2), NOW) == Decimal("0.00")


def test_accrued_fine_applies_rate():
    assert ledger.accrued_fine(NOW - timedelta(hours=49), NOW, Decimal("0.50")) == Decimal("1.50")


def test_current_status():
    open_future = SimpleNamespace(status="BORROWED", due_at=NOW + timedelta(days=1))
    open_past = SimpleNamespace(status="BORROWED", due_at=NOW - timedelta(days=1))
    returned_past = SimpleNamespace(status="RETURNED", due_at=NOW - timedelta(days=30))

    assert ledger.current_status(open_future, NOW) == "BORROWED"
    assert ledger.current_status(open_past, NOW) == "OVERDUE"
    assert ledger.current_status(returned_past, NOW) == "RETURNED"


def test_displayed_fine_matches_what_return_charges(store, add_book, add_member):
    due = NOW - timedelta(days=5, hours=3)
    loan = ledger.issue_loan(store, add_member(), add_book(), "lib", due_at=due, now=due - timedelta(days=14))

    view = ledger.get_loan(store, loan.id, now=NOW)
    assert view["current_status"] == "OVERDUE"
    assert view["days_overdue"] == 6
    assert view["fine_amount"] == "6.00"

    result = ledger.return_loan(store, loan.id, "lib", now=NOW)
    assert ledger.money(result.fine_amount) == view["fine_amount"]


def test_reading_an_overdue_loan_does_not_mutate(store, add_book, add_member, fetch, count):
    member_id = add_member()
    loan = ledger.issue_loan(
        store, member_id, add_book(), "lib", due_at=NOW - timedelta(days=2), now=NOW - timedelta(days=16)
    )

    ledger.get_loan(store, loan.id, now=NOW)
    ledger.member_loans(store, member_id, now=NOW)
    ledger.overdue_loans(store, now=NOW)

    assert fetch(Loan, loan.id).status == "BORROWED"
    assert count(Fine) == 0


def test_member_loans_carry_derived_fields(store, add_book, add_member):
    member_id = add_member()
    on_time = ledger.issue_loan(store, member_id, add_book(title="A"), "lib", now=NOW)
    late = ledger.issue_loan(
        store, member_id, add_book(title="B"), "lib", due_at=NOW - timedelta(days=1), now=NOW - timedelta(days=1)
    )

    rows = {r["transaction_id"]: r for r in ledger.member_loans(store, member_id, now=NOW)}

    assert rows[on_time.id]["current_status"] == "BORROWED"
    assert rows[on_time.id]["fine_amount"] == "0.00"
    assert rows[late.id]["current_status"] == "OVERDUE"
    assert rows[late.id]["fine_amount"] == "1.00"
    assert rows[late.id]["title"] == "B"


def test_member_loans_unknown_member(store):
    with pytest.raises(NotFoundError):
        ledger.member_loans(store, 404, now=NOW)


def test_overdue_loans_lists_open_past_due_only(store, add_book, add_member):
    member_id = add_member()
    ledger.issue_loan(store, member_id, add_book(title="Current"), "lib", now=NOW)
    very_late = ledger.issue_loan(
        store, member_id, add_book(title="Very late"), "lib", due_at=NOW - timedelta(days=9), now=NOW - timedelta(days=20)
    )
    late = ledger.issue_loan(
        store, member_id, add_book(title="Late"), "lib", due_at=NOW - timedelta(days=2), now=NOW - timedelta(days=20)
    )
    returned = ledger.issue_loan(
        store, member_id, add_book(title="Returned"), "lib", due_at=NOW - timedelta(days=5), now=NOW - timedelta(days=20)
    )
    ledger.return_loan(store, returned.id, "lib", now=NOW - timedelta(days=1))

    rows = ledger.overdue_loans(store, now=NOW)

    assert [r["transaction_id"] for r in rows] == [very_late.id, late.id]
    assert rows[0]["days_overdue"] == 9
    assert rows[0]["fine_amount"] == "9.00"


def test_list_loans_filters_by_derived_status(store, add_book, add_member):
    member_id = add_member()
    ledger.issue_loan(store, member_id, add_book(), "lib", now=NOW)
    late = ledger.issue_loan(
        store, member_id, add_book(), "lib", due_at=NOW - timedelta(days=1), now=NOW - timedelta(days=2)
    )

    overdue_filters = ledger.loan_filters({"status": "overdue"}, NOW)
    rows, pagination = ledger.list_loans(store, overdue_filters, 1, 10, now=NOW)
    assert [r["transaction_id"] for r in rows] == [late.id]
    assert pagination == {"total": 1, "page": 1, "limit": 10, "pages": 1}

    rows, _ = ledger.list_loans(store, ledger.loan_filters({"status": "BORROWED"}, NOW), 1, 10, now=NOW)
    assert len(rows) == 2


def test_loan_filters_reject_unknown_status():
    with pytest.raises(ValidationError):
        ledger.loan_filters({"status": "LOST"}, NOW)


def test_list_loans_paginates_newest_first(store, add_book, add_member):
    member_id = add_member()
    ids = [
        ledger.issue_loan(store, member_id, add_book(), "lib", now=NOW + timedelta(minutes=i)).id
        for i in range(3)
    ]

    page1, pagination = ledger.list_loans(store, [], 1, 2, now=NOW)
    page2, _ = ledger.list_loans(store, [], 2, 2, now=NOW)

    assert [r["transaction_id"] for r in page1] == [ids[2], ids[1]]
    assert [r["transaction_id"] for r in page2] == [ids[0]]
    assert pagination["total"] == 3
    assert pagination["pages"] == 2
