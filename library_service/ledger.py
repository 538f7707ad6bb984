"""
Borrow ledger: issuing and returning loans, and the overdue fines a return
produces.

Every mutating operation takes the store (a session factory), runs inside a
single ``unit_of_work`` and either applies all of its changes or none:

* issue   -> insert Loan(BORROWED) + book.available_copies - 1
* return  -> Loan BORROWED->RETURNED + book.available_copies + 1
             (+ a PENDING Fine when the loan was past due)

Stored loan status is only ever BORROWED or RETURNED. OVERDUE and the
running fine shown for an open loan are derived on read by
``current_status`` / ``accrued_fine`` and use the same formula the return
path persists, so the figure shown at any instant is what a return at that
instant would charge. A persisted fine is never recomputed.

The copy counter and the loan status change through conditional UPDATEs
(``available_copies > 0``, ``status = 'BORROWED'``) rather than a read then
a write, so the database serialises racing issues and returns even where
``FOR UPDATE`` is ignored (SQLite).
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from .catalog import adjust_available_copies
from .db import unit_of_work
from .errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from .filters import (
    DateRange,
    Equals,
    OverdueOnly,
    apply_filters,
    date_arg,
    int_arg,
    paginate,
)
from .models import Book, Fine, Loan, Member, iso, utcnow

logger = logging.getLogger(__name__)

LOAN_PERIOD_DAYS = 14
FINE_PER_DAY = Decimal("1.00")
SETTLED_FINE_STATUSES = ("PAID", "WAIVED")

_ONE_DAY = timedelta(days=1)
_CENTS = Decimal("0.01")


@dataclass(frozen=True)
class ReturnResult:
    loan_id: int
    fine_amount: Decimal
    was_overdue: bool
    fine_id: Optional[int] = None


# ----------------- derivation (read path) -----------------

def days_overdue(due_at, now):
    """Elapsed days past due, rounded up (30 hours late -> 2). 0 if not late."""
    if not due_at < now:
        return 0
    days, remainder = divmod(now - due_at, _ONE_DAY)
    return days + (1 if remainder else 0)


def accrued_fine(due_at, now, rate=FINE_PER_DAY):
    return (Decimal(days_overdue(due_at, now)) * Decimal(rate)).quantize(_CENTS)


def current_status(loan, now):
    if loan.status == "RETURNED":
        return "RETURNED"
    return "OVERDUE" if loan.due_at < now else "BORROWED"


def money(amount):
    return str(Decimal(amount).quantize(_CENTS))


def loan_to_dict(loan, now, rate=FINE_PER_DAY):
    status = current_status(loan, now)
    if status == "OVERDUE":
        late_days = days_overdue(loan.due_at, now)
        fine = accrued_fine(loan.due_at, now, rate)
    else:
        late_days = 0
        fine = Decimal("0")

    return {
        "transaction_id": loan.id,
        "member_id": loan.member_id,
        "member_name": loan.member.full_name,
        "email": loan.member.email,
        "book_id": loan.book_id,
        "title": loan.book.title,
        "author": loan.book.author,
        "isbn": loan.book.isbn,
        "issue_date": iso(loan.issued_at),
        "due_date": iso(loan.due_at),
        "return_date": iso(loan.returned_at),
        "status": loan.status,
        "current_status": status,
        "days_overdue": late_days,
        "fine_amount": money(fine),
        "created_by": loan.created_by,
    }


def fine_to_dict(fine):
    loan = fine.loan
    return {
        "fine_id": fine.id,
        "member_id": fine.member_id,
        "member_name": fine.member.full_name,
        "transaction_id": fine.loan_id,
        "fine_amount": money(fine.amount),
        "fine_date": iso(fine.created_at),
        "paid_date": iso(fine.paid_at),
        "status": fine.status,
        "reason": fine.reason,
        "issue_date": iso(loan.issued_at),
        "due_date": iso(loan.due_at),
        "title": loan.book.title,
        "author": loan.book.author,
    }


# ----------------- issue / return -----------------

def issue_loan(store, member_id, book_id, actor, due_at=None, *, now=None,
               loan_days=LOAN_PERIOD_DAYS):
    """
    Lend one copy of ``book_id`` to ``member_id``.

    Checks, first failure wins: member exists, member ACTIVE, book exists,
    book flagged AVAILABLE, a copy is on the shelf, no open loan of this
    book for this member. Member and book rows are locked for the rest of
    the unit of work.
    """
    now = now or utcnow()

    with unit_of_work(store) as session:
        member = session.execute(
            select(Member).where(Member.id == member_id).with_for_update()
        ).scalar_one_or_none()
        if member is None:
            raise NotFoundError("Member not found")
        if member.status != "ACTIVE":
            raise InvalidStateError("Member account is not active")

        book = session.execute(
            select(Book).where(Book.id == book_id).with_for_update()
        ).scalar_one_or_none()
        if book is None:
            raise NotFoundError("Book not found")
        if book.status != "AVAILABLE":
            raise InvalidStateError("Book is not available for borrowing")
        if book.available_copies <= 0:
            raise InvalidStateError("No copies available")

        open_loan = session.execute(
            select(Loan.id).where(
                (Loan.member_id == member_id)
                & (Loan.book_id == book_id)
                & (Loan.status == "BORROWED")
            )
        ).first()
        if open_loan is not None:
            raise ConflictError("Member already has this book borrowed")

        loan = Loan(
            member_id=member_id,
            book_id=book_id,
            issued_at=now,
            due_at=due_at or now + timedelta(days=loan_days),
            status="BORROWED",
            created_by=actor,
        )
        adjust_available_copies(session, book_id, -1)
        session.add(loan)

        try:
            session.flush()
        except IntegrityError as exc:
            # lost a race against another issue of the same book/member
            raise ConflictError("Loan conflicts with a concurrent issue") from exc

        logger.info(
            "Issued loan %s: book=%s member=%s due=%s by=%s",
            loan.id,
            book_id,
            member_id,
            loan.due_at.isoformat(),
            actor,
        )

    return loan


def _close_loan(session, loan_id, now):
    # conditional on BORROWED: of two racing returns only one matches a row
    result = session.execute(
        update(Loan)
        .where(Loan.id == loan_id, Loan.status == "BORROWED")
        .values(status="RETURNED", returned_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise InvalidStateError("Book is not currently borrowed")


def return_loan(store, loan_id, actor, *, now=None, fine_per_day=FINE_PER_DAY):
    """
    Close an open loan, put the copy back and charge for lateness.

    The fine is days_overdue(due, now) * fine_per_day, fixed at this
    moment.
    """
    now = now or utcnow()

    with unit_of_work(store) as session:
        loan = session.execute(
            select(Loan).where(Loan.id == loan_id).with_for_update()
        ).scalar_one_or_none()
        if loan is None:
            raise NotFoundError("Transaction not found")
        if loan.status != "BORROWED":
            raise InvalidStateError("Book is not currently borrowed")

        _close_loan(session, loan_id, now)
        adjust_available_copies(session, loan.book_id, 1)

        was_overdue = loan.due_at < now
        fine = None
        amount = Decimal("0.00")
        if was_overdue:
            late_days = days_overdue(loan.due_at, now)
            amount = accrued_fine(loan.due_at, now, fine_per_day)
            fine = Fine(
                member_id=loan.member_id,
                loan_id=loan.id,
                amount=amount,
                created_at=now,
                status="PENDING",
                reason=f"Overdue fine for {late_days} days",
            )
            session.add(fine)

        session.flush()
        logger.info(
            "Returned loan %s: book=%s overdue=%s fine=%s by=%s",
            loan.id,
            loan.book_id,
            was_overdue,
            amount,
            actor,
        )

    return ReturnResult(
        loan_id=loan.id,
        fine_amount=amount,
        was_overdue=was_overdue,
        fine_id=fine.id if fine is not None else None,
    )


# ----------------- fines -----------------

def set_fine_status(store, fine_id, status, *, now=None):
    """
    Settle a PENDING fine as PAID or WAIVED.

    Repeating the current status is a no-op (paid_at keeps its first
    value); moving a settled fine to the other settled status is refused.
    The amount never changes.
    """
    if status not in SETTLED_FINE_STATUSES:
        raise ValidationError("Valid status (PAID or WAIVED) is required")
    now = now or utcnow()

    with unit_of_work(store) as session:
        fine = session.execute(
            select(Fine).where(Fine.id == fine_id).with_for_update()
        ).scalar_one_or_none()
        if fine is None:
            raise NotFoundError("Fine not found")

        if fine.status == status:
            logger.info("Fine %s already %s", fine_id, status)
        elif fine.status != "PENDING":
            raise InvalidStateError(f"Fine is already {fine.status.lower()}")
        else:
            fine.status = status
            if status == "PAID" and fine.paid_at is None:
                fine.paid_at = now
            logger.info("Fine %s marked %s", fine_id, status)

    return fine


# ----------------- read API -----------------

def get_loan(store, loan_id, *, now=None, rate=FINE_PER_DAY):
    now = now or utcnow()
    with unit_of_work(store) as session:
        loan = session.get(Loan, loan_id)
        if loan is None:
            raise NotFoundError("Transaction not found")
        return loan_to_dict(loan, now, rate)


def member_loans(store, member_id, *, now=None, rate=FINE_PER_DAY):
    now = now or utcnow()
    with unit_of_work(store) as session:
        if session.get(Member, member_id) is None:
            raise NotFoundError("Member not found")
        loans = session.execute(
            select(Loan)
            .where(Loan.member_id == member_id)
            .order_by(Loan.issued_at.desc(), Loan.id.desc())
        ).scalars().all()
        return [loan_to_dict(loan, now, rate) for loan in loans]


def member_fines(store, member_id):
    with unit_of_work(store) as session:
        if session.get(Member, member_id) is None:
            raise NotFoundError("Member not found")
        fines = session.execute(
            select(Fine)
            .where(Fine.member_id == member_id)
            .order_by(Fine.created_at.desc(), Fine.id.desc())
        ).scalars().all()
        return [fine_to_dict(f) for f in fines]


def overdue_loans(store, *, now=None, rate=FINE_PER_DAY):
    """Every open loan past its due date, most overdue first."""
    now = now or utcnow()
    with unit_of_work(store) as session:
        stmt = apply_filters(select(Loan), Loan, [OverdueOnly(now)])
        loans = session.execute(stmt.order_by(Loan.due_at.asc())).scalars().all()
        result = []
        for loan in loans:
            row = loan_to_dict(loan, now, rate)
            row["phone"] = loan.member.phone
            result.append(row)
        return result


def loan_filters(args, now):
    """Query-string arguments of the transaction list -> filter variants."""
    filters = []
    status = (args.get("status") or "").upper()
    if status == "OVERDUE":
        filters.append(OverdueOnly(now))
    elif status in ("BORROWED", "RETURNED"):
        filters.append(Equals("status", status))
    elif status:
        raise ValidationError("status must be BORROWED, RETURNED or OVERDUE")

    member_id = int_arg(args, "memberId")
    if member_id is not None:
        filters.append(Equals("member_id", member_id))
    book_id = int_arg(args, "bookId")
    if book_id is not None:
        filters.append(Equals("book_id", book_id))

    start, end = date_arg(args, "fromDate"), date_arg(args, "toDate")
    if start or end:
        filters.append(DateRange("issued_at", start, end))
    return filters


def list_loans(store, filters, page, limit, *, now=None, rate=FINE_PER_DAY):
    now = now or utcnow()
    with unit_of_work(store) as session:
        stmt = apply_filters(select(Loan), Loan, filters)
        stmt = stmt.order_by(Loan.issued_at.desc(), Loan.id.desc())
        loans, pagination = paginate(session, stmt, page, limit)
        return [loan_to_dict(loan, now, rate) for loan in loans], pagination


def fine_filters(args):
    filters = []
    status = (args.get("status") or "").upper()
    if status:
        if status not in ("PENDING",) + SETTLED_FINE_STATUSES:
            raise ValidationError("status must be PENDING, PAID or WAIVED")
        filters.append(Equals("status", status))
    member_id = int_arg(args, "memberId")
    if member_id is not None:
        filters.append(Equals("member_id", member_id))
    return filters


def list_fines(store, filters, page, limit):
    with unit_of_work(store) as session:
        stmt = apply_filters(select(Fine), Fine, filters)
        stmt = stmt.order_by(Fine.created_at.desc(), Fine.id.desc())
        fines, pagination = paginate(session, stmt, page, limit)
        return [fine_to_dict(f) for f in fines], pagination
