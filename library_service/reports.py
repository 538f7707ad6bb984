from sqlalchemy import func, select

from .db import unit_of_work
from .ledger import money
from .models import Book, Fine, Loan, Member, iso, utcnow


def dashboard(store, now=None):
    """Counters and short lists for the librarian landing page."""
    now = now or utcnow()

    with unit_of_work(store) as session:
        def count(stmt):
            return session.execute(stmt).scalar_one()

        pending_fines = session.execute(
            select(func.coalesce(func.sum(Fine.amount), 0)).where(Fine.status == "PENDING")
        ).scalar_one()

        recent = session.execute(
            select(Loan).order_by(Loan.issued_at.desc(), Loan.id.desc()).limit(5)
        ).scalars().all()

        top_books = session.execute(
            select(Book.title, Book.author, func.count(Loan.id).label("borrow_count"))
            .join(Loan, Loan.book_id == Book.id)
            .group_by(Book.id, Book.title, Book.author)
            .order_by(func.count(Loan.id).desc(), Book.title)
            .limit(5)
        ).all()

        return {
            "totalMembers": count(select(func.count(Member.id)).where(Member.status == "ACTIVE")),
            "totalBooks": count(select(func.count(Book.id))),
            "availableBooks": count(select(func.count(Book.id)).where(Book.available_copies > 0)),
            "borrowedBooks": count(select(func.count(Loan.id)).where(Loan.status == "BORROWED")),
            "overdueBooks": count(
                select(func.count(Loan.id)).where(
                    (Loan.status == "BORROWED") & (Loan.due_at < now)
                )
            ),
            "totalFines": money(pending_fines),
            "recentTransactions": [
                {
                    "transaction_id": loan.id,
                    "issue_date": iso(loan.issued_at),
                    "status": loan.status,
                    "member_name": loan.member.full_name,
                    "title": loan.book.title,
                    "author": loan.book.author,
                }
                for loan in recent
            ],
            "topBooks": [
                {"title": row.title, "author": row.author, "borrow_count": row.borrow_count}
                for row in top_books
            ],
        }
