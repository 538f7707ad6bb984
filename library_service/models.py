from datetime import datetime, timezone

from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy import (
    CheckConstraint,
    Column,
    Integer,
    String,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Numeric,
    text,
)

Base = declarative_base()

BOOK_STATUSES = ("AVAILABLE", "UNAVAILABLE")
ACCOUNT_STATUSES = ("ACTIVE", "INACTIVE")
LIBRARIAN_ROLES = ("ADMIN", "LIBRARIAN")
LOAN_STATUSES = ("BORROWED", "RETURNED")
FINE_STATUSES = ("PENDING", "PAID", "WAIVED")


def utcnow():
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def iso(value):
    return value.isoformat() if value else None


class Book(Base):
    __tablename__ = "book"
    __table_args__ = (
        CheckConstraint(
            "available_copies >= 0 AND available_copies <= total_copies",
            name="ck_book_copies",
        ),
    )

    # PK as Integer autoincrement so SQLite happily generates IDs
    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(255), nullable=False)
    author = Column(String(255), nullable=False)
    isbn = Column(String(20), unique=True)
    publisher = Column(String(255))
    publication_year = Column(Integer)
    category = Column(String(100))
    shelf_location = Column(String(50))
    total_copies = Column(Integer, nullable=False, default=1)
    available_copies = Column(Integer, nullable=False, default=1)
    status = Column(
        Enum(*BOOK_STATUSES, name="book_status"),
        nullable=False,
        default="AVAILABLE",
    )
    added_at = Column(DateTime, nullable=False, default=utcnow)


class Member(Base):
    __tablename__ = "member"

    id = Column(Integer, primary_key=True, autoincrement=True)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    phone = Column(String(50))
    address = Column(String(255))
    membership_type = Column(String(50), nullable=False, default="REGULAR")
    password_hash = Column(String(255), nullable=False)
    status = Column(
        Enum(*ACCOUNT_STATUSES, name="member_status"),
        nullable=False,
        default="ACTIVE",
    )
    joined_at = Column(DateTime, nullable=False, default=utcnow)

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}"


class Librarian(Base):
    __tablename__ = "librarian"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(100), unique=True, nullable=False)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    role = Column(
        Enum(*LIBRARIAN_ROLES, name="librarian_role"),
        nullable=False,
        default="LIBRARIAN",
    )
    status = Column(
        Enum(*ACCOUNT_STATUSES, name="librarian_status"),
        nullable=False,
        default="ACTIVE",
    )
    created_at = Column(DateTime, nullable=False, default=utcnow)

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}"


class Loan(Base):
    """
    One physical copy on loan to one member.

    Only BORROWED and RETURNED are ever stored; OVERDUE is derived at read
    time (see ledger.current_status).
    """
    __tablename__ = "loan"
    __table_args__ = (
        # at most one open loan per (member, book)
        Index(
            "uq_loan_open_member_book",
            "member_id",
            "book_id",
            unique=True,
            sqlite_where=text("status = 'BORROWED'"),
            postgresql_where=text("status = 'BORROWED'"),
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    member_id = Column(Integer, ForeignKey("member.id"), nullable=False)
    book_id = Column(Integer, ForeignKey("book.id"), nullable=False)
    issued_at = Column(DateTime, nullable=False, default=utcnow)
    due_at = Column(DateTime, nullable=False)
    returned_at = Column(DateTime)
    status = Column(
        Enum(*LOAN_STATUSES, name="loan_status"),
        nullable=False,
        default="BORROWED",
    )
    created_by = Column(String(100))

    member = relationship("Member")
    book = relationship("Book")


class Fine(Base):
    __tablename__ = "fine"

    id = Column(Integer, primary_key=True, autoincrement=True)
    member_id = Column(Integer, ForeignKey("member.id"), nullable=False)
    loan_id = Column(Integer, ForeignKey("loan.id"), nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    paid_at = Column(DateTime)
    status = Column(
        Enum(*FINE_STATUSES, name="fine_status"),
        nullable=False,
        default="PENDING",
    )
    reason = Column(String(255))

    member = relationship("Member")
    loan = relationship("Loan")
