import logging

from sqlalchemy import func, select, update

from .db import unit_of_work
from .errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from .filters import Contains, Equals, InStock, Search, apply_filters, paginate
from .models import BOOK_STATUSES, Book, Loan, iso

logger = logging.getLogger(__name__)

BOOK_FIELDS = (
    "title",
    "author",
    "isbn",
    "publisher",
    "publication_year",
    "category",
    "shelf_location",
)


def adjust_available_copies(session, book_id, delta):
    """
    Move ``available_copies`` by ``delta`` within 0..total_copies.

    One conditional UPDATE, so two sessions racing on the same book cannot
    both take the last copy; the loser sees rowcount 0.
    """
    new_value = Book.available_copies + delta
    result = session.execute(
        update(Book)
        .where(Book.id == book_id, new_value >= 0, new_value <= Book.total_copies)
        .values(available_copies=new_value)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        if delta < 0:
            raise InvalidStateError("No copies available")
        raise InvalidStateError("All copies are already on the shelf")


def book_to_dict(book, borrowed_count=None):
    data = {
        "book_id": book.id,
        "title": book.title,
        "author": book.author,
        "isbn": book.isbn,
        "publisher": book.publisher,
        "publication_year": book.publication_year,
        "category": book.category,
        "shelf_location": book.shelf_location,
        "total_copies": book.total_copies,
        "available_copies": book.available_copies,
        "status": book.status,
        "availability_status": "AVAILABLE" if book.available_copies > 0 else "NOT_AVAILABLE",
        "added_date": iso(book.added_at),
    }
    if borrowed_count is not None:
        data["borrowed_count"] = borrowed_count
    return data


def _borrowed_count(session, book_id):
    return session.execute(
        select(func.count(Loan.id)).where(
            (Loan.book_id == book_id) & (Loan.status == "BORROWED")
        )
    ).scalar_one()


def _copies(value, name="total_copies"):
    try:
        copies = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer")
    if copies < 0:
        raise ValidationError(f"{name} must not be negative")
    return copies


def _year(value):
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError("publication_year must be an integer")


def _ensure_isbn_free(session, isbn, book_id=None):
    q = select(Book.id).where(Book.isbn == isbn)
    if book_id is not None:
        q = q.where(Book.id != book_id)
    if session.execute(q).first() is not None:
        raise ConflictError("ISBN already exists")


# ----------------- reads -----------------

def book_filters(args):
    filters = []
    if args.get("search"):
        filters.append(Search(args["search"], ("title", "author", "isbn")))
    if args.get("category"):
        filters.append(Equals("category", args["category"], ignore_case=True))
    if args.get("author"):
        filters.append(Contains("author", args["author"]))
    if args.get("status"):
        filters.append(Equals("status", args["status"].upper()))
    if str(args.get("available", "")).lower() == "true":
        filters.append(InStock())
    return filters


def list_books(store, filters, page, limit):
    with unit_of_work(store) as session:
        stmt = apply_filters(select(Book), Book, filters).order_by(Book.title, Book.id)
        books, pagination = paginate(session, stmt, page, limit)
        return [book_to_dict(b) for b in books], pagination


def get_book(store, book_id):
    with unit_of_work(store) as session:
        book = session.get(Book, book_id)
        if book is None:
            raise NotFoundError("Book not found")
        return book_to_dict(book, borrowed_count=_borrowed_count(session, book_id))


def list_categories(store):
    with unit_of_work(store) as session:
        rows = session.execute(
            select(Book.category)
            .where(Book.category.is_not(None))
            .distinct()
            .order_by(Book.category)
        ).scalars().all()
        return list(rows)


def list_authors(store):
    with unit_of_work(store) as session:
        return list(
            session.execute(select(Book.author).distinct().order_by(Book.author)).scalars().all()
        )


# ----------------- writes -----------------

def create_book(store, data):
    """
    Librarian endpoint – add a title with ``total_copies`` copies on the shelf.
    """
    title = data.get("title")
    author = data.get("author")
    if not title or not author:
        raise ValidationError("Title and author are required")
    total = _copies(1 if data.get("total_copies") in (None, "") else data["total_copies"])

    with unit_of_work(store) as session:
        isbn = data.get("isbn") or None
        if isbn:
            _ensure_isbn_free(session, isbn)

        book = Book(
            title=title,
            author=author,
            isbn=isbn,
            publisher=data.get("publisher"),
            publication_year=_year(data.get("publication_year")),
            category=data.get("category"),
            shelf_location=data.get("shelf_location"),
            total_copies=total,
            available_copies=total,
            status="AVAILABLE",
        )
        session.add(book)
        session.flush()
        logger.info("Created book %s (%s), %s copies", book.id, title, total)
        return book_to_dict(book)


def update_book(store, book_id, data):
    """
    Partial update. A new total_copies shifts available_copies by the same
    difference; the total can never drop below the copies out on loan.
    """
    status = data.get("status")
    if status and status not in BOOK_STATUSES:
        raise ValidationError("status must be AVAILABLE or UNAVAILABLE")

    with unit_of_work(store) as session:
        book = session.execute(
            select(Book).where(Book.id == book_id).with_for_update()
        ).scalar_one_or_none()
        if book is None:
            raise NotFoundError("Book not found")

        if data.get("isbn"):
            _ensure_isbn_free(session, data["isbn"], book_id)

        for field in BOOK_FIELDS:
            value = data.get(field)
            if value in (None, ""):
                continue
            setattr(book, field, _year(value) if field == "publication_year" else value)
        if status:
            book.status = status

        if data.get("total_copies") is not None:
            new_total = _copies(data["total_copies"])
            on_loan = Book.total_copies - Book.available_copies
            # SET expressions read the pre-update row, so concurrent issues are counted
            result = session.execute(
                update(Book)
                .where(Book.id == book_id, on_loan <= new_total)
                .values(available_copies=new_total - on_loan, total_copies=new_total)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise InvalidStateError(
                    "Cannot reduce total copies below the number currently on loan"
                )
            session.flush()
            session.refresh(book)

        logger.info("Updated book %s", book_id)
        return book_to_dict(book)


def delete_book(store, book_id):
    with unit_of_work(store) as session:
        book = session.execute(
            select(Book).where(Book.id == book_id).with_for_update()
        ).scalar_one_or_none()
        if book is None:
            raise NotFoundError("Book not found")

        if _borrowed_count(session, book_id) > 0:
            raise InvalidStateError("Cannot delete book with active borrowings")

        history = session.execute(select(Loan.id).where(Loan.book_id == book_id)).first()
        if history is not None:
            raise ConflictError(
                "Book has loan history; mark it UNAVAILABLE instead of deleting"
            )

        session.delete(book)
        logger.info("Deleted book %s", book_id)
