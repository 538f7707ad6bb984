"""
Query filters as data.

List endpoints translate their query-string arguments into a list of the
predicate variants below; ``compile_filters`` turns that list into SQLAlchemy
expressions. Every value ends up as a bound parameter.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Sequence

from sqlalchemy import and_, func, or_, select

from .errors import ValidationError


@dataclass(frozen=True)
class Search:
    """Case-insensitive substring match across several columns."""
    term: str
    columns: Sequence[str]


@dataclass(frozen=True)
class Equals:
    column: str
    value: object
    ignore_case: bool = False


@dataclass(frozen=True)
class Contains:
    column: str
    value: str


@dataclass(frozen=True)
class DateRange:
    """start <= column < end + 1 day; either bound may be open."""
    column: str
    start: Optional[datetime] = None
    end: Optional[datetime] = None


@dataclass(frozen=True)
class InStock:
    pass


@dataclass(frozen=True)
class OverdueOnly:
    now: datetime


def _column(model, name):
    col = getattr(model, name, None)
    if col is None:
        raise ValidationError(f"Unknown filter column: {name}")
    return col


def _compile_one(model, flt):
    if isinstance(flt, Search):
        like = f"%{flt.term}%"
        return or_(*[_column(model, c).ilike(like) for c in flt.columns])
    if isinstance(flt, Equals):
        col = _column(model, flt.column)
        if flt.ignore_case:
            return func.lower(col) == str(flt.value).lower()
        return col == flt.value
    if isinstance(flt, Contains):
        return _column(model, flt.column).ilike(f"%{flt.value}%")
    if isinstance(flt, DateRange):
        col = _column(model, flt.column)
        clauses = []
        if flt.start is not None:
            clauses.append(col >= flt.start)
        if flt.end is not None:
            clauses.append(col < flt.end + timedelta(days=1))
        return and_(*clauses) if clauses else None
    if isinstance(flt, InStock):
        return _column(model, "available_copies") > 0
    if isinstance(flt, OverdueOnly):
        return and_(_column(model, "status") == "BORROWED", _column(model, "due_at") < flt.now)
    raise ValidationError(f"Unsupported filter: {flt!r}")


def compile_filters(model, filters):
    """Return the list of WHERE clauses for ``filters`` against ``model``."""
    clauses = []
    for flt in filters:
        clause = _compile_one(model, flt)
        if clause is not None:
            clauses.append(clause)
    return clauses


def apply_filters(stmt, model, filters):
    clauses = compile_filters(model, filters)
    if clauses:
        stmt = stmt.where(*clauses)
    return stmt


# ----------------- argument parsing -----------------

def int_arg(args, name, default=None):
    raw = args.get(name)
    if raw in (None, ""):
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer")


def date_arg(args, name):
    raw = args.get(name)
    if not raw:
        return None
    try:
        return datetime.strptime(raw, "%Y-%m-%d")
    except ValueError:
        raise ValidationError(f"{name} must be a date (YYYY-MM-DD)")


def parse_pagination(args, default_limit=10, max_limit=100):
    page = int_arg(args, "page", 1)
    limit = int_arg(args, "limit", default_limit)
    if page < 1 or limit < 1:
        raise ValidationError("page and limit must be positive")
    return page, min(limit, max_limit)


def paginate(session, stmt, page, limit):
    """Run ``stmt`` for one page; returns (rows, pagination dict)."""
    count_stmt = select(func.count()).select_from(stmt.order_by(None).subquery())
    total = session.execute(count_stmt).scalar_one()
    rows = session.execute(stmt.offset((page - 1) * limit).limit(limit)).scalars().all()
    return rows, {
        "total": total,
        "page": page,
        "limit": limit,
        "pages": math.ceil(total / limit) if total else 0,
    }
