import itertools

import pytest
from sqlalchemy import func, select

from library_service.app import create_app
from library_service.db import make_store, unit_of_work
from library_service.models import Book, Member

_emails = itertools.count(1)


@pytest.fixture
def store(tmp_path):
    # Fresh SQLite file per test
    return make_store(f"sqlite:///{tmp_path / 'library_test.db'}")


@pytest.fixture
def add_book(store):
    def _add(total=1, available=None, status="AVAILABLE", **fields):
        with unit_of_work(store) as session:
            book = Book(
                title=fields.get("title", "Clean Code"),
                author=fields.get("author", "Robert C. Martin"),
                isbn=fields.get("isbn"),
                category=fields.get("category"),
                total_copies=total,
                available_copies=total if available is None else available,
                status=status,
            )
            session.add(book)
            session.flush()
            return book.id

    return _add


@pytest.fixture
def add_member(store):
    def _add(status="ACTIVE", **fields):
        with unit_of_work(store) as session:
            member = Member(
                first_name=fields.get("first_name", "Alice"),
                last_name=fields.get("last_name", "Example"),
                email=fields.get("email", f"member{next(_emails)}@example.com"),
                password_hash="not-a-real-hash",
                status=status,
            )
            session.add(member)
            session.flush()
            return member.id

    return _add


@pytest.fixture
def fetch(store):
    """Load a row in its own session, as committed."""

    def _fetch(model, pk):
        with unit_of_work(store) as session:
            return session.get(model, pk)

    return _fetch


@pytest.fixture
def count(store):
    def _count(model, **where):
        with unit_of_work(store) as session:
            stmt = select(func.count()).select_from(model)
            for column, value in where.items():
                stmt = stmt.where(getattr(model, column) == value)
            return session.execute(stmt).scalar_one()

    return _count


# ----------------- HTTP -----------------

ADMIN_PASSWORD = "admin-pass"


@pytest.fixture
def app(tmp_path):
    return create_app(
        {
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'api_test.db'}",
            "DEFAULT_ADMIN_USERNAME": "admin",
            "DEFAULT_ADMIN_PASSWORD": ADMIN_PASSWORD,
            "JWT_SECRET": "test-secret",
        }
    )


@pytest.fixture
def client(app):
    return app.test_client()


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers(client):
    resp = client.post(
        "/api/auth/admin-login",
        json={"username": "admin", "password": ADMIN_PASSWORD},
    )
    assert resp.status_code == 200
    return bearer(resp.get_json()["token"])
