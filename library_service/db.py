import logging
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .errors import StorageFailure
from .models import Base

logger = logging.getLogger(__name__)


def make_store(database_uri, echo=False):
    """
    Build the session factory every core operation receives as its store.
    Creates tables if not present.
    """
    connect_args = {}
    if database_uri.startswith("sqlite"):
        connect_args["check_same_thread"] = False

    engine = create_engine(database_uri, echo=echo, future=True, connect_args=connect_args)

    if engine.dialect.name == "sqlite":
        @event.listens_for(engine, "connect")
        def _enable_sqlite_fks(dbapi_conn, _record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


@contextmanager
def unit_of_work(store):
    """
    One session, one transaction: commit on clean exit, roll back on any
    exception. Driver errors surface as StorageFailure.
    """
    session = store()
    try:
        yield session
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        logger.exception("Unit of work rolled back")
        raise StorageFailure(f"Database error: {exc.__class__.__name__}") from exc
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
