import contextlib
import logging
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from exceptions.exceptions import DatabaseError
from librarian.config import settings

logger = logging.getLogger(__name__)


def make_engine(url: str) -> Engine:
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": 30}
    engine = create_engine(url, connect_args=connect_args)
    if engine.dialect.name == "sqlite":
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


engine = make_engine(settings.database_url)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(bind: Engine = engine):
    from librarian.models import Base

    Base.metadata.create_all(bind=bind)


@contextlib.contextmanager
def atomic(db: Session, operation: str):
    """Run a unit of work that either commits whole or leaves no trace.

    Any exception rolls the session back. Store failures are logged with
    the driver's text and re-raised as ``DatabaseError`` so callers never
    see it.
    """
    try:
        yield db
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Rolled back {operation}: {e}")
        raise DatabaseError(operation, str(e))
    except Exception:
        db.rollback()
        raise
