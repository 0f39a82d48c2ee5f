"""
Database access

Engine and session factory for the relational store, plus the helpers the
services use to write: `transaction` commits or rolls back and translates
store rejections into StoreError subclasses, `create_record` and
`get_records` cover the plain insert/select cases.
"""
import logging
from contextlib import contextmanager
from typing import Any, Iterator, List, Type, TypeVar

from sqlalchemy import create_engine, event, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.pool import StaticPool

import config
from errors import ConcurrentUpdate, ConstraintViolation, ValidationFailed
from models import Base

logger = logging.getLogger("storefront")

T = TypeVar("T")


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def make_engine(url: str, echo: bool = False) -> Engine:
    kwargs: dict = {"echo": echo}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    engine = create_engine(url, **kwargs)
    if engine.dialect.name == "sqlite":
        # SQLite ignores REFERENCES clauses unless asked per connection
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine


def make_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(bind=bind, autoflush=True, expire_on_commit=True)


engine = make_engine(config.DATABASE_URL, echo=config.SQL_ECHO)
SessionLocal = make_session_factory(engine)


def init_db(bind: Engine = None) -> None:
    Base.metadata.create_all(bind=bind or engine)


def get_db() -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _describe(exc: IntegrityError) -> str:
    return str(exc.orig).splitlines()[0] if exc.orig is not None else str(exc)


def integrity_error(exc: IntegrityError) -> ValidationFailed:
    message = _describe(exc)
    lowered = message.lower()
    if "check constraint" in lowered or "violates check" in lowered:
        return ValidationFailed(message)
    return ConstraintViolation(message)


@contextmanager
def transaction(db: Session) -> Iterator[Session]:
    """Run a unit of work: commit on success, roll back on any error."""
    try:
        yield db
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        error = integrity_error(exc)
        logger.warning("Write rejected by the store: %s", error.message)
        raise error from exc
    except StaleDataError as exc:
        db.rollback()
        logger.warning("Concurrent update detected: %s", exc)
        raise ConcurrentUpdate("The record was modified by another request; retry") from exc
    except Exception:
        db.rollback()
        raise


def create_record(db: Session, instance: T) -> T:
    with transaction(db):
        db.add(instance)
    db.refresh(instance)
    return instance


def get_records(db: Session, model: Type[T], *criteria: Any, order_by: Any = None, limit: int = None) -> List[T]:
    stmt = select(model).where(*criteria)
    if order_by is not None:
        stmt = stmt.order_by(order_by)
    if limit:
        stmt = stmt.limit(limit)
    return list(db.scalars(stmt))
