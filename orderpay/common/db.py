"""Database bootstrap helpers shared by all components."""

from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import JSON, create_engine
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Declarative base for SQLAlchemy models."""

    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def make_engine(dsn: str, **kwargs):
    """One engine per process, built from the configured DSN."""

    if dsn.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    else:
        kwargs.setdefault("pool_pre_ping", True)
    return create_engine(dsn, **kwargs)


def make_session_factory(engine) -> sessionmaker:
    # `expire_on_commit=False` keeps ORM objects readable after commit in handlers.
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


@contextmanager
def session_scope(session_factory, db: Session | None = None):
    """Join the caller's transaction when `db` is given, else own one and commit."""

    if db is not None:
        yield db
        return
    with session_factory() as own:
        yield own
        own.commit()
