"""Database bootstrap helpers shared by the gateway and its workers."""

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.pool import StaticPool

from ledgerlink.common.config import settings


def make_engine(dsn: str):
    """Build an engine; in-memory SQLite shares one connection across threads."""

    if dsn == "sqlite://" or (dsn.startswith("sqlite") and ":memory:" in dsn):
        return create_engine(dsn, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    return create_engine(dsn, pool_pre_ping=True)


# Single SQLAlchemy engine per process.
engine = make_engine(settings.postgres_dsn)
# `expire_on_commit=False` keeps ORM objects readable after commit in handlers.
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


class Base(DeclarativeBase):
    """Declarative base for SQLAlchemy models."""

    pass
