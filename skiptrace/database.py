"""
Database engine + session factory.

Always initializes — defaults to SQLite for local dev, Postgres in production.
get_session() always returns a real session.
"""
from datetime import datetime, timezone

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase

from skiptrace.config import DATABASE_URL


class Base(DeclarativeBase):
    pass


def make_engine(database_url):
    """Build an engine with the right kwargs for the URL's dialect."""
    # Hosted Postgres often hands out postgres:// but SQLAlchemy 2.x requires postgresql://
    url = database_url.replace('postgres://', 'postgresql://', 1)

    # SQLite is shared across worker threads, so allow cross-thread use and wait on locks
    if url.startswith('sqlite'):
        return create_engine(url, connect_args={'check_same_thread': False, 'timeout': 30})
    return create_engine(url, pool_pre_ping=True, pool_size=10, max_overflow=10)


engine = make_engine(DATABASE_URL)

SessionLocal = sessionmaker(bind=engine)


def get_session():
    """Return a new DB session."""
    return SessionLocal()


def utcnow():
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


def as_utc(value):
    """Normalize a datetime read back from the store to aware UTC.

    SQLite drops tzinfo on the way out; Postgres returns aware values.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
