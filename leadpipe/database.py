"""
SQLAlchemy engine, session factory and schema bootstrap.

Three tables live here: runs (finished run history), step_metrics (per-step
and per-sub-step usage) and enrichment_cache (the StaleCache backing store).
SQLite is the local default; production points DATABASE_URL at Postgres.
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase

from leadpipe.config import DATABASE_URL


class Base(DeclarativeBase):
    pass


def normalize_url(url: str) -> str:
    """SQLAlchemy 2.x only accepts the postgresql:// scheme."""
    if url.startswith('postgres://'):
        return 'postgresql://' + url[len('postgres://'):]
    return url


def make_engine(url: str):
    url = normalize_url(url)
    if url.startswith('sqlite'):
        # RQ jobs fan rows out to worker threads that share the connection
        return create_engine(url, connect_args={'check_same_thread': False})
    return create_engine(url, pool_pre_ping=True, pool_size=5, max_overflow=10)


engine = make_engine(DATABASE_URL)
SessionLocal = sessionmaker(bind=engine)


def get_session():
    """Return a new DB session. Callers close it."""
    return SessionLocal()


def init_db(bind=None):
    """Create any missing tables for the registered models."""
    import leadpipe.models.db_run  # noqa: F401
    import leadpipe.models.step_metric  # noqa: F401
    import leadpipe.models.cache_entry  # noqa: F401
    Base.metadata.create_all(bind or engine)
