"""Database base configuration"""

from datetime import datetime, timezone

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

Base = declarative_base()


def utcnow() -> datetime:
    """UTC 'now' as tz-naive datetime (consistent with remote timestamp parsing)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def create_db_engine(database_url: str) -> Engine:
    """Create the cache engine.

    SQLite runs in WAL mode so readers keep seeing the last committed snapshot
    while the single writer has a transaction open.
    """
    is_sqlite = database_url.startswith("sqlite")
    engine = create_engine(
        database_url,
        connect_args={"check_same_thread": False, "timeout": 30} if is_sqlite else {},
    )

    if is_sqlite:

        @event.listens_for(engine, "connect")
        def _sqlite_pragmas(dbapi_connection, _record):
            cursor = dbapi_connection.cursor()
            try:
                if ":memory:" not in database_url:
                    cursor.execute("PRAGMA journal_mode=WAL")
                cursor.execute("PRAGMA synchronous=NORMAL")
            finally:
                cursor.close()

    return engine


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def init_db(engine: Engine):
    """Initialize database"""
    # Ensure all models are imported so SQLAlchemy metadata is populated.
    import tracksync.models  # noqa: F401  (import for side-effects)

    Base.metadata.create_all(bind=engine)
