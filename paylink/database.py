from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, declarative_base

from paylink.config import get_settings

DATABASE_URL = get_settings().database_url


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    # Brands must not disappear from under payments or contact requests
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def make_engine(url: str):
    is_sqlite = url.startswith("sqlite")
    engine = create_engine(
        url,
        connect_args={"check_same_thread": False} if is_sqlite else {}
    )
    if is_sqlite:
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine


engine = make_engine(DATABASE_URL)

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
Base = declarative_base()


def get_db():
    """Yield one session per request; always closed afterwards."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None):
    # Import models so their tables are registered on Base.metadata
    from paylink import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
