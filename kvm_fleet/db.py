from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from kvm_fleet.config import get_settings


Base = declarative_base()

SQLITE_BUSY_TIMEOUT_SEC = 30


def build_engine(database_url: str) -> Engine:
    if not database_url.startswith("sqlite"):
        return create_engine(database_url, future=True)

    engine = create_engine(
        database_url,
        # provisioning workers share the engine across threads
        connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT_SEC},
        future=True,
    )

    @event.listens_for(engine, "connect")
    def _sqlite_pragmas(dbapi_connection, _connection_record) -> None:
        # busy_timeout is per connection, so every pooled connection sets it
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_SEC * 1000}")
        cursor.close()

    return engine


engine = build_engine(get_settings().database_url)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)


def initialize_state() -> None:
    """Create the state tables if they are missing."""
    # registers VmRecord and Event on Base.metadata
    from kvm_fleet import models  # noqa: F401

    Base.metadata.create_all(bind=engine)


@contextmanager
def session_scope():
    """One unit of work: commit on success, roll back on any error."""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
