"""Engine and session handling for the local tracking store."""

from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from .models import Base
from ..config.settings import get_settings
from ..utils.logging import get_logger


logger = get_logger("database")


class TrackingStoreError(RuntimeError):
    """Raised when the tracking store cannot be opened."""
    pass


def _build_engine(database_url: str) -> Engine:
    url = make_url(database_url)

    if url.get_backend_name() != "sqlite":
        return create_engine(database_url, pool_pre_ping=True, pool_recycle=300)

    in_memory = url.database in (None, "", ":memory:")
    if not in_memory:
        Path(url.database).expanduser().parent.mkdir(parents=True, exist_ok=True)

    # Repositories run inside asyncio.to_thread workers
    options = {"connect_args": {"check_same_thread": False, "timeout": 20}}
    if in_memory:
        options["poolclass"] = StaticPool
    engine = create_engine(database_url, **options)

    @event.listens_for(engine, "connect")
    def _configure_connection(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        if not in_memory:
            cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return engine


class DatabaseManager:
    """Owns the SQLAlchemy engine and hands out transactional sessions."""

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or get_settings().database.url
        self.engine = _build_engine(self.database_url)
        self.SessionLocal = sessionmaker(
            autoflush=False,
            expire_on_commit=False,
            bind=self.engine
        )

        logger.info("Tracking store opened", database_url=self.engine.url.render_as_string(hide_password=True))

    def create_tables(self):
        Base.metadata.create_all(bind=self.engine)
        logger.debug("Tracking tables ensured", tables=sorted(Base.metadata.tables))

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """Yield a session that commits on success and rolls back on error."""
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error("Tracking store transaction rolled back", error=str(e))
            raise
        finally:
            session.close()

    def ping(self) -> bool:
        try:
            with self.engine.connect() as connection:
                connection.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error("Tracking store unreachable", error=str(e))
            return False

    def dispose(self):
        self.engine.dispose()


_db_manager: Optional[DatabaseManager] = None


def get_db_manager() -> DatabaseManager:
    """Return the process-wide manager, opening it from settings on first use."""
    global _db_manager
    if _db_manager is None:
        _db_manager = DatabaseManager()
    return _db_manager


def init_database(database_url: Optional[str] = None, create_tables: bool = True) -> DatabaseManager:
    """Open the tracking store and make it the process-wide manager.

    Raises:
        TrackingStoreError: If the store does not answer a trivial query
    """
    global _db_manager
    if _db_manager is not None:
        _db_manager.dispose()

    manager = DatabaseManager(database_url)
    if create_tables:
        manager.create_tables()

    if not manager.ping():
        manager.dispose()
        raise TrackingStoreError(f"Cannot open tracking store at {manager.database_url}")

    _db_manager = manager
    return manager


def close_database():
    global _db_manager
    if _db_manager is not None:
        _db_manager.dispose()
        _db_manager = None
        logger.info("Tracking store closed")
