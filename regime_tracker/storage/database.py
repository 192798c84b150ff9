"""
Database Connection Manager

Handles database connections, sessions, and operations.
"""

import logging
from contextlib import contextmanager
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, scoped_session
from sqlalchemy.pool import StaticPool

from regime_tracker.errors import RegimeTrackerError
from regime_tracker.settings import load_settings
from regime_tracker.storage.models import Base

logger = logging.getLogger(__name__)


class DatabaseManager:
    """
    Manages database connections and sessions.

    Singleton pattern to ensure single database connection pool.
    """

    _instance = None
    _engine = None
    _session_factory = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super(DatabaseManager, cls).__new__(cls)
        return cls._instance

    def __init__(self):
        if self._engine is None:
            self.initialize()

    def initialize(self, database_url: str = None):
        """
        Initialize database connection.

        Args:
            database_url: Database URL. If None, read from env
        """
        if database_url is None:
            database_url = load_settings().database_url

        if self._engine is not None:
            self.close()

        logger.info(f"Initializing database connection...")

        if database_url in ('sqlite://', 'sqlite:///:memory:'):
            # In-memory SQLite lives on a single shared connection
            self._engine = create_engine(
                database_url,
                echo=False,
                connect_args={'check_same_thread': False},
                poolclass=StaticPool
            )
        elif database_url.startswith('sqlite'):
            self._engine = create_engine(
                database_url,
                echo=False,
                connect_args={'check_same_thread': False, 'timeout': 30}
            )
        else:
            # PostgreSQL configuration
            self._engine = create_engine(
                database_url,
                echo=False,
                pool_size=10,
                max_overflow=20,
                pool_pre_ping=True  # Verify connections before using
            )

        # Create session factory
        self._session_factory = scoped_session(
            sessionmaker(
                bind=self._engine,
                autocommit=False,
                autoflush=False,
                expire_on_commit=False
            )
        )

        logger.info("Database connection initialized")

    @property
    def engine(self):
        """Get database engine"""
        if self._engine is None:
            self.initialize()
        return self._engine

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    @property
    def session_factory(self):
        """Get session factory"""
        if self._session_factory is None:
            self.initialize()
        return self._session_factory

    def create_tables(self):
        """Create all database tables"""
        logger.info("Creating database tables...")
        Base.metadata.create_all(self.engine)
        logger.info("Database tables created")

    def drop_tables(self):
        """Drop all database tables (USE WITH CAUTION!)"""
        logger.warning("Dropping all database tables...")
        Base.metadata.drop_all(self.engine)
        logger.info("Database tables dropped")

    @contextmanager
    def get_session(self):
        """
        Get a database session (context manager).

        The session commits when the block exits cleanly and rolls back
        on any exception. Sessions are thread-local, so blocks must not
        be nested within one thread.

        Usage:
            with db_manager.get_session() as session:
                session.add(obj)
        """
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except RegimeTrackerError as e:
            session.rollback()
            logger.debug(f"Transaction rolled back: {e}")
            raise
        except Exception as e:
            session.rollback()
            logger.error(f"Database error: {e}")
            raise
        finally:
            session.close()

    def close(self):
        """Close database connections"""
        if self._session_factory:
            self._session_factory.remove()
        if self._engine:
            self._engine.dispose()
        self._session_factory = None
        self._engine = None
        logger.info("Database connections closed")


# Global database manager instance
db_manager = DatabaseManager()


# Convenience functions
def get_session():
    """Get a database session (context manager)"""
    return db_manager.get_session()


def init_database(database_url: str = None):
    """
    Initialize database and create tables.

    Args:
        database_url: Database URL. If None, read from env
    """
    db_manager.initialize(database_url)
    db_manager.create_tables()
