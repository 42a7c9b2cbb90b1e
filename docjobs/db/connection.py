import logging
from contextlib import contextmanager
from typing import Any, Dict, Generator, Optional
from pathlib import Path
from urllib.parse import quote_plus

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from docjobs.config.docjobs_config import DocJobsConfig
from docjobs.exceptions import ServiceUnavailable

# Configure logging
logger = logging.getLogger(__name__)

Base = declarative_base()


class Database:
    """
    Database connection manager for DocJobs

    Handles both SQLite and PostgreSQL connections with proper configuration
    and connection pooling. Jobs, accounts and leases all live here; every
    cross-instance invariant is enforced with conditional updates against
    this store.
    """

    def __init__(self, config: Optional[DocJobsConfig] = None, url: Optional[str] = None):
        """
        Initialize database connection

        Args:
            config: DocJobsConfig instance. If None, uses the process-wide configuration.
            url: Explicit SQLAlchemy URL, overrides the configured database.
        """
        self.config = config or DocJobsConfig.instance()
        self.url = url or self._build_url(self.config.get_database_config())
        self.engine = self._create_engine(self.url)
        self.Session = sessionmaker(
            bind=self.engine,
            expire_on_commit=False,
            autocommit=False,
            autoflush=False
        )

    @staticmethod
    def _build_url(db_config: Dict[str, Any]) -> str:
        db_type = db_config.get('type', 'sqlite')
        if db_type == 'sqlite':
            db_path = Path(db_config.get('sqlite', {}).get('path', 'docjobs.db'))
            if str(db_path) == ':memory:':
                return 'sqlite://'
            db_path.parent.mkdir(parents=True, exist_ok=True)
            return f'sqlite:///{db_path}'

        if db_type in ('postgresql', 'postgres'):
            postgres_config = db_config.get('postgres', db_config.get('postgresql', {}))
            host = postgres_config.get('host', 'localhost')
            port = postgres_config.get('port', 5432)
            database = postgres_config.get('database', 'docjobs')
            user = quote_plus(postgres_config.get('user', 'postgres'))
            password = quote_plus(postgres_config.get('password', ''))
            sslmode = postgres_config.get('sslmode', 'disable' if host in ['localhost', '127.0.0.1'] else 'require')
            return f'postgresql://{user}:{password}@{host}:{port}/{database}?sslmode={sslmode}'

        raise ValueError(f"Unsupported database type: {db_type}")

    @staticmethod
    def _create_engine(url: str) -> Engine:
        if url.startswith('sqlite'):
            if url in ('sqlite://', 'sqlite:///:memory:'):
                # One shared connection, otherwise every session sees an empty database
                engine = create_engine(
                    'sqlite://',
                    poolclass=StaticPool,
                    connect_args={'check_same_thread': False}
                )
            else:
                engine = create_engine(
                    url,
                    poolclass=QueuePool,
                    pool_size=5,
                    max_overflow=10,
                    pool_timeout=30,
                    pool_recycle=1800,
                    connect_args={
                        'timeout': 30,
                        'check_same_thread': False
                    }
                )

            # Enable foreign key support
            @event.listens_for(engine, "connect")
            def set_sqlite_pragma(dbapi_connection, connection_record):
                cursor = dbapi_connection.cursor()
                cursor.execute("PRAGMA foreign_keys=ON")
                cursor.close()

            return engine

        return create_engine(
            url,
            poolclass=QueuePool,
            pool_size=5,
            max_overflow=10,
            pool_timeout=30,
            pool_recycle=1800,
            pool_pre_ping=True
        )

    def session(self) -> Session:
        """
        Get a database session

        Returns:
            SQLAlchemy session (usable as a context manager)
        """
        return self.Session()

    @contextmanager
    def transaction(self) -> Generator[Session, None, None]:
        """
        Session scope that commits on success and rolls back on error.

        SQLAlchemy failures are re-raised as ServiceUnavailable so callers
        can tell a retryable store outage from a business rule rejection.
        Constraint violations propagate as IntegrityError.
        """
        session = self.Session()
        try:
            yield session
            session.commit()
        except IntegrityError:
            session.rollback()
            raise
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Database transaction failed: {e}")
            raise ServiceUnavailable("Metadata store unavailable") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def scope(self, session: Optional[Session] = None) -> Generator[Session, None, None]:
        """Join ``session`` when given, otherwise open a new transaction"""
        if session is not None:
            yield session
        else:
            with self.transaction() as own:
                yield own

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.warning(f"Database ping failed: {e}")
            return False

    def create_tables(self) -> None:
        """Create all tables"""
        # Register models on Base.metadata
        from docjobs.db import models  # noqa: F401
        Base.metadata.create_all(self.engine)
        logger.info("Database tables created")

    def drop_tables(self) -> None:
        """Drop all tables"""
        from docjobs.db import models  # noqa: F401
        Base.metadata.drop_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()
