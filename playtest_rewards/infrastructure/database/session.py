"""Database engine and session lifecycle management."""

from contextlib import contextmanager
from typing import Iterator

import structlog
from sqlalchemy import Engine, create_engine, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..config.settings import DatabaseConfig
from ...shared.exceptions.base import DatabaseSessionError
from ...shared.kernel.entity import Base

logger = structlog.get_logger()


def create_engine_from_config(config: DatabaseConfig) -> Engine:
    """Build a SQLAlchemy engine with pooling appropriate to the backend."""
    url = config.connection_url

    if config.is_sqlite:
        # Worker threads share the engine; each holds its own connection
        return create_engine(
            url,
            echo=config.echo,
            connect_args={"check_same_thread": False, "timeout": config.pool_timeout},
        )

    return create_engine(
        url,
        echo=config.echo,
        pool_size=config.pool_size,
        max_overflow=config.max_overflow,
        pool_timeout=config.pool_timeout,
        pool_recycle=config.pool_recycle,
        pool_pre_ping=True,
    )


class DatabaseSessionManager:
    """Manages database sessions with proper lifecycle."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self.session_factory = sessionmaker(
            bind=engine,
            expire_on_commit=False,  # Keep objects accessible after commit
            autoflush=True,
        )
        logger.info("Database session factory initialized", dialect=engine.dialect.name)

    @classmethod
    def from_config(cls, config: DatabaseConfig) -> "DatabaseSessionManager":
        return cls(create_engine_from_config(config))

    def create_tables(self) -> None:
        """Create every mapped table that does not exist yet."""
        # Import models so they register on the shared metadata
        from ...domains.activity import models as _activity  # noqa: F401
        from ...domains.challenge import model as _challenge  # noqa: F401
        from ...domains.ledger import model as _ledger  # noqa: F401
        from ...domains.levels import model as _levels  # noqa: F401

        Base.metadata.create_all(self.engine)
        logger.info("Database tables created", tables=len(Base.metadata.tables))

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """Transactional scope: commit on success, roll back and log on error."""
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            logger.error("Database session error, rolling back", error=str(e))
            session.rollback()
            raise DatabaseSessionError(f"Database session failed: {e}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def health_check(self) -> bool:
        """Check that the database answers a trivial query."""
        try:
            with self.engine.connect() as connection:
                connection.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.warning("Database health check failed", error=str(e))
            return False

    def dispose(self) -> None:
        self.engine.dispose()
        logger.info("Database engine disposed")
