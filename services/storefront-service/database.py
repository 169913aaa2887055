"""Database connection, session management and transaction scope."""
from contextlib import contextmanager
from decimal import Decimal
from typing import Callable, Generator, Iterator, Optional
import logging

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from config import (
    DATABASE_URL,
    DB_POOL_SIZE,
    DB_MAX_OVERFLOW,
    DB_POOL_TIMEOUT,
    DB_POOL_RECYCLE,
)
from models import Base, Product

logger = logging.getLogger(__name__)


class RollbackError(Exception):
    """Raised when a failed transaction could not be rolled back.

    The connection behind the session is in an unknown state; ``cause`` is the
    error that triggered the rollback.
    """

    def __init__(self, cause: BaseException):
        super().__init__(f"Rollback failed after: {cause!r}")
        self.cause = cause


def create_db_engine(url: str) -> Engine:
    """
    Create an engine with connection pool settings.

    Args:
        url: Database URL

    Returns:
        Configured engine
    """
    connect_args = {}
    database_url = make_url(url)
    if database_url.get_backend_name() == "sqlite":
        if database_url.database in (None, "", ":memory:"):
            # An in-memory database only exists on its one connection
            return create_engine(
                url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool
            )
        # File-backed SQLite gets a connection per checkout like any other database
        connect_args["check_same_thread"] = False

    return create_engine(
        url,
        connect_args=connect_args,
        pool_size=DB_POOL_SIZE,
        max_overflow=DB_MAX_OVERFLOW,
        pool_pre_ping=True,  # Verify connections before use
        pool_recycle=DB_POOL_RECYCLE,
        pool_timeout=DB_POOL_TIMEOUT,  # Bounded wait for a free connection
        echo_pool=False
    )


engine = create_db_engine(DATABASE_URL)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

SessionFactory = Callable[[], Session]


def get_db() -> Generator[Session, None, None]:
    """
    Dependency for getting database session.

    Yields:
        Database session
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def transaction(session_factory: Optional[SessionFactory] = None) -> Iterator[Session]:
    """
    Run a block inside one database transaction.

    Commits when the block exits normally and rolls back on any exception.
    The session is closed, returning its connection to the pool, on every
    exit path.

    Args:
        session_factory: Factory for new sessions, defaults to SessionLocal

    Yields:
        Session bound to the open transaction

    Raises:
        RollbackError: If the rollback itself fails
    """
    db = (session_factory or SessionLocal)()
    try:
        yield db
        db.commit()
    except BaseException as exc:
        try:
            db.rollback()
        except Exception as rollback_exc:
            logger.error("Transaction rollback failed", extra={
                "error": str(rollback_exc),
                "cause": repr(exc)
            })
            raise RollbackError(exc) from rollback_exc
        raise
    finally:
        db.close()


def init_db(bind: Optional[Engine] = None) -> None:
    """Initialize database tables and seed data."""
    bind = bind or engine
    Base.metadata.create_all(bind=bind)

    # Seed data if empty
    db = Session(bind=bind)
    try:
        if db.query(Product).count() == 0:
            products = [
                Product(name="Laptop", price=Decimal("999.99"), stock_quantity=50,
                        description="14-inch ultrabook"),
                Product(name="Smartphone", price=Decimal("599.99"), stock_quantity=100,
                        description="6.1-inch display, 128 GB"),
                Product(name="Headphones", price=Decimal("99.99"), stock_quantity=200,
                        description="Over-ear, noise cancelling"),
                Product(name="Desk Chair", price=Decimal("199.99"), stock_quantity=30,
                        description="Ergonomic mesh chair"),
                Product(name="Monitor", price=Decimal("299.99"), stock_quantity=75,
                        description="27-inch 1440p"),
                Product(name="Keyboard", price=Decimal("79.99"), stock_quantity=150,
                        description="Mechanical, tenkeyless"),
            ]
            db.add_all(products)
            db.commit()
            logger.info("Seeded database with sample products")
    finally:
        db.close()
