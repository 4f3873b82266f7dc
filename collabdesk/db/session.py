"""
Database session management with SQLAlchemy.
"""
import time

from sqlalchemy import create_engine, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import StaticPool
from typing import Callable, Generator
from contextlib import contextmanager

from collabdesk.core.config import settings
from collabdesk.core.logging import get_logger

logger = get_logger(__name__)


def _engine_options(url: str) -> dict:
    """Pool settings per backend. SQLite (tests, local tooling) gets one shared connection."""
    if url.startswith("sqlite"):
        return {
            "connect_args": {"check_same_thread": False},
            "poolclass": StaticPool,
        }
    return {
        "pool_pre_ping": True,
        "pool_size": 10,
        "max_overflow": 20,
        "pool_timeout": 30,
        "pool_recycle": 1800,
    }


engine = create_engine(settings.DATABASE_URL, **_engine_options(settings.DATABASE_URL))

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """Dependency for getting database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_db_context() -> Generator[Session, None, None]:
    """Context manager for database session."""
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def wait_for_database(retries: int = 5, delay: float = 2, sleep: Callable[[float], None] = time.sleep) -> None:
    """
    Block until the database answers `SELECT 1`.

    Retries transient failures; a rejected password is raised at once.
    """
    for attempt in range(1, retries + 1):
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            logger.info("Database connection successful")
            return
        except OperationalError as e:
            if "password authentication failed" in str(e).lower():
                logger.error("Database authentication failed; check POSTGRES_USER / POSTGRES_PASSWORD")
                raise
            if attempt == retries:
                logger.error(f"Could not connect to database after {retries} attempts")
                raise
            # Driver messages can echo the DSN
            logger.warning(f"Database not reachable (attempt {attempt}/{retries}), retrying in {delay}s")
            sleep(delay)


def init_db():
    """
    Verify the schema at startup.

    Schema is managed by Alembic migrations (`alembic upgrade head`).
    With DEBUG=true missing tables are created directly from the models.
    """
    from sqlalchemy import inspect

    from collabdesk.db import models  # noqa - register models on Base.metadata

    if not settings.DATABASE_URL.startswith("sqlite"):
        wait_for_database()

    inspector = inspect(engine)
    existing_tables = inspector.get_table_names()
    required_tables = ["deals", "brand_reply_tokens", "brand_reply_audit_log", "contract_signatures"]

    missing = [t for t in required_tables if t not in existing_tables]
    if not missing:
        logger.info(f"Database schema verified: {len(existing_tables)} tables found")
        return

    if settings.DEBUG:
        logger.warning(f"Missing tables {missing}; DEBUG=true so creating them (NOT for production!)")
        Base.metadata.create_all(bind=engine)
    else:
        logger.error(f"Missing required tables: {missing}. Run `alembic upgrade head` before serving traffic.")
