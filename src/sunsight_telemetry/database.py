import logging

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine
from tenacity import retry, stop_after_attempt, wait_exponential

# Registers the tables on SQLModel.metadata
from sunsight_telemetry import models  # noqa: F401

logger = logging.getLogger("Database")


def make_engine(db_url: str) -> Engine:
    """Create the engine. In-memory SQLite keeps a single shared connection."""
    if db_url.startswith("sqlite"):
        kwargs: dict = {"connect_args": {"check_same_thread": False}}
        if db_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(db_url, **kwargs)
    return create_engine(db_url, pool_pre_ping=True)


@retry(stop=stop_after_attempt(5), wait=wait_exponential(multiplier=1, min=2, max=10), reraise=True)
def init_db(db_url: str) -> Engine:
    """Connect (retrying while the database comes up) and create missing tables."""
    logger.info("Connecting to database...")
    engine = make_engine(db_url)

    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as e:
        logger.error(f"Database connection failed: {e}")
        engine.dispose()
        raise

    SQLModel.metadata.create_all(engine)
    logger.info("Database connected and initialized.")
    return engine
