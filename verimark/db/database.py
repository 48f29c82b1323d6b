import logging
import os
from pathlib import Path

from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from .models import Base

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).parent.parent.parent
DEFAULT_DB_PATH = PROJECT_ROOT / "data" / "verimark.db"


def get_database_url():
    """Get the appropriate database URL based on environment."""
    if os.getenv("TESTING") == "true":
        logger.info("Using in-memory database for testing")
        return "sqlite:///:memory:"
    DB_URL = os.getenv("DATABASE_URL")
    if DB_URL:
        logger.info("Using database URL from environment")
        return DB_URL
    logger.info(f"Using default database at: {DEFAULT_DB_PATH}")
    return f"sqlite:///{DEFAULT_DB_PATH}"


def create_database_engine(database_url=None):
    """Create a database engine with the given URL."""
    if database_url is None:
        database_url = get_database_url()

    if database_url.startswith("sqlite"):
        engine_kwargs = {
            "echo": False,
            "future": True,
            "connect_args": {"check_same_thread": False},
        }
        if ":memory:" in database_url or database_url == "sqlite://":
            # One shared connection, otherwise each checkout sees an empty database
            engine_kwargs["poolclass"] = StaticPool
        else:
            Path(database_url.replace("sqlite:///", "")).parent.mkdir(
                parents=True, exist_ok=True
            )
        logger.info("Using SQLite - connection pooling disabled")
    else:
        pool_size = int(os.getenv("DB_POOL_SIZE", "20"))
        max_overflow = int(os.getenv("DB_MAX_OVERFLOW", "30"))
        engine_kwargs = {
            "echo": False,
            "future": True,
            "pool_size": pool_size,
            "max_overflow": max_overflow,
            "pool_timeout": int(os.getenv("DB_POOL_TIMEOUT", "60")),
            "pool_recycle": int(os.getenv("DB_POOL_RECYCLE", "3600")),
        }
        logger.info(f"Configuring connection pool: size={pool_size}, max_overflow={max_overflow}")

    engine = create_engine(database_url, **engine_kwargs)

    def _fk_pragma_on_connect(dbapi_con, con_record):
        dbapi_con.execute("PRAGMA foreign_keys=ON")

    if database_url.startswith("sqlite"):
        event.listen(engine, "connect", _fk_pragma_on_connect)

    return engine


engine = create_database_engine()

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db():
    """Initialize the database by creating all tables."""
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables ready")


def get_db():
    """Get a database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
