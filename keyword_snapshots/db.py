from sqlmodel import create_engine, SQLModel
from sqlalchemy import event
from sqlalchemy.engine import Engine
import logging

from keyword_snapshots.core.config import settings

logger = logging.getLogger(__name__)

DATABASE_URL = settings.DATABASE_URL


def build_engine(database_url: str) -> Engine:
    """Create an engine tuned for the backing database."""
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            echo=False,
            connect_args={"check_same_thread": False},
        )

    # Serverless PostgreSQL: small pool, aggressive liveness checks
    pg_engine = create_engine(
        database_url,
        echo=False,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,  # Verify connections before use
        pool_recycle=300,  # Idle connections get dropped by the pooler
        pool_timeout=30,
        connect_args={
            "connect_timeout": 10,
            "keepalives": 1,
            "keepalives_idle": 30,
            "keepalives_interval": 10,
            "keepalives_count": 5,
        },
    )
    event.listen(pg_engine, "connect", set_statement_timeout)
    return pg_engine


def set_statement_timeout(dbapi_connection, connection_record):
    """Cap query time so a stuck claim can't hold row locks indefinitely."""
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("SET statement_timeout = '30s'")
    except Exception as e:
        logger.warning(f"Could not set statement timeout: {e}")
    finally:
        cursor.close()


engine = build_engine(DATABASE_URL)


def create_db_and_tables():
    # Import models so they register on SQLModel.metadata
    import keyword_snapshots.models  # noqa: F401

    SQLModel.metadata.create_all(engine)
