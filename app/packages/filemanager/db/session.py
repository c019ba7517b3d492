"""Database engine and session factory configuration."""

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from app.packages.filemanager.core.config import get_settings

settings = get_settings()


def build_engine(url: str, *, echo: bool = False) -> Engine:
    """Create an engine; SQLite connections get foreign keys and a shared-thread connection."""
    is_sqlite = url.startswith("sqlite")
    connect_args = {"check_same_thread": False, "timeout": 30} if is_sqlite else {}
    new_engine = create_engine(url, pool_pre_ping=True, echo=echo, connect_args=connect_args)
    if is_sqlite:
        event.listen(new_engine, "connect", _enable_sqlite_foreign_keys)
    return new_engine


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


# ``pool_pre_ping`` keeps the connection pool healthy; ``echo`` mirrors SQL logs
# when enabled in settings for easier debugging.
engine = build_engine(settings.sql_database_url, echo=settings.database_echo)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
