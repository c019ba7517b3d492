"""Database bootstrapping utilities."""

from __future__ import annotations

from app.packages.filemanager.core.config import get_settings
from app.packages.filemanager.core.logger import logger
from app.packages.filemanager.db import session as db_session
from app.packages.filemanager.models.base import Base
from app.packages.filemanager.models.item import Item  # noqa: F401 - ensure table creation


def init_db() -> None:
    """Create all database tables if they do not exist and prepare the local blob directory."""
    Base.metadata.create_all(bind=db_session.engine)

    settings = get_settings()
    if (settings.blob_backend or "").upper() == "LOCAL":
        settings.blob_directory.mkdir(parents=True, exist_ok=True)
    logger.debug("Database initialised (blob backend: %s)", settings.blob_backend)
