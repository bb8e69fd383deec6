"""FastAPI dependency helpers."""
from __future__ import annotations

import os
from typing import Iterator

from sqlalchemy.orm import Session

from backend.db.models import session_scope
from backend.settings import CatalogSettings, load_settings


def get_db_session() -> Iterator[Session]:
    database_url = os.getenv("DATABASE_URL")
    with session_scope(database_url) as session:
        yield session


def get_settings() -> CatalogSettings:
    return load_settings()


__all__ = ["get_db_session", "get_settings"]
