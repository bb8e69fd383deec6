from __future__ import annotations

from pathlib import Path

import pytest

from backend.db import models


@pytest.fixture
def db_url(tmp_path: Path) -> str:
    url = f"sqlite:///{tmp_path / 'catalog.db'}"
    models.ensure_schema(url)
    yield url
    engine = models._engines.pop(url, None)
    models._session_factories.pop(url, None)
    if engine is not None:
        engine.dispose()


@pytest.fixture
def db(db_url: str):
    session = models.get_session_factory(db_url)()
    try:
        yield session
    finally:
        session.close()
