from __future__ import annotations

from pathlib import Path

import pytest
from sqlalchemy import inspect

from backend.db import models
from backend.db.ops import database_status, reset_schema, sync_database


@pytest.fixture(autouse=True)
def reset_model_caches():
    models._engines.clear()
    models._session_factories.clear()
    yield
    for engine in models._engines.values():
        engine.dispose()
    models._engines.clear()
    models._session_factories.clear()


def test_sync_database_upgrades_an_empty_sqlite_file(tmp_path: Path):
    url = f"sqlite:///{tmp_path / 'fresh.db'}"

    assert sync_database(url) == "upgraded"
    status = database_status(url)
    assert status["backend"] == "sqlite"
    assert status["up_to_date"] is True

    tables = set(inspect(models.get_engine(url)).get_table_names())
    assert {"products", "ingestion_entity_snapshots", "canonical_entity_mappings"} <= tables


def test_sync_database_stamps_schema_built_from_models(tmp_path: Path):
    url = f"sqlite:///{tmp_path / 'models.db'}"
    models.ensure_schema(url)
    assert database_status(url)["current"] is None

    assert sync_database(url) == "stamped"
    assert database_status(url)["up_to_date"] is True


def test_reset_schema_rebuilds_sqlite(tmp_path: Path):
    url = f"sqlite:///{tmp_path / 'reset.db'}"
    sync_database(url)
    with models.session_scope(url) as session:
        session.add(models.Product(slug="uns-60u", name="UNS 60U"))

    reset_schema(url)

    with models.session_scope(url) as session:
        assert session.query(models.Product).count() == 0
    assert database_status(url)["up_to_date"] is True
