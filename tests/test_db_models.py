from __future__ import annotations

from pathlib import Path

import pytest
from sqlalchemy.exc import IntegrityError

from backend.db import models


@pytest.fixture(autouse=True)
def reset_model_caches():
    models._engines.clear()
    models._session_factories.clear()
    yield
    models._engines.clear()
    models._session_factories.clear()


def test_get_engine_caches_per_url(tmp_path: Path):
    url_one = f"sqlite:///{tmp_path / 'one.db'}"
    url_two = f"sqlite:///{tmp_path / 'two.db'}"

    engine_one_first = models.get_engine(url_one)
    engine_one_second = models.get_engine(url_one)
    engine_two = models.get_engine(url_two)

    assert engine_one_first is engine_one_second
    assert engine_one_first is not engine_two


def test_defaults_are_populated(tmp_path: Path):
    database_url = f"sqlite:///{tmp_path / 'defaults.db'}"
    models.ensure_schema(database_url)

    with models.session_scope(database_url) as session:
        product = models.Product(slug="uns-60u", name="UNS 60U")
        session.add(product)
        session.flush()
        session.refresh(product)
        assert product.created_at is not None
        assert product.status == "inactive"
        assert product.specs == {}
        assert product.image_urls == []

        source = models.IngestionSource(slug="manual_seed", name="Manual seed", kind="manual_seed")
        session.add(source)
        session.flush()
        session.refresh(source)
        assert source.default_trust == "unknown"
        assert source.active is True

        run = models.IngestionRun(source_id=source.id)
        session.add(run)
        session.flush()
        session.refresh(run)
        assert run.status == "running"
        assert run.started_at is not None


def test_one_mapping_per_entity(tmp_path: Path):
    database_url = f"sqlite:///{tmp_path / 'mapping.db'}"
    models.ensure_schema(database_url)

    with pytest.raises(IntegrityError):
        with models.session_scope(database_url) as session:
            source = models.IngestionSource(slug="feed", name="Feed", kind="crawler")
            session.add(source)
            session.flush()
            entity = models.IngestionEntity(source_id=source.id, entity_type="product", source_entity_id="sku-1")
            session.add(entity)
            session.flush()
            for canonical_id in (1, 2):
                session.add(
                    models.CanonicalEntityMapping(
                        entity_id=entity.id,
                        canonical_type="product",
                        canonical_id=canonical_id,
                        match_method="slug_exact",
                        confidence=94,
                    )
                )
            session.flush()


def test_as_utc_tags_naive_values():
    naive = models.utcnow().replace(tzinfo=None)
    assert models.as_utc(naive).tzinfo is not None
    assert models.as_utc(None) is None
