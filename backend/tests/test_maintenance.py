from __future__ import annotations

import json
import shutil
from pathlib import Path

import pytest

from backend.db.models import IngestionRun, Plant, Product
from backend.services.maintenance import run_catalog_maintenance, run_maintenance_for_url
from backend.services.overrides import create_override
from backend.services.regression_audit import RegressionAuditError
from backend.settings import CatalogSettings

SEED_DIR = Path(__file__).resolve().parents[2] / "data" / "seed"


@pytest.fixture
def seed_dir(tmp_path: Path) -> Path:
    target = tmp_path / "seed"
    shutil.copytree(SEED_DIR, target)
    return target


def test_sample_seed_produces_a_clean_catalog(db, seed_dir):
    summary = run_catalog_maintenance(db, settings=CatalogSettings(), seed_dir=seed_dir)

    assert summary["reconciled_runs"] == []
    assert summary["ingest"]["snapshots_created"] == 7
    assert summary["normalize"]["products"]["inserted"] == 3
    assert summary["normalize"]["offers"]["inserted"] == 2
    assert summary["activation"]["products"]["activated"] == 2
    assert summary["activation"]["plants"]["activated"] == 2
    assert summary["prune"]["deleted"] == {"products": 0, "plants": 0, "offers": 0}
    assert summary["audit"]["has_violations"] is False

    active = sorted(p.slug for p in db.query(Product).filter_by(status="active"))
    assert active == ["chihiros-wrgb2-60", "uns-60u-rimless"]
    assert db.query(Plant).filter_by(status="active").count() == 2
    assert db.query(IngestionRun).one().status == "success"


def test_second_run_is_a_no_op(db, seed_dir):
    run_catalog_maintenance(db, settings=CatalogSettings(), seed_dir=seed_dir)
    summary = run_catalog_maintenance(db, settings=CatalogSettings(), seed_dir=seed_dir)

    assert summary["ingest"]["snapshots_created"] == 0
    assert summary["ingest"]["snapshots_unchanged"] == 7
    assert summary["normalize"]["total_inserted"] == 0
    assert summary["normalize"]["total_updated"] == 0
    assert summary["normalize"]["mappings_upserted"] == 0
    assert summary["activation"]["products"]["activated"] == 0


def test_audit_violation_aborts_the_job(db, seed_dir):
    plant = Plant(
        slug="hero-moss",
        common_name="Hero Moss",
        description="Soft moss for hardscape.",
        image_url="https://cdn.example.com/images/aquascape-hero-2400.jpg",
        image_urls=["https://cdn.example.com/plants/moss.jpg"],
        sources=["https://example.com/moss"],
    )
    db.add(plant)
    db.commit()
    create_override(
        db,
        canonical_type="plant",
        canonical_id=plant.id,
        field_path="care.difficulty",
        value="easy",
        reason="moss is easy",
        actor="ops",
    )

    with pytest.raises(RegressionAuditError) as excinfo:
        run_catalog_maintenance(db, settings=CatalogSettings(), seed_dir=seed_dir)

    assert excinfo.value.report["placeholders"]["plants"]["sample_slugs"] == ["hero-moss"]


def test_run_for_url_and_backfill(db_url, seed_dir):
    (seed_dir / "plants.json").unlink()
    (seed_dir / "offers.json").write_text(json.dumps([]), encoding="utf-8")

    summary = run_maintenance_for_url(
        database_url=db_url,
        settings=CatalogSettings(),
        seed_dir=seed_dir,
        backfill_prices=True,
    )

    assert summary["status"] == "ok"
    assert summary["ingest"]["product"] == 3
    assert "plant" not in summary["ingest"]
    assert summary["activation"]["products"]["activated"] == 0
    assert summary["price_history"] == {"scanned": 0, "inserted": 0}
