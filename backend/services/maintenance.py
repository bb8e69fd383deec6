"""Catalog maintenance job.

Runs the whole pipeline in order and aborts if the regression audit finds
anything that must not be shown:

    reconcile stale runs -> seed ingest -> normalize -> activation
        -> legacy prune -> regression audit -> price history backfill
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Optional

from sqlalchemy.orm import Session

from backend.db.models import get_session_factory
from backend.ingestion.snapshots import reconcile_stale_runs
from backend.services.activation import apply_catalog_activation_policy
from backend.services.ingest import ingest_seed, load_seed_payloads
from backend.services.normalizer import normalize_catalog
from backend.services.price_history import backfill_price_history
from backend.services.prune import prune_legacy_catalog_rows
from backend.services.regression_audit import assert_no_violations, run_regression_audit
from backend.settings import CatalogSettings, load_settings

LOGGER = logging.getLogger("tankcatalog.catalog")


def run_catalog_maintenance(
    db: Session,
    *,
    settings: CatalogSettings,
    seed_dir: Optional[Path] = None,
    skip_seed: bool = False,
    backfill_prices: bool = False,
) -> Dict[str, object]:
    summary: Dict[str, object] = {}

    summary["reconciled_runs"] = reconcile_stale_runs(db, older_than_minutes=settings.stale_run_minutes)

    if skip_seed:
        summary["ingest"] = {"status": "skipped"}
    else:
        payloads = load_seed_payloads(Path(seed_dir or settings.seed_dir))
        summary["ingest"] = ingest_seed(db, payloads).as_dict()

    try:
        summary["normalize"] = normalize_catalog(db, policy=settings.trust).as_dict()
        db.commit()
        summary["activation"] = apply_catalog_activation_policy(db, non_production=settings.non_production_slug_re())
        db.commit()
    except Exception:
        db.rollback()
        raise

    summary["prune"] = prune_legacy_catalog_rows(db)

    report = run_regression_audit(db)
    summary["audit"] = report
    assert_no_violations(report)

    if backfill_prices:
        summary["price_history"] = backfill_price_history(db)
        db.commit()

    LOGGER.info("Catalog maintenance finished cleanly")
    return summary


def run_maintenance_for_url(
    *,
    database_url: Optional[str] = None,
    settings: Optional[CatalogSettings] = None,
    seed_dir: Optional[Path] = None,
    skip_seed: bool = False,
    backfill_prices: bool = False,
) -> Dict[str, object]:
    settings = settings or load_settings()
    SessionFactory = get_session_factory(database_url or settings.database_url)
    db = SessionFactory()
    try:
        summary = run_catalog_maintenance(
            db,
            settings=settings,
            seed_dir=seed_dir,
            skip_seed=skip_seed,
            backfill_prices=backfill_prices,
        )
    finally:
        db.close()
    return {"status": "ok", **summary}


__all__ = ["run_catalog_maintenance", "run_maintenance_for_url"]
