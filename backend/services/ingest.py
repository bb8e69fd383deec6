"""Manual seed ingestion.

Seed files live in the seed directory as ``products.json``, ``plants.json``
and ``offers.json``; each holds a JSON array of records. Every record is
validated up front, then written through the snapshot store inside one
tracked run of the ``manual_seed`` source.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Type

from pydantic import TypeAdapter, ValidationError
from sqlalchemy.orm import Session

from backend.db.models import get_session_factory
from backend.ingestion.payloads import (
    OfferPayload,
    PlantPayload,
    ProductPayload,
    build_observation,
    payload_to_raw,
)
from backend.ingestion.snapshots import RunStats, ensure_source, record_snapshot, tracked_run, upsert_entity
from backend.runtime import ensure_runtime_directories
from backend.settings import CatalogSettings, load_settings

LOGGER = logging.getLogger("tankcatalog.ingest")

SEED_SOURCE_SLUG = "manual_seed"
SEED_SOURCE_KIND = "manual_seed"
SEED_TRUST = "manual_seed"

SEED_FILES: Tuple[Tuple[str, str, Type], ...] = (
    ("product", "products.json", ProductPayload),
    ("plant", "plants.json", PlantPayload),
    ("offer", "offers.json", OfferPayload),
)


class SeedDataError(ValueError):
    """A seed file is missing, unreadable or fails validation."""


def _read_seed_file(path: Path, model: Type) -> List:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise SeedDataError(f"{path.name}: invalid JSON ({exc})") from exc
    if not isinstance(raw, list):
        raise SeedDataError(f"{path.name}: expected a JSON array")
    try:
        return TypeAdapter(List[model]).validate_python(raw)
    except ValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise SeedDataError(f"{path.name}: {location}: {first.get('msg')}") from exc


def load_seed_payloads(seed_dir: Path) -> Dict[str, List]:
    """Read and validate every seed file that exists; missing files are skipped."""
    seed_dir = Path(seed_dir)
    if not seed_dir.is_dir():
        raise SeedDataError(f"seed directory {seed_dir} does not exist")

    payloads: Dict[str, List] = {}
    for entity_type, filename, model in SEED_FILES:
        path = seed_dir / filename
        if not path.exists():
            LOGGER.info("No %s in %s; skipping %s seed", filename, seed_dir, entity_type)
            continue
        payloads[entity_type] = _read_seed_file(path, model)

    slugs = [p.slug for p in payloads.get("product", [])]
    if len(slugs) != len(set(slugs)):
        raise SeedDataError("products.json: duplicate product slugs")
    return payloads


def seed_entity_key(payload) -> str:
    if isinstance(payload, OfferPayload):
        return f"{payload.product_slug}:{payload.retailer_slug}"
    return payload.slug


def _ingest_one(db: Session, *, source_id: int, run_id: int, stats: RunStats, entity_type: str, payload) -> None:
    extracted, trust = build_observation(payload, SEED_TRUST)
    entity_id = upsert_entity(
        db,
        source_id=source_id,
        entity_type=entity_type,
        source_entity_id=seed_entity_key(payload),
        url=getattr(payload, "url", None),
    )
    result = record_snapshot(
        db,
        entity_id=entity_id,
        run_id=run_id,
        raw_payload=payload_to_raw(payload),
        extracted=extracted,
        trust=trust,
    )
    stats.entities_touched += 1
    if result.created:
        stats.snapshots_created += 1
    else:
        stats.snapshots_unchanged += 1
    stats.bump(entity_type)


def ingest_seed(
    db: Session,
    payloads: Dict[str, List],
    *,
    source_slug: str = SEED_SOURCE_SLUG,
) -> RunStats:
    source = ensure_source(
        db,
        slug=source_slug,
        kind=SEED_SOURCE_KIND,
        name="Manual seed files",
        default_trust=SEED_TRUST,
    )
    db.commit()

    with tracked_run(db, source) as (run, stats):
        for entity_type, _, _ in SEED_FILES:
            for payload in payloads.get(entity_type, []):
                _ingest_one(
                    db,
                    source_id=source.id,
                    run_id=run.id,
                    stats=stats,
                    entity_type=entity_type,
                    payload=payload,
                )
    return stats


def ingest_seed_directory(
    *,
    seed_dir: Optional[Path] = None,
    database_url: Optional[str] = None,
    settings: Optional[CatalogSettings] = None,
    types: Sequence[str] = ("product", "plant", "offer"),
) -> Dict[str, object]:
    """Validate the seed files in ``seed_dir`` and ingest them."""
    ensure_runtime_directories()
    settings = settings or load_settings()
    seed_dir = Path(seed_dir or settings.seed_dir)
    payloads = {k: v for k, v in load_seed_payloads(seed_dir).items() if k in types}

    SessionFactory = get_session_factory(database_url or settings.database_url)
    db = SessionFactory()
    try:
        stats = ingest_seed(db, payloads)
    finally:
        db.close()

    LOGGER.info("Seed ingest from %s finished: %s", seed_dir, stats.as_dict())
    return {"status": "ok", "seed_dir": str(seed_dir), **stats.as_dict()}


__all__ = [
    "SEED_SOURCE_SLUG",
    "SEED_TRUST",
    "SeedDataError",
    "load_seed_payloads",
    "seed_entity_key",
    "ingest_seed",
    "ingest_seed_directory",
]
