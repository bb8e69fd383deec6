"""Trust-weighted normalization of ingestion snapshots into canonical rows.

For every canonical record reachable from an active ingestion entity, all of
that record's snapshots (across every source) and all of its overrides are
merged field by field:

    override  >  highest trust tier  >  most recent observation

The merged result is written back only where it differs from what is stored,
so a second run over unchanged inputs performs no writes at all.
"""
from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.analysis.guardrails import sanitize_image_url, sanitize_image_urls
from backend.analysis.trust_merge import (
    FieldObservation,
    MergeResult,
    merge_observations,
    observations_from_snapshot,
)
from backend.db.models import (
    CANONICAL_DICT_FIELDS,
    CANONICAL_FIELDS,
    CANONICAL_MODELS,
    CanonicalEntityMapping,
    IngestionEntity,
    IngestionEntitySnapshot,
    IngestionSource,
    Offer,
    Product,
    get_session_factory,
    utcnow,
)
from backend.ingestion.payloads import (
    AnyPayload,
    OfferPayload,
    PlantPayload,
    ProductPayload,
    parse_payload,
)
from backend.ingestion.snapshots import latest_snapshot
from backend.services.offer_summaries import refresh_offer_summaries
from backend.services.overrides import load_overrides
from backend.services.price_history import record_price_point
from backend.services.resolver import (
    CONFIDENCE,
    CanonicalResolver,
    Resolution,
    ResolutionStrategy,
    upsert_canonical_mapping,
)
from backend.settings import CatalogSettings, TrustPolicy, load_settings

LOGGER = logging.getLogger("tankcatalog.catalog")

NORMALIZATION_ORDER = ("product", "plant", "offer")
PRICE_FIELDS = frozenset({"price_cents", "in_stock"})

# What a column falls back to once nothing (snapshot or override) supplies it.
# Identity columns and offers.in_stock (owned by the availability refresher) are absent.
EMPTY_COLUMN_VALUES = {
    "product": {
        "brand": None,
        "category": None,
        "description": None,
        "image_url": None,
        "image_urls": [],
        "specs": {},
        "meta": {},
        "verified": False,
    },
    "plant": {
        "scientific_name": None,
        "family": None,
        "description": None,
        "notes": None,
        "image_url": None,
        "image_urls": [],
        "sources": [],
        "care": {},
        "verified": False,
    },
    "offer": {
        "price_cents": None,
        "currency": "USD",
        "url": None,
        "affiliate_url": None,
    },
}


@dataclass
class TypeCounts:
    processed: int = 0
    inserted: int = 0
    updated: int = 0
    unresolved: int = 0


@dataclass
class NormalizationStats:
    products: TypeCounts = field(default_factory=TypeCounts)
    plants: TypeCounts = field(default_factory=TypeCounts)
    offers: TypeCounts = field(default_factory=TypeCounts)
    mappings_upserted: int = 0

    def for_type(self, canonical_type: str) -> TypeCounts:
        return {"product": self.products, "plant": self.plants, "offer": self.offers}[canonical_type]

    def as_dict(self) -> Dict[str, object]:
        parts = {"products": self.products, "plants": self.plants, "offers": self.offers}
        out: Dict[str, object] = {name: dict(vars(counts)) for name, counts in parts.items()}
        out["mappings_upserted"] = self.mappings_upserted
        out["total_inserted"] = sum(c.inserted for c in parts.values())
        out["total_updated"] = sum(c.updated for c in parts.values())
        out["unresolved"] = sum(c.unresolved for c in parts.values())
        return out


def project_columns(canonical_type: str, values: Dict[str, Any]) -> Dict[str, Any]:
    """Restrict merged values to writable columns and clean image fields."""
    out: Dict[str, Any] = {}
    dict_fields = CANONICAL_DICT_FIELDS[canonical_type]
    for column in CANONICAL_FIELDS[canonical_type]:
        if column not in values:
            continue
        value = values[column]
        if column in dict_fields and not isinstance(value, dict):
            value = {}
        out[column] = value

    if "image_url" in out:
        out["image_url"] = sanitize_image_url(out["image_url"])
    if "image_urls" in out:
        out["image_urls"] = sanitize_image_urls(out["image_urls"])
    return out


def _explain(merged: MergeResult) -> str:
    overrides = {path: w for path, w in sorted(merged.winners.items()) if w.get("winner") == "override"}
    return json.dumps(
        {"version": 1, "source": "normalization_overrides", "winnerByField": overrides},
        sort_keys=True,
    )


class Normalizer:
    def __init__(
        self,
        db: Session,
        policy: TrustPolicy,
        extra_strategies: Sequence[ResolutionStrategy] = (),
    ):
        self.db = db
        self.policy = policy
        self.resolver = CanonicalResolver(db, extra_strategies)
        self.stats = NormalizationStats()

    def run(self, types: Sequence[str] = NORMALIZATION_ORDER) -> NormalizationStats:
        for canonical_type in NORMALIZATION_ORDER:
            if canonical_type not in types:
                continue
            touched, inserted = self._resolve_type(canonical_type)
            self._merge_type(canonical_type, touched, inserted)
            self.db.flush()
        return self.stats

    # -- resolution ---------------------------------------------------------

    def _resolve_type(self, canonical_type: str) -> Tuple[Set[int], Set[int]]:
        counts = self.stats.for_type(canonical_type)
        touched: Set[int] = set()
        inserted: Set[int] = set()

        entities = (
            self.db.query(IngestionEntity)
            .filter(IngestionEntity.entity_type == canonical_type, IngestionEntity.active.is_(True))
            .order_by(IngestionEntity.id)
            .all()
        )
        for entity in entities:
            snapshot = latest_snapshot(self.db, entity.id)
            if snapshot is None:
                continue
            payload = parse_payload(canonical_type, snapshot.raw_json)

            resolution = self.resolver.resolve(entity, payload)
            if resolution is None:
                created_id = self._create_canonical(canonical_type, entity, payload)
                if created_id is None:
                    counts.unresolved += 1
                    LOGGER.debug("Entity %s (%s) left unresolved", entity.id, canonical_type)
                    continue
                resolution = Resolution(canonical_type, created_id, "new_canonical", CONFIDENCE["new_canonical"])
                inserted.add(created_id)
                counts.inserted += 1

            counts.processed += 1
            if upsert_canonical_mapping(self.db, entity.id, resolution):
                self.stats.mappings_upserted += 1
            touched.add(resolution.canonical_id)

        return touched, inserted

    def _create_canonical(self, canonical_type: str, entity: IngestionEntity, payload: AnyPayload) -> Optional[int]:
        if canonical_type == "product" and isinstance(payload, ProductPayload):
            extra: Dict[str, Any] = {}
        elif canonical_type == "plant" and isinstance(payload, PlantPayload):
            extra = {}
        elif canonical_type == "offer" and isinstance(payload, OfferPayload):
            product_id = self.resolver.product_id_for_slug(payload.product_slug)
            if product_id is None:
                return None
            extra = {"product_id": product_id, "retailer_slug": payload.retailer_slug}
        else:
            return None

        observations = self._entity_observations(entity.id)
        merged = merge_observations(observations, (), self.policy)
        values = project_columns(canonical_type, merged.values)
        values.update(extra)

        model = CANONICAL_MODELS[canonical_type]
        record = model(**values)
        if canonical_type == "product":
            record.source = "ingestion"
        self.db.add(record)
        self.db.flush()
        if isinstance(record, Product):
            self.resolver.remember_product(record)
        LOGGER.info("Created %s %s from entity %s", canonical_type, record.id, entity.id)
        return int(record.id)

    def _entity_observations(self, entity_id: int) -> List[FieldObservation]:
        rows = (
            self.db.query(IngestionEntitySnapshot, IngestionSource.default_trust)
            .join(IngestionEntity, IngestionEntity.id == IngestionEntitySnapshot.entity_id)
            .join(IngestionSource, IngestionSource.id == IngestionEntity.source_id)
            .filter(IngestionEntitySnapshot.entity_id == entity_id)
            .all()
        )
        out: List[FieldObservation] = []
        for snap, default_trust in rows:
            out.extend(observations_from_snapshot(snap.id, snap.fetched_at, snap.extracted, snap.trust, default_trust))
        return out

    # -- merge --------------------------------------------------------------

    def _merge_type(self, canonical_type: str, touched: Set[int], inserted: Set[int]) -> None:
        if not touched:
            return
        counts = self.stats.for_type(canonical_type)
        model = CANONICAL_MODELS[canonical_type]
        observations = self._observations_by_canonical(canonical_type, touched)
        overrides = load_overrides(self.db, canonical_type, touched)

        offer_products: Set[int] = set()
        for canonical_id in sorted(touched):
            record = self.db.get(model, canonical_id)
            if record is None:
                continue
            merged = merge_observations(observations.get(canonical_id, []), overrides.get(canonical_id, []), self.policy)
            columns = project_columns(canonical_type, merged.values)
            # a deleted override or a deactivated source must not leave its value behind
            for name, empty in EMPTY_COLUMN_VALUES[canonical_type].items():
                columns.setdefault(name, copy.deepcopy(empty))
            diff = {name: value for name, value in columns.items() if getattr(record, name) != value}
            if diff:
                for name, value in diff.items():
                    setattr(record, name, value)
                record.updated_at = utcnow()
                if canonical_id not in inserted:
                    counts.updated += 1
                    LOGGER.info("Updated %s %s fields=%s", canonical_type, canonical_id, sorted(diff))
            if isinstance(record, Offer) and (canonical_id in inserted or PRICE_FIELDS & set(diff)):
                record_price_point(self.db, record)
                offer_products.add(record.product_id)
            self._write_explanations(canonical_type, canonical_id, _explain(merged))

        if offer_products:
            self.db.flush()
            refresh_offer_summaries(self.db, offer_products)

    def _observations_by_canonical(self, canonical_type: str, ids: Set[int]) -> Dict[int, List[FieldObservation]]:
        rows = (
            self.db.query(IngestionEntitySnapshot, CanonicalEntityMapping.canonical_id, IngestionSource.default_trust)
            .join(IngestionEntity, IngestionEntity.id == IngestionEntitySnapshot.entity_id)
            .join(CanonicalEntityMapping, CanonicalEntityMapping.entity_id == IngestionEntity.id)
            .join(IngestionSource, IngestionSource.id == IngestionEntity.source_id)
            .filter(
                CanonicalEntityMapping.canonical_type == canonical_type,
                CanonicalEntityMapping.canonical_id.in_(sorted(ids)),
                IngestionEntity.active.is_(True),
            )
            .all()
        )
        out: Dict[int, List[FieldObservation]] = {}
        for snap, canonical_id, default_trust in rows:
            out.setdefault(canonical_id, []).extend(
                observations_from_snapshot(snap.id, snap.fetched_at, snap.extracted, snap.trust, default_trust)
            )
        return out

    def _write_explanations(self, canonical_type: str, canonical_id: int, notes: str) -> None:
        mappings = self.db.execute(
            select(CanonicalEntityMapping).where(
                CanonicalEntityMapping.canonical_type == canonical_type,
                CanonicalEntityMapping.canonical_id == canonical_id,
            )
        ).scalars()
        for mapping in mappings:
            if mapping.notes != notes:
                mapping.notes = notes


def normalize_catalog(
    db: Session,
    *,
    policy: Optional[TrustPolicy] = None,
    types: Sequence[str] = NORMALIZATION_ORDER,
    extra_strategies: Sequence[ResolutionStrategy] = (),
) -> NormalizationStats:
    """Resolve, merge and write; the caller owns the transaction."""
    normalizer = Normalizer(db, policy or TrustPolicy(), extra_strategies)
    return normalizer.run(types)


def run_normalization(
    *,
    database_url: Optional[str] = None,
    settings: Optional[CatalogSettings] = None,
    types: Sequence[str] = NORMALIZATION_ORDER,
) -> Dict[str, object]:
    settings = settings or load_settings()
    SessionFactory = get_session_factory(database_url or settings.database_url)
    db = SessionFactory()
    try:
        stats = normalize_catalog(db, policy=settings.trust, types=types)
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()

    summary = stats.as_dict()
    LOGGER.info(
        "Normalization finished: inserted=%s updated=%s mappings=%s unresolved=%s",
        summary["total_inserted"],
        summary["total_updated"],
        summary["mappings_upserted"],
        summary["unresolved"],
    )
    return {"status": "ok", **summary}


__all__ = [
    "NORMALIZATION_ORDER",
    "EMPTY_COLUMN_VALUES",
    "TypeCounts",
    "NormalizationStats",
    "project_columns",
    "Normalizer",
    "normalize_catalog",
    "run_normalization",
]
