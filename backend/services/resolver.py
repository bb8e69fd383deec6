"""Canonical entity resolution.

Maps an ingestion entity onto a canonical product, plant or offer. Strategies
run in order and the first single, unambiguous hit wins:

  1. the entity's existing mapping (re-confirmed as is)
  2. exact identifiers (offer id carried by a probe, product SKU/UPC/...)
  3. slug / name equality (product slug, brand+name; plant scientific name,
     slug; offer product+retailer+normalized URL)
  4. caller-supplied strategies

Creating a brand new canonical record is the normalizer's job, not ours.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from backend.db.models import (
    CANONICAL_MODELS,
    CanonicalEntityMapping,
    IngestionEntity,
    Offer,
    Plant,
    Product,
    utcnow,
)
from backend.db.upsert import MAPPING_UPSERT, upsert
from backend.ingestion.payloads import (
    AnyPayload,
    OfferAvailabilityPayload,
    OfferPayload,
    PlantPayload,
    ProductPayload,
)

logger = logging.getLogger(__name__)

IDENTIFIER_KEYS = ("sku", "upc", "ean", "gtin", "mpn", "asin", "model_number")

CONFIDENCE = {
    "admin_manual": 100,
    "identifier_exact": 100,
    "offer_id": 100,
    "scientific_name_exact": 97,
    "product_retailer_url_fingerprint": 96,
    "slug_exact": 94,
    "brand_name_fingerprint": 92,
    "product_retailer": 90,
    "new_canonical": 80,
}


class MappingError(ValueError):
    """Raised for invalid operator map/unmap requests."""


@dataclass(frozen=True)
class Resolution:
    canonical_type: str
    canonical_id: int
    match_method: str
    confidence: int


ResolutionStrategy = Callable[["CanonicalResolver", IngestionEntity, AnyPayload], Optional[Resolution]]


def _clean(value: Optional[str]) -> str:
    if not isinstance(value, str):
        return ""
    return " ".join(value.strip().split()).lower()


def normalize_identifier(value: Optional[str]) -> str:
    return re.sub(r"[^a-z0-9]", "", _clean(value))


def normalize_offer_url(url: Optional[str]) -> str:
    """Lowercase scheme/host, drop default ports, fragments and trailing slashes, sort the query."""
    if not isinstance(url, str) or not url.strip():
        return ""
    raw = url.strip()
    parts = urlsplit(raw)
    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()
    try:
        port = parts.port
    except ValueError:
        return raw.lower()
    if port and not ((scheme == "http" and port == 80) or (scheme == "https" and port == 443)):
        host = f"{host}:{port}"
    path = re.sub(r"/{2,}", "/", parts.path or "/")
    if len(path) > 1:
        path = path.rstrip("/")
    query = urlencode(sorted(parse_qsl(parts.query, keep_blank_values=True)))
    return urlunsplit((scheme, host, path, query, ""))


def _single(ids: Iterable[int]) -> Optional[int]:
    unique: Set[int] = set(int(i) for i in ids if i is not None)
    if len(unique) == 1:
        return next(iter(unique))
    return None


def _hit(canonical_type: str, canonical_id: Optional[int], method: str) -> Optional[Resolution]:
    if canonical_id is None:
        return None
    return Resolution(canonical_type, int(canonical_id), method, CONFIDENCE[method])


class CanonicalResolver:
    """Resolves entities against one session; keeps small lookup indexes per run."""

    def __init__(self, db: Session, extra_strategies: Sequence[ResolutionStrategy] = ()):
        self.db = db
        self.extra_strategies = list(extra_strategies)
        self._product_identifiers: Optional[Dict[str, Set[int]]] = None

    # -- public -------------------------------------------------------------

    def resolve(self, entity: IngestionEntity, payload: AnyPayload) -> Optional[Resolution]:
        strategies: List[ResolutionStrategy] = [CanonicalResolver._existing_mapping]
        strategies.extend(_TYPE_STRATEGIES.get(entity.entity_type, ()))
        strategies.extend(self.extra_strategies)
        for strategy in strategies:
            found = strategy(self, entity, payload)
            if found is not None:
                return found
        return None

    def product_id_for_slug(self, slug: Optional[str]) -> Optional[int]:
        key = _clean(slug)
        if not key:
            return None
        return self.db.execute(select(Product.id).where(func.lower(Product.slug) == key)).scalar_one_or_none()

    def remember_product(self, product: Product) -> None:
        if self._product_identifiers is None:
            return
        for value in _product_identifier_values(product):
            self._product_identifiers.setdefault(value, set()).add(product.id)

    # -- strategies ---------------------------------------------------------

    def _existing_mapping(self, entity: IngestionEntity, payload: AnyPayload) -> Optional[Resolution]:
        mapping = self.db.execute(
            select(CanonicalEntityMapping).where(CanonicalEntityMapping.entity_id == entity.id)
        ).scalar_one_or_none()
        if mapping is None or mapping.canonical_type != entity.entity_type:
            return None
        model = CANONICAL_MODELS[mapping.canonical_type]
        if self.db.get(model, mapping.canonical_id) is None:
            return None
        return Resolution(mapping.canonical_type, mapping.canonical_id, mapping.match_method, mapping.confidence)

    def _product_by_identifier(self, entity: IngestionEntity, payload: AnyPayload) -> Optional[Resolution]:
        if not isinstance(payload, ProductPayload) or not payload.identifiers:
            return None
        index = self._identifier_index()
        hits: List[int] = []
        for key in IDENTIFIER_KEYS:
            value = normalize_identifier(payload.identifiers.get(key))
            if value:
                hits.extend(index.get(value, ()))
        return _hit("product", _single(hits), "identifier_exact")

    def _product_by_slug(self, entity: IngestionEntity, payload: AnyPayload) -> Optional[Resolution]:
        if not isinstance(payload, ProductPayload):
            return None
        return _hit("product", self.product_id_for_slug(payload.slug), "slug_exact")

    def _product_by_brand_name(self, entity: IngestionEntity, payload: AnyPayload) -> Optional[Resolution]:
        if not isinstance(payload, ProductPayload) or not payload.brand:
            return None
        ids = self.db.execute(
            select(Product.id).where(
                func.lower(Product.brand) == _clean(payload.brand),
                func.lower(Product.name) == _clean(payload.name),
            )
        ).scalars()
        return _hit("product", _single(ids), "brand_name_fingerprint")

    def _plant_by_scientific_name(self, entity: IngestionEntity, payload: AnyPayload) -> Optional[Resolution]:
        if not isinstance(payload, PlantPayload) or not payload.scientific_name:
            return None
        ids = self.db.execute(
            select(Plant.id).where(func.lower(Plant.scientific_name) == _clean(payload.scientific_name))
        ).scalars()
        return _hit("plant", _single(ids), "scientific_name_exact")

    def _plant_by_slug(self, entity: IngestionEntity, payload: AnyPayload) -> Optional[Resolution]:
        if not isinstance(payload, PlantPayload):
            return None
        found = self.db.execute(select(Plant.id).where(func.lower(Plant.slug) == _clean(payload.slug))).scalar_one_or_none()
        return _hit("plant", found, "slug_exact")

    def _offer_by_id(self, entity: IngestionEntity, payload: AnyPayload) -> Optional[Resolution]:
        if not isinstance(payload, OfferAvailabilityPayload):
            return None
        found = self.db.get(Offer, payload.offer_id)
        return _hit("offer", found.id if found is not None else None, "offer_id")

    def _offer_by_fingerprint(self, entity: IngestionEntity, payload: AnyPayload) -> Optional[Resolution]:
        if not isinstance(payload, OfferPayload):
            return None
        product_id = self.product_id_for_slug(payload.product_slug)
        if product_id is None:
            return None
        rows = self.db.execute(
            select(Offer.id, Offer.url).where(
                Offer.product_id == product_id,
                Offer.retailer_slug == payload.retailer_slug,
            )
        ).all()
        wanted = normalize_offer_url(payload.url)
        if wanted:
            matched = [row.id for row in rows if normalize_offer_url(row.url) == wanted]
            return _hit("offer", _single(matched), "product_retailer_url_fingerprint")
        return _hit("offer", _single(row.id for row in rows), "product_retailer")

    # -- helpers ------------------------------------------------------------

    def _identifier_index(self) -> Dict[str, Set[int]]:
        if self._product_identifiers is None:
            index: Dict[str, Set[int]] = {}
            for product in self.db.execute(select(Product)).scalars():
                for value in _product_identifier_values(product):
                    index.setdefault(value, set()).add(product.id)
            self._product_identifiers = index
        return self._product_identifiers


def _product_identifier_values(product: Product) -> List[str]:
    meta = product.meta if isinstance(product.meta, dict) else {}
    identifiers = meta.get("identifiers")
    if not isinstance(identifiers, dict):
        return []
    out = []
    for key in IDENTIFIER_KEYS:
        value = normalize_identifier(identifiers.get(key))
        if value:
            out.append(value)
    return out


_TYPE_STRATEGIES: Dict[str, Sequence[ResolutionStrategy]] = {
    "product": (
        CanonicalResolver._product_by_identifier,
        CanonicalResolver._product_by_slug,
        CanonicalResolver._product_by_brand_name,
    ),
    "plant": (
        CanonicalResolver._plant_by_scientific_name,
        CanonicalResolver._plant_by_slug,
    ),
    "offer": (
        CanonicalResolver._offer_by_id,
        CanonicalResolver._offer_by_fingerprint,
    ),
}


def upsert_canonical_mapping(
    db: Session,
    entity_id: int,
    resolution: Resolution,
    *,
    notes: Optional[str] = None,
) -> bool:
    """Write the single mapping row for ``entity_id``.

    Conflict target is ``entity_id``: a new resolution overwrites type, id,
    method, confidence and notes. Returns False when the stored row already
    says exactly this, in which case nothing is written.
    """
    existing = db.execute(
        select(CanonicalEntityMapping).where(CanonicalEntityMapping.entity_id == entity_id)
    ).scalar_one_or_none()
    if existing is not None and (
        existing.canonical_type == resolution.canonical_type
        and existing.canonical_id == resolution.canonical_id
        and existing.match_method == resolution.match_method
        and existing.confidence == resolution.confidence
        and (notes is None or existing.notes == notes)
    ):
        return False

    values = {
        "entity_id": entity_id,
        "canonical_type": resolution.canonical_type,
        "canonical_id": resolution.canonical_id,
        "match_method": resolution.match_method,
        "confidence": max(0, min(100, int(resolution.confidence))),
        "updated_at": utcnow(),
    }
    if notes is not None:
        values["notes"] = notes
    upsert(db, MAPPING_UPSERT, values)
    return True


def map_entity_manually(
    db: Session,
    *,
    entity_id: int,
    canonical_type: str,
    canonical_id: int,
    actor: str,
) -> Dict[str, object]:
    if not actor or not actor.strip():
        raise MappingError("actor is required")
    if canonical_type not in CANONICAL_MODELS:
        raise MappingError(f"unknown canonical type {canonical_type!r}")

    entity = db.get(IngestionEntity, entity_id)
    if entity is None:
        raise MappingError(f"ingestion entity {entity_id} not found")
    if entity.entity_type != canonical_type:
        raise MappingError(
            f"entity {entity_id} is a {entity.entity_type}; cannot map it to a {canonical_type}"
        )
    if db.get(CANONICAL_MODELS[canonical_type], canonical_id) is None:
        raise MappingError(f"{canonical_type} {canonical_id} not found")

    written = upsert_canonical_mapping(
        db,
        entity_id,
        Resolution(canonical_type, canonical_id, "admin_manual", CONFIDENCE["admin_manual"]),
    )
    db.commit()
    logger.info("Mapped entity %s -> %s %s (actor=%s)", entity_id, canonical_type, canonical_id, actor)
    return {"status": "ok", "entity_id": entity_id, "written": written}


def unmap_entity(db: Session, *, entity_id: int, actor: str) -> Dict[str, object]:
    if not actor or not actor.strip():
        raise MappingError("actor is required")
    res = db.execute(delete(CanonicalEntityMapping).where(CanonicalEntityMapping.entity_id == entity_id))
    db.commit()
    if res.rowcount:
        logger.info("Unmapped entity %s (actor=%s)", entity_id, actor)
    return {"status": "ok", "entity_id": entity_id, "removed": int(res.rowcount or 0)}


__all__ = [
    "IDENTIFIER_KEYS",
    "CONFIDENCE",
    "MappingError",
    "Resolution",
    "ResolutionStrategy",
    "CanonicalResolver",
    "normalize_identifier",
    "normalize_offer_url",
    "upsert_canonical_mapping",
    "map_entity_manually",
    "unmap_entity",
]
