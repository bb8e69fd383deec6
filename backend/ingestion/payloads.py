"""Typed source payloads.

Every snapshot's ``raw_json`` is one member of a tagged union keyed by
``kind``. Adapters build these models; the resolver and normalizer read them
back through :func:`parse_payload`. Anything that fails validation is kept
as :class:`OpaquePayload` so a malformed observation never blocks a run.
"""
from __future__ import annotations

import logging
from typing import Annotated, Any, ClassVar, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

logger = logging.getLogger(__name__)

ExtractedFields = Dict[str, Dict[str, Any]]
TrustMap = Dict[str, str]


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict)):
        return len(value) == 0
    return False


def flatten_fields(values: Dict[str, Any], prefix: str = "") -> Dict[str, Any]:
    """Flatten nested dicts into dot paths. Lists stay whole; empty values are dropped."""
    out: Dict[str, Any] = {}
    for key, value in values.items():
        path = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, dict):
            if value:
                out.update(flatten_fields(value, path))
            continue
        if _is_empty(value):
            continue
        out[path] = value
    return out


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    entity_type: ClassVar[str] = ""

    def canonical_fields(self) -> Dict[str, Any]:
        raise NotImplementedError


class ProductPayload(_Payload):
    entity_type: ClassVar[str] = "product"

    kind: Literal["product"] = "product"
    slug: str = Field(min_length=1)
    name: str = Field(min_length=1)
    brand: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    image_url: Optional[str] = None
    image_urls: List[str] = Field(default_factory=list)
    specs: Dict[str, Any] = Field(default_factory=dict)
    meta: Dict[str, Any] = Field(default_factory=dict)
    identifiers: Dict[str, str] = Field(default_factory=dict)

    def canonical_fields(self) -> Dict[str, Any]:
        meta = dict(self.meta)
        if self.identifiers:
            # the resolver matches later observations against meta.identifiers
            meta["identifiers"] = dict(self.identifiers)
        return {
            "slug": self.slug,
            "name": self.name,
            "brand": self.brand,
            "category": self.category,
            "description": self.description,
            "image_url": self.image_url,
            "image_urls": list(self.image_urls),
            "specs": dict(self.specs),
            "meta": meta,
        }


class PlantPayload(_Payload):
    entity_type: ClassVar[str] = "plant"

    kind: Literal["plant"] = "plant"
    slug: str = Field(min_length=1)
    common_name: str = Field(min_length=1)
    scientific_name: Optional[str] = None
    family: Optional[str] = None
    description: Optional[str] = None
    notes: Optional[str] = None
    image_url: Optional[str] = None
    image_urls: List[str] = Field(default_factory=list)
    sources: List[str] = Field(default_factory=list)
    difficulty: Optional[str] = None
    light_demand: Optional[str] = None
    co2_demand: Optional[str] = None
    growth_rate: Optional[str] = None
    placement: Optional[str] = None

    def canonical_fields(self) -> Dict[str, Any]:
        return {
            "slug": self.slug,
            "common_name": self.common_name,
            "scientific_name": self.scientific_name,
            "family": self.family,
            "description": self.description,
            "notes": self.notes,
            "image_url": self.image_url,
            "image_urls": list(self.image_urls),
            "sources": list(self.sources),
            "care": {
                "difficulty": self.difficulty,
                "light_demand": self.light_demand,
                "co2_demand": self.co2_demand,
                "growth_rate": self.growth_rate,
                "placement": self.placement,
            },
        }


class OfferPayload(_Payload):
    entity_type: ClassVar[str] = "offer"

    kind: Literal["offer"] = "offer"
    product_slug: str = Field(min_length=1)
    retailer_slug: str = Field(min_length=1)
    url: Optional[str] = None
    affiliate_url: Optional[str] = None
    price_cents: Optional[int] = Field(default=None, ge=0)
    currency: str = "USD"
    in_stock: Optional[bool] = None

    def canonical_fields(self) -> Dict[str, Any]:
        return {
            "retailer_slug": self.retailer_slug,
            "url": self.url,
            "affiliate_url": self.affiliate_url,
            "price_cents": self.price_cents,
            "currency": self.currency,
            "in_stock": self.in_stock,
        }


class OfferAvailabilityPayload(_Payload):
    """One HEAD probe of an offer URL, bucketed to the minute it was observed."""

    entity_type: ClassVar[str] = "offer"

    kind: Literal["offer_availability"] = "offer_availability"
    offer_id: int
    url: str
    final_url: Optional[str] = None
    status: Optional[int] = None
    content_type: Optional[str] = None
    in_stock: Optional[bool] = None
    observed_minute: int
    error: Optional[str] = None

    def canonical_fields(self) -> Dict[str, Any]:
        if self.in_stock is None:
            return {}
        return {"in_stock": self.in_stock}


class OpaquePayload(BaseModel):
    """Fallback for payloads no adapter model recognises; never contributes fields."""

    model_config = ConfigDict(extra="ignore")

    kind: Literal["opaque"] = "opaque"
    entity_type: str
    raw: Any = None

    def canonical_fields(self) -> Dict[str, Any]:
        return {}


CatalogPayload = Union[ProductPayload, PlantPayload, OfferPayload, OfferAvailabilityPayload]
AnyPayload = Union[ProductPayload, PlantPayload, OfferPayload, OfferAvailabilityPayload, OpaquePayload]

_PAYLOAD_ADAPTER: TypeAdapter = TypeAdapter(Annotated[CatalogPayload, Field(discriminator="kind")])


def parse_payload(entity_type: str, raw: Any) -> AnyPayload:
    if not isinstance(raw, dict):
        return OpaquePayload(entity_type=entity_type, raw=raw)

    data = dict(raw)
    data.setdefault("kind", entity_type)
    try:
        payload = _PAYLOAD_ADAPTER.validate_python(data)
    except ValidationError as exc:
        logger.debug("Unrecognised %s payload kept opaque: %s", entity_type, exc.errors()[:3])
        return OpaquePayload(entity_type=entity_type, raw=raw)

    if payload.entity_type != entity_type:
        return OpaquePayload(entity_type=entity_type, raw=raw)
    return payload


def build_observation(payload: AnyPayload, trust_tier: str) -> Tuple[ExtractedFields, TrustMap]:
    """Flatten a payload into the per-field ``extracted``/``trust`` maps stored on a snapshot."""
    fields = flatten_fields(payload.canonical_fields())
    extracted = {path: {"value": value, "trust": trust_tier} for path, value in fields.items()}
    trust = {path: trust_tier for path in fields}
    return extracted, trust


def payload_to_raw(payload: AnyPayload) -> Dict[str, Any]:
    return payload.model_dump(mode="json", exclude_none=True)


__all__ = [
    "ExtractedFields",
    "TrustMap",
    "flatten_fields",
    "ProductPayload",
    "PlantPayload",
    "OfferPayload",
    "OfferAvailabilityPayload",
    "OpaquePayload",
    "CatalogPayload",
    "AnyPayload",
    "parse_payload",
    "build_observation",
    "payload_to_raw",
]
