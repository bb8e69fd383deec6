"""Catalog quality and offer freshness audit.

Read-only. Reports how complete the active catalog is per focus category,
how complete active plants are, and what share of active-catalog offers
were checked within the freshness window. Findings split into violations
(``has_violations``) and warnings (``has_warnings``).
"""
from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from backend.analysis.quality_metrics import (
    OfferRow,
    PlantRow,
    ProductRow,
    build_category_metrics,
    build_offer_freshness_metrics,
    build_plant_metrics,
    build_quality_findings,
)
from backend.db.models import (
    CanonicalEntityMapping,
    IngestionEntity,
    Offer,
    Plant,
    Product,
    as_utc,
    get_session_factory,
    utcnow,
)
from backend.settings import CatalogSettings, load_settings

LOGGER = logging.getLogger("tankcatalog.catalog")

MAPPABLE_ENTITY_TYPES = ("product", "plant", "offer")


def count_unmapped_entities(db: Session) -> int:
    stmt = (
        select(func.count(IngestionEntity.id))
        .outerjoin(CanonicalEntityMapping, CanonicalEntityMapping.entity_id == IngestionEntity.id)
        .where(
            IngestionEntity.entity_type.in_(MAPPABLE_ENTITY_TYPES),
            CanonicalEntityMapping.id.is_(None),
        )
    )
    return int(db.execute(stmt).scalar() or 0)


def _offer_rows(db: Session) -> Dict[str, List[OfferRow]]:
    rows = db.execute(
        select(
            Offer.product_id,
            Product.slug,
            Product.status,
            Offer.in_stock,
            Offer.price_cents,
            Offer.last_checked_at,
        ).join(Product, Product.id == Offer.product_id)
    ).all()
    by_slug: Dict[str, List[OfferRow]] = defaultdict(list)
    for row in rows:
        by_slug[row.slug].append(
            OfferRow(
                product_id=row.product_id,
                product_active=row.status == "active",
                in_stock=bool(row.in_stock),
                price_cents=row.price_cents,
                last_checked_at=as_utc(row.last_checked_at),
            )
        )
    return by_slug


def run_catalog_quality_audit(
    db: Session,
    *,
    settings: Optional[CatalogSettings] = None,
    now: Optional[datetime] = None,
) -> Dict[str, object]:
    settings = settings or load_settings()
    now = now or utcnow()
    focus = list(dict.fromkeys(settings.quality_focus_categories))
    window = settings.offer_freshness_window_hours
    cutoff = now - timedelta(hours=window)

    present = set(
        db.execute(select(Product.category).where(Product.category.in_(focus)).distinct()).scalars()
    )
    missing_focus = [slug for slug in focus if slug not in present]

    active_products = db.execute(
        select(Product.slug, Product.category, Product.image_url, Product.image_urls, Product.specs).where(
            Product.status == "active", Product.category.in_(focus)
        )
    ).all()
    offers_by_product = _offer_rows(db)

    categories = []
    for slug in focus:
        rows = [
            ProductRow(r.slug, r.category, r.image_url, r.image_urls, r.specs)
            for r in active_products
            if r.category == slug
        ]
        categories.append(build_category_metrics(slug, rows, offers_by_product, cutoff))

    plant_rows = [
        PlantRow(r.slug, r.image_url, r.image_urls, r.sources, r.description)
        for r in db.execute(
            select(Plant.slug, Plant.image_url, Plant.image_urls, Plant.sources, Plant.description).where(
                Plant.status == "active"
            )
        )
    ]
    plants = build_plant_metrics(plant_rows)

    all_offers = [o for rows in offers_by_product.values() for o in rows]
    offers = build_offer_freshness_metrics(
        all_offers,
        cutoff,
        window_hours=window,
        slo_percent=settings.offer_freshness_slo_percent,
    )

    findings = build_quality_findings(
        missing_focus_categories=missing_focus,
        categories=categories,
        plants=plants,
        offers=offers,
    )
    report = {
        "generated_at": now.isoformat(),
        "focus_categories": focus,
        "missing_focus_categories": missing_focus,
        "categories": categories,
        "plants": plants,
        "offers": offers,
        "counts": {"unmapped_entities": count_unmapped_entities(db)},
        "findings": findings,
        "has_violations": bool(findings["violations"]),
        "has_warnings": bool(findings["warnings"]),
    }
    LOGGER.info(
        "Catalog quality audit: violations=%s warnings=%s freshness=%s%%",
        len(findings["violations"]),
        len(findings["warnings"]),
        offers["freshness_percent"],
    )
    return report


def run_catalog_quality_audit_for_url(
    *,
    database_url: Optional[str] = None,
    settings: Optional[CatalogSettings] = None,
) -> Dict[str, object]:
    settings = settings or load_settings()
    SessionFactory = get_session_factory(database_url or settings.database_url)
    db = SessionFactory()
    try:
        return run_catalog_quality_audit(db, settings=settings)
    finally:
        db.close()


__all__ = [
    "count_unmapped_entities",
    "run_catalog_quality_audit",
    "run_catalog_quality_audit_for_url",
]
