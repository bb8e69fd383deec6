"""Provenance predicate and audit.

A canonical record has provenance when an *active* ingestion entity of the
same type is mapped to it, or when an operator override targets it. Records
without provenance must never be displayed and are candidates for pruning.
"""
from __future__ import annotations

from typing import Dict

from sqlalchemy import and_, distinct, exists, func, not_, or_, select
from sqlalchemy.orm import Session

from backend.db.models import (
    BuildItem,
    CanonicalEntityMapping,
    IngestionEntity,
    NormalizationOverride,
    Offer,
    Plant,
    Product,
    utcnow,
)


def has_provenance(canonical_type: str, id_column):
    """Correlated SQL boolean for use in WHERE clauses against ``id_column``."""
    mapped = exists().where(
        and_(
            CanonicalEntityMapping.canonical_type == canonical_type,
            CanonicalEntityMapping.canonical_id == id_column,
            IngestionEntity.id == CanonicalEntityMapping.entity_id,
            IngestionEntity.entity_type == canonical_type,
            IngestionEntity.active.is_(True),
        )
    )
    overridden = exists().where(
        and_(
            NormalizationOverride.canonical_type == canonical_type,
            NormalizationOverride.canonical_id == id_column,
        )
    )
    return or_(mapped, overridden)


def lacks_provenance(canonical_type: str, id_column):
    return not_(has_provenance(canonical_type, id_column))


def _count(db: Session, stmt) -> int:
    return int(db.execute(stmt).scalar() or 0)


def run_provenance_audit(db: Session) -> Dict[str, object]:
    product_bad = lacks_provenance("product", Product.id)
    plant_bad = lacks_provenance("plant", Plant.id)
    offer_bad = lacks_provenance("offer", Offer.id)
    product_active = Product.status == "active"
    plant_active = Plant.status == "active"

    canonical = {
        "products": _count(db, select(func.count()).select_from(Product).where(product_bad)),
        "plants": _count(db, select(func.count()).select_from(Plant).where(plant_bad)),
        "offers": _count(db, select(func.count()).select_from(Offer).where(offer_bad)),
        "categories": _count(
            db,
            select(func.count(distinct(Product.category))).where(product_bad, Product.category.is_not(None)),
        ),
    }

    displayed = {
        "products": _count(db, select(func.count()).select_from(Product).where(product_active, product_bad)),
        "plants": _count(db, select(func.count()).select_from(Plant).where(plant_active, plant_bad)),
        "offers": _count(
            db,
            select(func.count())
            .select_from(Offer)
            .join(Product, Product.id == Offer.product_id)
            .where(product_active, or_(product_bad, offer_bad)),
        ),
        "categories": _count(
            db,
            select(func.count(distinct(Product.category))).where(
                product_active, product_bad, Product.category.is_not(None)
            ),
        ),
    }

    build_products = _count(
        db,
        select(func.count()).select_from(BuildItem).join(Product, Product.id == BuildItem.product_id).where(product_bad),
    )
    build_plants = _count(
        db,
        select(func.count()).select_from(BuildItem).join(Plant, Plant.id == BuildItem.plant_id).where(plant_bad),
    )
    build_parts = {"products": build_products, "plants": build_plants, "total": build_products + build_plants}

    return {
        "generated_at": utcnow().isoformat(),
        "canonical_without_provenance": canonical,
        "displayed_without_provenance": displayed,
        "build_parts_referencing_non_provenance": build_parts,
        "has_displayed_violations": any(v > 0 for v in displayed.values()) or build_parts["total"] > 0,
    }


__all__ = ["has_provenance", "lacks_provenance", "run_provenance_audit"]
