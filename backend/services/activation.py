"""Catalog activation policy.

Derives ``status`` for products and plants from the data they actually
carry. Only rows whose status differs from the policy verdict are written;
nothing is ever deleted here.
"""
from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from backend.analysis.guardrails import (
    first_real_image,
    is_non_production_slug,
    sanitize_copy,
)
from backend.db.models import Offer, Plant, Product, get_session_factory, utcnow
from backend.settings import CatalogSettings, load_settings

LOGGER = logging.getLogger("tankcatalog.catalog")

MAX_SAMPLE_SLUGS = 20


def _sample(slugs: Iterable[str]) -> List[str]:
    return sorted(set(slugs))[:MAX_SAMPLE_SLUGS]


def product_should_be_active(product: Product, in_stock_priced_offers: int, non_production: "re.Pattern[str]") -> bool:
    if is_non_production_slug(product.slug, non_production):
        return False
    if in_stock_priced_offers <= 0:
        return False
    if not isinstance(product.specs, dict) or not product.specs:
        return False
    return first_real_image(product.image_url, product.image_urls) is not None


def plant_should_be_active(plant: Plant, non_production: "re.Pattern[str]") -> bool:
    if is_non_production_slug(plant.slug, non_production):
        return False
    if first_real_image(plant.image_url, plant.image_urls) is None:
        return False
    sources = plant.sources if isinstance(plant.sources, list) else []
    if not any(isinstance(s, str) and s.strip() for s in sources):
        return False
    # placeholder description text counts as empty
    return sanitize_copy(plant.description) is not None


def _set_status(db: Session, model, ids: List[int], status: str, now: datetime) -> None:
    if not ids:
        return
    db.execute(
        update(model)
        .where(model.id.in_(ids))
        .values(status=status, updated_at=now)
        .execution_options(synchronize_session=False)
    )


def apply_catalog_activation_policy(
    db: Session,
    *,
    non_production: Optional["re.Pattern[str]"] = None,
    now: Optional[datetime] = None,
) -> Dict[str, object]:
    """Evaluate every product and plant; the caller owns the transaction."""
    now = now or utcnow()
    pattern = non_production or CatalogSettings().non_production_slug_re()

    offer_counts = dict(
        db.execute(
            select(Offer.product_id, func.count(Offer.id))
            .where(Offer.in_stock.is_(True), Offer.price_cents.is_not(None))
            .group_by(Offer.product_id)
        ).all()
    )

    products = db.execute(select(Product).order_by(Product.id)).scalars().all()
    p_on: List[Product] = []
    p_off: List[Product] = []
    for product in products:
        verdict = product_should_be_active(product, int(offer_counts.get(product.id, 0)), pattern)
        if verdict and product.status != "active":
            p_on.append(product)
        elif not verdict and product.status == "active":
            p_off.append(product)

    plants = db.execute(select(Plant).order_by(Plant.id)).scalars().all()
    pl_on: List[Plant] = []
    pl_off: List[Plant] = []
    for plant in plants:
        verdict = plant_should_be_active(plant, pattern)
        if verdict and plant.status != "active":
            pl_on.append(plant)
        elif not verdict and plant.status == "active":
            pl_off.append(plant)

    _set_status(db, Product, [p.id for p in p_on], "active", now)
    _set_status(db, Product, [p.id for p in p_off], "inactive", now)
    _set_status(db, Plant, [p.id for p in pl_on], "active", now)
    _set_status(db, Plant, [p.id for p in pl_off], "inactive", now)
    db.expire_all()

    result = {
        "generated_at": now.isoformat(),
        "products": {
            "evaluated": len(products),
            "activated": len(p_on),
            "deactivated": len(p_off),
            "sample_activated_slugs": _sample(p.slug for p in p_on),
            "sample_deactivated_slugs": _sample(p.slug for p in p_off),
        },
        "plants": {
            "evaluated": len(plants),
            "activated": len(pl_on),
            "deactivated": len(pl_off),
            "sample_activated_slugs": _sample(p.slug for p in pl_on),
            "sample_deactivated_slugs": _sample(p.slug for p in pl_off),
        },
    }
    LOGGER.info(
        "Activation policy: products +%d/-%d plants +%d/-%d",
        len(p_on),
        len(p_off),
        len(pl_on),
        len(pl_off),
    )
    return result


def run_activation_policy(
    *,
    database_url: Optional[str] = None,
    settings: Optional[CatalogSettings] = None,
) -> Dict[str, object]:
    settings = settings or load_settings()
    SessionFactory = get_session_factory(database_url or settings.database_url)
    db = SessionFactory()
    try:
        result = apply_catalog_activation_policy(db, non_production=settings.non_production_slug_re())
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
    return result


__all__ = [
    "MAX_SAMPLE_SLUGS",
    "product_should_be_active",
    "plant_should_be_active",
    "apply_catalog_activation_policy",
    "run_activation_policy",
]
