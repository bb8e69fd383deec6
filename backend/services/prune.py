"""Legacy row pruning.

Canonical rows that have lost provenance are removed together with every
row that references them. All deletes run in a single transaction; if any
step fails nothing is removed and :class:`CatalogPruneError` is raised.
"""
from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from backend.analysis.prune_plan import PrunePlan, PruneTargets, build_prune_plan, unique_sorted
from backend.db.models import (
    BuildItem,
    CanonicalEntityMapping,
    NormalizationOverride,
    Offer,
    OfferSummary,
    Plant,
    PriceHistory,
    Product,
    UserFavorite,
    get_session_factory,
    utcnow,
)
from backend.services.offer_summaries import refresh_offer_summaries
from backend.services.provenance import lacks_provenance

LOGGER = logging.getLogger("tankcatalog.catalog")


class CatalogPruneError(RuntimeError):
    """A prune transaction failed and was rolled back."""


def detect_legacy_targets(db: Session) -> PruneTargets:
    return PruneTargets(
        product_ids=unique_sorted(db.execute(select(Product.id).where(lacks_provenance("product", Product.id))).scalars()),
        plant_ids=unique_sorted(db.execute(select(Plant.id).where(lacks_provenance("plant", Plant.id))).scalars()),
        offer_ids=unique_sorted(db.execute(select(Offer.id).where(lacks_provenance("offer", Offer.id))).scalars()),
    )


def _offer_rows(db: Session, targets: PruneTargets) -> List[Tuple[int, int]]:
    rows: Dict[int, int] = {}
    if targets.offer_ids:
        for offer_id, product_id in db.execute(
            select(Offer.id, Offer.product_id).where(Offer.id.in_(targets.offer_ids))
        ).all():
            rows[offer_id] = product_id
    if targets.product_ids:
        for offer_id, product_id in db.execute(
            select(Offer.id, Offer.product_id).where(Offer.product_id.in_(targets.product_ids))
        ).all():
            rows[offer_id] = product_id
    return sorted(rows.items())


def plan_legacy_prune(db: Session, targets: Optional[PruneTargets] = None) -> Tuple[PruneTargets, PrunePlan]:
    targets = targets or detect_legacy_targets(db)
    return targets, build_prune_plan(targets, _offer_rows(db, targets))


# --- transaction steps ---------------------------------------------------------


def _run(db: Session, stmt) -> int:
    return int(db.execute(stmt.execution_options(synchronize_session=False)).rowcount or 0)


def _clear_selected_offers(db: Session, offer_ids: List[int]) -> int:
    if not offer_ids:
        return 0
    return _run(db, update(BuildItem).where(BuildItem.selected_offer_id.in_(offer_ids)).values(selected_offer_id=None))


def _delete_build_items(db: Session, column, ids: List[int]) -> int:
    if not ids:
        return 0
    return _run(db, delete(BuildItem).where(column.in_(ids)))


def _delete_favorites(db: Session, column, ids: List[int]) -> int:
    if not ids:
        return 0
    return _run(db, delete(UserFavorite).where(column.in_(ids)))


def _delete_price_history(db: Session, offer_ids: List[int]) -> int:
    if not offer_ids:
        return 0
    return _run(db, delete(PriceHistory).where(PriceHistory.offer_id.in_(offer_ids)))


def _delete_provenance_rows(db: Session, canonical_type: str, ids: List[int]) -> Tuple[int, int]:
    if not ids:
        return 0, 0
    overrides = _run(
        db,
        delete(NormalizationOverride).where(
            NormalizationOverride.canonical_type == canonical_type,
            NormalizationOverride.canonical_id.in_(ids),
        ),
    )
    mappings = _run(
        db,
        delete(CanonicalEntityMapping).where(
            CanonicalEntityMapping.canonical_type == canonical_type,
            CanonicalEntityMapping.canonical_id.in_(ids),
        ),
    )
    return overrides, mappings


def _delete_offer_summaries(db: Session, product_ids: List[int]) -> int:
    if not product_ids:
        return 0
    return _run(db, delete(OfferSummary).where(OfferSummary.product_id.in_(product_ids)))


def _delete_rows(db: Session, model, ids: List[int]) -> int:
    if not ids:
        return 0
    return _run(db, delete(model).where(model.id.in_(ids)))


def execute_prune_plan(db: Session, plan: PrunePlan) -> Dict[str, Dict[str, int]]:
    """Apply ``plan`` atomically and commit. Any failure rolls back every step."""
    references = {
        "build_items_selected_offer_cleared": 0,
        "build_items_by_product_deleted": 0,
        "build_items_by_plant_deleted": 0,
        "user_favorites_by_product_deleted": 0,
        "user_favorites_by_plant_deleted": 0,
        "price_history_deleted": 0,
        "canonical_mappings_deleted": 0,
        "normalization_overrides_deleted": 0,
        "offer_summaries_deleted": 0,
    }
    deleted = {"products": 0, "plants": 0, "offers": 0}

    offers = plan.offer_ids_to_delete
    products = plan.product_ids_to_delete
    plants = plan.plant_ids_to_delete

    try:
        references["build_items_selected_offer_cleared"] = _clear_selected_offers(db, offers)
        references["build_items_by_product_deleted"] = _delete_build_items(db, BuildItem.product_id, products)
        references["build_items_by_plant_deleted"] = _delete_build_items(db, BuildItem.plant_id, plants)
        references["user_favorites_by_product_deleted"] = _delete_favorites(db, UserFavorite.product_id, products)
        references["user_favorites_by_plant_deleted"] = _delete_favorites(db, UserFavorite.plant_id, plants)
        references["price_history_deleted"] = _delete_price_history(db, offers)

        for canonical_type, ids in (("offer", offers), ("product", products), ("plant", plants)):
            overrides, mappings = _delete_provenance_rows(db, canonical_type, ids)
            references["normalization_overrides_deleted"] += overrides
            references["canonical_mappings_deleted"] += mappings

        references["offer_summaries_deleted"] = _delete_offer_summaries(db, products)
        deleted["offers"] = _delete_rows(db, Offer, offers)
        deleted["products"] = _delete_rows(db, Product, products)
        deleted["plants"] = _delete_rows(db, Plant, plants)
        db.commit()
    except Exception as exc:
        db.rollback()
        LOGGER.error("Legacy prune rolled back: %s", exc)
        raise CatalogPruneError(f"legacy prune failed and was rolled back: {exc}") from exc

    db.expire_all()
    return {"references": references, "deleted": deleted}


def prune_legacy_catalog_rows(
    db: Session,
    *,
    targets: Optional[PruneTargets] = None,
    dry_run: bool = False,
) -> Dict[str, object]:
    candidates, plan = plan_legacy_prune(db, targets)
    result: Dict[str, object] = {
        "generated_at": utcnow().isoformat(),
        "dry_run": dry_run,
        "candidates": candidates.as_dict(),
        "plan": {
            "products_to_delete": len(plan.product_ids_to_delete),
            "plants_to_delete": len(plan.plant_ids_to_delete),
            "offers_to_delete": len(plan.offer_ids_to_delete),
            "offer_summary_refresh_products": len(plan.refresh_offer_summary_product_ids),
        },
    }
    if dry_run or plan.is_empty:
        result.update({"references": {}, "deleted": {"products": 0, "plants": 0, "offers": 0}})
        return result

    result.update(execute_prune_plan(db, plan))

    # the deletes are committed; a failure here leaves stale summaries, not orphans
    refresh_offer_summaries(db, plan.refresh_offer_summary_product_ids)
    db.commit()

    LOGGER.info(
        "Legacy prune deleted products=%s plants=%s offers=%s",
        len(plan.product_ids_to_delete),
        len(plan.plant_ids_to_delete),
        len(plan.offer_ids_to_delete),
    )
    return result


def run_legacy_prune(*, database_url: Optional[str] = None, dry_run: bool = False) -> Dict[str, object]:
    SessionFactory = get_session_factory(database_url)
    db = SessionFactory()
    try:
        return prune_legacy_catalog_rows(db, dry_run=dry_run)
    finally:
        db.close()


__all__ = [
    "CatalogPruneError",
    "detect_legacy_targets",
    "plan_legacy_prune",
    "execute_prune_plan",
    "prune_legacy_catalog_rows",
    "run_legacy_prune",
]
