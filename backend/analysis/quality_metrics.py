"""Pure builders for the catalog quality audit.

Nothing here touches the database: callers hand in plain rows and get back
the metric dicts and findings that ``backend.services.quality_audit``
reports.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from backend.analysis.guardrails import first_real_image, sanitize_copy

MAX_SAMPLE_SLUGS = 20


@dataclass(frozen=True)
class ProductRow:
    slug: str
    category: Optional[str]
    image_url: Optional[str]
    image_urls: Any
    specs: Any


@dataclass(frozen=True)
class PlantRow:
    slug: str
    image_url: Optional[str]
    image_urls: Any
    sources: Any
    description: Optional[str]


@dataclass(frozen=True)
class OfferRow:
    product_id: int
    product_active: bool
    in_stock: bool
    price_cents: Optional[int]
    last_checked_at: Optional[datetime]

    @property
    def in_stock_priced(self) -> bool:
        return bool(self.in_stock) and self.price_cents is not None

    def checked_since(self, cutoff: datetime) -> bool:
        return self.last_checked_at is not None and self.last_checked_at >= cutoff


def sample_slugs(slugs: Iterable[str], limit: int = MAX_SAMPLE_SLUGS) -> List[str]:
    return sorted(set(slugs))[:limit]


def compute_freshness_percent(checked_within_window: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return round(checked_within_window / total * 100, 2)


def _has_specs(specs: Any) -> bool:
    return isinstance(specs, dict) and len(specs) > 0


def _has_sources(sources: Any) -> bool:
    if not isinstance(sources, list):
        return False
    return any(isinstance(s, str) and s.strip() for s in sources)


def build_category_metrics(
    slug: str,
    products: Sequence[ProductRow],
    offers_by_product: Mapping[str, Sequence[OfferRow]],
    cutoff: datetime,
) -> Dict[str, object]:
    """Completeness of the active products in one focus category.

    ``offers_by_product`` is keyed by product slug.
    """
    missing_image: List[str] = []
    missing_specs: List[str] = []
    missing_offer: List[str] = []
    missing_priced: List[str] = []
    stale: List[str] = []
    fresh = 0

    for product in products:
        offers = offers_by_product.get(product.slug, ())
        if first_real_image(product.image_url, product.image_urls) is None:
            missing_image.append(product.slug)
        if not _has_specs(product.specs):
            missing_specs.append(product.slug)
        if not offers:
            missing_offer.append(product.slug)
        if not any(o.in_stock_priced for o in offers):
            missing_priced.append(product.slug)
        if any(o.checked_since(cutoff) for o in offers):
            fresh += 1
        elif offers:
            stale.append(product.slug)

    count = len(products)
    return {
        "slug": slug,
        "product_count": count,
        "products_with_images": count - len(missing_image),
        "products_with_specs": count - len(missing_specs),
        "products_with_any_offer": count - len(missing_offer),
        "products_with_in_stock_priced_offers": count - len(missing_priced),
        "products_with_fresh_offers": fresh,
        "products_missing_images": len(missing_image),
        "products_missing_specs": len(missing_specs),
        "products_without_any_offer": len(missing_offer),
        "products_without_in_stock_priced_offers": len(missing_priced),
        "products_with_stale_offers": len(stale),
        "sample_missing_image_slugs": sample_slugs(missing_image),
        "sample_missing_spec_slugs": sample_slugs(missing_specs),
        "sample_missing_offer_slugs": sample_slugs(missing_offer),
        "sample_missing_in_stock_priced_offer_slugs": sample_slugs(missing_priced),
        "sample_stale_offer_slugs": sample_slugs(stale),
    }


def build_plant_metrics(plants: Sequence[PlantRow]) -> Dict[str, object]:
    missing_image = [p.slug for p in plants if first_real_image(p.image_url, p.image_urls) is None]
    missing_sources = [p.slug for p in plants if not _has_sources(p.sources)]
    missing_description = [p.slug for p in plants if sanitize_copy(p.description) is None]
    total = len(plants)
    return {
        "total": total,
        "with_images": total - len(missing_image),
        "with_sources": total - len(missing_sources),
        "with_description": total - len(missing_description),
        "missing_images": len(missing_image),
        "missing_sources": len(missing_sources),
        "missing_description": len(missing_description),
        "sample_missing_image_slugs": sample_slugs(missing_image),
        "sample_missing_source_slugs": sample_slugs(missing_sources),
        "sample_missing_description_slugs": sample_slugs(missing_description),
    }


def build_offer_freshness_metrics(
    offers: Sequence[OfferRow],
    cutoff: datetime,
    *,
    window_hours: int,
    slo_percent: float,
) -> Dict[str, object]:
    active = [o for o in offers if o.product_active]
    checked = sum(1 for o in active if o.checked_since(cutoff))
    return {
        "total_offers": len(offers),
        "active_catalog_offers": len(active),
        "inactive_catalog_offers": len(offers) - len(active),
        "offers_checked_within_window": checked,
        "offers_stale_or_missing_check": len(active) - checked,
        "offers_missing_check_timestamp": sum(1 for o in active if o.last_checked_at is None),
        "in_stock_priced_offers": sum(1 for o in active if o.in_stock_priced),
        "freshness_window_hours": window_hours,
        "freshness_slo_percent": slo_percent,
        "freshness_percent": compute_freshness_percent(checked, len(active)),
    }


def _finding(severity: str, code: str, scope: str, message: str) -> Dict[str, str]:
    return {"severity": severity, "code": code, "scope": scope, "message": message}


def _sorted(findings: List[Dict[str, str]]) -> List[Dict[str, str]]:
    return sorted(findings, key=lambda f: (f["code"], f["scope"], f["message"]))


def build_quality_findings(
    *,
    missing_focus_categories: Sequence[str],
    categories: Sequence[Mapping[str, Any]],
    plants: Mapping[str, Any],
    offers: Mapping[str, Any],
) -> Dict[str, List[Dict[str, str]]]:
    """Turn metrics into violations (fail the audit) and warnings (report only)."""
    violations: List[Dict[str, str]] = []
    warnings: List[Dict[str, str]] = []

    for slug in missing_focus_categories:
        violations.append(
            _finding("violation", "focus_category_missing", f"category:{slug}", f"No product carries focus category '{slug}'.")
        )

    for cat in categories:
        scope = f"category:{cat['slug']}"
        if cat["product_count"] == 0:
            violations.append(
                _finding("violation", "focus_category_empty", scope, f"Focus category '{cat['slug']}' has zero active products.")
            )
        elif cat["products_with_in_stock_priced_offers"] == 0:
            violations.append(
                _finding(
                    "violation",
                    "focus_category_no_priced_offers",
                    scope,
                    f"Focus category '{cat['slug']}' has no active products with in-stock priced offers.",
                )
            )
        if cat["products_missing_images"]:
            warnings.append(
                _finding(
                    "warning",
                    "focus_category_missing_images",
                    scope,
                    f"{cat['products_missing_images']} products in '{cat['slug']}' are missing catalog images.",
                )
            )
        if cat["products_missing_specs"]:
            warnings.append(
                _finding(
                    "warning",
                    "focus_category_missing_specs",
                    scope,
                    f"{cat['products_missing_specs']} products in '{cat['slug']}' are missing specs.",
                )
            )
        if cat["products_without_any_offer"]:
            warnings.append(
                _finding(
                    "warning",
                    "focus_category_missing_offers",
                    scope,
                    f"{cat['products_without_any_offer']} products in '{cat['slug']}' have no offers.",
                )
            )
        if cat["products_with_stale_offers"]:
            warnings.append(
                _finding(
                    "warning",
                    "focus_category_stale_offers",
                    scope,
                    f"{cat['products_with_stale_offers']} products in '{cat['slug']}' have no offer checked in the "
                    f"last {offers['freshness_window_hours']}h.",
                )
            )

    if offers["total_offers"] == 0 or offers["active_catalog_offers"] == 0:
        message = (
            "Canonical offers table has zero rows."
            if offers["total_offers"] == 0
            else "Active catalog has zero offers attached to active products."
        )
        violations.append(_finding("violation", "offers_empty", "offers", message))
    elif offers["freshness_percent"] < offers["freshness_slo_percent"]:
        violations.append(
            _finding(
                "violation",
                "offer_freshness_below_slo",
                "offers",
                f"Offer freshness is {offers['freshness_percent']}% "
                f"({offers['offers_checked_within_window']}/{offers['active_catalog_offers']} active-catalog offers "
                f"checked within {offers['freshness_window_hours']}h; target {offers['freshness_slo_percent']}%).",
            )
        )

    if offers["offers_missing_check_timestamp"]:
        warnings.append(
            _finding(
                "warning",
                "offers_missing_last_checked_at",
                "offers",
                f"{offers['offers_missing_check_timestamp']} active-catalog offers have never been checked.",
            )
        )

    for key, code, what in (
        ("missing_images", "plants_missing_images", "images"),
        ("missing_sources", "plants_missing_sources", "sources"),
        ("missing_description", "plants_missing_description", "descriptions"),
    ):
        if plants[key]:
            warnings.append(_finding("warning", code, "plants", f"{plants[key]} active plants are missing {what}."))

    return {"violations": _sorted(violations), "warnings": _sorted(warnings)}


__all__ = [
    "MAX_SAMPLE_SLUGS",
    "ProductRow",
    "PlantRow",
    "OfferRow",
    "sample_slugs",
    "compute_freshness_percent",
    "build_category_metrics",
    "build_plant_metrics",
    "build_offer_freshness_metrics",
    "build_quality_findings",
]
