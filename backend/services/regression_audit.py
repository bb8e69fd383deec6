"""Read-only regression gate run after every catalog pipeline stage."""
from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.analysis.guardrails import has_placeholder_copy, has_placeholder_image
from backend.db.models import Plant, Product, get_session_factory, utcnow
from backend.services.provenance import run_provenance_audit

LOGGER = logging.getLogger("tankcatalog.catalog")

MAX_SAMPLE_SLUGS = 20


class RegressionAuditError(RuntimeError):
    """Raised when a catalog job must abort because the audit found violations."""

    def __init__(self, message: str, report: Dict[str, object]):
        super().__init__(message)
        self.report = report


def _placeholder_summary(rows: Iterable[Tuple[str, bool, bool]]) -> Dict[str, object]:
    image_markers = 0
    copy_markers = 0
    sample: List[str] = []
    for slug, image_violation, copy_violation in rows:
        if image_violation:
            image_markers += 1
        if copy_violation:
            copy_markers += 1
        if (image_violation or copy_violation) and len(sample) < MAX_SAMPLE_SLUGS:
            sample.append(slug)
    return {
        "image_markers": image_markers,
        "copy_markers": copy_markers,
        "total": image_markers + copy_markers,
        "sample_slugs": sample,
    }


def run_regression_audit(db: Session) -> Dict[str, object]:
    provenance = run_provenance_audit(db)

    products = db.execute(
        select(Product.slug, Product.image_url, Product.image_urls, Product.description)
        .where(Product.status == "active")
        .order_by(Product.slug)
    ).all()
    plants = db.execute(
        select(Plant.slug, Plant.image_url, Plant.image_urls, Plant.description, Plant.notes)
        .where(Plant.status == "active")
        .order_by(Plant.slug)
    ).all()

    product_summary = _placeholder_summary(
        (row.slug, has_placeholder_image(row.image_url, row.image_urls), has_placeholder_copy([row.description]))
        for row in products
    )
    plant_summary = _placeholder_summary(
        (
            row.slug,
            has_placeholder_image(row.image_url, row.image_urls),
            has_placeholder_copy([row.description, row.notes]),
        )
        for row in plants
    )
    placeholders_total = product_summary["total"] + plant_summary["total"]

    return {
        "generated_at": utcnow().isoformat(),
        "provenance": provenance,
        "placeholders": {
            "products": product_summary,
            "plants": plant_summary,
            "total": placeholders_total,
        },
        "has_placeholder_violations": placeholders_total > 0,
        "has_violations": bool(provenance["has_displayed_violations"]) or placeholders_total > 0,
    }


def violation_messages(report: Dict[str, object]) -> List[str]:
    """One line per non-zero violated count, in a stable order."""
    messages: List[str] = []
    provenance = report["provenance"]
    for kind, count in provenance["displayed_without_provenance"].items():
        if count:
            messages.append(f"displayed {kind} without provenance: {count}")
    build_parts = provenance["build_parts_referencing_non_provenance"]
    for kind in ("products", "plants"):
        if build_parts[kind]:
            messages.append(f"build parts referencing non-provenance {kind}: {build_parts[kind]}")
    placeholders = report["placeholders"]
    for kind in ("products", "plants"):
        summary = placeholders[kind]
        if summary["image_markers"]:
            messages.append(f"active {kind} with placeholder images: {summary['image_markers']}")
        if summary["copy_markers"]:
            messages.append(f"active {kind} with placeholder copy: {summary['copy_markers']}")
    return messages


def assert_no_violations(report: Dict[str, object]) -> Dict[str, object]:
    if not report.get("has_violations"):
        return report
    messages = violation_messages(report)
    LOGGER.error("Catalog regression audit failed: %s", "; ".join(messages))
    raise RegressionAuditError("catalog regression audit failed: " + "; ".join(messages), report)


def run_regression_audit_for_url(*, database_url: Optional[str] = None) -> Dict[str, object]:
    SessionFactory = get_session_factory(database_url)
    db = SessionFactory()
    try:
        return run_regression_audit(db)
    finally:
        db.close()


__all__ = [
    "MAX_SAMPLE_SLUGS",
    "RegressionAuditError",
    "run_regression_audit",
    "violation_messages",
    "assert_no_violations",
    "run_regression_audit_for_url",
]
