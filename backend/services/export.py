"""Export utilities for the canonical catalog."""
from __future__ import annotations

import csv
import json
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from backend.db.models import Offer, Plant, Product, get_session_factory, utcnow
from backend.runtime import EXPORTS_DIR, ensure_runtime_directories

EXPORT_TYPES = ("products", "plants", "offers")


def export_catalog(
    database_url: Optional[str] = None,
    output: Optional[Path] = None,
    *,
    types: Sequence[str] = EXPORT_TYPES,
    active_only: bool = False,
) -> Dict[str, object]:
    """Write one CSV and one JSONL file per canonical table."""
    unknown = [t for t in types if t not in EXPORT_TYPES]
    if unknown:
        raise ValueError(f"unknown export types: {', '.join(unknown)}")

    ensure_runtime_directories()
    export_dir = output.expanduser() if output else EXPORTS_DIR
    export_dir.mkdir(parents=True, exist_ok=True)
    timestamp = utcnow().strftime("%Y%m%d_%H%M%S")

    SessionFactory = get_session_factory(database_url)
    with SessionFactory() as session:
        rows_by_type: Dict[str, List[Dict[str, object]]] = {}
        if "products" in types:
            query = session.query(Product)
            if active_only:
                query = query.filter(Product.status == "active")
            rows_by_type["products"] = [_serialize_product(p) for p in query.order_by(Product.slug).all()]
        if "plants" in types:
            query = session.query(Plant)
            if active_only:
                query = query.filter(Plant.status == "active")
            rows_by_type["plants"] = [_serialize_plant(p) for p in query.order_by(Plant.slug).all()]
        if "offers" in types:
            query = session.query(Offer, Product.slug).join(Product, Product.id == Offer.product_id)
            if active_only:
                query = query.filter(Product.status == "active")
            rows_by_type["offers"] = [
                _serialize_offer(offer, slug) for offer, slug in query.order_by(Product.slug, Offer.id).all()
            ]

    files: Dict[str, object] = {}
    for name, rows in rows_by_type.items():
        csv_path = export_dir / f"{name}_{timestamp}.csv"
        jsonl_path = csv_path.with_suffix(".jsonl")
        _write_csv(csv_path, rows)
        _write_jsonl(jsonl_path, rows)
        files[name] = {"csv": csv_path, "jsonl": jsonl_path, "count": len(rows)}
    return files


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _serialize_product(product: Product) -> Dict[str, object]:
    return {
        "id": product.id,
        "slug": product.slug,
        "name": product.name,
        "brand": product.brand,
        "category": product.category,
        "status": product.status,
        "description": product.description,
        "image_url": product.image_url,
        "image_urls": json.dumps(product.image_urls or []),
        "specs": json.dumps(product.specs or {}, sort_keys=True),
        "verified": bool(product.verified),
        "updated_at": _iso(product.updated_at),
    }


def _serialize_plant(plant: Plant) -> Dict[str, object]:
    return {
        "id": plant.id,
        "slug": plant.slug,
        "common_name": plant.common_name,
        "scientific_name": plant.scientific_name,
        "status": plant.status,
        "description": plant.description,
        "image_url": plant.image_url,
        "image_urls": json.dumps(plant.image_urls or []),
        "care": json.dumps(plant.care or {}, sort_keys=True),
        "sources": json.dumps(plant.sources or []),
        "updated_at": _iso(plant.updated_at),
    }


def _serialize_offer(offer: Offer, product_slug: str) -> Dict[str, object]:
    return {
        "id": offer.id,
        "product_slug": product_slug,
        "retailer_slug": offer.retailer_slug,
        "price_cents": offer.price_cents,
        "currency": offer.currency,
        "in_stock": bool(offer.in_stock),
        "url": offer.url,
        "last_checked_at": _iso(offer.last_checked_at),
    }


def _write_csv(path: Path, rows):
    if not rows:
        path.write_text("", encoding="utf-8")
        return
    fieldnames = list(rows[0].keys())
    with path.open("w", encoding="utf-8", newline="") as csvfile:
        writer = csv.DictWriter(csvfile, fieldnames=fieldnames)
        writer.writeheader()
        writer.writerows(rows)


def _write_jsonl(path: Path, rows):
    with path.open("w", encoding="utf-8") as handle:
        for row in rows:
            handle.write(json.dumps(row))
            handle.write("\n")


__all__ = ["EXPORT_TYPES", "export_catalog"]
