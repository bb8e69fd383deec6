from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from backend.db.models import Offer, OfferSummary, as_utc, utcnow
from backend.db.upsert import OFFER_SUMMARY_UPSERT, upsert

logger = logging.getLogger(__name__)

STALE_AFTER_HOURS = 24


def _summarize(offers: List[Offer], now: datetime) -> Dict[str, object]:
    priced_in_stock = [o.price_cents for o in offers if o.in_stock and o.price_cents is not None]
    checks = [as_utc(o.last_checked_at) for o in offers if o.last_checked_at is not None]
    checked_at: Optional[datetime] = max(checks) if checks else None
    return {
        "min_price_cents": min(priced_in_stock) if priced_in_stock else None,
        "in_stock_count": sum(1 for o in offers if o.in_stock),
        "checked_at": checked_at,
        "stale_flag": checked_at is None or checked_at < now - timedelta(hours=STALE_AFTER_HOURS),
    }


def refresh_offer_summaries(
    db: Session,
    product_ids: Optional[Iterable[int]] = None,
    *,
    now: Optional[datetime] = None,
) -> int:
    """Recompute cached per-product offer aggregates. ``None`` means every product with offers."""
    now = now or utcnow()
    if product_ids is None:
        ids = sorted(set(db.execute(select(Offer.product_id)).scalars()))
    else:
        ids = sorted(set(int(i) for i in product_ids))
    if not ids:
        return 0

    offers_by_product: Dict[int, List[Offer]] = {pid: [] for pid in ids}
    for offer in db.execute(select(Offer).where(Offer.product_id.in_(ids))).scalars():
        offers_by_product[offer.product_id].append(offer)

    refreshed = 0
    for product_id in ids:
        offers = offers_by_product[product_id]
        if not offers:
            db.execute(delete(OfferSummary).where(OfferSummary.product_id == product_id))
            continue
        values = _summarize(offers, now)
        values.update({"product_id": product_id, "updated_at": now})
        upsert(db, OFFER_SUMMARY_UPSERT, values)
        refreshed += 1

    logger.debug("Refreshed %d offer summaries", refreshed)
    return refreshed


__all__ = ["STALE_AFTER_HOURS", "refresh_offer_summaries"]
