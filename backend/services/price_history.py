from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy import exists, select
from sqlalchemy.orm import Session

from backend.db.models import Offer, PriceHistory, utcnow

logger = logging.getLogger(__name__)


def record_price_point(db: Session, offer: Offer, *, recorded_at: Optional[datetime] = None) -> bool:
    """Append the offer's current price/stock; offers without a price have no history."""
    if offer.price_cents is None:
        return False
    db.add(
        PriceHistory(
            offer_id=offer.id,
            price_cents=offer.price_cents,
            in_stock=bool(offer.in_stock),
            recorded_at=recorded_at or utcnow(),
        )
    )
    return True


def backfill_price_history(db: Session) -> Dict[str, int]:
    """Give every priced offer with no history a single starting point."""
    has_history = exists().where(PriceHistory.offer_id == Offer.id)
    offers = db.execute(
        select(Offer).where(Offer.price_cents.is_not(None), ~has_history).order_by(Offer.id)
    ).scalars().all()

    now = utcnow()
    inserted = 0
    for offer in offers:
        if record_price_point(db, offer, recorded_at=now):
            inserted += 1
    db.flush()
    logger.info("Price history backfill inserted %d rows", inserted)
    return {"scanned": len(offers), "inserted": inserted}


__all__ = ["record_price_point", "backfill_price_history"]
