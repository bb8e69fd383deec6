"""Availability refresher.

Picks offers whose last check is older than the staleness window, probes
each offer URL with a HEAD request, and records every observation as a
snapshot under the ``offers-head`` source. Each offer moves through

    stale -> checking -> fresh | failed

independently: a timeout, DNS failure or unexpected error on one offer is
counted and logged, never allowed to abort the batch.

Network probes run on a bounded thread pool with an overall deadline; all
database work and counting stays on the calling thread.
"""
from __future__ import annotations

import enum
import logging
import math
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from backend.connectors.availability import ProbeResult, classify_status, probe_offer_url
from backend.db.models import IngestionSource, Offer, get_session_factory, utcnow
from backend.ingestion.payloads import OfferAvailabilityPayload, build_observation, payload_to_raw
from backend.ingestion.snapshots import RunStats, ensure_source, record_snapshot, tracked_run, upsert_entity
from backend.services.offer_summaries import refresh_offer_summaries
from backend.services.price_history import record_price_point
from backend.services.resolver import CONFIDENCE, Resolution, upsert_canonical_mapping
from backend.settings import CatalogSettings, load_settings

LOGGER = logging.getLogger("tankcatalog.ingest")

SOURCE_SLUG = "offers-head"
SOURCE_KIND = "availability_probe"
SOURCE_TRUST = "retailer"
DEFAULT_WINDOW_HOURS = 20
DEFAULT_LIMIT = 30

Probe = Callable[[str, float], ProbeResult]


class OfferRefreshState(str, enum.Enum):
    STALE = "stale"
    CHECKING = "checking"
    FRESH = "fresh"
    FAILED = "failed"


@dataclass
class RefreshStats:
    scanned: int = 0
    updated: int = 0
    failed: int = 0

    def record(self, state: OfferRefreshState) -> None:
        self.scanned += 1
        if state is OfferRefreshState.FRESH:
            self.updated += 1
        elif state is OfferRefreshState.FAILED:
            self.failed += 1

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


def _non_negative_int(value: object) -> Optional[int]:
    """Whole hours/days from a caller value; anything unusable yields None."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value) or value < 0:
        return None
    return int(value)


def resolve_window_hours(
    older_than_hours: Optional[int] = None,
    older_than_days: Optional[int] = None,
    default_hours: int = DEFAULT_WINDOW_HOURS,
) -> int:
    """Hours win; the legacy days parameter is converted; otherwise the default applies.

    A negative or non-numeric value is ignored and the next option is tried.
    """
    hours = _non_negative_int(older_than_hours)
    if hours is not None:
        return hours
    days = _non_negative_int(older_than_days)
    if days is not None:
        return days * 24
    fallback = _non_negative_int(default_hours)
    return DEFAULT_WINDOW_HOURS if fallback is None else fallback


def select_stale_offers(db: Session, *, cutoff: datetime, limit: int) -> List[Offer]:
    last_touch = func.coalesce(Offer.last_checked_at, Offer.updated_at)
    stmt = (
        select(Offer)
        .where(Offer.url.is_not(None), Offer.url != "", last_touch < cutoff)
        .order_by(last_touch.asc(), Offer.id.asc())
        .limit(max(1, int(limit)))
    )
    return list(db.execute(stmt).scalars())


def _default_probe(url: str, timeout: float) -> ProbeResult:
    return probe_offer_url(url, timeout=timeout)


def _probe_all(
    targets: List[Tuple[int, str]],
    probe: Probe,
    *,
    timeout: float,
    concurrency: int,
    deadline: float,
) -> Dict[int, ProbeResult]:
    results: Dict[int, ProbeResult] = {}
    if not targets:
        return results

    pool = ThreadPoolExecutor(max_workers=max(1, min(concurrency, len(targets))), thread_name_prefix="offers-head")
    futures = {pool.submit(probe, url, timeout): (offer_id, url) for offer_id, url in targets}
    try:
        done, pending = wait(futures, timeout=deadline)
        for fut in done:
            offer_id, url = futures[fut]
            try:
                results[offer_id] = fut.result()
            except Exception as exc:
                LOGGER.warning("Probe for offer %s raised %s", offer_id, exc)
                results[offer_id] = ProbeResult(url=url, error=f"{type(exc).__name__}: {exc}")
        for fut in pending:
            offer_id, url = futures[fut]
            fut.cancel()
            LOGGER.warning("Probe for offer %s abandoned after %.0fs batch deadline", offer_id, deadline)
            results[offer_id] = ProbeResult(url=url, error="deadline exceeded")
    finally:
        pool.shutdown(wait=False, cancel_futures=True)
    return results


def _apply_observation(
    db: Session,
    *,
    offer: Offer,
    result: ProbeResult,
    source: IngestionSource,
    run_id: int,
    run_stats: RunStats,
    now: datetime,
) -> OfferRefreshState:
    signal = classify_status(result.status)
    payload = OfferAvailabilityPayload(
        offer_id=offer.id,
        url=offer.url,
        final_url=result.final_url,
        status=result.status,
        content_type=result.content_type,
        in_stock=signal,
        observed_minute=int(now.timestamp() // 60),
        error=result.error,
    )
    extracted, trust = build_observation(payload, SOURCE_TRUST)

    entity_id = upsert_entity(
        db,
        source_id=source.id,
        entity_type="offer",
        source_entity_id=str(offer.id),
        url=offer.url,
    )
    snap = record_snapshot(
        db,
        entity_id=entity_id,
        run_id=run_id,
        raw_payload=payload_to_raw(payload),
        extracted=extracted,
        trust=trust,
        fetched_at=now,
        http_status=result.status,
        content_type=result.content_type,
    )
    upsert_canonical_mapping(db, entity_id, Resolution("offer", offer.id, "offer_id", CONFIDENCE["offer_id"]))

    run_stats.entities_touched += 1
    if snap.created:
        run_stats.snapshots_created += 1
    else:
        run_stats.snapshots_unchanged += 1

    if signal is None:
        return OfferRefreshState.FAILED

    offer.last_checked_at = now
    if bool(offer.in_stock) != signal:
        offer.in_stock = signal
        offer.updated_at = now
        record_price_point(db, offer, recorded_at=now)
        run_stats.bump("availability_changed")
        LOGGER.info("Offer %s availability -> %s (status=%s)", offer.id, signal, result.status)
    refresh_offer_summaries(db, [offer.product_id], now=now)
    return OfferRefreshState.FRESH


def refresh_offers(
    db: Session,
    *,
    mode: str = "bulk",
    offer_id: Optional[int] = None,
    older_than_hours: Optional[int] = None,
    older_than_days: Optional[int] = None,
    limit: Optional[int] = None,
    settings: Optional[CatalogSettings] = None,
    probe: Optional[Probe] = None,
    now: Optional[datetime] = None,
) -> RefreshStats:
    """Probe stale offers (``mode="bulk"``) or exactly one offer (``mode="one"``)."""
    if mode not in ("bulk", "one"):
        raise ValueError(f"mode must be 'bulk' or 'one', not {mode!r}")
    settings = settings or load_settings()
    probe = probe or _default_probe
    now = now or utcnow()

    if mode == "one":
        if offer_id is None:
            raise ValueError("offer_id is required when mode='one'")
        offer = db.get(Offer, offer_id)
        if offer is None:
            raise LookupError(f"offer {offer_id} not found")
        offers = [offer]
    else:
        hours = resolve_window_hours(older_than_hours, older_than_days, settings.refresh_window_hours)
        offers = select_stale_offers(db, cutoff=now - timedelta(hours=hours), limit=limit or settings.refresh_limit)

    source = ensure_source(
        db,
        slug=SOURCE_SLUG,
        kind=SOURCE_KIND,
        name="Offer HEAD availability checks",
        default_trust=SOURCE_TRUST,
    )
    db.commit()

    stats = RefreshStats()
    states: Dict[int, OfferRefreshState] = {offer.id: OfferRefreshState.STALE for offer in offers}
    targets = [(offer.id, offer.url) for offer in offers if offer.url]
    for target_id, _ in targets:
        states[target_id] = OfferRefreshState.CHECKING

    with tracked_run(db, source) as (run, run_stats):
        results = _probe_all(
            targets,
            probe,
            timeout=settings.refresh_timeout_seconds,
            concurrency=settings.refresh_concurrency,
            deadline=settings.refresh_deadline_seconds,
        )

        for offer in offers:
            result = results.get(offer.id)
            if result is None:
                states[offer.id] = OfferRefreshState.FAILED
                stats.record(OfferRefreshState.FAILED)
                continue
            try:
                states[offer.id] = _apply_observation(
                    db,
                    offer=offer,
                    result=result,
                    source=source,
                    run_id=run.id,
                    run_stats=run_stats,
                    now=now,
                )
                db.commit()
            except Exception:
                db.rollback()
                LOGGER.exception("Recording availability for offer %s failed", offer.id)
                states[offer.id] = OfferRefreshState.FAILED
            stats.record(states[offer.id])

        run_stats.bump("scanned", stats.scanned)
        run_stats.bump("updated", stats.updated)
        run_stats.bump("failed", stats.failed)

    LOGGER.info("Offer refresh (%s) finished: %s", mode, stats.as_dict())
    return stats


def refresh_offers_for_url(
    *,
    mode: str = "bulk",
    offer_id: Optional[int] = None,
    older_than_hours: Optional[int] = None,
    older_than_days: Optional[int] = None,
    limit: Optional[int] = None,
    database_url: Optional[str] = None,
    settings: Optional[CatalogSettings] = None,
    probe: Optional[Probe] = None,
) -> Dict[str, object]:
    settings = settings or load_settings()
    SessionFactory = get_session_factory(database_url or settings.database_url)
    db = SessionFactory()
    try:
        stats = refresh_offers(
            db,
            mode=mode,
            offer_id=offer_id,
            older_than_hours=older_than_hours,
            older_than_days=older_than_days,
            limit=limit,
            settings=settings,
            probe=probe,
        )
    finally:
        db.close()
    return {"status": "ok", "mode": mode, **stats.as_dict()}


__all__ = [
    "SOURCE_SLUG",
    "DEFAULT_WINDOW_HOURS",
    "DEFAULT_LIMIT",
    "OfferRefreshState",
    "RefreshStats",
    "resolve_window_hours",
    "select_stale_offers",
    "refresh_offers",
    "refresh_offers_for_url",
]
