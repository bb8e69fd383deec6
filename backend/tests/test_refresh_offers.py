from __future__ import annotations

import threading
import time
from datetime import timedelta

import pytest

from backend.connectors.availability import ProbeResult, classify_status
from backend.db.models import (
    IngestionEntity,
    IngestionEntitySnapshot,
    IngestionRun,
    IngestionSource,
    Offer,
    OfferSummary,
    Product,
    as_utc,
    utcnow,
)
from backend.services.refresh_offers import (
    SOURCE_SLUG,
    refresh_offers,
    resolve_window_hours,
    select_stale_offers,
)
from backend.settings import CatalogSettings

SETTINGS = CatalogSettings(refresh_concurrency=2, refresh_deadline_seconds=5)


def _fake_probe(statuses):
    def probe(url, timeout):
        status = statuses[url]
        if status == "timeout":
            return ProbeResult(url=url, error="timeout")
        return ProbeResult(url=url, final_url=url, status=status, content_type="text/html")

    return probe


@pytest.fixture
def offers(db):
    old = utcnow() - timedelta(days=2)
    product = Product(slug="uns-60u", name="UNS 60U")
    db.add(product)
    db.flush()
    rows = [
        Offer(product_id=product.id, retailer_slug=f"shop{i}", url=f"https://shop{i}.test/uns", price_cents=100 * i,
              in_stock=True, last_checked_at=old, updated_at=old)
        for i in range(1, 4)
    ]
    db.add_all(rows)
    db.commit()
    return rows


def test_classify_status():
    assert classify_status(200) is True
    assert classify_status(301) is True
    assert classify_status(404) is False
    assert classify_status(503) is False
    assert classify_status(None) is None
    assert classify_status(101) is None


def test_resolve_window_hours():
    assert resolve_window_hours(6, 3) == 6
    assert resolve_window_hours(None, 2) == 48
    assert resolve_window_hours() == 20
    assert resolve_window_hours(None, None, 12) == 12
    assert resolve_window_hours(0) == 0
    assert resolve_window_hours(2.9) == 2


def test_resolve_window_hours_skips_unusable_values():
    assert resolve_window_hours(-1, 2) == 48
    assert resolve_window_hours(-1, -3) == 20
    assert resolve_window_hours(None, True) == 20
    assert resolve_window_hours(float("nan"), None, 6) == 6
    assert resolve_window_hours(None, None, -5) == 20


def test_select_stale_offers_skips_recent_and_urlless(db, offers):
    offers[0].last_checked_at = utcnow()
    db.add(Offer(product_id=offers[0].product_id, retailer_slug="nourl", url=None, updated_at=utcnow() - timedelta(days=9)))
    db.commit()

    stale = select_stale_offers(db, cutoff=utcnow() - timedelta(hours=20), limit=10)

    assert [o.id for o in stale] == [offers[1].id, offers[2].id]


def test_one_timeout_does_not_abort_the_batch(db, offers):
    before = as_utc(offers[0].last_checked_at)
    probe = _fake_probe({offers[0].url: "timeout", offers[1].url: 200, offers[2].url: 404})

    stats = refresh_offers(db, settings=SETTINGS, probe=probe)
    db.expire_all()

    assert stats.as_dict() == {"scanned": 3, "updated": 2, "failed": 1}
    timed_out, fresh, gone = (db.get(Offer, o.id) for o in offers)
    assert as_utc(timed_out.last_checked_at) == before
    assert as_utc(fresh.last_checked_at) > before
    assert fresh.in_stock is True
    assert gone.in_stock is False

    source = db.query(IngestionSource).filter_by(slug=SOURCE_SLUG).one()
    entity_ids = [e.id for e in db.query(IngestionEntity).filter_by(source_id=source.id)]
    assert len(entity_ids) == 3
    # the unknown observation is still recorded
    assert db.query(IngestionEntitySnapshot).filter(IngestionEntitySnapshot.entity_id.in_(entity_ids)).count() == 3

    run = db.query(IngestionRun).filter_by(source_id=source.id).one()
    assert run.status == "success"
    assert run.stats["failed"] == 1

    summary = db.get(OfferSummary, offers[0].product_id)
    assert summary.in_stock_count == 2


def test_probe_exception_counts_as_failure(db, offers):
    def probe(url, timeout):
        if url == offers[1].url:
            raise RuntimeError("boom")
        return ProbeResult(url=url, status=200)

    stats = refresh_offers(db, settings=SETTINGS, probe=probe)

    assert stats.as_dict() == {"scanned": 3, "updated": 2, "failed": 1}


def test_mode_one(db, offers):
    probe = _fake_probe({offers[2].url: 200})
    stats = refresh_offers(db, mode="one", offer_id=offers[2].id, settings=SETTINGS, probe=probe)
    assert stats.as_dict() == {"scanned": 1, "updated": 1, "failed": 0}

    with pytest.raises(LookupError):
        refresh_offers(db, mode="one", offer_id=9999, settings=SETTINGS, probe=probe)
    with pytest.raises(ValueError):
        refresh_offers(db, mode="one", settings=SETTINGS, probe=probe)
    with pytest.raises(ValueError):
        refresh_offers(db, mode="sideways", settings=SETTINGS, probe=probe)


def test_fresh_offers_are_not_probed(db, offers):
    calls = []

    def probe(url, timeout):
        calls.append(url)
        return ProbeResult(url=url, status=200)

    refresh_offers(db, settings=SETTINGS, probe=probe)
    calls.clear()
    stats = refresh_offers(db, settings=SETTINGS, probe=probe)

    assert calls == []
    assert stats.as_dict() == {"scanned": 0, "updated": 0, "failed": 0}


def test_probes_within_one_minute_share_a_snapshot(db, offers):
    target = offers[0]
    first = utcnow().replace(second=5, microsecond=0)
    later = first + timedelta(seconds=40)
    probe = _fake_probe({target.url: 200})

    refresh_offers(db, mode="one", offer_id=target.id, settings=SETTINGS, probe=probe, now=first)
    stats = refresh_offers(db, mode="one", offer_id=target.id, settings=SETTINGS, probe=probe, now=later)
    db.expire_all()

    assert stats.as_dict() == {"scanned": 1, "updated": 1, "failed": 0}
    entity = (
        db.query(IngestionEntity)
        .join(IngestionSource, IngestionSource.id == IngestionEntity.source_id)
        .filter(IngestionSource.slug == SOURCE_SLUG, IngestionEntity.source_entity_id == str(target.id))
        .one()
    )
    assert db.query(IngestionEntitySnapshot).filter_by(entity_id=entity.id).count() == 1
    # freshness still moves even though the observation was a duplicate
    assert as_utc(db.get(Offer, target.id).last_checked_at) == later

    runs = db.query(IngestionRun).order_by(IngestionRun.id).all()
    assert [r.stats["snapshots_unchanged"] for r in runs] == [0, 1]

    refresh_offers(db, mode="one", offer_id=target.id, settings=SETTINGS, probe=probe, now=first + timedelta(minutes=1))
    assert db.query(IngestionEntitySnapshot).filter_by(entity_id=entity.id).count() == 2


def test_hung_probe_is_cut_off_by_the_batch_deadline(db, offers):
    release = threading.Event()
    hung = offers[1]
    before = as_utc(hung.last_checked_at)

    def probe(url, timeout):
        if url == hung.url:
            release.wait(10)
            return ProbeResult(url=url, status=200)
        return ProbeResult(url=url, status=200)

    settings = CatalogSettings(refresh_concurrency=3, refresh_deadline_seconds=0.5)
    started = time.monotonic()
    try:
        stats = refresh_offers(db, settings=settings, probe=probe)
    finally:
        release.set()
    elapsed = time.monotonic() - started
    db.expire_all()

    assert elapsed < 5
    assert stats.as_dict() == {"scanned": 3, "updated": 2, "failed": 1}
    assert as_utc(db.get(Offer, hung.id).last_checked_at) == before
    assert as_utc(db.get(Offer, offers[0].id).last_checked_at) > before

    errors = [
        snap.raw_json.get("error")
        for snap in db.query(IngestionEntitySnapshot).order_by(IngestionEntitySnapshot.id)
    ]
    assert errors.count("deadline exceeded") == 1
    run = db.query(IngestionRun).one()
    assert run.status == "success"
    assert run.stats["failed"] == 1
