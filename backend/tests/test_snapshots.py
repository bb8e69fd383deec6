from __future__ import annotations

from datetime import timedelta

import pytest

from backend.db.models import IngestionEntity, IngestionEntitySnapshot, IngestionRun, utcnow
from backend.ingestion.snapshots import (
    RunStats,
    deactivate_entity,
    ensure_source,
    latest_snapshot,
    reconcile_stale_runs,
    record_snapshot,
    recent_runs,
    tracked_run,
    upsert_entity,
)


def _source(db):
    source = ensure_source(db, slug="manual_seed", kind="manual_seed", default_trust="manual_seed")
    db.commit()
    return source


def test_ensure_source_is_idempotent(db):
    first = _source(db)
    second = ensure_source(db, slug="manual_seed", kind="manual_seed", default_trust="manual_seed")
    assert first.id == second.id


def test_upsert_entity_returns_same_id_and_reactivates(db):
    source = _source(db)
    entity_id = upsert_entity(db, source_id=source.id, entity_type="product", source_entity_id="uns-60u")
    db.commit()
    assert deactivate_entity(db, entity_id) is True
    assert deactivate_entity(db, entity_id) is False
    db.commit()

    again = upsert_entity(db, source_id=source.id, entity_type="product", source_entity_id="uns-60u", url="https://x.test")
    db.commit()

    assert again == entity_id
    entity = db.get(IngestionEntity, entity_id)
    db.refresh(entity)
    assert entity.active is True
    assert entity.url == "https://x.test"
    assert db.query(IngestionEntity).count() == 1


def test_upsert_entity_rejects_unknown_types(db):
    source = _source(db)
    with pytest.raises(ValueError):
        upsert_entity(db, source_id=source.id, entity_type="category", source_entity_id="x")


def test_recording_the_same_observation_twice_keeps_one_snapshot(db):
    source = _source(db)
    entity_id = upsert_entity(db, source_id=source.id, entity_type="product", source_entity_id="uns-60u")

    first = record_snapshot(
        db,
        entity_id=entity_id,
        run_id=None,
        raw_payload={"slug": "uns-60u", "name": "UNS 60U"},
        extracted={"name": {"value": "UNS 60U", "trust": "manual_seed"}},
        trust={"name": "manual_seed"},
    )
    second = record_snapshot(
        db,
        entity_id=entity_id,
        run_id=None,
        raw_payload={"name": "UNS 60U", "slug": "uns-60u"},
        extracted={"name": {"value": "something else", "trust": "admin"}},
        trust={"name": "admin"},
    )
    db.commit()

    assert first.created is True
    assert second.created is False
    assert second.snapshot_id == first.snapshot_id
    assert db.query(IngestionEntitySnapshot).count() == 1
    # the earlier row is never rewritten
    assert latest_snapshot(db, entity_id).trust == {"name": "manual_seed"}


def test_tracked_run_records_success_with_stats(db):
    source = _source(db)
    with tracked_run(db, source) as (run, stats):
        stats.entities_touched += 2
        stats.bump("product", 2)

    row = db.get(IngestionRun, run.id)
    assert row.status == "success"
    assert row.finished_at is not None
    assert row.stats["entities_touched"] == 2
    assert row.stats["product"] == 2


def test_tracked_run_marks_failed_and_reraises(db):
    source = _source(db)
    with pytest.raises(RuntimeError):
        with tracked_run(db, source) as (run, stats):
            upsert_entity(db, source_id=source.id, entity_type="plant", source_entity_id="java-fern")
            stats.entities_touched += 1
            raise RuntimeError("source went away")

    row = db.get(IngestionRun, run.id)
    db.refresh(row)
    assert row.status == "failed"
    assert "source went away" in row.error
    assert row.stats["entities_touched"] == 1
    # work inside the failed block was rolled back
    assert db.query(IngestionEntity).count() == 0


def test_reconcile_stale_runs_only_touches_old_running_rows(db):
    source = _source(db)
    now = utcnow()
    old = IngestionRun(source_id=source.id, status="running", started_at=now - timedelta(hours=2), stats={})
    fresh = IngestionRun(source_id=source.id, status="running", started_at=now - timedelta(minutes=5), stats={})
    done = IngestionRun(source_id=source.id, status="success", started_at=now - timedelta(hours=3), stats={})
    db.add_all([old, fresh, done])
    db.commit()

    assert reconcile_stale_runs(db, older_than_minutes=45, now=now) == [old.id]
    assert reconcile_stale_runs(db, older_than_minutes=45, now=now) == []

    db.expire_all()
    assert db.get(IngestionRun, old.id).status == "failed"
    assert db.get(IngestionRun, old.id).error.startswith("orphaned")
    assert db.get(IngestionRun, fresh.id).status == "running"
    assert db.get(IngestionRun, done.id).status == "success"


def test_recent_runs_lists_newest_first(db):
    source = _source(db)
    with tracked_run(db, source):
        pass
    with tracked_run(db, source):
        pass
    runs = recent_runs(db, limit=5)
    assert [r["source"] for r in runs] == ["manual_seed", "manual_seed"]
    assert runs[0]["id"] > runs[1]["id"]
    assert all(r["status"] == "success" for r in runs)


def test_run_stats_flattens_extra_counters():
    stats = RunStats(entities_touched=1)
    stats.bump("failed")
    stats.bump("failed")
    assert stats.as_dict() == {
        "entities_touched": 1,
        "snapshots_created": 0,
        "snapshots_unchanged": 0,
        "failed": 2,
    }
