"""Ingestion snapshot store.

Sources, runs, entities and append-only snapshots. Every observation of an
external entity is written here first; canonical tables are only ever
derived from what this module has recorded.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from backend.db.models import (
    CANONICAL_TYPES,
    IngestionEntity,
    IngestionEntitySnapshot,
    IngestionRun,
    IngestionSource,
    get_session_factory,
    utcnow,
)
from backend.db.upsert import ENTITY_UPSERT, SNAPSHOT_INSERT, SOURCE_UPSERT, upsert
from backend.ingestion.hashing import content_hash

LOGGER = logging.getLogger("tankcatalog.ingest")

DEFAULT_STALE_RUN_MINUTES = 45


@dataclass
class RunStats:
    """Counters threaded through one ingestion run and persisted on finish."""

    entities_touched: int = 0
    snapshots_created: int = 0
    snapshots_unchanged: int = 0
    extra: Dict[str, int] = field(default_factory=dict)

    def bump(self, name: str, amount: int = 1) -> None:
        self.extra[name] = self.extra.get(name, 0) + amount

    def as_dict(self) -> Dict[str, int]:
        out = asdict(self)
        extra = out.pop("extra")
        out.update(extra)
        return out


@dataclass(frozen=True)
class SnapshotWriteResult:
    created: bool
    snapshot_id: int
    content_hash: str


def ensure_source(
    db: Session,
    *,
    slug: str,
    kind: str,
    name: Optional[str] = None,
    default_trust: str = "unknown",
    config: Optional[Dict[str, Any]] = None,
) -> IngestionSource:
    result = upsert(
        db,
        SOURCE_UPSERT,
        {
            "slug": slug,
            "name": name or slug,
            "kind": kind,
            "default_trust": default_trust,
            "config": config or {},
        },
    )
    if result.created:
        LOGGER.info("Registered ingestion source %s (kind=%s trust=%s)", slug, kind, default_trust)
    return db.get(IngestionSource, result.key)


def upsert_entity(
    db: Session,
    *,
    source_id: int,
    entity_type: str,
    source_entity_id: str,
    url: Optional[str] = None,
) -> int:
    """Create or refresh an entity; always marks it seen and active."""
    if entity_type not in CANONICAL_TYPES:
        raise ValueError(f"unknown entity_type {entity_type!r}")
    if not source_entity_id:
        raise ValueError("source_entity_id is required")

    now = utcnow()
    result = upsert(
        db,
        ENTITY_UPSERT,
        {
            "source_id": source_id,
            "entity_type": entity_type,
            "source_entity_id": str(source_entity_id),
            "url": url,
            "active": True,
            "last_seen_at": now,
            "updated_at": now,
        },
    )
    return int(result.key)


def deactivate_entity(db: Session, entity_id: int) -> bool:
    """The only path that sets ``active=False``; deactivated entities stop conferring provenance."""
    res = db.execute(
        update(IngestionEntity)
        .where(IngestionEntity.id == entity_id, IngestionEntity.active.is_(True))
        .values(active=False, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if res.rowcount:
        LOGGER.info("Deactivated ingestion entity %s", entity_id)
    return bool(res.rowcount)


def record_snapshot(
    db: Session,
    *,
    entity_id: int,
    run_id: Optional[int],
    raw_payload: Any,
    extracted: Dict[str, Any],
    trust: Dict[str, str],
    fetched_at: Optional[datetime] = None,
    http_status: Optional[int] = None,
    content_type: Optional[str] = None,
) -> SnapshotWriteResult:
    """Append a snapshot unless this entity already has one with the same content hash.

    A hash collision is the idempotent success path: the earlier row is left
    untouched and ``created`` is False.
    """
    digest = content_hash(raw_payload)
    result = upsert(
        db,
        SNAPSHOT_INSERT,
        {
            "entity_id": entity_id,
            "run_id": run_id,
            "fetched_at": fetched_at or utcnow(),
            "http_status": http_status,
            "content_type": content_type,
            "raw_json": raw_payload,
            "extracted": extracted,
            "trust": trust,
            "content_hash": digest,
        },
    )
    return SnapshotWriteResult(created=result.created, snapshot_id=int(result.key), content_hash=digest)


def latest_snapshot(db: Session, entity_id: int) -> Optional[IngestionEntitySnapshot]:
    return (
        db.query(IngestionEntitySnapshot)
        .filter(IngestionEntitySnapshot.entity_id == entity_id)
        .order_by(IngestionEntitySnapshot.fetched_at.desc(), IngestionEntitySnapshot.id.desc())
        .first()
    )


# --- runs ---------------------------------------------------------------------


def start_run(db: Session, source_id: int) -> IngestionRun:
    run = IngestionRun(source_id=source_id, status="running", started_at=utcnow(), stats={})
    db.add(run)
    db.commit()
    return run


def finish_run(
    db: Session,
    run: IngestionRun,
    *,
    status: str,
    stats: Optional[Dict[str, Any]] = None,
    error: Optional[str] = None,
) -> IngestionRun:
    if status not in ("success", "failed"):
        raise ValueError(f"a run can only finish as success or failed, not {status!r}")
    run.status = status
    run.finished_at = utcnow()
    run.stats = stats or {}
    run.error = error
    db.add(run)
    db.commit()
    return run


@contextmanager
def tracked_run(db: Session, source: IngestionSource) -> Iterator[tuple]:
    """Yield ``(run, stats)``; the run always ends ``success`` or ``failed``.

    Work done inside the block is rolled back on error, but the failed run
    row (with whatever counters were reached) is still committed before the
    exception propagates.
    """
    run = start_run(db, source.id)
    stats = RunStats()
    LOGGER.info("Run %s started for source %s", run.id, source.slug)
    try:
        yield run, stats
        db.commit()
    except Exception as exc:
        db.rollback()
        finish_run(db, run, status="failed", stats=stats.as_dict(), error=f"{type(exc).__name__}: {exc}")
        LOGGER.exception("Run %s for source %s failed", run.id, source.slug)
        raise
    finish_run(db, run, status="success", stats=stats.as_dict())
    LOGGER.info("Run %s for source %s finished: %s", run.id, source.slug, stats.as_dict())


def reconcile_stale_runs(
    db: Session,
    *,
    older_than_minutes: int = DEFAULT_STALE_RUN_MINUTES,
    now: Optional[datetime] = None,
) -> List[int]:
    """Mark runs stuck in ``running`` past the threshold as failed (process died mid-run)."""
    now = now or utcnow()
    cutoff = now - timedelta(minutes=max(1, int(older_than_minutes)))
    stale_ids = list(
        db.execute(
            select(IngestionRun.id)
            .where(IngestionRun.status == "running", IngestionRun.started_at < cutoff)
            .order_by(IngestionRun.id)
        ).scalars()
    )
    if not stale_ids:
        return []

    db.execute(
        update(IngestionRun)
        .where(IngestionRun.id.in_(stale_ids), IngestionRun.status == "running")
        .values(
            status="failed",
            finished_at=now,
            error=f"orphaned: still running after {older_than_minutes} minutes",
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    LOGGER.warning("Marked %d orphaned ingestion runs as failed: %s", len(stale_ids), stale_ids)
    return stale_ids


def reconcile_stale_runs_for_url(
    *,
    older_than_minutes: int = DEFAULT_STALE_RUN_MINUTES,
    database_url: Optional[str] = None,
) -> Dict[str, object]:
    SessionFactory = get_session_factory(database_url)
    db = SessionFactory()
    try:
        ids = reconcile_stale_runs(db, older_than_minutes=older_than_minutes)
    finally:
        db.close()
    return {"status": "ok", "reconciled": len(ids), "run_ids": ids}


def recent_runs(db: Session, limit: int = 20) -> List[Dict[str, object]]:
    rows = (
        db.query(IngestionRun, IngestionSource.slug)
        .join(IngestionSource, IngestionSource.id == IngestionRun.source_id)
        .order_by(IngestionRun.started_at.desc(), IngestionRun.id.desc())
        .limit(max(1, min(int(limit), 200)))
        .all()
    )
    return [
        {
            "id": run.id,
            "source": slug,
            "status": run.status,
            "started_at": run.started_at.isoformat() if run.started_at else None,
            "finished_at": run.finished_at.isoformat() if run.finished_at else None,
            "stats": run.stats or {},
            "error": run.error,
        }
        for run, slug in rows
    ]


__all__ = [
    "DEFAULT_STALE_RUN_MINUTES",
    "RunStats",
    "SnapshotWriteResult",
    "ensure_source",
    "upsert_entity",
    "deactivate_entity",
    "record_snapshot",
    "latest_snapshot",
    "start_run",
    "finish_run",
    "tracked_run",
    "reconcile_stale_runs",
    "reconcile_stale_runs_for_url",
    "recent_runs",
]
