"""Explicit upsert interface.

Each upserted table declares its conflict target and the columns an incoming
row is allowed to overwrite. An empty ``overwrite`` means insert-or-ignore.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from backend.db.models import (
    CanonicalEntityMapping,
    IngestionEntity,
    IngestionEntitySnapshot,
    IngestionSource,
    OfferSummary,
)


@dataclass(frozen=True)
class UpsertSpec:
    model: Any
    conflict: Tuple[str, ...]
    overwrite: Tuple[str, ...] = ()
    key_column: str = "id"


@dataclass(frozen=True)
class UpsertResult:
    key: Any
    created: bool


SOURCE_UPSERT = UpsertSpec(IngestionSource, conflict=("slug",))
ENTITY_UPSERT = UpsertSpec(
    IngestionEntity,
    conflict=("source_id", "entity_type", "source_entity_id"),
    overwrite=("url", "active", "last_seen_at", "updated_at"),
)
SNAPSHOT_INSERT = UpsertSpec(IngestionEntitySnapshot, conflict=("entity_id", "content_hash"))
MAPPING_UPSERT = UpsertSpec(
    CanonicalEntityMapping,
    conflict=("entity_id",),
    overwrite=("canonical_type", "canonical_id", "match_method", "confidence", "notes", "updated_at"),
)
OFFER_SUMMARY_UPSERT = UpsertSpec(
    OfferSummary,
    conflict=("product_id",),
    overwrite=("min_price_cents", "in_stock_count", "stale_flag", "checked_at", "updated_at"),
    key_column="product_id",
)


def _dialect_insert(session: Session):
    dialect = session.bind.dialect.name  # type: ignore[union-attr]
    if dialect == "postgresql":
        return pg_insert
    if dialect == "sqlite":
        return sqlite_insert
    return None


def _lookup(session: Session, spec: UpsertSpec, values: Dict[str, Any]) -> Optional[Any]:
    model = spec.model
    key_col = getattr(model, spec.key_column)
    stmt = select(key_col)
    for column in spec.conflict:
        stmt = stmt.where(getattr(model, column) == values[column])
    return session.execute(stmt).scalar_one_or_none()


def _expire_cached(session: Session, spec: UpsertSpec, key: Any) -> None:
    # Core statements bypass the identity map; drop any stale ORM copy
    for obj in list(session.identity_map.values()):
        if isinstance(obj, spec.model) and getattr(obj, spec.key_column) == key:
            session.expire(obj)


def upsert(session: Session, spec: UpsertSpec, values: Dict[str, Any]) -> UpsertResult:
    """Insert ``values`` or, on a conflict-target hit, overwrite only ``spec.overwrite``."""
    missing = [c for c in spec.conflict if c not in values]
    if missing:
        raise ValueError(f"upsert into {spec.model.__tablename__} missing conflict columns {missing}")

    existing = _lookup(session, spec, values)
    insert = _dialect_insert(session)

    overwrite = [column for column in spec.overwrite if column in values]

    if insert is not None:
        stmt = insert(spec.model).values(**values)
        if overwrite:
            stmt = stmt.on_conflict_do_update(
                index_elements=list(spec.conflict),
                set_={column: stmt.excluded[column] for column in overwrite},
            )
        else:
            stmt = stmt.on_conflict_do_nothing(index_elements=list(spec.conflict))
        session.execute(stmt)
        if existing is not None and overwrite:
            _expire_cached(session, spec, existing)
    elif existing is None:
        session.add(spec.model(**values))
        session.flush()
    elif overwrite:
        row = session.get(spec.model, existing)
        for column in overwrite:
            setattr(row, column, values[column])
        session.flush()

    key = existing if existing is not None else _lookup(session, spec, values)
    return UpsertResult(key=key, created=existing is None)


__all__ = [
    "UpsertSpec",
    "UpsertResult",
    "SOURCE_UPSERT",
    "ENTITY_UPSERT",
    "SNAPSHOT_INSERT",
    "MAPPING_UPSERT",
    "OFFER_SUMMARY_UPSERT",
    "upsert",
]
