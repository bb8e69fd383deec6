"""Operator corrections layered on top of merged source data."""
from __future__ import annotations

import logging
import re
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backend.analysis.trust_merge import OverrideValue
from backend.db.models import (
    CANONICAL_DICT_FIELDS,
    CANONICAL_FIELDS,
    CANONICAL_MODELS,
    NormalizationOverride,
    utcnow,
)

logger = logging.getLogger(__name__)

FIELD_PATH_RE = re.compile(r"^[A-Za-z0-9_]+(?:\.[A-Za-z0-9_]+)*$")
MAX_FIELD_PATH_LENGTH = 200
MAX_REASON_LENGTH = 500


class OverrideError(ValueError):
    """Raised when an override request is invalid."""


def validate_field_path(canonical_type: str, field_path: str) -> str:
    path = (field_path or "").strip()
    if not path:
        raise OverrideError("field_path is required")
    if len(path) > MAX_FIELD_PATH_LENGTH:
        raise OverrideError(f"field_path must be at most {MAX_FIELD_PATH_LENGTH} characters")
    if not FIELD_PATH_RE.match(path):
        raise OverrideError(f"field_path {path!r} must be dot-separated letters, digits or underscores")

    root, _, rest = path.partition(".")
    if root not in CANONICAL_FIELDS[canonical_type]:
        raise OverrideError(f"{canonical_type} has no overridable field {root!r}")
    if rest and root not in CANONICAL_DICT_FIELDS[canonical_type]:
        raise OverrideError(f"{canonical_type}.{root} is not an object; nested paths are not allowed")
    return path


def _validate_common(db: Session, canonical_type: str, canonical_id: int, reason: str, actor: str) -> str:
    if canonical_type not in CANONICAL_MODELS:
        raise OverrideError(f"unknown canonical type {canonical_type!r}")
    cleaned = (reason or "").strip()
    if not cleaned:
        raise OverrideError("reason is required")
    if len(cleaned) > MAX_REASON_LENGTH:
        raise OverrideError(f"reason must be at most {MAX_REASON_LENGTH} characters")
    if not actor or not actor.strip():
        raise OverrideError("actor is required")
    if db.get(CANONICAL_MODELS[canonical_type], canonical_id) is None:
        raise OverrideError(f"{canonical_type} {canonical_id} not found")
    return cleaned


def create_override(
    db: Session,
    *,
    canonical_type: str,
    canonical_id: int,
    field_path: str,
    value: Any,
    reason: str,
    actor: str,
) -> NormalizationOverride:
    cleaned_reason = _validate_common(db, canonical_type, canonical_id, reason, actor)
    path = validate_field_path(canonical_type, field_path)

    duplicate = db.execute(
        select(NormalizationOverride.id).where(
            NormalizationOverride.canonical_type == canonical_type,
            NormalizationOverride.canonical_id == canonical_id,
            NormalizationOverride.field_path == path,
        )
    ).scalar_one_or_none()
    if duplicate is not None:
        raise OverrideError(f"override {duplicate} already targets {canonical_type} {canonical_id} {path}")

    row = NormalizationOverride(
        canonical_type=canonical_type,
        canonical_id=canonical_id,
        field_path=path,
        value=value,
        reason=cleaned_reason,
        actor_user_id=actor.strip(),
    )
    db.add(row)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise OverrideError(f"override already exists for {canonical_type} {canonical_id} {path}") from exc

    logger.info("Override %s created on %s %s %s by %s", row.id, canonical_type, canonical_id, path, actor)
    return row


def update_override(
    db: Session,
    override_id: int,
    *,
    value: Any,
    reason: str,
    actor: str,
) -> NormalizationOverride:
    row = db.get(NormalizationOverride, override_id)
    if row is None:
        raise OverrideError(f"override {override_id} not found")
    cleaned_reason = _validate_common(db, row.canonical_type, row.canonical_id, reason, actor)

    row.value = value
    row.reason = cleaned_reason
    row.actor_user_id = actor.strip()
    row.updated_at = utcnow()
    db.commit()
    logger.info("Override %s updated by %s", override_id, actor)
    return row


def delete_override(db: Session, override_id: int, *, actor: str) -> bool:
    if not actor or not actor.strip():
        raise OverrideError("actor is required")
    row = db.get(NormalizationOverride, override_id)
    if row is None:
        return False
    db.delete(row)
    db.commit()
    logger.info("Override %s deleted by %s", override_id, actor)
    return True


def load_overrides(
    db: Session,
    canonical_type: str,
    canonical_ids: Optional[Iterable[int]] = None,
) -> Dict[int, List[OverrideValue]]:
    stmt = select(NormalizationOverride).where(NormalizationOverride.canonical_type == canonical_type)
    if canonical_ids is not None:
        ids = sorted(set(canonical_ids))
        if not ids:
            return {}
        stmt = stmt.where(NormalizationOverride.canonical_id.in_(ids))

    out: Dict[int, List[OverrideValue]] = {}
    for row in db.execute(stmt.order_by(NormalizationOverride.id)).scalars():
        out.setdefault(row.canonical_id, []).append(
            OverrideValue(path=row.field_path, value=row.value, override_id=row.id, reason=row.reason)
        )
    return out


def serialize_override(row: NormalizationOverride) -> Dict[str, object]:
    return {
        "id": row.id,
        "canonical_type": row.canonical_type,
        "canonical_id": row.canonical_id,
        "field_path": row.field_path,
        "value": row.value,
        "reason": row.reason,
        "actor_user_id": row.actor_user_id,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }


__all__ = [
    "FIELD_PATH_RE",
    "OverrideError",
    "validate_field_path",
    "create_override",
    "update_override",
    "delete_override",
    "load_overrides",
    "serialize_override",
]
