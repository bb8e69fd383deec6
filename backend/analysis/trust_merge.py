from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from backend.settings import TrustPolicy

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class FieldObservation:
    path: str
    value: Any
    trust: Optional[str]
    fetched_at: datetime
    snapshot_id: int


@dataclass(frozen=True)
class OverrideValue:
    path: str
    value: Any
    override_id: int
    reason: str = ""


@dataclass
class MergeResult:
    values: Dict[str, Any] = field(default_factory=dict)
    winners: Dict[str, Dict[str, Any]] = field(default_factory=dict)


def observations_from_snapshot(
    snapshot_id: int,
    fetched_at: Optional[datetime],
    extracted: Any,
    trust: Any,
    default_trust: Optional[str] = None,
) -> List[FieldObservation]:
    if not isinstance(extracted, dict):
        return []
    trust_map = trust if isinstance(trust, dict) else {}
    when = fetched_at or _EPOCH
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)

    out: List[FieldObservation] = []
    for path, cell in extracted.items():
        if not isinstance(cell, dict) or "value" not in cell:
            continue
        tier = cell.get("trust") or trust_map.get(path) or default_trust
        out.append(FieldObservation(path=path, value=cell["value"], trust=tier, fetched_at=when, snapshot_id=snapshot_id))
    return out


def set_at_path(target: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    cursor = target
    for part in parts[:-1]:
        nxt = cursor.get(part)
        if not isinstance(nxt, dict):
            nxt = {}
            cursor[part] = nxt
        cursor = nxt
    cursor[parts[-1]] = value


def unflatten(fields: Dict[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    # parents before children so a later "specs.x" lands inside "specs"
    for path in sorted(fields, key=lambda p: (p.count("."), p)):
        set_at_path(out, path, fields[path])
    return out


def merge_observations(
    observations: Iterable[FieldObservation],
    overrides: Iterable[OverrideValue],
    policy: TrustPolicy,
) -> MergeResult:
    """Pick one value per field path.

    An override always wins. Otherwise the observation from the highest trust
    tier wins; among equal tiers the most recently fetched one (snapshot id
    breaks exact ties).
    """
    best: Dict[str, FieldObservation] = {}
    for obs in observations:
        current = best.get(obs.path)
        if current is None or _sort_key(obs, policy) > _sort_key(current, policy):
            best[obs.path] = obs

    result = MergeResult()
    result.values = unflatten({path: obs.value for path, obs in best.items()})
    for path, obs in best.items():
        result.winners[path] = {
            "winner": "snapshot",
            "trust": obs.trust,
            "snapshot_id": obs.snapshot_id,
        }

    for ov in sorted(overrides, key=lambda o: (o.path.count("."), o.path)):
        set_at_path(result.values, ov.path, ov.value)
        result.winners[ov.path] = {
            "winner": "override",
            "override_id": ov.override_id,
            "reason": ov.reason,
        }
    return result


def _sort_key(obs: FieldObservation, policy: TrustPolicy):
    return (policy.rank(obs.trust), obs.fetched_at, obs.snapshot_id)


__all__ = [
    "FieldObservation",
    "OverrideValue",
    "MergeResult",
    "observations_from_snapshot",
    "set_at_path",
    "unflatten",
    "merge_observations",
]
