from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from backend.api.deps import get_db_session, get_settings
from backend.ingestion.snapshots import recent_runs
from backend.services.quality_audit import run_catalog_quality_audit
from backend.services.refresh_offers import refresh_offers
from backend.services.regression_audit import run_regression_audit
from backend.settings import CatalogSettings

router = APIRouter(prefix="/api", tags=["catalog"])


class RefreshRequest(BaseModel):
    older_than_hours: Optional[int] = Field(default=None, ge=0)
    older_than_days: Optional[int] = Field(default=None, ge=0)
    limit: Optional[int] = Field(default=None, ge=1, le=500)


@router.post("/offers/refresh")
def refresh_stale_offers(
    body: Optional[RefreshRequest] = None,
    db: Session = Depends(get_db_session),
    settings: CatalogSettings = Depends(get_settings),
) -> Dict[str, Any]:
    body = body or RefreshRequest()
    try:
        stats = refresh_offers(
            db,
            mode="bulk",
            older_than_hours=body.older_than_hours,
            older_than_days=body.older_than_days,
            limit=body.limit,
            settings=settings,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"status": "ok", "mode": "bulk", **stats.as_dict()}


@router.post("/offers/{offer_id}/refresh")
def refresh_one_offer(
    offer_id: int,
    db: Session = Depends(get_db_session),
    settings: CatalogSettings = Depends(get_settings),
) -> Dict[str, Any]:
    try:
        stats = refresh_offers(db, mode="one", offer_id=offer_id, settings=settings)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"status": "ok", "mode": "one", "offer_id": offer_id, **stats.as_dict()}


@router.get("/catalog/audit")
def catalog_audit(db: Session = Depends(get_db_session)) -> Dict[str, Any]:
    return run_regression_audit(db)


@router.get("/catalog/quality")
def catalog_quality(
    db: Session = Depends(get_db_session),
    settings: CatalogSettings = Depends(get_settings),
) -> Dict[str, Any]:
    return run_catalog_quality_audit(db, settings=settings)


@router.get("/ingestion/runs")
def ingestion_runs(
    limit: int = Query(20, ge=1, le=200),
    db: Session = Depends(get_db_session),
) -> List[Dict[str, object]]:
    return recent_runs(db, limit=limit)
