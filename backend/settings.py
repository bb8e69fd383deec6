"""Environment-driven settings for the catalog pipeline.

Environment variables (all optional):
    DATABASE_URL                      SQLAlchemy URL (default sqlite:///./dev.db)
    CATALOG_TRUST_TIERS               comma list, highest trust first
    CATALOG_NON_PRODUCTION_SLUG_RE    regex for slugs that must never be active
    CATALOG_SEED_DIR                  directory holding products/plants/offers JSON
    OFFER_REFRESH_WINDOW_HOURS        staleness window for availability probes
    OFFER_REFRESH_LIMIT               offers probed per bulk run
    OFFER_REFRESH_TIMEOUT_SECONDS     per-probe HTTP timeout
    OFFER_REFRESH_CONCURRENCY         parallel probes
    OFFER_REFRESH_DEADLINE_SECONDS    wall clock cap for a whole batch
    INGEST_STALE_RUN_MINUTES          "running" runs older than this are orphaned
    CATALOG_QUALITY_FOCUS_CATEGORIES  comma list of product categories the quality audit requires
    OFFER_FRESHNESS_WINDOW_HOURS      an offer checked within this window counts as fresh
    OFFER_FRESHNESS_SLO_PERCENT       minimum share of fresh active-catalog offers
"""
from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator

from backend.runtime import SEED_DIR

logger = logging.getLogger(__name__)

DEFAULT_TRUST_TIERS: Tuple[str, ...] = (
    "admin",
    "retailer",
    "manufacturer",
    "manual_seed",
    "scraped_heuristic",
    "unknown",
)
DEFAULT_NON_PRODUCTION_SLUG_RE = r"(^|[-_])(vitest|test|e2e|playwright)([-_]|$)"
DEFAULT_QUALITY_FOCUS_CATEGORIES: Tuple[str, ...] = ("tank", "light", "filter", "substrate", "hardscape")


class TrustPolicy(BaseModel):
    """Ordered trust tiers, highest first. Unlisted tiers rank below every listed one."""

    tiers: List[str] = Field(default_factory=lambda: list(DEFAULT_TRUST_TIERS), min_length=1)

    @field_validator("tiers")
    @classmethod
    def _no_duplicates(cls, value: List[str]) -> List[str]:
        cleaned = [t.strip() for t in value if t and t.strip()]
        if len(set(cleaned)) != len(cleaned):
            raise ValueError("trust tiers must be unique")
        if not cleaned:
            raise ValueError("at least one trust tier is required")
        return cleaned

    def rank(self, tier: Optional[str]) -> int:
        """Higher is more trusted."""
        if tier is None or tier not in self.tiers:
            return -1
        return len(self.tiers) - self.tiers.index(tier)


class CatalogSettings(BaseModel):
    database_url: Optional[str] = None
    trust: TrustPolicy = Field(default_factory=TrustPolicy)
    non_production_slug_pattern: str = DEFAULT_NON_PRODUCTION_SLUG_RE
    seed_dir: Path = SEED_DIR
    refresh_window_hours: int = Field(default=20, ge=0)
    refresh_limit: int = Field(default=30, ge=1, le=500)
    refresh_timeout_seconds: float = Field(default=10.0, gt=0)
    refresh_concurrency: int = Field(default=4, ge=1, le=32)
    refresh_deadline_seconds: float = Field(default=120.0, gt=0)
    stale_run_minutes: int = Field(default=45, ge=1)
    quality_focus_categories: List[str] = Field(default_factory=lambda: list(DEFAULT_QUALITY_FOCUS_CATEGORIES))
    offer_freshness_window_hours: int = Field(default=24, ge=1)
    offer_freshness_slo_percent: float = Field(default=95.0, ge=0, le=100)

    @field_validator("non_production_slug_pattern")
    @classmethod
    def _compiles(cls, value: str) -> str:
        re.compile(value)
        return value

    def non_production_slug_re(self) -> "re.Pattern[str]":
        return re.compile(self.non_production_slug_pattern, re.IGNORECASE)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid %s=%r, defaulting to %s", name, raw, default)
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Invalid %s=%r, defaulting to %s", name, raw, default)
        return default


def load_settings() -> CatalogSettings:
    """Build settings from the process environment (after load_dotenv)."""
    tiers_raw = os.getenv("CATALOG_TRUST_TIERS")
    trust = TrustPolicy(tiers=tiers_raw.split(",")) if tiers_raw else TrustPolicy()
    seed_dir = os.getenv("CATALOG_SEED_DIR")
    focus_raw = os.getenv("CATALOG_QUALITY_FOCUS_CATEGORIES")
    focus = [c.strip() for c in focus_raw.split(",") if c.strip()] if focus_raw else list(DEFAULT_QUALITY_FOCUS_CATEGORIES)

    return CatalogSettings(
        database_url=os.getenv("DATABASE_URL") or None,
        trust=trust,
        non_production_slug_pattern=os.getenv("CATALOG_NON_PRODUCTION_SLUG_RE", DEFAULT_NON_PRODUCTION_SLUG_RE),
        seed_dir=Path(seed_dir).expanduser() if seed_dir else SEED_DIR,
        refresh_window_hours=_env_int("OFFER_REFRESH_WINDOW_HOURS", 20),
        refresh_limit=_env_int("OFFER_REFRESH_LIMIT", 30),
        refresh_timeout_seconds=_env_float("OFFER_REFRESH_TIMEOUT_SECONDS", 10.0),
        refresh_concurrency=_env_int("OFFER_REFRESH_CONCURRENCY", 4),
        refresh_deadline_seconds=_env_float("OFFER_REFRESH_DEADLINE_SECONDS", 120.0),
        stale_run_minutes=_env_int("INGEST_STALE_RUN_MINUTES", 45),
        quality_focus_categories=focus,
        offer_freshness_window_hours=_env_int("OFFER_FRESHNESS_WINDOW_HOURS", 24),
        offer_freshness_slo_percent=_env_float("OFFER_FRESHNESS_SLO_PERCENT", 95.0),
    )


__all__ = [
    "DEFAULT_TRUST_TIERS",
    "DEFAULT_NON_PRODUCTION_SLUG_RE",
    "DEFAULT_QUALITY_FOCUS_CATEGORIES",
    "TrustPolicy",
    "CatalogSettings",
    "load_settings",
]
