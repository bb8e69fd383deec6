from __future__ import annotations
import os
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    func,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session, relationship
from sqlalchemy.exc import OperationalError

DEFAULT_DATABASE_URL = "sqlite:///./dev.db"
Base = declarative_base()

CANONICAL_TYPES = ("product", "plant", "offer")
RUN_STATUSES = ("running", "success", "failed")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything is stored as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# --- canonical catalog -------------------------------------------------------


class Product(Base):
    __tablename__ = "products"
    id = Column(Integer, primary_key=True)
    slug = Column(String, unique=True, nullable=False)
    name = Column(Text, nullable=False)
    brand = Column(String)
    category = Column(String)
    description = Column(Text)
    image_url = Column(Text)
    image_urls = Column(JSON, nullable=False, default=list)
    specs = Column(JSON, nullable=False, default=dict)
    meta = Column(JSON, nullable=False, default=dict)
    status = Column(String(16), nullable=False, default="inactive", server_default="inactive")
    source = Column(String)
    verified = Column(Boolean, nullable=False, default=False, server_default="0")
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    offers = relationship("Offer", back_populates="product")


class Plant(Base):
    __tablename__ = "plants"
    id = Column(Integer, primary_key=True)
    slug = Column(String, unique=True, nullable=False)
    common_name = Column(Text, nullable=False)
    scientific_name = Column(Text)
    family = Column(String)
    description = Column(Text)
    notes = Column(Text)
    image_url = Column(Text)
    image_urls = Column(JSON, nullable=False, default=list)
    sources = Column(JSON, nullable=False, default=list)
    care = Column(JSON, nullable=False, default=dict)
    status = Column(String(16), nullable=False, default="inactive", server_default="inactive")
    verified = Column(Boolean, nullable=False, default=False, server_default="0")
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())


class Offer(Base):
    __tablename__ = "offers"
    id = Column(Integer, primary_key=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    retailer_slug = Column(String, nullable=False)
    price_cents = Column(Integer)
    currency = Column(String(8), nullable=False, default="USD", server_default="USD")
    url = Column(Text)
    affiliate_url = Column(Text)
    in_stock = Column(Boolean, nullable=False, default=True, server_default="1")
    last_checked_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    product = relationship("Product", back_populates="offers")

    __table_args__ = (Index("ix_offers_product_id", "product_id"),)


class PriceHistory(Base):
    __tablename__ = "price_history"
    id = Column(Integer, primary_key=True)
    offer_id = Column(Integer, ForeignKey("offers.id"), nullable=False)
    price_cents = Column(Integer, nullable=False)
    in_stock = Column(Boolean, nullable=False)
    recorded_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    __table_args__ = (Index("ix_price_history_offer_recorded", "offer_id", "recorded_at"),)


class OfferSummary(Base):
    __tablename__ = "offer_summaries"
    product_id = Column(Integer, ForeignKey("products.id"), primary_key=True)
    min_price_cents = Column(Integer)
    in_stock_count = Column(Integer, nullable=False, default=0)
    stale_flag = Column(Boolean, nullable=False, default=True)
    checked_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())


class Build(Base):
    __tablename__ = "builds"
    id = Column(Integer, primary_key=True)
    name = Column(Text, nullable=False)
    owner_user_id = Column(String)
    is_public = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())


class BuildItem(Base):
    __tablename__ = "build_items"
    id = Column(Integer, primary_key=True)
    build_id = Column(Integer, ForeignKey("builds.id", ondelete="CASCADE"), nullable=False)
    category = Column(String)
    product_id = Column(Integer, ForeignKey("products.id"))
    plant_id = Column(Integer, ForeignKey("plants.id"))
    selected_offer_id = Column(Integer, ForeignKey("offers.id"))
    quantity = Column(Integer, nullable=False, default=1)


class UserFavorite(Base):
    __tablename__ = "user_favorites"
    id = Column(Integer, primary_key=True)
    user_id = Column(String, nullable=False)
    product_id = Column(Integer, ForeignKey("products.id"))
    plant_id = Column(Integer, ForeignKey("plants.id"))
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())


# --- ingestion + provenance --------------------------------------------------


class IngestionSource(Base):
    __tablename__ = "ingestion_sources"
    id = Column(Integer, primary_key=True)
    slug = Column(String, unique=True, nullable=False)
    name = Column(Text, nullable=False)
    kind = Column(String(32), nullable=False)
    default_trust = Column(String(32), nullable=False, default="unknown")
    active = Column(Boolean, nullable=False, default=True, server_default="1")
    config = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())


class IngestionRun(Base):
    __tablename__ = "ingestion_runs"
    id = Column(Integer, primary_key=True)
    source_id = Column(Integer, ForeignKey("ingestion_sources.id"), nullable=False)
    status = Column(String(16), nullable=False, default="running", server_default="running")
    started_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    finished_at = Column(DateTime(timezone=True))
    stats = Column(JSON, nullable=False, default=dict)
    error = Column(Text)

    __table_args__ = (Index("ix_ingestion_runs_status_started", "status", "started_at"),)


class IngestionEntity(Base):
    __tablename__ = "ingestion_entities"
    id = Column(Integer, primary_key=True)
    source_id = Column(Integer, ForeignKey("ingestion_sources.id"), nullable=False)
    entity_type = Column(String(16), nullable=False)
    source_entity_id = Column(String, nullable=False)
    url = Column(Text)
    active = Column(Boolean, nullable=False, default=True, server_default="1")
    last_seen_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("source_id", "entity_type", "source_entity_id", name="uq_ingestion_entities_source_key"),
    )


class IngestionEntitySnapshot(Base):
    __tablename__ = "ingestion_entity_snapshots"
    id = Column(Integer, primary_key=True)
    entity_id = Column(Integer, ForeignKey("ingestion_entities.id", ondelete="CASCADE"), nullable=False)
    run_id = Column(Integer, ForeignKey("ingestion_runs.id"))
    fetched_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    http_status = Column(Integer)
    content_type = Column(String)
    raw_json = Column(JSON)
    extracted = Column(JSON, nullable=False, default=dict)
    trust = Column(JSON, nullable=False, default=dict)
    content_hash = Column(String(64), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("entity_id", "content_hash", name="uq_ingestion_snapshots_entity_hash"),
    )


class CanonicalEntityMapping(Base):
    __tablename__ = "canonical_entity_mappings"
    id = Column(Integer, primary_key=True)
    entity_id = Column(Integer, ForeignKey("ingestion_entities.id", ondelete="CASCADE"), nullable=False, unique=True)
    canonical_type = Column(String(16), nullable=False)
    canonical_id = Column(Integer, nullable=False)
    match_method = Column(String(64), nullable=False)
    confidence = Column(Integer, nullable=False)
    notes = Column(Text)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    __table_args__ = (Index("ix_canonical_mappings_target", "canonical_type", "canonical_id"),)


class NormalizationOverride(Base):
    __tablename__ = "normalization_overrides"
    id = Column(Integer, primary_key=True)
    canonical_type = Column(String(16), nullable=False)
    canonical_id = Column(Integer, nullable=False)
    field_path = Column(String(200), nullable=False)
    value = Column(JSON)
    reason = Column(Text, nullable=False)
    actor_user_id = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("canonical_type", "canonical_id", "field_path", name="uq_normalization_overrides_target_field"),
    )


CANONICAL_MODELS = {
    "product": Product,
    "plant": Plant,
    "offer": Offer,
}

# Columns the normalizer may write (and overrides may target), per canonical type.
# Status is owned by the activation policy and never merged.
CANONICAL_FIELDS = {
    "product": (
        "slug", "name", "brand", "category", "description",
        "image_url", "image_urls", "specs", "meta", "verified",
    ),
    "plant": (
        "slug", "common_name", "scientific_name", "family", "description", "notes",
        "image_url", "image_urls", "sources", "care", "verified",
    ),
    "offer": (
        "product_id", "retailer_slug", "price_cents", "currency", "url", "affiliate_url", "in_stock",
    ),
}

# JSON object columns; only these accept nested field paths such as specs.volume_gal
CANONICAL_DICT_FIELDS = {
    "product": ("specs", "meta"),
    "plant": ("care",),
    "offer": (),
}


_engines: dict[str, Engine] = {}
_session_factories: dict[str, sessionmaker] = {}


def _resolve_url(database_url: Optional[str] = None) -> str:
    return database_url or os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)


def get_engine(database_url: Optional[str] = None):
    url = _resolve_url(database_url)
    engine = _engines.get(url)
    if engine is None:
        engine = create_engine(url, future=True)
        _engines[url] = engine
    return engine


def configure_session(database_url: Optional[str] = None) -> sessionmaker:
    url = _resolve_url(database_url)
    factory = _session_factories.get(url)
    if factory is None:
        engine = get_engine(url)
        factory = sessionmaker(bind=engine, expire_on_commit=False, class_=Session)
        _session_factories[url] = factory
    return factory


def get_session_factory(database_url: Optional[str] = None) -> sessionmaker:
    url = _resolve_url(database_url)
    factory = _session_factories.get(url)
    if factory is None:
        factory = configure_session(url)
    return factory


@contextmanager
def session_scope(database_url: Optional[str]=None) -> Iterator[Session]:
    session_cls = get_session_factory(database_url)
    session = session_cls()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def ensure_schema(database_url: Optional[str]=None) -> None:
    engine = get_engine(database_url)
    try:
        Base.metadata.create_all(engine)
    except OperationalError as exc:
        raise RuntimeError("Unable to initialize database schema") from exc
