from __future__ import annotations

import pytest

from backend.db.models import CanonicalEntityMapping, IngestionEntity, Offer, Plant, Product
from backend.ingestion.payloads import OfferAvailabilityPayload, OfferPayload, PlantPayload, ProductPayload
from backend.ingestion.snapshots import ensure_source, upsert_entity
from backend.services.resolver import (
    CONFIDENCE,
    CanonicalResolver,
    MappingError,
    Resolution,
    map_entity_manually,
    normalize_offer_url,
    unmap_entity,
    upsert_canonical_mapping,
)


def _entity(db, entity_type, key):
    source = ensure_source(db, slug="retailer-feed", kind="crawler", default_trust="retailer")
    entity_id = upsert_entity(db, source_id=source.id, entity_type=entity_type, source_entity_id=key)
    db.commit()
    return db.get(IngestionEntity, entity_id)


def _catalog(db):
    product = Product(slug="uns-60u", name="UNS 60U", brand="UNS", meta={"identifiers": {"upc": "850-021"}})
    plant = Plant(slug="java-fern", common_name="Java Fern", scientific_name="Microsorum pteropus")
    db.add_all([product, plant])
    db.flush()
    offer = Offer(product_id=product.id, retailer_slug="buce", url="https://Buce.example.com/p/uns/?b=2&a=1")
    db.add(offer)
    db.commit()
    return product, plant, offer


def test_normalize_offer_url():
    assert normalize_offer_url("HTTPS://Shop.Example.com:443/p//tank/?b=2&a=1#reviews") == "https://shop.example.com/p/tank?a=1&b=2"
    assert normalize_offer_url("http://shop.example.com:8080/") == "http://shop.example.com:8080/"
    assert normalize_offer_url("  ") == ""


def test_product_resolution_order(db):
    product, _, _ = _catalog(db)
    resolver = CanonicalResolver(db)

    by_upc = resolver.resolve(_entity(db, "product", "a"), ProductPayload(slug="other", name="x", identifiers={"upc": "850021"}))
    by_slug = resolver.resolve(_entity(db, "product", "b"), ProductPayload(slug="UNS-60U", name="x"))
    by_name = resolver.resolve(_entity(db, "product", "c"), ProductPayload(slug="nope", name="uns 60u", brand="uns"))
    missing = resolver.resolve(_entity(db, "product", "d"), ProductPayload(slug="nope", name="nope"))

    assert by_upc == Resolution("product", product.id, "identifier_exact", 100)
    assert by_slug.match_method == "slug_exact" and by_slug.canonical_id == product.id
    assert by_name.match_method == "brand_name_fingerprint"
    assert missing is None


def test_plant_and_offer_resolution(db):
    product, plant, offer = _catalog(db)
    resolver = CanonicalResolver(db)

    plant_hit = resolver.resolve(
        _entity(db, "plant", "jf"),
        PlantPayload(slug="jf", common_name="JF", scientific_name="microsorum  pteropus"),
    )
    assert plant_hit.canonical_id == plant.id
    assert plant_hit.match_method == "scientific_name_exact"

    offer_hit = resolver.resolve(
        _entity(db, "offer", "uns-60u:buce"),
        OfferPayload(product_slug="uns-60u", retailer_slug="buce", url="https://buce.example.com/p/uns?a=1&b=2"),
    )
    assert offer_hit == Resolution("offer", offer.id, "product_retailer_url_fingerprint", 96)

    probe_hit = resolver.resolve(
        _entity(db, "offer", str(offer.id)),
        OfferAvailabilityPayload(offer_id=offer.id, url=offer.url, observed_minute=1),
    )
    assert probe_hit.match_method == "offer_id"


def test_existing_mapping_is_reconfirmed_first(db):
    product, _, _ = _catalog(db)
    entity = _entity(db, "product", "legacy-key")
    upsert_canonical_mapping(db, entity.id, Resolution("product", product.id, "admin_manual", 100))
    db.commit()

    found = CanonicalResolver(db).resolve(entity, ProductPayload(slug="something-else", name="x"))
    assert found.match_method == "admin_manual"


def test_extra_strategies_run_last(db):
    product, _, _ = _catalog(db)
    calls = []

    def by_magic(resolver, entity, payload):
        calls.append(entity.id)
        return Resolution("product", product.id, "brand_name_fingerprint", CONFIDENCE["brand_name_fingerprint"])

    resolver = CanonicalResolver(db, extra_strategies=[by_magic])
    assert resolver.resolve(_entity(db, "product", "k1"), ProductPayload(slug="uns-60u", name="x")).match_method == "slug_exact"
    assert calls == []
    assert resolver.resolve(_entity(db, "product", "k2"), ProductPayload(slug="zzz", name="zzz")).canonical_id == product.id
    assert len(calls) == 1


def test_mapping_upsert_keeps_one_row_per_entity(db):
    product, _, _ = _catalog(db)
    other = Product(slug="other", name="Other")
    db.add(other)
    db.commit()
    entity = _entity(db, "product", "k")

    first = Resolution("product", product.id, "slug_exact", 94)
    assert upsert_canonical_mapping(db, entity.id, first) is True
    assert upsert_canonical_mapping(db, entity.id, first) is False
    assert upsert_canonical_mapping(db, entity.id, Resolution("product", other.id, "admin_manual", 100)) is True
    db.commit()

    rows = db.query(CanonicalEntityMapping).filter_by(entity_id=entity.id).all()
    assert len(rows) == 1
    assert rows[0].canonical_id == other.id
    assert rows[0].match_method == "admin_manual"


def test_manual_map_validates_and_unmap_removes(db):
    product, plant, _ = _catalog(db)
    entity = _entity(db, "product", "k")

    with pytest.raises(MappingError):
        map_entity_manually(db, entity_id=entity.id, canonical_type="plant", canonical_id=plant.id, actor="ops")
    with pytest.raises(MappingError):
        map_entity_manually(db, entity_id=entity.id, canonical_type="product", canonical_id=9999, actor="ops")
    with pytest.raises(MappingError):
        map_entity_manually(db, entity_id=entity.id, canonical_type="product", canonical_id=product.id, actor=" ")

    res = map_entity_manually(db, entity_id=entity.id, canonical_type="product", canonical_id=product.id, actor="ops")
    assert res["written"] is True
    assert db.query(CanonicalEntityMapping).count() == 1

    assert unmap_entity(db, entity_id=entity.id, actor="ops")["removed"] == 1
    assert db.query(CanonicalEntityMapping).count() == 0
