from __future__ import annotations

from backend.ingestion.payloads import (
    OfferAvailabilityPayload,
    OfferPayload,
    OpaquePayload,
    PlantPayload,
    ProductPayload,
    build_observation,
    flatten_fields,
    parse_payload,
    payload_to_raw,
)


def test_flatten_fields_uses_dot_paths_and_drops_empties():
    flat = flatten_fields(
        {
            "name": "Tank",
            "description": "  ",
            "specs": {"volume_gal": 17.4, "dims": {"length_in": 24}},
            "image_urls": ["a.jpg"],
            "meta": {},
            "in_stock": False,
        }
    )
    assert flat == {
        "name": "Tank",
        "specs.volume_gal": 17.4,
        "specs.dims.length_in": 24,
        "image_urls": ["a.jpg"],
        "in_stock": False,
    }


def test_parse_payload_picks_the_variant_for_the_entity_type():
    product = parse_payload("product", {"slug": "uns-60u", "name": "UNS 60U"})
    plant = parse_payload("plant", {"slug": "java-fern", "common_name": "Java Fern"})
    offer = parse_payload("offer", {"product_slug": "uns-60u", "retailer_slug": "buce"})

    assert isinstance(product, ProductPayload)
    assert isinstance(plant, PlantPayload)
    assert isinstance(offer, OfferPayload)


def test_availability_payload_round_trips_through_raw_json():
    payload = OfferAvailabilityPayload(offer_id=7, url="https://x.test/p", status=200, in_stock=True, observed_minute=5)
    parsed = parse_payload("offer", payload_to_raw(payload))
    assert isinstance(parsed, OfferAvailabilityPayload)
    assert parsed.offer_id == 7


def test_unknown_or_invalid_shapes_fall_back_to_opaque():
    assert isinstance(parse_payload("product", {"slug": ""}), OpaquePayload)
    assert isinstance(parse_payload("product", ["not", "a", "dict"]), OpaquePayload)
    # a plant-shaped payload stored against a product entity is not trusted
    assert isinstance(parse_payload("product", {"kind": "plant", "slug": "x", "common_name": "X"}), OpaquePayload)

    opaque = parse_payload("offer", {"kind": "mystery"})
    extracted, trust = build_observation(opaque, "retailer")
    assert extracted == {} and trust == {}


def test_build_observation_tags_every_field_with_the_tier():
    payload = PlantPayload(slug="monte-carlo", common_name="Monte Carlo", difficulty="medium")
    extracted, trust = build_observation(payload, "manual_seed")

    assert extracted["care.difficulty"] == {"value": "medium", "trust": "manual_seed"}
    assert "care.light_demand" not in extracted
    assert set(trust.values()) == {"manual_seed"}
    assert set(trust) == set(extracted)


def test_product_identifiers_are_carried_into_meta():
    payload = ProductPayload(slug="a", name="A", identifiers={"upc": "123"})
    extracted, _ = build_observation(payload, "retailer")
    assert extracted["meta.identifiers.upc"]["value"] == "123"


def test_unknown_availability_contributes_no_fields():
    payload = OfferAvailabilityPayload(offer_id=1, url="https://x.test", observed_minute=1, error="timeout")
    assert payload.canonical_fields() == {}
