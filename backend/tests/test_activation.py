from __future__ import annotations

import re

from backend.db.models import Offer, Plant, Product
from backend.services.activation import apply_catalog_activation_policy, plant_should_be_active, product_should_be_active
from backend.settings import DEFAULT_NON_PRODUCTION_SLUG_RE

PATTERN = re.compile(DEFAULT_NON_PRODUCTION_SLUG_RE, re.IGNORECASE)
IMAGE = "https://cdn.example.com/products/uns-60u.jpg"
HERO = "https://cdn.example.com/images/aquascape-hero-2400.jpg"


def _product(db, slug, *, specs=None, image_url=IMAGE, status="inactive", offer_price=15999, in_stock=True, description=None):
    product = Product(slug=slug, name=slug, specs=specs or {}, image_url=image_url, status=status, description=description)
    db.add(product)
    db.flush()
    if offer_price is not None or not in_stock:
        db.add(Offer(product_id=product.id, retailer_slug="shop", price_cents=offer_price, in_stock=in_stock))
    return product


def test_three_product_catalog_activates_only_complete_products(db):
    _product(db, "uns-60u", specs={"volume_gal": 17.4})
    _product(db, "chihiros-wrgb2-60", specs={"watts": 44}, image_url=None)
    db.query(Product).filter_by(slug="chihiros-wrgb2-60").one().image_urls = ["https://cdn.example.com/wrgb2.jpg"]
    _product(db, "generic-co2-kit", specs={}, image_url=None, offer_price=None)
    db.commit()

    result = apply_catalog_activation_policy(db, non_production=PATTERN)
    db.commit()

    active = sorted(p.slug for p in db.query(Product).filter_by(status="active"))
    assert active == ["chihiros-wrgb2-60", "uns-60u"]
    assert result["products"]["evaluated"] == 3
    assert result["products"]["activated"] == 2
    assert result["products"]["sample_activated_slugs"] == ["chihiros-wrgb2-60", "uns-60u"]

    again = apply_catalog_activation_policy(db, non_production=PATTERN)
    assert again["products"]["activated"] == 0
    assert again["products"]["deactivated"] == 0


def test_products_lose_active_status(db):
    _product(db, "no-offer", specs={"a": 1}, status="active", offer_price=None)
    _product(db, "sold-out", specs={"a": 1}, status="active", in_stock=False)
    _product(db, "placeholder-image", specs={"a": 1}, status="active", image_url=HERO)
    _product(db, "tank-e2e-fixture", specs={"a": 1}, status="active")
    db.commit()

    result = apply_catalog_activation_policy(db, non_production=PATTERN)
    db.commit()

    assert db.query(Product).filter_by(status="active").count() == 0
    assert result["products"]["deactivated"] == 4


def test_non_production_slugs_are_never_active():
    product = Product(slug="Vitest-Tank", name="x", specs={"a": 1}, image_url=IMAGE)
    assert product_should_be_active(product, 3, PATTERN) is False
    product.slug = "contest-tank"
    assert product_should_be_active(product, 3, PATTERN) is True


def test_plant_predicate():
    plant = Plant(
        slug="java-fern",
        common_name="Java Fern",
        image_url="https://cdn.example.com/plants/java-fern.jpg",
        sources=["https://en.wikipedia.org/wiki/Microsorum_pteropus"],
        description="Hardy epiphyte.",
    )
    assert plant_should_be_active(plant, PATTERN) is True

    # notes are not part of the activation rule
    plant.notes = "Open for care details"
    assert plant_should_be_active(plant, PATTERN) is True

    plant.sources = ["  "]
    assert plant_should_be_active(plant, PATTERN) is False
    plant.sources = ["https://example.com"]

    plant.description = "TBD"
    assert plant_should_be_active(plant, PATTERN) is False
    plant.description = "Hardy epiphyte."

    plant.image_url = HERO
    assert plant_should_be_active(plant, PATTERN) is False


def test_placeholder_description_does_not_block_a_complete_product(db):
    _product(db, "uns-60u", specs={"volume_gal": 17.4}, description="Full review TBD")
    db.commit()

    result = apply_catalog_activation_policy(db, non_production=PATTERN)
    db.commit()

    # the regression audit reports placeholder copy; activation does not
    assert db.query(Product).filter_by(slug="uns-60u").one().status == "active"
    assert result["products"]["activated"] == 1
