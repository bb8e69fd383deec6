from __future__ import annotations

import re

from backend.analysis.guardrails import (
    contains_placeholder_copy,
    first_real_image,
    has_placeholder_image,
    is_non_production_slug,
    is_placeholder_image,
    sanitize_copy,
    sanitize_image_urls,
)
from backend.settings import DEFAULT_NON_PRODUCTION_SLUG_RE

HERO = "https://cdn.example.com/images/aquascape-hero-2400.jpg?w=800"


def test_placeholder_image_detection_ignores_query_and_case():
    assert is_placeholder_image(HERO)
    assert is_placeholder_image("/IMAGES/aquascape-hero-2400.jpg")
    assert not is_placeholder_image("https://cdn.example.com/p/tank.jpg")
    assert not is_placeholder_image(None)


def test_image_sanitizing_drops_placeholders_and_duplicates():
    assert sanitize_image_urls([HERO, " a.jpg ", "a.jpg", 5]) == ["a.jpg"]
    assert first_real_image(HERO, ["b.jpg"]) == "b.jpg"
    assert first_real_image(None, [HERO]) is None
    assert has_placeholder_image(None, ["x.jpg", HERO])


def test_placeholder_copy_detection():
    assert contains_placeholder_copy("Photo   coming SOON")
    assert contains_placeholder_copy("Specs TBD")
    assert not contains_placeholder_copy("A hardy epiphyte.")
    assert sanitize_copy("  Lorem ipsum dolor ") is None
    assert sanitize_copy(" Real copy ") == "Real copy"


def test_non_production_slugs():
    pattern = re.compile(DEFAULT_NON_PRODUCTION_SLUG_RE, re.IGNORECASE)
    assert is_non_production_slug("e2e-tank-1", pattern)
    assert is_non_production_slug("light_playwright", pattern)
    assert is_non_production_slug("vitest", pattern)
    assert not is_non_production_slug("latest-light", pattern)
    assert not is_non_production_slug("contest-winner", pattern)
    assert not is_non_production_slug(None, pattern)
