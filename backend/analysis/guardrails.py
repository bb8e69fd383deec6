from __future__ import annotations

import re
from typing import Any, Iterable, List, Optional
from urllib.parse import urlsplit

PLACEHOLDER_IMAGE_MARKERS = (
    "/images/aquascape-hero-2400.jpg",
)

PLACEHOLDER_COPY_MARKERS = (
    "photo coming soon",
    "no photo yet",
    "no details yet",
    "no specs yet",
    "no offers yet",
    "still filling",
    "open for care details",
    "lorem ipsum",
    "tbd",
)

_WS_RE = re.compile(r"\s+")


def _normalize_image_candidate(value: str) -> str:
    trimmed = value.strip()
    if not trimmed:
        return ""
    without_params = re.split(r"[?#]", trimmed, maxsplit=1)[0].strip()
    if not without_params:
        return ""
    if without_params.startswith(("http://", "https://")):
        parts = urlsplit(without_params)
        if parts.netloc:
            return f"{parts.scheme}://{parts.netloc}{parts.path}".lower()
    return without_params.lower()


def is_placeholder_image(value: Optional[str]) -> bool:
    if not isinstance(value, str):
        return False
    normalized = _normalize_image_candidate(value)
    if not normalized:
        return False
    return any(normalized == m or normalized.endswith(m) for m in PLACEHOLDER_IMAGE_MARKERS)


def sanitize_image_url(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    if not trimmed or is_placeholder_image(trimmed):
        return None
    return trimmed


def sanitize_image_urls(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    out: List[str] = []
    for item in value:
        clean = sanitize_image_url(item)
        if clean and clean not in out:
            out.append(clean)
    return out


def first_real_image(image_url: Any, image_urls: Any) -> Optional[str]:
    single = sanitize_image_url(image_url)
    if single:
        return single
    many = sanitize_image_urls(image_urls)
    return many[0] if many else None


def has_placeholder_image(image_url: Any, image_urls: Any) -> bool:
    if is_placeholder_image(image_url):
        return True
    if isinstance(image_urls, list):
        return any(is_placeholder_image(v) for v in image_urls if isinstance(v, str))
    return False


def contains_placeholder_copy(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    normalized = _WS_RE.sub(" ", value).strip().lower()
    if not normalized:
        return False
    return any(marker in normalized for marker in PLACEHOLDER_COPY_MARKERS)


def has_placeholder_copy(values: Iterable[Any]) -> bool:
    return any(contains_placeholder_copy(v) for v in values)


def sanitize_copy(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    if not trimmed or contains_placeholder_copy(trimmed):
        return None
    return trimmed


def is_non_production_slug(slug: Optional[str], pattern: "re.Pattern[str]") -> bool:
    if not slug:
        return False
    return bool(pattern.search(slug.strip()))


__all__ = [
    "PLACEHOLDER_IMAGE_MARKERS",
    "PLACEHOLDER_COPY_MARKERS",
    "is_placeholder_image",
    "sanitize_image_url",
    "sanitize_image_urls",
    "first_real_image",
    "has_placeholder_image",
    "contains_placeholder_copy",
    "has_placeholder_copy",
    "sanitize_copy",
    "is_non_production_slug",
]
