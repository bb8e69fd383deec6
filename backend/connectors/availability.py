"""HEAD-request availability probe for retailer offer URLs."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

logger = logging.getLogger(__name__)

USER_AGENT = "tankcatalog-offers-head/0.1 (+availability check)"
ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
DEFAULT_TIMEOUT_SECONDS = 10.0


@dataclass(frozen=True)
class ProbeResult:
    url: str
    final_url: Optional[str] = None
    status: Optional[int] = None
    content_type: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is not None and 200 <= self.status < 400


def classify_status(status: Optional[int]) -> Optional[bool]:
    """2xx/3xx means in stock, 4xx/5xx out of stock, anything else is unknown."""
    if status is None:
        return None
    if 200 <= status < 400:
        return True
    if 400 <= status < 600:
        return False
    return None


def _build_probe_session() -> requests.Session:
    session = requests.Session()
    # retry connection hiccups only; a 404 or 503 is an answer, not a failure
    retry = Retry(
        total=1,
        connect=1,
        read=0,
        status=0,
        backoff_factor=0.3,
        allowed_methods=("HEAD",),
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retry)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    session.headers.update({"User-Agent": USER_AGENT, "Accept": ACCEPT})
    return session


def probe_offer_url(
    url: str,
    *,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    session: Optional[requests.Session] = None,
) -> ProbeResult:
    """Issue one HEAD request following redirects. Network failures come back as ``status=None``."""
    owned = session is None
    sess = session or _build_probe_session()
    try:
        resp = sess.head(url, allow_redirects=True, timeout=timeout)
        resp.close()
        return ProbeResult(
            url=url,
            final_url=resp.url or url,
            status=resp.status_code,
            content_type=resp.headers.get("content-type"),
        )
    except requests.Timeout:
        logger.warning("HEAD %s timed out after %.1fs", url, timeout)
        return ProbeResult(url=url, error="timeout")
    except requests.RequestException as exc:
        logger.warning("HEAD %s failed: %s", url, exc)
        return ProbeResult(url=url, error=type(exc).__name__)
    finally:
        if owned:
            sess.close()


__all__ = [
    "USER_AGENT",
    "DEFAULT_TIMEOUT_SECONDS",
    "ProbeResult",
    "classify_status",
    "probe_offer_url",
]
