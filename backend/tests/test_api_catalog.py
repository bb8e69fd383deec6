from datetime import timedelta
import importlib

from fastapi.testclient import TestClient

from backend.api.deps import get_db_session, get_settings
from backend.connectors.availability import ProbeResult
from backend.db.models import Offer, Product, get_session_factory, utcnow
from backend.settings import CatalogSettings


def _client(db_url, monkeypatch):
    # Ensure the app bootstraps against this sqlite DB in lifespan
    monkeypatch.setenv("DATABASE_URL", db_url)

    import backend.app as app_mod
    importlib.reload(app_mod)
    app = app_mod.app
    SessionFactory = get_session_factory(db_url)

    def override_get_db_session():
        s = SessionFactory()
        try:
            yield s
            s.commit()
        finally:
            s.close()

    app.dependency_overrides[get_db_session] = override_get_db_session
    app.dependency_overrides[get_settings] = lambda: CatalogSettings(database_url=db_url, refresh_concurrency=1)
    return app


def test_api_offer_refresh_and_runs(db_url, monkeypatch):
    db = get_session_factory(db_url)()
    old = utcnow() - timedelta(days=3)
    product = Product(slug="uns-60u", name="UNS 60U")
    db.add(product)
    db.flush()
    offer = Offer(product_id=product.id, retailer_slug="buce", url="https://buce.test/uns", price_cents=100,
                  last_checked_at=old, updated_at=old)
    db.add(offer)
    db.commit()
    offer_id = offer.id
    db.close()

    monkeypatch.setattr(
        "backend.services.refresh_offers._default_probe",
        lambda url, timeout: ProbeResult(url=url, status=404),
    )
    app = _client(db_url, monkeypatch)
    try:
        client = TestClient(app)

        r = client.post("/api/offers/refresh", json={"older_than_days": 1})
        assert r.status_code == 200
        body = r.json()
        assert body["mode"] == "bulk"
        assert (body["scanned"], body["updated"], body["failed"]) == (1, 1, 0)

        r = client.post(f"/api/offers/{offer_id}/refresh")
        assert r.status_code == 200
        assert r.json()["scanned"] == 1

        assert client.post("/api/offers/9999/refresh").status_code == 404
        assert client.post("/api/offers/refresh", json={"limit": 0}).status_code == 422

        runs = client.get("/api/ingestion/runs?limit=5").json()
        assert [run["source"] for run in runs] == ["offers-head", "offers-head"]
        assert all(run["status"] == "success" for run in runs)
    finally:
        app.dependency_overrides.clear()

    check = get_session_factory(db_url)()
    assert check.get(Offer, offer_id).in_stock is False
    check.close()


def test_api_catalog_audit(db_url, monkeypatch):
    db = get_session_factory(db_url)()
    db.add(Product(slug="legacy", name="Legacy", status="active"))
    db.commit()
    db.close()

    app = _client(db_url, monkeypatch)
    try:
        client = TestClient(app)
        r = client.get("/api/catalog/audit")
        assert r.status_code == 200
        body = r.json()
        assert body["has_violations"] is True
        assert body["provenance"]["displayed_without_provenance"]["products"] == 1
    finally:
        app.dependency_overrides.clear()


def test_api_catalog_quality(db_url, monkeypatch):
    db = get_session_factory(db_url)()
    product = Product(slug="uns-60u", name="UNS 60U", category="tank", status="active", specs={"volume_gal": 17.4},
                      image_url="https://cdn.example.com/uns.jpg")
    db.add(product)
    db.flush()
    db.add(Offer(product_id=product.id, retailer_slug="buce", price_cents=15999, in_stock=True,
                 last_checked_at=utcnow() - timedelta(hours=2)))
    db.commit()
    db.close()

    app = _client(db_url, monkeypatch)
    app.dependency_overrides[get_settings] = lambda: CatalogSettings(
        database_url=db_url, quality_focus_categories=["tank"]
    )
    try:
        client = TestClient(app)
        r = client.get("/api/catalog/quality")
        assert r.status_code == 200
        body = r.json()
        assert body["offers"]["freshness_percent"] == 100.0
        assert body["categories"][0]["product_count"] == 1
        assert body["has_violations"] is False
        assert body["has_warnings"] is False
    finally:
        app.dependency_overrides.clear()
