import importlib

from fastapi.testclient import TestClient

from backend.db.models import ensure_schema


def test_health(tmp_path, monkeypatch):
    db_url = f"sqlite:///{tmp_path / 'health.db'}"
    ensure_schema(db_url)
    monkeypatch.setenv("DATABASE_URL", db_url)

    import backend.app as app_mod
    importlib.reload(app_mod)

    with TestClient(app_mod.app) as c:
        r = c.get("/health")
        assert r.status_code == 200
        assert r.json() == {"status": "ok", "runs_in_progress": 0}

        runs = c.get("/api/ingestion/runs")
        assert runs.status_code == 200
        assert runs.json() == []
