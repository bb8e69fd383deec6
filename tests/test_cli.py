from __future__ import annotations

import shutil
from pathlib import Path

from typer.testing import CliRunner

from backend.db import models
from tankcatalog.cli import app

SEED_DIR = Path(__file__).resolve().parents[1] / "data" / "seed"

runner = CliRunner()


def _database(tmp_path: Path) -> str:
    url = f"sqlite:///{tmp_path / 'cli.db'}"
    models.ensure_schema(url)
    return url


def test_maintenance_then_audit(tmp_path: Path):
    url = _database(tmp_path)
    seed = tmp_path / "seed"
    shutil.copytree(SEED_DIR, seed)

    result = runner.invoke(app, ["catalog", "maintenance", "--seed-dir", str(seed), "--database-url", url])
    assert result.exit_code == 0, result.output
    assert "Maintenance summary:" in result.output
    assert "inserted=7" in result.output
    assert "has_violations=False" in result.output

    audit = runner.invoke(app, ["catalog", "audit", "--database-url", url])
    assert audit.exit_code == 0, audit.output


def test_audit_exits_2_on_violations(tmp_path: Path):
    url = _database(tmp_path)
    with models.session_scope(url) as session:
        session.add(models.Product(slug="legacy", name="Legacy", status="active"))

    result = runner.invoke(app, ["catalog", "audit", "--database-url", url])

    assert result.exit_code == 2


def test_override_commands_validate_input(tmp_path: Path):
    url = _database(tmp_path)
    with models.session_scope(url) as session:
        product = models.Product(slug="uns-60u", name="UNS 60U")
        session.add(product)
        session.flush()
        product_id = product.id

    ok = runner.invoke(
        app,
        [
            "overrides", "create", "--type", "product", "--id", str(product_id), "--field", "specs.volume_gal",
            "--value", "18", "--reason", "measured", "--actor", "ops", "--database-url", url,
        ],
    )
    assert ok.exit_code == 0, ok.output
    assert '"value": 18' in ok.output

    bad = runner.invoke(
        app,
        [
            "overrides", "create", "--type", "product", "--id", str(product_id), "--field", "nope",
            "--value", "x", "--reason", "r", "--actor", "ops", "--database-url", url,
        ],
    )
    assert bad.exit_code != 0


def test_quality_exits_2_on_an_empty_catalog(tmp_path: Path):
    url = _database(tmp_path)

    result = runner.invoke(app, ["catalog", "quality", "--json", "--database-url", url])

    assert result.exit_code == 2
    assert "Quality summary:" in result.output
    assert "offers_empty" in result.output
