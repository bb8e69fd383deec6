"""Typer-based command line interface for the tank catalog pipeline."""
from __future__ import annotations

import json
import os
import subprocess
import sys
from pathlib import Path
from typing import Any, List, Optional

import typer
from dotenv import load_dotenv

from backend.db.models import get_session_factory
from backend.db.ops import database_status, reset_schema, stamp_head, sync_database
from backend.ingestion.snapshots import reconcile_stale_runs_for_url
from backend.logging_config import configure_logging
from backend.runtime import ensure_runtime_directories
from backend.services.activation import run_activation_policy
from backend.services.export import export_catalog
from backend.services.ingest import SeedDataError, ingest_seed_directory
from backend.services.maintenance import run_maintenance_for_url
from backend.services.normalizer import NORMALIZATION_ORDER, run_normalization
from backend.services.overrides import (
    OverrideError,
    create_override,
    delete_override,
    serialize_override,
    update_override,
)
from backend.services.prune import CatalogPruneError, run_legacy_prune
from backend.services.quality_audit import run_catalog_quality_audit_for_url
from backend.services.refresh_offers import refresh_offers_for_url
from backend.services.regression_audit import RegressionAuditError, run_regression_audit_for_url, violation_messages
from backend.services.resolver import MappingError, map_entity_manually, unmap_entity

app = typer.Typer(help="Tank catalog control plane")
db_app = typer.Typer(help="Database lifecycle commands")
ingest_app = typer.Typer(help="Source ingestion routines")
catalog_app = typer.Typer(help="Catalog policy, pruning and audits")
offers_app = typer.Typer(help="Offer availability checks")
runs_app = typer.Typer(help="Ingestion run bookkeeping")
overrides_app = typer.Typer(help="Normalization overrides")
mappings_app = typer.Typer(help="Canonical entity mappings")
export_app = typer.Typer(help="Data export routines")

app.add_typer(db_app, name="db")
app.add_typer(ingest_app, name="ingest")
app.add_typer(catalog_app, name="catalog")
app.add_typer(offers_app, name="offers")
app.add_typer(runs_app, name="runs")
app.add_typer(overrides_app, name="overrides")
app.add_typer(mappings_app, name="mappings")
app.add_typer(export_app, name="export")

DATABASE_URL_HELP = "Override DATABASE_URL for this command."


def _parse_value(raw: str) -> Any:
    """Override values are JSON when they parse as JSON, plain strings otherwise."""
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def _summary(prefix: str, res: dict, keys: List[str]) -> None:
    typer.echo(f"{prefix}: " + " ".join(f"{k}={res.get(k)}" for k in keys))


@app.callback()
def main_callback() -> None:
    load_dotenv()
    configure_logging()
    ensure_runtime_directories()


@db_app.command("init")
def db_init(database_url: Optional[str] = typer.Option(None, "--database-url", help=DATABASE_URL_HELP)):
    status = sync_database(database_url)
    typer.echo(f"Database synchronized ({status}).")


@db_app.command("stamp")
def db_stamp(database_url: Optional[str] = typer.Option(None, "--database-url", help=DATABASE_URL_HELP)):
    stamp_head(database_url)
    typer.echo("Alembic stamped to head.")


@db_app.command("status")
def db_status(database_url: Optional[str] = typer.Option(None, "--database-url", help=DATABASE_URL_HELP)):
    res = database_status(database_url)
    _summary("Summary", res, ["backend", "current", "head", "up_to_date"])


@db_app.command("reset")
def db_reset(
    destructive: bool = typer.Option(False, "--destructive", help="Confirm dropping and recreating the public schema."),
    database_url: Optional[str] = typer.Option(None, "--database-url", help=DATABASE_URL_HELP),
):
    if not destructive:
        raise typer.BadParameter("Reset requires --destructive confirmation.")
    reset_schema(database_url)
    typer.echo("Database schema dropped and recreated.")


@app.command()
def serve(host: str = "127.0.0.1", port: int = 8000):
    import uvicorn
    uvicorn.run("backend.app:app", host=host, port=port, reload=False)


@app.command()
def test() -> None:
    env = os.environ.copy()
    env.setdefault("TEST_DATABASE_URL", env.get("DATABASE_URL", ""))
    cmd = [sys.executable, "-m", "pytest", "-q", "backend/tests", "tests"]
    typer.echo("Running pytest...")
    subprocess.run(cmd, check=True, env=env)


@ingest_app.command("seed")
def ingest_seed_cli(
    seed_dir: Optional[Path] = typer.Option(None, "--seed-dir", help="Directory with products/plants/offers JSON"),
    database_url: Optional[str] = typer.Option(None, "--database-url", help=DATABASE_URL_HELP),
):
    try:
        res = ingest_seed_directory(seed_dir=seed_dir, database_url=database_url)
    except SeedDataError as exc:
        typer.echo(f"Seed data invalid: {exc}", err=True)
        raise typer.Exit(code=1)
    _summary(
        "Summary",
        {"source": "manual_seed", **res},
        ["source", "entities_touched", "snapshots_created", "snapshots_unchanged", "product", "plant", "offer"],
    )


@app.command("normalize")
def normalize_cli(
    types: Optional[List[str]] = typer.Option(None, "--type", help="Limit to product, plant or offer (repeatable)"),
    database_url: Optional[str] = typer.Option(None, "--database-url", help=DATABASE_URL_HELP),
):
    selected = tuple(types) if types else NORMALIZATION_ORDER
    bad = [t for t in selected if t not in NORMALIZATION_ORDER]
    if bad:
        raise typer.BadParameter(f"unknown type(s): {', '.join(bad)}")
    res = run_normalization(database_url=database_url, types=selected)
    _summary("Summary", res, ["total_inserted", "total_updated", "mappings_upserted", "unresolved"])


@catalog_app.command("activate")
def catalog_activate(
    database_url: Optional[str] = typer.Option(None, "--database-url", help=DATABASE_URL_HELP),
    json_out: bool = typer.Option(False, "--json/--no-json", help="Print the full JSON report"),
):
    res = run_activation_policy(database_url=database_url)
    p, pl = res["products"], res["plants"]
    typer.echo(
        "Activation summary: "
        f"products_evaluated={p['evaluated']} products_activated={p['activated']} products_deactivated={p['deactivated']} "
        f"plants_evaluated={pl['evaluated']} plants_activated={pl['activated']} plants_deactivated={pl['deactivated']}"
    )
    if json_out:
        typer.echo(json.dumps(res, indent=2))


@catalog_app.command("prune")
def catalog_prune(
    dry_run: bool = typer.Option(False, "--dry-run", help="Plan only; do not delete anything"),
    database_url: Optional[str] = typer.Option(None, "--database-url", help=DATABASE_URL_HELP),
    json_out: bool = typer.Option(False, "--json/--no-json", help="Print the full JSON report"),
):
    try:
        res = run_legacy_prune(database_url=database_url, dry_run=dry_run)
    except CatalogPruneError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1)
    d = res["deleted"]
    plan = res["plan"]
    typer.echo(
        "Prune summary: "
        f"dry_run={dry_run} planned_products={plan['products_to_delete']} planned_plants={plan['plants_to_delete']} "
        f"planned_offers={plan['offers_to_delete']} deleted_products={d['products']} deleted_plants={d['plants']} "
        f"deleted_offers={d['offers']}"
    )
    if json_out:
        typer.echo(json.dumps(res, indent=2))


@catalog_app.command("audit")
def catalog_audit(database_url: Optional[str] = typer.Option(None, "--database-url", help=DATABASE_URL_HELP)):
    report = run_regression_audit_for_url(database_url=database_url)
    typer.echo(json.dumps(report, indent=2))
    if report["has_violations"]:
        for line in violation_messages(report):
            typer.echo(f"- {line}", err=True)
        raise typer.Exit(code=2)


@catalog_app.command("quality")
def catalog_quality(
    json_out: bool = typer.Option(False, "--json", help="Print the full report"),
    database_url: Optional[str] = typer.Option(None, "--database-url", help=DATABASE_URL_HELP),
):
    report = run_catalog_quality_audit_for_url(database_url=database_url)
    offers = report["offers"]
    typer.echo(
        "Quality summary: "
        f"violations={len(report['findings']['violations'])} warnings={len(report['findings']['warnings'])} "
        f"freshness_percent={offers['freshness_percent']} unmapped_entities={report['counts']['unmapped_entities']}"
    )
    if json_out:
        typer.echo(json.dumps(report, indent=2))
    for finding in report["findings"]["violations"]:
        typer.echo(f"- {finding['code']} [{finding['scope']}]: {finding['message']}", err=True)
    if report["has_violations"]:
        raise typer.Exit(code=2)


@catalog_app.command("maintenance")
def catalog_maintenance(
    seed_dir: Optional[Path] = typer.Option(None, "--seed-dir", help="Directory with products/plants/offers JSON"),
    skip_seed: bool = typer.Option(False, "--skip-seed", help="Do not ingest seed files first"),
    backfill_prices: bool = typer.Option(False, "--backfill-prices", help="Backfill price history after a clean audit"),
    database_url: Optional[str] = typer.Option(None, "--database-url", help=DATABASE_URL_HELP),
):
    try:
        res = run_maintenance_for_url(
            database_url=database_url,
            seed_dir=seed_dir,
            skip_seed=skip_seed,
            backfill_prices=backfill_prices,
        )
    except RegressionAuditError as exc:
        typer.echo(json.dumps(exc.report, indent=2))
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=2)
    except (SeedDataError, CatalogPruneError) as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1)

    norm = res["normalize"]
    prune = res["prune"]["deleted"]
    typer.echo(
        "Maintenance summary: "
        f"reconciled_runs={len(res['reconciled_runs'])} inserted={norm['total_inserted']} updated={norm['total_updated']} "
        f"pruned_products={prune['products']} pruned_plants={prune['plants']} pruned_offers={prune['offers']} "
        f"has_violations={res['audit']['has_violations']}"
    )


@offers_app.command("refresh")
def offers_refresh(
    offer_id: Optional[int] = typer.Option(None, "--offer-id", help="Force-refresh a single offer"),
    older_than_hours: Optional[int] = typer.Option(None, "--older-than-hours", help="Staleness window in hours"),
    older_than_days: Optional[int] = typer.Option(None, "--older-than-days", help="Legacy staleness window in days"),
    limit: Optional[int] = typer.Option(None, "--limit", help="Max offers to probe"),
    database_url: Optional[str] = typer.Option(None, "--database-url", help=DATABASE_URL_HELP),
):
    try:
        res = refresh_offers_for_url(
            mode="one" if offer_id is not None else "bulk",
            offer_id=offer_id,
            older_than_hours=older_than_hours,
            older_than_days=older_than_days,
            limit=limit,
            database_url=database_url,
        )
    except LookupError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1)
    except ValueError as exc:
        raise typer.BadParameter(str(exc))
    _summary("Summary", res, ["mode", "scanned", "updated", "failed"])


@runs_app.command("reconcile")
def runs_reconcile(
    older_than_minutes: int = typer.Option(45, "--older-than-minutes", help="Runs still running after this are failed"),
    database_url: Optional[str] = typer.Option(None, "--database-url", help=DATABASE_URL_HELP),
):
    res = reconcile_stale_runs_for_url(older_than_minutes=older_than_minutes, database_url=database_url)
    _summary("Summary", res, ["reconciled", "run_ids"])


@overrides_app.command("create")
def overrides_create(
    canonical_type: str = typer.Option(..., "--type", help="product, plant or offer"),
    canonical_id: int = typer.Option(..., "--id", help="Canonical record id"),
    field_path: str = typer.Option(..., "--field", help="Dot path, e.g. specs.volume_gal"),
    value: str = typer.Option(..., "--value", help="JSON value (bare strings allowed)"),
    reason: str = typer.Option(..., "--reason", help="Why this correction exists"),
    actor: str = typer.Option(..., "--actor", help="Who is making the change"),
    database_url: Optional[str] = typer.Option(None, "--database-url", help=DATABASE_URL_HELP),
):
    db = get_session_factory(database_url)()
    try:
        row = create_override(
            db,
            canonical_type=canonical_type,
            canonical_id=canonical_id,
            field_path=field_path,
            value=_parse_value(value),
            reason=reason,
            actor=actor,
        )
        typer.echo(json.dumps(serialize_override(row), indent=2))
    except OverrideError as exc:
        raise typer.BadParameter(str(exc))
    finally:
        db.close()


@overrides_app.command("update")
def overrides_update(
    override_id: int = typer.Argument(..., help="Override id"),
    value: str = typer.Option(..., "--value", help="JSON value (bare strings allowed)"),
    reason: str = typer.Option(..., "--reason", help="Why this correction exists"),
    actor: str = typer.Option(..., "--actor", help="Who is making the change"),
    database_url: Optional[str] = typer.Option(None, "--database-url", help=DATABASE_URL_HELP),
):
    db = get_session_factory(database_url)()
    try:
        row = update_override(db, override_id, value=_parse_value(value), reason=reason, actor=actor)
        typer.echo(json.dumps(serialize_override(row), indent=2))
    except OverrideError as exc:
        raise typer.BadParameter(str(exc))
    finally:
        db.close()


@overrides_app.command("delete")
def overrides_delete(
    override_id: int = typer.Argument(..., help="Override id"),
    actor: str = typer.Option(..., "--actor", help="Who is making the change"),
    database_url: Optional[str] = typer.Option(None, "--database-url", help=DATABASE_URL_HELP),
):
    db = get_session_factory(database_url)()
    try:
        removed = delete_override(db, override_id, actor=actor)
    except OverrideError as exc:
        raise typer.BadParameter(str(exc))
    finally:
        db.close()
    typer.echo(f"Summary: override_id={override_id} deleted={removed}")


@mappings_app.command("map")
def mappings_map(
    entity_id: int = typer.Option(..., "--entity-id", help="Ingestion entity id"),
    canonical_type: str = typer.Option(..., "--type", help="product, plant or offer"),
    canonical_id: int = typer.Option(..., "--id", help="Canonical record id"),
    actor: str = typer.Option(..., "--actor", help="Who is making the change"),
    database_url: Optional[str] = typer.Option(None, "--database-url", help=DATABASE_URL_HELP),
):
    db = get_session_factory(database_url)()
    try:
        res = map_entity_manually(
            db,
            entity_id=entity_id,
            canonical_type=canonical_type,
            canonical_id=canonical_id,
            actor=actor,
        )
    except MappingError as exc:
        raise typer.BadParameter(str(exc))
    finally:
        db.close()
    typer.echo("Summary: " + " ".join(f"{k}={v}" for k, v in res.items()))


@mappings_app.command("unmap")
def mappings_unmap(
    entity_id: int = typer.Option(..., "--entity-id", help="Ingestion entity id"),
    actor: str = typer.Option(..., "--actor", help="Who is making the change"),
    database_url: Optional[str] = typer.Option(None, "--database-url", help=DATABASE_URL_HELP),
):
    db = get_session_factory(database_url)()
    try:
        res = unmap_entity(db, entity_id=entity_id, actor=actor)
    except MappingError as exc:
        raise typer.BadParameter(str(exc))
    finally:
        db.close()
    typer.echo("Summary: " + " ".join(f"{k}={v}" for k, v in res.items()))


@export_app.command("catalog")
def export_catalog_cli(
    out: Optional[str] = typer.Option(None, "--out", help="Output directory"),
    active_only: bool = typer.Option(False, "--active-only", help="Only export active records"),
    database_url: Optional[str] = typer.Option(None, "--database-url", help=DATABASE_URL_HELP),
):
    export_path = Path(out).expanduser() if out else None
    results = export_catalog(database_url=database_url, output=export_path, active_only=active_only)
    for name, info in results.items():
        typer.echo(f"{name.capitalize()} CSV: {info['csv'].resolve()}")
        typer.echo(f"{name.capitalize()} JSONL: {info['jsonl'].resolve()}")
        typer.echo(f"{name.capitalize()} rows exported: {info['count']}")


def run() -> None:
    app()


if __name__ == "__main__":
    run()
