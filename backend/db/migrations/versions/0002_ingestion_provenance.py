"""Add ingestion sources, runs, entities, snapshots, mappings and overrides.

Revision ID: 0002_ingestion_provenance
Revises: 0001_create_catalog_tables
Create Date: 2026-03-09
"""
from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "0002_ingestion_provenance"
down_revision = "0001_create_catalog_tables"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "ingestion_sources",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("slug", sa.String, nullable=False, unique=True),
        sa.Column("name", sa.Text, nullable=False),
        sa.Column("kind", sa.String(32), nullable=False),
        sa.Column("default_trust", sa.String(32), nullable=False),
        sa.Column("active", sa.Boolean, nullable=False, server_default="1"),
        sa.Column("config", sa.JSON, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "ingestion_runs",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("source_id", sa.Integer, sa.ForeignKey("ingestion_sources.id"), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="running"),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("stats", sa.JSON, nullable=False),
        sa.Column("error", sa.Text, nullable=True),
    )
    op.create_index("ix_ingestion_runs_status_started", "ingestion_runs", ["status", "started_at"])

    op.create_table(
        "ingestion_entities",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("source_id", sa.Integer, sa.ForeignKey("ingestion_sources.id"), nullable=False),
        sa.Column("entity_type", sa.String(16), nullable=False),
        sa.Column("source_entity_id", sa.String, nullable=False),
        sa.Column("url", sa.Text, nullable=True),
        sa.Column("active", sa.Boolean, nullable=False, server_default="1"),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("source_id", "entity_type", "source_entity_id", name="uq_ingestion_entities_source_key"),
    )

    op.create_table(
        "ingestion_entity_snapshots",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column(
            "entity_id",
            sa.Integer,
            sa.ForeignKey("ingestion_entities.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("run_id", sa.Integer, sa.ForeignKey("ingestion_runs.id"), nullable=True),
        sa.Column("fetched_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("http_status", sa.Integer, nullable=True),
        sa.Column("content_type", sa.String, nullable=True),
        sa.Column("raw_json", sa.JSON, nullable=True),
        sa.Column("extracted", sa.JSON, nullable=False),
        sa.Column("trust", sa.JSON, nullable=False),
        sa.Column("content_hash", sa.String(64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("entity_id", "content_hash", name="uq_ingestion_snapshots_entity_hash"),
    )

    op.create_table(
        "canonical_entity_mappings",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column(
            "entity_id",
            sa.Integer,
            sa.ForeignKey("ingestion_entities.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("canonical_type", sa.String(16), nullable=False),
        sa.Column("canonical_id", sa.Integer, nullable=False),
        sa.Column("match_method", sa.String(64), nullable=False),
        sa.Column("confidence", sa.Integer, nullable=False),
        sa.Column("notes", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_canonical_mappings_target",
        "canonical_entity_mappings",
        ["canonical_type", "canonical_id"],
    )

    op.create_table(
        "normalization_overrides",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("canonical_type", sa.String(16), nullable=False),
        sa.Column("canonical_id", sa.Integer, nullable=False),
        sa.Column("field_path", sa.String(200), nullable=False),
        sa.Column("value", sa.JSON, nullable=True),
        sa.Column("reason", sa.Text, nullable=False),
        sa.Column("actor_user_id", sa.String, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint(
            "canonical_type",
            "canonical_id",
            "field_path",
            name="uq_normalization_overrides_target_field",
        ),
    )


def downgrade() -> None:
    op.drop_table("normalization_overrides")
    op.drop_index("ix_canonical_mappings_target", table_name="canonical_entity_mappings")
    op.drop_table("canonical_entity_mappings")
    op.drop_table("ingestion_entity_snapshots")
    op.drop_table("ingestion_entities")
    op.drop_index("ix_ingestion_runs_status_started", table_name="ingestion_runs")
    op.drop_table("ingestion_runs")
    op.drop_table("ingestion_sources")
