"""Create canonical catalog tables.

Revision ID: 0001_create_catalog_tables
Revises:
Create Date: 2026-03-02
"""
from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "0001_create_catalog_tables"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "products",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("slug", sa.String, nullable=False, unique=True),
        sa.Column("name", sa.Text, nullable=False),
        sa.Column("brand", sa.String, nullable=True),
        sa.Column("category", sa.String, nullable=True),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("image_url", sa.Text, nullable=True),
        sa.Column("image_urls", sa.JSON, nullable=False),
        sa.Column("specs", sa.JSON, nullable=False),
        sa.Column("meta", sa.JSON, nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="inactive"),
        sa.Column("source", sa.String, nullable=True),
        sa.Column("verified", sa.Boolean, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "plants",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("slug", sa.String, nullable=False, unique=True),
        sa.Column("common_name", sa.Text, nullable=False),
        sa.Column("scientific_name", sa.Text, nullable=True),
        sa.Column("family", sa.String, nullable=True),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("notes", sa.Text, nullable=True),
        sa.Column("image_url", sa.Text, nullable=True),
        sa.Column("image_urls", sa.JSON, nullable=False),
        sa.Column("sources", sa.JSON, nullable=False),
        sa.Column("care", sa.JSON, nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="inactive"),
        sa.Column("verified", sa.Boolean, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "offers",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("product_id", sa.Integer, sa.ForeignKey("products.id"), nullable=False),
        sa.Column("retailer_slug", sa.String, nullable=False),
        sa.Column("price_cents", sa.Integer, nullable=True),
        sa.Column("currency", sa.String(8), nullable=False, server_default="USD"),
        sa.Column("url", sa.Text, nullable=True),
        sa.Column("affiliate_url", sa.Text, nullable=True),
        sa.Column("in_stock", sa.Boolean, nullable=False, server_default="1"),
        sa.Column("last_checked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_offers_product_id", "offers", ["product_id"])

    op.create_table(
        "price_history",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("offer_id", sa.Integer, sa.ForeignKey("offers.id"), nullable=False),
        sa.Column("price_cents", sa.Integer, nullable=False),
        sa.Column("in_stock", sa.Boolean, nullable=False),
        sa.Column("recorded_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_price_history_offer_recorded", "price_history", ["offer_id", "recorded_at"])

    op.create_table(
        "offer_summaries",
        sa.Column("product_id", sa.Integer, sa.ForeignKey("products.id"), primary_key=True),
        sa.Column("min_price_cents", sa.Integer, nullable=True),
        sa.Column("in_stock_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("stale_flag", sa.Boolean, nullable=False, server_default="1"),
        sa.Column("checked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "builds",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("name", sa.Text, nullable=False),
        sa.Column("owner_user_id", sa.String, nullable=True),
        sa.Column("is_public", sa.Boolean, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "build_items",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("build_id", sa.Integer, sa.ForeignKey("builds.id", ondelete="CASCADE"), nullable=False),
        sa.Column("category", sa.String, nullable=True),
        sa.Column("product_id", sa.Integer, sa.ForeignKey("products.id"), nullable=True),
        sa.Column("plant_id", sa.Integer, sa.ForeignKey("plants.id"), nullable=True),
        sa.Column("selected_offer_id", sa.Integer, sa.ForeignKey("offers.id"), nullable=True),
        sa.Column("quantity", sa.Integer, nullable=False, server_default="1"),
    )

    op.create_table(
        "user_favorites",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("user_id", sa.String, nullable=False),
        sa.Column("product_id", sa.Integer, sa.ForeignKey("products.id"), nullable=True),
        sa.Column("plant_id", sa.Integer, sa.ForeignKey("plants.id"), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("user_favorites")
    op.drop_table("build_items")
    op.drop_table("builds")
    op.drop_table("offer_summaries")
    op.drop_index("ix_price_history_offer_recorded", table_name="price_history")
    op.drop_table("price_history")
    op.drop_index("ix_offers_product_id", table_name="offers")
    op.drop_table("offers")
    op.drop_table("plants")
    op.drop_table("products")
