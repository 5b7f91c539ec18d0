"""Initial tables for complexes, listings, price history, runs and bargains.

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 09:00:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "20261019_0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamp(name: str, *, nullable: bool = False) -> sa.Column:
    if nullable:
        return sa.Column(name, sa.DateTime(timezone=True), nullable=True)
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        server_default=sa.text("now()"),
        nullable=False,
    )


def _counter(name: str) -> sa.Column:
    return sa.Column(name, sa.Integer(), server_default="0", nullable=False)


def upgrade() -> None:
    """Upgrade schema."""

    op.create_table(
        "complexes",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("complex_key", sa.String(), nullable=False),
        sa.Column("name", sa.String(), server_default="", nullable=False),
        sa.Column("property_type", sa.String(), server_default="APT", nullable=False),
        sa.Column("legal_dong_code", sa.String(), nullable=True),
        sa.Column("sgg_code", sa.String(), nullable=True),
        sa.Column("latitude", sa.Numeric(precision=10, scale=7), nullable=True),
        sa.Column("longitude", sa.Numeric(precision=10, scale=7), nullable=True),
        sa.Column("deal_count", sa.Integer(), server_default="0", nullable=False),
        _timestamp("last_collected_at", nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id", name="pk_complexes"),
        sa.UniqueConstraint("complex_key", name="uq_complexes_complex_key"),
    )
    op.create_index("idx_complexes_sgg", "complexes", ["sgg_code", "name"], unique=False)

    op.create_table(
        "listings",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("article_no", sa.String(), nullable=False),
        sa.Column("complex_id", sa.Integer(), nullable=True),
        sa.Column("complex_key", sa.String(), nullable=False),
        sa.Column("tile_key", sa.String(), nullable=True),
        sa.Column("trade_type", sa.String(), nullable=False),
        sa.Column("property_type", sa.String(), server_default="APT", nullable=False),
        sa.Column("price", sa.BigInteger(), nullable=False),
        sa.Column("deal_price", sa.BigInteger(), nullable=True),
        sa.Column("warranty_price", sa.BigInteger(), nullable=True),
        sa.Column("rent_price", sa.BigInteger(), nullable=True),
        sa.Column("price_text", sa.String(), nullable=True),
        sa.Column("supply_area", sa.Numeric(precision=8, scale=2), nullable=True),
        sa.Column("exclusive_area", sa.Numeric(precision=8, scale=2), nullable=True),
        sa.Column("floor_current", sa.Integer(), nullable=True),
        sa.Column("floor_total", sa.Integer(), nullable=True),
        sa.Column("direction", sa.String(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("tags", sa.JSON(), nullable=True),
        sa.Column("building_name", sa.String(), nullable=True),
        sa.Column("realtor_name", sa.String(), nullable=True),
        sa.Column("image_url", sa.Text(), nullable=True),
        sa.Column("confirm_date", sa.Date(), nullable=True),
        sa.Column("latitude", sa.Numeric(precision=10, scale=7), nullable=True),
        sa.Column("longitude", sa.Numeric(precision=10, scale=7), nullable=True),
        sa.Column("status", sa.String(), server_default="active", nullable=False),
        _timestamp("removed_at", nullable=True),
        sa.Column(
            "is_bargain", sa.Boolean(), server_default=sa.text("false"), nullable=False
        ),
        sa.Column("bargain_score", sa.Integer(), nullable=True),
        sa.Column("bargain_type", sa.String(), nullable=True),
        sa.Column("bargain_keyword", sa.String(), nullable=True),
        sa.Column("bargain_keyword_source", sa.String(), nullable=True),
        sa.Column("score_factors", sa.JSON(), nullable=True),
        _timestamp("scored_at", nullable=True),
        _timestamp("first_seen_at"),
        _timestamp("last_seen_at"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.ForeignKeyConstraint(
            ["complex_id"], ["complexes.id"], name="fk_listings_complex_id"
        ),
        sa.PrimaryKeyConstraint("id", name="pk_listings"),
        sa.UniqueConstraint("article_no", name="uq_listings_article_no"),
    )
    op.create_index(
        "idx_listings_scope", "listings", ["tile_key", "trade_type", "status"], unique=False
    )
    op.create_index(
        "idx_listings_complex",
        "listings",
        ["complex_id", "trade_type", "status"],
        unique=False,
    )
    op.create_index(
        "idx_listings_bargain", "listings", ["is_bargain", "bargain_score"], unique=False
    )

    op.create_table(
        "price_history",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("listing_id", sa.Integer(), nullable=False),
        sa.Column("price", sa.BigInteger(), nullable=False),
        sa.Column("deal_price", sa.BigInteger(), nullable=True),
        sa.Column("warranty_price", sa.BigInteger(), nullable=True),
        sa.Column("rent_price", sa.BigInteger(), nullable=True),
        sa.Column("price_text", sa.String(), nullable=True),
        sa.Column("source", sa.String(), server_default="scan_detected", nullable=False),
        sa.Column("run_id", sa.Integer(), nullable=True),
        _timestamp("recorded_at"),
        sa.ForeignKeyConstraint(
            ["listing_id"], ["listings.id"], name="fk_price_history_listing_id"
        ),
        sa.PrimaryKeyConstraint("id", name="pk_price_history"),
    )
    op.create_index(
        "idx_price_history_listing",
        "price_history",
        ["listing_id", "recorded_at"],
        unique=False,
    )

    op.create_table(
        "real_trades",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("trade_type", sa.String(), nullable=False),
        sa.Column("region_code", sa.String(), nullable=False),
        sa.Column("dong", sa.String(), server_default="", nullable=False),
        sa.Column("apt_name", sa.String(), server_default="", nullable=False),
        sa.Column("price", sa.BigInteger(), nullable=False),
        sa.Column("monthly_rent", sa.BigInteger(), server_default="0", nullable=False),
        sa.Column("area_m2", sa.Numeric(precision=8, scale=2), nullable=True),
        sa.Column("floor", sa.Integer(), server_default="0", nullable=False),
        sa.Column("contract_year", sa.Integer(), nullable=False),
        sa.Column("contract_month", sa.Integer(), nullable=False),
        sa.Column("contract_day", sa.Integer(), nullable=False),
        sa.Column(
            "is_canceled", sa.Boolean(), server_default=sa.text("false"), nullable=False
        ),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id", name="pk_real_trades"),
        sa.UniqueConstraint(
            "trade_type",
            "region_code",
            "dong",
            "apt_name",
            "area_m2",
            "floor",
            "contract_year",
            "contract_month",
            "contract_day",
            "price",
            "monthly_rent",
            name="uq_real_trades_identity",
        ),
    )
    op.create_index(
        "idx_real_trades_match",
        "real_trades",
        ["region_code", "apt_name", "trade_type"],
        unique=False,
    )
    op.create_index(
        "idx_real_trades_date",
        "real_trades",
        ["contract_year", "contract_month"],
        unique=False,
    )

    op.create_table(
        "crawl_runs",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("mode", sa.String(), nullable=False),
        sa.Column("region", sa.String(), server_default="all", nullable=False),
        sa.Column("status", sa.String(), server_default="running", nullable=False),
        _timestamp("started_at"),
        _timestamp("finished_at", nullable=True),
        _counter("tiles_total"),
        _counter("tiles_completed"),
        _counter("tiles_failed"),
        _counter("requests_made"),
        _counter("blocks_encountered"),
        _counter("listings_seen"),
        _counter("listings_new"),
        _counter("listings_updated"),
        _counter("price_changes"),
        _counter("listings_removed"),
        _counter("listings_scored"),
        _counter("bargains_found"),
        _counter("error_count"),
        sa.Column("last_tile_index", sa.Integer(), nullable=True),
        sa.Column("errors", sa.JSON(), nullable=True),
        sa.Column("options", sa.JSON(), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_crawl_runs"),
    )

    op.create_table(
        "bargain_detections",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("listing_id", sa.Integer(), nullable=False),
        sa.Column("complex_id", sa.Integer(), nullable=True),
        sa.Column("detection_type", sa.String(), nullable=False),
        sa.Column("keyword", sa.String(), nullable=True),
        sa.Column("keyword_source", sa.String(), nullable=True),
        sa.Column("price", sa.BigInteger(), nullable=True),
        sa.Column("bargain_score", sa.Integer(), nullable=True),
        sa.Column("run_id", sa.Integer(), nullable=True),
        sa.Column(
            "notified", sa.Boolean(), server_default=sa.text("false"), nullable=False
        ),
        _timestamp("detected_at"),
        sa.ForeignKeyConstraint(
            ["listing_id"], ["listings.id"], name="fk_bargain_detections_listing_id"
        ),
        sa.PrimaryKeyConstraint("id", name="pk_bargain_detections"),
        sa.UniqueConstraint(
            "listing_id", "detection_type", name="uq_bargain_detections_listing_type"
        ),
    )


def downgrade() -> None:
    """Downgrade schema."""

    op.drop_table("bargain_detections")
    op.drop_table("crawl_runs")
    op.drop_index("idx_real_trades_date", table_name="real_trades")
    op.drop_index("idx_real_trades_match", table_name="real_trades")
    op.drop_table("real_trades")
    op.drop_index("idx_price_history_listing", table_name="price_history")
    op.drop_table("price_history")
    op.drop_index("idx_listings_bargain", table_name="listings")
    op.drop_index("idx_listings_complex", table_name="listings")
    op.drop_index("idx_listings_scope", table_name="listings")
    op.drop_table("listings")
    op.drop_index("idx_complexes_sgg", table_name="complexes")
    op.drop_table("complexes")
