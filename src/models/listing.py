"""Listing table model."""

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    Text,
    false,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from src.models.base import Base

LISTING_STATUS_ACTIVE = "active"
LISTING_STATUS_REMOVED = "removed"


class Listing(Base):
    """Listing collected from the upstream map API, one row per article."""

    __tablename__ = "listings"
    __table_args__ = (
        Index("idx_listings_scope", "tile_key", "trade_type", "status"),
        Index("idx_listings_complex", "complex_id", "trade_type", "status"),
        Index("idx_listings_bargain", "is_bargain", "bargain_score"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    article_no: Mapped[str] = mapped_column(nullable=False, unique=True)
    complex_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("complexes.id"), nullable=True
    )
    complex_key: Mapped[str] = mapped_column(nullable=False)
    tile_key: Mapped[str | None] = mapped_column(nullable=True)
    trade_type: Mapped[str] = mapped_column(nullable=False)
    property_type: Mapped[str] = mapped_column(nullable=False, server_default="APT")

    price: Mapped[int] = mapped_column(BigInteger, nullable=False)
    deal_price: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    warranty_price: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    rent_price: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    price_text: Mapped[str | None] = mapped_column(nullable=True)

    supply_area: Mapped[Decimal | None] = mapped_column(Numeric(8, 2), nullable=True)
    exclusive_area: Mapped[Decimal | None] = mapped_column(
        Numeric(8, 2), nullable=True
    )
    floor_current: Mapped[int | None] = mapped_column(Integer, nullable=True)
    floor_total: Mapped[int | None] = mapped_column(Integer, nullable=True)
    direction: Mapped[str | None] = mapped_column(nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    tags: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    building_name: Mapped[str | None] = mapped_column(nullable=True)
    realtor_name: Mapped[str | None] = mapped_column(nullable=True)
    image_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    confirm_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    latitude: Mapped[Decimal | None] = mapped_column(Numeric(10, 7), nullable=True)
    longitude: Mapped[Decimal | None] = mapped_column(Numeric(10, 7), nullable=True)

    status: Mapped[str] = mapped_column(
        nullable=False,
        default=LISTING_STATUS_ACTIVE,
        server_default=LISTING_STATUS_ACTIVE,
    )
    removed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    is_bargain: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )
    bargain_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    bargain_type: Mapped[str | None] = mapped_column(nullable=True)
    bargain_keyword: Mapped[str | None] = mapped_column(nullable=True)
    bargain_keyword_source: Mapped[str | None] = mapped_column(nullable=True)
    score_factors: Mapped[dict[str, int] | None] = mapped_column(JSON, nullable=True)
    scored_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    first_seen_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    last_seen_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )
