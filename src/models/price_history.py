"""Price history table model."""

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, ForeignKey, Index, Integer, func
from sqlalchemy.orm import Mapped, mapped_column

from src.models.base import Base


class PriceHistory(Base):
    """Superseded listing prices, appended whenever a crawl sees a new price."""

    __tablename__ = "price_history"
    __table_args__ = (
        Index("idx_price_history_listing", "listing_id", "recorded_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    listing_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("listings.id"), nullable=False
    )
    price: Mapped[int] = mapped_column(BigInteger, nullable=False)
    deal_price: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    warranty_price: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    rent_price: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    price_text: Mapped[str | None] = mapped_column(nullable=True)
    source: Mapped[str] = mapped_column(nullable=False, server_default="scan_detected")
    run_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
