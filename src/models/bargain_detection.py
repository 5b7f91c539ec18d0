"""Bargain detection log table model."""

from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    UniqueConstraint,
    false,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from src.models.base import Base


class BargainDetection(Base):
    """First time a listing was classified as a keyword or price bargain."""

    __tablename__ = "bargain_detections"
    __table_args__ = (
        UniqueConstraint(
            "listing_id", "detection_type", name="uq_bargain_detections_listing_type"
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    listing_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("listings.id"), nullable=False
    )
    complex_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    detection_type: Mapped[str] = mapped_column(nullable=False)
    keyword: Mapped[str | None] = mapped_column(nullable=True)
    keyword_source: Mapped[str | None] = mapped_column(nullable=True)
    price: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    bargain_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    run_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    notified: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )
    detected_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
