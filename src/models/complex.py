"""Apartment complex table model."""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, Index, Integer, Numeric, func
from sqlalchemy.orm import Mapped, mapped_column

from src.models.base import Base


class Complex(Base):
    """Complex (단지) grouping listings for peer comparison."""

    __tablename__ = "complexes"
    __table_args__ = (Index("idx_complexes_sgg", "sgg_code", "name"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    complex_key: Mapped[str] = mapped_column(nullable=False, unique=True)
    name: Mapped[str] = mapped_column(nullable=False, server_default="")
    property_type: Mapped[str] = mapped_column(nullable=False, server_default="APT")
    legal_dong_code: Mapped[str | None] = mapped_column(nullable=True)
    sgg_code: Mapped[str | None] = mapped_column(nullable=True)
    latitude: Mapped[Decimal | None] = mapped_column(Numeric(10, 7), nullable=True)
    longitude: Mapped[Decimal | None] = mapped_column(Numeric(10, 7), nullable=True)
    deal_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    last_collected_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
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
