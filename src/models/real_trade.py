"""Real trade price table model."""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    Numeric,
    UniqueConstraint,
    false,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from src.models.base import Base


class RealTrade(Base):
    """Official closed-transaction records from the public data portal."""

    __tablename__ = "real_trades"
    __table_args__ = (
        UniqueConstraint(
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
        Index("idx_real_trades_match", "region_code", "apt_name", "trade_type"),
        Index("idx_real_trades_date", "contract_year", "contract_month"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    trade_type: Mapped[str] = mapped_column(nullable=False)
    region_code: Mapped[str] = mapped_column(nullable=False)
    dong: Mapped[str] = mapped_column(nullable=False, server_default="")
    apt_name: Mapped[str] = mapped_column(nullable=False, server_default="")
    price: Mapped[int] = mapped_column(BigInteger, nullable=False)
    monthly_rent: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=0, server_default="0"
    )
    area_m2: Mapped[Decimal | None] = mapped_column(Numeric(8, 2), nullable=True)
    floor: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    contract_year: Mapped[int] = mapped_column(Integer, nullable=False)
    contract_month: Mapped[int] = mapped_column(Integer, nullable=False)
    contract_day: Mapped[int] = mapped_column(Integer, nullable=False)
    is_canceled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
