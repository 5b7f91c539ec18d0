"""Crawl/score run ledger table model."""

from datetime import datetime

from sqlalchemy import JSON, DateTime, Integer, func
from sqlalchemy.orm import Mapped, mapped_column

from src.models.base import Base

RUN_STATUS_RUNNING = "running"
RUN_STATUS_SUCCESS = "success"
RUN_STATUS_PARTIAL = "partial"
RUN_STATUS_FAILED = "failed"

RUN_COUNTER_FIELDS = (
    "tiles_total",
    "tiles_completed",
    "tiles_failed",
    "requests_made",
    "blocks_encountered",
    "listings_seen",
    "listings_new",
    "listings_updated",
    "price_changes",
    "listings_removed",
    "listings_scored",
    "bargains_found",
    "error_count",
)


def _counter() -> Mapped[int]:
    return mapped_column(Integer, nullable=False, default=0, server_default="0")


class CrawlRun(Base):
    """One execution of the crawl-and-score batch job."""

    __tablename__ = "crawl_runs"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    mode: Mapped[str] = mapped_column(nullable=False)
    region: Mapped[str] = mapped_column(nullable=False, server_default="all")
    status: Mapped[str] = mapped_column(
        nullable=False, default=RUN_STATUS_RUNNING, server_default=RUN_STATUS_RUNNING
    )
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    finished_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    tiles_total: Mapped[int] = _counter()
    tiles_completed: Mapped[int] = _counter()
    tiles_failed: Mapped[int] = _counter()
    requests_made: Mapped[int] = _counter()
    blocks_encountered: Mapped[int] = _counter()
    listings_seen: Mapped[int] = _counter()
    listings_new: Mapped[int] = _counter()
    listings_updated: Mapped[int] = _counter()
    price_changes: Mapped[int] = _counter()
    listings_removed: Mapped[int] = _counter()
    listings_scored: Mapped[int] = _counter()
    bargains_found: Mapped[int] = _counter()
    error_count: Mapped[int] = _counter()

    last_tile_index: Mapped[int | None] = mapped_column(Integer, nullable=True)
    errors: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    options: Mapped[dict[str, object] | None] = mapped_column(JSON, nullable=True)
