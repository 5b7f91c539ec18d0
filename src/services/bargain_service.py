"""Read-side queries over bargains, listings and run history."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from src.db.repositories import (
    fetch_bargains,
    fetch_listing,
    fetch_price_history,
    fetch_runs,
)
from src.models.complex import Complex
from src.models.crawl_run import RUN_COUNTER_FIELDS, CrawlRun
from src.models.listing import Listing


def _iso(value: datetime | date | None) -> str | None:
    return value.isoformat() if value is not None else None


def _float(value: Decimal | None) -> float | None:
    return float(value) if value is not None else None


def serialize_listing(listing: Listing, complex_row: Complex | None = None) -> dict[str, object]:
    return {
        "id": listing.id,
        "article_no": listing.article_no,
        "complex_key": listing.complex_key,
        "complex_name": complex_row.name if complex_row is not None else listing.building_name,
        "trade_type": listing.trade_type,
        "property_type": listing.property_type,
        "price": listing.price,
        "deal_price": listing.deal_price,
        "warranty_price": listing.warranty_price,
        "rent_price": listing.rent_price,
        "price_text": listing.price_text,
        "exclusive_area": _float(listing.exclusive_area),
        "supply_area": _float(listing.supply_area),
        "floor_current": listing.floor_current,
        "floor_total": listing.floor_total,
        "direction": listing.direction,
        "description": listing.description,
        "tags": list(listing.tags or []),
        "status": listing.status,
        "is_bargain": listing.is_bargain,
        "bargain_score": listing.bargain_score,
        "bargain_type": listing.bargain_type,
        "bargain_keyword": listing.bargain_keyword,
        "bargain_keyword_source": listing.bargain_keyword_source,
        "score_factors": dict(listing.score_factors or {}),
        "confirm_date": _iso(listing.confirm_date),
        "first_seen_at": _iso(listing.first_seen_at),
        "last_seen_at": _iso(listing.last_seen_at),
        "scored_at": _iso(listing.scored_at),
    }


def serialize_run(run: CrawlRun) -> dict[str, object]:
    return {
        "id": run.id,
        "mode": run.mode,
        "region": run.region,
        "status": run.status,
        "started_at": _iso(run.started_at),
        "finished_at": _iso(run.finished_at),
        "last_tile_index": run.last_tile_index,
        **{name: getattr(run, name) for name in RUN_COUNTER_FIELDS},
        "errors": list(run.errors or [])[:10],
    }


class BargainService:
    """Service layer for the bargain query API."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def list_bargains(
        self,
        *,
        trade_type: str | None = None,
        bargain_type: str | None = None,
        min_score: int | None = None,
        complex_id: int | None = None,
        limit: int = 50,
    ) -> list[dict[str, object]]:
        rows = await fetch_bargains(
            self._session,
            trade_type=trade_type,
            bargain_type=bargain_type,
            min_score=min_score,
            complex_id=complex_id,
            limit=limit,
        )
        return [serialize_listing(listing, complex_row) for listing, complex_row in rows]

    async def get_listing(self, listing_id: int) -> dict[str, object] | None:
        """Listing detail with its price history (oldest first) and score factors."""

        listing = await fetch_listing(self._session, listing_id)
        if listing is None:
            return None

        history = await fetch_price_history(self._session, [listing.id])
        detail = serialize_listing(listing)
        detail["price_history"] = [
            {
                "price": entry.price,
                "price_text": entry.price_text,
                "source": entry.source,
                "recorded_at": _iso(entry.recorded_at),
            }
            for entry in history.get(listing.id, [])
        ]
        detail["removed_at"] = _iso(listing.removed_at)
        return detail

    async def list_runs(self, *, limit: int = 20) -> list[dict[str, object]]:
        return [serialize_run(run) for run in await fetch_runs(self._session, limit=limit)]
