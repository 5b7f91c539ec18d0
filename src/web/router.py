"""JSON API for bargains, listing detail and crawl runs."""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.session import get_db_session
from src.services.bargain_service import BargainService
from src.taskiq_app.tasks import enqueue_collect_real_trades, enqueue_crawl_bargains

router = APIRouter(prefix="/api", tags=["bargains"])


@router.get("/bargains")
async def list_bargains(
    session: AsyncSession = Depends(get_db_session),
    trade_type: str | None = Query(None, pattern="^(sale|lease|monthly)$"),
    bargain_type: str | None = Query(None, pattern="^(keyword|price|both)$"),
    min_score: int | None = Query(None, ge=0, le=100),
    complex_id: int | None = None,
    limit: int = Query(50, ge=1, le=500),
) -> dict[str, object]:
    """Active bargain listings ordered by score."""

    items = await BargainService(session).list_bargains(
        trade_type=trade_type,
        bargain_type=bargain_type,
        min_score=min_score,
        complex_id=complex_id,
        limit=limit,
    )
    return {"count": len(items), "items": items}


@router.get("/listings/{listing_id}")
async def get_listing(
    listing_id: int, session: AsyncSession = Depends(get_db_session)
) -> dict[str, object]:
    detail = await BargainService(session).get_listing(listing_id)
    if detail is None:
        raise HTTPException(status_code=404, detail="Listing not found")
    return detail


@router.get("/runs")
async def list_runs(
    session: AsyncSession = Depends(get_db_session),
    limit: int = Query(20, ge=1, le=200),
) -> dict[str, object]:
    runs = await BargainService(session).list_runs(limit=limit)
    return {"count": len(runs), "items": runs}


@router.post("/crawl")
async def trigger_crawl(
    mode: str = Query("incremental", pattern="^(full|incremental)$"),
    force: bool = False,
) -> dict[str, object]:
    """Enqueue a bargain crawl (deduplicated unless forced)."""

    fingerprint = "manual"
    if force:
        fingerprint = f"force-{datetime.now(UTC).isoformat()}"
    return await enqueue_crawl_bargains(mode=mode, fingerprint=fingerprint)


@router.post("/real-trades/collect")
async def trigger_real_trades(force: bool = False) -> dict[str, object]:
    fingerprint = "manual"
    if force:
        fingerprint = f"force-{datetime.now(UTC).isoformat()}"
    return await enqueue_collect_real_trades(fingerprint=fingerprint)
