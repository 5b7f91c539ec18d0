from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from src.db.repositories import ListingSnapshot
from src.models.complex import Complex
from src.models.listing import LISTING_STATUS_ACTIVE, LISTING_STATUS_REMOVED, Listing
from src.models.price_history import PriceHistory
from src.services.differ import DiffOutcome, SnapshotDiffer, plan_diff

pytestmark = pytest.mark.anyio

TILE_KEY = "서울/경기/인천:3:7"
RUN_1 = datetime(2026, 10, 17, 3, 0, tzinfo=UTC)


def _snapshot(article_no: str, price: int, **overrides: object) -> ListingSnapshot:
    values: dict[str, object] = {
        "article_no": article_no,
        "complex_key": "1001",
        "complex_name": "래미안",
        "legal_dong_code": "1168010300",
        "trade_type": "sale",
        "price": price,
        "deal_price": price,
        "exclusive_area": Decimal("59.9"),
        "description": "남향 올수리",
        "tile_key": TILE_KEY,
    }
    values.update(overrides)
    return ListingSnapshot(**values)  # type: ignore[arg-type]


async def _merge(
    session_factory,
    snapshots: list[ListingSnapshot],
    *,
    complete: bool = True,
    now: datetime = RUN_1,
) -> DiffOutcome:
    async with session_factory() as session:
        differ = SnapshotDiffer(session, run_id=1)
        outcome = await differ.merge_scope(
            snapshots,
            trade_type="sale",
            scope_complete=complete,
            now=now,
            tile_key=TILE_KEY,
        )
        await session.commit()
    return outcome


async def _listing(session_factory, article_no: str) -> Listing:
    async with session_factory() as session:
        result = await session.execute(
            select(Listing).where(Listing.article_no == article_no)
        )
        return result.scalar_one()


async def _history(session_factory, listing_id: int) -> list[PriceHistory]:
    async with session_factory() as session:
        result = await session.execute(
            select(PriceHistory)
            .where(PriceHistory.listing_id == listing_id)
            .order_by(PriceHistory.id)
        )
        return list(result.scalars().all())


async def test_new_listings_are_inserted_with_complex(session_factory) -> None:
    outcome = await _merge(session_factory, [_snapshot("A", 500_000_000)])

    assert outcome.new == 1
    assert outcome.seen == 1
    assert len(outcome.affected_listing_ids) == 1

    listing = await _listing(session_factory, "A")
    assert listing.status == LISTING_STATUS_ACTIVE
    assert listing.price == 500_000_000
    assert listing.tile_key == TILE_KEY

    async with session_factory() as session:
        complex_row = (await session.execute(select(Complex))).scalar_one()
    assert listing.complex_id == complex_row.id
    assert complex_row.sgg_code == "11680"
    assert complex_row.name == "래미안"


async def test_price_change_records_previous_price_once(session_factory) -> None:
    await _merge(session_factory, [_snapshot("L", 500_000_000)])

    second = await _merge(
        session_factory, [_snapshot("L", 480_000_000)], now=RUN_1 + timedelta(days=1)
    )
    third = await _merge(
        session_factory, [_snapshot("L", 480_000_000)], now=RUN_1 + timedelta(days=2)
    )

    listing = await _listing(session_factory, "L")
    history = await _history(session_factory, listing.id)

    assert second.price_changes == 1
    assert listing.id in second.affected_listing_ids
    assert third.price_changes == 0
    assert listing.price == 480_000_000
    assert [row.price for row in history] == [500_000_000]
    assert history[0].source == "scan_detected"
    assert history[0].run_id == 1


async def test_merging_same_snapshot_set_twice_is_idempotent(session_factory) -> None:
    snapshots = [_snapshot("A", 500_000_000), _snapshot("B", 610_000_000)]

    await _merge(session_factory, snapshots)
    again = await _merge(session_factory, snapshots)

    assert again.new == 0
    assert again.updated == 2
    assert again.price_changes == 0
    assert again.removed == 0
    assert again.affected_listing_ids == set()

    async with session_factory() as session:
        listing_count = await session.scalar(select(func.count(Listing.id)))
        history_count = await session.scalar(select(func.count(PriceHistory.id)))
    assert listing_count == 2
    assert history_count == 0


async def test_incomplete_scope_never_removes(session_factory) -> None:
    await _merge(session_factory, [_snapshot("A", 1), _snapshot("B", 2)])

    partial = await _merge(session_factory, [_snapshot("A", 1)], complete=False)

    assert partial.removed == 0
    assert (await _listing(session_factory, "B")).status == LISTING_STATUS_ACTIVE


async def test_complete_scope_marks_absent_listings_removed(session_factory) -> None:
    await _merge(session_factory, [_snapshot("A", 1), _snapshot("B", 2)])
    removal_time = RUN_1 + timedelta(days=1)

    outcome = await _merge(session_factory, [_snapshot("A", 1)], now=removal_time)

    removed = await _listing(session_factory, "B")
    assert outcome.removed == 1
    assert removed.status == LISTING_STATUS_REMOVED
    assert removed.removed_at is not None
    assert removed.last_seen_at.replace(tzinfo=None) == RUN_1.replace(tzinfo=None)


async def test_removed_listing_that_reappears_stays_removed(session_factory) -> None:
    await _merge(session_factory, [_snapshot("A", 1), _snapshot("B", 2)])
    await _merge(session_factory, [_snapshot("A", 1)])

    outcome = await _merge(session_factory, [_snapshot("A", 1), _snapshot("B", 3)])

    listing = await _listing(session_factory, "B")
    assert outcome.new == 0
    assert outcome.seen == 1
    assert listing.status == LISTING_STATUS_REMOVED
    assert listing.price == 2


async def test_text_change_marks_listing_affected(session_factory) -> None:
    first = await _merge(session_factory, [_snapshot("A", 1)])
    listing_id = next(iter(first.affected_listing_ids))

    outcome = await _merge(
        session_factory, [_snapshot("A", 1, description="급매 사정상 급처분")]
    )

    assert outcome.price_changes == 0
    assert outcome.affected_listing_ids == {listing_id}
    assert (await _listing(session_factory, "A")).description == "급매 사정상 급처분"


async def test_plan_diff_keeps_last_duplicate_and_skips_removal_when_incomplete() -> None:
    known = {
        "A": Listing(
            article_no="A",
            complex_key="1001",
            trade_type="sale",
            price=100,
            deal_price=100,
            status=LISTING_STATUS_ACTIVE,
            description="남향 올수리",
        ),
    }
    scope_active = [
        known["A"],
        Listing(article_no="Z", complex_key="1001", trade_type="sale", price=5, status=LISTING_STATUS_ACTIVE),
    ]
    snapshots = [_snapshot("A", 100), _snapshot("A", 90), _snapshot("N", 70)]

    partial = plan_diff(snapshots, known, scope_active, scope_complete=False)
    full = plan_diff(snapshots, known, scope_active, scope_complete=True)

    assert [snap.article_no for snap in partial.new] == ["N"]
    assert [change.snapshot.price for change in partial.price_changed] == [90]
    assert partial.removed == []
    assert [listing.article_no for listing in full.removed] == ["Z"]
