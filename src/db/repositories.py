"""Repository helpers for listing, history, real trade and run persistence."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import UTC, date, datetime
from decimal import Decimal

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.bargain_detection import BargainDetection
from src.models.complex import Complex
from src.models.crawl_run import CrawlRun, RUN_STATUS_FAILED, RUN_STATUS_RUNNING
from src.models.listing import LISTING_STATUS_ACTIVE, LISTING_STATUS_REMOVED, Listing
from src.models.price_history import PriceHistory
from src.models.real_trade import RealTrade


@dataclass(slots=True)
class ListingSnapshot:
    """One listing as observed by a crawl, before it is merged into state."""

    article_no: str
    complex_key: str
    trade_type: str
    price: int
    deal_price: int | None = None
    warranty_price: int | None = None
    rent_price: int | None = None
    price_text: str | None = None
    complex_name: str = ""
    property_type: str = "APT"
    legal_dong_code: str | None = None
    supply_area: Decimal | None = None
    exclusive_area: Decimal | None = None
    floor_current: int | None = None
    floor_total: int | None = None
    direction: str | None = None
    description: str | None = None
    tags: list[str] = field(default_factory=list)
    building_name: str | None = None
    realtor_name: str | None = None
    image_url: str | None = None
    confirm_date: date | None = None
    latitude: Decimal | None = None
    longitude: Decimal | None = None
    tile_key: str | None = None

    @property
    def price_fields(self) -> tuple[int | None, int | None, int | None]:
        return (self.deal_price, self.warranty_price, self.rent_price)


@dataclass(slots=True)
class PriceHistoryEntry:
    """Superseded price recorded when a crawl detects a change."""

    listing_id: int
    price: int
    deal_price: int | None
    warranty_price: int | None
    rent_price: int | None
    price_text: str | None
    recorded_at: datetime
    run_id: int | None = None
    source: str = "scan_detected"


@dataclass(slots=True)
class ScoreUpdate:
    """Score fields written back onto a listing."""

    listing_id: int
    bargain_score: int
    is_bargain: bool
    bargain_type: str | None
    bargain_keyword: str | None
    bargain_keyword_source: str | None
    score_factors: dict[str, int]


@dataclass(slots=True)
class BargainDetectionInsert:
    """Payload used to log a newly detected bargain."""

    listing_id: int
    complex_id: int | None
    detection_type: str
    keyword: str | None
    keyword_source: str | None
    price: int | None
    bargain_score: int | None
    run_id: int | None = None


@dataclass(slots=True)
class RealTradeUpsert:
    """Payload used to insert official real trade records."""

    trade_type: str
    region_code: str
    dong: str
    apt_name: str
    price: int
    monthly_rent: int
    area_m2: Decimal | None
    floor: int
    contract_year: int
    contract_month: int
    contract_day: int
    is_canceled: bool = False


@dataclass(slots=True)
class ComplexRef:
    """Complex identity fields needed to match real trades."""

    id: int
    name: str
    sgg_code: str | None


def shift_month(year: int, month: int, offset: int = 0) -> tuple[int, int]:
    """Shift year/month back by ``offset`` months."""
    year_offset, month = divmod(month - 1 - offset, 12)
    year += year_offset
    month += 1
    return year, month


def start_year_month(months: int, *, today: date | None = None) -> int:
    """Return the YYYYMM of the first month inside a trailing window."""

    current = today or datetime.now(UTC).date()
    year, month = shift_month(current.year, current.month, max(0, months - 1))
    return (year * 100) + month


async def upsert_complexes(
    session: AsyncSession, snapshots: list[ListingSnapshot]
) -> dict[str, int]:
    """Insert unseen complexes and return a complex_key -> id map."""

    by_key: dict[str, ListingSnapshot] = {}
    for snapshot in snapshots:
        by_key.setdefault(snapshot.complex_key, snapshot)
    if not by_key:
        return {}

    result = await session.execute(
        select(Complex).where(Complex.complex_key.in_(list(by_key)))
    )
    existing = {row.complex_key: row for row in result.scalars().all()}

    for key, snapshot in by_key.items():
        row = existing.get(key)
        if row is None:
            row = Complex(
                complex_key=key,
                name=snapshot.complex_name,
                property_type=snapshot.property_type,
                legal_dong_code=snapshot.legal_dong_code,
                sgg_code=(snapshot.legal_dong_code or "")[:5] or None,
                latitude=snapshot.latitude,
                longitude=snapshot.longitude,
            )
            session.add(row)
            existing[key] = row
        elif snapshot.complex_name and not row.name:
            row.name = snapshot.complex_name

    await session.flush()
    return {key: row.id for key, row in existing.items()}


async def fetch_listings_by_article_nos(
    session: AsyncSession, article_nos: list[str]
) -> dict[str, Listing]:
    """Return persisted listings (any status) keyed by article number."""

    if not article_nos:
        return {}
    result = await session.execute(
        select(Listing).where(Listing.article_no.in_(article_nos))
    )
    return {row.article_no: row for row in result.scalars().all()}


async def fetch_active_listings_in_scope(
    session: AsyncSession,
    *,
    trade_type: str,
    tile_key: str | None = None,
    complex_key: str | None = None,
) -> list[Listing]:
    """Return active listings of one tile or one complex for a trade type."""

    if tile_key is None and complex_key is None:
        raise ValueError("tile_key or complex_key is required")

    stmt = (
        select(Listing)
        .where(Listing.trade_type == trade_type)
        .where(Listing.status == LISTING_STATUS_ACTIVE)
    )
    if tile_key is not None:
        stmt = stmt.where(Listing.tile_key == tile_key)
    if complex_key is not None:
        stmt = stmt.where(Listing.complex_key == complex_key)

    result = await session.execute(stmt)
    return list(result.scalars().all())


def insert_listing(
    session: AsyncSession,
    snapshot: ListingSnapshot,
    *,
    complex_id: int | None,
    seen_at: datetime,
) -> Listing:
    """Stage a new active listing built from a snapshot."""

    values = asdict(snapshot)
    values.pop("complex_name")
    values.pop("legal_dong_code")
    values["tags"] = snapshot.tags or None
    listing = Listing(
        **values,
        complex_id=complex_id,
        status=LISTING_STATUS_ACTIVE,
        is_bargain=False,
        first_seen_at=seen_at,
        last_seen_at=seen_at,
    )
    session.add(listing)
    return listing


def refresh_listing(listing: Listing, snapshot: ListingSnapshot, *, seen_at: datetime) -> None:
    """Copy mutable descriptive fields and the current price onto a listing."""

    listing.price = snapshot.price
    listing.deal_price = snapshot.deal_price
    listing.warranty_price = snapshot.warranty_price
    listing.rent_price = snapshot.rent_price
    listing.price_text = snapshot.price_text
    listing.description = snapshot.description
    listing.tags = snapshot.tags or None
    listing.floor_current = snapshot.floor_current
    listing.floor_total = snapshot.floor_total
    listing.direction = snapshot.direction
    listing.realtor_name = snapshot.realtor_name
    listing.image_url = snapshot.image_url
    listing.confirm_date = snapshot.confirm_date
    if snapshot.tile_key is not None:
        listing.tile_key = snapshot.tile_key
    listing.last_seen_at = seen_at


def append_price_history(session: AsyncSession, entry: PriceHistoryEntry) -> PriceHistory:
    """Stage an append-only price history row."""

    row = PriceHistory(**asdict(entry))
    session.add(row)
    return row


def mark_listings_removed(listings: list[Listing], *, removed_at: datetime) -> int:
    """Flip active listings to removed; last_seen_at is left untouched."""

    removed = 0
    for listing in listings:
        if listing.status != LISTING_STATUS_ACTIVE:
            continue
        listing.status = LISTING_STATUS_REMOVED
        listing.removed_at = removed_at
        removed += 1
    return removed


async def mark_complexes_collected(
    session: AsyncSession, complex_ids: list[int], *, collected_at: datetime
) -> None:
    """Stamp complexes whose scope was fully crawled and refresh deal counts."""

    if not complex_ids:
        return
    counts_result = await session.execute(
        select(Listing.complex_id, func.count(Listing.id))
        .where(Listing.complex_id.in_(complex_ids))
        .where(Listing.status == LISTING_STATUS_ACTIVE)
        .where(Listing.trade_type == "sale")
        .group_by(Listing.complex_id)
    )
    counts = {complex_id: count for complex_id, count in counts_result.all()}
    for complex_id in complex_ids:
        await session.execute(
            update(Complex)
            .where(Complex.id == complex_id)
            .values(
                last_collected_at=collected_at,
                deal_count=int(counts.get(complex_id, 0)),
            )
        )


async def fetch_price_history(
    session: AsyncSession, listing_ids: list[int]
) -> dict[int, list[PriceHistory]]:
    """Return price history rows per listing, oldest first."""

    grouped: dict[int, list[PriceHistory]] = defaultdict(list)
    if not listing_ids:
        return grouped
    result = await session.execute(
        select(PriceHistory)
        .where(PriceHistory.listing_id.in_(listing_ids))
        .order_by(PriceHistory.listing_id, PriceHistory.recorded_at, PriceHistory.id)
    )
    for row in result.scalars().all():
        grouped[row.listing_id].append(row)
    return grouped


async def fetch_active_listings(
    session: AsyncSession, listing_ids: list[int] | None = None
) -> list[Listing]:
    """Return active listings, optionally restricted to ``listing_ids``."""

    stmt = select(Listing).where(Listing.status == LISTING_STATUS_ACTIVE)
    if listing_ids is not None:
        if not listing_ids:
            return []
        stmt = stmt.where(Listing.id.in_(listing_ids))
    result = await session.execute(stmt.order_by(Listing.id))
    return list(result.scalars().all())


async def fetch_peer_listings(
    session: AsyncSession, complex_ids: list[int]
) -> list[Listing]:
    """Return all active listings of the given complexes."""

    if not complex_ids:
        return []
    result = await session.execute(
        select(Listing)
        .where(Listing.complex_id.in_(complex_ids))
        .where(Listing.status == LISTING_STATUS_ACTIVE)
    )
    return list(result.scalars().all())


async def fetch_complex_refs(
    session: AsyncSession, complex_ids: list[int]
) -> dict[int, ComplexRef]:
    if not complex_ids:
        return {}
    result = await session.execute(
        select(Complex.id, Complex.name, Complex.sgg_code).where(
            Complex.id.in_(complex_ids)
        )
    )
    return {
        row.id: ComplexRef(id=row.id, name=row.name, sgg_code=row.sgg_code)
        for row in result.all()
    }


async def fetch_real_trades_for_complexes(
    session: AsyncSession,
    complexes: list[ComplexRef],
    *,
    since_year_month: int,
) -> dict[tuple[str, str], list[RealTrade]]:
    """Return non-canceled trades keyed by (region_code, apt_name), newest first."""

    keys = {
        (ref.sgg_code, ref.name) for ref in complexes if ref.sgg_code and ref.name
    }
    grouped: dict[tuple[str, str], list[RealTrade]] = defaultdict(list)
    if not keys:
        return grouped

    ym_expr = (RealTrade.contract_year * 100) + RealTrade.contract_month
    result = await session.execute(
        select(RealTrade)
        .where(RealTrade.region_code.in_({code for code, _ in keys}))
        .where(RealTrade.apt_name.in_({name for _, name in keys}))
        .where(RealTrade.is_canceled.is_(False))
        .where(ym_expr >= since_year_month)
        .order_by(
            RealTrade.contract_year.desc(),
            RealTrade.contract_month.desc(),
            RealTrade.contract_day.desc(),
            RealTrade.id.desc(),
        )
    )
    for row in result.scalars().all():
        key = (row.region_code, row.apt_name)
        if key in keys:
            grouped[key].append(row)
    return grouped


async def write_scores(
    session: AsyncSession, updates: list[ScoreUpdate], *, scored_at: datetime
) -> int:
    """Write score fields back onto listings."""

    for row in updates:
        values = asdict(row)
        listing_id = values.pop("listing_id")
        await session.execute(
            update(Listing)
            .where(Listing.id == listing_id)
            .values(**values, scored_at=scored_at)
            .execution_options(synchronize_session=False)
        )
    return len(updates)


async def insert_bargain_detections(
    session: AsyncSession, rows: list[BargainDetectionInsert]
) -> list[BargainDetectionInsert]:
    """Log detections once per (listing, detection type); return inserted rows."""

    if not rows:
        return []

    result = await session.execute(
        select(BargainDetection.listing_id, BargainDetection.detection_type).where(
            BargainDetection.listing_id.in_({row.listing_id for row in rows})
        )
    )
    existing = {(listing_id, kind) for listing_id, kind in result.all()}

    inserted: list[BargainDetectionInsert] = []
    for row in rows:
        key = (row.listing_id, row.detection_type)
        if key in existing:
            continue
        existing.add(key)
        session.add(BargainDetection(**asdict(row)))
        inserted.append(row)
    return inserted


async def upsert_real_trades(session: AsyncSession, rows: list[RealTradeUpsert]) -> int:
    """Insert official real trade rows and ignore duplicates."""

    if not rows:
        return 0

    values = [asdict(row) for row in rows]
    dialect_name = session.get_bind().dialect.name

    if dialect_name == "postgresql":
        stmt = pg_insert(RealTrade).values(values)
        stmt = stmt.on_conflict_do_nothing(
            constraint="uq_real_trades_identity"
        ).returning(RealTrade.id)
        result = await session.execute(stmt)
        inserted_ids = result.scalars().all()
        await session.commit()
        return len(inserted_ids)

    inserted = 0
    for row in rows:
        exists_stmt = (
            select(RealTrade.id)
            .where(RealTrade.trade_type == row.trade_type)
            .where(RealTrade.region_code == row.region_code)
            .where(RealTrade.dong == row.dong)
            .where(RealTrade.apt_name == row.apt_name)
            .where(RealTrade.area_m2 == row.area_m2)
            .where(RealTrade.floor == row.floor)
            .where(RealTrade.contract_year == row.contract_year)
            .where(RealTrade.contract_month == row.contract_month)
            .where(RealTrade.contract_day == row.contract_day)
            .where(RealTrade.price == row.price)
            .where(RealTrade.monthly_rent == row.monthly_rent)
        )
        if (await session.execute(exists_stmt)).scalar_one_or_none() is not None:
            continue
        session.add(RealTrade(**asdict(row)))
        inserted += 1

    await session.commit()
    return inserted


async def create_run(
    session: AsyncSession,
    *,
    mode: str,
    region: str,
    options: dict[str, object],
    last_tile_index: int | None = None,
) -> CrawlRun:
    run = CrawlRun(
        mode=mode,
        region=region,
        status=RUN_STATUS_RUNNING,
        options=options,
        last_tile_index=last_tile_index,
    )
    session.add(run)
    await session.commit()
    return run


async def update_run(session: AsyncSession, run_id: int, **values: object) -> None:
    await session.execute(
        update(CrawlRun).where(CrawlRun.id == run_id).values(**values)
    )
    await session.commit()


async def fetch_resume_run(
    session: AsyncSession, *, mode: str, region: str
) -> CrawlRun | None:
    """Return the latest interrupted or failed run of this mode/region with a cursor."""

    result = await session.execute(
        select(CrawlRun)
        .where(CrawlRun.mode == mode)
        .where(CrawlRun.region == region)
        .order_by(CrawlRun.id.desc())
        .limit(1)
    )
    latest = result.scalar_one_or_none()
    if latest is None or latest.status not in (RUN_STATUS_RUNNING, RUN_STATUS_FAILED):
        return None
    if latest.last_tile_index is None:
        return None
    return latest


async def fetch_runs(session: AsyncSession, *, limit: int = 20) -> list[CrawlRun]:
    result = await session.execute(
        select(CrawlRun).order_by(CrawlRun.id.desc()).limit(limit)
    )
    return list(result.scalars().all())


async def fetch_bargains(
    session: AsyncSession,
    *,
    trade_type: str | None = None,
    bargain_type: str | None = None,
    min_score: int | None = None,
    complex_id: int | None = None,
    limit: int = 50,
) -> list[tuple[Listing, Complex | None]]:
    """Fetch active bargain listings ordered by score."""

    stmt = (
        select(Listing, Complex)
        .outerjoin(Complex, Listing.complex_id == Complex.id)
        .where(Listing.status == LISTING_STATUS_ACTIVE)
        .where(Listing.is_bargain.is_(True))
        .order_by(Listing.bargain_score.desc(), Listing.id.desc())
        .limit(limit)
    )
    if trade_type:
        stmt = stmt.where(Listing.trade_type == trade_type)
    if bargain_type:
        stmt = stmt.where(Listing.bargain_type == bargain_type)
    if min_score is not None:
        stmt = stmt.where(Listing.bargain_score >= min_score)
    if complex_id is not None:
        stmt = stmt.where(Listing.complex_id == complex_id)

    result = await session.execute(stmt)
    return [(listing, complex_row) for listing, complex_row in result.all()]


async def fetch_listing(session: AsyncSession, listing_id: int) -> Listing | None:
    result = await session.execute(select(Listing).where(Listing.id == listing_id))
    return result.scalar_one_or_none()


async def fetch_unnotified_detections(
    session: AsyncSession, *, run_id: int | None = None, limit: int = 50
) -> list[tuple[BargainDetection, Listing]]:
    stmt = (
        select(BargainDetection, Listing)
        .join(Listing, BargainDetection.listing_id == Listing.id)
        .where(BargainDetection.notified.is_(False))
        .order_by(BargainDetection.bargain_score.desc(), BargainDetection.id)
        .limit(limit)
    )
    if run_id is not None:
        stmt = stmt.where(BargainDetection.run_id == run_id)
    result = await session.execute(stmt)
    return [(detection, listing) for detection, listing in result.all()]


async def mark_detections_notified(session: AsyncSession, ids: list[int]) -> None:
    if not ids:
        return
    await session.execute(
        update(BargainDetection)
        .where(BargainDetection.id.in_(ids))
        .values(notified=True)
    )
    await session.commit()
