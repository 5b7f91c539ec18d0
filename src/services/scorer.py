"""Bargain scoring: peer, real-trade, drop-count and drop-magnitude factors."""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Final

from sqlalchemy.ext.asyncio import AsyncSession

from src.config import Settings, get_settings
from src.crawlers.naver import effective_price
from src.db.repositories import (
    BargainDetectionInsert,
    ScoreUpdate,
    fetch_active_listings,
    fetch_complex_refs,
    fetch_peer_listings,
    fetch_price_history,
    fetch_real_trades_for_complexes,
    insert_bargain_detections,
    start_year_month,
    write_scores,
)
from src.models.listing import Listing
from src.models.real_trade import RealTrade

logger = logging.getLogger(__name__)

HUNDRED: Final = Decimal(100)
DISTRIBUTION_BUCKETS: Final = (
    ("0-19", 0, 19),
    ("20-39", 20, 39),
    ("40-49", 40, 49),
    ("50-69", 50, 69),
    ("70-89", 70, 89),
    ("90-100", 90, 100),
)


@dataclass(frozen=True, slots=True)
class WeightTable:
    """Linear factor mappings: ``cap`` points are reached at ``pct_at_cap``."""

    name: str
    peer_cap: int
    peer_pct_at_cap: Decimal
    tx_cap: int
    tx_pct_at_cap: Decimal
    points_per_drop: int
    max_drops: int
    magnitude_cap: int
    magnitude_pct_at_cap: Decimal
    threshold: int


WEIGHT_TABLES: Final = {
    "price_score": WeightTable(
        name="price_score",
        peer_cap=40,
        peer_pct_at_cap=Decimal(20),
        tx_cap=40,
        tx_pct_at_cap=Decimal(20),
        points_per_drop=2,
        max_drops=5,
        magnitude_cap=10,
        magnitude_pct_at_cap=Decimal(20),
        threshold=40,
    ),
    "legacy": WeightTable(
        name="legacy",
        peer_cap=40,
        peer_pct_at_cap=Decimal(20),
        tx_cap=35,
        tx_pct_at_cap=Decimal(15),
        points_per_drop=4,
        max_drops=5,
        magnitude_cap=5,
        magnitude_pct_at_cap=Decimal(25),
        threshold=50,
    ),
}


def resolve_weight_table(settings: Settings | None = None) -> WeightTable:
    settings = settings or get_settings()
    table = WEIGHT_TABLES[settings.score_weight_variant]
    if settings.score_threshold is None:
        return table
    return replace(table, threshold=settings.score_threshold)


@dataclass(frozen=True, slots=True)
class KeywordMatch:
    keyword: str
    source: str


def detect_keyword(
    description: str | None, tags: Sequence[str] | None, keywords: Sequence[str]
) -> KeywordMatch | None:
    """First configured keyword found in the description, then in tags."""

    if description:
        for keyword in keywords:
            if keyword in description:
                return KeywordMatch(keyword=keyword, source="description")
    for tag in tags or ():
        for keyword in keywords:
            if keyword in tag:
                return KeywordMatch(keyword=keyword, source="tag")
    return None


def area_bucket(area: Decimal | float | None, bucket_size: Decimal) -> int | None:
    if area is None:
        return None
    value = Decimal(str(area)) / bucket_size
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def _round_points(value: Decimal) -> int:
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def linear_points(pct: Decimal, *, cap: int, pct_at_cap: Decimal) -> int:
    """Map a percentage onto [0, cap] points."""

    if pct <= 0:
        return 0
    return min(cap, _round_points(pct * cap / pct_at_cap))


def discount_pct(price: int, reference: Decimal | None) -> Decimal:
    if reference is None or reference <= 0:
        return Decimal(0)
    return (reference - Decimal(price)) / reference * HUNDRED


def count_drops(history_prices: Sequence[int], current_price: int) -> int:
    """Number of strict decreases along history followed by the current price."""

    series = [*history_prices, current_price]
    return sum(1 for before, after in zip(series, series[1:]) if after < before)


def _mean(values: Sequence[int]) -> Decimal | None:
    if not values:
        return None
    return Decimal(sum(values)) / Decimal(len(values))


@dataclass(slots=True)
class ScoreInput:
    listing_id: int
    price: int
    description: str | None = None
    tags: Sequence[str] = ()
    history_prices: Sequence[int] = ()
    peer_prices: Sequence[int] = ()
    tx_prices: Sequence[int] = ()


@dataclass(slots=True)
class ScoreResult:
    listing_id: int
    score: int
    factors: dict[str, int]
    bargain_type: str | None
    keyword: KeywordMatch | None
    peer_mean: Decimal | None = None
    tx_mean: Decimal | None = None

    @property
    def is_bargain(self) -> bool:
        return self.bargain_type is not None


def score_listing(
    data: ScoreInput,
    table: WeightTable,
    keywords: Sequence[str],
    *,
    min_peer_count: int = 1,
) -> ScoreResult:
    """Score one listing. Missing peers or trades contribute zero points."""

    peer_mean = None
    if len(data.peer_prices) >= min_peer_count:
        peer_mean = _mean(data.peer_prices)
    tx_mean = _mean(data.tx_prices)

    peer_points = linear_points(
        discount_pct(data.price, peer_mean),
        cap=table.peer_cap,
        pct_at_cap=table.peer_pct_at_cap,
    )
    tx_points = linear_points(
        discount_pct(data.price, tx_mean),
        cap=table.tx_cap,
        pct_at_cap=table.tx_pct_at_cap,
    )
    drops = min(count_drops(data.history_prices, data.price), table.max_drops)
    drop_points = drops * table.points_per_drop

    initial_price = data.history_prices[0] if data.history_prices else data.price
    magnitude_points = linear_points(
        discount_pct(data.price, Decimal(initial_price)),
        cap=table.magnitude_cap,
        pct_at_cap=table.magnitude_pct_at_cap,
    )

    factors = {
        "peer": peer_points,
        "tx": tx_points,
        "drops": drop_points,
        "magnitude": magnitude_points,
    }
    total = max(0, min(100, sum(factors.values())))

    keyword = detect_keyword(data.description, data.tags, keywords)
    price_hit = total >= table.threshold
    if price_hit and keyword:
        bargain_type = "both"
    elif price_hit:
        bargain_type = "price"
    elif keyword:
        bargain_type = "keyword"
    else:
        bargain_type = None

    return ScoreResult(
        listing_id=data.listing_id,
        score=total,
        factors=factors,
        bargain_type=bargain_type,
        keyword=keyword,
        peer_mean=peer_mean,
        tx_mean=tx_mean,
    )


def score_distribution(scores: Sequence[int]) -> dict[str, int]:
    distribution = {label: 0 for label, _, _ in DISTRIBUTION_BUCKETS}
    for score in scores:
        for label, low, high in DISTRIBUTION_BUCKETS:
            if low <= score <= high:
                distribution[label] += 1
                break
    return distribution


@dataclass(slots=True)
class ScoreSummary:
    scored: int = 0
    bargains: int = 0
    by_type: dict[str, int] = field(default_factory=dict)
    distribution: dict[str, int] = field(default_factory=dict)
    new_detections: int = 0
    dry_run: bool = False

    def as_dict(self) -> dict[str, object]:
        return {
            "scored": self.scored,
            "bargains": self.bargains,
            "by_type": self.by_type,
            "distribution": self.distribution,
            "new_detections": self.new_detections,
            "dry_run": self.dry_run,
        }


def _detection_types(bargain_type: str | None) -> list[str]:
    if bargain_type == "both":
        return ["keyword", "price"]
    if bargain_type in ("keyword", "price"):
        return [bargain_type]
    return []


class BargainScorer:
    """Load scoring context from the store and write scores back."""

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings | None = None,
        *,
        run_id: int | None = None,
    ) -> None:
        self._session = session
        self._settings = settings or get_settings()
        self._run_id = run_id
        self._table = resolve_weight_table(self._settings)
        self._bucket_size = Decimal(str(self._settings.score_area_bucket_m2))

    def _trade_price(self, trade: RealTrade) -> int | None:
        return effective_price(
            trade.trade_type,
            trade.price if trade.trade_type == "sale" else None,
            trade.price if trade.trade_type != "sale" else None,
            trade.monthly_rent,
            conversion_months=self._settings.monthly_rent_conversion_months,
        )

    async def build_inputs(self, listings: list[Listing]) -> list[ScoreInput]:
        complex_ids = sorted({row.complex_id for row in listings if row.complex_id})
        peers = await fetch_peer_listings(self._session, complex_ids)
        refs = await fetch_complex_refs(self._session, complex_ids)
        trades = await fetch_real_trades_for_complexes(
            self._session,
            list(refs.values()),
            since_year_month=start_year_month(self._settings.score_tx_window_months),
        )
        history = await fetch_price_history(self._session, [row.id for row in listings])

        peer_groups: dict[tuple[int, str, int | None], list[Listing]] = defaultdict(list)
        for peer in peers:
            bucket = area_bucket(peer.exclusive_area, self._bucket_size)
            peer_groups[(peer.complex_id, peer.trade_type, bucket)].append(peer)

        inputs: list[ScoreInput] = []
        for listing in listings:
            bucket = area_bucket(listing.exclusive_area, self._bucket_size)
            peer_prices: list[int] = []
            tx_prices: list[int] = []
            if listing.complex_id is not None and bucket is not None:
                peer_prices = [
                    peer.price
                    for peer in peer_groups[(listing.complex_id, listing.trade_type, bucket)]
                    if peer.id != listing.id
                ]
                ref = refs.get(listing.complex_id)
                if ref is not None and ref.sgg_code:
                    matching = [
                        trade
                        for trade in trades.get((ref.sgg_code, ref.name), [])
                        if trade.trade_type == listing.trade_type
                        and area_bucket(trade.area_m2, self._bucket_size) == bucket
                    ]
                    for trade in matching[: self._settings.score_tx_recent_count]:
                        price = self._trade_price(trade)
                        if price:
                            tx_prices.append(price)

            inputs.append(
                ScoreInput(
                    listing_id=listing.id,
                    price=listing.price,
                    description=listing.description,
                    tags=listing.tags or [],
                    history_prices=[row.price for row in history.get(listing.id, [])],
                    peer_prices=peer_prices,
                    tx_prices=tx_prices,
                )
            )
        return inputs

    async def score(
        self, listing_ids: list[int] | None = None, *, dry_run: bool = False
    ) -> ScoreSummary:
        """Score the given active listings (all active listings when None)."""

        listings = await fetch_active_listings(self._session, listing_ids)
        summary = ScoreSummary(dry_run=dry_run)
        if not listings:
            summary.distribution = score_distribution([])
            return summary

        by_id = {row.id: row for row in listings}
        results = [
            score_listing(
                data,
                self._table,
                self._settings.bargain_keywords,
                min_peer_count=self._settings.score_min_peer_count,
            )
            for data in await self.build_inputs(listings)
        ]

        summary.scored = len(results)
        summary.distribution = score_distribution([r.score for r in results])
        for result in results:
            if result.bargain_type:
                summary.bargains += 1
                summary.by_type[result.bargain_type] = (
                    summary.by_type.get(result.bargain_type, 0) + 1
                )

        if dry_run:
            return summary

        updates: list[ScoreUpdate] = []
        detections: list[BargainDetectionInsert] = []
        for result in results:
            listing = by_id[result.listing_id]
            updates.append(
                ScoreUpdate(
                    listing_id=result.listing_id,
                    bargain_score=result.score,
                    is_bargain=result.is_bargain,
                    bargain_type=result.bargain_type,
                    bargain_keyword=result.keyword.keyword if result.keyword else None,
                    bargain_keyword_source=(
                        result.keyword.source if result.keyword else None
                    ),
                    score_factors=result.factors,
                )
            )
            for detection_type in _detection_types(result.bargain_type):
                detections.append(
                    BargainDetectionInsert(
                        listing_id=listing.id,
                        complex_id=listing.complex_id,
                        detection_type=detection_type,
                        keyword=result.keyword.keyword if result.keyword else None,
                        keyword_source=result.keyword.source if result.keyword else None,
                        price=listing.price,
                        bargain_score=result.score,
                        run_id=self._run_id,
                    )
                )

        await write_scores(self._session, updates, scored_at=datetime.now(UTC))
        inserted = await insert_bargain_detections(self._session, detections)
        summary.new_detections = len(inserted)
        logger.info(
            "Scored %d listings: %d bargains, %d new detections",
            summary.scored,
            summary.bargains,
            summary.new_detections,
        )
        return summary
