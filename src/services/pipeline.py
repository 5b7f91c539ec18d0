"""Crawl-diff-score run orchestration."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import UTC, date, datetime, timedelta

from sqlalchemy.exc import SQLAlchemyError

from src.config import Settings, get_settings, resolve_regions
from src.crawlers.governor import GovernorConfig, RateGovernor
from src.crawlers.naver import NaverTileCrawler, TileCrawlResult
from src.crawlers.tiles import enumerate_tiles
from src.db.repositories import mark_complexes_collected
from src.db.session import session_context
from src.notifications.base import Notifier
from src.services.alert_service import notify_new_bargains
from src.services.differ import DiffOutcome, SnapshotDiffer
from src.services.ledger import RunLedger, SessionFactory
from src.services.scorer import BargainScorer

logger = logging.getLogger(__name__)

CrawlerFactory = Callable[[RateGovernor], NaverTileCrawler]


class PersistenceError(RuntimeError):
    """The listing store failed; the run cannot continue."""


@dataclass(frozen=True, slots=True)
class CrawlOptions:
    mode: str = "full"
    regions: tuple[str, ...] = ()
    resume: bool = False
    complex_key: str | None = None
    trade_types: tuple[str, ...] = ()
    start_delay: float | None = None
    delay_step: float | None = None
    batch_size: int | None = None
    skip_score: bool = False

    def __post_init__(self) -> None:
        if self.mode not in ("full", "incremental"):
            raise ValueError(f"Invalid mode: {self.mode}. Valid values are: full, incremental")

    @property
    def region_label(self) -> str:
        if self.complex_key:
            return f"complex:{self.complex_key}"
        return ",".join(self.regions) if self.regions else "all"


class BargainPipeline:
    """Run one crawl: tiles in order, diff complete scopes, score what changed."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        session_factory: SessionFactory = session_context,
        crawler_factory: CrawlerFactory | None = None,
        notifier: Notifier | None = None,
        sleep=asyncio.sleep,
    ) -> None:
        self._settings = settings or get_settings()
        self._session_factory = session_factory
        self._crawler_factory = crawler_factory or self._default_crawler
        self._notifier = notifier
        self._sleep = sleep

    def _default_crawler(self, governor: RateGovernor) -> NaverTileCrawler:
        return NaverTileCrawler(governor, self._settings, sleep=self._sleep)

    async def run(self, options: CrawlOptions) -> dict[str, object]:
        trade_types = list(options.trade_types or self._settings.crawl_trade_types)
        ledger = RunLedger(
            mode=options.mode,
            region=options.region_label,
            session_factory=self._session_factory,
        )
        start_index = 0
        if options.resume and not options.complex_key:
            start_index = await ledger.resume_cursor() or 0
        await ledger.start(
            {**asdict(options), "start_index": start_index}, start_index=start_index
        )

        governor = RateGovernor(
            GovernorConfig.from_settings(
                self._settings,
                start_delay=options.start_delay,
                step=options.delay_step,
                batch_size=options.batch_size,
            ),
            sleep=self._sleep,
        )
        since: date | None = None
        if options.mode == "incremental":
            since = datetime.now(UTC).date() - timedelta(
                days=self._settings.incremental_window_days
            )

        affected: set[int] = set()
        scoring: dict[str, object] | None = None
        try:
            async with self._crawler_factory(governor) as crawler:
                if options.complex_key:
                    ledger.counters.tiles_total = 1
                    result = await crawler.crawl_complex(options.complex_key, trade_types)
                    affected |= await self._merge(
                        result, ledger, complex_key=options.complex_key
                    )
                    self._sync_governor(ledger, governor)
                    await ledger.checkpoint()
                else:
                    tiles = enumerate_tiles(resolve_regions(list(options.regions)))
                    ledger.counters.tiles_total = len(tiles)
                    if start_index:
                        logger.info("Skipping %d tiles completed earlier", start_index)
                    for tile in tiles[start_index:]:
                        result = await crawler.crawl_tile(tile, trade_types, since=since)
                        affected |= await self._merge(result, ledger, tile_key=tile.key)
                        self._sync_governor(ledger, governor)
                        await ledger.checkpoint(tile.index)

            if not options.skip_score and affected:
                scoring = await self._score(sorted(affected), ledger)
            if self._notifier is not None and ledger.run_id is not None:
                async with self._session_factory() as session:
                    await notify_new_bargains(session, self._notifier, run_id=ledger.run_id)
        except SQLAlchemyError as exc:
            logger.exception("Listing store failure, aborting run #%s", ledger.run_id)
            ledger.add_error(f"persistence: {exc}")
            await ledger.finish(failed=True)
            raise PersistenceError(str(exc)) from exc

        await ledger.finish()
        summary = ledger.summary()
        summary["governor"] = governor.metrics()
        if scoring is not None:
            summary["scoring"] = scoring
        return summary

    @staticmethod
    def _sync_governor(ledger: RunLedger, governor: RateGovernor) -> None:
        ledger.counters.requests_made = governor.requests_made
        ledger.counters.blocks_encountered = governor.blocks_encountered

    async def _merge(
        self,
        result: TileCrawlResult,
        ledger: RunLedger,
        *,
        tile_key: str | None = None,
        complex_key: str | None = None,
    ) -> set[int]:
        """Diff every scope of one crawl result and commit it as one unit."""

        now = datetime.now(UTC)
        total = DiffOutcome()
        async with self._session_factory() as session:
            differ = SnapshotDiffer(session, run_id=ledger.run_id)
            for trade_type, scope in result.scopes.items():
                if scope.error:
                    ledger.add_error(scope.error)
                if not scope.snapshots and not scope.complete:
                    continue
                total.merge(
                    await differ.merge_scope(
                        scope.snapshots,
                        trade_type=trade_type,
                        scope_complete=scope.complete,
                        now=now,
                        tile_key=tile_key,
                        complex_key=complex_key,
                    )
                )
            if not result.failed and all(s.complete for s in result.scopes.values()):
                await mark_complexes_collected(
                    session, sorted(total.complex_ids), collected_at=now
                )
            await session.commit()

        ledger.record(
            tiles_failed=int(result.failed),
            tiles_completed=int(not result.failed),
            listings_seen=total.seen,
            listings_new=total.new,
            listings_updated=total.updated,
            price_changes=total.price_changes,
            listings_removed=total.removed,
        )
        return total.affected_listing_ids

    async def _score(self, listing_ids: list[int], ledger: RunLedger) -> dict[str, object]:
        async with self._session_factory() as session:
            scorer = BargainScorer(session, self._settings, run_id=ledger.run_id)
            summary = await scorer.score(listing_ids)
            await session.commit()
        ledger.record(
            listings_scored=summary.scored, bargains_found=summary.new_detections
        )
        return summary.as_dict()


async def rescore_all(
    settings: Settings | None = None,
    *,
    dry_run: bool = False,
    session_factory: SessionFactory = session_context,
) -> dict[str, object]:
    """Recompute scores for every active listing.

    A real rescore is recorded as a ``rescore`` run in the ledger; a dry run
    writes nothing, the ledger included.
    """

    if dry_run:
        async with session_factory() as session:
            summary = await BargainScorer(session, settings).score(None, dry_run=True)
        return summary.as_dict()

    ledger = RunLedger(mode="rescore", region="all", session_factory=session_factory)
    await ledger.start({"dry_run": False})
    try:
        async with session_factory() as session:
            scorer = BargainScorer(session, settings, run_id=ledger.run_id)
            summary = await scorer.score(None)
            await session.commit()
    except SQLAlchemyError as exc:
        logger.exception("Listing store failure, aborting rescore run #%s", ledger.run_id)
        ledger.add_error(f"persistence: {exc}")
        await ledger.finish(failed=True)
        raise

    ledger.record(listings_scored=summary.scored, bargains_found=summary.new_detections)
    status = await ledger.finish()
    return {**summary.as_dict(), "run_id": ledger.run_id, "status": status}
