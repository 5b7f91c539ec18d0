from __future__ import annotations

from decimal import Decimal
from typing import Any

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from src.config import Settings
from src.crawlers.naver import ScopeCrawl, TileCrawlResult
from src.crawlers.tiles import Tile
from src.db.repositories import ListingSnapshot
from src.models.bargain_detection import BargainDetection
from src.models.complex import Complex
from src.models.crawl_run import CrawlRun
from src.models.listing import LISTING_STATUS_ACTIVE, Listing
from src.notifications.base import Notifier
from src.services.pipeline import (
    BargainPipeline,
    CrawlOptions,
    PersistenceError,
    rescore_all,
)

pytestmark = pytest.mark.anyio

TILES = [
    Tile(
        index=index,
        region="테스트",
        row=0,
        col=index,
        btm=Decimal("37.00"),
        lft=Decimal("127.00") + Decimal("0.04") * index,
        top=Decimal("37.04"),
        rgt=Decimal("127.04") + Decimal("0.04") * index,
    )
    for index in range(3)
]


def _snapshot(tile: Tile, article_no: str, price: int, **overrides: Any) -> ListingSnapshot:
    values: dict[str, Any] = {
        "article_no": article_no,
        "complex_key": f"c{tile.index}",
        "complex_name": f"단지{tile.index}",
        "legal_dong_code": "1168010300",
        "trade_type": "sale",
        "price": price,
        "deal_price": price,
        "exclusive_area": Decimal("84.9"),
        "tile_key": tile.key,
    }
    values.update(overrides)
    return ListingSnapshot(**values)


def _ok(tile: Tile, snapshots: list[ListingSnapshot]) -> TileCrawlResult:
    return TileCrawlResult(
        scope_key=tile.key,
        scopes={"sale": ScopeCrawl(trade_type="sale", snapshots=snapshots, complete=True)},
    )


def _failed(tile: Tile, snapshots: list[ListingSnapshot] | None = None) -> TileCrawlResult:
    return TileCrawlResult(
        scope_key=tile.key,
        scopes={
            "sale": ScopeCrawl(
                trade_type="sale",
                snapshots=snapshots or [],
                error=f"{tile.key} sale: retry budget exhausted",
            )
        },
    )


class FakeCrawler:
    def __init__(self, results: dict[int, TileCrawlResult | Exception]) -> None:
        self._results = results
        self.crawled: list[int] = []

    async def __aenter__(self) -> FakeCrawler:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        return None

    async def crawl_tile(self, tile: Tile, trade_types: list[str], *, since=None) -> TileCrawlResult:
        self.crawled.append(tile.index)
        result = self._results.get(tile.index)
        if isinstance(result, Exception):
            raise result
        return result or _ok(tile, [])


class RecordingNotifier(Notifier):
    def __init__(self) -> None:
        self.messages: list[tuple[str, str | None]] = []

    async def send(self, message: str, *, title: str | None = None, **kwargs: Any) -> bool:
        self.messages.append((message, title))
        return True


@pytest.fixture(autouse=True)
def small_grid(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("src.services.pipeline.enumerate_tiles", lambda regions: TILES)


def _pipeline(
    settings: Settings,
    session_factory,
    crawler: FakeCrawler,
    notifier: Notifier | None = None,
) -> BargainPipeline:
    async def no_sleep(seconds: float) -> None:
        return None

    return BargainPipeline(
        settings,
        session_factory=session_factory,
        crawler_factory=lambda governor: crawler,  # type: ignore[arg-type,return-value]
        notifier=notifier,
        sleep=no_sleep,
    )


async def _listings(session_factory) -> dict[str, Listing]:
    async with session_factory() as session:
        rows = (await session.execute(select(Listing))).scalars().all()
    return {row.article_no: row for row in rows}


async def test_run_merges_tiles_scores_and_records_partial_status(
    session_factory, settings: Settings
) -> None:
    crawler = FakeCrawler(
        {
            0: _ok(
                TILES[0],
                [
                    _snapshot(TILES[0], "A", 480_000_000, description="급매 정리"),
                    _snapshot(TILES[0], "B", 500_000_000),
                ],
            ),
            1: _failed(TILES[1]),
            2: _ok(TILES[2], [_snapshot(TILES[2], "C", 700_000_000)]),
        }
    )

    summary = await _pipeline(settings, session_factory, crawler).run(CrawlOptions())

    assert crawler.crawled == [0, 1, 2]
    assert summary["status"] == "partial"
    assert summary["tiles_total"] == 3
    assert summary["tiles_completed"] == 2
    assert summary["tiles_failed"] == 1
    assert summary["listings_new"] == 3
    assert summary["listings_scored"] == 3
    assert summary["bargains_found"] == 1
    assert summary["last_tile_index"] == 2
    assert summary["errors"] == [f"{TILES[1].key} sale: retry budget exhausted"]

    listings = await _listings(session_factory)
    assert listings["A"].is_bargain
    assert listings["A"].bargain_type == "keyword"
    assert not listings["B"].is_bargain

    async with session_factory() as session:
        collected = (await session.execute(select(Complex))).scalars().all()
    assert all(row.last_collected_at is not None for row in collected)
    assert {row.complex_key: row.deal_count for row in collected} == {"c0": 2, "c2": 1}


async def test_failed_tile_never_removes_its_listings(
    session_factory, settings: Settings
) -> None:
    first = FakeCrawler(
        {0: _ok(TILES[0], [_snapshot(TILES[0], "A", 1), _snapshot(TILES[0], "B", 2)])}
    )
    await _pipeline(settings, session_factory, first).run(CrawlOptions())

    second = FakeCrawler({0: _failed(TILES[0], [_snapshot(TILES[0], "A", 1)])})
    summary = await _pipeline(settings, session_factory, second).run(CrawlOptions())

    assert summary["listings_removed"] == 0
    assert (await _listings(session_factory))["B"].status == LISTING_STATUS_ACTIVE

    third = FakeCrawler({0: _ok(TILES[0], [_snapshot(TILES[0], "A", 1)])})
    summary = await _pipeline(settings, session_factory, third).run(CrawlOptions())

    assert summary["listings_removed"] == 1
    assert summary["status"] == "success"


async def test_resume_continues_after_last_checkpoint(
    session_factory, settings: Settings
) -> None:
    crashing = FakeCrawler({2: RuntimeError("worker killed")})
    with pytest.raises(RuntimeError):
        await _pipeline(settings, session_factory, crashing).run(CrawlOptions())

    resumed = FakeCrawler({})
    summary = await _pipeline(settings, session_factory, resumed).run(
        CrawlOptions(resume=True)
    )

    assert crashing.crawled == [0, 1, 2]
    assert resumed.crawled == [2]
    assert summary["status"] == "success"

    async with session_factory() as session:
        runs = (await session.execute(select(CrawlRun).order_by(CrawlRun.id))).scalars().all()
    assert [run.status for run in runs] == ["running", "success"]
    assert runs[0].last_tile_index == 1
    assert runs[1].options["start_index"] == 2


async def test_store_failure_aborts_run_as_failed(
    session_factory, settings: Settings, monkeypatch: pytest.MonkeyPatch
) -> None:
    async def broken_merge(self: object, *args: object, **kwargs: object) -> None:
        raise OperationalError("INSERT INTO listings", {}, Exception("disk full"))

    monkeypatch.setattr("src.services.differ.SnapshotDiffer.merge_scope", broken_merge)
    crawler = FakeCrawler({0: _ok(TILES[0], [_snapshot(TILES[0], "A", 1)])})

    with pytest.raises(PersistenceError):
        await _pipeline(settings, session_factory, crawler).run(CrawlOptions())

    async with session_factory() as session:
        run = (await session.execute(select(CrawlRun))).scalar_one()
    assert run.status == "failed"
    assert run.finished_at is not None


async def test_new_bargains_are_notified_once(
    session_factory, settings: Settings
) -> None:
    notifier = RecordingNotifier()
    crawler = FakeCrawler(
        {0: _ok(TILES[0], [_snapshot(TILES[0], "A", 480_000_000, description="급매")])}
    )

    await _pipeline(settings, session_factory, crawler, notifier).run(CrawlOptions())
    await _pipeline(settings, session_factory, FakeCrawler({}), notifier).run(
        CrawlOptions()
    )

    assert len(notifier.messages) == 1
    message, title = notifier.messages[0]
    assert "4억 8,000만" in message
    assert "#급매" in message
    assert title == "급매 1건 감지"

    async with session_factory() as session:
        detection = (await session.execute(select(BargainDetection))).scalar_one()
    assert detection.notified


async def test_skip_score_leaves_listings_unscored(
    session_factory, settings: Settings
) -> None:
    crawler = FakeCrawler(
        {0: _ok(TILES[0], [_snapshot(TILES[0], "A", 1, description="급매")])}
    )

    summary = await _pipeline(settings, session_factory, crawler).run(
        CrawlOptions(skip_score=True)
    )

    assert summary["listings_scored"] == 0
    assert "scoring" not in summary
    assert (await _listings(session_factory))["A"].bargain_score is None


async def test_invalid_mode_is_rejected() -> None:
    with pytest.raises(ValueError):
        CrawlOptions(mode="weekly")


async def test_resume_survives_a_second_crash_before_any_tile(
    session_factory, settings: Settings
) -> None:
    with pytest.raises(RuntimeError):
        await _pipeline(
            settings, session_factory, FakeCrawler({2: RuntimeError("worker killed")})
        ).run(CrawlOptions())
    with pytest.raises(RuntimeError):
        await _pipeline(
            settings, session_factory, FakeCrawler({2: RuntimeError("killed again")})
        ).run(CrawlOptions(resume=True))

    async with session_factory() as session:
        runs = (await session.execute(select(CrawlRun).order_by(CrawlRun.id))).scalars().all()
    assert [run.last_tile_index for run in runs] == [1, 1]

    third = FakeCrawler({})
    summary = await _pipeline(settings, session_factory, third).run(
        CrawlOptions(resume=True)
    )

    assert third.crawled == [2]
    assert summary["status"] == "success"


async def test_rescore_is_recorded_as_a_run_unless_dry(
    session_factory, settings: Settings
) -> None:
    crawler = FakeCrawler(
        {0: _ok(TILES[0], [_snapshot(TILES[0], "A", 480_000_000, description="급매")])}
    )
    await _pipeline(settings, session_factory, crawler).run(CrawlOptions(skip_score=True))

    preview = await rescore_all(settings, dry_run=True, session_factory=session_factory)
    report = await rescore_all(settings, session_factory=session_factory)

    assert preview["dry_run"]
    assert report["status"] == "success"
    assert report["scored"] == 1

    async with session_factory() as session:
        runs = (await session.execute(select(CrawlRun).order_by(CrawlRun.id))).scalars().all()
        detection = (await session.execute(select(BargainDetection))).scalar_one()
    assert [run.mode for run in runs] == ["full", "rescore"]
    rescore_run = runs[1]
    assert rescore_run.id == report["run_id"]
    assert rescore_run.status == "success"
    assert rescore_run.listings_scored == 1
    assert rescore_run.bargains_found == 1
    assert rescore_run.finished_at is not None
    assert detection.run_id == rescore_run.id
