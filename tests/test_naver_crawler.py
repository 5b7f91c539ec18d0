"""Tests for the Naver tile crawler using JSON fixtures."""

from __future__ import annotations

import random
from datetime import date
from decimal import Decimal

import httpx
import pytest

from src.config import Settings
from src.crawlers.governor import GovernorConfig, RateGovernor
from src.crawlers.naver import (
    USER_AGENTS,
    NaverTileCrawler,
    effective_price,
    parse_confirm_date,
    parse_floor,
    parse_manwon,
    parse_price_info,
)
from src.crawlers.tiles import Tile

pytestmark = pytest.mark.anyio

TILE = Tile(
    index=0,
    region="서울/경기/인천",
    row=0,
    col=0,
    btm=Decimal("37.48"),
    lft=Decimal("127.02"),
    top=Decimal("37.52"),
    rgt=Decimal("127.06"),
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeClient:
    """Replays canned responses (or raises canned errors) in order."""

    def __init__(self, responses: list[httpx.Response | Exception]) -> None:
        self._responses = list(responses)
        self.calls: list[dict[str, object]] = []

    async def get(
        self,
        url: str,
        params: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        self.calls.append({"url": url, "params": params or {}, "headers": headers or {}})
        item = self._responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def aclose(self) -> None:
        return None


def _article(article_no: str, **overrides: object) -> dict[str, object]:
    article: dict[str, object] = {
        "atclNo": article_no,
        "tradTpCd": "A1",
        "prc": 48000,
        "hanPrc": "4억 8,000",
        "hscpNo": "1001",
        "hscpNm": "래미안",
        "cortarNo": "1168010300",
        "rletTpCd": "APT",
        "spc1": "84.9",
        "spc2": "59.9",
        "flrInfo": "9/15",
        "direction": "남향",
        "atclFetrDesc": "급매 남향 올수리",
        "tagList": ["역세권"],
        "cfmYmd": "20261018",
        "lat": 37.5,
        "lng": 127.04,
    }
    article.update(overrides)
    return article


def _page(items: list[dict[str, object]], *, more: bool) -> httpx.Response:
    return httpx.Response(200, json={"code": "success", "more": more, "body": items})


def _crawler(
    settings: Settings, client: FakeClient, clock: FakeClock
) -> NaverTileCrawler:
    governor = RateGovernor(
        GovernorConfig(start_delay=1.0, min_delay=1.0, step=1.0, jitter_ratio=0.0),
        sleep=clock.sleep,
        clock=clock,
    )
    return NaverTileCrawler(
        governor,
        settings,
        client=client,  # type: ignore[arg-type]
        rng=random.Random(3),
        sleep=clock.sleep,
    )


async def test_parse_price_helpers() -> None:
    assert parse_manwon("8억 5,000") == 85000
    assert parse_manwon("3억") == 30000
    assert parse_manwon("9,500") == 9500
    assert parse_price_info("1억/120") == (10000, 120)
    assert parse_floor("9/15") == (9, 15)
    assert parse_floor("고/15") == (None, 15)
    assert parse_confirm_date("26.01.15.") == date(2026, 1, 15)
    assert parse_confirm_date("20260115") == date(2026, 1, 15)
    assert parse_confirm_date("bogus") is None
    assert effective_price("sale", 500, None, None, conversion_months=100) == 500
    assert effective_price("lease", None, 300, None, conversion_months=100) == 300
    assert effective_price("monthly", None, 1000, 50, conversion_months=100) == 6000


async def test_crawl_tile_walks_pages_until_last(settings: Settings) -> None:
    clock = FakeClock()
    client = FakeClient(
        [
            _page([_article("A1"), _article("A2")], more=True),
            _page([_article("A3", prc=51000)], more=False),
        ]
    )

    async with _crawler(settings, client, clock) as crawler:
        result = await crawler.crawl_tile(TILE, ["sale"])

    scope = result.scopes["sale"]
    assert scope.complete
    assert scope.pages == 2
    assert not result.failed
    assert [snap.article_no for snap in result.snapshots] == ["A1", "A2", "A3"]
    assert [call["params"]["page"] for call in client.calls] == ["1", "2"]

    first = result.snapshots[0]
    assert first.price == 480_000_000
    assert first.deal_price == 480_000_000
    assert first.complex_key == "1001"
    assert first.tile_key == TILE.key
    assert first.exclusive_area == Decimal("59.9")
    assert first.floor_current == 9
    assert first.confirm_date == date(2026, 10, 18)


async def test_crawl_tile_rotates_user_agents(settings: Settings) -> None:
    clock = FakeClock()
    client = FakeClient(
        [_page([_article(f"A{i}"), _article(f"B{i}")], more=True) for i in range(4)]
        + [_page([], more=False)]
    )

    async with _crawler(settings, client, clock) as crawler:
        await crawler.crawl_tile(TILE, ["sale"])

    agents = [call["headers"]["User-Agent"] for call in client.calls]
    assert all(agent in USER_AGENTS for agent in agents)
    assert len(set(agents)) > 1
    assert all(call["headers"]["Referer"] for call in client.calls)


async def test_crawl_tile_recovers_from_block(settings: Settings) -> None:
    clock = FakeClock()
    client = FakeClient(
        [
            httpx.Response(429),
            httpx.Response(429),
            _page([_article("A1")], more=False),
        ]
    )
    crawler = _crawler(settings, client, clock)

    async with crawler:
        result = await crawler.crawl_tile(TILE, ["sale"])

    assert not result.failed
    assert result.scopes["sale"].complete
    assert [snap.article_no for snap in result.snapshots] == ["A1"]
    assert crawler._governor.blocks_encountered == 1
    assert crawler._governor.current_delay == 2.0


async def test_crawl_tile_fails_scope_after_retry_budget(settings: Settings) -> None:
    settings = settings.model_copy(update={"crawl_retry_base_delay_seconds": 3.0})
    clock = FakeClock()
    client = FakeClient(
        [httpx.Response(503), httpx.ConnectError("reset"), httpx.Response(502), httpx.Response(503)]
    )
    crawler = _crawler(settings, client, clock)

    async with crawler:
        result = await crawler.crawl_tile(TILE, ["sale"])

    scope = result.scopes["sale"]
    assert result.failed
    assert not scope.complete
    assert scope.snapshots == []
    assert "retry budget exhausted" in (scope.error or "")
    assert crawler.retry_count == 4
    # governor pacing is 1.0s, the rest is exponential backoff
    assert [s for s in clock.sleeps if s != 1.0] == [3.0, 6.0, 12.0]


async def test_failed_scope_keeps_pages_fetched_before_the_failure(
    settings: Settings,
) -> None:
    clock = FakeClock()
    client = FakeClient(
        [
            _page([_article("A1"), _article("A2")], more=True),
            httpx.ConnectError("reset"),
            httpx.ConnectError("reset"),
            httpx.ConnectError("reset"),
            httpx.ConnectError("reset"),
        ]
    )

    async with _crawler(settings, client, clock) as crawler:
        result = await crawler.crawl_tile(TILE, ["sale"])

    scope = result.scopes["sale"]
    assert result.failed
    assert not scope.complete
    assert scope.pages == 1
    assert "retry budget exhausted" in (scope.error or "")
    assert [snap.article_no for snap in scope.snapshots] == ["A1", "A2"]


async def test_crawl_tile_drops_articles_outside_the_tile(settings: Settings) -> None:
    clock = FakeClock()
    client = FakeClient(
        [
            _page(
                [_article("IN"), _article("EDGE", lat=37.52), _article("NOPOS", lat=None)],
                more=False,
            )
        ]
    )

    async with _crawler(settings, client, clock) as crawler:
        result = await crawler.crawl_tile(TILE, ["sale"])

    assert result.scopes["sale"].complete
    assert [snap.article_no for snap in result.snapshots] == ["IN", "NOPOS"]


async def test_crawl_tile_flags_schema_mismatch(settings: Settings) -> None:
    clock = FakeClock()
    client = FakeClient([_page([{"unexpected": "shape"}], more=False)])

    async with _crawler(settings, client, clock) as crawler:
        result = await crawler.crawl_tile(TILE, ["sale"])

    assert result.failed
    assert "none parsed" in (result.scopes["sale"].error or "")


async def test_incremental_crawl_stops_at_window_and_stays_incomplete(
    settings: Settings,
) -> None:
    clock = FakeClock()
    client = FakeClient(
        [
            _page(
                [_article("A1", cfmYmd="20260101"), _article("A2", cfmYmd="20260102")],
                more=True,
            ),
        ]
    )

    async with _crawler(settings, client, clock) as crawler:
        result = await crawler.crawl_tile(TILE, ["sale"], since=date(2026, 10, 17))

    scope = result.scopes["sale"]
    assert not scope.complete
    assert scope.error is None
    assert scope.pages == 1
    assert len(client.calls) == 1


async def test_crawl_complex_uses_total_count(settings: Settings) -> None:
    clock = FakeClock()
    items = [
        {key: value for key, value in _article("C1").items() if key != "hscpNo"},
        {key: value for key, value in _article("C2").items() if key != "hscpNo"},
    ]
    client = FakeClient(
        [httpx.Response(200, json={"result": {"list": items, "totAtclCnt": 2}})]
    )

    async with _crawler(settings, client, clock) as crawler:
        result = await crawler.crawl_complex("2002", ["sale"])

    assert result.scopes["sale"].complete
    assert {snap.complex_key for snap in result.snapshots} == {"2002"}
    assert all(snap.tile_key is None for snap in result.snapshots)
    assert client.calls[0]["params"]["hscpNo"] == "2002"
