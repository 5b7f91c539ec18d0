"""Naver mobile map crawler walking tiles and complex article lists."""

from __future__ import annotations

import asyncio
import logging
import random
import re
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Final

import httpx

from src.config import Settings, get_settings
from src.crawlers.base import (
    ListingSchemaMismatchError,
    TileCrawlError,
    UpstreamBlockedError,
)
from src.crawlers.governor import Classification, RateGovernor, classify
from src.crawlers.tiles import Tile
from src.db.repositories import ListingSnapshot

logger = logging.getLogger(__name__)

TRADE_TYPE_CODES: Final = {"sale": "A1", "lease": "B1", "monthly": "B2"}
TRADE_CODE_TYPES: Final = {code: name for name, code in TRADE_TYPE_CODES.items()}
PROPERTY_TYPES: Final = "APT:OPST"
WON_PER_MANWON: Final = 10_000

USER_AGENTS: Final = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_4 like Mac OS X) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.4 Mobile/15E148 Safari/604.1",
    "Mozilla/5.0 (iPhone; CPU iPhone OS 16_6 like Mac OS X) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/16.6 Mobile/15E148 Safari/604.1",
    "Mozilla/5.0 (Linux; Android 14; SM-S928B) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/122.0.0.0 Mobile Safari/537.36",
    "Mozilla/5.0 (Linux; Android 14; Pixel 8 Pro) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/121.0.0.0 Mobile Safari/537.36",
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_2 like Mac OS X) AppleWebKit/605.1.15 (KHTML, like Gecko) CriOS/121.0.6167.171 Mobile/15E148 Safari/604.1",
    "Mozilla/5.0 (Linux; Android 13; SM-A546B) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Mobile Safari/537.36",
    "Mozilla/5.0 (iPhone; CPU iPhone OS 16_3 like Mac OS X) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/16.3 Mobile/15E148 Safari/604.1",
    "Mozilla/5.0 (Linux; Android 14; SM-S918B) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/123.0.0.0 Mobile Safari/537.36",
)

_EOK_PATTERN: Final = re.compile(r"(\d+)억\s*(\d+)?")
_DATE_PATTERN: Final = re.compile(r"^(\d{2}|\d{4})\.?(\d{2})\.?(\d{2})\.?$")


def _to_int(value: object | None) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        return int(value)
    cleaned = str(value).replace(",", "").replace(" ", "")
    if not cleaned:
        return None
    try:
        return int(cleaned)
    except ValueError:
        return None


def _to_decimal(value: object | None) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    cleaned = str(value).replace(",", "").replace(" ", "")
    if not cleaned:
        return None
    try:
        return Decimal(cleaned)
    except InvalidOperation:
        return None


def parse_manwon(text: str | None) -> int | None:
    """Parse "8억 5,000" / "85000" style amounts (in 만원)."""

    if not text:
        return None
    cleaned = text.replace(",", "").strip()
    match = _EOK_PATTERN.search(cleaned)
    if match:
        eok = int(match.group(1))
        rest = int(match.group(2)) if match.group(2) else 0
        return eok * 10_000 + rest
    return _to_int(cleaned)


def parse_price_info(text: str | None) -> tuple[int | None, int | None]:
    """Split "보증금/월세" text into (first amount, rent) in 만원."""

    if not text:
        return None, None
    if "/" in text:
        deposit_text, rent_text = text.split("/", 1)
        return parse_manwon(deposit_text), parse_manwon(rent_text)
    return parse_manwon(text), None


def parse_floor(info: str | None) -> tuple[int | None, int | None]:
    if not info:
        return None, None
    parts = info.split("/")
    if len(parts) != 2:
        return None, None
    return _to_int(parts[0].strip()), _to_int(parts[1].strip())


def parse_confirm_date(value: object | None) -> date | None:
    """Parse upstream confirmation dates ("20260115", "26.01.15.")."""

    if value is None:
        return None
    match = _DATE_PATTERN.match(str(value).strip())
    if not match:
        return None
    year = int(match.group(1))
    if year < 100:
        year += 2000
    try:
        return date(year, int(match.group(2)), int(match.group(3)))
    except ValueError:
        return None


def effective_price(
    trade_type: str,
    deal_price: int | None,
    warranty_price: int | None,
    rent_price: int | None,
    *,
    conversion_months: int,
) -> int | None:
    """Single comparable amount per trade type (monthly rent folded into deposit)."""

    if trade_type == "sale":
        return deal_price
    if trade_type == "lease":
        return warranty_price
    if warranty_price is None and rent_price is None:
        return None
    return (warranty_price or 0) + (rent_price or 0) * conversion_months


def _inside(tile: Tile, snapshot: ListingSnapshot) -> bool:
    # Articles on a shared edge belong to the tile whose half-open box holds them.
    if snapshot.latitude is None or snapshot.longitude is None:
        return True
    return tile.contains(snapshot.latitude, snapshot.longitude)


@dataclass(slots=True)
class ScopeCrawl:
    """Snapshots for one trade type of one tile (or complex)."""

    trade_type: str
    snapshots: list[ListingSnapshot] = field(default_factory=list)
    complete: bool = False
    pages: int = 0
    error: str | None = None


@dataclass(slots=True)
class TileCrawlResult:
    scope_key: str
    scopes: dict[str, ScopeCrawl] = field(default_factory=dict)
    deferred: bool = False

    @property
    def snapshots(self) -> list[ListingSnapshot]:
        return [snap for scope in self.scopes.values() for snap in scope.snapshots]

    @property
    def failed(self) -> bool:
        return self.deferred or any(s.error for s in self.scopes.values())

    @property
    def errors(self) -> list[str]:
        return [s.error for s in self.scopes.values() if s.error]


class NaverTileCrawler:
    """Sequential crawler for the Naver mobile map article lists.

    All requests go through one :class:`RateGovernor`; nothing is fetched in
    parallel. A scope is marked complete only when its last page was reached
    without errors or truncation.
    """

    def __init__(
        self,
        governor: RateGovernor,
        settings: Settings | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        rng: random.Random | None = None,
        sleep=asyncio.sleep,
    ) -> None:
        self._settings = settings or get_settings()
        self._governor = governor
        self._client = client
        self._owns_client = client is None
        self._rng = rng or random.Random()
        self._sleep = sleep
        self._base_url = self._settings.listing_api_base_url.rstrip("/")
        self._page_size = self._settings.crawl_page_size
        self._max_pages = self._settings.crawl_max_pages_per_tile
        self._max_retries = self._settings.crawl_request_retries
        self._retry_base_delay = self._settings.crawl_retry_base_delay_seconds
        self._conversion = self._settings.monthly_rent_conversion_months
        self.retry_count = 0

    async def __aenter__(self) -> NaverTileCrawler:
        if self._client is None:
            timeout = httpx.Timeout(self._settings.listing_request_timeout_seconds)
            self._client = httpx.AsyncClient(timeout=timeout, follow_redirects=False)
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    def _headers(self) -> dict[str, str]:
        return {
            "User-Agent": self._rng.choice(USER_AGENTS),
            "Referer": self._settings.listing_api_referer,
            "Accept": "application/json",
            "Accept-Language": "ko-KR,ko;q=0.9,en-US;q=0.8,en;q=0.7",
        }

    async def _send_once(
        self, url: str, params: dict[str, str]
    ) -> tuple[Classification, httpx.Response | None, BaseException | None]:
        if self._client is None:
            raise RuntimeError("crawler used outside of its async context")
        try:
            response = await self._client.get(url, params=params, headers=self._headers())
        except httpx.TransportError as exc:
            return classify(error=exc), None, exc
        return classify(response.status_code), response, None

    async def _fetch_json(self, url: str, params: dict[str, str]) -> dict[str, object]:
        """GET one page through the governor with bounded network retries."""

        attempt = 0
        while True:
            await self._governor.before_request()
            classification, response, error = await self._send_once(url, params)

            if classification == Classification.BLOCKED:

                async def probe() -> tuple[Classification, httpx.Response | None]:
                    probe_class, probe_response, _ = await self._send_once(url, params)
                    return probe_class, probe_response

                response = await self._governor.recover(probe)
                classification = Classification.OK

            if classification == Classification.OK and response is not None:
                self._governor.on_success()
                try:
                    payload = response.json()
                except ValueError as exc:
                    raise TileCrawlError(f"invalid JSON from {url}: {exc}") from exc
                if not isinstance(payload, dict):
                    raise TileCrawlError(f"unexpected payload type from {url}")
                return {str(key): value for key, value in payload.items()}

            status = response.status_code if response is not None else None
            if status is not None and status < 500:
                raise TileCrawlError(f"HTTP {status} for {url}")

            attempt += 1
            self.retry_count += 1
            if attempt > self._max_retries:
                reason = f"HTTP {status}" if status is not None else repr(error)
                raise TileCrawlError(
                    f"retry budget exhausted for {url} after {attempt} attempts ({reason})"
                )
            backoff = self._retry_base_delay * (2 ** (attempt - 1))
            logger.warning(
                "Network error for %s (attempt %d/%d), retrying in %.1fs",
                url,
                attempt,
                self._max_retries,
                backoff,
            )
            await self._sleep(backoff)

    def _parse_article(
        self, article: dict[str, object], trade_type: str, scope_key: str | None
    ) -> ListingSnapshot | None:
        article_no = str(article.get("atclNo") or "").strip()
        if not article_no:
            return None

        trade_code = str(article.get("tradTpCd") or TRADE_TYPE_CODES[trade_type])
        trade_type = TRADE_CODE_TYPES.get(trade_code, trade_type)

        price_text = article.get("prcInfo") or article.get("hanPrc")
        price_text = str(price_text) if price_text is not None else None
        first_amount = _to_int(article.get("prc"))
        rent_amount = _to_int(article.get("rentPrc"))
        if first_amount is None:
            first_amount, parsed_rent = parse_price_info(price_text)
            if rent_amount is None:
                rent_amount = parsed_rent
        if first_amount is None:
            return None

        amount_won = first_amount * WON_PER_MANWON
        rent_won = rent_amount * WON_PER_MANWON if rent_amount else None
        deal_price = amount_won if trade_type == "sale" else None
        warranty_price = amount_won if trade_type != "sale" else None
        rent_price = rent_won if trade_type == "monthly" else None

        price = effective_price(
            trade_type,
            deal_price,
            warranty_price,
            rent_price,
            conversion_months=self._conversion,
        )
        if price is None:
            return None

        complex_name = str(article.get("hscpNm") or article.get("atclNm") or "").strip()
        legal_dong_code = str(article.get("cortarNo") or "").strip() or None
        raw_complex = article.get("hscpNo")
        if raw_complex:
            complex_key = str(raw_complex).strip()
        elif complex_name:
            complex_key = f"{legal_dong_code or '-'}:{complex_name}"
        else:
            complex_key = f"article:{article_no}"

        floor_current, floor_total = parse_floor(
            str(article["flrInfo"]) if article.get("flrInfo") else None
        )
        raw_tags = article.get("tagList")
        tags = [str(tag) for tag in raw_tags] if isinstance(raw_tags, list) else []

        return ListingSnapshot(
            article_no=article_no,
            complex_key=complex_key,
            complex_name=complex_name,
            trade_type=trade_type,
            property_type=str(article.get("rletTpCd") or "APT"),
            legal_dong_code=legal_dong_code,
            price=price,
            deal_price=deal_price,
            warranty_price=warranty_price,
            rent_price=rent_price,
            price_text=price_text,
            supply_area=_to_decimal(article.get("spc1")),
            exclusive_area=_to_decimal(article.get("spc2")),
            floor_current=floor_current,
            floor_total=floor_total,
            direction=str(article["direction"]) if article.get("direction") else None,
            description=(
                str(article["atclFetrDesc"]) if article.get("atclFetrDesc") else None
            ),
            tags=tags,
            building_name=str(article["bildNm"]) if article.get("bildNm") else None,
            realtor_name=str(article.get("rltrNm") or article.get("cpNm") or "") or None,
            image_url=str(article["repImgUrl"]) if article.get("repImgUrl") else None,
            confirm_date=parse_confirm_date(article.get("cfmYmd")),
            latitude=_to_decimal(article.get("lat")),
            longitude=_to_decimal(article.get("lng")),
            tile_key=scope_key,
        )

    def _parse_page(
        self,
        items: list[object],
        trade_type: str,
        tile_key: str | None,
    ) -> list[ListingSnapshot]:
        parsed: list[ListingSnapshot] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            snapshot = self._parse_article(
                {str(key): value for key, value in item.items()}, trade_type, tile_key
            )
            if snapshot is not None:
                parsed.append(snapshot)
        if items and not parsed:
            raise ListingSchemaMismatchError(
                f"{len(items)} items returned but none parsed for trade_type={trade_type}"
            )
        return parsed

    async def _crawl_tile_trade_type(
        self, tile: Tile, scope: ScopeCrawl, since: date | None
    ) -> None:
        """Fill ``scope`` page by page; what was fetched stays on it if a page fails."""

        trade_type = scope.trade_type
        url = f"{self._base_url}/cluster/ajax/articleList"

        for page in range(1, self._max_pages + 1):
            payload = await self._fetch_json(
                url,
                {
                    "rletTpCd": PROPERTY_TYPES,
                    "tradTpCd": TRADE_TYPE_CODES[trade_type],
                    "z": "13",
                    "lat": str(tile.center_lat),
                    "lon": str(tile.center_lon),
                    "btm": str(tile.btm),
                    "lft": str(tile.lft),
                    "top": str(tile.top),
                    "rgt": str(tile.rgt),
                    "sort": "dates",
                    "page": str(page),
                },
            )
            scope.pages = page
            body = payload.get("body")
            items = body if isinstance(body, list) else []
            snapshots = self._parse_page(items, trade_type, tile.key)
            scope.snapshots.extend(snap for snap in snapshots if _inside(tile, snap))

            if not payload.get("more") or len(items) < self._page_size:
                scope.complete = True
                return

            if since is not None and snapshots and all(
                snap.confirm_date is not None and snap.confirm_date < since
                for snap in snapshots
            ):
                logger.info(
                    "Tile %s %s reached incremental window at page %d",
                    tile.key,
                    trade_type,
                    page,
                )
                return

        logger.warning(
            "Tile %s %s truncated at max pages %d", tile.key, trade_type, self._max_pages
        )

    async def crawl_tile(
        self,
        tile: Tile,
        trade_types: list[str],
        *,
        since: date | None = None,
    ) -> TileCrawlResult:
        """Fetch every page of every trade type for one tile.

        ``since`` enables incremental mode: pages are walked newest-first and
        the walk stops once a page is older than the window, which leaves the
        scope incomplete.
        """

        result = TileCrawlResult(scope_key=tile.key)
        for trade_type in trade_types:
            scope = ScopeCrawl(trade_type=trade_type)
            result.scopes[trade_type] = scope
            try:
                await self._crawl_tile_trade_type(tile, scope, since)
            except UpstreamBlockedError as exc:
                logger.warning("Tile %s deferred: %s", tile.key, exc)
                scope.error = f"{tile.key} {trade_type}: {exc}"
                scope.complete = False
                result.deferred = True
                break
            except TileCrawlError as exc:
                logger.warning("Tile %s %s failed: %s", tile.key, trade_type, exc)
                scope.error = f"{tile.key} {trade_type}: {exc}"
                scope.complete = False

        logger.info(
            "Tile %s fetched %d listings (%s)",
            tile.key,
            len(result.snapshots),
            ", ".join(
                f"{name}={'ok' if scope.complete else 'partial'}"
                for name, scope in result.scopes.items()
            ),
        )
        return result

    async def crawl_complex(
        self, complex_key: str, trade_types: list[str]
    ) -> TileCrawlResult:
        """Fetch every article of one complex via the per-complex list endpoint."""

        result = TileCrawlResult(scope_key=complex_key)
        url = f"{self._base_url}/complex/getComplexArticleList"

        for trade_type in trade_types:
            scope = ScopeCrawl(trade_type=trade_type)
            try:
                for page in range(1, self._max_pages + 1):
                    payload = await self._fetch_json(
                        url,
                        {
                            "hscpNo": complex_key,
                            "tradTpCd": TRADE_TYPE_CODES[trade_type],
                            "order": "prc",
                            "showR0": "N",
                            "page": str(page),
                        },
                    )
                    scope.pages = page
                    body = payload.get("result")
                    body = body if isinstance(body, dict) else {}
                    raw_items = body.get("list")
                    items = raw_items if isinstance(raw_items, list) else []
                    for item in items:
                        if isinstance(item, dict):
                            item.setdefault("hscpNo", complex_key)
                    scope.snapshots.extend(self._parse_page(items, trade_type, None))

                    total = _to_int(body.get("totAtclCnt")) or 0
                    if len(items) < self._page_size or page * self._page_size >= total:
                        scope.complete = True
                        break
            except UpstreamBlockedError as exc:
                scope.error = f"{complex_key} {trade_type}: {exc}"
                scope.complete = False
                result.scopes[trade_type] = scope
                result.deferred = True
                break
            except TileCrawlError as exc:
                logger.warning("Complex %s %s failed: %s", complex_key, trade_type, exc)
                scope.error = f"{complex_key} {trade_type}: {exc}"
                scope.complete = False
            result.scopes[trade_type] = scope

        return result
