"""Public data portal crawler for apartment sale and rent real trades."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import Final

import httpx
from bs4 import BeautifulSoup
from bs4.element import Tag

from src.config import Settings, get_settings
from src.crawlers.base import CrawlResult
from src.db.repositories import RealTradeUpsert, shift_month

logger = logging.getLogger(__name__)

WON_PER_MANWON: Final = 10_000
PAGE_ROWS: Final = 1000

ENDPOINTS: Final = {
    "sale": "RTMSDataSvcAptTrade/getRTMSDataSvcAptTrade",
    "rent": "RTMSDataSvcAptRent/getRTMSDataSvcAptRent",
}


def _to_int(value: str | None, default: int = 0) -> int:
    if not value:
        return default
    cleaned = value.replace(",", "").replace(" ", "")
    if cleaned == "":
        return default
    try:
        return int(cleaned)
    except ValueError:
        return default


def _to_decimal(value: str | None) -> Decimal | None:
    if not value:
        return None
    cleaned = value.replace(",", "").replace(" ", "")
    if cleaned == "":
        return None
    try:
        return Decimal(cleaned)
    except InvalidOperation:
        return None


def _extract_text(item: Tag, *candidates: str) -> str | None:
    for candidate in candidates:
        found = item.find(candidate)
        if found and found.text is not None:
            text = str(found.text).strip()
            if text:
                return text
    return None


class PublicApiCrawler:
    """Crawler for MOLIT apartment trade data (sale and rent endpoints)."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        region_codes: list[str] | None = None,
        trade_types: list[str] | None = None,
        months: int | None = None,
    ):
        self._settings = settings or get_settings()
        self._region_codes = region_codes or self._settings.target_region_codes
        self._trade_types = trade_types or self._settings.real_trade_types
        self._months = months or self._settings.public_data_fetch_months

    def _endpoint_groups(self) -> list[str]:
        groups: list[str] = []
        if "sale" in self._trade_types:
            groups.append("sale")
        if {"lease", "monthly"} & set(self._trade_types):
            groups.append("rent")
        return groups

    def _target_months(self) -> list[str]:
        """Generate target months in YYYYMM format, newest first."""
        now = datetime.now(UTC)
        months: list[str] = []
        for offset in range(self._months):
            year, month = shift_month(now.year, now.month, offset)
            months.append(f"{year}{month:02d}")
        return months

    async def _request_xml(
        self,
        client: httpx.AsyncClient,
        group: str,
        region_code: str,
        deal_ymd: str,
        page_no: int = 1,
    ) -> str:
        """Fetch XML response from public API."""
        params = {
            "serviceKey": self._settings.public_data_api_key,
            "LAWD_CD": region_code,
            "DEAL_YMD": deal_ymd,
            "pageNo": str(page_no),
            "numOfRows": str(PAGE_ROWS),
        }
        url = f"{self._settings.public_data_api_base_url.rstrip('/')}/{ENDPOINTS[group]}"
        response = await client.get(url, params=params)
        response.raise_for_status()
        return response.text

    def _parse_item(
        self, group: str, region_code: str, item: Tag
    ) -> RealTradeUpsert | None:
        contract_year = _to_int(_extract_text(item, "dealYear", "년"), 0)
        contract_month = _to_int(_extract_text(item, "dealMonth", "월"), 0)
        if contract_year == 0 or contract_month == 0:
            return None
        contract_day = _to_int(_extract_text(item, "dealDay", "일"), 1)

        if group == "sale":
            trade_type = "sale"
            price = _to_int(_extract_text(item, "dealAmount", "거래금액"), 0)
            monthly_rent = 0
            is_canceled = (_extract_text(item, "cdealType", "해제여부") or "") == "O"
        else:
            price = _to_int(_extract_text(item, "deposit", "보증금액"), 0)
            monthly_rent = _to_int(_extract_text(item, "monthlyRent", "월세금액"), 0)
            trade_type = "monthly" if monthly_rent > 0 else "lease"
            is_canceled = False

        if trade_type not in self._trade_types or price <= 0:
            return None

        return RealTradeUpsert(
            trade_type=trade_type,
            region_code=region_code,
            dong=_extract_text(item, "umdNm", "법정동") or "",
            apt_name=_extract_text(item, "aptNm", "아파트") or "",
            price=price * WON_PER_MANWON,
            monthly_rent=monthly_rent * WON_PER_MANWON,
            area_m2=_to_decimal(_extract_text(item, "excluUseAr", "전용면적")),
            floor=_to_int(_extract_text(item, "floor", "층"), 0),
            contract_year=contract_year,
            contract_month=contract_month,
            contract_day=contract_day,
            is_canceled=is_canceled,
        )

    def _parse_xml(
        self, group: str, region_code: str, xml_text: str
    ) -> tuple[int, list[RealTradeUpsert]]:
        soup = BeautifulSoup(xml_text, "xml")
        items = soup.find_all("item")
        parsed: list[RealTradeUpsert] = []
        for item in items:
            row = self._parse_item(group, region_code, item)
            if row is not None:
                parsed.append(row)
        return len(items), parsed

    async def run(self) -> CrawlResult[RealTradeUpsert]:
        """Fetch and parse official trade rows for target regions/months."""

        if not self._settings.public_data_api_key:
            logger.warning("Public data API key not configured, skipping real trades")
            return CrawlResult(count=0, rows=[], errors=["public_data_api_key missing"])

        all_rows: list[RealTradeUpsert] = []
        errors: list[str] = []
        timeout = httpx.Timeout(self._settings.public_data_request_timeout_seconds)
        async with httpx.AsyncClient(timeout=timeout) as client:
            for group in self._endpoint_groups():
                for region_code in self._region_codes:
                    for deal_ymd in self._target_months():
                        page_no = 1
                        while True:
                            try:
                                xml_text = await self._request_xml(
                                    client, group, region_code, deal_ymd, page_no
                                )
                            except httpx.HTTPStatusError as e:
                                error_msg = (
                                    f"HTTP {e.response.status_code} error for "
                                    f"group={group}, region_code={region_code}, "
                                    f"deal_ymd={deal_ymd}, page_no={page_no}"
                                )
                                logger.warning(error_msg)
                                errors.append(error_msg)
                                break
                            except httpx.HTTPError as e:
                                error_msg = (
                                    f"Request error for group={group}, "
                                    f"region_code={region_code}, deal_ymd={deal_ymd}, "
                                    f"page_no={page_no}: {e!r}"
                                )
                                logger.warning(error_msg)
                                errors.append(error_msg)
                                break

                            raw_count, rows = self._parse_xml(
                                group, region_code, xml_text
                            )
                            all_rows.extend(rows)
                            if raw_count < PAGE_ROWS:
                                break
                            page_no += 1

        logger.info(
            "Fetched %d real trades with %d errors", len(all_rows), len(errors)
        )
        return CrawlResult(count=len(all_rows), rows=all_rows, errors=errors)
