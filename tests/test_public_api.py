from __future__ import annotations

from decimal import Decimal

import pytest

from src.config import Settings
from src.crawlers.public_api import PublicApiCrawler

pytestmark = pytest.mark.anyio

SALE_XML = """<?xml version="1.0" encoding="UTF-8"?>
<response><body><items>
<item><aptNm>래미안</aptNm><dealAmount>245,000</dealAmount><dealYear>2026</dealYear>
<dealMonth>9</dealMonth><dealDay>14</dealDay><excluUseAr>84.97</excluUseAr>
<floor>12</floor><umdNm>대치동</umdNm><cdealType></cdealType></item>
<item><aptNm>래미안</aptNm><dealAmount>250,000</dealAmount><dealYear>2026</dealYear>
<dealMonth>9</dealMonth><dealDay>20</dealDay><excluUseAr>84.97</excluUseAr>
<floor>3</floor><umdNm>대치동</umdNm><cdealType>O</cdealType></item>
<item><aptNm>무효</aptNm><dealAmount></dealAmount><dealYear></dealYear></item>
</items></body></response>"""

RENT_XML = """<?xml version="1.0" encoding="UTF-8"?>
<response><body><items>
<item><aptNm>래미안</aptNm><deposit>90,000</deposit><monthlyRent>0</monthlyRent>
<dealYear>2026</dealYear><dealMonth>8</dealMonth><dealDay>2</dealDay>
<excluUseAr>59.9</excluUseAr><floor>5</floor><umdNm>대치동</umdNm></item>
<item><aptNm>래미안</aptNm><deposit>10,000</deposit><monthlyRent>250</monthlyRent>
<dealYear>2026</dealYear><dealMonth>8</dealMonth><dealDay>3</dealDay>
<excluUseAr>59.9</excluUseAr><floor>7</floor><umdNm>대치동</umdNm></item>
</items></body></response>"""


def _crawler(trade_types: list[str]) -> PublicApiCrawler:
    return PublicApiCrawler(
        Settings(), region_codes=["11680"], trade_types=trade_types, months=2
    )


async def test_parse_sale_xml_flags_canceled_deals() -> None:
    raw_count, rows = _crawler(["sale"])._parse_xml("sale", "11680", SALE_XML)

    assert raw_count == 3
    assert len(rows) == 2
    assert rows[0].price == 2_450_000_000
    assert rows[0].area_m2 == Decimal("84.97")
    assert rows[0].is_canceled is False
    assert rows[1].is_canceled is True
    assert rows[0].contract_month == 9


async def test_parse_rent_xml_splits_lease_and_monthly() -> None:
    _, rows = _crawler(["lease", "monthly"])._parse_xml("rent", "11680", RENT_XML)

    assert [row.trade_type for row in rows] == ["lease", "monthly"]
    assert rows[0].price == 900_000_000
    assert rows[1].monthly_rent == 2_500_000


async def test_parse_rent_xml_honours_trade_type_filter() -> None:
    _, rows = _crawler(["lease"])._parse_xml("rent", "11680", RENT_XML)

    assert [row.trade_type for row in rows] == ["lease"]


async def test_endpoint_groups_and_months() -> None:
    crawler = _crawler(["sale", "monthly"])

    assert crawler._endpoint_groups() == ["sale", "rent"]
    months = crawler._target_months()
    assert len(months) == 2
    assert months[0] > months[1]


async def test_run_without_api_key_returns_error() -> None:
    crawler = PublicApiCrawler(Settings(public_data_api_key=""), months=1)

    result = await crawler.run()

    assert result.count == 0
    assert result.errors == ["public_data_api_key missing"]
