"""Crawler implementations."""

from src.crawlers.base import (
    CrawlResult,
    ListingSchemaMismatchError,
    TileCrawlError,
    UpstreamBlockedError,
)
from src.crawlers.governor import GovernorConfig, RateGovernor
from src.crawlers.naver import NaverTileCrawler
from src.crawlers.public_api import PublicApiCrawler
from src.crawlers.tiles import Tile, enumerate_tiles

__all__ = [
    "CrawlResult",
    "GovernorConfig",
    "ListingSchemaMismatchError",
    "NaverTileCrawler",
    "PublicApiCrawler",
    "RateGovernor",
    "Tile",
    "TileCrawlError",
    "UpstreamBlockedError",
    "enumerate_tiles",
]
