"""SQLAlchemy ORM models."""

from src.models.bargain_detection import BargainDetection
from src.models.complex import Complex
from src.models.crawl_run import CrawlRun
from src.models.listing import Listing
from src.models.price_history import PriceHistory
from src.models.real_trade import RealTrade

__all__ = [
    "BargainDetection",
    "Complex",
    "CrawlRun",
    "Listing",
    "PriceHistory",
    "RealTrade",
]
