"""Service layer for crawl orchestration and bargain queries."""

from src.services.bargain_service import BargainService
from src.services.differ import DiffOutcome, SnapshotDiffer, plan_diff
from src.services.ledger import RunLedger
from src.services.pipeline import BargainPipeline, CrawlOptions, PersistenceError
from src.services.scorer import BargainScorer, score_listing

__all__ = [
    "BargainPipeline",
    "BargainScorer",
    "BargainService",
    "CrawlOptions",
    "DiffOutcome",
    "PersistenceError",
    "RunLedger",
    "SnapshotDiffer",
    "plan_diff",
    "score_listing",
]
