"""Database session and repository utilities."""

from src.db.session import get_db_session, get_engine, get_sessionmaker, session_context
from src.db.repositories import (
    ListingSnapshot,
    PriceHistoryEntry,
    RealTradeUpsert,
    ScoreUpdate,
    fetch_active_listings_in_scope,
    fetch_bargains,
    fetch_price_history,
    fetch_runs,
    upsert_real_trades,
)

__all__ = [
    "get_db_session",
    "get_engine",
    "get_sessionmaker",
    "session_context",
    "ListingSnapshot",
    "PriceHistoryEntry",
    "RealTradeUpsert",
    "ScoreUpdate",
    "fetch_active_listings_in_scope",
    "fetch_bargains",
    "fetch_price_history",
    "fetch_runs",
    "upsert_real_trades",
]
