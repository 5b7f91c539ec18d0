"""Reconcile crawled snapshots against persisted listing state."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from src.db.repositories import (
    ListingSnapshot,
    PriceHistoryEntry,
    append_price_history,
    fetch_active_listings_in_scope,
    fetch_listings_by_article_nos,
    insert_listing,
    mark_listings_removed,
    refresh_listing,
    upsert_complexes,
)
from src.models.listing import LISTING_STATUS_REMOVED, Listing

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PriceChange:
    listing: Listing
    snapshot: ListingSnapshot


@dataclass(slots=True)
class DiffPlan:
    """Changes needed to bring one scope in line with its snapshot set."""

    new: list[ListingSnapshot] = field(default_factory=list)
    unchanged: list[tuple[Listing, ListingSnapshot]] = field(default_factory=list)
    price_changed: list[PriceChange] = field(default_factory=list)
    removed: list[Listing] = field(default_factory=list)
    reappeared: list[str] = field(default_factory=list)
    text_changed: set[str] = field(default_factory=set)


@dataclass(slots=True)
class DiffOutcome:
    seen: int = 0
    new: int = 0
    updated: int = 0
    price_changes: int = 0
    removed: int = 0
    affected_listing_ids: set[int] = field(default_factory=set)
    complex_ids: set[int] = field(default_factory=set)

    def merge(self, other: DiffOutcome) -> None:
        self.seen += other.seen
        self.new += other.new
        self.updated += other.updated
        self.price_changes += other.price_changes
        self.removed += other.removed
        self.affected_listing_ids |= other.affected_listing_ids
        self.complex_ids |= other.complex_ids


def _price_fields(listing: Listing) -> tuple[int | None, int | None, int | None]:
    return (listing.deal_price, listing.warranty_price, listing.rent_price)


def plan_diff(
    snapshots: list[ListingSnapshot],
    known: dict[str, Listing],
    scope_active: list[Listing],
    *,
    scope_complete: bool,
) -> DiffPlan:
    """Compute new/unchanged/price-changed/removed sets for one scope.

    ``known`` holds persisted listings (any status) for the snapshot article
    numbers, ``scope_active`` the active listings of the scope. Removals are
    inferred only when ``scope_complete`` is true. Removed listings that show
    up again stay removed.
    """

    plan = DiffPlan()
    latest: dict[str, ListingSnapshot] = {}
    for snapshot in snapshots:
        latest[snapshot.article_no] = snapshot

    for article_no, snapshot in latest.items():
        listing = known.get(article_no)
        if listing is None:
            plan.new.append(snapshot)
            continue
        if listing.status == LISTING_STATUS_REMOVED:
            plan.reappeared.append(article_no)
            continue
        if (listing.description or None) != (snapshot.description or None) or (
            listing.tags or []
        ) != snapshot.tags:
            plan.text_changed.add(article_no)
        if _price_fields(listing) == snapshot.price_fields:
            plan.unchanged.append((listing, snapshot))
        else:
            plan.price_changed.append(PriceChange(listing=listing, snapshot=snapshot))

    if scope_complete:
        plan.removed = [
            listing for listing in scope_active if listing.article_no not in latest
        ]

    return plan


class SnapshotDiffer:
    """Apply diff plans for crawled scopes within one session."""

    def __init__(self, session: AsyncSession, *, run_id: int | None = None) -> None:
        self._session = session
        self._run_id = run_id

    async def merge_scope(
        self,
        snapshots: list[ListingSnapshot],
        *,
        trade_type: str,
        scope_complete: bool,
        now: datetime,
        tile_key: str | None = None,
        complex_key: str | None = None,
    ) -> DiffOutcome:
        """Merge one tile/complex x trade type scope. Does not commit."""

        complex_ids = await upsert_complexes(self._session, snapshots)
        known = await fetch_listings_by_article_nos(
            self._session, sorted({snap.article_no for snap in snapshots})
        )
        scope_active: list[Listing] = []
        if scope_complete:
            scope_active = await fetch_active_listings_in_scope(
                self._session,
                trade_type=trade_type,
                tile_key=tile_key,
                complex_key=complex_key,
            )

        plan = plan_diff(snapshots, known, scope_active, scope_complete=scope_complete)
        outcome = await self.apply(plan, complex_ids=complex_ids, now=now)
        outcome.complex_ids = set(complex_ids.values())
        return outcome

    async def apply(
        self, plan: DiffPlan, *, complex_ids: dict[str, int], now: datetime
    ) -> DiffOutcome:
        outcome = DiffOutcome(
            seen=len(plan.new) + len(plan.unchanged) + len(plan.price_changed)
        )

        for article_no in plan.reappeared:
            logger.info("Removed listing %s reappeared, keeping it removed", article_no)

        new_rows = [
            insert_listing(
                self._session,
                snapshot,
                complex_id=complex_ids.get(snapshot.complex_key),
                seen_at=now,
            )
            for snapshot in plan.new
        ]

        for listing, snapshot in plan.unchanged:
            refresh_listing(listing, snapshot, seen_at=now)
            if listing.article_no in plan.text_changed:
                outcome.affected_listing_ids.add(listing.id)

        for change in plan.price_changed:
            listing = change.listing
            append_price_history(
                self._session,
                PriceHistoryEntry(
                    listing_id=listing.id,
                    price=listing.price,
                    deal_price=listing.deal_price,
                    warranty_price=listing.warranty_price,
                    rent_price=listing.rent_price,
                    price_text=listing.price_text,
                    recorded_at=now,
                    run_id=self._run_id,
                ),
            )
            logger.info(
                "Price change on %s: %s -> %s",
                listing.article_no,
                listing.price,
                change.snapshot.price,
            )
            refresh_listing(listing, change.snapshot, seen_at=now)
            outcome.affected_listing_ids.add(listing.id)

        outcome.removed = mark_listings_removed(plan.removed, removed_at=now)

        await self._session.flush()
        outcome.affected_listing_ids.update(row.id for row in new_rows)
        outcome.new = len(new_rows)
        outcome.updated = len(plan.unchanged) + len(plan.price_changed)
        outcome.price_changes = len(plan.price_changed)
        return outcome
