"""Crawl/score run bookkeeping that never interrupts the run it records."""

from __future__ import annotations

import logging
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import Final

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.repositories import create_run, fetch_resume_run, update_run
from src.db.session import session_context
from src.models.crawl_run import (
    RUN_STATUS_FAILED,
    RUN_STATUS_PARTIAL,
    RUN_STATUS_RUNNING,
    RUN_STATUS_SUCCESS,
)

logger = logging.getLogger(__name__)

MAX_STORED_ERRORS: Final = 100

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]


@dataclass(slots=True)
class RunCounters:
    tiles_total: int = 0
    tiles_completed: int = 0
    tiles_failed: int = 0
    requests_made: int = 0
    blocks_encountered: int = 0
    listings_seen: int = 0
    listings_new: int = 0
    listings_updated: int = 0
    price_changes: int = 0
    listings_removed: int = 0
    listings_scored: int = 0
    bargains_found: int = 0
    error_count: int = 0


class RunLedger:
    """Records one run's lifecycle in ``crawl_runs``.

    Counters live in memory and are flushed on every checkpoint. Every
    database write is best-effort: errors are logged and swallowed so the
    crawl itself keeps going.
    """

    def __init__(
        self,
        *,
        mode: str,
        region: str,
        session_factory: SessionFactory = session_context,
    ) -> None:
        self.mode = mode
        self.region = region
        self.run_id: int | None = None
        self.status = RUN_STATUS_RUNNING
        self.counters = RunCounters()
        self.errors: list[str] = []
        self.last_tile_index: int | None = None
        self._session_factory = session_factory

    async def resume_cursor(self) -> int | None:
        """Index of the first tile not yet completed by the last unfinished run."""

        try:
            async with self._session_factory() as session:
                previous = await fetch_resume_run(
                    session, mode=self.mode, region=self.region
                )
        except SQLAlchemyError:
            logger.warning("Could not read resume cursor", exc_info=True)
            return None
        if previous is None or previous.last_tile_index is None:
            return None
        logger.info(
            "Resuming after run #%d at tile index %d",
            previous.id,
            previous.last_tile_index + 1,
        )
        return previous.last_tile_index + 1

    async def start(
        self, options: dict[str, object] | None = None, *, start_index: int = 0
    ) -> int | None:
        # A resumed run starts at the cursor of the run it continues.
        if start_index > 0:
            self.last_tile_index = start_index - 1
        try:
            async with self._session_factory() as session:
                run = await create_run(
                    session,
                    mode=self.mode,
                    region=self.region,
                    options=options or {},
                    last_tile_index=self.last_tile_index,
                )
                self.run_id = run.id
        except SQLAlchemyError:
            logger.warning("Failed to create run ledger row", exc_info=True)
            return None
        logger.info("Started %s run #%d for region=%s", self.mode, self.run_id, self.region)
        return self.run_id

    def record(self, **increments: int) -> None:
        for name, value in increments.items():
            setattr(self.counters, name, getattr(self.counters, name) + value)

    def add_error(self, message: str) -> None:
        self.counters.error_count += 1
        if len(self.errors) < MAX_STORED_ERRORS:
            self.errors.append(message)

    async def checkpoint(self, tile_index: int | None = None) -> None:
        if tile_index is not None:
            self.last_tile_index = tile_index
        await self._write(last_tile_index=self.last_tile_index)

    def resolve_status(self) -> str:
        if self.status == RUN_STATUS_FAILED:
            return RUN_STATUS_FAILED
        if self.counters.tiles_failed or self.counters.error_count:
            return RUN_STATUS_PARTIAL
        return RUN_STATUS_SUCCESS

    async def finish(self, *, failed: bool = False) -> str:
        if failed:
            self.status = RUN_STATUS_FAILED
        self.status = self.resolve_status()
        await self._write(
            status=self.status,
            finished_at=datetime.now(UTC),
            last_tile_index=self.last_tile_index,
        )
        logger.info(
            "Run #%s finished with status=%s (%s)",
            self.run_id,
            self.status,
            ", ".join(f"{k}={v}" for k, v in asdict(self.counters).items()),
        )
        return self.status

    def summary(self) -> dict[str, object]:
        return {
            "run_id": self.run_id,
            "mode": self.mode,
            "region": self.region,
            "status": self.status,
            "last_tile_index": self.last_tile_index,
            **asdict(self.counters),
            "errors": list(self.errors[:10]),
        }

    async def _write(self, **values: object) -> None:
        if self.run_id is None:
            return
        try:
            async with self._session_factory() as session:
                await update_run(
                    session,
                    self.run_id,
                    **asdict(self.counters),
                    errors=list(self.errors),
                    **values,
                )
        except SQLAlchemyError:
            logger.warning("Failed to update run #%d ledger", self.run_id, exc_info=True)
