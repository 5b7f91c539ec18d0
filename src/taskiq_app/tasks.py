"""Taskiq tasks for scheduled bargain crawls and real-trade ingestion."""

import logging
from typing import Any, cast

from src.config import get_settings
from src.crawlers.public_api import PublicApiCrawler
from src.db.repositories import RealTradeUpsert, upsert_real_trades
from src.db.session import session_context
from src.notifications.telegram import TelegramNotifier
from src.services.pipeline import BargainPipeline, CrawlOptions, rescore_all
from src.taskiq_app.broker import broker
from src.taskiq_app.dedup import (
    acquire_dedup_lock,
    build_dedup_key,
    crawl_lock_key,
    execution_lock,
)

logger = logging.getLogger(__name__)
settings = get_settings()


async def _persist_real_trades(rows: list[RealTradeUpsert]) -> int:
    async with session_context() as session:
        return await upsert_real_trades(session, rows)


async def _run_crawl(mode: str, *, resume: bool = False) -> dict[str, object]:
    async with execution_lock(
        crawl_lock_key(), settings.crawl_dedup_ttl_seconds
    ) as acquired:
        if not acquired:
            logger.info("crawl_bargains_%s skipped due to dedup lock", mode)
            return {"mode": mode, "status": "skipped_duplicate_execution"}

        pipeline = BargainPipeline(settings, notifier=TelegramNotifier(settings))
        return await pipeline.run(
            CrawlOptions(mode=mode, regions=tuple(settings.crawl_regions), resume=resume)
        )


@broker.task(
    task_name="crawl_bargains_incremental",
    schedule=[{"cron": "15 */6 * * *"}],
)
async def crawl_bargains_incremental() -> dict[str, object]:
    return await _run_crawl("incremental")


@broker.task(
    task_name="crawl_bargains_full",
    schedule=[{"cron": "0 3 * * *"}],
)
async def crawl_bargains_full(resume: bool = True) -> dict[str, object]:
    return await _run_crawl("full", resume=resume)


@broker.task(
    task_name="collect_real_trades",
    schedule=[{"cron": "0 5 * * *"}],
    retry_on_error=True,
    max_retries=3,
)
async def collect_real_trades() -> dict[str, object]:
    dedup_key = build_dedup_key(
        scope="execution", task_name="collect_real_trades", fingerprint="default"
    )
    async with execution_lock(dedup_key, settings.crawl_dedup_ttl_seconds) as acquired:
        if not acquired:
            logger.info("collect_real_trades skipped due to dedup lock")
            return {"count": 0, "status": "skipped_duplicate_execution"}

        crawler = PublicApiCrawler(settings)
        result = await crawler.run()
        inserted = await _persist_real_trades(result.rows)
        return {
            "count": inserted,
            "fetched": result.count,
            "errors": len(result.errors),
            "status": "ok" if not result.errors else "partial",
        }


@broker.task(
    task_name="rescore_bargains",
    schedule=[{"cron": "30 5 * * *"}],
)
async def rescore_bargains() -> dict[str, object]:
    # Same lock as the crawls.
    async with execution_lock(
        crawl_lock_key(), settings.crawl_dedup_ttl_seconds
    ) as acquired:
        if not acquired:
            logger.info("rescore_bargains skipped due to dedup lock")
            return {"status": "skipped_duplicate_execution"}
        return await rescore_all(settings)


async def _enqueue_once(task: object, task_name: str, fingerprint: str) -> dict[str, object]:
    dedup_key = build_dedup_key(
        scope="enqueue", task_name=task_name, fingerprint=fingerprint
    )
    lock_acquired = await acquire_dedup_lock(
        dedup_key, settings.crawl_dedup_ttl_seconds
    )
    if not lock_acquired:
        return {"enqueued": False, "reason": "duplicate_enqueue"}

    task_kicker = cast(Any, task)
    kicked = await task_kicker.kiq()
    return {"enqueued": True, "task_id": kicked.task_id}


async def enqueue_crawl_bargains(
    *, mode: str = "incremental", fingerprint: str = "manual"
) -> dict[str, object]:
    """Enqueue a bargain crawl once per dedup window."""

    if mode == "full":
        return await _enqueue_once(crawl_bargains_full, "crawl_bargains_full", fingerprint)
    return await _enqueue_once(
        crawl_bargains_incremental, "crawl_bargains_incremental", fingerprint
    )


async def enqueue_collect_real_trades(*, fingerprint: str = "manual") -> dict[str, object]:
    return await _enqueue_once(collect_real_trades, "collect_real_trades", fingerprint)
