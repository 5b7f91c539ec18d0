from __future__ import annotations

# ruff: noqa: E402

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Final, cast

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from src.config import get_settings, resolve_regions
from src.crawlers.base import UpstreamBlockedError
from src.db.session import dispose_engine
from src.notifications.telegram import TelegramNotifier
from src.services.pipeline import BargainPipeline, CrawlOptions, PersistenceError

EXIT_CODES: Final = {"success": 0, "partial": 1, "failed": 2}


@dataclass(frozen=True)
class CliArgs:
    regions: list[str]
    mode: str
    resume: bool
    complex_key: str | None
    trade_types: list[str]
    start_delay: float | None
    delay_step: float | None
    batch_size: int | None
    skip_score: bool
    notify: bool
    log_level: str


def _split_csv(raw_value: str) -> list[str]:
    return [part.strip() for part in raw_value.split(",") if part.strip()]


def _parse_args(argv: list[str] | None = None) -> CliArgs:
    parser = argparse.ArgumentParser(
        description="Crawl map tiles, diff listing state and score bargains."
    )
    _ = parser.add_argument(
        "--region",
        default="all",
        help="Comma-separated region names, or 'all' (default: all).",
    )
    _ = parser.add_argument(
        "--mode",
        choices=("full", "incremental"),
        default="full",
        help="Full crawl or newest-first incremental crawl (default: full).",
    )
    _ = parser.add_argument(
        "--resume",
        action="store_true",
        help="Continue after the last tile of an interrupted run.",
    )
    _ = parser.add_argument(
        "--complex",
        dest="complex_key",
        default=None,
        help="Crawl a single complex instead of tiles.",
    )
    _ = parser.add_argument(
        "--trade-types",
        default="",
        help="Comma-separated trade types (sale,lease,monthly). Defaults to settings.",
    )
    _ = parser.add_argument("--start-delay", type=float, default=None)
    _ = parser.add_argument("--delay-step", type=float, default=None)
    _ = parser.add_argument("--batch-size", type=int, default=None)
    _ = parser.add_argument(
        "--skip-score", action="store_true", help="Diff only, no scoring."
    )
    _ = parser.add_argument(
        "--notify", action="store_true", help="Send Telegram alerts for new bargains."
    )
    _ = parser.add_argument("--log-level", default="INFO")

    parsed = parser.parse_args(argv)
    raw_region = cast(str, parsed.region).strip()
    regions = [] if raw_region.lower() == "all" else _split_csv(raw_region)
    try:
        resolve_regions(regions)
    except ValueError as exc:
        parser.error(str(exc))

    trade_types = _split_csv(cast(str, parsed.trade_types))
    invalid = sorted(set(trade_types) - {"sale", "lease", "monthly"})
    if invalid:
        parser.error(f"unknown trade types: {', '.join(invalid)}")

    start_delay = cast(float | None, parsed.start_delay)
    if start_delay is not None and start_delay <= 0:
        parser.error("--start-delay must be > 0")
    delay_step = cast(float | None, parsed.delay_step)
    if delay_step is not None and delay_step <= 0:
        parser.error("--delay-step must be > 0")
    batch_size = cast(int | None, parsed.batch_size)
    if batch_size is not None and batch_size < 1:
        parser.error("--batch-size must be >= 1")

    return CliArgs(
        regions=regions,
        mode=cast(str, parsed.mode),
        resume=cast(bool, parsed.resume),
        complex_key=cast(str | None, parsed.complex_key),
        trade_types=trade_types,
        start_delay=start_delay,
        delay_step=delay_step,
        batch_size=batch_size,
        skip_score=cast(bool, parsed.skip_score),
        notify=cast(bool, parsed.notify),
        log_level=cast(str, parsed.log_level).upper(),
    )


def _to_options(args: CliArgs) -> CrawlOptions:
    return CrawlOptions(
        mode=args.mode,
        regions=tuple(args.regions),
        resume=args.resume,
        complex_key=args.complex_key,
        trade_types=tuple(args.trade_types),
        start_delay=args.start_delay,
        delay_step=args.delay_step,
        batch_size=args.batch_size,
        skip_score=args.skip_score,
    )


async def _run(
    args: CliArgs, pipeline: BargainPipeline | None = None
) -> dict[str, object]:
    if pipeline is None:
        settings = get_settings()
        notifier = TelegramNotifier(settings) if args.notify else None
        pipeline = BargainPipeline(settings, notifier=notifier)
    return await pipeline.run(_to_options(args))


def _exit_code(report: dict[str, object]) -> int:
    return EXIT_CODES.get(cast(str, report.get("status")), 2)


async def _async_main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=args.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        report = await _run(args)
    except (PersistenceError, UpstreamBlockedError) as exc:
        error_report = {
            "status": "failed",
            "executed_at": datetime.now(UTC).isoformat(),
            "failures": [str(exc)],
        }
        print(json.dumps(error_report, ensure_ascii=False, indent=2))
        return EXIT_CODES["failed"]
    finally:
        await dispose_engine()

    print(json.dumps(report, ensure_ascii=False, indent=2, default=str))
    return _exit_code(report)


def main() -> None:
    raise SystemExit(asyncio.run(_async_main()))


if __name__ == "__main__":
    main()
