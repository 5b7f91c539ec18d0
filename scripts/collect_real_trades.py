from __future__ import annotations

# ruff: noqa: E402

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import cast

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from sqlalchemy.exc import SQLAlchemyError

from src.config import get_settings
from src.crawlers.public_api import PublicApiCrawler
from src.db.repositories import upsert_real_trades
from src.db.session import dispose_engine, session_context

VALID_TRADE_TYPES = ("sale", "lease", "monthly")


@dataclass(frozen=True)
class CliArgs:
    months: int | None
    sgg_codes: list[str]
    trade_types: list[str]
    log_level: str


def _split_csv(raw_value: str) -> list[str]:
    return [part.strip() for part in raw_value.split(",") if part.strip()]


def _parse_args(argv: list[str] | None = None) -> CliArgs:
    parser = argparse.ArgumentParser(
        description="Collect official apartment real-trade records for scoring."
    )
    _ = parser.add_argument(
        "--months",
        type=int,
        default=None,
        help="Months back from the current month (default: settings).",
    )
    _ = parser.add_argument(
        "--sgg-codes",
        default="",
        help="Comma-separated 5-digit district codes (default: settings).",
    )
    _ = parser.add_argument(
        "--trade-types",
        default="",
        help="Comma-separated trade types (default: settings).",
    )
    _ = parser.add_argument("--log-level", default="INFO")

    parsed = parser.parse_args(argv)
    months = cast(int | None, parsed.months)
    if months is not None and months < 1:
        parser.error("--months must be >= 1")

    sgg_codes = _split_csv(cast(str, parsed.sgg_codes))
    for code in sgg_codes:
        if len(code) != 5 or not code.isdigit():
            parser.error(f"invalid district code: {code}")

    trade_types = _split_csv(cast(str, parsed.trade_types))
    invalid = sorted(set(trade_types) - set(VALID_TRADE_TYPES))
    if invalid:
        parser.error(f"unknown trade types: {', '.join(invalid)}")

    return CliArgs(
        months=months,
        sgg_codes=sgg_codes,
        trade_types=trade_types,
        log_level=cast(str, parsed.log_level).upper(),
    )


async def _run(args: CliArgs) -> dict[str, object]:
    crawler = PublicApiCrawler(
        get_settings(),
        region_codes=args.sgg_codes or None,
        trade_types=args.trade_types or None,
        months=args.months,
    )
    result = await crawler.run()
    async with session_context() as session:
        inserted = await upsert_real_trades(session, result.rows)
    return {
        "status": "success" if not result.errors else "partial",
        "fetched": result.count,
        "inserted": inserted,
        "errors": result.errors[:10],
    }


async def _async_main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=args.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        report = await _run(args)
    except SQLAlchemyError as exc:
        print(json.dumps({"status": "failed", "failures": [str(exc)]}, ensure_ascii=False))
        return 2
    finally:
        await dispose_engine()

    print(json.dumps(report, ensure_ascii=False, indent=2))
    return 0 if report["status"] == "success" else 1


def main() -> None:
    raise SystemExit(asyncio.run(_async_main()))


if __name__ == "__main__":
    main()
