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
from src.db.session import dispose_engine
from src.services.pipeline import rescore_all
from src.services.scorer import WEIGHT_TABLES


@dataclass(frozen=True)
class CliArgs:
    dry_run: bool
    weights: str | None
    threshold: int | None
    log_level: str


def _parse_args(argv: list[str] | None = None) -> CliArgs:
    parser = argparse.ArgumentParser(
        description="Rescore every active listing and print the score distribution."
    )
    _ = parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Compute scores and distribution without writing anything.",
    )
    _ = parser.add_argument(
        "--weights",
        choices=sorted(WEIGHT_TABLES),
        default=None,
        help="Weight table to use (default: settings).",
    )
    _ = parser.add_argument(
        "--threshold",
        type=int,
        default=None,
        help="Bargain threshold override, 0-100.",
    )
    _ = parser.add_argument("--log-level", default="INFO")

    parsed = parser.parse_args(argv)
    threshold = cast(int | None, parsed.threshold)
    if threshold is not None and not 0 <= threshold <= 100:
        parser.error("--threshold must be between 0 and 100")

    return CliArgs(
        dry_run=cast(bool, parsed.dry_run),
        weights=cast(str | None, parsed.weights),
        threshold=threshold,
        log_level=cast(str, parsed.log_level).upper(),
    )


async def _run(args: CliArgs) -> dict[str, object]:
    overrides: dict[str, object] = {}
    if args.weights is not None:
        overrides["score_weight_variant"] = args.weights
    if args.threshold is not None:
        overrides["score_threshold"] = args.threshold
    settings = get_settings()
    if overrides:
        settings = settings.model_copy(update=overrides)
    return await rescore_all(settings, dry_run=args.dry_run)


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

    print(json.dumps({"status": "success", **report}, ensure_ascii=False, indent=2))
    return 0


def main() -> None:
    raise SystemExit(asyncio.run(_async_main()))


if __name__ == "__main__":
    main()
