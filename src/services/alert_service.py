"""Summarize newly detected bargains for notification channels."""

from __future__ import annotations

import logging
from typing import Final

from sqlalchemy.ext.asyncio import AsyncSession

from src.db.repositories import fetch_unnotified_detections, mark_detections_notified
from src.models.bargain_detection import BargainDetection
from src.models.listing import Listing
from src.notifications.base import Notifier

logger = logging.getLogger(__name__)

TRADE_TYPE_LABELS: Final = {"sale": "매매", "lease": "전세", "monthly": "월세"}
DETECTION_LABELS: Final = {"keyword": "키워드", "price": "가격"}
MAX_LINES: Final = 20


def format_won(amount: int | None) -> str:
    """Render won amounts as 억/만 text ("4억 8,000만")."""

    if amount is None:
        return "-"
    manwon = amount // 10_000
    eok, rest = divmod(manwon, 10_000)
    if eok and rest:
        return f"{eok}억 {rest:,}만"
    if eok:
        return f"{eok}억"
    return f"{rest:,}만"


def format_detection_line(detection: BargainDetection, listing: Listing) -> str:
    label = DETECTION_LABELS.get(detection.detection_type, detection.detection_type)
    trade = TRADE_TYPE_LABELS.get(listing.trade_type, listing.trade_type)
    area = f"{listing.exclusive_area}㎡" if listing.exclusive_area is not None else ""
    line = (
        f"[{label}] {listing.building_name or listing.complex_key} {area} "
        f"{trade} {format_won(listing.price)} (점수 {detection.bargain_score})"
    )
    if detection.keyword:
        line += f" #{detection.keyword}"
    return line


async def notify_new_bargains(
    session: AsyncSession, notifier: Notifier, *, run_id: int | None = None
) -> int:
    """Send one message for unnotified detections; return how many were sent."""

    if not notifier.configured:
        logger.debug("Notifier not configured, leaving detections pending")
        return 0

    rows = await fetch_unnotified_detections(session, run_id=run_id, limit=MAX_LINES)
    if not rows:
        return 0

    lines = [format_detection_line(detection, listing) for detection, listing in rows]
    sent = await notifier.send("\n".join(lines), title=f"급매 {len(rows)}건 감지")
    if not sent:
        logger.info("Bargain notification not delivered, leaving detections pending")
        return 0

    await mark_detections_notified(session, [detection.id for detection, _ in rows])
    return len(rows)
