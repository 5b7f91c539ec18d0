from __future__ import annotations

import pytest
from pydantic import ValidationError

from src.config import Settings

pytestmark = pytest.mark.anyio


async def test_comma_separated_env_lists(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CRAWL_TRADE_TYPES", "sale, lease")
    monkeypatch.setenv("BARGAIN_KEYWORDS", "급매,마피")
    monkeypatch.setenv("CRAWL_REGIONS", "서울,제주")

    settings = Settings()

    assert settings.crawl_trade_types == ["sale", "lease"]
    assert settings.bargain_keywords == ["급매", "마피"]
    assert settings.crawl_regions == ["서울", "제주"]


async def test_defaults_match_documented_knobs() -> None:
    settings = Settings()

    assert settings.score_weight_variant == "price_score"
    assert settings.score_threshold is None
    assert settings.governor_start_delay_seconds == 4.0
    assert settings.governor_max_delay_seconds == 12.0
    assert settings.governor_batch_size == 20
    assert "급매" in settings.bargain_keywords


async def test_invalid_choices_are_rejected() -> None:
    with pytest.raises(ValidationError):
        Settings(crawl_trade_types=["rent"])
    with pytest.raises(ValidationError):
        Settings(score_weight_variant="fancy")
    with pytest.raises(ValidationError):
        Settings(governor_min_delay_seconds=10.0, governor_max_delay_seconds=5.0)
