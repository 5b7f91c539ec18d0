"""Tile grid definitions for the nationwide listing crawl."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal


@dataclass(frozen=True, slots=True)
class TileRegion:
    """Rectangular crawl area split into square tiles of ``step`` degrees."""

    name: str
    lat_min: Decimal
    lat_max: Decimal
    lon_min: Decimal
    lon_max: Decimal
    step: Decimal


def _region(
    name: str, lat_min: str, lat_max: str, lon_min: str, lon_max: str, step: str
) -> TileRegion:
    return TileRegion(
        name=name,
        lat_min=Decimal(lat_min),
        lat_max=Decimal(lat_max),
        lon_min=Decimal(lon_min),
        lon_max=Decimal(lon_max),
        step=Decimal(step),
    )


REGIONS: tuple[TileRegion, ...] = (
    _region("서울/경기/인천", "37.20", "37.75", "126.60", "127.40", "0.04"),
    _region("부산/울산/경남", "34.90", "35.60", "128.70", "129.40", "0.05"),
    _region("대구/경북", "35.70", "36.20", "128.40", "129.10", "0.05"),
    _region("대전/세종/충남", "36.20", "36.65", "126.70", "127.50", "0.05"),
    _region("충북", "36.50", "37.00", "127.30", "127.90", "0.05"),
    _region("광주/전남", "34.70", "35.25", "126.60", "127.10", "0.05"),
    _region("전북", "35.60", "36.10", "126.80", "127.30", "0.05"),
    _region("강원", "37.30", "37.95", "127.60", "129.10", "0.06"),
    _region("제주", "33.20", "33.55", "126.15", "126.95", "0.05"),
)


def resolve_regions(names: list[str] | None) -> list[TileRegion]:
    """Return regions matching ``names`` by full name or one of its parts, or all regions."""

    if not names or any(name.lower() == "all" for name in names):
        return list(REGIONS)

    selected: list[TileRegion] = []
    for name in names:
        matches = [
            region
            for region in REGIONS
            if region.name == name or name in region.name.split("/")
        ]
        if not matches:
            valid = ", ".join(region.name for region in REGIONS)
            raise ValueError(f"Unknown region: {name}. Valid regions are: {valid}")
        for region in matches:
            if region not in selected:
                selected.append(region)
    return selected
