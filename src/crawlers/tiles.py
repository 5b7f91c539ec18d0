"""Deterministic tile enumeration over the crawl regions."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_CEILING, Decimal

from src.config.regions import TileRegion


@dataclass(frozen=True, slots=True)
class Tile:
    index: int
    region: str
    row: int
    col: int
    btm: Decimal
    lft: Decimal
    top: Decimal
    rgt: Decimal

    @property
    def key(self) -> str:
        return f"{self.region}:{self.row}:{self.col}"

    @property
    def center_lat(self) -> Decimal:
        return (self.btm + self.top) / 2

    @property
    def center_lon(self) -> Decimal:
        return (self.lft + self.rgt) / 2

    def contains(self, lat: Decimal, lon: Decimal) -> bool:
        return self.btm <= lat < self.top and self.lft <= lon < self.rgt


def _steps(low: Decimal, high: Decimal, step: Decimal) -> int:
    return int(((high - low) / step).to_integral_value(rounding=ROUND_CEILING))


def enumerate_tiles(regions: list[TileRegion]) -> list[Tile]:
    """Split regions into tiles, row-major, with a stable global index."""

    tiles: list[Tile] = []
    for region in regions:
        rows = _steps(region.lat_min, region.lat_max, region.step)
        cols = _steps(region.lon_min, region.lon_max, region.step)
        for row in range(rows):
            btm = region.lat_min + region.step * row
            for col in range(cols):
                lft = region.lon_min + region.step * col
                tiles.append(
                    Tile(
                        index=len(tiles),
                        region=region.name,
                        row=row,
                        col=col,
                        btm=btm,
                        lft=lft,
                        top=btm + region.step,
                        rgt=lft + region.step,
                    )
                )
    return tiles
