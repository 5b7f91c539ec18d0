from __future__ import annotations

from decimal import Decimal

import pytest

from src.config import REGIONS, resolve_regions
from src.config.regions import TileRegion
from src.crawlers.tiles import enumerate_tiles

pytestmark = pytest.mark.anyio


def _region(name: str = "test") -> TileRegion:
    return TileRegion(
        name=name,
        lat_min=Decimal("37.00"),
        lat_max=Decimal("37.10"),
        lon_min=Decimal("127.00"),
        lon_max=Decimal("127.08"),
        step=Decimal("0.04"),
    )


async def test_enumerate_tiles_is_row_major_and_covers_region() -> None:
    tiles = enumerate_tiles([_region()])

    # 0.10 / 0.04 -> 3 rows, 0.08 / 0.04 -> 2 cols
    assert len(tiles) == 6
    assert [(tile.row, tile.col) for tile in tiles] == [
        (0, 0),
        (0, 1),
        (1, 0),
        (1, 1),
        (2, 0),
        (2, 1),
    ]
    assert [tile.index for tile in tiles] == list(range(6))
    assert tiles[-1].top >= Decimal("37.10")
    assert tiles[0].key == "test:0:0"
    assert tiles[0].contains(Decimal("37.01"), Decimal("127.01"))
    assert not tiles[0].contains(Decimal("37.04"), Decimal("127.01"))


async def test_enumerate_tiles_is_deterministic_across_regions() -> None:
    regions = [_region("a"), _region("b")]

    first = enumerate_tiles(regions)
    second = enumerate_tiles(regions)

    assert first == second
    assert first[6].region == "b"
    assert first[6].index == 6


async def test_resolve_regions_by_name_part() -> None:
    assert resolve_regions([]) == list(REGIONS)
    assert resolve_regions(["all"]) == list(REGIONS)
    assert resolve_regions(["서울"])[0].name == "서울/경기/인천"

    with pytest.raises(ValueError):
        resolve_regions(["atlantis"])
