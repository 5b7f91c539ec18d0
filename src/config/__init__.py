"""Configuration package."""

from src.config.regions import REGIONS, TileRegion, resolve_regions
from src.config.settings import Settings, get_settings

__all__ = ["REGIONS", "Settings", "TileRegion", "get_settings", "resolve_regions"]
