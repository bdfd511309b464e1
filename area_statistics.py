"""
Flood Cropland Mapper - Area Statistics
=======================================

Pixel-area weighted aggregation of the output masks over the region:
hectares of flood, cropland and flooded cropland, and the share of
cropland that is flooded.
"""

import logging
import math
import operator
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from flood_config import Config, StatisticsConfig
from flood_classifier import FloodMasks
from flood_errors import UndefinedPercentageError
from raster_grid import CancellationToken, Raster, reduce_region

logger = logging.getLogger(__name__)

SQUARE_METERS_PER_HECTARE = 10_000


@dataclass
class FloodStatistics:
    """Hectare totals; percent is None when there is no cropland."""

    flood_ha: int
    cropland_ha: int
    flooded_cropland_ha: int
    flooded_cropland_percent: Optional[int]

    @property
    def percent_defined(self) -> bool:
        return self.flooded_cropland_percent is not None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def round_half_up(value: float) -> int:
    """Nearest integer, halves rounded up."""
    return int(math.floor(value + 0.5))


def mask_area_m2(
    mask: Raster,
    region=None,
    scale: Optional[float] = None,
    max_pixels: int = Config.MAX_PIXELS,
    tile_size: int = Config.TILE_SIZE,
    max_workers: int = 1,
    cancel: Optional[CancellationToken] = None,
) -> float:
    """Sum of mask value * pixel area (m^2) over the valid pixels inside ``region``."""
    return reduce_region(
        mask,
        reducer=lambda samples: float(samples.value_areas.sum()),
        merge=operator.add,
        initial=0.0,
        region=region,
        scale=scale,
        max_pixels=max_pixels,
        tile_size=tile_size,
        max_workers=max_workers,
        cancel=cancel,
    )


def mask_area_ha(mask: Raster, region=None, config: Optional[StatisticsConfig] = None,
                 cancel: Optional[CancellationToken] = None) -> int:
    config = config or StatisticsConfig()
    area = mask_area_m2(
        mask,
        region=region,
        scale=config.scale,
        max_pixels=config.max_pixels,
        tile_size=config.tile_size,
        max_workers=config.max_workers,
        cancel=cancel,
    )
    return round_half_up(area / SQUARE_METERS_PER_HECTARE)


def percentage(part: float, whole: float) -> int:
    """round(100 * part / whole); a zero ``whole`` has no defined percentage."""
    if whole == 0:
        raise UndefinedPercentageError(f"Percentage of {part} over zero is undefined")
    return round_half_up(100.0 * part / whole)


def compute_flood_statistics(
    masks: FloodMasks,
    region=None,
    config: Optional[StatisticsConfig] = None,
    cancel: Optional[CancellationToken] = None,
) -> FloodStatistics:
    """
    Hectares of the three masks, computed concurrently, and the flooded-cropland share.

    Raises:
        AggregationBudgetExceeded: a reduction visits more than max_pixels samples
        AggregationCancelled: the cancellation token fired
    """
    config = config or StatisticsConfig()
    layers = {
        "flood": masks.flood,
        "cropland": masks.cropland,
        "flooded_cropland": masks.flooded_cropland,
    }
    logger.info(f"Computing area statistics at {config.scale} m scale")
    with ThreadPoolExecutor(max_workers=len(layers)) as pool:
        futures = {
            name: pool.submit(mask_area_ha, layer, region, config, cancel)
            for name, layer in layers.items()
        }
        hectares = {name: future.result() for name, future in futures.items()}

    try:
        percent = percentage(hectares["flooded_cropland"], hectares["cropland"])
    except UndefinedPercentageError:
        logger.warning("No cropland in region: flooded cropland percentage is undefined")
        percent = None

    stats = FloodStatistics(
        flood_ha=hectares["flood"],
        cropland_ha=hectares["cropland"],
        flooded_cropland_ha=hectares["flooded_cropland"],
        flooded_cropland_percent=percent,
    )
    logger.info(f"Flood extent (ha): {stats.flood_ha}")
    logger.info(f"Cropland (ha): {stats.cropland_ha}")
    logger.info(f"Flooded cropland (ha): {stats.flooded_cropland_ha}")
    logger.info(
        f"Percentage (%) of cropland flooded: "
        f"{percent if percent is not None else 'undefined'}"
    )
    return stats
