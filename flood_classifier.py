"""
Flood Cropland Mapper - Flood Classifier
========================================

Change detection and mask refinement:

1. Difference of the filtered during/pre rasters (dB)
2. Raw flood mask from Edge Otsu
3. Permanent water removal (occurrence >= 8 months/year)
4. Isolated pixel removal (connected component size)
5. Steep terrain removal (slope)
6. Cropland mask from land cover class and classification confidence
7. Flooded cropland = flood AND cropland

Every refinement only removes pixels from the flood mask.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from flood_config import ClassifierConfig, Config, EdgeOtsuParams
from edge_otsu import ThresholdResult, edge_otsu
from raster_grid import CancellationToken, Raster, check_same_grid

logger = logging.getLogger(__name__)


@dataclass
class AncillaryLayers:
    """Read-only layers aligned to the SAR grid."""

    water_occurrence: Raster  # months per year with water, 0-12
    slope: Raster  # degrees
    landcover: Raster  # discrete class codes
    landcover_confidence: Raster  # classification confidence, 0-100

    def layers(self) -> List[Raster]:
        return [self.water_occurrence, self.slope, self.landcover, self.landcover_confidence]


@dataclass
class FloodMasks:
    """Final masks (1 where valid) plus the intermediate products behind them."""

    flood: Raster
    cropland: Raster
    flooded_cropland: Raster
    raw_flood: Raster
    difference: Raster
    threshold: ThresholdResult


class FloodClassifier:
    """
    Turns pre/during filtered rasters and ancillary layers into flood,
    cropland and flooded-cropland masks.
    """

    def __init__(
        self,
        config: Optional[ClassifierConfig] = None,
        edge_otsu_params: Optional[EdgeOtsuParams] = None,
        max_pixels: int = Config.MAX_PIXELS,
        tile_size: int = Config.TILE_SIZE,
        max_workers: int = 1,
        cancel: Optional[CancellationToken] = None,
    ):
        self.config = config or ClassifierConfig()
        self.edge_otsu_params = (edge_otsu_params or EdgeOtsuParams()).with_defaults()
        self.max_pixels = max_pixels
        self.tile_size = tile_size
        self.max_workers = max_workers
        self.cancel = cancel

    def difference(self, pre: Raster, during: Raster) -> Raster:
        """during - pre in dB; strongly negative where new water appeared."""
        check_same_grid(pre, during)
        return during.subtract(pre).rename(self.edge_otsu_params.band_name)

    def remove_permanent_water(self, flood: Raster, occurrence: Raster) -> Raster:
        permanent = occurrence.gte(self.config.permanent_water_months)
        return flood.where(permanent, 0).self_mask()

    def remove_isolated(self, flood: Raster) -> Raster:
        connections = flood.connected_pixel_count(self.config.connected_pixels_max, eight_connected=True)
        return flood.update_mask(connections.gte(self.config.min_connected_pixels))

    def remove_steep(self, flood: Raster, slope: Raster) -> Raster:
        return flood.update_mask(slope.lt(self.config.max_slope_degrees))

    def cropland_mask(self, landcover: Raster, confidence: Raster) -> Raster:
        """Cropland class with confidence strictly above the accuracy threshold."""
        confident = confidence.gt(self.config.accuracy_threshold)
        cropland = landcover.eq(self.config.cropland_class).update_mask(confident)
        return cropland.self_mask().rename("cropland")

    def classify(self, pre: Raster, during: Raster, ancillary: AncillaryLayers, region=None) -> FloodMasks:
        """
        Run change detection and all refinements.

        Args:
            pre: filtered pre-event raster (dB)
            during: filtered during-event raster (dB)
            ancillary: aligned ancillary layers
            region: shapely geometry in the raster CRS (None = whole grid)

        Raises:
            GridMismatchError: any layer is on a different grid
            DegenerateHistogramError: Edge Otsu found no bimodal edge structure
        """
        check_same_grid(pre, during, *ancillary.layers())

        difference = self.difference(pre, during).clip(region)
        threshold = edge_otsu(
            difference,
            self.edge_otsu_params,
            region=region,
            max_pixels=self.max_pixels,
            tile_size=self.tile_size,
            max_workers=self.max_workers,
            cancel=self.cancel,
        )
        raw_flood = threshold.water

        flood = self.remove_permanent_water(raw_flood, ancillary.water_occurrence)
        logger.info(f"  Flood pixels after permanent water removal: {flood.valid_count}")
        flood = self.remove_isolated(flood)
        logger.info(f"  Flood pixels after noise removal: {flood.valid_count}")
        flood = self.remove_steep(flood, ancillary.slope).rename("flood")
        logger.info(f"  Flood pixels after slope filter: {flood.valid_count}")

        cropland = self.cropland_mask(ancillary.landcover, ancillary.landcover_confidence).clip(region)
        flooded_cropland = flood.update_mask(cropland).rename("flooded_cropland")
        logger.info(
            f"  Cropland pixels: {cropland.valid_count}, flooded cropland pixels: {flooded_cropland.valid_count}"
        )

        return FloodMasks(
            flood=flood,
            cropland=cropland,
            flooded_cropland=flooded_cropland,
            raw_flood=raw_flood,
            difference=difference,
            threshold=threshold,
        )
