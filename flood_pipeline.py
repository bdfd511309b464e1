#!/usr/bin/env python3
"""
================================================================================
FLOOD CROPLAND MAPPER - Pipeline
================================================================================

End-to-end flood and flooded-cropland mapping from pre/during-event SAR:

    1. Refined Lee speckle filtering of every band of both dates (concurrent)
    2. Change detection + Edge Otsu threshold on the configured polarisation
    3. Permanent water, isolated pixel and slope refinement
    4. Cropland mask and flooded cropland
    5. Area statistics over the region (hectares, percent of cropland flooded)

USAGE:
    from flood_pipeline import run_flood_mapping

    result = run_flood_mapping(
        pre={"VV": pre_vv}, during={"VV": during_vv},
        ancillary=AncillaryLayers(occurrence, slope, landcover, confidence),
        region=aoi,
    )
    result.statistics.flooded_cropland_ha

CLI:
    flood-cropland --pre pre_vv.tif --during during_vv.tif \\
        --occurrence occurrence.tif --slope slope.tif \\
        --landcover landcover.tif --landcover-proba landcover_proba.tif \\
        --region aoi.geojson --output results/
"""

import argparse
import json
import logging
import sys
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from area_statistics import FloodStatistics, compute_flood_statistics
from edge_otsu import plot_threshold_histogram
from flood_classifier import AncillaryLayers, FloodClassifier, FloodMasks
from flood_config import Config, PipelineConfig
from flood_errors import FloodMappingError
from presets import get_preset
from raster_grid import CancellationToken, Raster
from raster_io import read_raster, read_region
from speckle_filter import filter_bands

logger = logging.getLogger(__name__)


@dataclass
class FloodMappingResult:
    """Masks, statistics and filtered inputs of one run."""

    masks: FloodMasks
    statistics: FloodStatistics
    filtered: Dict[str, Raster]
    config: PipelineConfig

    @property
    def threshold(self) -> float:
        return self.masks.threshold.threshold

    def to_dict(self) -> Dict[str, Any]:
        return {
            "polarization": self.config.polarization,
            "threshold": self.threshold,
            **self.statistics.to_dict(),
            "edge_otsu": self.masks.threshold.params.to_dict(),
            "classifier": asdict(self.config.classifier),
            "statistics_scale": self.config.statistics.scale,
        }


def _paired_bands(pre: Mapping[str, Raster], during: Mapping[str, Raster], polarization: str):
    if polarization not in pre or polarization not in during:
        raise ValueError(
            f"Polarization {polarization!r} must be supplied for both dates "
            f"(pre: {sorted(pre)}, during: {sorted(during)})"
        )
    bands = [b for b in pre if b in during]
    for band in sorted(set(pre) ^ set(during)):
        logger.warning(f"Band {band} supplied for only one date; skipped")
    return bands


def run_flood_mapping(
    pre: Mapping[str, Raster],
    during: Mapping[str, Raster],
    ancillary: AncillaryLayers,
    region=None,
    config: Optional[PipelineConfig] = None,
    cancel: Optional[CancellationToken] = None,
) -> FloodMappingResult:
    """
    Run the whole flood mapping workflow.

    Args:
        pre: pre-event rasters in dB keyed by polarisation (e.g. {"VV": ..., "VH": ...})
        during: during-event rasters in dB keyed by polarisation
        ancillary: water occurrence, slope, land cover and its confidence on the SAR grid
        region: shapely geometry in the raster CRS (None = whole grid)
        config: run parameters (defaults when None)
        cancel: cancellation token; built from config.timeout_seconds when None

    Returns:
        FloodMappingResult
    """
    config = config or PipelineConfig()
    if cancel is None:
        cancel = CancellationToken(config.timeout_seconds)

    bands = _paired_bands(pre, during, config.polarization)
    stack = {}
    for band in bands:
        stack[f"pre_{band}"] = pre[band]
        stack[f"during_{band}"] = during[band]

    logger.info("=" * 60)
    logger.info("STEP 1: Speckle filtering")
    logger.info("=" * 60)
    filtered = filter_bands(stack, tile_size=config.tile_size, max_workers=config.max_workers)

    logger.info("=" * 60)
    logger.info(f"STEP 2: Flood classification ({config.polarization})")
    logger.info("=" * 60)
    classifier = FloodClassifier(
        config.classifier,
        config.edge_otsu,
        max_pixels=config.statistics.max_pixels,
        tile_size=config.statistics.tile_size,
        max_workers=config.statistics.max_workers,
        cancel=cancel,
    )
    masks = classifier.classify(
        filtered[f"pre_{config.polarization}"],
        filtered[f"during_{config.polarization}"],
        ancillary,
        region=region,
    )

    logger.info("=" * 60)
    logger.info("STEP 3: Area statistics")
    logger.info("=" * 60)
    statistics = compute_flood_statistics(masks, region, config.statistics, cancel)

    return FloodMappingResult(masks=masks, statistics=statistics, filtered=filtered, config=config)


# =============================================================================
# CLI
# =============================================================================


def _cross_polarization(polarization: str) -> str:
    return "VH" if polarization.upper() == "VV" else "VV"


def build_config(args) -> PipelineConfig:
    """Config file, then preset, then command line; each later source overrides the earlier ones."""
    config = PipelineConfig.from_json(args.config) if args.config else PipelineConfig()

    if args.preset:
        # only the values the preset sets; the rest keep the file's values
        preset = {k: v for k, v in asdict(get_preset(args.preset)).items() if v is not None}
        config.edge_otsu = replace(config.edge_otsu, **preset)
    if args.polarization:
        config.polarization = args.polarization.upper()
    if args.accuracy_threshold is not None:
        config.classifier.accuracy_threshold = args.accuracy_threshold
    if args.stats_scale is not None:
        config.statistics.scale = args.stats_scale
    if args.max_pixels is not None:
        config.statistics.max_pixels = args.max_pixels
    if args.timeout is not None:
        config.timeout_seconds = args.timeout
    if args.tile_size is not None:
        config.tile_size = args.tile_size
        config.statistics.tile_size = args.tile_size
    if args.workers is not None:
        config.max_workers = args.workers
        config.statistics.max_workers = args.workers
    return config


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Flood and flooded cropland mapping from SAR")
    parser.add_argument("--pre", type=str, required=True, help="Pre-event GeoTIFF (dB)")
    parser.add_argument("--during", type=str, required=True, help="During-event GeoTIFF (dB)")
    parser.add_argument("--pre-cross", type=str, default=None, help="Pre-event cross-polarisation GeoTIFF")
    parser.add_argument("--during-cross", type=str, default=None, help="During-event cross-polarisation GeoTIFF")
    parser.add_argument("--occurrence", type=str, required=True, help="Water occurrence (months/year)")
    parser.add_argument("--slope", type=str, required=True, help="Slope (degrees)")
    parser.add_argument("--landcover", type=str, required=True, help="Land cover classes")
    parser.add_argument("--landcover-proba", type=str, required=True, help="Land cover confidence (0-100)")
    parser.add_argument("--region", type=str, default=None, help="Region GeoJSON (default: whole grid)")
    parser.add_argument("--output", type=str, default=None, help="Output directory")
    parser.add_argument("--config", type=str, default=None, help="Pipeline JSON config")
    parser.add_argument("--preset", type=str, default=None, help="Edge Otsu preset name")
    parser.add_argument("--polarization", type=str, default=None, help="Polarisation of --pre/--during")
    parser.add_argument("--accuracy-threshold", type=float, default=None, help="Min land cover confidence (%%)")
    parser.add_argument("--stats-scale", type=float, default=None, help="Statistics scale (m)")
    parser.add_argument("--max-pixels", type=int, default=None, help="Max samples per reduction")
    parser.add_argument("--timeout", type=float, default=None, help="Reduction timeout (s)")
    parser.add_argument("--tile-size", type=int, default=None, help="Tile size (pixels)")
    parser.add_argument("--workers", type=int, default=None, help="Worker threads")
    parser.add_argument("--plot-histogram", action="store_true", help="Save the Edge Otsu histogram chart")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    return parser


def main(argv=None):
    """Command-line interface for the flood cropland mapper."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    logger.debug(Config.summary())
    config = build_config(args)
    primary = config.polarization
    cross = _cross_polarization(primary)

    if args.output:
        output_dir = Path(args.output)
        output_dir.mkdir(parents=True, exist_ok=True)
    else:
        Config.ensure_directories()
        output_dir = Config.OUTPUT_DIR

    logger.info("=" * 70)
    logger.info("FLOOD CROPLAND MAPPER")
    logger.info("=" * 70)
    logger.info(f"Pre-event: {args.pre}")
    logger.info(f"During-event: {args.during}")
    logger.info(f"Region: {args.region or 'whole grid'}")
    logger.info(f"Output: {output_dir}")
    logger.info("=" * 70)

    pre = {primary: read_raster(args.pre, band_name=f"pre_{primary}")}
    during = {primary: read_raster(args.during, band_name=f"during_{primary}")}
    if args.pre_cross:
        pre[cross] = read_raster(args.pre_cross, band_name=f"pre_{cross}")
    if args.during_cross:
        during[cross] = read_raster(args.during_cross, band_name=f"during_{cross}")

    ancillary = AncillaryLayers(
        water_occurrence=read_raster(args.occurrence, units="months", band_name="occurrence"),
        slope=read_raster(args.slope, units="degrees", band_name="slope"),
        landcover=read_raster(args.landcover, units="class", band_name="landcover"),
        landcover_confidence=read_raster(args.landcover_proba, units="percent", band_name="landcover_proba"),
    )
    region = read_region(args.region) if args.region else None

    try:
        result = run_flood_mapping(pre, during, ancillary, region=region, config=config)
    except FloodMappingError as e:
        logger.error(f"Flood mapping failed: {e}")
        sys.exit(1)

    summary = result.to_dict()
    stats_path = output_dir / Config.STATISTICS_FILE
    with open(stats_path, "w") as f:
        json.dump(summary, f, indent=2, default=str)
    logger.info(f"Statistics saved to: {stats_path}")

    if args.plot_histogram:
        chart = plot_threshold_histogram(result.masks.threshold, output_dir / Config.HISTOGRAM_FILE)
        logger.info(f"Histogram saved to: {chart}")

    logger.info("=" * 70)
    logger.info("SUMMARY")
    logger.info("=" * 70)
    logger.info(f"Threshold:            {result.threshold:.4f}")
    logger.info(f"Flood extent (ha):    {result.statistics.flood_ha}")
    logger.info(f"Cropland (ha):        {result.statistics.cropland_ha}")
    logger.info(f"Flooded cropland (ha): {result.statistics.flooded_cropland_ha}")
    percent = result.statistics.flooded_cropland_percent
    logger.info(f"Cropland flooded (%): {percent if percent is not None else 'undefined'}")
    return summary


if __name__ == "__main__":
    main()
