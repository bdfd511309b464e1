"""
Flood Cropland Mapper - Raster I/O
==================================

Reads aligned GeoTIFF layers and GeoJSON regions into the core types.
"""

import json
import logging
from pathlib import Path
from typing import Optional

import numpy as np
import rasterio
from shapely.geometry import shape
from shapely.ops import unary_union

from raster_grid import Raster

logger = logging.getLogger(__name__)


def read_raster(path, band: int = 1, units: str = "dB", band_name: Optional[str] = None) -> Raster:
    """
    Read one band of a GeoTIFF.

    Nodata and non-finite samples become invalid. The raster keeps the file's
    transform and CRS.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Raster not found: {path}")

    with rasterio.open(path) as src:
        if not 1 <= band <= src.count:
            raise ValueError(f"{path.name} has {src.count} band(s), band {band} requested")
        data = src.read(band).astype(np.float64)
        nodata = src.nodata
        transform = src.transform
        crs = src.crs

    raster = Raster.from_array(
        data,
        transform=transform,
        crs=crs,
        units=units,
        band=band_name or path.stem,
        nodata=nodata,
    )
    logger.info(f"Loaded {path.name}: {raster.shape}, {raster.valid_count} valid pixels")
    return raster


def read_region(path):
    """Union of the geometries of a GeoJSON file (FeatureCollection, Feature or bare geometry)."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Region file not found: {path}")

    with open(path, "r") as f:
        geojson = json.load(f)

    kind = geojson.get("type")
    if kind == "FeatureCollection":
        geometries = [shape(feature["geometry"]) for feature in geojson.get("features", [])]
    elif kind == "Feature":
        geometries = [shape(geojson["geometry"])]
    else:
        geometries = [shape(geojson)]

    if not geometries:
        raise ValueError(f"No geometries in {path}")
    return unary_union(geometries)
