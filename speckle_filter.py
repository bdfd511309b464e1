"""
Flood Cropland Mapper - Speckle Filter
======================================

Refined Lee speckle filter for single-band SAR intensity rasters in dB.

1. dB -> natural power units
2. 3x3 local mean/variance, sampled at 9 positions of a 7x7 window
3. Edge direction from the maximum of 4 sampled gradients (8 directions)
4. Directional mean/variance over a rotated half-window kernel
5. Local noise variance from the 5 most homogeneous sampled windows
6. MMSE weighting, back to dB

Tiles are processed with a halo covering the whole 7x7 footprint, so the
tiled result matches the single-pass one.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from typing import Dict, Mapping, Optional

import numpy as np

from flood_config import Config
from raster_grid import Kernel, Raster, iter_tiles, neighborhood_stats, shift

logger = logging.getLogger(__name__)

# radius of the full Refined Lee footprint (3x3 windows sampled 2 pixels off-centre, 7x7 kernels)
REFINED_LEE_HALO = 3

KERNEL_3X3 = Kernel.fixed(np.ones((3, 3)))

# centres of the 9 sampled 3x3 windows inside the 7x7 neighborhood, row-major (4 = centre)
SAMPLE_OFFSETS = [(-2, -2), (-2, 0), (-2, 2), (0, -2), (0, 0), (0, 2), (2, -2), (2, 0), (2, 2)]

# sampled-window pairs of the 4 gradient axes: N-S, SW-NE, W-E, NW-SE
GRADIENT_PAIRS = [(1, 7), (6, 2), (3, 5), (0, 8)]

# 3 empty rows over 4 filled rows, anchored at the centre
RECT_KERNEL = Kernel.fixed(np.vstack([np.zeros((3, 7)), np.ones((4, 7))]))
# lower-left staircase including the diagonal
DIAG_KERNEL = Kernel.fixed(np.tril(np.ones((7, 7))))


# =============================================================================
# UNIT CONVERSION
# =============================================================================


def db_to_power(db):
    """10^(dB/10). Accepts arrays or dB Rasters."""
    if isinstance(db, Raster):
        power = db_to_power(db.filled(0.0))
        valid = db.mask & np.isfinite(power)
        return replace(db, data=np.where(valid, power, np.nan), mask=valid, units="power")
    with np.errstate(over="ignore"):
        return np.power(10.0, np.asarray(db, dtype=np.float64) / 10.0)


def power_to_db(power):
    """10*log10(power). Accepts arrays or power Rasters; non-positive power becomes NaN/masked."""
    if isinstance(power, Raster):
        db = power_to_db(power.filled(np.nan))
        valid = power.mask & np.isfinite(db)
        return replace(power, data=np.where(valid, db, np.nan), mask=valid, units="dB")
    with np.errstate(divide="ignore", invalid="ignore"):
        result = 10.0 * np.log10(np.asarray(power, dtype=np.float64))
    return np.where(np.isfinite(result), result, np.nan)


# =============================================================================
# REFINED LEE BUILDING BLOCKS
# =============================================================================


def directional_kernel(direction: int) -> Kernel:
    """Kernel for edge direction 1-8: odd -> rectangle, even -> staircase, rotated (direction-1)//2 times."""
    if not 1 <= direction <= 8:
        raise ValueError(f"Edge direction must be 1-8, got {direction}")
    base = RECT_KERNEL if direction % 2 else DIAG_KERNEL
    return base.rotate((direction - 1) // 2)


DIRECTIONAL_KERNELS = {d: directional_kernel(d) for d in range(1, 9)}


def edge_directions(sample_mean: np.ndarray) -> np.ndarray:
    """
    Per-pixel edge direction (1-8) from the 9 sampled window means.

    The gradient axis is the one with the largest absolute difference; exact
    ties go to the lowest axis index. The polarity compares each half of the
    axis against the centre window.
    """
    centre = sample_mean[4]
    gradients = np.stack([np.abs(sample_mean[a] - sample_mean[b]) for a, b in GRADIENT_PAIRS])
    axis = np.argmax(np.where(np.isfinite(gradients), gradients, -np.inf), axis=0)

    with np.errstate(invalid="ignore"):
        positive = np.stack(
            [(sample_mean[a] - centre) > (centre - sample_mean[b]) for a, b in GRADIENT_PAIRS]
        )
    polarity = np.take_along_axis(positive, axis[np.newaxis], axis=0)[0]
    return np.where(polarity, axis + 1, axis + 5)


def noise_variance(sample_mean: np.ndarray, sample_var: np.ndarray) -> np.ndarray:
    """Mean of the 5 smallest variance/mean^2 ratios among the sampled windows."""
    with np.errstate(divide="ignore", invalid="ignore"):
        ratio = sample_var / sample_mean**2
    ratio = np.where(np.isfinite(ratio), ratio, np.nan)
    smallest = np.sort(ratio, axis=0)[:5]  # NaN sorts last
    n = np.isfinite(smallest).sum(axis=0)
    total = np.nansum(smallest, axis=0)
    return np.divide(total, n, out=np.zeros_like(total), where=n > 0)


def mmse_estimate(power, dir_mean, dir_var, sigma_v):
    """
    MMSE weighting: mean + K * (raw - mean).

    K is clamped to 0 where the directional variance is zero, so flat
    neighborhoods return the directional mean instead of NaN.
    """
    with np.errstate(invalid="ignore"):
        var_x = np.maximum(0.0, (dir_var - dir_mean**2 * sigma_v) / (sigma_v + 1.0))
        gain = np.divide(var_x, dir_var, out=np.zeros_like(var_x), where=dir_var > 0)
    return dir_mean + gain * (power - dir_mean)


def _refined_lee_block(db: np.ndarray, valid: np.ndarray) -> np.ndarray:
    power = np.where(valid, db_to_power(np.where(valid, db, 0.0)), np.nan)

    mean3, var3, _ = neighborhood_stats(power, valid, KERNEL_3X3)
    sample_mean = np.stack([shift(mean3, dr, dc) for dr, dc in SAMPLE_OFFSETS])
    sample_var = np.stack([shift(var3, dr, dc) for dr, dc in SAMPLE_OFFSETS])

    directions = edge_directions(sample_mean)
    sigma_v = noise_variance(sample_mean, sample_var)

    dir_mean = np.full(db.shape, np.nan)
    dir_var = np.full(db.shape, np.nan)
    for direction, kernel in DIRECTIONAL_KERNELS.items():
        selected = valid & (directions == direction)
        if not selected.any():
            continue
        mean, var, _ = neighborhood_stats(power, valid, kernel)
        dir_mean[selected] = mean[selected]
        dir_var[selected] = var[selected]

    filtered = mmse_estimate(power, dir_mean, dir_var, sigma_v)
    return np.where(valid, power_to_db(filtered), np.nan)


# =============================================================================
# PUBLIC API
# =============================================================================


def refined_lee(raster: Raster, tile_size: Optional[int] = None, max_workers: int = 1) -> Raster:
    """
    Refined Lee filter of a dB raster.

    Args:
        raster: single-band raster in dB
        tile_size: process in tiles of this size (None = whole grid at once)
        max_workers: threads used for tiles

    Returns:
        Filtered raster in dB on the same grid with the same valid pixels.
    """
    if raster.units != "dB":
        raise ValueError(f"Refined Lee expects a dB raster, got units={raster.units!r}")

    height, width = raster.shape
    if not tile_size or (tile_size >= height and tile_size >= width):
        data = _refined_lee_block(raster.data, raster.mask)
    else:
        data = np.full(raster.shape, np.nan)
        tiles = list(iter_tiles(raster.shape, tile_size, halo=REFINED_LEE_HALO))

        def work(tile):
            rows, cols = tile.padded.toslices()
            block = _refined_lee_block(raster.data[rows, cols], raster.mask[rows, cols])
            return tile, block[tile.core_slices]

        with ThreadPoolExecutor(max_workers=max(1, int(max_workers))) as pool:
            for tile, core in pool.map(work, tiles):
                rows, cols = tile.window.toslices()
                data[rows, cols] = core
        logger.debug(f"Refined Lee on '{raster.band}': {len(tiles)} tiles")

    mask = raster.mask.copy()
    return replace(raster, data=np.where(mask, data, np.nan), mask=mask)


def filter_bands(
    rasters: Mapping[str, Raster],
    tile_size: Optional[int] = Config.TILE_SIZE,
    max_workers: int = Config.MAX_WORKERS,
) -> Dict[str, Raster]:
    """Refined Lee on every band independently, bands filtered concurrently."""
    names = list(rasters)
    logger.info(f"Speckle filtering {len(names)} band(s): {', '.join(names)}")
    with ThreadPoolExecutor(max_workers=max(1, min(int(max_workers), len(names) or 1))) as pool:
        filtered = pool.map(lambda name: refined_lee(rasters[name], tile_size=tile_size), names)
        return dict(zip(names, filtered))
