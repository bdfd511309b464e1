"""
Flood Cropland Mapper - Raster Grid
===================================

Shared raster abstraction for the flood pipeline:

1. Raster: single-band float grid with validity mask and geotransform
2. Kernels and masked neighborhood statistics (truncated at the border, never wrapping)
3. Connectivity counting and focal max (dilation)
4. Tiled region reductions with a pixel budget and cooperative cancellation
5. Per-pixel geographic area
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import Any, Callable, Iterator, Optional, Tuple, Union

import numpy as np
from scipy.ndimage import (
    binary_dilation,
    correlate,
    generate_binary_structure,
    label as ndi_label,
    maximum_filter,
)
from pyproj import CRS, Geod
from rasterio import windows
from rasterio.features import geometry_mask
from rasterio.transform import Affine
from shapely.geometry import box

from flood_config import Config
from flood_errors import AggregationBudgetExceeded, AggregationCancelled, GridMismatchError

logger = logging.getLogger(__name__)

Operand = Union["Raster", int, float]

_GEOD = Geod(ellps="WGS84")

# E[x^2] - E[x]^2 below this fraction of mean^2 is float cancellation, not signal
_VARIANCE_EPS = 1e-12


# =============================================================================
# 1. RASTER
# =============================================================================


def _same_crs(a, b) -> bool:
    if a is None or b is None:
        return a is None and b is None
    return CRS.from_user_input(a) == CRS.from_user_input(b)


def check_same_grid(*rasters: "Raster"):
    """Raise GridMismatchError unless all rasters share shape, transform and CRS."""
    first = rasters[0]
    for other in rasters[1:]:
        if other.shape != first.shape:
            raise GridMismatchError(
                f"Grid mismatch: '{first.band}' is {first.shape}, '{other.band}' is {other.shape}"
            )
        if not first.transform.almost_equals(other.transform):
            raise GridMismatchError(
                f"Grid mismatch: '{first.band}' and '{other.band}' have different transforms"
            )
        if not _same_crs(first.crs, other.crs):
            raise GridMismatchError(
                f"Grid mismatch: '{first.band}' ({first.crs}) and '{other.band}' ({other.crs}) "
                "have different CRS"
            )


@dataclass
class Raster:
    """
    Single-band raster.

    ``mask`` is True where a sample is valid. Masks are rasters whose validity
    is the payload (data 1 where valid), as produced by ``self_mask``.
    """

    data: np.ndarray
    mask: np.ndarray
    transform: Affine = Affine.identity()
    crs: Optional[Any] = None
    units: str = "dB"
    band: str = "constant"

    def __post_init__(self):
        self.data = np.asarray(self.data, dtype=np.float64)
        self.mask = np.asarray(self.mask, dtype=bool)
        if self.data.ndim != 2:
            raise ValueError(f"Expected a 2D array, got shape {self.data.shape}")
        if self.mask.shape != self.data.shape:
            raise ValueError(
                f"Mask shape {self.mask.shape} does not match data shape {self.data.shape}"
            )

    @classmethod
    def from_array(
        cls,
        data,
        transform: Optional[Affine] = None,
        crs=None,
        units: str = "dB",
        band: str = "constant",
        nodata: Optional[float] = None,
        mask: Optional[np.ndarray] = None,
    ) -> "Raster":
        """Wrap an array; non-finite samples and ``nodata`` become invalid."""
        data = np.asarray(data, dtype=np.float64)
        valid = np.isfinite(data)
        if nodata is not None and not np.isnan(nodata):
            valid &= data != nodata
        if mask is not None:
            valid &= np.asarray(mask, dtype=bool)
        return cls(
            data=np.where(valid, data, np.nan),
            mask=valid,
            transform=transform if transform is not None else Affine.identity(),
            crs=crs,
            units=units,
            band=band,
        )

    # --- grid properties -------------------------------------------------------

    @property
    def shape(self) -> Tuple[int, int]:
        return self.data.shape

    @property
    def height(self) -> int:
        return self.data.shape[0]

    @property
    def width(self) -> int:
        return self.data.shape[1]

    @property
    def valid_count(self) -> int:
        return int(self.mask.sum())

    def nominal_scale(self) -> float:
        """Approximate pixel size in meters, taken at the grid's central row."""
        row = self.height // 2
        area = pixel_area(self.transform, self.crs, slice(row, row + 1), slice(0, 1))
        return float(np.sqrt(area[0, 0]))

    def same_grid(self, other: "Raster") -> bool:
        try:
            check_same_grid(self, other)
        except GridMismatchError:
            return False
        return True

    def _wrap(self, data, mask, **changes) -> "Raster":
        return replace(self, data=np.where(mask, data, np.nan), mask=mask, **changes)

    def filled(self, fill_value: float = np.nan) -> np.ndarray:
        return np.where(self.mask, self.data, fill_value)

    def rename(self, band: str) -> "Raster":
        return replace(self, band=band)

    # --- elementwise arithmetic ----------------------------------------------

    def _operand(self, other: Operand):
        if isinstance(other, Raster):
            check_same_grid(self, other)
            return other.data, other.mask
        return other, True

    def _arith(self, other: Operand, op) -> "Raster":
        values, valid = self._operand(other)
        with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
            data = op(self.data, values)
        mask = self.mask & valid & np.isfinite(data)
        return self._wrap(data, mask)

    def add(self, other: Operand) -> "Raster":
        return self._arith(other, np.add)

    def subtract(self, other: Operand) -> "Raster":
        return self._arith(other, np.subtract)

    def multiply(self, other: Operand) -> "Raster":
        return self._arith(other, np.multiply)

    def divide(self, other: Operand) -> "Raster":
        return self._arith(other, np.divide)

    def pow(self, other: Operand) -> "Raster":
        return self._arith(other, np.power)

    def log10(self) -> "Raster":
        with np.errstate(divide="ignore", invalid="ignore"):
            data = np.log10(self.data)
        return self._wrap(data, self.mask & np.isfinite(data))

    # --- comparisons and logic (0/1 results) ----------------------------------

    def _compare(self, other: Operand, op) -> "Raster":
        values, valid = self._operand(other)
        with np.errstate(invalid="ignore"):
            data = op(self.data, values).astype(np.float64)
        return self._wrap(data, self.mask & valid, units="mask")

    def lt(self, other: Operand) -> "Raster":
        return self._compare(other, np.less)

    def lte(self, other: Operand) -> "Raster":
        return self._compare(other, np.less_equal)

    def gt(self, other: Operand) -> "Raster":
        return self._compare(other, np.greater)

    def gte(self, other: Operand) -> "Raster":
        return self._compare(other, np.greater_equal)

    def eq(self, other: Operand) -> "Raster":
        return self._compare(other, np.equal)

    def logical_and(self, other: Operand) -> "Raster":
        return self._compare(other, lambda a, b: (a != 0) & (np.asarray(b) != 0))

    def logical_not(self) -> "Raster":
        return self._wrap((self.data == 0).astype(np.float64), self.mask, units="mask")

    # --- mask composition -----------------------------------------------------

    def update_mask(self, other: Union["Raster", np.ndarray]) -> "Raster":
        """Intersect validity with ``other`` (valid and non-zero)."""
        if isinstance(other, Raster):
            check_same_grid(self, other)
            keep = other.mask & (np.nan_to_num(other.data) != 0)
        else:
            keep = np.asarray(other, dtype=bool)
        return self._wrap(self.data, self.mask & keep)

    def self_mask(self) -> "Raster":
        return self.update_mask(self)

    def clip(self, region) -> "Raster":
        """Mask out pixels whose centre lies outside ``region`` (None keeps everything)."""
        if region is None:
            return replace(self)
        return self.update_mask(region_mask(region, self.shape, self.transform))

    def where(self, condition: "Raster", value: float) -> "Raster":
        """Replace values by ``value`` where ``condition`` is valid and non-zero."""
        check_same_grid(self, condition)
        hit = condition.mask & (np.nan_to_num(condition.data) != 0)
        return self._wrap(np.where(hit, value, self.data), self.mask)

    # --- neighborhood operations ---------------------------------------------

    def reduce_neighborhood(self, kernel: "Kernel") -> Tuple["Raster", "Raster"]:
        """Masked neighborhood mean and variance."""
        mean, variance, count = neighborhood_stats(self.data, self.mask, kernel)
        valid = self.mask & (count > 0)
        return self._wrap(mean, valid), self._wrap(variance, valid)

    def connected_pixel_count(self, max_size: int = 100, eight_connected: bool = True) -> "Raster":
        counts = connected_pixel_count(self.data, self.mask, max_size, eight_connected)
        return self._wrap(counts.astype(np.float64), self.mask, units="count")

    def neighborhood_sum(self, kernel: "Kernel") -> "Raster":
        """Weighted sum of the valid samples under the kernel."""
        mean, _, count = neighborhood_stats(self.data, self.mask, kernel)
        valid = self.mask & (count > 0)
        return self._wrap(np.nan_to_num(mean) * count, valid)

    def focal_max(self, radius: int, shape: str = "square") -> "Raster":
        """Focal maximum ("square" or "circle"); a masked sample becomes valid if any neighbor is."""
        if radius <= 0:
            return replace(self)
        footprint = focal_footprint(radius, shape)
        values = maximum_filter(
            self.filled(-np.inf), footprint=footprint, mode="constant", cval=-np.inf
        )
        mask = binary_dilation(self.mask, structure=footprint)
        return self._wrap(values, mask)


# =============================================================================
# 2. KERNELS & NEIGHBORHOOD STATISTICS
# =============================================================================


@dataclass(frozen=True, eq=False)
class Kernel:
    """Fixed weight template with an anchor (row, col) inside the weights."""

    weights: np.ndarray
    anchor: Tuple[int, int]

    @classmethod
    def fixed(cls, weights, anchor: Optional[Tuple[int, int]] = None) -> "Kernel":
        weights = np.asarray(weights, dtype=np.float64)
        if anchor is None:
            anchor = (weights.shape[0] // 2, weights.shape[1] // 2)
        return cls(weights=weights, anchor=tuple(anchor))

    @classmethod
    def square(cls, radius: int) -> "Kernel":
        size = 2 * radius + 1
        return cls.fixed(np.ones((size, size)))

    @property
    def origin(self) -> Tuple[int, int]:
        rows, cols = self.weights.shape
        return (self.anchor[0] - rows // 2, self.anchor[1] - cols // 2)

    def rotate(self, rotations: int) -> "Kernel":
        """Rotate clockwise by ``rotations`` quarter turns."""
        weights = self.weights
        r, c = self.anchor
        for _ in range(rotations % 4):
            rows = weights.shape[0]
            weights = np.rot90(weights, -1)
            r, c = c, rows - 1 - r
        return Kernel(weights=np.ascontiguousarray(weights), anchor=(r, c))


def focal_footprint(radius: int, shape: str = "square") -> np.ndarray:
    size = 2 * radius + 1
    if shape == "square":
        return np.ones((size, size), dtype=bool)
    if shape == "circle":
        rows, cols = np.ogrid[-radius:radius + 1, -radius:radius + 1]
        return rows**2 + cols**2 <= radius**2
    raise ValueError(f"Unknown focal shape {shape!r}; expected 'square' or 'circle'")


def neighborhood_stats(
    values: np.ndarray, valid: np.ndarray, kernel: Kernel
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Weighted mean and population variance over a kernel, ignoring invalid cells.

    Cells outside the grid count as invalid, so kernels are truncated at the border.

    Returns:
        mean, variance, count (sum of weights over valid cells). Mean and variance
        are NaN where count is zero.
    """
    x = np.where(valid, values, 0.0)
    v = valid.astype(np.float64)
    kwargs = dict(weights=kernel.weights, mode="constant", cval=0.0, origin=kernel.origin)

    count = correlate(v, **kwargs)
    s1 = correlate(x, **kwargs)
    s2 = correlate(x * x, **kwargs)

    with np.errstate(divide="ignore", invalid="ignore"):
        mean = s1 / count
        variance = s2 / count - mean**2

    empty = count <= 1e-12
    variance[variance < _VARIANCE_EPS * mean**2] = 0.0
    variance = np.maximum(variance, 0.0)
    mean[empty] = np.nan
    variance[empty] = np.nan
    return mean, variance, count


def shift(array: np.ndarray, dr: int, dc: int, fill: float = np.nan) -> np.ndarray:
    """out[r, c] = array[r + dr, c + dc]; cells pulled from outside the grid get ``fill``."""
    out = np.full(array.shape, fill, dtype=np.float64)
    h, w = array.shape
    if abs(dr) >= h or abs(dc) >= w:
        return out
    src = (slice(max(dr, 0), h + min(dr, 0)), slice(max(dc, 0), w + min(dc, 0)))
    dst = (slice(max(-dr, 0), h + min(-dr, 0)), slice(max(-dc, 0), w + min(-dc, 0)))
    out[dst] = array[src]
    return out


def connected_pixel_count(
    values: np.ndarray, valid: np.ndarray, max_size: int = 100, eight_connected: bool = True
) -> np.ndarray:
    """Size of the same-valued valid component each pixel belongs to, capped at max_size."""
    structure = generate_binary_structure(2, 2 if eight_connected else 1)
    counts = np.zeros(values.shape, dtype=np.int64)
    for value in np.unique(values[valid]):
        labels, n = ndi_label(valid & (values == value), structure=structure)
        if n == 0:
            continue
        sizes = np.bincount(labels.ravel())
        sizes[0] = 0
        member = labels > 0
        counts[member] = sizes[labels[member]]
    return np.minimum(counts, max_size)


# =============================================================================
# 3. PIXEL AREA
# =============================================================================


def is_geographic(crs) -> bool:
    return crs is not None and CRS.from_user_input(crs).is_geographic


def pixel_area(transform: Affine, crs, rows: slice, cols: slice) -> np.ndarray:
    """
    Area of each pixel in square meters for the given row/column slices.

    Geographic grids use the geodesic area of each cell on the WGS84 ellipsoid;
    projected grids (or unknown CRS) use the constant cell area of the transform.
    """
    n_rows = rows.stop - rows.start
    n_cols = cols.stop - cols.start
    if not is_geographic(crs):
        cell = abs(transform.a * transform.e - transform.b * transform.d)
        return np.full((n_rows, n_cols), cell, dtype=np.float64)

    areas = np.empty((n_rows, n_cols), dtype=np.float64)
    for i, row in enumerate(range(rows.start, rows.stop)):
        for j, col in enumerate(range(cols.start, cols.stop)):
            corners = [
                transform * (col, row),
                transform * (col + 1, row),
                transform * (col + 1, row + 1),
                transform * (col, row + 1),
            ]
            lons, lats = zip(*corners)
            area, _ = _GEOD.polygon_area_perimeter(lons, lats)
            areas[i, j] = abs(area)
            if transform.b == 0 and transform.d == 0:
                # cell area only depends on latitude for north-up grids
                areas[i, :] = areas[i, j]
                break
    return areas


# =============================================================================
# 4. TILING, CANCELLATION & REGION REDUCTION
# =============================================================================


@dataclass(frozen=True)
class Tile:
    """Core window plus the halo-padded window it is computed from."""

    window: windows.Window
    padded: windows.Window

    @property
    def core_slices(self) -> Tuple[slice, slice]:
        """Slices of the core window inside an array read from ``padded``."""
        r0 = int(self.window.row_off - self.padded.row_off)
        c0 = int(self.window.col_off - self.padded.col_off)
        return (
            slice(r0, r0 + int(self.window.height)),
            slice(c0, c0 + int(self.window.width)),
        )


def iter_tiles(shape: Tuple[int, int], tile_size: int, halo: int = 0) -> Iterator[Tile]:
    """Yield row-major tiles covering the grid, padded by ``halo`` and clipped to it."""
    height, width = shape
    tile_size = max(1, int(tile_size))
    for row_off in range(0, height, tile_size):
        for col_off in range(0, width, tile_size):
            h = min(tile_size, height - row_off)
            w = min(tile_size, width - col_off)
            r0, c0 = max(0, row_off - halo), max(0, col_off - halo)
            r1, c1 = min(height, row_off + h + halo), min(width, col_off + w + halo)
            yield Tile(
                window=windows.Window(col_off, row_off, w, h),
                padded=windows.Window(c0, r0, c1 - c0, r1 - r0),
            )


class CancellationToken:
    """Cooperative cancellation flag with an optional deadline."""

    def __init__(self, timeout: Optional[float] = None):
        self._event = threading.Event()
        self.deadline = time.monotonic() + timeout if timeout is not None else None

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set() or (
            self.deadline is not None and time.monotonic() >= self.deadline
        )

    def raise_if_cancelled(self, what: str = "reduction"):
        if self._event.is_set():
            raise AggregationCancelled(f"{what} cancelled")
        if self.deadline is not None and time.monotonic() >= self.deadline:
            raise AggregationCancelled(f"{what} exceeded its deadline")


@dataclass
class BlockSamples:
    """Samples of one tile at the reduction scale.

    ``values``/``weights`` are the valid in-region pixels, each weighted 1/k^2
    for k x k blocks. ``areas``/``value_areas`` are per-block sums.
    """

    values: np.ndarray  # valid pixel values inside the region
    weights: np.ndarray  # 1 / factor^2 per pixel
    areas: np.ndarray  # summed area of valid pixels (m^2)
    value_areas: np.ndarray  # sum of value * pixel area over valid pixels


def scale_factor(raster: Raster, scale: Optional[float]) -> int:
    """Number of pixels per block side for a reduction at ``scale`` meters."""
    if scale is None:
        return 1
    return max(1, int(round(scale / raster.nominal_scale())))


def region_mask(region, shape: Tuple[int, int], transform: Affine) -> np.ndarray:
    """True where a cell center falls inside ``region``; everything when region is None."""
    if region is None:
        return np.ones(shape, dtype=bool)
    if region.is_empty:
        return np.zeros(shape, dtype=bool)
    return geometry_mask([region], out_shape=shape, transform=transform, invert=True)


def blocks_in_region(raster: Raster, window: windows.Window, region, factor: int) -> np.ndarray:
    """Block grid of ``window``: True where the block center is inside ``region``."""
    h, w = int(window.height), int(window.width)
    shape = (-(-h // factor), -(-w // factor))
    block_transform = windows.transform(window, raster.transform) * Affine.scale(factor)
    return region_mask(region, shape, block_transform)


def _block_sum(array: np.ndarray, factor: int) -> np.ndarray:
    h, w = array.shape
    padded = np.pad(array, ((0, -h % factor), (0, -w % factor)))
    bh, bw = padded.shape[0] // factor, padded.shape[1] // factor
    return padded.reshape(bh, factor, bw, factor).sum(axis=(1, 3))


def sample_blocks(raster: Raster, window: windows.Window, inside: np.ndarray, factor: int) -> BlockSamples:
    rows, cols = window.toslices()
    valid = raster.mask[rows, cols]
    data = np.where(valid, raster.data[rows, cols], 0.0)
    area = pixel_area(raster.transform, raster.crs, rows, cols) * valid

    # pixels take the region membership of their block
    h, w = valid.shape
    pixel_inside = np.repeat(np.repeat(inside, factor, axis=0), factor, axis=1)[:h, :w]
    picked = valid & pixel_inside

    n_valid = _block_sum(valid.astype(np.float64), factor)
    keep = inside & (n_valid > 0)
    values = data[picked]
    return BlockSamples(
        values=values,
        weights=np.full(values.shape, 1.0 / factor ** 2),
        areas=_block_sum(area, factor)[keep],
        value_areas=_block_sum(data * area, factor)[keep],
    )


def reduce_region(
    raster: Raster,
    reducer: Callable[[BlockSamples], Any],
    merge: Callable[[Any, Any], Any],
    initial: Any,
    region=None,
    scale: Optional[float] = None,
    max_pixels: int = Config.MAX_PIXELS,
    tile_size: int = Config.TILE_SIZE,
    max_workers: int = 1,
    cancel: Optional[CancellationToken] = None,
) -> Any:
    """
    Tiled map-reduce of ``raster`` over ``region`` at ``scale`` meters.

    In-region blocks are counted over the whole grid first; more than
    ``max_pixels`` raises AggregationBudgetExceeded before any tile is reduced.
    Each tile is then sampled, reduced to a partial result and merged in tile
    order.
    """
    factor = scale_factor(raster, scale)
    tile_size = max(factor, int(tile_size) - int(tile_size) % factor)

    tiles = []
    for tile in iter_tiles(raster.shape, tile_size):
        if region is not None:
            bounds = windows.bounds(tile.window, raster.transform)
            if not box(*bounds).intersects(region):
                continue
        tiles.append((tile.window, blocks_in_region(raster, tile.window, region, factor)))

    visited = sum(int(inside.sum()) for _, inside in tiles)
    logger.debug(f"reduce_region: {len(tiles)} tiles, block factor {factor}, {visited} blocks")
    if visited > max_pixels:
        raise AggregationBudgetExceeded(visited, max_pixels)

    def work(item):
        window, inside = item
        if cancel is not None:
            cancel.raise_if_cancelled("region reduction")
        return reducer(sample_blocks(raster, window, inside, factor))

    result = initial
    pool = ThreadPoolExecutor(max_workers=max(1, int(max_workers)))
    try:
        for partial in pool.map(work, tiles):
            result = merge(result, partial)
    finally:
        pool.shutdown(wait=True, cancel_futures=True)
    return result
