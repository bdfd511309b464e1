"""
Flood Cropland Mapper - Edge Otsu Thresholding
==============================================

Data-driven water/non-water threshold for a change-detection raster:

1. Preliminary binary layer (pixel < initialThreshold)
2. Canny edges of the binary layer
3. Pruning of short edge fragments (connected-component size)
4. Buffer around the surviving edges
5. Weighted histogram of the buffered pixels inside the region
6. Otsu's between-class variance maximization
7. Binary water layer

Sampling only near real boundaries gives a strongly bimodal histogram,
which is what Otsu needs.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import numpy as np
import matplotlib

matplotlib.use("Agg")  # Non-interactive backend
import matplotlib.pyplot as plt
from scipy.ndimage import gaussian_filter, sobel
from skimage.feature import canny

from flood_config import Config, EdgeOtsuParams
from flood_errors import DegenerateHistogramError
from raster_grid import CancellationToken, Raster, connected_pixel_count, reduce_region

logger = logging.getLogger(__name__)


# =============================================================================
# 1. HISTOGRAM
# =============================================================================


@dataclass
class Histogram:
    """Ordered (bucket mean, count) pairs; counts are sample weights."""

    bucket_means: np.ndarray
    counts: np.ndarray
    bucket_min: float = float("nan")
    bucket_width: float = float("nan")

    @property
    def total(self) -> float:
        return float(self.counts.sum())

    @property
    def non_empty(self) -> int:
        return int((self.counts > 0).sum())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bucketMeans": self.bucket_means.tolist(),
            "histogram": self.counts.tolist(),
            "bucketMin": self.bucket_min,
            "bucketWidth": self.bucket_width,
        }


class HistogramAccumulator:
    """
    Mergeable histogram builder.

    Raw (value, weight) samples are kept until more than ``max_raw`` have been
    seen; the bucket layout is then fixed from the raw range and later samples
    are binned directly, extending the bucket grid as needed and doubling the
    bucket width whenever more than ``max_buckets`` buckets would be needed.
    """

    def __init__(self, max_buckets: int = 255, min_bucket_width: float = 0.001, max_raw: int = 1_000_000):
        self.max_buckets = int(max_buckets)
        self.min_bucket_width = float(min_bucket_width)
        self.max_raw = int(max_raw)
        self._raw_values = []
        self._raw_weights = []
        self._n_raw = 0
        self.origin = None
        self.width = None
        self.counts = None
        self.sums = None

    @property
    def binned(self) -> bool:
        return self.width is not None

    def add(self, values, weights=None) -> "HistogramAccumulator":
        values = np.asarray(values, dtype=np.float64).ravel()
        weights = np.ones_like(values) if weights is None else np.asarray(weights, dtype=np.float64).ravel()
        keep = np.isfinite(values) & (weights > 0)
        values, weights = values[keep], weights[keep]
        if values.size == 0:
            return self

        if self.binned:
            self._bin(values, weights)
            return self

        self._raw_values.append(values)
        self._raw_weights.append(weights)
        self._n_raw += values.size
        if self._n_raw > self.max_raw:
            self._freeze()
        return self

    def merge(self, other: "HistogramAccumulator") -> "HistogramAccumulator":
        values, weights = other._samples()
        return self.add(values, weights)

    def _samples(self) -> Tuple[np.ndarray, np.ndarray]:
        if self.binned:
            hist = self._binned_histogram()
            keep = hist.counts > 0
            return hist.bucket_means[keep], hist.counts[keep]
        if not self._raw_values:
            return np.empty(0), np.empty(0)
        return np.concatenate(self._raw_values), np.concatenate(self._raw_weights)

    def _layout(self, lo: float, hi: float) -> Tuple[float, int]:
        width = max((hi - lo) / self.max_buckets, self.min_bucket_width)
        n = int(np.ceil((hi - lo) / width)) if hi > lo else 1
        return width, min(self.max_buckets, max(1, n))

    def _freeze(self):
        values, weights = self._samples()
        self._raw_values, self._raw_weights, self._n_raw = [], [], 0
        self.width, n = self._layout(values.min(), values.max())
        self.origin = values.min()
        self.counts = np.zeros(n)
        self.sums = np.zeros(n)
        self._bin(values, weights)

    def _bin(self, values, weights):
        idx = np.floor((values - self.origin) / self.width).astype(np.int64)
        # the top edge of the frozen layout belongs to the last bucket
        idx[(idx == len(self.counts)) & (values <= self.origin + self.width * len(self.counts))] -= 1

        low = idx.min()
        if low < 0:
            self.counts = np.concatenate([np.zeros(-low), self.counts])
            self.sums = np.concatenate([np.zeros(-low), self.sums])
            self.origin += low * self.width
            idx -= low
        high = idx.max()
        if high >= len(self.counts):
            extra = high + 1 - len(self.counts)
            self.counts = np.concatenate([self.counts, np.zeros(extra)])
            self.sums = np.concatenate([self.sums, np.zeros(extra)])

        n = len(self.counts)
        self.counts += np.bincount(idx, weights=weights, minlength=n)
        self.sums += np.bincount(idx, weights=weights * values, minlength=n)
        while len(self.counts) > self.max_buckets:
            self._coarsen()

    def _coarsen(self):
        if len(self.counts) % 2:
            self.counts = np.append(self.counts, 0.0)
            self.sums = np.append(self.sums, 0.0)
        self.counts = self.counts.reshape(-1, 2).sum(axis=1)
        self.sums = self.sums.reshape(-1, 2).sum(axis=1)
        self.width *= 2

    def _binned_histogram(self) -> Histogram:
        centres = self.origin + (np.arange(len(self.counts)) + 0.5) * self.width
        means = np.divide(self.sums, self.counts, out=centres.copy(), where=self.counts > 0)
        return Histogram(means, self.counts.copy(), float(self.origin), float(self.width))

    def finalize(self) -> Histogram:
        if self.binned:
            return self._binned_histogram()

        values, weights = self._samples()
        if values.size == 0:
            return Histogram(np.empty(0), np.empty(0))

        lo, hi = values.min(), values.max()
        width, n = self._layout(lo, hi)
        idx = np.clip(np.floor((values - lo) / width).astype(np.int64), 0, n - 1)
        counts = np.bincount(idx, weights=weights, minlength=n)
        sums = np.bincount(idx, weights=weights * values, minlength=n)
        centres = lo + (np.arange(n) + 0.5) * width
        means = np.divide(sums, counts, out=centres, where=counts > 0)
        return Histogram(means, counts, float(lo), float(width))


def region_histogram(
    raster: Raster,
    region=None,
    scale: Optional[float] = None,
    max_buckets: int = 255,
    min_bucket_width: float = 0.001,
    max_raw: int = 1_000_000,
    max_pixels: int = Config.MAX_PIXELS,
    tile_size: int = Config.TILE_SIZE,
    max_workers: int = 1,
    cancel: Optional[CancellationToken] = None,
) -> Histogram:
    """Weighted histogram of the valid pixels of ``raster`` inside ``region``, tile by tile."""

    def new():
        return HistogramAccumulator(max_buckets, min_bucket_width, max_raw)

    accumulator = reduce_region(
        raster,
        reducer=lambda samples: new().add(samples.values, samples.weights),
        merge=lambda acc, partial: acc.merge(partial),
        initial=new(),
        region=region,
        scale=scale,
        max_pixels=max_pixels,
        tile_size=tile_size,
        max_workers=max_workers,
        cancel=cancel,
    )
    return accumulator.finalize()


# =============================================================================
# 2. OTSU
# =============================================================================


def otsu_threshold(histogram: Histogram) -> Tuple[float, np.ndarray]:
    """
    Otsu threshold from a bucketed histogram.

    Split i puts buckets [0, i] in class A. Between-class sum of squares is
    computed from running prefix/suffix sums; the threshold is the bucket mean
    of the last split reaching the maximum.

    Returns:
        threshold, between-class sum of squares per split

    Raises:
        DegenerateHistogramError: empty histogram, fewer than two non-empty
        buckets, or no split separating the data.
    """
    counts = np.asarray(histogram.counts, dtype=np.float64)
    means = np.asarray(histogram.bucket_means, dtype=np.float64)

    total = counts.sum() if counts.size else 0.0
    if total <= 0:
        raise DegenerateHistogramError("Histogram is empty: no samples near edges", histogram)
    if histogram.non_empty < 2:
        raise DegenerateHistogramError(
            f"Histogram has a single non-empty bucket (value {means[counts > 0][0]:.4f})", histogram
        )

    weighted = means * counts
    mean = weighted.sum() / total

    a_count = np.cumsum(counts)
    a_sum = np.cumsum(weighted)
    b_count = np.append(np.cumsum(counts[::-1])[::-1][1:], 0.0)
    b_sum = np.append(np.cumsum(weighted[::-1])[::-1][1:], 0.0)

    split = (a_count > 0) & (b_count > 0)
    with np.errstate(divide="ignore", invalid="ignore"):
        a_mean = a_sum / a_count
        b_mean = b_sum / b_count
        bss = a_count * (a_mean - mean) ** 2 + b_count * (b_mean - mean) ** 2
    bss = np.where(split, bss, 0.0)

    best_bss = bss.max()
    if not best_bss > 0:
        raise DegenerateHistogramError("No split separates the histogram", histogram)
    best = np.flatnonzero(bss == best_bss)[-1]
    return float(means[best]), bss


# =============================================================================
# 3. EDGES
# =============================================================================


def canny_edges(binary: np.ndarray, valid: np.ndarray, sigma: float, threshold: float) -> Tuple[np.ndarray, np.ndarray]:
    """Canny edges of a 0/1 layer and the smoothed gradient magnitude behind them."""
    edges = canny(
        binary,
        sigma=sigma,
        low_threshold=threshold,
        high_threshold=threshold,
        mask=valid,
        mode="nearest",
    )
    smoothed = gaussian_filter(binary, sigma, mode="nearest")
    magnitude = np.hypot(sobel(smoothed, axis=1, mode="nearest"), sobel(smoothed, axis=0, mode="nearest"))
    return edges, magnitude


def prune_edges(
    edges: np.ndarray, magnitude: np.ndarray, connected_pixels: int, edge_length: int, canny_lt: float
) -> np.ndarray:
    """Keep edge pixels in components of at least ``edge_length`` (counted up to ``connected_pixels``)."""
    response = (magnitude < canny_lt).astype(np.float64)
    counts = connected_pixel_count(response, edges, max_size=connected_pixels, eight_connected=True)
    return edges & (counts >= edge_length)


# =============================================================================
# 4. EDGE OTSU
# =============================================================================


@dataclass
class ThresholdResult:
    """Edge Otsu output: threshold, water layer and a diagnostic payload."""

    threshold: float
    water: Raster
    params: EdgeOtsuParams
    histogram: Histogram
    diagnostics: Dict[str, Any] = field(default_factory=dict)


def edge_otsu(
    image: Raster,
    params: Optional[EdgeOtsuParams] = None,
    region=None,
    max_pixels: int = Config.MAX_PIXELS,
    tile_size: int = Config.TILE_SIZE,
    max_workers: int = 1,
    cancel: Optional[CancellationToken] = None,
) -> ThresholdResult:
    """
    Edge Otsu thresholding of a single-band raster.

    Args:
        image: raster to threshold (e.g. dB difference)
        params: parameter set; unset fields take the defaults
        region: shapely geometry in the raster CRS (None = whole grid)

    Returns:
        ThresholdResult with water = image < threshold (> when invert)

    Raises:
        DegenerateHistogramError: no usable bimodal structure near edges
    """
    params = (params or EdgeOtsuParams()).with_defaults()
    if image.band != params.band_name:
        raise ValueError(f"Band {params.band_name!r} not found; raster band is {image.band!r}")

    binary = image.lt(params.initial_threshold)
    edges, magnitude = canny_edges(
        binary.filled(0.0), image.mask, params.canny_sigma, params.canny_threshold
    )
    kept = prune_edges(
        edges, magnitude, int(params.connected_pixels), int(params.edge_length), params.canny_lt
    )

    radius = max(1, int(round(params.smooth_edges / image.nominal_scale())))
    edge_layer = Raster(kept.astype(np.float64), kept, image.transform, image.crs, "mask", "edges")
    buffer = edge_layer.focal_max(radius).mask
    logger.debug(
        f"Edge Otsu: {int(edges.sum())} edge pixels, {int(kept.sum())} kept, "
        f"buffer radius {radius}px covers {int(buffer.sum())} pixels"
    )

    histogram = region_histogram(
        image.update_mask(buffer),
        region=region,
        scale=params.reduction_scale,
        max_buckets=params.max_buckets,
        min_bucket_width=params.min_bucket_width,
        max_raw=params.max_raw,
        max_pixels=max_pixels,
        tile_size=tile_size,
        max_workers=max_workers,
        cancel=cancel,
    )
    threshold, bss = otsu_threshold(histogram)

    water = image.gt(threshold) if params.invert else image.lt(threshold)
    diagnostics = {
        "parameters": params.to_dict(),
        "threshold": threshold,
        "edge_pixels": int(edges.sum()),
        "kept_edge_pixels": int(kept.sum()),
        "buffer_pixels": int(buffer.sum()),
        "buffer_radius_px": radius,
        "histogram": histogram.to_dict(),
        "between_class_ss": bss.tolist(),
    }
    if params.verbose:
        logger.info(f"Algorithm parameters: {params.to_dict()}")
        logger.info(f"Calculated threshold: {threshold:.4f}")
        logger.info(
            f"Thresholding histogram: {len(histogram.counts)} buckets, "
            f"{histogram.non_empty} non-empty, total weight {histogram.total:.1f}"
        )
    return ThresholdResult(threshold, water.rename("water"), params, histogram, diagnostics)


def plot_threshold_histogram(result: ThresholdResult, save_path) -> Path:
    """Save the edge histogram with the threshold marked."""
    save_path = Path(save_path)
    histogram = result.histogram

    fig, ax = plt.subplots(figsize=(8, 5))
    width = histogram.bucket_width if np.isfinite(histogram.bucket_width) else 0.8
    ax.bar(histogram.bucket_means, histogram.counts, width=width, color="steelblue", label="Values")
    ax.axvline(result.threshold, color="red", linestyle="--", label=f"Threshold: {result.threshold:.2f}")
    ax.set_title("Edge Search Histogram")
    ax.set_xlabel("Values")
    ax.set_ylabel("Count")
    ax.legend()
    ax.grid(True, alpha=0.3)
    plt.savefig(save_path, dpi=150, bbox_inches="tight")
    plt.close(fig)
    return save_path
