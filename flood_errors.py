"""
Flood Cropland Mapper - Errors
==============================

Exceptions raised by the raster core. All of them abort the enclosing
mask or statistic computation; callers decide whether to re-run with
different parameters.
"""


class FloodMappingError(Exception):
    """Base class for all flood mapping failures."""


class GridMismatchError(FloodMappingError, ValueError):
    """Operands of a pixel-wise operation do not share a grid."""


class DegenerateHistogramError(FloodMappingError):
    """Otsu thresholding attempted on an empty or single-bucket histogram."""

    def __init__(self, message, histogram=None):
        super().__init__(message)
        self.histogram = histogram


class AggregationBudgetExceeded(FloodMappingError):
    """A region reduction needs more samples than the configured cap."""

    def __init__(self, visited, max_pixels):
        super().__init__(
            f"Region reduction visited {visited} samples, more than max_pixels={max_pixels}. "
            "Increase max_pixels or use a coarser scale."
        )
        self.visited = visited
        self.max_pixels = max_pixels


class AggregationCancelled(FloodMappingError):
    """A long-running reduction was cancelled or ran past its deadline."""


class UndefinedPercentageError(FloodMappingError, ZeroDivisionError):
    """Percentage requested with a zero denominator."""
