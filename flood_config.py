"""
Flood Cropland Mapper - Configuration
=====================================

Centralized configuration for paths, resource limits and algorithm parameters.
Environment variables override the defaults of the runtime settings; algorithm
parameters live in dataclasses so a run can be described by a single JSON file.
"""

import os
import json
from pathlib import Path
from dataclasses import dataclass, field, fields, asdict, replace
from typing import Any, Dict, Mapping, Optional


def _env_float(name: str) -> Optional[float]:
    value = os.getenv(name)
    return float(value) if value not in (None, "") else None


class Config:
    """Runtime settings for Flood Cropland Mapper"""

    # Environment detection
    ENV = os.getenv('FLOOD_ENV', 'development')  # development, production, docker

    # Base directories
    BASE_DIR = Path(__file__).parent.resolve()

    # Data directories (configurable via environment variables)
    DATA_ROOT = Path(os.getenv('FLOOD_DATA_ROOT', str(BASE_DIR / 'data')))
    OUTPUT_DIR = Path(os.getenv('FLOOD_OUTPUT_DIR', str(BASE_DIR / 'output')))

    # Resource limits
    MAX_WORKERS = int(os.getenv('FLOOD_MAX_WORKERS', '4'))
    TILE_SIZE = int(os.getenv('FLOOD_TILE_SIZE', '512'))
    MAX_PIXELS = int(float(os.getenv('FLOOD_MAX_PIXELS', '1e13')))
    TIMEOUT_SECONDS = _env_float('FLOOD_TIMEOUT')

    # Output file names
    STATISTICS_FILE = 'flood_statistics.json'
    HISTOGRAM_FILE = 'edge_otsu_histogram.png'

    @classmethod
    def ensure_directories(cls):
        """Create the output directory if it doesn't exist"""
        cls.OUTPUT_DIR.mkdir(parents=True, exist_ok=True)

    @classmethod
    def summary(cls) -> str:
        """Return configuration summary"""
        return f"""
Flood Cropland Mapper Configuration
===================================
Environment: {cls.ENV}
Data Root: {cls.DATA_ROOT}
Output: {cls.OUTPUT_DIR}

Settings:
- Max Workers: {cls.MAX_WORKERS}
- Tile Size: {cls.TILE_SIZE}
- Max Pixels: {cls.MAX_PIXELS:.0e}
- Timeout: {cls.TIMEOUT_SECONDS if cls.TIMEOUT_SECONDS is not None else 'none'}
"""


# =============================================================================
# EDGE OTSU PARAMETERS
# =============================================================================

# camelCase names used by parameter files -> dataclass field names
_EDGE_OTSU_KEYS = {
    'initialThreshold': 'initial_threshold',
    'reductionScale': 'reduction_scale',
    'smoothing': 'smoothing',
    'bandName': 'band_name',
    'connectedPixels': 'connected_pixels',
    'edgeLength': 'edge_length',
    'smoothEdges': 'smooth_edges',
    'cannyThreshold': 'canny_threshold',
    'cannySigma': 'canny_sigma',
    'cannyLt': 'canny_lt',
    'maxBuckets': 'max_buckets',
    'minBucketWidth': 'min_bucket_width',
    'maxRaw': 'max_raw',
    'invert': 'invert',
    'verbose': 'verbose',
}


@dataclass
class EdgeOtsuParams:
    """
    Edge Otsu parameter set.

    Every field is optional; ``with_defaults`` fills the unset ones from
    ``EDGE_OTSU_DEFAULTS`` in one merge step.
    """

    initial_threshold: Optional[float] = None  # preliminary binarization cutoff (dB)
    reduction_scale: Optional[float] = None  # histogram sampling resolution (m)
    smoothing: Optional[float] = None  # reserved, echoed only
    band_name: Optional[str] = None
    connected_pixels: Optional[int] = None  # cap for edge connectivity counting
    edge_length: Optional[int] = None  # min edge component size
    smooth_edges: Optional[float] = None  # edge buffer radius (m)
    canny_threshold: Optional[float] = None
    canny_sigma: Optional[float] = None
    canny_lt: Optional[float] = None
    max_buckets: Optional[int] = None
    min_bucket_width: Optional[float] = None
    max_raw: Optional[int] = None
    invert: Optional[bool] = None
    verbose: Optional[bool] = None

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> "EdgeOtsuParams":
        """Build from camelCase or snake_case keys; unknown keys are rejected."""
        known = {f.name for f in fields(cls)}
        values = {}
        for key, value in mapping.items():
            name = _EDGE_OTSU_KEYS.get(key, key)
            if name not in known:
                raise ValueError(f"Unknown Edge Otsu parameter: {key!r}")
            values[name] = value
        return cls(**values)

    def with_defaults(self) -> "EdgeOtsuParams":
        overrides = {k: v for k, v in asdict(self).items() if v is not None}
        return replace(EDGE_OTSU_DEFAULTS, **overrides).validate()

    def validate(self) -> "EdgeOtsuParams":
        for name in ('reduction_scale', 'smooth_edges', 'canny_sigma', 'min_bucket_width'):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ValueError(f"{name} must be positive, got {value}")
        for name in ('connected_pixels', 'edge_length', 'max_buckets', 'max_raw'):
            value = getattr(self, name)
            if value is not None and int(value) < 1:
                raise ValueError(f"{name} must be at least 1, got {value}")
        return self

    def to_dict(self) -> Dict[str, Any]:
        """camelCase view, as echoed in diagnostics."""
        values = asdict(self)
        return {camel: values[name] for camel, name in _EDGE_OTSU_KEYS.items()}


EDGE_OTSU_DEFAULTS = EdgeOtsuParams(
    initial_threshold=1.0,
    reduction_scale=180.0,
    smoothing=100.0,
    band_name='constant',
    connected_pixels=30,
    edge_length=20,
    smooth_edges=20.0,
    canny_threshold=1.0,
    canny_sigma=1.0,
    canny_lt=0.05,
    max_buckets=255,
    min_bucket_width=0.001,
    max_raw=1_000_000,
    invert=False,
    verbose=True,
)


# =============================================================================
# CLASSIFIER / STATISTICS / PIPELINE
# =============================================================================

@dataclass
class ClassifierConfig:
    """Mask refinement rules for the flood and cropland layers."""

    permanent_water_months: float = 8  # occurrence >= this is permanent water
    min_connected_pixels: int = 8  # components smaller than this are noise
    connected_pixels_max: int = 100  # counting cap for connectivity
    max_slope_degrees: float = 5.0  # slope >= this is excluded
    cropland_class: int = 40  # land-cover code for cropland
    accuracy_threshold: float = 50.0  # classification confidence must exceed (%)


@dataclass
class StatisticsConfig:
    """Area aggregation settings."""

    scale: float = 250.0  # sampling scale in meters
    max_pixels: int = Config.MAX_PIXELS
    tile_size: int = Config.TILE_SIZE
    max_workers: int = Config.MAX_WORKERS


@dataclass
class PipelineConfig:
    """Complete parameterization of a flood mapping run."""

    polarization: str = 'VV'
    edge_otsu: EdgeOtsuParams = field(default_factory=EdgeOtsuParams)
    classifier: ClassifierConfig = field(default_factory=ClassifierConfig)
    statistics: StatisticsConfig = field(default_factory=StatisticsConfig)
    tile_size: int = Config.TILE_SIZE
    max_workers: int = Config.MAX_WORKERS
    timeout_seconds: Optional[float] = Config.TIMEOUT_SECONDS

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PipelineConfig":
        data = dict(data)
        edge_otsu = EdgeOtsuParams.from_mapping(data.pop('edge_otsu', {}))
        classifier = ClassifierConfig(**data.pop('classifier', {}))
        statistics = StatisticsConfig(**data.pop('statistics', {}))
        return cls(edge_otsu=edge_otsu, classifier=classifier, statistics=statistics, **data)

    @classmethod
    def from_json(cls, path) -> "PipelineConfig":
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path, 'r') as f:
            return cls.from_dict(json.load(f))
