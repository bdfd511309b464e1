"""
Flood Cropland Mapper - Presets Module
======================================

Quick-access Edge Otsu parameter sets for different scenarios.
"""

from flood_config import EdgeOtsuParams

# =============================================================================
# EDGE OTSU PRESETS
# =============================================================================

EDGE_OTSU_PRESETS = {
    'default': {
        'description': 'Standard parameters for 10 m Sentinel-1 change detection',
        'params': {},
    },

    'relaxed edges': {
        'description': 'Keeps shorter edge fragments and a wider buffer; small or fragmented floods',
        'params': {
            'edgeLength': 10,
            'connectedPixels': 20,
            'smoothEdges': 40,
        },
    },

    'fine histogram': {
        'description': 'Histogram sampled at native resolution with narrow buckets',
        'params': {
            'reductionScale': 10,
            'minBucketWidth': 0.0005,
        },
    },

    'coarse histogram': {
        'description': 'Fast histogram for large regions',
        'params': {
            'reductionScale': 500,
            'maxBuckets': 128,
        },
    },
}


def get_preset(name: str) -> EdgeOtsuParams:
    """Get the parameter set of a preset (unset fields keep the defaults)."""
    key = name.strip().lower().replace('_', ' ')
    if key not in EDGE_OTSU_PRESETS:
        raise ValueError(
            f"Unknown preset {name!r}; available: {', '.join(EDGE_OTSU_PRESETS)}"
        )
    return EdgeOtsuParams.from_mapping(EDGE_OTSU_PRESETS[key]['params'])
