import sys
import os
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

import pytest
import numpy as np
from rasterio.transform import from_origin
from shapely.geometry import box

from flood_classifier import AncillaryLayers, FloodClassifier
from flood_config import ClassifierConfig, EdgeOtsuParams
from flood_errors import DegenerateHistogramError, GridMismatchError
from raster_grid import Raster

SIZE = 30
TRANSFORM = from_origin(0, 10 * SIZE, 10, 10)


def make_raster(data, units="dB", band="constant"):
    return Raster.from_array(data, transform=TRANSFORM, crs="EPSG:32633", units=units, band=band)


def mask_raster(valid):
    return make_raster(np.where(valid, 1.0, np.nan), units="mask")


@pytest.fixture
def scene():
    """
    30x30 scene, 10 m pixels. Flooded square rows/cols 5..20 (-12 dB change), with
    permanent water in rows 5..8, steep terrain in rows 17..20, cropland in cols 0..12
    and low land cover confidence in rows 9..12.
    """
    pre = np.full((SIZE, SIZE), -8.0)
    during = pre.copy()
    during[5:21, 5:21] = -20.0

    occurrence = np.zeros((SIZE, SIZE))
    occurrence[5:9, 5:21] = 12
    slope = np.zeros((SIZE, SIZE))
    slope[17:21, 5:21] = 10.0
    landcover = np.full((SIZE, SIZE), 10.0)
    landcover[:, :13] = 40
    confidence = np.full((SIZE, SIZE), 80.0)
    confidence[9:13, :] = 50.0

    ancillary = AncillaryLayers(
        water_occurrence=make_raster(occurrence, "months", "occurrence"),
        slope=make_raster(slope, "degrees", "slope"),
        landcover=make_raster(landcover, "class", "landcover"),
        landcover_confidence=make_raster(confidence, "percent", "confidence"),
    )
    return make_raster(pre, band="pre"), make_raster(during, band="during"), ancillary


@pytest.fixture
def classifier():
    params = EdgeOtsuParams(initial_threshold=-6, reduction_scale=10, edge_length=5, verbose=False)
    return FloodClassifier(edge_otsu_params=params)


# =============================================================================
# 1. Full classification
# =============================================================================
def test_classify_scene(scene, classifier):
    pre, during, ancillary = scene
    masks = classifier.classify(pre, during, ancillary)

    assert -12.0 < masks.threshold.threshold < 0.0
    assert masks.raw_flood.self_mask().valid_count == 16 * 16

    expected_flood = np.zeros((SIZE, SIZE), bool)
    expected_flood[9:17, 5:21] = True
    assert np.array_equal(masks.flood.mask, expected_flood)

    assert masks.cropland.valid_count == SIZE * 13 - 4 * 13
    assert masks.flooded_cropland.valid_count == 4 * 8
    assert masks.flooded_cropland.mask[13:17, 5:13].all()

def test_classify_default_reduction_scale(scene):
    pre, during, ancillary = scene
    classifier = FloodClassifier(edge_otsu_params=EdgeOtsuParams(initial_threshold=-6, edge_length=5, verbose=False))
    masks = classifier.classify(pre, during, ancillary)
    assert -12.0 < masks.threshold.threshold < 0.0
    assert masks.raw_flood.self_mask().valid_count == 16 * 16

def test_classify_no_change_is_degenerate(scene):
    pre, _, ancillary = scene
    classifier = FloodClassifier(edge_otsu_params=EdgeOtsuParams(initial_threshold=1, verbose=False))
    with pytest.raises(DegenerateHistogramError):
        classifier.classify(pre, pre, ancillary)

def test_masks_are_nested(scene, classifier):
    pre, during, ancillary = scene
    masks = classifier.classify(pre, during, ancillary)
    raw = masks.raw_flood.self_mask().mask
    assert not (masks.flood.mask & ~raw).any()
    assert not (masks.flooded_cropland.mask & ~(masks.flood.mask & masks.cropland.mask)).any()
    assert (masks.flood.data[masks.flood.mask] == 1).all()

def test_classify_clips_to_region(scene, classifier):
    pre, during, ancillary = scene
    masks = classifier.classify(pre, during, ancillary, region=box(0, 0, 100, 10 * SIZE))
    assert not masks.flood.mask[:, 10:].any()
    assert masks.cropland.valid_count == SIZE * 10 - 4 * 10
    assert masks.flooded_cropland.valid_count == 4 * 5

def test_classify_grid_mismatch(scene, classifier):
    pre, during, ancillary = scene
    ancillary.slope = Raster.from_array(np.zeros((SIZE, SIZE + 1)), transform=TRANSFORM, crs="EPSG:32633")
    with pytest.raises(GridMismatchError):
        classifier.classify(pre, during, ancillary)

def test_difference_named_for_thresholding(scene, classifier):
    pre, during, _ = scene
    diff = classifier.difference(pre, during)
    assert diff.band == "constant"
    assert diff.data[10, 10] == pytest.approx(-12.0)
    assert diff.data[0, 0] == pytest.approx(0.0)

# =============================================================================
# 2. Refinement rules
# =============================================================================
def test_permanent_water_threshold():
    flood = mask_raster(np.ones((1, 4), bool))
    occurrence = make_raster(np.array([[7.9, 8.0, 12.0, np.nan]]), "months")
    out = FloodClassifier().remove_permanent_water(flood, occurrence)
    assert out.mask.tolist() == [[True, False, False, True]]

def test_isolated_pixels_removed():
    valid = np.zeros((10, 10), bool)
    valid[1:4, 1:4] = True
    valid[8, 8] = True
    out = FloodClassifier().remove_isolated(mask_raster(valid))
    assert out.mask[1:4, 1:4].all()
    assert not out.mask[8, 8]

def test_min_connected_pixels_configurable():
    valid = np.zeros((10, 10), bool)
    valid[1:4, 1:4] = True
    out = FloodClassifier(ClassifierConfig(min_connected_pixels=10)).remove_isolated(mask_raster(valid))
    assert out.valid_count == 0

def test_slope_threshold():
    flood = mask_raster(np.ones((1, 4), bool))
    slope = make_raster(np.array([[0.0, 4.99, 5.0, np.nan]]), "degrees")
    out = FloodClassifier().remove_steep(flood, slope)
    assert out.mask.tolist() == [[True, True, False, False]]

def test_cropland_confidence_strict():
    landcover = make_raster(np.array([[40.0, 40.0, 40.0, 41.0]]), "class")
    confidence = make_raster(np.array([[50.0, 50.1, 100.0, 100.0]]), "percent")
    out = FloodClassifier().cropland_mask(landcover, confidence)
    assert out.mask.tolist() == [[False, True, True, False]]
    assert out.band == "cropland"
