import sys
import os
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

import pytest
import numpy as np
from rasterio.transform import from_origin
from shapely.geometry import box

from flood_errors import AggregationBudgetExceeded, AggregationCancelled, GridMismatchError
from raster_grid import (
    CancellationToken, Kernel, Raster, check_same_grid, connected_pixel_count,
    iter_tiles, neighborhood_stats, pixel_area, reduce_region, shift,
)

UTM = "EPSG:32633"


def grid_raster(data, pixel=10.0, crs=UTM, **kwargs):
    return Raster.from_array(data, transform=from_origin(0, pixel * np.shape(data)[0], pixel, pixel), crs=crs, **kwargs)


def count_reducer(samples):
    return int(samples.values.size)


# =============================================================================
# 1. Raster & masks
# =============================================================================
def test_from_array_masks_nan_and_nodata():
    r = Raster.from_array([[1.0, np.nan, -9999.0]], nodata=-9999.0)
    assert r.mask.tolist() == [[True, False, False]]
    assert np.isnan(r.data[0, 1:]).all()


def test_grid_mismatch_shape():
    with pytest.raises(GridMismatchError):
        check_same_grid(grid_raster(np.zeros((4, 4))), grid_raster(np.zeros((4, 5))))


def test_grid_mismatch_is_value_error():
    a = grid_raster(np.zeros((4, 4)))
    b = grid_raster(np.zeros((4, 4)), pixel=20.0)
    with pytest.raises(ValueError):
        a.subtract(b)


def test_grid_mismatch_crs():
    a = grid_raster(np.zeros((4, 4)))
    b = grid_raster(np.zeros((4, 4)), crs="EPSG:32634")
    assert not a.same_grid(b)
    assert a.same_grid(grid_raster(np.ones((4, 4))))


def test_update_mask_intersects_valid_nonzero():
    a = Raster.from_array([[1.0, 2.0, 3.0, 4.0]])
    b = Raster.from_array([[1.0, 0.0, np.nan, 5.0]])
    assert a.update_mask(b).mask.tolist() == [[True, False, False, True]]


def test_self_mask_drops_zeros():
    r = Raster.from_array([[0.0, 1.0, 2.0]]).self_mask()
    assert r.mask.tolist() == [[False, True, True]]


def test_where_only_on_valid_condition():
    r = Raster.from_array([[1.0, 2.0, 3.0]])
    cond = Raster.from_array([[0.0, 1.0, np.nan]])
    assert r.where(cond, 9.0).data.tolist() == [[1.0, 9.0, 3.0]]


def test_comparison_is_zero_one_and_propagates_mask():
    r = Raster.from_array([[1.0, 5.0, np.nan]])
    lt = r.lt(3)
    assert lt.units == "mask"
    assert lt.mask.tolist() == [[True, True, False]]
    assert lt.data[0, :2].tolist() == [1.0, 0.0]


def test_arithmetic_masks_non_finite():
    a = Raster.from_array([[1.0, 2.0, 0.0]])
    b = Raster.from_array([[2.0, np.nan, 0.0]])
    assert a.add(b).mask.tolist() == [[True, False, True]]
    assert a.multiply(3).data[0, 1] == 6.0
    assert a.divide(b).mask.tolist() == [[True, False, False]]
    assert a.pow(2).data[0, 1] == 4.0
    assert a.log10().mask.tolist() == [[True, True, False]]


def test_logical_ops():
    a = Raster.from_array([[0.0, 1.0, 2.0]])
    assert a.logical_not().data.tolist() == [[1.0, 0.0, 0.0]]
    assert a.logical_and(Raster.from_array([[1.0, 1.0, 0.0]])).data.tolist() == [[0.0, 1.0, 0.0]]


def test_clip_to_region():
    r = grid_raster(np.ones((10, 10)))
    clipped = r.clip(box(0, 0, 50, 100))
    assert clipped.mask[:, :5].all()
    assert not clipped.mask[:, 5:].any()
    assert r.clip(None).valid_count == 100


# =============================================================================
# 2. Kernels & neighborhoods
# =============================================================================
def test_kernel_rotate_clockwise():
    k = Kernel.fixed(np.vstack([np.zeros((3, 7)), np.ones((4, 7))]))
    rotated = k.rotate(1)
    # filled bottom rows end up on the left
    assert rotated.weights[:, :4].all()
    assert not rotated.weights[:, 4:].any()
    assert rotated.anchor == (3, 3)
    assert np.array_equal(k.rotate(4).weights, k.weights)


def test_neighborhood_truncated_at_border():
    values = np.ones((5, 5))
    mean, var, count = neighborhood_stats(values, np.ones((5, 5), bool), Kernel.square(1))
    assert count[0, 0] == 4
    assert count[2, 2] == 9
    assert np.allclose(mean, 1.0)
    assert np.allclose(var, 0.0)


def test_neighborhood_ignores_masked_cells():
    values = np.full((3, 3), 2.0)
    values[1, 1] = 1e6
    valid = np.ones((3, 3), bool)
    valid[1, 1] = False
    mean, var, count = neighborhood_stats(values, valid, Kernel.square(1))
    assert mean[1, 1] == pytest.approx(2.0)
    assert count[1, 1] == 8


def test_neighborhood_population_variance():
    values = np.array([[0.0, 2.0]])
    mean, var, _ = neighborhood_stats(values, np.ones((1, 2), bool), Kernel.fixed(np.ones((1, 3))))
    assert mean[0, 0] == pytest.approx(1.0)
    assert var[0, 0] == pytest.approx(1.0)


def test_shift_pulls_from_offset():
    a = np.arange(9, dtype=float).reshape(3, 3)
    out = shift(a, 1, 0)
    assert out[0].tolist() == [3.0, 4.0, 5.0]
    assert np.isnan(out[2]).all()


def test_connected_pixel_count():
    values = np.zeros((6, 6))
    values[0, 0] = values[0, 1] = values[1, 1] = 1
    values[4, 4] = 1
    counts = connected_pixel_count(values, np.ones((6, 6), bool), max_size=100)
    assert counts[0, 0] == 3
    assert counts[4, 4] == 1
    assert counts[3, 3] == 32
    capped = connected_pixel_count(values, np.ones((6, 6), bool), max_size=10)
    assert capped[3, 3] == 10


def test_connected_pixel_count_connectivity():
    values = np.eye(2)
    valid = np.ones((2, 2), bool)
    assert connected_pixel_count(values, valid, eight_connected=True)[0, 0] == 2
    assert connected_pixel_count(values, valid, eight_connected=False)[0, 0] == 1


def test_reduce_neighborhood_and_sum():
    data = np.arange(9, dtype=float).reshape(3, 3)
    data[0, 0] = np.nan
    r = Raster.from_array(data)
    mean, var = r.reduce_neighborhood(Kernel.square(1))
    assert mean.data[1, 1] == pytest.approx(np.arange(1, 9).mean())
    assert var.data[1, 1] == pytest.approx(np.arange(1, 9).var())
    assert not mean.mask[0, 0]
    total = r.neighborhood_sum(Kernel.square(1))
    assert total.data[1, 1] == pytest.approx(36.0)
    assert total.data[2, 2] == pytest.approx(4 + 5 + 7 + 8)


def test_focal_max_circle():
    data = np.full((7, 7), np.nan)
    data[3, 3] = 1.0
    grown = Raster.from_array(data).focal_max(2, shape="circle")
    assert grown.mask.sum() == 13
    assert not grown.mask[1, 1]
    with pytest.raises(ValueError):
        Raster.from_array(data).focal_max(1, shape="hexagon")


def test_focal_max_dilates_mask():
    data = np.full((7, 7), np.nan)
    data[3, 3] = 1.0
    grown = Raster.from_array(data).focal_max(1)
    assert grown.mask.sum() == 9
    assert grown.mask[2:5, 2:5].all()
    assert np.allclose(grown.data[2:5, 2:5], 1.0)


# =============================================================================
# 3. Tiling & reductions
# =============================================================================
def test_tiles_cover_grid_once():
    hits = np.zeros((10, 7), int)
    tiles = list(iter_tiles((10, 7), 4, halo=2))
    assert len(tiles) == 6
    for tile in tiles:
        rows, cols = tile.window.toslices()
        hits[rows, cols] += 1
    assert (hits == 1).all()
    assert tiles[0].core_slices == (slice(0, 4), slice(0, 4))
    assert tiles[-1].core_slices == (slice(2, 4), slice(2, 5))


def test_reduce_region_counts_all_tiles():
    r = grid_raster(np.ones((10, 10)))
    total = reduce_region(r, count_reducer, lambda a, b: a + b, 0, tile_size=4, max_workers=2)
    assert total == 100


def test_reduce_region_budget_exceeded():
    r = grid_raster(np.ones((10, 10)))
    with pytest.raises(AggregationBudgetExceeded):
        reduce_region(r, count_reducer, lambda a, b: a + b, 0, tile_size=4, max_pixels=50)


def test_reduce_region_cancelled():
    token = CancellationToken()
    token.cancel()
    r = grid_raster(np.ones((10, 10)))
    with pytest.raises(AggregationCancelled):
        reduce_region(r, count_reducer, lambda a, b: a + b, 0, cancel=token)


def test_deadline_cancels():
    assert CancellationToken(timeout=0).cancelled
    assert not CancellationToken().cancelled


def test_reduce_region_respects_region():
    r = grid_raster(np.ones((10, 10)))
    area = reduce_region(
        r, lambda s: float(s.value_areas.sum()), lambda a, b: a + b, 0.0,
        region=box(0, 0, 50, 100), tile_size=4,
    )
    assert area == pytest.approx(50 * 100.0)


def test_area_independent_of_scale():
    r = grid_raster(np.ones((10, 10)))
    area = reduce_region(r, lambda s: float(s.areas.sum()), lambda a, b: a + b, 0.0, scale=30)
    assert area == pytest.approx(100 * 100.0)


def test_reduce_region_budget_checked_before_any_tile():
    calls = []

    def reducer(samples):
        calls.append(samples)
        return 0

    r = grid_raster(np.ones((40, 40)))
    with pytest.raises(AggregationBudgetExceeded) as exc:
        reduce_region(r, reducer, lambda a, b: a + b, 0, tile_size=8, max_pixels=1599, max_workers=2)
    assert exc.value.visited == 1600
    assert calls == []
    # counted in blocks at the reduction scale
    assert reduce_region(r, count_reducer, lambda a, b: a + b, 0, scale=20, tile_size=8, max_pixels=400) == 1600


def test_block_sampling_keeps_pixel_values():
    data = np.zeros((6, 6))
    data[:, :3] = -9.0
    data[:, 3] = -3.0
    r = grid_raster(data)
    samples = reduce_region(r, lambda s: [s], lambda a, b: a + b, [], scale=30)
    values = np.concatenate([s.values for s in samples])
    weights = np.concatenate([s.weights for s in samples])
    # 3x3 blocks straddling the step still contribute their own pixel values
    assert sorted(set(values.tolist())) == [-9.0, -3.0, 0.0]
    assert np.allclose(weights, 1 / 9)
    assert weights.sum() == pytest.approx(4.0)
    assert sum(s.areas.size for s in samples) == 4


# =============================================================================
# 4. Pixel area
# =============================================================================
def test_projected_pixel_area():
    areas = pixel_area(from_origin(0, 100, 10, 10), UTM, slice(0, 2), slice(0, 3))
    assert areas.shape == (2, 3)
    assert np.allclose(areas, 100.0)


def test_geographic_pixel_area():
    equator = pixel_area(from_origin(0, 0.001, 0.001, 0.001), "EPSG:4326", slice(0, 1), slice(0, 2))
    assert equator[0, 0] == pytest.approx(111.32 * 110.57, rel=0.01)
    assert equator[0, 1] == pytest.approx(equator[0, 0])

    north = pixel_area(from_origin(0, 60.001, 0.001, 0.001), "EPSG:4326", slice(0, 1), slice(0, 1))
    assert 0.48 < north[0, 0] / equator[0, 0] < 0.52


def test_nominal_scale():
    assert grid_raster(np.zeros((3, 3))).nominal_scale() == pytest.approx(10.0)
