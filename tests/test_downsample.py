"""
Unit tests for Douglas-Peucker downsampling in `pathfit/downsample.py`.
"""

import numpy as np
import pytest

from pathfit import Calibration, Path, SimplePoint, downsample_path, downsample_points

# ---- Helpers ----------------------------------------------------------------


def _points(coords):
    return [SimplePoint(x, y, z, i) for i, (x, y, z) in enumerate(coords)]


def _path(coords, radii=None):
    p = Path(Calibration(1.0, 1.0, 1.0, "um"))
    if radii is None:
        for x, y, z in coords:
            p.add_point(x, y, z)
    else:
        coords = np.asarray(coords, dtype=float)
        p.set_fitted_circles(np.zeros_like(coords), np.asarray(radii, dtype=float), coords)
    return p


# ---- Tests: Point lists -----------------------------------------------------


def test_collinear_points_reduce_to_ends():
    pts = _points([(float(i), 0.0, 0.0) for i in range(10)])
    kept = downsample_points(pts, 0.01)
    assert [p.original_index for p in kept] == [0, 9]


def test_corner_is_kept():
    pts = _points([(0.0, 0.0, 0.0), (1.0, 0.0, 0.0), (2.0, 0.0, 0.0), (2.0, 1.0, 0.0), (2.0, 2.0, 0.0)])
    kept = downsample_points(pts, 0.1)
    assert [p.original_index for p in kept] == [0, 2, 4]
    # A tolerance larger than the corner's offset drops it
    assert [p.original_index for p in downsample_points(pts, 5.0)] == [0, 4]


def test_zero_tolerance_keeps_every_bend():
    pts = _points([(0.0, 0.0, 0.0), (1.0, 0.5, 0.0), (2.0, 0.0, 0.0), (3.0, 0.5, 0.0)])
    assert len(downsample_points(pts, 0.0)) == 4


def test_short_lists_are_returned_unchanged():
    pts = _points([(0.0, 0.0, 0.0), (1.0, 1.0, 1.0)])
    assert downsample_points(pts, 1.0) == pts


def test_negative_tolerance_raises():
    with pytest.raises(ValueError):
        downsample_points(_points([(0.0, 0.0, 0.0)] * 3), -1.0)
    with pytest.raises(ValueError):
        downsample_path(_path([(0.0, 0.0, 0.0)] * 3), -0.5)


# ---- Tests: Paths -----------------------------------------------------------


def test_fixed_points_survive():
    p = _path([(float(i), 0.0, 0.0) for i in range(11)])
    dropped = downsample_path(p, 0.5, fixed_indices={3, 7})
    assert dropped == 7
    np.testing.assert_array_equal(p.positions[:, 0], [0.0, 3.0, 7.0, 10.0])


def test_out_of_range_fixed_indices_are_ignored():
    p = _path([(float(i), 0.0, 0.0) for i in range(5)])
    assert downsample_path(p, 0.5, fixed_indices={-1, 99}) == 3
    assert p.size() == 2


def test_short_path_untouched():
    p = _path([(0.0, 0.0, 0.0), (1.0, 0.0, 0.0)])
    p.mesh()
    assert downsample_path(p, 1.0) == 0
    assert p.size() == 2
    assert p.is_3d_view_invalid()


def test_radii_are_averaged_over_spans():
    p = _path([(float(i), 0.0, 0.0) for i in range(5)], radii=[1.0, 2.0, 3.0, 4.0, 5.0])
    assert p.downsample(0.1) == 3
    # First node: mean over [0, 2]; the end node keeps its own radius
    np.testing.assert_allclose(p.radii, [2.0, 5.0])
    # Tangents re-derived from the simplified geometry
    np.testing.assert_allclose(p.tangents, [[4.0, 0.0, 0.0], [4.0, 0.0, 0.0]])
    assert p.positions.shape[0] == p.radii.shape[0] == p.tangents.shape[0]


def test_radii_with_interior_fixed_point():
    p = _path([(float(i), 0.0, 0.0) for i in range(7)], radii=[1.0, 1.0, 1.0, 4.0, 7.0, 7.0, 7.0])
    p.downsample(0.1, fixed_indices=[3])
    np.testing.assert_array_equal(p.positions[:, 0], [0.0, 3.0, 6.0])
    # [0, 1] -> 1; [3, 4] -> 5.5; the final node keeps 7
    np.testing.assert_allclose(p.radii, [1.0, 5.5, 7.0])


def test_downsample_invalidates_mesh():
    p = _path([(float(i), 0.0, 0.0) for i in range(5)])
    p.mesh()
    p.downsample(0.1)
    assert p.is_3d_view_invalid()
