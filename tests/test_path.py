"""
Unit tests for `pathfit/path.py`.

Covers:
- Node storage, growth and copies
- Insertion, removal and moves
- Nearest-node queries
- Append, measurements and derived paths
- Metadata and the fitted relationship
"""

import math

import numpy as np
import pytest

from pathfit import Calibration, InvalidIndexError, InvalidStateError, JoinGraph, Path
from pathfit.swc import SWC_AXON, SWC_DENDRITE, swc_color

# ---- Fixtures ---------------------------------------------------------------


@pytest.fixture
def calibration():
    return Calibration(1.0, 1.0, 1.0, "um")


@pytest.fixture
def line_path(calibration):
    # Five nodes along x, one unit apart
    p = Path(calibration)
    for x in range(5):
        p.add_point(float(x), 0.0, 0.0)
    return p


@pytest.fixture
def tube_path(calibration):
    # Two nodes along z with radius 2
    p = Path(calibration)
    p.set_fitted_circles(
        tangents=np.array([[0.0, 0.0, 10.0], [0.0, 0.0, 10.0]]),
        radii=np.array([2.0, 2.0]),
        positions=np.array([[0.0, 0.0, 0.0], [0.0, 0.0, 10.0]]),
    )
    return p


# ---- Tests: Storage ---------------------------------------------------------


def test_growth_policy():
    p = Path(reserve=2)
    p.add_point(0, 0, 0)
    p.add_point(1, 0, 0)
    assert p.capacity == 2
    p.add_point(2, 0, 0)
    assert p.capacity == int(2 * 1.2) + 1
    p.add_point(3, 0, 0)
    assert p.capacity == int(3 * 1.2) + 1
    assert p.size() == len(p) == 4


def test_accessors_return_copies(line_path):
    pos = line_path.positions
    pos[0] = [99.0, 99.0, 99.0]
    np.testing.assert_array_equal(line_path.point(0), [0.0, 0.0, 0.0])

    pt = line_path.point(1)
    pt[:] = -1.0
    np.testing.assert_array_equal(line_path.point(1), [1.0, 0.0, 0.0])


def test_point_out_of_range_raises(line_path):
    with pytest.raises(InvalidIndexError):
        line_path.point(5)
    with pytest.raises(IndexError):
        line_path.point(-1)


def test_radius_arrays_stay_aligned(tube_path):
    tube_path.add_point(0.0, 0.0, 20.0)
    tube_path.add_node(1, (0.0, 0.0, 5.0))
    tube_path.remove_node(0)
    n = tube_path.size()
    assert tube_path.positions.shape == (n, 3)
    assert tube_path.radii.shape == (n,)
    assert tube_path.tangents.shape == (n, 3)


def test_unscaled_uses_spacing():
    p = Path(Calibration(0.5, 0.5, 2.0, "um"))
    p.add_point(1.0, 2.0, 4.0)
    np.testing.assert_allclose(p.unscaled(0), [2.0, 4.0, 2.0])
    np.testing.assert_allclose(p.unscaled_positions(), [[2.0, 4.0, 2.0]])


# ---- Tests: Mutation --------------------------------------------------------


def test_add_node_inserts_at_index(line_path):
    line_path.add_node(2, (1.5, 1.0, 0.0))
    assert line_path.size() == 6
    np.testing.assert_array_equal(line_path.point(2), [1.5, 1.0, 0.0])
    np.testing.assert_array_equal(line_path.point(3), [2.0, 0.0, 0.0])


def test_add_node_at_end_and_out_of_range(line_path):
    line_path.add_node(5, (5.0, 0.0, 0.0))
    np.testing.assert_array_equal(line_path.last_point(), [5.0, 0.0, 0.0])
    with pytest.raises(InvalidIndexError):
        line_path.add_node(7, (0.0, 0.0, 0.0))


def test_add_node_with_radii_uses_default_radius(tube_path):
    tube_path.add_node(1, (0.0, 0.0, 5.0))
    np.testing.assert_allclose(tube_path.radii, [2.0, 2.0, 2.0])
    # Tangents are re-derived over a two-node window
    np.testing.assert_allclose(tube_path.tangent(1, 2), tube_path.tangents[1])


def test_remove_node_single_point_is_noop():
    p = Path()
    p.add_point(1.0, 2.0, 3.0)
    p.remove_node(0)
    assert p.size() == 1


def test_remove_node_out_of_range_raises(line_path):
    with pytest.raises(InvalidIndexError):
        line_path.remove_node(10)


def test_remove_node_shifts_following_nodes(line_path):
    line_path.remove_node(1)
    assert line_path.size() == 4
    np.testing.assert_array_equal(line_path.point(1), [2.0, 0.0, 0.0])


def test_move_node(line_path):
    line_path.move_node(4, (4.0, 3.0, 0.0))
    np.testing.assert_array_equal(line_path.point(4), [4.0, 3.0, 0.0])
    with pytest.raises(InvalidIndexError):
        line_path.move_node(5, (0.0, 0.0, 0.0))


def test_mutation_invalidates_mesh(line_path):
    line_path.mesh()
    assert not line_path.is_3d_view_invalid()
    line_path.move_node(0, (0.0, 1.0, 0.0))
    assert line_path.is_3d_view_invalid()


# ---- Tests: Queries ---------------------------------------------------------


def test_index_nearest_to(line_path):
    assert line_path.index_nearest_to(2.2, 0.1, 0.0) == 2
    assert line_path.index_nearest_to(2.2, 0.1, 0.0, within=0.1) == -1
    # Ties go to the earliest index
    assert line_path.index_nearest_to(1.5, 0.0, 0.0) == 1


def test_index_nearest_to_empty_path():
    assert Path().index_nearest_to(0.0, 0.0, 0.0) == -1


def test_index_nearest_to_2d_ignores_z(line_path):
    assert line_path.index_nearest_to_2d(3.0, 0.0) == 3
    assert line_path.index_nearest_to_2d(3.0, 0.0, within=0.5) == 3
    assert line_path.index_nearest_to(3.0, 0.0, 100.0, within=0.5) == -1


def test_contains_and_node_index(line_path):
    assert line_path.contains((3.0, 0.0, 0.0))
    assert not line_path.contains((3.0, 0.0, 1e-12))
    assert line_path.node_index((3.2, 0.5, -0.5)) == 3
    assert line_path.node_index((30.0, 0.0, 0.0)) == -1


# ---- Tests: Append ----------------------------------------------------------


def test_append_skips_duplicate_leading_node(calibration, line_path):
    other = Path(calibration)
    other.add_point(4.0, 0.0, 0.0)
    other.add_point(5.0, 0.0, 0.0)
    line_path.append(other)
    assert line_path.size() == 6
    np.testing.assert_array_equal(line_path.last_point(), [5.0, 0.0, 0.0])


def test_append_propagates_radii(calibration, line_path, tube_path):
    line_path.append(tube_path)
    assert line_path.has_radii()
    radii = line_path.radii
    assert radii.shape == (7,)
    # Existing nodes get twice the minimum separation
    np.testing.assert_allclose(radii[:5], 2.0 * calibration.min_separation)
    np.testing.assert_allclose(radii[5:], [2.0, 2.0])


def test_append_with_end_join_raises(calibration, line_path):
    other = Path(calibration)
    other.add_point(9.0, 9.0, 9.0)
    graph = JoinGraph([line_path, other])
    graph.set_end_join(line_path, other, (9.0, 9.0, 9.0))
    with pytest.raises(InvalidStateError):
        line_path.append(Path(calibration))


# ---- Tests: Tangents --------------------------------------------------------


def test_tangent_is_clamped_difference(line_path):
    np.testing.assert_array_equal(line_path.tangent(0, 2), [2.0, 0.0, 0.0])
    np.testing.assert_array_equal(line_path.tangent(2, 2), [4.0, 0.0, 0.0])
    np.testing.assert_array_equal(line_path.tangent(4, 2), [2.0, 0.0, 0.0])


def test_guessed_tangents_need_radius_data(line_path):
    with pytest.raises(InvalidStateError):
        line_path.set_guessed_tangents(2)
    line_path.create_circles()
    line_path.set_guessed_tangents(1)
    np.testing.assert_array_equal(line_path.tangents[2], [2.0, 0.0, 0.0])


# ---- Tests: Measurements ----------------------------------------------------


def test_length(line_path):
    assert line_path.length() == pytest.approx(4.0)
    assert line_path.length_string() == "4.0000"
    single = Path()
    single.add_point(0, 0, 0)
    assert single.length() == 0.0


def test_approximate_fitted_volume(line_path, tube_path):
    assert line_path.approximate_fitted_volume() == -1
    assert tube_path.approximate_fitted_volume() == pytest.approx(math.pi * 4.0 * 10.0)
    assert tube_path.mean_radius() == pytest.approx(2.0)


# ---- Tests: Derived paths ---------------------------------------------------


def test_reversed(tube_path):
    r = tube_path.reversed()
    np.testing.assert_array_equal(r.point(0), [0.0, 0.0, 10.0])
    np.testing.assert_array_equal(r.tangents[0], [0.0, 0.0, -10.0])
    # Source untouched
    np.testing.assert_array_equal(tube_path.point(0), [0.0, 0.0, 0.0])


def test_transform_drops_nan_nodes(line_path):
    def shift_or_drop(x, y, z):
        if x == 2.0:
            return (math.nan, math.nan, math.nan)
        return (x + 10.0, y, z)

    t = line_path.transform(shift_or_drop)
    assert t.size() == 4
    np.testing.assert_array_equal(t.point(0), [10.0, 0.0, 0.0])
    np.testing.assert_array_equal(t.point(2), [13.0, 0.0, 0.0])


# ---- Tests: Metadata --------------------------------------------------------


def test_default_name_and_string(line_path):
    line_path.id = 3
    line_path.set_default_name()
    assert line_path.name == "Path 3"
    line_path.swc_type = SWC_AXON
    assert str(line_path) == "Path 3 [4.0000 um] [axon]"


def test_swc_type_out_of_range_raises(line_path):
    with pytest.raises(InvalidStateError):
        line_path.swc_type = 8


def test_swc_type_and_color_propagate_to_fitted(calibration, line_path):
    fitted = Path(calibration)
    line_path.set_fitted(fitted)
    line_path.swc_type = SWC_DENDRITE
    line_path.set_color_by_swc_type()
    assert fitted.swc_type == SWC_DENDRITE
    assert fitted.color == swc_color(SWC_DENDRITE)
    assert line_path.has_custom_color()


def test_fitted_relationship(calibration, line_path):
    fitted = Path(calibration)
    line_path.set_fitted(fitted)
    assert line_path.fitted is fitted
    assert fitted.fitted_version_of is line_path
    assert fitted.is_fitted_version_of_another_path()
    with pytest.raises(InvalidStateError):
        line_path.set_fitted(Path(calibration))


def test_use_fitted(calibration, line_path):
    with pytest.raises(InvalidStateError):
        line_path.use_fitted = True
    fitted = Path(calibration)
    fitted.add_point(0, 0, 0)
    fitted.name = "fitted"
    line_path.set_fitted(fitted)
    assert line_path.version_in_use()
    line_path.use_fitted = True
    assert not line_path.version_in_use()
    assert fitted.version_in_use()
    assert str(line_path).startswith("fitted")


def test_ordering_by_id():
    a, b = Path(), Path()
    a.id, b.id = 2, 1
    assert sorted([a, b]) == [b, a]
