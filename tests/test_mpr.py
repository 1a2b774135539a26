import numpy as np
import pytest

from mpr_core.mpr import (
    Plane,
    _drop_near_duplicates,
    extract_slice,
    get_extent,
    get_max_index,
    image_bounds,
    plane_intersections,
    project_contour,
    project_structure,
    screen_to_world,
    voxel_index_to_world,
    voxel_to_world,
    world_to_screen,
    world_to_voxel,
    world_to_voxel_index,
)
from mpr_core.rtstruct import Contour, ROIStructure


def _square(half, z, center=(0.0, 0.0)):
    cx, cy = center
    points = [
        (cx - half, cy - half, z),
        (cx + half, cy - half, z),
        (cx + half, cy + half, z),
        (cx - half, cy + half, z),
    ]
    return Contour(points=points, plane_depth=z)


def _structure(*contours):
    return ROIStructure(1, "ROI", (1.0, 0.0, 0.0), tuple(contours))


# ---------------------------------------------------------------------------
# Planes / indices
# ---------------------------------------------------------------------------
def test_plane_axes():
    assert Plane("axial") is Plane.AXIAL
    assert Plane.AXIAL.plane_axes == (0, 1)
    assert Plane.CORONAL.plane_axes == (0, 2)
    assert Plane.SAGITTAL.plane_axes == (1, 2)
    assert [p.array_axis for p in Plane] == [0, 1, 2]


@pytest.mark.parametrize("plane", list(Plane))
def test_index_round_trip(small_volume, plane):
    for index in range(get_max_index(small_volume, plane) + 1):
        position = small_volume.center.copy()
        position[plane.slice_axis] = voxel_index_to_world(small_volume, index, plane)
        assert world_to_voxel_index(small_volume, position, plane) == index


@pytest.mark.parametrize(
    "z, expected", [(10.0, 2), (11.2, 2), (11.3, 3), (100.0, 4), (-100.0, 0)]
)
def test_world_to_index_rounds_and_clamps(small_volume, z, expected):
    assert world_to_voxel_index(small_volume, (-8.0, 3.0, z), Plane.AXIAL) == expected


def test_voxel_world_round_trip(small_volume):
    world = voxel_to_world(small_volume, (1.5, 2.0, 3.0))

    np.testing.assert_allclose(world, [-8.5, 4.0, 12.5])
    np.testing.assert_allclose(world_to_voxel(small_volume, world), [1.5, 2.0, 3.0])
    np.testing.assert_allclose(voxel_to_world(small_volume, (0, 0, 0)), small_volume.origin)


# ---------------------------------------------------------------------------
# Slice extraction
# ---------------------------------------------------------------------------
def test_axial_slice(small_volume):
    image = extract_slice(small_volume, Plane.AXIAL, 2)

    assert image.shape == (3, 4)
    assert image.pixel_spacing == (2.0, 1.0)
    assert image.extent == [-10.0, -6.0, 0.0, 6.0]
    assert image.position == pytest.approx(10.0)
    np.testing.assert_array_equal(image.samples, small_volume.voxels[2])
    assert np.shares_memory(image.samples, small_volume.voxels)


def test_coronal_and_sagittal_slices(small_volume):
    coronal = extract_slice(small_volume, Plane.CORONAL, 1)
    assert coronal.shape == (5, 4)
    assert coronal.pixel_spacing == (2.5, 1.0)
    assert coronal.extent == get_extent(small_volume, Plane.CORONAL) == [-10.0, -6.0, 5.0, 17.5]
    np.testing.assert_array_equal(coronal.samples, small_volume.voxels[:, 1, :])

    sagittal = extract_slice(small_volume, Plane.SAGITTAL, 3)
    assert sagittal.shape == (5, 3)
    assert sagittal.pixel_spacing == (2.5, 2.0)
    assert sagittal.samples[4, 2] == small_volume.voxel(3, 2, 4)


def test_extraction_is_repeatable(small_volume):
    first = extract_slice(small_volume, Plane.SAGITTAL, 1)
    second = extract_slice(small_volume, Plane.SAGITTAL, 1)
    np.testing.assert_array_equal(first.samples, second.samples)


@pytest.mark.parametrize("index", [-1, 5])
def test_slice_index_out_of_range(small_volume, index):
    with pytest.raises(IndexError):
        extract_slice(small_volume, Plane.AXIAL, index)


# ---------------------------------------------------------------------------
# Contour projection
# ---------------------------------------------------------------------------
def test_plane_intersections():
    points = _square(5.0, 0.0).points
    hits = plane_intersections(points, 0, 0.0)
    np.testing.assert_allclose(hits, [[0.0, -5.0, 0.0], [0.0, 5.0, 0.0]])
    assert plane_intersections(points, 0, 10.0).shape == (0, 3)


def test_axial_projection_uses_half_thickness():
    contour = _square(5.0, 5.0)
    projected = project_contour(contour, Plane.AXIAL, (0.0, 0.0, 5.0), 1.0)
    assert projected.shape == (4, 2)
    np.testing.assert_allclose(projected[0], [-5.0, -5.0])

    assert project_contour(contour, Plane.AXIAL, (0.0, 0.0, 5.4), 1.0) is not None
    assert project_contour(contour, Plane.AXIAL, (0.0, 0.0, 6.0), 1.0) is None


def test_coronal_contour_projection():
    projected = project_contour(_square(5.0, 2.0), Plane.CORONAL, (0.0, 0.0, 0.0), 1.0)
    np.testing.assert_allclose(sorted(projected.tolist()), [[-5.0, 2.0], [5.0, 2.0]])
    assert project_contour(_square(5.0, 2.0), Plane.CORONAL, (0.0, 9.0, 0.0), 1.0) is None


def test_axial_structure_projection():
    structure = _structure(_square(5.0, 0.0), _square(5.0, 2.5), _square(5.0, 5.0))
    shapes = project_structure(structure, Plane.AXIAL, (0.0, 0.0, 2.5), 2.5)
    assert len(shapes) == 1
    assert shapes[0].shape == (4, 2)


def test_perpendicular_projection_builds_one_polygon():
    structure = _structure(_square(5.0, 0.0), _square(5.0, 2.5), _square(5.0, 5.0))
    (polygon,) = project_structure(structure, Plane.CORONAL, (0.0, 0.0, 2.5), 2.5)

    assert polygon.shape == (10, 2)
    assert set(polygon[:, 0].tolist()) == {-5.0, 5.0}
    assert polygon[:, 1].min() == 0.0
    assert polygon[:, 1].max() == 5.0
    angles = np.arctan2(*(polygon - polygon.mean(axis=0)).T[::-1])
    assert np.all(np.diff(angles) >= 0)


def test_perpendicular_projection_interpolates_between_depths():
    structure = _structure(_square(5.0, 0.0), _square(10.0, 5.0))
    (polygon,) = project_structure(structure, Plane.SAGITTAL, (0.0, 0.0, 0.0), 5.0)
    assert any(np.allclose(p, [7.5, 2.5]) for p in polygon)
    assert any(np.allclose(p, [-7.5, 2.5]) for p in polygon)


def test_projection_outside_structure_is_empty():
    structure = _structure(_square(5.0, 0.0), _square(5.0, 2.5))
    assert project_structure(structure, Plane.CORONAL, (0.0, 50.0, 0.0), 2.5) == []
    assert project_structure(structure, Plane.AXIAL, (0.0, 0.0, 40.0), 2.5) == []


def test_near_duplicate_points_keep_first_seen_order():
    points = np.array([[0.0, 0.0], [0.0, 0.5], [0.0, 1.25], [0.0, 0.25], [0.0, 2.25]])
    kept = _drop_near_duplicates(points, 1.0)
    # 1.25 is only near a dropped point; 2.25 is exactly 1.0 from a kept one
    np.testing.assert_allclose(kept, [[0.0, 0.0], [0.0, 1.25], [0.0, 2.25]])


def test_near_duplicate_points_on_a_dense_line():
    line = np.column_stack([0.5 * np.arange(2001), np.zeros(2001)])
    kept = _drop_near_duplicates(line, 1.0)

    assert kept.shape == (1001, 2)
    np.testing.assert_allclose(kept[:, 0], np.arange(1001, dtype=float))
    assert _drop_near_duplicates(np.empty((0, 2)), 1.0).shape == (0, 2)


def test_projection_rejects_bad_thickness():
    with pytest.raises(ValueError):
        project_structure(_structure(_square(5.0, 0.0)), Plane.AXIAL, (0, 0, 0), 0.0)


# ---------------------------------------------------------------------------
# Screen mapping
# ---------------------------------------------------------------------------
def test_image_bounds_letterbox(small_volume):
    bounds = image_bounds(small_volume, Plane.AXIAL, (200, 200))
    # 4 mm x 6 mm image: pillarboxed
    assert bounds.height == pytest.approx(200.0)
    assert bounds.width == pytest.approx(400.0 / 3.0)
    assert bounds.x == pytest.approx((200.0 - 400.0 / 3.0) / 2.0)
    assert bounds.y == 0.0

    wide = image_bounds(small_volume, Plane.CORONAL, (100, 1000))
    assert wide.width == pytest.approx(100.0)
    assert wide.height == pytest.approx(100.0 * 12.5 / 4.0)


def test_image_bounds_rejects_empty_view(small_volume):
    with pytest.raises(ValueError):
        image_bounds(small_volume, Plane.AXIAL, (0, 100))


def test_world_to_screen_corners(small_volume):
    bounds = image_bounds(small_volume, Plane.AXIAL, (200, 200))
    first = world_to_screen(small_volume, small_volume.origin, Plane.AXIAL, (200, 200))
    last = world_to_screen(small_volume, (-7.0, 4.0, 5.0), Plane.AXIAL, (200, 200))

    assert first == pytest.approx((bounds.x, bounds.y))
    assert last == pytest.approx((bounds.x + bounds.width, bounds.y + bounds.height))


def test_screen_round_trip(small_volume):
    reference = (-8.0, 3.0, 12.5)
    bounds = image_bounds(small_volume, Plane.CORONAL, (300, 300))
    point = (bounds.x + bounds.width / 2, bounds.y + bounds.height / 4)

    position = screen_to_world(small_volume, point, Plane.CORONAL, (300, 300), reference)
    assert position[1] == 3.0
    np.testing.assert_allclose(position, [-8.5, 3.0, 7.5])
    assert world_to_screen(small_volume, position, Plane.CORONAL, (300, 300)) == pytest.approx(
        point
    )


def test_screen_point_outside_image_keeps_reference(small_volume):
    reference = (-8.0, 3.0, 12.5)
    position = screen_to_world(small_volume, (1.0, 1.0), Plane.AXIAL, (200, 200), reference)
    np.testing.assert_array_equal(position, reference)
