"""mpr.py — Multi-planar reconstruction: slicing, contour projection and
screen mapping.

Public API:
    Plane                                        : axial / coronal / sagittal
    world_to_voxel_index(volume, position, plane) -> int
    voxel_index_to_world(volume, index, plane)    -> float
    world_to_voxel(volume, position)              -> np.ndarray
    voxel_to_world(volume, voxel)                 -> np.ndarray
    extract_slice(volume, plane, index)           -> SliceImage
    plane_intersections(points, axis, value)      -> np.ndarray
    project_contour(contour, plane, cursor, slice_thickness)
    project_structure(structure, plane, cursor, slice_thickness, settings)
    image_bounds / world_to_screen / screen_to_world

Coordinate system:
    Positions are ``(x, y, z)`` patient mm.  In-plane 2-D coordinates are
    ``(u, v)`` = the two ``Plane.plane_axes`` components of a position, the
    same axes as :attr:`SliceImage.extent`::

        axial    (x, y)    stack axis z
        coronal  (x, z)    stack axis y
        sagittal (y, z)    stack axis x

Everything here is a pure function of its arguments; the mutable cursor
lives in :mod:`mpr_core.coordinates`.
"""

import bisect
import enum
import logging
import math
from dataclasses import dataclass
from typing import NamedTuple, Sequence

import numpy as np
from scipy.spatial import cKDTree

from .rtstruct import Contour, ROIStructure
from .settings import DEFAULT_PROJECTION, ProjectionSettings
from .volume import Volume

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Planes
# ---------------------------------------------------------------------------
class Plane(str, enum.Enum):
    AXIAL = "axial"
    CORONAL = "coronal"
    SAGITTAL = "sagittal"

    @property
    def slice_axis(self) -> int:
        """Patient-space dimension perpendicular to the plane (x=0, y=1, z=2)."""
        return {"axial": 2, "coronal": 1, "sagittal": 0}[self.value]

    @property
    def plane_axes(self) -> tuple[int, int]:
        """Patient-space dimensions spanning the plane, as ``(u, v)``."""
        return {"axial": (0, 1), "coronal": (0, 2), "sagittal": (1, 2)}[self.value]

    @property
    def array_axis(self) -> int:
        """Dimension of the ``(z, y, x)`` voxel array indexed by a slice."""
        return 2 - self.slice_axis


# ---------------------------------------------------------------------------
# Index <-> world
# ---------------------------------------------------------------------------
def world_to_voxel_index(volume: Volume, position, plane: Plane) -> int:
    """Return the slice index along *plane*'s stack axis nearest *position*.

    The result is clamped to ``[0, dimension - 1]``.
    """
    plane = Plane(plane)
    axis = plane.slice_axis
    continuous = (float(position[axis]) - volume.origin[axis]) / volume.spacing[axis]
    index = math.floor(continuous + 0.5)
    return int(np.clip(index, 0, volume.dimensions[axis] - 1))


def voxel_index_to_world(volume: Volume, index: int, plane: Plane) -> float:
    """Return the stack-axis coordinate (mm) of slice *index*."""
    axis = Plane(plane).slice_axis
    return volume.origin[axis] + index * volume.spacing[axis]


def world_to_voxel(volume: Volume, position) -> np.ndarray:
    """Continuous ``(x, y, z)`` voxel coordinates of a patient position."""
    return (np.asarray(position, dtype=np.float64) - np.asarray(volume.origin)) / np.asarray(
        volume.spacing
    )


def voxel_to_world(volume: Volume, voxel) -> np.ndarray:
    return np.asarray(volume.origin) + np.asarray(voxel, dtype=np.float64) * np.asarray(
        volume.spacing
    )


# ---------------------------------------------------------------------------
# Slice extraction
# ---------------------------------------------------------------------------
@dataclass(frozen=True, eq=False)
class SliceImage:
    """A 2-D cross-section of a volume.

    Attributes:
        samples:       Read-only ``int16`` view of shape ``(rows, cols)``.
                       Rows run along ``v``, columns along ``u``.
        pixel_spacing: ``(row spacing, column spacing)`` in mm.
        extent:        ``[left, right, bottom, top]`` in patient mm, suitable
                       for ``imshow(extent=...)``.
        plane:         The plane the slice was taken in.
        index:         Slice index along the stack axis.
        position:      Stack-axis coordinate of the slice in mm.
    """

    samples: np.ndarray
    pixel_spacing: tuple[float, float]
    extent: list[float]
    plane: Plane
    index: int
    position: float

    @property
    def shape(self) -> tuple[int, int]:
        return self.samples.shape


def get_extent(volume: Volume, plane: Plane) -> list[float]:
    """Return ``[left, right, bottom, top]`` of *plane* in patient mm."""
    u_axis, v_axis = Plane(plane).plane_axes
    origin, spacing, size = volume.origin, volume.spacing, volume.dimensions
    return [
        origin[u_axis],
        origin[u_axis] + spacing[u_axis] * size[u_axis],
        origin[v_axis],
        origin[v_axis] + spacing[v_axis] * size[v_axis],
    ]


def get_max_index(volume: Volume, plane: Plane) -> int:
    """Return the maximum valid slice index for *plane*."""
    return volume.dimensions[Plane(plane).slice_axis] - 1


def extract_slice(volume: Volume, plane: Plane, index: int) -> SliceImage:
    """Return the axis-aligned cross-section *index* of *volume* in *plane*.

    The samples are a zero-copy view of the voxel array; no interpolation is
    applied.

    Raises:
        IndexError: If *index* is outside ``[0, get_max_index(volume, plane)]``.
    """
    plane = Plane(plane)
    max_index = get_max_index(volume, plane)
    if not 0 <= index <= max_index:
        raise IndexError(f"{plane.value} slice {index} outside [0, {max_index}]")

    slobj: list = [slice(None)] * 3
    slobj[plane.array_axis] = index
    samples = volume.voxels[tuple(slobj)]

    u_axis, v_axis = plane.plane_axes
    return SliceImage(
        samples=samples,
        pixel_spacing=(volume.spacing[v_axis], volume.spacing[u_axis]),
        extent=get_extent(volume, plane),
        plane=plane,
        index=index,
        position=voxel_index_to_world(volume, index, plane),
    )


# ---------------------------------------------------------------------------
# Contour projection
# ---------------------------------------------------------------------------
def plane_intersections(points, axis: int, value: float) -> np.ndarray:
    """Intersect a closed polygon with the plane ``p[axis] == value``.

    Each edge (the last point connects back to the first) whose end points
    straddle *value* contributes one linearly interpolated point.

    Returns:
        ``float64`` array of shape ``(K, 3)``; ``K`` may be 0.
    """
    start = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    end = np.roll(start, -1, axis=0)
    a = start[:, axis]
    b = end[:, axis]
    crossing = ((a <= value) & (value < b)) | ((b <= value) & (value < a))
    if not np.any(crossing):
        return np.empty((0, 3))
    start, end = start[crossing], end[crossing]
    t = np.clip((value - a[crossing]) / (b[crossing] - a[crossing]), 0.0, 1.0)
    return start + t[:, None] * (end - start)


def project_contour(
    contour: Contour, plane: Plane, cursor, slice_thickness: float
) -> np.ndarray | None:
    """Project one contour into *plane* at the cursor.

    Axial: the contour's own points when its depth is within half a slice
    thickness of the cursor z.  Coronal / sagittal: the points where the
    contour's edges cross the cursor plane.

    Returns:
        ``(N, 2)`` in-plane ``(u, v)`` coordinates in mm, or ``None``.
    """
    plane = Plane(plane)
    if plane is Plane.AXIAL:
        if abs(contour.plane_depth - float(cursor[2])) <= slice_thickness * 0.5:
            return contour.points[:, list(plane.plane_axes)].astype(np.float64)
        return None
    hits = plane_intersections(contour.points, plane.slice_axis, float(cursor[plane.slice_axis]))
    if len(hits) < 2:
        return None
    return hits[:, list(plane.plane_axes)]


def project_structure(
    structure: ROIStructure,
    plane: Plane,
    cursor,
    slice_thickness: float,
    settings: ProjectionSettings = DEFAULT_PROJECTION,
) -> list[np.ndarray]:
    """Project a whole structure into *plane* at the cursor.

    Axial planes return one polyline per contour at the cursor depth.
    Coronal and sagittal planes return at most one closed polygon built from
    the edge intersections of every contour, interpolated between
    consecutive contour depths and ordered by angle around the centroid.

    Args:
        structure:       The ROI to project.
        plane:           Target plane.
        cursor:          Current ``(x, y, z)`` position in mm.
        slice_thickness: Stack-axis spacing in mm (z spacing of the volume).
        settings:        Projection tolerances.

    Returns:
        A list of ``(N, 2)`` ``(u, v)`` arrays in mm; empty when nothing
        intersects.
    """
    plane = Plane(plane)
    if slice_thickness <= 0:
        raise ValueError(f"slice thickness must be positive, got {slice_thickness}")
    if plane is Plane.AXIAL:
        projected = (project_contour(c, plane, cursor, slice_thickness) for c in structure.contours)
        return [p for p in projected if p is not None]

    polygon = _cross_section(structure, plane, cursor, slice_thickness, settings)
    return [] if polygon is None else [polygon]


def _cross_section(
    structure: ROIStructure,
    plane: Plane,
    cursor,
    slice_thickness: float,
    settings: ProjectionSettings,
) -> np.ndarray | None:
    axis = plane.slice_axis
    value = float(cursor[axis])
    # Horizontal in-plane axis: x for coronal, y for sagittal
    u_axis = plane.plane_axes[0]

    crossings: dict[float, np.ndarray] = {}
    for contour in structure.contours:
        hits = plane_intersections(contour.points, axis, value)
        if len(hits) == 0:
            continue
        previous = crossings.get(contour.plane_depth, np.empty(0))
        crossings[contour.plane_depth] = np.concatenate([previous, hits[:, u_axis]])
    if not crossings:
        return None

    depths = sorted(crossings)
    for depth in depths:
        crossings[depth] = np.sort(crossings[depth])

    step = slice_thickness * settings.depth_sample_fraction
    count = int(math.floor((depths[-1] - depths[0]) / step + 1e-9))
    sample_depths = sorted(set((depths[0] + step * np.arange(count + 1)).tolist()) | set(depths))

    tolerance = 1e-6
    samples = []
    for z in sample_depths:
        below = depths[max(bisect.bisect_right(depths, z + tolerance) - 1, 0)]
        above = depths[min(bisect.bisect_left(depths, z - tolerance), len(depths) - 1)]
        lower, upper = crossings[below], crossings[above]
        t = 0.0
        if above - below > tolerance:
            t = min(max((z - below) / (above - below), 0.0), 1.0)
        pairs = min(len(lower), len(upper))
        for u in lower[:pairs] + t * (upper[:pairs] - lower[:pairs]):
            samples.append((u, z))

    points = _drop_near_duplicates(np.asarray(samples), settings.duplicate_point_distance_mm)
    if len(points) < 3:
        return None
    return _sort_by_angle(points)


def _drop_near_duplicates(points: np.ndarray, distance: float) -> np.ndarray:
    """Keep each point unless an earlier kept point lies closer than *distance*."""
    points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    if len(points) < 2 or distance <= 0:
        return points
    # query_ball_point is inclusive; points exactly *distance* apart are kept
    radius = np.nextafter(distance, 0.0)
    neighbours = cKDTree(points).query_ball_point(points, r=radius)
    keep = np.ones(len(points), dtype=bool)
    for i, near in enumerate(neighbours):
        if keep[i]:
            later = [j for j in near if j > i]
            keep[later] = False
    return points[keep]


def _sort_by_angle(points: np.ndarray) -> np.ndarray:
    centroid = points.mean(axis=0)
    angles = np.arctan2(points[:, 1] - centroid[1], points[:, 0] - centroid[0])
    return points[np.argsort(angles, kind="stable")]


# ---------------------------------------------------------------------------
# Screen mapping
# ---------------------------------------------------------------------------
class ImageBounds(NamedTuple):
    """Screen rectangle occupied by the image inside a view."""

    x: float
    y: float
    width: float
    height: float

    def contains(self, point: Sequence[float]) -> bool:
        return (
            self.x <= point[0] <= self.x + self.width
            and self.y <= point[1] <= self.y + self.height
        )


def image_bounds(volume: Volume, plane: Plane, view_size: Sequence[float]) -> ImageBounds:
    """Letterbox the plane's physical extent into a view of ``(width, height)``."""
    u_axis, v_axis = Plane(plane).plane_axes
    physical_width = volume.dimensions[u_axis] * volume.spacing[u_axis]
    physical_height = volume.dimensions[v_axis] * volume.spacing[v_axis]
    view_width, view_height = float(view_size[0]), float(view_size[1])
    if view_width <= 0 or view_height <= 0:
        raise ValueError(f"invalid view size {tuple(view_size)}")

    physical_aspect = physical_width / physical_height
    view_aspect = view_width / view_height
    if physical_aspect > view_aspect:
        width, height = view_width, view_width / physical_aspect
    else:
        width, height = view_height * physical_aspect, view_height
    return ImageBounds((view_width - width) / 2.0, (view_height - height) / 2.0, width, height)


def _normalizer(volume: Volume, axis: int) -> float:
    return max(volume.dimensions[axis] - 1, 1)


def world_to_screen(
    volume: Volume,
    position,
    plane: Plane,
    view_size: Sequence[float],
    bounds: ImageBounds | None = None,
) -> tuple[float, float]:
    """Map a patient position to ``(x, y)`` screen pixels in *plane*'s view."""
    plane = Plane(plane)
    bounds = bounds or image_bounds(volume, plane, view_size)
    voxel = world_to_voxel(volume, position)
    u_axis, v_axis = plane.plane_axes
    nu = voxel[u_axis] / _normalizer(volume, u_axis)
    nv = voxel[v_axis] / _normalizer(volume, v_axis)
    return bounds.x + nu * bounds.width, bounds.y + nv * bounds.height


def screen_to_world(
    volume: Volume,
    screen_point: Sequence[float],
    plane: Plane,
    view_size: Sequence[float],
    reference,
    bounds: ImageBounds | None = None,
) -> np.ndarray:
    """Map a screen point back to a patient position.

    The stack-axis component is taken from *reference* (normally the current
    cursor).  A point outside the image bounds returns *reference* unchanged.
    """
    plane = Plane(plane)
    bounds = bounds or image_bounds(volume, plane, view_size)
    result = np.array(reference, dtype=np.float64)
    if not bounds.contains(screen_point):
        logger.debug("Screen point %s outside image bounds %s", tuple(screen_point), bounds)
        return result
    u_axis, v_axis = plane.plane_axes
    nu = (screen_point[0] - bounds.x) / bounds.width
    nv = (screen_point[1] - bounds.y) / bounds.height
    result[u_axis] = volume.origin[u_axis] + nu * _normalizer(volume, u_axis) * volume.spacing[u_axis]
    result[v_axis] = volume.origin[v_axis] + nv * _normalizer(volume, v_axis) * volume.spacing[v_axis]
    return result
