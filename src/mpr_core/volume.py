"""volume.py — Immutable 3-D voxel volume assembled from a CT slice stack.

Public API:
    Volume                      : dimensions / spacing / origin / voxels
    VolumeStatistics            : summary returned by :meth:`Volume.statistics`
    build_volume(datasets)      -> Volume

Coordinate system:
    ``dimensions``, ``spacing`` and ``origin`` are ``(x, y, z)`` tuples in
    patient space (mm).  ``voxels`` is a read-only ``int16`` array indexed
    ``(z, y, x)``, the same order as ``sitk.GetArrayViewFromImage``, so the
    flat index of voxel ``(x, y, z)`` is ``z*w*h + y*w + x``.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Sequence

import numpy as np
import SimpleITK as sitk
from scipy import ndimage

from . import tags
from .dataset import Dataset
from .errors import InconsistentGeometry, MissingPixelData, VolumeError

logger = logging.getLogger(__name__)

INT16_MIN = np.iinfo(np.int16).min
INT16_MAX = np.iinfo(np.int16).max
AXIAL_ORIENTATION = (1.0, 0.0, 0.0, 0.0, 1.0, 0.0)


# ---------------------------------------------------------------------------
# Volume
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class VolumeStatistics:
    min_value: int
    max_value: int
    mean_value: float
    voxel_count: int
    memory_bytes: int


@dataclass(frozen=True, eq=False)
class Volume:
    """A regular voxel grid with patient-space geometry.

    Attributes:
        dimensions: Voxel counts ``(x, y, z)``.
        spacing:    mm per voxel ``(x, y, z)``.
        origin:     Patient-space position of voxel ``(0, 0, 0)`` in mm.
        voxels:     Read-only ``int16`` array of shape ``(z, y, x)``.
    """

    dimensions: tuple[int, int, int]
    spacing: tuple[float, float, float]
    origin: tuple[float, float, float]
    voxels: np.ndarray

    def __post_init__(self) -> None:
        width, height, depth = self.dimensions
        if min(self.dimensions) < 1:
            raise InconsistentGeometry(f"invalid dimensions {self.dimensions}")
        if any(s <= 0 for s in self.spacing):
            raise InconsistentGeometry(f"invalid spacing {self.spacing}")
        voxels = np.ascontiguousarray(self.voxels, dtype=np.int16)
        if voxels.size != width * height * depth:
            raise InconsistentGeometry(
                f"{voxels.size} voxels do not fill dimensions {self.dimensions}"
            )
        voxels = voxels.reshape(depth, height, width)
        voxels.setflags(write=False)
        object.__setattr__(self, "voxels", voxels)

    # ------------------------------------------------------------------
    # Geometry
    # ------------------------------------------------------------------
    @property
    def flat(self) -> np.ndarray:
        """1-D read-only view in ``z*w*h + y*w + x`` order."""
        return self.voxels.reshape(-1)

    @property
    def physical_size(self) -> tuple[float, float, float]:
        return tuple(float(d * s) for d, s in zip(self.dimensions, self.spacing))

    @property
    def bounds(self) -> tuple[np.ndarray, np.ndarray]:
        """Return ``(lower, upper)`` patient-space corners ``origin`` and
        ``origin + physical_size``."""
        lower = np.asarray(self.origin, dtype=np.float64)
        return lower, lower + np.asarray(self.physical_size)

    @property
    def center(self) -> np.ndarray:
        """Return the geometric centre ``origin + physical_size / 2`` in mm."""
        return np.asarray(self.origin, dtype=np.float64) + np.asarray(self.physical_size) / 2

    def voxel(self, x: int, y: int, z: int) -> int:
        """Return the intensity at voxel ``(x, y, z)``.

        Raises:
            IndexError: If the index lies outside the grid.
        """
        width, height, depth = self.dimensions
        if not (0 <= x < width and 0 <= y < height and 0 <= z < depth):
            raise IndexError(f"voxel ({x}, {y}, {z}) outside {self.dimensions}")
        return int(self.voxels[z, y, x])

    # ------------------------------------------------------------------
    # Sampling / interop
    # ------------------------------------------------------------------
    def sample(self, points_mm) -> np.ndarray:
        """Trilinearly sample intensities at patient-space points.

        Args:
            points_mm: Array-like of shape ``(N, 3)`` holding ``(x, y, z)`` mm.

        Returns:
            ``float32`` array of shape ``(N,)``.  Points outside the grid take
            the value of the nearest edge voxel.
        """
        points = np.atleast_2d(np.asarray(points_mm, dtype=np.float64))
        continuous = (points - np.asarray(self.origin)) / np.asarray(self.spacing)
        # map_coordinates indexes in array order (z, y, x)
        coords = continuous[:, ::-1].T
        values = ndimage.map_coordinates(
            self.voxels.astype(np.float32), coords, order=1, mode="nearest"
        )
        return values.astype(np.float32)

    def statistics(self) -> VolumeStatistics:
        return VolumeStatistics(
            min_value=int(self.voxels.min()),
            max_value=int(self.voxels.max()),
            mean_value=float(self.voxels.mean(dtype=np.float64)),
            voxel_count=int(self.voxels.size),
            memory_bytes=int(self.voxels.nbytes),
        )

    def to_sitk(self) -> sitk.Image:
        """Return a ``sitk.Image`` copy with the same spacing and origin."""
        image = sitk.GetImageFromArray(np.array(self.voxels))
        image.SetSpacing(tuple(float(s) for s in self.spacing))
        image.SetOrigin(tuple(float(o) for o in self.origin))
        return image

    def __repr__(self) -> str:
        return (
            f"Volume(dimensions={self.dimensions}, spacing={self.spacing}, "
            f"origin={self.origin})"
        )


# ---------------------------------------------------------------------------
# Slice stack assembly
# ---------------------------------------------------------------------------
def build_volume(datasets: Iterable[Dataset]) -> Volume:
    """Assemble single-frame image datasets into one :class:`Volume`.

    Slices are ordered by Image Position (Patient) z ascending, falling back
    to Slice Location and then Instance Number.  Pixel values are read as
    stored, rescaled with Rescale Slope / Intercept and clipped to ``int16``.
    No resampling is performed.

    Args:
        datasets: Decoded image datasets of one series, in any order.

    Raises:
        InconsistentGeometry: No datasets, or slices disagree on rows/columns.
        MissingPixelData: A slice has no (or too little) Pixel Data.
    """
    slices = sorted(datasets, key=_stack_position)
    if not slices:
        raise InconsistentGeometry("no image slices to assemble")

    first = slices[0]
    rows = first.get_int(tags.ROWS)
    columns = first.get_int(tags.COLUMNS)
    if not rows or not columns:
        raise InconsistentGeometry("first slice has no Rows / Columns")
    for index, ds in enumerate(slices[1:], start=1):
        if ds.get_int(tags.ROWS) != rows or ds.get_int(tags.COLUMNS) != columns:
            raise InconsistentGeometry(
                f"slice {index} is {ds.get_int(tags.ROWS)}x{ds.get_int(tags.COLUMNS)}, "
                f"expected {rows}x{columns}"
            )

    row_spacing, column_spacing = _pixel_spacing(first)
    _check_consistency(slices, (row_spacing, column_spacing))
    spacing = (column_spacing, row_spacing, _slice_spacing(slices))
    origin = _origin(first)

    voxels = np.empty((len(slices), rows, columns), dtype=np.int16)
    for index, ds in enumerate(slices):
        voxels[index] = _slice_pixels(ds, rows, columns, index)

    volume = Volume(
        dimensions=(columns, rows, len(slices)),
        spacing=spacing,
        origin=origin,
        voxels=voxels,
    )
    logger.info(
        "Built volume — size=%s  spacing=%s  origin=%s",
        volume.dimensions, volume.spacing, volume.origin,
    )
    return volume


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _stack_position(ds: Dataset) -> tuple[float, float]:
    position = ds.get_floats(tags.IMAGE_POSITION_PATIENT)
    if len(position) >= 3:
        return (position[2], 0.0)
    location = ds.get_float(tags.SLICE_LOCATION)
    if location is not None:
        return (location, 0.0)
    return (0.0, float(ds.get_int(tags.INSTANCE_NUMBER, 0)))


def _pixel_spacing(ds: Dataset) -> tuple[float, float]:
    """Return ``(row spacing, column spacing)`` in mm."""
    values = ds.get_floats(tags.PIXEL_SPACING)
    if len(values) >= 2 and values[0] > 0 and values[1] > 0:
        return values[0], values[1]
    logger.warning("Pixel Spacing missing or invalid, assuming 1.0 mm")
    return 1.0, 1.0


def _slice_spacing(slices: Sequence[Dataset]) -> float:
    declared = slices[0].get_float(tags.SPACING_BETWEEN_SLICES)
    if declared is not None and declared > 0:
        return declared
    if len(slices) > 1:
        first = slices[0].get_floats(tags.IMAGE_POSITION_PATIENT)
        last = slices[-1].get_floats(tags.IMAGE_POSITION_PATIENT)
        if len(first) >= 3 and len(last) >= 3:
            derived = abs(last[2] - first[2]) / (len(slices) - 1)
            if derived > 0:
                return derived
    thickness = slices[0].get_float(tags.SLICE_THICKNESS)
    if thickness is not None and thickness > 0:
        return thickness
    logger.warning("No slice spacing information, assuming 1.0 mm")
    return 1.0


def _origin(ds: Dataset) -> tuple[float, float, float]:
    position = ds.get_floats(tags.IMAGE_POSITION_PATIENT)
    if len(position) >= 3:
        return (position[0], position[1], position[2])
    logger.warning("Image Position (Patient) missing, using origin (0, 0, 0)")
    return (0.0, 0.0, 0.0)


def _check_consistency(slices: Sequence[Dataset], pixel_spacing) -> None:
    orientation = slices[0].get_floats(tags.IMAGE_ORIENTATION_PATIENT)
    if len(orientation) == 6 and not np.allclose(orientation, AXIAL_ORIENTATION, atol=1e-3):
        logger.warning("Non-axial orientation %s, direction cosines are ignored", orientation)
    for index, ds in enumerate(slices[1:], start=1):
        values = ds.get_floats(tags.PIXEL_SPACING)
        if len(values) >= 2 and not np.allclose(values[:2], pixel_spacing):
            logger.warning(
                "Slice %d pixel spacing %s differs from %s", index, values[:2], pixel_spacing
            )


def _slice_pixels(ds: Dataset, rows: int, columns: int, index: int) -> np.ndarray:
    pixel_bytes = ds.get_bytes(tags.PIXEL_DATA)
    if pixel_bytes is None:
        raise MissingPixelData(f"slice {index} has no Pixel Data")
    samples = ds.get_int(tags.SAMPLES_PER_PIXEL, 1)
    if samples != 1:
        raise VolumeError(f"slice {index} has {samples} samples per pixel, expected 1")

    bits = ds.get_int(tags.BITS_ALLOCATED, 16)
    signed = ds.get_int(tags.PIXEL_REPRESENTATION, 0) == 1
    if bits == 8:
        dtype = np.dtype(np.int8 if signed else np.uint8)
    elif bits == 16:
        dtype = np.dtype(f"{ds.byte_order}{'i2' if signed else 'u2'}")
    else:
        raise VolumeError(f"slice {index} has unsupported Bits Allocated {bits}")

    expected = rows * columns * dtype.itemsize
    if len(pixel_bytes) < expected:
        raise MissingPixelData(
            f"slice {index} Pixel Data holds {len(pixel_bytes)} bytes, expected {expected}"
        )
    pixels = np.frombuffer(pixel_bytes, dtype=dtype, count=rows * columns)

    slope = ds.get_float(tags.RESCALE_SLOPE, 1.0)
    intercept = ds.get_float(tags.RESCALE_INTERCEPT, 0.0)
    if slope == 1.0 and intercept == 0.0 and dtype.itemsize == 2 and signed:
        values = pixels.astype(np.int16)
    else:
        rescaled = np.rint(pixels.astype(np.float64) * slope + intercept)
        values = np.clip(rescaled, INT16_MIN, INT16_MAX).astype(np.int16)
    return values.reshape(rows, columns)
