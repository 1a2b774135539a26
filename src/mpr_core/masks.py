"""masks.py — Rasterise ROI contours into voxel masks and back.

Public API:
    rasterize_structure(structure, volume)      -> np.ndarray (uint8, z/y/x)
    structure_mask_image(structure, volume)     -> sitk.Image
    mask_outlines(mask_slice, extent)           -> list[np.ndarray]
"""

import logging

import numpy as np
import SimpleITK as sitk
from skimage.draw import polygon
from skimage.measure import find_contours

from .mpr import Plane, world_to_voxel_index
from .rtstruct import ROIStructure
from .volume import Volume

logger = logging.getLogger(__name__)


def rasterize_structure(structure: ROIStructure, volume: Volume) -> np.ndarray:
    """Fill every contour of *structure* on its nearest axial slice.

    Contours on the same slice are combined with XOR, so a contour nested
    inside another becomes a hole.

    Returns:
        ``uint8`` array shaped like ``volume.voxels`` (1 inside, 0 outside).
    """
    width, height, depth = volume.dimensions
    mask = np.zeros((depth, height, width), dtype=np.uint8)
    lower, upper = volume.bounds
    half_slice = volume.spacing[2] * 0.5

    for contour in structure.contours:
        if not lower[2] - half_slice <= contour.plane_depth <= upper[2] + half_slice:
            logger.debug(
                "ROI %d contour at z=%.2f lies outside the volume",
                structure.number, contour.plane_depth,
            )
            continue
        z = world_to_voxel_index(volume, (0.0, 0.0, contour.plane_depth), Plane.AXIAL)
        cols = (contour.points[:, 0] - volume.origin[0]) / volume.spacing[0]
        rows = (contour.points[:, 1] - volume.origin[1]) / volume.spacing[1]
        rr, cc = polygon(rows, cols, shape=(height, width))
        mask[z, rr, cc] ^= 1
    return mask


def structure_mask_image(structure: ROIStructure, volume: Volume) -> sitk.Image:
    """Return the mask of *structure* as a ``sitk.Image`` on the volume grid."""
    image = sitk.GetImageFromArray(rasterize_structure(structure, volume))
    image.CopyInformation(volume.to_sitk())
    return image


def mask_outlines(mask_slice: np.ndarray, extent: list[float]) -> list[np.ndarray]:
    """Trace the outlines of a 2-D mask slice in patient mm.

    Args:
        mask_slice: 2-D mask (e.g. one plane of :func:`rasterize_structure`).
        extent:     ``[left, right, bottom, top]`` of the slice.

    Returns:
        One ``(N, 2)`` ``(u, v)`` array per outline.
    """
    rows, cols = mask_slice.shape
    outlines = []
    for contour in find_contours(mask_slice.astype(float), level=0.5):
        u = extent[0] + (contour[:, 1] / max(cols - 1, 1)) * (extent[1] - extent[0])
        v = extent[2] + (contour[:, 0] / max(rows - 1, 1)) * (extent[3] - extent[2])
        outlines.append(np.column_stack([u, v]))
    return outlines
