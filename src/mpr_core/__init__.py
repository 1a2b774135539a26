"""mpr_core — DICOM CT / RT-STRUCT decoding and multi-planar reconstruction.

Public API:
    decode, decode_file  : Binary DICOM decoder returning an immutable Dataset.
    build_volume, Volume : Slice stack assembly into a 3-D voxel volume.
    extract_structures   : RT Structure Set contour extraction.
    CoordinateSystem     : Shared 3-D cursor with per-plane slice state.
    Plane, extract_slice, project_structure : MPR operations.
    load_study, load_ct  : Folder-level loaders.

Quick start::

    from mpr_core import CoordinateSystem, Plane, load_study

    study = load_study("/path/to/dicom/folder")
    cs = CoordinateSystem()
    cs.set_volume(study.volume)
    image = cs.current_slice(Plane.CORONAL)
    outlines = cs.project(study.structures, Plane.CORONAL)
"""

from .coordinates import CoordinateSystem, CursorState
from .dataset import Dataset, Element
from .decoder import decode, decode_file, decode_stream
from .errors import (
    AnnotationError,
    DecodeError,
    InconsistentGeometry,
    MalformedStream,
    MissingPixelData,
    MprCoreError,
    NoContourData,
    NotAnnotationFile,
    UnsupportedTransferEncoding,
    VolumeError,
)
from .io import Study, load_ct, load_study, read_datasets, validate_dicom_files
from .masks import mask_outlines, rasterize_structure, structure_mask_image
from .mpr import (
    Plane,
    SliceImage,
    extract_slice,
    project_contour,
    project_structure,
    voxel_index_to_world,
    world_to_voxel_index,
)
from .rtstruct import (
    Contour,
    ROIStructure,
    StructureSet,
    extract_structures,
    load_structures,
    validate_structure_set,
)
from .volume import Volume, build_volume

__all__ = [
    "AnnotationError",
    "Contour",
    "CoordinateSystem",
    "CursorState",
    "Dataset",
    "DecodeError",
    "Element",
    "InconsistentGeometry",
    "MalformedStream",
    "MissingPixelData",
    "MprCoreError",
    "NoContourData",
    "NotAnnotationFile",
    "Plane",
    "ROIStructure",
    "SliceImage",
    "StructureSet",
    "Study",
    "UnsupportedTransferEncoding",
    "Volume",
    "VolumeError",
    "build_volume",
    "decode",
    "decode_file",
    "decode_stream",
    "extract_slice",
    "extract_structures",
    "load_ct",
    "load_structures",
    "load_study",
    "mask_outlines",
    "project_contour",
    "project_structure",
    "rasterize_structure",
    "read_datasets",
    "structure_mask_image",
    "validate_dicom_files",
    "validate_structure_set",
    "voxel_index_to_world",
    "world_to_voxel_index",
]

__version__ = "0.1.0"
