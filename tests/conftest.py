import io
import struct

import numpy as np
import pytest
from pydicom import dcmwrite
from pydicom.dataset import Dataset as PydicomDataset
from pydicom.dataset import FileMetaDataset
from pydicom.sequence import Sequence
from pydicom.uid import (
    CTImageStorage,
    ExplicitVRLittleEndian,
    RTStructureSetStorage,
    generate_uid,
)

from mpr_core.decoder import decode
from mpr_core.volume import Volume

LONG_VRS = {"OB", "OD", "OF", "OL", "OV", "OW", "SQ", "SV", "UC", "UN", "UR", "UT", "UV"}
UNDEFINED = 0xFFFFFFFF


# ---------------------------------------------------------------------------
# Hand-assembled element streams
# ---------------------------------------------------------------------------
def pad(value: bytes, fill: bytes = b" ") -> bytes:
    return value + fill if len(value) % 2 else value


def explicit(group, element, vr, value=b"", byte_order="<", undefined=False):
    """Encode one explicit-VR element."""
    header = struct.pack(f"{byte_order}HH", group, element) + vr.encode("ascii")
    length = UNDEFINED if undefined else len(value)
    if vr in LONG_VRS:
        header += b"\x00\x00" + struct.pack(f"{byte_order}I", length)
    else:
        header += struct.pack(f"{byte_order}H", length)
    return header + value


def implicit(group, element, value=b"", byte_order="<", undefined=False):
    """Encode one implicit-VR element."""
    length = UNDEFINED if undefined else len(value)
    return struct.pack(f"{byte_order}HHI", group, element, length) + value


def item(content: bytes, byte_order="<", undefined=False) -> bytes:
    """Encode a sequence item, delimited when *undefined*."""
    if undefined:
        return (
            struct.pack(f"{byte_order}HHI", 0xFFFE, 0xE000, UNDEFINED)
            + content
            + struct.pack(f"{byte_order}HHI", 0xFFFE, 0xE00D, 0)
        )
    return struct.pack(f"{byte_order}HHI", 0xFFFE, 0xE000, len(content)) + content


def sequence_delimiter(byte_order="<") -> bytes:
    return struct.pack(f"{byte_order}HHI", 0xFFFE, 0xE0DD, 0)


def part10(body: bytes, transfer_syntax: str | None = ExplicitVRLittleEndian) -> bytes:
    """Wrap *body* with preamble, ``DICM`` and a minimal file meta group."""
    meta = b""
    if transfer_syntax is not None:
        meta += explicit(0x0002, 0x0010, "UI", pad(transfer_syntax.encode(), b"\x00"))
    group_length = explicit(0x0002, 0x0000, "UL", struct.pack("<I", len(meta)))
    return b"\x00" * 128 + b"DICM" + group_length + meta + body


@pytest.fixture
def stream():
    """Namespace of element-stream encoders."""

    class Encoders:
        pass

    enc = Encoders()
    enc.pad = pad
    enc.explicit = explicit
    enc.implicit = implicit
    enc.item = item
    enc.sequence_delimiter = sequence_delimiter
    enc.part10 = part10
    return enc


# ---------------------------------------------------------------------------
# pydicom-written files
# ---------------------------------------------------------------------------
def encode(ds: PydicomDataset) -> bytes:
    buffer = io.BytesIO()
    dcmwrite(buffer, ds, enforce_file_format=True)
    return buffer.getvalue()


def _file_meta(sop_class, sop_instance, transfer_syntax):
    meta = FileMetaDataset()
    meta.MediaStorageSOPClassUID = sop_class
    meta.MediaStorageSOPInstanceUID = sop_instance
    meta.TransferSyntaxUID = transfer_syntax
    return meta


def make_ct_slice(
    z: float,
    pixels: np.ndarray,
    series_uid: str = "1.2.826.0.1.3680043.8.498.1",
    spacing=(0.5, 0.75),
    slope: float = 1.0,
    intercept: float = 0.0,
    transfer_syntax: str = ExplicitVRLittleEndian,
    **extra,
) -> PydicomDataset:
    """Build a single CT slice as a pydicom dataset (stored as signed 16-bit)."""
    ds = PydicomDataset()
    sop_instance = generate_uid()
    ds.file_meta = _file_meta(CTImageStorage, sop_instance, transfer_syntax)
    ds.SOPClassUID = CTImageStorage
    ds.SOPInstanceUID = sop_instance
    ds.Modality = "CT"
    ds.PatientName = "Test^Patient"
    ds.PatientID = "P001"
    ds.StudyInstanceUID = "1.2.826.0.1.3680043.8.498.100"
    ds.SeriesInstanceUID = series_uid
    ds.InstanceNumber = int(round(z))
    ds.ImagePositionPatient = [-10.0, -20.0, z]
    ds.ImageOrientationPatient = [1, 0, 0, 0, 1, 0]
    ds.SliceThickness = 2.0
    ds.PixelSpacing = list(spacing)
    ds.SamplesPerPixel = 1
    ds.PhotometricInterpretation = "MONOCHROME2"
    ds.Rows, ds.Columns = pixels.shape
    ds.BitsAllocated = 16
    ds.BitsStored = 16
    ds.HighBit = 15
    ds.PixelRepresentation = 1
    ds.RescaleSlope = slope
    ds.RescaleIntercept = intercept
    for keyword, value in extra.items():
        setattr(ds, keyword, value)
    ds.PixelData = np.asarray(pixels, dtype="<i2").tobytes()
    return ds


def _contour_item(points, geometric_type="CLOSED_PLANAR"):
    item_ds = PydicomDataset()
    item_ds.ContourGeometricType = geometric_type
    item_ds.NumberOfContourPoints = len(points)
    item_ds.ContourData = [float(v) for p in points for v in p]
    return item_ds


def square(center_x, center_y, half, z):
    return [
        (center_x - half, center_y - half, z),
        (center_x + half, center_y - half, z),
        (center_x + half, center_y + half, z),
        (center_x - half, center_y + half, z),
    ]


def make_rtstruct(rois, linked=True, label="RS1") -> PydicomDataset:
    """Build an RT Structure Set.

    Args:
        rois: ``[(number, name, color or None, [points, ...]), ...]``
        linked: Whether ROI Contour items carry Referenced ROI Number.
    """
    ds = PydicomDataset()
    sop_instance = generate_uid()
    ds.file_meta = _file_meta(RTStructureSetStorage, sop_instance, ExplicitVRLittleEndian)
    ds.SOPClassUID = RTStructureSetStorage
    ds.SOPInstanceUID = sop_instance
    ds.Modality = "RTSTRUCT"
    ds.PatientName = "Test^Patient"
    ds.StudyInstanceUID = "1.2.826.0.1.3680043.8.498.100"
    ds.SeriesInstanceUID = generate_uid()
    ds.StructureSetLabel = label

    definitions = []
    roi_contours = []
    for number, name, color, contours in rois:
        definition = PydicomDataset()
        definition.ROINumber = number
        definition.ROIName = name
        definitions.append(definition)

        roi_contour = PydicomDataset()
        if color is not None:
            roi_contour.ROIDisplayColor = list(color)
        if linked:
            roi_contour.ReferencedROINumber = number
        roi_contour.ContourSequence = Sequence([_contour_item(c) for c in contours])
        roi_contours.append(roi_contour)

    ds.StructureSetROISequence = Sequence(definitions)
    ds.ROIContourSequence = Sequence(roi_contours)
    return ds


@pytest.fixture
def dicom():
    """Namespace of pydicom-based fixture builders."""

    class Builders:
        pass

    b = Builders()
    b.encode = encode
    b.decode = lambda ds: decode(encode(ds))
    b.ct_slice = make_ct_slice
    b.rtstruct = make_rtstruct
    b.square = square
    b.contour_item = _contour_item
    return b


@pytest.fixture
def two_rois():
    """Two linked ROIs: a body-sized square stack and a small target."""
    body = [square(0.0, 0.0, 20.0, z) for z in (0.0, 2.5, 5.0, 7.5, 10.0)]
    target = [square(5.0, 5.0, 3.0, z) for z in (2.5, 5.0)]
    return [
        (1, "BODY", (0, 255, 0), body),
        (7, "PTV", (255, 0, 0), target),
    ]


@pytest.fixture
def small_volume():
    """4 x 3 x 5 volume whose voxel value equals its flat index."""
    return Volume(
        dimensions=(4, 3, 5),
        spacing=(1.0, 2.0, 2.5),
        origin=(-10.0, 0.0, 5.0),
        voxels=np.arange(60, dtype=np.int16),
    )


@pytest.fixture
def ct_folder(tmp_path):
    """Folder with four CT slices written out of order."""
    folder = tmp_path / "ct"
    folder.mkdir()
    for i, z in enumerate((6.0, 0.0, 4.0, 2.0)):
        pixels = np.full((6, 8), int(z * 10), dtype=np.int16)
        pixels[0, 0] = -1000
        dcmwrite(folder / f"slice_{i}.dcm", make_ct_slice(z, pixels), enforce_file_format=True)
    return folder
