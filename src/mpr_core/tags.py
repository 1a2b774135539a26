"""tags.py — Tag and value-representation vocabulary.

Every tag the core reads is declared here as a named constant; the decoder
and extractors dispatch on these constants and treat anything else as an
unknown tag that is kept but never interpreted.

Implicit-VR streams carry no value representation, so :func:`vr_for_tag`
looks it up in the pydicom data dictionary.
"""

import enum
import logging
import struct
from typing import Dict, NamedTuple

from pydicom.datadict import dictionary_VR

logger = logging.getLogger(__name__)


class Tag(NamedTuple):
    """A ``(group, element)`` pair identifying a data element."""

    group: int
    element: int

    def __str__(self) -> str:
        return f"({self.group:04X},{self.element:04X})"

    @property
    def as_int(self) -> int:
        return (self.group << 16) | self.element

    @property
    def is_private(self) -> bool:
        return self.group % 2 == 1

    def signature(self, byte_order: str = "<") -> bytes:
        """Return the four bytes that encode this tag in a stream."""
        return struct.pack(f"{byte_order}HH", self.group, self.element)


class VR(str, enum.Enum):
    """DICOM value representations."""

    AE = "AE"
    AS = "AS"
    AT = "AT"
    CS = "CS"
    DA = "DA"
    DS = "DS"
    DT = "DT"
    FL = "FL"
    FD = "FD"
    IS = "IS"
    LO = "LO"
    LT = "LT"
    OB = "OB"
    OD = "OD"
    OF = "OF"
    OL = "OL"
    OV = "OV"
    OW = "OW"
    PN = "PN"
    SH = "SH"
    SL = "SL"
    SQ = "SQ"
    SS = "SS"
    ST = "ST"
    SV = "SV"
    TM = "TM"
    UC = "UC"
    UI = "UI"
    UL = "UL"
    UN = "UN"
    UR = "UR"
    US = "US"
    UT = "UT"
    UV = "UV"

    @classmethod
    def from_code(cls, code: bytes) -> "VR | None":
        """Return the VR for a 2-byte explicit code, or ``None`` if unknown."""
        try:
            return cls(code.decode("ascii"))
        except (UnicodeDecodeError, ValueError):
            return None


#: Explicit-VR encodings that use 2 reserved bytes and a 4-byte length.
LONG_LENGTH_VRS = frozenset(
    {VR.OB, VR.OD, VR.OF, VR.OL, VR.OV, VR.OW, VR.SQ, VR.SV, VR.UC, VR.UN,
     VR.UR, VR.UT, VR.UV}
)

#: VRs whose values are character strings.
TEXT_VRS = frozenset(
    {VR.AE, VR.AS, VR.CS, VR.DA, VR.DS, VR.DT, VR.IS, VR.LO, VR.LT, VR.PN,
     VR.SH, VR.ST, VR.TM, VR.UC, VR.UI, VR.UR, VR.UT}
)

#: struct codes for fixed-size binary VRs.
STRUCT_CODES: Dict[VR, str] = {
    VR.US: "H",
    VR.SS: "h",
    VR.UL: "I",
    VR.SL: "i",
    VR.UV: "Q",
    VR.SV: "q",
    VR.FL: "f",
    VR.FD: "d",
    VR.OF: "f",
    VR.OD: "d",
    VR.OL: "I",
    VR.OV: "Q",
    VR.OW: "H",
}

UNDEFINED_LENGTH = 0xFFFFFFFF

# ---------------------------------------------------------------------------
# Delimitation
# ---------------------------------------------------------------------------
ITEM = Tag(0xFFFE, 0xE000)
ITEM_DELIMITER = Tag(0xFFFE, 0xE00D)
SEQUENCE_DELIMITER = Tag(0xFFFE, 0xE0DD)

# ---------------------------------------------------------------------------
# File meta information
# ---------------------------------------------------------------------------
FILE_META_GROUP = 0x0002
FILE_META_GROUP_LENGTH = Tag(0x0002, 0x0000)
MEDIA_STORAGE_SOP_CLASS_UID = Tag(0x0002, 0x0002)
TRANSFER_SYNTAX_UID = Tag(0x0002, 0x0010)

# ---------------------------------------------------------------------------
# Patient / study / series / instance
# ---------------------------------------------------------------------------
SOP_CLASS_UID = Tag(0x0008, 0x0016)
SOP_INSTANCE_UID = Tag(0x0008, 0x0018)
MODALITY = Tag(0x0008, 0x0060)
PATIENT_NAME = Tag(0x0010, 0x0010)
PATIENT_ID = Tag(0x0010, 0x0020)
STUDY_INSTANCE_UID = Tag(0x0020, 0x000D)
SERIES_INSTANCE_UID = Tag(0x0020, 0x000E)
INSTANCE_NUMBER = Tag(0x0020, 0x0013)

# ---------------------------------------------------------------------------
# Image geometry and pixels
# ---------------------------------------------------------------------------
SLICE_THICKNESS = Tag(0x0018, 0x0050)
SPACING_BETWEEN_SLICES = Tag(0x0018, 0x0088)
IMAGE_POSITION_PATIENT = Tag(0x0020, 0x0032)
IMAGE_ORIENTATION_PATIENT = Tag(0x0020, 0x0037)
FRAME_OF_REFERENCE_UID = Tag(0x0020, 0x0052)
SLICE_LOCATION = Tag(0x0020, 0x1041)
SAMPLES_PER_PIXEL = Tag(0x0028, 0x0002)
ROWS = Tag(0x0028, 0x0010)
COLUMNS = Tag(0x0028, 0x0011)
PIXEL_SPACING = Tag(0x0028, 0x0030)
BITS_ALLOCATED = Tag(0x0028, 0x0100)
BITS_STORED = Tag(0x0028, 0x0101)
PIXEL_REPRESENTATION = Tag(0x0028, 0x0103)
RESCALE_INTERCEPT = Tag(0x0028, 0x1052)
RESCALE_SLOPE = Tag(0x0028, 0x1053)
PIXEL_DATA = Tag(0x7FE0, 0x0010)

# ---------------------------------------------------------------------------
# RT Structure Set
# ---------------------------------------------------------------------------
STRUCTURE_SET_LABEL = Tag(0x3006, 0x0002)
STRUCTURE_SET_NAME = Tag(0x3006, 0x0004)
STRUCTURE_SET_ROI_SEQUENCE = Tag(0x3006, 0x0020)
ROI_NUMBER = Tag(0x3006, 0x0022)
ROI_NAME = Tag(0x3006, 0x0026)
ROI_DISPLAY_COLOR = Tag(0x3006, 0x002A)
ROI_CONTOUR_SEQUENCE = Tag(0x3006, 0x0039)
CONTOUR_SEQUENCE = Tag(0x3006, 0x0040)
CONTOUR_GEOMETRIC_TYPE = Tag(0x3006, 0x0042)
NUMBER_OF_CONTOUR_POINTS = Tag(0x3006, 0x0046)
CONTOUR_DATA = Tag(0x3006, 0x0050)
REFERENCED_ROI_NUMBER = Tag(0x3006, 0x0084)

#: Keyword for every tag the core understands.
KNOWN_TAGS: Dict[Tag, str] = {
    ITEM: "Item",
    ITEM_DELIMITER: "ItemDelimitationItem",
    SEQUENCE_DELIMITER: "SequenceDelimitationItem",
    FILE_META_GROUP_LENGTH: "FileMetaInformationGroupLength",
    MEDIA_STORAGE_SOP_CLASS_UID: "MediaStorageSOPClassUID",
    TRANSFER_SYNTAX_UID: "TransferSyntaxUID",
    SOP_CLASS_UID: "SOPClassUID",
    SOP_INSTANCE_UID: "SOPInstanceUID",
    MODALITY: "Modality",
    PATIENT_NAME: "PatientName",
    PATIENT_ID: "PatientID",
    STUDY_INSTANCE_UID: "StudyInstanceUID",
    SERIES_INSTANCE_UID: "SeriesInstanceUID",
    INSTANCE_NUMBER: "InstanceNumber",
    SLICE_THICKNESS: "SliceThickness",
    SPACING_BETWEEN_SLICES: "SpacingBetweenSlices",
    IMAGE_POSITION_PATIENT: "ImagePositionPatient",
    IMAGE_ORIENTATION_PATIENT: "ImageOrientationPatient",
    FRAME_OF_REFERENCE_UID: "FrameOfReferenceUID",
    SLICE_LOCATION: "SliceLocation",
    SAMPLES_PER_PIXEL: "SamplesPerPixel",
    ROWS: "Rows",
    COLUMNS: "Columns",
    PIXEL_SPACING: "PixelSpacing",
    BITS_ALLOCATED: "BitsAllocated",
    BITS_STORED: "BitsStored",
    PIXEL_REPRESENTATION: "PixelRepresentation",
    RESCALE_INTERCEPT: "RescaleIntercept",
    RESCALE_SLOPE: "RescaleSlope",
    PIXEL_DATA: "PixelData",
    STRUCTURE_SET_LABEL: "StructureSetLabel",
    STRUCTURE_SET_NAME: "StructureSetName",
    STRUCTURE_SET_ROI_SEQUENCE: "StructureSetROISequence",
    ROI_NUMBER: "ROINumber",
    ROI_NAME: "ROIName",
    ROI_DISPLAY_COLOR: "ROIDisplayColor",
    ROI_CONTOUR_SEQUENCE: "ROIContourSequence",
    CONTOUR_SEQUENCE: "ContourSequence",
    CONTOUR_GEOMETRIC_TYPE: "ContourGeometricType",
    NUMBER_OF_CONTOUR_POINTS: "NumberOfContourPoints",
    CONTOUR_DATA: "ContourData",
    REFERENCED_ROI_NUMBER: "ReferencedROINumber",
}


def keyword_for(tag: Tag) -> str:
    """Return the keyword of a known tag, or ``"Unknown"``."""
    return KNOWN_TAGS.get(tag, "Unknown")


def vr_for_tag(tag: Tag) -> VR | None:
    """Infer the value representation of *tag* for implicit-VR streams.

    Returns ``None`` for the item / delimiter tags (which have no VR) and
    ``VR.UN`` for private or unregistered tags.  Ambiguous dictionary entries
    such as ``"US or SS"`` resolve to their first alternative.
    """
    if tag.group == 0xFFFE:
        return None
    if tag.element == 0x0000:
        return VR.UL  # group length
    try:
        entry = dictionary_VR(tag.as_int)
    except KeyError:
        return VR.UN
    code = entry.split(" or ")[0].strip()
    try:
        return VR(code)
    except ValueError:
        logger.debug("Unmapped dictionary VR %r for %s", entry, tag)
        return VR.UN
