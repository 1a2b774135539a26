"""errors.py — Exception taxonomy for the decoding / reconstruction core.

Hierarchy::

    MprCoreError
    ├── DecodeError
    │   ├── MalformedStream
    │   └── UnsupportedTransferEncoding
    ├── VolumeError
    │   ├── InconsistentGeometry
    │   └── MissingPixelData
    └── AnnotationError
        ├── NotAnnotationFile
        └── NoContourData

Decode errors are fatal for one file only; loaders drop that file and carry on.
``NoContourData`` is not an error from the caller's point of view: it means
"this study has no annotations".
"""


class MprCoreError(Exception):
    """Base class for every error raised by :mod:`mpr_core`."""


# ---------------------------------------------------------------------------
# Decoder
# ---------------------------------------------------------------------------
class DecodeError(MprCoreError):
    """A single file could not be decoded."""


class MalformedStream(DecodeError):
    """The stream ends before a declared boundary or a tag/length is invalid.

    Attributes:
        offset: Byte offset at which decoding failed, if known.
    """

    def __init__(self, message: str, offset: int | None = None) -> None:
        if offset is not None:
            message = f"{message} (offset {offset})"
        super().__init__(message)
        self.offset = offset


class UnsupportedTransferEncoding(DecodeError):
    """The file header or transfer syntax is not one the decoder handles."""


# ---------------------------------------------------------------------------
# Volume
# ---------------------------------------------------------------------------
class VolumeError(MprCoreError):
    """A slice stack could not be assembled into a volume."""


class InconsistentGeometry(VolumeError):
    """Slices disagree on their in-plane geometry, or there are none."""


class MissingPixelData(VolumeError):
    """A slice has no usable Pixel Data element."""


# ---------------------------------------------------------------------------
# Annotations
# ---------------------------------------------------------------------------
class AnnotationError(MprCoreError):
    """Base class for RT-STRUCT extraction failures."""


class NotAnnotationFile(AnnotationError):
    """The dataset's modality is not ``RTSTRUCT``."""


class NoContourData(AnnotationError):
    """No contour could be extracted from an RT-STRUCT dataset."""
