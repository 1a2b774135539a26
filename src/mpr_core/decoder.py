"""decoder.py — Binary DICOM decoder.

Public API:
    decode(data)                               -> Dataset
    decode_stream(data, explicit_vr, byte_order) -> Dataset
    decode_file(path)                          -> Dataset

The decoder walks the element stream once.  Defined-length values are sliced
out directly; undefined-length sequences are read as a recursive sequence of
items until the matching delimiter::

    read tag -> read VR / length -> defined:   read value
                                 -> undefined: read items until (FFFE,E0DD)

Every declared boundary is checked against the buffer (or enclosing item) end,
so truncated input raises :class:`MalformedStream` instead of over-reading.
"""

import logging
import os

from pydicom.uid import (
    UID,
    ExplicitVRBigEndian,
    ExplicitVRLittleEndian,
    ImplicitVRLittleEndian,
)

from . import tags
from .binary import BIG_ENDIAN, LITTLE_ENDIAN, copy_bytes, read_uint16, read_uint32
from .dataset import Dataset, Element
from .errors import MalformedStream, UnsupportedTransferEncoding
from .tags import LONG_LENGTH_VRS, UNDEFINED_LENGTH, VR, Tag

logger = logging.getLogger(__name__)

PREAMBLE_LENGTH = 128
MAGIC = b"DICM"

#: Transfer syntax UID -> (explicit VR, byte order)
SUPPORTED_TRANSFER_SYNTAXES = {
    ImplicitVRLittleEndian: (False, LITTLE_ENDIAN),
    ExplicitVRLittleEndian: (True, LITTLE_ENDIAN),
    ExplicitVRBigEndian: (True, BIG_ENDIAN),
}


# ---------------------------------------------------------------------------
# Element stream reader
# ---------------------------------------------------------------------------
class _StreamReader:
    """Reads elements from *data* with one fixed encoding."""

    def __init__(
        self,
        data,
        explicit_vr: bool,
        byte_order: str,
        transfer_syntax_uid: str | None = None,
    ) -> None:
        self.data = data
        self.explicit_vr = explicit_vr
        self.byte_order = byte_order
        self.transfer_syntax_uid = transfer_syntax_uid

    def read_tag(self, offset: int, end: int) -> Tag:
        if offset + 4 > end:
            raise MalformedStream("truncated tag", offset)
        return Tag(
            read_uint16(self.data, offset, self.byte_order),
            read_uint16(self.data, offset + 2, self.byte_order),
        )

    def read_dataset(
        self, offset: int, end: int, delimited: bool = False
    ) -> tuple[Dataset, int]:
        """Read elements from *offset* up to *end*.

        With ``delimited=True`` the dataset is an undefined-length item and
        must be closed by an item delimiter before *end*.

        Returns:
            ``(dataset, offset after the dataset)``
        """
        start = offset
        elements: dict[Tag, Element] = {}
        while offset < end:
            tag = self.read_tag(offset, end)
            if tag == tags.ITEM_DELIMITER:
                if not delimited:
                    raise MalformedStream("unexpected item delimiter", offset)
                stop = offset
                offset += 8
                if offset > end:
                    raise MalformedStream("truncated item delimiter", stop)
                return self._make_dataset(elements, start, stop), offset
            element, offset = self.read_element(offset, end)
            if element.tag in elements:
                logger.debug("Duplicate element %s, keeping the last one", element.tag)
            elements[element.tag] = element
        if delimited:
            raise MalformedStream("undefined-length item is not delimited", offset)
        return self._make_dataset(elements, start, offset), offset

    def read_element(self, offset: int, end: int) -> tuple[Element, int]:
        tag = self.read_tag(offset, end)
        if tag.group == 0xFFFE:
            raise MalformedStream(f"unexpected delimiter tag {tag}", offset)
        offset += 4

        if self.explicit_vr:
            code = copy_bytes(self.data, offset, 2)
            vr = VR.from_code(code)
            if vr is None:
                raise MalformedStream(f"invalid VR {code!r} for {tag}", offset)
            offset += 2
            if vr in LONG_LENGTH_VRS:
                length = read_uint32(self.data, offset + 2, self.byte_order)
                offset += 6
            else:
                length = read_uint16(self.data, offset, self.byte_order)
                offset += 2
        else:
            vr = tags.vr_for_tag(tag) or VR.UN
            length = read_uint32(self.data, offset, self.byte_order)
            offset += 4

        if length == UNDEFINED_LENGTH:
            return self._read_undefined(tag, vr, offset, end)

        if offset + length > end:
            raise MalformedStream(
                f"value of {tag} declares {length} bytes, "
                f"only {max(end - offset, 0)} remain",
                offset,
            )
        value = bytes(self.data[offset:offset + length])
        items: tuple[Dataset, ...] = ()
        if vr == VR.SQ:
            items, _ = self.read_items(offset, offset + length, defined=True)
        return Element(tag, vr, length, value, items), offset + length

    def read_items(
        self, offset: int, end: int, defined: bool
    ) -> tuple[tuple[Dataset, ...], int]:
        """Read sequence items.

        A defined-length sequence ends at *end*; an undefined-length one must
        reach a sequence delimiter first.
        """
        items = []
        while True:
            if offset >= end:
                if defined:
                    return tuple(items), offset
                raise MalformedStream("undefined-length sequence is not delimited", offset)
            tag = self.read_tag(offset, end)
            if offset + 8 > end:
                raise MalformedStream("truncated item header", offset)
            length = read_uint32(self.data, offset + 4, self.byte_order)
            offset += 8
            if tag == tags.SEQUENCE_DELIMITER:
                return tuple(items), offset
            if tag != tags.ITEM:
                raise MalformedStream(f"expected item tag, found {tag}", offset - 8)
            if length == UNDEFINED_LENGTH:
                item, offset = self.read_dataset(offset, end, delimited=True)
            else:
                if offset + length > end:
                    raise MalformedStream(
                        f"item declares {length} bytes, only {end - offset} remain",
                        offset,
                    )
                item, _ = self.read_dataset(offset, offset + length)
                offset += length
            items.append(item)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------
    def _read_undefined(
        self, tag: Tag, vr: VR, offset: int, end: int
    ) -> tuple[Element, int]:
        start = offset
        if vr == VR.SQ:
            items, offset = self.read_items(offset, end, defined=False)
        elif vr == VR.UN:
            # UN with undefined length holds an implicit VR little endian sequence
            reader = _StreamReader(
                self.data, False, LITTLE_ENDIAN, self.transfer_syntax_uid
            )
            items, offset = reader.read_items(offset, end, defined=False)
        else:
            raise MalformedStream(
                f"undefined length on non-sequence element {tag} ({vr.value})", start
            )
        value = bytes(self.data[start:offset])
        return Element(tag, vr, None, value, items), offset

    def _make_dataset(self, elements, start: int, stop: int) -> Dataset:
        return Dataset(
            elements,
            raw=self.data[start:stop],
            byte_order=self.byte_order,
            explicit_vr=self.explicit_vr,
            transfer_syntax_uid=self.transfer_syntax_uid,
        )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def decode(data) -> Dataset:
    """Decode a complete DICOM Part-10 file held in memory.

    The file must start with the 128-byte preamble and ``DICM``; a bare
    stream that begins directly with the file meta group is also accepted.

    Args:
        data: ``bytes``, ``bytearray`` or ``memoryview`` of the whole file.

    Returns:
        Dataset holding the file meta and body elements; ``raw`` is the
        complete input buffer.

    Raises:
        UnsupportedTransferEncoding: Missing header, or a transfer syntax
            other than implicit VR LE, explicit VR LE or explicit VR BE.
        MalformedStream: The element stream is truncated or inconsistent.
    """
    end = len(data)
    offset = _locate_meta(data)

    # File meta information is always explicit VR little endian
    meta_reader = _StreamReader(data, True, LITTLE_ENDIAN)
    elements: dict[Tag, Element] = {}
    while offset + 6 <= end:
        if read_uint16(data, offset) != tags.FILE_META_GROUP:
            break
        element, offset = meta_reader.read_element(offset, end)
        elements[element.tag] = element

    ts_element = elements.get(tags.TRANSFER_SYNTAX_UID)
    transfer_syntax = None
    if ts_element is not None:
        transfer_syntax = ts_element.value.decode("ascii", "replace").strip(" \x00")
    explicit_vr, byte_order = _select_encoding(transfer_syntax)

    body_reader = _StreamReader(data, explicit_vr, byte_order, transfer_syntax)
    body, _ = body_reader.read_dataset(offset, end)
    elements.update(body)

    dataset = Dataset(
        elements,
        raw=data,
        byte_order=byte_order,
        explicit_vr=explicit_vr,
        transfer_syntax_uid=transfer_syntax,
    )
    logger.debug(
        "Decoded %d elements (%s, %s VR, %s endian)",
        len(dataset),
        transfer_syntax or "no transfer syntax",
        "explicit" if explicit_vr else "implicit",
        "big" if byte_order == BIG_ENDIAN else "little",
    )
    return dataset


def decode_stream(
    data, explicit_vr: bool = True, byte_order: str = LITTLE_ENDIAN
) -> Dataset:
    """Decode a bare element stream with no preamble or file meta group."""
    reader = _StreamReader(data, explicit_vr, byte_order)
    dataset, _ = reader.read_dataset(0, len(data))
    return dataset


def decode_file(path: str | os.PathLike) -> Dataset:
    """Read *path* and :func:`decode` it."""
    with open(path, "rb") as f:
        data = f.read()
    logger.debug("Decoding %s (%d bytes)", path, len(data))
    return decode(data)


# ---------------------------------------------------------------------------
# Header helpers
# ---------------------------------------------------------------------------
def _locate_meta(data) -> int:
    """Return the offset of the first file meta element."""
    if len(data) >= PREAMBLE_LENGTH + 4 and bytes(
        data[PREAMBLE_LENGTH:PREAMBLE_LENGTH + 4]
    ) == MAGIC:
        return PREAMBLE_LENGTH + 4
    if (
        len(data) >= 6
        and read_uint16(data, 0) == tags.FILE_META_GROUP
        and VR.from_code(bytes(data[4:6])) is not None
    ):
        logger.debug("No preamble, stream starts with the file meta group")
        return 0
    raise UnsupportedTransferEncoding("missing DICM preamble and file meta header")


def _select_encoding(transfer_syntax: str | None) -> tuple[bool, str]:
    if not transfer_syntax:
        logger.warning("No transfer syntax in file meta, assuming implicit VR little endian")
        return False, LITTLE_ENDIAN
    encoding = SUPPORTED_TRANSFER_SYNTAXES.get(transfer_syntax)
    if encoding is not None:
        return encoding
    uid = UID(transfer_syntax)
    if not uid.is_private and uid.is_transfer_syntax:
        if uid.is_deflated:
            raise UnsupportedTransferEncoding(f"deflated transfer syntax {uid} ({uid.name})")
        if uid.is_compressed:
            raise UnsupportedTransferEncoding(
                f"compressed transfer syntax {uid} ({uid.name})"
            )
    raise UnsupportedTransferEncoding(f"unknown transfer syntax {transfer_syntax!r}")
