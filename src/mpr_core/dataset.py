"""dataset.py — Immutable decoded DICOM elements and datasets.

Public API:
    Element : one tag / VR / length / value unit (plus parsed sequence items).
    Dataset : read-only ordered mapping ``Tag -> Element`` that also retains
              the original byte buffer for fallback raw scanning.

Typed accessors (``get_int``, ``get_floats``, ...) interpret values according
to the element's VR.  Binary numbers are unpacked through
:mod:`mpr_core.binary`, so they never rely on buffer alignment.
"""

import logging
import math
from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Iterator

from . import tags
from .binary import LITTLE_ENDIAN, unpack_values
from .tags import STRUCT_CODES, VR, Tag

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Element
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class Element:
    """A single decoded data element.

    Attributes:
        tag:    ``(group, element)`` identifier.
        vr:     Value representation (``VR.UN`` when it cannot be known).
        length: Declared length, or ``None`` for undefined length.
        value:  The raw value bytes.  For sequences this is the encoded item
                stream, delimiters included.
        items:  Parsed items when the element is a sequence.
    """

    tag: Tag
    vr: VR
    length: int | None
    value: bytes
    items: tuple["Dataset", ...] = ()

    @property
    def is_sequence(self) -> bool:
        return self.vr == VR.SQ or bool(self.items)

    @property
    def keyword(self) -> str:
        return tags.keyword_for(self.tag)

    def __repr__(self) -> str:
        length = "undefined" if self.length is None else self.length
        return (
            f"Element({self.tag} {self.keyword} {self.vr.value}, "
            f"length={length}, items={len(self.items)})"
        )


# ---------------------------------------------------------------------------
# Dataset
# ---------------------------------------------------------------------------
class Dataset(Mapping):
    """Read-only ordered mapping of :class:`Tag` to :class:`Element`.

    Instances are produced by :func:`mpr_core.decoder.decode` and are never
    mutated afterwards.  ``raw`` holds the complete byte buffer the dataset
    was decoded from (for a sequence item, the item's own byte range).
    """

    def __init__(
        self,
        elements: Mapping[Tag, Element],
        raw: bytes = b"",
        byte_order: str = LITTLE_ENDIAN,
        explicit_vr: bool = True,
        transfer_syntax_uid: str | None = None,
    ) -> None:
        self._elements = MappingProxyType(dict(elements))
        self._raw = bytes(raw)
        self._byte_order = byte_order
        self._explicit_vr = explicit_vr
        self._transfer_syntax_uid = transfer_syntax_uid

    # ------------------------------------------------------------------
    # Mapping protocol
    # ------------------------------------------------------------------
    def __getitem__(self, tag: Tag) -> Element:
        return self._elements[Tag(*tag)]

    def __iter__(self) -> Iterator[Tag]:
        return iter(self._elements)

    def __len__(self) -> int:
        return len(self._elements)

    def __repr__(self) -> str:
        return (
            f"Dataset({len(self)} elements, modality={self.modality!r}, "
            f"raw={len(self._raw)} bytes)"
        )

    # ------------------------------------------------------------------
    # Encoding properties
    # ------------------------------------------------------------------
    @property
    def raw(self) -> bytes:
        return self._raw

    @property
    def byte_order(self) -> str:
        return self._byte_order

    @property
    def explicit_vr(self) -> bool:
        return self._explicit_vr

    @property
    def transfer_syntax_uid(self) -> str | None:
        return self._transfer_syntax_uid

    # ------------------------------------------------------------------
    # Typed accessors
    # ------------------------------------------------------------------
    def get_bytes(self, tag: Tag) -> bytes | None:
        element = self.get(tag)
        return None if element is None else element.value

    def get_string(self, tag: Tag, default: str | None = None) -> str | None:
        """Return the value of *tag* as text with padding stripped."""
        element = self.get(tag)
        if element is None or element.vr in STRUCT_CODES or element.is_sequence:
            return default
        text = _decode_text(element.value)
        return text if text else default

    def get_strings(self, tag: Tag) -> list[str]:
        """Return a multi-valued text element split on backslashes."""
        text = self.get_string(tag)
        if text is None:
            return []
        return [part.strip() for part in text.split("\\")]

    def get_ints(self, tag: Tag) -> list[int]:
        """Return all integer values of *tag* (binary or IS text)."""
        element = self.get(tag)
        if element is None:
            return []
        code = STRUCT_CODES.get(element.vr)
        if code is not None:
            return [int(v) for v in self._unpack(element, code)]
        values = []
        for part in self.get_strings(tag):
            if not part:
                continue
            try:
                values.append(int(float(part)))
            except ValueError:
                logger.debug("Ignoring non-integer %r in %s", part, tag)
        return values

    def get_int(self, tag: Tag, default: int | None = None) -> int | None:
        values = self.get_ints(tag)
        return values[0] if values else default

    def get_floats(self, tag: Tag) -> list[float]:
        """Return all numeric values of *tag* (binary or DS/IS text)."""
        element = self.get(tag)
        if element is None:
            return []
        code = STRUCT_CODES.get(element.vr)
        if code is not None:
            return [float(v) for v in self._unpack(element, code)]
        values = []
        for part in self.get_strings(tag):
            if not part:
                continue
            try:
                number = float(part)
            except ValueError:
                logger.debug("Ignoring non-numeric %r in %s", part, tag)
                continue
            if math.isfinite(number):
                values.append(number)
        return values

    def get_float(self, tag: Tag, default: float | None = None) -> float | None:
        values = self.get_floats(tag)
        return values[0] if values else default

    def get_sequence(self, tag: Tag) -> tuple["Dataset", ...]:
        """Return the items of a sequence element, or ``()`` if absent."""
        element = self.get(tag)
        return () if element is None else element.items

    # ------------------------------------------------------------------
    # Common attributes
    # ------------------------------------------------------------------
    @property
    def modality(self) -> str | None:
        return self.get_string(tags.MODALITY)

    @property
    def sop_class_uid(self) -> str | None:
        return self.get_string(tags.SOP_CLASS_UID)

    @property
    def series_instance_uid(self) -> str | None:
        return self.get_string(tags.SERIES_INSTANCE_UID)

    # ------------------------------------------------------------------
    # Traversal
    # ------------------------------------------------------------------
    def walk(self) -> Iterator[Element]:
        """Yield every element depth-first, descending into sequence items."""
        for element in self._elements.values():
            yield element
            for item in element.items:
                yield from item.walk()

    def find_all(self, tag: Tag) -> list[Element]:
        """Return every element with *tag* at any nesting depth."""
        tag = Tag(*tag)
        return [element for element in self.walk() if element.tag == tag]

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------
    def _unpack(self, element: Element, code: str) -> tuple:
        size = {"H": 2, "h": 2, "I": 4, "i": 4, "f": 4, "d": 8, "Q": 8, "q": 8}[code]
        count = len(element.value) // size
        if count == 0:
            return ()
        return unpack_values(element.value, 0, code, count, self._byte_order)


def _decode_text(value: bytes) -> str:
    """Decode a text value, stripping trailing NUL and space padding."""
    return value.decode("latin-1").strip(" \x00\r\n\t")
