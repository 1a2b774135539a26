"""rtstruct.py — RT Structure Set contour extraction.

Public API:
    Contour, ROIStructure, StructureSet, StructureSetStatistics
    extract_structures(dataset, settings) -> StructureSet
    load_structures(dataset, settings)    -> StructureSet (empty if no contours)
    validate_structure_set(dataset)       -> list[str]
    parse_contour_data(value, byte_order, settings) -> np.ndarray | None
    group_by_depth(contours, gap_mm)      -> list[list[Contour]]

Real-world RT-STRUCT files do not always nest Contour Data where the standard
says, so contours are collected by three strategies and merged:

    1. structured walk  ROI Contour Sequence > Contour Sequence > Contour Data
    2. direct scan      top-level Contour Data elements
    3. raw scan         the Contour Data tag signature in the retained bytes

A later strategy only contributes contours that are not duplicates of ones
already collected.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, Sequence

import numpy as np
from matplotlib.colors import to_hex, to_rgb
from pydicom.uid import RTStructureSetStorage

from . import tags
from .binary import LITTLE_ENDIAN, read_uint16, read_uint32
from .dataset import Dataset
from .errors import NoContourData, NotAnnotationFile
from .settings import DEFAULT_EXTRACTION, ExtractionSettings

logger = logging.getLogger(__name__)

#: Fallback display colours, cycled by structure index.
PALETTE = tuple(to_rgb(name) for name in ("magenta", "lime", "blue", "yellow", "red", "cyan"))

RTSTRUCT_MODALITY = "RTSTRUCT"
CLOSED_PLANAR = "CLOSED_PLANAR"


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------
@dataclass(frozen=True, eq=False)
class Contour:
    """One closed planar polygon.

    Attributes:
        points:         ``float32`` array of shape ``(N, 3)``, patient mm.
        plane_depth:    Shared z coordinate of the polygon in mm.
        referenced_roi: Declared ROI number, or ``None`` when the contour was
                        recovered without its enclosing ROI item.
    """

    points: np.ndarray
    plane_depth: float
    referenced_roi: int | None = None

    def __post_init__(self) -> None:
        points = np.array(self.points, dtype=np.float32).reshape(-1, 3)
        points.setflags(write=False)
        object.__setattr__(self, "points", points)

    @property
    def point_count(self) -> int:
        return len(self.points)

    def __repr__(self) -> str:
        return (
            f"Contour({self.point_count} points, depth={self.plane_depth:.2f}, "
            f"roi={self.referenced_roi})"
        )


@dataclass(frozen=True)
class ROIStructure:
    """A named anatomical structure made of contours sorted by depth."""

    number: int
    name: str
    color: tuple[float, float, float]
    contours: tuple[Contour, ...] = field(default_factory=tuple)

    @property
    def hex_color(self) -> str:
        return to_hex(self.color)

    @property
    def total_points(self) -> int:
        return sum(c.point_count for c in self.contours)

    @property
    def depth_range(self) -> tuple[float, float] | None:
        if not self.contours:
            return None
        depths = [c.plane_depth for c in self.contours]
        return min(depths), max(depths)

    def contours_near(self, depth: float, tolerance: float) -> list[Contour]:
        """Return the contours whose plane depth is within *tolerance* of *depth*."""
        return [c for c in self.contours if abs(c.plane_depth - depth) <= tolerance]


@dataclass(frozen=True)
class StructureSetStatistics:
    roi_count: int
    contour_count: int
    point_count: int
    depth_range: tuple[float, float] | None


class StructureSet:
    """Read-only collection of :class:`ROIStructure`, keyed by ROI number.

    Example::

        ss = extract_structures(dataset)
        nums  = ss.get_roi_numbers()   # -> [1, 2, ...]
        name  = ss.get_name(nums[0])   # -> "PTV"
        color = ss.get_color(nums[0])  # -> "#ff0000"
        roi   = ss.by_name("ptv")      # case-insensitive
    """

    def __init__(
        self,
        structures: Iterable[ROIStructure] = (),
        label: str | None = None,
        patient_name: str | None = None,
    ) -> None:
        self._data: Dict[int, ROIStructure] = {}
        for structure in structures:
            if structure.number in self._data:
                raise ValueError(f"duplicate ROI number {structure.number}")
            self._data[structure.number] = structure
        self.label = label
        self.patient_name = patient_name

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------
    def get(self, roi_number: int) -> ROIStructure | None:
        return self._data.get(roi_number)

    def get_name(self, roi_number: int) -> str | None:
        """Return the structure name for *roi_number*, or ``None``."""
        structure = self._data.get(roi_number)
        return None if structure is None else structure.name

    def get_color(self, roi_number: int) -> str | None:
        """Return the hex colour string for *roi_number*, or ``None``."""
        structure = self._data.get(roi_number)
        return None if structure is None else structure.hex_color

    def get_roi_numbers(self) -> list[int]:
        """Return a list of all ROI numbers in extraction order."""
        return list(self._data.keys())

    def by_name(self, name: str) -> ROIStructure | None:
        """Return the first structure whose name matches *name*, ignoring case."""
        wanted = name.casefold()
        for structure in self._data.values():
            if structure.name.casefold() == wanted:
                return structure
        return None

    def statistics(self) -> StructureSetStatistics:
        ranges = [s.depth_range for s in self._data.values() if s.depth_range]
        depth_range = None
        if ranges:
            depth_range = (min(r[0] for r in ranges), max(r[1] for r in ranges))
        return StructureSetStatistics(
            roi_count=len(self._data),
            contour_count=sum(len(s.contours) for s in self._data.values()),
            point_count=sum(s.total_points for s in self._data.values()),
            depth_range=depth_range,
        )

    def __iter__(self) -> Iterator[ROIStructure]:
        return iter(self._data.values())

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, roi_number: int) -> bool:
        return roi_number in self._data

    def __repr__(self) -> str:
        return f"StructureSet(label={self.label!r}, rois={self.get_roi_numbers()})"


# ---------------------------------------------------------------------------
# Contour data parsing
# ---------------------------------------------------------------------------
def parse_contour_data(
    value: bytes,
    byte_order: str = LITTLE_ENDIAN,
    settings: ExtractionSettings = DEFAULT_EXTRACTION,
) -> np.ndarray | None:
    """Parse a Contour Data value into an ``(N, 3)`` ``float32`` array.

    The value is read as backslash / comma separated decimal text first and
    as raw 32-bit floats if that fails.

    Returns:
        The point array, or ``None`` if fewer than 6 numbers were found or
        the count is not a multiple of 3.
    """
    numbers = _parse_text_numbers(value)
    if numbers is None:
        numbers = _parse_binary_numbers(value, byte_order, settings.max_abs_coordinate)
    if numbers is None or len(numbers) < 6 or len(numbers) % 3 != 0:
        count = 0 if numbers is None else len(numbers)
        logger.warning("Dropping contour with %d numbers (%d bytes)", count, len(value))
        return None
    return np.asarray(numbers, dtype=np.float32).reshape(-1, 3)


def _parse_text_numbers(value: bytes) -> list[float] | None:
    try:
        text = value.decode("ascii").strip(" \x00\r\n\t")
    except UnicodeDecodeError:
        return None
    if not text:
        return None
    numbers = []
    for part in text.replace(",", "\\").split("\\"):
        part = part.strip(" \x00")
        if not part:
            continue
        try:
            number = float(part)
        except ValueError:
            return None
        if not math.isfinite(number):
            return None
        numbers.append(number)
    return numbers or None


def _parse_binary_numbers(
    value: bytes, byte_order: str, max_abs: float
) -> list[float] | None:
    if len(value) < 4 or len(value) % 4 != 0:
        return None
    numbers = np.frombuffer(value, dtype=np.dtype(f"{byte_order}f4")).astype(np.float64)
    if not np.all(np.isfinite(numbers)) or np.any(np.abs(numbers) >= max_abs):
        return None
    return numbers.tolist()


def plane_depth(points: np.ndarray, rounding_mm: float = 0.01) -> float:
    """Return the most common z value of *points*, rounded to *rounding_mm*.

    Ties go to the value seen first.
    """
    rounded = np.round(points[:, 2].astype(np.float64) / rounding_mm) * rounding_mm
    values, first_seen, counts = np.unique(rounded, return_index=True, return_counts=True)
    best = max(range(len(values)), key=lambda i: (counts[i], -first_seen[i]))
    if len(values) > 1:
        logger.debug(
            "Contour is not planar: %d distinct z values, using %.2f", len(values), values[best]
        )
    return round(float(values[best]), 6)


def _make_contour(
    value: bytes, byte_order: str, referenced_roi: int | None, settings: ExtractionSettings
) -> Contour | None:
    points = parse_contour_data(value, byte_order, settings)
    if points is None:
        return None
    depth = plane_depth(points, settings.depth_rounding_mm)
    return Contour(points=points, plane_depth=depth, referenced_roi=referenced_roi)


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------
def _structured_walk(
    dataset: Dataset, settings: ExtractionSettings
) -> tuple[list[Contour], list[Contour]]:
    """Return ``(closed, skipped)`` contours of the ROI Contour Sequence.

    Items whose Contour Geometric Type is present and not ``CLOSED_PLANAR``
    (points, open polylines) are parsed but kept out of the polygons.
    """
    contours = []
    skipped = []
    for roi_item in dataset.get_sequence(tags.ROI_CONTOUR_SEQUENCE):
        referenced = roi_item.get_int(tags.REFERENCED_ROI_NUMBER)
        for contour_item in roi_item.get_sequence(tags.CONTOUR_SEQUENCE):
            value = contour_item.get_bytes(tags.CONTOUR_DATA)
            if value is None:
                continue
            contour = _make_contour(value, contour_item.byte_order, referenced, settings)
            if contour is None:
                continue
            geometric_type = contour_item.get_string(tags.CONTOUR_GEOMETRIC_TYPE)
            if geometric_type is not None and geometric_type.upper() != CLOSED_PLANAR:
                logger.debug(
                    "Skipping %s contour of ROI %s at z=%.2f",
                    geometric_type, referenced, contour.plane_depth,
                )
                skipped.append(contour)
                continue
            contours.append(contour)
    logger.debug(
        "Structured walk found %d contours (%d not closed planar)", len(contours), len(skipped)
    )
    return contours, skipped


def _direct_scan(dataset: Dataset, settings: ExtractionSettings) -> list[Contour]:
    contours = []
    for tag, element in dataset.items():
        if tag != tags.CONTOUR_DATA:
            continue
        contour = _make_contour(element.value, dataset.byte_order, None, settings)
        if contour is not None:
            contours.append(contour)
    logger.debug("Direct scan found %d contours", len(contours))
    return contours


def _raw_scan(dataset: Dataset, settings: ExtractionSettings) -> list[Contour]:
    """Scan the retained bytes for every Contour Data tag signature."""
    raw = dataset.raw
    byte_order = dataset.byte_order
    signature = tags.CONTOUR_DATA.signature(byte_order)
    contours = []
    start = 0
    while True:
        offset = raw.find(signature, start)
        if offset < 0:
            break
        start = offset + 1
        if offset + 12 > len(raw):
            break
        value_start, length = _element_header(raw, offset, dataset.explicit_vr, byte_order)
        if length == 0 or length > settings.max_contour_bytes:
            continue
        if value_start + length > len(raw):
            logger.debug("Raw match at %d runs past the buffer end", offset)
            continue
        contour = _make_contour(
            raw[value_start:value_start + length], byte_order, None, settings
        )
        if contour is not None:
            contours.append(contour)
            start = value_start + length
    logger.debug("Raw scan found %d contours", len(contours))
    return contours


def _element_header(
    raw: bytes, offset: int, explicit_vr: bool, byte_order: str
) -> tuple[int, int]:
    """Return ``(value offset, length)`` of the element whose tag is at *offset*.

    Explicit VR headers are read by their VR code (long form for OB/OF/UN
    etc., short form otherwise); an unknown code is read as implicit VR.
    """
    if explicit_vr:
        vr = tags.VR.from_code(raw[offset + 4:offset + 6])
        if vr in tags.LONG_LENGTH_VRS:
            return offset + 12, read_uint32(raw, offset + 8, byte_order)
        if vr is not None:
            return offset + 8, read_uint16(raw, offset + 6, byte_order)
    return offset + 8, read_uint32(raw, offset + 4, byte_order)


def deduplicate(
    accepted: Sequence[Contour],
    candidates: Iterable[Contour],
    tolerance_mm: float = 0.01,
) -> list[Contour]:
    """Return *accepted* extended by the candidates that are not duplicates.

    Two contours are duplicates when their depths differ by less than
    *tolerance_mm* and they have the same number of points.  Contours linked
    to different declared ROIs are never duplicates.
    """
    merged = list(accepted)
    by_count: Dict[int, list[Contour]] = {}
    for contour in merged:
        by_count.setdefault(contour.point_count, []).append(contour)
    for candidate in candidates:
        same_count = by_count.get(candidate.point_count, [])
        duplicate = any(
            abs(existing.plane_depth - candidate.plane_depth) < tolerance_mm
            and (
                existing.referenced_roi is None
                or candidate.referenced_roi is None
                or existing.referenced_roi == candidate.referenced_roi
            )
            for existing in same_count
        )
        if duplicate:
            continue
        merged.append(candidate)
        by_count.setdefault(candidate.point_count, []).append(candidate)
    return merged


# ---------------------------------------------------------------------------
# Grouping
# ---------------------------------------------------------------------------
def group_by_depth(contours: Iterable[Contour], gap_mm: float = 10.0) -> list[list[Contour]]:
    """Split contours into groups separated by depth gaps larger than *gap_mm*."""
    groups: list[list[Contour]] = []
    previous = None
    for contour in sorted(contours, key=lambda c: c.plane_depth):
        if previous is None or contour.plane_depth - previous > gap_mm:
            groups.append([])
        groups[-1].append(contour)
        previous = contour.plane_depth
    return groups


def _roi_definitions(dataset: Dataset) -> list[tuple[int | None, str | None]]:
    """Return ``(ROI number, ROI name)`` per Structure Set ROI Sequence item."""
    return [
        (item.get_int(tags.ROI_NUMBER), item.get_string(tags.ROI_NAME))
        for item in dataset.get_sequence(tags.STRUCTURE_SET_ROI_SEQUENCE)
    ]


def _display_colors(dataset: Dataset) -> list[tuple[int | None, tuple | None]]:
    """Return ``(referenced ROI number, normalized colour)`` per ROI Contour item."""
    colors = []
    for item in dataset.get_sequence(tags.ROI_CONTOUR_SEQUENCE):
        values = item.get_floats(tags.ROI_DISPLAY_COLOR)
        color = None
        if len(values) >= 3:
            color = tuple(min(max(v / 255.0, 0.0), 1.0) for v in values[:3])
        colors.append((item.get_int(tags.REFERENCED_ROI_NUMBER), color))
    return colors


def _build_structures(
    dataset: Dataset, contours: list[Contour], settings: ExtractionSettings
) -> list[ROIStructure]:
    definitions = _roi_definitions(dataset)
    colors = _display_colors(dataset)
    names_by_number = {n: name for n, name in definitions if n is not None and name}
    colors_by_number = {n: c for n, c in colors if n is not None and c is not None}

    linked = [c for c in contours if c.referenced_roi is not None]
    unlinked = [c for c in contours if c.referenced_roi is None]
    structures: list[ROIStructure] = []

    if settings.use_declared_linkage and linked:
        order: Dict[int, list[Contour]] = {}
        for contour in linked:
            order.setdefault(contour.referenced_roi, []).append(contour)
        for number, group in order.items():
            index = len(structures)
            structures.append(
                ROIStructure(
                    number=number,
                    name=names_by_number.get(number, f"Structure {index + 1}"),
                    color=colors_by_number.get(number, PALETTE[index % len(PALETTE)]),
                    contours=tuple(sorted(group, key=lambda c: c.plane_depth)),
                )
            )
        heuristic = group_by_depth(unlinked, settings.grouping_gap_mm)
        if heuristic:
            logger.warning(
                "%d contours without ROI linkage grouped into %d extra structures",
                len(unlinked), len(heuristic),
            )
        next_number = max(order) + 1
        for group in heuristic:
            index = len(structures)
            structures.append(
                ROIStructure(
                    number=next_number,
                    name=f"Structure {index + 1}",
                    color=PALETTE[index % len(PALETTE)],
                    contours=tuple(group),
                )
            )
            next_number += 1
        return structures

    # No usable linkage: match depth groups to definitions by index order
    used_numbers: set[int] = set()
    for index, group in enumerate(group_by_depth(contours, settings.grouping_gap_mm)):
        number, name = definitions[index] if index < len(definitions) else (None, None)
        if number is None or number in used_numbers:
            number = max(used_numbers, default=0) + 1
        used_numbers.add(number)
        color = colors[index][1] if index < len(colors) else None
        structures.append(
            ROIStructure(
                number=number,
                name=name or f"Structure {index + 1}",
                color=color or PALETTE[index % len(PALETTE)],
                contours=tuple(group),
            )
        )
    return structures


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def is_structure_set(dataset: Dataset) -> bool:
    modality = dataset.modality
    if modality is not None:
        return modality.upper() == RTSTRUCT_MODALITY
    return dataset.sop_class_uid == RTStructureSetStorage


def extract_structures(
    dataset: Dataset, settings: ExtractionSettings = DEFAULT_EXTRACTION
) -> StructureSet:
    """Extract every ROI of an RT Structure Set.

    Args:
        dataset:  A decoded RT-STRUCT dataset (``raw`` must be retained).
        settings: Extraction heuristics.

    Returns:
        The structures, in declaration order when ROI linkage is present and
        in depth order otherwise.

    Raises:
        NotAnnotationFile: The dataset is not an RT Structure Set.
        NoContourData: No valid contour was found by any strategy.
    """
    if not is_structure_set(dataset):
        raise NotAnnotationFile(f"modality is {dataset.modality!r}, expected RTSTRUCT")

    tolerance = settings.duplicate_depth_tolerance_mm
    contours, skipped = _structured_walk(dataset, settings)
    contours = deduplicate(contours, _direct_scan(dataset, settings), tolerance)

    # Skipped contours still count as seen so the raw scan cannot bring them back
    seen = contours + skipped
    signature_count = dataset.raw.count(tags.CONTOUR_DATA.signature(dataset.byte_order))
    if not contours or signature_count > len(seen):
        recovered = deduplicate(seen, _raw_scan(dataset, settings), tolerance)[len(seen):]
        if recovered:
            logger.warning(
                "Raw scan recovered %d contours missed by the structured decode",
                len(recovered),
            )
            contours += recovered

    if not contours:
        raise NoContourData("no valid Contour Data in structure set")

    structure_set = StructureSet(
        _build_structures(dataset, contours, settings),
        label=dataset.get_string(tags.STRUCTURE_SET_LABEL),
        patient_name=dataset.get_string(tags.PATIENT_NAME),
    )
    stats = structure_set.statistics()
    logger.info(
        "Extracted %d ROIs (%d contours, %d points) from structure set %r",
        stats.roi_count, stats.contour_count, stats.point_count, structure_set.label,
    )
    return structure_set


def load_structures(
    dataset: Dataset, settings: ExtractionSettings = DEFAULT_EXTRACTION
) -> StructureSet:
    """Like :func:`extract_structures` but returns an empty set when no
    contour data exists."""
    try:
        return extract_structures(dataset, settings)
    except NoContourData:
        logger.info("Structure set has no contour data")
        return StructureSet(
            label=dataset.get_string(tags.STRUCTURE_SET_LABEL),
            patient_name=dataset.get_string(tags.PATIENT_NAME),
        )


def validate_structure_set(dataset: Dataset) -> list[str]:
    """Return a list of structural problems; empty when the file looks valid."""
    issues = []
    modality = dataset.modality
    if modality is None:
        issues.append("Missing Modality")
    elif modality.upper() != RTSTRUCT_MODALITY:
        issues.append(f"Invalid modality {modality!r}, expected RTSTRUCT")
    if tags.STRUCTURE_SET_ROI_SEQUENCE not in dataset:
        issues.append("Missing Structure Set ROI Sequence")
    if tags.ROI_CONTOUR_SEQUENCE not in dataset:
        issues.append("Missing ROI Contour Sequence")
    if dataset.get_string(tags.SERIES_INSTANCE_UID) is None:
        issues.append("Missing Series Instance UID")
    if dataset.get_string(tags.STUDY_INSTANCE_UID) is None:
        issues.append("Missing Study Instance UID")
    return issues
