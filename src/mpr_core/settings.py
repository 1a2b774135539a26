"""settings.py — Tunable constants for extraction, projection and loading.

Every value here is a heuristic default, not a law of the file format; pass a
modified copy (``dataclasses.replace``) to the functions that accept one.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class ExtractionSettings:
    """Parameters of the RT-STRUCT contour extractor."""

    # Consecutive contour depths further apart than this start a new structure
    grouping_gap_mm: float = 10.0
    # Two contours are the same if depths differ by less than this and the
    # point counts match
    duplicate_depth_tolerance_mm: float = 0.01
    # z values are rounded to this grid before picking the plane depth
    depth_rounding_mm: float = 0.01
    # Raw-scan matches claiming a longer value are ignored
    max_contour_bytes: int = 4 * 1024 * 1024
    # Binary float fallback rejects coordinates beyond this magnitude
    max_abs_coordinate: float = 10000.0
    # Group by Referenced ROI Number when every structured contour has one
    use_declared_linkage: bool = True


@dataclass(frozen=True)
class ProjectionSettings:
    """Parameters of the plane-intersection engine."""

    duplicate_point_distance_mm: float = 1.0
    # Interpolation step between contour depths, as a fraction of slice spacing
    depth_sample_fraction: float = 0.5
    # Cursor moves smaller than this are ignored
    min_position_change_mm: float = 0.01


@dataclass(frozen=True)
class LoaderSettings:
    """Parameters of the file loaders."""

    # None lets ThreadPoolExecutor pick the pool size
    max_workers: int | None = None


DEFAULT_EXTRACTION = ExtractionSettings()
DEFAULT_PROJECTION = ProjectionSettings()
DEFAULT_LOADER = LoaderSettings()
