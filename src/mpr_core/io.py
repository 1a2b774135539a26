"""io.py — Folder-level DICOM I/O.

Public API:
    discover_files(folder)              -> list[pathlib.Path]
    read_datasets(paths, settings)      -> list[(path, Dataset)]
    validate_dicom_files(folder_path)   -> bool
        Verify that every file in *folder_path* belongs to a single CT series.
    load_ct(folder)                     -> Volume
    load_study(folder)                  -> Study (volume + structure set)

Files are decoded in parallel with a thread pool.  A file that fails to
decode is logged and skipped; its siblings are still loaded.
"""
import concurrent.futures
import logging
import pathlib
import threading
from collections import Counter
from dataclasses import dataclass
from typing import Callable, Iterable

from pydicom.misc import is_dicom
from pydicom.uid import CTImageStorage

from . import tags
from .dataset import Dataset
from .decoder import decode_file
from .errors import DecodeError
from .rtstruct import StructureSet, is_structure_set, load_structures
from .settings import DEFAULT_LOADER, LoaderSettings
from .volume import Volume, build_volume

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Study:
    """A CT volume together with its (possibly empty) structure set."""

    volume: Volume
    structures: StructureSet


# ---------------------------------------------------------------------------
# Discovery / decoding
# ---------------------------------------------------------------------------
def discover_files(folder) -> list[pathlib.Path]:
    """Return the DICOM files directly inside *folder*, sorted by name."""
    folder = pathlib.Path(folder)
    files = []
    for file in sorted(f for f in folder.iterdir() if f.is_file()):
        if is_dicom(file):
            files.append(file)
        else:
            logger.debug("Skipping non-DICOM file: %s", file)
    logger.info("Found %d DICOM files in %s", len(files), folder)
    return files


def read_datasets(
    paths: Iterable,
    settings: LoaderSettings = DEFAULT_LOADER,
    progress_callback: Callable[[float], None] | None = None,
) -> list[tuple[pathlib.Path, Dataset]]:
    """Decode *paths* in parallel.

    Args:
        paths:             Files to decode.
        settings:          Thread pool configuration.
        progress_callback: Optional ``callback(fraction_done)``.

    Returns:
        ``(path, dataset)`` pairs in the order of *paths*, without the files
        that failed to decode.
    """
    paths = [pathlib.Path(p) for p in paths]
    results: dict[int, Dataset] = {}
    completed = 0
    progress_lock = threading.Lock()

    with concurrent.futures.ThreadPoolExecutor(max_workers=settings.max_workers) as executor:
        future_to_index = {
            executor.submit(decode_file, path): i for i, path in enumerate(paths)
        }
        for future in concurrent.futures.as_completed(future_to_index):
            i = future_to_index[future]
            try:
                results[i] = future.result()
            except (DecodeError, OSError) as exc:
                logger.error("Failed to decode %s: %s", paths[i], exc)

            with progress_lock:
                completed += 1
                if progress_callback is not None:
                    progress_callback(completed / len(paths))

    return [(paths[i], results[i]) for i in sorted(results)]


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------
def validate_dicom_files(folder_path) -> bool:
    """Return ``True`` if every file in *folder_path* is a CT DICOM slice
    that belongs to exactly one series; ``False`` otherwise.

    Args:
        folder_path: Path to the directory to inspect (``str`` or
            ``pathlib.Path``).
    """
    folder = pathlib.Path(folder_path)
    series_uids: set[str] = set()

    for file in sorted(f for f in folder.iterdir() if f.is_file()):
        if not is_dicom(file):
            logger.error("Non-DICOM file found: %s", file)
            return False
        try:
            ds = decode_file(file)
        except DecodeError as exc:
            logger.error("Cannot decode %s: %s", file, exc)
            return False
        if ds.sop_class_uid != CTImageStorage and ds.modality != "CT":
            logger.error("File is not a CT image: %s", file)
            return False
        series_uids.add(ds.series_instance_uid)

    if len(series_uids) != 1:
        logger.error("Expected 1 series in %s, found %d.", folder, len(series_uids))
        return False

    logger.info("Validation passed: single CT series in %s", folder)
    return True


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------
def _image_datasets(decoded: list[tuple[pathlib.Path, Dataset]]) -> list[Dataset]:
    """Return the image slices of the most populated series."""
    images = [
        ds for _, ds in decoded
        if tags.PIXEL_DATA in ds and not is_structure_set(ds)
    ]
    series = Counter(ds.series_instance_uid for ds in images)
    if len(series) > 1:
        chosen, count = series.most_common(1)[0]
        logger.warning(
            "Found %d image series, using %s (%d slices)", len(series), chosen, count
        )
        images = [ds for ds in images if ds.series_instance_uid == chosen]
    return images


def load_ct(folder, settings: LoaderSettings = DEFAULT_LOADER) -> Volume:
    """Decode every image file in *folder* and assemble the CT volume.

    Args:
        folder: Path to the DICOM folder (``str`` or ``pathlib.Path``).

    Returns:
        The assembled :class:`Volume`.
    """
    logger.info("Loading CT series from: %s", folder)
    decoded = read_datasets(discover_files(folder), settings)
    return build_volume(_image_datasets(decoded))


def load_study(folder, settings: LoaderSettings = DEFAULT_LOADER) -> Study:
    """Load the CT volume and the first RT Structure Set found in *folder*.

    A folder without an RT-STRUCT file yields an empty structure set.
    """
    logger.info("Loading study from: %s", folder)
    decoded = read_datasets(discover_files(folder), settings)
    volume = build_volume(_image_datasets(decoded))

    structure_files = [(path, ds) for path, ds in decoded if is_structure_set(ds)]
    if not structure_files:
        logger.info("No RT-STRUCT file in %s", folder)
        return Study(volume=volume, structures=StructureSet())
    if len(structure_files) > 1:
        logger.warning(
            "Found %d RT-STRUCT files, using %s", len(structure_files), structure_files[0][0]
        )
    path, dataset = structure_files[0]
    logger.info("Loading structures from: %s", path)
    return Study(volume=volume, structures=load_structures(dataset))
