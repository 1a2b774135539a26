import logging

import numpy as np
import pytest

from mpr_core import io
from mpr_core.errors import InconsistentGeometry
from mpr_core.settings import LoaderSettings

BROKEN = b"\x00" * 128 + b"DICM" + b"\x02\x00\x10\x00UI\xff\x00" + b"1.2"


def _write(folder, name, data):
    path = folder / name
    path.write_bytes(data)
    return path


def test_discover_files_skips_non_dicom(ct_folder):
    (ct_folder / "notes.txt").write_text("not an image")
    (ct_folder / "nested").mkdir()

    files = io.discover_files(ct_folder)

    assert [f.name for f in files] == [f"slice_{i}.dcm" for i in range(4)]


def test_read_datasets_keeps_order_and_reports_progress(ct_folder):
    progress = []
    paths = io.discover_files(ct_folder)

    decoded = io.read_datasets(paths, LoaderSettings(max_workers=2), progress.append)

    assert [path for path, _ in decoded] == paths
    assert len(progress) == 4
    assert progress[-1] == 1.0
    assert progress == sorted(progress)


def test_broken_file_is_logged_and_skipped(ct_folder, caplog):
    broken = _write(ct_folder, "zz_broken.dcm", BROKEN)

    with caplog.at_level(logging.ERROR, logger="mpr_core.io"):
        decoded = io.read_datasets(io.discover_files(ct_folder))

    assert len(decoded) == 4
    assert broken not in [path for path, _ in decoded]
    assert "Failed to decode" in caplog.text


def test_load_ct(ct_folder):
    volume = io.load_ct(ct_folder)

    assert volume.dimensions == (8, 6, 4)
    assert volume.spacing == pytest.approx((0.75, 0.5, 2.0))
    assert volume.origin == (-10.0, -20.0, 0.0)
    assert volume.voxels[:, 3, 3].tolist() == [0, 20, 40, 60]
    assert volume.voxels[:, 0, 0].tolist() == [-1000] * 4


def test_load_ct_uses_the_largest_series(ct_folder, dicom, caplog):
    other = dicom.ct_slice(0.0, np.zeros((3, 3), dtype=np.int16), series_uid="1.2.3.999")
    _write(ct_folder, "other.dcm", dicom.encode(other))

    with caplog.at_level(logging.WARNING, logger="mpr_core.io"):
        volume = io.load_ct(ct_folder)

    assert volume.dimensions == (8, 6, 4)
    assert "Found 2 image series" in caplog.text


def test_empty_folder_cannot_build_a_volume(tmp_path):
    with pytest.raises(InconsistentGeometry):
        io.load_ct(tmp_path)


def test_load_study_without_structures(ct_folder):
    study = io.load_study(ct_folder)
    assert study.volume.dimensions == (8, 6, 4)
    assert len(study.structures) == 0


def test_load_study_with_structures(ct_folder, dicom, two_rois):
    _write(ct_folder, "rtstruct.dcm", dicom.encode(dicom.rtstruct(two_rois)))

    study = io.load_study(ct_folder)

    assert study.volume.dimensions == (8, 6, 4)
    assert study.structures.get_roi_numbers() == [1, 7]
    assert study.structures.get_name(7) == "PTV"


def test_validate_single_ct_series(ct_folder):
    assert io.validate_dicom_files(ct_folder)


def test_validate_rejects_non_ct_files(ct_folder, dicom, two_rois):
    _write(ct_folder, "rtstruct.dcm", dicom.encode(dicom.rtstruct(two_rois)))
    assert not io.validate_dicom_files(ct_folder)


def test_validate_rejects_non_dicom_files(ct_folder):
    (ct_folder / "notes.txt").write_text("not an image")
    assert not io.validate_dicom_files(ct_folder)


def test_validate_rejects_several_series(ct_folder, dicom):
    other = dicom.ct_slice(0.0, np.zeros((6, 8), dtype=np.int16), series_uid="1.2.3.999")
    _write(ct_folder, "other.dcm", dicom.encode(other))
    assert not io.validate_dicom_files(ct_folder)


def test_validate_empty_folder(tmp_path):
    assert not io.validate_dicom_files(tmp_path)
