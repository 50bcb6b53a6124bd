"""Unit tests for DICOM instance metadata extraction and upload storage."""

import base64
import os

import pytest
from pydicom.dataset import Dataset
from pydicom.uid import ImplicitVRLittleEndian

from app.services.dicom_engine import (
    _validate_path_component,
    decode_upload,
    extract_instance,
    metadata_from_dataset,
    read_frame_count,
    read_upload,
    store_upload,
)
from app.services.ingest_errors import MalformedStream, MissingRequiredField
from tests.fixtures.factories import DicomFactory

pytestmark = pytest.mark.unit


# ── Helpers ────────────────────────────────────────────────────────


def _uid_dataset(**overrides) -> Dataset:
    ds = Dataset()
    ds.SOPInstanceUID = overrides.get("SOPInstanceUID", "1.2.3.4.1")
    ds.StudyInstanceUID = overrides.get("StudyInstanceUID", "1.2.3")
    ds.SeriesInstanceUID = overrides.get("SeriesInstanceUID", "1.2.3.4")
    return ds


# ── Extraction from Files ──────────────────────────────────────────


def test_extract_uids_and_modality_match_source(scratch_dir):
    """Extracted UIDs and modality equal the tag values written."""
    data = DicomFactory.create_ct_image(
        study_uid="1.2.826.0.1.1",
        series_uid="1.2.826.0.1.1.2",
        sop_uid="1.2.826.0.1.1.2.3",
        modality="CT",
    )

    instance = extract_instance(data)

    assert instance.metadata.sop_instance_uid == "1.2.826.0.1.1.2.3"
    assert instance.metadata.study_instance_uid == "1.2.826.0.1.1"
    assert instance.metadata.series_instance_uid == "1.2.826.0.1.1.2"
    assert instance.metadata.modality == "CT"
    assert instance.frame_count == 1


def test_extract_optional_fields(scratch_dir):
    """Patient, study and series descriptive fields are carried over."""
    data = DicomFactory.create_ct_image(
        patient_id="PAT-42",
        patient_name="Doe^Jane",
        study_date="20240102",
        instance_number=5,
        series_number=9,
        series_description="Axial 5mm",
    )

    metadata = extract_instance(data).metadata

    assert metadata.patient_id == "PAT-42"
    assert metadata.patient_name == "Doe^Jane"
    assert metadata.study_date == "20240102"
    assert metadata.study_description == "Test Study"
    assert metadata.series_description == "Axial 5mm"
    assert metadata.instance_number == 5
    assert metadata.series_number == 9


def test_extract_implicit_vr_file(scratch_dir):
    """Implicit VR transfer syntax reads the same way."""
    data = DicomFactory.create_ct_image(sop_uid="1.2.3.99", transfer_syntax=ImplicitVRLittleEndian)

    assert extract_instance(data).metadata.sop_instance_uid == "1.2.3.99"


def test_extract_with_pixel_data(scratch_dir, sample_ct_with_pixels):
    """Pixel data does not get in the way of metadata extraction."""
    instance = extract_instance(sample_ct_with_pixels)

    assert instance.metadata.patient_id == "FIXTURE-CT-002"


def test_extract_reports_frame_count(scratch_dir):
    """NumberOfFrames is surfaced beside the record."""
    data = DicomFactory.create_multiframe_ct(num_frames=6)

    instance = extract_instance(data)

    assert instance.frame_count == 6
    assert not hasattr(instance.metadata, "frame_count")


@pytest.mark.parametrize(
    "missing", ["SOPInstanceUID", "StudyInstanceUID", "SeriesInstanceUID"]
)
def test_extract_missing_required_field(scratch_dir, missing):
    """Each required UID tag is enforced and named in the error."""
    data = DicomFactory.create_invalid_dicom(missing_tags=[missing])

    with pytest.raises(MissingRequiredField) as exc_info:
        extract_instance(data)

    assert exc_info.value.tag == missing


def test_extract_reports_first_missing_tag(scratch_dir):
    """SOPInstanceUID is checked before the study and series UIDs."""
    data = DicomFactory.create_invalid_dicom(
        missing_tags=["SeriesInstanceUID", "SOPInstanceUID"]
    )

    with pytest.raises(MissingRequiredField) as exc_info:
        extract_instance(data)

    assert exc_info.value.tag == "SOPInstanceUID"


def test_extract_missing_optional_tags_use_defaults(scratch_dir):
    """Absent optional tags fall back to documented defaults."""
    data = DicomFactory.create_invalid_dicom(missing_tags=["PatientID", "Modality"])

    metadata = extract_instance(data).metadata

    assert metadata.patient_id == "Unknown"
    assert metadata.patient_name == "Anonymous"
    assert metadata.modality == ""
    assert metadata.study_date == ""
    assert metadata.instance_number == 0


def test_extract_rejects_non_dicom_bytes(scratch_dir):
    """Bytes without preamble and prefix are malformed in strict mode."""
    with pytest.raises(MalformedStream):
        extract_instance(b"definitely not a DICOM object")


def test_extract_rejects_bare_dataset_without_force(scratch_dir):
    """A bare dataset needs force=True."""
    data = DicomFactory.create_bare_dataset("1.2.3.4.5", "1.2.3", "1.2.3.4")

    with pytest.raises(MalformedStream):
        extract_instance(data)


def test_extract_bare_dataset_with_force(scratch_dir):
    """force=True reads a dataset without preamble or file meta."""
    data = DicomFactory.create_bare_dataset("1.2.3.4.5", "1.2.3", "1.2.3.4", modality="MR")

    metadata = extract_instance(data, force=True).metadata

    assert metadata.sop_instance_uid == "1.2.3.4.5"
    assert metadata.study_instance_uid == "1.2.3"
    assert metadata.series_instance_uid == "1.2.3.4"
    assert metadata.modality == "MR"
    assert metadata.patient_id == "BARE-001"


def test_extract_explicit_scratch_dir(tmp_path):
    """An explicit scratch_dir is used and left empty."""
    scratch = tmp_path / "explicit"

    extract_instance(DicomFactory.create_ct_image(), scratch_dir=scratch)

    assert list(scratch.iterdir()) == []


# ── Scratch Cleanup on Every Exit Path ─────────────────────────────


def test_scratch_cleaned_after_success(scratch_dir, sample_ct_dicom):
    extract_instance(sample_ct_dicom)

    assert list(scratch_dir.iterdir()) == []


def test_scratch_cleaned_after_missing_tag(scratch_dir, invalid_dicom_missing_sop):
    with pytest.raises(MissingRequiredField):
        extract_instance(invalid_dicom_missing_sop)

    assert list(scratch_dir.iterdir()) == []


def test_scratch_cleaned_after_parser_error(scratch_dir):
    with pytest.raises(MalformedStream):
        extract_instance(b"\x01\x02\x03")

    assert list(scratch_dir.iterdir()) == []


def test_scratch_cleaned_after_unexpected_error(scratch_dir, sample_ct_dicom, monkeypatch):
    """Errors outside the taxonomy still release the scratch file."""
    import app.services.dicom_engine as dicom_engine

    def explode(ds):
        raise RuntimeError("unexpected")

    monkeypatch.setattr(dicom_engine, "metadata_from_dataset", explode)

    with pytest.raises(RuntimeError, match="unexpected"):
        extract_instance(sample_ct_dicom)

    assert list(scratch_dir.iterdir()) == []


# ── Dataset Reduction ──────────────────────────────────────────────


def test_blank_required_uid_is_missing():
    """A present but blank UID counts as missing."""
    ds = _uid_dataset(StudyInstanceUID="")

    with pytest.raises(MissingRequiredField, match="StudyInstanceUID"):
        metadata_from_dataset(ds)


def test_empty_instance_number_defaults_to_zero():
    ds = _uid_dataset()
    ds.add_new(0x00200013, "IS", None)

    assert metadata_from_dataset(ds).instance_number == 0


def test_blank_patient_fields_use_defaults():
    ds = _uid_dataset()
    ds.PatientName = ""
    ds.PatientID = "   "

    metadata = metadata_from_dataset(ds)

    assert metadata.patient_name == "Anonymous"
    assert metadata.patient_id == "Unknown"


@pytest.mark.parametrize("frames,expected", [(None, 1), (1, 1), (12, 12), (0, 1)])
def test_read_frame_count(frames, expected):
    ds = _uid_dataset()
    if frames is not None:
        ds.NumberOfFrames = frames

    assert read_frame_count(ds) == expected


# ── Upload Storage ─────────────────────────────────────────────────


def test_decode_upload_roundtrip():
    payload = base64.b64encode(b"DICOM bytes").decode()

    assert decode_upload(payload) == b"DICOM bytes"


@pytest.mark.parametrize("payload", ["not base64!!", "", "QQ"])
def test_decode_upload_rejects_invalid(payload):
    with pytest.raises(ValueError):
        decode_upload(payload)


def test_store_and_read_upload(storage_dir):
    path = store_upload("case-1", b"abc", "original")

    assert path == os.path.join(str(storage_dir), "case-1", "original.dcm")
    assert read_upload("case-1") == b"abc"


def test_read_missing_upload(storage_dir):
    with pytest.raises(FileNotFoundError):
        read_upload("no-such-case")


@pytest.mark.parametrize("component", ["../etc", "a/b", "..", ""])
def test_path_component_rejects_traversal(component):
    with pytest.raises(ValueError, match="Invalid storage path component"):
        _validate_path_component(component)


def test_path_component_accepts_uuid():
    assert _validate_path_component("0b9e4c1e-5d6f-4a8b-9c7d-2e1f3a4b5c6d") is True
    assert _validate_path_component("additional_5f2c") is True
