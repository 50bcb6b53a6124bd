"""
DICOM Engine: instance metadata extraction and upload storage.

Uses pydicom to read one self-contained DICOM object and reduce it to the
identifying attributes a teaching case needs. pydicom is handed a scratch
file rather than an in-memory buffer so every read goes through the same
random-access path regardless of where the bytes came from.
"""

import base64
import binascii
import logging
import os
import re
from pathlib import Path
from typing import Any

import pydicom
from pydicom.dataset import Dataset
from pydicom.errors import InvalidDicomError

from app.models.metadata import ExtractedInstance, InstanceMetadata
from app.services.ingest_errors import MalformedStream, MissingRequiredField
from app.services.scratch import scratch_file

logger = logging.getLogger(__name__)

STORAGE_DIR = os.getenv("DICOM_STORAGE_DIR", "/data/dicom")

# Resolution order matters: the first missing tag is the one reported
REQUIRED_TAGS = ("SOPInstanceUID", "StudyInstanceUID", "SeriesInstanceUID")

# Optional string tags and the record field + default they map to
OPTIONAL_TAGS = {
    "Modality": ("modality", ""),
    "PatientName": ("patient_name", InstanceMetadata.DEFAULT_PATIENT_NAME),
    "PatientID": ("patient_id", InstanceMetadata.DEFAULT_PATIENT_ID),
    "StudyDate": ("study_date", ""),
    "StudyDescription": ("study_description", ""),
    "SeriesDescription": ("series_description", ""),
}

INTEGER_TAGS = {
    "InstanceNumber": "instance_number",
    "SeriesNumber": "series_number",
}

# ── Path Validation (Security) ─────────────────────────────────────
# Case ids and upload names become directory/file names on disk
_PATH_COMPONENT_PATTERN = re.compile(r"^[A-Za-z0-9._-]+$")


def _validate_path_component(value: str) -> bool:
    """
    Validate a storage path component to prevent directory traversal.

    Raises:
        ValueError: If the value contains separators or other unsafe characters
    """
    if not _PATH_COMPONENT_PATTERN.match(value) or value in (".", ".."):
        raise ValueError(f"Invalid storage path component: '{value}'")
    return True


def read_dataset(path: Path, force: bool = False) -> Dataset:
    """
    Read a DICOM file from disk without its pixel data.

    With ``force=False`` the file must carry the 128-byte preamble, the
    ``DICM`` prefix and file meta information. ``force=True`` also accepts a
    bare dataset.

    Raises:
        MalformedStream: If pydicom cannot interpret the file
    """
    try:
        return pydicom.dcmread(path, stop_before_pixels=True, force=force)
    except InvalidDicomError as e:
        raise MalformedStream(f"Not a DICOM object: {e}") from e
    except Exception as e:  # pydicom surfaces truncation as struct/EOF/value errors
        raise MalformedStream(f"Failed to parse DICOM data: {e}") from e


def _read_string(ds: Dataset, keyword: str) -> str:
    """Return a tag's value as a stripped string, or "" if absent or unreadable."""
    try:
        value = ds.get(keyword)
    except Exception:
        # Deferred raw values are converted here and may be corrupt
        return ""
    if value is None:
        return ""
    return str(value).strip()


def _read_int(ds: Dataset, keyword: str, default: int) -> int:
    value = _read_string(ds, keyword)
    if not value:
        return default
    try:
        return int(float(value))
    except (ValueError, TypeError):
        return default


def read_frame_count(ds: Dataset) -> int:
    """NumberOfFrames, defaulting to 1 and never below 1."""
    return max(_read_int(ds, "NumberOfFrames", 1), 1)


def metadata_from_dataset(ds: Dataset) -> InstanceMetadata:
    """
    Reduce a dataset to an InstanceMetadata record.

    Raises:
        MissingRequiredField: If a required UID tag is absent or blank
    """
    uids = {}
    for keyword in REQUIRED_TAGS:
        value = _read_string(ds, keyword)
        if not value:
            raise MissingRequiredField(keyword)
        uids[keyword] = value

    fields: dict[str, Any] = {}
    for keyword, (field_name, default) in OPTIONAL_TAGS.items():
        fields[field_name] = _read_string(ds, keyword) or default
    for keyword, field_name in INTEGER_TAGS.items():
        fields[field_name] = _read_int(ds, keyword, 0)

    return InstanceMetadata(
        sop_instance_uid=uids["SOPInstanceUID"],
        study_instance_uid=uids["StudyInstanceUID"],
        series_instance_uid=uids["SeriesInstanceUID"],
        **fields,
    )


def extract_instance(
    data: bytes,
    scratch_dir: str | Path | None = None,
    force: bool = False,
) -> ExtractedInstance:
    """
    Extract metadata from bytes holding exactly one DICOM object.

    Args:
        data: Encoded DICOM object
        scratch_dir: Parent directory for the scratch file (default: SCRATCH_DIR)
        force: Accept datasets without preamble and file meta

    Returns:
        ExtractedInstance with the record and the object's frame count

    Raises:
        MalformedStream: If the bytes are not a readable DICOM object
        MissingRequiredField: If a required UID tag is missing
        ScratchResourceError: If the scratch file cannot be written
    """
    with scratch_file(data, scratch_dir) as path:
        ds = read_dataset(path, force=force)
        metadata = metadata_from_dataset(ds)
        frame_count = read_frame_count(ds)

    logger.debug(
        f"Extracted {metadata.sop_instance_uid} "
        f"(series {metadata.series_instance_uid}, {frame_count} frame(s))"
    )
    return ExtractedInstance(metadata, frame_count)


# ── Upload Storage ─────────────────────────────────────────────────


def decode_upload(encoded: str) -> bytes:
    """
    Decode a base64 upload payload.

    Raises:
        ValueError: If the payload is not valid base64 or is empty
    """
    try:
        data = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"Invalid base64 encoding: {e}") from e
    if not data:
        raise ValueError("Upload is empty")
    return data


def upload_path(case_id: str, name: str = "original") -> str:
    """Path of a stored upload: ``{storage}/{case_id}/{name}.dcm``."""
    _validate_path_component(case_id)
    _validate_path_component(name)
    return os.path.join(STORAGE_DIR, case_id, f"{name}.dcm")


def store_upload(case_id: str, data: bytes, name: str = "original") -> str:
    """
    Store the raw bytes of an upload under the case's directory.

    Returns the file path.
    """
    file_path = upload_path(case_id, name)
    os.makedirs(os.path.dirname(file_path), exist_ok=True)

    with open(file_path, "wb") as f:
        f.write(data)

    return file_path


def read_upload(case_id: str, name: str = "original") -> bytes:
    """
    Read a stored upload from disk.

    Raises:
        FileNotFoundError: If nothing was stored under that name
    """
    with open(upload_path(case_id, name), "rb") as f:
        return f.read()
