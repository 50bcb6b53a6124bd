"""
Byte-stream prober for uploads that concatenate several DICOM objects.

A DICOM Part 10 object starts with a 128-byte preamble followed by the
``DICM`` prefix. Part boundaries are located by finding that prefix; the
even-offset filter rejects most chance matches inside pixel data, but the
scan is a heuristic with no format guarantee: a ``DICM`` run at an even
offset inside pixel data still yields a boundary (false positive), and an
object concatenated at an odd offset is missed (false negative).
"""

import logging
from pathlib import Path
from typing import NamedTuple

from app.models.metadata import ExtractedInstance
from app.services.dicom_engine import extract_instance
from app.services.ingest_errors import ExtractError

logger = logging.getLogger(__name__)

DICM_MARKER = b"DICM"
PREAMBLE_LENGTH = 128


class StreamPart(NamedTuple):
    """Candidate DICOM object carved out of a larger buffer."""

    index: int
    start: int
    end: int
    data: bytes


class ProbedPart(NamedTuple):
    """A stream part that extracted successfully."""

    part: StreamPart
    instance: ExtractedInstance


def find_part_boundaries(data: bytes) -> list[int]:
    """
    Return the sorted start offsets of embedded DICOM objects.

    A marker found at offset ``i`` yields boundary ``i - 128`` when
    ``i >= 128`` and ``i`` is even.
    """
    boundaries = []
    pos = data.find(DICM_MARKER)
    while pos != -1:
        if pos >= PREAMBLE_LENGTH and pos % 2 == 0:
            boundaries.append(pos - PREAMBLE_LENGTH)
        pos = data.find(DICM_MARKER, pos + 1)
    return sorted(boundaries)


def split_parts(data: bytes, boundaries: list[int] | None = None) -> list[StreamPart]:
    """
    Carve the buffer into parts spanning boundary to next boundary.

    The last part runs to the end of the buffer. Degenerate parts
    (end not strictly after start) are dropped.
    """
    if boundaries is None:
        boundaries = find_part_boundaries(data)

    parts = []
    for idx, start in enumerate(boundaries):
        end = boundaries[idx + 1] if idx + 1 < len(boundaries) else len(data)
        if end <= start:
            logger.debug(f"Skipping degenerate part {idx} ({start}..{end})")
            continue
        parts.append(StreamPart(idx, start, end, data[start:end]))
    return parts


def probe_parts(data: bytes, scratch_dir: str | Path | None = None) -> list[ProbedPart]:
    """
    Extract every embedded DICOM object from the buffer.

    Parts that fail extraction are logged and skipped. An empty list means
    either no boundary was found or no part could be read; callers that need
    to tell the two apart check ``find_part_boundaries`` first.
    """
    parts = split_parts(data)
    logger.info(f"Found {len(parts)} possible DICOM parts in {len(data)} bytes")

    probed = []
    for part in parts:
        try:
            instance = extract_instance(part.data, scratch_dir=scratch_dir)
        except ExtractError as e:
            logger.warning(f"Failed to extract metadata from part {part.index}: {e}")
            continue
        logger.info(
            f"Extracted {instance.metadata.sop_instance_uid} from part {part.index} "
            f"(bytes {part.start}..{part.end})"
        )
        probed.append(ProbedPart(part, instance))

    return probed
