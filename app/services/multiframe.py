"""Per-frame expansion of multi-frame DICOM instances."""

import logging

from app.models.metadata import InstanceMetadata

logger = logging.getLogger(__name__)


def expand_frames(base: InstanceMetadata, frame_count: int) -> list[InstanceMetadata]:
    """
    Synthesize one record per frame of a multi-frame instance.

    Frame records share every study, series and patient field with the base.
    Frame ``i`` (0-based) gets ``sop_instance_uid = f"{base}.{i + 1}"`` and
    ``instance_number = i + 1``.

    Args:
        base: Record extracted from the multi-frame object
        frame_count: NumberOfFrames read from the same object

    Returns:
        ``[base]`` when frame_count <= 1, otherwise frame_count records
    """
    if frame_count <= 1:
        return [base]

    logger.info(f"Expanding {base.sop_instance_uid} into {frame_count} frame instances")
    return [base.with_frame(i) for i in range(frame_count)]
