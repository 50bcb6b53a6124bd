"""Build and update teaching cases from ingested instance records."""

import logging
from typing import Any

from app.models.case import TeachingCase
from app.models.metadata import InstanceMetadata, SeriesGroup
from app.services.series_aggregator import aggregate_series, merge_series
from app.services.study_processor import is_fallback_metadata

logger = logging.getLogger(__name__)

UNKNOWN_MODALITY = "Unknown"


def _warn_placeholders(case_id: str, records: list[InstanceMetadata]) -> None:
    placeholders = [r.sop_instance_uid for r in records if is_fallback_metadata(r)]
    if placeholders:
        logger.warning(
            f"Case {case_id} received {len(placeholders)} placeholder instance(s) "
            f"for an unreadable upload: {', '.join(placeholders)}"
        )


def choose_case_modality(modality_hint: str | None, records: list[InstanceMetadata]) -> str:
    """Upload's modality if given, else the first instance's, else "Unknown"."""
    if modality_hint and modality_hint.strip():
        return modality_hint.strip()
    if records and records[0].modality:
        return records[0].modality
    return UNKNOWN_MODALITY


def build_case(
    case_id: str,
    fields: dict[str, Any],
    records: list[InstanceMetadata],
) -> TeachingCase:
    """
    Create a case from upload fields and the instances found in its upload.

    Args:
        case_id: Identifier for the new case
        fields: Descriptive upload fields (title, description, modality,
            anatomy, diagnosis, findings, tags)
        records: Non-empty StudyProcessor output

    Raises:
        ValueError: If records is empty
    """
    if not records:
        raise ValueError("Cannot build a case without instances")

    _warn_placeholders(case_id, records)
    aggregated = aggregate_series(records)
    first = records[0]

    return TeachingCase(
        case_id=case_id,
        title=fields.get("title", ""),
        description=fields.get("description", ""),
        modality=choose_case_modality(fields.get("modality"), records),
        anatomy=fields.get("anatomy", ""),
        diagnosis=fields.get("diagnosis", ""),
        findings=fields.get("findings", ""),
        tags=list(fields.get("tags") or []),
        image_ids=aggregated.image_ids,
        series=[group.to_dict() for group in aggregated.series],
        study_instance_uid=first.study_instance_uid,
        series_instance_uid=first.series_instance_uid,
        study_date=first.study_date,
        study_description=first.study_description,
        patient_id=first.patient_id,
        patient_name=first.patient_name,
    )


def add_instances_to_case(case: TeachingCase, records: list[InstanceMetadata]) -> int:
    """
    Merge newly ingested instances into an existing case.

    JSON columns are reassigned rather than mutated so the ORM sees the change.

    Returns:
        Number of image ids added to the case
    """
    _warn_placeholders(case.case_id, records)
    existing = [SeriesGroup.from_dict(group) for group in (case.series or [])]
    before = len(case.image_ids or [])

    merged = merge_series(existing, list(case.image_ids or []), records)
    case.series = [group.to_dict() for group in merged.series]
    case.image_ids = merged.image_ids

    added = len(merged.image_ids) - before
    logger.info(f"Added {added} instance(s) to case {case.case_id}")
    return added
