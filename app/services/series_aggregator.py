"""Deduplication and series grouping of extracted instances."""

import logging
from collections.abc import Iterable

from app.models.metadata import AggregatedStudy, InstanceMetadata, SeriesGroup

logger = logging.getLogger(__name__)


def deduplicate_instances(records: Iterable[InstanceMetadata]) -> list[InstanceMetadata]:
    """
    Drop repeated SOP Instance UIDs, keeping the first-seen record.

    Later duplicates are discarded even when their other fields disagree
    with the retained record.
    """
    seen: set[str] = set()
    unique = []
    for record in records:
        if record.sop_instance_uid in seen:
            logger.debug(f"Dropping duplicate instance {record.sop_instance_uid}")
            continue
        seen.add(record.sop_instance_uid)
        unique.append(record)
    return unique


def aggregate_series(records: Iterable[InstanceMetadata]) -> AggregatedStudy:
    """
    Group instances by Series Instance UID in first-seen order.

    Series-level fields come from the first instance of each series.

    Returns:
        AggregatedStudy with the series groups and the flat image-id list
    """
    groups: dict[str, SeriesGroup] = {}
    image_ids: list[str] = []

    for record in deduplicate_instances(records):
        group = groups.get(record.series_instance_uid)
        if group is None:
            group = SeriesGroup.from_instance(record)
            groups[record.series_instance_uid] = group
        group.add(record.sop_instance_uid)
        image_ids.append(record.sop_instance_uid)

    logger.info(f"Organized {len(image_ids)} instances into {len(groups)} series")
    return AggregatedStudy(list(groups.values()), image_ids)


def merge_series(
    existing_series: list[SeriesGroup],
    existing_image_ids: list[str],
    records: Iterable[InstanceMetadata],
) -> AggregatedStudy:
    """
    Fold newly extracted instances into already-stored series.

    Instances of a known series are appended to it; unseen series are
    appended as new groups. An instance the case already holds stays where
    it was first filed, even when the new record names another series, and
    a series made up only of such instances is not created. The inputs are
    not mutated.
    """
    series = [SeriesGroup.from_dict(group.to_dict()) for group in existing_series]
    by_uid = {group.series_instance_uid: group for group in series}
    image_ids = list(existing_image_ids)
    known_ids = set(image_ids)
    for group in series:
        known_ids.update(group.image_ids)

    incoming = aggregate_series(records)
    for new_group in incoming.series:
        new_ids = [sop_uid for sop_uid in new_group.image_ids if sop_uid not in known_ids]
        if not new_ids:
            continue

        group = by_uid.get(new_group.series_instance_uid)
        if group is None:
            group = SeriesGroup.from_dict({**new_group.to_dict(), "image_ids": []})
            by_uid[group.series_instance_uid] = group
            series.append(group)
            logger.info(
                f"Added new series {group.series_instance_uid} with {len(new_ids)} instances"
            )

        for sop_uid in new_ids:
            group.add(sop_uid)
            known_ids.add(sop_uid)
            image_ids.append(sop_uid)
            logger.debug(f"Added instance {sop_uid} to series {group.series_instance_uid}")

    return AggregatedStudy(series, image_ids)
