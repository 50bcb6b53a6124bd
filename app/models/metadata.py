"""In-memory records produced by the study ingestion pipeline."""

from dataclasses import asdict, dataclass, field, replace
from typing import Any, NamedTuple


@dataclass(frozen=True)
class InstanceMetadata:
    """Identifying attributes of one DICOM instance."""

    DEFAULT_PATIENT_NAME = "Anonymous"
    DEFAULT_PATIENT_ID = "Unknown"

    sop_instance_uid: str
    study_instance_uid: str
    series_instance_uid: str
    modality: str = ""
    patient_name: str = DEFAULT_PATIENT_NAME
    patient_id: str = DEFAULT_PATIENT_ID
    study_date: str = ""
    study_description: str = ""
    series_description: str = ""
    instance_number: int = 0
    series_number: int = 0

    def with_frame(self, frame_index: int) -> "InstanceMetadata":
        """Derive the record for a 0-based frame of a multi-frame object."""
        return replace(
            self,
            sop_instance_uid=f"{self.sop_instance_uid}.{frame_index + 1}",
            instance_number=frame_index + 1,
        )


class ExtractedInstance(NamedTuple):
    """Extractor output: the record plus the frame count read alongside it."""

    metadata: InstanceMetadata
    frame_count: int = 1


@dataclass
class SeriesGroup:
    """Instances sharing a Series Instance UID."""

    series_instance_uid: str
    series_number: int = 0
    series_description: str = ""
    modality: str = ""
    image_ids: list[str] = field(default_factory=list)

    @classmethod
    def from_instance(cls, instance: InstanceMetadata) -> "SeriesGroup":
        return cls(
            series_instance_uid=instance.series_instance_uid,
            series_number=instance.series_number,
            series_description=instance.series_description,
            modality=instance.modality,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SeriesGroup":
        return cls(
            series_instance_uid=data["series_instance_uid"],
            series_number=data.get("series_number", 0),
            series_description=data.get("series_description", ""),
            modality=data.get("modality", ""),
            image_ids=list(data.get("image_ids", [])),
        )

    def add(self, sop_instance_uid: str) -> bool:
        """Append an image id unless already present. Returns True if added."""
        if sop_instance_uid in self.image_ids:
            return False
        self.image_ids.append(sop_instance_uid)
        return True

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class AggregatedStudy(NamedTuple):
    """Series groups plus the flat image-id list kept for flat addressing."""

    series: list[SeriesGroup]
    image_ids: list[str]
