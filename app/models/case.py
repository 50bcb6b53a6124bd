"""SQLAlchemy models for teaching cases."""

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, Column, DateTime, Index, String, Text

from app.database import Base


class TeachingCase(Base):
    """A teaching case with the DICOM series ingested for it."""

    __tablename__ = "cases"

    case_id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    title = Column(String(256), nullable=False)
    description = Column(Text, default="")
    modality = Column(String(16), index=True)
    anatomy = Column(String(128), default="")
    diagnosis = Column(String(256), default="")
    findings = Column(Text, default="")
    tags = Column(JSON, default=list)

    # Flat list of SOP Instance UIDs, kept alongside series for flat addressing
    image_ids = Column(JSON, nullable=False, default=list)
    # Serialized SeriesGroup dicts
    series = Column(JSON, nullable=False, default=list)

    # Copied from the first ingested instance
    study_instance_uid = Column(String(128), index=True)
    series_instance_uid = Column(String(128))
    study_date = Column(String(8))  # YYYYMMDD
    study_description = Column(String(256))
    patient_id = Column(String(64))
    patient_name = Column(String(256))

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (Index("ix_cases_created_at", "created_at"),)

    def to_dict(self) -> dict[str, Any]:
        return {
            "case_id": self.case_id,
            "title": self.title,
            "description": self.description,
            "modality": self.modality,
            "anatomy": self.anatomy,
            "diagnosis": self.diagnosis,
            "findings": self.findings,
            "tags": self.tags or [],
            "image_ids": self.image_ids or [],
            "series": self.series or [],
            "study_instance_uid": self.study_instance_uid,
            "series_instance_uid": self.series_instance_uid,
            "study_date": self.study_date,
            "study_description": self.study_description,
            "patient_id": self.patient_id,
            "patient_name": self.patient_name,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
