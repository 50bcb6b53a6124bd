"""
Teaching Cases API Router

Implements:
- Case listing and retrieval
- Case creation from a base64 DICOM upload
- Adding images from a further upload to an existing case
- Download of the original upload
"""

import logging
import uuid

from fastapi import APIRouter, Depends, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.models.case import TeachingCase
from app.services.case_assembly import add_instances_to_case, build_case
from app.services.dicom_engine import decode_upload, read_upload, store_upload
from app.services.ingest_errors import IngestError
from app.services.study_processor import StudyProcessor

logger = logging.getLogger(__name__)

router = APIRouter()


class CaseUpload(BaseModel):
    """Request body for creating a case."""

    model_config = ConfigDict(populate_by_name=True)

    title: str
    description: str = ""
    modality: str = ""
    anatomy: str = ""
    diagnosis: str = ""
    findings: str = ""
    tags: list[str] = []
    dicom_file: str = Field(alias="dicomFile")


class ImageUpload(BaseModel):
    """Request body for adding images to a case."""

    model_config = ConfigDict(populate_by_name=True)

    dicom_file: str = Field(alias="dicomFile")


def _success(data, status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": True, "data": data})


def _error(status_code: int, message: str, error_code: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": message, "error_code": error_code},
    )


def _store_upload_best_effort(case_id: str, data: bytes, name: str) -> None:
    try:
        path = store_upload(case_id, data, name)
        logger.info(f"Stored upload for case {case_id}: {path}")
    except (OSError, ValueError) as e:
        logger.error(f"Error storing upload for case {case_id}: {e}")


async def _get_case(db: AsyncSession, case_id: str) -> TeachingCase | None:
    result = await db.execute(select(TeachingCase).where(TeachingCase.case_id == case_id))
    return result.scalar_one_or_none()


@router.get("/cases")
async def list_cases(db: AsyncSession = Depends(get_db)):
    """List all cases, newest first."""
    result = await db.execute(select(TeachingCase).order_by(TeachingCase.created_at.desc()))
    return _success([case.to_dict() for case in result.scalars().all()])


@router.get("/cases/{case_id}")
async def get_case(case_id: str, db: AsyncSession = Depends(get_db)):
    """Get a case by id."""
    case = await _get_case(db, case_id)
    if not case:
        logger.error(f"Case not found: {case_id}")
        return _error(404, f"Case not found: {case_id}", "NOT_FOUND")
    return _success(case.to_dict())


@router.post("/cases", status_code=status.HTTP_201_CREATED)
async def create_case(upload: CaseUpload, db: AsyncSession = Depends(get_db)):
    """
    Create a case from a DICOM upload.

    The upload may hold one object, a multi-frame object, or several
    concatenated objects; every instance found is grouped into series.
    """
    try:
        data = decode_upload(upload.dicom_file)
    except ValueError as e:
        logger.error(f"Error decoding upload: {e}")
        return _error(400, str(e), "BAD_REQUEST")

    logger.info(f"Processing new case submission ({len(data)} bytes)")
    try:
        records = StudyProcessor().process(data, upload.modality)
    except IngestError as e:
        return _error(400, f"Invalid DICOM file: {e}", "BAD_REQUEST")

    case_id = str(uuid.uuid4())
    _store_upload_best_effort(case_id, data, "original")

    case = build_case(case_id, upload.model_dump(exclude={"dicom_file"}), records)
    db.add(case)
    await db.commit()
    await db.refresh(case)

    logger.info(f"Created case {case_id} with {len(case.image_ids)} image(s)")
    return _success(case.to_dict(), status_code=201)


@router.post("/cases/{case_id}/images")
async def add_images(case_id: str, upload: ImageUpload, db: AsyncSession = Depends(get_db)):
    """Add the instances of a further upload to an existing case."""
    case = await _get_case(db, case_id)
    if not case:
        logger.error(f"Case not found: {case_id}")
        return _error(404, f"Case not found: {case_id}", "NOT_FOUND")

    try:
        data = decode_upload(upload.dicom_file)
    except ValueError as e:
        logger.error(f"Error decoding upload: {e}")
        return _error(400, str(e), "BAD_REQUEST")

    try:
        records = StudyProcessor().process(data, case.modality)
    except IngestError as e:
        return _error(400, f"Invalid DICOM file: {e}", "BAD_REQUEST")

    _store_upload_best_effort(case_id, data, f"additional_{uuid.uuid4().hex}")

    add_instances_to_case(case, records)
    await db.commit()
    await db.refresh(case)

    return _success(case.to_dict())


@router.get("/cases/{case_id}/dicom")
async def download_original(case_id: str, db: AsyncSession = Depends(get_db)):
    """Download the upload a case was created from."""
    case = await _get_case(db, case_id)
    if not case:
        return _error(404, f"Case not found: {case_id}", "NOT_FOUND")

    try:
        data = read_upload(case_id, "original")
    except (FileNotFoundError, ValueError):
        return _error(404, f"No DICOM file stored for case {case_id}", "NOT_FOUND")

    return Response(content=data, media_type="application/dicom")
