"""Test fixtures for the Radiology Teaching Files service."""

import os
from contextlib import asynccontextmanager

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Set default test directories before importing app modules
# This ensures module-level constants pick up the test values
os.environ.setdefault("DICOM_STORAGE_DIR", "/tmp/test_teaching_storage")
os.environ.setdefault("DICOM_SCRATCH_DIR", "/tmp/test_teaching_scratch")

from app.database import get_db, init_db
from app.routers import cases
from app.services.ingest_config import IngestSettings
from tests.fixtures.factories import DicomFactory


@pytest.fixture
def scratch_dir(tmp_path, monkeypatch):
    """Isolated scratch parent directory, also exported through the environment."""
    path = tmp_path / "scratch"
    path.mkdir()

    import app.services.scratch as scratch

    monkeypatch.setattr(scratch, "SCRATCH_DIR", str(path))
    monkeypatch.setenv("DICOM_SCRATCH_DIR", str(path))
    return path


@pytest.fixture
def ingest_settings(scratch_dir):
    """Ingest settings pointing at the isolated scratch directory."""
    return IngestSettings(scratch_dir=str(scratch_dir), fallback_enabled=True, default_modality="CT")


@pytest.fixture
def storage_dir(tmp_path, monkeypatch):
    """Isolated upload storage directory."""
    path = tmp_path / "storage"
    path.mkdir()

    import app.services.dicom_engine as dicom_engine

    monkeypatch.setattr(dicom_engine, "STORAGE_DIR", str(path))
    monkeypatch.setenv("DICOM_STORAGE_DIR", str(path))
    return path


@pytest.fixture
def client(tmp_path, scratch_dir, storage_dir):
    """Create a TestClient with a temporary SQLite database."""

    db_path = tmp_path / "test.db"
    test_engine = create_async_engine(
        f"sqlite+aiosqlite:///{db_path}", connect_args={"check_same_thread": False}
    )
    TestSessionLocal = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)

    async def override_get_db():
        async with TestSessionLocal() as session:
            yield session

    @asynccontextmanager
    async def test_lifespan(app: FastAPI):
        await init_db(test_engine)
        yield
        await test_engine.dispose()

    test_app = FastAPI(lifespan=test_lifespan)
    test_app.include_router(cases.router, prefix="/api", tags=["Cases"])

    @test_app.get("/health", tags=["Health"])
    async def health_check():
        return {"status": "healthy", "service": "radiology-teaching-files"}

    test_app.dependency_overrides[get_db] = override_get_db

    with TestClient(test_app) as test_client:
        yield test_client


# ── DICOM Fixture Helpers ──────────────────────────────────────


@pytest.fixture
def sample_ct_dicom():
    """Returns CT DICOM bytes (minimal, no pixels)."""
    return DicomFactory.create_ct_image(
        patient_id="FIXTURE-CT-001",
        patient_name="Fixture^CT",
    )


@pytest.fixture
def sample_ct_with_pixels():
    """Returns CT DICOM bytes with pixel data."""
    return DicomFactory.create_ct_image(
        patient_id="FIXTURE-CT-002",
        patient_name="Fixture^CTPixels",
        with_pixel_data=True,
    )


@pytest.fixture
def sample_multiframe_dicom():
    """Returns 4-frame CT DICOM bytes."""
    return DicomFactory.create_multiframe_ct(
        patient_id="FIXTURE-MULTI-001",
        num_frames=4,
        with_pixel_data=True,
    )


@pytest.fixture
def invalid_dicom_missing_sop():
    """Returns DICOM missing SOPInstanceUID."""
    return DicomFactory.create_invalid_dicom(missing_tags=["SOPInstanceUID"])


@pytest.fixture
def invalid_dicom_missing_study():
    """Returns DICOM missing StudyInstanceUID."""
    return DicomFactory.create_invalid_dicom(missing_tags=["StudyInstanceUID"])
