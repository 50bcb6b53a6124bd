"""
Radiology Teaching Files Service

Turns DICOM uploads into teaching cases: every instance found in an upload
(single object, multi-frame object, or concatenated objects) is extracted,
grouped into series and attached to the case record.
"""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.database import engine, init_db
from app.routers import cases
from app.services.ingest_config import load_ingest_settings

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create database tables on startup."""
    await init_db()

    settings = load_ingest_settings()
    logger.info(
        f"Ingest ready (scratch_dir={settings.scratch_dir}, "
        f"fallback_enabled={settings.fallback_enabled})"
    )

    yield

    await engine.dispose()


app = FastAPI(
    title="Radiology Teaching Files",
    description=(
        "Teaching case API. Ingests DICOM uploads, extracts instance metadata "
        "and groups instances into series."
    ),
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Teaching Cases ─────────────────────────────────────────────────
app.include_router(cases.router, prefix="/api", tags=["Cases"])


@app.get("/health", tags=["Health"])
async def health_check():
    return {"status": "healthy", "service": "radiology-teaching-files"}
