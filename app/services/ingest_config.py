"""Configuration loading for study ingestion."""

import logging
import os
from dataclasses import dataclass

from app.services import scratch

logger = logging.getLogger(__name__)

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class IngestSettings:
    """
    Knobs for the study processor.

    fallback_enabled trades correctness for availability: when True an
    unreadable upload still yields one placeholder record, when False it
    raises IngestError.
    """

    scratch_dir: str | None = None
    fallback_enabled: bool = True
    default_modality: str = "CT"


def _parse_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default

    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False

    logger.warning(f"Ignoring invalid boolean {name}={raw!r}, using {default}")
    return default


def load_ingest_settings() -> IngestSettings:
    """
    Load ingestion settings from environment variables.

    Variables:
        DICOM_SCRATCH_DIR: Parent directory for per-call scratch files
        INGEST_FALLBACK_ENABLED: Return a placeholder record for unreadable uploads
        INGEST_DEFAULT_MODALITY: Modality of the placeholder record without a hint
    """
    settings = IngestSettings(
        scratch_dir=os.getenv("DICOM_SCRATCH_DIR", scratch.SCRATCH_DIR),
        fallback_enabled=_parse_bool("INGEST_FALLBACK_ENABLED", True),
        default_modality=os.getenv("INGEST_DEFAULT_MODALITY", "CT").strip() or "CT",
    )
    logger.debug(
        f"Loaded ingest settings: scratch_dir={settings.scratch_dir}, "
        f"fallback_enabled={settings.fallback_enabled}, "
        f"default_modality={settings.default_modality}"
    )
    return settings
