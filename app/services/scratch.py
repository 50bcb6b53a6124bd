"""Scratch files backing the DICOM parser's random-access reads."""

import logging
import os
import shutil
import tempfile
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from app.services.ingest_errors import ScratchResourceError

logger = logging.getLogger(__name__)

SCRATCH_DIR = os.getenv("DICOM_SCRATCH_DIR", os.path.join(tempfile.gettempdir(), "dicom"))
RELEASE_ATTEMPTS = 3


@contextmanager
def scratch_file(data: bytes, scratch_dir: str | Path | None = None) -> Iterator[Path]:
    """
    Write bytes to a per-call scratch file and yield its path.

    Layout is ``{scratch_dir}/{uuid}/instance.dcm``. The per-call directory is
    removed on exit, whatever the body did. Cleanup failures are logged and
    never replace the body's own exception.

    Raises:
        ScratchResourceError: If the directory or file cannot be written
    """
    parent = Path(scratch_dir or SCRATCH_DIR)
    session_dir = parent / uuid.uuid4().hex

    try:
        session_dir.mkdir(parents=True, exist_ok=False)
        path = session_dir / "instance.dcm"
        path.write_bytes(data)
    except OSError as e:
        _release(session_dir)
        raise ScratchResourceError(f"Cannot write scratch file under {parent}: {e}") from e

    try:
        yield path
    finally:
        _release(session_dir)


@retry(
    stop=stop_after_attempt(RELEASE_ATTEMPTS),
    wait=wait_exponential(multiplier=0.05, max=0.5),
    retry=retry_if_exception_type(OSError),
    reraise=True,
)
def _remove_tree(session_dir: Path) -> None:
    shutil.rmtree(session_dir)


def _release(session_dir: Path) -> None:
    if not session_dir.exists():
        return
    try:
        _remove_tree(session_dir)
    except OSError as e:
        logger.warning(f"Failed to remove scratch directory {session_dir}: {e}")
