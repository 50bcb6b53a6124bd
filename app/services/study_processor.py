"""
Study processor: tiered ingestion of an uploaded DICOM buffer.

State machine:
- DIRECT_PARSE → MULTI_FRAME_CHECK (buffer is one readable object)
- DIRECT_PARSE → PART_PROBE (not readable as one object)
  (a buffer holding more than one candidate part boundary goes straight to
  PART_PROBE without a direct read attempt)
- MULTI_FRAME_CHECK → DONE (frames expanded, or the single record passed through)
- PART_PROBE → ENHANCED_DETECTION_MERGE (at least one embedded part extracted)
- PART_PROBE → LENIENT_PARSE (no boundary found, or every part failed)
- ENHANCED_DETECTION_MERGE → DONE (per-part frames + supplementary strategies, deduplicated)
- LENIENT_PARSE → MULTI_FRAME_CHECK (bare dataset read with force)
- LENIENT_PARSE → FALLBACK (still unreadable)
- FALLBACK → DONE (placeholder record, or IngestError when fallback is disabled)
"""

import logging
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from app.models.metadata import ExtractedInstance, InstanceMetadata
from app.services.dicom_engine import extract_instance
from app.services.ingest_config import IngestSettings, load_ingest_settings
from app.services.ingest_errors import (
    ExtractError,
    IngestError,
    InvalidTransition,
    MalformedStream,
)
from app.services.multiframe import expand_frames
from app.services.part_probe import ProbedPart, find_part_boundaries, probe_parts
from app.services.series_aggregator import deduplicate_instances

logger = logging.getLogger(__name__)

FALLBACK_UID_PREFIX = "unknown"

# Extra detection passes run after part probing: (buffer, probed parts) -> records
SupplementaryStrategy = Callable[[bytes, list[ProbedPart]], list[InstanceMetadata]]


class IngestState(str, Enum):
    DIRECT_PARSE = "DIRECT_PARSE"
    MULTI_FRAME_CHECK = "MULTI_FRAME_CHECK"
    PART_PROBE = "PART_PROBE"
    ENHANCED_DETECTION_MERGE = "ENHANCED_DETECTION_MERGE"
    LENIENT_PARSE = "LENIENT_PARSE"
    FALLBACK = "FALLBACK"
    DONE = "DONE"


VALID_TRANSITIONS: dict[IngestState, frozenset[IngestState]] = {
    IngestState.DIRECT_PARSE: frozenset(
        {IngestState.MULTI_FRAME_CHECK, IngestState.PART_PROBE}
    ),
    IngestState.MULTI_FRAME_CHECK: frozenset({IngestState.DONE}),
    IngestState.PART_PROBE: frozenset(
        {IngestState.ENHANCED_DETECTION_MERGE, IngestState.LENIENT_PARSE}
    ),
    IngestState.ENHANCED_DETECTION_MERGE: frozenset({IngestState.DONE}),
    IngestState.LENIENT_PARSE: frozenset(
        {IngestState.MULTI_FRAME_CHECK, IngestState.FALLBACK}
    ),
    IngestState.FALLBACK: frozenset({IngestState.DONE}),
    IngestState.DONE: frozenset(),
}


def validate_transition(current_state: IngestState, new_state: IngestState) -> None:
    """
    Raises:
        InvalidTransition: If new_state is not reachable from current_state
    """
    if new_state not in VALID_TRANSITIONS[current_state]:
        raise InvalidTransition(
            f"Invalid ingest transition: {current_state.value} → {new_state.value}"
        )


def build_fallback_metadata(
    modality_hint: str | None = None,
    default_modality: str = "CT",
) -> InstanceMetadata:
    """
    Placeholder record for an upload no tier could read.

    UIDs live under the ``unknown.`` namespace and carry a per-call token,
    so two unreadable uploads never share an instance UID.
    """
    study_uid = f"{FALLBACK_UID_PREFIX}.{uuid.uuid4().int}"
    series_uid = f"{study_uid}.1"
    modality = (modality_hint or "").strip() or default_modality

    return InstanceMetadata(
        sop_instance_uid=f"{series_uid}.1",
        study_instance_uid=study_uid,
        series_instance_uid=series_uid,
        modality=modality,
        patient_name="Unknown Patient",
        patient_id="Unknown ID",
        study_date=datetime.now(timezone.utc).strftime("%Y%m%d"),
        study_description="Unknown Study",
        series_description="Unknown Series",
        instance_number=1,
    )


def is_fallback_metadata(metadata: InstanceMetadata) -> bool:
    return metadata.sop_instance_uid.startswith(f"{FALLBACK_UID_PREFIX}.")


@dataclass
class _IngestContext:
    data: bytes
    modality_hint: str | None
    extracted: ExtractedInstance | None = None
    parts: list[ProbedPart] = field(default_factory=list)
    records: list[InstanceMetadata] = field(default_factory=list)
    last_error: Exception | None = None


class StudyProcessor:
    """
    Turns an uploaded buffer into a non-empty list of instance records.

    Each call is independent; ``last_trace`` keeps the states visited by the
    most recent call so the chosen tier can be inspected.
    """

    def __init__(
        self,
        settings: IngestSettings | None = None,
        supplementary_strategies: Sequence[SupplementaryStrategy] = (),
    ):
        self.settings = settings or load_ingest_settings()
        self.supplementary_strategies = list(supplementary_strategies)
        self.last_trace: list[IngestState] = []
        self._handlers = {
            IngestState.DIRECT_PARSE: self._direct_parse,
            IngestState.MULTI_FRAME_CHECK: self._multi_frame_check,
            IngestState.PART_PROBE: self._part_probe,
            IngestState.ENHANCED_DETECTION_MERGE: self._enhanced_detection_merge,
            IngestState.LENIENT_PARSE: self._lenient_parse,
            IngestState.FALLBACK: self._fallback,
        }

    def process(self, data: bytes, modality_hint: str | None = None) -> list[InstanceMetadata]:
        """
        Run the ingestion tiers over one upload.

        Args:
            data: Raw upload bytes
            modality_hint: Caller-supplied modality, used only by the fallback tier

        Returns:
            Non-empty list of InstanceMetadata

        Raises:
            IngestError: Only when every tier fails and fallback is disabled
        """
        ctx = _IngestContext(data=data, modality_hint=modality_hint)
        state = IngestState.DIRECT_PARSE
        self.last_trace = [state]

        while state is not IngestState.DONE:
            new_state = self._handlers[state](ctx)
            validate_transition(state, new_state)
            logger.debug(f"Ingest transition {state.value} → {new_state.value}")
            state = new_state
            self.last_trace.append(state)

        logger.info(
            f"DICOM processing complete via {' → '.join(s.value for s in self.last_trace)}: "
            f"{len(ctx.records)} instance(s)"
        )
        return ctx.records

    # ── Tiers ──────────────────────────────────────────────────────

    def _direct_parse(self, ctx: _IngestContext) -> IngestState:
        boundaries = find_part_boundaries(ctx.data)
        if len(boundaries) > 1:
            ctx.last_error = MalformedStream(
                f"Buffer holds {len(boundaries)} embedded DICOM parts"
            )
            logger.info(f"{ctx.last_error}, probing parts")
            return IngestState.PART_PROBE

        try:
            ctx.extracted = extract_instance(ctx.data, scratch_dir=self.settings.scratch_dir)
        except ExtractError as e:
            ctx.last_error = e
            logger.warning(f"Could not open as a single DICOM object: {e}. Probing parts.")
            return IngestState.PART_PROBE

        logger.info("Opened as single DICOM object")
        return IngestState.MULTI_FRAME_CHECK

    def _multi_frame_check(self, ctx: _IngestContext) -> IngestState:
        ctx.records = expand_frames(ctx.extracted.metadata, ctx.extracted.frame_count)
        return IngestState.DONE

    def _part_probe(self, ctx: _IngestContext) -> IngestState:
        if not find_part_boundaries(ctx.data):
            logger.info("No DICOM parts found, trying lenient extraction")
            return IngestState.LENIENT_PARSE

        ctx.parts = probe_parts(ctx.data, scratch_dir=self.settings.scratch_dir)
        if not ctx.parts:
            logger.error("Failed to extract metadata from any part, trying lenient extraction")
            return IngestState.LENIENT_PARSE

        return IngestState.ENHANCED_DETECTION_MERGE

    def _enhanced_detection_merge(self, ctx: _IngestContext) -> IngestState:
        records = []
        for probed in ctx.parts:
            records.extend(expand_frames(probed.instance.metadata, probed.instance.frame_count))

        for strategy in self.supplementary_strategies:
            name = getattr(strategy, "__name__", repr(strategy))
            try:
                found = strategy(ctx.data, ctx.parts)
            except Exception as e:
                logger.error(f"Supplementary detection {name} failed: {e}")
                continue
            logger.info(f"Supplementary detection {name} reported {len(found)} instance(s)")
            records.extend(found)

        ctx.records = deduplicate_instances(records)
        return IngestState.DONE

    def _lenient_parse(self, ctx: _IngestContext) -> IngestState:
        try:
            ctx.extracted = extract_instance(
                ctx.data, scratch_dir=self.settings.scratch_dir, force=True
            )
        except ExtractError as e:
            ctx.last_error = e
            logger.error(f"Lenient extraction failed: {e}")
            return IngestState.FALLBACK

        logger.info("Extracted metadata from bare dataset")
        return IngestState.MULTI_FRAME_CHECK

    def _fallback(self, ctx: _IngestContext) -> IngestState:
        if not self.settings.fallback_enabled:
            raise IngestError(f"Could not extract DICOM data: {ctx.last_error}")

        ctx.records = [
            build_fallback_metadata(ctx.modality_hint, self.settings.default_modality)
        ]
        logger.warning(
            f"Using placeholder metadata {ctx.records[0].sop_instance_uid} "
            f"for unreadable upload of {len(ctx.data)} bytes"
        )
        return IngestState.DONE


def process_study_data(
    data: bytes,
    modality_hint: str | None = None,
    settings: IngestSettings | None = None,
) -> list[InstanceMetadata]:
    """Run a fresh StudyProcessor over one upload."""
    return StudyProcessor(settings).process(data, modality_hint)
