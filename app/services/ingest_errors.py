"""Errors raised by the study ingestion pipeline."""


class IngestError(Exception):
    """Study ingestion failed and no fallback record was produced."""
    pass


class ExtractError(IngestError):
    """A single extraction attempt failed."""
    pass


class MissingRequiredField(ExtractError):
    """A required UID tag is absent, blank, or unreadable."""

    def __init__(self, tag: str):
        self.tag = tag
        super().__init__(f"Missing required attribute: {tag}")


class MalformedStream(ExtractError):
    """The bytes cannot be read as a DICOM object."""
    pass


class ScratchResourceError(ExtractError):
    """The scratch file backing the parser could not be acquired."""
    pass


class InvalidTransition(IngestError):
    """The ingestion state machine attempted an undeclared transition."""
    pass
