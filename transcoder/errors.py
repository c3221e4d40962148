"""Exception taxonomy for the transcoding pipeline."""
from enum import Enum
from typing import Optional


class FailureReason(str, Enum):
    UNSUPPORTED_FORMAT = "unsupported_format"
    OUT_OF_MEMORY = "out_of_memory"
    CORRUPT_INPUT = "corrupt_input"
    DIMENSION_TOO_LARGE = "dimension_too_large"
    UNKNOWN = "unknown"


class TranscoderError(Exception):
    """Base class for all pipeline errors."""


class ValidationError(TranscoderError):
    """Bad options or input, rejected before scheduling. Not retryable as-is."""


class CodecError(TranscoderError):
    """The codec failed on one item. Retryable."""

    def __init__(self, reason: FailureReason, message: Optional[str] = None):
        self.reason = FailureReason(reason)
        self.message = message
        super().__init__(f"{self.reason.value}: {message}" if message else self.reason.value)


class ItemCancelledError(TranscoderError):
    """An item was cancelled while processing; it goes back to pending."""


class ResourceError(TranscoderError):
    """Preview handle bookkeeping is inconsistent (unknown or already released handle)."""


class StateTransitionError(TranscoderError):
    """A work item was asked to make a move its lifecycle does not allow."""


class ArchiveError(TranscoderError):
    """Packaging the export archive failed as a whole."""


class NothingToExportError(ArchiveError):
    """No selected item had output bytes to pack."""
