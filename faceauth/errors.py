"""
Error taxonomy for the face authentication pipeline.

Exceptions fall into four families:
1. Configuration errors: missing collaborators, invalid parameters,
   capture devices that cannot be opened. Fatal for configure()/start().
2. Per-frame rejections: not exceptions at all once they reach the
   orchestrator, they are reported as RejectionReason values.
3. Session-fatal failures: reported as FailureReason on the Failed state.
4. Data errors: descriptor dimension mismatch, empty descriptors, failed
   decryption. Always raised, never coerced to a default value.
"""

import asyncio
from enum import Enum


class FaceAuthError(Exception):
    """Base class for all face authentication errors."""


class ConfigurationError(FaceAuthError):
    """Invalid parameters or missing/unavailable collaborators."""


class SessionStateError(FaceAuthError):
    """Operation not allowed in the current session state."""


class CaptureError(FaceAuthError):
    """Capture device could not be opened or stopped delivering frames."""


class CapturePermissionError(CaptureError):
    """Access to the capture device was denied."""


class MalformedFrameError(FaceAuthError):
    """The detector was handed input it cannot interpret."""


class ExtractionError(FaceAuthError):
    """The extractor could not produce a descriptor (no face, low quality)."""


class StorageError(FaceAuthError):
    """Identity store read or write failed."""


class NoIdentitiesEnrolledError(FaceAuthError):
    """Authentication requested while the identity store is empty."""


class DataError(FaceAuthError):
    """Descriptor data is unusable. Never recoverable by retrying."""


class DimensionMismatchError(DataError):
    """Two descriptors that must be compared have different lengths."""

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Descriptor dimension mismatch: expected {expected}, got {actual}")


class EmptyDescriptorError(DataError):
    """A descriptor with zero elements was supplied for comparison."""

    def __init__(self, message: str = "Descriptor is empty"):
        super().__init__(message)


class DecryptionError(DataError):
    """Stored ciphertext failed authentication or has an unknown header."""


class FailureReason(str, Enum):
    """Why a session ended in the Failed state."""

    TIMEOUT = "timeout"
    NO_IDENTITIES_ENROLLED = "no_identities_enrolled"
    CAPTURE_UNAVAILABLE = "capture_unavailable"
    PERMISSION_DENIED = "permission_denied"
    CONFIGURATION = "configuration"
    COLLABORATOR_FAILURE = "collaborator_failure"
    DATA_ERROR = "data_error"
    STORAGE_ERROR = "storage_error"


class RejectionReason(str, Enum):
    """Why a single frame did not advance the session."""

    NO_FACE = "no_face"
    MULTIPLE_FACES = "multiple_faces"
    LOW_QUALITY = "low_quality"
    UNSTABLE_FACE = "unstable_face"
    LIVENESS = "liveness"
    EXTRACTION_FAILED = "extraction_failed"
    NOT_RECOGNIZED = "not_recognized"
    AMBIGUOUS_MATCH = "ambiguous_match"
    OPERATION_TIMEOUT = "operation_timeout"
    COLLABORATOR_ERROR = "collaborator_error"
    MALFORMED_FRAME = "malformed_frame"


def classify_failure(exc: BaseException) -> FailureReason:
    """
    Map an exception onto the session failure taxonomy.

    Args:
        exc: The exception raised by a collaborator or pipeline stage.

    Returns:
        The FailureReason the session should carry if the error is fatal.
    """
    if isinstance(exc, CapturePermissionError):
        return FailureReason.PERMISSION_DENIED
    if isinstance(exc, CaptureError):
        return FailureReason.CAPTURE_UNAVAILABLE
    if isinstance(exc, NoIdentitiesEnrolledError):
        return FailureReason.NO_IDENTITIES_ENROLLED
    if isinstance(exc, DataError):
        return FailureReason.DATA_ERROR
    if isinstance(exc, StorageError):
        return FailureReason.STORAGE_ERROR
    if isinstance(exc, ConfigurationError):
        return FailureReason.CONFIGURATION
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
        return FailureReason.TIMEOUT
    return FailureReason.COLLABORATOR_FAILURE
