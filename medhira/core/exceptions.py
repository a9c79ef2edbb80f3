"""
Domain exceptions raised by the services and translated at the route boundary
"""

from typing import Optional

from fastapi import status


class MedhiraError(Exception):
    """Base class for all service errors."""
    pass


class AudioValidationError(MedhiraError):
    """An uploaded audio file was missing, empty, too large or of the wrong type."""

    def __init__(self, message: str, status_code: int = status.HTTP_400_BAD_REQUEST):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class EmptyTranscriptError(MedhiraError, ValueError):
    """Summarization was requested for a blank transcript."""
    pass


class ProviderError(MedhiraError):
    """A transcription or summarization provider failed."""

    def __init__(self, provider: str, message: str):
        super().__init__(f"{provider}: {message}")
        self.provider = provider


class MalformedProviderOutput(ProviderError):
    pass


class PipelineError(MedhiraError):
    """A processing attempt failed; the attempt is terminal."""

    def __init__(self, message: str, partial_transcript: Optional[str] = None):
        super().__init__(message)
        self.partial_transcript = partial_transcript


class InvalidStatusTransition(MedhiraError):
    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot move consultation from '{current}' to '{target}'")
        self.current = current
        self.target = target


class ConsultationBusyError(MedhiraError):
    def __init__(self, consultation_id: str):
        super().__init__(f"Consultation {consultation_id} is already being processed")
        self.consultation_id = consultation_id


class ConsultationNotFound(MedhiraError, KeyError):
    def __init__(self, consultation_id: str):
        super().__init__(consultation_id)
        self.consultation_id = consultation_id

    def __str__(self) -> str:
        return f"Consultation not found: {self.consultation_id}"


class ConcurrentModificationError(MedhiraError):
    def __init__(self, consultation_id: str, expected: int, actual: int):
        super().__init__(
            f"Consultation {consultation_id} was modified concurrently "
            f"(expected version {expected}, found {actual})"
        )
        self.consultation_id = consultation_id
        self.expected = expected
        self.actual = actual


class DuplicateUserError(MedhiraError):
    pass


class DriveExportError(MedhiraError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
