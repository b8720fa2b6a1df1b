"""Error types shared across the ingestion pipeline.

All errors inherit from MipError for easy catching at background boundaries.
"""


class MipError(Exception):
    """Base exception for ingestion pipeline failures."""
    pass


class OperationCancelled(MipError):
    """Raised at a cancellation checkpoint once a token has been cancelled."""

    def __init__(self, message: str = "Operation cancelled"):
        super().__init__(message)


class TranscriptionError(MipError):
    """Raised by a transcription engine; ``retryable`` marks transient causes."""

    def __init__(self, message: str, retryable: bool = False):
        self.message = message
        self.retryable = retryable
        super().__init__(message)


class StoreError(MipError):
    """Raised when the item store cannot complete a read or write."""
    pass
