"""Progress values emitted while an item moves through the pipeline.

These are plain validated values handed to a progress sink (any callable taking
the value). They are never persisted and never drive control flow; the item
store status is the only source of truth.
"""

from typing import Callable, Optional
from pydantic import BaseModel, Field

from .models import ProcessingStatus


class ProcessingProgress(BaseModel):
    """Overall progress of one pipeline run (0-100)."""

    stage: str
    percent: float = Field(ge=0.0, le=100.0)
    media_id: Optional[str] = None
    error: Optional[str] = None


class TranscriptionProgress(BaseModel):
    """Progress reported by a transcription engine within its own stage.

    ``fraction`` runs 0.0-1.0 across the whole transcription stage; the pipeline
    scales it into its overall range.
    """

    phase: ProcessingStatus
    fraction: float = Field(default=0.0, ge=0.0, le=1.0)
    message: Optional[str] = None


ProgressSink = Callable[[ProcessingProgress], None]
TranscriptionProgressSink = Callable[[TranscriptionProgress], None]
