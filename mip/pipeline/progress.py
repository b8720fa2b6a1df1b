import logging
from typing import Callable, Optional

from mip.domain.events import ProcessingProgress, ProgressSink


class ProgressTracker:
    """Forwards pipeline progress to a sink, keeping it monotonic.

    Reports below the highest value seen so far are raised to it, values are
    clamped to 0-100, and a sink that raises is logged and otherwise ignored:
    progress is observability only.
    """

    def __init__(self, sink: Optional[ProgressSink] = None, media_id: Optional[str] = None):
        self._sink = sink
        self._media_id = media_id
        self._percent = 0.0
        self._stage = ""
        self.logger = logging.getLogger(__name__)

    @property
    def percent(self) -> float:
        return self._percent

    @property
    def stage(self) -> str:
        return self._stage

    def report(self, stage: str, percent: float, error: Optional[str] = None) -> None:
        percent = max(self._percent, min(100.0, max(0.0, float(percent))))
        self._percent = percent
        self._stage = stage
        if self._sink is None:
            return
        try:
            self._sink(ProcessingProgress(stage=stage, percent=percent, media_id=self._media_id, error=error))
        except Exception as e:
            self.logger.warning(f"Progress sink failed at {stage} ({percent:.0f}%): {e}")

    def finish(self, stage: str, error: Optional[str] = None) -> None:
        self.report(stage, 100.0, error=error)

    def scaled(self, stage: str, start: float, end: float) -> Callable[[float], None]:
        """Returns a reporter mapping a 0.0-1.0 fraction onto [start, end]."""
        def _report(fraction: float) -> None:
            fraction = min(1.0, max(0.0, fraction))
            self.report(stage, min(end, start + fraction * (end - start)))
        return _report
