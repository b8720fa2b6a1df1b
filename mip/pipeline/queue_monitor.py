import logging
import threading
from typing import Callable, Optional

from mip.domain.cancellation import CancellationToken, linked_token
from mip.domain.contracts import ItemStore
from mip.domain.errors import OperationCancelled
from mip.domain.events import ProgressSink
from mip.domain.models import MediaItem, ProcessingStatus
from mip.pipeline.processing import ProcessingPipeline
from mip.pipeline.retry import RetryPolicy
from mip.pipeline.scheduler import TaskScheduler, Work

PipelineFactory = Callable[[], ProcessingPipeline]

TERMINAL_WRITE_RETRY = RetryPolicy(max_attempts=3, delay_s=0.5)


class QueueMonitor:
    """Polls the item store for queued items and runs each claimed one.

    The conditional ``Queued -> Processing`` update is the only guard against
    double processing: several monitors may share one store, and whoever loses
    the claim skips the item.

    Args:
        store: Shared item store.
        scheduler: Runs each claimed item on its own thread.
        pipeline_factory: Builds a fresh pipeline per item.
        poll_interval_s: Seconds between poll cycles.
        progress_sink: Optional sink receiving every pipeline's progress.
        name: Label used in log lines (useful with several monitors).
    """

    def __init__(
        self,
        store: ItemStore,
        scheduler: TaskScheduler,
        pipeline_factory: PipelineFactory,
        poll_interval_s: float = 10.0,
        progress_sink: Optional[ProgressSink] = None,
        name: str = "monitor",
    ):
        self.store = store
        self.scheduler = scheduler
        self.pipeline_factory = pipeline_factory
        self.poll_interval_s = poll_interval_s
        self.progress_sink = progress_sink
        self.name = name
        self.logger = logging.getLogger(__name__)
        self._thread: Optional[threading.Thread] = None
        self._token: Optional[CancellationToken] = None

    def poll_once(self) -> int:
        """One poll cycle; returns the number of items claimed and submitted."""
        claimed = 0
        for item in self.store.get_items_by_status(ProcessingStatus.QUEUED):
            if self.scheduler.is_tracked(item.id):
                continue
            if not self.store.try_claim(item.id, ProcessingStatus.QUEUED, ProcessingStatus.PROCESSING):
                self.logger.debug(f"CLAIM_SKIP: [{self.name}] {item.id} claimed elsewhere")
                continue
            self.logger.info(f"CLAIM_OK: [{self.name}] {item.id} ({item.file_path.name})")
            if self.scheduler.submit(item.id, self._build_work(item)):
                claimed += 1
                continue
            # Not running it: hand the item back so another cycle can pick it up
            if self.store.try_claim(item.id, ProcessingStatus.PROCESSING, ProcessingStatus.QUEUED):
                self.logger.info(f"CLAIM_RELEASED: [{self.name}] {item.id}")
        return claimed

    def _build_work(self, item: MediaItem) -> Work:
        def work(token: CancellationToken) -> None:
            final_status = ProcessingStatus.FAILED
            try:
                pipeline = self.pipeline_factory()
                if pipeline.initialize(item.file_path, media_id=item.id):
                    final_status = pipeline.run(self.progress_sink, token)
                else:
                    final_status = pipeline.status
            except OperationCancelled:
                final_status = ProcessingStatus.CANCELLED
                raise
            except Exception as e:
                final_status = ProcessingStatus.FAILED
                self.logger.exception(f"PIPELINE_CRASH: {item.id}: {e}")
                raise
            finally:
                if not final_status.is_terminal:
                    final_status = ProcessingStatus.FAILED
                self._write_terminal(item.id, final_status)
        return work

    def _write_terminal(self, media_id: str, status: ProcessingStatus) -> None:
        # Not bound to the task token
        try:
            written = TERMINAL_WRITE_RETRY.call(lambda: self.store.set_status(media_id, status))
        except Exception as e:
            self.logger.error(f"STATUS_WRITE_FAILED: {media_id} -> {status.value}: {e}")
            return
        if written:
            self.logger.info(f"STATUS_FINAL: {media_id} -> {status.value}")
        else:
            self.logger.debug(f"STATUS_FINAL: {media_id} already terminal, {status.value} not applied")

    def run(self, token: CancellationToken) -> None:
        """Poll loop; returns once ``token`` is cancelled."""
        self.logger.info(f"MONITOR_START: [{self.name}] interval={self.poll_interval_s}s")
        while not token.is_cancelled:
            try:
                self.poll_once()
            except Exception as e:
                self.logger.error(f"MONITOR_POLL_ERROR: [{self.name}] {e}", exc_info=True)
            if token.wait(self.poll_interval_s):
                break
        self.logger.info(f"MONITOR_STOP: [{self.name}]")

    def start(self, token: Optional[CancellationToken] = None) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._token = linked_token(token) if token is not None else CancellationToken()
        self._thread = threading.Thread(
            target=self.run, args=(self._token,), name=f"mip-{self.name}", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        if self._token is not None:
            self._token.cancel("Monitor stopped")
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

