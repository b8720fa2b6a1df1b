"""Background task scheduler.

Every submitted unit of work runs on its own daemon thread and receives a
cancellation token linked to both the scheduler-wide shutdown token and a
per-task token. Tracking entries are removed when the work returns, raises or
is cancelled.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional

from mip.domain.cancellation import CancellationToken, linked_token
from mip.domain.errors import OperationCancelled

Work = Callable[[CancellationToken], None]


class TaskState(str, Enum):
    REGISTERED = "registered"
    RUNNING = "running"
    COMPLETED = "completed"
    FAULTED = "faulted"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskState.COMPLETED, TaskState.FAULTED, TaskState.CANCELLED)


@dataclass
class TrackedTask:
    task_id: str
    cancel_token: CancellationToken
    token: CancellationToken
    thread: Optional[threading.Thread] = None
    state: TaskState = TaskState.REGISTERED
    error: Optional[BaseException] = None
    created_at: datetime = field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None

    def transition(self, new_state: TaskState) -> None:
        if self.state.is_terminal:
            raise RuntimeError(f"Task {self.task_id} already {self.state.value}")
        self.state = new_state
        if new_state.is_terminal:
            self.finished_at = datetime.now()


class TaskScheduler:
    """Tracks named background tasks with cooperative cancellation.

    Args:
        on_finished: Optional callback invoked with the TrackedTask after it
            reaches a terminal state, just before it leaves tracking.
    """

    def __init__(self, on_finished: Optional[Callable[[TrackedTask], None]] = None):
        self._tasks: Dict[str, TrackedTask] = {}
        self._cond = threading.Condition()
        self._shutdown_token = CancellationToken()
        self._shutting_down = False
        self._on_finished = on_finished
        self.logger = logging.getLogger(__name__)

    @property
    def shutdown_token(self) -> CancellationToken:
        return self._shutdown_token

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down

    def submit(self, task_id: str, work: Work) -> bool:
        """Starts ``work`` on its own thread unless ``task_id`` is already tracked."""
        with self._cond:
            if self._shutting_down:
                self.logger.warning(f"TASK_REJECTED: {task_id} (scheduler shutting down)")
                return False
            if task_id in self._tasks:
                self.logger.info(f"TASK_DUPLICATE: {task_id} already running, ignoring submit")
                return False
            cancel_token = CancellationToken()
            task = TrackedTask(
                task_id=task_id,
                cancel_token=cancel_token,
                token=linked_token(self._shutdown_token, cancel_token),
            )
            task.thread = threading.Thread(
                target=self._run,
                args=(task, work),
                name=f"mip-task-{task_id[:8]}",
                daemon=True,
            )
            self._tasks[task_id] = task
            task.thread.start()
        self.logger.debug(f"TASK_SUBMITTED: {task_id}")
        return True

    def _run(self, task: TrackedTask, work: Work) -> None:
        task.transition(TaskState.RUNNING)
        self.logger.info(f"TASK_START: {task.task_id}")
        try:
            work(task.token)
            task.transition(TaskState.COMPLETED)
        except OperationCancelled as e:
            task.error = e
            task.transition(TaskState.CANCELLED)
        except Exception as e:
            task.error = e
            task.transition(TaskState.FAULTED)
            self.logger.exception(f"TASK_FAULTED: {task.task_id}: {e}")
        finally:
            if not task.state.is_terminal:
                task.transition(TaskState.FAULTED)
            task.token.close()
            self.logger.info(f"TASK_END: {task.task_id} state={task.state.value}")
            if self._on_finished is not None:
                try:
                    self._on_finished(task)
                except Exception as e:
                    self.logger.warning(f"on_finished callback failed for {task.task_id}: {e}")
            with self._cond:
                if self._tasks.get(task.task_id) is task:
                    del self._tasks[task.task_id]
                self._cond.notify_all()

    def cancel(self, task_id: str, reason: str = "Task cancelled") -> bool:
        """Cancels one task without affecting the others."""
        with self._cond:
            task = self._tasks.get(task_id)
        if task is None:
            return False
        self.logger.info(f"TASK_CANCEL: {task_id}")
        task.cancel_token.cancel(reason)
        return True

    def is_tracked(self, task_id: str) -> bool:
        with self._cond:
            return task_id in self._tasks

    def active_ids(self) -> List[str]:
        with self._cond:
            return list(self._tasks)

    def __len__(self) -> int:
        with self._cond:
            return len(self._tasks)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Blocks until no task is tracked; returns False on timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while self._tasks:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._cond.wait(remaining)
            return True

    def shutdown(self, timeout: float = 30.0) -> bool:
        """Cancels every task and waits up to ``timeout`` seconds for them.

        Returns True when all tasks finished in time. Stragglers are logged and
        left running; daemon threads do not block interpreter exit.
        """
        with self._cond:
            self._shutting_down = True
            pending = len(self._tasks)
        self.logger.info(f"SCHEDULER_SHUTDOWN: cancelling {pending} task(s), timeout={timeout}s")
        self._shutdown_token.cancel("Shutdown requested")
        graceful = self.wait_idle(timeout)
        if not graceful:
            self.logger.warning(
                f"SCHEDULER_SHUTDOWN: tasks still running after {timeout}s: {', '.join(self.active_ids())}"
            )
        else:
            self.logger.info("SCHEDULER_SHUTDOWN: all tasks finished")
        return graceful
