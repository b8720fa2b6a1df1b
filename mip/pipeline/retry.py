import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Type, TypeVar

from mip.domain.cancellation import CancellationToken
from mip.domain.errors import OperationCancelled

T = TypeVar("T")

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry loop with a fixed (or optionally growing) delay.

    ``max_attempts`` counts the first call; ``delay_s`` is slept between
    attempts on the cancellation token, so a cancelled wait aborts the loop
    with OperationCancelled instead of burning the remaining budget.
    """

    max_attempts: int = 3
    delay_s: float = 0.5
    backoff: float = 1.0
    max_delay_s: Optional[float] = None
    retry_on: Tuple[Type[BaseException], ...] = (Exception,)
    should_retry: Optional[Callable[[BaseException], bool]] = None

    def delay_for(self, attempt: int) -> float:
        """Delay after the given 1-based failed attempt."""
        delay = self.delay_s * (self.backoff ** (attempt - 1))
        if self.max_delay_s is not None:
            delay = min(delay, self.max_delay_s)
        return delay

    def call(
        self,
        func: Callable[[], T],
        token: Optional[CancellationToken] = None,
        on_retry: Optional[Callable[[BaseException, int, float], None]] = None,
    ) -> T:
        attempt = 0
        while True:
            attempt += 1
            if token is not None:
                token.raise_if_cancelled()
            try:
                return func()
            except OperationCancelled:
                raise
            except self.retry_on as exc:
                if attempt >= self.max_attempts:
                    raise
                if self.should_retry is not None and not self.should_retry(exc):
                    raise
                delay = self.delay_for(attempt)
                if on_retry is not None:
                    on_retry(exc, attempt, delay)
                else:
                    _logger.debug(f"Retry {attempt}/{self.max_attempts} in {delay:.2f}s after: {exc}")
                if token is not None:
                    if token.wait(delay):
                        raise OperationCancelled(token.reason or "Retry wait cancelled")
                elif delay > 0:
                    time.sleep(delay)
