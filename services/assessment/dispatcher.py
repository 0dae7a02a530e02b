"""Background grading dispatch.

Grading after submit/timeout runs on a bounded thread pool so the request that
triggered it returns immediately. Each task retries transient failures and logs the
final outcome; nothing is left as an unobserved detached thread.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Callable, Optional, Set, Tuple, Type

from packages.common.resilience import RetryConfig, retry

from .errors import StaleAttemptError

log = logging.getLogger(__name__)

TRANSIENT_ERRORS: Tuple[Type[BaseException], ...] = (StaleAttemptError, TimeoutError, ConnectionError)


class GradingDispatcher:
    """Runs `grade_fn(attempt_id)` on a worker pool."""

    def __init__(
        self,
        grade_fn: Callable[[int], Any],
        workers: int = 4,
        retries: int = 3,
        retry_on: Tuple[Type[BaseException], ...] = TRANSIENT_ERRORS,
    ) -> None:
        self._grade = retry(RetryConfig(attempts=retries, base_delay=0.05, retry_on=retry_on))(grade_fn)
        self._pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="grading")
        self._lock = threading.Lock()
        self._pending: Set[Future] = set()

    def dispatch(self, attempt_id: int) -> Future:
        """Queue grading for `attempt_id` and return its future."""
        fut = self._pool.submit(self._run, attempt_id)
        with self._lock:
            self._pending.add(fut)
        fut.add_done_callback(self._forget)
        return fut

    def _run(self, attempt_id: int) -> Any:
        try:
            return self._grade(attempt_id)
        except Exception:
            log.exception("background grading failed", extra={"attempt_id": attempt_id})
            raise

    def _forget(self, fut: Future) -> None:
        with self._lock:
            self._pending.discard(fut)

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait for every queued task; True if all finished within `timeout`."""
        with self._lock:
            snapshot = list(self._pending)
        _, not_done = wait(snapshot, timeout=timeout)
        return not not_done

    def shutdown(self, wait_for_tasks: bool = True) -> None:
        self._pool.shutdown(wait=wait_for_tasks)
