"""
packages/common/resilience.py

Concurrency & retry primitives shared by the services:
- Retries with exponential backoff + jitter, limited to chosen exception types
- Keyed locks (one lock per key, dropped once nobody holds or waits on it)
"""

from __future__ import annotations

import functools
import logging
import random
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Dict, Hashable, Iterator, List, Optional, Tuple, Type, TypeVar, ParamSpec

P = ParamSpec("P")
R = TypeVar("R")

log = logging.getLogger(__name__)


@dataclass
class RetryConfig:
    """Configuration for the retry decorator with exponential backoff.

    Attributes:
        attempts: Maximum number of attempts (including the first try).
        base_delay: Initial delay between retries (seconds).
        max_delay: Upper bound for delay (seconds).
        jitter: Proportional jitter (0..1) added/subtracted to delay.
        retry_on: Exception types that trigger another attempt; anything else propagates.
    """
    attempts: int = 3
    base_delay: float = 0.05  # seconds
    max_delay: float = 1.0
    jitter: float = 0.25  # 0..1 proportion added/subtracted
    retry_on: Tuple[Type[BaseException], ...] = field(default=(Exception,))


def retry(config: RetryConfig) -> Callable[[Callable[P, R]], Callable[P, R]]:
    """Retry a function on the configured exceptions with exponential backoff + jitter.

    Args:
        config: RetryConfig parameters.

    Returns:
        A decorator that wraps the function with retry logic. After the final attempt
        the last exception is re-raised unchanged.
    """
    def deco(fn: Callable[P, R]) -> Callable[P, R]:
        """Decorator applying retry policy to `fn`."""
        @functools.wraps(fn)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            """Invoke `fn` with retries according to `config`."""
            delay = config.base_delay
            for attempt in range(1, config.attempts + 1):
                try:
                    return fn(*args, **kwargs)
                except config.retry_on as e:
                    if attempt == config.attempts:
                        raise
                    log.debug("retrying %s after %s (attempt %d/%d)", getattr(fn, "__name__", fn), type(e).__name__, attempt, config.attempts)
                    # full jitter around delay
                    j = delay * config.jitter
                    time.sleep(max(0.0, delay + random.uniform(-j, j)))
                    delay = min(config.max_delay, delay * 2.0)
            raise RuntimeError("retry called with attempts < 1")
        return wrapper
    return deco


class KeyedLocks:
    """A map of re-entrant locks, one per key, living only while someone holds or waits on them.

    Each entry counts its holders and waiters; the entry is dropped when the count
    returns to zero, so the map only contains keys that are currently in use.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, List] = {}  # key -> [RLock, users]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def _checkout(self, key: Hashable) -> threading.RLock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.RLock(), 0]
            entry[1] += 1
            return entry[0]

    def _checkin(self, key: Hashable) -> None:
        with self._guard:
            entry = self._locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, key: Hashable, timeout: Optional[float] = None) -> Iterator[None]:
        """Hold the lock for `key`; raises TimeoutError if it cannot be taken in time."""
        lock = self._checkout(key)
        try:
            if not lock.acquire(timeout=-1 if timeout is None else timeout):
                raise TimeoutError(f"could not acquire lock for {key!r}")
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(key)
