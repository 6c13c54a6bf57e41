"""Exponential backoff shared by inline retries and the work queue."""
from __future__ import annotations

import functools
import random
import time
from dataclasses import dataclass
from typing import Any, Callable, Tuple, Type

from autoapply.log import get_logger

log = get_logger(__name__)

# seams for tests
_clock = time.monotonic
_sleep = time.sleep

# a retry is not started with less time than this left in its budget
MIN_ATTEMPT_SECONDS = 1.0


@dataclass(frozen=True)
class Backoff:
    base: float = 1.0
    factor: float = 2.0
    cap: float = 30.0
    jitter: bool = True

    def delay(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number *attempt* (1-based)."""
        seconds = min(self.base * self.factor ** max(attempt - 1, 0), self.cap)
        if self.jitter:
            seconds *= 0.5 + random.random()
        return seconds


def backoff_delay(attempt: int, *, base_delay: float = 1.0, max_delay: float = 30.0, jitter: bool = True) -> float:
    return Backoff(base=base_delay, cap=max_delay, jitter=jitter).delay(attempt)


def retry(
    *,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    retryable: Tuple[Type[BaseException], ...] = (Exception,),
    budget: str | None = None,
) -> Callable:
    """Retry the wrapped call in-process; the last failure propagates.

    Used around single network calls (SMTP, the AI service). Work that can
    wait longer goes through the queue, which applies the same curve.

    ``budget`` names a keyword argument holding a timeout in seconds. That
    timeout then bounds the whole call: each retry is passed what is left of
    it, and no retry starts once less than MIN_ATTEMPT_SECONDS would remain.
    """
    policy = Backoff(base=base_delay, cap=max_delay)

    def decorator(fn: Callable) -> Callable:
        @functools.wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            deadline = None
            if budget is not None and kwargs.get(budget) is not None:
                deadline = _clock() + float(kwargs[budget])
            attempt = 1
            while True:
                try:
                    return fn(*args, **kwargs)
                except retryable as exc:
                    wait = policy.delay(attempt)
                    out_of_time = deadline is not None and deadline - _clock() - wait < MIN_ATTEMPT_SECONDS
                    if attempt >= max_attempts or out_of_time:
                        log.error("%s gave up after %d attempts: %s", fn.__qualname__, attempt, exc)
                        raise
                    log.warning(
                        "%s attempt %d/%d failed (%s), retrying in %.1fs",
                        fn.__qualname__, attempt, max_attempts, exc, wait,
                    )
                    _sleep(wait)
                    if deadline is not None:
                        kwargs[budget] = deadline - _clock()
                    attempt += 1

        return wrapper

    return decorator
