"""Bounded retry and polling helpers for payment provider calls."""
from __future__ import annotations

import logging
import time
from typing import Callable, Optional, Tuple, Type, TypeVar

from .exceptions import ProviderUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def call_with_retry(
    func: Callable[[], T],
    *,
    operation: str,
    max_attempts: int = 2,
    backoff_seconds: float = 0.5,
    retry_on: Tuple[Type[BaseException], ...] = (ProviderUnavailableError,),
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Invoke ``func``, retrying only on network-class failures.

    Declines and other provider errors are raised immediately. Charges must not
    be routed through this helper.
    """

    attempts = max(1, max_attempts)
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except retry_on as exc:
            if attempt >= attempts:
                raise
            logger.warning(
                "Retrying provider call after network failure",
                extra={"provider_operation": operation, "attempt": attempt, "error": str(exc)},
            )
            if backoff_seconds:
                sleep(backoff_seconds * attempt)
    raise RuntimeError("unreachable")  # pragma: no cover


def poll_until(
    check: Callable[[], Optional[T]],
    *,
    timeout: float,
    interval: float,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> Optional[T]:
    """Poll ``check`` until it returns a value or ``timeout`` seconds elapse.

    Returns the first non-``None`` result, or ``None`` on timeout. ``check`` is
    always called at least once.
    """

    deadline = clock() + max(timeout, 0.0)
    while True:
        result = check()
        if result is not None:
            return result
        remaining = deadline - clock()
        if remaining <= 0:
            return None
        sleep(min(interval, remaining))


__all__ = ["call_with_retry", "poll_until"]
