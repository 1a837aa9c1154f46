"""
Bounded retry with exponential backoff.
Waits 2**attempt * base_delay between attempts (2s, 4s, 8s with the default base).
"""

import logging
import time
from typing import Callable, TypeVar

from automator.core.constants import MAX_RETRIES, RETRY_BASE_DELAY_SEC, ErrorCode
from automator.core.error_codes import JobError, RetryExhausted, AttemptRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, base_delay: float = RETRY_BASE_DELAY_SEC) -> float:
    """Delay before the retry that follows failed attempt number `attempt` (0-based)."""
    return (2 ** attempt) * base_delay


def with_retry(operation: Callable[[], T],
               max_attempts: int = MAX_RETRIES,
               base_delay: float = RETRY_BASE_DELAY_SEC,
               sleep: Callable[[float], object] = time.sleep,
               retry_on: tuple[type[BaseException], ...] = (JobError,),
               on_retry: Callable[[AttemptRecord], None] | None = None,
               label: str = "operation") -> T:
    """
    Run `operation` up to `max_attempts` times.

    Only exceptions in `retry_on` count as failures; anything else propagates
    immediately. A JobError that is explicitly non-retryable ends the loop
    early. When every attempt fails, RetryExhausted is raised with the full
    attempt history. The policy never swallows a terminal failure.
    """
    attempts: list[AttemptRecord] = []
    max_attempts = max(1, max_attempts)

    for attempt in range(max_attempts):
        try:
            return operation()
        except retry_on as e:
            code = e.code if isinstance(e, JobError) else ErrorCode.UNEXPECTED
            message = e.message if isinstance(e, JobError) else f"{type(e).__name__}: {e}"
            last_attempt = attempt + 1 >= max_attempts
            give_up = isinstance(e, JobError) and not e.retryable

            delay = 0.0 if (last_attempt or give_up) else backoff_delay(attempt, base_delay)
            record = AttemptRecord(attempt=attempt, code=code, message=message, delay_sec=delay)
            attempts.append(record)

            if last_attempt or give_up:
                logger.warning("%s failed on attempt %d/%d (%s) — giving up",
                               label, attempt + 1, max_attempts, code)
                break

            logger.warning("%s failed on attempt %d/%d (%s) — retrying in %.1fs",
                           label, attempt + 1, max_attempts, code, delay)
            if on_retry:
                on_retry(record)
            sleep(delay)

    raise RetryExhausted(attempts)
