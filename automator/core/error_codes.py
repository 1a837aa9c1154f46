"""
Standardised error handling for VideoIntelAutomator.
"""

from dataclasses import dataclass

from automator.core.constants import ErrorCode, RETRYABLE_ERRORS


class JobError(Exception):
    """Raised when a job encounters a known error condition."""

    def __init__(self, code: str, message: str, retryable: bool | None = None):
        self.code = code
        self.message = message
        # auto-detect retryable from code if not explicitly set
        self.retryable = retryable if retryable is not None else (code in RETRYABLE_ERRORS)
        super().__init__(f"[{code}] {message}")


@dataclass
class AttemptRecord:
    attempt: int
    code: str
    message: str
    delay_sec: float = 0.0


class RetryExhausted(JobError):
    """
    Raised by the retry policy once every attempt has failed.
    Carries the code of the last failure and the full attempt history.
    """

    def __init__(self, attempts: list[AttemptRecord]):
        self.attempts = attempts
        last = attempts[-1] if attempts else AttemptRecord(0, ErrorCode.UNEXPECTED, "no attempts made")
        super().__init__(
            last.code,
            f"failed after {len(attempts)} attempt(s): {last.message}",
            retryable=False,
        )

    def history(self) -> str:
        return "; ".join(f"#{a.attempt + 1} {a.code}: {a.message}" for a in self.attempts)


class RunStopped(Exception):
    """Raised at a checkpoint once stop() has been requested."""


def is_retryable(code: str) -> bool:
    return code in RETRYABLE_ERRORS
