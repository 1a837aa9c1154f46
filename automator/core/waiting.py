"""
Cooperative waiting: condition checks with a sleep between them.
Every wait can be cut short by a cancel event.
"""

import threading
import time
from typing import Callable


def wait_for(condition: Callable[[], bool], timeout: float | None = None,
             poll_interval: float = 1.0,
             cancel: threading.Event | None = None) -> bool:
    """
    Poll `condition` until it returns True, `timeout` seconds elapse, or
    `cancel` is set. Returns the last value of the condition.
    A timeout of None waits without a deadline.
    """
    deadline = None if timeout is None else time.monotonic() + timeout
    while True:
        if condition():
            return True
        if cancel is not None and cancel.is_set():
            return False
        if deadline is None:
            wait = poll_interval
        else:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return condition()
            wait = min(poll_interval, remaining)
        if cancel is not None:
            cancel.wait(wait)
        else:
            time.sleep(wait)


def interruptible_sleep(seconds: float, cancel: threading.Event | None = None) -> bool:
    """Sleep for `seconds`; returns False if woken early by `cancel`."""
    if seconds <= 0:
        return not (cancel is not None and cancel.is_set())
    if cancel is None:
        time.sleep(seconds)
        return True
    return not cancel.wait(seconds)
