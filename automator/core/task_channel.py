"""
Task messaging between the orchestrator and code running inside a worker
context.

Sends are fire-and-forget posts into the context's inbox; replies come back
through deliver(). Each outstanding task owns exactly one pending-response
slot, resolved by the first reply addressed to it. Slots are removed on
resolution, on timeout and on context teardown, so a late reply finds
nothing to resolve and is dropped.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Optional, assert_never

from automator.core.constants import OutcomeStatus, ErrorCode
from automator.core.models import (
    Task, TaskMessage, TaskCompleted, TaskFailed, TaskOutcome,
)

logger = logging.getLogger(__name__)


@dataclass
class TaskEnvelope:
    task_id: str
    task: Task


@dataclass
class _PendingSlot:
    task_id: str
    context_id: str
    done: threading.Event = field(default_factory=threading.Event)
    message: Optional[TaskMessage] = None


class TaskChannel:
    """Routes tasks to worker contexts and replies back to the waiting caller."""

    def __init__(self):
        self._lock = threading.Lock()
        self._slots: dict[str, _PendingSlot] = {}          # task_id -> slot
        self._by_context: dict[str, str] = {}              # context_id -> task_id

    # ── Orchestrator side ─────────────────────────────────────────────

    def send_and_await(self, handle, task: Task, timeout_ms: int) -> TaskOutcome:
        """
        Post `task` to the context behind `handle` and block until it replies
        or `timeout_ms` elapses.
        """
        if handle.startup_error:
            return TaskOutcome(OutcomeStatus.ERROR,
                               error_code=ErrorCode.CONTEXT_CREATE,
                               error_message=handle.startup_error)

        task_id = uuid.uuid4().hex
        slot = _PendingSlot(task_id=task_id, context_id=handle.context_id)
        with self._lock:
            if handle.context_id in self._by_context:
                raise RuntimeError(
                    f"context {handle.context_id} already has an outstanding task")
            self._slots[task_id] = slot
            self._by_context[handle.context_id] = task_id

        if not handle.post(TaskEnvelope(task_id=task_id, task=task)):
            self._clear(task_id)
            return TaskOutcome(OutcomeStatus.ERROR,
                               error_code=ErrorCode.CONTEXT_DESTROYED,
                               error_message="worker context is not accepting tasks")

        logger.debug("Sent %s as task %s to context %s",
                     type(task).__name__, task_id, handle.context_id)

        slot.done.wait(max(0, timeout_ms) / 1000.0)

        with self._lock:
            message = slot.message
            self._clear_locked(task_id)

        if message is None:
            logger.warning("Task %s on context %s timed out after %dms",
                           task_id, handle.context_id, timeout_ms)
            return TaskOutcome(OutcomeStatus.TIMEOUT,
                               error_code=ErrorCode.TASK_TIMEOUT,
                               error_message=f"no response within {timeout_ms}ms")
        return self._to_outcome(message)

    def pending_count(self) -> int:
        with self._lock:
            return len(self._slots)

    # ── Context side ──────────────────────────────────────────────────

    def deliver(self, message: TaskMessage) -> bool:
        """
        Resolve the pending slot addressed by `message`.
        Returns False when no slot is waiting (late or duplicate reply).
        """
        with self._lock:
            slot = self._slots.get(message.task_id)
            if slot is None or slot.message is not None:
                logger.debug("Dropping reply for task %s — no pending slot", message.task_id)
                return False
            slot.message = message
            slot.done.set()
        return True

    def cancel_context(self, context_id: str, reason: str = "worker context destroyed"):
        """Resolve any slot still pending for `context_id` with an error."""
        with self._lock:
            task_id = self._by_context.get(context_id)
            slot = self._slots.get(task_id) if task_id else None
            if slot is None or slot.message is not None:
                return
            slot.message = TaskFailed(task_id=task_id,
                                      code=ErrorCode.CONTEXT_DESTROYED,
                                      message=reason)
            slot.done.set()
        logger.debug("Cleared pending task %s on context %s", task_id, context_id)

    # ── Helpers ───────────────────────────────────────────────────────

    def _clear(self, task_id: str):
        with self._lock:
            self._clear_locked(task_id)

    def _clear_locked(self, task_id: str):
        slot = self._slots.pop(task_id, None)
        if slot and self._by_context.get(slot.context_id) == task_id:
            del self._by_context[slot.context_id]

    @staticmethod
    def _to_outcome(message: TaskMessage) -> TaskOutcome:
        match message:
            case TaskCompleted(payload=payload):
                return TaskOutcome(OutcomeStatus.SUCCESS, payload=payload)
            case TaskFailed(code=code, message=text):
                return TaskOutcome(OutcomeStatus.ERROR, error_code=code, error_message=text)
            case _:
                assert_never(message)
