"""
Task executors: the code that runs inside a worker context.

TaskExecutor is the pluggable contract. PromptPageExecutor is the default
recipe for a prompt-driven web tool: type a prompt that references the video
(and the time range), click run, and read back the response once it stops
changing. Selectors and the prompt template come from config.
"""

import logging
import threading
import time
from typing import assert_never

from automator.core.constants import (
    ErrorCode, DEFAULT_PROMPT_TEMPLATE, DEFAULT_SELECTORS,
    RESPONSE_STABLE_SEC, RESPONSE_POLL_SEC,
)
from automator.core.error_codes import JobError
from automator.core.models import Task, MeasureDuration, ProcessSegment, Segment
from automator.core.waiting import wait_for

logger = logging.getLogger(__name__)


class TaskExecutor:
    """
    Contract for driving one page through one task.

    Implementations run on the worker context's own thread and may block.
    They should return promptly once `cancelled` is set.
    """

    def is_ready(self, page) -> bool:
        return True

    def measure_duration(self, page, task: MeasureDuration,
                         cancelled: threading.Event) -> float:
        raise NotImplementedError

    def process_segment(self, page, task: ProcessSegment,
                        cancelled: threading.Event) -> str:
        raise NotImplementedError

    def execute(self, page, task: Task, cancelled: threading.Event):
        match task:
            case MeasureDuration():
                return self.measure_duration(page, task, cancelled)
            case ProcessSegment():
                return self.process_segment(page, task, cancelled)
            case _:
                assert_never(task)


def format_timestamp(seconds: float) -> str:
    """Format seconds as H:MM:SS (or M:SS under an hour)."""
    total = int(round(seconds))
    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def build_prompt(template: str, task: ProcessSegment) -> str:
    """Render the prompt for one segment."""
    segment: Segment = task.segment
    if task.segment_count > 1 or segment.end_offset_seconds is not None:
        end = (format_timestamp(segment.end_offset_seconds)
               if segment.end_offset_seconds is not None else "the end")
        range_hint = (f"Only cover the part from {format_timestamp(segment.start_offset_seconds)} "
                      f"to {end} (segment {segment.index + 1} of {task.segment_count}).\n")
    else:
        range_hint = ""
    return template.format(
        url=task.video.source_url,
        title=task.video.title,
        range_hint=range_hint,
    )


class PromptPageExecutor(TaskExecutor):
    """Default recipe: one prompt in, one response out."""

    def __init__(self, selectors: dict | None = None,
                 prompt_template: str = DEFAULT_PROMPT_TEMPLATE,
                 stable_sec: float = RESPONSE_STABLE_SEC,
                 poll_sec: float = RESPONSE_POLL_SEC,
                 measure_wait_sec: float = 45.0):
        self.selectors = dict(DEFAULT_SELECTORS)
        self.selectors.update(selectors or {})
        self.prompt_template = prompt_template
        self.stable_sec = stable_sec
        self.poll_sec = poll_sec
        self.measure_wait_sec = measure_wait_sec

    # ── Readiness ─────────────────────────────────────────────────────

    def is_ready(self, page) -> bool:
        try:
            return page.locator(self.selectors['prompt']).first.is_visible()
        except Exception as e:
            logger.debug("Readiness probe failed: %s", e)
            return False

    # ── Duration ──────────────────────────────────────────────────────

    def measure_duration(self, page, task: MeasureDuration,
                         cancelled: threading.Event) -> float:
        """Open the video's own page in this context and read <video>.duration."""
        watch = page.context.new_page()
        try:
            watch.goto(task.video.source_url, wait_until="domcontentloaded")
            duration: list[float] = []

            def _read() -> bool:
                value = watch.evaluate(
                    "(sel) => { const v = document.querySelector(sel);"
                    " return v && isFinite(v.duration) && v.duration > 0 ? v.duration : null; }",
                    self.selectors['video'],
                )
                if value:
                    duration.append(float(value))
                    return True
                return False

            if not wait_for(_read, timeout=self.measure_wait_sec,
                            poll_interval=self.poll_sec, cancel=cancelled):
                raise JobError(ErrorCode.MEASURE_FAILED,
                               f"No playable video found at {task.video.source_url}")
            logger.info("Measured %s: %.0fs", task.video.id, duration[0])
            return duration[0]
        finally:
            try:
                watch.close()
            except Exception as e:
                logger.debug("Failed to close watch page: %s", e)

    # ── Segment processing ────────────────────────────────────────────

    def process_segment(self, page, task: ProcessSegment,
                        cancelled: threading.Event) -> str:
        prompt = build_prompt(self.prompt_template, task)
        responses = page.locator(self.selectors['response'])
        before = responses.count()

        prompt_box = page.locator(self.selectors['prompt']).first
        prompt_box.click()
        prompt_box.fill(prompt)

        run_button = page.locator(self.selectors['run']).first
        if not run_button.is_enabled():
            raise JobError(ErrorCode.TASK_FAILED, "Run button is disabled")
        run_button.click()
        logger.info("Submitted %s segment %d (%s)",
                    task.video.id, task.segment.index, task.segment.label)

        if not wait_for(lambda: responses.count() > before, timeout=120,
                        poll_interval=self.poll_sec, cancel=cancelled):
            raise JobError(ErrorCode.TASK_FAILED, "No response appeared after run")

        text = self._wait_for_stable_text(page, responses.last, cancelled)
        if not text.strip():
            raise JobError(ErrorCode.TASK_FAILED, "Response was empty")
        return text.strip()

    def _wait_for_stable_text(self, page, response, cancelled: threading.Event) -> str:
        """Wait until the tool is idle and the response text stops changing."""
        busy = page.locator(self.selectors['busy'])
        last_text = ""
        stable_since = time.monotonic()

        def _settled() -> bool:
            nonlocal last_text, stable_since
            text = response.inner_text()
            now = time.monotonic()
            if text != last_text:
                last_text = text
                stable_since = now
                return False
            if busy.count() and busy.first.is_visible():
                return False
            return bool(text) and now - stable_since >= self.stable_sec

        # Bounded by the orchestrator's per-task timeout, not here.
        if not wait_for(_settled, timeout=None, poll_interval=self.poll_sec, cancel=cancelled):
            raise JobError(ErrorCode.TASK_FAILED, "Cancelled while waiting for the response")
        return last_text
