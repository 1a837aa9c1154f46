"""
Automation orchestrator.

Takes a queue of videos, splits each into bounded time segments and drives
one fresh worker context per segment through the task channel, with
timeouts, retries and pause/resume/stop. Progress is broadcast after every
segment and every video.

Phases: IDLE -> RUNNING -> (PAUSED <-> RUNNING) -> COMPLETED | STOPPED | FAILED

The loop runs on one worker thread and processes one video, one segment at a
time. Control calls (pause/resume/stop) only flip flags on the RunState; the
loop reacts at its checkpoints, which sit before every video, every segment
and every retry attempt. An in-flight task is never interrupted: it finishes
or times out.

Failures are contained per video: a video whose segment exhausts its retries
is recorded as failed and the run moves on. Only an exception escaping the
loop itself ends the run as FAILED. Every run, however it ends, closes with a
'complete' broadcast.

A stop only affects work that has not started. When it arrives during the
last video's final task, that task still finishes and the run ends
COMPLETED, with no video left unprocessed.

While a run is alive a heartbeat thread keeps the persisted last_updated
fresh, so a run that is paused or waiting on a long task never looks
abandoned to another process.
"""

import logging
import math
import threading
import time
import uuid
from typing import Callable, Optional

from automator.core.constants import (
    RunPhase, VideoStatus, SegmentStatus, OutcomeStatus, ErrorCode, STALE_AFTER_SEC,
)
from automator.core.error_codes import JobError, RetryExhausted, RunStopped
from automator.core.models import (
    VideoJob, Segment, RunConfig, RunState, SegmentResult,
    MeasureDuration, ProcessSegment, Task, TaskOutcome,
)
from automator.core.job_store import JobStore
from automator.core.segment_planner import plan
from automator.core.retry_policy import with_retry
from automator.core.task_channel import TaskChannel
from automator.core.worker_context import WorkerContextManager
from automator.core.broadcast import ProgressBroadcaster
from automator.core.report_sink import ReportSink
from automator.core.url_parse import build_video_jobs
from automator.core.waiting import wait_for, interruptible_sleep

logger = logging.getLogger(__name__)


class Orchestrator:
    """Owns the RunState and sequences the whole pipeline."""

    def __init__(self, store: JobStore, contexts: WorkerContextManager,
                 channel: TaskChannel,
                 reports: ReportSink | None = None,
                 broadcaster: ProgressBroadcaster | None = None,
                 stale_after_sec: float = STALE_AFTER_SEC,
                 clock: Callable[[], float] = time.time):
        self.store = store
        self.contexts = contexts
        self.channel = channel
        self.reports = reports
        self.broadcaster = broadcaster or ProgressBroadcaster()
        self.stale_after_sec = stale_after_sec
        self._clock = clock

        self._lock = threading.RLock()
        self._state = RunState()
        self._stop_event = threading.Event()
        self._heartbeat_stop = threading.Event()
        self._heartbeat_after = max(stale_after_sec / 4, 1.0)
        self._worker_thread: Optional[threading.Thread] = None
        self._heartbeat_thread: Optional[threading.Thread] = None

        self.recover()

    # ── Control surface ───────────────────────────────────────────────

    def start(self, jobs: list, config: RunConfig | None = None) -> bool:
        """
        Persist a new run and start processing it on the worker thread.
        Returns False (and starts nothing) if a run is already active or the
        queue is empty.
        """
        with self._lock:
            if self.is_running():
                logger.warning("Start rejected — run %s is already active", self._state.run_id)
                self.broadcaster.error(f"[{ErrorCode.ALREADY_RUNNING}] A run is already in progress")
                return False

            persisted = self.recover()
            if persisted is not None and persisted.is_running:
                logger.warning("Start rejected — run %s is still active in the job store "
                               "(last update %.0fs ago)",
                               persisted.run_id, self._clock() - persisted.last_updated)
                self.broadcaster.error(f"[{ErrorCode.ALREADY_RUNNING}] A run is already in progress")
                return False

            queue = build_video_jobs(jobs)
            if not queue:
                logger.warning("Start rejected — no valid videos in queue")
                self.broadcaster.error("No videos in queue")
                return False

            config = config or RunConfig()
            if config.reverse_order:
                queue = list(reversed(queue))

            self._stop_event.clear()
            self._state = RunState(
                run_id=uuid.uuid4().hex,
                phase=RunPhase.RUNNING,
                is_running=True,
                queue=queue,
                total_count=len(queue),
                config=config,
            )
            self._persist()
            logger.info("Started run %s with %d video(s)", self._state.run_id, len(queue))
            self.broadcaster.progress(0, len(queue), f"Starting {len(queue)} video(s)")

            self._heartbeat_stop.clear()
            self._heartbeat_thread = threading.Thread(
                target=self._heartbeat, name="orchestrator-heartbeat", daemon=True,
            )
            self._heartbeat_thread.start()
            self._worker_thread = threading.Thread(
                target=self._run, name="orchestrator", daemon=True,
            )
            self._worker_thread.start()
        return True

    def pause(self) -> bool:
        """Pause at the next segment boundary. No-op when not running."""
        with self._lock:
            if not self._state.is_running or self._state.is_paused:
                return False
            self._state.is_paused = True
            self._state.phase = RunPhase.PAUSED
            self._persist()
            current, total = self._position()
        logger.info("Pause requested")
        self.broadcaster.log("Paused — the current task will finish first", current, total)
        return True

    def resume(self) -> bool:
        with self._lock:
            if not self._state.is_running or not self._state.is_paused:
                return False
            self._state.is_paused = False
            self._state.phase = RunPhase.RUNNING
            self._persist()
            current, total = self._position()
        logger.info("Resumed")
        self.broadcaster.log("Resumed", current, total)
        return True

    def stop(self) -> bool:
        """
        Request a stop. No new segment or video starts afterwards; the
        in-flight task is left to finish or time out.
        """
        with self._lock:
            if not self._state.is_running:
                return False
            self._stop_event.set()
            self._state.is_paused = False
            self._persist()
            current, total = self._position()
        logger.info("Stop requested")
        self.broadcaster.log("Stopping after the current task", current, total)
        return True

    def reset(self) -> bool:
        """Discard a persisted run that is not running in this process."""
        with self._lock:
            if self.is_running():
                return False
            self.store.clear_run_state()
            self._state = RunState()
        return True

    # ── Status ────────────────────────────────────────────────────────

    def is_running(self) -> bool:
        return self._worker_thread is not None and self._worker_thread.is_alive()

    @property
    def phase(self) -> str:
        with self._lock:
            return self._state.phase

    def status(self) -> RunState:
        """A snapshot of the current RunState."""
        with self._lock:
            return RunState.from_dict(self._state.to_dict())

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the worker thread exits. Returns True if it has."""
        thread = self._worker_thread
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def recover(self) -> RunState | None:
        """
        Load the persisted RunState. A running state that has not been
        checkpointed within the staleness threshold is treated as abandoned
        and reset.
        """
        state = self.store.load_run_state()
        if state is None or not state.is_running or self.is_running():
            return state
        age = self._clock() - state.last_updated
        if state.is_stale(self._clock(), self.stale_after_sec):
            logger.warning("Discarding abandoned run %s (no checkpoint for %.0fs)",
                           state.run_id, age)
            self.store.clear_run_state()
            return None
        return state

    # ── State helpers ─────────────────────────────────────────────────

    def _persist(self):
        self._state.last_updated = self._clock()
        self.store.save_run_state(self._state)

    def _update(self, **fields):
        with self._lock:
            for key, value in fields.items():
                setattr(self._state, key, value)
            self._persist()

    def _position(self) -> tuple[int, int]:
        return min(self._state.current_video_index + 1, self._state.total_count), self._state.total_count

    def _sleep(self, seconds: float) -> bool:
        return interruptible_sleep(seconds, self._stop_event)

    def _wait_while_paused(self) -> bool:
        """Returns False if a stop was requested while waiting."""
        if self._state.is_paused:
            logger.info("Paused — waiting for resume")
        return wait_for(
            lambda: not self._state.is_paused or self._stop_event.is_set(),
            poll_interval=self._state.config.pause_poll_seconds,
            cancel=self._stop_event,
        ) and not self._stop_event.is_set()

    def _checkpoint(self):
        """Stop/pause boundary. Raises RunStopped once stop() was called."""
        if self._stop_event.is_set() or not self._wait_while_paused():
            raise RunStopped()

    # ── Main loop ─────────────────────────────────────────────────────

    def _run(self):
        state = self._state
        total = state.total_count
        phase = RunPhase.COMPLETED
        completed = failed = 0

        try:
            for index in range(state.current_video_index, total):
                if self._stop_event.is_set() or not self._wait_while_paused():
                    phase = RunPhase.STOPPED
                    break

                video = state.queue[index]
                self._update(current_video_index=index, current_video=video,
                             current_segment_index=0, segment_count=0)
                logger.info("Video %d/%d: %s", index + 1, total, video.title)
                self.broadcaster.progress(index + 1, total, f"Video {index + 1}/{total}: {video.title}",
                                          video_id=video.id)

                status = self._process_video_safely(video, index)
                if status == VideoStatus.STOPPED:
                    phase = RunPhase.STOPPED
                    break
                if status == VideoStatus.COMPLETED:
                    completed += 1
                else:
                    failed += 1

                if index + 1 < total:
                    self._sleep(state.config.inter_video_delay_seconds)
                self._update(current_video_index=index + 1)
                self.broadcaster.progress(index + 1, total,
                                          f"Finished {index + 1}/{total}: {video.title} ({status.lower()})",
                                          video_id=video.id)

            if phase == RunPhase.COMPLETED and self._stop_event.is_set():
                logger.info("Stop arrived during the final task; all videos finished")

        except Exception as e:
            phase = RunPhase.FAILED
            logger.error("Orchestrator loop failed: %s", e, exc_info=True)
            self.broadcaster.error(f"Run failed: {e}")
        finally:
            self._heartbeat_stop.set()
            if self._heartbeat_thread is not None:
                self._heartbeat_thread.join()
            self._finish(phase, completed, failed)

    def _heartbeat(self):
        """Re-persist the RunState once it is a quarter of the way to going stale."""
        interval = self._state.config.pause_poll_seconds
        while not self._heartbeat_stop.wait(interval):
            with self._lock:
                if not self._state.is_running:
                    continue
                if self._clock() - self._state.last_updated < self._heartbeat_after:
                    continue
                try:
                    self._persist()
                except Exception as e:
                    logger.warning("Heartbeat could not persist run state: %s", e)

    def _finish(self, phase: str, completed: int, failed: int):
        total = self._state.total_count
        with self._lock:
            self._state = RunState(
                run_id=self._state.run_id,
                phase=phase,
                current_video_index=self._state.current_video_index,
                total_count=total,
                config=self._state.config,
            )
            try:
                self._persist()
            except Exception as e:
                logger.error("Could not persist final run state: %s", e)

        if completed:
            try:
                self.store.increment_total_processed(completed)
            except Exception as e:
                logger.warning("Could not update processed counter: %s", e)

        try:
            self.contexts.destroy_all()
        except Exception as e:
            logger.warning("Context cleanup failed: %s", e)

        message = f"Run {phase.lower()}: {completed} completed, {failed} failed of {total}"
        logger.info("Run %s finished — %s", self._state.run_id, message)
        self.broadcaster.complete(completed + failed, total, message)

    # ── Per-video ─────────────────────────────────────────────────────

    def _process_video_safely(self, video: VideoJob, index: int) -> str:
        """Run one video, containing any failure. Returns a VideoStatus."""
        run_id = self._state.run_id
        current, total = index + 1, self._state.total_count
        self.store.start_video(run_id, video.id, video.title)

        try:
            segment_count = self._process_video(video, index)
        except RunStopped:
            logger.info("Video %s interrupted by stop", video.id)
            self.store.finish_video(run_id, video.id, VideoStatus.STOPPED,
                                    segment_count=self._state.segment_count,
                                    error_message="Stopped by user")
            return VideoStatus.STOPPED
        except JobError as e:
            detail = e.history() if isinstance(e, RetryExhausted) else e.message
            logger.error("Video %s failed [%s]: %s", video.id, e.code, detail)
            self.store.finish_video(run_id, video.id, VideoStatus.FAILED,
                                    segment_count=self._state.segment_count,
                                    error_code=e.code, error_message=detail)
            self.broadcaster.error(f"{video.title}: {e.message}", current, total, video_id=video.id)
            return VideoStatus.FAILED
        except Exception as e:
            logger.error("Unexpected error processing video %s: %s", video.id, e, exc_info=True)
            self.store.finish_video(run_id, video.id, VideoStatus.FAILED,
                                    segment_count=self._state.segment_count,
                                    error_code=ErrorCode.UNEXPECTED, error_message=str(e))
            self.broadcaster.error(f"{video.title}: {e}", current, total, video_id=video.id)
            return VideoStatus.FAILED

        self.store.finish_video(run_id, video.id, VideoStatus.COMPLETED, segment_count=segment_count)
        if self.reports is not None:
            try:
                self.reports.finalize_video(video, segment_count)
            except Exception as e:
                logger.warning("Could not finalize reports for %s: %s", video.id, e)
        return VideoStatus.COMPLETED

    def _process_video(self, video: VideoJob, index: int) -> int:
        config = self._state.config
        current, total = index + 1, self._state.total_count

        duration = self._resolve_duration(video, current, total)
        segments = plan(duration, config.max_segment_duration_seconds)
        self._update(segment_count=len(segments))
        if len(segments) > 1:
            self.broadcaster.log(f"Splitting {video.title} into {len(segments)} segments",
                                 current, total, video_id=video.id)

        for segment in segments:
            self._checkpoint()
            self._update(current_segment_index=segment.index)
            label = f" (segment {segment.index + 1}/{len(segments)})" if len(segments) > 1 else ""
            logger.info("Processing %s%s", video.id, label)

            text, attempts = self._run_segment(video, segment, len(segments))
            saved = self._submit_report(video, segment, text, current, total)
            self.store.record_segment(SegmentResult(
                run_id=self._state.run_id, video_id=video.id, idx=segment.index,
                start_sec=segment.start_offset_seconds, end_sec=segment.end_offset_seconds,
                status=SegmentStatus.DONE, attempts=attempts, report_saved=int(saved),
            ))
            self.broadcaster.progress(current, total, f"{video.title}: segment complete{label}",
                                      video_id=video.id, segment_index=segment.index)

            if segment.index + 1 < len(segments):
                self._sleep(config.inter_segment_delay_seconds)

        return len(segments)

    def _resolve_duration(self, video: VideoJob, current: int, total: int) -> float | None:
        """Known duration, else measured in a throwaway context. None means single segment."""
        if video.known_duration_seconds:
            return video.known_duration_seconds

        config = self._state.config
        self.broadcaster.log(f"Measuring duration of {video.title}", current, total, video_id=video.id)

        def _measure() -> float:
            self._checkpoint()
            self._touch()
            outcome = self._execute(MeasureDuration(video=video), config.measure_timeout_ms)
            try:
                duration = float(outcome.payload)
            except (TypeError, ValueError):
                raise JobError(ErrorCode.MEASURE_FAILED, f"Unusable duration {outcome.payload!r}")
            if not math.isfinite(duration) or duration <= 0:
                raise JobError(ErrorCode.MEASURE_FAILED, f"Unusable duration {duration!r}")
            return duration

        try:
            duration = with_retry(_measure, max_attempts=config.max_retries,
                                  base_delay=config.retry_base_delay_seconds,
                                  sleep=self._sleep, label=f"Measuring {video.id}")
        except RetryExhausted as e:
            logger.warning("Could not measure %s (%s) — processing as a single segment",
                           video.id, e.history())
            self.broadcaster.log(f"Could not get duration of {video.title}, processing as a single segment",
                                 current, total, video_id=video.id)
            return None

        logger.info("Duration of %s: %d min", video.id, duration // 60)
        return duration

    # ── Per-segment ───────────────────────────────────────────────────

    def _run_segment(self, video: VideoJob, segment: Segment, segment_count: int) -> tuple[str, int]:
        config = self._state.config
        attempts = 0

        def _attempt() -> str:
            nonlocal attempts
            self._checkpoint()
            attempts += 1
            self._touch()
            outcome = self._execute(
                ProcessSegment(video=video, segment=segment, segment_count=segment_count),
                config.per_task_timeout_ms,
            )
            return str(outcome.payload or "")

        def _on_retry(record):
            current, total = self._position()
            self.broadcaster.log(
                f"{video.title}: segment {segment.index + 1} failed ({record.code}), "
                f"retrying in {record.delay_sec:.0f}s",
                current, total, video_id=video.id, segment_index=segment.index,
            )

        try:
            text = with_retry(_attempt, max_attempts=config.max_retries,
                              base_delay=config.retry_base_delay_seconds,
                              sleep=self._sleep, on_retry=_on_retry,
                              label=f"{video.id} segment {segment.index}")
        except RetryExhausted as e:
            self.store.record_segment(SegmentResult(
                run_id=self._state.run_id, video_id=video.id, idx=segment.index,
                start_sec=segment.start_offset_seconds, end_sec=segment.end_offset_seconds,
                status=SegmentStatus.FAILED, attempts=attempts,
                error_code=e.code, error_message=e.history(),
            ))
            raise
        return text, attempts

    def _execute(self, task: Task, timeout_ms: int) -> TaskOutcome:
        """
        One attempt: fresh context, one task, teardown. Raises JobError for
        anything but success.
        """
        try:
            handle = self.contexts.create()
        except JobError:
            raise
        except Exception as e:
            raise JobError(ErrorCode.CONTEXT_CREATE, f"Could not create worker context: {e}")

        try:
            outcome = self.channel.send_and_await(handle, task, timeout_ms)
        finally:
            self.contexts.destroy(handle)

        if outcome.ok:
            return outcome
        if outcome.status == OutcomeStatus.TIMEOUT:
            logger.warning("%s timed out after %ds — the external page may be hung",
                           type(task).__name__, timeout_ms // 1000)
            raise JobError(ErrorCode.TASK_TIMEOUT, outcome.error_message or "task timed out")
        logger.warning("%s failed [%s]: %s", type(task).__name__,
                       outcome.error_code, outcome.error_message)
        raise JobError(outcome.error_code or ErrorCode.TASK_FAILED,
                       outcome.error_message or "task failed")

    def _touch(self):
        """Refresh last_updated so a long task is not mistaken for an abandoned run."""
        with self._lock:
            self._persist()

    def _submit_report(self, video: VideoJob, segment: Segment, text: str,
                       current: int, total: int) -> bool:
        """Hand the report off. Failure is logged; the segment still counts as done."""
        if self.reports is None:
            return False
        try:
            self.reports.submit(video, segment.index, text)
            return True
        except Exception as e:
            logger.warning("Report for %s segment %d not saved: %s", video.id, segment.index, e)
            self.broadcaster.error(f"{video.title}: report not saved ({e})",
                                   current, total, video_id=video.id, segment_index=segment.index)
            return False
