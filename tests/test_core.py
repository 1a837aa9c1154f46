#!/usr/bin/env python3
"""
Unit tests for VideoIntelAutomator core modules.
Tests cover: segment planning, retry policy, task channel, job store, config,
queue parsing, security utils, report sinks, broadcast and prompt building.
"""

import sys
import os
import json
import math
import tempfile
import threading
from pathlib import Path
from unittest import mock

# Add project root to path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

import unittest

from automator.core.constants import (
    ErrorCode, RETRYABLE_ERRORS, OutcomeStatus, RunPhase, VideoStatus, SegmentStatus,
    EventType, DEFAULT_PROMPT_TEMPLATE, MAX_SEGMENT_DURATION_SEC,
)
from automator.core.error_codes import JobError, RetryExhausted, is_retryable
from automator.core.models import (
    VideoJob, Segment, RunConfig, RunState, SegmentResult,
    MeasureDuration, ProcessSegment, TaskCompleted, TaskFailed,
)
from automator.core.segment_planner import plan, needs_splitting
from automator.core.retry_policy import with_retry, backoff_delay
from automator.core.task_channel import TaskChannel
from automator.core.job_store import JobStore
from automator.core.config import AppConfig
from automator.core.url_parse import (
    extract_video_id, is_youtube_url, parse_duration, build_video_job,
    build_video_jobs, parse_input_lines, parse_csv_file, parse_json_file,
    parse_input_file,
)
from automator.core.security_utils import sanitize_title, safe_output_path, TokenProvider
from automator.core.report_sink import (
    FileReportWriter, ApiReportClient, CompositeReportSink, ReportSink,
    merge_reports, segment_report_name,
)
from automator.core.broadcast import ProgressBroadcaster
from automator.core.task_executor import build_prompt, format_timestamp
from automator.core.waiting import wait_for, interruptible_sleep


VIDEO = VideoJob(id="dQw4w9WgXcQ", source_url="https://www.youtube.com/watch?v=dQw4w9WgXcQ",
                 title="Test Video")


class TestSegmentPlanner(unittest.TestCase):
    """Test time-based segment planning."""

    def test_short_video_single_segment(self):
        self.assertEqual(plan(1200, 2700), [Segment(0, 0, None)])

    def test_exactly_max_single_segment(self):
        self.assertEqual(plan(2700, 2700), [Segment(0, 0, None)])

    def test_unknown_duration_single_segment(self):
        self.assertEqual(plan(None, 2700), [Segment(0, 0, None)])
        self.assertEqual(plan(0, 2700), [Segment(0, 0, None)])

    def test_two_segments(self):
        self.assertEqual(plan(5400, 2700), [Segment(0, 0, 2700), Segment(1, 2700, 5400)])

    def test_last_segment_clamped(self):
        segments = plan(6000, 2700)
        self.assertEqual(len(segments), 3)
        self.assertEqual(segments[-1].start_offset_seconds, 5400)
        self.assertEqual(segments[-1].end_offset_seconds, 6000)

    def test_segments_contiguous_and_bounded(self):
        for duration in (2701, 5399, 5401, 10800, 12345.5):
            segments = plan(duration, 2700)
            self.assertEqual(len(segments), math.ceil(duration / 2700))
            self.assertEqual(segments[0].start_offset_seconds, 0)
            self.assertEqual(segments[-1].end_offset_seconds, duration)
            for i, seg in enumerate(segments):
                self.assertEqual(seg.index, i)
                self.assertLessEqual(seg.end_offset_seconds - seg.start_offset_seconds, 2700)
                if i:
                    self.assertEqual(seg.start_offset_seconds, segments[i - 1].end_offset_seconds)

    def test_plan_is_idempotent(self):
        self.assertEqual(plan(9000, 2700), plan(9000, 2700))

    def test_non_positive_max_does_not_split(self):
        self.assertEqual(plan(9000, 0), [Segment(0, 0, None)])
        self.assertFalse(needs_splitting(9000, -1))

    def test_non_finite_duration_single_segment(self):
        self.assertEqual(plan(float('inf'), 2700), [Segment(0, 0, None)])
        self.assertEqual(plan(float('nan'), 2700), [Segment(0, 0, None)])
        self.assertFalse(needs_splitting(float('inf'), 2700))

    def test_segment_label(self):
        self.assertEqual(Segment(1, 2700, 5400).label, "2700s-5400s")
        self.assertEqual(Segment(0, 0, None).label, "0s-end")


class TestRetryPolicy(unittest.TestCase):
    """Test bounded retry with exponential backoff."""

    def test_backoff_delays(self):
        self.assertEqual([backoff_delay(a, 2.0) for a in range(3)], [2.0, 4.0, 8.0])

    def test_success_after_failures(self):
        calls = []
        delays = []

        def op():
            calls.append(1)
            if len(calls) < 3:
                raise JobError(ErrorCode.TASK_FAILED, "flaky")
            return "ok"

        self.assertEqual(with_retry(op, max_attempts=3, sleep=delays.append), "ok")
        self.assertEqual(len(calls), 3)
        self.assertEqual(delays, [2.0, 4.0])

    def test_exhaustion_carries_history(self):
        delays = []

        def op():
            raise JobError(ErrorCode.TASK_TIMEOUT, "no response")

        with self.assertRaises(RetryExhausted) as ctx:
            with_retry(op, max_attempts=3, sleep=delays.append)
        err = ctx.exception
        self.assertEqual(len(err.attempts), 3)
        self.assertEqual(err.code, ErrorCode.TASK_TIMEOUT)
        self.assertFalse(err.retryable)
        self.assertIn("#3 ERR_TASK_TIMEOUT", err.history())
        self.assertEqual(delays, [2.0, 4.0])

    def test_non_retryable_stops_early(self):
        calls = []

        def op():
            calls.append(1)
            raise JobError(ErrorCode.INVALID_JOB, "bad input")

        with self.assertRaises(RetryExhausted) as ctx:
            with_retry(op, max_attempts=3, sleep=lambda s: None)
        self.assertEqual(len(calls), 1)
        self.assertEqual(ctx.exception.code, ErrorCode.INVALID_JOB)

    def test_unlisted_exception_propagates(self):
        def op():
            raise ValueError("bug")

        with self.assertRaises(ValueError):
            with_retry(op, max_attempts=3, sleep=lambda s: None)

    def test_on_retry_callback(self):
        records = []

        def op():
            raise JobError(ErrorCode.TASK_FAILED, "x")

        with self.assertRaises(RetryExhausted):
            with_retry(op, max_attempts=2, base_delay=1.0,
                       sleep=lambda s: None, on_retry=records.append)
        self.assertEqual(len(records), 1)
        self.assertEqual(records[0].delay_sec, 1.0)


class _FakeHandle:
    """Stands in for a ContextHandle; `on_post` plays the context side."""

    def __init__(self, context_id="ctx1", on_post=None, accept=True, startup_error=None):
        self.context_id = context_id
        self.startup_error = startup_error
        self.on_post = on_post
        self.accept = accept
        self.posted = []

    def post(self, envelope):
        if not self.accept:
            return False
        self.posted.append(envelope)
        if self.on_post:
            self.on_post(envelope)
        return True


class TestTaskChannel(unittest.TestCase):
    """Test pending-slot messaging."""

    def setUp(self):
        self.channel = TaskChannel()
        self.task = MeasureDuration(video=VIDEO)

    def test_completed_reply(self):
        handle = _FakeHandle(on_post=lambda env: self.channel.deliver(
            TaskCompleted(task_id=env.task_id, payload=123.0)))
        outcome = self.channel.send_and_await(handle, self.task, 1000)
        self.assertEqual(outcome.status, OutcomeStatus.SUCCESS)
        self.assertEqual(outcome.payload, 123.0)
        self.assertEqual(self.channel.pending_count(), 0)

    def test_failed_reply(self):
        handle = _FakeHandle(on_post=lambda env: self.channel.deliver(
            TaskFailed(task_id=env.task_id, code=ErrorCode.MEASURE_FAILED, message="no video")))
        outcome = self.channel.send_and_await(handle, self.task, 1000)
        self.assertEqual(outcome.status, OutcomeStatus.ERROR)
        self.assertEqual(outcome.error_code, ErrorCode.MEASURE_FAILED)

    def test_timeout_then_late_reply_ignored(self):
        handle = _FakeHandle()
        outcome = self.channel.send_and_await(handle, self.task, 50)
        self.assertEqual(outcome.status, OutcomeStatus.TIMEOUT)
        self.assertEqual(outcome.error_code, ErrorCode.TASK_TIMEOUT)
        self.assertEqual(self.channel.pending_count(), 0)

        late = TaskCompleted(task_id=handle.posted[0].task_id, payload="late")
        self.assertFalse(self.channel.deliver(late))
        self.assertEqual(self.channel.pending_count(), 0)

    def test_reply_from_another_thread(self):
        def on_post(env):
            threading.Timer(0.05, self.channel.deliver,
                            args=(TaskCompleted(task_id=env.task_id, payload="text"),)).start()

        outcome = self.channel.send_and_await(_FakeHandle(on_post=on_post), self.task, 2000)
        self.assertTrue(outcome.ok)
        self.assertEqual(outcome.payload, "text")

    def test_cancel_context_resolves_pending(self):
        handle = _FakeHandle(on_post=lambda env: self.channel.cancel_context("ctx1"))
        outcome = self.channel.send_and_await(handle, self.task, 5000)
        self.assertEqual(outcome.status, OutcomeStatus.ERROR)
        self.assertEqual(outcome.error_code, ErrorCode.CONTEXT_DESTROYED)
        self.assertEqual(self.channel.pending_count(), 0)

    def test_second_send_while_pending_rejected(self):
        errors = []

        def on_post(env):
            try:
                self.channel.send_and_await(handle, self.task, 10)
            except RuntimeError as e:
                errors.append(e)
            self.channel.deliver(TaskCompleted(task_id=env.task_id))

        handle = _FakeHandle(on_post=on_post)
        outcome = self.channel.send_and_await(handle, self.task, 1000)
        self.assertTrue(outcome.ok)
        self.assertEqual(len(errors), 1)

    def test_duplicate_reply_dropped(self):
        def on_post(env):
            self.assertTrue(self.channel.deliver(TaskCompleted(task_id=env.task_id, payload=1)))
            self.assertFalse(self.channel.deliver(TaskCompleted(task_id=env.task_id, payload=2)))

        outcome = self.channel.send_and_await(_FakeHandle(on_post=on_post), self.task, 1000)
        self.assertEqual(outcome.payload, 1)

    def test_startup_error_fails_fast(self):
        handle = _FakeHandle(startup_error="browser crashed")
        outcome = self.channel.send_and_await(handle, self.task, 5000)
        self.assertEqual(outcome.error_code, ErrorCode.CONTEXT_CREATE)
        self.assertEqual(handle.posted, [])

    def test_rejected_post(self):
        outcome = self.channel.send_and_await(_FakeHandle(accept=False), self.task, 5000)
        self.assertEqual(outcome.error_code, ErrorCode.CONTEXT_DESTROYED)
        self.assertEqual(self.channel.pending_count(), 0)


class TestWaiting(unittest.TestCase):
    """Test cooperative waits."""

    def test_condition_met(self):
        self.assertTrue(wait_for(lambda: True, timeout=1))

    def test_timeout(self):
        self.assertFalse(wait_for(lambda: False, timeout=0.05, poll_interval=0.01))

    def test_cancel(self):
        cancel = threading.Event()
        cancel.set()
        self.assertFalse(wait_for(lambda: False, poll_interval=0.01, cancel=cancel))
        self.assertFalse(interruptible_sleep(5, cancel))

    def test_sleep_completes(self):
        self.assertTrue(interruptible_sleep(0.01, threading.Event()))


class TestJobStore(unittest.TestCase):
    """Test SQLite job store."""

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.store = JobStore(Path(self.tmpdir.name) / "state.db")

    def tearDown(self):
        self.store.close()
        self.tmpdir.cleanup()

    def test_kv_roundtrip(self):
        self.assertIsNone(self.store.get("missing"))
        self.store.set("k", {"a": 1})
        self.store.set("k", {"a": 2})
        self.assertEqual(self.store.get("k"), {"a": 2})
        self.store.delete("k")
        self.assertEqual(self.store.get("k", "default"), "default")

    def test_run_state_roundtrip(self):
        state = RunState(run_id="r1", phase=RunPhase.RUNNING, is_running=True,
                         queue=[VIDEO], current_video_index=0, current_video=VIDEO,
                         current_segment_index=1, segment_count=2, total_count=1,
                         config=RunConfig(max_segment_duration_seconds=1800))
        self.store.save_run_state(state)
        loaded = self.store.load_run_state()
        self.assertEqual(loaded.run_id, "r1")
        self.assertTrue(loaded.is_running)
        self.assertEqual(loaded.queue, [VIDEO])
        self.assertEqual(loaded.current_video, VIDEO)
        self.assertEqual(loaded.current_segment_index, 1)
        self.assertEqual(loaded.config.max_segment_duration_seconds, 1800)

        self.store.clear_run_state()
        self.assertIsNone(self.store.load_run_state())

    def test_total_processed(self):
        self.assertEqual(self.store.total_processed(), 0)
        self.store.increment_total_processed()
        self.assertEqual(self.store.increment_total_processed(2), 3)

    def test_video_results(self):
        self.store.start_video("r1", "v1", "First")
        self.store.start_video("r1", "v2", "Second")
        self.store.finish_video("r1", "v1", VideoStatus.COMPLETED, segment_count=2)
        self.store.finish_video("r1", "v2", VideoStatus.FAILED,
                                error_code=ErrorCode.TASK_TIMEOUT, error_message="timed out")

        results = self.store.get_video_results("r1")
        self.assertEqual([r.video_id for r in results], ["v1", "v2"])
        self.assertEqual(results[0].status, VideoStatus.COMPLETED)
        self.assertEqual(results[0].segment_count, 2)
        failed = self.store.get_video_result("r1", "v2")
        self.assertEqual(failed.error_code, ErrorCode.TASK_TIMEOUT)
        self.assertIsNone(self.store.get_video_result("r1", "v3"))

    def test_segment_results(self):
        self.store.record_segment(SegmentResult("r1", "v1", 1, 2700, 5400, attempts=2))
        self.store.record_segment(SegmentResult("r1", "v1", 0, 0, 2700, attempts=1, report_saved=1))
        self.store.record_segment(SegmentResult("r1", "v1", 1, 2700, 5400,
                                                status=SegmentStatus.FAILED, attempts=3))
        results = self.store.get_segment_results("r1", "v1")
        self.assertEqual([r.idx for r in results], [0, 1])
        self.assertEqual(results[1].status, SegmentStatus.FAILED)
        self.assertEqual(results[1].attempts, 3)


class TestRunState(unittest.TestCase):

    def test_staleness(self):
        state = RunState(last_updated=1000.0)
        self.assertFalse(state.is_stale(1000.0 + 1800, 1800))
        self.assertTrue(state.is_stale(1000.0 + 1801, 1800))


class TestConfig(unittest.TestCase):
    """Test JSON config validation."""

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.path = Path(self.tmpdir.name) / "config.json"

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_defaults(self):
        config = AppConfig(self.path)
        self.assertEqual(config.get('max_segment_duration_seconds'), MAX_SEGMENT_DURATION_SEC)
        self.assertEqual(config.get('per_task_timeout_ms'), 720_000)
        self.assertEqual(config.get('max_retries'), 3)
        self.assertFalse(config.get('reverse_order'))

    def test_set_clamps_and_saves(self):
        config = AppConfig(self.path)
        config.set('max_segment_duration_seconds', 10)
        self.assertEqual(config.get('max_segment_duration_seconds'), 300)
        config.set('max_retries', 99)
        self.assertEqual(config.get('max_retries'), 10)
        saved = json.loads(self.path.read_text())
        self.assertEqual(saved['max_retries'], 10)

    def test_invalid_value_uses_default(self):
        config = AppConfig(self.path)
        config.set('per_task_timeout_ms', "soon")
        self.assertEqual(config.get('per_task_timeout_ms'), 720_000)

    def test_prompt_template_requires_url(self):
        config = AppConfig(self.path)
        config.set('prompt_template', "Summarise this")
        self.assertEqual(config.get('prompt_template'), DEFAULT_PROMPT_TEMPLATE)

    def test_stale_threshold_outlasts_task_timeout(self):
        self.path.write_text(json.dumps({'per_task_timeout_ms': 3_600_000,
                                         'stale_after_seconds': 60}))
        config = AppConfig(self.path)
        self.assertGreater(config.stale_after_seconds, 3600)

        config.set('per_task_timeout_ms', 60_000)
        config.set('stale_after_seconds', 60)
        self.assertGreater(config.stale_after_seconds * 1000, config.get('per_task_timeout_ms'))

    def test_load_validates_saved_values(self):
        self.path.write_text(json.dumps({'max_retries': 0, 'reverse_order': 1}))
        config = AppConfig(self.path)
        self.assertEqual(config.get('max_retries'), 1)
        self.assertIs(config.get('reverse_order'), True)

    def test_run_config_overrides(self):
        config = AppConfig(self.path)
        run_config = config.run_config(reverse_order=True, max_segment_duration_seconds=1800,
                                       per_task_timeout_ms=None)
        self.assertTrue(run_config.reverse_order)
        self.assertEqual(run_config.max_segment_duration_seconds, 1800)
        self.assertEqual(run_config.per_task_timeout_ms, 720_000)
        self.assertFalse(config.get('reverse_order'))


class TestURLParsing(unittest.TestCase):
    """Test queue ingestion."""

    def test_extract_video_id(self):
        self.assertEqual(extract_video_id("https://www.youtube.com/watch?v=dQw4w9WgXcQ&t=120"),
                         "dQw4w9WgXcQ")
        self.assertEqual(extract_video_id("https://youtu.be/dQw4w9WgXcQ"), "dQw4w9WgXcQ")
        self.assertEqual(extract_video_id("https://www.youtube.com/live/dQw4w9WgXcQ"), "dQw4w9WgXcQ")
        self.assertIsNone(extract_video_id("https://www.google.com"))
        self.assertFalse(is_youtube_url(""))

    def test_parse_duration(self):
        self.assertEqual(parse_duration(5400), 5400.0)
        self.assertEqual(parse_duration("5400"), 5400.0)
        self.assertEqual(parse_duration("1:30:00"), 5400.0)
        self.assertEqual(parse_duration("45:00"), 2700.0)
        self.assertEqual(parse_duration("PT1H30M"), 5400.0)
        self.assertIsNone(parse_duration(""))
        self.assertIsNone(parse_duration(None))
        self.assertIsNone(parse_duration(0))
        self.assertIsNone(parse_duration("soon"))

    def test_parse_duration_rejects_non_finite(self):
        for value in ("inf", "Infinity", "-inf", "nan", float('inf'), float('nan'), "1e400"):
            self.assertIsNone(parse_duration(value), value)
        job = build_video_job({'url': "https://youtu.be/dQw4w9WgXcQ", 'duration': "inf"})
        self.assertIsNone(job.known_duration_seconds)

    def test_json_infinity_duration_is_dropped(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "queue.json"
            path.write_text('[{"url": "https://youtu.be/dQw4w9WgXcQ", "duration": Infinity}]')
            jobs = parse_json_file(str(path))
        self.assertEqual(len(jobs), 1)
        self.assertIsNone(jobs[0].known_duration_seconds)

    def test_build_video_job(self):
        job = build_video_job({'url': "https://youtu.be/dQw4w9WgXcQ", 'duration': "PT10M"})
        self.assertEqual(job.id, "dQw4w9WgXcQ")
        self.assertEqual(job.title, "video_dQw4w9WgXcQ")
        self.assertEqual(job.known_duration_seconds, 600.0)

    def test_build_video_job_explicit_id(self):
        job = build_video_job({'id': "q-42", 'url': "https://example.com/v/42", 'title': "Talk"})
        self.assertEqual(job.id, "q-42")
        self.assertEqual(job.title, "Talk")

    def test_build_video_job_invalid(self):
        with self.assertRaises(JobError) as ctx:
            build_video_job({'url': "https://example.com"})
        self.assertEqual(ctx.exception.code, ErrorCode.INVALID_JOB)

    def test_build_video_jobs_skips_invalid(self):
        jobs = build_video_jobs([VIDEO, {'url': ""}, "not a dict",
                                 {'url': "https://youtu.be/abc123def45"}])
        self.assertEqual([j.id for j in jobs], ["dQw4w9WgXcQ", "abc123def45"])

    def test_parse_input_lines(self):
        text = """
        https://www.youtube.com/watch?v=dQw4w9WgXcQ
        https://youtu.be/abc123def45 | Keynote

        not a url
        https://www.youtube.com/watch?v=xyz789abc12\tPanel
        """
        jobs = parse_input_lines(text)
        self.assertEqual(len(jobs), 3)
        self.assertEqual(jobs[1].title, "Keynote")
        self.assertEqual(jobs[2].title, "Panel")

    def test_parse_csv_with_header(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "queue.csv"
            path.write_text("title,url,duration\n"
                            "Keynote,https://youtu.be/dQw4w9WgXcQ,1:30:00\n"
                            "Bad,https://example.com,10\n")
            jobs = parse_csv_file(str(path))
        self.assertEqual(len(jobs), 1)
        self.assertEqual(jobs[0].title, "Keynote")
        self.assertEqual(jobs[0].known_duration_seconds, 5400.0)

    def test_parse_json(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "queue.json"
            path.write_text(json.dumps({'videos': [
                {'id': "a1", 'url': "https://youtu.be/dQw4w9WgXcQ", 'title': "A", 'duration': 600},
                {'url': "nope"},
            ]}))
            jobs = parse_json_file(str(path))
            self.assertEqual([j.id for j in jobs], ["a1"])
            self.assertEqual(parse_input_file(str(path)), jobs)


class TestSecurityUtils(unittest.TestCase):
    """Test security utilities."""

    def test_sanitize_title(self):
        self.assertEqual(sanitize_title("Hello World"), "Hello World")
        result = sanitize_title('Video: "Test" <script>')
        self.assertNotIn('"', result)
        self.assertNotIn('<', result)
        self.assertNotIn('..', sanitize_title("../../../etc/passwd"))
        self.assertEqual(sanitize_title(""), "")

    def test_safe_output_path_traversal(self):
        root = Path("/tmp/test_output")
        result = safe_output_path(root, "../../etc/passwd", "abc123def45")
        self.assertTrue(str(result.resolve()).startswith(str(root.resolve())))

    def test_safe_output_path_empty_title(self):
        result = safe_output_path(Path("/tmp/test_output"), "", "abc123def45")
        self.assertIn("video_abc123def45", str(result))

    def test_token_provider_env(self):
        with mock.patch.dict(os.environ, {"TEST_AUTOMATOR_TOKEN": " secret "}):
            provider = TokenProvider(env_var="TEST_AUTOMATOR_TOKEN", use_keychain=False)
            self.assertEqual(provider.get_token(), "secret")

    def test_token_provider_missing(self):
        provider = TokenProvider(env_var="TEST_AUTOMATOR_TOKEN_UNSET", use_keychain=False)
        self.assertIsNone(provider.get_token())


class TestErrorCodes(unittest.TestCase):
    """Test error code handling."""

    def test_retryable_errors(self):
        self.assertTrue(is_retryable(ErrorCode.TASK_TIMEOUT))
        self.assertTrue(is_retryable(ErrorCode.CONTEXT_CREATE))
        self.assertTrue(is_retryable(ErrorCode.MEASURE_FAILED))

    def test_non_retryable_errors(self):
        self.assertFalse(is_retryable(ErrorCode.INVALID_JOB))
        self.assertFalse(is_retryable(ErrorCode.REPORT_SUBMIT))
        self.assertNotIn(ErrorCode.UNEXPECTED, RETRYABLE_ERRORS)

    def test_job_error_auto_retryable(self):
        self.assertTrue(JobError(ErrorCode.TASK_FAILED, "x").retryable)
        self.assertFalse(JobError(ErrorCode.INVALID_JOB, "x").retryable)
        self.assertFalse(JobError(ErrorCode.TASK_FAILED, "x", retryable=False).retryable)


class TestReports(unittest.TestCase):
    """Test report writing and submission."""

    def test_merge_reports(self):
        self.assertEqual(merge_reports([]), "")
        self.assertEqual(merge_reports(["  only  "]), "only")
        merged = merge_reports(["one", "two"])
        self.assertIn("## Part 1\n\none", merged)
        self.assertIn("## Part 2\n\ntwo", merged)

    def test_file_writer_segments_and_combined(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            writer = FileReportWriter(root)
            writer.submit(VIDEO, 0, "first half")
            writer.submit(VIDEO, 1, "second half")
            folder = root / "Test Video"
            self.assertTrue((folder / segment_report_name(VIDEO.id, 1)).exists())

            combined = writer.finalize_video(VIDEO, 2)
            text = combined.read_text()
            self.assertTrue(text.startswith("# Test Video"))
            self.assertLess(text.index("first half"), text.index("second half"))
            self.assertEqual(combined, folder / f"{VIDEO.id}.md")

    def test_file_writer_missing_segment(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            writer = FileReportWriter(Path(tmpdir))
            writer.submit(VIDEO, 0, "first half")
            self.assertIsNone(writer.finalize_video(VIDEO, 2))

    def _response(self, status, body=None):
        resp = mock.Mock()
        resp.status_code = status
        resp.text = json.dumps(body or {})
        resp.json.return_value = body or {}
        return resp

    def _client(self, *responses):
        session = mock.Mock()
        session.post.side_effect = list(responses)
        provider = mock.Mock()
        provider.get_token.return_value = "tok"
        return ApiReportClient("https://api.example.com/api/", provider, session), session

    def test_api_submit(self):
        client, session = self._client(self._response(201, {'id': "r1"}))
        self.assertEqual(client.submit(VIDEO, 1, "text"), {'id': "r1"})
        args, kwargs = session.post.call_args
        self.assertEqual(args[0], "https://api.example.com/api/reports")
        self.assertEqual(kwargs['headers']['Authorization'], "Bearer tok")
        body = json.loads(kwargs['data'])
        self.assertEqual(body['segmentIndex'], 1)
        self.assertEqual(body['contentMarkdown'], "text")

    @mock.patch("automator.core.report_sink.time.sleep")
    def test_api_rate_limit_backoff(self, sleep):
        client, session = self._client(self._response(429), self._response(200))
        client.submit(VIDEO, 0, "text")
        self.assertEqual(session.post.call_count, 2)
        sleep.assert_called_once()

    def test_api_auth_rejected(self):
        client, _ = self._client(self._response(401))
        with self.assertRaises(JobError) as ctx:
            client.submit(VIDEO, 0, "text")
        self.assertEqual(ctx.exception.code, ErrorCode.REPORT_SUBMIT)

    def test_api_without_token(self):
        provider = mock.Mock()
        provider.get_token.return_value = None
        client = ApiReportClient("https://api.example.com", provider, mock.Mock())
        with self.assertRaises(JobError):
            client.submit(VIDEO, 0, "text")

    def test_composite_continues_after_failure(self):
        class Failing(ReportSink):
            def submit(self, video, segment_index, text):
                raise OSError("disk full")

        recorded = mock.Mock(spec=ReportSink)
        sink = CompositeReportSink([Failing(), recorded])
        with self.assertRaises(OSError):
            sink.submit(VIDEO, 0, "text")
        recorded.submit.assert_called_once_with(VIDEO, 0, "text")


class TestBroadcast(unittest.TestCase):
    """Test best-effort progress broadcast."""

    def test_failing_listener_does_not_propagate(self):
        broadcaster = ProgressBroadcaster()
        received = []

        def bad(event):
            raise RuntimeError("window closed")

        broadcaster.subscribe(bad)
        broadcaster.subscribe(received.append)
        broadcaster.progress(1, 3, "working")
        self.assertEqual(len(received), 1)
        self.assertEqual(received[0].type, EventType.PROGRESS)

    def test_unsubscribe(self):
        broadcaster = ProgressBroadcaster()
        received = []
        unsubscribe = broadcaster.subscribe(received.append)
        unsubscribe()
        broadcaster.complete(3, 3, "done")
        self.assertEqual(received, [])


class TestPromptBuilding(unittest.TestCase):

    def test_format_timestamp(self):
        self.assertEqual(format_timestamp(95), "1:35")
        self.assertEqual(format_timestamp(5400), "1:30:00")

    def test_single_segment_has_no_range(self):
        prompt = build_prompt("Analyse {url}\n{range_hint}Done",
                              ProcessSegment(video=VIDEO, segment=Segment(0, 0, None)))
        self.assertEqual(prompt, f"Analyse {VIDEO.source_url}\nDone")

    def test_segment_range_hint(self):
        task = ProcessSegment(video=VIDEO, segment=Segment(1, 2700, 5400), segment_count=2)
        prompt = build_prompt(DEFAULT_PROMPT_TEMPLATE, task)
        self.assertIn(VIDEO.source_url, prompt)
        self.assertIn("from 45:00 to 1:30:00", prompt)
        self.assertIn("segment 2 of 2", prompt)


if __name__ == "__main__":
    unittest.main()
