"""
Data models (plain dataclasses) for VideoIntelAutomator.
"""

import time
from dataclasses import dataclass, field, asdict
from typing import Optional, Union

from automator.core.constants import (
    RunPhase, OutcomeStatus,
    MAX_SEGMENT_DURATION_SEC, PER_TASK_TIMEOUT_MS, MEASURE_TIMEOUT_MS,
    MAX_RETRIES, RETRY_BASE_DELAY_SEC, INTER_SEGMENT_DELAY_SEC,
    INTER_VIDEO_DELAY_SEC, PAUSE_POLL_SEC,
)


@dataclass(frozen=True)
class VideoJob:
    id: str
    source_url: str
    title: str
    known_duration_seconds: Optional[float] = None
    queue_id: Optional[str] = None   # backend queue row, when the queue came from the API

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "VideoJob":
        return cls(
            id=data['id'],
            source_url=data['source_url'],
            title=data.get('title') or f"video_{data['id']}",
            known_duration_seconds=data.get('known_duration_seconds'),
            queue_id=data.get('queue_id'),
        )


@dataclass(frozen=True)
class Segment:
    index: int
    start_offset_seconds: float
    end_offset_seconds: Optional[float] = None   # None = end of video

    @property
    def label(self) -> str:
        end = f"{self.end_offset_seconds:g}s" if self.end_offset_seconds is not None else "end"
        return f"{self.start_offset_seconds:g}s-{end}"


@dataclass
class RunConfig:
    max_segment_duration_seconds: int = MAX_SEGMENT_DURATION_SEC
    per_task_timeout_ms: int = PER_TASK_TIMEOUT_MS
    max_retries: int = MAX_RETRIES
    measure_timeout_ms: int = MEASURE_TIMEOUT_MS
    retry_base_delay_seconds: float = RETRY_BASE_DELAY_SEC
    inter_segment_delay_seconds: float = INTER_SEGMENT_DELAY_SEC
    inter_video_delay_seconds: float = INTER_VIDEO_DELAY_SEC
    pause_poll_seconds: float = PAUSE_POLL_SEC
    reverse_order: bool = False

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict | None) -> "RunConfig":
        known = {k: v for k, v in (data or {}).items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class RunState:
    """The orchestrator's single persisted view of the in-progress batch."""
    run_id: Optional[str] = None
    phase: str = RunPhase.IDLE
    is_running: bool = False
    is_paused: bool = False
    queue: list[VideoJob] = field(default_factory=list)
    current_video_index: int = 0
    current_video: Optional[VideoJob] = None
    current_segment_index: int = 0
    segment_count: int = 0
    total_count: int = 0
    config: RunConfig = field(default_factory=RunConfig)
    last_updated: float = field(default_factory=time.time)

    def is_stale(self, now: float, stale_after_sec: float) -> bool:
        return now - self.last_updated > stale_after_sec

    def to_dict(self) -> dict:
        return {
            'run_id': self.run_id,
            'phase': self.phase,
            'is_running': self.is_running,
            'is_paused': self.is_paused,
            'queue': [v.to_dict() for v in self.queue],
            'current_video_index': self.current_video_index,
            'current_video': self.current_video.to_dict() if self.current_video else None,
            'current_segment_index': self.current_segment_index,
            'segment_count': self.segment_count,
            'total_count': self.total_count,
            'config': self.config.to_dict(),
            'last_updated': self.last_updated,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RunState":
        current = data.get('current_video')
        return cls(
            run_id=data.get('run_id'),
            phase=data.get('phase', RunPhase.IDLE),
            is_running=bool(data.get('is_running', False)),
            is_paused=bool(data.get('is_paused', False)),
            queue=[VideoJob.from_dict(v) for v in data.get('queue', [])],
            current_video_index=int(data.get('current_video_index', 0)),
            current_video=VideoJob.from_dict(current) if current else None,
            current_segment_index=int(data.get('current_segment_index', 0)),
            segment_count=int(data.get('segment_count', 0)),
            total_count=int(data.get('total_count', 0)),
            config=RunConfig.from_dict(data.get('config')),
            last_updated=float(data.get('last_updated', 0.0)),
        )


# ── Tasks (sent to a worker context) ─────────────────────────────────

@dataclass(frozen=True)
class MeasureDuration:
    video: VideoJob


@dataclass(frozen=True)
class ProcessSegment:
    video: VideoJob
    segment: Segment
    segment_count: int = 1


Task = Union[MeasureDuration, ProcessSegment]


# ── Messages (posted back from a worker context) ─────────────────────

@dataclass(frozen=True)
class TaskCompleted:
    task_id: str
    payload: object = None


@dataclass(frozen=True)
class TaskFailed:
    task_id: str
    code: str
    message: str


TaskMessage = Union[TaskCompleted, TaskFailed]


@dataclass(frozen=True)
class TaskOutcome:
    status: str
    payload: object = None          # report text or measured duration, on success
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == OutcomeStatus.SUCCESS


# ── Broadcast ────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ProgressEvent:
    type: str
    current: int = 0
    total: int = 0
    message: str = ""
    video_id: Optional[str] = None
    segment_index: Optional[int] = None


# ── Persisted run history ─────────────────────────────────────────────

@dataclass
class VideoResult:
    run_id: str
    video_id: str
    title: Optional[str] = None
    status: str = "RUNNING"
    segment_count: int = 0
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None


@dataclass
class SegmentResult:
    run_id: str
    video_id: str
    idx: int
    start_sec: float
    end_sec: Optional[float]
    status: str = "done"
    attempts: int = 0
    report_saved: int = 0
    error_code: Optional[str] = None
    error_message: Optional[str] = None
