"""
Time-based segment planning.
Splits a video into bounded time ranges only when it is longer than the
maximum segment length.
"""

import logging
import math

from automator.core.models import Segment

logger = logging.getLogger(__name__)


def needs_splitting(duration_sec: float | None, max_segment_sec: float) -> bool:
    """Check if a video is long enough to need more than one segment."""
    if not duration_sec or max_segment_sec <= 0:
        return False
    if not math.isfinite(duration_sec):
        return False
    return duration_sec > max_segment_sec


def plan(duration_sec: float | None, max_segment_sec: float) -> list[Segment]:
    """
    Plan the segments for a video.

    Unknown duration (None, 0 or non-finite) or one that fits in a single
    segment yields one open-ended segment covering the whole video.
    Otherwise strides of max_segment_sec from 0, with the last stride
    clamped to the duration.
    """
    if not needs_splitting(duration_sec, max_segment_sec):
        return [Segment(index=0, start_offset_seconds=0, end_offset_seconds=None)]

    segments = []
    idx = 0
    start = 0

    while start < duration_sec:
        end = min(start + max_segment_sec, duration_sec)
        segments.append(Segment(index=idx, start_offset_seconds=start, end_offset_seconds=end))
        idx += 1
        start = end

    logger.debug("Planned %d segments for %.0fs video", len(segments), duration_sec)
    return segments
