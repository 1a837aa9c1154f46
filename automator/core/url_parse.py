"""
Queue ingestion: turns pasted text or input files into VideoJobs.
Accepts one URL per line, CSV with url/title/duration/id columns, or a JSON
list of {id, url, title, duration} objects.
"""

import csv
import json
import logging
import math
import re
from urllib.parse import urlparse, parse_qs

from automator.core.constants import YOUTUBE_URL_PATTERNS
from automator.core.error_codes import JobError, ErrorCode
from automator.core.models import VideoJob

logger = logging.getLogger(__name__)

_ISO_DURATION = re.compile(r'^P(?:(\d+)D)?T?(?:(\d+)H)?(?:(\d+)M)?(?:(\d+(?:\.\d+)?)S)?$')


def extract_video_id(url: str) -> str | None:
    """
    Extract the 11-character video_id from a YouTube URL.
    Returns None if the URL is not a valid YouTube URL.
    """
    url = url.strip()
    if not url:
        return None

    for pattern in YOUTUBE_URL_PATTERNS:
        m = re.search(pattern, url)
        if m:
            return m.group(1)

    # Fallback: parse query string for 'v' parameter
    parsed = urlparse(url)
    if 'youtube.com' in parsed.netloc or 'youtu.be' in parsed.netloc:
        v = parse_qs(parsed.query).get('v', [None])[0]
        if v and re.match(r'^[a-zA-Z0-9_-]{11}$', v):
            return v

    return None


def is_youtube_url(url: str) -> bool:
    """Quick check if a string looks like a YouTube URL."""
    return extract_video_id(url) is not None


def parse_duration(value) -> float | None:
    """
    Parse a duration given as seconds, 'HH:MM:SS' / 'MM:SS', or ISO-8601
    ('PT1H2M3S'). Returns None for empty, unparseable, non-positive or
    non-finite input.
    """
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return _usable(float(value))

    text = str(value).strip()
    if not text:
        return None
    try:
        return _usable(float(text))
    except ValueError:
        pass

    if ':' in text:
        try:
            parts = [float(p) for p in text.split(':')]
        except ValueError:
            return None
        seconds = 0.0
        for part in parts:
            seconds = seconds * 60 + part
        return _usable(seconds)

    m = _ISO_DURATION.match(text.upper())
    if m and any(m.groups()):
        days, hours, minutes, secs = (float(g) if g else 0.0 for g in m.groups())
        return _usable(days * 86400 + hours * 3600 + minutes * 60 + secs)

    return None


def _usable(seconds: float) -> float | None:
    # 'inf', 'nan' and JSON Infinity all parse as floats
    return seconds if math.isfinite(seconds) and seconds > 0 else None


def build_video_job(descriptor: dict) -> VideoJob:
    """
    Build a VideoJob from {id?, url, title?, duration?}.
    Raises JobError if no id can be determined.
    """
    url = str(descriptor.get('url') or descriptor.get('source_url') or '').strip()
    if not url:
        raise JobError(ErrorCode.INVALID_JOB, f"Missing url in {descriptor!r}")

    video_id = str(descriptor.get('id') or '').strip() or extract_video_id(url)
    if not video_id:
        raise JobError(ErrorCode.INVALID_JOB, f"Not a valid YouTube URL: {url}")

    duration = descriptor.get('duration', descriptor.get('known_duration_seconds'))
    return VideoJob(
        id=video_id,
        source_url=url,
        title=str(descriptor.get('title') or '').strip() or f"video_{video_id}",
        known_duration_seconds=parse_duration(duration),
        queue_id=descriptor.get('queue_id') or descriptor.get('queueId'),
    )


def build_video_jobs(descriptors: list) -> list[VideoJob]:
    """Coerce a mixed list of VideoJobs and dicts, skipping invalid entries."""
    jobs = []
    for item in descriptors:
        if isinstance(item, VideoJob):
            jobs.append(item)
            continue
        try:
            jobs.append(build_video_job(item))
        except (JobError, AttributeError) as e:
            logger.warning("Skipping invalid queue entry: %s", e)
    return jobs


def parse_input_lines(text: str) -> list[VideoJob]:
    """
    Parse pasted text into VideoJobs.
    - Trims whitespace
    - Ignores empty lines
    - Rejects non-YouTube URLs (silently skips)
    - Anything after the URL (tab or ' | ') is used as the title
    """
    jobs = []
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        url, title = _split_line(line)
        video_id = extract_video_id(url)
        if video_id:
            jobs.append(VideoJob(id=video_id, source_url=url,
                                 title=title or f"video_{video_id}"))
    return jobs


def _split_line(line: str) -> tuple[str, str]:
    parts = re.split(r'\t|\s\|\s', line, maxsplit=1)
    if len(parts) == 2:
        return parts[0].strip(), parts[1].strip()
    return line, ''


def parse_csv_file(filepath: str) -> list[VideoJob]:
    """
    Parse a CSV file into VideoJobs.
    - Recognised header columns (case-insensitive): url/youtube_url, title,
      duration/duration_seconds, id/video_id
    - Without a header, the first column is the URL
    - Rows without a valid YouTube URL are ignored
    """
    with open(filepath, 'r', encoding='utf-8', errors='replace') as f:
        rows = list(csv.reader(f))

    if not rows:
        return []

    header = [c.strip().lower() for c in rows[0]]
    columns = {}
    for i, col in enumerate(header):
        if col in ('url', 'youtube_url'):
            columns['url'] = i
        elif col == 'title':
            columns['title'] = i
        elif col in ('duration', 'duration_seconds'):
            columns['duration'] = i
        elif col in ('id', 'video_id'):
            columns['id'] = i

    if 'url' in columns:
        rows = rows[1:]
    else:
        columns = {'url': 0}
        if rows[0] and not is_youtube_url(rows[0][0].strip()):
            rows = rows[1:]  # assume header, skip

    descriptors = []
    for row in rows:
        descriptor = {key: row[idx].strip() for key, idx in columns.items() if idx < len(row)}
        if is_youtube_url(descriptor.get('url', '')):
            descriptors.append(descriptor)

    return build_video_jobs(descriptors)


def parse_json_file(filepath: str) -> list[VideoJob]:
    """Parse a JSON list of {id, url, title, duration} objects."""
    with open(filepath, 'r', encoding='utf-8') as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get('videos') or data.get('queue') or []
    if not isinstance(data, list):
        raise JobError(ErrorCode.INVALID_JOB, f"Expected a list of videos in {filepath}")
    return build_video_jobs(data)


def parse_txt_file(filepath: str) -> list[VideoJob]:
    """Parse a .txt file containing one URL per line."""
    with open(filepath, 'r', encoding='utf-8', errors='replace') as f:
        return parse_input_lines(f.read())


def parse_input_file(filepath: str) -> list[VideoJob]:
    """Parse a .txt, .csv or .json file into VideoJobs."""
    ext = filepath.lower().rsplit('.', 1)[-1] if '.' in filepath else ''
    if ext == 'csv':
        return parse_csv_file(filepath)
    if ext == 'json':
        return parse_json_file(filepath)
    return parse_txt_file(filepath)
