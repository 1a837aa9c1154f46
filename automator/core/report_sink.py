"""
Report persistence.

A ReportSink receives the text produced for one segment. Sinks:
- FileReportWriter: <OutputRoot>/<SanitizedTitle>/<video_id>_segNN.md, plus a
  combined <video_id>.md once every segment of the video is in.
- ApiReportClient: POST {api_base}/reports with a bearer token.
- CompositeReportSink: fan-out to several sinks.
"""

import json
import logging
import random
import time
from pathlib import Path

import requests

from automator.core.constants import (
    ErrorCode, DEFAULT_API_BASE_URL, API_REQUEST_TIMEOUT_SEC,
)
from automator.core.error_codes import JobError
from automator.core.models import VideoJob
from automator.core.security_utils import safe_output_path, TokenProvider

logger = logging.getLogger(__name__)


class ReportSink:
    """External 'persist report' operation keyed by (video, segment index)."""

    def submit(self, video: VideoJob, segment_index: int, text: str):
        raise NotImplementedError

    def finalize_video(self, video: VideoJob, segment_count: int):
        """Called once every segment of `video` has been submitted."""


# ── Filesystem ────────────────────────────────────────────────────────

def segment_report_name(video_id: str, segment_index: int) -> str:
    return f"{video_id}_seg{segment_index:02d}.md"


def merge_reports(texts: list[str], titles: list[str] | None = None) -> str:
    """
    Merge segment reports in order.
    With more than one part, each part gets its own heading.
    """
    texts = [t.strip() for t in texts if t and t.strip()]
    if not texts:
        return ""
    if len(texts) == 1:
        return texts[0]

    parts = []
    for i, text in enumerate(texts):
        heading = titles[i] if titles and i < len(titles) else f"Part {i + 1}"
        parts.append(f"## {heading}\n\n{text}")
    return "\n\n".join(parts)


class FileReportWriter(ReportSink):
    """Writes Markdown reports under the output root."""

    def __init__(self, output_root: Path, write_combined: bool = True):
        self.output_root = Path(output_root)
        self.write_combined = write_combined

    def folder_for(self, video: VideoJob) -> Path:
        return safe_output_path(self.output_root, video.title, video.id)

    def submit(self, video: VideoJob, segment_index: int, text: str) -> Path:
        folder = self.folder_for(video)
        folder.mkdir(parents=True, exist_ok=True)

        output_file = folder / segment_report_name(video.id, segment_index)
        output_file.write_text(text, encoding='utf-8')

        logger.info("Wrote report: %s", output_file)
        return output_file

    def finalize_video(self, video: VideoJob, segment_count: int) -> Path | None:
        if not self.write_combined:
            return None

        folder = self.folder_for(video)
        texts = []
        for idx in range(segment_count):
            part = folder / segment_report_name(video.id, idx)
            if not part.exists():
                logger.warning("Missing segment report: %s", part)
                return None
            texts.append(part.read_text(encoding='utf-8'))

        merged = merge_reports(texts)
        combined = folder / f"{video.id}.md"
        combined.write_text(f"# {video.title}\n\n{merged}\n", encoding='utf-8')
        logger.info("Wrote combined report: %s", combined)
        return combined


# ── Report API ────────────────────────────────────────────────────────

_MAX_RATE_LIMIT_RETRIES = 3
_RATE_LIMIT_BASE_DELAY = 2.0   # seconds, doubled each retry with jitter


class ApiReportClient(ReportSink):
    """Submits segment reports to the backend report endpoint."""

    def __init__(self, base_url: str = DEFAULT_API_BASE_URL,
                 token_provider: TokenProvider | None = None,
                 session: requests.Session | None = None,
                 timeout_sec: int = API_REQUEST_TIMEOUT_SEC):
        self.base_url = base_url.rstrip('/')
        self.token_provider = token_provider or TokenProvider()
        self.session = session or requests.Session()
        self.timeout_sec = timeout_sec

    def submit(self, video: VideoJob, segment_index: int, text: str) -> dict:
        token = self.token_provider.get_token()
        if not token:
            raise JobError(ErrorCode.REPORT_SUBMIT, "No API token available — report not submitted")

        body = {
            'videoQueueId': video.queue_id or video.id,
            'segmentIndex': segment_index,
            'contentMarkdown': text,
            'contentJson': {},
        }
        headers = {
            'Authorization': f"Bearer {token}",
            'Content-Type': 'application/json',
        }

        for attempt in range(_MAX_RATE_LIMIT_RETRIES + 1):
            try:
                resp = self.session.post(
                    f"{self.base_url}/reports",
                    headers=headers,
                    data=json.dumps(body),
                    timeout=self.timeout_sec,
                )
            except requests.exceptions.Timeout:
                raise JobError(ErrorCode.NETWORK_TRANSIENT, "Report API request timed out")
            except requests.exceptions.ConnectionError:
                raise JobError(ErrorCode.NETWORK_TRANSIENT, "Network error connecting to report API")

            if resp.status_code == 429 and attempt < _MAX_RATE_LIMIT_RETRIES:
                # Exponential backoff with jitter: 2s, 4s, 8s (+/- 10%)
                delay = _RATE_LIMIT_BASE_DELAY * (2 ** attempt)
                delay *= 1 + random.uniform(-0.1, 0.1)
                logger.warning("Report API rate limited (429) — retrying in %.1fs (attempt %d/%d)",
                               delay, attempt + 1, _MAX_RATE_LIMIT_RETRIES)
                time.sleep(delay)
                continue

            if resp.status_code in (401, 403):
                raise JobError(ErrorCode.REPORT_SUBMIT, "Report API rejected the token")

            if resp.status_code not in (200, 201):
                error_body = resp.text[:300] if resp.text else "No response body"
                raise JobError(ErrorCode.REPORT_SUBMIT,
                               f"Report API returned {resp.status_code}: {error_body}")

            try:
                data = resp.json()
            except ValueError:
                data = {}
            logger.info("Report saved to API for %s segment %d", video.id, segment_index)
            return data

        raise JobError(ErrorCode.NETWORK_TRANSIENT,
                       f"Report API rate limited (429) after {_MAX_RATE_LIMIT_RETRIES} retries")


class CompositeReportSink(ReportSink):
    """
    Submits to every sink. One sink failing does not stop the others; the
    first failure is re-raised afterwards so the caller can log it.
    """

    def __init__(self, sinks: list[ReportSink]):
        self.sinks = list(sinks)

    def submit(self, video: VideoJob, segment_index: int, text: str):
        first_error = None
        for sink in self.sinks:
            try:
                sink.submit(video, segment_index, text)
            except Exception as e:
                logger.warning("%s failed for %s segment %d: %s",
                               type(sink).__name__, video.id, segment_index, e)
                first_error = first_error or e
        if first_error is not None:
            raise first_error

    def finalize_video(self, video: VideoJob, segment_count: int):
        for sink in self.sinks:
            try:
                sink.finalize_video(video, segment_count)
            except Exception as e:
                logger.warning("%s could not finalize %s: %s", type(sink).__name__, video.id, e)
