"""
Application configuration manager.
Stores settings in a JSON file under Application Support.
"""

import json
import logging
from pathlib import Path

from automator.core.constants import (
    CONFIG_PATH, DEFAULT_OUTPUT_ROOT, DEFAULT_ENTRY_URL, DEFAULT_API_BASE_URL,
    DEFAULT_PROMPT_TEMPLATE, DEFAULT_STORAGE_STATE_PATH,
    MAX_SEGMENT_DURATION_SEC, PER_TASK_TIMEOUT_MS, MEASURE_TIMEOUT_MS,
    MAX_RETRIES, RETRY_BASE_DELAY_SEC, INTER_SEGMENT_DELAY_SEC,
    INTER_VIDEO_DELAY_SEC, PAUSE_POLL_SEC, STALE_AFTER_SEC,
    CONTEXT_READY_TIMEOUT_SEC,
)
from automator.core.models import RunConfig

logger = logging.getLogger(__name__)

# Validation bounds: key -> (type, min, max, default)
_NUMERIC_BOUNDS = {
    'max_segment_duration_seconds': (int, 300, 7200, MAX_SEGMENT_DURATION_SEC),
    'per_task_timeout_ms': (int, 60_000, 3_600_000, PER_TASK_TIMEOUT_MS),
    'measure_timeout_ms': (int, 5_000, 600_000, MEASURE_TIMEOUT_MS),
    'max_retries': (int, 1, 10, MAX_RETRIES),
    'retry_base_delay_seconds': (float, 0, 60, RETRY_BASE_DELAY_SEC),
    'inter_segment_delay_seconds': (float, 0, 300, INTER_SEGMENT_DELAY_SEC),
    'inter_video_delay_seconds': (float, 0, 300, INTER_VIDEO_DELAY_SEC),
    'pause_poll_seconds': (float, 0.05, 10, PAUSE_POLL_SEC),
    'context_ready_timeout_seconds': (float, 1, 300, CONTEXT_READY_TIMEOUT_SEC),
    'stale_after_seconds': (int, 60, 7 * 24 * 3600, STALE_AFTER_SEC),
}

_BOOL_KEYS = {'reverse_order', 'headless', 'write_combined_report', 'submit_reports_to_api'}

_DEFAULTS = {
    'max_segment_duration_seconds': MAX_SEGMENT_DURATION_SEC,
    'per_task_timeout_ms': PER_TASK_TIMEOUT_MS,
    'measure_timeout_ms': MEASURE_TIMEOUT_MS,
    'max_retries': MAX_RETRIES,
    'retry_base_delay_seconds': RETRY_BASE_DELAY_SEC,
    'inter_segment_delay_seconds': INTER_SEGMENT_DELAY_SEC,
    'inter_video_delay_seconds': INTER_VIDEO_DELAY_SEC,
    'pause_poll_seconds': PAUSE_POLL_SEC,
    'context_ready_timeout_seconds': CONTEXT_READY_TIMEOUT_SEC,
    'stale_after_seconds': STALE_AFTER_SEC,
    'reverse_order': False,
    'entry_url': DEFAULT_ENTRY_URL,
    'headless': False,
    'browser_channel': None,
    'storage_state_path': str(DEFAULT_STORAGE_STATE_PATH),
    'output_root': str(DEFAULT_OUTPUT_ROOT),
    'write_combined_report': True,
    'api_base_url': DEFAULT_API_BASE_URL,
    'submit_reports_to_api': False,
    'prompt_template': DEFAULT_PROMPT_TEMPLATE,
    'selectors': {},
}


class AppConfig:
    """Manages application configuration stored as JSON."""

    def __init__(self, config_path: Path | None = None):
        self.path = config_path or CONFIG_PATH
        self._data: dict = {}
        self.load()

    def load(self):
        """Load config from disk, merging with defaults."""
        self._data = dict(_DEFAULTS)
        if self.path.exists():
            try:
                with open(self.path, 'r') as f:
                    saved = json.load(f)
                for key, value in saved.items():
                    self._data[key] = self._validate(key, value)
            except Exception as e:
                logger.warning("Failed to load config: %s", e)
        self._enforce_staleness()

    def save(self):
        """Persist config to disk."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w') as f:
            json.dump(self._data, f, indent=2)

    def get(self, key: str, default=None):
        return self._data.get(key, default)

    def set(self, key: str, value):
        value = self._validate(key, value)
        self._data[key] = value
        self._enforce_staleness()
        self.save()

    def _validate(self, key: str, value):
        """Validate and coerce config values to safe ranges."""
        if key in _NUMERIC_BOUNDS:
            kind, low, high, default = _NUMERIC_BOUNDS[key]
            try:
                value = kind(value)
            except (TypeError, ValueError):
                logger.warning("Invalid %s %r — using default", key, value)
                return default
            return max(low, min(high, value))

        if key in _BOOL_KEYS:
            return bool(value)

        if key == 'selectors':
            if not isinstance(value, dict):
                logger.warning("Invalid selectors %r — using defaults", value)
                return {}
            return {str(k): str(v) for k, v in value.items()}

        if key == 'prompt_template':
            if not isinstance(value, str) or '{url}' not in value:
                logger.warning("prompt_template must contain {url} — using default")
                return DEFAULT_PROMPT_TEMPLATE

        return value

    def _enforce_staleness(self):
        """A run is only treated as abandoned after its longest task could have ended."""
        min_stale = self._data['per_task_timeout_ms'] // 1000 + 60
        if self._data['stale_after_seconds'] < min_stale:
            logger.warning("stale_after_seconds %s is shorter than a task may run — raising to %d",
                           self._data['stale_after_seconds'], min_stale)
            self._data['stale_after_seconds'] = min_stale

    def as_dict(self) -> dict:
        return dict(self._data)

    def run_config(self, **overrides) -> RunConfig:
        """
        Per-run settings handed to Orchestrator.start().
        Overrides are validated like saved values but not persisted.
        """
        data = dict(self._data)
        for key, value in overrides.items():
            if value is not None:
                data[key] = self._validate(key, value)
        return RunConfig.from_dict(data)

    @property
    def output_root(self) -> Path:
        return Path(self._data.get('output_root', str(DEFAULT_OUTPUT_ROOT)))

    @property
    def storage_state_path(self) -> Path | None:
        value = self._data.get('storage_state_path')
        return Path(value) if value else None

    @property
    def stale_after_seconds(self) -> int:
        return self._data.get('stale_after_seconds', STALE_AFTER_SEC)
