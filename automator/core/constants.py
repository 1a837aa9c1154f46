"""
Shared constants for VideoIntelAutomator.
Single source of truth — imported by every other module.
"""

import pathlib

# ── Application identity ──────────────────────────────────────────────
APP_NAME = "VideoIntelAutomator"
APP_VERSION = "1.0.0"

# ── Filesystem paths ─────────────────────────────────────────────────
HOME = pathlib.Path.home()

DEFAULT_OUTPUT_ROOT = HOME / "Downloads" / "Video Reports"
APP_SUPPORT_DIR = HOME / "Library" / "Application Support" / APP_NAME
LOG_DIR = HOME / "Library" / "Logs" / APP_NAME
DB_PATH = APP_SUPPORT_DIR / "state.db"
CONFIG_PATH = APP_SUPPORT_DIR / "config.json"
DEFAULT_STORAGE_STATE_PATH = APP_SUPPORT_DIR / "browser_session.json"

# ── Keychain identifiers ─────────────────────────────────────────────
KEYCHAIN_SERVICE = "VideoIntelAutomator:ReportAPI"
KEYCHAIN_ACCOUNT = "default"
API_TOKEN_ENV_VAR = "AUTOMATOR_API_TOKEN"

# ── Run phases ────────────────────────────────────────────────────────
class RunPhase:
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    STOPPED = "STOPPED"
    FAILED = "FAILED"

# ── Per-video result status ───────────────────────────────────────────
class VideoStatus:
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    STOPPED = "STOPPED"

# ── Segment status ────────────────────────────────────────────────────
class SegmentStatus:
    DONE = "done"
    FAILED = "failed"

# ── Task outcome status ───────────────────────────────────────────────
class OutcomeStatus:
    SUCCESS = "success"
    ERROR = "error"
    TIMEOUT = "timeout"

# ── Broadcast event types ─────────────────────────────────────────────
class EventType:
    PROGRESS = "progress"
    LOG = "log"
    ERROR = "error"
    COMPLETE = "complete"

# ── Error codes ───────────────────────────────────────────────────────
class ErrorCode:
    # Non-retryable
    INVALID_JOB = "ERR_INVALID_JOB"
    ALREADY_RUNNING = "ERR_ALREADY_RUNNING"
    REPORT_SUBMIT = "ERR_REPORT_SUBMIT"
    UNEXPECTED = "ERR_UNEXPECTED"

    # Retryable
    MEASURE_FAILED = "ERR_MEASURE_FAILED"
    TASK_FAILED = "ERR_TASK_FAILED"
    TASK_TIMEOUT = "ERR_TASK_TIMEOUT"
    CONTEXT_CREATE = "ERR_CONTEXT_CREATE"
    CONTEXT_DESTROYED = "ERR_CONTEXT_DESTROYED"
    NETWORK_TRANSIENT = "ERR_NETWORK_TRANSIENT"

RETRYABLE_ERRORS = {
    ErrorCode.MEASURE_FAILED,
    ErrorCode.TASK_FAILED,
    ErrorCode.TASK_TIMEOUT,
    ErrorCode.CONTEXT_CREATE,
    ErrorCode.CONTEXT_DESTROYED,
    ErrorCode.NETWORK_TRANSIENT,
}

# ── Orchestration defaults ────────────────────────────────────────────
MAX_SEGMENT_DURATION_SEC = 2700          # 45 minutes
PER_TASK_TIMEOUT_MS = 720_000            # 12 minutes
MEASURE_TIMEOUT_MS = 60_000              # 1 minute
MAX_RETRIES = 3
RETRY_BASE_DELAY_SEC = 2.0               # 2s, 4s, 8s
INTER_SEGMENT_DELAY_SEC = 2.0
INTER_VIDEO_DELAY_SEC = 3.0
PAUSE_POLL_SEC = 1.0
STALE_AFTER_SEC = 1800                   # 30 minutes without a checkpoint

# ── Worker contexts ───────────────────────────────────────────────────
CONTEXT_READY_TIMEOUT_SEC = 30
CONTEXT_READY_POLL_SEC = 1.0
CONTEXT_SETTLE_SEC = 2.0
CONTEXT_JOIN_TIMEOUT_SEC = 10.0
CONTEXT_OPEN_GRACE_SEC = 5.0                # browser launch time on top of the ready wait
DEFAULT_ENTRY_URL = "https://aistudio.google.com/app/prompts/new_chat"

DEFAULT_PROMPT_TEMPLATE = (
    "Extract all key points of information from this video: {url}\n"
    "{range_hint}"
    "Focus specifically on AI-related concepts, technical innovations, and "
    "implementation details. Provide a dense, structured bulleted list of the "
    "key information in Markdown format."
)

DEFAULT_SELECTORS = {
    'prompt': "textarea",
    'run': "button[aria-label*='Run'], button:has-text('Run')",
    'response': "ms-chat-turn:last-of-type, [data-turn-role='Model']:last-of-type",
    'busy': "button[aria-label*='Stop']",
    'video': "video",
}

RESPONSE_STABLE_SEC = 5.0
RESPONSE_POLL_SEC = 1.0

# ── Report API ────────────────────────────────────────────────────────
DEFAULT_API_BASE_URL = "https://aivideointel.thenewfuse.com/api"
API_REQUEST_TIMEOUT_SEC = 30

# ── Misc ──────────────────────────────────────────────────────────────
YOUTUBE_URL_PATTERNS = [
    r'(?:https?://)?(?:www\.)?youtube\.com/watch\?v=([a-zA-Z0-9_-]{11})',
    r'(?:https?://)?youtu\.be/([a-zA-Z0-9_-]{11})',
    r'(?:https?://)?(?:www\.)?youtube\.com/embed/([a-zA-Z0-9_-]{11})',
    r'(?:https?://)?(?:www\.)?youtube\.com/v/([a-zA-Z0-9_-]{11})',
    r'(?:https?://)?(?:www\.)?youtube\.com/shorts/([a-zA-Z0-9_-]{11})',
    r'(?:https?://)?(?:www\.)?youtube\.com/live/([a-zA-Z0-9_-]{11})',
    r'(?:https?://)?m\.youtube\.com/watch\?v=([a-zA-Z0-9_-]{11})',
]

# Characters forbidden in folder names (macOS + safety)
UNSAFE_FILENAME_CHARS = r'[<>:"/\\|?*\x00-\x1f]'
MAX_FOLDER_NAME_LEN = 200
