"""
Report paths and credentials.

Report folders are named after video titles, which are untrusted input, so
every folder is confined to the output root. The report API token is read
from the environment first and then from the macOS Keychain via the
`security` CLI (argument arrays only, never a shell).
"""

import os
import re
import subprocess
import pathlib
import logging

from automator.core.constants import (
    UNSAFE_FILENAME_CHARS,
    MAX_FOLDER_NAME_LEN,
    KEYCHAIN_SERVICE,
    KEYCHAIN_ACCOUNT,
    API_TOKEN_ENV_VAR,
)

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(UNSAFE_FILENAME_CHARS)
_RUNS = re.compile(r'[_\s]+')
_KEYCHAIN_TIMEOUT_SEC = 10


# ── Report folders ────────────────────────────────────────────────────

def sanitize_title(title: str) -> str:
    """Turn a video title into a folder name; '' when nothing usable is left."""
    if not title:
        return ""
    name = _UNSAFE.sub('_', title).replace('..', '')
    name = _RUNS.sub(' ', name).strip()
    return name[:MAX_FOLDER_NAME_LEN].rstrip().strip('.')


def safe_output_path(output_root: pathlib.Path, title: str, video_id: str) -> pathlib.Path:
    """
    Folder for a video's reports under `output_root`.
    Uses 'video_<id>' when the title is empty or would escape the root.
    """
    fallback = output_root / f"video_{video_id}"
    name = sanitize_title(title)
    if not name:
        return fallback

    candidate = output_root / name
    root = output_root.resolve(strict=False)
    if not candidate.resolve(strict=False).is_relative_to(root):
        logger.warning("Report folder for %s would escape the output root — using %s",
                       video_id, fallback.name)
        return fallback
    return candidate


# ── Keychain ──────────────────────────────────────────────────────────

def _security(*args: str) -> subprocess.CompletedProcess:
    """Run the macOS `security` tool with an argument array."""
    return subprocess.run(["security", *args], shell=False, capture_output=True,
                          text=True, timeout=_KEYCHAIN_TIMEOUT_SEC)


def keychain_get_api_token(service: str = KEYCHAIN_SERVICE,
                           account: str = KEYCHAIN_ACCOUNT) -> str | None:
    """Report API token stored in the Keychain, or None."""
    try:
        result = _security("find-generic-password", "-s", service, "-a", account, "-w")
    except (subprocess.TimeoutExpired, FileNotFoundError):
        return None
    except OSError as e:
        logger.warning("Keychain read failed: %s", type(e).__name__)
        return None
    token = result.stdout.strip()
    return token if result.returncode == 0 and token else None


def keychain_set_api_token(token: str, service: str = KEYCHAIN_SERVICE,
                           account: str = KEYCHAIN_ACCOUNT) -> bool:
    """Store (or replace, via -U) the report API token in the Keychain."""
    try:
        result = _security("add-generic-password", "-s", service, "-a", account,
                           "-w", token, "-U")
    except (subprocess.TimeoutExpired, OSError) as e:
        logger.error("Keychain write failed: %s", type(e).__name__)
        return False
    return result.returncode == 0


class TokenProvider:
    """Supplies the bearer token for the report API."""

    def __init__(self, env_var: str = API_TOKEN_ENV_VAR, use_keychain: bool = True):
        self.env_var = env_var
        self.use_keychain = use_keychain

    def get_token(self) -> str | None:
        token = os.environ.get(self.env_var, "").strip()
        if token:
            return token
        if self.use_keychain:
            return keychain_get_api_token()
        return None
