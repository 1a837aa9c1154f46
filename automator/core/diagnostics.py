"""
Diagnostics: browser tooling and credential checks.
"""

import logging
from datetime import datetime, timezone
from importlib import metadata
from pathlib import Path

from automator.core.constants import DEFAULT_STORAGE_STATE_PATH
from automator.core.security_utils import TokenProvider

logger = logging.getLogger(__name__)


def get_playwright_version() -> str:
    """Return the installed Playwright version, or an error message."""
    try:
        return metadata.version("playwright")
    except metadata.PackageNotFoundError:
        return "Not installed"
    except Exception as e:
        return f"Error: {e}"


def check_storage_state(storage_state_path: Path | None = None) -> dict:
    """Check if a saved browser session exists and return info."""
    path = Path(storage_state_path or DEFAULT_STORAGE_STATE_PATH)
    info = {"detected": False, "path": str(path), "last_modified": None}
    if path.exists():
        info["detected"] = True
        info["last_modified"] = datetime.fromtimestamp(
            path.stat().st_mtime, tz=timezone.utc
        ).isoformat()
    return info


def check_api_token(token_provider: TokenProvider | None = None) -> bool:
    provider = token_provider or TokenProvider()
    try:
        return bool(provider.get_token())
    except Exception as e:
        logger.warning("Token lookup failed: %s", e)
        return False


def get_diagnostics(storage_state_path: Path | None = None,
                    token_provider: TokenProvider | None = None) -> dict:
    """Gather all diagnostic information."""
    return {
        "playwright_version": get_playwright_version(),
        "storage_state": check_storage_state(storage_state_path),
        "api_token_configured": check_api_token(token_provider),
    }
