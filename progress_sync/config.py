"""
Centralized configuration for the progress sync engine.

Provides environment-aware settings so the engine, the operator scripts
and the tests read the same values the same way.
"""

import os
import re
from pathlib import Path

from .enums import UnlockPolicy

DEFAULT_API_URL = "http://localhost:3001/api"
DEFAULT_OUTBOX_DIR = Path.home() / ".progress_sync"


def is_dev_mode() -> bool:
    """Check if running in development mode (DEV_MODE env)."""
    return os.getenv("DEV_MODE", "").lower() in ("true", "1", "yes")


def _get_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


def get_api_base_url() -> str:
    """
    Get the server-of-record base URL.

    The progress routes live under /api; the segment is appended when the
    configured URL does not already contain it.
    """
    url = os.getenv("PROGRESS_API_URL", DEFAULT_API_URL).rstrip("/")
    if not re.search(r"/api(/|$)", url):
        url = f"{url}/api"
    return url


def get_request_timeout() -> float:
    """Get the per-request timeout in seconds."""
    raw = os.getenv("PROGRESS_REQUEST_TIMEOUT_S", "10")
    try:
        timeout = float(raw)
    except ValueError:
        raise ValueError(f"PROGRESS_REQUEST_TIMEOUT_S must be a number, got {raw!r}")
    if timeout <= 0:
        raise ValueError("PROGRESS_REQUEST_TIMEOUT_S must be positive")
    return timeout


def get_outbox_database_url() -> str:
    """Get the async SQLAlchemy URL of the durable outbox."""
    url = os.getenv("PROGRESS_OUTBOX_DATABASE_URL")
    if url:
        return url
    return f"sqlite+aiosqlite:///{DEFAULT_OUTBOX_DIR / 'outbox.db'}"


def get_sync_batch_size() -> int:
    """Get the max number of events sent per bulk sync request."""
    return _get_int("PROGRESS_SYNC_BATCH_SIZE", 25, minimum=1)


def get_max_outbox_attempts() -> int:
    """Get how many replays a not-found event gets before it is dropped."""
    return _get_int("PROGRESS_MAX_OUTBOX_ATTEMPTS", 5, minimum=1)


def get_confirmation_max_age_days() -> int:
    """Get how long confirmation records are retained."""
    return _get_int("PROGRESS_CONFIRMATION_MAX_AGE_DAYS", 7, minimum=0)


def get_unlock_policy() -> UnlockPolicy:
    """Get the lesson unlock policy (module_sequential by default)."""
    raw = os.getenv("PROGRESS_UNLOCK_POLICY", UnlockPolicy.module_sequential.value)
    try:
        return UnlockPolicy(raw.lower())
    except ValueError:
        valid = ", ".join(p.value for p in UnlockPolicy)
        raise ValueError(f"PROGRESS_UNLOCK_POLICY must be one of: {valid}")


def get_curriculum_path() -> Path | None:
    """Get the path of the YAML curriculum definition, if configured."""
    path = os.getenv("PROGRESS_CURRICULUM_PATH")
    return Path(path) if path else None


def get_sentry_dsn() -> str | None:
    """Get the Sentry DSN, if error reporting is enabled."""
    return os.getenv("SENTRY_DSN") or None


# Format: (name, description, required_in_dev)
REQUIRED_ENV_VARS = [
    ("PROGRESS_API_URL", "Server of record base URL", False),
    ("PROGRESS_CURRICULUM_PATH", "Curriculum YAML definition", True),
    ("SENTRY_DSN", "Sentry error reporting", False),
]


def check_required_env_vars() -> tuple[bool, list[str]]:
    """
    Check that required environment variables are set.

    Returns:
        (all_ok, warnings): Tuple of success flag and list of warning messages
    """
    warnings = []
    errors = []
    in_dev = is_dev_mode()

    for name, description, required_in_dev in REQUIRED_ENV_VARS:
        if os.environ.get(name):
            continue
        if required_in_dev:
            errors.append(f"  ✗ {name}: Not set ({description})")
        elif not in_dev:
            warnings.append(f"  ⚠ {name}: Not set ({description})")

    if errors:
        return False, errors + warnings

    return True, warnings
