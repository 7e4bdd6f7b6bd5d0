"""Root pytest configuration."""

from pathlib import Path

import pytest
from dotenv import load_dotenv

# Load environment variables before tests run
_root = Path(__file__).parent
load_dotenv(_root / ".env")
load_dotenv(_root / ".env.local", override=True)


@pytest.fixture(scope="session")
def event_loop_policy():
    """Use default event loop policy for all async tests."""
    import asyncio

    return asyncio.DefaultEventLoopPolicy()


@pytest.fixture(autouse=True)
def isolated_outbox_url(tmp_path, monkeypatch):
    """Never let a test touch the real outbox in ~/.progress_sync."""
    monkeypatch.setenv(
        "PROGRESS_OUTBOX_DATABASE_URL",
        f"sqlite+aiosqlite:///{tmp_path / 'default-outbox.db'}",
    )
    monkeypatch.delenv("SENTRY_DSN", raising=False)
