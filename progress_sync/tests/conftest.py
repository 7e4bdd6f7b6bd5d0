"""Pytest fixtures for progress sync tests."""

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import httpx
import pytest
import pytest_asyncio

from progress_sync.client import SyncClient
from progress_sync.curriculum import curriculum_from_dict
from progress_sync.database import create_engine_for
from progress_sync.engine import ProgressSyncEngine
from progress_sync.enums import UnlockPolicy
from progress_sync.outbox import OutboxStore
from progress_sync.scheduler import RetryScheduler
from progress_sync.store import ProgressStore

BASE_URL = "http://progress.test/api"


SAMPLE_CURRICULUM = {
    "levels": [
        {"id": "beginner", "title": "Beginner"},
        {"id": "intermediate", "title": "Intermediate"},
        {"id": "advanced", "title": "Advanced"},
    ],
    "modules": [
        {
            "id": "M",
            "level": "beginner",
            "order": 1,
            "title": "Respiratory physiology",
            "lessons": [
                {"id": "L1", "order": 1, "sections": 2},
                {"id": "L2", "order": 2, "sections": 3},
                {"id": "L3", "order": 3, "sections": 1},
            ],
        },
        {
            # Only a placeholder: never blocks the level
            "id": "M-intro",
            "level": "beginner",
            "order": 2,
            "lessons": [
                {"id": "welcome", "order": 1, "sections": [], "allowEmpty": True},
            ],
        },
        {
            "id": "I1",
            "level": "intermediate",
            "order": 1,
            "lessons": [
                {"id": "I1-L1", "order": 1, "sections": 2},
                {"id": "I1-L2", "order": 2, "sections": 2},
            ],
        },
        {
            "id": "A1",
            "level": "advanced",
            "order": 1,
            "lessons": [{"id": "A1-L1", "order": 1, "sections": 1}],
        },
    ],
}


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class FakeProgressServer:
    """In-memory server of record with last-writer-wins by clientUpdatedAt.

    Time deltas are added once per clientEventId, so replaying an event is
    harmless.
    """

    def __init__(self):
        self.records: dict[tuple[str, str], dict] = {}
        self.seen_event_ids: set[str] = set()
        self.requests: list[httpx.Request] = []
        self.missing_lessons: set[str] = set()
        self.offline = False
        # Queued canned failures: (status, body), consumed one per request
        self._failures: list[tuple[int, dict | str]] = []

    def fail_next(self, status: int, body: dict | str | None = None, times: int = 1):
        for _ in range(times):
            self._failures.append((status, body or {"error": {"message": f"HTTP {status}"}}))

    def requests_to(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    def _upsert(self, item: dict) -> tuple[dict, bool]:
        key = (item["moduleId"], item["lessonId"])
        existing = self.records.get(key)
        incoming_ts = _parse_ts(item.get("clientUpdatedAt"))

        event_id = item.get("clientEventId")
        first_delivery = event_id is None or event_id not in self.seen_event_ids
        if event_id:
            self.seen_event_ids.add(event_id)

        time_spent = existing["timeSpent"] if existing else 0
        if first_delivery:
            time_spent += item.get("timeSpentDelta", 0)

        if existing and _parse_ts(existing["clientUpdatedAt"]) > incoming_ts:
            existing["timeSpent"] = time_spent
            return existing, False

        record = {
            "moduleId": item["moduleId"],
            "lessonId": item["lessonId"],
            "progress": item["progress"],
            "timeSpent": time_spent,
            "clientUpdatedAt": item["clientUpdatedAt"],
            "serverUpdatedAt": datetime.now(timezone.utc).isoformat(),
        }
        self.records[key] = record
        return record, True

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)

        if self.offline:
            raise httpx.ConnectError("Connection refused", request=request)

        if self._failures:
            status, body = self._failures.pop(0)
            if isinstance(body, str):
                return httpx.Response(status, text=body)
            return httpx.Response(status, json=body)

        path = request.url.path
        if request.method == "GET" and path == "/api/progress":
            module_id = request.url.params.get("moduleId")
            lesson_id = request.url.params.get("lessonId")
            records = [
                record
                for (m, l), record in self.records.items()
                if (module_id is None or m == module_id)
                and (lesson_id is None or l == lesson_id)
            ]
            return httpx.Response(200, json=records)

        if request.method == "PUT" and path == "/api/progress":
            item = json.loads(request.content)
            if item["lessonId"] in self.missing_lessons:
                return httpx.Response(404, json={"message": "Lesson not found"})
            record, _ = self._upsert(item)
            return httpx.Response(
                200,
                json={
                    "lessonProgress": record,
                    "moduleProgress": {"timeSpent": record["timeSpent"]},
                },
            )

        if request.method == "POST" and path == "/api/progress/sync":
            items = json.loads(request.content)
            merged = []
            records = []
            for item in items:
                if item["lessonId"] in self.missing_lessons:
                    continue
                record, was_merged = self._upsert(item)
                merged.append(
                    {
                        "moduleId": item["moduleId"],
                        "lessonId": item["lessonId"],
                        "merged": was_merged,
                    }
                )
                records.append(record)
            return httpx.Response(200, json={"merged": merged, "records": records})

        return httpx.Response(405, json={"error": "Method not allowed"})


@pytest.fixture
def fake_server():
    return FakeProgressServer()


@pytest_asyncio.fixture
async def http_client(fake_server):
    client = httpx.AsyncClient(transport=httpx.MockTransport(fake_server.handler))
    yield client
    await client.aclose()


@pytest.fixture
def sync_client(http_client):
    return SyncClient(BASE_URL, client=http_client)


@pytest.fixture
def outbox_db_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'outbox.db'}"


@pytest_asyncio.fixture
async def db_engine(outbox_db_url):
    engine = create_engine_for(outbox_db_url)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def outbox(db_engine):
    store = OutboxStore(db_engine)
    await store.initialize()
    return store


@pytest.fixture
def curriculum():
    return curriculum_from_dict(SAMPLE_CURRICULUM)


@pytest.fixture
def mock_scheduler():
    """RetryScheduler over a MagicMock APScheduler; jobs never fire on their own."""
    return RetryScheduler(MagicMock())


@pytest.fixture
def make_engine(outbox, sync_client, curriculum, mock_scheduler):
    """Build an engine wired to the fake server and a temp SQLite outbox."""

    def _make(online: bool = True, **kwargs) -> ProgressSyncEngine:
        options = {
            "online": online,
            "unlock_policy": UnlockPolicy.module_sequential,
            "batch_size": 25,
            "max_outbox_attempts": 3,
            "confirmation_max_age": timedelta(days=7),
        }
        options.update(kwargs)
        return ProgressSyncEngine(
            store=ProgressStore(curriculum),
            outbox=outbox,
            client=sync_client,
            curriculum=curriculum,
            scheduler=mock_scheduler,
            **options,
        )

    return _make
