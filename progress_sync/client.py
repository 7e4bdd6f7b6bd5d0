"""
HTTP client for the progress server of record.

SyncClient is the only code that talks to the network. Every failure is
classified into the taxonomy in progress_sync.errors before it leaves this
module; callers never see httpx exceptions or raw response payloads.
"""

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx
from pydantic import ValidationError as PydanticValidationError

from .config import get_api_base_url, get_request_timeout
from .errors import (
    ClientError,
    NetworkError,
    NotFoundError,
    RateLimitedError,
    RecoverableServerError,
    ValidationError,
)
from .types import BulkItemResult, LessonProgress, OutboxEvent, SyncResult
from .wire import (
    BulkSyncResponse,
    LessonProgressRecord,
    ProgressPayload,
    UpsertResponse,
    extract_error,
)

logger = logging.getLogger(__name__)


@dataclass
class AuthContext:
    """Credentials attached to every request. Exactly one is normally set."""

    token: str | None = None
    user_id: str | None = None

    def headers(self) -> dict[str, str]:
        if self.token:
            return {"Authorization": f"Bearer {self.token}"}
        if self.user_id:
            return {"X-User-Id": str(self.user_id)}
        return {}


AuthProvider = Callable[[], Awaitable[AuthContext | None]]


def _parse_retry_after(response: httpx.Response, envelope_value: Any) -> float | None:
    raw = response.headers.get("Retry-After", envelope_value)
    if raw is None:
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        return None


def _response_payload(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


def classify_response(response: httpx.Response) -> None:
    """Raise the taxonomy error matching a non-2xx response.

    Returns without raising for 2xx responses.
    """
    status = response.status_code
    if 200 <= status < 300:
        return

    message, code, retry_after = extract_error(_response_payload(response))
    message = message or f"HTTP {status}"

    if status == 404:
        raise NotFoundError(message, status=status, code=code)
    if status == 429:
        raise RateLimitedError(
            message,
            status=status,
            code=code,
            retry_after=_parse_retry_after(response, retry_after),
        )
    if status >= 500:
        raise RecoverableServerError(message, status=status, code=code)
    raise ClientError(message, status=status, code=code)


class SyncClient:
    """Sends progress writes to, and reads progress from, the server of record."""

    def __init__(
        self,
        base_url: str | None = None,
        *,
        auth_provider: AuthProvider | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        """
        Args:
            base_url: API root (default: PROGRESS_API_URL)
            auth_provider: Async callable returning the current AuthContext
            timeout: Per-request timeout in seconds (default: PROGRESS_REQUEST_TIMEOUT_S)
            client: Pre-built httpx client (tests pass one with a MockTransport)
        """
        self._base_url = (base_url or get_api_base_url()).rstrip("/")
        self._auth_provider = auth_provider
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=timeout if timeout is not None else get_request_timeout()
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._auth_provider is not None:
            auth = await self._auth_provider()
            if auth is not None:
                headers.update(auth.headers())
        return headers

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        url = f"{self._base_url}{path}"
        try:
            headers = await self._headers()
        except Exception as e:
            # The request never left; treat it like any other undelivered write
            raise NetworkError(f"{method} {path} failed resolving credentials: {e}") from e

        try:
            response = await self._client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            # Timeouts, connection failures, protocol, decoding and redirect errors
            raise NetworkError(f"{method} {path} failed: {e}") from e

        classify_response(response)

        try:
            return response.json()
        except ValueError as e:
            raise RecoverableServerError(
                f"{method} {path} returned an unreadable body",
                status=response.status_code,
            ) from e

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def send_single(self, event: OutboxEvent) -> SyncResult:
        """Upsert one lesson's progress (PUT /progress).

        Raises:
            ValidationError: lesson_id or module_id is missing
            NetworkError, NotFoundError, RecoverableServerError, ClientError
        """
        if not event.lesson_id:
            raise ValidationError("lesson_id is required")
        if not event.module_id:
            raise ValidationError(f"module_id is required for lesson {event.lesson_id}")

        payload = ProgressPayload.from_event(event).to_json()
        data = await self._request("PUT", "/progress", json=payload)

        try:
            parsed = UpsertResponse.model_validate(data)
        except PydanticValidationError as e:
            raise RecoverableServerError(
                f"Unexpected response for lesson {event.lesson_id}: {e}"
            ) from e

        return SyncResult(
            lesson_progress=parsed.lesson_progress.to_lesson_progress(event.module_id),
            module_progress=(
                parsed.module_progress.to_module_progress()
                if parsed.module_progress
                else None
            ),
            raw=data if isinstance(data, dict) else {},
        )

    async def send_bulk(self, events: list[OutboxEvent]) -> list[BulkItemResult]:
        """Upsert a batch of events in one round trip (POST /progress/sync).

        Returns one result per event the server answered for, in request
        order. Events the server left out of its answer are not returned and
        stay queued.
        """
        if not events:
            return []

        for event in events:
            if not event.lesson_id or not event.module_id:
                raise ValidationError(
                    f"Outbox event {event.client_event_id} is missing identifiers"
                )

        body = [ProgressPayload.from_event(event).to_json() for event in events]
        data = await self._request("POST", "/progress/sync", json=body)

        try:
            parsed = BulkSyncResponse.model_validate(data)
        except PydanticValidationError as e:
            raise RecoverableServerError(f"Unexpected bulk sync response: {e}") from e

        merged_by_key: dict[tuple[str | None, str], bool] = {}
        for item in parsed.merged:
            merged_by_key[(item.module_id, item.lesson_id)] = item.merged
        records_by_key: dict[tuple[str | None, str], LessonProgressRecord] = {}
        for record in parsed.records:
            records_by_key[(record.module_id, record.lesson_id)] = record

        def lookup(mapping, event):
            # Servers may omit moduleId in the answer; fall back to lessonId only
            if (event.module_id, event.lesson_id) in mapping:
                return mapping[(event.module_id, event.lesson_id)]
            return mapping.get((None, event.lesson_id))

        results = []
        for event in events:
            merged = lookup(merged_by_key, event)
            record = lookup(records_by_key, event)
            if merged is None and record is None:
                logger.warning(
                    f"Bulk sync answer has no entry for {event.module_id}/{event.lesson_id}"
                )
                continue
            results.append(
                BulkItemResult(
                    client_event_id=event.client_event_id,
                    module_id=event.module_id,
                    lesson_id=event.lesson_id,
                    merged=bool(merged),
                    record=(
                        record.to_lesson_progress(event.module_id) if record else None
                    ),
                )
            )
        return results

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def fetch_progress(
        self, module_id: str | None = None, lesson_id: str | None = None
    ) -> list[LessonProgress]:
        """Get server progress records (GET /progress?moduleId&lessonId)."""
        params = {}
        if module_id:
            params["moduleId"] = module_id
        if lesson_id:
            params["lessonId"] = lesson_id

        data = await self._request("GET", "/progress", params=params)
        if isinstance(data, dict):
            # Some servers wrap the list: {progress: [...]} or {records: [...]}
            data = data.get("progress", data.get("records", []))
        if not isinstance(data, list):
            raise RecoverableServerError("Unexpected progress listing response")

        try:
            records = [LessonProgressRecord.model_validate(item) for item in data]
        except PydanticValidationError as e:
            raise RecoverableServerError(f"Unexpected progress record: {e}") from e

        return [record.to_lesson_progress(module_id) for record in records]
