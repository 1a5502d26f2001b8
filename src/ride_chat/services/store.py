"""Message store client for the ride chat.

This module provides the MessageStoreClient class, the only component that
talks to the managed backend holding ride messages. It includes:

- HTTP client with bearer-token authentication
- Circuit breaker pattern for fault tolerance
- Metrics collection for monitoring
- Append, read-marking and history operations on the messages table
- Live per-ride subscriptions and the ephemeral typing broadcast
- Voice clip upload and signed playback URLs
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

import httpx
from pydantic import ValidationError

from ride_chat.core.settings import Settings, settings
from ride_chat.schemas.message import MessageCreate, MessageRecord, RealtimeBatch
from ride_chat.services.auth import AuthProvider
from ride_chat.utils.time import epoch_millis

if TYPE_CHECKING:
    from ride_chat.services.subscription import RideSubscription

# Configure logger for this module
logger = logging.getLogger(__name__)

# HTTP status codes
HTTP_OK = 200
HTTP_CREATED = 201
HTTP_NO_CONTENT = 204
HTTP_UNAUTHORIZED = 401
HTTP_INTERNAL_SERVER_ERROR = 500

VOICE_CONTENT_TYPE = "audio/webm"


class ChatError(RuntimeError):
    """Base exception raised for chat transport failures."""


class AuthError(ChatError):
    """Raised when the caller is not signed in or the session is invalid.

    Never retried; the UI should send the user back to sign-in.
    """


class WriteError(ChatError):
    """Raised when an append, read-marking or upload is rejected or fails."""


class ReadError(ChatError):
    """Raised when history or a signed URL cannot be fetched."""


class SubscriptionError(ChatError):
    """Raised when the live channel drops or returns garbage."""


class StoreDisabledError(ChatError):
    """Raised when store operations are attempted without a configured store."""


class CircuitState(Enum):
    """Circuit breaker states for fault tolerance.

    The circuit breaker stops hammering an unhealthy store and lets
    requests through again after a recovery timeout.
    """
    CLOSED = "closed"      # Normal operation - requests allowed
    OPEN = "open"          # Circuit is open - requests blocked
    HALF_OPEN = "half_open"  # Testing if service is back - limited requests allowed


@dataclass
class OperationStats:
    """Counters for one kind of store call (append, history, poll, ...)."""

    calls: int = 0
    failures: int = 0
    total_seconds: float = 0.0
    last_error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        average_ms = self.total_seconds / self.calls * 1000 if self.calls else 0.0
        return {
            "calls": self.calls,
            "failures": self.failures,
            "average_ms": round(average_ms, 2),
            "last_error": self.last_error,
        }


@dataclass
class StoreMetrics:
    """Per-operation counters, plus live-channel reconnects and circuit rejections."""

    operations: dict[str, OperationStats] = field(default_factory=dict)
    reconnects: int = 0
    rejected_by_circuit: int = 0

    def record(self, operation: str, elapsed: float, error: str | None = None) -> None:
        stats = self.operations.setdefault(operation, OperationStats())
        stats.calls += 1
        stats.total_seconds += elapsed
        if error is not None:
            stats.failures += 1
            stats.last_error = error

    def as_dict(self) -> dict[str, Any]:
        return {
            "operations": {name: stats.as_dict() for name, stats in self.operations.items()},
            "reconnects": self.reconnects,
            "rejected_by_circuit": self.rejected_by_circuit,
        }


@dataclass
class CircuitBreaker:
    """Circuit breaker for store requests."""

    failure_threshold: int = 5
    recovery_timeout: float = 30.0
    success_threshold: int = 1
    clock: Callable[[], float] = time.monotonic

    _state: CircuitState = CircuitState.CLOSED
    _failure_count: int = 0
    _success_count: int = 0
    _last_failure_time: float = 0.0

    def is_open(self) -> bool:
        """Check if circuit is open."""
        if self._state == CircuitState.OPEN:
            if self.clock() - self._last_failure_time > self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
                self._success_count = 0
            return self._state == CircuitState.OPEN
        return False

    def record_success(self) -> None:
        """Record a successful operation."""
        if self._state == CircuitState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= self.success_threshold:
                self._state = CircuitState.CLOSED
                self._failure_count = 0
        elif self._state == CircuitState.CLOSED:
            self._failure_count = 0

    def record_failure(self) -> None:
        """Record a failed operation."""
        self._failure_count += 1
        self._last_failure_time = self.clock()

        if self._state == CircuitState.HALF_OPEN or self._failure_count >= self.failure_threshold:
            self._state = CircuitState.OPEN

    def get_state(self) -> CircuitState:
        return self._state

    def status(self) -> dict[str, Any]:
        """Read-only view; unlike ``is_open`` it never moves OPEN to HALF_OPEN."""
        retry_in = 0.0
        if self._state == CircuitState.OPEN:
            elapsed = self.clock() - self._last_failure_time
            retry_in = max(0.0, self.recovery_timeout - elapsed)
        return {
            "state": self._state.value,
            "failure_count": self._failure_count,
            "retry_in_seconds": round(retry_in, 3),
        }


@dataclass(frozen=True)
class StoreConfig:
    """Immutable configuration for store operations."""

    enabled: bool
    base_url: str | None
    api_key: str | None
    timeout_seconds: float
    messages_table: str
    mark_read_rpc: str
    voice_bucket: str
    voice_url_ttl_seconds: int
    poll_timeout_seconds: float
    backoff_initial_seconds: float
    backoff_max_seconds: float
    circuit_failure_threshold: int
    circuit_recovery_timeout_seconds: float


def load_store_config(source: Settings | None = None) -> StoreConfig:
    """Build configuration object from settings (global settings by default)."""

    source = source or settings
    return StoreConfig(
        enabled=source.store_enabled,
        base_url=source.store_base_url,
        api_key=source.store_api_key,
        timeout_seconds=float(source.store_http_timeout_seconds),
        messages_table=source.messages_table,
        mark_read_rpc=source.mark_read_rpc,
        voice_bucket=source.voice_bucket,
        voice_url_ttl_seconds=source.voice_url_ttl_seconds,
        poll_timeout_seconds=float(source.subscription_poll_timeout_seconds),
        backoff_initial_seconds=float(source.subscription_backoff_initial_seconds),
        backoff_max_seconds=float(source.subscription_backoff_max_seconds),
        circuit_failure_threshold=source.circuit_failure_threshold,
        circuit_recovery_timeout_seconds=float(source.circuit_recovery_timeout_seconds),
    )


class MessageStoreClient:
    """HTTP client wrapper for the managed message store.

    Rows are read and written through the table REST API, read receipts
    through an RPC, the live stream through a long-poll endpoint and voice
    clips through object storage. Every record leaving this class is a
    validated ``MessageRecord``.
    """

    def __init__(
        self,
        auth: AuthProvider,
        config: StoreConfig | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.auth = auth
        self.config = config or load_store_config()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._client_lock = asyncio.Lock()
        self._circuit_breaker = CircuitBreaker(
            failure_threshold=self.config.circuit_failure_threshold,
            recovery_timeout=self.config.circuit_recovery_timeout_seconds,
        )
        self._metrics = StoreMetrics()
        self._background: set[asyncio.Task[None]] = set()

    @property
    def enabled(self) -> bool:
        return self.config.enabled and bool(self.config.base_url)

    async def _ensure_client(self) -> httpx.AsyncClient:
        if not self.enabled:
            raise StoreDisabledError("Message store is not configured")

        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    base_url=self.config.base_url or "",
                    timeout=httpx.Timeout(self.config.timeout_seconds),
                    transport=self._transport,
                )

        return self._client

    def require_user_id(self) -> str:
        """Return the signed-in user id or raise AuthError."""
        user_id = self.auth.current_user_id()
        if not user_id:
            raise AuthError("Not signed in")
        return user_id

    def _build_auth_headers(self) -> dict[str, str]:
        token = self.auth.access_token()
        if not token:
            raise AuthError("Not signed in")

        headers = {"Authorization": f"Bearer {token}"}
        if self.config.api_key:
            headers["apikey"] = self.config.api_key
        return headers

    @dataclass
    class RequestParams:
        """Parameters for HTTP requests; ``operation`` keys the metrics."""
        operation: str
        method: str
        path: str
        json_data: Any | None = None
        content: bytes | None = None
        params: Mapping[str, Any] | None = None
        headers: dict[str, str] | None = None
        timeout: float | None = None

    async def _request(
        self,
        params: RequestParams,
        *,
        failure: type[ChatError],
    ) -> httpx.Response:
        """Send one request, mapping transport problems onto ``failure``.

        401 always becomes AuthError. 5xx and network failures count against
        the circuit breaker; other statuses are returned to the caller.
        """
        if self._circuit_breaker.is_open():
            self._metrics.rejected_by_circuit += 1
            raise failure("Store circuit breaker is open - service unavailable")

        client = await self._ensure_client()
        headers = self._build_auth_headers()
        if params.headers:
            headers.update(params.headers)

        extra: dict[str, Any] = {}
        if params.timeout is not None:
            extra["timeout"] = httpx.Timeout(params.timeout)

        started = time.monotonic()
        try:
            response = await client.request(
                params.method,
                params.path,
                json=params.json_data,
                content=params.content,
                params=params.params,
                headers=headers,
                **extra,
            )
        except httpx.HTTPError as exc:
            self._circuit_breaker.record_failure()
            self._metrics.record(params.operation, time.monotonic() - started, "network_error")
            raise failure(f"Store request failed: {exc}") from exc

        elapsed = time.monotonic() - started
        status = response.status_code
        if status == HTTP_UNAUTHORIZED:
            # Not a store fault; leave the circuit alone.
            self._metrics.record(params.operation, elapsed, "http_401")
            raise AuthError("Store rejected the session")
        if status >= HTTP_INTERNAL_SERVER_ERROR:
            self._circuit_breaker.record_failure()
            self._metrics.record(params.operation, elapsed, f"http_{status}")
            raise failure(f"Store responded with {status}")

        self._circuit_breaker.record_success()
        self._metrics.record(params.operation, elapsed)
        return response

    def _table_path(self) -> str:
        return f"/rest/v1/{self.config.messages_table}"

    async def append(
        self,
        ride_id: str,
        sender_id: str,
        body: str,
        *,
        message_type: str = "text",
    ) -> MessageRecord | None:
        """Append a message row.

        Returns the stored row when the store sends it back, or None when it
        accepted the write without a representation. Either way the row will
        also arrive through the live subscription.
        """
        payload = MessageCreate(
            ride_id=ride_id,
            sender_id=sender_id,
            message_type=message_type,
            content=body,
        )
        response = await self._request(
            self.RequestParams(
                operation="append",
                method="POST",
                path=self._table_path(),
                json_data=payload.model_dump(),
                headers={"Prefer": "return=representation"},
            ),
            failure=WriteError,
        )

        if response.status_code not in (HTTP_OK, HTTP_CREATED, HTTP_NO_CONTENT):
            raise WriteError(
                f"Unexpected store response ({response.status_code}) when appending message",
            )
        if response.status_code == HTTP_NO_CONTENT or not response.content:
            return None

        body_json = response.json()
        row = body_json[0] if isinstance(body_json, list) and body_json else body_json
        if not row:
            return None
        try:
            return MessageRecord.model_validate(row)
        except ValidationError as exc:
            # The write itself succeeded; the echo will carry the row.
            logger.warning("Store returned an invalid appended row: %s", exc)
            return None

    async def mark_read(self, ride_id: str, reader_id: str | None = None) -> None:
        """Mark every unread message of the ride not authored by the reader as read.

        The reader is always the signed-in user; the store derives it from the
        session. Idempotent.
        """
        user_id = self.require_user_id()
        if reader_id is not None and reader_id != user_id:
            raise WriteError("Messages can only be marked read by the signed-in user")

        response = await self._request(
            self.RequestParams(
                operation="mark_read",
                method="POST",
                path=f"/rest/v1/rpc/{self.config.mark_read_rpc}",
                json_data={"p_ride_id": ride_id},
            ),
            failure=WriteError,
        )
        if response.status_code not in (HTTP_OK, HTTP_NO_CONTENT):
            raise WriteError(
                f"Unexpected store response ({response.status_code}) when marking read",
            )

    async def history(self, ride_id: str) -> list[MessageRecord]:
        """Fetch all messages of a ride in chronological order."""
        response = await self._request(
            self.RequestParams(
                operation="history",
                method="GET",
                path=self._table_path(),
                params={
                    "select": "*",
                    "ride_id": f"eq.{ride_id}",
                    "order": "created_at.asc",
                },
            ),
            failure=ReadError,
        )
        if response.status_code != HTTP_OK:
            raise ReadError(
                f"Unexpected store response ({response.status_code}) when fetching history",
            )

        try:
            rows = response.json() or []
            return [MessageRecord.model_validate(row) for row in rows]
        except (ValueError, ValidationError) as exc:
            raise ReadError(f"Invalid history payload: {exc}") from exc

    async def pull_events(
        self,
        ride_id: str,
        cursor: str | None = None,
    ) -> RealtimeBatch:
        """Long-poll the live stream of one ride for new events."""
        params: dict[str, Any] = {"timeout": self.config.poll_timeout_seconds}
        if cursor:
            params["cursor"] = cursor

        response = await self._request(
            self.RequestParams(
                operation="poll",
                method="GET",
                path=f"/realtime/v1/rides/{ride_id}/events",
                params=params,
                timeout=self.config.poll_timeout_seconds + self.config.timeout_seconds,
            ),
            failure=SubscriptionError,
        )
        if response.status_code != HTTP_OK:
            raise SubscriptionError(
                f"Unexpected store response ({response.status_code}) when pulling events",
            )

        try:
            return RealtimeBatch.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise SubscriptionError(f"Invalid event batch: {exc}") from exc

    def subscribe(
        self,
        ride_id: str,
        on_message: Callable[[MessageRecord], None],
        on_typing: Callable[[], None],
        *,
        on_error: Callable[[ChatError], None] | None = None,
    ) -> RideSubscription:
        """Open a live channel scoped to one ride.

        The returned handle must be closed exactly once when the ride changes.
        Must be called from a running event loop.
        """
        from ride_chat.services.subscription import RideSubscription

        subscription = RideSubscription(
            self,
            ride_id,
            self_id=self.require_user_id(),
            on_message=on_message,
            on_typing=on_typing,
            on_error=on_error,
        )
        subscription.start()
        return subscription

    def broadcast_typing(self, subscription: RideSubscription) -> None:
        """Send the ephemeral typing signal. Fire-and-forget, never raises."""
        if subscription.closed:
            return
        task = asyncio.create_task(self._send_typing(subscription.ride_id, subscription.self_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _send_typing(self, ride_id: str, sender_id: str) -> None:
        try:
            await self._request(
                self.RequestParams(
                    operation="typing",
                    method="POST",
                    path=f"/realtime/v1/rides/{ride_id}/broadcast",
                    json_data={"event": "typing", "payload": {"sender_id": sender_id}},
                ),
                failure=SubscriptionError,
            )
        except ChatError as exc:
            logger.debug("Typing broadcast for ride %s dropped: %s", ride_id, exc)

    @staticmethod
    def voice_object_path(ride_id: str, sender_id: str, now: datetime | None = None) -> str:
        """Storage path for a new voice clip."""
        return f"{ride_id}/{sender_id}/voice_{epoch_millis(now)}.webm"

    async def upload_voice(self, path: str, audio: bytes) -> str:
        """Upload a voice clip to the private bucket. Returns the storage path."""
        response = await self._request(
            self.RequestParams(
                operation="upload_voice",
                method="POST",
                path=f"/storage/v1/object/{self.config.voice_bucket}/{path}",
                content=audio,
                headers={"Content-Type": VOICE_CONTENT_TYPE, "x-upsert": "false"},
            ),
            failure=WriteError,
        )
        if response.status_code not in (HTTP_OK, HTTP_CREATED):
            raise WriteError(
                f"Unexpected store response ({response.status_code}) when uploading voice clip",
            )
        return path

    async def signed_voice_url(self, path: str, ttl_seconds: int | None = None) -> str:
        """Return a time-limited playback URL for a stored voice clip."""
        ttl = ttl_seconds if ttl_seconds is not None else self.config.voice_url_ttl_seconds
        response = await self._request(
            self.RequestParams(
                operation="sign_voice_url",
                method="POST",
                path=f"/storage/v1/object/sign/{self.config.voice_bucket}/{path}",
                json_data={"expiresIn": ttl},
            ),
            failure=ReadError,
        )
        if response.status_code != HTTP_OK:
            raise ReadError(
                f"Unexpected store response ({response.status_code}) when signing voice URL",
            )

        signed = (response.json() or {}).get("signedURL")
        if not signed:
            raise ReadError("Store did not return a signed URL")
        base = (self.config.base_url or "").rstrip("/")
        return f"{base}/storage/v1{signed}"

    async def health_check(self) -> dict[str, Any]:
        """Probe the table endpoint and report it with the breaker state."""
        if not self.enabled:
            return {"status": "disabled", "circuit_breaker": self.get_circuit_breaker_status()}

        try:
            await self._request(
                self.RequestParams(operation="health", method="GET", path="/rest/v1/"),
                failure=ReadError,
            )
        except ChatError as e:
            return {
                "status": "error",
                "error": str(e),
                "circuit_breaker": self.get_circuit_breaker_status(),
            }
        return {
            "status": "healthy",
            "latency_ms": self._metrics.operations["health"].as_dict()["average_ms"],
            "circuit_breaker": self.get_circuit_breaker_status(),
        }

    def get_circuit_breaker_status(self) -> dict[str, Any]:
        return self._circuit_breaker.status()

    def note_reconnect(self) -> None:
        """Count a live-channel reconnect attempt."""
        self._metrics.reconnects += 1

    def get_metrics(self) -> dict[str, Any]:
        """Per-operation call counts, failures and latency, plus reconnects."""
        return self._metrics.as_dict()

    async def close(self) -> None:
        """Clean up underlying HTTP client resources."""

        for task in list(self._background):
            task.cancel()
        async with self._client_lock:
            if self._client is not None:
                await self._client.aclose()
                self._client = None
