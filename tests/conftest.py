# tests/conftest.py
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any
from unittest.mock import AsyncMock

import pytest

from ride_chat.core.settings import Settings
from ride_chat.models.message import ChatMessage
from ride_chat.schemas.message import MessageRecord
from ride_chat.services.auth import StaticAuth
from ride_chat.services.coordinator import ChatView
from ride_chat.services.reconciliation import ReconciliationEngine
from ride_chat.services.store import AuthError, MessageStoreClient
from ride_chat.utils.time import utcnow

RIDE_A = "ride-a"
RIDE_B = "ride-b"
RIDER = "rider-1"
DRIVER = "driver-1"


def make_record(
    id: str = "s1",
    *,
    ride_id: str = RIDE_A,
    sender_id: str = DRIVER,
    content: str = "hi",
    created_at: datetime | None = None,
    read_at: datetime | None = None,
    message_type: str = "text",
) -> MessageRecord:
    return MessageRecord(
        id=id,
        ride_id=ride_id,
        sender_id=sender_id,
        content=content,
        created_at=created_at or utcnow(),
        read_at=read_at,
        message_type=message_type,
    )


def seconds_from_now(seconds: float) -> datetime:
    return utcnow() + timedelta(seconds=seconds)


class FakeChannel:
    """Stand-in for RideSubscription that lets tests push live events."""

    def __init__(self, ride_id: str, on_message, on_typing, on_error=None) -> None:
        self.ride_id = ride_id
        self.self_id = RIDER
        self.on_message = on_message
        self.on_typing = on_typing
        self.on_error = on_error
        self.closed = False
        self.close_calls = 0

    def close(self) -> None:
        self.close_calls += 1
        self.closed = True

    async def wait_closed(self) -> None:
        return None

    # Deliberately ignores ``closed`` to simulate an event already in flight.
    def emit(self, record: MessageRecord) -> None:
        self.on_message(record)

    def typing(self) -> None:
        self.on_typing()


class RecordingObserver:
    def __init__(self) -> None:
        self.lists: list[list[ChatMessage]] = []
        self.incoming: list[ChatMessage] = []
        self.typing_signals = 0
        self.auth_errors: list[AuthError] = []

    @property
    def last(self) -> list[ChatMessage]:
        return self.lists[-1] if self.lists else []

    def list_changed(self, messages: list[ChatMessage]) -> None:
        self.lists.append(messages)

    def counterparty_message(self, message: ChatMessage) -> None:
        self.incoming.append(message)

    def typing_signal(self) -> None:
        self.typing_signals += 1

    def auth_failed(self, error: AuthError) -> None:
        self.auth_errors.append(error)


class RecordingView(ChatView):
    def __init__(self) -> None:
        self.lists: list[list[ChatMessage]] = []
        self.unread_counts: list[int] = []
        self.typing_changes: list[bool] = []
        self.auth_errors: list[AuthError] = []
        self.alerts: list[ChatMessage] = []

    def on_list_changed(self, messages: list[ChatMessage]) -> None:
        self.lists.append(messages)

    def on_unread_count_changed(self, count: int) -> None:
        self.unread_counts.append(count)

    def on_typing_changed(self, typing: bool) -> None:
        self.typing_changes.append(typing)

    def on_auth_required(self, error: AuthError) -> None:
        self.auth_errors.append(error)

    def on_alert(self, message: ChatMessage) -> None:
        self.alerts.append(message)


@pytest.fixture()
def chat_settings() -> Settings:
    return Settings(
        store_base_url="http://store.test",
        store_api_key="anon-key",
        delivered_delay_seconds=0.01,
        typing_timeout_seconds=0.1,
        subscription_poll_timeout_seconds=1.0,
        subscription_backoff_initial_seconds=0.01,
        subscription_backoff_max_seconds=0.04,
        echo_match_window_seconds=15.0,
        keep_failed_sends=True,
    )


@pytest.fixture()
def auth() -> StaticAuth:
    return StaticAuth(RIDER, token="rider-token")


@pytest.fixture()
def mock_store() -> AsyncMock:
    store = AsyncMock(spec=MessageStoreClient)
    store.history.return_value = []
    store.append.return_value = None
    store.mark_read.return_value = None
    store.require_user_id.return_value = RIDER
    store.voice_object_path.side_effect = MessageStoreClient.voice_object_path
    store.channels = []

    def _subscribe(ride_id: str, on_message, on_typing, *, on_error=None) -> FakeChannel:
        channel = FakeChannel(ride_id, on_message, on_typing, on_error)
        store.channels.append(channel)
        return channel

    store.subscribe.side_effect = _subscribe
    return store


@pytest.fixture()
def observer() -> RecordingObserver:
    return RecordingObserver()


@pytest.fixture()
def engine(
    mock_store: AsyncMock,
    auth: StaticAuth,
    observer: RecordingObserver,
    chat_settings: Settings,
) -> ReconciliationEngine:
    return ReconciliationEngine(
        mock_store,
        auth,
        observer=observer,
        chat_settings=chat_settings,
    )


def ids_of(messages: list[ChatMessage]) -> list[str]:
    return [message.id for message in messages]


def statuses_of(messages: list[ChatMessage]) -> list[str]:
    return [message.delivery_status.value for message in messages]


def payload_of(record: MessageRecord) -> dict[str, Any]:
    return record.model_dump(mode="json")
