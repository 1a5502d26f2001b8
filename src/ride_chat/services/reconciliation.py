"""Reconciliation of optimistic local sends with the live message stream.

The ``reconcile`` function merges one incoming store record into a message
list and is free of any transport. ``ReconciliationEngine`` owns the list
for the active ride and feeds it from three sources: history loaded once per
ride, live subscription events, and optimistic local sends.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from functools import partial
from typing import Protocol

from ride_chat.core.settings import Settings, settings
from ride_chat.models.message import ChatMessage, DeliveryStatus, MessageType
from ride_chat.schemas.message import MessageRecord
from ride_chat.services.auth import AuthProvider
from ride_chat.services.store import (
    AuthError,
    ChatError,
    MessageStoreClient,
    ReadError,
    StoreDisabledError,
)
from ride_chat.services.subscription import RideSubscription
from ride_chat.utils.time import utcnow

# Configure logger for this module
logger = logging.getLogger(__name__)


class MergeOutcome(Enum):
    """What ``reconcile`` did with an incoming record."""
    DUPLICATE = "duplicate"        # already known, nothing new
    RECEIPT = "receipt"            # known id, read_at newly set
    ECHO_MATCHED = "echo_matched"  # upgraded a pending optimistic entry
    APPENDED = "appended"          # new entry inserted


@dataclass(frozen=True)
class MergeResult:
    """Result of merging one record into a message list."""

    messages: list[ChatMessage]
    outcome: MergeOutcome
    entry: ChatMessage | None = None

    @property
    def changed(self) -> bool:
        return self.outcome is not MergeOutcome.DUPLICATE


def find_echo_candidate(
    messages: list[ChatMessage],
    record: MessageRecord,
    window: timedelta,
) -> int | None:
    """Index of the oldest unconfirmed own entry that ``record`` echoes, if any.

    FAILED entries are candidates too: a write can land even though its
    response was lost, and its echo then confirms the entry.
    """
    for index, entry in enumerate(messages):
        if not entry.awaiting_echo:
            continue
        if entry.body != record.content or entry.message_type.value != record.message_type:
            continue
        if abs(entry.created_at - record.created_at) <= window:
            return index
    return None


def insertion_index(messages: list[ChatMessage], created_at: datetime) -> int:
    """Position keeping ``created_at`` order; ties keep arrival order."""
    index = len(messages)
    while index > 0 and messages[index - 1].created_at > created_at:
        index -= 1
    return index


def reconcile(
    messages: list[ChatMessage],
    record: MessageRecord,
    current_user_id: str | None,
    *,
    window_seconds: float,
) -> MergeResult:
    """Merge one server-confirmed record into ``messages``.

    Returns a new list; entries that change are replaced by updated copies
    and ``messages`` itself is left untouched.
    """
    for index, entry in enumerate(messages):
        if entry.confirmed and entry.id == record.id:
            if record.read_at is not None and entry.read_at is None:
                updated = replace(entry)
                updated.mark_read(record.read_at)
                merged = list(messages)
                merged[index] = updated
                return MergeResult(merged, MergeOutcome.RECEIPT, updated)
            return MergeResult(messages, MergeOutcome.DUPLICATE, entry)

    if current_user_id is not None and record.sender_id == current_user_id:
        index = find_echo_candidate(messages, record, timedelta(seconds=window_seconds))
        if index is not None:
            updated = replace(messages[index])
            updated.adopt(record)
            merged = list(messages)
            merged[index] = updated
            return MergeResult(merged, MergeOutcome.ECHO_MATCHED, updated)

    incoming = ChatMessage.from_record(record, current_user_id)
    merged = list(messages)
    merged.insert(insertion_index(merged, incoming.created_at), incoming)
    return MergeResult(merged, MergeOutcome.APPENDED, incoming)


class EngineObserver(Protocol):
    """Receiver of the engine's outward signals."""

    def list_changed(self, messages: list[ChatMessage]) -> None: ...

    def counterparty_message(self, message: ChatMessage) -> None: ...

    def typing_signal(self) -> None: ...

    def auth_failed(self, error: AuthError) -> None: ...


class NullObserver:
    """Observer that ignores every signal."""

    def list_changed(self, messages: list[ChatMessage]) -> None:
        pass

    def counterparty_message(self, message: ChatMessage) -> None:
        pass

    def typing_signal(self) -> None:
        pass

    def auth_failed(self, error: AuthError) -> None:
        pass


def _new_local_id() -> str:
    return f"local-{uuid.uuid4().hex}"


class ReconciliationEngine:
    """Single writer of the active ride's message list.

    All list mutations happen synchronously inside one handler call; only
    network work (appends, read marking) is awaited or deferred to tasks.
    Every asynchronous continuation checks the activation generation so a
    late result from a previous ride never touches the current list.
    """

    def __init__(
        self,
        store: MessageStoreClient,
        auth: AuthProvider,
        *,
        observer: EngineObserver | None = None,
        chat_settings: Settings | None = None,
        id_factory: Callable[[], str] = _new_local_id,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.auth = auth
        self.observer: EngineObserver = observer or NullObserver()
        self.settings = chat_settings or settings
        self._id_factory = id_factory
        self._clock = clock

        self.active_ride_id: str | None = None
        self.pending_optimistic: set[str] = set()
        self._messages: list[ChatMessage] = []
        self._subscription: RideSubscription | None = None
        self._generation = 0
        self._outbox: dict[str, bytes | None] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def messages(self) -> list[ChatMessage]:
        """Detached copies of the current list, oldest first."""
        return [entry.snapshot() for entry in self._messages]

    @property
    def subscription(self) -> RideSubscription | None:
        return self._subscription

    # ---- Ride lifecycle ----

    async def activate(self, ride_id: str) -> None:
        """Make ``ride_id`` the active ride.

        Discards every trace of the previous ride, loads history (an
        unavailable history degrades to an empty list) and opens the live
        subscription. Raises AuthError when signed out.
        """
        if ride_id == self.active_ride_id and self._subscription is not None:
            return

        self._teardown()
        self.active_ride_id = ride_id
        generation = self._generation
        self._notify_list()
        logger.info("Activating chat for ride %s", ride_id)

        try:
            records = await self.store.history(ride_id)
        except (ReadError, StoreDisabledError) as e:
            logger.warning("History for ride %s unavailable, starting empty: %s", ride_id, e)
            records = []

        if generation != self._generation:
            logger.debug("Ride changed while loading history for %s; discarding", ride_id)
            return

        user_id = self.auth.current_user_id()
        for record in records:
            if record.ride_id != ride_id:
                continue
            result = reconcile(
                self._messages,
                record,
                user_id,
                window_seconds=self.settings.echo_match_window_seconds,
            )
            self._apply(result)

        self._subscription = self.store.subscribe(
            ride_id,
            on_message=partial(self._on_message, ride_id),
            on_typing=partial(self._on_typing, ride_id),
            on_error=self._on_subscription_error,
        )
        self._notify_list()

    def deactivate(self) -> None:
        """Close the subscription and forget the active ride."""
        if self.active_ride_id is not None:
            logger.info("Deactivating chat for ride %s", self.active_ride_id)
        self._teardown()
        self.active_ride_id = None
        self._notify_list()

    async def aclose(self) -> None:
        """Deactivate and wait for outstanding background work to finish."""
        subscription = self._subscription
        self.deactivate()
        if subscription is not None:
            await subscription.wait_closed()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def _teardown(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        self._messages = []
        self.pending_optimistic.clear()
        self._outbox.clear()
        self._generation += 1

    # ---- Live events ----

    def _on_message(self, ride_id: str, record: MessageRecord) -> None:
        if ride_id != self.active_ride_id or record.ride_id != self.active_ride_id:
            logger.debug("Dropping stale event %s for ride %s", record.id, record.ride_id)
            return

        result = reconcile(
            self._messages,
            record,
            self.auth.current_user_id(),
            window_seconds=self.settings.echo_match_window_seconds,
        )
        if not result.changed:
            logger.debug("Discarding re-delivered message %s", record.id)
            return

        self._apply(result)
        self._notify_list()

        entry = result.entry
        if result.outcome is MergeOutcome.APPENDED and entry is not None and not entry.is_own:
            self.observer.counterparty_message(entry.snapshot())

    def _on_typing(self, ride_id: str) -> None:
        if ride_id != self.active_ride_id:
            return
        self.observer.typing_signal()

    def _on_subscription_error(self, error: ChatError) -> None:
        if isinstance(error, AuthError):
            self.observer.auth_failed(error)

    def _apply(self, result: MergeResult) -> None:
        self._messages = result.messages
        if result.outcome is MergeOutcome.ECHO_MATCHED and result.entry is not None:
            local_id = result.entry.local_id
            if local_id is not None:
                self.pending_optimistic.discard(local_id)
                self._outbox.pop(local_id, None)
                if result.entry.delivery_status is DeliveryStatus.SENT:
                    self._schedule_delivered(local_id)
            logger.debug("Matched echo %s to local send %s", result.entry.id, local_id)

    # ---- Local sends ----

    async def send(self, text: str) -> ChatMessage:
        """Show ``text`` immediately and append it to the store.

        Returns a snapshot of the entry after the write resolved. Raises
        ValueError for blank text, RuntimeError without an active ride and
        AuthError when signed out; other write failures are reflected in the
        entry's status.
        """
        body = text.strip()
        if not body:
            raise ValueError("Cannot send an empty message")
        ride_id, sender_id = self._require_sender()
        entry = self._add_optimistic(ride_id, sender_id, body, MessageType.TEXT, None)
        local_id = entry.local_id or entry.id
        await self._deliver(local_id)
        return self._snapshot_of(local_id, entry)

    async def send_voice(self, audio: bytes) -> ChatMessage:
        """Upload a voice clip and append a voice message pointing at it."""
        if not audio:
            raise ValueError("Cannot send an empty voice clip")
        ride_id, sender_id = self._require_sender()
        path = self.store.voice_object_path(ride_id, sender_id, self._clock())
        entry = self._add_optimistic(ride_id, sender_id, path, MessageType.VOICE, audio)
        local_id = entry.local_id or entry.id
        await self._deliver(local_id)
        return self._snapshot_of(local_id, entry)

    async def retry(self, local_id: str) -> bool:
        """Resend a failed message. Returns False if there is nothing to retry."""
        entry = self._find_local(local_id)
        if entry is None or entry.delivery_status is not DeliveryStatus.FAILED:
            return False
        entry.advance(DeliveryStatus.SENDING)
        # The echo of the new attempt is timed from now, not from the first try.
        entry.created_at = self._clock()
        others = [other for other in self._messages if other is not entry]
        others.insert(insertion_index(others, entry.created_at), entry)
        self._messages = others
        self.pending_optimistic.add(local_id)
        self._notify_list()
        await self._deliver(local_id)
        return True

    def discard(self, local_id: str) -> bool:
        """Drop a failed message from the list."""
        entry = self._find_local(local_id)
        if entry is None or entry.delivery_status is not DeliveryStatus.FAILED:
            return False
        self._remove_local(local_id)
        self._notify_list()
        return True

    def _require_sender(self) -> tuple[str, str]:
        if self.active_ride_id is None:
            raise RuntimeError("No active ride")
        return self.active_ride_id, self.store.require_user_id()

    def _add_optimistic(
        self,
        ride_id: str,
        sender_id: str,
        body: str,
        message_type: MessageType,
        audio: bytes | None,
    ) -> ChatMessage:
        local_id = self._id_factory()
        entry = ChatMessage.optimistic(
            local_id=local_id,
            ride_id=ride_id,
            sender_id=sender_id,
            body=body,
            created_at=self._clock(),
            message_type=message_type,
        )
        self._messages = self._messages + [entry]
        self.pending_optimistic.add(local_id)
        self._outbox[local_id] = audio
        self._notify_list()
        return entry

    async def _deliver(self, local_id: str) -> None:
        entry = self._find_local(local_id)
        if entry is None:
            return
        generation = self._generation
        ride_id, sender_id, body = entry.ride_id, entry.sender_id, entry.body
        message_type = entry.message_type
        audio = self._outbox.get(local_id)

        try:
            if audio is not None:
                await self.store.upload_voice(body, audio)
            record = await self.store.append(
                ride_id, sender_id, body, message_type=message_type.value
            )
        except AuthError:
            if generation == self._generation:
                self._fail_send(local_id)
            raise
        except ChatError as e:
            logger.warning("Sending message %s to ride %s failed: %s", local_id, ride_id, e)
            if generation == self._generation:
                self._fail_send(local_id)
            return

        if generation != self._generation:
            return
        self._confirm_send(local_id, record)

    def _confirm_send(self, local_id: str, record: MessageRecord | None) -> None:
        entry = self._find_local(local_id)
        if entry is None:
            return
        self._outbox.pop(local_id, None)

        if record is not None and not entry.confirmed:
            if any(other.confirmed and other.id == record.id for other in self._messages):
                # The echo outran the write and was not recognised; keep the echo.
                logger.debug("Dropping optimistic %s, echo %s already listed", local_id, record.id)
                self._remove_local(local_id)
                self._notify_list()
                return
            entry.adopt(record)
            self.pending_optimistic.discard(local_id)
        else:
            entry.advance(DeliveryStatus.SENT)

        if entry.delivery_status is DeliveryStatus.SENT:
            self._schedule_delivered(local_id)
        self._notify_list()

    def _fail_send(self, local_id: str) -> None:
        entry = self._find_local(local_id)
        if entry is None or entry.confirmed:
            # Already confirmed by its echo, so the write did land.
            return
        if self.settings.keep_failed_sends:
            entry.delivery_status = DeliveryStatus.FAILED
            self.pending_optimistic.discard(local_id)
        else:
            self._remove_local(local_id)
        self._notify_list()

    def _schedule_delivered(self, local_id: str) -> None:
        if local_id in self._timers:
            return
        delay = max(0.0, self.settings.delivered_delay_seconds)
        generation = self._generation
        loop = asyncio.get_running_loop()
        self._timers[local_id] = loop.call_later(
            delay, self._mark_delivered, local_id, generation
        )

    def _mark_delivered(self, local_id: str, generation: int) -> None:
        self._timers.pop(local_id, None)
        if generation != self._generation:
            return
        entry = self._find_local(local_id)
        if entry is not None and entry.advance(DeliveryStatus.DELIVERED):
            self._notify_list()

    # ---- Reactions and receipts ----

    def react(self, message_id: str, reaction: str | None) -> bool:
        """Set a client-local reaction; the same reaction again clears it."""
        for entry in self._messages:
            if entry.id == message_id or entry.local_id == message_id:
                entry.reaction = None if reaction == entry.reaction else reaction
                self._notify_list()
                return True
        return False

    def request_mark_read(self) -> None:
        """Mark the active ride's incoming messages read in the background."""
        if self.active_ride_id is None:
            return
        self._spawn(self._mark_read(self.active_ride_id))

    async def _mark_read(self, ride_id: str) -> None:
        try:
            await self.store.mark_read(ride_id)
        except AuthError as e:
            self.observer.auth_failed(e)
        except ChatError as e:
            logger.warning("Marking ride %s read failed: %s", ride_id, e)

    def broadcast_typing(self) -> None:
        """Tell the counterparty the current user is typing."""
        if self._subscription is not None:
            self.store.broadcast_typing(self._subscription)

    # ---- Helpers ----

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _find_local(self, local_id: str) -> ChatMessage | None:
        for entry in self._messages:
            if entry.local_id == local_id:
                return entry
        return None

    def _remove_local(self, local_id: str) -> None:
        self._messages = [entry for entry in self._messages if entry.local_id != local_id]
        self.pending_optimistic.discard(local_id)
        self._outbox.pop(local_id, None)
        handle = self._timers.pop(local_id, None)
        if handle is not None:
            handle.cancel()

    def _snapshot_of(self, local_id: str, fallback: ChatMessage) -> ChatMessage:
        entry = self._find_local(local_id)
        return (entry or fallback).snapshot()

    def _notify_list(self) -> None:
        self.observer.list_changed(self.messages)
