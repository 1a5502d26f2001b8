"""Live per-ride subscription on top of the message store's event stream.

This module provides the RideSubscription class that long-polls the store
for newly appended messages, read-receipt updates and typing signals of a
single ride, and hands them to the caller's callbacks. Dropped connections
are retried with exponential backoff.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from ride_chat.schemas.message import MessageRecord, RealtimeEvent
from ride_chat.services.store import AuthError, ChatError, StoreDisabledError

if TYPE_CHECKING:
    from ride_chat.services.store import MessageStoreClient

# Configure logger for this module
logger = logging.getLogger(__name__)


@dataclass
class SubscriptionState:
    """Mutable position in the ride's event stream.

    Tracks the cursor so a reconnect resumes where the last batch ended.
    """

    cursor: str | None = None
    failures: int = 0


class RideSubscription:
    """Handle for one ride's live channel.

    Callbacks are only ever invoked from the subscription's own task and
    never after ``close()`` has returned.
    """

    def __init__(
        self,
        store: MessageStoreClient,
        ride_id: str,
        *,
        self_id: str,
        on_message: Callable[[MessageRecord], None],
        on_typing: Callable[[], None],
        on_error: Callable[[ChatError], None] | None = None,
    ) -> None:
        self.store = store
        self.ride_id = ride_id
        self.self_id = self_id
        self.state = SubscriptionState()
        self._on_message = on_message
        self._on_typing = on_typing
        self._on_error = on_error
        self._task: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        """Start the background polling loop."""
        if self._closed:
            raise RuntimeError("Cannot restart a closed subscription")
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())
            logger.info("Subscribed to ride %s", self.ride_id)

    def close(self) -> None:
        """Stop delivering events and cancel the polling loop."""
        if self._closed:
            logger.debug("Subscription for ride %s already closed", self.ride_id)
            return
        self._closed = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
        logger.info("Unsubscribed from ride %s", self.ride_id)

    async def wait_closed(self) -> None:
        """Wait until the polling loop has fully exited."""
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            pass

    def backoff_delay(self) -> float:
        """Delay before the next reconnect attempt after consecutive failures."""
        config = self.store.config
        if self.state.failures <= 0:
            return 0.0
        delay = config.backoff_initial_seconds * (2 ** (self.state.failures - 1))
        return min(delay, config.backoff_max_seconds)

    async def _run(self) -> None:
        while not self._closed:
            try:
                batch = await self.store.pull_events(self.ride_id, self.state.cursor)
            except (AuthError, StoreDisabledError) as e:
                logger.warning("Subscription for ride %s stopped: %s", self.ride_id, e)
                self._report(e)
                return
            except ChatError as e:
                self.state.failures += 1
                self.store.note_reconnect()
                delay = self.backoff_delay()
                logger.warning(
                    "Subscription for ride %s dropped (%s); reconnecting in %.1fs",
                    self.ride_id,
                    e,
                    delay,
                )
                self._report(e)
                await asyncio.sleep(delay)
                continue

            self.state.failures = 0
            if self._closed:
                return

            self._dispatch(batch.events)
            if batch.cursor:
                self.state.cursor = batch.cursor

    def _dispatch(self, events: Iterable[dict[str, Any]]) -> None:
        for raw in events:
            if self._closed:
                return
            try:
                event = RealtimeEvent.model_validate(raw)
                if event.type == "typing":
                    self._handle_typing(event)
                else:
                    self._handle_row(event)
            except ValidationError as e:
                logger.error("Skipping malformed event for ride %s: %s", self.ride_id, e)
            except (ValueError, TypeError, KeyError, AttributeError) as e:
                logger.error(
                    "Error handling event for ride %s: %s", self.ride_id, e, exc_info=True
                )

    def _handle_typing(self, event: RealtimeEvent) -> None:
        if event.payload.get("sender_id") == self.self_id:
            return
        self._on_typing()

    def _handle_row(self, event: RealtimeEvent) -> None:
        record = MessageRecord.model_validate(event.payload)
        if record.ride_id != self.ride_id:
            logger.debug(
                "Dropping event for ride %s on subscription for ride %s",
                record.ride_id,
                self.ride_id,
            )
            return
        self._on_message(record)

    def _report(self, error: ChatError) -> None:
        if self._on_error is not None and not self._closed:
            self._on_error(error)
