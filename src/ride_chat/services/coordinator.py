"""Presentation and notification coordination for the ride chat.

The coordinator tracks whether the chat surface is visible, keeps the unread
counter, drives the counterparty typing indicator and forwards the engine's
list to the UI. It never talks to the transport itself.
"""

from __future__ import annotations

import asyncio
import logging

from ride_chat.core.settings import Settings, settings
from ride_chat.models.message import ChatMessage
from ride_chat.services.auth import AuthProvider
from ride_chat.services.reconciliation import ReconciliationEngine
from ride_chat.services.store import AuthError, MessageStoreClient

# Configure logger for this module
logger = logging.getLogger(__name__)


class ChatView:
    """UI boundary. Subclass and override what the screen needs."""

    def on_list_changed(self, messages: list[ChatMessage]) -> None:
        pass

    def on_unread_count_changed(self, count: int) -> None:
        pass

    def on_typing_changed(self, typing: bool) -> None:
        pass

    def on_auth_required(self, error: AuthError) -> None:
        pass

    def on_alert(self, message: ChatMessage) -> None:
        """Best-effort haptic or sound cue for an unseen incoming message."""


class ChatCoordinator:
    """Bridges the reconciliation engine to UI-visible signals.

    Usage:
        coordinator = ChatCoordinator(store, auth, view)
        await coordinator.activate_ride("ride-1")
        coordinator.open()
        await coordinator.send("On my way")
    """

    def __init__(
        self,
        store: MessageStoreClient,
        auth: AuthProvider,
        view: ChatView | None = None,
        *,
        chat_settings: Settings | None = None,
    ) -> None:
        self.view = view or ChatView()
        self.settings = chat_settings or settings
        self.engine = ReconciliationEngine(
            store,
            auth,
            observer=self,
            chat_settings=self.settings,
        )
        self.is_open = False
        self.unread_count = 0
        self.counterparty_typing = False
        self._typing_timer: asyncio.TimerHandle | None = None

    # ---- Ride lifecycle ----

    async def activate_ride(self, ride_id: str) -> None:
        """Switch the chat to ``ride_id``; unread and typing state start over."""
        self._reset_unread()
        self._set_typing(False)
        try:
            await self.engine.activate(ride_id)
        except AuthError as e:
            self.view.on_auth_required(e)
            return
        if self.is_open:
            self.engine.request_mark_read()

    async def deactivate_ride(self) -> None:
        self.engine.deactivate()
        self._reset_unread()
        self._set_typing(False)

    async def aclose(self) -> None:
        """Tear down the active ride and cancel pending timers."""
        await self.engine.aclose()
        self._reset_unread()
        self._set_typing(False)

    # ---- Visibility ----

    def open(self) -> None:
        """Show the chat: clear the unread badge and send read receipts."""
        self.is_open = True
        self._reset_unread()
        self.engine.request_mark_read()

    def close(self) -> None:
        """Hide the chat. Message state is kept."""
        self.is_open = False

    # ---- User actions ----

    async def send(self, text: str) -> ChatMessage | None:
        try:
            return await self.engine.send(text)
        except AuthError as e:
            self.view.on_auth_required(e)
            return None

    async def send_voice(self, audio: bytes) -> ChatMessage | None:
        try:
            return await self.engine.send_voice(audio)
        except AuthError as e:
            self.view.on_auth_required(e)
            return None

    async def retry(self, local_id: str) -> bool:
        try:
            return await self.engine.retry(local_id)
        except AuthError as e:
            self.view.on_auth_required(e)
            return False

    def user_typing(self) -> None:
        """Broadcast that the current user is typing (fire-and-forget)."""
        self.engine.broadcast_typing()

    # ---- Engine observer ----

    def list_changed(self, messages: list[ChatMessage]) -> None:
        self.view.on_list_changed(messages)

    def counterparty_message(self, message: ChatMessage) -> None:
        if self.is_open:
            self.engine.request_mark_read()
            return
        self.unread_count += 1
        self.view.on_unread_count_changed(self.unread_count)
        self.view.on_alert(message)

    def typing_signal(self) -> None:
        if self._typing_timer is not None:
            self._typing_timer.cancel()
        loop = asyncio.get_running_loop()
        self._typing_timer = loop.call_later(
            self.settings.typing_timeout_seconds, self._typing_expired
        )
        self._set_typing(True)

    def auth_failed(self, error: AuthError) -> None:
        logger.warning("Chat session needs re-authentication: %s", error)
        self.view.on_auth_required(error)

    # ---- Helpers ----

    def _typing_expired(self) -> None:
        self._typing_timer = None
        self._set_typing(False)

    def _set_typing(self, typing: bool) -> None:
        if not typing and self._typing_timer is not None:
            self._typing_timer.cancel()
            self._typing_timer = None
        if typing != self.counterparty_typing:
            self.counterparty_typing = typing
            self.view.on_typing_changed(typing)

    def _reset_unread(self) -> None:
        if self.unread_count != 0:
            self.unread_count = 0
            self.view.on_unread_count_changed(0)
