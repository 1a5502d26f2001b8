# src/ride_chat/models/message.py
"""Client-side representation of ride chat messages."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum

from ride_chat.schemas.message import MessageRecord


class DeliveryStatus(Enum):
    """Client-computed progress of a message.

    Never persisted remotely. ``FAILED`` only occurs for the current user's
    own sends whose write was rejected.
    """
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class MessageType(Enum):
    """Payload kind carried in ``body``."""
    TEXT = "text"
    VOICE = "voice"  # body is a storage path


_STATUS_RANK = {
    DeliveryStatus.FAILED: 0,
    DeliveryStatus.SENDING: 1,
    DeliveryStatus.SENT: 2,
    DeliveryStatus.DELIVERED: 3,
    DeliveryStatus.READ: 4,
}


@dataclass
class ChatMessage:
    """One entry of the active ride's message list.

    ``id`` is the server id once confirmed and the local id before that.
    ``local_id`` is kept for the lifetime of an entry created on this client
    so that write completion can find it after the echo adopted a server id.
    """

    id: str
    ride_id: str
    sender_id: str
    body: str
    created_at: datetime
    message_type: MessageType = MessageType.TEXT
    read_at: datetime | None = None
    delivery_status: DeliveryStatus = DeliveryStatus.DELIVERED
    is_own: bool = False
    local_id: str | None = None
    confirmed: bool = True
    reaction: str | None = None

    @classmethod
    def from_record(cls, record: MessageRecord, current_user_id: str | None) -> ChatMessage:
        """Build a confirmed message from a validated store record."""
        return cls(
            id=record.id,
            ride_id=record.ride_id,
            sender_id=record.sender_id,
            body=record.content,
            created_at=record.created_at,
            message_type=MessageType(record.message_type),
            read_at=record.read_at,
            delivery_status=(
                DeliveryStatus.READ if record.read_at is not None else DeliveryStatus.DELIVERED
            ),
            is_own=current_user_id is not None and record.sender_id == current_user_id,
        )

    @classmethod
    def optimistic(
        cls,
        *,
        local_id: str,
        ride_id: str,
        sender_id: str,
        body: str,
        created_at: datetime,
        message_type: MessageType = MessageType.TEXT,
    ) -> ChatMessage:
        """Build an unconfirmed own message shown before the write resolves."""
        return cls(
            id=local_id,
            ride_id=ride_id,
            sender_id=sender_id,
            body=body,
            created_at=created_at,
            message_type=message_type,
            delivery_status=DeliveryStatus.SENDING,
            is_own=True,
            local_id=local_id,
            confirmed=False,
        )

    @property
    def awaiting_echo(self) -> bool:
        """True while an own send has not been tied to a server id."""
        return self.is_own and not self.confirmed

    def advance(self, status: DeliveryStatus) -> bool:
        """Move the delivery status forward; never backwards. Returns True if changed."""
        if _STATUS_RANK[status] <= _STATUS_RANK[self.delivery_status]:
            return False
        self.delivery_status = status
        return True

    def adopt(self, record: MessageRecord) -> None:
        """Take over the server-confirmed identity of ``record`` in place."""
        self.id = record.id
        self.created_at = record.created_at
        self.confirmed = True
        if record.read_at is not None:
            self.read_at = record.read_at
            self.advance(DeliveryStatus.READ)
        else:
            self.advance(DeliveryStatus.SENT)

    def mark_read(self, read_at: datetime) -> bool:
        """Record a read receipt. Returns True if anything changed."""
        if self.read_at is not None:
            return False
        self.read_at = read_at
        self.advance(DeliveryStatus.READ)
        return True

    def snapshot(self) -> ChatMessage:
        """Return a detached copy safe to hand to the UI."""
        return replace(self)
