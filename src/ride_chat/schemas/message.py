# src/ride_chat/schemas/message.py
"""Message-related Pydantic schemas for records exchanged with the store."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ride_chat.utils.time import ensure_aware


class MessageCreate(BaseModel):
    """Schema for appending a new message row."""

    ride_id: str
    sender_id: str
    message_type: Literal["text", "voice"] = "text"
    content: str = Field(..., description="Message text, or storage path for voice clips")


class MessageRecord(BaseModel):
    """Schema for a message row returned by the store or the live stream."""

    id: str
    ride_id: str
    sender_id: str
    message_type: Literal["text", "voice"] = "text"
    content: str
    created_at: datetime
    read_at: datetime | None = None

    model_config = ConfigDict(extra="ignore")

    @field_validator("id", "ride_id", "sender_id", mode="before")
    @classmethod
    def coerce_identifier(cls, value: object) -> object:
        """Accept integer identifiers by normalising them to strings."""
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("created_at", "read_at")
    @classmethod
    def normalise_timezone(cls, value: datetime | None) -> datetime | None:
        """Treat naive timestamps as UTC."""
        if value is None:
            return None
        return ensure_aware(value)


class RealtimeEvent(BaseModel):
    """Single event from the live subscription stream."""

    type: Literal["INSERT", "UPDATE", "typing"]
    payload: dict = Field(default_factory=dict)

    model_config = ConfigDict(extra="ignore")


class RealtimeBatch(BaseModel):
    """Batch of events returned by one long-poll request."""

    cursor: str | None = None
    events: list[dict] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore")
