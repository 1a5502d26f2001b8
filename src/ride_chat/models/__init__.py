# src/ride_chat/models/__init__.py
"""Client-side models for the ride chat."""

from .message import ChatMessage, DeliveryStatus, MessageType

__all__ = [
    "ChatMessage",
    "DeliveryStatus",
    "MessageType",
]
