# src/ride_chat/schemas/__init__.py
"""Pydantic schemas for records crossing the store boundary."""

from .message import MessageCreate, MessageRecord, RealtimeBatch, RealtimeEvent

__all__ = [
    "MessageCreate",
    "MessageRecord",
    "RealtimeBatch",
    "RealtimeEvent",
]
