# src/ride_chat/services/__init__.py
"""Chat services: store client, live subscription, reconciliation and coordination."""

from .auth import AuthProvider, StaticAuth, TokenAuth
from .coordinator import ChatCoordinator, ChatView
from .reconciliation import MergeOutcome, MergeResult, ReconciliationEngine, reconcile
from .store import (
    AuthError,
    ChatError,
    MessageStoreClient,
    ReadError,
    StoreDisabledError,
    SubscriptionError,
    WriteError,
)
from .subscription import RideSubscription

__all__ = [
    "AuthProvider", "StaticAuth", "TokenAuth",
    "ChatCoordinator", "ChatView",
    "MergeOutcome", "MergeResult", "ReconciliationEngine", "reconcile",
    "AuthError", "ChatError", "MessageStoreClient", "ReadError",
    "StoreDisabledError", "SubscriptionError", "WriteError",
    "RideSubscription",
]
