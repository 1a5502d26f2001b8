# tests/services/test_reconcile.py
"""Tests for the transport-free merge function."""

from datetime import timedelta

import pytest

from ride_chat.models import ChatMessage, DeliveryStatus
from ride_chat.services.reconciliation import MergeOutcome, insertion_index, reconcile
from ride_chat.utils.time import utcnow
from tests.conftest import DRIVER, RIDE_A, RIDER, ids_of, make_record

WINDOW = 15.0


def _optimistic(body: str, local_id: str = "local-1", created_at=None) -> ChatMessage:
    return ChatMessage.optimistic(
        local_id=local_id,
        ride_id=RIDE_A,
        sender_id=RIDER,
        body=body,
        created_at=created_at or utcnow(),
    )


class TestDeduplication:
    """Known server ids are never appended twice."""

    def test_repeated_ids_collapse_to_distinct_count(self):
        base = utcnow()
        events = [
            make_record(f"s{n}", created_at=base + timedelta(seconds=n)) for n in (1, 2, 3)
        ]
        stream = events + [events[1], events[0], events[2], events[2]]

        messages: list[ChatMessage] = []
        for record in stream:
            messages = reconcile(messages, record, RIDER, window_seconds=WINDOW).messages

        assert ids_of(messages) == ["s1", "s2", "s3"]

    def test_duplicate_returns_original_list(self):
        messages = reconcile([], make_record("s1"), RIDER, window_seconds=WINDOW).messages

        result = reconcile(messages, make_record("s1"), RIDER, window_seconds=WINDOW)

        assert result.outcome is MergeOutcome.DUPLICATE
        assert result.changed is False
        assert result.messages is messages

    def test_update_with_read_at_is_a_receipt(self):
        sent_at = utcnow()
        own = make_record("s1", sender_id=RIDER, created_at=sent_at)
        messages = reconcile([], own, RIDER, window_seconds=WINDOW).messages

        read = make_record("s1", sender_id=RIDER, created_at=sent_at, read_at=utcnow())
        result = reconcile(messages, read, RIDER, window_seconds=WINDOW)

        assert result.outcome is MergeOutcome.RECEIPT
        assert len(result.messages) == 1
        assert result.messages[0].delivery_status is DeliveryStatus.READ
        assert messages[0].delivery_status is DeliveryStatus.DELIVERED


class TestSelfEcho:
    """Echoes of own optimistic sends upgrade the pending entry in place."""

    def test_echo_within_window_is_matched(self):
        pending = _optimistic("here")
        echo = make_record(
            "s2",
            sender_id=RIDER,
            content="here",
            created_at=pending.created_at + timedelta(seconds=2),
        )

        result = reconcile([pending], echo, RIDER, window_seconds=WINDOW)

        assert result.outcome is MergeOutcome.ECHO_MATCHED
        assert ids_of(result.messages) == ["s2"]
        assert result.messages[0].local_id == "local-1"
        assert result.messages[0].delivery_status is DeliveryStatus.SENT
        # The input list is untouched.
        assert pending.id == "local-1"

    def test_failed_entry_is_confirmed_by_its_echo(self):
        # The write landed although its response was lost.
        pending = _optimistic("here")
        pending.delivery_status = DeliveryStatus.FAILED
        echo = make_record("s2", sender_id=RIDER, content="here", created_at=pending.created_at)

        result = reconcile([pending], echo, RIDER, window_seconds=WINDOW)

        assert result.outcome is MergeOutcome.ECHO_MATCHED
        assert ids_of(result.messages) == ["s2"]
        assert result.messages[0].delivery_status is DeliveryStatus.SENT

    def test_echo_outside_window_is_appended(self):
        pending = _optimistic("here")
        echo = make_record(
            "s2",
            sender_id=RIDER,
            content="here",
            created_at=pending.created_at + timedelta(seconds=WINDOW + 1),
        )

        result = reconcile([pending], echo, RIDER, window_seconds=WINDOW)

        assert result.outcome is MergeOutcome.APPENDED
        assert len(result.messages) == 2

    def test_different_body_is_not_matched(self):
        pending = _optimistic("here")
        echo = make_record("s2", sender_id=RIDER, content="there", created_at=pending.created_at)

        result = reconcile([pending], echo, RIDER, window_seconds=WINDOW)

        assert result.outcome is MergeOutcome.APPENDED

    def test_counterparty_with_same_text_is_not_matched(self):
        pending = _optimistic("ok")
        incoming = make_record("s2", sender_id=DRIVER, content="ok", created_at=pending.created_at)

        result = reconcile([pending], incoming, RIDER, window_seconds=WINDOW)

        assert result.outcome is MergeOutcome.APPENDED
        assert result.messages[0].id == "local-1"

    def test_own_message_from_another_session_is_appended(self):
        result = reconcile([], make_record("s5", sender_id=RIDER), RIDER, window_seconds=WINDOW)

        assert result.outcome is MergeOutcome.APPENDED
        assert result.entry is not None and result.entry.is_own is True

    def test_oldest_identical_pending_send_is_matched_first(self):
        first = _optimistic("ok", "local-1")
        second = _optimistic("ok", "local-2", created_at=first.created_at + timedelta(seconds=1))
        echo = make_record("s1", sender_id=RIDER, content="ok", created_at=first.created_at)

        result = reconcile([first, second], echo, RIDER, window_seconds=WINDOW)

        assert ids_of(result.messages) == ["s1", "local-2"]


class TestOrdering:
    """New entries are placed by created_at."""

    def test_late_arrival_is_inserted_in_timestamp_order(self):
        base = utcnow()
        messages: list[ChatMessage] = []
        for record in (
            make_record("s1", created_at=base),
            make_record("s3", created_at=base + timedelta(seconds=3)),
            make_record("s2", created_at=base + timedelta(seconds=2)),
        ):
            messages = reconcile(messages, record, RIDER, window_seconds=WINDOW).messages

        assert ids_of(messages) == ["s1", "s2", "s3"]

    @pytest.mark.parametrize("offset, expected", [(-1, 0), (0, 2), (5, 2)])
    def test_insertion_index_keeps_ties_in_arrival_order(self, offset, expected):
        base = utcnow()
        messages = [
            ChatMessage.from_record(make_record("a", created_at=base), RIDER),
            ChatMessage.from_record(make_record("b", created_at=base), RIDER),
        ]

        assert insertion_index(messages, base + timedelta(seconds=offset)) == expected
