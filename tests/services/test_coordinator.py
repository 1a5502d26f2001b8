# tests/services/test_coordinator.py
"""Tests for unread accounting, read receipts and the typing indicator."""

import asyncio

import pytest

from ride_chat.services.coordinator import ChatCoordinator
from ride_chat.services.store import AuthError
from tests.conftest import DRIVER, RIDE_A, RIDE_B, RIDER, RecordingView, make_record


@pytest.fixture
def view():
    return RecordingView()


@pytest.fixture
def coordinator(mock_store, auth, view, chat_settings):
    return ChatCoordinator(mock_store, auth, view, chat_settings=chat_settings)


async def _drain(coordinator: ChatCoordinator) -> None:
    if coordinator.engine._tasks:
        await asyncio.gather(*coordinator.engine._tasks, return_exceptions=True)


@pytest.mark.asyncio
async def test_unread_counts_counterparty_messages_while_closed(coordinator, mock_store, view):
    await coordinator.activate_ride(RIDE_A)
    channel = mock_store.channels[0]

    for n in range(3):
        channel.emit(make_record(f"s{n}", sender_id=DRIVER, content=f"msg {n}"))
    channel.emit(make_record("s0", sender_id=DRIVER, content="msg 0"))
    channel.emit(make_record("own", sender_id=RIDER, content="sent elsewhere"))

    assert coordinator.unread_count == 3
    assert view.unread_counts == [1, 2, 3]
    assert len(view.alerts) == 3
    mock_store.mark_read.assert_not_called()


@pytest.mark.asyncio
async def test_open_resets_unread_and_marks_read_once(coordinator, mock_store, view):
    await coordinator.activate_ride(RIDE_A)
    for n in range(3):
        mock_store.channels[0].emit(make_record(f"s{n}", sender_id=DRIVER))

    coordinator.open()
    await _drain(coordinator)

    assert coordinator.unread_count == 0
    assert view.unread_counts[-1] == 0
    mock_store.mark_read.assert_awaited_once_with(RIDE_A)


@pytest.mark.asyncio
async def test_messages_while_open_are_marked_read_immediately(coordinator, mock_store, view):
    await coordinator.activate_ride(RIDE_A)
    coordinator.open()
    await _drain(coordinator)
    mock_store.mark_read.reset_mock()

    mock_store.channels[0].emit(make_record("s1", sender_id=DRIVER))
    await _drain(coordinator)

    assert coordinator.unread_count == 0
    assert view.alerts == []
    mock_store.mark_read.assert_awaited_once_with(RIDE_A)


@pytest.mark.asyncio
async def test_close_keeps_messages(coordinator, mock_store):
    mock_store.history.return_value = [make_record("s1")]
    await coordinator.activate_ride(RIDE_A)
    coordinator.open()

    coordinator.close()

    assert coordinator.is_open is False
    assert [m.id for m in coordinator.engine.messages] == ["s1"]


@pytest.mark.asyncio
async def test_unread_never_goes_negative(coordinator, view):
    coordinator.open()
    coordinator.open()
    coordinator.close()

    assert coordinator.unread_count == 0
    assert view.unread_counts == []


@pytest.mark.asyncio
async def test_switching_rides_resets_unread(coordinator, mock_store):
    await coordinator.activate_ride(RIDE_A)
    mock_store.channels[0].emit(make_record("s1", sender_id=DRIVER))
    assert coordinator.unread_count == 1

    await coordinator.activate_ride(RIDE_B)

    assert coordinator.unread_count == 0


@pytest.mark.asyncio
async def test_rapid_typing_signals_produce_one_typing_period(coordinator, mock_store, view):
    await coordinator.activate_ride(RIDE_A)
    channel = mock_store.channels[0]

    # Gaps shorter than the 0.1s timeout, spanning well past one timeout.
    for _ in range(6):
        channel.typing()
        await asyncio.sleep(0.03)

    assert view.typing_changes == [True]
    assert coordinator.counterparty_typing is True

    await asyncio.sleep(0.2)

    assert view.typing_changes == [True, False]
    assert coordinator.counterparty_typing is False


@pytest.mark.asyncio
async def test_typing_indicator_clears_on_ride_switch(coordinator, mock_store, view):
    await coordinator.activate_ride(RIDE_A)
    mock_store.channels[0].typing()

    await coordinator.activate_ride(RIDE_B)

    assert view.typing_changes == [True, False]
    await asyncio.sleep(0.15)
    assert view.typing_changes == [True, False]


@pytest.mark.asyncio
async def test_auth_error_on_activation_reaches_view(coordinator, mock_store, view):
    mock_store.history.side_effect = AuthError("Not signed in")

    await coordinator.activate_ride(RIDE_A)

    assert len(view.auth_errors) == 1


@pytest.mark.asyncio
async def test_auth_error_on_send_reaches_view(coordinator, mock_store, view):
    await coordinator.activate_ride(RIDE_A)
    mock_store.append.side_effect = AuthError("expired")

    assert await coordinator.send("hello") is None
    assert len(view.auth_errors) == 1


@pytest.mark.asyncio
async def test_subscription_auth_error_reaches_view(coordinator, mock_store, view):
    await coordinator.activate_ride(RIDE_A)

    mock_store.channels[0].on_error(AuthError("expired"))

    assert len(view.auth_errors) == 1


@pytest.mark.asyncio
async def test_list_changes_are_pushed_to_view(coordinator, mock_store, view):
    await coordinator.activate_ride(RIDE_A)

    await coordinator.send("on my way")

    assert [m.body for m in view.lists[-1]] == ["on my way"]


@pytest.mark.asyncio
async def test_user_typing_broadcasts(coordinator, mock_store):
    await coordinator.activate_ride(RIDE_A)

    coordinator.user_typing()

    mock_store.broadcast_typing.assert_called_once()


@pytest.mark.asyncio
async def test_aclose_tears_down(coordinator, mock_store):
    await coordinator.activate_ride(RIDE_A)

    await coordinator.aclose()

    assert mock_store.channels[0].close_calls == 1
    assert coordinator.engine.active_ride_id is None
