"""Tests for session inboxes, the session store and the active-player tracker."""

import asyncio

import pytest

from casinoapp.actions import ActionCode, PlayerAction
from casinoapp.entities import GameType, SessionAlreadyActiveError
from casinoapp.services.session_store import (
    ActivePlayerTracker,
    GameSession,
    SessionInbox,
    SessionRegistry,
    SessionStore,
)


def _action(actor: int = 1, code: ActionCode = ActionCode.HIT) -> PlayerAction:
    return PlayerAction(GameType.BLACKJACK, code, actor, actor)


@pytest.mark.asyncio
async def test_rendezvous_inbox_drops_actions_without_a_receiver():
    inbox = SessionInbox()

    assert inbox.offer(_action()) is False
    assert await inbox.receive(0.01) is None


@pytest.mark.asyncio
async def test_rendezvous_inbox_delivers_to_waiting_receiver():
    inbox = SessionInbox()
    receiver = asyncio.create_task(inbox.receive(1.0))
    await asyncio.sleep(0)

    assert inbox.waiting
    assert inbox.offer(_action(code=ActionCode.STAND)) is True
    assert inbox.offer(_action(code=ActionCode.HIT)) is False

    received = await receiver
    assert received.action is ActionCode.STAND
    assert not inbox.waiting


@pytest.mark.asyncio
async def test_buffered_inbox_keeps_one_pending_action():
    inbox = SessionInbox(capacity=1)

    assert inbox.offer(_action(code=ActionCode.CASH_OUT)) is True
    assert inbox.offer(_action(code=ActionCode.CASH_OUT)) is False

    received = await inbox.receive(0.01)
    assert received.action is ActionCode.CASH_OUT


@pytest.mark.asyncio
async def test_store_rejects_duplicate_sessions():
    store = SessionStore(GameType.SLOTS)
    await store.create(1, GameSession(player_id=1, wager=10, channel_id=5))

    with pytest.raises(SessionAlreadyActiveError):
        await store.create(1, GameSession(player_id=1, wager=10, channel_id=5))

    assert await store.active_keys() == [1]


@pytest.mark.asyncio
async def test_delete_only_removes_the_matching_session():
    store = SessionStore(GameType.SLOTS)
    current = GameSession(player_id=1, wager=10, channel_id=5)
    stale = GameSession(player_id=1, wager=10, channel_id=5)
    await store.create(1, current)

    assert await store.delete(1, stale) is None
    assert await store.lookup(1) is current
    assert await store.delete(1, current) is current
    assert len(store) == 0


@pytest.mark.asyncio
async def test_registry_dispatch_without_session_returns_false():
    registry = SessionRegistry()

    assert await registry.dispatch(_action()) is False
    assert registry.total_active() == 0


@pytest.mark.asyncio
async def test_registry_dispatch_reaches_waiting_session():
    registry = SessionRegistry()
    session = GameSession(player_id=7, wager=100, channel_id=1)
    await registry.store(GameType.BLACKJACK).create(7, session)
    receiver = asyncio.create_task(session.inbox.receive(1.0))
    await asyncio.sleep(0)

    assert await registry.dispatch(_action(actor=7)) is True
    assert (await receiver).actor_id == 7


@pytest.mark.asyncio
async def test_tracker_counts_overlapping_games():
    tracker = ActivePlayerTracker(poll_interval=0.01)

    await tracker.mark_active(3)
    await tracker.mark_active(3)
    await tracker.mark_idle(3)
    assert tracker.is_active(3)

    await tracker.mark_idle(3)
    assert not tracker.is_active(3)
    assert tracker.active_players() == []


@pytest.mark.asyncio
async def test_wait_until_idle_times_out_then_succeeds():
    tracker = ActivePlayerTracker(poll_interval=0.01)

    async with tracker.track(4):
        assert await tracker.wait_until_idle(4, timeout=0.05) is False

    assert await tracker.wait_until_idle(4, timeout=0.05) is True
