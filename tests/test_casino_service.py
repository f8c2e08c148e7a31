"""Tests for the game facade: queueing, admission and action routing."""

import asyncio
from unittest.mock import MagicMock

import pytest

from casinoapp.actions import ActionCode, PlayerAction
from casinoapp.casino_service import CasinoService
from casinoapp.entities import GameType, ValidationError
from casinoapp.games.blackjack import BlackjackEngine
from casinoapp.games.cards import Card, Suit
from casinoapp.games.cups import CupsEngine, CupsSettings
from casinoapp.games.russian_roulette import RussianRouletteEngine
from casinoapp.games.slots import SlotsEngine, SlotsSettings
from casinoapp.services.turn_queue import TurnQueue


@pytest.fixture
def casino(engine_context, registry, tracker, recording_view):
    cups_rng = MagicMock()
    cups_rng.randint.return_value = 1
    slots_rng = MagicMock()
    slots_rng.randrange.side_effect = [0, 40, 70]
    deck = [Card(rank, Suit.SPADES) for rank in ("10", "10", "9", "7")]
    engines = {
        GameType.CUPS: CupsEngine(engine_context, CupsSettings(), rng=cups_rng),
        GameType.SLOTS: SlotsEngine(
            engine_context, SlotsSettings(animation_frames=0), rng=slots_rng
        ),
        GameType.BLACKJACK: BlackjackEngine(
            engine_context, deck_factory=lambda rng: list(deck)
        ),
    }
    return CasinoService(
        engines=engines,
        russian_roulette=RussianRouletteEngine(engine_context),
        turn_queue=TurnQueue(tracker),
        sessions=registry,
        tracker=tracker,
        view=recording_view,
    )


@pytest.mark.asyncio
async def test_rejections_do_not_touch_balance(casino, ledger):
    await ledger.add_coins(1, 30)

    below_min = await casino.start_game(GameType.CUPS, 1, 10, channel_id=5)
    broke = await casino.start_game(GameType.CUPS, 1, 100, channel_id=5)
    unknown = await casino.start_game(GameType.ROULETTE, 1, 100, channel_id=5)

    assert not below_min.accepted and "Minimum bet" in below_min.reason
    assert not broke.accepted and "Insufficient funds" in broke.reason
    assert not unknown.accepted
    assert await ledger.get_balance(1) == 30


@pytest.mark.asyncio
async def test_queued_games_run_one_at_a_time(
    casino, ledger, recording_view, wait_for_input, eventually
):
    await ledger.add_coins(1, 1000)
    await ledger.add_coins(2, 1000)

    first = await casino.start_game(GameType.CUPS, 1, 100, channel_id=5)
    second = await casino.start_game(GameType.SLOTS, 2, 10, channel_id=5)
    duplicate = await casino.start_game(GameType.SLOTS, 2, 10, channel_id=5)

    assert first.accepted and first.queue_position == 0
    assert second.accepted and second.queue_position == 1
    assert duplicate.reason == "You already have a game waiting in the queue"
    assert recording_view.notifications[-1][2] == 2
    assert "Position: 1" in recording_view.notifications[-1][1]

    await casino.start()
    await wait_for_input(GameType.CUPS, 1)
    assert casino.is_player_active(2)
    assert await ledger.get_balance(2) == 1000
    busy = await casino.start_game(GameType.CUPS, 1, 100, channel_id=5)
    assert busy.reason == "You already have an active game! Finish it first."

    await casino.dispatch(PlayerAction(GameType.CUPS, ActionCode.PICK, 1, 1, value=2))
    await eventually(lambda: not casino.is_player_active(2))
    await casino.shutdown()

    assert await ledger.get_balance(1) == 900
    assert await ledger.get_balance(2) == 990
    assert not casino.is_player_active(2)


@pytest.mark.asyncio
async def test_blackjack_runs_outside_the_queue(casino, ledger, wait_for_input):
    await ledger.add_coins(1, 1000)

    result = await casino.start_game(GameType.BLACKJACK, 1, 100, channel_id=5)
    assert result.accepted
    assert casino.turn_queue.get_queue_depth() == 0

    await wait_for_input(GameType.BLACKJACK, 1)
    assert await casino.dispatch(PlayerAction(GameType.BLACKJACK, ActionCode.STAND, 1, 1))
    assert await casino.wait_until_idle(1, timeout=2.0)
    assert await ledger.get_balance(1) == 1100
    await casino.shutdown()


@pytest.mark.asyncio
async def test_dispatch_checks_ownership(casino):
    with pytest.raises(ValidationError, match="This isn't your game!"):
        await casino.dispatch(PlayerAction(GameType.CUPS, ActionCode.PICK, 2, 1, value=1))
    with pytest.raises(ValidationError, match="not part of this duel"):
        await casino.dispatch(
            PlayerAction(GameType.RUSSIAN_ROULETTE, ActionCode.SHOOT, 3, (1, 2))
        )
    assert not await casino.dispatch(PlayerAction(GameType.CUPS, ActionCode.PICK, 1, 1, value=1))


@pytest.mark.asyncio
async def test_duel_answers_go_to_russian_roulette(casino, ledger, recording_view):
    await ledger.add_coins(1, 1000)
    await casino._rr.challenge(1, 2, 100, 5)

    handled = await casino.dispatch(
        PlayerAction(GameType.RUSSIAN_ROULETTE, ActionCode.DECLINE, 2, 2)
    )

    assert handled
    assert "declined" in recording_view.terminal[-1][1].description
    await casino.shutdown()


@pytest.mark.asyncio
async def test_concurrent_requests_queue_only_one_game(casino, ledger):
    await ledger.add_coins(1, 1000)

    results = await asyncio.gather(
        casino.start_game(GameType.CUPS, 1, 100, channel_id=5),
        casino.start_game(GameType.SLOTS, 1, 10, channel_id=5),
    )

    assert sorted(result.accepted for result in results) == [False, True]
    assert casino.turn_queue.get_queue_depth() == 1
    await casino.shutdown()


@pytest.mark.asyncio
async def test_balance_spent_while_queued_cancels_game(casino, ledger, recording_view, eventually):
    await ledger.add_coins(1, 100)

    result = await casino.start_game(GameType.CUPS, 1, 100, channel_id=5)
    assert result.accepted
    await ledger.remove_coins(1, 60)

    await casino.start()
    await eventually(lambda: not casino.is_player_active(1))
    await casino.shutdown()

    assert await ledger.get_balance(1) == 40
    assert not recording_view.initial
    channel_id, text, player_id = recording_view.notifications[-1]
    assert player_id == 1
    assert "balance changed while you were waiting" in text
