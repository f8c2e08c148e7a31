"""Tests for blackjack scoring and hand flow."""

import asyncio

import pytest

from casinoapp.actions import ActionCode, PlayerAction
from casinoapp.entities import GameType
from casinoapp.games.blackjack import (
    BlackjackEngine,
    BlackjackOutcome,
    BlackjackSettings,
    insurance_payout,
    payout_for,
)
from casinoapp.games.cards import Card, Suit, hand_score, is_blackjack

S, H, D, C = Suit.SPADES, Suit.HEARTS, Suit.DIAMONDS, Suit.CLUBS


def _cards(*specs):
    return [Card(rank, suit) for rank, suit in specs]


def _engine(context, deck, **overrides):
    return BlackjackEngine(
        context,
        BlackjackSettings(**overrides),
        deck_factory=lambda rng: list(deck),
    )


def _act(code: ActionCode) -> PlayerAction:
    return PlayerAction(GameType.BLACKJACK, code, 1, 1)


def test_aces_downgrade_while_busting():
    assert hand_score(_cards(("A", S), ("A", H), ("9", C))) == 21
    assert hand_score(_cards(("A", S), ("K", H), ("5", C))) == 16
    assert is_blackjack(_cards(("A", S), ("Q", D)))
    assert not is_blackjack(_cards(("7", S), ("7", D), ("7", H)))


def test_payouts():
    assert payout_for(BlackjackOutcome.BLACKJACK, 100) == 250
    assert payout_for(BlackjackOutcome.DEALER_BUST, 100) == 200
    assert payout_for(BlackjackOutcome.PUSH, 100) == 100
    assert payout_for(BlackjackOutcome.BUST, 100) == 0
    assert insurance_payout(50, True) == 150
    assert insurance_payout(50, False) == 0


@pytest.mark.asyncio
async def test_natural_blackjack_settles_immediately(engine_context, ledger):
    await ledger.add_coins(1, 1000)
    engine = _engine(engine_context, _cards(("A", S), ("9", C), ("K", D), ("9", H)))

    session = await asyncio.wait_for(engine.run_game(1, 100, channel_id=10), 2.0)

    assert session.outcome is BlackjackOutcome.BLACKJACK
    assert await ledger.get_balance(1) == 1150
    assert not engine_context.tracker.is_active(1)


@pytest.mark.asyncio
async def test_hit_past_21_busts(engine_context, ledger, wait_for_input):
    await ledger.add_coins(1, 1000)
    deck = _cards(("10", S), ("9", C), ("6", D), ("7", H), ("K", S))
    engine = _engine(engine_context, deck)

    game = asyncio.create_task(engine.run_game(1, 100, channel_id=10))
    await wait_for_input(GameType.BLACKJACK, 1)
    assert engine_context.tracker.is_active(1)
    await engine_context.sessions.dispatch(_act(ActionCode.HIT))
    session = await asyncio.wait_for(game, 2.0)

    assert session.outcome is BlackjackOutcome.BUST
    assert await ledger.get_balance(1) == 900


@pytest.mark.asyncio
async def test_stand_beats_dealer(engine_context, ledger, wait_for_input):
    await ledger.add_coins(1, 1000)
    deck = _cards(("10", S), ("10", C), ("9", D), ("7", H))
    engine = _engine(engine_context, deck)

    game = asyncio.create_task(engine.run_game(1, 100, channel_id=10))
    await wait_for_input(GameType.BLACKJACK, 1)
    await engine_context.sessions.dispatch(_act(ActionCode.STAND))
    session = await asyncio.wait_for(game, 2.0)

    assert session.outcome is BlackjackOutcome.WIN
    assert session.payout == 200
    assert await ledger.get_balance(1) == 1100


@pytest.mark.asyncio
async def test_double_down_doubles_stake(engine_context, ledger, wait_for_input):
    await ledger.add_coins(1, 1000)
    deck = _cards(("5", S), ("10", C), ("6", D), ("7", H), ("10", H))
    engine = _engine(engine_context, deck)

    game = asyncio.create_task(engine.run_game(1, 100, channel_id=10))
    await wait_for_input(GameType.BLACKJACK, 1)
    await engine_context.sessions.dispatch(_act(ActionCode.DOUBLE))
    session = await asyncio.wait_for(game, 2.0)

    assert session.doubled
    assert session.outcome is BlackjackOutcome.WIN
    assert session.payout == 400
    assert await ledger.get_balance(1) == 1200


@pytest.mark.asyncio
async def test_insurance_covers_dealer_blackjack(engine_context, ledger, wait_for_input):
    await ledger.add_coins(1, 1000)
    deck = _cards(("10", S), ("A", C), ("9", D), ("K", H))
    engine = _engine(engine_context, deck)

    game = asyncio.create_task(engine.run_game(1, 100, channel_id=10))
    session = await wait_for_input(GameType.BLACKJACK, 1)
    assert session.can_insure
    await engine_context.sessions.dispatch(_act(ActionCode.INSURANCE))
    session = await asyncio.wait_for(game, 2.0)

    assert session.insurance == 50
    assert session.outcome is BlackjackOutcome.DEALER_BLACKJACK
    assert session.payout == 150
    assert await ledger.get_balance(1) == 1000


@pytest.mark.asyncio
async def test_idle_hand_is_forfeited(engine_context, ledger, wait_for_input):
    await ledger.add_coins(1, 1000)
    deck = _cards(("10", S), ("10", C), ("9", D), ("7", H))
    engine = _engine(engine_context, deck, idle_timeout_seconds=0.05)

    session = await asyncio.wait_for(engine.run_game(1, 100, channel_id=10), 2.0)

    assert session.outcome is BlackjackOutcome.TIMEOUT
    assert await ledger.get_balance(1) == 900


@pytest.mark.asyncio
async def test_double_down_rechecks_balance(engine_context, ledger, recording_view, wait_for_input):
    await ledger.add_coins(1, 150)
    deck = _cards(("5", S), ("10", C), ("6", D), ("7", H), ("10", H))
    engine = _engine(engine_context, deck)

    game = asyncio.create_task(engine.run_game(1, 100, channel_id=10))
    await wait_for_input(GameType.BLACKJACK, 1)
    await engine_context.sessions.dispatch(_act(ActionCode.DOUBLE))
    await wait_for_input(GameType.BLACKJACK, 1)
    assert recording_view.notifications[-1][1] == "You don't have enough coins to double down."

    await engine_context.sessions.dispatch(_act(ActionCode.STAND))
    session = await asyncio.wait_for(game, 2.0)

    assert not session.doubled
    assert session.outcome is BlackjackOutcome.DEALER_WIN
    assert await ledger.get_balance(1) == 50


@pytest.mark.asyncio
async def test_cancelled_hand_refunds_wager_and_insurance(engine_context, ledger, tracker, wait_for_input):
    await ledger.add_coins(1, 1000)
    deck = _cards(("10", S), ("A", C), ("9", D), ("7", H))
    engine = _engine(engine_context, deck)

    game = asyncio.create_task(engine.run_game(1, 100, channel_id=10))
    await wait_for_input(GameType.BLACKJACK, 1)
    await engine_context.sessions.dispatch(_act(ActionCode.INSURANCE))
    session = await wait_for_input(GameType.BLACKJACK, 1)
    assert session.insurance == 50
    assert await ledger.get_balance(1) == 850

    game.cancel()
    with pytest.raises(asyncio.CancelledError):
        await game

    assert await ledger.get_balance(1) == 1000
    assert not await engine.session_exists(1)
    assert not tracker.is_active(1)
