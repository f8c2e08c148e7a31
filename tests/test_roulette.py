"""Tests for the scheduled roulette wheel."""

import asyncio

import pytest

from casinoapp.entities import InsufficientFundsError, ValidationError
from casinoapp.games.roulette import (
    BetType,
    RouletteSettings,
    RouletteWheel,
    bet_wins,
    color_of,
    parse_bet,
)


def test_parse_bet_aliases():
    assert parse_bet(" Red ") == (BetType.COLOR, "red")
    assert parse_bet("low") == (BetType.HALF, "1-18")
    assert parse_bet("17") == (BetType.NUMBER, "17")
    with pytest.raises(ValidationError):
        parse_bet("37")
    with pytest.raises(ValidationError):
        parse_bet("purple")


def test_zero_only_wins_straight_bets():
    assert color_of(0) == "green"
    assert bet_wins(BetType.NUMBER, "0", 0)
    assert not bet_wins(BetType.EVEN_ODD, "even", 0)
    assert not bet_wins(BetType.HALF, "1-18", 0)


def test_dozens_and_halves():
    assert bet_wins(BetType.DOZEN, "1st", 12)
    assert bet_wins(BetType.DOZEN, "2nd", 13)
    assert bet_wins(BetType.DOZEN, "3rd", 36)
    assert bet_wins(BetType.HALF, "19-36", 19)


@pytest.mark.asyncio
async def test_spin_pays_winning_bets(ledger, recording_view):
    await ledger.add_coins(1, 1000)
    await ledger.add_coins(2, 1000)
    wheel = RouletteWheel(ledger, recording_view, channel_id=99)
    await wheel.open_round()

    await wheel.place_bet(1, "red", 100)
    await wheel.place_bet(2, "1", 100)
    await wheel.place_bet(2, "black", 50)
    spin = await wheel.spin_now(result=1)

    assert spin.color == "red"
    assert spin.payouts == {1: 200, 2: 3600}
    assert await ledger.get_balance(1) == 1100
    assert await ledger.get_balance(2) == 4450
    assert wheel.current_round.round_id == 2
    assert not wheel.current_round.bets
    assert any("lands on **1**" in text for _, text, _ in recording_view.notifications)


@pytest.mark.asyncio
async def test_bets_rejected_while_spinning(ledger, recording_view):
    await ledger.add_coins(1, 1000)
    wheel = RouletteWheel(ledger, recording_view)
    current = await wheel.open_round()
    current.spinning = True

    with pytest.raises(ValidationError):
        await wheel.place_bet(1, "red", 100)
    assert await ledger.get_balance(1) == 1000


@pytest.mark.asyncio
async def test_bet_validation(ledger, recording_view):
    await ledger.add_coins(1, 60)
    wheel = RouletteWheel(ledger, recording_view, RouletteSettings(min_bet=50))

    with pytest.raises(ValidationError):
        await wheel.place_bet(1, "red", 100)

    await wheel.open_round()
    with pytest.raises(ValidationError):
        await wheel.place_bet(1, "red", 10)
    with pytest.raises(InsufficientFundsError):
        await wheel.place_bet(1, "red", 100)


@pytest.mark.asyncio
async def test_scheduler_spins_when_window_ends(ledger, recording_view):
    wheel = RouletteWheel(
        ledger, recording_view, RouletteSettings(interval_minutes=0.001), channel_id=5
    )

    await wheel.start()
    try:
        await asyncio.sleep(0.3)
    finally:
        await wheel.stop()

    assert wheel.current_round.round_id >= 2
    assert "No bets were placed" in "\n".join(text for _, text, _ in recording_view.notifications)


@pytest.mark.asyncio
async def test_failed_credit_does_not_stop_other_payouts(ledger, flaky_ledger, recording_view):
    await ledger.add_coins(1, 1000)
    await ledger.add_coins(2, 1000)
    settings = RouletteSettings(payout_retry_attempts=2, payout_retry_delay_seconds=0.0)
    wheel = RouletteWheel(flaky_ledger, recording_view, settings, channel_id=99)
    await wheel.open_round()
    await wheel.place_bet(1, "red", 100)
    await wheel.place_bet(2, "red", 100)

    flaky_ledger.failing.add(1)
    spin = await wheel.spin_now(result=1)

    assert spin.payouts == {1: 200, 2: 200}
    assert spin.unpaid == {1: 200}
    assert await ledger.get_balance(1) == 900
    assert await ledger.get_balance(2) == 1100
    assert any(
        "<@1> wins 200 🪙 (payout pending)" in text
        for _, text, _ in recording_view.notifications
    )
    assert wheel.unpaid_credits == {1: 200}

    flaky_ledger.failing.clear()
    await wheel.spin_now(result=0)

    assert await ledger.get_balance(1) == 1100
    assert wheel.unpaid_credits == {}
