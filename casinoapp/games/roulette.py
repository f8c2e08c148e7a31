"""Scheduled multi-player roulette wheel.

A single shared round accepts bets for a fixed window, then spins, pays
every winning bet and immediately opens the next round.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import enum
import itertools
import logging
import random
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from casinoapp.entities import (
    ChannelId,
    GameType,
    Money,
    PlayerId,
    ValidationError,
)
from casinoapp.gateway import GameView
from casinoapp.games.base import format_coins
from casinoapp.ledger import Ledger, credit_each
from casinoapp.metrics import GAMES_SETTLED_COUNTER, WAGER_REFUND_COUNTER
from casinoapp.utils.time_utils import format_remaining, now_utc, seconds_until


RED_NUMBERS = frozenset(
    {1, 3, 5, 7, 9, 12, 14, 16, 18, 19, 21, 23, 25, 27, 30, 32, 34, 36}
)


@dataclass(frozen=True)
class RouletteSettings:
    min_bet: int = 50
    interval_minutes: float = 10.0
    payout_retry_attempts: int = 3
    payout_retry_delay_seconds: float = 0.5


class BetType(enum.Enum):
    NUMBER = "number"
    COLOR = "color"
    EVEN_ODD = "evenodd"
    HALF = "half"
    DOZEN = "dozen"


PAYOUT_MULTIPLIERS: Dict[BetType, int] = {
    BetType.NUMBER: 35,
    BetType.COLOR: 1,
    BetType.EVEN_ODD: 1,
    BetType.HALF: 1,
    BetType.DOZEN: 2,
}

_VALUE_ALIASES: Dict[str, Tuple[BetType, str]] = {
    "red": (BetType.COLOR, "red"),
    "black": (BetType.COLOR, "black"),
    "even": (BetType.EVEN_ODD, "even"),
    "odd": (BetType.EVEN_ODD, "odd"),
    "1-18": (BetType.HALF, "1-18"),
    "low": (BetType.HALF, "1-18"),
    "19-36": (BetType.HALF, "19-36"),
    "high": (BetType.HALF, "19-36"),
    "1st": (BetType.DOZEN, "1st"),
    "2nd": (BetType.DOZEN, "2nd"),
    "3rd": (BetType.DOZEN, "3rd"),
}


def color_of(number: int) -> str:
    if number == 0:
        return "green"
    return "red" if number in RED_NUMBERS else "black"


def parse_bet(selection: str) -> Tuple[BetType, str]:
    """Normalise a player's selection such as ``"red"``, ``"17"`` or ``"low"``."""

    token = selection.strip().lower()
    if token.isdigit():
        number = int(token)
        if not 0 <= number <= 36:
            raise ValidationError("Number bets must be between 0 and 36")
        return BetType.NUMBER, str(number)
    try:
        return _VALUE_ALIASES[token]
    except KeyError:
        raise ValidationError(
            "Unknown bet. Use a number 0-36, red/black, even/odd, "
            "1-18/19-36 (low/high) or 1st/2nd/3rd"
        ) from None


def bet_wins(bet_type: BetType, value: str, result: int) -> bool:
    if bet_type is BetType.NUMBER:
        return int(value) == result
    if result == 0:
        return False
    if bet_type is BetType.COLOR:
        return color_of(result) == value
    if bet_type is BetType.EVEN_ODD:
        return (result % 2 == 0) == (value == "even")
    if bet_type is BetType.HALF:
        return result <= 18 if value == "1-18" else result >= 19
    if bet_type is BetType.DOZEN:
        dozen = {"1st": 1, "2nd": 2, "3rd": 3}[value]
        return (result - 1) // 12 + 1 == dozen
    return False


@dataclass(frozen=True)
class RouletteBet:
    player_id: PlayerId
    bet_type: BetType
    value: str
    amount: Money

    def payout(self, result: int) -> Money:
        if not bet_wins(self.bet_type, self.value, result):
            return 0
        return self.amount + self.amount * PAYOUT_MULTIPLIERS[self.bet_type]


@dataclass(eq=False)
class RouletteRound:
    round_id: int
    window_end: dt.datetime
    bets: List[RouletteBet] = field(default_factory=list)
    spinning: bool = False
    result: Optional[int] = None
    color: Optional[str] = None

    @property
    def total_wagered(self) -> Money:
        return sum(bet.amount for bet in self.bets)


@dataclass(frozen=True)
class SpinResult:
    round: RouletteRound
    result: int
    color: str
    payouts: Dict[PlayerId, Money]
    unpaid: Dict[PlayerId, Money] = field(default_factory=dict)


class RouletteWheel:
    """Owner of the current :class:`RouletteRound` and its scheduler."""

    def __init__(
        self,
        ledger: Ledger,
        view: GameView,
        settings: Optional[RouletteSettings] = None,
        *,
        channel_id: Optional[ChannelId] = None,
        rng: Optional[random.Random] = None,
        currency_symbol: str = "🪙",
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._ledger = ledger
        self._view = view
        self._settings = settings or RouletteSettings()
        self._channel_id = channel_id
        self._rng = rng or random.SystemRandom()
        self._currency = currency_symbol
        self._logger = logger or logging.getLogger(__name__)
        self._lock = asyncio.Lock()
        self._round: Optional[RouletteRound] = None
        self._round_ids = itertools.count(1)
        self._unpaid: Dict[PlayerId, Money] = {}
        self._task: Optional[asyncio.Task[None]] = None
        self._shutdown_event = asyncio.Event()

    @property
    def min_bet(self) -> Money:
        return self._settings.min_bet

    @property
    def current_round(self) -> Optional[RouletteRound]:
        return self._round

    @property
    def unpaid_credits(self) -> Dict[PlayerId, Money]:
        """Winnings that could not be credited yet; retried on every spin."""

        return dict(self._unpaid)

    def _interval(self) -> dt.timedelta:
        return dt.timedelta(minutes=self._settings.interval_minutes)

    async def open_round(self) -> RouletteRound:
        async with self._lock:
            new_round = RouletteRound(
                round_id=next(self._round_ids),
                window_end=now_utc() + self._interval(),
            )
            self._round = new_round
        self._logger.info(
            "Roulette betting opened",
            extra={
                "category": "game",
                "game_type": GameType.ROULETTE,
                "stage": "open",
                "round_id": new_round.round_id,
            },
        )
        if self._channel_id is not None:
            await self._announce(
                f"🎡 **Roulette betting is open!** The wheel spins in "
                f"{format_remaining(seconds_until(new_round.window_end))}. "
                f"Minimum bet {format_coins(self.min_bet, self._currency)}."
            )
        return new_round

    async def place_bet(
        self, player_id: PlayerId, selection: str, amount: Money
    ) -> RouletteBet:
        """Debit ``amount`` and record a bet on the open round.

        Raises:
            ValidationError: Below minimum, unknown selection or betting closed.
            InsufficientFundsError: Raised by the ledger debit.
        """

        if amount < self._settings.min_bet:
            raise ValidationError(
                f"Minimum roulette bet is {format_coins(self._settings.min_bet, self._currency)}"
            )
        bet_type, value = parse_bet(selection)
        target = self._round
        if target is None or target.spinning:
            raise ValidationError("Betting is closed, wait for the next round")

        await self._ledger.remove_coins(player_id, amount)
        bet = RouletteBet(player_id=player_id, bet_type=bet_type, value=value, amount=amount)
        async with self._lock:
            accepted = self._round is target and not target.spinning
            if accepted:
                target.bets.append(bet)
        if not accepted:
            await self._ledger.add_coins(player_id, amount)
            WAGER_REFUND_COUNTER.labels(game=GameType.ROULETTE.value, reason="closed").inc()
            raise ValidationError("Betting closed while your bet was placed; it was refunded")

        self._logger.info(
            "Roulette bet placed",
            extra={
                "category": "game",
                "game_type": GameType.ROULETTE,
                "user_id": player_id,
                "amount": amount,
                "bet_type": bet_type.value,
                "bet_value": value,
            },
        )
        return bet

    async def spin_now(self, *, result: Optional[int] = None) -> Optional[SpinResult]:
        """Spin the current round, pay winners and open the next round."""

        async with self._lock:
            spinning_round = self._round
            if spinning_round is None or spinning_round.spinning:
                return None
            spinning_round.spinning = True
            bets = list(spinning_round.bets)

        number = result if result is not None else self._rng.randint(0, 36)
        spinning_round.result = number
        spinning_round.color = color_of(number)

        winnings: Dict[PlayerId, Money] = {}
        for bet in bets:
            won = bet.payout(number)
            if won > 0:
                winnings[bet.player_id] = winnings.get(bet.player_id, 0) + won
        for bet in bets:
            outcome = "win" if bet_wins(bet.bet_type, bet.value, number) else "loss"
            GAMES_SETTLED_COUNTER.labels(game=GameType.ROULETTE.value, outcome=outcome).inc()

        async with self._lock:
            due = dict(self._unpaid)
            self._unpaid = {}
        for player_id, amount in winnings.items():
            due[player_id] = due.get(player_id, 0) + amount
        unpaid = await credit_each(
            self._ledger,
            due,
            source="roulette",
            attempts=self._settings.payout_retry_attempts,
            retry_delay=self._settings.payout_retry_delay_seconds,
            logger=self._logger,
        )
        if unpaid:
            async with self._lock:
                for player_id, amount in unpaid.items():
                    self._unpaid[player_id] = self._unpaid.get(player_id, 0) + amount

        self._logger.info(
            "Roulette spun",
            extra={
                "category": "game",
                "game_type": GameType.ROULETTE,
                "stage": "spin",
                "round_id": spinning_round.round_id,
                "result": number,
                "bets": len(bets),
                "winners": len(winnings),
                "unpaid": len(unpaid),
            },
        )
        spin = SpinResult(
            round=spinning_round,
            result=number,
            color=spinning_round.color,
            payouts=winnings,
            unpaid=unpaid,
        )
        if self._channel_id is not None:
            await self._announce(self.describe_spin(spin))
        await self.open_round()
        return spin

    def describe_spin(self, spin: SpinResult) -> str:
        color_emoji = {"red": "🔴", "black": "⚫", "green": "🟢"}[spin.color]
        lines = [f"🎡 The ball lands on **{spin.result}** {color_emoji}"]
        if not spin.round.bets:
            lines.append("No bets were placed this round.")
        elif not spin.payouts:
            lines.append("No winners this round. The house takes it all!")
        else:
            for player_id, amount in sorted(spin.payouts.items(), key=lambda item: -item[1]):
                line = f"<@{player_id}> wins {format_coins(amount, self._currency)}"
                if player_id in spin.unpaid:
                    line += " (payout pending)"
                lines.append(line)
        return "\n".join(lines)

    def describe_round(self) -> str:
        current = self._round
        if current is None:
            return "Roulette is not running."
        if current.spinning:
            return "🎡 The wheel is spinning..."
        return (
            f"🎡 Round #{current.round_id}: {len(current.bets)} bets, "
            f"{format_coins(current.total_wagered, self._currency)} on the table. "
            f"Spins in {format_remaining(seconds_until(current.window_end))}."
        )

    async def _announce(self, text: str) -> None:
        try:
            await self._view.notify(self._channel_id, text)
        except Exception as exc:
            self._logger.warning(
                "Failed to announce roulette update",
                extra={
                    "category": "game",
                    "channel_id": self._channel_id,
                    "error_type": type(exc).__name__,
                },
            )

    async def start(self) -> None:
        """Start the recurring open/spin scheduler."""

        if self._task and not self._task.done():
            return
        if self._shutdown_event.is_set():
            self._shutdown_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._scheduler_loop(), name="roulette-scheduler")
        self._logger.info("Roulette scheduler started", extra={"category": "game"})

    async def stop(self) -> None:
        self._shutdown_event.set()
        if self._task is None:
            return
        task = self._task
        if not task.done():
            task.cancel()
            try:
                await asyncio.wait_for(task, timeout=5.0)
            except asyncio.TimeoutError:
                self._logger.warning("Roulette scheduler stop timed out")
            except asyncio.CancelledError:
                pass
        self._task = None
        self._logger.info("Roulette scheduler stopped", extra={"category": "game"})

    async def _scheduler_loop(self) -> None:
        if self._round is None or self._round.spinning:
            await self.open_round()
        while not self._shutdown_event.is_set():
            current = self._round
            wait = seconds_until(current.window_end) if current else 0.0
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=wait)
                break
            except asyncio.TimeoutError:
                pass
            try:
                await self.spin_now()
            except asyncio.CancelledError:
                raise
            except Exception:
                self._logger.exception(
                    "Roulette spin failed", extra={"category": "game", "stage": "spin"}
                )
                await self.open_round()


__all__ = [
    "BetType",
    "PAYOUT_MULTIPLIERS",
    "RED_NUMBERS",
    "RouletteBet",
    "RouletteRound",
    "RouletteSettings",
    "RouletteWheel",
    "SpinResult",
    "bet_wins",
    "color_of",
    "parse_bet",
]
