"""Admin-run parimutuel betting on real-world events."""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

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


NO_BETS_ODDS = 99.99


@dataclass(frozen=True)
class EventBettingSettings:
    min_bet: int = 10
    house_edge: float = 0.05
    min_options: int = 2
    max_options: int = 10
    min_duration_minutes: int = 1
    max_duration_minutes: int = 1440
    min_question_length: int = 5
    max_question_length: int = 200
    payout_retry_attempts: int = 3
    payout_retry_delay_seconds: float = 0.5


@dataclass(eq=False)
class BetOption:
    option_id: str
    name: str
    total_bets: int = 0
    total_amount: Money = 0


@dataclass(frozen=True)
class EventBet:
    player_id: PlayerId
    option_id: str
    amount: Money
    placed_at: dt.datetime


@dataclass(eq=False)
class BettingEvent:
    event_id: str
    creator_id: PlayerId
    question: str
    options: Dict[str, BetOption]
    end_time: dt.datetime
    channel_id: ChannelId
    created_at: dt.datetime = field(default_factory=now_utc)
    user_bets: Dict[PlayerId, EventBet] = field(default_factory=dict)
    total_pool: Money = 0
    closed: bool = False
    winner_option_id: Optional[str] = None
    payouts: Dict[PlayerId, Money] = field(default_factory=dict)
    unpaid: Dict[PlayerId, Money] = field(default_factory=dict)

    def is_accepting_bets(self, now: Optional[dt.datetime] = None) -> bool:
        return not self.closed and (now or now_utc()) < self.end_time


def pool_after_edge(total_pool: Money, house_edge: float) -> Money:
    """Pool left for winners, computed in basis points to avoid float drift."""

    keep_basis_points = round((1.0 - house_edge) * 10_000)
    return total_pool * keep_basis_points // 10_000


def compute_odds(event: BettingEvent, house_edge: float) -> Dict[str, float]:
    if event.total_pool == 0:
        return {option_id: 1.0 for option_id in event.options}
    available = event.total_pool * (1.0 - house_edge)
    odds: Dict[str, float] = {}
    for option_id, option in event.options.items():
        if option.total_amount == 0:
            odds[option_id] = NO_BETS_ODDS
        else:
            odds[option_id] = available / option.total_amount
    return odds


def compute_payouts(
    event: BettingEvent, winner_option_id: str, house_edge: float
) -> Dict[PlayerId, Money]:
    """Split the pool after edge among winning bets by stake share.

    Each share is floored, so any remainder stays with the house. An empty
    winning option leaves the whole pool with the house.
    """

    option_total = event.options[winner_option_id].total_amount
    if option_total == 0:
        return {}
    available = pool_after_edge(event.total_pool, house_edge)
    payouts: Dict[PlayerId, Money] = {}
    for player_id, bet in event.user_bets.items():
        if bet.option_id != winner_option_id:
            continue
        payouts[player_id] = bet.amount * available // option_total
    return payouts


class EventBettingMarket:
    def __init__(
        self,
        ledger: Ledger,
        view: GameView,
        settings: Optional[EventBettingSettings] = None,
        *,
        currency_symbol: str = "🪙",
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._ledger = ledger
        self._view = view
        self._settings = settings or EventBettingSettings()
        self._currency = currency_symbol
        self._logger = logger or logging.getLogger(__name__)
        self._events: Dict[str, BettingEvent] = {}
        self._lock = asyncio.Lock()
        self._timers: Dict[str, asyncio.Task[None]] = {}

    @property
    def settings(self) -> EventBettingSettings:
        return self._settings

    def _coins(self, amount: Money) -> str:
        return format_coins(amount, self._currency)

    def _validate_event(
        self, question: str, options: Sequence[str], duration_minutes: int
    ) -> List[str]:
        settings = self._settings
        question = question.strip()
        if not settings.min_question_length <= len(question) <= settings.max_question_length:
            raise ValidationError(
                f"Question must be {settings.min_question_length}-"
                f"{settings.max_question_length} characters"
            )
        names = [option.strip() for option in options if option.strip()]
        if not settings.min_options <= len(names) <= settings.max_options:
            raise ValidationError(
                f"Events need {settings.min_options}-{settings.max_options} options"
            )
        if not settings.min_duration_minutes <= duration_minutes <= settings.max_duration_minutes:
            raise ValidationError(
                f"Duration must be {settings.min_duration_minutes}-"
                f"{settings.max_duration_minutes} minutes"
            )
        return names

    async def create_event(
        self,
        creator_id: PlayerId,
        question: str,
        options: Sequence[str],
        duration_minutes: int,
        channel_id: ChannelId,
    ) -> BettingEvent:
        names = self._validate_event(question, options, duration_minutes)
        event = BettingEvent(
            event_id=f"evt_{time.time_ns()}",
            creator_id=creator_id,
            question=question.strip(),
            options={
                f"opt_{index}": BetOption(option_id=f"opt_{index}", name=name)
                for index, name in enumerate(names)
            },
            end_time=now_utc() + dt.timedelta(minutes=duration_minutes),
            channel_id=channel_id,
        )
        async with self._lock:
            self._events[event.event_id] = event
        self._timers[event.event_id] = asyncio.get_running_loop().create_task(
            self._auto_close(event.event_id, duration_minutes * 60.0),
            name=f"event-close-{event.event_id}",
        )
        self._logger.info(
            "Betting event created",
            extra={
                "category": "game",
                "game_type": GameType.EVENT_BETTING,
                "user_id": creator_id,
                "event_id": event.event_id,
                "options": len(names),
            },
        )
        return event

    async def get_event(self, event_id: str) -> BettingEvent:
        async with self._lock:
            event = self._events.get(event_id)
        if event is None:
            raise ValidationError(f"Event {event_id} not found")
        return event

    async def list_events(self, *, active_only: bool = True) -> List[BettingEvent]:
        async with self._lock:
            events = list(self._events.values())
        if active_only:
            events = [event for event in events if event.winner_option_id is None]
        return sorted(events, key=lambda event: event.created_at)

    @staticmethod
    def resolve_option(event: BettingEvent, choice: str) -> str:
        """Map ``choice`` (1-based number, option id or name) to an option id."""

        token = choice.strip()
        if token.isdigit():
            option_id = f"opt_{int(token) - 1}"
            if option_id in event.options:
                return option_id
        if token in event.options:
            return token
        for option_id, option in event.options.items():
            if option.name.lower() == token.lower():
                return option_id
        raise ValidationError(f"Invalid option. Choose 1-{len(event.options)}")

    async def place_bet(
        self, player_id: PlayerId, event_id: str, choice: str, amount: Money
    ) -> EventBet:
        """Debit and record a single bet for ``player_id`` on ``event_id``.

        Raises:
            ValidationError: Unknown event or option, below minimum, closed
                event or an existing bet by this player.
            InsufficientFundsError: Raised by the ledger debit.
        """

        if amount < self._settings.min_bet:
            raise ValidationError(f"Minimum bet is {self._coins(self._settings.min_bet)}")
        event = await self.get_event(event_id)
        option_id = self.resolve_option(event, choice)
        async with self._lock:
            if not event.is_accepting_bets():
                raise ValidationError("Betting is closed for this event")
            if player_id in event.user_bets:
                raise ValidationError("You already placed a bet on this event")

        await self._ledger.remove_coins(player_id, amount)
        bet = EventBet(player_id, option_id, amount, now_utc())
        async with self._lock:
            rejection = None
            if not event.is_accepting_bets():
                rejection = "Betting closed while your bet was placed; it was refunded"
            elif player_id in event.user_bets:
                rejection = "You already placed a bet on this event"
            else:
                event.user_bets[player_id] = bet
                option = event.options[option_id]
                option.total_bets += 1
                option.total_amount += amount
                event.total_pool += amount
        if rejection is not None:
            await self._ledger.add_coins(player_id, amount)
            WAGER_REFUND_COUNTER.labels(
                game=GameType.EVENT_BETTING.value, reason="rejected"
            ).inc()
            raise ValidationError(rejection)

        self._logger.info(
            "Event bet placed",
            extra={
                "category": "game",
                "game_type": GameType.EVENT_BETTING,
                "user_id": player_id,
                "event_id": event_id,
                "option_id": option_id,
                "amount": amount,
            },
        )
        return bet

    async def close_event(self, event_id: str) -> BettingEvent:
        event = await self.get_event(event_id)
        async with self._lock:
            already_closed = event.closed
            event.closed = True
        if not already_closed:
            self._logger.info(
                "Betting event closed",
                extra={"category": "game", "event_id": event_id, "pool": event.total_pool},
            )
        return event

    async def _auto_close(self, event_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        event = await self.close_event(event_id)
        self._timers.pop(event_id, None)
        try:
            await self._view.notify(
                event.channel_id,
                f"⏰ Betting on **{event.question}** is now closed "
                f"({self._coins(event.total_pool)} in the pool). Waiting for the result.",
            )
        except Exception as exc:
            self._logger.warning(
                "Failed to announce event close",
                extra={"category": "game", "event_id": event_id, "error_type": type(exc).__name__},
            )

    async def set_result(
        self, admin_id: PlayerId, event_id: str, choice: str
    ) -> Dict[PlayerId, Money]:
        """Declare the winning option and pay winners.

        Winners are credited one by one; a credit that keeps failing is
        kept in ``event.unpaid``. Calling again with the same winner retries
        those credits only.

        Returns:
            The credits applied by this call.

        Raises:
            ValidationError: Not the creator, event still open or result
                already set.
        """

        event = await self.get_event(event_id)
        if event.creator_id != admin_id:
            raise ValidationError("Only the event creator can set the result")
        option_id = self.resolve_option(event, choice)
        async with self._lock:
            retrying = event.winner_option_id is not None
            if retrying:
                if option_id != event.winner_option_id or not event.unpaid:
                    raise ValidationError("The result for this event was already set")
                due = dict(event.unpaid)
                event.unpaid = {}
            else:
                if not event.closed and now_utc() < event.end_time:
                    raise ValidationError("Betting is still open for this event")
                event.closed = True
                event.winner_option_id = option_id
                due = compute_payouts(event, option_id, self._settings.house_edge)
                event.payouts = dict(due)

        if not retrying:
            timer = self._timers.pop(event_id, None)
            if timer is not None and not timer.done():
                timer.cancel()
            for player_id, bet in event.user_bets.items():
                GAMES_SETTLED_COUNTER.labels(
                    game=GameType.EVENT_BETTING.value,
                    outcome="win" if bet.option_id == option_id else "loss",
                ).inc()

        unpaid = await credit_each(
            self._ledger,
            due,
            source="event_betting",
            attempts=self._settings.payout_retry_attempts,
            retry_delay=self._settings.payout_retry_delay_seconds,
            logger=self._logger,
        )
        if unpaid:
            async with self._lock:
                event.unpaid.update(unpaid)
        credited = {
            player_id: amount
            for player_id, amount in due.items()
            if amount > 0 and player_id not in unpaid
        }
        self._logger.info(
            "Betting event settled",
            extra={
                "category": "game",
                "game_type": GameType.EVENT_BETTING,
                "event_id": event_id,
                "winner_option_id": option_id,
                "pool": event.total_pool,
                "paid_out": sum(credited.values()),
                "winners": len(credited),
                "unpaid": len(unpaid),
                "retry": retrying,
            },
        )
        return credited

    def describe_event(self, event: BettingEvent) -> str:
        odds = compute_odds(event, self._settings.house_edge)
        lines = [f"📊 **{event.question}**", f"ID: `{event.event_id}`"]
        for index, (option_id, option) in enumerate(event.options.items(), start=1):
            value = odds[option_id]
            odds_text = "∞" if value >= NO_BETS_ODDS else f"{value:.2f}x"
            marker = " 🏆" if option_id == event.winner_option_id else ""
            lines.append(
                f"{index}. {option.name}{marker} | {option.total_bets} bets, "
                f"{self._coins(option.total_amount)} | odds {odds_text}"
            )
        lines.append(f"Total pool: {self._coins(event.total_pool)}")
        if event.winner_option_id is not None:
            lines.append("Status: settled")
            if event.unpaid:
                lines.append(f"Pending payouts: {len(event.unpaid)}")
        elif event.is_accepting_bets():
            lines.append(f"Closes in {format_remaining(seconds_until(event.end_time))}")
        else:
            lines.append("Status: closed, waiting for the result")
        return "\n".join(lines)

    async def shutdown(self) -> None:
        timers = list(self._timers.values())
        self._timers.clear()
        for timer in timers:
            timer.cancel()
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)


__all__ = [
    "BetOption",
    "BettingEvent",
    "EventBet",
    "EventBettingMarket",
    "EventBettingSettings",
    "NO_BETS_ODDS",
    "compute_odds",
    "compute_payouts",
    "pool_after_edge",
]
