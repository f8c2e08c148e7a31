"""Blackjack against the house with double down and insurance."""

from __future__ import annotations

import enum
import random
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from casinoapp.actions import ActionCode
from casinoapp.entities import (
    ChannelId,
    GameType,
    InsufficientFundsError,
    Money,
    PlayerId,
)
from casinoapp.gateway import ActionButton, RenderState, Tone
from casinoapp.games.base import BaseGameEngine, EngineContext
from casinoapp.games.cards import Card, format_hand, hand_score, is_blackjack, new_deck
from casinoapp.services.session_store import GameSession


@dataclass(frozen=True)
class BlackjackSettings:
    min_bet: int = 100
    idle_timeout_seconds: float = 120.0
    dealer_stand_score: int = 17


class BlackjackOutcome(enum.Enum):
    BLACKJACK = "blackjack"
    WIN = "win"
    DEALER_BUST = "dealer_bust"
    PUSH = "push"
    DEALER_WIN = "dealer_win"
    DEALER_BLACKJACK = "dealer_blackjack"
    BUST = "bust"
    TIMEOUT = "timeout"


_OUTCOME_TEXT = {
    BlackjackOutcome.BLACKJACK: "🎉 Blackjack! Paid 3:2.",
    BlackjackOutcome.WIN: "🏆 You beat the dealer!",
    BlackjackOutcome.DEALER_BUST: "💥 Dealer busts, you win!",
    BlackjackOutcome.PUSH: "🤝 Push, your bet is returned.",
    BlackjackOutcome.DEALER_WIN: "😞 Dealer wins.",
    BlackjackOutcome.DEALER_BLACKJACK: "🃏 Dealer has blackjack.",
    BlackjackOutcome.BUST: "💥 Bust! You went over 21.",
    BlackjackOutcome.TIMEOUT: "⏰ Time's up, the hand is forfeited.",
}


def payout_for(outcome: BlackjackOutcome, stake: Money) -> Money:
    """Total amount returned to the player for the main hand."""

    if outcome is BlackjackOutcome.BLACKJACK:
        return int(stake * 2.5)
    if outcome in (BlackjackOutcome.WIN, BlackjackOutcome.DEALER_BUST):
        return stake * 2
    if outcome is BlackjackOutcome.PUSH:
        return stake
    return 0


def insurance_payout(insurance: Money, dealer_has_blackjack: bool) -> Money:
    """Insurance pays 2:1 plus the stake when the dealer has blackjack."""

    return insurance * 3 if insurance > 0 and dealer_has_blackjack else 0


def compare_hands(player: List[Card], dealer: List[Card]) -> BlackjackOutcome:
    player_score = hand_score(player)
    dealer_score = hand_score(dealer)
    if player_score > 21:
        return BlackjackOutcome.BUST
    if dealer_score > 21:
        return BlackjackOutcome.DEALER_BUST
    if player_score > dealer_score:
        return BlackjackOutcome.WIN
    if player_score == dealer_score:
        return BlackjackOutcome.PUSH
    return BlackjackOutcome.DEALER_WIN


@dataclass(eq=False)
class BlackjackSession(GameSession):
    deck: List[Card] = field(default_factory=list)
    player_hand: List[Card] = field(default_factory=list)
    dealer_hand: List[Card] = field(default_factory=list)
    doubled: bool = False
    has_hit: bool = False
    insurance: Money = 0
    peek_pending: bool = False
    outcome: Optional[BlackjackOutcome] = None
    payout: Money = 0

    @property
    def stake(self) -> Money:
        return self.wager * 2 if self.doubled else self.wager

    @property
    def total_staked(self) -> Money:
        return self.stake + self.insurance

    @property
    def dealer_shows_ace(self) -> bool:
        return bool(self.dealer_hand) and self.dealer_hand[0].is_ace

    @property
    def can_double(self) -> bool:
        return len(self.player_hand) == 2 and not self.doubled and not self.has_hit

    @property
    def can_insure(self) -> bool:
        return self.peek_pending and self.insurance == 0 and not self.has_hit

    def draw(self) -> Card:
        return self.deck.pop(0)


class BlackjackEngine(BaseGameEngine):
    game_type = GameType.BLACKJACK

    def __init__(
        self,
        context: EngineContext,
        settings: Optional[BlackjackSettings] = None,
        *,
        rng: Optional[random.Random] = None,
        deck_factory: Optional[Callable[[random.Random], List[Card]]] = None,
        logger=None,
    ) -> None:
        self._settings = settings or BlackjackSettings()
        super().__init__(context, min_bet=self._settings.min_bet, rng=rng, logger=logger)
        self._deck_factory = deck_factory or new_deck

    def _render(self, session: BlackjackSession) -> RenderState:
        finished = session.outcome is not None
        player_score = hand_score(session.player_hand)
        if finished:
            dealer_value = f"{format_hand(session.dealer_hand)} ({hand_score(session.dealer_hand)})"
        else:
            dealer_value = format_hand(session.dealer_hand, hide_hole=True)
        fields = [
            ("Your hand", f"{format_hand(session.player_hand)} ({player_score})"),
            ("Dealer", dealer_value),
            ("Bet", self.coins(session.stake)),
        ]
        if session.insurance:
            fields.append(("Insurance", self.coins(session.insurance)))

        if not finished:
            buttons = [
                ActionButton(ActionCode.HIT, "Hit"),
                ActionButton(ActionCode.STAND, "Stand", emphasised=True),
            ]
            if session.can_double:
                buttons.append(ActionButton(ActionCode.DOUBLE, "Double down"))
            if session.can_insure:
                buttons.append(ActionButton(ActionCode.INSURANCE, "Insurance"))
            return RenderState(
                game_type=self.game_type,
                title="🃏 Blackjack",
                description="Hit, stand or double down.",
                fields=fields,
                buttons=buttons,
                tone=Tone.ACTIVE,
            )

        total_staked = session.total_staked
        fields.append(("Payout", self.coins(session.payout)))
        fields.append(("Net", self.coins(session.payout - total_staked)))
        won = session.payout > total_staked
        even = session.payout == total_staked
        return RenderState(
            game_type=self.game_type,
            title="🃏 Blackjack - Hand over",
            description=_OUTCOME_TEXT[session.outcome],
            fields=fields,
            tone=Tone.SUCCESS if won else (Tone.NEUTRAL if even else Tone.DANGER),
        )

    def _deal(self, session: BlackjackSession) -> None:
        session.deck = list(self._deck_factory(self._rng))
        for _ in range(2):
            session.player_hand.append(session.draw())
            session.dealer_hand.append(session.draw())

    def _dealer_play(self, session: BlackjackSession) -> None:
        while hand_score(session.dealer_hand) < self._settings.dealer_stand_score:
            session.dealer_hand.append(session.draw())

    def _opening_outcome(self, session: BlackjackSession) -> Optional[BlackjackOutcome]:
        player_bj = is_blackjack(session.player_hand)
        dealer_bj = is_blackjack(session.dealer_hand)
        if player_bj:
            return BlackjackOutcome.PUSH if dealer_bj else BlackjackOutcome.BLACKJACK
        if dealer_bj and not session.dealer_shows_ace:
            return BlackjackOutcome.DEALER_BLACKJACK
        # With an ace showing the dealer peeks after the player's first
        # decision so insurance can be offered.
        session.peek_pending = session.dealer_shows_ace
        return None

    async def run_game(
        self, player_id: PlayerId, wager: Money, channel_id: ChannelId
    ) -> Optional[BlackjackSession]:
        async with self._ctx.tracker.track(player_id):
            session = BlackjackSession(player_id=player_id, wager=wager, channel_id=channel_id)
            self._deal(session)
            opening = self._opening_outcome(session)
            if opening is not None:
                session.outcome = opening
                session.payout = payout_for(opening, session.stake)
            if not await self.open_session(player_id, session, self._render(session)):
                return None

            try:
                if session.outcome is None:
                    session.outcome = await self._play(session)
                    session.payout = payout_for(session.outcome, session.stake) + insurance_payout(
                        session.insurance, is_blackjack(session.dealer_hand)
                    )
                await self.settle(session, session.payout, session.outcome)
                await self.finish(session, self._render(session))
            finally:
                await self.close_session(player_id, session)
            return session

    async def _play(self, session: BlackjackSession) -> BlackjackOutcome:
        accepted = (
            ActionCode.HIT,
            ActionCode.STAND,
            ActionCode.DOUBLE,
            ActionCode.INSURANCE,
        )
        while True:
            action = await self.await_action(
                session, self._settings.idle_timeout_seconds, accepted
            )
            if action is None:
                return BlackjackOutcome.TIMEOUT

            if action.action is ActionCode.INSURANCE:
                if not session.can_insure:
                    continue
                if not await self._take_insurance(session):
                    continue

            if session.peek_pending:
                session.peek_pending = False
                if is_blackjack(session.dealer_hand):
                    return BlackjackOutcome.DEALER_BLACKJACK
                if action.action is ActionCode.INSURANCE:
                    await self.update(session, self._render(session), session.player_id)
                    continue

            if action.action is ActionCode.HIT:
                session.has_hit = True
                session.player_hand.append(session.draw())
                if hand_score(session.player_hand) > 21:
                    return BlackjackOutcome.BUST
                await self.update(session, self._render(session), session.player_id)
                continue

            if action.action is ActionCode.STAND:
                self._dealer_play(session)
                return compare_hands(session.player_hand, session.dealer_hand)

            if action.action is ActionCode.DOUBLE:
                if not session.can_double:
                    continue
                try:
                    await self._ctx.ledger.remove_coins(session.player_id, session.wager)
                except InsufficientFundsError:
                    await self.notify(
                        session.channel_id,
                        "You don't have enough coins to double down.",
                        player_id=session.player_id,
                    )
                    continue
                session.doubled = True
                session.player_hand.append(session.draw())
                self._dealer_play(session)
                return compare_hands(session.player_hand, session.dealer_hand)

    async def _take_insurance(self, session: BlackjackSession) -> bool:
        cost = session.wager // 2
        if cost <= 0:
            return False
        try:
            await self._ctx.ledger.remove_coins(session.player_id, cost)
        except InsufficientFundsError:
            await self.notify(
                session.channel_id,
                "You don't have enough coins for insurance.",
                player_id=session.player_id,
            )
            return False
        session.insurance = cost
        return True


__all__ = [
    "BlackjackEngine",
    "BlackjackOutcome",
    "BlackjackSession",
    "BlackjackSettings",
    "compare_hands",
    "insurance_payout",
    "payout_for",
]
