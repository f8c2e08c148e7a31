"""Cup-guess game: find the ball, then double or cash out."""

from __future__ import annotations

import enum
import random
from dataclasses import dataclass
from typing import List, Optional

from casinoapp.actions import ActionCode
from casinoapp.entities import ChannelId, GameOutcome, GameType, Money, PlayerId
from casinoapp.gateway import ActionButton, RenderState, Tone
from casinoapp.games.base import BaseGameEngine, EngineContext
from casinoapp.services.session_store import GameSession


@dataclass(frozen=True)
class CupsSettings:
    min_bet: int = 50
    cup_count: int = 6
    first_win_multiplier: int = 5
    streak_multiplier: int = 2
    guess_timeout_seconds: float = 120.0
    decision_timeout_seconds: float = 60.0


class CupsState(enum.Enum):
    CHOOSING = "choosing"
    DECIDING = "deciding"
    CASHED_OUT = "cashed_out"
    LOST = "lost"
    TIMED_OUT = "timed_out"


def next_pot(pot: Money, round_number: int, settings: CupsSettings) -> Money:
    """Pot after a correct guess in ``round_number`` (1-based)."""

    if round_number == 1:
        return pot * settings.first_win_multiplier
    return pot * settings.streak_multiplier


@dataclass(eq=False)
class CupsSession(GameSession):
    pot: Money = 0
    round: int = 1
    state: CupsState = CupsState.CHOOSING
    last_pick: Optional[int] = None
    ball_position: Optional[int] = None


class CupsEngine(BaseGameEngine):
    game_type = GameType.CUPS

    def __init__(
        self,
        context: EngineContext,
        settings: Optional[CupsSettings] = None,
        *,
        rng: Optional[random.Random] = None,
        logger=None,
    ) -> None:
        self._settings = settings or CupsSettings()
        super().__init__(context, min_bet=self._settings.min_bet, rng=rng, logger=logger)

    def _cup_row(self, session: CupsSession) -> str:
        cups: List[str] = []
        for index in range(1, self._settings.cup_count + 1):
            if session.ball_position == index:
                cups.append("⚽")
            elif session.last_pick == index:
                cups.append("❌")
            else:
                cups.append("🥤")
        return " ".join(cups)

    def _next_milestone(self, session: CupsSession) -> str:
        return "10x" if session.round == 1 else "Double"

    def _render(self, session: CupsSession) -> RenderState:
        settings = self._settings
        if session.state is CupsState.CHOOSING:
            return RenderState(
                game_type=self.game_type,
                title=f"🥤 Cup Game - Round {session.round}",
                description=(
                    f"The ball is hidden under one of {settings.cup_count} cups. Pick one!"
                ),
                fields=[
                    ("Bet", self.coins(session.wager)),
                    ("Current pot", self.coins(session.pot)),
                    ("Next win", self._next_milestone(session)),
                ],
                buttons=[
                    ActionButton(ActionCode.PICK, f"Cup {index}", value=index)
                    for index in range(1, settings.cup_count + 1)
                ],
                tone=Tone.ACTIVE,
                footer=f"You have {int(settings.guess_timeout_seconds)}s to choose.",
            )
        if session.state is CupsState.DECIDING:
            return RenderState(
                game_type=self.game_type,
                title=f"🥤 Cup Game - Round {session.round} won!",
                description=f"{self._cup_row(session)}\nYou found the ball!",
                fields=[
                    ("Current pot", self.coins(session.pot)),
                    ("Next round", "Double or nothing"),
                ],
                buttons=[
                    ActionButton(ActionCode.CONTINUE, "Keep going"),
                    ActionButton(ActionCode.CASH_OUT, "Cash out", emphasised=True),
                ],
                tone=Tone.SUCCESS,
                footer=(
                    f"No answer in {int(settings.decision_timeout_seconds)}s cashes out."
                ),
            )
        if session.state is CupsState.CASHED_OUT:
            return RenderState(
                game_type=self.game_type,
                title="🥤 Cup Game - Cashed out",
                description=f"You walk away with **{self.coins(session.pot)}**.",
                fields=[
                    ("Bet", self.coins(session.wager)),
                    ("Profit", self.coins(session.pot - session.wager)),
                    ("Rounds won", str(session.round)),
                ],
                tone=Tone.SUCCESS,
            )
        if session.state is CupsState.TIMED_OUT:
            return RenderState(
                game_type=self.game_type,
                title="🥤 Cup Game - Time's up",
                description="No cup was picked in time.",
                fields=[("Lost", self.coins(session.wager))],
                tone=Tone.DANGER,
            )
        return RenderState(
            game_type=self.game_type,
            title="🥤 Cup Game - Wrong cup",
            description=f"{self._cup_row(session)}\nThe ball was under cup {session.ball_position}.",
            fields=[("Lost", self.coins(session.wager))],
            tone=Tone.DANGER,
        )

    async def run_game(
        self, player_id: PlayerId, wager: Money, channel_id: ChannelId
    ) -> Optional[CupsSession]:
        session = CupsSession(
            player_id=player_id, wager=wager, channel_id=channel_id, pot=wager
        )
        if not await self.open_session(player_id, session, self._render(session)):
            return None

        try:
            payout, outcome = await self._play(session)
            await self.settle(session, payout, outcome)
            await self.finish(session, self._render(session))
        finally:
            await self.close_session(player_id, session)
        return session

    async def _play(self, session: CupsSession):
        settings = self._settings
        while True:
            action = await self.await_action(
                session, settings.guess_timeout_seconds, (ActionCode.PICK,)
            )
            if action is None:
                session.state = CupsState.TIMED_OUT
                return 0, GameOutcome.TIMEOUT
            if action.value is None or not 1 <= action.value <= settings.cup_count:
                continue

            session.last_pick = action.value
            session.ball_position = self._rng.randint(1, settings.cup_count)
            if session.last_pick != session.ball_position:
                session.state = CupsState.LOST
                return 0, GameOutcome.LOSS

            session.pot = next_pot(session.pot, session.round, settings)
            session.state = CupsState.DECIDING
            await self.update(session, self._render(session), session.player_id)

            decision = await self.await_action(
                session,
                settings.decision_timeout_seconds,
                (ActionCode.CONTINUE, ActionCode.CASH_OUT),
            )
            if decision is None or decision.action is ActionCode.CASH_OUT:
                session.state = CupsState.CASHED_OUT
                return session.pot, GameOutcome.CASHED_OUT

            session.round += 1
            session.last_pick = None
            session.ball_position = None
            session.state = CupsState.CHOOSING
            await self.update(session, self._render(session), session.player_id)


__all__ = ["CupsEngine", "CupsSession", "CupsSettings", "CupsState", "next_pot"]
