"""Crash ("aviator") game: cash out before the plane flies away."""

from __future__ import annotations

import asyncio
import enum
import math
import random
from dataclasses import dataclass, field
from typing import Callable, Optional

from casinoapp.actions import ActionCode
from casinoapp.entities import ChannelId, GameOutcome, GameType, Money, PlayerId
from casinoapp.gateway import ActionButton, RenderState, Tone
from casinoapp.games.base import BaseGameEngine, EngineContext
from casinoapp.services.session_store import GameSession, SessionInbox


@dataclass(frozen=True)
class CrashSettings:
    min_bet: int = 100
    tick_seconds: float = 1.0
    takeoff_delay_seconds: float = 1.0
    growth_per_second: float = 0.1
    early_crash_probability: float = 0.4
    early_crash_span: float = 0.5
    house_factor: float = 0.96
    max_multiplier: float = 100.0


class CrashState(enum.Enum):
    BOARDING = "boarding"
    FLYING = "flying"
    CASHED_OUT = "cashed_out"
    CRASHED = "crashed"


def generate_crash_point(rng: random.Random, settings: CrashSettings) -> float:
    """Draw the multiplier at which this round crashes.

    A fixed share of rounds crash early, uniformly in ``[1, 1 + span)``.
    The rest follow ``house_factor / (1 - r)``, a heavy tail whose
    expectation leaves the house its edge.
    """

    if rng.random() < settings.early_crash_probability:
        point = 1.0 + rng.random() * settings.early_crash_span
    else:
        point = settings.house_factor / (1.0 - rng.random())
    return min(max(point, 1.0), settings.max_multiplier)


def multiplier_at(elapsed: float, growth_per_second: float = 0.1) -> float:
    return 1.0 + max(0.0, elapsed) * growth_per_second


def cashout_payout(wager: Money, multiplier: float, crash_point: float) -> Money:
    if multiplier >= crash_point:
        return 0
    # Rounded first so 1.15 * 100 does not floor to 114.
    return int(math.floor(round(wager * multiplier, 6)))


@dataclass(eq=False)
class CrashSession(GameSession):
    crash_point: float = 1.0
    state: CrashState = CrashState.BOARDING
    multiplier: float = 1.0
    payout: Money = 0
    inbox: SessionInbox = field(default_factory=lambda: SessionInbox(capacity=1))


class CrashEngine(BaseGameEngine):
    game_type = GameType.CRASH

    def __init__(
        self,
        context: EngineContext,
        settings: Optional[CrashSettings] = None,
        *,
        rng: Optional[random.Random] = None,
        clock: Optional[Callable[[], float]] = None,
        crash_point_source: Optional[Callable[[], float]] = None,
        logger=None,
    ) -> None:
        self._settings = settings or CrashSettings()
        super().__init__(context, min_bet=self._settings.min_bet, rng=rng, logger=logger)
        self._clock = clock
        self._crash_point_source = crash_point_source or (
            lambda: generate_crash_point(self._rng, self._settings)
        )

    @property
    def settings(self) -> CrashSettings:
        return self._settings

    def _now(self) -> float:
        if self._clock is not None:
            return self._clock()
        return asyncio.get_running_loop().time()

    def _render(self, session: CrashSession) -> RenderState:
        wager = self.coins(session.wager)
        if session.state is CrashState.BOARDING:
            return RenderState(
                game_type=self.game_type,
                title="✈️ Aviator",
                description="Boarding... the plane takes off in a moment.",
                fields=[("Bet", wager), ("Multiplier", "1.00x")],
                buttons=[ActionButton(ActionCode.CASH_OUT, "Cash out", emphasised=True)],
                tone=Tone.INFO,
            )
        if session.state is CrashState.FLYING:
            potential = cashout_payout(session.wager, session.multiplier, math.inf)
            return RenderState(
                game_type=self.game_type,
                title="✈️ Aviator",
                description="The plane is climbing. Cash out before it flies away!",
                fields=[
                    ("Bet", wager),
                    ("Multiplier", f"{session.multiplier:.2f}x"),
                    ("Cash out now", self.coins(potential)),
                ],
                buttons=[ActionButton(ActionCode.CASH_OUT, "Cash out", emphasised=True)],
                tone=Tone.ACTIVE,
            )
        if session.state is CrashState.CASHED_OUT:
            return RenderState(
                game_type=self.game_type,
                title="✈️ Aviator - Cashed out",
                description=f"You jumped at **{session.multiplier:.2f}x**.",
                fields=[
                    ("Bet", wager),
                    ("Payout", self.coins(session.payout)),
                    ("Profit", self.coins(session.payout - session.wager)),
                    ("Would have crashed at", f"{session.crash_point:.2f}x"),
                ],
                tone=Tone.SUCCESS,
            )
        return RenderState(
            game_type=self.game_type,
            title="✈️ Aviator - Crashed",
            description=f"💥 The plane flew away at **{session.crash_point:.2f}x**.",
            fields=[("Bet", wager), ("Lost", self.coins(session.wager))],
            tone=Tone.DANGER,
        )

    async def run_game(
        self, player_id: PlayerId, wager: Money, channel_id: ChannelId
    ) -> Optional[CrashSession]:
        session = CrashSession(
            player_id=player_id,
            wager=wager,
            channel_id=channel_id,
            crash_point=self._crash_point_source(),
        )
        if not await self.open_session(player_id, session, self._render(session)):
            return None

        try:
            await asyncio.sleep(self._settings.takeoff_delay_seconds)
            session.state = CrashState.FLYING
            await self._fly(session)
            outcome = (
                GameOutcome.CASHED_OUT
                if session.state is CrashState.CASHED_OUT
                else GameOutcome.CRASHED
            )
            await self.settle(session, session.payout, outcome)
            await self.finish(session, self._render(session))
        finally:
            await self.close_session(player_id, session)
        return session

    async def _fly(self, session: CrashSession) -> None:
        tick = self._settings.tick_seconds
        started = self._now()
        next_tick = started + tick
        while True:
            timeout = max(0.0, next_tick - self._now())
            action = await session.inbox.receive(timeout)
            session.multiplier = multiplier_at(
                self._now() - started, self._settings.growth_per_second
            )

            if action is None:
                if session.multiplier >= session.crash_point:
                    session.state = CrashState.CRASHED
                    session.multiplier = session.crash_point
                    return
                await self.update(session, self._render(session), session.player_id)
                next_tick += tick
                continue

            if action.action is not ActionCode.CASH_OUT or action.actor_id != session.player_id:
                continue
            if session.multiplier >= session.crash_point:
                session.state = CrashState.CRASHED
                session.multiplier = session.crash_point
                return
            session.payout = cashout_payout(
                session.wager, session.multiplier, session.crash_point
            )
            session.state = CrashState.CASHED_OUT
            return


__all__ = [
    "CrashEngine",
    "CrashSession",
    "CrashSettings",
    "CrashState",
    "cashout_payout",
    "generate_crash_point",
    "multiplier_at",
]
