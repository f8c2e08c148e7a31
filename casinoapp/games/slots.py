"""Three-reel slot machine."""

from __future__ import annotations

import asyncio
import enum
import random
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from casinoapp.entities import ChannelId, GameOutcome, GameType, Money, PlayerId
from casinoapp.gateway import RenderState, Tone
from casinoapp.games.base import BaseGameEngine, EngineContext
from casinoapp.services.session_store import GameSession


@dataclass(frozen=True)
class SlotSymbol:
    emoji: str
    name: str
    value: int
    weight: int


SYMBOLS: Tuple[SlotSymbol, ...] = (
    SlotSymbol("🍒", "cherry", 2, 35),
    SlotSymbol("🍋", "lemon", 3, 25),
    SlotSymbol("🍊", "orange", 4, 20),
    SlotSymbol("🔔", "bell", 6, 12),
    SlotSymbol("💎", "diamond", 10, 6),
    SlotSymbol("7️⃣", "seven", 25, 2),
)


@dataclass(frozen=True)
class SlotsSettings:
    min_bet: int = 10
    two_match_factor: float = 0.3
    animation_frames: int = 3
    frame_delay_seconds: float = 0.7


class MatchKind(enum.Enum):
    JACKPOT = "jackpot"
    PAIR = "pair"
    NONE = "none"


def spin_reel(rng: random.Random, symbols: Sequence[SlotSymbol] = SYMBOLS) -> SlotSymbol:
    total_weight = sum(symbol.weight for symbol in symbols)
    roll = rng.randrange(total_weight)
    cumulative = 0
    for symbol in symbols:
        cumulative += symbol.weight
        if roll < cumulative:
            return symbol
    return symbols[-1]


def evaluate_reels(
    reels: Sequence[SlotSymbol], wager: Money, two_match_factor: float = 0.3
) -> Tuple[Money, MatchKind]:
    """Return ``(payout, kind)`` for three reels.

    A pair never pays less than the wager back.
    """

    first, second, third = reels
    if first == second == third:
        return wager * first.value, MatchKind.JACKPOT
    if first == second or second == third or first == third:
        matched = first if first == second else (second if second == third else first)
        return max(int(wager * matched.value * two_match_factor), wager), MatchKind.PAIR
    return 0, MatchKind.NONE


@dataclass(eq=False)
class SlotsSession(GameSession):
    reels: List[SlotSymbol] = field(default_factory=list)
    payout: Money = 0
    kind: Optional[MatchKind] = None


class SlotsEngine(BaseGameEngine):
    game_type = GameType.SLOTS

    def __init__(
        self,
        context: EngineContext,
        settings: Optional[SlotsSettings] = None,
        *,
        rng: Optional[random.Random] = None,
        logger=None,
    ) -> None:
        self._settings = settings or SlotsSettings()
        super().__init__(context, min_bet=self._settings.min_bet, rng=rng, logger=logger)

    def _spinning_state(self, session: SlotsSession, frame: Sequence[SlotSymbol]) -> RenderState:
        row = " | ".join(symbol.emoji for symbol in frame) if frame else "❓ | ❓ | ❓"
        return RenderState(
            game_type=self.game_type,
            title="🎰 Slots",
            description=f"**[ {row} ]**\nSpinning...",
            fields=[("Bet", self.coins(session.wager))],
            tone=Tone.ACTIVE,
        )

    def _result_state(self, session: SlotsSession) -> RenderState:
        row = " | ".join(symbol.emoji for symbol in session.reels)
        if session.kind is MatchKind.JACKPOT:
            headline, tone = "🎉 JACKPOT! Three of a kind!", Tone.SUCCESS
        elif session.kind is MatchKind.PAIR:
            headline, tone = "✨ Two of a kind!", Tone.SUCCESS
        else:
            headline, tone = "No match this time.", Tone.DANGER
        return RenderState(
            game_type=self.game_type,
            title="🎰 Slots",
            description=f"**[ {row} ]**\n{headline}",
            fields=[
                ("Bet", self.coins(session.wager)),
                ("Payout", self.coins(session.payout)),
                ("Net", self.coins(session.payout - session.wager)),
            ],
            tone=tone,
        )

    async def run_game(
        self, player_id: PlayerId, wager: Money, channel_id: ChannelId
    ) -> Optional[SlotsSession]:
        session = SlotsSession(player_id=player_id, wager=wager, channel_id=channel_id)
        if not await self.open_session(player_id, session, self._spinning_state(session, ())):
            return None

        try:
            for _ in range(max(0, self._settings.animation_frames)):
                await asyncio.sleep(self._settings.frame_delay_seconds)
                frame = [spin_reel(self._rng) for _ in range(3)]
                await self.update(session, self._spinning_state(session, frame), player_id)

            session.reels = [spin_reel(self._rng) for _ in range(3)]
            session.payout, session.kind = evaluate_reels(
                session.reels, wager, self._settings.two_match_factor
            )
            outcome = GameOutcome.WIN if session.payout > 0 else GameOutcome.LOSS
            await self.settle(session, session.payout, outcome)
            await self.finish(session, self._result_state(session))
        finally:
            await self.close_session(player_id, session)
        return session


__all__ = [
    "MatchKind",
    "SYMBOLS",
    "SlotSymbol",
    "SlotsEngine",
    "SlotsSession",
    "SlotsSettings",
    "evaluate_reels",
    "spin_reel",
]
