"""Entry point used by the chat layer to start games and route actions."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Set

from casinoapp.actions import ActionCode, PlayerAction
from casinoapp.entities import (
    CasinoError,
    ChannelId,
    GameType,
    Money,
    PlayerId,
    ValidationError,
)
from casinoapp.gateway import GameView
from casinoapp.games.base import BaseGameEngine
from casinoapp.games.russian_roulette import RussianRouletteEngine
from casinoapp.services.session_store import ActivePlayerTracker, SessionRegistry
from casinoapp.services.turn_queue import GameJob, TurnQueue
from casinoapp.utils.logging_helpers import add_context


QUEUED_GAMES = frozenset({GameType.CRASH, GameType.CUPS, GameType.SLOTS})


@dataclass(frozen=True)
class StartResult:
    accepted: bool
    reason: str = ""
    queue_position: int = 0

    @classmethod
    def ok(cls, queue_position: int = 0) -> "StartResult":
        return cls(accepted=True, queue_position=queue_position)

    @classmethod
    def rejected(cls, reason: str) -> "StartResult":
        return cls(accepted=False, reason=reason)


class CasinoService:
    """Facade over the single-player engines, the turn queue and duels.

    Crash, cups and slots are serialised through the :class:`TurnQueue`.
    Blackjack runs immediately in its own task; its player is still
    tracked as active for the duration of the hand.
    """

    def __init__(
        self,
        *,
        engines: Mapping[GameType, BaseGameEngine],
        russian_roulette: RussianRouletteEngine,
        turn_queue: TurnQueue,
        sessions: SessionRegistry,
        tracker: ActivePlayerTracker,
        view: GameView,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._engines: Dict[GameType, BaseGameEngine] = dict(engines)
        self._rr = russian_roulette
        self._queue = turn_queue
        self._sessions = sessions
        self._tracker = tracker
        self._view = view
        self._logger = add_context(logger or logging.getLogger(__name__), category="session")
        self._waiting: Set[PlayerId] = set()
        self._tasks: Set[asyncio.Task[None]] = set()

    @property
    def turn_queue(self) -> TurnQueue:
        return self._queue

    @property
    def sessions(self) -> SessionRegistry:
        return self._sessions

    def engine(self, game_type: GameType) -> BaseGameEngine:
        try:
            return self._engines[game_type]
        except KeyError:
            raise ValidationError(f"{game_type.value} is not a single-player game") from None

    async def start_game(
        self,
        game_type: GameType,
        player_id: PlayerId,
        wager: Money,
        channel_id: ChannelId,
    ) -> StartResult:
        """Validate a request and hand it to the queue or a dedicated task.

        Funds are only checked here; the wager is debited when the game
        actually begins.
        """

        log = self._logger.bind(user_id=player_id, channel_id=channel_id, game_type=game_type)
        try:
            engine = self.engine(game_type)
            engine.validate_wager(wager)
            if player_id in self._waiting:
                raise ValidationError("You already have a game waiting in the queue")
        except CasinoError as exc:
            log.info("Game request rejected", extra={"stage": "validate", "reason": exc.message})
            return StartResult.rejected(exc.message)

        # Reserved before the first await so a second request cannot slip in.
        self._waiting.add(player_id)
        try:
            if self._tracker.is_active(player_id) or await engine.session_exists(player_id):
                raise ValidationError("You already have an active game! Finish it first.")
            await engine.check_balance(player_id, wager)
        except CasinoError as exc:
            self._waiting.discard(player_id)
            log.info("Game request rejected", extra={"stage": "validate", "reason": exc.message})
            return StartResult.rejected(exc.message)

        if game_type not in QUEUED_GAMES:
            task = asyncio.get_running_loop().create_task(
                self._run_direct(engine, player_id, wager, channel_id),
                name=f"{game_type.value}-{player_id}",
            )
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            log.info("Game started", extra={"stage": "spawn", "amount": wager})
            return StartResult.ok()

        async def run() -> None:
            self._waiting.discard(player_id)
            await engine.run_game(player_id, wager, channel_id)

        async def on_queued(position: int) -> None:
            await self._view.notify(
                channel_id,
                f"⏳ You're in the queue! Position: {position}. "
                "Your game will start when it's your turn.",
                player_id=player_id,
            )

        job = GameJob(
            player_id=player_id,
            run=run,
            on_queued=on_queued,
            label=f"{game_type.value}:{player_id}",
        )
        try:
            position = await self._queue.enqueue(job)
        except CasinoError as exc:
            self._waiting.discard(player_id)
            log.warning("Game request not queued", extra={"stage": "enqueue", "reason": exc.message})
            return StartResult.rejected(exc.message)
        return StartResult.ok(queue_position=position)

    async def _run_direct(
        self,
        engine: BaseGameEngine,
        player_id: PlayerId,
        wager: Money,
        channel_id: ChannelId,
    ) -> None:
        try:
            async with self._tracker.track(player_id):
                self._waiting.discard(player_id)
                await engine.run_game(player_id, wager, channel_id)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._logger.exception(
                "Game task failed",
                extra={
                    "user_id": player_id,
                    "game_type": engine.game_type,
                    "stage": "run",
                    "error_type": type(exc).__name__,
                },
            )

    async def dispatch(self, action: PlayerAction) -> bool:
        """Deliver a decoded button press to the session that owns it.

        Returns ``False`` when no session accepted the action.

        Raises:
            ValidationError: The actor is not a participant of the session.
        """

        if action.game_type is GameType.RUSSIAN_ROULETTE:
            if action.action in (ActionCode.ACCEPT, ActionCode.DECLINE):
                await self._rr.respond(action)
                return True
            if isinstance(action.session_key, tuple) and action.actor_id not in action.session_key:
                raise ValidationError("You're not part of this duel!")
        elif action.actor_id != action.session_key:
            raise ValidationError("This isn't your game!")

        delivered = await self._sessions.dispatch(action)
        if not delivered:
            self._logger.debug(
                "Action not delivered",
                extra={
                    "user_id": action.actor_id,
                    "game_type": action.game_type,
                    "action": action.action,
                },
            )
        return delivered

    def is_player_active(self, player_id: PlayerId) -> bool:
        return player_id in self._waiting or self._tracker.is_active(player_id)

    async def wait_until_idle(
        self, player_id: PlayerId, *, timeout: Optional[float] = None
    ) -> bool:
        return await self._tracker.wait_until_idle(player_id, timeout=timeout)

    async def start(self) -> None:
        await self._queue.start()

    async def shutdown(self) -> None:
        await self._queue.stop()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await self._rr.shutdown()


__all__ = ["CasinoService", "QUEUED_GAMES", "StartResult"]
