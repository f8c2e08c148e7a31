"""Russian-roulette duels between two players.

A challenge must be accepted within a short window. Both stakes then go
into a pot and the players take turns pulling the trigger; the survivor
takes the pot.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from casinoapp.actions import ActionCode, PlayerAction, pair_key
from casinoapp.entities import (
    ChannelId,
    GameType,
    InsufficientFundsError,
    Money,
    PlayerId,
    SessionAlreadyActiveError,
    ValidationError,
)
from casinoapp.gateway import ActionButton, MessageHandle, RenderState, Tone
from casinoapp.games.base import EngineContext, format_coins
from casinoapp.metrics import (
    GAMES_SETTLED_COUNTER,
    GAMES_STARTED_COUNTER,
    WAGER_REFUND_COUNTER,
)
from casinoapp.services.session_store import SessionInbox


@dataclass(frozen=True)
class RussianRouletteSettings:
    min_bet: int = 50
    accept_timeout_seconds: float = 30.0
    turn_timeout_seconds: float = 300.0
    chambers: int = 6
    click_pause_seconds: float = 2.0


@dataclass(eq=False)
class Challenge:
    challenger_id: PlayerId
    challenged_id: PlayerId
    bet: Money
    channel_id: ChannelId
    handle: Optional[MessageHandle] = None
    expiry_task: Optional[asyncio.Task[None]] = None


@dataclass(eq=False)
class RussianRouletteGame:
    player1_id: PlayerId
    player2_id: PlayerId
    bet: Money
    channel_id: ChannelId
    bullet_position: int
    current_turn: PlayerId
    current_chamber: int = 1
    round: int = 1
    game_over: bool = False
    winner_id: Optional[PlayerId] = None
    loser_id: Optional[PlayerId] = None
    forfeited: bool = False
    inbox: SessionInbox = field(default_factory=SessionInbox)
    handle: Optional[MessageHandle] = None
    settled: bool = False

    @property
    def key(self) -> Tuple[PlayerId, PlayerId]:
        return pair_key(self.player1_id, self.player2_id)

    @property
    def pot(self) -> Money:
        return self.bet * 2

    def other_player(self, player_id: PlayerId) -> PlayerId:
        return self.player2_id if player_id == self.player1_id else self.player1_id

    def pull_trigger(self, rng: random.Random, chambers: int = 6) -> bool:
        """Fire the current chamber for the player whose turn it is.

        Returns ``True`` if the shooter was hit. Otherwise the cylinder
        advances to the next player, reloading after the last chamber.
        """

        if self.game_over:
            raise ValidationError("The game is already over")
        if self.current_chamber == self.bullet_position:
            self.game_over = True
            self.loser_id = self.current_turn
            self.winner_id = self.other_player(self.current_turn)
            return True
        self.current_chamber += 1
        self.round += 1
        self.current_turn = self.other_player(self.current_turn)
        if self.current_chamber > chambers:
            self.current_chamber = 1
            self.bullet_position = rng.randint(1, chambers)
        return False

    def forfeit(self) -> None:
        if self.game_over:
            return
        self.game_over = True
        self.forfeited = True
        self.loser_id = self.current_turn
        self.winner_id = self.other_player(self.current_turn)


class RussianRouletteEngine:
    game_type = GameType.RUSSIAN_ROULETTE

    def __init__(
        self,
        context: EngineContext,
        settings: Optional[RussianRouletteSettings] = None,
        *,
        rng: Optional[random.Random] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._ctx = context
        self._settings = settings or RussianRouletteSettings()
        self._rng = rng or random.SystemRandom()
        self._logger = logger or logging.getLogger(__name__)
        self._challenges: Dict[PlayerId, Challenge] = {}
        self._challenge_lock = asyncio.Lock()
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def min_bet(self) -> Money:
        return self._settings.min_bet

    @property
    def store(self):
        return self._ctx.sessions.store(self.game_type)

    def _coins(self, amount: Money) -> str:
        return format_coins(amount, self._ctx.currency_symbol)

    def _spawn(self, coro, name: str) -> asyncio.Task[None]:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def pending_challenge(self, challenged_id: PlayerId) -> Optional[Challenge]:
        async with self._challenge_lock:
            return self._challenges.get(challenged_id)

    async def challenge(
        self,
        challenger_id: PlayerId,
        challenged_id: PlayerId,
        bet: Money,
        channel_id: ChannelId,
    ) -> Challenge:
        """Issue a challenge that ``challenged_id`` may accept.

        Raises:
            ValidationError: Self-challenge, bet below minimum, a pending
                challenge or a running game between the pair.
            InsufficientFundsError: The challenger cannot cover the bet.
        """

        if challenger_id == challenged_id:
            raise ValidationError("You can't challenge yourself!")
        if bet < self._settings.min_bet:
            raise ValidationError(
                f"Minimum bet for Russian roulette is {self._coins(self._settings.min_bet)}"
            )
        if await self.store.contains(pair_key(challenger_id, challenged_id)):
            raise ValidationError("You two already have a game in progress")
        balance = await self._ctx.ledger.get_balance(challenger_id)
        if balance < bet:
            raise InsufficientFundsError(challenger_id, bet, balance)

        challenge = Challenge(challenger_id, challenged_id, bet, channel_id)
        async with self._challenge_lock:
            if challenged_id in self._challenges:
                raise ValidationError("That player already has a pending challenge")
            self._challenges[challenged_id] = challenge

        try:
            challenge.handle = await self._ctx.view.render_initial(
                channel_id,
                challenged_id,
                self._challenge_state(challenge),
                challenged_id,
            )
        except Exception:
            async with self._challenge_lock:
                if self._challenges.get(challenged_id) is challenge:
                    del self._challenges[challenged_id]
            raise

        challenge.expiry_task = self._spawn(
            self._expire_challenge(challenge), name=f"rr-challenge-{challenged_id}"
        )
        self._logger.info(
            "Russian roulette challenge issued",
            extra={
                "category": "game",
                "game_type": self.game_type,
                "user_id": challenger_id,
                "opponent_id": challenged_id,
                "amount": bet,
            },
        )
        return challenge

    def _challenge_state(self, challenge: Challenge) -> RenderState:
        return RenderState(
            game_type=self.game_type,
            title="🔫 Russian Roulette Challenge",
            description=(
                f"<@{challenge.challenger_id}> challenges <@{challenge.challenged_id}> "
                "to a duel!"
            ),
            fields=[
                ("Bet", self._coins(challenge.bet)),
                ("Total pot", self._coins(challenge.bet * 2)),
            ],
            buttons=[
                ActionButton(ActionCode.ACCEPT, "Accept", emphasised=True),
                ActionButton(ActionCode.DECLINE, "Decline"),
            ],
            tone=Tone.INFO,
            footer=f"{int(self._settings.accept_timeout_seconds)} seconds to accept.",
        )

    async def _close_challenge(self, challenge: Challenge, text: str) -> None:
        if challenge.handle is None:
            return
        state = RenderState(
            game_type=self.game_type,
            title="🔫 Russian Roulette Challenge",
            description=text,
            tone=Tone.NEUTRAL,
        )
        try:
            await self._ctx.view.render_terminal(challenge.handle, state)
        except Exception as exc:
            self._logger.warning(
                "Failed to close challenge message",
                extra={"category": "game", "error_type": type(exc).__name__},
            )

    async def _expire_challenge(self, challenge: Challenge) -> None:
        await asyncio.sleep(self._settings.accept_timeout_seconds)
        async with self._challenge_lock:
            if self._challenges.get(challenge.challenged_id) is not challenge:
                return
            del self._challenges[challenge.challenged_id]
        await self._close_challenge(
            challenge, f"⏰ <@{challenge.challenged_id}> did not respond in time."
        )

    async def _take_challenge(self, challenged_id: PlayerId) -> Challenge:
        async with self._challenge_lock:
            challenge = self._challenges.pop(challenged_id, None)
        if challenge is None:
            raise ValidationError("No pending challenge found!")
        task = challenge.expiry_task
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        return challenge

    async def decline(self, challenged_id: PlayerId) -> None:
        challenge = await self._take_challenge(challenged_id)
        await self._close_challenge(challenge, f"❌ <@{challenged_id}> declined the challenge!")

    async def accept(self, challenged_id: PlayerId) -> Optional[RussianRouletteGame]:
        """Accept the pending challenge, debit both players and start the duel."""

        challenge = await self._take_challenge(challenged_id)
        ledger = self._ctx.ledger
        bet = challenge.bet

        for player_id in (challenge.challenger_id, challenge.challenged_id):
            balance = await ledger.get_balance(player_id)
            if balance < bet:
                await self._close_challenge(
                    challenge, f"❌ <@{player_id}> no longer has enough coins for this duel."
                )
                return None

        try:
            await ledger.remove_coins(challenge.challenger_id, bet)
        except InsufficientFundsError:
            await self._close_challenge(
                challenge,
                f"❌ <@{challenge.challenger_id}> no longer has enough coins for this duel.",
            )
            return None
        try:
            await ledger.remove_coins(challenge.challenged_id, bet)
        except InsufficientFundsError:
            await ledger.add_coins(challenge.challenger_id, bet)
            await self._close_challenge(
                challenge,
                f"❌ <@{challenge.challenged_id}> no longer has enough coins for this duel.",
            )
            return None

        chambers = self._settings.chambers
        first = self._rng.choice((challenge.challenger_id, challenge.challenged_id))
        game = RussianRouletteGame(
            player1_id=challenge.challenger_id,
            player2_id=challenge.challenged_id,
            bet=bet,
            channel_id=challenge.channel_id,
            bullet_position=self._rng.randint(1, chambers),
            current_turn=first,
            handle=challenge.handle,
        )
        try:
            await self.store.create(game.key, game)
        except SessionAlreadyActiveError:
            await ledger.add_coins(challenge.challenger_id, bet)
            await ledger.add_coins(challenge.challenged_id, bet)
            await self._close_challenge(challenge, "❌ You two already have a game in progress.")
            return None

        GAMES_STARTED_COUNTER.labels(game=self.game_type.value).inc()
        self._spawn(self._run_game(game), name=f"rr-game-{game.key[0]}-{game.key[1]}")
        return game

    async def respond(self, action: PlayerAction) -> None:
        """Route an accept/decline press; only the challenged player may answer."""

        if action.session_key != action.actor_id:
            raise ValidationError("This challenge is not for you!")
        if action.action is ActionCode.ACCEPT:
            await self.accept(action.actor_id)
        elif action.action is ActionCode.DECLINE:
            await self.decline(action.actor_id)

    def _game_state(self, game: RussianRouletteGame, headline: str = "") -> RenderState:
        return RenderState(
            game_type=self.game_type,
            title="🔫 Russian Roulette",
            description=headline or f"<@{game.current_turn}>, it's your turn. Pull the trigger!",
            fields=[
                ("Players", f"<@{game.player1_id}> vs <@{game.player2_id}>"),
                ("Total pot", self._coins(game.pot)),
                ("Round", str(game.round)),
                ("Chamber", f"{game.current_chamber}/{self._settings.chambers}"),
            ],
            buttons=[ActionButton(ActionCode.SHOOT, "Pull the trigger", emphasised=True)],
            tone=Tone.ACTIVE,
        )

    def _final_state(self, game: RussianRouletteGame) -> RenderState:
        if game.forfeited:
            headline = f"⏰ <@{game.loser_id}> froze and forfeits the duel!"
        else:
            headline = f"💥 **POW!** <@{game.loser_id}> pulled the trigger and... **DIED!**"
        return RenderState(
            game_type=self.game_type,
            title="🔫 Russian Roulette - GAME OVER",
            description=headline,
            fields=[
                ("Winner", f"<@{game.winner_id}>"),
                ("Prize", self._coins(game.pot)),
                ("Details", f"Round {game.round} | Chamber {game.current_chamber}/{self._settings.chambers}"),
            ],
            tone=Tone.DANGER,
            footer="The survivor takes all!",
        )

    async def _render(self, game: RussianRouletteGame, state: RenderState, *, terminal: bool) -> None:
        try:
            if game.handle is None:
                game.handle = await self._ctx.view.render_initial(
                    game.channel_id, game.current_turn, state, game.key
                )
            elif terminal:
                await self._ctx.view.render_terminal(game.handle, state)
            else:
                await self._ctx.view.render_update(game.handle, state, game.key)
        except Exception as exc:
            self._logger.warning(
                "Failed to render Russian roulette state",
                extra={"category": "game", "error_type": type(exc).__name__},
            )

    async def _run_game(self, game: RussianRouletteGame) -> None:
        tracker = self._ctx.tracker
        await tracker.mark_active(game.player1_id)
        await tracker.mark_active(game.player2_id)
        try:
            await self._render(game, self._game_state(game), terminal=False)
            while not game.game_over:
                action = await game.inbox.receive(self._settings.turn_timeout_seconds)
                if action is None:
                    game.forfeit()
                    break
                if action.action is not ActionCode.SHOOT:
                    continue
                if action.actor_id != game.current_turn:
                    if action.actor_id in (game.player1_id, game.player2_id):
                        await self._notify(game, "❌ It's not your turn!", action.actor_id)
                    continue
                shooter = game.current_turn
                chamber = game.current_chamber
                if game.pull_trigger(self._rng, self._settings.chambers):
                    break
                await self._render(
                    game,
                    self._game_state(
                        game,
                        f"😅 **CLICK!** <@{shooter}> survived, chamber {chamber} was empty!",
                    ),
                    terminal=False,
                )
                await asyncio.sleep(self._settings.click_pause_seconds)
                await self._render(game, self._game_state(game), terminal=False)

            await self._ctx.ledger.add_coins(game.winner_id, game.pot)
            game.settled = True
            GAMES_SETTLED_COUNTER.labels(
                game=self.game_type.value,
                outcome="forfeit" if game.forfeited else "shot",
            ).inc()
            self._logger.info(
                "Russian roulette settled",
                extra={
                    "category": "game",
                    "game_type": self.game_type,
                    "user_id": game.winner_id,
                    "loser_id": game.loser_id,
                    "amount": game.pot,
                    "round": game.round,
                },
            )
            await self._render(game, self._final_state(game), terminal=True)
        finally:
            try:
                if not game.settled:
                    await self._refund_stakes(game)
            finally:
                await self.store.delete(game.key, game)
                await tracker.mark_idle(game.player1_id)
                await tracker.mark_idle(game.player2_id)

    async def _refund_stakes(self, game: RussianRouletteGame) -> None:
        for player_id in (game.player1_id, game.player2_id):
            await self._ctx.ledger.add_coins(player_id, game.bet)
        game.settled = True
        WAGER_REFUND_COUNTER.labels(game=self.game_type.value, reason="aborted").inc()
        self._logger.warning(
            "Russian roulette stakes refunded",
            extra={
                "category": "game",
                "game_type": self.game_type,
                "user_id": game.player1_id,
                "opponent_id": game.player2_id,
                "amount": game.bet,
                "stage": "refund",
            },
        )

    async def _notify(self, game: RussianRouletteGame, text: str, player_id: PlayerId) -> None:
        try:
            await self._ctx.view.notify(game.channel_id, text, player_id=player_id)
        except Exception as exc:
            self._logger.warning(
                "Failed to send Russian roulette notice",
                extra={"category": "game", "error_type": type(exc).__name__},
            )

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)


__all__ = [
    "Challenge",
    "RussianRouletteEngine",
    "RussianRouletteGame",
    "RussianRouletteSettings",
]
