"""Plumbing shared by the single-player game engines."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import random
from dataclasses import dataclass
from typing import Any, Collection, Hashable, Mapping, Optional, Type, TypeVar

from casinoapp.actions import ActionCode, PlayerAction
from casinoapp.entities import (
    ChannelId,
    GameType,
    InsufficientFundsError,
    Money,
    PlayerId,
    SessionAlreadyActiveError,
    ValidationError,
)
from casinoapp.gateway import GameView, RenderState
from casinoapp.ledger import Ledger
from casinoapp.metrics import (
    GAMES_SETTLED_COUNTER,
    GAMES_STARTED_COUNTER,
    WAGER_REFUND_COUNTER,
)
from casinoapp.services.session_store import (
    ActivePlayerTracker,
    GameSession,
    SessionRegistry,
    SessionStore,
)
from casinoapp.utils.logging_helpers import add_context


logger = logging.getLogger(__name__)

SettingsT = TypeVar("SettingsT")


def settings_from_mapping(cls: Type[SettingsT], data: Mapping[str, Any]) -> SettingsT:
    """Build a frozen settings dataclass from a config section.

    Unknown keys are ignored. Values that cannot be coerced to the type of
    the field default are logged and replaced by that default.
    """

    kwargs = {}
    for field in dataclasses.fields(cls):
        if field.name not in data:
            continue
        raw = data[field.name]
        caster = type(field.default)
        try:
            kwargs[field.name] = caster(raw)
        except (TypeError, ValueError):
            logger.warning(
                "Invalid value %r for %s.%s; using default.",
                raw,
                cls.__name__,
                field.name,
                extra={"category": "config", "error_type": "ValueError"},
            )
    return cls(**kwargs)


def format_coins(amount: Money, symbol: str = "🪙") -> str:
    return f"{amount:,} {symbol}"


@dataclass(frozen=True)
class EngineContext:
    """Collaborators every engine needs, injected from the bootstrap."""

    ledger: Ledger
    view: GameView
    sessions: SessionRegistry
    tracker: ActivePlayerTracker
    currency_symbol: str = "🪙"


class BaseGameEngine:
    """Session lifecycle helpers for games owned by a single player.

    ``open_session`` is the only way a wager is debited. It guarantees that
    once it returns ``True`` the session is registered and rendered, and
    when it returns ``False`` no funds remain debited.

    ``close_session`` refunds whatever a session staked if it ends without
    being settled, including when its task is cancelled at shutdown.
    """

    game_type: GameType
    inbox_capacity: int = 0

    def __init__(
        self,
        context: EngineContext,
        *,
        min_bet: Money,
        rng: Optional[random.Random] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._ctx = context
        self._min_bet = min_bet
        self._rng = rng or random.SystemRandom()
        self._logger = add_context(
            logger or logging.getLogger(__name__),
            category="game",
            game_type=self.game_type,
        )

    @property
    def min_bet(self) -> Money:
        return self._min_bet

    @property
    def store(self) -> SessionStore[Any]:
        return self._ctx.sessions.store(self.game_type)

    def coins(self, amount: Money) -> str:
        return format_coins(amount, self._ctx.currency_symbol)

    def validate_wager(self, wager: Money) -> None:
        if wager < self._min_bet:
            raise ValidationError(
                f"Minimum bet for {self.game_type.value} is {self.coins(self._min_bet)}"
            )

    async def check_balance(self, player_id: PlayerId, amount: Money) -> None:
        """Fast pre-check; the debit itself remains authoritative."""

        balance = await self._ctx.ledger.get_balance(player_id)
        if balance < amount:
            raise InsufficientFundsError(player_id, amount, balance)

    async def session_exists(self, key: Hashable) -> bool:
        return await self.store.contains(key)

    async def open_session(
        self,
        key: Hashable,
        session: GameSession,
        initial_state: RenderState,
    ) -> bool:
        log = self._logger.bind(user_id=session.player_id, channel_id=session.channel_id)
        ledger = self._ctx.ledger

        try:
            await ledger.remove_coins(session.player_id, session.wager)
        except InsufficientFundsError as exc:
            log.info(
                "Wager rejected at debit time",
                extra={"stage": "debit", "amount": session.wager},
            )
            await self.notify(
                session.channel_id,
                "Your balance changed while you were waiting; "
                f"the game was cancelled. ({exc.message})",
                player_id=session.player_id,
            )
            return False

        try:
            await self.store.create(key, session)
        except SessionAlreadyActiveError as exc:
            await self._refund(session, reason="duplicate_session")
            await self.notify(session.channel_id, exc.message, player_id=session.player_id)
            return False

        try:
            session.handle = await self._ctx.view.render_initial(
                session.channel_id, session.player_id, initial_state, key
            )
        except Exception as exc:
            log.exception(
                "Initial render failed; refunding wager",
                extra={"stage": "render_initial", "error_type": type(exc).__name__},
            )
            await self.store.delete(key, session)
            await self._refund(session, reason="render_failure")
            return False

        GAMES_STARTED_COUNTER.labels(game=self.game_type.value).inc()
        log.info("Game session started", extra={"stage": "start", "amount": session.wager})
        return True

    async def close_session(self, key: Hashable, session: GameSession) -> None:
        """Unregister ``session``; a session that never settled is refunded."""

        try:
            if not session.settled:
                await self._refund(session, reason="aborted")
        finally:
            await self.store.delete(key, session)

    async def _refund(self, session: GameSession, *, reason: str) -> None:
        amount = session.total_staked
        await self._ctx.ledger.add_coins(session.player_id, amount)
        session.settled = True
        WAGER_REFUND_COUNTER.labels(game=self.game_type.value, reason=reason).inc()
        self._logger.warning(
            "Wager refunded",
            extra={
                "user_id": session.player_id,
                "amount": amount,
                "stage": "refund",
                "reason": reason,
            },
        )

    async def settle(self, session: GameSession, payout: Money, outcome: Any) -> None:
        """Apply the single settlement credit for a finished session."""

        if payout > 0:
            await self._ctx.ledger.add_coins(session.player_id, payout)
        session.settled = True
        outcome_label = getattr(outcome, "value", outcome)
        GAMES_SETTLED_COUNTER.labels(game=self.game_type.value, outcome=outcome_label).inc()
        self._logger.info(
            "Game settled",
            extra={
                "user_id": session.player_id,
                "channel_id": session.channel_id,
                "stage": "settle",
                "outcome": outcome_label,
                "amount": payout,
                "wager": session.wager,
            },
        )

    async def await_action(
        self,
        session: GameSession,
        timeout: Optional[float],
        accepted: Collection[ActionCode],
    ) -> Optional[PlayerAction]:
        """Wait for one of ``accepted``; other actions are ignored.

        Returns ``None`` once ``timeout`` seconds have passed in total.
        """

        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            remaining = None if deadline is None else max(0.0, deadline - loop.time())
            action = await session.inbox.receive(remaining)
            if action is None:
                return None
            if action.action in accepted and action.actor_id == session.player_id:
                return action

    async def update(self, session: GameSession, state: RenderState, key: Hashable) -> None:
        if session.handle is None:
            return
        try:
            await self._ctx.view.render_update(session.handle, state, key)
        except Exception as exc:
            self._logger.warning(
                "Failed to update game message",
                extra={
                    "user_id": session.player_id,
                    "stage": "render_update",
                    "error_type": type(exc).__name__,
                },
            )

    async def finish(self, session: GameSession, state: RenderState) -> None:
        if session.handle is None:
            return
        try:
            await self._ctx.view.render_terminal(session.handle, state)
        except Exception as exc:
            self._logger.warning(
                "Failed to render final game state",
                extra={
                    "user_id": session.player_id,
                    "stage": "render_terminal",
                    "error_type": type(exc).__name__,
                },
            )

    async def notify(
        self, channel_id: ChannelId, text: str, *, player_id: Optional[PlayerId] = None
    ) -> None:
        try:
            await self._ctx.view.notify(channel_id, text, player_id=player_id)
        except Exception as exc:
            self._logger.warning(
                "Failed to send notification",
                extra={
                    "user_id": player_id,
                    "channel_id": channel_id,
                    "stage": "notify",
                    "error_type": type(exc).__name__,
                },
            )


__all__ = [
    "BaseGameEngine",
    "EngineContext",
    "format_coins",
    "settings_from_mapping",
]
