#!/usr/bin/env python3

import enum
from typing import Optional

PlayerId = int
ChannelId = int
MessageId = int
Money = int


class GameType(enum.Enum):
    CRASH = "crash"
    CUPS = "cups"
    BLACKJACK = "blackjack"
    SLOTS = "slots"
    ROULETTE = "roulette"
    RUSSIAN_ROULETTE = "rr"
    EVENT_BETTING = "event"


class GameOutcome(enum.Enum):
    WIN = "win"
    LOSS = "loss"
    PUSH = "push"
    CASHED_OUT = "cashed_out"
    CRASHED = "crashed"
    TIMEOUT = "timeout"
    REFUNDED = "refunded"


class CasinoError(Exception):
    """Base class for errors surfaced to players by the casino."""

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message


class ValidationError(CasinoError):
    pass


class InsufficientFundsError(CasinoError):
    def __init__(
        self,
        player_id: Optional[PlayerId] = None,
        required: Money = 0,
        balance: Optional[Money] = None,
    ) -> None:
        if balance is None:
            message = f"Insufficient funds: {required} coins required"
        else:
            message = f"Insufficient funds: {required} coins required, balance is {balance}"
        super().__init__(message)
        self.player_id = player_id
        self.required = required
        self.balance = balance


class SessionAlreadyActiveError(CasinoError):
    def __init__(self, game_type: GameType, key) -> None:
        super().__init__(f"A {game_type.value} game is already active")
        self.game_type = game_type
        self.key = key


class RenderFailureError(CasinoError):
    pass


class QueueFullError(CasinoError):
    pass


class MarketUnavailableError(CasinoError):
    pass


class ModerationError(CasinoError):
    pass
