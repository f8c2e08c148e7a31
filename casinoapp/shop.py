"""Coin shop selling moderation actions against guild members.

Timeouts and voice mutes are never applied to a player in the middle of a
game: the purchase waits until the target is idle. Coins are debited right
before the action is applied and refunded if Discord refuses it.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import enum
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, Protocol, Tuple

from casinoapp.entities import InsufficientFundsError, Money, PlayerId, ValidationError
from casinoapp.games.base import format_coins
from casinoapp.ledger import Ledger
from casinoapp.metrics import SHOP_PURCHASE_COUNTER


GuildId = int


class ShopItem(enum.Enum):
    NICKNAME = "nickname"
    RENAME = "rename"
    TIMEOUT = "timeout"
    MUTE = "mute"


# Items that act on another member and so wait for their game to end.
_WAITS_FOR_IDLE = frozenset({ShopItem.TIMEOUT, ShopItem.MUTE})


@dataclass(frozen=True)
class ShopSettings:
    nickname_self_cost: int = 500
    nickname_other_cost: int = 1000
    timeout_cost_per_minute: int = 100
    mute_cost_per_minute: int = 50
    max_minutes: int = 1440
    max_nickname_length: int = 32
    idle_wait_timeout_seconds: float = 600.0


class Moderator(Protocol):
    """Guild moderation actions the shop sells."""

    async def set_nickname(
        self, guild_id: GuildId, member_id: PlayerId, nickname: str
    ) -> None:
        ...

    async def timeout(
        self, guild_id: GuildId, member_id: PlayerId, minutes: int
    ) -> dt.datetime:
        """Time the member out, extending any running timeout; return its end."""
        ...

    async def set_voice_mute(
        self, guild_id: GuildId, member_id: PlayerId, muted: bool
    ) -> None:
        ...


class PlayerActivity(Protocol):
    def is_player_active(self, player_id: PlayerId) -> bool:
        ...

    async def wait_until_idle(
        self, player_id: PlayerId, *, timeout: Optional[float] = None
    ) -> bool:
        ...


@dataclass(frozen=True)
class Purchase:
    item: ShopItem
    buyer_id: PlayerId
    target_id: PlayerId
    cost: Money
    minutes: int = 0
    until: Optional[dt.datetime] = None


class ShopService:
    def __init__(
        self,
        ledger: Ledger,
        moderator: Moderator,
        activity: PlayerActivity,
        settings: Optional[ShopSettings] = None,
        *,
        currency_symbol: str = "🪙",
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._ledger = ledger
        self._moderator = moderator
        self._activity = activity
        self._settings = settings or ShopSettings()
        self._currency = currency_symbol
        self._logger = logger or logging.getLogger(__name__)
        self._unmute_tasks: Dict[Tuple[GuildId, PlayerId], asyncio.Task[None]] = {}

    def _coins(self, amount: Money) -> str:
        return format_coins(amount, self._currency)

    def price(self, item: ShopItem, minutes: int = 0) -> Money:
        settings = self._settings
        if item is ShopItem.NICKNAME:
            return settings.nickname_self_cost
        if item is ShopItem.RENAME:
            return settings.nickname_other_cost
        if item is ShopItem.TIMEOUT:
            return settings.timeout_cost_per_minute * minutes
        return settings.mute_cost_per_minute * minutes

    def describe(self) -> str:
        settings = self._settings
        return "\n".join(
            [
                "🛒 **Shop**",
                f"1. **Change your nickname**: {self._coins(settings.nickname_self_cost)}",
                "   `buy nickname <new name>`",
                f"2. **Change someone's nickname**: {self._coins(settings.nickname_other_cost)}",
                "   `buy rename @user <new name>`",
                f"3. **Timeout a member** (text and voice): "
                f"{self._coins(settings.timeout_cost_per_minute)} per minute",
                "   `buy timeout @user <minutes>`",
                f"4. **Voice mute a member** (must be in a call): "
                f"{self._coins(settings.mute_cost_per_minute)} per minute",
                "   `buy mute @user <minutes>`",
            ]
        )

    def _validate(
        self, item: ShopItem, nickname: Optional[str], minutes: int
    ) -> Optional[str]:
        if item in (ShopItem.NICKNAME, ShopItem.RENAME):
            name = (nickname or "").strip()
            if not name:
                raise ValidationError("Please provide a nickname.")
            if len(name) > self._settings.max_nickname_length:
                raise ValidationError(
                    f"Nicknames can be at most {self._settings.max_nickname_length} characters."
                )
            return name
        if minutes <= 0 or minutes > self._settings.max_minutes:
            raise ValidationError(
                f"Minutes must be between 1 and {self._settings.max_minutes}."
            )
        return None

    async def purchase(
        self,
        buyer_id: PlayerId,
        guild_id: GuildId,
        item: ShopItem,
        *,
        target_id: Optional[PlayerId] = None,
        nickname: Optional[str] = None,
        minutes: int = 0,
        on_wait: Optional[Callable[[PlayerId], Awaitable[None]]] = None,
    ) -> Purchase:
        """Charge ``buyer_id`` for ``item`` and apply it.

        Raises:
            ValidationError: On bad arguments or when the target stays in a
                game longer than the configured wait.
            InsufficientFundsError: If the buyer cannot afford the item.
            ModerationError: If Discord refuses the action; the buyer is
                refunded.
        """

        if item is ShopItem.NICKNAME:
            target_id = buyer_id
        if target_id is None:
            raise ValidationError("Please mention the member to target.")
        name = self._validate(item, nickname, minutes)
        cost = self.price(item, minutes)

        balance = await self._ledger.get_balance(buyer_id)
        if balance < cost:
            raise InsufficientFundsError(buyer_id, cost, balance)

        if item in _WAITS_FOR_IDLE and self._activity.is_player_active(target_id):
            if on_wait is not None:
                await on_wait(target_id)
            idle = await self._activity.wait_until_idle(
                target_id, timeout=self._settings.idle_wait_timeout_seconds
            )
            if not idle:
                raise ValidationError(f"<@{target_id}> is still playing. Try again later.")

        await self._ledger.remove_coins(buyer_id, cost)
        until: Optional[dt.datetime] = None
        try:
            if name is not None:
                await self._moderator.set_nickname(guild_id, target_id, name)
            elif item is ShopItem.TIMEOUT:
                until = await self._moderator.timeout(guild_id, target_id, minutes)
            else:
                await self._moderator.set_voice_mute(guild_id, target_id, True)
                self._schedule_unmute(guild_id, target_id, minutes)
        except Exception as exc:
            await self._ledger.add_coins(buyer_id, cost)
            self._logger.warning(
                "Shop purchase refunded",
                extra={
                    "category": "shop",
                    "user_id": buyer_id,
                    "target_id": target_id,
                    "item": item.value,
                    "amount": cost,
                    "error_type": type(exc).__name__,
                },
            )
            raise

        SHOP_PURCHASE_COUNTER.labels(item=item.value).inc()
        self._logger.info(
            "Shop purchase applied",
            extra={
                "category": "shop",
                "user_id": buyer_id,
                "target_id": target_id,
                "item": item.value,
                "amount": cost,
                "minutes": minutes,
            },
        )
        return Purchase(
            item=item,
            buyer_id=buyer_id,
            target_id=target_id,
            cost=cost,
            minutes=minutes,
            until=until,
        )

    def _schedule_unmute(self, guild_id: GuildId, member_id: PlayerId, minutes: int) -> None:
        key = (guild_id, member_id)
        previous = self._unmute_tasks.pop(key, None)
        if previous is not None:
            previous.cancel()
        task = asyncio.get_running_loop().create_task(
            self._unmute_later(guild_id, member_id, minutes * 60.0),
            name=f"shop-unmute-{member_id}",
        )
        self._unmute_tasks[key] = task

    async def _unmute_later(self, guild_id: GuildId, member_id: PlayerId, delay: float) -> None:
        key = (guild_id, member_id)
        try:
            await asyncio.sleep(delay)
        finally:
            # A newer mute may have replaced this timer.
            if self._unmute_tasks.get(key) is asyncio.current_task():
                del self._unmute_tasks[key]
        await self._unmute(guild_id, member_id)

    async def _unmute(self, guild_id: GuildId, member_id: PlayerId) -> None:
        try:
            await self._moderator.set_voice_mute(guild_id, member_id, False)
        except Exception as exc:
            self._logger.warning(
                "Failed to lift voice mute",
                extra={
                    "category": "shop",
                    "user_id": member_id,
                    "error_type": type(exc).__name__,
                },
            )

    @property
    def pending_unmutes(self) -> int:
        return len(self._unmute_tasks)

    async def shutdown(self) -> None:
        """Cancel unmute timers and lift those mutes right away."""

        pending = list(self._unmute_tasks.items())
        self._unmute_tasks.clear()
        for (guild_id, member_id), task in pending:
            task.cancel()
            await self._unmute(guild_id, member_id)
        if pending:
            await asyncio.gather(*(task for _, task in pending), return_exceptions=True)


__all__ = [
    "Moderator",
    "PlayerActivity",
    "Purchase",
    "ShopItem",
    "ShopService",
    "ShopSettings",
]
