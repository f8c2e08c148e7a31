"""Coin ledger backed by Redis.

Every balance lives under a single Redis key. Debits and transfers run as
Lua scripts so that "check funds, then move them" happens atomically on the
server: two concurrent spends can never both succeed against one balance.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import heapq
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterator, List, Mapping, Optional, Protocol, Tuple

import redis.asyncio as aioredis

from casinoapp.entities import InsufficientFundsError, Money, PlayerId
from casinoapp.metrics import (
    LEDGER_INSUFFICIENT_FUNDS_COUNTER,
    LEDGER_OPERATION_DURATION,
    PAYOUT_FAILURE_COUNTER,
)
from casinoapp.utils.time_utils import now_utc


class Ledger(Protocol):
    """Atomic account-balance service consumed by the game engines."""

    async def get_balance(self, player_id: PlayerId) -> Money:
        ...

    async def add_coins(self, player_id: PlayerId, amount: Money) -> Money:
        ...

    async def remove_coins(self, player_id: PlayerId, amount: Money) -> Money:
        ...

    async def transfer(
        self, from_id: PlayerId, to_id: PlayerId, amount: Money
    ) -> None:
        ...


_LUA_DEBIT_IF_GE = """
local current = tonumber(redis.call('GET', KEYS[1]))
if current == nil then
    redis.call('SET', KEYS[1], ARGV[2])
    current = tonumber(ARGV[2])
end
local amount = tonumber(ARGV[1])
if current >= amount then
    return {1, redis.call('DECRBY', KEYS[1], amount)}
end
return {0, current}
"""

_LUA_TRANSFER_IF_GE = """
local source = tonumber(redis.call('GET', KEYS[1]))
if source == nil then
    redis.call('SET', KEYS[1], ARGV[2])
    source = tonumber(ARGV[2])
end
if redis.call('EXISTS', KEYS[2]) == 0 then
    redis.call('SET', KEYS[2], ARGV[2])
end
local amount = tonumber(ARGV[1])
if source < amount then
    return {0, source}
end
redis.call('DECRBY', KEYS[1], amount)
redis.call('INCRBY', KEYS[2], amount)
return {1, source - amount}
"""

# KEYS[1] balance, KEYS[2] claim marker; ARGV amount, starting balance, cooldown.
_LUA_CLAIM_DAILY = """
if redis.call('EXISTS', KEYS[2]) == 1 then
    return {0, redis.call('TTL', KEYS[2])}
end
if redis.call('EXISTS', KEYS[1]) == 0 then
    redis.call('SET', KEYS[1], ARGV[2])
end
local balance = redis.call('INCRBY', KEYS[1], tonumber(ARGV[1]))
redis.call('SET', KEYS[2], '1', 'EX', tonumber(ARGV[3]))
return {1, balance}
"""


@dataclass(frozen=True)
class DailyClaim:
    """Outcome of :meth:`RedisLedger.claim_daily`."""

    claimed: bool
    amount: Money
    balance: Optional[Money] = None
    next_claim_at: Optional[dt.datetime] = None


class RedisLedger:
    """:class:`Ledger` implementation storing balances as Redis integers."""

    def __init__(
        self,
        kv: aioredis.Redis,
        *,
        key_prefix: str = "casino:balance:",
        daily_key_prefix: str = "casino:daily:",
        starting_balance: Money = 0,
        daily_amount: Money = 100,
        daily_cooldown_seconds: float = 24 * 3600,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._kv = kv
        self._key_prefix = key_prefix
        self._daily_key_prefix = daily_key_prefix
        self._starting_balance = int(starting_balance)
        self._daily_amount = int(daily_amount)
        self._daily_cooldown = max(1, int(daily_cooldown_seconds))
        self._logger = logger or logging.getLogger(__name__)
        self._debit_script = self._kv.register_script(_LUA_DEBIT_IF_GE)
        self._transfer_script = self._kv.register_script(_LUA_TRANSFER_IF_GE)
        self._daily_script = self._kv.register_script(_LUA_CLAIM_DAILY)

    def _key(self, player_id: PlayerId) -> str:
        return f"{self._key_prefix}{player_id}"

    @contextmanager
    def _timed(self, operation: str) -> Iterator[None]:
        started = time.perf_counter()
        try:
            yield
        finally:
            LEDGER_OPERATION_DURATION.labels(operation=operation).observe(
                time.perf_counter() - started
            )

    async def get_balance(self, player_id: PlayerId) -> Money:
        """Return the balance, creating the account on first access."""

        with self._timed("get_balance"):
            key = self._key(player_id)
            created = await self._kv.set(key, self._starting_balance, nx=True)
            if created:
                return self._starting_balance
            raw = await self._kv.get(key)
            return int(raw) if raw is not None else self._starting_balance

    async def add_coins(self, player_id: PlayerId, amount: Money) -> Money:
        """Credit ``amount`` to ``player_id``.

        A negative ``amount`` is applied unconditionally and may drive the
        balance below zero; this is how outstanding debt is recorded.
        """

        with self._timed("add_coins"):
            key = self._key(player_id)
            await self._kv.set(key, self._starting_balance, nx=True)
            result = await self._kv.incrby(key, int(amount))
        self._logger.debug(
            "Ledger credit applied",
            extra={
                "category": "ledger",
                "user_id": player_id,
                "amount": amount,
                "balance": int(result),
            },
        )
        return int(result)

    async def remove_coins(self, player_id: PlayerId, amount: Money) -> Money:
        """Debit ``amount`` if the balance covers it.

        Raises:
            ValueError: If ``amount`` is negative.
            InsufficientFundsError: If the balance is lower than ``amount``.
        """

        if amount < 0:
            raise ValueError("Amount to remove cannot be negative.")
        if amount == 0:
            return await self.get_balance(player_id)

        with self._timed("remove_coins"):
            ok, value = await self._debit_script(
                keys=[self._key(player_id)],
                args=[int(amount), self._starting_balance],
            )
        if int(ok) != 1:
            LEDGER_INSUFFICIENT_FUNDS_COUNTER.labels(operation="remove_coins").inc()
            raise InsufficientFundsError(player_id, amount, int(value))
        self._logger.debug(
            "Ledger debit applied",
            extra={
                "category": "ledger",
                "user_id": player_id,
                "amount": amount,
                "balance": int(value),
            },
        )
        return int(value)

    async def transfer(
        self, from_id: PlayerId, to_id: PlayerId, amount: Money
    ) -> None:
        """Move ``amount`` between accounts; neither side changes on failure."""

        if amount < 0:
            raise ValueError("Amount to transfer cannot be negative.")
        if from_id == to_id or amount == 0:
            return

        with self._timed("transfer"):
            ok, value = await self._transfer_script(
                keys=[self._key(from_id), self._key(to_id)],
                args=[int(amount), self._starting_balance],
            )
        if int(ok) != 1:
            LEDGER_INSUFFICIENT_FUNDS_COUNTER.labels(operation="transfer").inc()
            raise InsufficientFundsError(from_id, amount, int(value))
        self._logger.info(
            "Ledger transfer applied",
            extra={
                "category": "ledger",
                "user_id": from_id,
                "to_user_id": to_id,
                "amount": amount,
            },
        )

    async def claim_daily(self, player_id: PlayerId) -> DailyClaim:
        """Credit the daily reward unless it was claimed within the cooldown.

        The cooldown check and the credit run in one script, so a player
        spamming the command is paid at most once per window.
        """

        with self._timed("claim_daily"):
            ok, value = await self._daily_script(
                keys=[self._key(player_id), f"{self._daily_key_prefix}{player_id}"],
                args=[self._daily_amount, self._starting_balance, self._daily_cooldown],
            )
        if int(ok) != 1:
            remaining = max(0, int(value))
            return DailyClaim(
                claimed=False,
                amount=self._daily_amount,
                next_claim_at=now_utc() + dt.timedelta(seconds=remaining),
            )
        self._logger.info(
            "Daily reward claimed",
            extra={
                "category": "ledger",
                "user_id": player_id,
                "amount": self._daily_amount,
                "balance": int(value),
            },
        )
        return DailyClaim(claimed=True, amount=self._daily_amount, balance=int(value))

    async def leaderboard(self, limit: int = 10) -> List[Tuple[PlayerId, Money]]:
        """Return the ``limit`` richest accounts, highest balance first."""

        with self._timed("leaderboard"):
            keys = [key async for key in self._kv.scan_iter(match=f"{self._key_prefix}*")]
            values = await self._kv.mget(keys) if keys else []
        entries: List[Tuple[PlayerId, Money]] = []
        for key, raw in zip(keys, values):
            text = key.decode() if isinstance(key, bytes) else str(key)
            suffix = text[len(self._key_prefix):]
            if raw is None or not suffix.isdigit():
                continue
            entries.append((int(suffix), int(raw)))
        return heapq.nlargest(max(0, limit), entries, key=lambda entry: (entry[1], -entry[0]))


async def credit_each(
    ledger: Ledger,
    credits: Mapping[PlayerId, Money],
    *,
    source: str,
    attempts: int = 3,
    retry_delay: float = 0.5,
    logger: Optional[logging.Logger] = None,
) -> Dict[PlayerId, Money]:
    """Apply every credit in ``credits`` independently.

    Each credit is retried up to ``attempts`` times with a growing delay. A
    credit that keeps failing never stops the others from being applied.

    Returns:
        The credits that could not be applied, keyed by player.
    """

    log = logger or logging.getLogger(__name__)
    unpaid: Dict[PlayerId, Money] = {}
    for player_id, amount in credits.items():
        if amount <= 0:
            continue
        for attempt in range(1, max(1, attempts) + 1):
            try:
                await ledger.add_coins(player_id, amount)
                break
            except Exception as exc:
                if attempt >= attempts:
                    unpaid[player_id] = amount
                    PAYOUT_FAILURE_COUNTER.labels(source=source).inc()
                    log.exception(
                        "Payout credit failed",
                        extra={
                            "category": "ledger",
                            "user_id": player_id,
                            "amount": amount,
                            "source": source,
                            "error_type": type(exc).__name__,
                        },
                    )
                    break
                await asyncio.sleep(retry_delay * attempt)
    return unpaid


__all__ = ["DailyClaim", "Ledger", "RedisLedger", "credit_each"]
