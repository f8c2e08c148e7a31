"""Player-to-player loans with interest and automatic collection.

Offers live in memory until the borrower answers. Accepted loans are
persisted in Redis so their collection timers can be restored after a
restart.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Set, Tuple

import redis.asyncio as aioredis

from casinoapp.entities import (
    ChannelId,
    InsufficientFundsError,
    Money,
    PlayerId,
    ValidationError,
)
from casinoapp.gateway import GameView
from casinoapp.games.base import format_coins
from casinoapp.ledger import Ledger
from casinoapp.metrics import LOAN_SETTLEMENT_COUNTER
from casinoapp.utils.time_utils import now_utc, seconds_until


@dataclass(frozen=True)
class LoanSettings:
    offer_timeout_seconds: float = 60.0
    max_interest_rate: float = 100.0
    max_days: int = 365


def total_owed(amount: Money, interest_rate: float) -> Money:
    return amount + int(amount * interest_rate / 100)


@dataclass(eq=False)
class Loan:
    loan_id: str
    lender_id: PlayerId
    borrower_id: PlayerId
    amount: Money
    interest_rate: float
    total_owed: Money
    due_date: dt.datetime
    channel_id: ChannelId
    created_at: dt.datetime = field(default_factory=now_utc)
    paid: bool = False

    def to_mapping(self) -> Dict[str, str]:
        return {
            "loan_id": self.loan_id,
            "lender_id": str(self.lender_id),
            "borrower_id": str(self.borrower_id),
            "amount": str(self.amount),
            "interest_rate": repr(self.interest_rate),
            "total_owed": str(self.total_owed),
            "due_date": self.due_date.isoformat(),
            "channel_id": str(self.channel_id),
            "created_at": self.created_at.isoformat(),
            "paid": "1" if self.paid else "0",
        }

    @classmethod
    def from_mapping(cls, data: Mapping) -> "Loan":
        def _text(key: str) -> str:
            value = data[key] if key in data else data[key.encode()]
            return value.decode() if isinstance(value, bytes) else str(value)

        return cls(
            loan_id=_text("loan_id"),
            lender_id=int(_text("lender_id")),
            borrower_id=int(_text("borrower_id")),
            amount=int(_text("amount")),
            interest_rate=float(_text("interest_rate")),
            total_owed=int(_text("total_owed")),
            due_date=dt.datetime.fromisoformat(_text("due_date")),
            channel_id=int(_text("channel_id")),
            created_at=dt.datetime.fromisoformat(_text("created_at")),
            paid=_text("paid") == "1",
        )


@dataclass(eq=False)
class LoanOffer:
    loan: Loan
    expiry_task: Optional[asyncio.Task[None]] = None


class LoanRepository:
    """Redis persistence for accepted loans."""

    def __init__(
        self,
        kv: aioredis.Redis,
        *,
        key_prefix: str = "casino:loan:",
        index_key: str = "casino:loans",
        sequence_key: str = "casino:loan:seq",
    ) -> None:
        self._kv = kv
        self._key_prefix = key_prefix
        self._index_key = index_key
        self._sequence_key = sequence_key

    def _key(self, loan_id: str) -> str:
        return f"{self._key_prefix}{loan_id}"

    async def next_id(self) -> str:
        sequence = await self._kv.incr(self._sequence_key)
        return f"loan_{int(time.time())}_{sequence}"

    async def save(self, loan: Loan) -> None:
        pipe = self._kv.pipeline(transaction=True)
        pipe.hset(self._key(loan.loan_id), mapping=loan.to_mapping())
        if loan.paid:
            pipe.srem(self._index_key, loan.loan_id)
        else:
            pipe.sadd(self._index_key, loan.loan_id)
        await pipe.execute()

    async def mark_paid(self, loan_id: str) -> None:
        pipe = self._kv.pipeline(transaction=True)
        pipe.hset(self._key(loan_id), "paid", "1")
        pipe.srem(self._index_key, loan_id)
        await pipe.execute()

    async def get(self, loan_id: str) -> Optional[Loan]:
        data = await self._kv.hgetall(self._key(loan_id))
        if not data:
            return None
        return Loan.from_mapping(data)

    async def load_active(self) -> List[Loan]:
        loans: List[Loan] = []
        for raw_id in await self._kv.smembers(self._index_key):
            loan_id = raw_id.decode() if isinstance(raw_id, bytes) else str(raw_id)
            loan = await self.get(loan_id)
            if loan is not None and not loan.paid:
                loans.append(loan)
        return sorted(loans, key=lambda loan: loan.created_at)


class LoanService:
    def __init__(
        self,
        ledger: Ledger,
        repository: LoanRepository,
        view: GameView,
        settings: Optional[LoanSettings] = None,
        *,
        currency_symbol: str = "🪙",
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._ledger = ledger
        self._repository = repository
        self._view = view
        self._settings = settings or LoanSettings()
        self._currency = currency_symbol
        self._logger = logger or logging.getLogger(__name__)
        self._lock = asyncio.Lock()
        self._pending: Dict[PlayerId, LoanOffer] = {}
        self._active: Dict[str, Loan] = {}
        self._settling: Set[str] = set()
        self._timers: Dict[str, asyncio.Task[None]] = {}

    def _coins(self, amount: Money) -> str:
        return format_coins(amount, self._currency)

    async def offer(
        self,
        lender_id: PlayerId,
        borrower_id: PlayerId,
        amount: Money,
        interest_rate: float,
        days: int,
        channel_id: ChannelId,
    ) -> LoanOffer:
        """Propose a loan; the borrower must accept before it expires.

        Raises:
            ValidationError: Invalid terms, self-lending or a pending offer.
            InsufficientFundsError: The lender cannot cover ``amount``.
        """

        settings = self._settings
        if lender_id == borrower_id:
            raise ValidationError("You can't lend money to yourself!")
        if amount <= 0:
            raise ValidationError("Amount must be positive")
        if not 0 <= interest_rate <= settings.max_interest_rate:
            raise ValidationError(
                f"Interest rate must be between 0 and {settings.max_interest_rate:g}%"
            )
        if not 1 <= days <= settings.max_days:
            raise ValidationError(f"Days must be between 1 and {settings.max_days}")

        balance = await self._ledger.get_balance(lender_id)
        if balance < amount:
            raise InsufficientFundsError(lender_id, amount, balance)

        loan = Loan(
            loan_id=await self._repository.next_id(),
            lender_id=lender_id,
            borrower_id=borrower_id,
            amount=amount,
            interest_rate=float(interest_rate),
            total_owed=total_owed(amount, interest_rate),
            due_date=now_utc() + dt.timedelta(days=days),
            channel_id=channel_id,
        )
        pending = LoanOffer(loan=loan)
        async with self._lock:
            if borrower_id in self._pending:
                raise ValidationError(f"<@{borrower_id}> already has a pending loan request!")
            self._pending[borrower_id] = pending
        pending.expiry_task = asyncio.get_running_loop().create_task(
            self._expire_offer(pending), name=f"loan-offer-{loan.loan_id}"
        )
        self._logger.info(
            "Loan offered",
            extra={
                "category": "loan",
                "user_id": lender_id,
                "borrower_id": borrower_id,
                "amount": amount,
                "loan_id": loan.loan_id,
            },
        )
        return pending

    async def _expire_offer(self, pending: LoanOffer) -> None:
        await asyncio.sleep(self._settings.offer_timeout_seconds)
        loan = pending.loan
        async with self._lock:
            if self._pending.get(loan.borrower_id) is not pending:
                return
            del self._pending[loan.borrower_id]
        await self._notify(
            loan.channel_id,
            f"⏰ The loan offer from <@{loan.lender_id}> to <@{loan.borrower_id}> expired.",
        )

    async def _take_offer(self, borrower_id: PlayerId) -> LoanOffer:
        async with self._lock:
            pending = self._pending.pop(borrower_id, None)
        if pending is None:
            raise ValidationError("You don't have a pending loan offer")
        if pending.expiry_task is not None:
            pending.expiry_task.cancel()
        return pending

    async def decline(self, borrower_id: PlayerId) -> Loan:
        pending = await self._take_offer(borrower_id)
        return pending.loan

    async def accept(self, borrower_id: PlayerId) -> Loan:
        """Transfer the principal and start the loan.

        Raises:
            ValidationError: No pending offer.
            InsufficientFundsError: The lender no longer has the funds.
        """

        pending = await self._take_offer(borrower_id)
        loan = pending.loan
        await self._ledger.transfer(loan.lender_id, loan.borrower_id, loan.amount)
        try:
            await self._repository.save(loan)
        except Exception:
            await self._ledger.transfer(loan.borrower_id, loan.lender_id, loan.amount)
            raise
        async with self._lock:
            self._active[loan.loan_id] = loan
        self._schedule_collection(loan)
        self._logger.info(
            "Loan accepted",
            extra={
                "category": "loan",
                "user_id": borrower_id,
                "lender_id": loan.lender_id,
                "loan_id": loan.loan_id,
                "amount": loan.amount,
            },
        )
        return loan

    def _schedule_collection(self, loan: Loan) -> None:
        delay = seconds_until(loan.due_date)
        self._timers[loan.loan_id] = asyncio.get_running_loop().create_task(
            self._collect_when_due(loan.loan_id, delay),
            name=f"loan-collect-{loan.loan_id}",
        )

    async def _claim(self, loan_id: str) -> Optional[Loan]:
        async with self._lock:
            loan = self._active.get(loan_id)
            if loan is None or loan.paid or loan_id in self._settling:
                return None
            self._settling.add(loan_id)
            return loan

    async def _finish(self, loan: Loan, *, mode: str) -> None:
        loan.paid = True
        async with self._lock:
            self._active.pop(loan.loan_id, None)
            self._settling.discard(loan.loan_id)
        await self._repository.mark_paid(loan.loan_id)
        timer = self._timers.pop(loan.loan_id, None)
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()
        LOAN_SETTLEMENT_COUNTER.labels(mode=mode).inc()

    async def _release(self, loan_id: str) -> None:
        async with self._lock:
            self._settling.discard(loan_id)

    async def pay(self, borrower_id: PlayerId, loan_id: Optional[str] = None) -> Loan:
        """Repay a loan in full; the oldest loan is used when no id is given."""

        async with self._lock:
            candidates = sorted(
                (
                    loan
                    for loan in self._active.values()
                    if loan.borrower_id == borrower_id and not loan.paid
                ),
                key=lambda loan: loan.created_at,
            )
        if not candidates:
            raise ValidationError("You don't have any active loans to pay!")
        if loan_id is None:
            target = candidates[0]
        else:
            target = next((loan for loan in candidates if loan.loan_id == loan_id), None)
            if target is None:
                raise ValidationError("Loan not found or already paid!")

        loan = await self._claim(target.loan_id)
        if loan is None:
            raise ValidationError("Loan not found or already paid!")
        try:
            await self._ledger.transfer(loan.borrower_id, loan.lender_id, loan.total_owed)
        except BaseException:
            await self._release(loan.loan_id)
            raise
        await self._finish(loan, mode="manual")
        self._logger.info(
            "Loan repaid",
            extra={
                "category": "loan",
                "user_id": borrower_id,
                "loan_id": loan.loan_id,
                "amount": loan.total_owed,
            },
        )
        return loan

    async def collect(self, loan_id: str) -> Optional[Tuple[Money, Money]]:
        """Collect a due loan, recording any shortfall as negative balance.

        Returns:
            ``(collected, remaining_debt)`` or ``None`` when the loan was
            already settled.
        """

        loan = await self._claim(loan_id)
        if loan is None:
            return None
        try:
            try:
                await self._ledger.transfer(loan.borrower_id, loan.lender_id, loan.total_owed)
                collected, remaining = loan.total_owed, 0
            except InsufficientFundsError:
                balance = await self._ledger.get_balance(loan.borrower_id)
                collected = max(0, balance)
                if collected:
                    await self._ledger.transfer(loan.borrower_id, loan.lender_id, collected)
                remaining = loan.total_owed - collected
                await self._ledger.add_coins(loan.borrower_id, -remaining)
        except BaseException:
            await self._release(loan.loan_id)
            raise

        await self._finish(loan, mode="auto" if remaining == 0 else "default")
        self._logger.info(
            "Loan auto-collected",
            extra={
                "category": "loan",
                "user_id": loan.borrower_id,
                "loan_id": loan.loan_id,
                "amount": collected,
                "remaining_debt": remaining,
            },
        )
        if remaining == 0:
            text = (
                f"💰 Loan `{loan.loan_id}` auto-collected: <@{loan.borrower_id}> paid "
                f"**{self._coins(loan.total_owed)}** to <@{loan.lender_id}>."
            )
        else:
            text = (
                f"⚠️ **LOAN DEFAULTED** <@{loan.borrower_id}> didn't have enough funds! "
                f"Collected {self._coins(collected)}, remaining debt {self._coins(remaining)}."
            )
        await self._notify(loan.channel_id, text)
        return collected, remaining

    async def _collect_when_due(self, loan_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        try:
            await self.collect(loan_id)
        except asyncio.CancelledError:
            raise
        except Exception:
            self._logger.exception(
                "Automatic loan collection failed",
                extra={"category": "loan", "loan_id": loan_id, "stage": "collect"},
            )

    async def list_loans(self, player_id: PlayerId) -> Tuple[List[Loan], List[Loan]]:
        """Return ``(lent, borrowed)`` active loans for ``player_id``."""

        async with self._lock:
            loans = sorted(self._active.values(), key=lambda loan: loan.created_at)
        lent = [loan for loan in loans if loan.lender_id == player_id]
        borrowed = [loan for loan in loans if loan.borrower_id == player_id]
        return lent, borrowed

    async def restore(self) -> int:
        """Reload unpaid loans from Redis and reschedule their collection."""

        loans = await self._repository.load_active()
        async with self._lock:
            for loan in loans:
                self._active[loan.loan_id] = loan
        for loan in loans:
            self._schedule_collection(loan)
        self._logger.info(
            "Active loans restored",
            extra={"category": "loan", "stage": "restore", "count": len(loans)},
        )
        return len(loans)

    async def _notify(self, channel_id: ChannelId, text: str) -> None:
        try:
            await self._view.notify(channel_id, text)
        except Exception as exc:
            self._logger.warning(
                "Failed to send loan notification",
                extra={"category": "loan", "error_type": type(exc).__name__},
            )

    async def shutdown(self) -> None:
        tasks = list(self._timers.values())
        async with self._lock:
            tasks.extend(
                offer.expiry_task for offer in self._pending.values() if offer.expiry_task
            )
        self._timers.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


__all__ = [
    "Loan",
    "LoanOffer",
    "LoanRepository",
    "LoanService",
    "LoanSettings",
    "total_owed",
]
