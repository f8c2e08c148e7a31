"""Stock market where players invest coins in listed companies.

Prices come from an injected :class:`PriceSource` and are refreshed on a
fixed interval. Whenever a company's price rises, every shareholder is paid
the growth on their shares. Prices and holdings are kept in Redis.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Tuple

import aiohttp
import redis.asyncio as aioredis

from casinoapp.entities import (
    MarketUnavailableError,
    Money,
    PlayerId,
    ValidationError,
)
from casinoapp.games.base import format_coins
from casinoapp.ledger import Ledger, credit_each
from casinoapp.metrics import MARKET_DIVIDEND_COUNTER


class PriceSource(Protocol):
    """Anything that can quote the current price of a ticker."""

    async def fetch_price(self, ticker: str) -> float:
        ...


class HttpPriceSource:
    """Read prices from an HTTP endpoint answering with a JSON object.

    ``url_template`` receives the ticker through ``{ticker}``; the price is
    read from ``price_field`` of the decoded body.
    """

    def __init__(
        self,
        url_template: str,
        *,
        price_field: str = "price",
        timeout_seconds: float = 5.0,
    ) -> None:
        self._url_template = url_template
        self._price_field = price_field
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def fetch_price(self, ticker: str) -> float:
        url = self._url_template.format(ticker=ticker)
        async with aiohttp.ClientSession(timeout=self._timeout) as session:
            async with session.get(url) as response:
                response.raise_for_status()
                data = await response.json(content_type=None)
        try:
            return float(data[self._price_field])
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"No usable {self._price_field!r} in quote for {ticker}") from exc


@dataclass(frozen=True)
class MarketSettings:
    refresh_interval_minutes: float = 10.0
    # Scales price growth before it is paid out to shareholders.
    price_multiplier: float = 1.0
    fetch_timeout_seconds: float = 5.0
    payout_retry_attempts: int = 3
    payout_retry_delay_seconds: float = 0.5


@dataclass(frozen=True)
class Company:
    ticker: str
    name: str


@dataclass(frozen=True)
class Holding:
    company: Company
    shares: float
    price: float

    @property
    def value(self) -> Money:
        return int(self.shares * self.price)


def companies_from_config(entries: Iterable[Any]) -> List[Company]:
    """Parse the ``market.companies`` list, skipping malformed entries."""

    companies: List[Company] = []
    for entry in entries or ():
        if not isinstance(entry, Mapping) or not entry.get("ticker"):
            continue
        ticker = str(entry["ticker"]).upper()
        companies.append(Company(ticker=ticker, name=str(entry.get("name") or ticker)))
    return companies


# KEYS[1] holdings hash of one ticker; ARGV player, shares (0 sells everything).
_LUA_SELL_SHARES = """
local owned = tonumber(redis.call('HGET', KEYS[1], ARGV[1]) or '0')
local wanted = tonumber(ARGV[2])
if wanted <= 0 then
    wanted = owned
end
if owned <= 0 or wanted > owned + 1e-9 then
    return {0, tostring(owned)}
end
local left = owned - wanted
if left <= 1e-9 then
    redis.call('HDEL', KEYS[1], ARGV[1])
else
    redis.call('HSET', KEYS[1], ARGV[1], tostring(left))
end
return {1, tostring(wanted)}
"""


def _text(raw: Any) -> str:
    return raw.decode() if isinstance(raw, bytes) else str(raw)


class StockMarket:
    def __init__(
        self,
        ledger: Ledger,
        kv: aioredis.Redis,
        price_source: PriceSource,
        companies: Iterable[Company],
        settings: Optional[MarketSettings] = None,
        *,
        key_prefix: str = "casino:stock:",
        currency_symbol: str = "🪙",
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._ledger = ledger
        self._kv = kv
        self._source = price_source
        self._companies: Dict[str, Company] = {c.ticker: c for c in companies}
        self._settings = settings or MarketSettings()
        self._prices_key = f"{key_prefix}prices"
        self._holdings_prefix = f"{key_prefix}holdings:"
        self._currency = currency_symbol
        self._logger = logger or logging.getLogger(__name__)
        self._sell_script = self._kv.register_script(_LUA_SELL_SHARES)
        self._task: Optional[asyncio.Task[None]] = None
        self._shutdown_event = asyncio.Event()

    @property
    def companies(self) -> List[Company]:
        return list(self._companies.values())

    def _coins(self, amount: Money) -> str:
        return format_coins(amount, self._currency)

    def _holdings_key(self, ticker: str) -> str:
        return f"{self._holdings_prefix}{ticker}"

    def company(self, ticker: str) -> Company:
        company = self._companies.get(ticker.strip().upper())
        if company is None:
            raise ValidationError("Invalid ticker. Check `stock market`.")
        return company

    async def stored_price(self, ticker: str) -> float:
        raw = await self._kv.hget(self._prices_key, ticker)
        return float(raw) if raw is not None else 0.0

    async def quote(self, ticker: str) -> float:
        """Return the last refreshed price, fetching it live if none is stored."""

        price = await self.stored_price(ticker)
        if price > 0:
            return price
        try:
            price = await self._source.fetch_price(ticker)
        except Exception as exc:
            self._logger.warning(
                "Live price lookup failed",
                extra={"category": "market", "ticker": ticker, "error_type": type(exc).__name__},
            )
            raise MarketUnavailableError("Could not fetch stock price. Try again later.") from exc
        if price <= 0:
            raise MarketUnavailableError("Could not fetch stock price. Try again later.")
        await self._kv.hset(self._prices_key, ticker, repr(float(price)))
        return price

    async def prices(self) -> List[Tuple[Company, float]]:
        return [(company, await self.stored_price(company.ticker)) for company in self.companies]

    async def shares_of(self, player_id: PlayerId, ticker: str) -> float:
        raw = await self._kv.hget(self._holdings_key(ticker), str(player_id))
        return float(raw) if raw is not None else 0.0

    async def buy(self, player_id: PlayerId, ticker: str, amount: Money) -> Tuple[float, float]:
        """Spend ``amount`` coins on shares of ``ticker``.

        Returns:
            The shares bought and the price they were bought at.
        """

        if amount <= 0:
            raise ValidationError("Invalid amount.")
        company = self.company(ticker)
        price = await self.quote(company.ticker)
        shares = amount / price
        await self._ledger.remove_coins(player_id, amount)
        try:
            await self._kv.hincrbyfloat(self._holdings_key(company.ticker), str(player_id), shares)
        except Exception:
            await self._ledger.add_coins(player_id, amount)
            raise
        self._logger.info(
            "Shares bought",
            extra={
                "category": "market",
                "user_id": player_id,
                "ticker": company.ticker,
                "amount": amount,
                "shares": shares,
            },
        )
        return shares, price

    async def sell(
        self, player_id: PlayerId, ticker: str, shares: Optional[float] = None
    ) -> Tuple[float, Money]:
        """Sell ``shares`` of ``ticker`` (all of them when ``None``).

        Returns:
            The shares sold and the coins credited for them.
        """

        if shares is not None and shares <= 0:
            raise ValidationError("Invalid number of shares.")
        company = self.company(ticker)
        owned = await self.shares_of(player_id, company.ticker)
        if owned <= 0:
            raise ValidationError("You don't own any shares of this company.")
        price = await self.quote(company.ticker)
        ok, value = await self._sell_script(
            keys=[self._holdings_key(company.ticker)],
            args=[str(player_id), repr(float(shares or 0))],
        )
        if int(ok) != 1:
            raise ValidationError("You don't have that many shares.")
        sold = float(_text(value))
        payout = int(sold * price)
        try:
            await self._ledger.add_coins(player_id, payout)
        except Exception:
            await self._kv.hincrbyfloat(self._holdings_key(company.ticker), str(player_id), sold)
            raise
        self._logger.info(
            "Shares sold",
            extra={
                "category": "market",
                "user_id": player_id,
                "ticker": company.ticker,
                "amount": payout,
                "shares": sold,
            },
        )
        return sold, payout

    async def portfolio(self, player_id: PlayerId) -> List[Holding]:
        holdings: List[Holding] = []
        for company in self.companies:
            shares = await self.shares_of(player_id, company.ticker)
            if shares > 0:
                price = await self.stored_price(company.ticker)
                holdings.append(Holding(company=company, shares=shares, price=price))
        return holdings

    async def refresh(self) -> Dict[str, Dict[PlayerId, Money]]:
        """Fetch every price once and pay shareholders of rising companies.

        A company whose price cannot be fetched keeps its stored price. The
        first price seen for a company never pays out.

        Returns:
            Dividends credited per ticker, keyed by player.
        """

        dividends: Dict[str, Dict[PlayerId, Money]] = {}
        for company in self.companies:
            try:
                price = float(await self._source.fetch_price(company.ticker))
            except Exception as exc:
                self._logger.warning(
                    "Price refresh failed",
                    extra={
                        "category": "market",
                        "ticker": company.ticker,
                        "error_type": type(exc).__name__,
                    },
                )
                continue
            if price <= 0:
                continue
            old_price = await self.stored_price(company.ticker)
            await self._kv.hset(self._prices_key, company.ticker, repr(price))
            if old_price <= 0 or price <= old_price:
                continue
            paid = await self._pay_growth(company, (price - old_price) * self._settings.price_multiplier)
            if paid:
                dividends[company.ticker] = paid
        return dividends

    async def _pay_growth(self, company: Company, growth: float) -> Dict[PlayerId, Money]:
        raw = await self._kv.hgetall(self._holdings_key(company.ticker))
        due: Dict[PlayerId, Money] = {}
        for raw_player, raw_shares in raw.items():
            payout = int(float(_text(raw_shares)) * growth)
            if payout > 0:
                due[int(_text(raw_player))] = payout
        unpaid = await credit_each(
            self._ledger,
            due,
            source="market",
            attempts=self._settings.payout_retry_attempts,
            retry_delay=self._settings.payout_retry_delay_seconds,
            logger=self._logger,
        )
        paid = {player: amount for player, amount in due.items() if player not in unpaid}
        if paid:
            MARKET_DIVIDEND_COUNTER.labels(ticker=company.ticker).inc(sum(paid.values()))
        self._logger.info(
            "Dividends distributed",
            extra={
                "category": "market",
                "ticker": company.ticker,
                "growth": growth,
                "holders": len(due),
                "unpaid": len(unpaid),
            },
        )
        return paid

    def describe_prices(self, prices: List[Tuple[Company, float]]) -> str:
        minutes = self._settings.refresh_interval_minutes
        lines = [f"📈 **Stock Market** (updates every {minutes:g}m)"]
        for company, price in prices:
            shown = f"{price:,.2f} {self._currency}" if price > 0 else "Fetching..."
            lines.append(f"**{company.name}** ({company.ticker}): {shown}")
        return "\n".join(lines)

    def describe_portfolio(self, holdings: List[Holding]) -> str:
        if not holdings:
            return "📈 You have no investments."
        lines = ["📈 **Your Portfolio**"]
        for holding in holdings:
            lines.append(
                f"**{holding.company.ticker}**: {holding.shares:.4f} shares "
                f"(~{self._coins(holding.value)})"
            )
        total = sum(holding.value for holding in holdings)
        lines.append(f"\n**Total Value**: ~{self._coins(total)}")
        return "\n".join(lines)

    async def start(self) -> None:
        """Start the periodic price refresh."""

        if self._task and not self._task.done():
            return
        if self._shutdown_event.is_set():
            self._shutdown_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._refresh_loop(), name="market-refresh")
        self._logger.info(
            "Market refresh started",
            extra={"category": "market", "companies": len(self._companies)},
        )

    async def stop(self) -> None:
        self._shutdown_event.set()
        if self._task is None:
            return
        task = self._task
        if not task.done():
            task.cancel()
            try:
                await asyncio.wait_for(task, timeout=5.0)
            except asyncio.TimeoutError:
                self._logger.warning("Market refresh stop timed out")
            except asyncio.CancelledError:
                pass
        self._task = None
        self._logger.info("Market refresh stopped", extra={"category": "market"})

    async def _refresh_loop(self) -> None:
        interval = max(1.0, self._settings.refresh_interval_minutes * 60)
        while not self._shutdown_event.is_set():
            try:
                await self.refresh()
            except asyncio.CancelledError:
                raise
            except Exception:
                self._logger.exception(
                    "Market refresh failed", extra={"category": "market", "stage": "refresh"}
                )
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass


__all__ = [
    "Company",
    "Holding",
    "HttpPriceSource",
    "MarketSettings",
    "PriceSource",
    "StockMarket",
    "companies_from_config",
]
