"""Application composition root for the Discord casino bot."""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Type, TypeVar

import discord
import redis.asyncio as aioredis

from casinoapp.api_server import ApiServer, create_app
from casinoapp.casino_service import CasinoService
from casinoapp.config import Config
from casinoapp.discord_moderation import DiscordModerator
from casinoapp.discord_view import DiscordGameView
from casinoapp.entities import GameType
from casinoapp.games.base import EngineContext, settings_from_mapping
from casinoapp.games.blackjack import BlackjackEngine, BlackjackSettings
from casinoapp.games.crash import CrashEngine, CrashSettings
from casinoapp.games.cups import CupsEngine, CupsSettings
from casinoapp.games.event_betting import EventBettingMarket, EventBettingSettings
from casinoapp.games.roulette import RouletteSettings, RouletteWheel
from casinoapp.games.russian_roulette import RussianRouletteEngine, RussianRouletteSettings
from casinoapp.games.slots import SlotsEngine, SlotsSettings
from casinoapp.ledger import RedisLedger
from casinoapp.loans import LoanRepository, LoanService, LoanSettings
from casinoapp.logging_config import setup_logging
from casinoapp.market import (
    HttpPriceSource,
    MarketSettings,
    StockMarket,
    companies_from_config,
)
from casinoapp.services.session_store import ActivePlayerTracker, SessionRegistry
from casinoapp.services.turn_queue import TurnQueue
from casinoapp.shop import ShopService, ShopSettings
from casinoapp.utils.logging_helpers import ContextLoggerAdapter, enforce_context


SettingsT = TypeVar("SettingsT")


def _build_redis_client_kwargs(cfg: Config) -> Dict[str, Any]:
    """Return connection settings for the Redis client."""

    return {
        "host": cfg.REDIS_HOST,
        "port": cfg.REDIS_PORT,
        "db": cfg.REDIS_DB,
        "password": cfg.REDIS_PASS or None,
        "socket_connect_timeout": 5,
        "socket_timeout": 5,
        "retry_on_timeout": True,
        "health_check_interval": 30,
    }


def _make_service_logger(
    parent_logger: ContextLoggerAdapter, child_name: str, category: str
) -> ContextLoggerAdapter:
    """Return a child logger enriched with the provided ``category`` context."""

    return enforce_context(parent_logger.getChild(child_name), {"category": category})


def _settings(cfg: Config, cls: Type[SettingsT], section: str) -> SettingsT:
    return settings_from_mapping(cls, cfg.constants.section(section))


@dataclass(frozen=True)
class ApplicationServices:
    """Container for everything the bot wires together."""

    logger: ContextLoggerAdapter
    kv_async: aioredis.Redis
    ledger: RedisLedger
    view: DiscordGameView
    sessions: SessionRegistry
    tracker: ActivePlayerTracker
    turn_queue: TurnQueue
    casino: CasinoService
    roulette: RouletteWheel
    russian_roulette: RussianRouletteEngine
    events: EventBettingMarket
    loans: LoanService
    market: Optional[StockMarket]
    shop: ShopService
    api_server: Optional[ApiServer]
    currency_symbol: str

    async def start(self) -> None:
        await self.casino.start()
        await self.roulette.start()
        await self.loans.restore()
        if self.market is not None:
            await self.market.start()
        if self.api_server is not None:
            await self.api_server.start()
        self.logger.info("Casino services started", extra={"category": "startup"})

    async def shutdown(self) -> None:
        if self.api_server is not None:
            await self.api_server.stop()
        await self.roulette.stop()
        if self.market is not None:
            await self.market.stop()
        await self.casino.shutdown()
        await self.events.shutdown()
        await self.loans.shutdown()
        await self.shop.shutdown()
        await self.kv_async.aclose()
        self.logger.info("Casino services stopped", extra={"category": "startup"})


def build_services(cfg: Config, *, client: discord.Client) -> ApplicationServices:
    """Initialise logging and wire every service the bot needs."""

    setup_logging(
        getattr(logging, cfg.LOG_LEVEL, logging.INFO), debug_mode=cfg.DEBUG
    )
    logger = enforce_context(logging.getLogger("casinobot"))

    kv_async = aioredis.Redis(**_build_redis_client_kwargs(cfg))
    logger.info(
        "Redis client initialized with lazy connection",
        extra={
            "category": "startup",
            "host": cfg.REDIS_HOST,
            "port": cfg.REDIS_PORT,
        },
    )

    economy = cfg.constants.economy
    redis_keys = cfg.constants.redis_keys
    currency_symbol = str(economy.get("currency_symbol", "🪙"))

    ledger = RedisLedger(
        kv_async,
        key_prefix=str(redis_keys.get("balance_prefix", "casino:balance:")),
        daily_key_prefix=str(redis_keys.get("daily_prefix", "casino:daily:")),
        starting_balance=int(economy.get("starting_balance", 0)),
        daily_amount=int(economy.get("daily_amount", 100)),
        daily_cooldown_seconds=float(economy.get("daily_cooldown_hours", 24)) * 3600,
        logger=_make_service_logger(logger, "ledger", "ledger"),
    )
    view = DiscordGameView(client, logger=_make_service_logger(logger, "view", "gateway"))
    sessions = SessionRegistry(logger=_make_service_logger(logger, "sessions", "session"))
    tracker = ActivePlayerTracker(
        poll_interval=float(cfg.constants.queue.get("idle_poll_interval_seconds", 1.0))
    )
    turn_queue = TurnQueue(
        tracker,
        capacity=cfg.QUEUE_CAPACITY,
        logger=_make_service_logger(logger, "turn_queue", "queue"),
    )

    context = EngineContext(
        ledger=ledger,
        view=view,
        sessions=sessions,
        tracker=tracker,
        currency_symbol=currency_symbol,
    )
    game_logger = _make_service_logger(logger, "games", "game")
    engines = {
        GameType.CRASH: CrashEngine(
            context, _settings(cfg, CrashSettings, "crash"), logger=game_logger
        ),
        GameType.CUPS: CupsEngine(
            context, _settings(cfg, CupsSettings, "cups"), logger=game_logger
        ),
        GameType.BLACKJACK: BlackjackEngine(
            context, _settings(cfg, BlackjackSettings, "blackjack"), logger=game_logger
        ),
        GameType.SLOTS: SlotsEngine(
            context, _settings(cfg, SlotsSettings, "slots"), logger=game_logger
        ),
    }
    russian_roulette = RussianRouletteEngine(
        context,
        _settings(cfg, RussianRouletteSettings, "russian_roulette"),
        logger=game_logger,
    )
    casino = CasinoService(
        engines=engines,
        russian_roulette=russian_roulette,
        turn_queue=turn_queue,
        sessions=sessions,
        tracker=tracker,
        view=view,
        logger=_make_service_logger(logger, "casino", "session"),
    )

    roulette_settings = dataclasses.replace(
        _settings(cfg, RouletteSettings, "roulette"),
        interval_minutes=cfg.ROULETTE_INTERVAL_MINUTES,
    )
    roulette = RouletteWheel(
        ledger,
        view,
        roulette_settings,
        channel_id=cfg.ROULETTE_CHANNEL_ID,
        currency_symbol=currency_symbol,
        logger=game_logger,
    )
    events = EventBettingMarket(
        ledger,
        view,
        _settings(cfg, EventBettingSettings, "event_betting"),
        currency_symbol=currency_symbol,
        logger=game_logger,
    )
    loans = LoanService(
        ledger,
        LoanRepository(
            kv_async,
            key_prefix=str(redis_keys.get("loan_prefix", "casino:loan:")),
            index_key=str(redis_keys.get("loan_index", "casino:loans")),
            sequence_key=str(redis_keys.get("loan_sequence", "casino:loan:seq")),
        ),
        view,
        _settings(cfg, LoanSettings, "loans"),
        currency_symbol=currency_symbol,
        logger=_make_service_logger(logger, "loans", "loan"),
    )

    market: Optional[StockMarket] = None
    if cfg.MARKET_PRICE_URL:
        market_settings = _settings(cfg, MarketSettings, "market")
        market = StockMarket(
            ledger,
            kv_async,
            HttpPriceSource(
                cfg.MARKET_PRICE_URL,
                price_field=cfg.MARKET_PRICE_FIELD,
                timeout_seconds=market_settings.fetch_timeout_seconds,
            ),
            companies_from_config(cfg.constants.section("market").get("companies", [])),
            market_settings,
            key_prefix=str(redis_keys.get("stock_prefix", "casino:stock:")),
            currency_symbol=currency_symbol,
            logger=_make_service_logger(logger, "market", "market"),
        )

    shop = ShopService(
        ledger,
        DiscordModerator(client),
        casino,
        _settings(cfg, ShopSettings, "shop"),
        currency_symbol=currency_symbol,
        logger=_make_service_logger(logger, "shop", "shop"),
    )

    api_server: Optional[ApiServer] = None
    if cfg.API_PORT is not None:
        api_logger = _make_service_logger(logger, "api", "api")
        api_server = ApiServer(
            create_app(ledger=ledger, casino=casino, api_key=cfg.API_KEY, logger=api_logger),
            host=cfg.API_HOST,
            port=cfg.API_PORT,
            logger=api_logger,
        )

    return ApplicationServices(
        logger=logger,
        kv_async=kv_async,
        ledger=ledger,
        view=view,
        sessions=sessions,
        tracker=tracker,
        turn_queue=turn_queue,
        casino=casino,
        roulette=roulette,
        russian_roulette=russian_roulette,
        events=events,
        loans=loans,
        market=market,
        shop=shop,
        api_server=api_server,
        currency_symbol=currency_symbol,
    )


__all__ = ["ApplicationServices", "build_services"]
