"""Tests for command error replies and component routing in the cog."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import discord
import pytest
from discord.ext import commands

from casinoapp.actions import ActionCode
from casinoapp.casino_service import StartResult
from casinoapp.discord_bot import CasinoCog
from casinoapp.entities import (
    GameType,
    InsufficientFundsError,
    MarketUnavailableError,
    ValidationError,
)
from casinoapp.market import Company, StockMarket
from casinoapp.shop import ShopItem


def _cog(ledger=None, casino=None, admin_ids=frozenset(), market=None):
    services = SimpleNamespace(
        casino=casino or MagicMock(),
        ledger=ledger,
        currency_symbol="🪙",
        market=market,
    )
    return CasinoCog(services, admin_ids=admin_ids)


def _ctx(author_id=1, administrator=False):
    author = SimpleNamespace(
        id=author_id,
        guild_permissions=SimpleNamespace(administrator=administrator),
    )
    return SimpleNamespace(
        author=author,
        channel=SimpleNamespace(id=10),
        command=None,
        send=AsyncMock(),
    )


def _interaction(custom_id, *, user_id=1, kind=discord.InteractionType.component):
    interaction = MagicMock()
    interaction.type = kind
    interaction.data = {"custom_id": custom_id}
    interaction.user.id = user_id
    interaction.response.defer = AsyncMock()
    interaction.response.is_done.return_value = True
    interaction.followup.send = AsyncMock()
    return interaction


@pytest.mark.asyncio
async def test_button_press_is_decoded_and_dispatched():
    casino = MagicMock()
    casino.dispatch = AsyncMock(return_value=True)
    cog = _cog(casino=casino)
    interaction = _interaction("casino:cups:pick:1:4")

    await cog.on_interaction(interaction)

    interaction.response.defer.assert_awaited_once()
    action = casino.dispatch.await_args.args[0]
    assert action.game_type is GameType.CUPS
    assert action.action is ActionCode.PICK
    assert action.value == 4


@pytest.mark.asyncio
async def test_foreign_components_are_ignored():
    casino = MagicMock()
    casino.dispatch = AsyncMock()
    cog = _cog(casino=casino)

    await cog.on_interaction(_interaction("poll:vote:1"))
    await cog.on_interaction(
        _interaction("casino:cups:pick:1:4", kind=discord.InteractionType.application_command)
    )

    casino.dispatch.assert_not_awaited()


@pytest.mark.asyncio
async def test_rejected_press_gets_ephemeral_reply():
    casino = MagicMock()
    casino.dispatch = AsyncMock(side_effect=ValidationError("This isn't your game!"))
    cog = _cog(casino=casino)
    interaction = _interaction("casino:cups:pick:1:4", user_id=2)

    await cog.on_interaction(interaction)

    interaction.followup.send.assert_awaited_once_with("❌ This isn't your game!", ephemeral=True)


@pytest.mark.asyncio
async def test_command_errors_are_unwrapped():
    cog = _cog()
    ctx = _ctx()
    wrapped = commands.CommandInvokeError(InsufficientFundsError(1, 100, 20))

    await cog.cog_command_error(ctx, wrapped)
    await cog.cog_command_error(ctx, RuntimeError("boom"))

    first, second = ctx.send.await_args_list
    assert first.args[0].startswith("❌ Insufficient funds")
    assert second.args[0] == "❌ Something went wrong, please try again."


@pytest.mark.asyncio
async def test_start_reports_queue_position():
    casino = MagicMock()
    casino.start_game = AsyncMock(return_value=StartResult.ok(queue_position=2))
    cog = _cog(casino=casino)
    ctx = _ctx()

    await cog.slots.callback(cog, ctx, 50)

    casino.start_game.assert_awaited_once_with(GameType.SLOTS, 1, 50, 10)
    assert "position 2" in ctx.send.await_args.args[0]


@pytest.mark.asyncio
async def test_grant_requires_admin(ledger):
    cog = _cog(ledger=ledger, admin_ids=frozenset({9}))
    target = SimpleNamespace(id=5)

    with pytest.raises(ValidationError):
        await cog.grant.callback(cog, _ctx(author_id=1), target, 100)

    await cog.grant.callback(cog, _ctx(author_id=9), target, 100)
    await cog.grant.callback(cog, _ctx(author_id=2, administrator=True), target, 50)
    assert await ledger.get_balance(5) == 150


@pytest.mark.asyncio
async def test_pay_moves_coins(ledger):
    cog = _cog(ledger=ledger)
    await ledger.add_coins(1, 100)
    ctx = _ctx(author_id=1)

    await cog.pay.callback(cog, ctx, SimpleNamespace(id=2), 40)

    assert await ledger.get_balance(2) == 40
    with pytest.raises(ValidationError):
        await cog.pay.callback(cog, ctx, SimpleNamespace(id=1), 10)


@pytest.mark.asyncio
async def test_daily_pays_then_reports_cooldown(ledger):
    cog = _cog(ledger=ledger)
    ctx = _ctx(author_id=3)

    await cog.daily.callback(cog, ctx)
    await cog.daily.callback(cog, ctx)

    first, second = ctx.send.await_args_list
    assert "received 100 🪙" in first.args[0]
    assert second.args[0].startswith("❌ You already collected your daily reward!")
    assert "<t:" in second.args[0]
    assert await ledger.get_balance(3) == 100


@pytest.mark.asyncio
async def test_leaderboard_lists_richest_players(ledger):
    cog = _cog(ledger=ledger)
    ctx = _ctx()
    await cog.leaderboard.callback(cog, ctx)
    assert ctx.send.await_args.args[0] == "🏆 No players found."

    await ledger.add_coins(7, 500)
    await ledger.add_coins(8, 900)
    await cog.leaderboard.callback(cog, ctx)

    lines = ctx.send.await_args.args[0].splitlines()
    assert lines[1] == "**1.** <@8> - **900 🪙**"
    assert lines[2] == "**2.** <@7> - **500 🪙**"


@pytest.mark.asyncio
async def test_stock_commands_need_an_open_market(ledger, redis_pool):
    closed = _cog(ledger=ledger)
    with pytest.raises(MarketUnavailableError):
        await closed.stock_market.callback(closed, _ctx())

    class Quotes:
        async def fetch_price(self, ticker):
            return 100.0

    market = StockMarket(ledger, redis_pool, Quotes(), [Company("AAPL", "Apple")])
    cog = _cog(ledger=ledger, market=market)
    await ledger.add_coins(1, 300)
    ctx = _ctx()

    await cog.stock_buy.callback(cog, ctx, "aapl", 200)
    await cog.stock_sell.callback(cog, ctx, "AAPL", "all")

    bought, sold = ctx.send.await_args_list
    assert "**2.0000** shares of **AAPL**" in bought.args[0]
    assert "for 200 🪙" in sold.args[0]
    assert await ledger.get_balance(1) == 300
    with pytest.raises(ValidationError):
        await cog.stock_sell.callback(cog, ctx, "AAPL", "lots")


@pytest.mark.asyncio
async def test_help_lists_market_only_when_open(ledger, redis_pool):
    closed = _cog(ledger=ledger)
    ctx = _ctx()
    await closed.help.callback(closed, ctx)
    text = ctx.send.await_args.args[0]
    assert "`daily`" in text and "`leaderboard`" in text
    assert "Stocks" not in text

    market = StockMarket(ledger, redis_pool, MagicMock(), [])
    opened = _cog(ledger=ledger, market=market)
    await opened.help.callback(opened, ctx)
    assert "`stock portfolio`" in ctx.send.await_args.args[0]


@pytest.mark.asyncio
async def test_buy_commands_route_to_shop():
    shop = MagicMock()
    shop.purchase = AsyncMock(return_value=SimpleNamespace(cost=500, until=None))
    cog = _cog()
    cog._services.shop = shop
    ctx = _ctx()
    ctx.guild = None

    with pytest.raises(ValidationError):
        await cog.buy_nickname.callback(cog, ctx, name="Lucky")

    ctx.guild = SimpleNamespace(id=77)
    await cog.buy_mute.callback(cog, ctx, SimpleNamespace(id=2), 10)

    args, kwargs = shop.purchase.await_args
    assert args == (1, 77, ShopItem.MUTE)
    assert kwargs["target_id"] == 2 and kwargs["minutes"] == 10
    assert "muted in voice for 10 minutes" in ctx.send.await_args.args[0]
