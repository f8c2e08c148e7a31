"""Discord command surface for the casino."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Optional

import discord
from discord import app_commands
from discord.ext import commands

from casinoapp.actions import decode_custom_id, is_casino_custom_id
from casinoapp.config import Config
from casinoapp.entities import (
    CasinoError,
    GameType,
    MarketUnavailableError,
    PlayerId,
    ValidationError,
)
from casinoapp.games.base import format_coins
from casinoapp.shop import Purchase, ShopItem
from casinoapp.utils.time_utils import format_remaining, seconds_until

if TYPE_CHECKING:
    from casinoapp.bootstrap import ApplicationServices
    from casinoapp.market import StockMarket


_GAME_NAMES = {
    GameType.CRASH: "✈️ Aviator",
    GameType.CUPS: "🥤 Cup Game",
    GameType.BLACKJACK: "🃏 Blackjack",
    GameType.SLOTS: "🎰 Slots",
}

LEADERBOARD_SIZE = 10

_HELP_SECTIONS = (
    "💰 **Economy**\n"
    "`daily` collect your daily reward\n"
    "`balance [@user]` check a balance\n"
    "`pay @user <amount>` send coins\n"
    "`leaderboard` richest players\n"
    "`loan` lend and borrow coins",
    "🛒 **Shop**\n"
    "`shop` items for sale\n"
    "`buy nickname <name>` | `buy rename @user <name>`\n"
    "`buy timeout @user <minutes>` | `buy mute @user <minutes>`",
    "🎲 **Games**\n"
    "`aviator <bet>` cash out before the crash\n"
    "`cups <bet>` find the ball\n"
    "`blackjack <bet>` beat the dealer\n"
    "`slots <bet>` spin the reels\n"
    "`rr @user <bet>` Russian roulette duel",
    "🎡 **Roulette**\n"
    "`roulette` current round\n"
    "`roulette <selection> <amount>` 0-36, red/black, even/odd, low/high or 1st/2nd/3rd",
    "📊 **Events**\n"
    "`createevent <minutes> <question> | <option> | ...` (admins)\n"
    "`betevent <event_id> <option> <amount>`\n"
    "`result <event_id> <option>`\n"
    "`events`",
)

_MARKET_HELP = (
    "📈 **Stocks**\n"
    "`stock market` | `stock buy <ticker> <coins>` | "
    "`stock sell <ticker> <shares|all>` | `stock portfolio`"
)


def _unwrap_error(error: BaseException) -> BaseException:
    original = error
    while getattr(original, "original", None) is not None:
        original = original.original
    return original


class CasinoCog(commands.Cog):
    """Prefix and slash commands plus button routing."""

    def __init__(
        self,
        services: "ApplicationServices",
        *,
        admin_ids: frozenset = frozenset(),
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._services = services
        self._casino = services.casino
        self._ledger = services.ledger
        self._currency = services.currency_symbol
        self._admin_ids = admin_ids
        self._logger = logger or logging.getLogger(__name__)

    def _coins(self, amount: int) -> str:
        return format_coins(amount, self._currency)

    def _is_admin(self, user: discord.abc.User) -> bool:
        if user.id in self._admin_ids:
            return True
        permissions = getattr(user, "guild_permissions", None)
        return bool(permissions and permissions.administrator)

    async def _start(self, ctx: commands.Context, game_type: GameType, amount: int) -> None:
        result = await self._casino.start_game(
            game_type, ctx.author.id, amount, ctx.channel.id
        )
        if not result.accepted:
            await ctx.send(f"❌ {result.reason}", ephemeral=True)
        elif result.queue_position > 0:
            await ctx.send(
                f"⏳ {_GAME_NAMES[game_type]} queued at position {result.queue_position}.",
                ephemeral=True,
            )
        else:
            await ctx.send(
                f"{_GAME_NAMES[game_type]} starting for {self._coins(amount)}!",
                ephemeral=True,
            )

    # Single-player games

    @commands.hybrid_command(name="aviator", description="Cash out before the plane flies away!")
    @app_commands.describe(amount="Amount to bet")
    async def aviator(self, ctx: commands.Context, amount: int) -> None:
        await self._start(ctx, GameType.CRASH, amount)

    @commands.hybrid_command(name="cups", description="Find the ball under the cups!")
    @app_commands.describe(amount="Amount to bet")
    async def cups(self, ctx: commands.Context, amount: int) -> None:
        await self._start(ctx, GameType.CUPS, amount)

    @commands.hybrid_command(name="blackjack", description="Beat the dealer without going over 21.")
    @app_commands.describe(amount="Amount to bet")
    async def blackjack(self, ctx: commands.Context, amount: int) -> None:
        await self._start(ctx, GameType.BLACKJACK, amount)

    @commands.hybrid_command(name="slots", description="Spin the slot machine!")
    @app_commands.describe(amount="Amount to bet")
    async def slots(self, ctx: commands.Context, amount: int) -> None:
        await self._start(ctx, GameType.SLOTS, amount)

    # Shared games

    @commands.hybrid_command(name="roulette", description="Bet on the next roulette spin.")
    @app_commands.describe(
        selection="0-36, red/black, even/odd, low/high or 1st/2nd/3rd",
        amount="Amount to bet",
    )
    async def roulette(
        self,
        ctx: commands.Context,
        selection: Optional[str] = None,
        amount: Optional[int] = None,
    ) -> None:
        wheel = self._services.roulette
        if selection is None:
            await ctx.send(wheel.describe_round())
            return
        if amount is None:
            raise ValidationError("Usage: roulette <selection> <amount>")
        bet = await wheel.place_bet(ctx.author.id, selection, amount)
        current = wheel.current_round
        remaining = format_remaining(seconds_until(current.window_end)) if current else "soon"
        await ctx.send(
            f"🎡 Bet placed: {self._coins(bet.amount)} on **{bet.value}**. "
            f"The wheel spins in {remaining}."
        )

    @commands.hybrid_command(name="rr", description="Challenge someone to Russian roulette.")
    @app_commands.describe(opponent="Player to challenge", bet="Amount each player stakes")
    async def russian_roulette(
        self, ctx: commands.Context, opponent: discord.Member, bet: int
    ) -> None:
        if opponent.bot:
            raise ValidationError("You can't challenge a bot!")
        await self._services.russian_roulette.challenge(
            ctx.author.id, opponent.id, bet, ctx.channel.id
        )
        await ctx.send("🔫 Challenge sent!", ephemeral=True)

    # Event betting

    @commands.hybrid_command(
        name="createevent",
        description="Create a betting event: question | option 1 | option 2 ...",
    )
    @app_commands.describe(
        minutes="How long betting stays open",
        details="Question and options separated by |",
    )
    async def createevent(self, ctx: commands.Context, minutes: int, *, details: str) -> None:
        if not self._is_admin(ctx.author):
            raise ValidationError("Only admins can create betting events.")
        parts = [part.strip() for part in details.split("|")]
        market = self._services.events
        event = await market.create_event(
            ctx.author.id, parts[0], parts[1:], minutes, ctx.channel.id
        )
        await ctx.send(
            market.describe_event(event)
            + f"\nBet with `betevent {event.event_id} <option> <amount>`"
        )

    @commands.hybrid_command(name="betevent", description="Bet on an event option.")
    @app_commands.describe(
        event_id="Event ID",
        option="Option number or name",
        amount="Amount to bet",
    )
    async def betevent(
        self, ctx: commands.Context, event_id: str, option: str, amount: int
    ) -> None:
        market = self._services.events
        bet = await market.place_bet(ctx.author.id, event_id, option, amount)
        event = await market.get_event(event_id)
        await ctx.send(
            f"✅ Bet of {self._coins(bet.amount)} placed on "
            f"**{event.options[bet.option_id].name}**."
        )

    @commands.hybrid_command(name="result", description="Set the winning option of your event.")
    @app_commands.describe(event_id="Event ID", option="Winning option number or name")
    async def result(self, ctx: commands.Context, event_id: str, option: str) -> None:
        market = self._services.events
        payouts = await market.set_result(ctx.author.id, event_id, option)
        event = await market.get_event(event_id)
        winner = event.options[event.winner_option_id].name
        lines = [f"🏆 **{event.question}**: the winner is **{winner}**!"]
        if not payouts and not event.unpaid:
            lines.append("Nobody backed the winner. The house keeps the pool.")
        for player_id, amount in sorted(payouts.items(), key=lambda item: -item[1]):
            lines.append(f"<@{player_id}> wins {self._coins(amount)}")
        if event.unpaid:
            pending = ", ".join(f"<@{player_id}>" for player_id in event.unpaid)
            lines.append(
                f"⚠️ Payouts pending for {pending}. Run `result {event_id} {option}` again to retry."
            )
        await ctx.send("\n".join(lines))

    @commands.hybrid_command(name="events", description="List open betting events.")
    async def events(self, ctx: commands.Context) -> None:
        market = self._services.events
        active = await market.list_events()
        if not active:
            await ctx.send("📊 No active betting events right now.")
            return
        await ctx.send("\n\n".join(market.describe_event(event) for event in active))

    # Loans

    @commands.hybrid_group(name="loan", invoke_without_command=True)
    async def loan(self, ctx: commands.Context) -> None:
        await ctx.send(
            "💰 **Loans**\n"
            "`loan offer @user <amount> <interest%> <days>`\n"
            "`loan accept` / `loan decline`\n"
            "`loan pay [loan_id]`\n"
            "`loan list [@user]`"
        )

    @loan.command(name="offer", description="Offer a loan to another player.")
    @app_commands.describe(
        user="Borrower",
        amount="Principal",
        rate="Interest rate in percent",
        days="Days until the loan is due",
    )
    async def loan_offer(
        self,
        ctx: commands.Context,
        user: discord.Member,
        amount: int,
        rate: float,
        days: int,
    ) -> None:
        pending = await self._services.loans.offer(
            ctx.author.id, user.id, amount, rate, days, ctx.channel.id
        )
        offer = pending.loan
        await ctx.send(
            f"💰 <@{offer.lender_id}> offers <@{offer.borrower_id}> a loan of "
            f"{self._coins(offer.amount)} at {offer.interest_rate:g}% for {days} days "
            f"(total owed {self._coins(offer.total_owed)}).\n"
            f"<@{offer.borrower_id}>, use `loan accept` or `loan decline`."
        )

    @loan.command(name="accept", description="Accept your pending loan offer.")
    async def loan_accept(self, ctx: commands.Context) -> None:
        loan = await self._services.loans.accept(ctx.author.id)
        await ctx.send(
            f"✅ Loan `{loan.loan_id}` accepted! {self._coins(loan.amount)} received. "
            f"Repay {self._coins(loan.total_owed)} by "
            f"{loan.due_date:%Y-%m-%d %H:%M} UTC."
        )

    @loan.command(name="decline", description="Decline your pending loan offer.")
    async def loan_decline(self, ctx: commands.Context) -> None:
        loan = await self._services.loans.decline(ctx.author.id)
        await ctx.send(f"❌ <@{ctx.author.id}> declined the loan from <@{loan.lender_id}>.")

    @loan.command(name="pay", description="Repay a loan in full.")
    @app_commands.describe(loan_id="Loan to repay; defaults to the oldest")
    async def loan_pay(self, ctx: commands.Context, loan_id: Optional[str] = None) -> None:
        loan = await self._services.loans.pay(ctx.author.id, loan_id)
        await ctx.send(
            f"✅ Loan `{loan.loan_id}` repaid: {self._coins(loan.total_owed)} "
            f"sent to <@{loan.lender_id}>."
        )

    @loan.command(name="list", description="Show active loans.")
    @app_commands.describe(user="Whose loans to show")
    async def loan_list(
        self, ctx: commands.Context, user: Optional[discord.Member] = None
    ) -> None:
        target: PlayerId = user.id if user is not None else ctx.author.id
        lent, borrowed = await self._services.loans.list_loans(target)
        lines = [f"💰 **Loans for <@{target}>**"]
        if not lent and not borrowed:
            lines.append("No active loans.")
        for loan in lent:
            lines.append(
                f"➡️ `{loan.loan_id}` lent to <@{loan.borrower_id}>: "
                f"{self._coins(loan.total_owed)} due in "
                f"{format_remaining(seconds_until(loan.due_date))}"
            )
        for loan in borrowed:
            lines.append(
                f"⬅️ `{loan.loan_id}` owed to <@{loan.lender_id}>: "
                f"{self._coins(loan.total_owed)} due in "
                f"{format_remaining(seconds_until(loan.due_date))}"
            )
        await ctx.send("\n".join(lines))

    # Wallet

    @commands.hybrid_command(name="balance", description="Check a coin balance.")
    @app_commands.describe(user="Whose balance to check")
    async def balance(
        self, ctx: commands.Context, user: Optional[discord.Member] = None
    ) -> None:
        target = user or ctx.author
        amount = await self._ledger.get_balance(target.id)
        await ctx.send(f"💰 <@{target.id}> has {self._coins(amount)}")

    @commands.hybrid_command(name="pay", description="Send coins to another player.")
    @app_commands.describe(user="Recipient", amount="Amount to send")
    async def pay(self, ctx: commands.Context, user: discord.Member, amount: int) -> None:
        if amount <= 0:
            raise ValidationError("Amount must be positive")
        if user.id == ctx.author.id:
            raise ValidationError("You can't pay yourself!")
        await self._ledger.transfer(ctx.author.id, user.id, amount)
        await ctx.send(f"✅ <@{ctx.author.id}> sent {self._coins(amount)} to <@{user.id}>.")

    @commands.hybrid_command(name="grant", description="Admin: add coins to a player.")
    @app_commands.describe(user="Recipient", amount="Amount to add (negative removes)")
    async def grant(self, ctx: commands.Context, user: discord.Member, amount: int) -> None:
        if not self._is_admin(ctx.author):
            raise ValidationError("Only admins can grant coins.")
        new_balance = await self._ledger.add_coins(user.id, amount)
        self._logger.info(
            "Admin grant",
            extra={
                "category": "ledger",
                "user_id": user.id,
                "admin_id": ctx.author.id,
                "amount": amount,
            },
        )
        await ctx.send(f"✅ <@{user.id}> now has {self._coins(new_balance)}.")

    @commands.hybrid_command(name="daily", description="Collect your daily reward.")
    async def daily(self, ctx: commands.Context) -> None:
        claim = await self._ledger.claim_daily(ctx.author.id)
        if not claim.claimed:
            when = discord.utils.format_dt(claim.next_claim_at, "R")
            await ctx.send(
                f"❌ You already collected your daily reward! Come back {when}.",
                ephemeral=True,
            )
            return
        await ctx.send(
            f"🎁 <@{ctx.author.id}> received {self._coins(claim.amount)}! "
            f"Balance: {self._coins(claim.balance)}"
        )

    @commands.hybrid_command(name="leaderboard", description="Show the richest players.")
    async def leaderboard(self, ctx: commands.Context) -> None:
        ranking = await self._ledger.leaderboard(LEADERBOARD_SIZE)
        if not ranking:
            await ctx.send("🏆 No players found.")
            return
        lines = ["🏆 **Richest Players**"]
        for position, (player_id, amount) in enumerate(ranking, start=1):
            lines.append(f"**{position}.** <@{player_id}> - **{self._coins(amount)}**")
        await ctx.send("\n".join(lines))

    # Stock market

    def _market(self) -> StockMarket:
        market = self._services.market
        if market is None:
            raise MarketUnavailableError("📈 The stock market is closed.")
        return market

    @commands.hybrid_group(name="stock", invoke_without_command=True)
    async def stock(self, ctx: commands.Context) -> None:
        await ctx.send(
            "📈 **Stock Market**\n"
            "`stock market`\n"
            "`stock buy <ticker> <coins>`\n"
            "`stock sell <ticker> <shares|all>`\n"
            "`stock portfolio`"
        )

    @stock.command(name="market", description="Show current stock prices.")
    async def stock_market(self, ctx: commands.Context) -> None:
        market = self._market()
        await ctx.send(market.describe_prices(await market.prices()))

    @stock.command(name="buy", description="Invest coins in a company.")
    @app_commands.describe(ticker="Company ticker", amount="Coins to invest")
    async def stock_buy(self, ctx: commands.Context, ticker: str, amount: int) -> None:
        shares, _ = await self._market().buy(ctx.author.id, ticker, amount)
        await ctx.send(
            f"✅ You bought **{shares:.4f}** shares of **{ticker.upper()}** "
            f"for {self._coins(amount)}."
        )

    @stock.command(name="sell", description="Sell shares of a company.")
    @app_commands.describe(ticker="Company ticker", shares="Number of shares, or 'all'")
    async def stock_sell(self, ctx: commands.Context, ticker: str, shares: str) -> None:
        wanted: Optional[float] = None
        if shares.strip().lower() != "all":
            try:
                wanted = float(shares)
            except ValueError:
                raise ValidationError("Invalid number of shares.") from None
        sold, payout = await self._market().sell(ctx.author.id, ticker, wanted)
        await ctx.send(
            f"✅ You sold **{sold:.4f}** shares of **{ticker.upper()}** "
            f"for {self._coins(payout)}."
        )

    @stock.command(name="portfolio", description="Show your investments.")
    async def stock_portfolio(self, ctx: commands.Context) -> None:
        market = self._market()
        await ctx.send(market.describe_portfolio(await market.portfolio(ctx.author.id)))

    # Shop

    @commands.hybrid_command(name="shop", description="Show the items for sale.")
    async def shop(self, ctx: commands.Context) -> None:
        await ctx.send(self._services.shop.describe())

    async def _buy(
        self,
        ctx: commands.Context,
        item: ShopItem,
        *,
        target: Optional[discord.abc.User] = None,
        nickname: Optional[str] = None,
        minutes: int = 0,
    ) -> Purchase:
        if ctx.guild is None:
            raise ValidationError("Shop items only work inside a server.")

        async def announce_wait(target_id: PlayerId) -> None:
            await ctx.send(
                f"⏳ <@{target_id}> is in a game. The purchase applies once it ends."
            )

        return await self._services.shop.purchase(
            ctx.author.id,
            ctx.guild.id,
            item,
            target_id=target.id if target is not None else None,
            nickname=nickname,
            minutes=minutes,
            on_wait=announce_wait,
        )

    @commands.hybrid_group(name="buy", invoke_without_command=True)
    async def buy(self, ctx: commands.Context) -> None:
        await ctx.send(self._services.shop.describe())

    @buy.command(name="nickname", description="Change your own nickname.")
    @app_commands.describe(name="Your new nickname")
    async def buy_nickname(self, ctx: commands.Context, *, name: str) -> None:
        purchase = await self._buy(ctx, ShopItem.NICKNAME, nickname=name)
        await ctx.send(f"✅ Your nickname has been changed for {self._coins(purchase.cost)}!")

    @buy.command(name="rename", description="Change another member's nickname.")
    @app_commands.describe(user="Member to rename", name="Their new nickname")
    async def buy_rename(
        self, ctx: commands.Context, user: discord.Member, *, name: str
    ) -> None:
        purchase = await self._buy(ctx, ShopItem.RENAME, target=user, nickname=name)
        await ctx.send(
            f"✅ Nickname of <@{user.id}> changed for {self._coins(purchase.cost)}."
        )

    @buy.command(name="timeout", aliases=["punishment"], description="Time a member out.")
    @app_commands.describe(user="Member to time out", minutes="Duration in minutes")
    async def buy_timeout(
        self, ctx: commands.Context, user: discord.Member, minutes: int
    ) -> None:
        purchase = await self._buy(ctx, ShopItem.TIMEOUT, target=user, minutes=minutes)
        until = discord.utils.format_dt(purchase.until, "T") if purchase.until else "later"
        await ctx.send(
            f"🔇 <@{user.id}> has been timed out until {until} "
            f"for {self._coins(purchase.cost)}."
        )

    @buy.command(name="mute", description="Voice mute a member who is in a call.")
    @app_commands.describe(user="Member to mute", minutes="Duration in minutes")
    async def buy_mute(
        self, ctx: commands.Context, user: discord.Member, minutes: int
    ) -> None:
        purchase = await self._buy(ctx, ShopItem.MUTE, target=user, minutes=minutes)
        await ctx.send(
            f"🔇 <@{user.id}> has been muted in voice for {minutes} minutes "
            f"({self._coins(purchase.cost)})."
        )

    @commands.hybrid_command(name="help", description="List the casino commands.")
    async def help(self, ctx: commands.Context) -> None:
        sections = list(_HELP_SECTIONS)
        if self._services.market is not None:
            sections.append(_MARKET_HELP)
        await ctx.send("\n\n".join(sections), ephemeral=True)

    # Errors and components

    async def cog_command_error(self, ctx: commands.Context, error: Exception) -> None:
        original = _unwrap_error(error)
        if isinstance(original, CasinoError):
            await ctx.send(f"❌ {original.message}", ephemeral=True)
            return
        if isinstance(original, (commands.UserInputError, app_commands.TransformerError)):
            await ctx.send(f"❌ {original}", ephemeral=True)
            return
        self._logger.exception(
            "Command failed",
            exc_info=original,
            extra={
                "category": "gateway",
                "user_id": ctx.author.id,
                "channel_id": getattr(ctx.channel, "id", None),
                "command": ctx.command.qualified_name if ctx.command else None,
                "error_type": type(original).__name__,
            },
        )
        await ctx.send("❌ Something went wrong, please try again.", ephemeral=True)

    @commands.Cog.listener()
    async def on_interaction(self, interaction: discord.Interaction) -> None:
        if interaction.type is not discord.InteractionType.component:
            return
        data: Any = interaction.data or {}
        custom_id = data.get("custom_id")
        if not is_casino_custom_id(custom_id):
            return

        try:
            action = decode_custom_id(custom_id, interaction.user.id)
            await interaction.response.defer()
            await self._casino.dispatch(action)
        except CasinoError as exc:
            await self._reply_ephemeral(interaction, f"❌ {exc.message}")
        except discord.DiscordException as exc:
            self._logger.warning(
                "Failed to acknowledge interaction",
                extra={
                    "category": "gateway",
                    "user_id": interaction.user.id,
                    "error_type": type(exc).__name__,
                },
            )

    async def _reply_ephemeral(self, interaction: discord.Interaction, text: str) -> None:
        try:
            if interaction.response.is_done():
                await interaction.followup.send(text, ephemeral=True)
            else:
                await interaction.response.send_message(text, ephemeral=True)
        except discord.DiscordException as exc:
            self._logger.warning(
                "Failed to send ephemeral reply",
                extra={"category": "gateway", "error_type": type(exc).__name__},
            )


class CasinoBot(commands.Bot):
    def __init__(self, cfg: Config, *, logger: Optional[logging.Logger] = None) -> None:
        intents = discord.Intents.default()
        intents.message_content = True
        # The cog ships its own help command.
        super().__init__(command_prefix=cfg.COMMAND_PREFIX, intents=intents, help_command=None)
        self._cfg = cfg
        self._logger = logger or logging.getLogger(__name__)
        self._services: Optional["ApplicationServices"] = None

    def attach(self, services: "ApplicationServices") -> None:
        self._services = services

    async def setup_hook(self) -> None:
        if self._services is None:
            raise RuntimeError("CasinoBot.attach() must be called before start")
        await self.add_cog(
            CasinoCog(
                self._services,
                admin_ids=self._cfg.ADMIN_IDS,
                logger=self._logger.getChild("commands"),
            )
        )
        await self._services.start()
        synced = await self.tree.sync()
        self._logger.info(
            "Slash commands synced",
            extra={"category": "startup", "commands": len(synced)},
        )

    async def on_ready(self) -> None:
        self._logger.info(
            "Bot connected",
            extra={"category": "startup", "bot_user": str(self.user)},
        )

    async def close(self) -> None:
        if self._services is not None:
            await self._services.shutdown()
        await super().close()


__all__ = ["CasinoBot", "CasinoCog"]
