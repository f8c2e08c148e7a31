"""Tests for the coin shop."""

import asyncio
import datetime as dt
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import discord
import pytest

from casinoapp.discord_moderation import DiscordModerator
from casinoapp.entities import InsufficientFundsError, ModerationError, ValidationError
from casinoapp.shop import ShopItem, ShopService, ShopSettings
from casinoapp.utils.time_utils import now_utc


GUILD = 77


class FakeModerator:
    def __init__(self) -> None:
        self.calls = []
        self.fail_with = None

    async def set_nickname(self, guild_id, member_id, nickname):
        self._record("nickname", member_id, nickname)

    async def timeout(self, guild_id, member_id, minutes):
        self._record("timeout", member_id, minutes)
        return now_utc() + dt.timedelta(minutes=minutes)

    async def set_voice_mute(self, guild_id, member_id, muted):
        self._record("mute", member_id, muted)

    def _record(self, *call):
        if self.fail_with is not None:
            raise self.fail_with
        self.calls.append(call)


class TrackerActivity:
    def __init__(self, tracker):
        self._tracker = tracker

    def is_player_active(self, player_id):
        return self._tracker.is_active(player_id)

    async def wait_until_idle(self, player_id, *, timeout=None):
        return await self._tracker.wait_until_idle(player_id, timeout=timeout)


def _shop(ledger, tracker, moderator=None, **settings):
    return ShopService(
        ledger,
        moderator or FakeModerator(),
        TrackerActivity(tracker),
        ShopSettings(**settings),
    )


@pytest.mark.asyncio
async def test_nickname_purchase_charges_buyer(ledger, tracker):
    moderator = FakeModerator()
    shop = _shop(ledger, tracker, moderator)
    await ledger.add_coins(1, 600)

    purchase = await shop.purchase(1, GUILD, ShopItem.NICKNAME, nickname="  Lucky  ")

    assert purchase.cost == 500
    assert purchase.target_id == 1
    assert moderator.calls == [("nickname", 1, "Lucky")]
    assert await ledger.get_balance(1) == 100


@pytest.mark.asyncio
async def test_purchase_validation(ledger, tracker):
    shop = _shop(ledger, tracker, max_minutes=60)
    await ledger.add_coins(1, 10_000)

    with pytest.raises(ValidationError):
        await shop.purchase(1, GUILD, ShopItem.RENAME, nickname="Bob")
    with pytest.raises(ValidationError):
        await shop.purchase(1, GUILD, ShopItem.NICKNAME, nickname="x" * 33)
    with pytest.raises(ValidationError):
        await shop.purchase(1, GUILD, ShopItem.TIMEOUT, target_id=2, minutes=61)
    with pytest.raises(InsufficientFundsError):
        await shop.purchase(3, GUILD, ShopItem.TIMEOUT, target_id=2, minutes=60)
    assert await ledger.get_balance(1) == 10_000


@pytest.mark.asyncio
async def test_timeout_waits_for_target_game_to_end(ledger, tracker):
    moderator = FakeModerator()
    shop = _shop(ledger, tracker, moderator)
    await ledger.add_coins(1, 1000)
    await tracker.mark_active(2)
    waited = []

    async def on_wait(target_id):
        waited.append(target_id)

    task = asyncio.create_task(
        shop.purchase(1, GUILD, ShopItem.TIMEOUT, target_id=2, minutes=5, on_wait=on_wait)
    )
    await asyncio.sleep(0.05)
    assert waited == [2]
    assert moderator.calls == []
    assert not task.done()

    await tracker.mark_idle(2)
    purchase = await asyncio.wait_for(task, timeout=1.0)

    assert moderator.calls == [("timeout", 2, 5)]
    assert purchase.cost == 500 and purchase.until is not None
    assert await ledger.get_balance(1) == 500


@pytest.mark.asyncio
async def test_wait_gives_up_after_configured_timeout(ledger, tracker):
    moderator = FakeModerator()
    shop = _shop(ledger, tracker, moderator, idle_wait_timeout_seconds=0.05)
    await ledger.add_coins(1, 1000)
    await tracker.mark_active(2)

    with pytest.raises(ValidationError, match="still playing"):
        await shop.purchase(1, GUILD, ShopItem.MUTE, target_id=2, minutes=1)

    assert moderator.calls == []
    assert await ledger.get_balance(1) == 1000


@pytest.mark.asyncio
async def test_refused_action_is_refunded(ledger, tracker):
    moderator = FakeModerator()
    moderator.fail_with = ModerationError("missing permissions")
    shop = _shop(ledger, tracker, moderator)
    await ledger.add_coins(1, 2000)

    with pytest.raises(ModerationError):
        await shop.purchase(1, GUILD, ShopItem.RENAME, target_id=2, nickname="Bob")

    assert await ledger.get_balance(1) == 2000


@pytest.mark.asyncio
async def test_mute_is_lifted_at_shutdown(ledger, tracker):
    moderator = FakeModerator()
    shop = _shop(ledger, tracker, moderator)
    await ledger.add_coins(1, 1000)

    await shop.purchase(1, GUILD, ShopItem.MUTE, target_id=2, minutes=10)
    await shop.purchase(1, GUILD, ShopItem.MUTE, target_id=2, minutes=5)
    assert shop.pending_unmutes == 1

    await shop.shutdown()

    assert moderator.calls == [("mute", 2, True), ("mute", 2, True), ("mute", 2, False)]
    assert shop.pending_unmutes == 0
    assert await ledger.get_balance(1) == 250


def _member(*, in_voice=True, timed_out_until=None):
    member = MagicMock()
    member.edit = AsyncMock()
    member.timeout = AsyncMock()
    member.timed_out_until = timed_out_until
    member.voice = SimpleNamespace(channel=object()) if in_voice else None
    return member


def _client(member):
    guild = MagicMock()
    guild.get_member.return_value = member
    client = MagicMock()
    client.get_guild.return_value = guild
    return client


@pytest.mark.asyncio
async def test_discord_timeout_extends_running_timeout():
    running_until = discord.utils.utcnow() + dt.timedelta(minutes=30)
    member = _member(timed_out_until=running_until)
    moderator = DiscordModerator(_client(member))

    until = await moderator.timeout(GUILD, 2, 10)

    assert until == running_until + dt.timedelta(minutes=10)
    member.timeout.assert_awaited_once()


@pytest.mark.asyncio
async def test_discord_mute_requires_voice_channel():
    member = _member(in_voice=False)
    moderator = DiscordModerator(_client(member))

    with pytest.raises(ModerationError, match="not in a voice channel"):
        await moderator.set_voice_mute(GUILD, 2, True)
    await moderator.set_voice_mute(GUILD, 2, False)

    member.edit.assert_awaited_once_with(mute=False, reason="Casino shop purchase")


@pytest.mark.asyncio
async def test_discord_refusal_becomes_moderation_error():
    member = _member()
    member.edit.side_effect = discord.Forbidden(MagicMock(status=403, reason="Forbidden"), "no")
    moderator = DiscordModerator(_client(member))

    with pytest.raises(ModerationError, match="nickname"):
        await moderator.set_nickname(GUILD, 2, "Bob")

    missing = DiscordModerator(MagicMock(get_guild=MagicMock(return_value=None)))
    with pytest.raises(ModerationError, match="Server not found"):
        await missing.set_nickname(GUILD, 2, "Bob")
