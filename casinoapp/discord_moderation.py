"""discord.py implementation of the shop's moderation actions."""

from __future__ import annotations

import datetime as dt

import discord

from casinoapp.entities import ModerationError, PlayerId


class DiscordModerator:
    def __init__(self, client: discord.Client) -> None:
        self._client = client

    async def _member(self, guild_id: int, member_id: PlayerId) -> discord.Member:
        guild = self._client.get_guild(guild_id)
        if guild is None:
            raise ModerationError("Server not found.")
        member = guild.get_member(member_id)
        if member is not None:
            return member
        try:
            return await guild.fetch_member(member_id)
        except discord.NotFound as exc:
            raise ModerationError("Member not found.") from exc

    async def set_nickname(self, guild_id: int, member_id: PlayerId, nickname: str) -> None:
        member = await self._member(guild_id, member_id)
        try:
            await member.edit(nick=nickname, reason="Casino shop purchase")
        except discord.HTTPException as exc:
            raise ModerationError(
                "Could not change nickname (check my permissions and role order)."
            ) from exc

    async def timeout(self, guild_id: int, member_id: PlayerId, minutes: int) -> dt.datetime:
        member = await self._member(guild_id, member_id)
        now = discord.utils.utcnow()
        current = member.timed_out_until
        start = current if current is not None and current > now else now
        until = start + dt.timedelta(minutes=minutes)
        try:
            await member.timeout(until, reason="Casino shop purchase")
        except discord.HTTPException as exc:
            raise ModerationError(
                "Could not apply the timeout (check my permissions and role order)."
            ) from exc
        return until

    async def set_voice_mute(self, guild_id: int, member_id: PlayerId, muted: bool) -> None:
        member = await self._member(guild_id, member_id)
        if muted and (member.voice is None or member.voice.channel is None):
            raise ModerationError(
                f"<@{member_id}> is not in a voice channel! "
                "You can only mute members who are in a call."
            )
        try:
            await member.edit(mute=muted, reason="Casino shop purchase")
        except discord.HTTPException as exc:
            raise ModerationError(
                "Could not change voice mute (check my permissions and role order)."
            ) from exc


__all__ = ["DiscordModerator"]
