"""Discord implementation of :class:`~casinoapp.gateway.GameView`."""

from __future__ import annotations

import logging
from typing import Dict, Hashable, Optional

import discord

from casinoapp.actions import ActionCode, encode_custom_id
from casinoapp.entities import ChannelId, PlayerId, RenderFailureError
from casinoapp.gateway import MessageHandle, RenderState, Tone


TONE_COLOURS: Dict[Tone, discord.Colour] = {
    Tone.INFO: discord.Colour.blue(),
    Tone.ACTIVE: discord.Colour.gold(),
    Tone.SUCCESS: discord.Colour.green(),
    Tone.DANGER: discord.Colour.red(),
    Tone.NEUTRAL: discord.Colour.dark_grey(),
}

_DANGER_ACTIONS = frozenset({ActionCode.DECLINE})

# Longer than any game waits for a single press.
VIEW_TIMEOUT_SECONDS = 900.0


def build_embed(state: RenderState) -> discord.Embed:
    embed = discord.Embed(
        title=state.title,
        description=state.description or None,
        colour=TONE_COLOURS.get(state.tone, discord.Colour.blurple()),
    )
    for name, value in state.fields:
        embed.add_field(name=name, value=value, inline=True)
    if state.footer:
        embed.set_footer(text=state.footer)
    return embed


def build_components(state: RenderState, session_key: Hashable) -> Optional[discord.ui.View]:
    """Return a view carrying one button per offered action.

    Button presses are not handled by the view itself; the bot decodes the
    custom ID in its interaction listener.
    """

    if not state.buttons:
        return None
    view = discord.ui.View(timeout=VIEW_TIMEOUT_SECONDS)
    for button in state.buttons:
        if button.action in _DANGER_ACTIONS:
            style = discord.ButtonStyle.danger
        elif button.emphasised:
            style = discord.ButtonStyle.success
        else:
            style = discord.ButtonStyle.secondary
        view.add_item(
            discord.ui.Button(
                label=button.label,
                style=style,
                custom_id=encode_custom_id(
                    state.game_type, button.action, session_key, button.value
                ),
            )
        )
    return view


class DiscordGameView:
    def __init__(
        self, client: discord.Client, *, logger: Optional[logging.Logger] = None
    ) -> None:
        self._client = client
        self._logger = logger or logging.getLogger(__name__)
        self._views: Dict[int, discord.ui.View] = {}

    @property
    def live_views(self) -> int:
        return len(self._views)

    def _track_view(self, message_id: int, view: Optional[discord.ui.View]) -> None:
        """Remember the view attached to a message and stop the one it replaces.

        Stopping a view drops it from the client's view store.
        """

        previous = self._views.pop(message_id, None)
        if previous is not None and previous is not view:
            previous.stop()
        if view is not None:
            self._views[message_id] = view

    async def _channel(self, channel_id: ChannelId) -> discord.abc.Messageable:
        channel = self._client.get_channel(channel_id)
        if channel is None:
            channel = await self._client.fetch_channel(channel_id)
        return channel

    async def render_initial(
        self,
        channel_id: ChannelId,
        player_id: PlayerId,
        state: RenderState,
        session_key: object,
    ) -> MessageHandle:
        components = build_components(state, session_key)
        try:
            channel = await self._channel(channel_id)
            message = await channel.send(
                content=f"<@{player_id}>",
                embed=build_embed(state),
                view=components,
            )
        except discord.DiscordException as exc:
            if components is not None:
                components.stop()
            self._logger.warning(
                "Failed to send game message",
                extra={
                    "category": "gateway",
                    "channel_id": channel_id,
                    "user_id": player_id,
                    "error_type": type(exc).__name__,
                },
            )
            raise RenderFailureError(f"Could not post the game message: {exc}") from exc
        self._track_view(message.id, components)
        return MessageHandle(channel_id=channel_id, message_id=message.id)

    async def _edit(self, handle: MessageHandle, **kwargs) -> None:
        try:
            channel = await self._channel(handle.channel_id)
            await channel.get_partial_message(handle.message_id).edit(**kwargs)
        except discord.DiscordException as exc:
            raise RenderFailureError(f"Could not edit the game message: {exc}") from exc

    async def render_update(
        self, handle: MessageHandle, state: RenderState, session_key: object
    ) -> None:
        components = build_components(state, session_key)
        try:
            await self._edit(handle, embed=build_embed(state), view=components)
        except RenderFailureError:
            if components is not None:
                components.stop()
            raise
        self._track_view(handle.message_id, components)

    async def render_terminal(self, handle: MessageHandle, state: RenderState) -> None:
        try:
            await self._edit(handle, embed=build_embed(state), view=None)
        finally:
            self._track_view(handle.message_id, None)

    async def notify(
        self,
        channel_id: ChannelId,
        text: str,
        *,
        player_id: Optional[PlayerId] = None,
    ) -> None:
        content = f"<@{player_id}> {text}" if player_id is not None else text
        try:
            channel = await self._channel(channel_id)
            await channel.send(content)
        except discord.DiscordException as exc:
            raise RenderFailureError(f"Could not send a notification: {exc}") from exc


__all__ = [
    "DiscordGameView",
    "TONE_COLOURS",
    "VIEW_TIMEOUT_SECONDS",
    "build_components",
    "build_embed",
]
