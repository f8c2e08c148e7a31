"""Presentation contract between game engines and the chat platform."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import List, Optional, Protocol, Tuple

from casinoapp.actions import ActionCode
from casinoapp.entities import ChannelId, GameType, MessageId, PlayerId


class Tone(enum.Enum):
    INFO = "info"
    ACTIVE = "active"
    SUCCESS = "success"
    DANGER = "danger"
    NEUTRAL = "neutral"


@dataclass(frozen=True)
class ActionButton:
    """A control offered to the player; ``value`` disambiguates cup picks."""

    action: ActionCode
    label: str
    value: Optional[int] = None
    emphasised: bool = False


@dataclass
class RenderState:
    game_type: GameType
    title: str
    description: str = ""
    fields: List[Tuple[str, str]] = field(default_factory=list)
    buttons: List[ActionButton] = field(default_factory=list)
    tone: Tone = Tone.INFO
    footer: str = ""


@dataclass(frozen=True)
class MessageHandle:
    channel_id: ChannelId
    message_id: MessageId


class GameView(Protocol):
    """Rendering capabilities the engines depend on.

    Implementations raise on failure; engines decide whether a failure is
    fatal (initial render) or only logged (updates).
    """

    async def render_initial(
        self,
        channel_id: ChannelId,
        player_id: PlayerId,
        state: RenderState,
        session_key: object,
    ) -> MessageHandle:
        ...

    async def render_update(
        self, handle: MessageHandle, state: RenderState, session_key: object
    ) -> None:
        ...

    async def render_terminal(self, handle: MessageHandle, state: RenderState) -> None:
        ...

    async def notify(
        self,
        channel_id: ChannelId,
        text: str,
        *,
        player_id: Optional[PlayerId] = None,
    ) -> None:
        ...


__all__ = [
    "ActionButton",
    "GameView",
    "MessageHandle",
    "RenderState",
    "Tone",
]
