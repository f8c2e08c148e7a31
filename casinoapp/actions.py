"""Player actions delivered from the chat gateway into game sessions.

Interactive components carry a compact custom ID that is decoded exactly
once, at the gateway boundary, into a :class:`PlayerAction`. Game engines
only ever see the decoded value.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Hashable, Optional, Tuple, Union

from casinoapp.entities import GameType, PlayerId, ValidationError

CUSTOM_ID_PREFIX = "casino"

SessionKey = Union[PlayerId, Tuple[PlayerId, PlayerId]]


class ActionCode(enum.Enum):
    CASH_OUT = "cashout"
    PICK = "pick"
    CONTINUE = "continue"
    HIT = "hit"
    STAND = "stand"
    DOUBLE = "double"
    INSURANCE = "insurance"
    ACCEPT = "accept"
    DECLINE = "decline"
    SHOOT = "shoot"


@dataclass(frozen=True)
class PlayerAction:
    game_type: GameType
    action: ActionCode
    actor_id: PlayerId
    session_key: Hashable
    value: Optional[int] = None


def pair_key(first: PlayerId, second: PlayerId) -> Tuple[PlayerId, PlayerId]:
    """Return the order-independent session key for a two-player game."""

    return (first, second) if first <= second else (second, first)


def _encode_key(key: Hashable) -> str:
    if isinstance(key, tuple):
        return "-".join(str(part) for part in key)
    return str(key)


def _decode_key(raw: str) -> SessionKey:
    if "-" in raw:
        parts = raw.split("-")
        if len(parts) != 2:
            raise ValidationError(f"Malformed session key: {raw!r}")
        return pair_key(int(parts[0]), int(parts[1]))
    return int(raw)


def encode_custom_id(
    game_type: GameType,
    action: ActionCode,
    session_key: Hashable,
    value: Optional[int] = None,
) -> str:
    parts = [CUSTOM_ID_PREFIX, game_type.value, action.value, _encode_key(session_key)]
    if value is not None:
        parts.append(str(value))
    return ":".join(parts)


def decode_custom_id(custom_id: str, actor_id: PlayerId) -> PlayerAction:
    """Decode ``custom_id`` produced by :func:`encode_custom_id`.

    Raises:
        ValidationError: If the token is not a casino component ID.
    """

    parts = custom_id.split(":")
    if len(parts) not in (4, 5) or parts[0] != CUSTOM_ID_PREFIX:
        raise ValidationError(f"Unrecognised component id: {custom_id!r}")
    try:
        game_type = GameType(parts[1])
        action = ActionCode(parts[2])
        session_key = _decode_key(parts[3])
        value = int(parts[4]) if len(parts) == 5 else None
    except ValueError as exc:
        raise ValidationError(f"Malformed component id: {custom_id!r}") from exc
    return PlayerAction(
        game_type=game_type,
        action=action,
        actor_id=actor_id,
        session_key=session_key,
        value=value,
    )


def is_casino_custom_id(custom_id: Optional[str]) -> bool:
    return bool(custom_id) and custom_id.startswith(CUSTOM_ID_PREFIX + ":")


__all__ = [
    "ActionCode",
    "PlayerAction",
    "SessionKey",
    "decode_custom_id",
    "encode_custom_id",
    "is_casino_custom_id",
    "pair_key",
]
