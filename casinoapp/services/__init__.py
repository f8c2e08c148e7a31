"""Service layer utilities for the casino bot."""

from importlib import import_module
from typing import Any

_EXPORTS = {
    "ActivePlayerTracker": "casinoapp.services.session_store",
    "GameJob": "casinoapp.services.turn_queue",
    "SessionRegistry": "casinoapp.services.session_store",
    "SessionStore": "casinoapp.services.session_store",
    "TurnQueue": "casinoapp.services.turn_queue",
}

__all__ = sorted(_EXPORTS)


def __getattr__(name: str) -> Any:
    module_name = _EXPORTS.get(name)
    if module_name is not None:
        module = import_module(module_name)
        return getattr(module, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
