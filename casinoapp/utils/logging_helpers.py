"""Context-carrying loggers used by every casino service."""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, MutableMapping, Optional, Tuple, Union


LoggerLike = Union[logging.Logger, logging.LoggerAdapter]

#: Present on every record emitted through :func:`add_context`, ``None``
#: when an operation has no value for them.
REQUIRED_LOG_KEYS: Tuple[str, ...] = (
    "user_id",
    "channel_id",
    "game_type",
    "category",
)


def normalise_value(value: Any) -> Any:
    """Unwrap enums to their plain value; leave everything else alone."""

    candidate = getattr(value, "value", None)
    if isinstance(candidate, (str, int, float)):
        return candidate
    return value


class ContextLoggerAdapter(logging.LoggerAdapter):
    """Adapter whose context is merged under any per-call ``extra``."""

    def __init__(self, logger: logging.Logger, extra: Optional[Mapping[str, Any]] = None):
        super().__init__(logger, dict(extra or {}))

    def process(self, msg: str, kwargs: MutableMapping[str, Any]):
        kwargs["extra"] = {**self.extra, **(kwargs.get("extra") or {})}
        return msg, kwargs

    def getChild(self, suffix: str) -> "ContextLoggerAdapter":  # noqa: N802 - mirror logging API
        return ContextLoggerAdapter(self.logger.getChild(suffix), self.extra)

    def bind(self, **kwargs: Any) -> "ContextLoggerAdapter":
        return add_context(self, **kwargs)


def add_context(logger: LoggerLike, **kwargs: Any) -> ContextLoggerAdapter:
    """Return an adapter carrying the required keys, ``logger``'s context and ``kwargs``."""

    if isinstance(logger, logging.LoggerAdapter):
        base, inherited = logger.logger, dict(logger.extra or {})
    else:
        base, inherited = logger, {}
    context: Dict[str, Any] = {key: None for key in REQUIRED_LOG_KEYS}
    context.update(inherited)
    context.update({key: normalise_value(value) for key, value in kwargs.items()})
    return ContextLoggerAdapter(base, context)


def enforce_context(
    logger: LoggerLike, default_ctx: Optional[Mapping[str, Any]] = None
) -> ContextLoggerAdapter:
    """Wrap ``logger`` for a service, layering ``default_ctx`` over its context."""

    return add_context(logger, **dict(default_ctx or {}))
