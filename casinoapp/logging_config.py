"""JSON log output for the casino bot."""

import json
import logging
from typing import Any, Dict, FrozenSet

from casinoapp.utils.logging_helpers import normalise_value
from casinoapp.utils.time_utils import now_utc


# Attributes every LogRecord carries; anything else arrived through ``extra``.
_RECORD_ATTRS: FrozenSet[str] = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime", "taskName"}

#: Keys lifted to the top level of each JSON line; the rest go under "extra".
TOP_LEVEL_KEYS = (
    "user_id",
    "channel_id",
    "game_type",
    "category",
    "stage",
    "error_type",
    "action",
    "amount",
)


class ContextJsonFormatter(logging.Formatter):
    """One JSON object per record, context keys promoted to the top level."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": now_utc().isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        extra: Dict[str, Any] = {}
        for key, value in vars(record).items():
            if key in _RECORD_ATTRS or key.startswith("_"):
                continue
            target = payload if key in TOP_LEVEL_KEYS else extra
            target[key] = normalise_value(value)
        if extra:
            payload["extra"] = extra
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=repr)


def setup_logging(level: int = logging.INFO, debug_mode: bool = False) -> None:
    """Install the JSON formatter on the root logger once."""

    root_logger = logging.getLogger()
    if not root_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(ContextJsonFormatter())
        root_logger.addHandler(handler)

    root_logger.setLevel(logging.DEBUG if debug_mode else level)

    # discord.py is chatty at DEBUG; keep gateway noise at INFO.
    logging.getLogger("discord").setLevel(logging.INFO)
