import logging
import os
from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


logger = logging.getLogger(__name__)


_BASE_DIR = Path(__file__).resolve().parent.parent
_DEFAULT_CONFIG_DIR = _BASE_DIR / "config"
_DEFAULT_GAME_CONSTANTS_PATH = _DEFAULT_CONFIG_DIR / "game_constants.yaml"

_DEFAULT_GAME_CONSTANTS_DATA: Dict[str, Any] = {
    "economy": {
        "currency_symbol": "🪙",
        "starting_balance": 0,
        "daily_amount": 100,
        "daily_cooldown_hours": 24,
    },
    "queue": {
        "capacity": 100,
        "idle_poll_interval_seconds": 1.0,
    },
    "crash": {
        "min_bet": 100,
        "tick_seconds": 1.0,
        "takeoff_delay_seconds": 1.0,
        "growth_per_second": 0.1,
        "early_crash_probability": 0.4,
        "early_crash_span": 0.5,
        "house_factor": 0.96,
        "max_multiplier": 100.0,
    },
    "cups": {
        "min_bet": 50,
        "cup_count": 6,
        "first_win_multiplier": 5,
        "streak_multiplier": 2,
        "guess_timeout_seconds": 120,
        "decision_timeout_seconds": 60,
    },
    "blackjack": {
        "min_bet": 100,
        "idle_timeout_seconds": 120,
        "dealer_stand_score": 17,
    },
    "slots": {
        "min_bet": 10,
        "two_match_factor": 0.3,
        "animation_frames": 3,
        "frame_delay_seconds": 0.7,
    },
    "roulette": {
        "min_bet": 50,
        "interval_minutes": 10,
        "payout_retry_attempts": 3,
        "payout_retry_delay_seconds": 0.5,
    },
    "russian_roulette": {
        "min_bet": 50,
        "accept_timeout_seconds": 30,
        "turn_timeout_seconds": 300,
        "chambers": 6,
    },
    "event_betting": {
        "min_bet": 10,
        "house_edge": 0.05,
        "min_options": 2,
        "max_options": 10,
        "min_duration_minutes": 1,
        "max_duration_minutes": 1440,
        "min_question_length": 5,
        "max_question_length": 200,
        "payout_retry_attempts": 3,
        "payout_retry_delay_seconds": 0.5,
    },
    "loans": {
        "offer_timeout_seconds": 60,
        "max_interest_rate": 100,
        "max_days": 365,
    },
    "market": {
        "refresh_interval_minutes": 10,
        "price_multiplier": 1.0,
        "fetch_timeout_seconds": 5.0,
        "payout_retry_attempts": 3,
        "payout_retry_delay_seconds": 0.5,
        "companies": [
            {"ticker": "AAPL", "name": "Apple"},
            {"ticker": "MSFT", "name": "Microsoft"},
            {"ticker": "NVDA", "name": "NVIDIA"},
            {"ticker": "GOOGL", "name": "Alphabet"},
            {"ticker": "AMZN", "name": "Amazon"},
            {"ticker": "TSLA", "name": "Tesla"},
        ],
    },
    "shop": {
        "nickname_self_cost": 500,
        "nickname_other_cost": 1000,
        "timeout_cost_per_minute": 100,
        "mute_cost_per_minute": 50,
        "max_minutes": 1440,
        "idle_wait_timeout_seconds": 600,
    },
    "redis_keys": {
        "balance_prefix": "casino:balance:",
        "loan_prefix": "casino:loan:",
        "loan_index": "casino:loans",
        "loan_sequence": "casino:loan:seq",
        "daily_prefix": "casino:daily:",
        "stock_prefix": "casino:stock:",
    },
}


def _resolve_config_path(candidate: Optional[str], default: Path) -> Path:
    if not candidate:
        return default
    path = Path(candidate)
    if not path.is_absolute():
        path = _BASE_DIR / path
    return path


def _deep_merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in overrides.items():
        if (
            isinstance(value, dict)
            and isinstance(base.get(key), dict)
        ):
            base[key] = _deep_merge(dict(base[key]), value)
        else:
            base[key] = value
    return base


class GameConstants:
    def __init__(
        self,
        path: Optional[str] = None,
        *,
        defaults: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._path: Path = _resolve_config_path(
            path or os.getenv("CASINOBOT_GAME_CONSTANTS_FILE"),
            _DEFAULT_GAME_CONSTANTS_PATH,
        )
        self._defaults: Dict[str, Any] = deepcopy(defaults or _DEFAULT_GAME_CONSTANTS_DATA)
        self._data: Dict[str, Any] = {}
        self.reload()

    @property
    def path(self) -> Path:
        return self._path

    def reload(self) -> None:
        raw_data: Dict[str, Any] = {}
        try:
            with self._path.open("r", encoding="utf-8") as handle:
                loaded = yaml.safe_load(handle) or {}
                if not isinstance(loaded, dict):
                    logger.warning(
                        "Game constants file did not contain a mapping; using defaults.",
                        extra={
                            "category": "config",
                            "config_path": str(self._path),
                            "stage": "game_constants_load",
                            "error_type": "InvalidMapping",
                        },
                    )
                else:
                    raw_data = loaded
        except FileNotFoundError:
            logger.info(
                "Game constants file not found; using built-in defaults.",
                extra={
                    "category": "config",
                    "config_path": str(self._path),
                    "stage": "game_constants_load",
                },
            )
        except (OSError, yaml.YAMLError) as exc:
            logger.warning(
                "Failed to load game constants; using defaults.",
                extra={
                    "category": "config",
                    "config_path": str(self._path),
                    "stage": "game_constants_load",
                    "error_type": type(exc).__name__,
                },
            )

        self._data = _deep_merge(deepcopy(self._defaults), raw_data)

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def section(self, key: str) -> Dict[str, Any]:
        value = self._data.get(key)
        if isinstance(value, dict):
            return value
        return {}

    @property
    def economy(self) -> Dict[str, Any]:
        return self.section("economy")

    @property
    def queue(self) -> Dict[str, Any]:
        return self.section("queue")

    @property
    def redis_keys(self) -> Dict[str, Any]:
        return self.section("redis_keys")


GAME_CONSTANTS = GameConstants()


def get_game_constants() -> GameConstants:
    return GAME_CONSTANTS


class Config:
    def __init__(self, constants: Optional[GameConstants] = None):
        self.constants: GameConstants = constants or GAME_CONSTANTS
        self.TOKEN: str = os.getenv("CASINOBOT_TOKEN", default="")
        self.COMMAND_PREFIX: str = os.getenv("CASINOBOT_COMMAND_PREFIX", default="!")
        self.DEBUG: bool = bool(
            os.getenv("CASINOBOT_DEBUG", default="0").strip().lower()
            in {"1", "true", "yes", "on"}
        )
        self.LOG_LEVEL: str = os.getenv("CASINOBOT_LOG_LEVEL", default="INFO").upper()

        self.REDIS_HOST: str = os.getenv("CASINOBOT_REDIS_HOST", default="localhost")
        self.REDIS_PORT: int = self._parse_int_env(
            os.getenv("CASINOBOT_REDIS_PORT"),
            default=6379,
            env_var="CASINOBOT_REDIS_PORT",
        )
        self.REDIS_PASS: str = os.getenv("CASINOBOT_REDIS_PASS", default="")
        self.REDIS_DB: int = self._parse_int_env(
            os.getenv("CASINOBOT_REDIS_DB"),
            default=0,
            env_var="CASINOBOT_REDIS_DB",
        )

        roulette_constants = self.constants.section("roulette")
        parsed_interval = self._parse_positive_float(
            os.getenv("CASINOBOT_ROULETTE_INTERVAL_MINUTES"),
            env_var="CASINOBOT_ROULETTE_INTERVAL_MINUTES",
        )
        self.ROULETTE_INTERVAL_MINUTES: float = (
            parsed_interval
            if parsed_interval is not None
            else float(roulette_constants.get("interval_minutes", 10))
        )
        self.ROULETTE_CHANNEL_ID: Optional[int] = self._parse_positive_int(
            os.getenv("CASINOBOT_ROULETTE_CHANNEL_ID"),
            env_var="CASINOBOT_ROULETTE_CHANNEL_ID",
        )

        self.ADMIN_IDS = frozenset(
            int(part)
            for part in os.getenv("CASINOBOT_ADMIN_IDS", default="").split(",")
            if part.strip().isdigit()
        )

        self.API_HOST: str = os.getenv("CASINOBOT_API_HOST", default="0.0.0.0")
        self.API_PORT: Optional[int] = self._parse_positive_int(
            os.getenv("CASINOBOT_API_PORT"),
            env_var="CASINOBOT_API_PORT",
        )
        self.API_KEY: str = os.getenv("CASINOBOT_API_KEY", default="")
        self.METRICS_PORT: Optional[int] = self._parse_positive_int(
            os.getenv("CASINOBOT_METRICS_PORT"),
            env_var="CASINOBOT_METRICS_PORT",
        )
        # The market stays closed until a quote endpoint is configured.
        self.MARKET_PRICE_URL: str = os.getenv("CASINOBOT_MARKET_PRICE_URL", default="")
        self.MARKET_PRICE_FIELD: str = os.getenv(
            "CASINOBOT_MARKET_PRICE_FIELD", default="price"
        )

        queue_constants = self.constants.queue
        parsed_capacity = self._parse_positive_int(
            os.getenv("CASINOBOT_QUEUE_CAPACITY"),
            env_var="CASINOBOT_QUEUE_CAPACITY",
        )
        self.QUEUE_CAPACITY: int = (
            parsed_capacity
            if parsed_capacity is not None
            else int(queue_constants.get("capacity", 100))
        )

    @staticmethod
    def _parse_positive_int(
        raw_value: Optional[str], *, env_var: str
    ) -> Optional[int]:
        if not raw_value:
            return None
        try:
            value = int(raw_value)
        except ValueError:
            logger.warning(
                "Invalid integer value '%s' for %s; ignoring it.",
                raw_value,
                env_var,
                extra={"category": "config", "error_type": "ValueError"},
            )
            return None
        if value <= 0:
            logger.warning(
                "%s must be greater than zero; ignoring %s.",
                env_var,
                raw_value,
                extra={"category": "config"},
            )
            return None
        return value

    @staticmethod
    def _parse_int_env(
        raw_value: Optional[str], *, default: int, env_var: str
    ) -> int:
        if raw_value is None:
            return default
        raw_value = raw_value.strip()
        if not raw_value:
            return default
        try:
            return int(raw_value)
        except ValueError:
            logger.warning(
                "Invalid integer value '%s' for %s; falling back to default %s.",
                raw_value,
                env_var,
                default,
                extra={"category": "config", "error_type": "ValueError"},
            )
            return default

    @staticmethod
    def _parse_positive_float(
        raw_value: Optional[str], *, env_var: str
    ) -> Optional[float]:
        if not raw_value:
            return None
        try:
            value = float(raw_value)
        except ValueError:
            logger.warning(
                "Invalid float value '%s' for %s; ignoring it.",
                raw_value,
                env_var,
                extra={"category": "config", "error_type": "ValueError"},
            )
            return None
        if value <= 0:
            logger.warning(
                "%s must be greater than zero; ignoring %s.",
                env_var,
                raw_value,
                extra={"category": "config"},
            )
            return None
        return value
