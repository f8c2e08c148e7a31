#!/usr/bin/env python3

import sys
from typing import Iterable, Mapping, Sequence

from dotenv import load_dotenv

from casinoapp.bootstrap import build_services
from casinoapp.config import Config
from casinoapp.discord_bot import CasinoBot
from casinoapp.metrics_server import start_metrics_server


def _startup_log_extra(
    *,
    logger,
    stage: str,
    env_config_missing: Sequence[str] | Iterable[str] | None = None,
    additional: Mapping[str, object] | None = None,
) -> dict:
    """Return a structured ``extra`` payload for startup logs."""

    missing = list(env_config_missing or [])
    extra = {
        "category": "startup",
        "stage": stage,
        "user_id": None,
        "channel_id": None,
        "env_config_missing": missing,
    }

    if logger.isEnabledFor(10):  # logging.DEBUG
        extra.update({"debug_mode": True, "debug_missing_count": len(missing)})

    if additional:
        extra.update(dict(additional))

    return extra


def main() -> None:
    load_dotenv()
    cfg: Config = Config()
    bot = CasinoBot(cfg)
    services = build_services(cfg, client=bot)
    logger = services.logger.getChild(__name__)

    logger.info(
        "Ensure required configuration values are provided via environment or .env file.",
        extra=_startup_log_extra(logger=logger, stage="validation"),
    )

    missing_required_settings = []

    if cfg.TOKEN == "":
        missing_required_settings.append(
            (
                "MissingToken",
                "Environment variable CASINOBOT_TOKEN is not set. "
                "Add it to your .env file or container environment.",
            )
        )

    if cfg.API_PORT is not None and not cfg.API_KEY:
        missing_required_settings.append(
            (
                "MissingApiKey",
                "CASINOBOT_API_PORT is set but CASINOBOT_API_KEY is empty. "
                "Set an API key or unset the port to disable the REST API.",
            )
        )

    if missing_required_settings:
        missing_env_keys = [error_type for error_type, _ in missing_required_settings]
        for error_type, message in missing_required_settings:
            logger.error(
                message,
                extra=_startup_log_extra(
                    logger=logger,
                    stage="validation",
                    env_config_missing=missing_env_keys,
                    additional={"error_type": error_type},
                ),
            )
        sys.exit(1)

    if cfg.ROULETTE_CHANNEL_ID is None:
        logger.warning(
            "CASINOBOT_ROULETTE_CHANNEL_ID is not set; roulette results will not be announced.",
            extra=_startup_log_extra(
                logger=logger,
                stage="validation",
                additional={"warning_type": "MissingRouletteChannel"},
            ),
        )

    if cfg.METRICS_PORT is not None:
        start_metrics_server(cfg.METRICS_PORT)

    bot.attach(services)
    logger.info(
        "Starting Discord bot",
        extra=_startup_log_extra(
            logger=logger,
            stage="run",
            additional={"debug_mode": cfg.DEBUG, "command_prefix": cfg.COMMAND_PREFIX},
        ),
    )
    bot.run(cfg.TOKEN, log_handler=None)


if __name__ == "__main__":
    main()
