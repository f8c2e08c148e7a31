import pytest

from casinoapp.config import Config, GameConstants
from casinoapp.games.base import settings_from_mapping
from casinoapp.games.crash import CrashSettings


def test_game_constants_merge_file_over_defaults(tmp_path):
    path = tmp_path / "constants.yaml"
    path.write_text(
        "economy:\n  currency_symbol: 'C'\ncups:\n  min_bet: 75\n", encoding="utf-8"
    )

    constants = GameConstants(str(path))

    assert constants.economy["currency_symbol"] == "C"
    assert constants.economy["starting_balance"] == 0
    assert constants.section("cups")["min_bet"] == 75
    assert constants.section("cups")["cup_count"] == 6


def test_game_constants_fall_back_when_file_missing(tmp_path):
    constants = GameConstants(str(tmp_path / "missing.yaml"))

    assert constants.section("crash")["min_bet"] == 100
    assert constants.section("unknown") == {}


def test_game_constants_ignore_non_mapping_file(tmp_path):
    path = tmp_path / "constants.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")

    constants = GameConstants(str(path))

    assert constants.queue["capacity"] == 100


def test_settings_from_mapping_coerces_and_skips_invalid():
    settings = settings_from_mapping(
        CrashSettings, {"min_bet": "250", "tick_seconds": "soon", "unrelated": 1}
    )

    assert settings.min_bet == 250
    assert settings.tick_seconds == CrashSettings().tick_seconds


@pytest.fixture
def clean_env(monkeypatch):
    for name in (
        "CASINOBOT_TOKEN",
        "CASINOBOT_ADMIN_IDS",
        "CASINOBOT_API_PORT",
        "CASINOBOT_REDIS_PORT",
        "CASINOBOT_ROULETTE_INTERVAL_MINUTES",
        "CASINOBOT_QUEUE_CAPACITY",
        "CASINOBOT_DEBUG",
    ):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_config_reads_environment(clean_env, tmp_path):
    clean_env.setenv("CASINOBOT_TOKEN", "secret")
    clean_env.setenv("CASINOBOT_ADMIN_IDS", "10, 20,abc")
    clean_env.setenv("CASINOBOT_API_PORT", "8081")
    clean_env.setenv("CASINOBOT_ROULETTE_INTERVAL_MINUTES", "2.5")
    clean_env.setenv("CASINOBOT_DEBUG", "yes")

    cfg = Config(GameConstants(str(tmp_path / "missing.yaml")))

    assert cfg.TOKEN == "secret"
    assert cfg.ADMIN_IDS == frozenset({10, 20})
    assert cfg.API_PORT == 8081
    assert cfg.ROULETTE_INTERVAL_MINUTES == 2.5
    assert cfg.DEBUG is True


def test_config_ignores_invalid_numbers(clean_env, tmp_path):
    clean_env.setenv("CASINOBOT_REDIS_PORT", "not-a-port")
    clean_env.setenv("CASINOBOT_API_PORT", "-1")
    clean_env.setenv("CASINOBOT_QUEUE_CAPACITY", "zero")

    cfg = Config(GameConstants(str(tmp_path / "missing.yaml")))

    assert cfg.REDIS_PORT == 6379
    assert cfg.API_PORT is None
    assert cfg.QUEUE_CAPACITY == 100
    assert cfg.ROULETTE_INTERVAL_MINUTES == 10.0
