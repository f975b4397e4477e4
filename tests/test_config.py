"""Tests for centralized Config class."""

from pathlib import Path

import pytest

from dmplz.config import Config, Settings
from dmplz.errors import ConfigError

TELEGRAM_ENV = {
    "DMPLZ_TELEGRAM_BOT_TOKEN": "123456:ABC",
    "DMPLZ_TELEGRAM_CHAT_ID": "42",
}


def test_config_defaults():
    """Verify default configuration values."""
    settings = Config.load(TELEGRAM_ENV)

    assert settings.provider == "telegram"
    assert settings.bot_token == "123456:ABC"
    assert settings.chat_id == "42"
    assert settings.effective_permission_chat_id == "42"
    assert settings.question_timeout_ms == 180000
    assert settings.reject_reason_timeout_ms == 600000
    assert settings.reject_reason_max_chars == 300
    assert settings.reject_reason_log_rotate_bytes == 10485760
    assert settings.reject_reason_log_max_files == 10
    assert settings.no_reason_keywords == ("no_reason",)
    assert settings.cascade_window_ms == 5000
    assert settings.no_decision_behavior == "allow"
    assert settings.log_level == "INFO"
    assert settings.reject_reason_log_path == Path.home() / ".claude" / "dm-plz" / "rejections.jsonl"


def test_config_seconds_properties():
    settings = Config.load({**TELEGRAM_ENV, "DMPLZ_QUESTION_TIMEOUT_MS": "1500"})

    assert settings.question_timeout == 1.5
    assert settings.reject_reason_timeout == 600.0
    assert settings.cascade_window == 5.0


def test_config_telegram_requires_token_and_chat():
    with pytest.raises(ConfigError, match="DMPLZ_TELEGRAM_BOT_TOKEN"):
        Config.load({"DMPLZ_TELEGRAM_CHAT_ID": "42"})


def test_config_discord():
    settings = Config.load(
        {
            "DMPLZ_PROVIDER": "discord",
            "DMPLZ_DISCORD_BOT_TOKEN": "discord-token",
            "DMPLZ_DISCORD_CHANNEL_ID": "777",
            "DMPLZ_DISCORD_DM_USER_ID": "888",
            "DMPLZ_PERMISSION_CHAT_ID": "999",
        }
    )

    assert settings.provider == "discord"
    assert settings.chat_id == "777"
    assert settings.discord_dm_user_id == "888"
    assert settings.effective_permission_chat_id == "999"


def test_config_discord_requires_token_and_channel():
    with pytest.raises(ConfigError, match="DMPLZ_DISCORD_CHANNEL_ID"):
        Config.load({"DMPLZ_PROVIDER": "discord", "DMPLZ_DISCORD_BOT_TOKEN": "t"})


def test_config_unknown_provider_falls_back_to_telegram():
    settings = Config.load({**TELEGRAM_ENV, "DMPLZ_PROVIDER": "slack"})
    assert settings.provider == "telegram"


def test_config_unparseable_numbers_fall_back():
    settings = Config.load(
        {
            **TELEGRAM_ENV,
            "DMPLZ_QUESTION_TIMEOUT_MS": "soon",
            "DMPLZ_REJECT_REASON_MAX_CHARS": "",
        }
    )

    assert settings.question_timeout_ms == Config.DEFAULT_QUESTION_TIMEOUT_MS
    assert settings.reject_reason_max_chars == Config.DEFAULT_REJECT_REASON_MAX_CHARS


def test_config_keywords_parsing():
    settings = Config.load(
        {**TELEGRAM_ENV, "DMPLZ_REJECT_REASON_NO_REASON_KEYWORDS": " skip, none ,, "}
    )
    assert settings.no_reason_keywords == ("skip", "none")


def test_config_log_path_tilde_expansion(tmp_path):
    settings = Config.load({**TELEGRAM_ENV, "DMPLZ_REJECT_REASON_LOG_PATH": "~/logs/r.jsonl"})
    assert settings.reject_reason_log_path == Path.home() / "logs" / "r.jsonl"

    absolute = tmp_path / "r.jsonl"
    settings = Config.load({**TELEGRAM_ENV, "DMPLZ_REJECT_REASON_LOG_PATH": str(absolute)})
    assert settings.reject_reason_log_path == absolute


def test_config_state_dir_and_behavior():
    settings = Config.load(
        {
            **TELEGRAM_ENV,
            "DMPLZ_STATE_DIR": "/var/tmp/dmplz",
            "DMPLZ_NO_DECISION_BEHAVIOR": " DENY ",
            "DMPLZ_LOG_LEVEL": "debug",
        }
    )

    assert settings.state_dir == Path("/var/tmp/dmplz")
    assert settings.no_decision_behavior == "deny"
    assert settings.log_level == "DEBUG"


def test_config_validation_passes_for_defaults():
    assert Config.validate(Config.load(TELEGRAM_ENV)) is True


def test_config_validation_collects_errors():
    """validate() reports every problem at once."""
    settings = Settings(
        provider="telegram",
        bot_token="t",
        chat_id="1",
        question_timeout_ms=0,
        reject_reason_max_chars=-1,
        no_decision_behavior="maybe",
    )

    with pytest.raises(ConfigError) as exc_info:
        Config.validate(settings)

    message = str(exc_info.value)
    assert "DMPLZ_QUESTION_TIMEOUT_MS must be > 0" in message
    assert "DMPLZ_REJECT_REASON_MAX_CHARS must be > 0" in message
    assert "DMPLZ_NO_DECISION_BEHAVIOR must be one of" in message


def test_config_validation_allows_zero_cascade_window():
    settings = Settings(provider="telegram", bot_token="t", chat_id="1", cascade_window_ms=0)
    assert Config.validate(settings) is True
