import pytest

from drasil.config import DEFAULT_SUSPICIOUS_KEYWORDS, load_settings
from drasil.constants import MAX_MESSAGE_TIMEFRAME_SECONDS

from conftest import SERVER_ID


def test_load_settings_requires_token(monkeypatch):
    monkeypatch.delenv("DISCORD_TOKEN", raising=False)
    with pytest.raises(RuntimeError):
        load_settings()


def test_load_settings_reads_environment(monkeypatch):
    monkeypatch.setenv("DISCORD_TOKEN", "abc")
    monkeypatch.setenv("DEFAULT_MESSAGE_THRESHOLD", "8")
    monkeypatch.setenv("DEFAULT_SUSPICIOUS_KEYWORDS", "scam, airdrop ,")
    monkeypatch.setenv("DEFAULT_AUTO_RESTRICT", "no")
    monkeypatch.setenv("CLASSIFIER_TIMEOUT_SECONDS", "not-a-number")

    settings = load_settings()

    assert settings.token == "abc"
    assert settings.default_message_threshold == 8
    assert settings.default_suspicious_keywords == ("scam", "airdrop")
    assert settings.default_auto_restrict is False
    assert settings.classifier_timeout_seconds == 10.0


def test_defaults_without_environment(monkeypatch):
    monkeypatch.delenv("DEFAULT_SUSPICIOUS_KEYWORDS", raising=False)
    settings = load_settings(require_token=False)
    assert settings.default_suspicious_keywords == DEFAULT_SUSPICIOUS_KEYWORDS
    assert settings.recent_history_days == 7


async def test_server_rules_fall_back_to_defaults(stores, settings):
    rules = await stores.servers.get_server_config(SERVER_ID)

    assert rules.message_threshold == settings.default_message_threshold
    assert rules.timeframe_seconds == settings.default_message_timeframe_seconds
    assert rules.suspicious_keywords == settings.default_suspicious_keywords
    assert rules.min_confidence_threshold == 0
    assert rules.auto_restrict is True


async def test_server_overrides_are_applied_and_cache_invalidated(stores):
    await stores.servers.get_server_config(SERVER_ID)
    record = await stores.servers.update_settings(
        SERVER_ID,
        {"message_threshold": 3, "suspicious_keywords": "scam,phish", "unknown_key": 1},
    )
    rules = await stores.servers.get_server_config(SERVER_ID)

    assert "unknown_key" not in record.settings
    assert rules.message_threshold == 3
    assert rules.suspicious_keywords == ("scam", "phish")


async def test_invalid_overrides_use_defaults(stores, settings):
    rules = stores.servers.resolve_rules(
        SERVER_ID,
        {
            "message_threshold": -2,
            "message_timeframe": "soon",
            "min_confidence_threshold": 250,
            "auto_restrict": "yes",
        },
    )
    assert rules.message_threshold == settings.default_message_threshold
    assert rules.timeframe_seconds == settings.default_message_timeframe_seconds
    assert rules.min_confidence_threshold == settings.default_min_confidence_threshold
    assert rules.auto_restrict is settings.default_auto_restrict


async def test_timeframe_is_capped_to_tracked_window(stores):
    rules = stores.servers.resolve_rules(SERVER_ID, {"message_timeframe": 86400})
    assert rules.timeframe_seconds == MAX_MESSAGE_TIMEFRAME_SECONDS
