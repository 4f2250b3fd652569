from core.config import (
    DEFAULT_CREDENTIALS_KEY,
    DEFAULT_PRESENCE_CHANNEL,
    SyncSettings,
    load_settings,
)


def test_defaults(monkeypatch):
    for name in ("CHAT_PAGE_SIZE", "FEED_RECONNECT", "CREDENTIALS_KEY", "PRESENCE_CHANNEL"):
        monkeypatch.delenv(name, raising=False)

    settings = load_settings()

    assert settings.page_size == 50
    assert settings.credentials_key == DEFAULT_CREDENTIALS_KEY
    assert settings.presence_channel == DEFAULT_PRESENCE_CHANNEL == "online-status"
    assert settings.reconnect.enabled is True
    assert settings.reconnect.max_attempts == 5


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("CHAT_PAGE_SIZE", "20")
    monkeypatch.setenv("FEED_RECONNECT", "off")
    monkeypatch.setenv("FEED_RECONNECT_BASE_DELAY", "0.5")
    monkeypatch.setenv("LOG_LEVEL", "warning")

    settings = load_settings()

    assert settings.page_size == 20
    assert settings.reconnect.enabled is False
    assert settings.reconnect.base_delay == 0.5
    assert settings.log_level == "WARNING"
    assert settings.environment == "test"


def test_settings_are_frozen():
    settings = SyncSettings()
    try:
        settings.page_size = 10
    except AttributeError:
        pass
    else:
        raise AssertionError("settings should be immutable")
