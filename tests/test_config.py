"""
Unit tests for configuration loading.
"""

import json

from warelay.config.loader import camel_to_snake, convert_keys, load_config, save_config, snake_to_camel
from warelay.config.schema import Config


def test_key_conversion():
    assert camel_to_snake("maxSessionRetries") == "max_session_retries"
    assert snake_to_camel("retry_delays") == "retryDelays"
    assert convert_keys({"selfPing": {"intervalS": 1}}) == {"self_ping": {"interval_s": 1}}


def test_missing_file_gives_defaults(tmp_path):
    config = load_config(tmp_path / "absent.json")

    assert config.reconnect.max_session_retries == 5
    assert config.reconnect.max_startup_retries == 10
    assert config.webhooks.retry_delays == [2.0, 5.0, 10.0]
    assert config.queue.pacing_delay == 0.5
    assert config.store_configured is False


def test_camel_case_file_is_loaded(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "store": {"url": "https://db.example.com", "key": "k", "sessionId": "shop"},
        "reconnect": {"baseDelay": 2, "maxDelay": 20},
        "archive": {"enabled": True, "botToken": "t", "chatId": "-100"},
    }))

    config = load_config(path)

    assert config.store.session_id == "shop"
    assert config.store_configured is True
    assert config.reconnect.base_delay == 2.0
    assert config.reconnect.max_delay == 20.0
    assert config.archive.bot_token == "t"


def test_legacy_webhook_string_is_migrated(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"n8nWebhooks": "https://a.example/hook, https://b.example/hook,"}))

    config = load_config(path)

    assert config.webhooks.urls == ["https://a.example/hook", "https://b.example/hook"]


def test_corrupt_file_falls_back_to_defaults(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{not json")

    config = load_config(path)

    assert config.store.session_id == "default"


def test_save_writes_camel_case(tmp_path):
    path = tmp_path / "nested" / "config.json"
    config = Config()
    config.store.session_id = "shop"

    save_config(config, path)

    data = json.loads(path.read_text())
    assert data["store"]["sessionId"] == "shop"
    assert "selfPing" in data
    assert load_config(path).store.session_id == "shop"


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("WARELAY_STORE__SESSION_ID", "from-env")

    config = Config()

    assert config.store.session_id == "from-env"


def test_non_object_file_falls_back_to_defaults(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("[1, 2, 3]")

    assert load_config(path).webhooks.urls == []
