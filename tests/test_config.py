import os
from unittest import mock

from alert_supervisor import config
from alert_supervisor.secret_store import SecretStore


def test_settings_defaults():
    # Mock environment to be empty
    with mock.patch.dict(os.environ, {}, clear=True):
        settings = config._read_settings()
        assert settings.RULES_FILE == "/etc/alert-supervisor/rules.yml"
        assert settings.EVAL_INTERVAL_S == 15.0
        assert settings.SCRAPE_TARGETS == []
        assert settings.DELIVERY_MAX_ATTEMPTS == 5
        assert settings.STATE_FILE is None
        assert settings.SELF_METRICS is True


def test_settings_custom():
    env = {
        "RULES_FILE": "/tmp/rules.yml",
        "EVAL_INTERVAL_S": "5",
        "SCRAPE_TARGETS": "http://api:9100/metrics, http://db:9187/metrics",
        "DELIVERY_WORKERS": "8",
        "SELF_METRICS": "no",
    }
    with mock.patch.dict(os.environ, env, clear=True):
        settings = config._read_settings()
        assert settings.RULES_FILE == "/tmp/rules.yml"
        assert settings.EVAL_INTERVAL_S == 5.0
        assert settings.SCRAPE_TARGETS == ["http://api:9100/metrics", "http://db:9187/metrics"]
        assert settings.DELIVERY_WORKERS == 8
        assert settings.SELF_METRICS is False


def test_invalid_numbers_fall_back_to_defaults():
    env = {"EVAL_INTERVAL_S": "fast", "DELIVERY_WORKERS": "0", "DELIVERY_BACKOFF_BASE_S": "-1"}
    with mock.patch.dict(os.environ, env, clear=True):
        settings = config._read_settings()
        assert settings.EVAL_INTERVAL_S == 15.0
        assert settings.DELIVERY_WORKERS == 4
        assert settings.DELIVERY_BACKOFF_BASE_S == 2.0


def test_secret_store_env_then_file(tmp_path):
    (tmp_path / "PAGER_KEY").write_text("from-file\n", encoding="utf-8")
    (tmp_path / "CHAT_URL").write_text("file-url", encoding="utf-8")
    secrets = SecretStore(tmp_path, environ={"CHAT_URL": "env-url"})

    assert secrets.get("CHAT_URL") == "env-url"
    assert secrets.get("PAGER_KEY") == "from-file"
    assert secrets.get("MISSING") is None
    assert secrets.get("../etc/passwd") is None
