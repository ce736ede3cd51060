"""Tests for YAML settings loading with environment substitution."""
from pathlib import Path

import pytest

from config.settings import EngineConfig, WhatsAppConfig, load_settings


@pytest.fixture(autouse=True)
def _restore_cached_settings(monkeypatch):
    monkeypatch.setattr("config.settings._settings", None)


def test_defaults_when_file_missing(tmp_path):
    settings = load_settings(str(tmp_path / "missing.yaml"))
    assert settings.app_name == "FlowBot"
    assert settings.database.store_backend == "memory"
    assert settings.engine.max_hops_per_event == 50
    assert settings.engine.session_timeout_hours == 24.0


def test_yaml_with_env_substitution(tmp_path, monkeypatch):
    monkeypatch.setenv("WA_PHONE_ID", "1098765")
    monkeypatch.setenv("WA_TOKEN", "EAAG-token")
    path = tmp_path / "settings.yaml"
    path.write_text(
        "app_name: TestBot\n"
        "whatsapp:\n"
        "  phone_number_id: ${WA_PHONE_ID}\n"
        "  access_token: ${WA_TOKEN}\n"
        "  verify_token: ${WA_VERIFY_TOKEN_UNSET}\n"
        "database:\n"
        "  store_backend: sql\n"
        "engine:\n"
        "  session_timeout_hours: 2\n"
        "  max_hops_per_event: 10\n"
    )

    settings = load_settings(str(path))

    assert settings.app_name == "TestBot"
    assert settings.whatsapp.phone_number_id == "1098765"
    assert settings.whatsapp.has_credentials
    assert settings.whatsapp.verify_token == ""
    assert settings.database.store_backend == "sql"
    assert settings.engine.session_timeout_hours == 2.0
    assert settings.engine.max_hops_per_event == 10
    assert settings.engine.webhook_timeout == EngineConfig().webhook_timeout


def test_example_file_loads():
    example = Path(__file__).resolve().parent.parent / "config" / "settings.example.yaml"
    settings = load_settings(str(example))
    assert settings.engine.condition_fail_open is True


def test_unresolved_credentials_mean_test_mode():
    assert not WhatsAppConfig(phone_number_id="${WA_PHONE_ID}", access_token="${WA_TOKEN}").has_credentials


def test_database_echo_follows_debug_unless_set(tmp_path):
    path = tmp_path / "settings.yaml"
    path.write_text("debug: true\ndatabase:\n  url: sqlite:///./x.db\n  pool_size: 5\n")
    settings = load_settings(str(path))
    assert settings.database.echo is True
    assert settings.database.pool_size == 5

    path.write_text("debug: true\ndatabase:\n  echo: false\n")
    assert load_settings(str(path)).database.echo is False
