"""Tests for config.loader and config.schema."""

from pathlib import Path

import pytest

from visibility_tracker.config import load_config, load_settings
from visibility_tracker.exceptions import (
    APIKeyMissingError,
    ConfigFileNotFoundError,
    ConfigValidationError,
)

FULL_CONFIG = """
database_path: "{db}"
providers:
  - provider: chatgpt
  - provider: claude
    model_name: claude-sonnet-4-5
  - provider: gemini
    enabled: false
  - provider: perplexity
    env_api_key: PPLX_KEY
engine:
  batch_size: 3
  call_timeout_seconds: 12
quota:
  trial_prompts_per_month: 10
scheduler:
  poll_seconds: 30
notifications:
  webhook_url: "${{HOOK_URL}}"
"""


@pytest.fixture
def keys(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test-openai")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test")
    monkeypatch.setenv("PPLX_KEY", "pplx-test")
    monkeypatch.setenv("HOOK_URL", "https://hooks.example.com/tracker")


def _write(tmp_path, text):
    path = tmp_path / "tracker.config.yaml"
    path.write_text(text, encoding="utf-8")
    return path


def test_load_config_resolves_enabled_providers(tmp_path, keys):
    path = _write(tmp_path, FULL_CONFIG.format(db=tmp_path / "t.db"))

    config = load_config(path)

    assert [p.provider for p in config.providers] == ["chatgpt", "claude", "perplexity"]
    chatgpt, claude, perplexity = config.providers
    assert chatgpt.model_name == "gpt-4o-mini"
    assert chatgpt.api_key == "sk-test-openai"
    assert claude.model_name == "claude-sonnet-4-5"
    assert perplexity.model_name == "sonar"
    assert perplexity.api_key == "pplx-test"


def test_load_config_applies_sections(tmp_path, keys):
    config = load_config(_write(tmp_path, FULL_CONFIG.format(db=tmp_path / "t.db")))

    assert config.engine.batch_size == 3
    assert config.engine.call_timeout_seconds == 12
    assert config.engine.max_run_seconds == 300
    assert config.quota.trial_prompts_per_month == 10
    assert config.quota.plans == {"starter": 50, "team": 100, "professional": 300}
    assert config.scheduler.poll_seconds == 30
    assert config.scheduler.cron_secret_env == "CRON_SECRET"
    assert config.notifications.webhook_url == "https://hooks.example.com/tracker"


def test_disabled_provider_needs_no_key(tmp_path, keys, monkeypatch):
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    config = load_config(_write(tmp_path, FULL_CONFIG.format(db=tmp_path / "t.db")))
    assert "gemini" not in [p.provider for p in config.providers]


def test_missing_api_key(tmp_path, monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    path = _write(tmp_path, "providers:\n  - provider: chatgpt\n")

    with pytest.raises(APIKeyMissingError, match="OPENAI_API_KEY"):
        load_config(path)


def test_load_settings_skips_api_keys(tmp_path, monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    settings = load_settings(_write(tmp_path, "providers:\n  - provider: chatgpt\n"))
    assert settings.database_path == "./data/tracker.db"


def test_missing_file(tmp_path):
    with pytest.raises(ConfigFileNotFoundError):
        load_config(tmp_path / "nope.yaml")


def test_empty_file(tmp_path):
    with pytest.raises(ConfigValidationError, match="empty"):
        load_settings(_write(tmp_path, ""))


def test_invalid_yaml(tmp_path):
    with pytest.raises(ConfigValidationError, match="Invalid YAML"):
        load_settings(_write(tmp_path, "providers: [unclosed"))


def test_unknown_provider(tmp_path):
    with pytest.raises(ConfigValidationError, match="providers"):
        load_settings(_write(tmp_path, "providers:\n  - provider: grok\n"))


def test_duplicate_providers(tmp_path):
    text = "providers:\n  - provider: claude\n  - provider: claude\n"
    with pytest.raises(ConfigValidationError, match="Duplicate"):
        load_settings(_write(tmp_path, text))


def test_all_providers_disabled(tmp_path):
    text = "providers:\n  - provider: claude\n    enabled: false\n"
    with pytest.raises(ConfigValidationError, match="enabled"):
        load_settings(_write(tmp_path, text))


def test_invalid_batch_size(tmp_path):
    text = "providers:\n  - provider: claude\nengine:\n  batch_size: 0\n"
    with pytest.raises(ConfigValidationError, match="batch_size"):
        load_settings(_write(tmp_path, text))


def test_unset_env_reference(tmp_path, monkeypatch):
    monkeypatch.delenv("MISSING_VAR", raising=False)
    text = 'providers:\n  - provider: claude\ndatabase_path: "${MISSING_VAR}/t.db"\n'
    with pytest.raises(APIKeyMissingError, match="MISSING_VAR"):
        load_settings(_write(tmp_path, text))


def test_example_config_is_valid():
    path = Path(__file__).parent.parent / "tracker.config.example.yaml"

    settings = load_settings(path)

    assert [p.provider for p in settings.providers] == ["chatgpt", "claude", "gemini", "perplexity"]
    assert settings.notifications.webhook_url is None
