"""Configuration loading tests."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from task_acceptance_service.config import Settings, clear_settings_cache, get_settings

REPO_CONFIG = Path(__file__).resolve().parents[2] / "config.yaml"


def _write(tmp_path: Path, raw: dict) -> Path:
    config_path = tmp_path / "config.yaml"
    config_path.write_text(yaml.safe_dump(raw))
    return config_path


@pytest.mark.unit
def test_shipped_config_loads(monkeypatch):
    """The repository's config.yaml is complete."""
    monkeypatch.setenv("CONFIG_PATH", str(REPO_CONFIG))
    clear_settings_cache()

    settings = get_settings()

    assert isinstance(settings, Settings)
    assert settings.service.name == "task-acceptance"
    assert settings.database.retry_attempts == 3
    assert settings.tasks.min_budget == 50
    assert settings.tasks.max_budget == 5500
    assert settings.messages.max_chat_message_length == 5000


@pytest.mark.unit
def test_settings_are_cached(monkeypatch, tmp_path):
    raw = yaml.safe_load(REPO_CONFIG.read_text())
    monkeypatch.setenv("CONFIG_PATH", str(_write(tmp_path, raw)))
    clear_settings_cache()

    assert get_settings() is get_settings()


@pytest.mark.unit
def test_config_rejects_extra_fields(monkeypatch, tmp_path):
    """Extra keys raise ValidationError (extra='forbid')."""
    raw = yaml.safe_load(REPO_CONFIG.read_text())
    raw["tasks"]["max_reward"] = 10
    monkeypatch.setenv("CONFIG_PATH", str(_write(tmp_path, raw)))
    clear_settings_cache()

    with pytest.raises(ValidationError):
        get_settings()


@pytest.mark.unit
def test_config_rejects_missing_section(monkeypatch, tmp_path):
    """There are no defaults: a missing section fails startup."""
    raw = yaml.safe_load(REPO_CONFIG.read_text())
    del raw["messages"]
    monkeypatch.setenv("CONFIG_PATH", str(_write(tmp_path, raw)))
    clear_settings_cache()

    with pytest.raises(ValidationError):
        get_settings()


@pytest.mark.unit
def test_config_rejects_non_mapping(monkeypatch, tmp_path):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("- just\n- a list\n")
    monkeypatch.setenv("CONFIG_PATH", str(config_path))
    clear_settings_cache()

    with pytest.raises(ValueError, match="Invalid config file"):
        get_settings()
