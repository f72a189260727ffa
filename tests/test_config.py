"""Tests for dm_os.config."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from dm_os.config import Settings, load_settings
from dm_os.narrator import HttpNarrator


def test_defaults_from_empty_environment():
    settings = load_settings({})
    assert settings.narrator_url == "http://localhost:11434"
    assert settings.narrator_format == "ollama"
    assert settings.port == 13013
    assert settings.data_dir == Path("data")


def test_environment_overrides():
    settings = load_settings({
        "NARRATOR_URL": "https://api.example.com",
        "NARRATOR_FORMAT": "openai",
        "NARRATOR_MODEL": "gpt-4o-mini",
        "NARRATOR_API_KEY": "sk-test",
        "NARRATOR_TIMEOUT": "30",
        "RETRY_ATTEMPTS": "5",
        "RETRY_DELAY": "0.5",
        "DATA_DIR": "/tmp/dm-os",
        "PORT": "8080",
    })
    assert settings.narrator_format == "openai"
    assert settings.narrator_timeout == 30.0
    assert settings.retry_attempts == 5
    assert settings.data_dir == Path("/tmp/dm-os")
    assert settings.port == 8080


def test_empty_values_keep_defaults():
    assert load_settings({"NARRATOR_URL": "", "PORT": ""}).port == 13013


def test_invalid_format_rejected():
    with pytest.raises(ValidationError):
        load_settings({"NARRATOR_FORMAT": "grpc"})


def test_retry_policy_from_settings():
    policy = Settings(retry_attempts=4, retry_delay=0.25).retry_policy()
    assert (policy.attempts, policy.delay) == (4, 0.25)


def test_narrator_from_settings():
    narrator = Settings(narrator_url="http://llm:11434/").narrator()
    assert isinstance(narrator, HttpNarrator)
