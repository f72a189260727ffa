"""Runtime configuration read from the environment (and .env via python-dotenv)."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

from pydantic import BaseModel

from dm_os.narrator import HttpNarrator
from dm_os.retry import RetryPolicy


class Settings(BaseModel):
    narrator_url: str = "http://localhost:11434"
    narrator_format: Literal["ollama", "openai"] = "ollama"
    narrator_model: str = ""
    narrator_api_key: str = ""
    narrator_timeout: float = 120.0
    retry_attempts: int = 3
    retry_delay: float = 1.0
    data_dir: Path = Path("data")
    host: str = "0.0.0.0"
    port: int = 13013

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(attempts=self.retry_attempts, delay=self.retry_delay)

    def narrator(self) -> HttpNarrator:
        return HttpNarrator(
            self.narrator_url,
            api_key=self.narrator_api_key,
            provider_format=self.narrator_format,
            model=self.narrator_model,
            timeout=self.narrator_timeout,
        )


_ENV_KEYS = {
    "narrator_url": "NARRATOR_URL",
    "narrator_format": "NARRATOR_FORMAT",
    "narrator_model": "NARRATOR_MODEL",
    "narrator_api_key": "NARRATOR_API_KEY",
    "narrator_timeout": "NARRATOR_TIMEOUT",
    "retry_attempts": "RETRY_ATTEMPTS",
    "retry_delay": "RETRY_DELAY",
    "data_dir": "DATA_DIR",
    "host": "HOST",
    "port": "PORT",
}


def load_settings(environ: dict[str, str] | None = None) -> Settings:
    """Build Settings from environment variables; unset ones keep defaults.

    Raises pydantic.ValidationError when a variable holds an unusable value
    (e.g. NARRATOR_FORMAT=grpc).
    """
    env = os.environ if environ is None else environ
    values = {field: env[key] for field, key in _ENV_KEYS.items() if env.get(key)}
    return Settings.model_validate(values)
