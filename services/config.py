"""Application configuration loaded from environment variables.

There is no module-level ``settings`` instance: the entry point calls
:func:`load_settings` once and passes the result down.
"""

from __future__ import annotations

from typing import Literal

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from shared.errors import ConfigurationError

_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    APP_ENV: str = "development"

    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""

    # OpenAI-compatible chat-completions endpoint
    MODEL_API_BASE: str = "https://generativelanguage.googleapis.com/v1beta/openai"
    MODEL_API_KEY: str = ""
    GENERATION_MODEL: str = "gemini-2.0-flash"
    HEALING_MODEL: str = "gemini-2.0-flash"
    MODEL_TIMEOUT: float = Field(default=120.0, gt=0)

    GITHUB_TOKEN: str = ""
    GITHUB_REPO: str = ""               # owner/name
    PUBLISH_BRANCH: str = ""            # empty → repository default branch

    SANDBOX_BACKEND: Literal["local", "docker"] = "local"
    SANDBOX_ROOT: str = ""              # empty → system temp dir
    SANDBOX_TIMEOUT: float = Field(default=25.0, gt=0)
    SANDBOX_INSTALL_TIMEOUT: float = Field(default=120.0, gt=0)
    SANDBOX_INSTALL_DEPS: bool = True
    SANDBOX_OUTPUT_LIMIT: int = Field(default=10_000, ge=100)
    SANDBOX_PYTHON_IMAGE: str = "python:3.11-slim"
    SANDBOX_NODE_IMAGE: str = "node:20-slim"
    SANDBOX_MEMORY_LIMIT: str = "512m"
    SANDBOX_CPU_LIMIT: float = Field(default=1.0, gt=0)

    MAX_HEAL_ATTEMPTS: int = Field(default=3, ge=1, le=20)
    ATTEMPT_STORE_PATH: str = ""        # empty → in-memory history

    @field_validator("LOG_LEVEL")
    @classmethod
    def _known_log_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"LOG_LEVEL must be one of {sorted(_LOG_LEVELS)}")
        return level

    @field_validator("MODEL_API_BASE")
    @classmethod
    def _http_base(cls, value: str) -> str:
        value = value.strip().rstrip("/")
        if not value.startswith(("http://", "https://")):
            raise ValueError("MODEL_API_BASE must be an http(s) URL")
        return value

    @field_validator("GITHUB_REPO")
    @classmethod
    def _owner_slash_name(cls, value: str) -> str:
        value = value.strip()
        if value and (value.count("/") != 1 or value.startswith("/") or value.endswith("/")):
            raise ValueError("GITHUB_REPO must look like 'owner/name'")
        return value

    @property
    def sandbox_images(self) -> dict[str, str]:
        return {"python": self.SANDBOX_PYTHON_IMAGE, "node": self.SANDBOX_NODE_IMAGE}


def load_settings(**overrides) -> Settings:
    """Read settings from the environment (and ``.env``), applying *overrides*.

    Raises:
        ConfigurationError: a value failed validation.
    """
    try:
        return Settings(**overrides)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        raise ConfigurationError(f"Invalid configuration: {problems}") from exc
