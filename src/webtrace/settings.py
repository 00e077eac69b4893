"""
webtrace.settings

Central configuration model (Pydantic Settings).

Responsibilities:
- Provide env-driven settings for the tracing middleware and the demo service.
- Offer a cached settings instance for dependency injection.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    - Strict env-driven configuration (prefix `WEBTRACE_`)
    - Defaults safe for local dev
    - Single settings object shared by the middleware and the app factory
    """

    model_config = SettingsConfigDict(env_prefix="WEBTRACE_", case_sensitive=False)

    env: Literal["dev", "test", "prod"] = "dev"
    service_name: str = "webtrace"
    log_level: str = "INFO"

    api_host: str = "0.0.0.0"
    api_port: int = 8080

    # Tracing
    span_name_prefix: str = "http"
    # Route that plays the role of the application's dedicated error-handling component.
    error_path: str = Field(default="/error", pattern=r"^/")
    exporter: Literal["none", "console"] = "none"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


# --- Module Notes -----------------------------------------------------------
# `error_path` is read twice: by the error re-dispatch middleware (where to send the
# failed request) and by the trace middleware (does the app register that route).
