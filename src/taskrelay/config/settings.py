"""Central settings — loads from ~/.taskrelay/config.json + environment variables."""

from __future__ import annotations

import json
import os
from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from taskrelay.config.constants import CONFIG_FILE, TASKRELAY_HOME
from taskrelay.config.models import (
    BrokerConfig,
    DispatcherConfig,
    GatewayConfig,
    HandlerConfig,
    ServerConfig,
    StoreConfig,
)

# Deployment variables shared with the docker-compose setup
_URL_ENV_MAP = {
    "RABBIT_URL": "broker",
    "REDIS_URL": "store",
}


class Settings(BaseSettings):
    """All taskrelay configuration in one place.

    Priority (highest → lowest):
      1. Environment variables (TASKRELAY_ prefix, ``__`` for nesting)
      2. .env file
      3. ~/.taskrelay/config.json
      4. RABBIT_URL / REDIS_URL, for a section that sets no ``url`` above
      5. Defaults defined here
    """

    model_config = SettingsConfigDict(
        env_prefix="TASKRELAY_",
        env_nested_delimiter="__",
        env_file=(".env", str(TASKRELAY_HOME / ".env")),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- Sub-configs ---
    broker: BrokerConfig = Field(default_factory=BrokerConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    dispatcher: DispatcherConfig = Field(default_factory=DispatcherConfig)
    handlers: HandlerConfig = Field(default_factory=HandlerConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    # --- Top-level settings ---
    log_level: str = "INFO"

    @model_validator(mode="before")
    @classmethod
    def load_config_file(cls, values: dict) -> dict:
        """Merge config.json values as defaults (env vars still override)."""
        if CONFIG_FILE.exists():
            try:
                file_data = json.loads(CONFIG_FILE.read_text(encoding="utf-8"))
                merged = {**file_data, **{k: v for k, v in values.items() if v is not None}}
                values = merged
            except (json.JSONDecodeError, OSError):
                pass

        cls._apply_env_to_urls(values)
        return values

    @classmethod
    def _apply_env_to_urls(cls, values: dict) -> None:
        """Map flat RABBIT_URL/REDIS_URL env vars into the broker/store sub-configs.

        An explicit nested ``url`` (e.g. TASKRELAY_BROKER__URL) wins.
        """
        for env_key, section in _URL_ENV_MAP.items():
            val = os.environ.get(env_key)
            if not val:
                continue
            sub = values.get(section, {})
            if not isinstance(sub, dict):
                continue
            sub.setdefault("url", val)
            values[section] = sub


@lru_cache
def get_settings() -> Settings:
    """Singleton settings instance."""
    return Settings()
