"""Pydantic models for configuration sub-sections."""

from __future__ import annotations

from pydantic import BaseModel, Field, model_validator

from taskrelay.config.constants import (
    BUILTIN_TASK_TYPES,
    DEAD_LETTER_EXCHANGE,
    DEAD_LETTER_QUEUE,
    DEFAULT_BROKER_URL,
    DEFAULT_HOST,
    DEFAULT_PORT,
    DEFAULT_STORE_URL,
    INTERACTIVE_TASK_TYPES,
    MAX_RETRIES,
    QUEUE_LENGTH_CHANNEL,
    TASK_KEY_PREFIX,
    TASK_UPDATES_CHANNEL,
    WORK_QUEUE,
)


class BrokerConfig(BaseModel):
    """Durable queue (RabbitMQ) settings."""

    url: str = DEFAULT_BROKER_URL
    queue: str = WORK_QUEUE
    dead_letter_exchange: str = DEAD_LETTER_EXCHANGE
    dead_letter_queue: str = DEAD_LETTER_QUEUE
    connect_attempts: int = 10
    connect_delay_seconds: float = 5.0

    @model_validator(mode="after")
    def validate_attempts(self) -> "BrokerConfig":
        if self.connect_attempts < 1:
            raise ValueError(f"connect_attempts must be >= 1, got {self.connect_attempts}")
        if self.connect_delay_seconds < 0:
            raise ValueError("connect_delay_seconds must not be negative")
        return self


class StoreConfig(BaseModel):
    """Status store and broadcast bus (Redis) settings."""

    url: str = DEFAULT_STORE_URL
    key_prefix: str = TASK_KEY_PREFIX
    updates_channel: str = TASK_UPDATES_CHANNEL
    queue_length_channel: str = QUEUE_LENGTH_CHANNEL


class GatewayConfig(BaseModel):
    """Submission gateway settings.

    ``poll_interval_seconds`` and ``poll_timeout_seconds`` bound the synchronous
    wait for interactive task types. A timeout of 0 disables waiting.
    """

    allowed_types: list[str] = Field(default_factory=lambda: list(BUILTIN_TASK_TYPES))
    interactive_types: list[str] = Field(
        default_factory=lambda: list(INTERACTIVE_TASK_TYPES)
    )
    poll_interval_seconds: float = 0.5
    poll_timeout_seconds: float = 10.0

    @model_validator(mode="after")
    def validate_polling(self) -> "GatewayConfig":
        if self.poll_interval_seconds <= 0:
            raise ValueError(
                f"poll_interval_seconds must be positive, got {self.poll_interval_seconds}"
            )
        if self.poll_timeout_seconds < 0:
            raise ValueError("poll_timeout_seconds must not be negative")
        unknown = sorted(set(self.interactive_types) - set(self.allowed_types))
        if unknown:
            raise ValueError(f"interactive_types not in allowed_types: {', '.join(unknown)}")
        return self


class DispatcherConfig(BaseModel):
    """Worker settings."""

    max_retries: int = MAX_RETRIES
    concurrency: int = 1  # dispatcher instances per worker process
    receive_timeout_seconds: float = 1.0

    @model_validator(mode="after")
    def validate_counts(self) -> "DispatcherConfig":
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {self.concurrency}")
        return self


class HandlerConfig(BaseModel):
    """Built-in handler settings."""

    latency_seconds: float = 0.5  # simulated work time


class ServerConfig(BaseModel):
    """HTTP server settings."""

    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    embedded_workers: int = 0  # dispatchers run inside the server process
