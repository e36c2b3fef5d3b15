"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from taskrelay.config.models import BrokerConfig, DispatcherConfig, GatewayConfig, HandlerConfig
from taskrelay.config.settings import Settings
from taskrelay.handlers.builtin import default_registry
from taskrelay.handlers.registry import HandlerRegistry
from taskrelay.tasks.store import StatusStore
from tests.fakes import FakeBroker, FakeRedis


@pytest.fixture(autouse=True)
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point config.json at an empty temp dir and drop deployment env vars."""
    config_file = tmp_path / "config.json"
    monkeypatch.setattr("taskrelay.config.settings.CONFIG_FILE", config_file)
    monkeypatch.delenv("RABBIT_URL", raising=False)
    monkeypatch.delenv("REDIS_URL", raising=False)
    return config_file


@pytest.fixture
def test_settings() -> Settings:
    """Settings tuned for fast tests (no latency, tight polling)."""
    return Settings(
        broker=BrokerConfig(connect_attempts=2, connect_delay_seconds=0),
        gateway=GatewayConfig(poll_interval_seconds=0.01, poll_timeout_seconds=2.0),
        dispatcher=DispatcherConfig(receive_timeout_seconds=0.01),
        handlers=HandlerConfig(latency_seconds=0),
    )


@pytest.fixture
def redis_client() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def store(redis_client: FakeRedis) -> StatusStore:
    return StatusStore(redis_client)


@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker()


@pytest.fixture
def registry() -> HandlerRegistry:
    return default_registry(latency=0)
