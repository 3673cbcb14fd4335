"""Pytest configuration for relic tests.

Keeps every test off the network, the real clock and ~/.relic.
"""

from __future__ import annotations

from pathlib import Path

import pytest

import relic.config as relic_config
from contracts.encoding import MediaInput
from relic.config import MethodConfig, OfflineQueueConfig, RelicConfig, reset_config
from tests.helpers import PNG_BYTES, FakeTransport, RecordingSleep


@pytest.fixture(autouse=True)
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    """Point the global config at a temp file and reset the singleton."""
    monkeypatch.setattr(relic_config, "CONFIG_PATH", tmp_path / "config.json")
    reset_config()
    yield
    reset_config()


@pytest.fixture
def config(tmp_path: Path) -> RelicConfig:
    """Default methods plus two generic test methods A and B."""
    cfg = RelicConfig(offline_queue=OfflineQueueConfig(path=tmp_path / "offline_queue.json"))
    cfg.methods["A"] = MethodConfig(
        base_url="https://a.example", max_attempts=2, default_format="glb"
    )
    cfg.methods["B"] = MethodConfig(
        base_url="https://b.example", max_attempts=2, default_format="glb"
    )
    return cfg


@pytest.fixture
def transport(config: RelicConfig) -> FakeTransport:
    return FakeTransport(config)


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def media() -> MediaInput:
    return MediaInput(data=PNG_BYTES, mime_type="image/png", name="capture.png")
