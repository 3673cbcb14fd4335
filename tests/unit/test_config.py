"""Unit tests for the relic configuration system.

Tests cover defaults, method resolution, loading missing/invalid files,
schema versions, save permissions and singleton behavior.
"""

import json

import pytest

from relic.config import (
    CONFIG_VERSION,
    MethodConfig,
    RelicConfig,
    get_config,
    load_config,
    reset_config,
    save_config,
)
from relic.errors import ConfigurationError, ErrorCode


class TestMethodConfig:
    """Tests for MethodConfig model."""

    def test_url_joins_base_and_endpoint(self):
        """The inference URL is base_url plus endpoint."""
        method = MethodConfig(base_url="https://space.example/", endpoint="/generate")
        assert method.base_url == "https://space.example"
        assert method.url == "https://space.example/generate"

    def test_default_retry_budget(self):
        """Methods default to three attempts with a 2s base delay."""
        method = MethodConfig(base_url="https://space.example")
        assert method.max_attempts == 3
        assert method.base_delay_seconds == 2.0
        assert method.rate_limit_delay_seconds == 5.0

    def test_rejects_zero_attempts(self):
        """At least one attempt is required."""
        with pytest.raises(ValueError):
            MethodConfig(base_url="https://space.example", max_attempts=0)


class TestRelicConfig:
    """Tests for RelicConfig model."""

    def test_default_methods(self):
        """Default registry covers every hosted method."""
        config = RelicConfig()
        assert set(config.methods) == {"trellis", "triposr", "deoldify", "groq-vision"}

    def test_info_card_method_uses_chat_style(self):
        """The vision model is called as a chat completion with an API key."""
        method = RelicConfig().get_method("groq-vision")
        assert method.request_style == "chat"
        assert method.api_key_env == "GROQ_API_KEY"
        assert method.system_prompt

    def test_get_method_unknown(self):
        """Unknown method names raise a ConfigurationError."""
        with pytest.raises(ConfigurationError) as exc_info:
            RelicConfig().get_method("nonexistent")
        assert exc_info.value.code == ErrorCode.CFG_UNKNOWN_METHOD
        assert "trellis" in exc_info.value.details["known_methods"]

    def test_default_progress_ranges(self):
        """Uploading spans 0-30 and processing 30-95."""
        config = RelicConfig()
        assert config.jobs.uploading_range == (0.0, 30.0)
        assert config.jobs.processing_range == (30.0, 95.0)

    def test_periodic_replay_disabled_by_default(self):
        """Replay happens on reconnect only unless an interval is set."""
        assert RelicConfig().offline_queue.replay_interval_seconds is None


class TestLoadConfig:
    """Tests for load_config."""

    def test_missing_file_returns_defaults(self, tmp_path):
        """Missing config file yields defaults."""
        config = load_config(tmp_path / "missing.json")
        assert config == RelicConfig()

    def test_invalid_json_returns_defaults(self, tmp_path):
        """Unparseable config file yields defaults."""
        path = tmp_path / "config.json"
        path.write_text("{not json")
        assert load_config(path) == RelicConfig()

    def test_invalid_values_return_defaults(self, tmp_path):
        """Values failing validation yield defaults."""
        path = tmp_path / "config.json"
        data = {"config_version": CONFIG_VERSION, "jobs": {"min_input_bytes": 0}}
        path.write_text(json.dumps(data))
        assert load_config(path).jobs.min_input_bytes == 1024

    def test_loads_custom_method(self, tmp_path):
        """Methods defined in the file are resolvable."""
        path = tmp_path / "config.json"
        path.write_text(
            json.dumps(
                {
                    "config_version": CONFIG_VERSION,
                    "methods": {"local": {"base_url": "http://localhost:7860", "max_attempts": 5}},
                }
            )
        )
        config = load_config(path)
        assert config.get_method("local").max_attempts == 5

    def test_newer_version_loads_with_warning(self, tmp_path, caplog):
        """Files from a newer schema load; unknown sections are ignored."""
        path = tmp_path / "config.json"
        path.write_text(
            json.dumps({"config_version": CONFIG_VERSION + 1, "future": {}, "jobs": {}})
        )
        config = load_config(path)
        assert config.config_version == CONFIG_VERSION + 1
        assert "newer than supported" in caplog.text

    def test_non_object_file_returns_defaults(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("[]")
        assert load_config(path) == RelicConfig()


class TestSaveConfig:
    """Tests for save_config."""

    def test_round_trip(self, tmp_path):
        """Saved config loads back equal."""
        path = tmp_path / "nested" / "config.json"
        config = RelicConfig()
        config.offline_queue.max_retries = 5
        assert save_config(config, path)
        assert load_config(path).offline_queue.max_retries == 5

    def test_owner_only_permissions(self, tmp_path):
        """Saved file is readable by the owner only."""
        path = tmp_path / "config.json"
        save_config(RelicConfig(), path)
        assert path.stat().st_mode & 0o777 == 0o600


class TestGetConfig:
    """Tests for the config singleton."""

    def test_singleton(self):
        """get_config returns the same instance until reset."""
        first = get_config()
        assert get_config() is first
        reset_config()
        assert get_config() is not first
