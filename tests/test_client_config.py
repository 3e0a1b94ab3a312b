"""
Unit tests for ClientConfig.from_params_or_env() resolution.

Tests:
- Defaults when nothing is configured
- Environment variable override (milliseconds converted to seconds)
- Config file reading, camelCase keys and "logrelay" section
- Explicit parameters win over everything
- Level and skip-pattern filters
- Validation of explicit values
"""

import json
import os
from pathlib import Path

import pytest

from logrelay_client.config import ClientConfig


class TestClientConfig:
    """Tests for ClientConfig source priority."""

    @pytest.fixture(autouse=True)
    def isolated(self, monkeypatch, tmp_path):
        """Run each test in an empty directory with no LOGRELAY_* variables."""
        for name in list(os.environ):
            if name.startswith("LOGRELAY_"):
                monkeypatch.delenv(name, raising=False)
        monkeypatch.chdir(tmp_path)

    def write_config_file(self, data):
        config_dir = Path("_logrelay")
        config_dir.mkdir(exist_ok=True)
        (config_dir / "config.json").write_text(json.dumps(data))

    def test_defaults_when_unconfigured(self):
        config = ClientConfig.from_params_or_env()
        assert config.endpoint == "http://localhost:42003/api/logs/batch"
        assert config.batch_size == 10
        assert config.flush_interval == 5.0
        assert config.max_retries == 3
        assert config.retry_base_delay == 1.0
        assert config.max_queue_size == 1000
        assert config.max_offline_queue_size == 100
        assert config.performance_threshold_ms == 1.0
        assert config.request_timeout == 10.0
        assert config.replay_delay == 0.1
        assert config.session_duration == 24 * 60 * 60
        assert config.max_message_length == 10_000
        assert config.enabled is True

    def test_env_vars_override_defaults(self, monkeypatch):
        monkeypatch.setenv("LOGRELAY_BATCH_SIZE", "25")
        monkeypatch.setenv("LOGRELAY_FLUSH_INTERVAL_MS", "2500")
        monkeypatch.setenv("LOGRELAY_RETRY_DELAY_MS", "250")
        monkeypatch.setenv("LOGRELAY_SERVICE_NAME", "orders-service")

        config = ClientConfig.from_params_or_env()
        assert config.batch_size == 25
        assert config.flush_interval == 2.5
        assert config.retry_base_delay == 0.25
        assert config.service_name == "orders-service"

    def test_unparseable_env_value_falls_back_to_default(self, monkeypatch):
        monkeypatch.setenv("LOGRELAY_MAX_RETRIES", "lots")
        config = ClientConfig.from_params_or_env()
        assert config.max_retries == 3

    def test_config_file_fallback(self):
        self.write_config_file({"batchSize": 7, "endpoint": "http://collector:9000/api/logs/batch"})

        config = ClientConfig.from_params_or_env()
        assert config.batch_size == 7
        assert config.endpoint == "http://collector:9000/api/logs/batch"

    def test_config_file_section(self):
        self.write_config_file({"logrelay": {"maxRetries": 5}})
        assert ClientConfig.from_params_or_env().max_retries == 5

    def test_env_var_takes_precedence_over_config_file(self, monkeypatch):
        self.write_config_file({"batchSize": 7})
        monkeypatch.setenv("LOGRELAY_BATCH_SIZE", "12")
        assert ClientConfig.from_params_or_env().batch_size == 12

    def test_explicit_param_takes_precedence(self, monkeypatch):
        self.write_config_file({"batchSize": 7})
        monkeypatch.setenv("LOGRELAY_BATCH_SIZE", "12")
        assert ClientConfig.from_params_or_env(batch_size=3).batch_size == 3

    def test_invalid_config_file_is_ignored(self):
        config_dir = Path("_logrelay")
        config_dir.mkdir()
        (config_dir / "config.json").write_text("{invalid json}")
        assert ClientConfig.from_params_or_env().batch_size == 10

    def test_enabled_flag_parsing(self, monkeypatch):
        monkeypatch.setenv("LOGRELAY_ENABLED", "off")
        assert ClientConfig.from_params_or_env().enabled is False

        monkeypatch.setenv("LOGRELAY_ENABLED", "YES")
        assert ClientConfig.from_params_or_env().enabled is True

        # Unknown values disable capture.
        monkeypatch.setenv("LOGRELAY_ENABLED", "maybe")
        assert ClientConfig.from_params_or_env().enabled is False

    def test_invalid_endpoint_is_rejected(self):
        with pytest.raises(ValueError, match="Invalid LOGRELAY_ENDPOINT"):
            ClientConfig.from_params_or_env(endpoint="ftp://example.com/logs")

    @pytest.mark.parametrize(
        "overrides",
        [
            {"batch_size": 0},
            {"max_retries": 11},
            {"max_queue_size": 5, "batch_size": 10},
            {"max_offline_queue_size": 0},
            {"request_timeout": 0},
            {"max_message_length": 50},
            {"min_level": "verbose"},
        ],
    )
    def test_out_of_range_values_are_rejected(self, overrides):
        with pytest.raises(ValueError):
            ClientConfig.from_params_or_env(**overrides)

    def test_unknown_option_is_rejected(self):
        with pytest.raises(TypeError):
            ClientConfig.from_params_or_env(batchsize=3)

    def test_filters_default_to_letting_everything_through(self):
        config = ClientConfig.from_params_or_env()
        assert config.min_level == "trace"
        assert config.skip_patterns == ()

    def test_level_and_skip_patterns_from_env(self, monkeypatch):
        monkeypatch.setenv("LOGRELAY_LEVEL", "WARNING")
        monkeypatch.setenv("LOGRELAY_SKIP_PATTERNS", "healthcheck; heartbeat,,  ")

        config = ClientConfig.from_params_or_env()
        assert config.min_level == "warn"
        assert config.skip_patterns == ("healthcheck", "heartbeat")

    def test_unknown_env_level_falls_back_to_default(self, monkeypatch):
        monkeypatch.setenv("LOGRELAY_LEVEL", "loud")
        assert ClientConfig.from_params_or_env().min_level == "trace"

    def test_skip_patterns_from_config_file_list(self):
        self.write_config_file({"logLevel": "error", "skipPatterns": ["GET /status", " ping "]})

        config = ClientConfig.from_params_or_env()
        assert config.min_level == "error"
        assert config.skip_patterns == ("GET /status", "ping")

    def test_explicit_skip_patterns_become_a_tuple(self):
        config = ClientConfig.from_params_or_env(skip_patterns=["noise"])
        assert config.skip_patterns == ("noise",)
