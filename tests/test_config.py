"""Tests for configuration loading."""

import os
from unittest.mock import patch

import pytest

from agent_operator.config import (
    DEFAULT_AGENT_IMAGE,
    DEFAULT_REQUEUE_INTERVAL_SECONDS,
    ConfigurationError,
    ObjectNames,
    OperatorConfig,
)


class TestOperatorConfig:
    """Tests for OperatorConfig class."""

    def test_defaults_are_valid(self) -> None:
        """Test that a default configuration validates."""
        config = OperatorConfig()

        assert config.requeue_interval_seconds == DEFAULT_REQUEUE_INTERVAL_SECONDS
        assert config.default_agent_image == DEFAULT_AGENT_IMAGE
        assert config.watch_namespaces == ()
        assert config.names.credential_secret == "cluster-agent-secret"

    def test_requeue_interval_bounds(self) -> None:
        """Test that an out-of-range requeue interval is rejected."""
        with pytest.raises(ConfigurationError) as exc_info:
            OperatorConfig(requeue_interval_seconds=1)

        assert "REQUEUE_INTERVAL" in str(exc_info.value)

    def test_status_timeout_bounds(self) -> None:
        """Test that an out-of-range status timeout is rejected."""
        with pytest.raises(ConfigurationError) as exc_info:
            OperatorConfig(status_timeout_seconds=120.0)

        assert "STATUS_TIMEOUT" in str(exc_info.value)

    def test_all_errors_reported_together(self) -> None:
        """Test that every validation failure is collected into one error."""
        with pytest.raises(ConfigurationError) as exc_info:
            OperatorConfig(
                requeue_interval_seconds=0,
                default_agent_image="",
                log_level="LOUD",
            )

        message = str(exc_info.value)
        assert "REQUEUE_INTERVAL" in message
        assert "DEFAULT_AGENT_IMAGE" in message
        assert "LOG_LEVEL" in message

    def test_config_is_frozen(self) -> None:
        """Test that configuration cannot be mutated after construction."""
        config = OperatorConfig()

        with pytest.raises(AttributeError):
            config.requeue_interval_seconds = 30  # type: ignore[misc]


class TestFromEnv:
    """Tests for OperatorConfig.from_env."""

    def test_from_env_reads_values(self) -> None:
        """Test loading configuration from environment variables."""
        env = {
            "WATCH_NAMESPACE": "appdynamics, monitoring ,",
            "REQUEUE_INTERVAL": "30",
            "ERROR_RETRY_DELAY": "5",
            "STATUS_TIMEOUT": "2.5",
            "DEFAULT_AGENT_IMAGE": "registry.local/cluster-agent:22.1",
            "LOG_LEVEL": "DEBUG",
            "ENABLE_JSON_LOGGING": "false",
        }
        with patch.dict(os.environ, env, clear=True):
            config = OperatorConfig.from_env()

        assert config.watch_namespaces == ("appdynamics", "monitoring")
        assert config.requeue_interval_seconds == 30
        assert config.error_retry_delay_seconds == 5
        assert config.status_timeout_seconds == 2.5
        assert config.default_agent_image == "registry.local/cluster-agent:22.1"
        assert config.log_level == "DEBUG"
        assert config.json_logging is False

    def test_from_env_defaults(self) -> None:
        """Test that an empty environment yields defaults."""
        with patch.dict(os.environ, {}, clear=True):
            config = OperatorConfig.from_env()

        assert config == OperatorConfig()

    def test_non_integer_rejected(self) -> None:
        """Test that a non-integer requeue interval raises ConfigurationError."""
        with patch.dict(os.environ, {"REQUEUE_INTERVAL": "soon"}, clear=True):
            with pytest.raises(ConfigurationError) as exc_info:
                OperatorConfig.from_env()

        assert "REQUEUE_INTERVAL" in str(exc_info.value)


class TestObjectNames:
    """Tests for canonical object names."""

    def test_collector_bundles(self) -> None:
        """Test that all four collector bundle names are listed."""
        names = ObjectNames()

        assert names.collector_bundles() == (
            "cluster-collector-config",
            "infra-agent-config",
            "container-collector-config",
            "server-collector-config",
        )
