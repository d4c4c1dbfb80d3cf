"""Configuration management with validation.

All operator-wide settings live in one explicit configuration object that is
passed to every component at construction time. Nothing is looked up from
package-level globals during a reconciliation pass.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_REQUEUE_INTERVAL_SECONDS = 60
MIN_REQUEUE_INTERVAL_SECONDS = 5
MAX_REQUEUE_INTERVAL_SECONDS = 3600

DEFAULT_ERROR_RETRY_DELAY_SECONDS = 10

DEFAULT_STATUS_TIMEOUT_SECONDS = 5.0
MIN_STATUS_TIMEOUT_SECONDS = 1.0
MAX_STATUS_TIMEOUT_SECONDS = 60.0

# Published images used when the desired state leaves the image unset
DEFAULT_AGENT_IMAGE = "docker.io/appdynamics/cluster-agent:latest"
DEFAULT_COLLECTOR_IMAGE = "docker.io/appdynamics/cluster-collector:latest"
DEFAULT_INFRAVIZ_IMAGE = "docker.io/appdynamics/machine-agent-analytics:latest"

DEFAULT_SERVICE_ACCOUNT = "appdynamics-operator"

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class ObjectNames:
    """Canonical names of the generated singleton objects.

    Only one agent family instance per namespace is supported, so every
    DesiredState in a namespace shares these objects on purpose.
    """

    credential_secret: str = "cluster-agent-secret"
    agent_config: str = "cluster-agent-config"
    agent_config_key: str = "cluster-agent-config.json"
    trust_bundle: str = "appd-agent-ssl-store"
    default_ssl_config: str = "cluster-agent-ssl-config"
    cluster_monitor_config: str = "cluster-collector-config"
    infra_agent_config: str = "infra-agent-config"
    container_monitor_config: str = "container-collector-config"
    server_monitor_config: str = "server-collector-config"

    def collector_bundles(self) -> tuple[str, ...]:
        """Names of all bundles generated for the collector family."""
        return (
            self.cluster_monitor_config,
            self.infra_agent_config,
            self.container_monitor_config,
            self.server_monitor_config,
        )


@dataclass(frozen=True)
class OperatorConfig:
    """Operator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-reconcile.
    """

    watch_namespaces: tuple[str, ...] = ()

    # Timing
    requeue_interval_seconds: int = DEFAULT_REQUEUE_INTERVAL_SECONDS
    error_retry_delay_seconds: int = DEFAULT_ERROR_RETRY_DELAY_SECONDS
    status_timeout_seconds: float = DEFAULT_STATUS_TIMEOUT_SECONDS

    # Placeholder images
    default_agent_image: str = DEFAULT_AGENT_IMAGE
    default_collector_image: str = DEFAULT_COLLECTOR_IMAGE
    default_infraviz_image: str = DEFAULT_INFRAVIZ_IMAGE

    service_account_name: str = DEFAULT_SERVICE_ACCOUNT

    # Logging
    log_level: str = "INFO"
    json_logging: bool = True

    names: ObjectNames = field(default_factory=ObjectNames)

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not (
            MIN_REQUEUE_INTERVAL_SECONDS
            <= self.requeue_interval_seconds
            <= MAX_REQUEUE_INTERVAL_SECONDS
        ):
            errors.append(
                f"REQUEUE_INTERVAL must be between {MIN_REQUEUE_INTERVAL_SECONDS} "
                f"and {MAX_REQUEUE_INTERVAL_SECONDS} seconds"
            )

        if self.error_retry_delay_seconds < 1:
            errors.append("ERROR_RETRY_DELAY must be at least 1 second")

        if not (
            MIN_STATUS_TIMEOUT_SECONDS
            <= self.status_timeout_seconds
            <= MAX_STATUS_TIMEOUT_SECONDS
        ):
            errors.append(
                f"STATUS_TIMEOUT must be between {MIN_STATUS_TIMEOUT_SECONDS:g} "
                f"and {MAX_STATUS_TIMEOUT_SECONDS:g} seconds"
            )

        for key, image in (
            ("DEFAULT_AGENT_IMAGE", self.default_agent_image),
            ("DEFAULT_COLLECTOR_IMAGE", self.default_collector_image),
            ("DEFAULT_INFRAVIZ_IMAGE", self.default_infraviz_image),
        ):
            if not image:
                errors.append(f"{key} must not be empty")

        if not self.service_account_name:
            errors.append("OPERATOR_SERVICE_ACCOUNT must not be empty")

        if self.log_level.upper() not in VALID_LOG_LEVELS:
            errors.append(f"LOG_LEVEL must be one of {list(VALID_LOG_LEVELS)}: {self.log_level}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> OperatorConfig:
        """Load configuration from environment variables.

        Environment Variables:
            WATCH_NAMESPACE: Comma-separated namespaces to watch (default: all)
            REQUEUE_INTERVAL: Fixed requeue delay in seconds (default: 60)
            ERROR_RETRY_DELAY: Delay before retrying a failed pass (default: 10)
            STATUS_TIMEOUT: Agent status request budget in seconds (default: 5)
            DEFAULT_AGENT_IMAGE: Cluster agent image when unset in the resource
            DEFAULT_COLLECTOR_IMAGE: Collector image when unset in the resource
            DEFAULT_INFRAVIZ_IMAGE: Infrastructure agent image when unset
            OPERATOR_SERVICE_ACCOUNT: Service account for generated pods
            LOG_LEVEL: Root log level (default: INFO)
            ENABLE_JSON_LOGGING: Emit JSON logs to stdout (default: true)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        namespaces = tuple(
            ns.strip() for ns in os.environ.get("WATCH_NAMESPACE", "").split(",") if ns.strip()
        )

        return cls(
            watch_namespaces=namespaces,
            requeue_interval_seconds=get_int("REQUEUE_INTERVAL", DEFAULT_REQUEUE_INTERVAL_SECONDS),
            error_retry_delay_seconds=get_int(
                "ERROR_RETRY_DELAY", DEFAULT_ERROR_RETRY_DELAY_SECONDS
            ),
            status_timeout_seconds=get_float("STATUS_TIMEOUT", DEFAULT_STATUS_TIMEOUT_SECONDS),
            default_agent_image=os.environ.get("DEFAULT_AGENT_IMAGE", DEFAULT_AGENT_IMAGE),
            default_collector_image=os.environ.get(
                "DEFAULT_COLLECTOR_IMAGE", DEFAULT_COLLECTOR_IMAGE
            ),
            default_infraviz_image=os.environ.get("DEFAULT_INFRAVIZ_IMAGE", DEFAULT_INFRAVIZ_IMAGE),
            service_account_name=os.environ.get("OPERATOR_SERVICE_ACCOUNT", DEFAULT_SERVICE_ACCOUNT),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
            json_logging=get_bool("ENABLE_JSON_LOGGING", True),
        )
