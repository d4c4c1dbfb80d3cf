"""Pydantic models for the desired-state resources and generated configuration.

These models provide:
1. Type-safe parsing of custom resource bodies (camelCase aliases)
2. Validation at the boundary (fail fast, fail loudly)
3. The canonical ConfigSnapshot persisted inside the agent configuration bundle
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator

API_GROUP = "appdynamics.com"
API_VERSION = "v1alpha1"


class AgentFamily(str, Enum):
    """Desired-state resource families, keyed by their API plural."""

    CLUSTER_AGENT = "clusteragents"
    CLUSTER_COLLECTOR = "clustercollectors"
    INFRA_VIZ = "infravizs"

    @property
    def kind(self) -> str:
        """Kind name of the custom resource."""
        return _FAMILY_KINDS[self]

    @property
    def api_version(self) -> str:
        return f"{API_GROUP}/{API_VERSION}"


_FAMILY_KINDS: dict[AgentFamily, str] = {
    AgentFamily.CLUSTER_AGENT: "Clusteragent",
    AgentFamily.CLUSTER_COLLECTOR: "Clustercollector",
    AgentFamily.INFRA_VIZ: "InfraViz",
}


def _validate_patterns(values: list[str]) -> list[str]:
    """Reject filter entries that are not valid exact strings or patterns."""
    for value in values:
        try:
            re.compile(value)
        except re.error as e:
            raise ValueError(f"invalid filter pattern {value!r}: {e}") from e
    return values


# =============================================================================
# Shared building blocks
# =============================================================================


class ResourceRequirements(BaseModel):
    """Container resource requests and limits."""

    model_config = ConfigDict(extra="ignore")

    requests: dict[str, Any] = Field(default_factory=dict)
    limits: dict[str, Any] = Field(default_factory=dict)

    def is_empty(self) -> bool:
        return not self.requests and not self.limits

    def to_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {}
        if self.requests:
            body["requests"] = {k: str(v) for k, v in self.requests.items()}
        if self.limits:
            body["limits"] = {k: str(v) for k, v in self.limits.items()}
        return body


class EnvVar(BaseModel):
    """Environment variable override; ``valueFrom`` passes through untouched."""

    model_config = ConfigDict(extra="allow")

    name: str = Field(min_length=1)
    value: str | None = None


class AgentRequest(BaseModel):
    """Instrumentation match rule: a namespace set and its match strings."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    namespaces: list[str] = Field(default_factory=list)
    match_string: list[str] = Field(default_factory=list, alias="matchString")

    @field_validator("namespaces", "match_string")
    @classmethod
    def validate_patterns(cls, v: list[str]) -> list[str]:
        return _validate_patterns(v)


class WorkloadSpec(BaseModel):
    """Fields common to every desired-state family."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    image: str = ""
    resources: ResourceRequirements = Field(default_factory=ResourceRequirements)
    env: list[EnvVar] = Field(default_factory=list)
    args: list[str] = Field(default_factory=list)
    log_level: str = Field("", alias="logLevel")
    service_account_name: str = Field("", alias="serviceAccountName")
    node_selector: dict[str, str] = Field(default_factory=dict, alias="nodeSelector")
    tolerations: list[dict[str, Any]] = Field(default_factory=list)

    def to_annotation(self) -> dict[str, Any]:
        """Serialize the spec for the last-applied annotation."""
        return self.model_dump(mode="json", by_alias=True)


# =============================================================================
# Cluster Agent
# =============================================================================


class ClusterAgentSpec(WorkloadSpec):
    """Desired state of the cluster agent."""

    controller_url: str = Field("", alias="controllerUrl")
    account: str = ""
    global_account: str = Field("", alias="globalAccount")
    app_name: str = Field("", alias="appName")
    event_service_url: str = Field("", alias="eventServiceUrl")
    proxy_url: str = Field("", alias="proxyUrl")

    system_ssl_cert: str = Field("", alias="systemSSLCert")
    agent_ssl_cert: str = Field("", alias="agentSSLCert")
    agent_ssl_store_name: str = Field("", alias="agentSSLStoreName")
    custom_ssl_config_map: str = Field("", alias="customSSLConfigMap")

    ns_to_monitor: list[str] = Field(default_factory=list, alias="nsToMonitor")
    ns_to_monitor_exclude: list[str] = Field(default_factory=list, alias="nsToMonitorExclude")
    nodes_to_monitor: list[str] = Field(default_factory=list, alias="nodesToMonitor")
    nodes_to_monitor_exclude: list[str] = Field(
        default_factory=list, alias="nodesToMonitorExclude"
    )
    ns_to_instrument: list[str] = Field(default_factory=list, alias="nsToInstrument")
    ns_to_instrument_exclude: list[str] = Field(
        default_factory=list, alias="nsToInstrumentExclude"
    )
    instrument_rule: list[AgentRequest] = Field(default_factory=list, alias="instrumentRule")
    instrument_match_string: list[str] = Field(
        default_factory=list, alias="instrumentMatchString"
    )

    metrics_sync_interval: int = Field(0, ge=0, alias="metricsSyncInterval")
    snapshot_sync_interval: int = Field(0, ge=0, alias="snapshotSyncInterval")
    replicas: int = Field(1, ge=1)

    @field_validator(
        "ns_to_monitor",
        "ns_to_monitor_exclude",
        "nodes_to_monitor",
        "nodes_to_monitor_exclude",
        "ns_to_instrument",
        "ns_to_instrument_exclude",
        "instrument_match_string",
    )
    @classmethod
    def validate_filters(cls, v: list[str]) -> list[str]:
        return _validate_patterns(v)


# =============================================================================
# Cluster Collector (cluster collector deployment + host collector daemon)
# =============================================================================


class SystemConfigs(BaseModel):
    """Tuning of the infrastructure agent embedded in the collectors."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    collector_lib_socket_url: str = Field("", alias="collectorLibSocketUrl")
    collector_lib_port: str = Field("", alias="collectorLibPort")
    http_client_timeout: int = Field(0, ge=0, alias="httpClientTimeOut")
    http_basic_auth_enabled: bool = Field(False, alias="httpBasicAuthEnabled")
    config_change_scan_period: int = Field(0, ge=0, alias="configChangeScanPeriod")
    config_stale_grace_period: int = Field(0, ge=0, alias="configStaleGracePeriod")
    debug_port: str = Field("", alias="debugPort")
    client_lib_send_url: str = Field("", alias="clientLibSendUrl")
    client_lib_recv_url: str = Field("", alias="clientLibRecvUrl")
    log_level: str = Field("", alias="logLevel")
    debug_enabled: bool = Field(False, alias="debugEnabled")


class HostCollectorSpec(BaseModel):
    """Container and server monitor settings for the per-node collector."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    image: str = ""
    resources: ResourceRequirements = Field(default_factory=ResourceRequirements)
    container_collector_path: str = Field("", alias="containerCollectorPath")
    container_collector_dependency: str = Field("", alias="containerCollectorDependency")
    server_collector_path: str = Field("", alias="serverCollectorPath")
    server_collector_dependency: str = Field("", alias="serverCollectorDependency")
    container_metric_exporter_address: str = Field("", alias="containerMetricExporterAddress")
    log_level: str = Field("", alias="logLevel")


class ClusterCollectorSpec(WorkloadSpec):
    """Desired state of the cluster collector / host collector pair."""

    controller_url: str = Field("", alias="controllerUrl")
    account: str = ""
    access_secret: str = Field("", alias="accessSecret")
    cluster_name: str = Field("", alias="clusterName")
    ns_to_monitor_regex: str = Field("", alias="nsToMonitorRegex")
    ns_to_exclude_regex: str = Field("", alias="nsToExcludeRegex")
    cluster_mon_enabled: bool = Field(True, alias="clusterMonEnabled")
    exporter_address: str = Field("", alias="exporterAddress")
    exporter_port: int = Field(0, ge=0, le=65535, alias="exporterPort")
    system_configs: SystemConfigs = Field(default_factory=SystemConfigs, alias="systemConfigs")
    host_collector: HostCollectorSpec = Field(
        default_factory=HostCollectorSpec, alias="hostCollector"
    )

    @field_validator("ns_to_monitor_regex", "ns_to_exclude_regex")
    @classmethod
    def validate_regex(cls, v: str) -> str:
        _validate_patterns([v])
        return v


# =============================================================================
# Infrastructure visualization agent
# =============================================================================


class InfraVizSpec(WorkloadSpec):
    """Desired state of the per-node infrastructure visualization agent."""

    controller_url: str = Field("", alias="controllerUrl")
    account: str = ""
    global_account: str = Field("", alias="globalAccount")
    event_service_url: str = Field("", alias="eventServiceUrl")
    proxy_url: str = Field("", alias="proxyUrl")
    enable_container_hostid: bool = Field(True, alias="enableContainerHostId")
    enable_server_viz: bool = Field(True, alias="enableServerViz")
    enable_docker_viz: bool = Field(False, alias="enableDockerViz")
    stdout_logging: bool = Field(False, alias="stdoutLogging")


SpecT = TypeVar("SpecT", bound=WorkloadSpec)

_FAMILY_SPECS: dict[AgentFamily, type[WorkloadSpec]] = {
    AgentFamily.CLUSTER_AGENT: ClusterAgentSpec,
    AgentFamily.CLUSTER_COLLECTOR: ClusterCollectorSpec,
    AgentFamily.INFRA_VIZ: InfraVizSpec,
}


# =============================================================================
# Observed status
# =============================================================================


class AgentStatus(BaseModel):
    """State self-reported by the running agent on its /status endpoint."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    version: str = ""
    ns_to_monitor: list[str] = Field(default_factory=list, alias="nsToMonitor")
    ns_to_monitor_exclude: list[str] = Field(default_factory=list, alias="nsToMonitorExclude")
    nodes_to_monitor: list[str] = Field(default_factory=list, alias="nodesToMonitor")
    nodes_to_monitor_exclude: list[str] = Field(
        default_factory=list, alias="nodesToMonitorExclude"
    )
    ns_to_instrument: list[str] = Field(default_factory=list, alias="nsToInstrument")
    ns_to_instrument_exclude: list[str] = Field(
        default_factory=list, alias="nsToInstrumentExclude"
    )
    instrument_rule: list[AgentRequest] = Field(default_factory=list, alias="instrumentRule")
    instrument_match_string: list[str] = Field(
        default_factory=list, alias="instrumentMatchString"
    )


class DesiredStateStatus(BaseModel):
    """Status subresource of a desired-state object."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    last_update_time: str | None = Field(None, alias="lastUpdateTime")
    state: AgentStatus | None = None


# =============================================================================
# Desired state wrapper
# =============================================================================


class DesiredState(BaseModel):
    """A desired-state custom resource with its typed spec."""

    model_config = ConfigDict(populate_by_name=True)

    family: AgentFamily
    name: str
    namespace: str
    uid: str = ""
    resource_version: str = ""
    spec: WorkloadSpec
    status: DesiredStateStatus = Field(default_factory=DesiredStateStatus)
    body: dict[str, Any] = Field(default_factory=dict, repr=False)

    @classmethod
    def from_body(cls, family: AgentFamily, body: dict[str, Any]) -> DesiredState:
        """Build from a raw custom resource body.

        Raises:
            pydantic.ValidationError: If the spec or status is invalid.
        """
        metadata = body.get("metadata", {})
        spec_cls = _FAMILY_SPECS[family]
        return cls(
            family=family,
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace", ""),
            uid=metadata.get("uid", ""),
            resource_version=metadata.get("resourceVersion", ""),
            spec=spec_cls.model_validate(body.get("spec") or {}),
            status=DesiredStateStatus.model_validate(body.get("status") or {}),
            body=body,
        )

    def spec_as(self, spec_type: type[SpecT]) -> SpecT:
        """Return the spec narrowed to a family spec type.

        Raises:
            TypeError: If the spec is not a ``spec_type``.
        """
        if not isinstance(self.spec, spec_type):
            raise TypeError(
                f"{self.family.kind} {self.namespace}/{self.name} has no {spec_type.__name__}"
            )
        return self.spec

    def owner_reference(self) -> dict[str, Any]:
        """Controller owner reference for cascade delete of generated objects."""
        return {
            "apiVersion": self.family.api_version,
            "kind": self.family.kind,
            "name": self.name,
            "uid": self.uid,
            "controller": True,
            "blockOwnerDeletion": True,
        }


# =============================================================================
# Config snapshot (property bag)
# =============================================================================

DEFAULT_AGENT_SERVER_PORT = 8989


class ConfigSnapshot(BaseModel):
    """Fully resolved cluster agent configuration.

    Persisted as JSON inside the agent configuration bundle; the only durable
    copy of the previous pass's configuration.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    controller_url: str = Field("", alias="controllerUrl")
    controller_dns: str = Field("", alias="controllerDns")
    controller_port: int = Field(0, alias="controllerPort")
    ssl_enabled: bool = Field(False, alias="sslEnabled")

    account: str = ""
    global_account: str = Field("", alias="globalAccount")
    app_name: str = Field("", alias="appName")
    event_service_url: str = Field("", alias="eventServiceUrl")
    proxy_url: str = Field("", alias="proxyUrl")
    log_level: str = Field("", alias="logLevel")

    system_ssl_cert: str = Field("", alias="systemSSLCert")
    agent_ssl_cert: str = Field("", alias="agentSSLCert")
    agent_ssl_store_name: str = Field("", alias="agentSSLStoreName")

    ns_to_monitor: list[str] = Field(default_factory=list, alias="nsToMonitor")
    ns_to_monitor_exclude: list[str] = Field(default_factory=list, alias="nsToMonitorExclude")
    nodes_to_monitor: list[str] = Field(default_factory=list, alias="nodesToMonitor")
    nodes_to_monitor_exclude: list[str] = Field(
        default_factory=list, alias="nodesToMonitorExclude"
    )
    ns_to_instrument: list[str] = Field(default_factory=list, alias="nsToInstrument")
    ns_to_instrument_exclude: list[str] = Field(
        default_factory=list, alias="nsToInstrumentExclude"
    )
    instrument_rule: list[AgentRequest] = Field(default_factory=list, alias="instrumentRule")
    instrument_match_string: list[str] = Field(
        default_factory=list, alias="instrumentMatchString"
    )

    metrics_sync_interval: int = Field(0, alias="metricsSyncInterval")
    snapshot_sync_interval: int = Field(0, alias="snapshotSyncInterval")
    agent_server_port: int = Field(DEFAULT_AGENT_SERVER_PORT, alias="agentServerPort")

    secret_version: str = Field("", alias="secretVersion")
    instrumentation_updated: bool = Field(False, alias="instrumentationUpdated")

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)
