"""Flat configuration documents for the collector family.

Each collector reads a line-oriented ``key: value`` file at process start.
One desired-state object produces four of them:

- cluster monitor (cluster collector deployment)
- infrastructure agent (shared by both collector workloads)
- container monitor (host collector daemon)
- server monitor (host collector daemon)

Defaults are applied to the spec first, so an unset field never reaches a
rendered file as an empty value.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import yaml

from .config import ObjectNames
from .endpoint import parse_endpoint
from .models import ClusterCollectorSpec

CLUSTER_MONITOR_NAME = "Cluster Monitor"
INFRA_AGENT_NAME = "Infra Structure Agent"
CONTAINER_MONITOR_NAME = "Container Monitor"
SERVER_MONITOR_NAME = "Server Monitor"
COLLECTOR_TYPE = "Collector"
CLUSTER_COLLECTOR_PATH = "./collectors/cluster-collector-linux-amd64"

# File names inside each bundle
CLUSTER_MONITOR_FILE = "clustermon.conf"
INFRA_AGENT_FILE = "infra-agent.conf"
CONTAINER_MONITOR_FILE = "containermon.conf"
SERVER_MONITOR_FILE = "servermon.conf"

# Mount locations inside the collector containers
COLLECTOR_HOME = "/opt/appdynamics/collectors"
INFRA_AGENT_HOME = "/opt/appdynamics/infra-agent"

COLLECTOR_DEFAULTS: dict[str, Any] = {
    "cluster_name": "k8s-cluster",
    "ns_to_monitor_regex": ".*",
    "ns_to_exclude_regex": "^kube-.*",
    "log_level": "info",
    "exporter_address": "127.0.0.1",
    "exporter_port": 9100,
}

SYSTEM_CONFIG_DEFAULTS: dict[str, Any] = {
    "collector_lib_socket_url": "tcp://127.0.0.1:5555",
    "collector_lib_port": "5555",
    "http_client_timeout": 30,
    "config_change_scan_period": 10,
    "config_stale_grace_period": 300,
    "debug_port": "8090",
    "client_lib_send_url": "tcp://127.0.0.1:5556",
    "client_lib_recv_url": "tcp://127.0.0.1:5557",
    "log_level": "info",
}

HOST_COLLECTOR_DEFAULTS: dict[str, Any] = {
    "container_collector_path": "./collectors/container-monitor-linux-amd64",
    "container_collector_dependency": "cadvisor",
    "server_collector_path": "./collectors/server-monitor-linux-amd64",
    "server_collector_dependency": "node-exporter",
    "container_metric_exporter_address": "http://127.0.0.1:8080",
    "log_level": "info",
}


def _fill(model: Any, defaults: dict[str, Any]) -> dict[str, Any]:
    return {
        name: default
        for name, default in defaults.items()
        if getattr(model, name) in ("", 0, None)
    }


def with_defaults(spec: ClusterCollectorSpec) -> ClusterCollectorSpec:
    """Return a copy of the spec with every unset field defaulted."""
    return spec.model_copy(
        update={
            **_fill(spec, COLLECTOR_DEFAULTS),
            "system_configs": spec.system_configs.model_copy(
                update=_fill(spec.system_configs, SYSTEM_CONFIG_DEFAULTS)
            ),
            "host_collector": spec.host_collector.model_copy(
                update=_fill(spec.host_collector, HOST_COLLECTOR_DEFAULTS)
            ),
        }
    )


def image_version(image: str) -> str:
    """Tag of an image reference, ``latest`` when untagged."""
    name = image.rsplit("/", 1)[-1]
    if ":" not in name:
        return "latest"
    return name.split(":", 1)[1]


def render(document: dict[str, Any]) -> str:
    """Render a flat document as ``key: value`` lines, preserving key order."""
    return yaml.safe_dump(document, sort_keys=False, default_flow_style=False)


@dataclass(frozen=True)
class RenderedBundle:
    """One generated configuration bundle: object name, file key, text."""

    name: str
    key: str
    text: str


def cluster_monitor_document(spec: ClusterCollectorSpec, image: str) -> dict[str, Any]:
    return {
        "name": CLUSTER_MONITOR_NAME,
        "type": COLLECTOR_TYPE,
        "version": image_version(image),
        "clusterName": spec.cluster_name,
        "nsToMonitor": spec.ns_to_monitor_regex,
        "nsToExclude": spec.ns_to_exclude_regex,
        "clusterMonitoringEnabled": spec.cluster_mon_enabled,
        "log-level": spec.log_level,
        "path": CLUSTER_COLLECTOR_PATH,
        "enabled": True,
        "exporter-address": spec.exporter_address,
        "exporter-port": spec.exporter_port,
    }


def infra_agent_document(spec: ClusterCollectorSpec) -> dict[str, Any]:
    """Infrastructure agent settings.

    Raises:
        MalformedEndpointError: If the controller URL cannot be parsed.
    """
    endpoint = parse_endpoint(spec.controller_url)
    system = spec.system_configs
    return {
        "name": INFRA_AGENT_NAME,
        "controller-host": endpoint.host,
        "controller-port": endpoint.port,
        "controller-account-name": spec.account,
        "controller-ssl-enabled": endpoint.ssl_enabled,
        "enabled": True,
        "controller-access-key": spec.access_secret,
        "controller-lib-socket-url": system.collector_lib_socket_url,
        "collector-lib-port": system.collector_lib_port,
        "http-client-timeout": system.http_client_timeout,
        "http-client-basic-auth-enabled": system.http_basic_auth_enabled,
        "configuration-change-scan-period": system.config_change_scan_period,
        "configuration-stale-grace-period": system.config_stale_grace_period,
        "debug-port": system.debug_port,
        "client-lib-send-url": system.client_lib_send_url,
        "client-lib-recv-url": system.client_lib_recv_url,
        "log-level": system.log_level,
        "debug-enabled": system.debug_enabled,
    }


def _host_monitor_document(
    spec: ClusterCollectorSpec, name: str, path: str, dependency: str, image: str
) -> dict[str, Any]:
    host = spec.host_collector
    exporter = parse_endpoint(host.container_metric_exporter_address)
    return {
        "name": name,
        "type": COLLECTOR_TYPE,
        "version": image_version(image),
        "path": path,
        "enabled": True,
        "exporter-address": exporter.host,
        "exporter-port": exporter.port,
        "privileged": False,
        "dependency": dependency,
        "install-dependency": True,
        "log-level": host.log_level,
    }


def render_collector_bundles(
    spec: ClusterCollectorSpec, image: str, names: ObjectNames
) -> list[RenderedBundle]:
    """Render all four collector bundles for a defaulted spec.

    Args:
        spec: Collector spec with defaults already applied (see with_defaults).
        image: Resolved collector image; its tag becomes the version field.
        names: Canonical bundle names.

    Raises:
        MalformedEndpointError: If the controller or exporter URL is unusable.
    """
    host = spec.host_collector
    return [
        RenderedBundle(
            names.cluster_monitor_config,
            CLUSTER_MONITOR_FILE,
            render(cluster_monitor_document(spec, image)),
        ),
        RenderedBundle(names.infra_agent_config, INFRA_AGENT_FILE, render(infra_agent_document(spec))),
        RenderedBundle(
            names.container_monitor_config,
            CONTAINER_MONITOR_FILE,
            render(
                _host_monitor_document(
                    spec,
                    CONTAINER_MONITOR_NAME,
                    host.container_collector_path,
                    host.container_collector_dependency,
                    image,
                )
            ),
        ),
        RenderedBundle(
            names.server_monitor_config,
            SERVER_MONITOR_FILE,
            render(
                _host_monitor_document(
                    spec,
                    SERVER_MONITOR_NAME,
                    host.server_collector_path,
                    host.server_collector_dependency,
                    image,
                )
            ),
        ),
    ]
