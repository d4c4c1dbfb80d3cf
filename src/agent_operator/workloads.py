"""Workload objects: construction, lifecycle operations and forced restart.

Two workload shapes are managed through one interface:

- ScaledWorkload: a Deployment (self-healing, scaled process group)
- NodeWorkload: a DaemonSet (one process per eligible node)

Both expose init/create/update/get/restart_one so the lifecycle driver in
reconciler.py sequences drift handling once for every family. The only
differences are the object kind and how a pod is picked for forced restart.

LAST-APPLIED ANNOTATION:
Live objects come back from the API server normalized and defaulted, so they
are not a reliable diff source. Every write stores the desired spec that was
applied (plus the credential revision it was applied with) in the
``appdynamics.com/last-applied-desired-state`` annotation on the workload.
The next pass diffs against that annotation, never against live fields.
"""

from __future__ import annotations

import copy
import functools
import json
import logging
import random
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kubernetes import client

from .cluster import ClusterClient, ClusterKind, NotFoundError, update_with_retry
from .collector_config import (
    CLUSTER_MONITOR_FILE,
    COLLECTOR_HOME,
    CONTAINER_MONITOR_FILE,
    INFRA_AGENT_FILE,
    INFRA_AGENT_HOME,
    SERVER_MONITOR_FILE,
)
from .config import OperatorConfig
from .endpoint import parse_endpoint
from .models import (
    ClusterAgentSpec,
    ClusterCollectorSpec,
    ConfigSnapshot,
    DesiredState,
    EnvVar,
    InfraVizSpec,
    WorkloadSpec,
)

logger = logging.getLogger(__name__)

LAST_APPLIED_ANNOTATION = "appdynamics.com/last-applied-desired-state"
# Last managed-workload change seen for the owner; writing it wakes the owner
WORKLOAD_EVENT_ANNOTATION = "appdynamics.com/workload-event"

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY = "agent-operator"
COMPONENT_LABEL = "app.kubernetes.io/name"
INSTANCE_LABEL = "app.kubernetes.io/instance"
FAMILY_LABEL = "appdynamics.com/family"

CLUSTER_AGENT_COMPONENT = "cluster-agent"
CLUSTER_COLLECTOR_COMPONENT = "cluster-collector"
HOST_COLLECTOR_COMPONENT = "host-collector"
INFRAVIZ_COMPONENT = "infraviz"

HOST_COLLECTOR_SUFFIX = "-hostcollector"

AGENT_CONFIG_MOUNT = "/opt/appdynamics/config/"
AGENT_SSL_MOUNT = "/opt/appdynamics/ssl"
AGENT_SSL_STORE_MOUNT = "/opt/appdynamics/ssl-store"

# Credential object keys and the agent environment variables they feed
API_USER_KEY = "api-user"
CONTROLLER_KEY = "controller-key"
EVENT_KEY = "event-key"
CREDENTIAL_KEYS: tuple[str, ...] = (API_USER_KEY, CONTROLLER_KEY, EVENT_KEY)


class RestartError(Exception):
    """Raised when a workload has no running instance to restart."""

    pass


# =============================================================================
# Last-applied annotation
# =============================================================================


@dataclass(frozen=True)
class LastApplied:
    """Desired spec and credential revision most recently applied to a workload."""

    spec: dict[str, Any]
    credential_revision: str | None = None

    def to_annotation(self) -> str:
        return json.dumps(
            {"spec": self.spec, "credentialRevision": self.credential_revision},
            sort_keys=True,
        )

    @classmethod
    def from_workload(cls, workload: dict[str, Any]) -> LastApplied | None:
        """Read the annotation from a workload body, None when absent or unreadable."""
        annotations = workload.get("metadata", {}).get("annotations") or {}
        raw = annotations.get(LAST_APPLIED_ANNOTATION)
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(
                "Ignoring unreadable last-applied annotation",
                extra={"workload": workload.get("metadata", {}).get("name")},
            )
            return None
        if not isinstance(data, dict) or not isinstance(data.get("spec"), dict):
            return None
        return cls(spec=data["spec"], credential_revision=data.get("credentialRevision"))


def record_last_applied(
    body: dict[str, Any], spec: WorkloadSpec, credential_revision: str | None
) -> None:
    """Store the applied desired spec on a workload body."""
    annotations = body.setdefault("metadata", {}).setdefault("annotations", None) or {}
    annotations[LAST_APPLIED_ANNOTATION] = LastApplied(
        spec=spec.to_annotation(), credential_revision=credential_revision
    ).to_annotation()
    body["metadata"]["annotations"] = annotations


def sync_from_template(live: dict[str, Any], template: dict[str, Any]) -> None:
    """Copy the mutable fields of a freshly built workload onto the live object.

    The pod template, replica count and the last-applied annotation are taken
    from the template; identity, resourceVersion and status stay untouched.
    """
    live_spec = live.setdefault("spec", {})
    live_spec["template"] = copy.deepcopy(template["spec"]["template"])
    if "replicas" in template["spec"]:
        live_spec["replicas"] = template["spec"]["replicas"]

    template_annotations = template["metadata"].get("annotations") or {}
    live_annotations = live.setdefault("metadata", {}).get("annotations") or {}
    live_annotations.update(template_annotations)
    live["metadata"]["annotations"] = live_annotations


# =============================================================================
# Workload interface and the two shapes
# =============================================================================


class ManagedWorkload(ABC):
    """A workload object the lifecycle driver can create, update and restart."""

    kind: ClusterKind

    def __init__(
        self,
        cluster: ClusterClient,
        namespace: str,
        name: str,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
    ) -> None:
        self._cluster = cluster
        self.namespace = namespace
        self.name = name
        self._live: dict[str, Any] | None = None
        self._logger = logger or logging.getLogger(__name__)

    @property
    def selector(self) -> dict[str, str]:
        """Pod selector of the live object."""
        if self._live is None:
            raise RuntimeError(f"{self.kind.value} {self.name} is not initialised")
        return self._live["spec"]["selector"]["matchLabels"]

    def init(self) -> bool:
        """Fetch the live object.

        Returns:
            True when the workload does not exist yet and must be created.
        """
        try:
            self._live = self._cluster.get(self.kind, self.namespace, self.name)
        except NotFoundError:
            self._live = None
            return True
        return False

    def get(self) -> dict[str, Any] | None:
        """The live object as of the last init/create/update."""
        return self._live

    def create(self, template: dict[str, Any]) -> dict[str, Any]:
        self._logger.info(
            "Creating workload",
            extra={"kind": self.kind.value, "workload": self.name},
        )
        self._live = self._cluster.create(self.kind, template)
        return self._live

    def update(
        self,
        template: dict[str, Any],
        mutate: Callable[[dict[str, Any]], None] | None = None,
    ) -> dict[str, Any]:
        """Sync the live object with a freshly built template and replace it.

        Args:
            template: Object built from the current desired state.
            mutate: Optional extra mutation applied after the template sync.
        """
        if self._live is None:
            raise RuntimeError(f"{self.kind.value} {self.name} must be initialised before update")

        def apply(body: dict[str, Any]) -> None:
            sync_from_template(body, template)
            if mutate is not None:
                mutate(body)

        self._logger.info(
            "Updating workload",
            extra={"kind": self.kind.value, "workload": self.name},
        )
        self._live = update_with_retry(self._cluster, self.kind, self._live, apply)
        return self._live

    def restart_one(self) -> str:
        """Delete one running instance; the platform controller recreates it.

        Returns:
            Name of the deleted pod.

        Raises:
            RestartError: If no running pod matches the workload selector.
        """
        pods = [
            pod
            for pod in self._cluster.list(ClusterKind.POD, self.namespace, self.selector)
            if not pod.get("metadata", {}).get("deletionTimestamp")
        ]
        if not pods:
            raise RestartError(f"No running pod found for {self.kind.value} {self.name}")
        pod = self._choose_pod(pods)
        pod_name = pod["metadata"]["name"]
        self._cluster.delete(ClusterKind.POD, self.namespace, pod_name)
        self._logger.info(
            "Deleted pod to force restart",
            extra={"kind": self.kind.value, "workload": self.name, "pod": pod_name},
        )
        return pod_name

    @abstractmethod
    def _choose_pod(self, pods: list[dict[str, Any]]) -> dict[str, Any]:
        """Pick the pod to delete among the running instances."""


class ScaledWorkload(ManagedWorkload):
    """Deployment-backed workload."""

    kind = ClusterKind.DEPLOYMENT

    def _choose_pod(self, pods: list[dict[str, Any]]) -> dict[str, Any]:
        # Oldest instance first; it has been running with the stale config longest
        return min(
            pods,
            key=lambda pod: (
                pod["metadata"].get("creationTimestamp") or "",
                pod["metadata"]["name"],
            ),
        )


class NodeWorkload(ManagedWorkload):
    """DaemonSet-backed workload."""

    kind = ClusterKind.DAEMON_SET

    def _choose_pod(self, pods: list[dict[str, Any]]) -> dict[str, Any]:
        return random.choice(pods)


# =============================================================================
# Templates
# =============================================================================

@functools.cache
def _serializer() -> client.ApiClient:
    return client.ApiClient()


def _to_body(model: Any) -> dict[str, Any]:
    """Convert a kubernetes model into a camelCase API body."""
    return _serializer().sanitize_for_serialization(model)


def workload_labels(desired: DesiredState, component: str) -> dict[str, str]:
    """Selector labels shared by a workload, its pods and its service."""
    return {
        COMPONENT_LABEL: component,
        INSTANCE_LABEL: desired.name,
        MANAGED_BY_LABEL: MANAGED_BY,
        FAMILY_LABEL: desired.family.value,
    }


def _secret_env(name: str, secret_name: str, key: str) -> client.V1EnvVar:
    return client.V1EnvVar(
        name=name,
        value_from=client.V1EnvVarSource(
            secret_key_ref=client.V1SecretKeySelector(name=secret_name, key=key)
        ),
    )


def _field_env(name: str, field_path: str) -> client.V1EnvVar:
    return client.V1EnvVar(
        name=name,
        value_from=client.V1EnvVarSource(
            field_ref=client.V1ObjectFieldSelector(field_path=field_path)
        ),
    )


def _override_env(overrides: list[EnvVar]) -> list[dict[str, Any]]:
    return [env.model_dump(by_alias=True, exclude_none=True) for env in overrides]


def _config_volume(name: str, config_map: str) -> client.V1Volume:
    return client.V1Volume(
        name=name,
        config_map=client.V1ConfigMapVolumeSource(name=config_map),
    )


def _pod_spec(
    spec: WorkloadSpec,
    container: client.V1Container,
    volumes: list[client.V1Volume],
    config: OperatorConfig,
    **extra: Any,
) -> client.V1PodSpec:
    return client.V1PodSpec(
        service_account_name=spec.service_account_name or config.service_account_name,
        containers=[container],
        volumes=volumes,
        node_selector=spec.node_selector or None,
        tolerations=spec.tolerations or None,
        **extra,
    )


def _finish(
    body: dict[str, Any],
    desired: DesiredState,
    credential_revision: str | None,
) -> dict[str, Any]:
    body["metadata"]["ownerReferences"] = [desired.owner_reference()]
    record_last_applied(body, desired.spec, credential_revision)
    return body


def credential_has_key(credential: dict[str, Any], key: str) -> bool:
    return key in (credential.get("data") or {}) or key in (credential.get("stringData") or {})


def build_agent_deployment(
    desired: DesiredState,
    snapshot: ConfigSnapshot,
    credential: dict[str, Any],
    config: OperatorConfig,
) -> dict[str, Any]:
    """Deployment for the cluster agent."""
    spec = desired.spec_as(ClusterAgentSpec)
    names = config.names
    secret = names.credential_secret
    labels = workload_labels(desired, CLUSTER_AGENT_COMPONENT)
    image = spec.image or config.default_agent_image

    env: list[Any] = [
        _secret_env("APPDYNAMICS_REST_API_CREDENTIALS", secret, API_USER_KEY),
        _field_env("APPDYNAMICS_AGENT_NAMESPACE", "metadata.namespace"),
    ]
    if credential_has_key(credential, CONTROLLER_KEY):
        env.append(_secret_env("APPDYNAMICS_AGENT_ACCOUNT_ACCESS_KEY", secret, CONTROLLER_KEY))
    if credential_has_key(credential, EVENT_KEY):
        env.append(_secret_env("APPDYNAMICS_EVENT_ACCESS_KEY", secret, EVENT_KEY))
    env.extend(_override_env(spec.env))

    mounts = [client.V1VolumeMount(name="agent-config", mount_path=AGENT_CONFIG_MOUNT)]
    volumes = [_config_volume("agent-config", names.agent_config)]

    if spec.agent_ssl_cert:
        volumes.append(
            _config_volume("agent-ssl-config", spec.custom_ssl_config_map or names.default_ssl_config)
        )
        mounts.append(
            client.V1VolumeMount(
                name="agent-ssl-config",
                mount_path=f"{AGENT_SSL_MOUNT}/{spec.agent_ssl_cert}",
                sub_path=spec.agent_ssl_cert,
            )
        )
    if spec.agent_ssl_store_name:
        volumes.append(_config_volume("agent-ssl-store", names.trust_bundle))
        mounts.append(
            client.V1VolumeMount(
                name="agent-ssl-store",
                mount_path=f"{AGENT_SSL_STORE_MOUNT}/{spec.agent_ssl_store_name}",
                sub_path=spec.agent_ssl_store_name,
            )
        )

    container = client.V1Container(
        name=CLUSTER_AGENT_COMPONENT,
        image=image,
        image_pull_policy="Always",
        args=spec.args or None,
        env=env,
        resources=spec.resources.to_body() or None,
        ports=[
            client.V1ContainerPort(
                container_port=snapshot.agent_server_port, protocol="TCP", name="web-port"
            )
        ],
        volume_mounts=mounts,
    )

    deployment = client.V1Deployment(
        api_version="apps/v1",
        kind="Deployment",
        metadata=client.V1ObjectMeta(name=desired.name, namespace=desired.namespace, labels=labels),
        spec=client.V1DeploymentSpec(
            replicas=spec.replicas,
            selector=client.V1LabelSelector(match_labels=labels),
            template=client.V1PodTemplateSpec(
                metadata=client.V1ObjectMeta(labels=labels),
                spec=_pod_spec(spec, container, volumes, config),
            ),
        ),
    )
    return _finish(_to_body(deployment), desired, snapshot.secret_version)


def collector_image(spec: ClusterCollectorSpec, config: OperatorConfig) -> str:
    return spec.image or config.default_collector_image


def build_collector_deployment(desired: DesiredState, config: OperatorConfig) -> dict[str, Any]:
    """Deployment for the cluster-wide collector."""
    spec = desired.spec_as(ClusterCollectorSpec)
    names = config.names
    labels = workload_labels(desired, CLUSTER_COLLECTOR_COMPONENT)

    container = client.V1Container(
        name=CLUSTER_COLLECTOR_COMPONENT,
        image=collector_image(spec, config),
        image_pull_policy="Always",
        args=spec.args or None,
        env=[
            _field_env("APPDYNAMICS_AGENT_NAMESPACE", "metadata.namespace"),
            _field_env("NODE_NAME", "spec.nodeName"),
            *_override_env(spec.env),
        ],
        resources=spec.resources.to_body() or None,
        volume_mounts=[
            client.V1VolumeMount(
                name="clustermon-config",
                mount_path=f"{COLLECTOR_HOME}/{CLUSTER_MONITOR_FILE}",
                sub_path=CLUSTER_MONITOR_FILE,
            ),
            client.V1VolumeMount(
                name="infra-agent-config",
                mount_path=f"{INFRA_AGENT_HOME}/{INFRA_AGENT_FILE}",
                sub_path=INFRA_AGENT_FILE,
            ),
        ],
    )
    volumes = [
        _config_volume("clustermon-config", names.cluster_monitor_config),
        _config_volume("infra-agent-config", names.infra_agent_config),
    ]

    deployment = client.V1Deployment(
        api_version="apps/v1",
        kind="Deployment",
        metadata=client.V1ObjectMeta(name=desired.name, namespace=desired.namespace, labels=labels),
        spec=client.V1DeploymentSpec(
            replicas=1,
            selector=client.V1LabelSelector(match_labels=labels),
            template=client.V1PodTemplateSpec(
                metadata=client.V1ObjectMeta(labels=labels),
                spec=_pod_spec(spec, container, volumes, config),
            ),
        ),
    )
    return _finish(_to_body(deployment), desired, None)


def build_host_collector_daemonset(
    desired: DesiredState, config: OperatorConfig
) -> dict[str, Any]:
    """DaemonSet running the container and server monitors on every node."""
    spec = desired.spec_as(ClusterCollectorSpec)
    host = spec.host_collector
    names = config.names
    labels = workload_labels(desired, HOST_COLLECTOR_COMPONENT)

    def file_mount(volume: str, home: str, file_name: str) -> client.V1VolumeMount:
        return client.V1VolumeMount(
            name=volume, mount_path=f"{home}/{file_name}", sub_path=file_name
        )

    resources = host.resources if not host.resources.is_empty() else spec.resources
    container = client.V1Container(
        name=HOST_COLLECTOR_COMPONENT,
        image=host.image or collector_image(spec, config),
        image_pull_policy="Always",
        env=[
            _field_env("APPDYNAMICS_AGENT_NAMESPACE", "metadata.namespace"),
            _field_env("NODE_NAME", "spec.nodeName"),
            *_override_env(spec.env),
        ],
        resources=resources.to_body() or None,
        volume_mounts=[
            file_mount("containermon-config", COLLECTOR_HOME, CONTAINER_MONITOR_FILE),
            file_mount("servermon-config", COLLECTOR_HOME, SERVER_MONITOR_FILE),
            file_mount("infra-agent-config", INFRA_AGENT_HOME, INFRA_AGENT_FILE),
            client.V1VolumeMount(name="host-proc", mount_path="/hostroot/proc", read_only=True),
            client.V1VolumeMount(name="host-sys", mount_path="/hostroot/sys", read_only=True),
        ],
    )
    volumes = [
        _config_volume("containermon-config", names.container_monitor_config),
        _config_volume("servermon-config", names.server_monitor_config),
        _config_volume("infra-agent-config", names.infra_agent_config),
        client.V1Volume(name="host-proc", host_path=client.V1HostPathVolumeSource(path="/proc")),
        client.V1Volume(name="host-sys", host_path=client.V1HostPathVolumeSource(path="/sys")),
    ]

    daemonset = client.V1DaemonSet(
        api_version="apps/v1",
        kind="DaemonSet",
        metadata=client.V1ObjectMeta(
            name=f"{desired.name}{HOST_COLLECTOR_SUFFIX}",
            namespace=desired.namespace,
            labels=labels,
        ),
        spec=client.V1DaemonSetSpec(
            selector=client.V1LabelSelector(match_labels=labels),
            template=client.V1PodTemplateSpec(
                metadata=client.V1ObjectMeta(labels=labels),
                spec=_pod_spec(spec, container, volumes, config),
            ),
        ),
    )
    return _finish(_to_body(daemonset), desired, None)


def _bool_env(name: str, value: bool) -> client.V1EnvVar:
    return client.V1EnvVar(name=name, value="true" if value else "false")


def build_infraviz_daemonset(
    desired: DesiredState,
    credential: dict[str, Any],
    config: OperatorConfig,
) -> dict[str, Any]:
    """DaemonSet for the infrastructure visualization agent.

    Raises:
        MalformedEndpointError: If the controller URL is set but unusable.
    """
    spec = desired.spec_as(InfraVizSpec)
    secret = config.names.credential_secret
    labels = workload_labels(desired, INFRAVIZ_COMPONENT)

    env: list[Any] = []
    if spec.controller_url:
        endpoint = parse_endpoint(spec.controller_url)
        env.extend(
            [
                client.V1EnvVar(name="APPDYNAMICS_CONTROLLER_HOST_NAME", value=endpoint.host),
                client.V1EnvVar(name="APPDYNAMICS_CONTROLLER_PORT", value=str(endpoint.port)),
                client.V1EnvVar(
                    name="APPDYNAMICS_CONTROLLER_SSL_ENABLED", value=endpoint.ssl_flag
                ),
            ]
        )
    if spec.account:
        env.append(client.V1EnvVar(name="APPDYNAMICS_AGENT_ACCOUNT_NAME", value=spec.account))
    if spec.global_account:
        env.append(
            client.V1EnvVar(name="APPDYNAMICS_AGENT_GLOBAL_ACCOUNT_NAME", value=spec.global_account)
        )
    if spec.event_service_url:
        env.append(client.V1EnvVar(name="APPDYNAMICS_EVENTS_API_URL", value=spec.event_service_url))
    if spec.proxy_url:
        env.append(client.V1EnvVar(name="APPDYNAMICS_AGENT_PROXY_URL", value=spec.proxy_url))
    if credential_has_key(credential, CONTROLLER_KEY):
        env.append(_secret_env("APPDYNAMICS_AGENT_ACCOUNT_ACCESS_KEY", secret, CONTROLLER_KEY))
    env.extend(
        [
            _bool_env("APPDYNAMICS_SIM_ENABLED", spec.enable_server_viz),
            _bool_env("APPDYNAMICS_DOCKER_ENABLED", spec.enable_docker_viz),
            _bool_env("APPDYNAMICS_STDOUT_LOGGING", spec.stdout_logging),
        ]
    )
    if spec.enable_container_hostid:
        env.append(_field_env("APPDYNAMICS_AGENT_UNIQUE_HOST_ID", "spec.nodeName"))
    if spec.log_level:
        env.append(client.V1EnvVar(name="APPDYNAMICS_LOG_LEVEL", value=spec.log_level))
    env.extend(_override_env(spec.env))

    container = client.V1Container(
        name=INFRAVIZ_COMPONENT,
        image=spec.image or config.default_infraviz_image,
        image_pull_policy="Always",
        args=spec.args or None,
        env=env,
        resources=spec.resources.to_body() or None,
        security_context=client.V1SecurityContext(privileged=True),
        volume_mounts=[
            client.V1VolumeMount(name="hostroot", mount_path="/hostroot", read_only=True),
        ],
    )
    volumes = [
        client.V1Volume(name="hostroot", host_path=client.V1HostPathVolumeSource(path="/")),
    ]

    daemonset = client.V1DaemonSet(
        api_version="apps/v1",
        kind="DaemonSet",
        metadata=client.V1ObjectMeta(name=desired.name, namespace=desired.namespace, labels=labels),
        spec=client.V1DaemonSetSpec(
            selector=client.V1LabelSelector(match_labels=labels),
            template=client.V1PodTemplateSpec(
                metadata=client.V1ObjectMeta(labels=labels),
                spec=_pod_spec(spec, container, volumes, config, host_network=True, host_pid=True),
            ),
        ),
    )
    return _finish(_to_body(daemonset), desired, credential.get("metadata", {}).get("resourceVersion"))
