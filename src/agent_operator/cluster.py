"""Orchestration API access.

The reconciliation engine only needs single-object create/replace/delete,
get-by-name and list-by-label against a handful of kinds, plus an annotation
merge-patch on desired-state objects. This module exposes exactly that
surface as the ``ClusterClient`` protocol and implements it on top of the
official kubernetes client.

Objects cross this boundary as plain camelCase dictionaries, the same shape
the API server speaks. The engine never sees generated client model classes.

ERROR MAPPING:
- HTTP 404 -> NotFoundError (expected, drives the create path)
- HTTP 409 -> ConflictError (optimistic concurrency collision)
- anything else -> ClusterApiError
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable
from enum import Enum
from typing import Any, Protocol

from kubernetes import client, config
from kubernetes.client.rest import ApiException

from .models import API_GROUP, API_VERSION, AgentFamily

logger = logging.getLogger(__name__)


class ClusterKind(str, Enum):
    """Built-in object kinds managed by the operator."""

    SECRET = "Secret"
    CONFIG_MAP = "ConfigMap"
    SERVICE = "Service"
    DEPLOYMENT = "Deployment"
    DAEMON_SET = "DaemonSet"
    POD = "Pod"


class ClusterApiError(Exception):
    """Raised when an orchestration API call fails."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class NotFoundError(ClusterApiError):
    """Raised when the requested object does not exist."""

    pass


class ConflictError(ClusterApiError):
    """Raised on an optimistic concurrency collision or an existing object."""

    pass


def translate_api_exception(e: ApiException, action: str) -> ClusterApiError:
    """Map a kubernetes ApiException onto the operator error taxonomy."""
    message = f"{action} failed: {e.status} {e.reason}"
    if e.status == 404:
        return NotFoundError(message, status=e.status)
    if e.status == 409:
        return ConflictError(message, status=e.status)
    return ClusterApiError(message, status=e.status)


class ClusterClient(Protocol):
    """Operations the engine needs from the orchestration API."""

    def get(self, kind: ClusterKind, namespace: str, name: str) -> dict[str, Any]: ...

    def create(self, kind: ClusterKind, body: dict[str, Any]) -> dict[str, Any]: ...

    def replace(self, kind: ClusterKind, body: dict[str, Any]) -> dict[str, Any]: ...

    def delete(self, kind: ClusterKind, namespace: str, name: str) -> None: ...

    def list(
        self, kind: ClusterKind, namespace: str, labels: dict[str, str]
    ) -> list[dict[str, Any]]: ...

    def get_desired(self, family: AgentFamily, namespace: str, name: str) -> dict[str, Any]: ...

    def replace_desired_status(
        self, family: AgentFamily, body: dict[str, Any]
    ) -> dict[str, Any]: ...

    def annotate_desired(
        self, family: AgentFamily, namespace: str, name: str, annotations: dict[str, str]
    ) -> dict[str, Any]: ...


def update_with_retry(
    cluster: ClusterClient,
    kind: ClusterKind,
    current: dict[str, Any],
    mutate: Callable[[dict[str, Any]], None],
) -> dict[str, Any]:
    """Apply ``mutate`` to an object and replace it, retrying one conflict.

    The mutation is applied to a deep copy of ``current``. On a conflict the
    object is re-fetched and the mutation recomputed against the fresh copy;
    a second conflict propagates so the pass fails and is retried later.

    Raises:
        ConflictError: If the object changed again between re-fetch and replace.
        ClusterApiError: On any other API failure.
    """
    body = copy.deepcopy(current)
    mutate(body)
    try:
        return cluster.replace(kind, body)
    except ConflictError:
        metadata = current["metadata"]
        logger.info(
            "Update conflict, re-fetching and retrying once",
            extra={"kind": kind.value, "namespace": metadata["namespace"], "object": metadata["name"]},
        )
        fresh = cluster.get(kind, metadata["namespace"], metadata["name"])
        mutate(fresh)
        return cluster.replace(kind, fresh)


def label_selector(labels: dict[str, str]) -> str:
    """Render an equality-based label selector."""
    return ",".join(f"{key}={value}" for key, value in sorted(labels.items()))


# Method name suffixes per kind: (api attribute, method suffix)
_KIND_METHODS: dict[ClusterKind, tuple[str, str]] = {
    ClusterKind.SECRET: ("core", "namespaced_secret"),
    ClusterKind.CONFIG_MAP: ("core", "namespaced_config_map"),
    ClusterKind.SERVICE: ("core", "namespaced_service"),
    ClusterKind.POD: ("core", "namespaced_pod"),
    ClusterKind.DEPLOYMENT: ("apps", "namespaced_deployment"),
    ClusterKind.DAEMON_SET: ("apps", "namespaced_daemon_set"),
}


class KubernetesCluster:
    """ClusterClient backed by the official kubernetes client.

    All calls are blocking and carry a request timeout so a stuck API
    server cannot hang a reconciliation pass indefinitely.
    """

    def __init__(
        self,
        api_client: client.ApiClient | None = None,
        request_timeout_seconds: float = 30.0,
    ) -> None:
        self._api_client = api_client or client.ApiClient()
        self._core = client.CoreV1Api(self._api_client)
        self._apps = client.AppsV1Api(self._api_client)
        self._custom = client.CustomObjectsApi(self._api_client)
        self._timeout = request_timeout_seconds

    @classmethod
    def from_environment(cls) -> KubernetesCluster:
        """Load in-cluster credentials, falling back to the local kubeconfig."""
        try:
            config.load_incluster_config()
            logger.info("Loaded in-cluster Kubernetes config")
        except config.ConfigException:
            config.load_kube_config()
            logger.info("Loaded local Kubernetes config")
        return cls()

    def _method(self, kind: ClusterKind, verb: str) -> Any:
        api_name, suffix = _KIND_METHODS[kind]
        api = self._core if api_name == "core" else self._apps
        return getattr(api, f"{verb}_{suffix}")

    def _to_dict(self, obj: Any) -> dict[str, Any]:
        return self._api_client.sanitize_for_serialization(obj)

    def get(self, kind: ClusterKind, namespace: str, name: str) -> dict[str, Any]:
        try:
            obj = self._method(kind, "read")(name, namespace, _request_timeout=self._timeout)
        except ApiException as e:
            raise translate_api_exception(e, f"get {kind.value} {namespace}/{name}") from e
        return self._to_dict(obj)

    def create(self, kind: ClusterKind, body: dict[str, Any]) -> dict[str, Any]:
        namespace = body["metadata"]["namespace"]
        name = body["metadata"]["name"]
        try:
            obj = self._method(kind, "create")(namespace, body, _request_timeout=self._timeout)
        except ApiException as e:
            raise translate_api_exception(e, f"create {kind.value} {namespace}/{name}") from e
        return self._to_dict(obj)

    def replace(self, kind: ClusterKind, body: dict[str, Any]) -> dict[str, Any]:
        namespace = body["metadata"]["namespace"]
        name = body["metadata"]["name"]
        try:
            obj = self._method(kind, "replace")(
                name, namespace, body, _request_timeout=self._timeout
            )
        except ApiException as e:
            raise translate_api_exception(e, f"replace {kind.value} {namespace}/{name}") from e
        return self._to_dict(obj)

    def delete(self, kind: ClusterKind, namespace: str, name: str) -> None:
        try:
            self._method(kind, "delete")(name, namespace, _request_timeout=self._timeout)
        except ApiException as e:
            raise translate_api_exception(e, f"delete {kind.value} {namespace}/{name}") from e

    def list(
        self, kind: ClusterKind, namespace: str, labels: dict[str, str]
    ) -> list[dict[str, Any]]:
        try:
            result = self._method(kind, "list")(
                namespace,
                label_selector=label_selector(labels),
                _request_timeout=self._timeout,
            )
        except ApiException as e:
            raise translate_api_exception(e, f"list {kind.value} in {namespace}") from e
        return [self._to_dict(item) for item in result.items]

    def get_desired(self, family: AgentFamily, namespace: str, name: str) -> dict[str, Any]:
        try:
            return self._custom.get_namespaced_custom_object(
                API_GROUP,
                API_VERSION,
                namespace,
                family.value,
                name,
                _request_timeout=self._timeout,
            )
        except ApiException as e:
            raise translate_api_exception(e, f"get {family.kind} {namespace}/{name}") from e

    def replace_desired_status(
        self, family: AgentFamily, body: dict[str, Any]
    ) -> dict[str, Any]:
        namespace = body["metadata"]["namespace"]
        name = body["metadata"]["name"]
        try:
            return self._custom.replace_namespaced_custom_object_status(
                API_GROUP,
                API_VERSION,
                namespace,
                family.value,
                name,
                body,
                _request_timeout=self._timeout,
            )
        except ApiException as e:
            raise translate_api_exception(
                e, f"update status of {family.kind} {namespace}/{name}"
            ) from e

    def annotate_desired(
        self, family: AgentFamily, namespace: str, name: str, annotations: dict[str, str]
    ) -> dict[str, Any]:
        """Merge-patch annotations onto a desired-state object."""
        patch = {"metadata": {"annotations": annotations}}
        try:
            return self._custom.patch_namespaced_custom_object(
                API_GROUP,
                API_VERSION,
                namespace,
                family.value,
                name,
                patch,
                _request_timeout=self._timeout,
            )
        except ApiException as e:
            raise translate_api_exception(e, f"annotate {family.kind} {namespace}/{name}") from e
