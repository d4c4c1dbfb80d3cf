"""Dependent resources: credential, configuration bundles, endpoint, trust bundle.

Every operation here is idempotent and follows the same shape:

1. Fetch by fixed name and namespace
2. If missing, construct from defaults and create
3. If present, leave it alone, except for configuration bundles which are
   rewritten from the freshly resolved configuration on every pass

Object names are the canonical singletons from ``ObjectNames``; only one
instance of each agent family per namespace is supported.

SECURITY:
- The credential object is only ever created with empty values and is never
  overwritten or deleted. Secret material is provisioned out of band.
- The trust bundle is only validated, never created.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from . import config_bag
from .cluster import ClusterApiError, ClusterClient, ClusterKind, NotFoundError, update_with_retry
from .collector_config import render_collector_bundles, with_defaults
from .config import OperatorConfig
from .models import (
    AgentFamily,
    ClusterAgentSpec,
    ClusterCollectorSpec,
    ConfigSnapshot,
    DesiredState,
)
from .workloads import CLUSTER_AGENT_COMPONENT, CREDENTIAL_KEYS, collector_image, workload_labels

logger = logging.getLogger(__name__)


class MissingTrustBundleError(Exception):
    """Raised when a configured trust store has no trust bundle object."""

    pass


class SerializationError(Exception):
    """Raised when a configuration bundle cannot be read back."""

    pass


@dataclass
class BundleUpdate:
    """Result of rewriting the agent configuration bundle."""

    bundle: dict[str, Any]
    previous: ConfigSnapshot | None
    current: ConfigSnapshot
    created: bool = False


def credential_revision(credential: dict[str, Any]) -> str:
    """Revision stamp of the credential object."""
    return credential.get("metadata", {}).get("resourceVersion", "")


class DependentResourceManager:
    """Ensures the objects a workload depends on exist and are current."""

    def __init__(
        self,
        cluster: ClusterClient,
        config: OperatorConfig,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
    ) -> None:
        self._cluster = cluster
        self._config = config
        self._names = config.names
        self._logger = logger or logging.getLogger(__name__)

    # =========================================================================
    # Credential
    # =========================================================================

    def ensure_credential(self, namespace: str) -> dict[str, Any]:
        """Return the credential object, creating an empty one if absent.

        An empty credential is non-functional; the agent refuses to start and
        that surfaces through its status, not here.
        """
        name = self._names.credential_secret
        try:
            return self._cluster.get(ClusterKind.SECRET, namespace, name)
        except NotFoundError:
            self._logger.info(
                "Credential not found, creating placeholder",
                extra={"secret": name, "namespace": namespace},
            )

        body = {
            "apiVersion": "v1",
            "kind": "Secret",
            "type": "Opaque",
            "metadata": {"name": name, "namespace": namespace},
            "stringData": {key: "" for key in CREDENTIAL_KEYS},
        }
        return self._cluster.create(ClusterKind.SECRET, body)

    # =========================================================================
    # Agent configuration bundle
    # =========================================================================

    def _read_snapshot(self, bundle: dict[str, Any]) -> ConfigSnapshot:
        key = self._names.agent_config_key
        text = (bundle.get("data") or {}).get(key)
        if text is None:
            raise SerializationError(
                f"Configuration bundle {bundle['metadata']['name']} has no {key} entry"
            )
        try:
            return ConfigSnapshot.model_validate_json(text)
        except ValidationError as e:
            raise SerializationError(
                f"Configuration bundle {bundle['metadata']['name']} is unreadable: {e}"
            ) from e

    def ensure_config_bundle(
        self,
        desired: DesiredState,
        credential_revision: str,
        fresh: bool = False,
    ) -> BundleUpdate:
        """Resolve the configuration snapshot and write it into the bundle.

        The previous snapshot is read before anything is written, so a corrupt
        bundle or a malformed controller URL fails the pass with no write.
        A fresh resolve never reads the existing bundle, so a leftover corrupt
        bundle is overwritten instead of blocking provisioning.

        Args:
            desired: Cluster agent desired state.
            credential_revision: Current revision of the credential object.
            fresh: Resolve without a prior snapshot (initial provisioning), so
                instrumentation_updated is False and previous is None.

        Returns:
            BundleUpdate with the written bundle and the old/new snapshots.

        Raises:
            SerializationError: If the existing bundle cannot be parsed and
                fresh is False.
            MalformedEndpointError: If the controller URL is set but unusable.
            ClusterApiError: On API failure.
        """
        spec = desired.spec_as(ClusterAgentSpec)
        namespace = desired.namespace
        name = self._names.agent_config

        existing: dict[str, Any] | None
        try:
            existing = self._cluster.get(ClusterKind.CONFIG_MAP, namespace, name)
        except NotFoundError:
            existing = None

        previous = None if fresh or existing is None else self._read_snapshot(existing)
        current = config_bag.with_endpoint(config_bag.resolve(spec, previous, credential_revision))
        data = {self._names.agent_config_key: current.to_json()}

        if existing is None:
            self._logger.info(
                "Creating agent configuration bundle",
                extra={"bundle": name, "namespace": namespace},
            )
            bundle = self._cluster.create(
                ClusterKind.CONFIG_MAP,
                {
                    "apiVersion": "v1",
                    "kind": "ConfigMap",
                    "metadata": {
                        "name": name,
                        "namespace": namespace,
                        "ownerReferences": [desired.owner_reference()],
                    },
                    "data": data,
                },
            )
        else:

            def replace_data(body: dict[str, Any]) -> None:
                body["data"] = dict(data)

            bundle = update_with_retry(self._cluster, ClusterKind.CONFIG_MAP, existing, replace_data)

        return BundleUpdate(
            bundle=bundle, previous=previous, current=current, created=existing is None
        )

    # =========================================================================
    # Collector bundles
    # =========================================================================

    def ensure_collector_bundles(self, desired: DesiredState) -> list[dict[str, Any]]:
        """Render and write the four collector configuration bundles.

        All documents are rendered before the first write.

        Raises:
            MalformedEndpointError: If the controller or exporter URL is unusable.
            ClusterApiError: On API failure.
        """
        spec = desired.spec_as(ClusterCollectorSpec)
        rendered = render_collector_bundles(
            with_defaults(spec), collector_image(spec, self._config), self._names
        )

        written = []
        for item in rendered:
            data = {item.key: item.text}
            try:
                existing = self._cluster.get(ClusterKind.CONFIG_MAP, desired.namespace, item.name)
            except NotFoundError:
                self._logger.info(
                    "Creating collector configuration bundle",
                    extra={"bundle": item.name, "namespace": desired.namespace},
                )
                written.append(
                    self._cluster.create(
                        ClusterKind.CONFIG_MAP,
                        {
                            "apiVersion": "v1",
                            "kind": "ConfigMap",
                            "metadata": {
                                "name": item.name,
                                "namespace": desired.namespace,
                                "ownerReferences": [desired.owner_reference()],
                            },
                            "data": data,
                        },
                    )
                )
                continue

            def replace_data(body: dict[str, Any], data: dict[str, str] = data) -> None:
                body["data"] = dict(data)

            written.append(
                update_with_retry(self._cluster, ClusterKind.CONFIG_MAP, existing, replace_data)
            )
        return written

    # =========================================================================
    # Endpoint and trust bundle
    # =========================================================================

    def ensure_endpoint(self, desired: DesiredState, snapshot: ConfigSnapshot) -> dict[str, Any]:
        """Return the agent's service, creating it if absent.

        An existing service is never modified; port changes go through restart.
        """
        namespace = desired.namespace
        try:
            return self._cluster.get(ClusterKind.SERVICE, namespace, desired.name)
        except NotFoundError:
            self._logger.info(
                "Endpoint not found, creating",
                extra={"service": desired.name, "port": snapshot.agent_server_port},
            )

        body = {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": {
                "name": desired.name,
                "namespace": namespace,
                "ownerReferences": [desired.owner_reference()],
            },
            "spec": {
                "selector": workload_labels(desired, CLUSTER_AGENT_COMPONENT),
                "ports": [
                    {
                        "name": "web-port",
                        "protocol": "TCP",
                        "port": snapshot.agent_server_port,
                        "targetPort": snapshot.agent_server_port,
                    }
                ],
            },
        }
        return self._cluster.create(ClusterKind.SERVICE, body)

    def ensure_tls_trust_config(self, desired: DesiredState) -> None:
        """Check the trust bundle exists when a custom trust store is configured.

        Raises:
            MissingTrustBundleError: If the trust bundle object does not exist.
        """
        spec = desired.spec_as(ClusterAgentSpec)
        if not spec.agent_ssl_store_name:
            return

        name = self._names.trust_bundle
        try:
            self._cluster.get(ClusterKind.CONFIG_MAP, desired.namespace, name)
        except NotFoundError as e:
            raise MissingTrustBundleError(
                f"Trust store {spec.agent_ssl_store_name} is configured but trust bundle "
                f"{desired.namespace}/{name} does not exist"
            ) from e

    # =========================================================================
    # Cleanup
    # =========================================================================

    def cleanup(self, family: AgentFamily, namespace: str) -> list[str]:
        """Best-effort delete of the family's generated bundles.

        The credential object is left in place. Failures are logged, not raised.

        Returns:
            Names of the bundles that were deleted.
        """
        if family == AgentFamily.CLUSTER_AGENT:
            bundles = [self._names.agent_config]
        elif family == AgentFamily.CLUSTER_COLLECTOR:
            bundles = list(self._names.collector_bundles())
        else:
            bundles = []

        deleted = []
        for name in bundles:
            try:
                self._cluster.delete(ClusterKind.CONFIG_MAP, namespace, name)
                deleted.append(name)
            except NotFoundError:
                self._logger.debug("Bundle already gone", extra={"bundle": name})
            except ClusterApiError as e:
                self._logger.warning(
                    "Failed to delete bundle",
                    extra={"bundle": name, "namespace": namespace, "error": str(e)},
                )
        if deleted:
            self._logger.info("Deleted configuration bundles", extra={"bundles": deleted})
        return deleted
