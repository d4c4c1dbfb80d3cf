"""Tests for the dependent resource manager."""

import pytest

from agent_operator.cluster import ClusterKind, ConflictError
from agent_operator.config import OperatorConfig
from agent_operator.endpoint import MalformedEndpointError
from agent_operator.models import AgentFamily, ConfigSnapshot, DesiredState
from agent_operator.resources import (
    DependentResourceManager,
    MissingTrustBundleError,
    SerializationError,
    credential_revision,
)
from agent_operator.workloads import CLUSTER_AGENT_COMPONENT, workload_labels
from conftest import NAMESPACE, agent_body, collector_body
from k8s_mock import MockCall, MockCluster


def _desired(cluster: MockCluster, **spec: object) -> DesiredState:
    body = cluster.seed(AgentFamily.CLUSTER_AGENT, agent_body(**spec))
    return DesiredState.from_body(AgentFamily.CLUSTER_AGENT, body)


@pytest.fixture
def manager(cluster: MockCluster, config: OperatorConfig) -> DependentResourceManager:
    return DependentResourceManager(cluster, config)


class TestEnsureCredential:
    """Tests for ensure_credential."""

    def test_creates_placeholder(self, cluster: MockCluster, manager: DependentResourceManager) -> None:
        """Test that a missing credential is created with three empty keys."""
        secret = manager.ensure_credential(NAMESPACE)

        assert secret["metadata"]["name"] == "cluster-agent-secret"
        assert secret["data"] == {"api-user": "", "controller-key": "", "event-key": ""}
        assert cluster.exists(ClusterKind.SECRET, NAMESPACE, "cluster-agent-secret")

    def test_existing_left_alone(self, cluster: MockCluster, manager: DependentResourceManager) -> None:
        """Test that an existing credential is returned without writes."""
        cluster.seed(
            ClusterKind.SECRET,
            {"metadata": {"name": "cluster-agent-secret", "namespace": NAMESPACE}, "data": {"api-user": "dXNlcg=="}},
        )
        cluster.reset_calls()

        secret = manager.ensure_credential(NAMESPACE)

        assert secret["data"] == {"api-user": "dXNlcg=="}
        assert cluster.writes == []

    def test_revision(self) -> None:
        """Test that the revision is the resourceVersion."""
        assert credential_revision({"metadata": {"resourceVersion": "12"}}) == "12"
        assert credential_revision({}) == ""


class TestEnsureConfigBundle:
    """Tests for ensure_config_bundle."""

    def test_creates_bundle(self, cluster: MockCluster, manager: DependentResourceManager) -> None:
        """Test that a missing bundle is created with the resolved snapshot."""
        desired = _desired(cluster)

        update = manager.ensure_config_bundle(desired, "5", fresh=True)

        assert update.created
        assert update.previous is None
        stored = cluster.stored(ClusterKind.CONFIG_MAP, NAMESPACE, "cluster-agent-config")
        snapshot = ConfigSnapshot.model_validate_json(stored["data"]["cluster-agent-config.json"])
        assert snapshot == update.current
        assert snapshot.controller_dns == "acme.saas.appdynamics.com"
        assert snapshot.controller_port == 443
        assert snapshot.secret_version == "5"
        assert snapshot.instrumentation_updated is False
        assert stored["metadata"]["ownerReferences"][0]["name"] == "k8s-agent"

    def test_replaces_and_returns_previous(
        self, cluster: MockCluster, manager: DependentResourceManager
    ) -> None:
        """Test that the previous snapshot is returned alongside the new one."""
        first = manager.ensure_config_bundle(_desired(cluster), "5", fresh=True)
        changed = _desired(cluster, account="other", nsToInstrument=["prod"])

        update = manager.ensure_config_bundle(changed, "6")

        assert update.previous == first.current
        assert update.current.account == "other"
        assert update.current.secret_version == "6"
        assert update.current.instrumentation_updated is True

    def test_fresh_ignores_prior(self, cluster: MockCluster, manager: DependentResourceManager) -> None:
        """Test that a fresh resolve neither reads nor reports the existing snapshot."""
        manager.ensure_config_bundle(_desired(cluster), "5")
        changed = _desired(cluster, nsToInstrument=["prod"])

        update = manager.ensure_config_bundle(changed, "5", fresh=True)

        assert update.current.instrumentation_updated is False
        assert update.previous is None
        assert update.created is False

    def test_fresh_overwrites_corrupt_bundle(
        self, cluster: MockCluster, manager: DependentResourceManager
    ) -> None:
        """Test that a leftover unreadable bundle is replaced during provisioning."""
        cluster.seed(
            ClusterKind.CONFIG_MAP,
            {
                "metadata": {"name": "cluster-agent-config", "namespace": NAMESPACE},
                "data": {"cluster-agent-config.json": "{not json"},
            },
        )
        desired = _desired(cluster)

        update = manager.ensure_config_bundle(desired, "5", fresh=True)

        stored = cluster.stored(ClusterKind.CONFIG_MAP, NAMESPACE, "cluster-agent-config")
        snapshot = ConfigSnapshot.model_validate_json(stored["data"]["cluster-agent-config.json"])
        assert snapshot == update.current
        assert update.previous is None

    def test_corrupt_bundle_not_overwritten(
        self, cluster: MockCluster, manager: DependentResourceManager
    ) -> None:
        """Test that an unreadable bundle fails without a write."""
        cluster.seed(
            ClusterKind.CONFIG_MAP,
            {
                "metadata": {"name": "cluster-agent-config", "namespace": NAMESPACE},
                "data": {"cluster-agent-config.json": "{not json"},
            },
        )
        desired = _desired(cluster)
        cluster.reset_calls()

        with pytest.raises(SerializationError):
            manager.ensure_config_bundle(desired, "5")

        assert cluster.writes == []

    def test_missing_key_is_serialization_error(
        self, cluster: MockCluster, manager: DependentResourceManager
    ) -> None:
        """Test that a bundle without the snapshot key is rejected."""
        cluster.seed(
            ClusterKind.CONFIG_MAP,
            {"metadata": {"name": "cluster-agent-config", "namespace": NAMESPACE}, "data": {}},
        )

        with pytest.raises(SerializationError):
            manager.ensure_config_bundle(_desired(cluster), "5")

    def test_malformed_url_writes_nothing(
        self, cluster: MockCluster, manager: DependentResourceManager
    ) -> None:
        """Test that a malformed controller URL fails before the bundle write."""
        desired = _desired(cluster, controllerUrl="acme.saas.appdynamics.com")
        cluster.reset_calls()

        with pytest.raises(MalformedEndpointError):
            manager.ensure_config_bundle(desired, "5")

        assert cluster.writes == []

    def test_conflict_retried_once(self, cluster: MockCluster, manager: DependentResourceManager) -> None:
        """Test that a conflicting bundle replace is re-fetched and retried."""
        desired = _desired(cluster)
        manager.ensure_config_bundle(desired, "5")
        cluster.inject("replace", ConflictError("modified", status=409), ClusterKind.CONFIG_MAP)
        cluster.reset_calls()

        update = manager.ensure_config_bundle(desired, "6")

        replaces = [call for call in cluster.writes if call.verb == "replace"]
        assert len(replaces) == 2
        assert update.current.secret_version == "6"


class TestEnsureEndpoint:
    """Tests for ensure_endpoint."""

    def test_creates_service(self, cluster: MockCluster, manager: DependentResourceManager) -> None:
        """Test that the service selects the agent pods on the server port."""
        desired = _desired(cluster)
        snapshot = ConfigSnapshot(agent_server_port=8989)

        service = manager.ensure_endpoint(desired, snapshot)

        assert service["metadata"]["name"] == "k8s-agent"
        assert service["spec"]["selector"] == workload_labels(desired, CLUSTER_AGENT_COMPONENT)
        assert service["spec"]["ports"][0]["port"] == 8989
        assert service["spec"]["ports"][0]["name"] == "web-port"

    def test_existing_service_not_mutated(
        self, cluster: MockCluster, manager: DependentResourceManager
    ) -> None:
        """Test that a port change does not patch an existing service."""
        desired = _desired(cluster)
        manager.ensure_endpoint(desired, ConfigSnapshot(agent_server_port=8989))
        cluster.reset_calls()

        service = manager.ensure_endpoint(desired, ConfigSnapshot(agent_server_port=9999))

        assert service["spec"]["ports"][0]["port"] == 8989
        assert cluster.writes == []


class TestEnsureTlsTrustConfig:
    """Tests for ensure_tls_trust_config."""

    def test_not_configured(self, cluster: MockCluster, manager: DependentResourceManager) -> None:
        """Test that nothing is checked without a trust store name."""
        manager.ensure_tls_trust_config(_desired(cluster))

        assert [call for call in cluster.calls if call.kind == "ConfigMap"] == []

    def test_missing_bundle(self, cluster: MockCluster, manager: DependentResourceManager) -> None:
        """Test that a configured store without a bundle raises."""
        with pytest.raises(MissingTrustBundleError):
            manager.ensure_tls_trust_config(_desired(cluster, agentSSLStoreName="custom.jks"))

        assert not cluster.exists(ClusterKind.CONFIG_MAP, NAMESPACE, "appd-agent-ssl-store")

    def test_existing_bundle(self, cluster: MockCluster, manager: DependentResourceManager) -> None:
        """Test that an existing bundle passes validation."""
        cluster.seed(
            ClusterKind.CONFIG_MAP,
            {"metadata": {"name": "appd-agent-ssl-store", "namespace": NAMESPACE}, "data": {}},
        )

        manager.ensure_tls_trust_config(_desired(cluster, agentSSLStoreName="custom.jks"))


class TestCollectorBundlesAndCleanup:
    """Tests for collector bundles and cleanup."""

    def test_collector_bundles_written(self, cluster: MockCluster, manager: DependentResourceManager) -> None:
        """Test that four bundles are created, then replaced on the next call."""
        body = cluster.seed(AgentFamily.CLUSTER_COLLECTOR, collector_body())
        desired = DesiredState.from_body(AgentFamily.CLUSTER_COLLECTOR, body)

        manager.ensure_collector_bundles(desired)
        cluster.reset_calls()
        manager.ensure_collector_bundles(desired)

        names = OperatorConfig().names.collector_bundles()
        assert cluster.writes == [MockCall("replace", "ConfigMap", NAMESPACE, name) for name in names]
        stored = cluster.stored(ClusterKind.CONFIG_MAP, NAMESPACE, "infra-agent-config")
        assert "controller-host: acme.saas.appdynamics.com" in stored["data"]["infra-agent.conf"]

    def test_cleanup_keeps_credential(self, cluster: MockCluster, manager: DependentResourceManager) -> None:
        """Test that cleanup removes bundles but never the credential."""
        desired = _desired(cluster)
        manager.ensure_credential(NAMESPACE)
        manager.ensure_config_bundle(desired, "1")

        deleted = manager.cleanup(AgentFamily.CLUSTER_AGENT, NAMESPACE)

        assert deleted == ["cluster-agent-config"]
        assert not cluster.exists(ClusterKind.CONFIG_MAP, NAMESPACE, "cluster-agent-config")
        assert cluster.exists(ClusterKind.SECRET, NAMESPACE, "cluster-agent-secret")

    def test_cleanup_is_best_effort(self, cluster: MockCluster, manager: DependentResourceManager) -> None:
        """Test that missing bundles are not an error."""
        assert manager.cleanup(AgentFamily.CLUSTER_COLLECTOR, NAMESPACE) == []
