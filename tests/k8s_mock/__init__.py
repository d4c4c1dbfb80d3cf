"""Kubernetes API Mock for reconciliation testing.

Provides an in-memory implementation of the ClusterClient protocol so the
full lifecycle driver can run without a cluster.

Key Features:
- In-memory object store with resourceVersion and optimistic concurrency
- Call log for asserting which writes a pass issued
- Error injection for the next matching call
- Pod seeding for forced-restart scenarios

Usage:
    from k8s_mock import MockCluster

    cluster = MockCluster()
    cluster.seed(AgentFamily.CLUSTER_AGENT, desired_body)
    reconciler = Reconciler(cluster, OperatorConfig())
    result = reconciler.reconcile(AgentFamily.CLUSTER_AGENT, "appd", "agent")

    assert cluster.exists(ClusterKind.DEPLOYMENT, "appd", "agent")
"""

from .cluster import WRITE_VERBS, MockCall, MockCluster

__all__ = [
    "WRITE_VERBS",
    "MockCall",
    "MockCluster",
]
