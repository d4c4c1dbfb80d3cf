"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for k8s_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from agent_operator.config import OperatorConfig  # noqa: E402
from k8s_mock import MockCluster  # noqa: E402

NAMESPACE = "appdynamics"


@pytest.fixture
def cluster() -> MockCluster:
    """Empty in-memory cluster."""
    return MockCluster()


@pytest.fixture
def config() -> OperatorConfig:
    """Operator configuration with defaults."""
    return OperatorConfig()


def agent_body(name: str = "k8s-agent", namespace: str = NAMESPACE, **spec: object) -> dict:
    """Raw cluster agent desired-state body."""
    return {
        "apiVersion": "appdynamics.com/v1alpha1",
        "kind": "Clusteragent",
        "metadata": {"name": name, "namespace": namespace},
        "spec": {
            "image": "agent:1.0",
            "controllerUrl": "https://acme.saas.appdynamics.com",
            "account": "acme",
            "appName": "prod-cluster",
            **spec,
        },
    }


def collector_body(name: str = "k8s-collector", namespace: str = NAMESPACE, **spec: object) -> dict:
    """Raw cluster collector desired-state body."""
    return {
        "apiVersion": "appdynamics.com/v1alpha1",
        "kind": "Clustercollector",
        "metadata": {"name": name, "namespace": namespace},
        "spec": {
            "image": "collector:21.3.0",
            "controllerUrl": "https://acme.saas.appdynamics.com:443",
            "account": "acme",
            "accessSecret": "s3cr3t",
            **spec,
        },
    }


def infraviz_body(name: str = "k8s-infraviz", namespace: str = NAMESPACE, **spec: object) -> dict:
    """Raw infraviz desired-state body."""
    return {
        "apiVersion": "appdynamics.com/v1alpha1",
        "kind": "InfraViz",
        "metadata": {"name": name, "namespace": namespace},
        "spec": {
            "image": "machine-agent:21.9",
            "controllerUrl": "http://controller.local:8090",
            "account": "acme",
            **spec,
        },
    }
