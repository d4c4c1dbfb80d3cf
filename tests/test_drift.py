"""Tests for drift classification."""

from typing import Any

from agent_operator.config import OperatorConfig
from agent_operator.config_bag import resolve, with_endpoint
from agent_operator.drift import (
    CLUSTER_COLLECTOR_RESTART_FIELDS,
    HOST_COLLECTOR_RESTART_FIELDS,
    Verdict,
    classify,
    classify_last_applied,
)
from agent_operator.models import AgentFamily, ConfigSnapshot, DesiredState
from agent_operator.workloads import (
    CLUSTER_AGENT_COMPONENT,
    CLUSTER_COLLECTOR_COMPONENT,
    HOST_COLLECTOR_COMPONENT,
    INFRAVIZ_COMPONENT,
    build_agent_deployment,
    build_collector_deployment,
    build_host_collector_daemonset,
    build_infraviz_daemonset,
)
from conftest import agent_body, collector_body, infraviz_body

CREDENTIAL = {"metadata": {"name": "cluster-agent-secret", "resourceVersion": "7"}, "data": {}}


def _desired(**spec: object) -> DesiredState:
    body = agent_body(**spec)
    body["metadata"]["uid"] = "uid-1"
    return DesiredState.from_body(AgentFamily.CLUSTER_AGENT, body)


def _snapshot(desired: DesiredState, revision: str = "7") -> ConfigSnapshot:
    return with_endpoint(resolve(desired.spec, None, revision))  # type: ignore[arg-type]


def _live(desired: DesiredState, revision: str = "7") -> dict[str, Any]:
    """Workload as it would be after applying ``desired``."""
    snapshot = _snapshot(desired, revision)
    return build_agent_deployment(desired, snapshot, CREDENTIAL, OperatorConfig())


class TestClassify:
    """Tests for the cluster agent classifier."""

    def test_no_change(self) -> None:
        """Test that an unchanged desired state classifies as NoChange."""
        desired = _desired()

        report = classify(
            desired, _snapshot(desired), _live(desired), CREDENTIAL, CLUSTER_AGENT_COMPONENT
        )

        assert report.verdict == Verdict.NO_CHANGE
        assert report.reasons == []

    def test_image_change_is_in_place(self) -> None:
        """Test that an image change is an in-place update."""
        applied = _desired()
        desired = _desired(image="agent:1.1")

        report = classify(
            desired, _snapshot(applied), _live(applied), CREDENTIAL, CLUSTER_AGENT_COMPONENT
        )

        assert report.verdict == Verdict.IN_PLACE_UPDATE
        assert report.fields == ["image"]

    def test_image_and_cert_change_is_restart(self) -> None:
        """Test that a certificate change beats a simultaneous image change."""
        applied = _desired(agentSSLCert="certX")
        desired = _desired(image="agent:1.1", agentSSLCert="certY")

        report = classify(
            desired, _snapshot(applied), _live(applied), CREDENTIAL, CLUSTER_AGENT_COMPONENT
        )

        assert report.verdict == Verdict.RESTART
        assert "image" in report.fields
        assert "agent_ssl_cert" in report.fields

    def test_credential_rotation_is_restart(self) -> None:
        """Test that a credential revision change alone triggers a restart."""
        desired = _desired()
        rotated = {**CREDENTIAL, "metadata": {"resourceVersion": "8"}}

        report = classify(
            desired, _snapshot(desired), _live(desired), rotated, CLUSTER_AGENT_COMPONENT
        )

        assert report.verdict == Verdict.RESTART
        assert report.fields == ["credentialRevision"]

    def test_all_restart_reasons_reported(self) -> None:
        """Test that every breaking field is reported, not just the first."""
        applied = _desired()
        desired = _desired(
            controllerUrl="https://other.saas.appdynamics.com",
            account="other",
            appName="renamed",
            systemSSLCert="system.crt",
        )

        report = classify(
            desired, _snapshot(applied), _live(applied), CREDENTIAL, CLUSTER_AGENT_COMPONENT
        )

        assert report.verdict == Verdict.RESTART
        assert set(report.fields) == {"controller_url", "account", "app_name", "system_ssl_cert"}

    def test_empty_desired_field_is_no_opinion(self) -> None:
        """Test that an empty account never drifts from a non-empty prior."""
        applied = _desired()
        desired = _desired(account="")
        prior = _snapshot(applied)
        assert prior.account == "acme"

        report = classify(desired, prior, _live(applied), CREDENTIAL, CLUSTER_AGENT_COMPONENT)

        assert report.verdict == Verdict.NO_CHANGE

    def test_resources_change_is_in_place(self) -> None:
        """Test that resources are compared against the last-applied annotation."""
        applied = _desired()
        desired = _desired(resources={"limits": {"memory": "512Mi"}})

        report = classify(
            desired, _snapshot(applied), _live(applied), CREDENTIAL, CLUSTER_AGENT_COMPONENT
        )

        assert report.verdict == Verdict.IN_PLACE_UPDATE
        assert report.fields == ["resources"]

    def test_missing_annotation_is_in_place(self) -> None:
        """Test that a workload without the annotation gets one written."""
        desired = _desired()
        live = _live(desired)
        live["metadata"]["annotations"] = {}

        report = classify(desired, _snapshot(desired), live, CREDENTIAL, CLUSTER_AGENT_COMPONENT)

        assert report.verdict == Verdict.IN_PLACE_UPDATE

    def test_no_prior_skips_snapshot_checks(self) -> None:
        """Test that without a prior snapshot only workload checks run."""
        desired = _desired()

        report = classify(desired, None, _live(desired), {"metadata": {}}, CLUSTER_AGENT_COMPONENT)

        assert report.verdict == Verdict.NO_CHANGE

    def test_describe(self) -> None:
        """Test human-readable reasons."""
        applied = _desired()
        desired = _desired(image="agent:2.0")

        report = classify(
            desired, _snapshot(applied), _live(applied), CREDENTIAL, CLUSTER_AGENT_COMPONENT
        )

        assert report.describe() == ["image: 'agent:1.0' -> 'agent:2.0' (InPlaceUpdate)"]


class TestClassifyLastApplied:
    """Tests for the annotation-only classifier used by infraviz and collectors."""

    def _infraviz(self, **spec: object) -> DesiredState:
        body = infraviz_body(**spec)
        body["metadata"]["uid"] = "uid-2"
        return DesiredState.from_body(AgentFamily.INFRA_VIZ, body)

    def _live(self, desired: DesiredState, credential: dict[str, Any]) -> dict[str, Any]:
        return build_infraviz_daemonset(desired, credential, OperatorConfig())

    def test_no_change(self) -> None:
        """Test that an unchanged infraviz spec is NoChange."""
        desired = self._infraviz()

        report = classify_last_applied(
            desired, self._live(desired, CREDENTIAL), CREDENTIAL, INFRAVIZ_COMPONENT
        )

        assert report.verdict == Verdict.NO_CHANGE

    def test_spec_change_is_in_place(self) -> None:
        """Test that any non-credential change is an in-place update."""
        applied = self._infraviz()
        desired = self._infraviz(enableDockerViz=True)

        report = classify_last_applied(
            desired, self._live(applied, CREDENTIAL), CREDENTIAL, INFRAVIZ_COMPONENT
        )

        assert report.verdict == Verdict.IN_PLACE_UPDATE
        assert report.fields == ["enableDockerViz"]

    def test_credential_rotation_is_restart(self) -> None:
        """Test that a credential revision change restarts the daemon."""
        desired = self._infraviz()
        rotated = {"metadata": {"resourceVersion": "99"}, "data": {}}

        report = classify_last_applied(
            desired, self._live(desired, CREDENTIAL), rotated, INFRAVIZ_COMPONENT
        )

        assert report.verdict == Verdict.RESTART

    def test_image_compared_with_live(self) -> None:
        """Test that an image change is detected against the running image."""
        applied = self._infraviz()
        desired = self._infraviz(image="machine-agent:22.1")

        report = classify_last_applied(
            desired, self._live(applied, CREDENTIAL), CREDENTIAL, INFRAVIZ_COMPONENT
        )

        assert report.verdict == Verdict.IN_PLACE_UPDATE
        assert report.fields == ["image"]


class TestCollectorRestartFields:
    """Tests for collector settings that only reach the process through bundles."""

    def _collector(self, **spec: object) -> DesiredState:
        body = collector_body(**spec)
        body["metadata"]["uid"] = "uid-3"
        return DesiredState.from_body(AgentFamily.CLUSTER_COLLECTOR, body)

    def test_controller_url_is_restart(self) -> None:
        """Test that a controller URL change restarts the collector deployment."""
        applied = self._collector()
        desired = self._collector(controllerUrl="https://other.saas.appdynamics.com")
        live = build_collector_deployment(applied, OperatorConfig())

        report = classify_last_applied(
            desired,
            live,
            container=CLUSTER_COLLECTOR_COMPONENT,
            restart_fields=CLUSTER_COLLECTOR_RESTART_FIELDS,
        )

        assert report.verdict == Verdict.RESTART
        assert report.fields == ["controllerUrl"]

    def test_workload_field_stays_in_place(self) -> None:
        """Test that template-only fields are still in-place updates."""
        applied = self._collector()
        desired = self._collector(serviceAccountName="collector-sa")
        live = build_collector_deployment(applied, OperatorConfig())

        report = classify_last_applied(
            desired,
            live,
            container=CLUSTER_COLLECTOR_COMPONENT,
            restart_fields=CLUSTER_COLLECTOR_RESTART_FIELDS,
        )

        assert report.verdict == Verdict.IN_PLACE_UPDATE
        assert report.fields == ["serviceAccountName"]

    def test_nested_host_field_reported_by_path(self) -> None:
        """Test that a host collector setting is reported by its dotted path."""
        applied = self._collector()
        desired = self._collector(hostCollector={"logLevel": "debug"})
        live = build_host_collector_daemonset(applied, OperatorConfig())

        report = classify_last_applied(
            desired,
            live,
            container=HOST_COLLECTOR_COMPONENT,
            restart_fields=HOST_COLLECTOR_RESTART_FIELDS,
        )

        assert report.verdict == Verdict.RESTART
        assert report.fields == ["hostCollector.logLevel"]

    def test_host_resources_stay_in_place(self) -> None:
        """Test that host collector resources roll with the template."""
        applied = self._collector()
        desired = self._collector(hostCollector={"resources": {"limits": {"cpu": "1"}}})
        live = build_host_collector_daemonset(applied, OperatorConfig())

        report = classify_last_applied(
            desired,
            live,
            container=HOST_COLLECTOR_COMPONENT,
            restart_fields=HOST_COLLECTOR_RESTART_FIELDS,
        )

        assert report.verdict == Verdict.IN_PLACE_UPDATE
        assert report.fields == ["hostCollector.resources"]

    def test_desired_image_overrides_spec_image(self) -> None:
        """Test that the explicit image is what gets compared with the live one."""
        desired = self._collector(hostCollector={"image": "host:2.0"})
        live = build_host_collector_daemonset(desired, OperatorConfig())

        report = classify_last_applied(
            desired,
            live,
            container=HOST_COLLECTOR_COMPONENT,
            restart_fields=HOST_COLLECTOR_RESTART_FIELDS,
            desired_image="host:2.0",
        )

        assert report.verdict == Verdict.NO_CHANGE
