"""Workload lifecycle controller.

One reconciliation pass for one desired-state key:

1. Fetch the desired state; if it is gone, clean up generated bundles (Absent)
2. Ensure the credential and rewrite the configuration bundle(s)
3. If the workload is missing, create it with its endpoint (Provisioning)
4. Otherwise classify drift against the prior snapshot and last-applied
   annotation, and apply it (Steady):
   - Restart: update the workload, delete one running pod, requeue
   - InPlaceUpdate: update the workload, requeue
   - NoChange: refresh the agent-reported status, stop

The same driver runs every family; only the workload shape and the
configuration documents differ.

ARCHITECTURE:
Passes are synchronous and never retried internally beyond the single
conflict re-fetch in update_with_retry. Failures are captured on
ReconcileResult.error and handed back to the event-delivery layer, which owns
backoff. No state is cached between passes; everything durable lives in the
configuration bundle, the last-applied annotation, or the status subresource.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import ValidationError

from .cluster import ClusterApiError, ClusterClient, ConflictError, NotFoundError
from .config import OperatorConfig
from .drift import (
    CLUSTER_COLLECTOR_RESTART_FIELDS,
    HOST_COLLECTOR_RESTART_FIELDS,
    DriftReport,
    Verdict,
    classify,
    classify_last_applied,
)
from .endpoint import MalformedEndpointError
from .models import AgentFamily, ClusterCollectorSpec, ConfigSnapshot, DesiredState
from .resources import (
    DependentResourceManager,
    MissingTrustBundleError,
    SerializationError,
    credential_revision,
)
from .status import StatusReporter, StatusUnavailableError, service_address
from .workloads import (
    CLUSTER_AGENT_COMPONENT,
    CLUSTER_COLLECTOR_COMPONENT,
    HOST_COLLECTOR_COMPONENT,
    HOST_COLLECTOR_SUFFIX,
    INFRAVIZ_COMPONENT,
    WORKLOAD_EVENT_ANNOTATION,
    ManagedWorkload,
    NodeWorkload,
    RestartError,
    ScaledWorkload,
    build_agent_deployment,
    build_collector_deployment,
    build_host_collector_daemonset,
    build_infraviz_daemonset,
)

logger = logging.getLogger(__name__)


class ContextAdapter(logging.LoggerAdapter):
    """LoggerAdapter that merges per-call extras over the key context."""

    def process(self, msg: Any, kwargs: Any) -> tuple[Any, Any]:
        kwargs["extra"] = {**(self.extra or {}), **(kwargs.get("extra") or {})}
        return msg, kwargs


class LifecycleState(str, Enum):
    """Where a desired-state key is in its lifecycle."""

    ABSENT = "Absent"
    PROVISIONING = "Provisioning"
    STEADY = "Steady"


@dataclass
class ReconcileResult:
    """Result of a single reconciliation pass."""

    family: AgentFamily
    namespace: str
    name: str
    state: LifecycleState | None = None
    verdict: Verdict | None = None
    reasons: list[str] = field(default_factory=list)
    requeue_after: int | None = None
    restarted_pods: list[str] = field(default_factory=list)
    status_updated: bool = False
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """Check if reconciliation succeeded."""
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "family": self.family.value,
            "namespace": self.namespace,
            "name": self.name,
            "state": self.state.value if self.state else None,
            "verdict": self.verdict.label if self.verdict is not None else None,
            "reasons": self.reasons,
            "requeue_after": self.requeue_after,
            "restarted_pods": self.restarted_pods,
            "status_updated": self.status_updated,
            "duration_seconds": self.duration_seconds,
            "success": self.success,
            "error": str(self.error) if self.error else None,
        }


class Reconciler:
    """Drives desired-state keys of every family towards their desired state.

    Holds no per-key state; one instance serves all keys. Passes for the same
    key must not run concurrently, which the event-delivery layer guarantees.
    """

    def __init__(
        self,
        cluster: ClusterClient,
        config: OperatorConfig,
        status_reporter: StatusReporter | None = None,
    ) -> None:
        """Initialize reconciler.

        Args:
            cluster: Orchestration API access.
            config: Validated operator configuration.
            status_reporter: Agent status client; built from config if omitted.
        """
        self._cluster = cluster
        self._config = config
        self._status = status_reporter or StatusReporter(config.status_timeout_seconds)

    @property
    def config(self) -> OperatorConfig:
        """Get the reconciler configuration."""
        return self._config

    def _logger_for(self, family: AgentFamily, namespace: str, name: str) -> logging.LoggerAdapter:
        return ContextAdapter(logger, {"family": family.value, "namespace": namespace, "resource": name})

    # =========================================================================
    # Entry points
    # =========================================================================

    def reconcile(self, family: AgentFamily, namespace: str, name: str) -> ReconcileResult:
        """Run one reconciliation pass for a desired-state key.

        Never raises; failures are returned on ReconcileResult.error.
        """
        log = self._logger_for(family, namespace, name)
        result = ReconcileResult(family=family, namespace=namespace, name=name)
        resources = DependentResourceManager(self._cluster, self._config, log)

        try:
            try:
                body = self._cluster.get_desired(family, namespace, name)
            except NotFoundError:
                log.info("Desired state not found, cleaning up")
                result.state = LifecycleState.ABSENT
                resources.cleanup(family, namespace)
                return result

            desired = DesiredState.from_body(family, body)
            match family:
                case AgentFamily.CLUSTER_AGENT:
                    self._reconcile_agent(desired, resources, result, log)
                case AgentFamily.CLUSTER_COLLECTOR:
                    self._reconcile_collector(desired, resources, result, log)
                case AgentFamily.INFRA_VIZ:
                    self._reconcile_infraviz(desired, resources, result, log)

        except ValidationError as e:
            result.error = e
            log.error("Invalid desired state", extra={"error": str(e)})
        except (MalformedEndpointError, MissingTrustBundleError) as e:
            result.error = e
            log.error("Configuration error", extra={"error": str(e)})
        except SerializationError as e:
            result.error = e
            log.error("Configuration bundle unreadable", extra={"error": str(e)})
        except ConflictError as e:
            result.error = e
            log.warning("Update conflict persisted after retry", extra={"error": str(e)})
        except (ClusterApiError, RestartError) as e:
            result.error = e
            log.error("Orchestration API error", extra={"error": str(e)})
        except Exception as e:
            result.error = e
            log.exception("Unexpected error during reconciliation")
        finally:
            result.end_time = datetime.now(UTC)
            self._log_result(result, log)

        return result

    def cleanup(self, family: AgentFamily, namespace: str, name: str) -> ReconcileResult:
        """Remove generated bundles for a deleted desired state."""
        log = self._logger_for(family, namespace, name)
        result = ReconcileResult(family=family, namespace=namespace, name=name)
        result.state = LifecycleState.ABSENT
        DependentResourceManager(self._cluster, self._config, log).cleanup(family, namespace)
        result.end_time = datetime.now(UTC)
        self._log_result(result, log)
        return result

    def request_reconcile(
        self, family: AgentFamily, namespace: str, name: str, trigger: str
    ) -> bool:
        """Ask the event-delivery layer for a pass of a desired-state key.

        Records ``trigger`` in an annotation on the desired state. The update
        event that follows is handled by the key's own serialized handler, so
        the pass never runs beside another pass of the same key.

        Args:
            family: Desired-state family of the owner.
            namespace: Namespace of the owner.
            name: Name of the owner.
            trigger: Identifies the workload change; a repeated trigger is
                not written again.

        Returns:
            True if the annotation was written.

        Raises:
            ClusterApiError: On API failure other than a missing owner.
        """
        log = self._logger_for(family, namespace, name)
        try:
            body = self._cluster.get_desired(family, namespace, name)
            annotations = body.get("metadata", {}).get("annotations") or {}
            if annotations.get(WORKLOAD_EVENT_ANNOTATION) == trigger:
                return False
            self._cluster.annotate_desired(
                family, namespace, name, {WORKLOAD_EVENT_ANNOTATION: trigger}
            )
        except NotFoundError:
            log.debug("Owner not found, nothing to reconcile", extra={"trigger": trigger})
            return False
        log.info("Requested owner reconcile", extra={"trigger": trigger})
        return True

    # =========================================================================
    # Family passes
    # =========================================================================

    def _reconcile_agent(
        self,
        desired: DesiredState,
        resources: DependentResourceManager,
        result: ReconcileResult,
        log: logging.LoggerAdapter,
    ) -> None:
        credential = resources.ensure_credential(desired.namespace)
        resources.ensure_tls_trust_config(desired)

        workload = ScaledWorkload(self._cluster, desired.namespace, desired.name, log)
        missing = workload.init()
        bundle = resources.ensure_config_bundle(
            desired, credential_revision(credential), fresh=missing
        )
        snapshot = bundle.current
        resources.ensure_endpoint(desired, snapshot)
        template = build_agent_deployment(desired, snapshot, credential, self._config)

        if missing:
            result.state = LifecycleState.PROVISIONING
            workload.create(template)
            # Best effort; the agent is usually not serving yet
            self._refresh_status(desired, snapshot, result, log)
            return

        result.state = LifecycleState.STEADY
        report = classify(
            desired, bundle.previous, workload.get() or {}, credential, CLUSTER_AGENT_COMPONENT
        )
        self._apply_drift(workload, template, report, result, log)

        if result.verdict == Verdict.NO_CHANGE:
            self._refresh_status(desired, snapshot, result, log)
        else:
            result.requeue_after = self._config.requeue_interval_seconds

    def _reconcile_collector(
        self,
        desired: DesiredState,
        resources: DependentResourceManager,
        result: ReconcileResult,
        log: logging.LoggerAdapter,
    ) -> None:
        spec = desired.spec_as(ClusterCollectorSpec)
        credential = resources.ensure_credential(desired.namespace)
        resources.ensure_collector_bundles(desired)

        pairs: list[tuple[ManagedWorkload, dict[str, Any], str, frozenset[str], str]] = [
            (
                ScaledWorkload(self._cluster, desired.namespace, desired.name, log),
                build_collector_deployment(desired, self._config),
                CLUSTER_COLLECTOR_COMPONENT,
                CLUSTER_COLLECTOR_RESTART_FIELDS,
                spec.image,
            ),
            (
                NodeWorkload(
                    self._cluster, desired.namespace, f"{desired.name}{HOST_COLLECTOR_SUFFIX}", log
                ),
                build_host_collector_daemonset(desired, self._config),
                HOST_COLLECTOR_COMPONENT,
                HOST_COLLECTOR_RESTART_FIELDS,
                spec.host_collector.image or spec.image,
            ),
        ]

        created = False
        for workload, template, container, restart_fields, image in pairs:
            if workload.init():
                workload.create(template)
                created = True
                continue
            report = classify_last_applied(
                desired,
                workload.get() or {},
                credential,
                container,
                restart_fields=restart_fields,
                desired_image=image,
            )
            self._apply_drift(workload, template, report, result, log)

        result.state = LifecycleState.PROVISIONING if created else LifecycleState.STEADY
        result.requeue_after = self._config.requeue_interval_seconds

        # Collectors report no status of their own; record that the pass settled
        if created or result.verdict == Verdict.NO_CHANGE:
            previous = (desired.body.get("status") or {}).get("state")
            if self._persist_status(desired, previous, log):
                result.status_updated = True

    def _reconcile_infraviz(
        self,
        desired: DesiredState,
        resources: DependentResourceManager,
        result: ReconcileResult,
        log: logging.LoggerAdapter,
    ) -> None:
        credential = resources.ensure_credential(desired.namespace)
        template = build_infraviz_daemonset(desired, credential, self._config)

        workload = NodeWorkload(self._cluster, desired.namespace, desired.name, log)
        if workload.init():
            result.state = LifecycleState.PROVISIONING
            workload.create(template)
            return

        result.state = LifecycleState.STEADY
        report = classify_last_applied(desired, workload.get() or {}, credential, INFRAVIZ_COMPONENT)
        self._apply_drift(workload, template, report, result, log)
        if result.verdict != Verdict.NO_CHANGE:
            result.requeue_after = self._config.requeue_interval_seconds

    # =========================================================================
    # Shared steps
    # =========================================================================

    def _apply_drift(
        self,
        workload: ManagedWorkload,
        template: dict[str, Any],
        report: DriftReport,
        result: ReconcileResult,
        log: logging.LoggerAdapter,
    ) -> None:
        """Apply one workload's drift verdict and fold it into the result."""
        verdict = report.verdict
        result.verdict = max(verdict, result.verdict or Verdict.NO_CHANGE)
        result.reasons.extend(f"{workload.name}: {reason}" for reason in report.describe())

        if verdict == Verdict.NO_CHANGE:
            log.debug("No drift", extra={"workload": workload.name})
            return

        log.info(
            "Drift detected",
            extra={
                "workload": workload.name,
                "verdict": verdict.label,
                "reasons": report.describe(),
            },
        )
        workload.update(template)
        if verdict == Verdict.RESTART:
            result.restarted_pods.append(workload.restart_one())

    def _refresh_status(
        self,
        desired: DesiredState,
        snapshot: ConfigSnapshot,
        result: ReconcileResult,
        log: logging.LoggerAdapter,
    ) -> None:
        """Fetch agent status and persist it when it changed.

        A failed fetch or a failed write leaves the previous status untouched
        and does not fail the pass.
        """
        try:
            observed = self._status.fetch_status(
                service_address(desired.name, desired.namespace), snapshot.agent_server_port
            )
        except StatusUnavailableError as e:
            log.warning("Agent status unavailable, keeping previous status", extra={"error": str(e)})
            return

        if desired.status.state == observed and desired.status.last_update_time:
            return

        if self._persist_status(desired, observed.model_dump(mode="json", by_alias=True), log):
            result.status_updated = True
            log.info("Updated desired state status", extra={"agent_version": observed.version})

    def _persist_status(
        self,
        desired: DesiredState,
        state: dict[str, Any] | None,
        log: logging.LoggerAdapter,
    ) -> bool:
        """Write the status subresource with a fresh lastUpdateTime.

        Returns:
            True if the status was written. API failures are logged and
            reported as False; the next pass writes again.
        """
        status: dict[str, Any] = {"lastUpdateTime": datetime.now(UTC).isoformat()}
        if state is not None:
            status["state"] = state
        try:
            self._write_status(desired, status, log)
        except ClusterApiError as e:
            log.warning("Failed to write status, keeping previous status", extra={"error": str(e)})
            return False
        return True

    def _write_status(
        self, desired: DesiredState, status: dict[str, Any], log: logging.LoggerAdapter
    ) -> None:
        body = copy.deepcopy(desired.body)
        body["status"] = status
        try:
            self._cluster.replace_desired_status(desired.family, body)
        except ConflictError:
            log.info("Status update conflict, re-fetching and retrying once")
            fresh = self._cluster.get_desired(desired.family, desired.namespace, desired.name)
            fresh["status"] = status
            self._cluster.replace_desired_status(desired.family, fresh)

    def _log_result(self, result: ReconcileResult, log: logging.LoggerAdapter) -> None:
        extra = {
            "state": result.state.value if result.state else None,
            "verdict": result.verdict.label if result.verdict is not None else None,
            "requeue_after": result.requeue_after,
            "restarted_pods": result.restarted_pods,
            "status_updated": result.status_updated,
            "duration_seconds": result.duration_seconds,
        }
        if result.error:
            extra["error"] = str(result.error)
            log.error("Reconciliation failed", extra=extra)
        else:
            log.info("Reconciliation result", extra=extra)
