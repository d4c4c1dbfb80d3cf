"""Drift classification.

Decides what a pass must do to a live workload:

- NO_CHANGE: nothing to apply
- IN_PLACE_UPDATE: mutable fields moved (image, resources, env, scheduling);
  the workload is replaced and the platform rolls it
- RESTART: process-start-only configuration moved (credential revision,
  controller endpoint, account, TLS certificates, collector settings read
  from mounted bundles); one running instance is deleted after the update

Every check runs and every matched reason is reported. The verdict is the
strongest reason found, so an image change together with a certificate
change is a RESTART that also carries the new image.

Empty desired fields mean "no opinion" and never produce drift. Mutable
fields are compared against the last-applied annotation, never against the
normalized live object. The image is the one exception: it is compared with
what is actually running.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any

from pydantic import ValidationError

from .models import ConfigSnapshot, DesiredState, WorkloadSpec
from .resources import credential_revision
from .workloads import LastApplied

# Restart fields shared by the desired spec and the config snapshot
RESTART_FIELDS: tuple[str, ...] = (
    "controller_url",
    "account",
    "global_account",
    "app_name",
    "event_service_url",
    "system_ssl_cert",
    "agent_ssl_cert",
)

# Fields that shape the workload object itself
WORKLOAD_FIELDS: tuple[str, ...] = (
    "resources",
    "env",
    "args",
    "service_account_name",
    "node_selector",
    "tolerations",
    "replicas",
    "custom_ssl_config_map",
    "agent_ssl_store_name",
)

# Collector settings that only reach the process through subPath-mounted
# bundles. The platform never propagates subPath updates, so any change to
# these needs a restart. Dotted names address nested spec fields.
COLLECTOR_BUNDLE_FIELDS: frozenset[str] = frozenset(
    {"controllerUrl", "account", "accessSecret", "systemConfigs"}
)
CLUSTER_COLLECTOR_RESTART_FIELDS: frozenset[str] = COLLECTOR_BUNDLE_FIELDS | {
    "clusterName",
    "nsToMonitorRegex",
    "nsToExcludeRegex",
    "clusterMonEnabled",
    "exporterAddress",
    "exporterPort",
    "logLevel",
}
HOST_COLLECTOR_RESTART_FIELDS: frozenset[str] = COLLECTOR_BUNDLE_FIELDS | {
    "hostCollector.containerCollectorPath",
    "hostCollector.containerCollectorDependency",
    "hostCollector.serverCollectorPath",
    "hostCollector.serverCollectorDependency",
    "hostCollector.containerMetricExporterAddress",
    "hostCollector.logLevel",
}


class Verdict(IntEnum):
    """Drift verdicts, ordered by strength."""

    NO_CHANGE = 0
    IN_PLACE_UPDATE = 1
    RESTART = 2

    @property
    def label(self) -> str:
        return {0: "NoChange", 1: "InPlaceUpdate", 2: "Restart"}[self.value]


@dataclass(frozen=True)
class DriftReason:
    """One drifted field and what it requires."""

    field: str
    verdict: Verdict
    before: Any = None
    after: Any = None

    def describe(self) -> str:
        return f"{self.field}: {self.before!r} -> {self.after!r} ({self.verdict.label})"


@dataclass
class DriftReport:
    """All drift found for one workload."""

    reasons: list[DriftReason] = field(default_factory=list)

    @property
    def verdict(self) -> Verdict:
        return max((reason.verdict for reason in self.reasons), default=Verdict.NO_CHANGE)

    @property
    def fields(self) -> list[str]:
        return [reason.field for reason in self.reasons]

    def add(self, name: str, verdict: Verdict, before: Any = None, after: Any = None) -> None:
        self.reasons.append(DriftReason(name, verdict, before, after))

    def describe(self) -> list[str]:
        return [reason.describe() for reason in self.reasons]


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def live_images(workload: dict[str, Any]) -> dict[str, str]:
    """Container name to image for a live workload."""
    containers = (
        workload.get("spec", {}).get("template", {}).get("spec", {}).get("containers") or []
    )
    return {c["name"]: c.get("image", "") for c in containers}


def _check_image(
    report: DriftReport, desired_image: str, live: dict[str, Any], container: str | None
) -> None:
    if not desired_image:
        return
    images = live_images(live)
    running = images.get(container) if container else next(iter(images.values()), None)
    if running != desired_image:
        report.add("image", Verdict.IN_PLACE_UPDATE, running, desired_image)


def _last_applied_spec(spec: WorkloadSpec, live: dict[str, Any]) -> tuple[LastApplied | None, WorkloadSpec | None]:
    applied = LastApplied.from_workload(live)
    if applied is None:
        return None, None
    try:
        return applied, type(spec).model_validate(applied.spec)
    except ValidationError:
        return applied, None


def _check_workload_fields(
    report: DriftReport, spec: WorkloadSpec, applied_spec: WorkloadSpec | None
) -> None:
    if applied_spec is None:
        report.add("last-applied-desired-state", Verdict.IN_PLACE_UPDATE)
        return
    for name in WORKLOAD_FIELDS:
        if name not in type(spec).model_fields:
            continue
        before = getattr(applied_spec, name)
        after = getattr(spec, name)
        if before != after:
            report.add(name, Verdict.IN_PLACE_UPDATE, _plain(before), _plain(after))


def _plain(value: Any) -> Any:
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json", by_alias=True)
    if isinstance(value, list):
        return [_plain(item) for item in value]
    return value


def classify(
    desired: DesiredState,
    prior: ConfigSnapshot | None,
    live: dict[str, Any],
    credential: dict[str, Any],
    container: str | None = None,
) -> DriftReport:
    """Classify drift of the cluster agent workload.

    Args:
        desired: Cluster agent desired state.
        prior: Snapshot from the previous pass; None skips the snapshot checks.
        live: Live workload object.
        credential: Live credential object.
        container: Name of the agent container in the workload.

    Returns:
        DriftReport listing every matched reason.
    """
    spec = desired.spec
    report = DriftReport()

    _check_image(report, spec.image, live, container)

    if prior is not None:
        revision = credential_revision(credential)
        if prior.secret_version != revision:
            report.add("credentialRevision", Verdict.RESTART, prior.secret_version, revision)

        for name in RESTART_FIELDS:
            after = getattr(spec, name)
            if _is_empty(after):
                continue
            before = getattr(prior, name)
            if before != after:
                report.add(name, Verdict.RESTART, before, after)

    _, applied_spec = _last_applied_spec(spec, live)
    _check_workload_fields(report, spec, applied_spec)
    return report


def _diff_view(document: dict[str, Any], restart_fields: frozenset[str]) -> dict[str, Any]:
    """Flatten the nested sections that dotted restart fields point into."""
    nested = {name.split(".", 1)[0] for name in restart_fields if "." in name}
    view: dict[str, Any] = {}
    for key, value in document.items():
        if key in nested and isinstance(value, dict):
            for sub, sub_value in value.items():
                view[f"{key}.{sub}"] = sub_value
        else:
            view[key] = value
    return view


def classify_last_applied(
    desired: DesiredState,
    live: dict[str, Any],
    credential: dict[str, Any] | None = None,
    container: str | None = None,
    restart_fields: frozenset[str] = frozenset(),
    desired_image: str | None = None,
) -> DriftReport:
    """Classify drift of a workload diffed against its last-applied annotation.

    Spec changes are in-place updates; the platform rolls the pods when the
    template changes. Fields in ``restart_fields`` reach the process only
    through mounted bundles and are restarts instead. A credential revision
    change is a restart, but only for workloads whose last-applied annotation
    recorded one.

    Args:
        desired: Desired state of the owning family.
        live: Live workload object.
        credential: Live credential object, if the workload tracks it.
        container: Name of the container whose image is compared.
        restart_fields: Annotation keys (dotted for nested fields) that
            require a restart when they change.
        desired_image: Image expected in ``container``; defaults to the
            spec's image.
    """
    spec = desired.spec
    report = DriftReport()

    _check_image(report, spec.image if desired_image is None else desired_image, live, container)

    applied, applied_spec = _last_applied_spec(spec, live)
    if applied is not None and applied.credential_revision is not None and credential is not None:
        revision = credential_revision(credential)
        if applied.credential_revision != revision:
            report.add(
                "credentialRevision", Verdict.RESTART, applied.credential_revision, revision
            )

    if applied_spec is None:
        report.add("last-applied-desired-state", Verdict.IN_PLACE_UPDATE)
        return report

    before = _diff_view(applied_spec.to_annotation(), restart_fields)
    after = _diff_view(spec.to_annotation(), restart_fields)
    for name in sorted(set(before) | set(after)):
        if name == "image":
            continue
        if before.get(name) != after.get(name):
            verdict = Verdict.RESTART if name in restart_fields else Verdict.IN_PLACE_UPDATE
            report.add(name, verdict, before.get(name), after.get(name))
    return report
