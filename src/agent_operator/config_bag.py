"""Config bag resolution for the cluster agent.

The configuration snapshot is rebuilt from scratch on every pass:

1. Start from the fixed default snapshot
2. Overlay every non-empty field of the desired state
3. Stamp the credential object's revision
4. Flag whether instrumentation settings moved since the prior snapshot

Empty strings, empty lists and zero intervals in the desired state never
replace a default. Defaults are the floor, so users only specify what differs.
"""

from __future__ import annotations

from typing import Any

from .endpoint import parse_endpoint
from .models import AgentRequest, ClusterAgentSpec, ConfigSnapshot

DEFAULT_APP_NAME = "K8s-Cluster-Agent"
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_METRICS_SYNC_INTERVAL = 30
DEFAULT_SNAPSHOT_SYNC_INTERVAL = 15

# Fields copied verbatim from the desired state when non-empty
OVERLAY_FIELDS: tuple[str, ...] = (
    "controller_url",
    "account",
    "global_account",
    "app_name",
    "event_service_url",
    "proxy_url",
    "log_level",
    "system_ssl_cert",
    "agent_ssl_cert",
    "agent_ssl_store_name",
    "ns_to_monitor",
    "ns_to_monitor_exclude",
    "nodes_to_monitor",
    "nodes_to_monitor_exclude",
    "ns_to_instrument",
    "ns_to_instrument_exclude",
    "instrument_rule",
    "instrument_match_string",
    "metrics_sync_interval",
    "snapshot_sync_interval",
)

# Fields whose change is reported to the agent via instrumentation_updated
INSTRUMENTATION_FIELDS: tuple[str, ...] = (
    "ns_to_instrument",
    "ns_to_instrument_exclude",
    "instrument_rule",
    "instrument_match_string",
)


def default_snapshot() -> ConfigSnapshot:
    """Return the fixed default snapshot."""
    return ConfigSnapshot(
        app_name=DEFAULT_APP_NAME,
        log_level=DEFAULT_LOG_LEVEL,
        ns_to_monitor=["default"],
        metrics_sync_interval=DEFAULT_METRICS_SYNC_INTERVAL,
        snapshot_sync_interval=DEFAULT_SNAPSHOT_SYNC_INTERVAL,
    )


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == 0


def _rules_key(rules: list[AgentRequest]) -> list[dict[str, Any]]:
    return [rule.model_dump() for rule in rules]


def instrumentation_changed(prior: ConfigSnapshot, current: ConfigSnapshot) -> bool:
    """Check whether any instrumentation setting differs between snapshots."""
    for name in INSTRUMENTATION_FIELDS:
        before = getattr(prior, name)
        after = getattr(current, name)
        if name == "instrument_rule":
            before, after = _rules_key(before), _rules_key(after)
        if before != after:
            return True
    return False


def resolve(
    desired: ClusterAgentSpec,
    prior: ConfigSnapshot | None,
    credential_revision: str,
) -> ConfigSnapshot:
    """Merge defaults, the desired state and the credential revision.

    Args:
        desired: Desired cluster agent spec.
        prior: Snapshot persisted by the previous pass, None on first creation.
        credential_revision: Current revision of the credential object.

    Returns:
        A new ConfigSnapshot. The prior snapshot is only used to compute the
        instrumentation_updated flag; none of its values are carried over.
    """
    values = default_snapshot().model_dump()
    for name in OVERLAY_FIELDS:
        value = getattr(desired, name)
        if not _is_empty(value):
            values[name] = value.copy() if isinstance(value, list) else value

    values["secret_version"] = credential_revision
    values["instrumentation_updated"] = False
    snapshot = ConfigSnapshot.model_validate(values)

    if prior is not None:
        snapshot.instrumentation_updated = instrumentation_changed(prior, snapshot)
    return snapshot


def with_endpoint(snapshot: ConfigSnapshot) -> ConfigSnapshot:
    """Fill the controller host/port/TLS triple from the controller URL.

    An unset controller URL leaves the triple empty; the agent refuses to
    start and reports that itself.

    Raises:
        MalformedEndpointError: If the controller URL is set but unusable.
    """
    if not snapshot.controller_url:
        return snapshot
    endpoint = parse_endpoint(snapshot.controller_url)
    return snapshot.model_copy(
        update={
            "controller_dns": endpoint.host,
            "controller_port": endpoint.port,
            "ssl_enabled": endpoint.ssl_enabled,
        }
    )
