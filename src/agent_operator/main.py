"""Event binding and process entry point.

kopf delivers point-in-time events and serializes handlers per object, which
gives each desired-state key a single logical worker. Every event is turned
into "reconcile key K now":

- create / update / resume of a desired-state object -> reconcile
- delete of a desired-state object -> cleanup of generated bundles
- a change to a Deployment/DaemonSet labelled as managed by the operator
  -> annotate the desired state that owns it, which arrives as its update

A pass that fails, or asks to be requeued, raises kopf.TemporaryError with
the matching delay so kopf re-runs the handler. Invalid desired state raises
kopf.PermanentError; retrying cannot fix it.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

import kopf
from pydantic import ValidationError

from .cluster import ClusterApiError, KubernetesCluster
from .config import ConfigurationError, OperatorConfig
from .models import API_GROUP, API_VERSION, AgentFamily
from .reconciler import Reconciler, ReconcileResult
from .workloads import MANAGED_BY, MANAGED_BY_LABEL

logger = logging.getLogger(__name__)

FINALIZER = f"{API_GROUP}/agent-operator"

_RECORD_ATTRIBUTES = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRIBUTES:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: str = "INFO", json_output: bool = True) -> None:
    """Configure structured logging with JSON output for production."""
    handler = logging.StreamHandler(sys.stdout)
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)

    # Reduce noise from client libraries
    for noisy in ("kubernetes", "urllib3", "httpx", "httpcore", "kopf"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


# =============================================================================
# Handler plumbing
# =============================================================================


def _reconciler(memo: Any) -> Reconciler:
    reconciler = getattr(memo, "reconciler", None)
    if reconciler is None:
        raise kopf.PermanentError("Operator not initialised: no reconciler in memo")
    return reconciler


def finish(result: ReconcileResult, config: OperatorConfig) -> dict[str, Any]:
    """Translate a pass result into kopf's retry semantics.

    Raises:
        kopf.PermanentError: If the desired state is invalid.
        kopf.TemporaryError: If the pass failed or asked to be requeued.
    """
    if isinstance(result.error, ValidationError):
        raise kopf.PermanentError(f"Invalid desired state: {result.error}")
    if result.error is not None:
        raise kopf.TemporaryError(str(result.error), delay=config.error_retry_delay_seconds)
    if result.requeue_after is not None:
        raise kopf.TemporaryError("Requeue to refresh state", delay=result.requeue_after)
    return result.to_dict()


def owner_key(body: dict[str, Any]) -> tuple[AgentFamily, str] | None:
    """Family and name of the desired state controlling a workload."""
    kinds = {family.kind: family for family in AgentFamily}
    for ref in body.get("metadata", {}).get("ownerReferences") or []:
        family = kinds.get(ref.get("kind"))
        if family is not None and ref.get("apiVersion") == family.api_version:
            return family, ref["name"]
    return None


@kopf.on.startup()
def configure(settings: kopf.OperatorSettings, memo: kopf.Memo, **_: Any) -> None:
    """Build the reconciler once per process and tune kopf."""
    settings.persistence.finalizer = FINALIZER
    settings.posting.level = logging.WARNING

    if getattr(memo, "reconciler", None) is None:
        config = OperatorConfig.from_env()
        memo.reconciler = Reconciler(KubernetesCluster.from_environment(), config)

    logger.info(
        "Operator started",
        extra={
            "watch_namespaces": list(memo.reconciler.config.watch_namespaces),
            "requeue_interval_seconds": memo.reconciler.config.requeue_interval_seconds,
        },
    )


def _register(family: AgentFamily) -> None:
    @kopf.on.resume(API_GROUP, API_VERSION, family.value, id=f"{family.value}-reconcile")
    @kopf.on.create(API_GROUP, API_VERSION, family.value, id=f"{family.value}-reconcile")
    @kopf.on.update(API_GROUP, API_VERSION, family.value, id=f"{family.value}-reconcile")
    def reconcile_desired(name: str, namespace: str, memo: kopf.Memo, **_: Any) -> dict[str, Any]:
        reconciler = _reconciler(memo)
        return finish(reconciler.reconcile(family, namespace, name), reconciler.config)

    @kopf.on.delete(API_GROUP, API_VERSION, family.value, id=f"{family.value}-cleanup")
    def cleanup_desired(name: str, namespace: str, memo: kopf.Memo, **_: Any) -> None:
        _reconciler(memo).cleanup(family, namespace, name)


for _family in AgentFamily:
    _register(_family)


def workload_trigger(body: dict[str, Any], deleted: bool = False) -> str:
    """Identify a managed workload change.

    Status-only changes keep the same generation and so the same trigger.
    """
    metadata = body.get("metadata", {})
    trigger = f"{body.get('kind', '')}/{metadata.get('name', '')}:{metadata.get('uid', '')}"
    if deleted:
        return f"{trigger}:deleted"
    return f"{trigger}:{metadata.get('generation', '')}"


@kopf.on.event("apps", "v1", "deployments", labels={MANAGED_BY_LABEL: MANAGED_BY})
@kopf.on.event("apps", "v1", "daemonsets", labels={MANAGED_BY_LABEL: MANAGED_BY})
def reconcile_owner(
    body: kopf.Body, namespace: str, memo: kopf.Memo, type: str | None, **_: Any
) -> None:
    """Wake the owning desired state when a managed workload changes.

    The owner is annotated rather than reconciled here, so its pass runs in
    its own update handler, serialized with every other pass of that key.
    """
    key = owner_key(dict(body))
    if key is None:
        return
    family, name = key
    deleted = type == "DELETED"
    if deleted:
        logger.info("Managed workload deleted", extra={"workload": body["metadata"]["name"]})
    try:
        _reconciler(memo).request_reconcile(
            family, namespace, name, workload_trigger(dict(body), deleted)
        )
    except ClusterApiError as e:
        logger.warning(
            "Failed to request owner reconcile",
            extra={"family": family.value, "resource": name, "error": str(e)},
        )


# =============================================================================
# Process entry
# =============================================================================


def run_operator(config: OperatorConfig) -> int:
    """Run kopf in the foreground until interrupted.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    memo = kopf.Memo(reconciler=Reconciler(KubernetesCluster.from_environment(), config))
    namespaces = list(config.watch_namespaces)
    logger.info(
        "Starting agent operator",
        extra={"watch_namespaces": namespaces or "cluster-wide"},
    )
    kopf.run(
        standalone=True,
        clusterwide=not namespaces,
        namespaces=namespaces,
        memo=memo,
    )
    return 0


def main(namespaces: tuple[str, ...] = ()) -> int:
    """Load configuration, set up logging and run the operator."""
    try:
        config = OperatorConfig.from_env()
        if namespaces:
            config = dataclasses.replace(config, watch_namespaces=namespaces)
    except ConfigurationError as e:
        setup_logging()
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    setup_logging(config.log_level, config.json_logging)
    return run_operator(config)
