"""Agent operator CLI.

Usage:
    agent-operator run [--namespace NS]...          # Run the operator
    agent-operator reconcile FAMILY NAMESPACE NAME  # Run one pass and print the result
"""

from __future__ import annotations

import json
import sys

import click

from .cluster import KubernetesCluster
from .config import ConfigurationError, OperatorConfig
from .main import main, setup_logging
from .models import AgentFamily
from .reconciler import Reconciler


@click.group()
def cli() -> None:
    """Reconcile monitoring-agent workloads from their desired state."""


@cli.command()
@click.option(
    "--namespace",
    "-n",
    "namespaces",
    multiple=True,
    help="Namespace to watch (repeatable). Defaults to WATCH_NAMESPACE or cluster-wide.",
)
def run(namespaces: tuple[str, ...]) -> None:
    """Run the operator until interrupted."""
    sys.exit(main(namespaces))


@cli.command()
@click.argument("family", type=click.Choice([family.value for family in AgentFamily]))
@click.argument("namespace")
@click.argument("name")
def reconcile(family: str, namespace: str, name: str) -> None:
    """Run a single reconciliation pass for one desired-state object."""
    try:
        config = OperatorConfig.from_env()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    setup_logging(config.log_level, config.json_logging)
    reconciler = Reconciler(KubernetesCluster.from_environment(), config)
    result = reconciler.reconcile(AgentFamily(family), namespace, name)

    click.echo(json.dumps(result.to_dict(), indent=2))
    if not result.success:
        sys.exit(1)


if __name__ == "__main__":
    cli()
