"""IONOS Cloud Cluster API provider CLI (capic).

Usage:
    capic run                     # Run the provider (reads env configuration)
    capic validate ./manifests    # Validate manifests without touching state
    capic requests                # List tracked in-flight cloud requests
    capic status                  # Show phase and readiness of every object
"""

from __future__ import annotations

import asyncio
import logging
import sys
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path

import click

from .config import (
    DEFAULT_STATE_DIR,
    STORE_STATE_FILENAME,
    TRACKER_STATE_FILENAME,
    Config,
    ConfigurationError,
)
from .models import ClusterResource, MachineResource, ResourceKind
from .spec_loader import SpecLoadError, load_manifests
from .store import MemoryResourceStore
from .tracker import JsonFileTrackerStore, RequestTracker

STATE_DIR_OPTION = click.option(
    "--state-dir",
    type=click.Path(file_okay=False, path_type=Path),
    envvar="STATE_DIR",
    default=DEFAULT_STATE_DIR,
    show_default=True,
    help="Directory holding requests.json and resources.json",
)


@click.group()
@click.version_option(version="0.1.0", prog_name="capic")
def cli() -> None:
    """IONOS Cloud Cluster API infrastructure provider (capic).

    \b
    Quick Start:
        capic validate ./manifests
        MANIFESTS_DIR=./manifests capic run
    """
    pass


@cli.command()
@click.option("--manifests-dir", type=click.Path(exists=True, file_okay=False), default=None)
@click.option("--debug", is_flag=True, help="Log at DEBUG level")
def run(manifests_dir: str | None, debug: bool) -> None:
    """Run the provider until SIGTERM/SIGINT."""
    from .main import main, setup_logging

    setup_logging(logging.DEBUG if debug else logging.INFO)
    try:
        config = Config.from_env()
        if manifests_dir is not None:
            config = replace(config, manifests_dir=Path(manifests_dir))
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    sys.exit(asyncio.run(main(config)))


@cli.command()
@click.argument("path", type=click.Path(exists=True, file_okay=False, path_type=Path))
def validate(path: Path) -> None:
    """Load and validate every manifest below PATH."""
    try:
        resources = load_manifests(path)
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e

    counts = {kind: 0 for kind in ResourceKind}
    for resource in resources:
        counts[resource.key.kind] += 1
        click.echo(f"  {resource.key}")

    summary = ", ".join(f"{count} {kind.value}" for kind, count in counts.items())
    click.secho(f"✓ {len(resources)} objects valid ({summary})", fg="green")


@cli.command()
@STATE_DIR_OPTION
def requests(state_dir: Path) -> None:
    """List cloud requests tracked in STATE_DIR."""
    path = state_dir / TRACKER_STATE_FILENAME
    if not path.exists():
        click.echo(f"No tracker state at {path}")
        return

    tracker = RequestTracker(JsonFileTrackerStore(path))
    entries = tracker.list()
    if not entries:
        click.echo("No tracked requests")
        return

    now = datetime.now(UTC)
    for entry in entries:
        age = int(entry.age_seconds(now))
        click.echo(
            f"{entry.resource_key:<50} {entry.operation_kind.value:<13} "
            f"{entry.last_observed_state.value:<8} {entry.cloud_request_id or '-':<38} {age}s"
        )


@cli.command()
@STATE_DIR_OPTION
def status(state_dir: Path) -> None:
    """Show phase, readiness and failures of stored clusters and machines."""
    path = state_dir / STORE_STATE_FILENAME
    if not path.exists():
        click.echo(f"No resource state at {path}")
        return

    try:
        store = MemoryResourceStore(path)
    except ValueError as e:
        raise click.ClickException(f"Unreadable state file {path}: {e}") from e

    for kind in (ResourceKind.CLUSTER, ResourceKind.MACHINE):
        for resource in store.list(kind):
            if not isinstance(resource, (ClusterResource, MachineResource)):
                continue
            line = (
                f"{resource.key!s:<50} {resource.status.phase.value:<16} "
                f"ready={str(resource.status.ready).lower()}"
            )
            if resource.is_deleting:
                line += " deleting"
            if resource.status.failure_reason:
                line += f" failure={resource.status.failure_reason!r}"
            color = "red" if resource.status.failure_reason else None
            click.secho(line, fg=color)


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
