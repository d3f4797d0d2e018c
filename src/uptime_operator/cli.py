"""UptimeRobot operator CLI (uro).

Operator-facing commands for inspecting and driving deletion cleanup.

Usage:
    uro backoff-schedule                  # Show cleanup requeue bands
    uro resource show Monitor default web # Print a resource manifest
    uro resource delete Monitor default web
    uro resource skip-cleanup Monitor default web
    uro finalize Monitor default web      # Run deletion passes for one resource
    uro run                               # Finalize every pending deletion
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from pathlib import Path

import click
import yaml

from .backoff import schedule
from .cleanup import SKIP_CLEANUP_ANNOTATION, CleanupOrchestrator, format_duration
from .client import UptimeRobotClient
from .conditions import LoggingEventRecorder
from .config import CleanupBackoffParameters, ConfigurationError, OperatorConfig
from .errors import UptimeOperatorError
from .finalizer import FinalizerHandler
from .main import run_deletions, setup_logging
from .models import SUPPORTED_KINDS, ResourceRecord, ResourceRef
from .store import YamlResourceStore, mutate

KIND_CHOICE = click.Choice(sorted(SUPPORTED_KINDS))


def load_config() -> OperatorConfig:
    try:
        return OperatorConfig.from_env()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


def store_for(store_dir: Path | None, config: OperatorConfig) -> YamlResourceStore:
    return YamlResourceStore(store_dir or config.store_dir)


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="uro")
def cli() -> None:
    """UptimeRobot operator CLI (uro).

    \b
    Quick Start:
        uro backoff-schedule           # How cleanup retries slow down
        uro run                        # Finalize pending deletions
    """
    pass


@cli.command("backoff-schedule")
@click.option(
    "--timeout",
    "timeout_seconds",
    type=click.FloatRange(min=1),
    default=None,
    help="Cleanup timeout in seconds (default: CLEANUP_TIMEOUT_SECONDS or 600)",
)
def backoff_schedule(timeout_seconds: float | None) -> None:
    """Show the cleanup requeue delay for each stretch of the deadline."""
    config = load_config()
    timeout = timeout_seconds or config.cleanup_timeout_seconds
    params: CleanupBackoffParameters = config.cleanup_backoff

    click.echo(f"Cleanup timeout: {format_duration(timeout)}")
    for step in schedule(timeout, params):
        click.echo(
            f"  from {format_duration(step.starts_at_seconds):>8} "
            f"({step.starts_at_fraction:5.1%}): retry every {format_duration(step.delay_seconds)}"
        )
    click.echo(f"  after {format_duration(timeout)}: finalizer force-removed")


# =============================================================================
# Resource Commands
# =============================================================================


@cli.group()
def resource() -> None:
    """Resource record commands: show, delete, skip-cleanup."""
    pass


def _ref_arguments(func):  # type: ignore[no-untyped-def]
    func = click.argument("name")(func)
    func = click.argument("namespace")(func)
    func = click.argument("kind", type=KIND_CHOICE)(func)
    return click.option(
        "--store-dir",
        type=click.Path(file_okay=False, path_type=Path),
        default=None,
        help="Resource store directory (default: RESOURCE_STORE_DIR)",
    )(func)


def _mutate_record(store: YamlResourceStore, ref: ResourceRef, change) -> ResourceRecord:  # type: ignore[no-untyped-def]
    try:
        return asyncio.run(mutate(store, ref, change))
    except UptimeOperatorError as e:
        raise click.ClickException(str(e)) from e


@resource.command("show")
@_ref_arguments
def resource_show(kind: str, namespace: str, name: str, store_dir: Path | None) -> None:
    """Print a resource manifest."""
    store = store_for(store_dir, load_config())
    try:
        record = asyncio.run(store.get(ResourceRef(kind, namespace, name)))
    except UptimeOperatorError as e:
        raise click.ClickException(str(e)) from e
    click.echo(yaml.safe_dump(record.to_manifest(), sort_keys=False), nl=False)


@resource.command("delete")
@_ref_arguments
def resource_delete(kind: str, namespace: str, name: str, store_dir: Path | None) -> None:
    """Request deletion by setting the deletion timestamp."""
    store = store_for(store_dir, load_config())
    ref = ResourceRef(kind, namespace, name)

    def change(record: ResourceRecord) -> bool:
        if record.is_deleting:
            return False
        record.metadata.deletion_timestamp = datetime.now(UTC).replace(microsecond=0)
        return True

    _mutate_record(store, ref, change)
    click.echo(f"Deletion requested for {ref}")


@resource.command("skip-cleanup")
@_ref_arguments
def resource_skip_cleanup(kind: str, namespace: str, name: str, store_dir: Path | None) -> None:
    """Force-skip external cleanup for a resource."""
    store = store_for(store_dir, load_config())
    ref = ResourceRef(kind, namespace, name)

    def change(record: ResourceRecord) -> bool:
        if record.metadata.annotations.get(SKIP_CLEANUP_ANNOTATION) == "true":
            return False
        record.metadata.annotations[SKIP_CLEANUP_ANNOTATION] = "true"
        return True

    _mutate_record(store, ref, change)
    click.secho(f"Cleanup will be skipped for {ref}", fg="yellow")


# =============================================================================
# Cleanup Commands
# =============================================================================


@cli.command()
@_ref_arguments
@click.option("--once", is_flag=True, help="Run a single pass instead of waiting until done")
@click.option("--timeout", "timeout_seconds", type=click.FloatRange(min=1), default=None)
def finalize(
    kind: str,
    namespace: str,
    name: str,
    store_dir: Path | None,
    once: bool,
    timeout_seconds: float | None,
) -> None:
    """Run deletion cleanup passes for one resource."""
    config = load_config()
    setup_logging(config.log_level)
    store = store_for(store_dir, config)
    ref = ResourceRef(kind, namespace, name)

    async def _run() -> tuple[bool, str]:
        async with UptimeRobotClient.from_config(config) as client:
            orchestrator = CleanupOrchestrator.from_config(config, store, LoggingEventRecorder())
            handler = FinalizerHandler(store, orchestrator)
            record = await store.get(ref)
            if once:
                result = await handler.finalize(
                    ref, client.delete_action_for(record), timeout=timeout_seconds
                )
            else:
                result = await handler.run(
                    ref, client.delete_action_for, asyncio.Event(), timeout=timeout_seconds
                )
            message = result.outcome.message if result.outcome else ""
            if not result.done and result.requeue_after:
                message = f"{message}; next pass in {format_duration(result.requeue_after)}"
            return result.done, message

    try:
        done, message = asyncio.run(_run())
    except UptimeOperatorError as e:
        raise click.ClickException(str(e)) from e

    if done:
        click.secho(f"Finalized {ref}. {message}".strip(), fg="green")
    else:
        click.secho(f"Not finalized {ref}. {message}".strip(), fg="yellow")


@cli.command()
@click.option(
    "--store-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Resource store directory (default: RESOURCE_STORE_DIR)",
)
def run(store_dir: Path | None) -> None:
    """Finalize every pending deletion in the store."""
    config = load_config()
    setup_logging(config.log_level)
    store = store_for(store_dir, config)

    results = asyncio.run(run_deletions(config, asyncio.Event(), store=store))
    finished = sum(1 for result in results.values() if result.done)
    click.echo(f"Finalized {finished} of {len(results)} pending deletions")


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
