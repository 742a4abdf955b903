"""Converge Operator CLI (convctl).

Usage:
    convctl apply spec.yaml                 # Create or update, wait for convergence
    convctl apply spec.yaml --no-wait       # Return once the remote accepted it
    convctl delete spec.yaml                # Delete (or release) the resource
    convctl validate spec.yaml              # Validate a spec offline
    convctl reconcile declared.yaml observed.yaml --ordered-field asNumbers
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import asdict
from pathlib import Path
from typing import Any, TypeVar

import click

from .main import run_mutation, setup_logging
from .reconcile import reconcile as reconcile_items
from .spec_loader import SpecLoadError, dump_items, load_items, load_spec
from .state import LifecycleAction

VERSION = "0.1.0"

F = TypeVar("F", bound=Callable[..., Any])


def _mutation_options(func: F) -> F:
    """Options shared by apply and delete."""
    func = click.option(
        "--timeout",
        "timeout_seconds",
        type=click.FloatRange(min=0, min_open=True),
        help="Overall convergence deadline in seconds",
    )(func)
    func = click.option(
        "--poll-interval",
        "poll_interval_seconds",
        type=click.FloatRange(min=0),
        help="Requested seconds between status polls (never below POLL_MINIMUM_SECONDS)",
    )(func)
    func = click.option(
        "--wait/--no-wait",
        "wait_for_convergence",
        default=None,
        help="Wait for convergence (default: spec, then WAIT_FOR_CONVERGENCE)",
    )(func)
    func = click.option("--verbose", "-v", is_flag=True, help="Log poll attempts")(func)
    return click.argument("spec", type=click.Path(exists=True, dir_okay=False, path_type=Path))(
        func
    )


def _run(
    ctx: click.Context,
    spec: Path,
    action: LifecycleAction,
    verbose: bool,
    wait_for_convergence: bool | None,
    poll_interval_seconds: float | None,
    timeout_seconds: float | None,
) -> None:
    setup_logging(logging.DEBUG if verbose else logging.INFO)
    exit_code = asyncio.run(
        run_mutation(
            spec,
            action,
            wait_for_convergence=wait_for_convergence,
            poll_interval_seconds=poll_interval_seconds,
            timeout_seconds=timeout_seconds,
        )
    )
    ctx.exit(exit_code)


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version=VERSION, prog_name="convctl")
def cli() -> None:
    """Converge Operator CLI (convctl).

    Applies declared resources to a remote configuration service and waits
    until the remote reports them converged.

    \b
    Exit codes:
        0  success
        1  configuration, spec or remote error
        2  security violation
        3  cancelled (remote state unknown)
    """
    pass


# =============================================================================
# Lifecycle Commands
# =============================================================================


@cli.command()
@_mutation_options
@click.pass_context
def apply(
    ctx: click.Context,
    spec: Path,
    verbose: bool,
    wait_for_convergence: bool | None,
    poll_interval_seconds: float | None,
    timeout_seconds: float | None,
) -> None:
    """Create or update the resource described by SPEC."""
    _run(
        ctx,
        spec,
        LifecycleAction.CREATE,
        verbose,
        wait_for_convergence,
        poll_interval_seconds,
        timeout_seconds,
    )


@cli.command()
@_mutation_options
@click.pass_context
def delete(
    ctx: click.Context,
    spec: Path,
    verbose: bool,
    wait_for_convergence: bool | None,
    poll_interval_seconds: float | None,
    timeout_seconds: float | None,
) -> None:
    """Delete the resource described by SPEC."""
    _run(
        ctx,
        spec,
        LifecycleAction.DELETE,
        verbose,
        wait_for_convergence,
        poll_interval_seconds,
        timeout_seconds,
    )


# =============================================================================
# Offline Commands
# =============================================================================


@cli.command()
@click.argument("spec", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def validate(spec: Path) -> None:
    """Validate SPEC and print the desired state it produces."""
    try:
        loaded = load_spec(spec)
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e

    desired = loaded.to_desired_state()
    data = asdict(desired)
    click.echo(json.dumps(data, indent=2, default=sorted))


@cli.command()
@click.argument("declared", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("observed", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--ordered-field",
    "-o",
    "ordered_fields",
    multiple=True,
    help="List attribute whose element order follows DECLARED (repeatable)",
)
def reconcile(declared: Path, observed: Path, ordered_fields: tuple[str, ...]) -> None:
    """Merge an OBSERVED item list into the order of a DECLARED one.

    Both files are YAML or JSON lists of {key, attributes} mappings; observed
    entries may carry an id. Prints the reconciled list as JSON.
    """
    try:
        declared_items = load_items(declared)
        observed_items = load_items(observed, observed=True)
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e

    result = reconcile_items(declared_items, observed_items, ordered_fields=ordered_fields)
    click.echo(dump_items(result))


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
