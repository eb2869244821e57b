"""Fleet reconciler CLI (fleetctl).

Operator-facing commands around the reconciler.

Usage:
    fleetctl validate policy.yaml          # Check a policy file
    fleetctl plan                          # Dry run against every vCenter
    fleetctl apply --batch-size 10 --yes   # Reconcile for real

Connection settings come from the same environment variables as the
fleet-reconciler service (VCENTER_HOSTS, VCENTER_USER, ...); options
given on the command line override them.
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import os
import signal
import sys
from pathlib import Path

import click

from .config import Config, ConfigurationError, RunOptions
from .main import exit_code_for, reconcile_all, setup_logging
from .models import PolicySpec
from .records import EntryStatus, RunResult
from .spec_loader import SpecLoadError, load_policy

# Entries listed per vCenter in plan output
MAX_PLAN_LINES = 200


def apply_env_overrides(**values: object) -> None:
    """Set environment variables for every option given on the command line."""
    for key, value in values.items():
        if value is None:
            continue
        if isinstance(value, tuple | list):
            if value:
                os.environ[key] = ",".join(str(v) for v in value)
        else:
            os.environ[key] = str(value)


def load_settings(dry_run: bool, **overrides: object) -> tuple[Config, PolicySpec, RunOptions]:
    """Load configuration and policy, converting errors to CLI errors.

    Run options resolve in order: environment, policy batch section,
    then command-line overrides.
    """
    try:
        config = Config.from_env()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    try:
        policy = load_policy(config.policy_file)
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e

    changes = {name: value for name, value in overrides.items() if value is not None}
    try:
        options = policy.run_options(config.run_options())
        options = dataclasses.replace(options, dry_run=dry_run, **changes)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    return config, policy, options


def run_reconciliation(config: Config, policy: PolicySpec, options: RunOptions) -> list[RunResult]:
    """Run every vCenter with Ctrl-C wired to clean cancellation."""

    async def _run() -> list[RunResult]:
        cancel_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, cancel_event.set)
        return await reconcile_all(config, policy, options, cancel_event)

    return asyncio.run(_run())


def echo_plan(result: RunResult) -> None:
    pending = [e for e in result.planned if e.status == EntryStatus.PENDING]
    skipped = [e for e in result.planned if e.status == EntryStatus.SKIPPED]
    if result.error:
        click.echo(f"{result.endpoint}: ERROR {result.error}", err=True)
        return

    click.echo(
        f"{result.endpoint}: {len(pending)} to change, {len(skipped)} not mutable, "
        f"{result.total_considered} considered, {result.degraded_count} unreadable"
    )
    for entry in pending[:MAX_PLAN_LINES]:
        name = entry.entity.name or entry.entity_id
        current = entry.from_value if entry.from_value is not None else "<unknown>"
        click.echo(f"  ~ {name} ({entry.entity_id}): {current} -> {entry.to_value}")
    if len(pending) > MAX_PLAN_LINES:
        click.echo(f"  ... and {len(pending) - MAX_PLAN_LINES} more")
    for entry in skipped[:MAX_PLAN_LINES]:
        name = entry.entity.name or entry.entity_id
        click.echo(f"  - {name} ({entry.entity_id}): skipped, {entry.entity.power_state.value}")


def echo_outcome(result: RunResult) -> None:
    if result.error:
        click.echo(f"{result.endpoint}: ERROR {result.error}", err=True)
        return

    status = "OK"
    if result.unresolved:
        status = "UNRESOLVED"
    elif result.halted:
        status = "HALTED"
    elif result.cancelled:
        status = "CANCELLED"
    elif result.total_failed:
        status = "FAILED"

    click.echo(f"{result.endpoint}: {status} - {result.summary()} ({len(result.batches)} batches)")
    for entry in result.entries():
        if entry.status in (EntryStatus.FAILED, EntryStatus.ROLLED_BACK):
            reason = entry.reason.value if entry.reason else ""
            click.echo(f"  ! {entry.entity_id} {entry.status.value} {reason}: {entry.error or ''}")
    for entity_id in result.unresolved:
        click.echo(f"  !! {entity_id} left in mutated state, rollback failed")


# =============================================================================
# CLI Root
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="fleetctl")
@click.option("--verbose", "-v", is_flag=True, help="Show structured logs on stderr")
def cli(verbose: bool) -> None:
    """Fleet reconciler CLI (fleetctl).

    Plan and apply a VM configuration policy across vCenter fleets.

    \b
    Quick Start:
        fleetctl validate policy.yaml
        fleetctl plan --policy policy.yaml
        fleetctl apply --policy policy.yaml --yes
    """
    setup_logging(logging.INFO if verbose else logging.WARNING)


@cli.command()
@click.argument("policy_file", type=click.Path(exists=True, dir_okay=False))
def validate(policy_file: str) -> None:
    """Validate a policy file without contacting any vCenter."""
    try:
        policy = load_policy(Path(policy_file))
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e

    scope = policy.scope
    click.echo(f"Policy OK: {policy.field_name} = {policy.desired_value}")
    click.echo(f"  include: {', '.join(scope.include) or '*'}")
    click.echo(f"  exclude: {', '.join(scope.exclude) or '-'}")
    if scope.datacenter:
        click.echo(f"  datacenter: {scope.datacenter}")
    if scope.cluster:
        click.echo(f"  cluster: {scope.cluster}")
    if policy.mutable_power_states is not None:
        states = ", ".join(state.value for state in policy.mutable_power_states)
        click.echo(f"  mutable power states: {states}")


def reconcile_options(func):  # type: ignore[no-untyped-def]
    """Options shared by plan and apply."""
    options = [
        click.option(
            "--policy",
            "policy_file",
            type=click.Path(exists=True, dir_okay=False),
            help="Policy file (POLICY_FILE)",
        ),
        click.option(
            "--host", "hosts", multiple=True, help="vCenter host, repeatable (VCENTER_HOSTS)"
        ),
        click.option("--batch-size", type=click.IntRange(1, 500), help="Initial batch size"),
        click.option(
            "--failure-threshold",
            type=click.FloatRange(0.0, 1.0, min_open=True),
            help="Batch failure fraction that halts the run",
        ),
        click.option(
            "--concurrency-cap", type=click.IntRange(1, 64), help="Max concurrent writes per batch"
        ),
        click.option(
            "--json", "as_json", is_flag=True, help="Print RunResult records as JSON lines"
        ),
    ]
    for option in reversed(options):
        func = option(func)
    return func


@cli.command()
@reconcile_options
def plan(
    policy_file: str | None,
    hosts: tuple[str, ...],
    batch_size: int | None,
    failure_threshold: float | None,
    concurrency_cap: int | None,
    as_json: bool,
) -> None:
    """Compute the change-set for every vCenter without applying it."""
    apply_env_overrides(POLICY_FILE=policy_file, VCENTER_HOSTS=hosts)
    config, policy, options = load_settings(
        dry_run=True,
        batch_size=batch_size,
        failure_threshold=failure_threshold,
        concurrency_cap=concurrency_cap,
    )
    results = run_reconciliation(config, policy, options)

    for result in results:
        if as_json:
            click.echo(json.dumps(result.to_dict()))
        else:
            echo_plan(result)
    sys.exit(exit_code_for(results))


@cli.command()
@reconcile_options
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
def apply(
    policy_file: str | None,
    hosts: tuple[str, ...],
    batch_size: int | None,
    failure_threshold: float | None,
    concurrency_cap: int | None,
    as_json: bool,
    yes: bool,
) -> None:
    """Reconcile every vCenter to the policy."""
    apply_env_overrides(POLICY_FILE=policy_file, VCENTER_HOSTS=hosts)
    config, policy, options = load_settings(
        dry_run=False,
        batch_size=batch_size,
        failure_threshold=failure_threshold,
        concurrency_cap=concurrency_cap,
    )

    if not yes:
        click.confirm(
            f"Set {policy.field_name} = {policy.desired_value} on "
            f"{', '.join(config.vcenter_hosts)} in batches of {options.batch_size}?",
            abort=True,
        )

    results = run_reconciliation(config, policy, options)
    for result in results:
        if as_json:
            click.echo(json.dumps(result.to_dict()))
        else:
            echo_outcome(result)
    sys.exit(exit_code_for(results))


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
