"""converge CLI.

Usage:
    converge plan                     # Diff only, print the change set
    converge plan --destroy           # Preview a destroy
    converge apply                    # Reconcile until converged or failed
    converge destroy --yes            # Delete everything the target manages
    converge watch                    # Operator mode: reconcile on an interval

Exit codes: 0 converged, 1 failed, 2 configuration or graph error,
130 cancelled.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import click

from .client import ClusterAPIError, ClusterClient
from .config import Config, ConfigurationError
from .diff import ChangeAction, ChangeSet
from .graph import GraphError
from .ignore_rules import IgnoreRulesError
from .main import (
    build_reconciler,
    connect,
    install_signal_handlers,
    remove_signal_handlers,
    run_operator,
    setup_logging,
)
from .reconciler import Reconciler, ReconcileResult, ResourceStatus
from .spec_loader import SpecLoadError
from .state_store import StateStoreError

EXIT_CONVERGED = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_CANCELLED = 130

# Errors that mean the declarations or configuration are wrong, not the cluster
INPUT_ERRORS = (ConfigurationError, SpecLoadError, GraphError, IgnoreRulesError, StateStoreError)

ClientFactory = Callable[[Config], Awaitable[ClusterClient]]

_ACTION_SYMBOLS = {
    ChangeAction.CREATE: "+",
    ChangeAction.UPDATE: "~",
    ChangeAction.REQUIRES_REPLACE: "-/+",
    ChangeAction.DELETE: "-",
    ChangeAction.NO_OP: " ",
}

_STATUS_COLORS = {
    ResourceStatus.CONVERGED: "green",
    ResourceStatus.FAILED: "red",
    ResourceStatus.SKIPPED: "yellow",
    ResourceStatus.CANCELLED: "yellow",
}


def parse_variables(values: tuple[str, ...]) -> dict[str, str]:
    """Parse repeated --var NAME=VALUE options.

    Raises:
        click.BadParameter: If an entry has no '='.
    """
    variables: dict[str, str] = {}
    for item in values:
        name, sep, value = item.partition("=")
        if not sep or not name:
            raise click.BadParameter(f"expected NAME=VALUE, got {item!r}", param_hint="--var")
        variables[name.strip()] = value
    return variables


def build_config(options: dict[str, Any]) -> Config:
    """Environment configuration overridden by command-line options.

    Raises:
        ConfigurationError: If the result fails validation.
    """
    config = Config.from_env()
    overrides: dict[str, Any] = {}

    for option, attr in (
        ("target", "target"),
        ("kubeconfig", "kubeconfig"),
        ("kube_context", "kube_context"),
        ("concurrency", "concurrency_limit"),
        ("max_attempts", "max_attempts"),
        ("backoff", "backoff_seconds"),
        ("api_timeout", "api_timeout_seconds"),
        ("max_changes", "max_changes_per_pass"),
    ):
        if options.get(option) is not None:
            overrides[attr] = options[option]

    for option, attr in (
        ("manifests_dir", "manifests_dir"),
        ("state_dir", "state_dir"),
        ("ignore_rules", "ignore_rules_file"),
    ):
        if options.get(option) is not None:
            overrides[attr] = Path(options[option])

    if options.get("variables"):
        overrides["variables"] = {**config.variables, **parse_variables(options["variables"])}

    return dataclasses.replace(config, **overrides) if overrides else config


def target_options(f: Callable[..., Any]) -> Callable[..., Any]:
    """Options shared by every command."""
    decorators = [
        click.option(
            "--manifests-dir", "-m", type=click.Path(file_okay=False), help="Directory of YAML declarations"
        ),
        click.option("--target", "-t", help="Reconciliation target name (keys persisted state)"),
        click.option("--state-dir", type=click.Path(file_okay=False), help="Directory for persisted state"),
        click.option("--var", "variables", multiple=True, metavar="NAME=VALUE", help="Set a variable"),
        click.option("--kubeconfig", help="Path to kubeconfig"),
        click.option("--context", "kube_context", help="kubeconfig context"),
        click.option("--concurrency", type=int, help="Max actions in flight"),
        click.option("--max-attempts", type=int, help="Apply passes before giving up"),
        click.option("--backoff", type=float, help="Base backoff between passes, in seconds"),
        click.option("--api-timeout", type=int, help="Per-call timeout, in seconds"),
        click.option("--max-changes", type=int, help="Refuse passes touching more objects"),
        click.option(
            "--ignore-rules", type=click.Path(dir_okay=False), help="YAML file with ignore rules"
        ),
    ]
    for decorator in reversed(decorators):
        f = decorator(f)
    return f


def render_changeset(changeset: ChangeSet, show_unchanged: bool = False) -> list[str]:
    """Human-readable change set, one line per object plus deltas."""
    lines: list[str] = []
    for change in changeset:
        if not change.is_actionable and not show_unchanged:
            continue
        symbol = _ACTION_SYMBOLS[change.action]
        lines.append(f"{symbol:>3} {change.action.value:<16} {change.identity}")
        for delta in change.delta:
            lines.append(f"      {delta}")

    counts = changeset.counts()
    lines.append(
        f"Plan: {counts[ChangeAction.CREATE.value]} to create, "
        f"{counts[ChangeAction.UPDATE.value]} to update, "
        f"{counts[ChangeAction.REQUIRES_REPLACE.value]} to replace, "
        f"{counts[ChangeAction.DELETE.value]} to delete, "
        f"{counts[ChangeAction.NO_OP.value]} unchanged."
    )
    return lines


def render_result(result: ReconcileResult) -> list[str]:
    """Final report: every object's terminal status plus attempt counts."""
    lines = [f"Target {result.target}: {result.phase.value} after {result.attempts} attempt(s)"]
    for report in result.resources:
        line = f"  {report.status.value:<10} {report.identity} (attempts: {report.attempts})"
        if report.blocked_by and report.status == ResourceStatus.SKIPPED:
            line += f" blocked by {', '.join(report.blocked_by)}"
        if report.error:
            line += f": {report.error}"
        lines.append(line)
    if result.error is not None:
        lines.append(f"Error: {result.error}")
    return lines


async def _with_reconciler(
    config: Config,
    factory: ClientFactory,
    action: Callable[[Reconciler], Awaitable[Any]],
) -> Any:
    client = await factory(config)
    try:
        reconciler = build_reconciler(config, client)
        # SIGINT/SIGTERM cancel the pass; the result is still reported and recorded
        install_signal_handlers(reconciler)
        try:
            return await action(reconciler)
        finally:
            remove_signal_handlers()
    finally:
        await client.close()


def _client_factory(ctx: click.Context) -> ClientFactory:
    obj = ctx.obj or {}
    return obj.get("client_factory", connect)


def _run(ctx: click.Context, options: dict[str, Any], action: Callable[[Reconciler], Awaitable[Any]]) -> Any:
    """Build config, connect, run; map errors to exit codes."""
    try:
        config = build_config(options)
        return asyncio.run(_with_reconciler(config, _client_factory(ctx), action))
    except INPUT_ERRORS as e:
        click.secho(f"Error: {e}", fg="red", err=True)
        ctx.exit(EXIT_USAGE)
    except ClusterAPIError as e:
        click.secho(f"Cluster error: {e}", fg="red", err=True)
        ctx.exit(EXIT_FAILED)
    except KeyboardInterrupt:
        click.secho("Cancelled", fg="yellow", err=True)
        ctx.exit(EXIT_CANCELLED)


@click.group()
@click.version_option(version="0.1.0", prog_name="converge")
@click.option("--verbose", "-v", is_flag=True, help="Log progress (INFO)")
@click.option(
    "--log-format",
    type=click.Choice(["text", "json"]),
    default=None,
    help="Log format (default: CONVERGE_LOG_FORMAT, else json)",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, log_format: str | None) -> None:
    """converge: drive a Kubernetes cluster toward declared state.

    \b
    Quick Start:
        converge plan -m manifests/          # What would change?
        converge apply -m manifests/         # Make it so
        converge apply --var replicas=3      # Override a variable
    """
    ctx.ensure_object(dict)
    setup_logging(logging.INFO if verbose else logging.WARNING, log_format)


@cli.command()
@target_options
@click.option("--destroy", "destroy_plan", is_flag=True, help="Preview deleting everything")
@click.option("--all", "show_all", is_flag=True, help="Also list unchanged objects")
@click.pass_context
def plan(ctx: click.Context, destroy_plan: bool, show_all: bool, **options: Any) -> None:
    """Diff declared state against the cluster and print the change set."""
    changeset: ChangeSet = _run(
        ctx,
        options,
        lambda r: r.plan_destroy() if destroy_plan else r.plan(),
    )
    for line in render_changeset(changeset, show_unchanged=show_all):
        click.echo(line)
    ctx.exit(EXIT_CONVERGED)


@cli.command()
@target_options
@click.pass_context
def apply(ctx: click.Context, **options: Any) -> None:
    """Reconcile until converged, failed or out of attempts."""
    result: ReconcileResult = _run(ctx, options, lambda r: r.reconcile())
    _report(result)
    ctx.exit(result.exit_code)


@cli.command()
@target_options
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def destroy(ctx: click.Context, yes: bool, **options: Any) -> None:
    """Delete every object the target declares or previously created."""
    if not yes:
        click.confirm("Delete every object managed by this target?", abort=True)
    result: ReconcileResult = _run(ctx, options, lambda r: r.destroy())
    _report(result)
    ctx.exit(result.exit_code)


@cli.command()
@target_options
@click.option("--interval", type=int, help="Seconds between reconciliations")
@click.pass_context
def watch(ctx: click.Context, interval: int | None, **options: Any) -> None:
    """Operator mode: reconcile on an interval until SIGTERM/SIGINT."""
    try:
        config = build_config(options)
        if interval is not None:
            config = dataclasses.replace(config, watch_interval_seconds=interval)
    except INPUT_ERRORS as e:
        click.secho(f"Error: {e}", fg="red", err=True)
        ctx.exit(EXIT_USAGE)
    ctx.exit(asyncio.run(run_operator(config)))


def _report(result: ReconcileResult) -> None:
    color = "green" if result.success else "red"
    lines = render_result(result)
    click.secho(lines[0], fg=color, bold=True)
    for report, line in zip(result.resources, lines[1:], strict=False):
        click.secho(line, fg=_STATUS_COLORS[report.status])
    for line in lines[1 + len(result.resources):]:
        click.secho(line, fg="red")


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
