"""Convergence engine CLI (converger).

Usage:
    converger validate deploy.yaml    # Check a document without touching AWS
    converger plan deploy.yaml        # Show the actions a run would take
    converger apply deploy.yaml       # Converge and exit with the run status
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import click

from .actions import ActionOutcome, ConvergenceReport, ConvergenceStatus, Plan
from .config import (
    DEFAULT_CALL_TIMEOUT_SECONDS,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_RUN_TIMEOUT_SECONDS,
    Config,
    ConfigurationError,
)
from .main import build_orchestrator, setup_logging
from .models import DesiredDeployment
from .observer import ObserveError
from .orchestrator import Orchestrator
from .planner import PlanError, validate
from .provenance import RunProvenance, get_provenance_logger
from .security import SecretLiteralError, redact_environment
from .spec_loader import SpecLoadError, document_hash, load_desired

logger = logging.getLogger(__name__)

# Exit code for a literal secret in the document
EXIT_SECURITY_VIOLATION = 2

OUTCOME_COLORS = {
    ActionOutcome.APPLIED: "green",
    ActionOutcome.SKIPPED: "yellow",
    ActionOutcome.FAILED: "red",
}

STATUS_COLORS = {
    ConvergenceStatus.CONVERGED: "green",
    ConvergenceStatus.PARTIALLY_CONVERGED: "yellow",
    ConvergenceStatus.FAILED: "red",
}


def provider_options(fn: Callable[..., Any]) -> Callable[..., Any]:
    """Options shared by commands that talk to the provider."""
    fn = click.option(
        "--max-attempts",
        type=click.IntRange(1, 10),
        default=DEFAULT_MAX_ATTEMPTS,
        show_default=True,
        help="Attempts per action for throttled or transient failures",
    )(fn)
    fn = click.option(
        "--run-timeout",
        type=click.IntRange(30, 3600),
        default=DEFAULT_RUN_TIMEOUT_SECONDS,
        show_default=True,
        help="Deadline for the whole run in seconds",
    )(fn)
    fn = click.option(
        "--region", "-r", envvar="AWS_REGION", help="AWS region (default: SDK resolution)"
    )(fn)
    return fn


def load_checked(path: Path) -> DesiredDeployment:
    """Load and validate a document, translating errors for the terminal.

    Raises:
        click.ClickException: If the document is unreadable or invalid.
        click.exceptions.Exit: With EXIT_SECURITY_VIOLATION on a literal secret.
    """
    try:
        desired = load_desired(path)
        validate(desired)
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e
    except SecretLiteralError as e:
        click.secho(f"✗ Security violation: {e}", fg="red", err=True)
        raise click.exceptions.Exit(EXIT_SECURITY_VIOLATION) from e
    except PlanError as e:
        raise click.ClickException(str(e)) from e
    return desired


def make_config(path: Path, region: str | None, run_timeout: int, max_attempts: int) -> Config:
    try:
        return Config(
            desired_state_path=path,
            region=region,
            run_timeout_seconds=run_timeout,
            call_timeout_seconds=min(DEFAULT_CALL_TIMEOUT_SECONDS, run_timeout),
            max_attempts=max_attempts,
        )
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


def echo_plan(plan: Plan) -> None:
    if plan.is_converged:
        click.secho(f"✓ {plan.name} is in sync, nothing to do", fg="green")
        return

    click.echo(f"Plan for {plan.name}: {len(plan.changes)} change(s)")
    for action in plan:
        if action.is_noop:
            click.secho(f"  = {action.describe()}", dim=True)
        else:
            click.secho(f"  + {action.describe()}", fg="cyan")


def echo_report(report: ConvergenceReport) -> None:
    for record in report.records:
        if record.action.is_noop:
            continue
        line = f"  {record.outcome.value:<8} {record.action.describe()}"
        if record.attempts > 1:
            line += f" (attempts: {record.attempts})"
        if record.error:
            kind = record.error_kind.value if record.error_kind else "error"
            line += f" [{kind}: {record.error}]"
        click.secho(line, fg=OUTCOME_COLORS[record.outcome])

    click.secho(
        f"{report.name}: {report.status.value} "
        f"({report.applied_count} applied, {report.failed_count} failed, "
        f"{report.skipped_count} skipped, {report.duration_seconds:.1f}s)",
        fg=STATUS_COLORS[report.status],
        bold=True,
    )
    if report.error and not report.records:
        click.secho(f"  {report.error}", fg="red")


async def converge(
    orchestrator: Orchestrator, desired: DesiredDeployment, provenance: RunProvenance
) -> ConvergenceReport:
    """Run the orchestrator with SIGINT/SIGTERM requesting cancellation between actions."""
    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        cancel_event.set()

    signals = (signal.SIGTERM, signal.SIGINT)
    for sig in signals:
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))
    try:
        return await orchestrator.run(desired, cancel_event=cancel_event, provenance=provenance)
    finally:
        for sig in signals:
            loop.remove_signal_handler(sig)


# =============================================================================
# Commands
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="converger")
@click.option("--verbose", "-v", is_flag=True, help="Log provider calls and decisions")
def cli(verbose: bool) -> None:
    """Declarative convergence for scheduled functions.

    \b
    Quick Start:
        converger validate deploy.yaml
        converger plan deploy.yaml
        converger apply deploy.yaml
    """
    setup_logging(
        json_output=False,
        level=logging.INFO if verbose else logging.WARNING,
        stream=sys.stderr,
    )


@cli.command("validate")
@click.argument("document", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def validate_cmd(document: Path) -> None:
    """Check a desired-state document without calling the provider."""
    desired = load_checked(document)
    artifact = desired.code_artifact_ref
    click.secho(f"✓ {desired.name} is valid", fg="green")
    click.echo(f"  Artifact: {artifact.location}")
    click.echo(f"  Digest: {artifact.digest}")
    click.echo(f"  Schedule: {desired.schedule}")
    click.echo(f"  Environment keys: {', '.join(redact_environment(desired.environment)) or '-'}")


@cli.command("plan")
@click.argument("document", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@provider_options
@click.option("--json", "as_json", is_flag=True, help="Print the plan as JSON")
def plan_cmd(
    document: Path, region: str | None, run_timeout: int, max_attempts: int, as_json: bool
) -> None:
    """Show the actions a run would take, without applying them."""
    desired = load_checked(document)
    orchestrator = build_orchestrator(make_config(document, region, run_timeout, max_attempts))

    try:
        plan = asyncio.run(orchestrator.preview(desired))
    except ObserveError as e:
        raise click.ClickException(str(e)) from e
    except TimeoutError as e:
        raise click.ClickException(f"Observation exceeded {run_timeout}s") from e
    finally:
        orchestrator.close()

    if as_json:
        click.echo(
            json.dumps(
                {
                    "name": plan.name,
                    "actions": [
                        {
                            "action": a.kind.value,
                            "stage": a.stage.name.lower(),
                            "subject": a.subject,
                            "reason": a.reason,
                        }
                        for a in plan
                    ],
                },
                indent=2,
            )
        )
    else:
        echo_plan(plan)


@cli.command("apply")
@click.argument("document", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@provider_options
@click.option("--json", "as_json", is_flag=True, help="Print the report as JSON")
@click.pass_context
def apply_cmd(
    ctx: click.Context,
    document: Path,
    region: str | None,
    run_timeout: int,
    max_attempts: int,
    as_json: bool,
) -> None:
    """Converge the provider and exit with the run status.

    \b
    Exit codes:
        0  Converged
        1  Failed
        2  Literal secret in the document
        3  PartiallyConverged
    """
    desired = load_checked(document)
    config = make_config(document, region, run_timeout, max_attempts)
    orchestrator = build_orchestrator(config)
    provenance = get_provenance_logger().create_provenance(
        desired.name, region=region, document_hash=document_hash(document)
    )

    try:
        report = asyncio.run(converge(orchestrator, desired, provenance))
    finally:
        orchestrator.close()

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
    else:
        echo_report(report)

    ctx.exit(report.exit_code)


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
