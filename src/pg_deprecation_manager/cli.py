"""Operator CLI using the Click framework."""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TypeVar

import click

from pg_deprecation_manager import __version__, naming
from pg_deprecation_manager.config import ENVIRONMENTS, DeprecationConfig
from pg_deprecation_manager.exceptions import (
    DeprecationManagerError,
    RollbackError,
    SafetyCheckFailure,
)
from pg_deprecation_manager.manager import DeprecationManager
from pg_deprecation_manager.metadata.models import DeprecationPlan
from pg_deprecation_manager.planner import PlanOptions

T = TypeVar("T")


def _load_plan(path: str) -> DeprecationPlan:
    with open(path) as f:
        return DeprecationPlan.from_dict(json.load(f))


def _save_plan(plan: DeprecationPlan, path: str) -> None:
    Path(path).write_text(json.dumps(plan.to_dict(), indent=2))


def _run(ctx: click.Context, operation: Callable[[DeprecationManager], Awaitable[T]]) -> T:
    """Run ``operation`` against an initialized manager, mapping engine errors to CLI errors."""
    config: DeprecationConfig = ctx.obj["config"]

    async def runner() -> T:
        async with DeprecationManager(config) as manager:
            return await operation(manager)

    try:
        return asyncio.run(runner())
    except SafetyCheckFailure as e:
        click.echo(f"Planning blocked ({e.severity}):", err=True)
        for failure in e.failures:
            click.echo(f"  {failure.element} [{failure.check}/{failure.severity.value}] {failure.message}", err=True)
        raise click.exceptions.Exit(2) from e
    except DeprecationManagerError as e:
        raise click.ClickException(str(e)) from e


@click.group()
@click.version_option(version=__version__)
@click.option("--dsn", envvar="POSTGRES_DSN", help="PostgreSQL connection string")
@click.option(
    "--environment", "-e",
    type=click.Choice(ENVIRONMENTS),
    envvar="DEPRECATION_ENVIRONMENT",
    default="development",
    show_default=True,
    help="Policy preset to apply",
)
@click.option("--verbose", "-v", is_flag=True, help="Log to stderr")
@click.pass_context
def cli(ctx: click.Context, dsn: str | None, environment: str, verbose: bool):
    """Non-destructive schema deprecation and rollback."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    overrides: dict[str, Any] = {"postgres_dsn": dsn} if dsn else {}
    ctx.ensure_object(dict)
    ctx.obj["config"] = DeprecationConfig.for_environment(environment, **overrides)


@cli.command()
@click.option("--candidates", "-c", required=True, type=click.Path(exists=True),
              help="JSON file with a list of candidates")
@click.option("--output", "-o", type=click.Path(), default="deprecation_plan.json", show_default=True,
              help="Where to write the plan")
@click.option("--created-by", default="cli", show_default=True)
@click.option("--backup-id", help="Backup to validate for tables holding data")
@click.option("--backup-validated", is_flag=True, help="A backup has been validated out of band")
@click.option("--approval-granted", is_flag=True, help="Production approval was granted upstream")
@click.option("--allow-risky", is_flag=True, help="Let high-impact dependencies pass")
@click.option("--strict", is_flag=True, help="Block on failing high-severity checks too")
@click.option("--skip-check", multiple=True, help="Check id to skip (repeatable)")
@click.pass_context
def plan(ctx, candidates, output, created_by, backup_id, backup_validated, approval_granted,
         allow_risky, strict, skip_check):
    """Plan the deprecation of candidate elements."""
    with open(candidates) as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get("candidates", [])

    options = PlanOptions(
        created_by=created_by,
        backup_id=backup_id,
        backup_validated=backup_validated,
        approval_granted=approval_granted,
        allow_risky_operations=True if allow_risky else None,
        strict=True if strict else None,
        skip_checks=set(skip_check),
    )
    result = _run(ctx, lambda manager: manager.plan(data, options))
    _save_plan(result, output)

    meta = result.metadata
    click.echo(f"Plan {result.id}")
    click.echo(f"  Risk level: {meta.risk_level.value}")
    click.echo(f"  Approval required: {meta.approval_required}")
    click.echo(f"  Estimated duration: {meta.estimated_duration}s")
    for element in result.elements:
        click.echo(f"  {element.type.value} {element.qualified_name} -> {element.deprecated_name}")
    for warning in result.warnings:
        click.echo(f"  warning: {warning.element} [{warning.check}/{warning.severity.value}] {warning.message}")
    click.echo(f"Plan saved to: {output}")


@cli.command()
@click.argument("plan_file", type=click.Path(exists=True))
@click.option("--principal", default="cli", show_default=True, help="Who is executing")
@click.option("--approve", "approver", help="Approve the plan as this user before executing")
@click.option("--force", is_flag=True, help="Execute even without approval")
@click.pass_context
def execute(ctx, plan_file, principal, approver, force):
    """Execute a saved plan in one transaction."""
    deprecation_plan = _load_plan(plan_file)
    if approver:
        deprecation_plan.approve(approver)

    result = _run(ctx, lambda manager: manager.execute(deprecation_plan, principal=principal, force=force))
    _save_plan(deprecation_plan, plan_file)
    click.echo(f"Executed {result.executed_steps}/{result.total_steps} steps in {result.duration_ms}ms")
    click.echo(f"  Checksum: {result.checksum}")
    if not result.history_recorded:
        click.echo("  warning: execution was not recorded in history", err=True)


@cli.command()
@click.argument("plan_file", type=click.Path(exists=True))
@click.option("--principal", default="cli", show_default=True, help="Who is rolling back")
@click.pass_context
def rollback(ctx, plan_file, principal):
    """Restore the original names of an executed plan."""
    deprecation_plan = _load_plan(plan_file)
    try:
        result = _run(ctx, lambda manager: manager.rollback(deprecation_plan, principal=principal))
    except click.ClickException as e:
        cause = e.__cause__
        if isinstance(cause, RollbackError) and cause.result is not None:
            _save_plan(deprecation_plan, plan_file)
            for failure in cause.result.errors:
                click.echo(f"  step {failure.step} failed: {failure.error}", err=True)
        raise
    _save_plan(deprecation_plan, plan_file)
    click.echo(f"Rolled back {result.completed_steps}/{result.total_steps} steps in {result.duration_ms}ms")


@cli.command("test-rollback")
@click.argument("plan_file", type=click.Path(exists=True))
@click.pass_context
def test_rollback(ctx, plan_file):
    """Check whether a plan's rollback can run now."""
    deprecation_plan = _load_plan(plan_file)
    result = _run(ctx, lambda manager: manager.test_rollback(deprecation_plan))
    click.echo(f"Can execute: {result.can_execute}")
    click.echo(f"Estimated duration: {result.estimated_duration}s")
    for issue in result.issues:
        click.echo(f"  issue: {issue}")
    for warning in result.warnings:
        click.echo(f"  warning: {warning}")
    if not result.can_execute:
        raise click.exceptions.Exit(1)


@cli.command("clear-intervention")
@click.argument("plan_id")
@click.option("--operator", required=True, help="Who repaired the schema")
@click.pass_context
def clear_intervention(ctx, plan_id, operator):
    """Unblock rollbacks of a plan after a failed rollback was repaired by hand."""
    cleared = _run(ctx, lambda manager: manager.clear_manual_intervention(plan_id, operator))
    if not cleared:
        click.echo(f"No manual intervention pending for {plan_id}")
        raise click.exceptions.Exit(1)
    click.echo(f"Cleared manual intervention for {plan_id}")


@cli.command()
@click.option("--schema", "-s", default="public", show_default=True)
@click.option("--json", "as_json", is_flag=True, help="Print JSON")
@click.pass_context
def status(ctx, schema, as_json):
    """List deprecated objects in a schema."""
    rows = _run(ctx, lambda manager: manager.get_deprecation_status(schema))
    if as_json:
        click.echo(json.dumps(rows, indent=2))
        return
    if not rows:
        click.echo(f"No deprecated objects in {schema}")
        return
    for row in rows:
        reason = row["reason"] or "unknown"
        click.echo(
            f"{row['element_type']:<10} {row['table_name']}.{row['name']} "
            f"(was {row['original_name']}, {row['deprecation_date']}, {reason})"
        )


@cli.command()
@click.option("--limit", "-n", type=int, default=20, show_default=True)
@click.option("--json", "as_json", is_flag=True, help="Print JSON")
@click.pass_context
def history(ctx, limit, as_json):
    """Show the migration history log."""
    rows = _run(ctx, lambda manager: manager.get_history(limit))
    if as_json:
        click.echo(json.dumps(rows, indent=2, default=str))
        return
    for row in rows:
        rolled_back = f", rolled back by {row['rolled_back_by']}" if row.get("rolled_back_by") else ""
        click.echo(f"{row['started_at']} {row['plan_id']} {row['status']} by {row['principal']}{rolled_back}")


@cli.command("validate-name")
@click.argument("name")
def validate_name(name):
    """Check a name against the deprecated-identifier grammar."""
    parsed = naming.parse(name)
    if not parsed.is_valid:
        click.echo(f"{name}: not a valid deprecated name")
        issues = naming.validate_can_deprecate(name)
        if issues:
            click.echo("  cannot be deprecated: " + "; ".join(issues))
        raise click.exceptions.Exit(1)
    click.echo(f"{name}: valid")
    click.echo(f"  Original name: {parsed.original}")
    click.echo(f"  Deprecated on: {parsed.deprecated_on.isoformat()}")
    click.echo(f"  Reason: {parsed.reason.value if parsed.reason else parsed.reason_code}")


@cli.command()
@click.option("--days", type=int, default=30, show_default=True, help="Export window")
@click.option("--format", "fmt", type=click.Choice(["json", "csv"]), default="json", show_default=True)
@click.pass_context
def dashboard(ctx, days, fmt):
    """Export recorded access telemetry."""
    async def collect(manager: DeprecationManager) -> dict[str, Any]:
        return {
            "summary": await manager.telemetry.get_summary(),
            "trends": await manager.telemetry.analyze_trends(min(days, 14)),
            "export": await manager.telemetry.export(fmt, days),
        }

    data = _run(ctx, collect)
    if fmt == "csv":
        click.echo(data["export"]["csv"], nl=False)
        return
    click.echo(json.dumps({
        "summary": data["summary"],
        "trends": data["trends"],
        "export": json.loads(data["export"]["json"]),
    }, indent=2, default=str))


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
