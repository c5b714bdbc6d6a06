"""CLI interface for the survey quota engine.

Usage:
    surveyquota init
    surveyquota configure quotas/survey-1.yaml
    surveyquota status survey-1
    surveyquota admit <quota-id> --vendor-id abc_BR_1 --answer AGE=25 --answer GENDER=F
    surveyquota complete <respondent-id> --response-id r-99 --survey survey-1
    surveyquota terminate <respondent-id> --reason speeder
    surveyquota respondents <quota-id> --status QUALIFIED
    surveyquota vendor-payload survey-1 --group-id 42
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from typing import Any, Optional, Tuple

import click
from rich.console import Console
from rich.table import Table

from surveyquota.errors import ConfigurationError, QuotaEngineError
from surveyquota.service.config import load_config, load_quota_file
from surveyquota.service.orchestrator import QuotaService
from surveyquota.storage.models import RespondentStatus

console = Console()


def run_async(coro):
    """Run an async function to completion."""
    return asyncio.run(coro)


def _service(ctx) -> QuotaService:
    return QuotaService(config=ctx.obj["config"])


def _fail(e: QuotaEngineError) -> None:
    console.print(f"[red]Error ({e.code}):[/red] {e.message}")
    if isinstance(e, ConfigurationError):
        for problem in e.problems:
            console.print(f"  - {problem}")
    sys.exit(1)


def _parse_answer(raw: str) -> Tuple[str, Any]:
    """KEY=VALUE, VALUE parsed as JSON when it is JSON (numbers, lists, objects)."""
    if "=" not in raw:
        raise click.BadParameter(f"expected KEY=VALUE, got {raw!r}")
    key, value = raw.split("=", 1)
    try:
        return key.strip(), json.loads(value)
    except json.JSONDecodeError:
        return key.strip(), value


@click.group()
@click.option("--config", "config_path", default=None, help="Config file path (default: config.yaml)")
@click.option("--db", default=None, help="Database path (overrides config)")
@click.option("--log-level", default=None, help="Logging level (overrides config)")
@click.pass_context
def cli(ctx, config_path: Optional[str], db: Optional[str], log_level: Optional[str]):
    """Survey quota engine CLI."""
    ctx.ensure_object(dict)
    try:
        config = load_config(config_path)
    except ConfigurationError as e:
        _fail(e)
    if db:
        config["database"]["path"] = db
    level = (log_level or config["logging"].get("level") or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj["config"] = config


@cli.command()
@click.pass_context
def init(ctx):
    """Create the database and apply migrations."""

    async def _run():
        service = _service(ctx)
        await service.initialize()
        try:
            ok = await service.store.integrity_check()
        finally:
            await service.close()
        path = ctx.obj["config"]["database"]["path"]
        if ok:
            console.print(f"[green]Database ready:[/green] {path}")
        else:
            console.print(f"[red]Integrity check failed:[/red] {path}")
            sys.exit(1)

    run_async(_run())


@cli.command()
@click.argument("definition_file", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def configure(ctx, definition_file: str):
    """Load a YAML quota definition and save it (replacing the survey's buckets)."""

    async def _run():
        service = _service(ctx)
        await service.initialize()
        try:
            definition = await service.configure(load_quota_file(definition_file))
        except QuotaEngineError as e:
            _fail(e)
        finally:
            await service.close()

        console.print(
            f"[green]Saved quota[/green] {definition.config.id} for survey "
            f"{definition.config.survey_id}: {len(definition.dimensions)} dimension(s), "
            f"{len(definition.buckets)} bucket(s)"
        )
        for warning in definition.report.warnings:
            console.print(f"[yellow]Warning:[/yellow] {warning}")

    run_async(_run())


@cli.command()
@click.argument("survey_id")
@click.pass_context
def status(ctx, survey_id: str):
    """Show quota progress for a survey."""

    async def _run():
        service = _service(ctx)
        await service.initialize()
        try:
            report = await service.get_status(survey_id)
        except QuotaEngineError as e:
            _fail(e)
        finally:
            await service.close()

        console.print(f"\n[bold]Quota {report['quota_id']}[/bold] (survey {report['survey_id']})")
        console.print(f"  Active: {'[green]yes' if report['is_active'] else '[red]no'}")
        console.print(
            f"  Completes: {report['completed']}/{report['total_target']} "
            f"({report['overall_progress']}%), remaining {report['remaining']}"
        )
        console.print(
            f"  Qualified: {report['qualified']}  Terminated: {report['terminated']}  "
            f"Quota full: {report['quota_full']}"
        )

        for dim in report["dimensions"]:
            table = Table(title=f"Dimension {dim['key']}")
            table.add_column("Bucket", style="cyan")
            table.add_column("Rule")
            table.add_column("Target", justify="right")
            table.add_column("Current", justify="right", style="green")
            table.add_column("Remaining", justify="right")
            table.add_column("Filled", justify="right")
            table.add_column("Status")
            for b in dim["buckets"]:
                if not b["is_active"]:
                    state = "[dim]inactive"
                elif b["is_full"]:
                    state = "[red]full"
                else:
                    state = "[green]open"
                table.add_row(
                    b["label"] or b["id"],
                    b["operator"],
                    str(b["target"]),
                    str(b["current"]),
                    str(b["remaining"]),
                    f"{b['percentage_filled']}%",
                    state,
                )
            console.print(table)

    run_async(_run())


@cli.command()
@click.argument("quota_id")
@click.option("--vendor-id", "vendor_respondent_id", required=True, help="Vendor respondent id")
@click.option("--answer", "-a", "answers", multiple=True, help="Screening answer KEY=VALUE")
@click.pass_context
def admit(ctx, quota_id: str, vendor_respondent_id: str, answers: Tuple[str, ...]):
    """Admit a respondent into a quota."""
    payload = {
        "vendorRespondentId": vendor_respondent_id,
        "attributes": [
            {"dimensionKey": key, "value": value}
            for key, value in (_parse_answer(a) for a in answers)
        ],
    }

    async def _run():
        service = _service(ctx)
        await service.initialize()
        try:
            result = await service.handle_admission(quota_id, payload)
        finally:
            await service.close()
        console.print_json(data=result)
        if "error" in result:
            sys.exit(1)

    run_async(_run())


@cli.command()
@click.argument("respondent_id")
@click.option("--response-id", default=None, help="External survey response id")
@click.option("--quota", "quota_id", default=None, help="Reject if the respondent is in another quota")
@click.option("--survey", "survey_id", default=None, help="Reject if the respondent is in another survey")
@click.pass_context
def complete(
    ctx,
    respondent_id: str,
    response_id: Optional[str],
    quota_id: Optional[str],
    survey_id: Optional[str],
):
    """Mark a QUALIFIED respondent as COMPLETED."""

    async def _run():
        service = _service(ctx)
        await service.initialize()
        try:
            result = await service.handle_completion(respondent_id, response_id, quota_id, survey_id)
        finally:
            await service.close()
        console.print_json(data=result)
        if "error" in result:
            sys.exit(1)

    run_async(_run())


@cli.command()
@click.argument("respondent_id")
@click.option("--reason", default=None, help="Termination reason")
@click.option("--quota", "quota_id", default=None, help="Reject if the respondent is in another quota")
@click.option("--survey", "survey_id", default=None, help="Reject if the respondent is in another survey")
@click.pass_context
def terminate(
    ctx,
    respondent_id: str,
    reason: Optional[str],
    quota_id: Optional[str],
    survey_id: Optional[str],
):
    """Terminate a QUALIFIED respondent."""

    async def _run():
        service = _service(ctx)
        await service.initialize()
        try:
            result = await service.handle_termination(respondent_id, reason, quota_id, survey_id)
        finally:
            await service.close()
        console.print_json(data=result)
        if "error" in result:
            sys.exit(1)

    run_async(_run())


@cli.command()
@click.argument("quota_id")
@click.option(
    "--status", "status_filter",
    type=click.Choice([s.value for s in RespondentStatus], case_sensitive=False),
    default=None,
    help="Only respondents with this status",
)
@click.option("--limit", "-n", default=50, help="Max rows")
@click.pass_context
def respondents(ctx, quota_id: str, status_filter: Optional[str], limit: int):
    """List respondents of a quota, newest first."""

    async def _run():
        service = _service(ctx)
        await service.initialize()
        try:
            status = RespondentStatus(status_filter.upper()) if status_filter else None
            rows = await service.store.list_respondents(quota_id, status=status, limit=limit)
        finally:
            await service.close()

        if not rows:
            console.print(f"[yellow]No respondents for quota[/yellow] {quota_id}")
            return

        table = Table(title=f"Respondents of {quota_id}")
        table.add_column("ID", style="cyan")
        table.add_column("Vendor ID")
        table.add_column("Status")
        table.add_column("Reason")
        table.add_column("Buckets")
        table.add_column("Created")
        for r in rows:
            table.add_row(
                r.id,
                r.vendor_respondent_id,
                r.status.value,
                r.reason or "",
                ", ".join(m.label or m.bucket_id for m in r.matched_buckets),
                r.created_at.strftime("%Y-%m-%d %H:%M") if r.created_at else "?",
            )
        console.print(table)

    run_async(_run())


@cli.command("vendor-payload")
@click.argument("survey_id")
@click.option("--group-id", default=None, type=int, help="Vendor group id")
@click.pass_context
def vendor_payload(ctx, survey_id: str, group_id: Optional[int]):
    """Print the target and quota payloads for the sample vendor."""

    async def _run():
        service = _service(ctx)
        await service.initialize()
        try:
            payload = await service.vendor_payload(survey_id, group_id=group_id)
        except QuotaEngineError as e:
            _fail(e)
        finally:
            await service.close()
        console.print_json(data=payload)

    run_async(_run())


def main():
    cli()


if __name__ == "__main__":
    main()
