"""KSIWatch CLI: ingest evidence, run KSI validation, and publish artifacts."""

from __future__ import annotations

import sys
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from . import __version__
from .checks import load_checks
from .config import Settings, get_settings
from .engine import ComplianceEngine, RunOutcome, create_engine_from_settings
from .exceptions import KSIWatchError
from .models import KSIStatus
from .monitoring import MonitoringFeed, MonitoringFinding
from .storage import HistoryStore, RetryPolicy
from .utils.logging_security import configure_logging

console = Console()

STATUS_STYLE = {
    KSIStatus.TRUE: "[green]TRUE[/green]",
    KSIStatus.FALSE: "[red]FALSE[/red]",
    KSIStatus.PARTIAL: "[yellow]PARTIAL[/yellow]",
    KSIStatus.UNKNOWN: "[magenta]UNKNOWN[/magenta]",
}


def _settings(ctx: click.Context) -> Settings:
    return ctx.obj["settings"]


def _fail(error: Exception) -> None:
    console.print(f"[red]Error:[/red] {error}")
    sys.exit(2)


def model_option(f):
    return click.option(
        "--model", "-m", "model_path", required=True, type=click.Path(exists=True, dir_okay=False),
        help="Control model YAML file",
    )(f)


def checks_option(f):
    return click.option(
        "--checks", "-c", "checks_paths", multiple=True, type=click.Path(exists=True),
        help="Check definition file or directory (repeatable)",
    )(f)


def _build_engine(ctx: click.Context, model_path: str, checks_paths=(), publish: bool = False) -> ComplianceEngine:
    try:
        return create_engine_from_settings(
            _settings(ctx), Path(model_path), list(checks_paths), publish_artifacts=publish
        )
    except KSIWatchError as e:
        _fail(e)


def _print_outcome(outcome: RunOutcome) -> None:
    snapshot = outcome.snapshot
    table = Table(title=f"Snapshot {snapshot.sequence} (run {outcome.run_id})")
    table.add_column("Control", style="cyan")
    table.add_column("Status")
    table.add_column("Stale", style="yellow")
    table.add_column("Diagnostic", style="dim")
    for cid, status in snapshot.statuses.items():
        diagnostic = snapshot.diagnostics.get(cid, "")
        if len(diagnostic) > 70:
            diagnostic = diagnostic[:70] + "..."
        table.add_row(cid, STATUS_STYLE[status], "yes" if cid in snapshot.stale_controls else "", diagnostic)
    console.print(table)

    if snapshot.drift:
        console.print()
        console.rule("[bold]Drift[/bold]")
        for entry in snapshot.drift:
            before = entry.from_status.value if entry.from_status else "-"
            after = entry.to_status.value if entry.to_status else "-"
            console.print(f"  {entry.kind.value:<18s} {entry.control_id:<12s} {before} -> {after}")

    for error in outcome.errors:
        console.print(f"[yellow]Warning:[/yellow] {error}")

    console.print()
    console.print(
        f"[bold]{snapshot.count(KSIStatus.TRUE)} true, "
        f"{snapshot.count(KSIStatus.FALSE)} false, "
        f"{snapshot.count(KSIStatus.PARTIAL)} partial[/bold]"
    )


# ── CLI group ───────────────────────────────────────────────────────────────


@click.group(context_settings={"max_content_width": 120})
@click.version_option(version=__version__, prog_name="ksiwatch")
@click.option("--database", "-d", default=None, help="SQLAlchemy database URL (overrides KSIWATCH_DATABASE_URL)")
@click.option("--log-level", default=None, help="Log level (overrides KSIWATCH_LOG_LEVEL)")
@click.pass_context
def main(ctx, database, log_level):
    """KSIWatch: continuous KSI compliance validation."""
    updates = {}
    if database:
        updates["database_url"] = database
    if log_level:
        updates["log_level"] = log_level.upper()
    settings = get_settings().model_copy(update=updates)
    configure_logging(settings.log_level)
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


# ── run ─────────────────────────────────────────────────────────────────────


@main.command()
@model_option
@checks_option
@click.option("--control", "controls", multiple=True, help="Only validate these controls (repeatable)")
@click.option("--output", "-o", "output_dir", default=None, type=click.Path(file_okay=False),
              help="Write the artifact set for the new snapshot to this directory")
@click.pass_context
def run(ctx, model_path, checks_paths, controls, output_dir):
    """Run all checks and commit a new validation snapshot.

    Examples:
      ksiwatch run -m system.yml -c checks/
      ksiwatch run -m system.yml -c checks/ --control sc-7 -o artifacts/
    """
    engine = _build_engine(ctx, model_path, checks_paths)
    try:
        outcome = engine.run(controls=list(controls) or None)
        _print_outcome(outcome)
        if output_dir:
            paths = engine.publish(output_dir, snapshot=outcome.snapshot)
            console.print(f"[dim]Wrote {len(paths)} artifacts to {paths[0].parent}[/dim]")
    except KSIWatchError as e:
        _fail(e)


# ── ingest ──────────────────────────────────────────────────────────────────


@main.command()
@model_option
@click.argument("payload", type=click.Path(exists=True, dir_okay=False))
@click.option("--control", "controls", multiple=True, required=True, help="Control to link (repeatable)")
@click.option("--description", default="", help="Evidence description")
@click.option("--source-uri", default="", help="Where the evidence came from")
@click.pass_context
def ingest(ctx, model_path, payload, controls, description, source_uri):
    """Store an evidence file and link it to controls.

    Examples:
      ksiwatch ingest -m system.yml idp-export.json --control ia-2 --control ac-2
    """
    engine = _build_engine(ctx, model_path)
    content = Path(payload).read_bytes()
    try:
        evidence = engine.ingest_evidence(
            content, controls[0], description=description, source_uri=source_uri or Path(payload).resolve().as_uri()
        )
        for control in controls[1:]:
            engine.link_evidence(evidence.id, control)
    except KSIWatchError as e:
        _fail(e)
    console.print(f"Stored evidence [cyan]{evidence.id}[/cyan] for {', '.join(controls)}")


# ── finding ─────────────────────────────────────────────────────────────────


@main.command()
@model_option
@checks_option
@click.option("--control", required=True, help="Control the finding is about")
@click.option("--status", required=True, help="Observed status (true/false/partial/unknown)")
@click.option("--evidence-uri", default="", help="Link to the monitoring source")
@click.option("--detail", default="", help="Free-text detail")
@click.pass_context
def finding(ctx, model_path, checks_paths, control, status, evidence_uri, detail):
    """Push a continuous-monitoring finding and re-validate its control."""
    engine = _build_engine(ctx, model_path, checks_paths)
    try:
        item = MonitoringFinding(control_id=control, status=status, evidence_uri=evidence_uri, detail=detail)
    except ValueError as e:
        _fail(e)
    try:
        outcome = MonitoringFeed(engine).push(item)
    except KSIWatchError as e:
        _fail(e)
    _print_outcome(outcome)


# ── publish ─────────────────────────────────────────────────────────────────


@main.command()
@model_option
@click.option("--output", "-o", "output_dir", required=True, type=click.Path(file_okay=False),
              help="Artifact directory")
@click.option("--sequence", type=int, default=None, help="Snapshot to publish (default: latest)")
@click.pass_context
def publish(ctx, model_path, output_dir, sequence):
    """Write the artifact set for a committed snapshot."""
    engine = _build_engine(ctx, model_path)
    try:
        snapshot = engine.history.get_snapshot(sequence) if sequence else None
        if sequence and snapshot is None:
            console.print(f"[red]Snapshot {sequence} not found[/red]")
            sys.exit(1)
        paths = engine.publish(output_dir, snapshot=snapshot)
    except KSIWatchError as e:
        _fail(e)
    for path in paths:
        console.print(f"  {path}")


# ── history ─────────────────────────────────────────────────────────────────


@main.command()
@click.option("--control", default=None, help="Show the validation record of one control")
@click.option("--limit", "-n", default=20, type=int, help="Maximum rows to show")
@click.pass_context
def history(ctx, control, limit):
    """Query validation history.

    Examples:
      ksiwatch history
      ksiwatch history --control ac-2
    """
    settings = _settings(ctx)
    try:
        store = HistoryStore.from_url(settings.database_url, RetryPolicy(max_retries=settings.storage_max_retries))
        if control:
            entries = store.records_for(control)
            if not entries:
                console.print(f"[yellow]No validation record for {control}[/yellow]")
                return
            table = Table(title=f"Validation record: {control}")
            table.add_column("Seq", style="cyan")
            table.add_column("Run", style="dim")
            table.add_column("Recorded", style="white")
            table.add_column("Status")
            table.add_column("Diagnostic", style="dim")
            for entry in entries[-limit:]:
                table.add_row(
                    str(entry.sequence),
                    entry.run_id[:12],
                    entry.recorded_at.isoformat(),
                    STATUS_STYLE[entry.status],
                    entry.diagnostic or "",
                )
            console.print(table)
            return

        snapshots = store.snapshots()
        if not snapshots:
            console.print("[yellow]No snapshots found[/yellow]")
            return
        table = Table(title="Snapshots")
        table.add_column("Seq", style="cyan")
        table.add_column("Created", style="white")
        table.add_column("Controls", style="green")
        table.add_column("False", style="red")
        table.add_column("Drift", style="yellow")
        for snap in snapshots[-limit:]:
            table.add_row(
                str(snap.sequence),
                snap.created_at.isoformat(),
                str(len(snap.statuses)),
                str(snap.count(KSIStatus.FALSE)),
                str(len(snap.drift)),
            )
        console.print(table)
    except KSIWatchError as e:
        _fail(e)


# ── checks ──────────────────────────────────────────────────────────────────


@main.command("checks")
@click.argument("paths", nargs=-1, required=True, type=click.Path(exists=True))
def list_checks(paths):
    """List check definitions found under PATHS."""
    table = Table(title="Checks")
    table.add_column("ID", style="cyan")
    table.add_column("Version", style="dim")
    table.add_column("Controls", style="green")
    table.add_column("Title", style="white")
    try:
        for path in paths:
            for check in load_checks(path):
                table.add_row(check.check_id, check.version, ", ".join(check.control_ids), check.title)
    except KSIWatchError as e:
        _fail(e)
    console.print(table)


if __name__ == "__main__":
    main()
