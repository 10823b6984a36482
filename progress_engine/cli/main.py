"""
Typer CLI for the progress engine.

Commands:
    progress-engine init-db                      - Create progress store tables
    progress-engine replay HIERARCHY EVENTS      - Replay a JSONL event stream
    progress-engine show LEARNER                 - Show records and mastery for a learner
    progress-engine forget LEARNER               - Purge everything stored for a learner
    progress-engine version                      - Show version information

Usage:
    progress-engine --help
    progress-engine replay course.json events.jsonl
    progress-engine show learner-42
"""

from __future__ import annotations

from pathlib import Path

import typer
from loguru import logger
from pydantic import ValidationError as PayloadError
from rich import print as rprint
from rich.console import Console
from rich.table import Table

from progress_engine.config import get_settings
from progress_engine.core.errors import ProgressEngineError
from progress_engine.core.hierarchy import UnitHierarchy
from progress_engine.core.models import AdaptationDecision
from progress_engine.core.schemas import EventPayload, HierarchyDocument
from progress_engine.db.database import create_session_factory, get_engine, init_db
from progress_engine.db.sql_store import SqlProgressStore
from progress_engine.engine import LearningProgressEngine
from progress_engine.log_config import configure_logging

app = typer.Typer(
    help="progress-engine CLI: learning progress, mastery and adaptive difficulty",
    no_args_is_help=True,
)

console = Console()


def _store() -> SqlProgressStore:
    engine = get_engine()
    init_db(engine)
    return SqlProgressStore(create_session_factory(engine))


def load_hierarchy(path: Path) -> UnitHierarchy:
    """Parse a hierarchy JSON document into a validated snapshot."""
    document = HierarchyDocument.model_validate_json(path.read_text(encoding="utf-8"))
    return UnitHierarchy(document.to_domain(), version=document.version)


@app.command("init-db")
def db_init() -> None:
    """
    Initialize database tables from SQLAlchemy models.

    Safe to run multiple times (idempotent).
    """
    init_db(get_engine())
    rprint(f"[green]✓[/green] Database initialized at {get_settings().database_url}")


@app.command("replay")
def replay(
    hierarchy_file: Path = typer.Argument(..., exists=True, readable=True, help="Hierarchy JSON"),
    events_file: Path = typer.Argument(..., exists=True, readable=True, help="Events, one JSON object per line"),
    stop_on_error: bool = typer.Option(False, "--stop-on-error", help="Abort at the first rejected event"),
) -> None:
    """
    Replay an interaction event stream through the engine.

    Events are submitted in file order; duplicates are reported, not reapplied.
    """
    try:
        hierarchy = load_hierarchy(hierarchy_file)
    except (PayloadError, ProgressEngineError) as e:
        logger.error(f"Invalid hierarchy {hierarchy_file}: {e}")
        raise typer.Exit(code=1)

    table = Table(title=f"Replay of {events_file.name}")
    table.add_column("Event", style="cyan")
    table.add_column("Learner")
    table.add_column("Outcome")
    table.add_column("Records", justify="right")
    table.add_column("Mastery")
    table.add_column("Difficulty")

    committed = rejected = duplicates = 0
    with LearningProgressEngine.from_settings(hierarchy) as engine:
        lines = events_file.read_text(encoding="utf-8").splitlines()
        for line_no, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                event = EventPayload.model_validate_json(line).to_domain()
                result = engine.submit(event)
            except (PayloadError, ProgressEngineError) as e:
                rejected += 1
                logger.warning(f"Line {line_no} rejected: {e}")
                table.add_row(f"line {line_no}", "-", f"[red]{type(e).__name__}[/red]", "-", "-", "-")
                if stop_on_error:
                    break
                continue

            if result.duplicate:
                duplicates += 1
                table.add_row(result.event_id, result.learner_id, "[yellow]duplicate[/yellow]", "-", "-", "-")
                continue

            committed += 1
            mastery = ", ".join(f"{d.objective_id}={d.outcome.value}" for d in result.decisions) or "-"
            difficulty = "-"
            if isinstance(result.adaptation, AdaptationDecision):
                difficulty = f"{result.adaptation.previous_difficulty} -> {result.adaptation.new_difficulty}"
            table.add_row(
                result.event_id,
                result.learner_id,
                "[green]committed[/green]",
                str(len(result.records)),
                mastery,
                difficulty,
            )

    console.print(table)
    rprint(f"[bold]{committed}[/bold] committed, {duplicates} duplicate, {rejected} rejected")
    if rejected and stop_on_error:
        raise typer.Exit(code=1)


@app.command("show")
def show(learner_id: str = typer.Argument(..., help="Learner identifier")) -> None:
    """Show progress records, latest mastery decisions and past sessions."""
    store = _store()
    records = sorted(store.list_records(learner_id), key=lambda r: r.unit_id)
    if not records:
        rprint(f"[yellow]⚠[/yellow] No progress stored for {learner_id}")
        raise typer.Exit(code=0)

    progress_table = Table(title=f"Progress for {learner_id}")
    progress_table.add_column("Unit", style="cyan")
    progress_table.add_column("Status")
    progress_table.add_column("Fraction", justify="right")
    progress_table.add_column("Time (s)", justify="right")
    progress_table.add_column("Attempts", justify="right")
    for record in records:
        progress_table.add_row(
            record.unit_id,
            record.status.value,
            f"{record.fraction:.0%}",
            f"{record.time_spent_seconds:.0f}",
            str(record.attempt_count),
        )
    console.print(progress_table)

    decisions = store.latest_decisions(learner_id)
    if decisions:
        mastery_table = Table(title="Mastery")
        mastery_table.add_column("Objective", style="cyan")
        mastery_table.add_column("Outcome")
        mastery_table.add_column("Level", justify="right")
        mastery_table.add_column("Confidence", justify="right")
        mastery_table.add_column("Gaps")
        for decision in sorted(decisions, key=lambda d: d.objective_id):
            mastery_table.add_row(
                decision.objective_id,
                decision.outcome.value,
                f"{decision.mastery_level:.3f}",
                f"{decision.confidence:.3f}",
                ", ".join(sorted(decision.gaps)) or "-",
            )
        console.print(mastery_table)

    sessions = store.list_session_summaries(learner_id)
    if sessions:
        rprint(f"{len(sessions)} sessions, {sum(s.active_seconds for s in sessions):.0f}s active")


@app.command("forget")
def forget(
    learner_id: str = typer.Argument(..., help="Learner identifier"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """Delete every record, decision, evidence item and session for a learner."""
    if not yes:
        typer.confirm(f"Purge all data for {learner_id}?", abort=True)
    removed = _store().purge_learner(learner_id)
    rprint(f"[green]✓[/green] Removed {removed} rows for {learner_id}")


@app.command("version")
def show_version() -> None:
    """Show version information."""
    rprint("[bold]progress-engine[/bold] v1.0.0")
    rprint("  Learning progress, mastery evaluation and adaptive difficulty")


def run() -> None:
    """Entry point for the CLI."""
    configure_logging(get_settings())
    app()


if __name__ == "__main__":
    run()
