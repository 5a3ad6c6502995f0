from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

import typer
from rich import print
from rich.console import Console
from rich.table import Table

from .config import get_settings
from .csv_store import CsvQueue
from .engine import QueueEngine, open_queue
from .errors import QueueError
from .executor import command_handler
from .exporter import CsvExporter
from .importer import CsvImporter
from .logs import setup_logging
from .models import REQUIRED_COLUMNS
from .profile import MappingProfile
from .storage import SqliteQueue
from .worker import drain

app = typer.Typer(help="jobqueue - durable job queue over SQLite or a CSV file, with CSV import/export.")

QueueOpt = typer.Option(None, "--queue", "-q", help="Queue file (.sqlite/.db or .csv). Defaults to $JOBQUEUE_HOME/queue.sqlite")
DelimiterOpt = typer.Option(None, "--delimiter", "-d", help="CSV delimiter (default from settings, ';')")


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging")):
    settings = get_settings()
    setup_logging("DEBUG" if verbose else settings.log_level, settings.log_file)


def _delimiter(value: Optional[str]) -> str:
    return value or get_settings().delimiter


@contextmanager
def _queue(path: Optional[Path], delimiter: Optional[str] = None) -> Iterator[QueueEngine]:
    settings = get_settings()
    if path is None:
        settings.home.mkdir(parents=True, exist_ok=True)
        path = settings.queue_path
    try:
        q = open_queue(path, _delimiter(delimiter))
    except QueueError as e:
        print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    try:
        yield q
    except QueueError as e:
        print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    finally:
        q.close()


def _profile(path: Optional[Path]) -> MappingProfile:
    if path is None:
        return MappingProfile.identity()
    try:
        return MappingProfile.from_file(path)
    except QueueError as e:
        print(f"[red]{e}[/red]")
        raise typer.Exit(1)


# -----------------------------
# Import / export
# -----------------------------
@app.command("import")
def import_cmd(
    source: Path = typer.Argument(..., help="Delimited file to import"),
    queue: Optional[Path] = QueueOpt,
    profile: Optional[Path] = typer.Option(None, "--profile", "-p", help="JSON mapping profile"),
    delimiter: Optional[str] = DelimiterOpt,
    update_core: bool = typer.Option(False, "--update-core", help="Overwrite queue state of known ids"),
):
    """Import rows into the queue (upsert by id, extras merged)."""
    prof = _profile(profile)
    with _queue(queue, delimiter) as q:
        n = CsvImporter(q).import_file(source, prof, _delimiter(delimiter), update_core=update_core)
        print(f"[green]Imported[/green] {n} row(s); queue holds {q.total_items()}")


@app.command("export")
def export_cmd(
    target: Path = typer.Argument(..., help="Delimited file to write"),
    queue: Optional[Path] = QueueOpt,
    profile: Optional[Path] = typer.Option(None, "--profile", "-p", help="JSON mapping profile"),
    columns: Optional[str] = typer.Option(None, "--columns", "-c", help="Comma separated export columns"),
    delimiter: Optional[str] = DelimiterOpt,
):
    """Export every job (core fields and extras) to a delimited file."""
    prof = _profile(profile)
    if columns:
        prof.export_columns = [c.strip() for c in columns.split(",") if c.strip()]
    with _queue(queue, delimiter) as q:
        n = CsvExporter(q).export(target, prof, _delimiter(delimiter))
        print(f"[green]Exported[/green] {n} row(s) to {target}")


# -----------------------------
# Worker
# -----------------------------
@app.command()
def work(
    command: str = typer.Option(..., "--command", help="Shell command per job, with {id} style placeholders"),
    queue: Optional[Path] = QueueOpt,
    limit: Optional[int] = typer.Option(None, "--limit", "-n", help="Stop after N jobs"),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Seconds per command"),
):
    """Drain the queue, running the command for each job. Ctrl+C to stop."""
    with _queue(queue) as q:
        ok, failed = drain(q, command_handler(command, timeout or get_settings().command_timeout), limit=limit)
        print(f"Done: [green]{ok} ok[/green], [red]{failed} failed[/red]")


# -----------------------------
# Status & listing
# -----------------------------
@app.command()
def status(queue: Optional[Path] = QueueOpt):
    """Show queue progress."""
    with _queue(queue) as q:
        p = q.progress()
        t = Table(title="Progress")
        t.add_column("Total")
        t.add_column("Done")
        t.add_column("Errors")
        t.add_column("In progress")
        t.add_column("Remaining")
        t.add_row(str(p.total), str(p.done), str(p.errors), str(p.in_progress), str(p.remaining))
        Console().print(t)


@app.command("list")
def list_cmd(
    queue: Optional[Path] = QueueOpt,
    state: Optional[str] = typer.Option(None, "--status", "-s", help="Filter by status"),
    extra: List[str] = typer.Option([], "--extra", "-e", help="Extra field to show (repeatable)"),
):
    """List jobs, optionally by status."""
    cols = list(REQUIRED_COLUMNS) + list(extra)
    with _queue(queue) as q:
        t = Table(title=f"Jobs{'' if not state else f' ({state})'}")
        for c in cols:
            t.add_column(c)
        for rec in q.fetch_all_for_export():
            if state and str(rec.get("status")) != state:
                continue
            t.add_row(*["" if rec.get(c) is None else str(rec.get(c)) for c in cols])
        Console().print(t)


# -----------------------------
# Bulk state changes
# -----------------------------
@app.command()
def reset(
    queue: Optional[Path] = QueueOpt,
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
):
    """Put every job back to queued (full rerun)."""
    if not yes:
        typer.confirm("Reset every job to queued?", abort=True)
    with _queue(queue) as q:
        q.reset_all()
        print(f"[yellow]Reset[/yellow] {q.total_items()} job(s)")


@app.command("retry-errors")
def retry_errors(queue: Optional[Path] = QueueOpt):
    """Re-queue failed jobs (SQLite queues)."""
    with _queue(queue) as q:
        if not isinstance(q, SqliteQueue):
            print("[red]retry-errors needs a SQLite queue[/red]")
            raise typer.Exit(1)
        print(f"[green]Re-queued[/green] {q.retry_errors()} failed job(s)")


@app.command("recover-stale")
def recover_stale(
    queue: Optional[Path] = QueueOpt,
    minutes: Optional[int] = typer.Option(None, "--minutes", "-m", help="Age of a claim considered abandoned"),
):
    """Release in_progress claims older than N minutes (CSV queues)."""
    with _queue(queue) as q:
        if not isinstance(q, CsvQueue):
            print("[red]recover-stale needs a CSV queue[/red]")
            raise typer.Exit(1)
        n = q.recover_stale_in_progress(minutes or get_settings().stale_minutes)
        print(f"[green]Released[/green] {n} stale job(s)")


# -----------------------------
# Maintenance (SQLite)
# -----------------------------
def _sqlite(q: QueueEngine, what: str) -> SqliteQueue:
    if not isinstance(q, SqliteQueue):
        print(f"[red]{what} needs a SQLite queue[/red]")
        raise typer.Exit(1)
    return q


@app.command()
def vacuum(queue: Optional[Path] = QueueOpt):
    """Checkpoint the WAL, compact the database and refresh statistics."""
    with _queue(queue) as q:
        _sqlite(q, "vacuum").vacuum()
        print("[green]Vacuumed[/green]")


@app.command()
def drop(
    queue: Optional[Path] = QueueOpt,
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
):
    """Drop every job and recreate an empty queue."""
    if not yes:
        typer.confirm("Drop every job?", abort=True)
    with _queue(queue) as q:
        _sqlite(q, "drop").drop_and_recreate()
        print("[yellow]Queue emptied[/yellow]")


@app.command()
def delete(
    queue: Optional[Path] = QueueOpt,
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
):
    """Delete the SQLite database file and its side files."""
    if not yes:
        typer.confirm("Delete the queue database?", abort=True)
    settings = get_settings()
    path = queue or settings.queue_path
    if not Path(path).is_file():
        print(f"[red]No queue database at {path}[/red]")
        raise typer.Exit(1)
    try:
        q = _sqlite(open_queue(path), "delete")
        q.delete_database()
    except QueueError as e:
        print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    print(f"[yellow]Deleted[/yellow] {path}")


if __name__ == "__main__":
    app()
