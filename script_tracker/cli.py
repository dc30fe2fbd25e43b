"""
Script tracker CLI - run and inspect one-off maintenance scripts.

Usage:
    script-tracker --help                 Show all commands
    script-tracker run                    Run every pending script
    script-tracker run NAME               Run one script
    script-tracker pending                List scripts that have not run yet
    script-tracker status                 Show recorded runs, newest first
    script-tracker cleanup                Fail stale running records
    script-tracker new "backfill slugs"   Create a new script file
"""

import asyncio

import typer

from script_tracker.config import Settings
from script_tracker.core.errors import ScriptTrackerError
from script_tracker.core.logging import setup_logging
from script_tracker.models import ScriptStatus
from script_tracker.services.harness import RunOutcome, RunResult
from script_tracker.services.tracker import ScriptTracker

app = typer.Typer(
    name="script-tracker",
    help="Script tracker CLI - run one-off maintenance scripts at most once",
    no_args_is_help=True,
)


# --- Printer helpers ---


def _print_success(message: str) -> None:
    """Print a success message."""
    typer.echo(f"  ✅ {message}")


def _print_warning(message: str) -> None:
    """Print a warning message."""
    typer.echo(f"  ⚠️ {message}")


def _print_skipped(message: str) -> None:
    """Print a skipped message."""
    typer.echo(f"  ⏭️ {message}")


def _print_error(message: str) -> None:
    """Print an error message to stderr."""
    typer.echo(f"❌ {message}", err=True)


def _print_result(result: RunResult) -> None:
    if result.outcome is RunOutcome.SUCCESS:
        _print_success(f"{result.identifier}: {result.output}")
    elif result.outcome is RunOutcome.SKIPPED:
        _print_skipped(f"{result.identifier}: {result.output}")
    elif result.outcome is RunOutcome.LOCK_UNAVAILABLE:
        _print_warning(f"{result.identifier}: {result.output}")
    else:
        _print_error(f"{result.identifier} failed: {result.output}")


def _load_settings() -> Settings:
    settings = Settings()
    setup_logging(settings)
    return settings


@app.command()
def run(
    name: str | None = typer.Argument(None, help="Script file name; omit to run all pending"),
    keep_going: bool = typer.Option(
        False, "--keep-going", "-k", help="Continue with the next script after a failure"
    ),
):
    """Run one script, or every pending script in file name order."""
    settings = _load_settings()

    async def _run() -> int:
        async with ScriptTracker(settings) as tracker:
            if name:
                result = await tracker.run(name)
                if result is None:
                    _print_skipped(f"{name} has already been executed")
                    return 0
                _print_result(result)
                return result.exit_code

            results = await tracker.run_pending(stop_on_failure=not keep_going)
            if not results:
                _print_success("No pending scripts")
                return 0
            for result in results:
                _print_result(result)
            return 0 if all(r.success for r in results) else 1

    try:
        exit_code = asyncio.run(_run())
    except ScriptTrackerError as e:
        _print_error(str(e))
        raise typer.Exit(1) from e
    raise typer.Exit(exit_code)


@app.command()
def pending():
    """List scripts that have no run record yet."""
    settings = _load_settings()

    async def _pending() -> list[str]:
        async with ScriptTracker(settings) as tracker:
            return await tracker.pending()

    names = asyncio.run(_pending())
    if not names:
        _print_success("No pending scripts")
        return
    for script_name in names:
        typer.echo(script_name)


@app.command()
def status(
    status_filter: ScriptStatus | None = typer.Option(
        None, "--status", "-s", help="Only show runs with this status"
    ),
):
    """Show recorded runs, newest first."""
    settings = _load_settings()

    async def _status():
        async with ScriptTracker(settings) as tracker:
            return await tracker.store.list_runs(status=status_filter, newest_first=True)

    records = asyncio.run(_status())
    if not records:
        typer.echo("No script runs recorded")
        return

    for record in records:
        timed_out = " (timed out)" if record.is_timed_out() else ""
        typer.echo(
            f"{record.started_at:%Y-%m-%d %H:%M:%S}  {record.status.value:<8}  "
            f"{record.formatted_duration:>10}  {record.identifier}{timed_out}"
        )
        if record.output and not record.is_success:
            first_line = record.formatted_output.splitlines()[0]
            typer.echo(f"    {first_line}")


@app.command()
def cleanup(
    older_than_minutes: int | None = typer.Option(
        None, "--older-than-minutes", "-m", help="Staleness threshold (default from settings)"
    ),
):
    """Mark running records older than the threshold as failed."""
    settings = _load_settings()

    async def _cleanup() -> int:
        async with ScriptTracker(settings) as tracker:
            return await tracker.cleanup(older_than_minutes)

    count = asyncio.run(_cleanup())
    _print_success(f"Marked {count} stale script run(s) as failed")


@app.command()
def new(
    name: str = typer.Argument(..., help="Short description used for the file name"),
    description: str = typer.Option("", "--description", "-d", help="Script description"),
):
    """Create a new timestamped script file from the template."""
    settings = _load_settings()

    from script_tracker.services.registry import ScriptRegistry

    try:
        path = ScriptRegistry(settings.scripts_path).create(name, description)
    except (ValueError, FileExistsError) as e:
        _print_error(str(e))
        raise typer.Exit(1) from e
    _print_success(f"Created {path}")


@app.command("init-db")
def init_db():
    """Create the tables directly from the models (development databases)."""
    settings = _load_settings()

    from script_tracker.core.database import create_engine_and_sessionmaker, create_schema

    async def _init() -> None:
        engine, _ = create_engine_and_sessionmaker(settings)
        try:
            await create_schema(engine)
        finally:
            await engine.dispose()

    asyncio.run(_init())
    _print_success("Database schema created")


@app.command()
def migrate():
    """Run database migrations (alembic upgrade head)."""
    import subprocess

    result = subprocess.run(["alembic", "upgrade", "head"], check=False)
    raise typer.Exit(result.returncode)


if __name__ == "__main__":
    app()
