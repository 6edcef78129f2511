"""
CLI Interface
=============
Command-line interface for the quiz bank backend.

Usage:
    python -m quizbank serve [--host HOST] [--port PORT] [--debug]
    python -m quizbank normalize <quiz.json> [--json-output]
    python -m quizbank migrate [--dry-run]
    python -m quizbank reconcile
    python -m quizbank sweep-assets [--dry-run]
"""

from __future__ import annotations

import json
import sys

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from . import __version__
from .config import ServiceConfig, setup_logging
from .errors import QuizBankError, ValidationError
from .schema_adapter import normalize as normalize_quiz

console = Console()

LOG_LEVELS = click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"])


@click.group()
@click.version_option(version=__version__, prog_name="quizbank")
def cli():
    """Quiz Bank: quiz lifecycle and referential integrity backend."""
    pass


@cli.command()
@click.option("--host", default="0.0.0.0", help="Server host")
@click.option("--port", default=5000, type=int, help="Server port")
@click.option("--debug", is_flag=True, default=False, help="Debug mode")
@click.option("--log-level", default=None, type=LOG_LEVELS, help="Logging level")
def serve(host: str, port: int, debug: bool, log_level: str):
    """Start the HTTP API server."""
    from .server import run_server

    config = ServiceConfig.from_env(log_level=log_level)
    setup_logging(config.log_level, config.log_file)

    console.print()
    console.print(
        Panel.fit(
            f"[bold cyan]Quiz Bank API v{__version__}[/]\n"
            f"[dim]Starting on {host}:{port} "
            f"(db={config.mongodb_db}, assets={config.asset_backend})[/]",
            border_style="cyan",
        )
    )
    console.print()

    run_server(host=host, port=port, debug=debug, config=config)


@cli.command()
@click.argument("json_path", type=click.Path(exists=True))
@click.option(
    "--json-output",
    is_flag=True,
    default=False,
    help="Print the canonical document as JSON only",
)
def normalize(json_path: str, json_output: bool):
    """Print the canonical form of a quiz JSON file."""
    with open(json_path, "r", encoding="utf-8") as f:
        try:
            raw = json.load(f)
        except json.JSONDecodeError as e:
            console.print(f"[red]Error:[/] {json_path} is not valid JSON: {e}")
            sys.exit(1)

    try:
        quiz = normalize_quiz(raw)
    except ValidationError as e:
        if json_output:
            print(json.dumps(e.to_dict(), indent=2, ensure_ascii=False))
        else:
            _display_issues(json_path, e)
        sys.exit(1)

    document = quiz.to_document()
    if json_output:
        print(json.dumps(document, indent=2, ensure_ascii=False, default=str))
        return

    console.print()
    console.print(
        Panel.fit(
            f"[bold cyan]{quiz.title}[/]\n"
            f"[dim]{quiz.test_type} | {len(quiz.sections)} section(s) | "
            f"{quiz.question_count} question(s)[/]",
            border_style="cyan",
        )
    )
    table = Table(title="Sections", border_style="cyan")
    table.add_column("Section", style="bold")
    table.add_column("Questions", justify="right")
    table.add_column("Limit", justify="right")
    table.add_column("Timer (min)", justify="right")
    for section in quiz.sections:
        table.add_row(
            section.name,
            str(len(section.questions)),
            "-" if section.question_limit is None else str(section.question_limit),
            "-" if section.timer_minutes is None else f"{section.timer_minutes:g}",
        )
    console.print(table)
    console.print()


@cli.command()
@click.option("--dry-run", is_flag=True, default=False, help="Report only, write nothing")
@click.option("--log-level", default="WARNING", type=LOG_LEVELS, help="Logging level")
def migrate(dry_run: bool, log_level: str):
    """Rewrite legacy-shaped stored quizzes in canonical shape."""
    services = _build_services(log_level)
    try:
        report = services.quizzes.migrate_legacy(dry_run=dry_run)
    except QuizBankError as e:
        _fail(e)
    finally:
        services.close()

    table = Table(
        title=f"Migration{' (dry run)' if dry_run else ''}", border_style="cyan"
    )
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    table.add_row("Quizzes scanned", str(report.scanned))
    table.add_row("Rewritten" if not dry_run else "Would rewrite", str(len(report.migrated)))
    table.add_row(
        "Invalid (left as-is)",
        f"[red]{len(report.invalid)}[/]" if report.invalid else "0",
    )
    console.print()
    console.print(table)

    for quiz_id, issues in report.invalid.items():
        console.print(f"[yellow]{quiz_id}[/]: {'; '.join(issues)}")
    console.print()


@cli.command()
@click.option("--log-level", default="WARNING", type=LOG_LEVELS, help="Logging level")
def reconcile(log_level: str):
    """Rebuild every backlink array from the quizzes."""
    services = _build_services(log_level)
    try:
        summary = services.integrity.rebuild_all()
    except QuizBankError as e:
        _fail(e)
    finally:
        services.close()

    table = Table(title="Backlink Rebuild", border_style="green")
    table.add_column("Collection", style="bold")
    table.add_column("Documents", justify="right")
    table.add_column("Dangling quiz references", justify="right")
    for collection, count in summary["updated"].items():
        dangling = summary["dangling"].get(collection, [])
        table.add_row(
            collection,
            str(count),
            f"[yellow]{len(dangling)}[/]" if dangling else "[green]0[/]",
        )
    console.print()
    console.print(table)
    console.print()


@cli.command("sweep-assets")
@click.option("--dry-run", is_flag=True, default=False, help="Report only, delete nothing")
@click.option("--log-level", default="WARNING", type=LOG_LEVELS, help="Logging level")
def sweep_assets(dry_run: bool, log_level: str):
    """Delete stored quiz images that no quiz references."""
    services = _build_services(log_level)
    try:
        report = services.quizzes.sweep_orphaned_assets(dry_run=dry_run)
    except QuizBankError as e:
        _fail(e)
    finally:
        services.close()

    table = Table(
        title=f"Asset Sweep{' (dry run)' if dry_run else ''}", border_style="cyan"
    )
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    table.add_row("Stored images", str(report.stored))
    table.add_row("Referenced by quizzes", str(report.referenced))
    table.add_row("Orphaned", str(len(report.orphaned)))
    if not dry_run:
        table.add_row(
            "Failed deletes",
            f"[red]{report.failed}[/]" if report.failed else "0",
        )
    console.print()
    console.print(table)
    console.print()


# ─── Helpers ──────────────────────────────────────────────────────────────────


def _build_services(log_level: str):
    from .services import build_services

    config = ServiceConfig.from_env(log_level=log_level, inline_tasks=True)
    setup_logging(config.log_level, config.log_file)
    try:
        return build_services(config)
    except (QuizBankError, ValueError) as e:
        _fail(e)


def _fail(error: Exception):
    console.print(f"[red]Error:[/] {getattr(error, 'message', error)}")
    sys.exit(1)


def _display_issues(json_path: str, error: ValidationError):
    table = Table(title=f"Invalid quiz: {json_path}", border_style="red")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Issue")
    for i, issue in enumerate(error.details or [error.message], 1):
        table.add_row(str(i), issue)
    console.print()
    console.print(table)
    console.print()
