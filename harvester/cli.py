"""
CLI Interface
=============
Command-line interface for the card harvester.

Usage:
    python -m harvester harvest <output_dir> [options]
    python -m harvester extract <pdf_path> --category <tag> [options]
    python -m harvester recognize <image_path> --category <tag>
"""

from __future__ import annotations

import json
import os
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from . import __version__
from .engine import DEFAULT_BASE_URL, HarvestConfig, HarvestEngine
from .image_extractor import ImageExtractionError
from .models import CardAttributes, HarvestReport, RunStatus, normalize_category
from .ocr import OCREngineError, RecognitionError
from .regions import REGION_MAPS

console = Console()

SCRATCH_FILENAME = "__harvester.tmp"

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_PARTIAL = 2


def check_output_dir(path: str) -> Path:
    """
    Ensure the output directory exists and is writable.

    Raises:
        click.ClickException: If it does not exist or cannot be written.
    """
    output_dir = Path(path.strip())
    if not output_dir.is_dir():
        raise click.ClickException(
            f"The provided output path does not exist: {output_dir.absolute()}"
        )

    scratch = output_dir / SCRATCH_FILENAME
    try:
        with open(scratch, "wb") as f:
            f.write(b"\xff")
    except OSError:
        raise click.ClickException(
            f"You do not have write permissions to the output path provided: "
            f"{output_dir.absolute()}"
        )
    finally:
        if scratch.exists():
            scratch.unlink()

    return output_dir


@click.group()
@click.version_option(version=__version__, prog_name="harvester")
def cli():
    """Card Harvester: card renders and printed stats from the card database."""
    pass


@cli.command()
@click.argument("output_dir", type=click.Path(file_okay=False))
@click.option(
    "--base-url", "-u",
    default=lambda: os.environ.get("HARVESTER_BASE_URL", DEFAULT_BASE_URL),
    show_default=DEFAULT_BASE_URL,
    help="Card database base URL",
)
@click.option(
    "--group", "-g",
    "groups",
    multiple=True,
    help="Only harvest these groups (repeatable)",
)
@click.option(
    "--concurrency", "-j",
    default=3,
    type=click.IntRange(min=1),
    help="Maximum card downloads in flight",
)
@click.option(
    "--workers",
    default=None,
    type=click.IntRange(min=1),
    help="Worker threads (default: twice the concurrency)",
)
@click.option("--timeout", default=60.0, type=float, help="Request timeout (seconds)")
@click.option(
    "--layout",
    default="mk3",
    type=click.Choice(sorted(REGION_MAPS)),
    help="Card region layout",
)
@click.option("--lang", default="eng", help="Tesseract language")
@click.option(
    "--tesseract-cmd",
    default=None,
    envvar="HARVESTER_TESSERACT_CMD",
    help="Path to the tesseract binary",
)
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    help="Logging level",
)
@click.option("--log-file", default=None, help="Path to log file")
@click.option(
    "--json-output",
    is_flag=True,
    default=False,
    help="Output only the JSON report to stdout",
)
def harvest(
    output_dir: str,
    base_url: str,
    groups: tuple[str, ...],
    concurrency: int,
    workers: int,
    timeout: float,
    layout: str,
    lang: str,
    tesseract_cmd: str,
    log_level: str,
    log_file: str,
    json_output: bool,
):
    """Harvest every card of the catalog into OUTPUT_DIR."""

    out = check_output_dir(output_dir)

    if json_output:
        log_level = "ERROR"

    config = HarvestConfig(
        base_url=base_url,
        request_timeout=timeout,
        output_dir=str(out),
        groups=groups,
        concurrency=concurrency,
        workers=workers,
        layout=layout,
        ocr_lang=lang,
        tesseract_cmd=tesseract_cmd,
        log_level=log_level,
        log_file=log_file,
    )

    if not json_output:
        console.print()
        console.print(
            Panel.fit(
                f"[bold cyan]Card Harvester v{__version__}[/]\n"
                f"[dim]{base_url} → {out.absolute()}[/]",
                border_style="cyan",
            )
        )
        console.print()

    try:
        engine = HarvestEngine(config)

        if json_output:
            report = engine.run()
        else:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                MofNCompleteColumn(),
                TimeElapsedColumn(),
                console=console,
            ) as progress:
                tasks: dict[str, int] = {}

                def on_progress(group: str, done: int, total: int):
                    if group not in tasks:
                        tasks[group] = progress.add_task(f"Harvesting {group}", total=total)
                    progress.update(tasks[group], completed=done)

                report = engine.run(progress_callback=on_progress)

    except KeyboardInterrupt:
        console.print("[yellow]Interrupted.[/]")
        sys.exit(EXIT_ERROR)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Configuration error:[/] {e}")
        sys.exit(EXIT_ERROR)
    except OCREngineError as e:
        console.print(f"[red]OCR unavailable:[/] {e}")
        sys.exit(EXIT_ERROR)
    except Exception as e:
        console.print(f"[red]Unexpected error:[/] {e}")
        if log_level == "DEBUG":
            console.print_exception()
        sys.exit(EXIT_ERROR)

    if json_output:
        print(json.dumps(
            report.model_dump(mode="json", exclude={"groups": {"__all__": {"outcomes": {"__all__": {"result"}}}}}),
            indent=2,
            ensure_ascii=False,
        ))
    else:
        _display_report(report)

    sys.exit(_exit_code(report))


@cli.command()
@click.argument("pdf_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--category", "-c", required=True, help="Card category tag")
@click.option("--output", "-o", default="output", help="Directory for extracted images")
@click.option("--key", "-k", default=None, help="Card key (defaults to the file name)")
@click.option("--width", default=750, type=int, help="Expected render width")
@click.option("--height", default=1050, type=int, help="Expected render height")
@click.option("--tesseract-cmd", default=None, envvar="HARVESTER_TESSERACT_CMD")
@click.option("--log-level", default="WARNING", help="Logging level")
def extract(
    pdf_path: str,
    category: str,
    output: str,
    key: str,
    width: int,
    height: int,
    tesseract_cmd: str,
    log_level: str,
):
    """Extract and recognize a card PDF already on disk."""

    config = HarvestConfig(
        output_dir=output,
        image_width=width,
        image_height=height,
        tesseract_cmd=tesseract_cmd,
        log_level=log_level,
    )

    try:
        result = HarvestEngine(config).process_document(pdf_path, category, key=key)
    except (ImageExtractionError, RecognitionError, OCREngineError, ValueError) as e:
        console.print(f"[red]Error:[/] {type(e).__name__}: {e}")
        sys.exit(EXIT_ERROR)

    console.print()
    console.print(f"[bold]Images:[/] {', '.join(result.images)}")
    _display_attributes(result.record.title, result.attributes)


@cli.command()
@click.argument("image_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--category", "-c", required=True, help="Card category tag")
@click.option(
    "--layout",
    default="mk3",
    type=click.Choice(sorted(REGION_MAPS)),
    help="Card region layout",
)
@click.option("--tesseract-cmd", default=None, envvar="HARVESTER_TESSERACT_CMD")
def recognize(image_path: str, category: str, layout: str, tesseract_cmd: str):
    """Recognize the printed stats of an extracted card image."""

    config = HarvestConfig(layout=layout, tesseract_cmd=tesseract_cmd, log_level="WARNING")

    try:
        recognizer = HarvestEngine(config).create_recognizer()
        attributes = recognizer.recognize(image_path, normalize_category(category))
    except (RecognitionError, OCREngineError, ValueError) as e:
        console.print(f"[red]Error:[/] {type(e).__name__}: {e}")
        sys.exit(EXIT_ERROR)

    _display_attributes(Path(image_path).name, attributes)


# ─── Display Helpers ──────────────────────────────────────────────────────────


def _exit_code(report: HarvestReport) -> int:
    if report.status == RunStatus.SUCCESS:
        return EXIT_OK
    if report.status == RunStatus.PARTIAL:
        return EXIT_PARTIAL
    return EXIT_ERROR


def _display_attributes(title: str, attributes: CardAttributes):
    table = Table(title=title, border_style="cyan")
    table.add_column("Attribute", style="bold")
    table.add_column("Value", justify="right")

    for name, value in attributes.model_dump().items():
        if value is None:
            continue
        table.add_row(name.replace("_", " ").title(), str(value))

    console.print(table)
    console.print()


def _display_report(report: HarvestReport):
    """Display the harvest summary and every failed card."""
    console.print()

    table = Table(title="Harvest Summary", border_style="cyan")
    table.add_column("Group", style="bold")
    table.add_column("Cards", justify="right")
    table.add_column("Succeeded", justify="right", style="green")
    table.add_column("Failed", justify="right", style="red")

    for group in report.groups:
        table.add_row(
            group.group,
            str(group.total),
            str(group.succeeded),
            str(group.failed),
        )
    console.print(table)

    failures = [
        (group.group, outcome)
        for group in report.groups
        for outcome in group.outcomes
        if not outcome.succeeded
    ]
    if failures:
        console.print()
        fail_table = Table(title="Failed Cards", border_style="red")
        fail_table.add_column("Group")
        fail_table.add_column("Card")
        fail_table.add_column("Error")
        for group, outcome in failures:
            fail_table.add_row(
                group,
                outcome.title,
                f"{outcome.error_type}: {outcome.error}",
            )
        console.print(fail_table)

    color = {
        RunStatus.SUCCESS: "green",
        RunStatus.PARTIAL: "yellow",
        RunStatus.FAILED: "red",
    }[report.status]
    console.print()
    console.print(
        f"[{color}]Harvest {report.status.value}[/]: "
        f"{report.total - report.failed}/{report.total} card(s)"
    )
    console.print()
