"""
Command-line interface for the Arbitrum to GnuCash importer.
"""

from datetime import datetime
from pathlib import Path
from typing import Optional
import asyncio
import logging
import signal
import sys

import click
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from . import __version__
from .classification.classifier import AddressClassifier
from .config import ImporterConfig, generate_default_config, load_config
from .export.exporters import EXPORT_FORMATS, export_entries
from .fetchers.cursor_store import CursorStore
from .pipeline import ExportPipeline, PipelineResult
from .reports.excel_report import ExcelReportGenerator
from .utils.addresses import coerce_address, is_address, normalize_address, short_address
from .utils.exceptions import ConfigurationError, ImporterError, PipelineCancelled
from .utils.logging_config import setup_logging

console = Console()

EXIT_FAILURE = 1
EXIT_CANCELLED = 130


@click.group()
@click.version_option(version=__version__)
def main():
    """Export Arbitrum account history as GnuCash-importable ledger entries."""
    pass


@main.command()
@click.argument("addresses", nargs=-1)
@click.option(
    "-c",
    "--config",
    type=click.Path(path_type=Path),
    help="Path to configuration file (YAML, JSON or TOML)",
)
@click.option(
    "--labels",
    type=click.Path(path_type=Path),
    multiple=True,
    help="Address label mapping file (repeatable, later files win)",
)
@click.option(
    "--categories",
    type=click.Path(path_type=Path),
    multiple=True,
    help="Address category mapping file (repeatable, later files win)",
)
@click.option("-o", "--output", type=click.Path(path_type=Path), help="Output file path")
@click.option(
    "-f",
    "--format",
    "export_format",
    type=click.Choice(EXPORT_FORMATS),
    default=None,
    help="Export format (default from config)",
)
@click.option("--start-block", type=int, default=None, help="First block to fetch")
@click.option("--end-block", type=int, default=None, help="Last block to fetch")
@click.option(
    "--since-last",
    is_flag=True,
    help="Resume each address after the last block recorded in the state file",
)
@click.option(
    "--state-file",
    type=click.Path(path_type=Path),
    default=None,
    help="Cursor state file for --since-last",
)
@click.option(
    "--report",
    type=click.Path(path_type=Path),
    default=None,
    help="Also write an Excel run report to this path",
)
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.option("--dry-run", is_flag=True, help="Fetch and build entries without writing files")
def export(
    addresses: tuple[str, ...],
    config: Optional[Path],
    labels: tuple[Path, ...],
    categories: tuple[Path, ...],
    output: Optional[Path],
    export_format: Optional[str],
    start_block: Optional[int],
    end_block: Optional[int],
    since_last: bool,
    state_file: Optional[Path],
    report: Optional[Path],
    verbose: bool,
    dry_run: bool,
):
    """
    Export the history of one or more addresses.

    ADDRESSES: Tracked addresses (defaults to the addresses in the config)
    """
    log_level = logging.DEBUG if verbose else logging.INFO
    setup_logging(log_level)

    try:
        importer_config = load_config(config)
        _configure_logging(importer_config, verbose)

        tracked = _resolve_addresses(addresses, importer_config)
        importer_config.mappings.label_files.extend(str(p) for p in labels)
        importer_config.mappings.category_files.extend(str(p) for p in categories)
        fmt = export_format or importer_config.export.format
        first_block = importer_config.fetch.start_block if start_block is None else start_block
        last_block = importer_config.fetch.end_block if end_block is None else end_block

        store: Optional[CursorStore] = None
        start_blocks: Optional[dict[str, int]] = None
        if since_last:
            state_path = state_file or _configured_path(importer_config.export.state_file)
            if state_path is None:
                raise ConfigurationError("--since-last needs --state-file or export.state_file")
            store = CursorStore.load(state_path)
            start_blocks = store.start_blocks(tracked, first_block)

        pipeline = ExportPipeline(importer_config)
        result = asyncio.run(
            _run_pipeline(pipeline, tracked, first_block, last_block, start_blocks)
        )

        _display_summary(result)
        _display_warnings(result)

        if dry_run:
            console.print("\n[yellow]Dry run - no files written[/yellow]")
        else:
            if output is None:
                output = Path(
                    importer_config.export.filename_template.format(
                        date=datetime.now().strftime("%Y%m%d"), ext=fmt
                    )
                )
            export_path = export_entries(
                result.entries,
                output,
                fmt,
                date_format=importer_config.export.date_format,
                prices=result.prices,
            )
            console.print(f"\n[green]Export written: {export_path}[/green]")

            if report is not None:
                report_path = ExcelReportGenerator(
                    importer_config.export.date_format
                ).generate_report(
                    summary=result.summary,
                    entries=result.entries,
                    orphans=result.orphans,
                    overrides=result.overrides,
                    failures=result.failures,
                    output_path=report,
                )
                console.print(f"[green]Report generated: {report_path}[/green]")

            if store is not None:
                store.advanced(result.histories, result.end_block).save()

        if result.has_failures:
            console.print(
                f"[red]{len(result.failures)} address(es) failed to fetch; "
                "their entries are missing from the export[/red]"
            )
            sys.exit(EXIT_FAILURE)

    except (PipelineCancelled, KeyboardInterrupt):
        console.print("\n[yellow]Cancelled - no export written[/yellow]")
        sys.exit(EXIT_CANCELLED)
    except ImporterError as e:
        console.print(f"[red]Error: {e}[/red]")
        if verbose:
            console.print_exception()
        sys.exit(EXIT_FAILURE)
    except Exception as e:
        console.print(f"[red]Unexpected error: {e}[/red]")
        if verbose:
            console.print_exception()
        sys.exit(EXIT_FAILURE)


@main.command("show-mappings")
@click.option("-c", "--config", type=click.Path(path_type=Path))
@click.option("--labels", type=click.Path(path_type=Path), multiple=True)
@click.option("--categories", type=click.Path(path_type=Path), multiple=True)
def show_mappings(config: Optional[Path], labels: tuple[Path, ...], categories: tuple[Path, ...]):
    """Load mapping files and print the merged classification table."""
    try:
        importer_config = load_config(config)
        classifier = AddressClassifier.from_files(
            [Path(p) for p in importer_config.mappings.label_files] + list(labels),
            [Path(p) for p in importer_config.mappings.category_files] + list(categories),
        )
    except ImporterError as e:
        console.print(f"[red]Error loading mappings: {e}[/red]")
        sys.exit(EXIT_FAILURE)

    table = Table(title="Address Mappings")
    table.add_column("Address")
    table.add_column("Label")
    table.add_column("Category")

    for address, classification in classifier.entries():
        table.add_row(address, classification.label or "-", classification.category or "-")

    console.print(table)
    console.print(f"\nTotal addresses: {len(classifier)}")

    if classifier.overrides:
        _display_overrides(classifier.overrides)


@main.command("init-config")
@click.option(
    "-o", "--output", type=click.Path(path_type=Path), default=Path("config.yml")
)
def init_config(output: Path):
    """Generate a sample configuration file."""
    generate_default_config(output)
    console.print(f"[green]Configuration file generated: {output}[/green]")


async def _run_pipeline(
    pipeline: ExportPipeline,
    addresses: list[str],
    start_block: int,
    end_block: Optional[int],
    start_blocks: Optional[dict[str, int]],
) -> PipelineResult:
    """Run the pipeline with a progress bar; SIGINT cancels the run."""
    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel_event.set)
    except (NotImplementedError, RuntimeError):
        pass

    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("{task.completed}/{task.total}"),
            console=console,
        ) as progress:
            task = progress.add_task("Fetching addresses...", total=len(addresses))
            return await pipeline.run(
                addresses,
                start_block,
                end_block,
                start_blocks=start_blocks,
                cancel_event=cancel_event,
                on_fetched=lambda outcome: progress.advance(task),
            )
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass


def _configure_logging(importer_config: ImporterConfig, verbose: bool) -> None:
    level = logging.DEBUG if verbose else getattr(
        logging, importer_config.logging.level.upper(), logging.INFO
    )
    setup_logging(
        level,
        _configured_path(importer_config.logging.file),
        importer_config.logging.format,
    )


def _configured_path(value: Optional[str]) -> Optional[Path]:
    return Path(value) if value else None


def _resolve_addresses(addresses: tuple[str, ...], importer_config: ImporterConfig) -> list[str]:
    """Validate command-line addresses, falling back to the configured ones."""
    if not addresses:
        if not importer_config.addresses:
            raise ConfigurationError("No addresses given on the command line or in the config")
        return list(importer_config.addresses)

    tracked: list[str] = []
    for value in addresses:
        address = coerce_address(value)
        if not is_address(address):
            raise ConfigurationError(f"Invalid address: {value}")
        address = normalize_address(address)
        if address not in tracked:
            tracked.append(address)
    return tracked


def _display_summary(result: PipelineResult) -> None:
    """Display run summary in console."""
    summary = result.summary
    table = Table(title="Export Summary")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")

    table.add_row("Addresses", str(len(summary.addresses)))
    table.add_row("Transactions Fetched", str(summary.transactions_fetched))
    table.add_row("Token Transfers Fetched", str(summary.token_transfers_fetched))
    table.add_row("Duplicates Dropped", str(summary.duplicates_dropped))
    table.add_row("Ledger Entries", str(summary.entries_built))
    table.add_row("Failed Transactions", str(summary.failed_transactions))
    table.add_row("Token Transfers Skipped", str(summary.tokens_skipped))
    table.add_row("Processing Time", f"{summary.processing_time_seconds:.2f}s")

    console.print(table)

    if len(summary.addresses) > 1:
        per_address = Table(title="Entries by Address")
        per_address.add_column("Address")
        per_address.add_column("Entries", justify="right")
        for address in summary.addresses:
            per_address.add_row(address, str(summary.entries_by_address.get(address, 0)))
        console.print(per_address)


def _display_warnings(result: PipelineResult) -> None:
    """Report collected warnings once, after progress output has finished."""
    if result.orphans:
        table = Table(title="Orphan Token Transfers (excluded from export)")
        table.add_column("Transaction Hash")
        table.add_column("Block", justify="right")
        table.add_column("Transfers", justify="right")
        table.add_column("Reason")
        for orphan in result.orphans:
            table.add_row(
                orphan.transaction_hash,
                str(orphan.block_number),
                str(len(orphan.transfers)),
                orphan.reason,
            )
        console.print(table)

    if result.overrides:
        _display_overrides(result.overrides)

    if result.failures:
        table = Table(title="Failed Addresses")
        table.add_column("Address")
        table.add_column("Error")
        table.add_column("Resume At")
        for failure in result.failures:
            table.add_row(short_address(failure.address), failure.error, str(failure.cursor or "-"))
        console.print(table)


def _display_overrides(overrides) -> None:
    table = Table(title="Mapping Overrides")
    table.add_column("Address")
    table.add_column("Field")
    table.add_column("Previous")
    table.add_column("New")
    table.add_column("Source")
    for notice in overrides:
        table.add_row(
            notice.address,
            notice.field,
            notice.previous_value,
            notice.new_value,
            notice.source,
        )
    console.print(table)


if __name__ == "__main__":
    main()
