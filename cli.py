"""
Invoice Memory - Command Line Interface

Commands:
    run              Process extracted invoices against memory
    replay           Teach memory from historical human corrections
    stats            Show what the memory stores hold
    check-duplicate  Probe the duplicate guard without recording
    reset            Forget everything every store has learned

Examples:

    # Full demo: reset, replay corrections, process with a simulated reviewer
    invoice-memory run --reset --corrections data/human_corrections.json --simulate-feedback

    # Use SQLite stores and a stricter threshold from config
    invoice-memory -c config/memory.yaml --backend sqlite run -o output/results.json
"""

import sys
from pathlib import Path
from typing import List, Optional

import click
from loguru import logger
from rich.console import Console
from rich.table import Table

from decision.models import DecisionResult, RunStatus
from pipeline import (
    BACKENDS,
    InvoiceMemoryPipeline,
    PipelineConfig,
    load_corrections,
    load_invoices,
    load_purchase_orders,
)
from review.json_export import ExportFormat, ResultExporter, summarize

DEFAULT_CONFIG = Path("config/memory.yaml")

STATUS_STYLES = {
    RunStatus.AUTO_APPLIED: "[green]auto-applied",
    RunStatus.NEEDS_REVIEW: "[yellow]needs review",
    RunStatus.DUPLICATE: "[red]duplicate",
}

console = Console()


def setup_logging(verbose: bool = False, log_file: Optional[Path] = None):
    """Configure loguru logging."""
    # Remove default handler
    logger.remove()

    log_level = "DEBUG" if verbose else "INFO"
    logger.add(
        sys.stderr,
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{message}</cyan>",
        level=log_level,
        colorize=True
    )

    if log_file:
        logger.add(
            log_file,
            format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} | {message}",
            level="DEBUG",
            rotation="10 MB"
        )


def _fail(message: str):
    console.print(f"[bold red]{message}[/]")
    raise SystemExit(1)


def _build_pipeline(ctx: click.Context, purchase_orders_path: Optional[Path] = None) -> InvoiceMemoryPipeline:
    config: PipelineConfig = ctx.obj['config']
    purchase_orders = []
    if purchase_orders_path is not None:
        purchase_orders = load_purchase_orders(purchase_orders_path)
    return InvoiceMemoryPipeline(config, purchase_orders=purchase_orders)


def _data_path(config: PipelineConfig, given: Optional[Path], default_name: str) -> Optional[Path]:
    if given is not None:
        return given
    candidate = Path(config.data_dir) / default_name
    return candidate if candidate.exists() else None


def print_results(results: List[DecisionResult], verbose: bool = False):
    """Print a summary table of decision results."""
    table = Table(title="Decision Summary")

    table.add_column("Invoice", style="cyan")
    table.add_column("Vendor")
    table.add_column("Status", style="bold")
    table.add_column("Confidence", justify="right")
    table.add_column("Proposals", justify="right")
    table.add_column("Reasoning")

    for result in results:
        table.add_row(
            result.invoice_id,
            result.normalized_invoice.vendor,
            STATUS_STYLES[result.status],
            f"{result.confidence_score:.1f}",
            str(len(result.proposed_corrections)),
            result.reasoning,
        )

    console.print()
    console.print(table)

    if verbose:
        for result in results:
            console.print(f"\n[bold]{result.invoice_id}[/]")
            for proposal in result.proposed_corrections:
                console.print(f"  • {proposal}")
            for update in result.memory_updates:
                console.print(f"  [dim]{update}[/]")
            for entry in result.audit_trail:
                console.print(f"  [dim]{entry.timestamp} {entry.step.value:<16} {entry.details}[/]")

    summary = summarize(results)
    console.print()
    console.print(f"[bold]Total:[/] {summary['total']} invoices")
    console.print(f"[bold green]Auto-applied:[/] {summary['byStatus'][RunStatus.AUTO_APPLIED.value]}")
    console.print(f"[bold yellow]Needs review:[/] {summary['byStatus'][RunStatus.NEEDS_REVIEW.value]}")
    console.print(f"[bold red]Duplicates:[/] {summary['byStatus'][RunStatus.DUPLICATE.value]}")


@click.group()
@click.option(
    '--config', '-c',
    'config_path',
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help='Path to memory.yaml configuration file'
)
@click.option(
    '--backend',
    type=click.Choice(BACKENDS),
    default=None,
    help='Override the storage backend'
)
@click.option(
    '--memory-dir',
    type=click.Path(path_type=Path),
    default=None,
    help='Override the directory holding the memory stores'
)
@click.option(
    '--threshold',
    type=float,
    default=None,
    help='Override the auto-apply confidence threshold'
)
@click.option(
    '--verbose', '-v',
    is_flag=True,
    help='Enable verbose logging'
)
@click.option(
    '--log-file',
    type=click.Path(path_type=Path),
    default=None,
    help='Write logs to file'
)
@click.pass_context
def cli(
    ctx: click.Context,
    config_path: Optional[Path],
    backend: Optional[str],
    memory_dir: Optional[Path],
    threshold: Optional[float],
    verbose: bool,
    log_file: Optional[Path],
):
    """Invoice Memory - learn invoice corrections from human feedback."""
    setup_logging(verbose=verbose, log_file=log_file)

    if config_path is None and DEFAULT_CONFIG.exists():
        config_path = DEFAULT_CONFIG

    try:
        if config_path is not None:
            data = PipelineConfig.from_yaml(config_path).to_dict()
        else:
            data = PipelineConfig().to_dict()
        if backend is not None:
            data['backend'] = backend
        if memory_dir is not None:
            data['memory_dir'] = str(memory_dir)
        if threshold is not None:
            data['threshold'] = threshold
        config = PipelineConfig.from_dict(data)
    except ValueError as e:
        _fail(f"Invalid configuration: {e}")

    ctx.ensure_object(dict)
    ctx.obj['config'] = config
    ctx.obj['verbose'] = verbose


@cli.command()
@click.option(
    '--invoices', '-i',
    'invoices_path',
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help='Extracted invoices JSON (default: <data_dir>/invoices_extracted.json)'
)
@click.option(
    '--purchase-orders', '-p',
    'purchase_orders_path',
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help='Purchase orders JSON (default: <data_dir>/purchase_orders.json)'
)
@click.option(
    '--corrections',
    'corrections_path',
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help='Replay these human corrections before processing'
)
@click.option(
    '--simulate-feedback/--no-simulate-feedback',
    default=None,
    help='Approve unreviewed vendors with the configured vendor fields'
)
@click.option(
    '--reset',
    'reset_first',
    is_flag=True,
    help='Reset all memory stores before running'
)
@click.option(
    '--output', '-o',
    'output_path',
    type=click.Path(path_type=Path),
    default=None,
    help='Write results as a JSON array'
)
@click.option(
    '--review-queue',
    'review_queue_path',
    type=click.Path(path_type=Path),
    default=None,
    help='Write results that need review'
)
@click.pass_context
def run(
    ctx: click.Context,
    invoices_path: Optional[Path],
    purchase_orders_path: Optional[Path],
    corrections_path: Optional[Path],
    simulate_feedback: Optional[bool],
    reset_first: bool,
    output_path: Optional[Path],
    review_queue_path: Optional[Path],
):
    """Process extracted invoices against memory."""
    config: PipelineConfig = ctx.obj['config']
    if simulate_feedback is not None:
        config.simulate_feedback = simulate_feedback

    invoices_path = _data_path(config, invoices_path, 'invoices_extracted.json')
    if invoices_path is None:
        _fail("No invoices file given and none found in the data directory")
    purchase_orders_path = _data_path(config, purchase_orders_path, 'purchase_orders.json')

    console.print("[bold blue]Invoice Memory[/]")

    try:
        pipeline = _build_pipeline(ctx, purchase_orders_path)
        if reset_first:
            pipeline.reset()
        if corrections_path is not None:
            summary = pipeline.replay_corrections(load_corrections(corrections_path))
            console.print(f"Replayed {summary.replayed} human correction(s)")
        invoices = load_invoices(invoices_path)
    except (ValueError, OSError) as e:
        _fail(str(e))

    results = pipeline.process_batch(invoices)
    print_results(results, verbose=ctx.obj['verbose'])

    exporter = ResultExporter()
    try:
        if output_path:
            exporter.export(results, str(output_path), ExportFormat.JSON)
            console.print(f"[green]✓ Results written to: {output_path}[/]")
        if review_queue_path:
            exporter.export(results, str(review_queue_path), ExportFormat.REVIEW_QUEUE)
            console.print(f"[green]✓ Review queue written to: {review_queue_path}[/]")
    except (ValueError, OSError) as e:
        _fail(f"Export failed: {e}")


@cli.command()
@click.argument('corrections_path', type=click.Path(exists=True, path_type=Path))
@click.pass_context
def replay(ctx: click.Context, corrections_path: Path):
    """Teach memory from a human corrections JSON file."""
    try:
        pipeline = _build_pipeline(ctx)
        summary = pipeline.replay_corrections(load_corrections(corrections_path))
    except (ValueError, OSError) as e:
        _fail(str(e))

    console.print(f"Replayed {summary.replayed} correction(s): "
                  f"{summary.vendor_updates} vendor update(s), "
                  f"{summary.pattern_updates} pattern update(s)")
    if summary.failed_writes:
        console.print(f"[yellow]{summary.failed_writes} update(s) could not be persisted[/]")
    if ctx.obj['verbose']:
        for line in summary.updates:
            console.print(f"  [dim]{line}[/]")


@cli.command()
@click.pass_context
def stats(ctx: click.Context):
    """Show what the memory stores hold."""
    pipeline = _build_pipeline(ctx)
    snapshot = pipeline.stats()

    vendors = Table(title="Vendor Memory")
    vendors.add_column("Vendor", style="cyan")
    vendors.add_column("Confidence", justify="right")
    vendors.add_column("Approved", justify="right")
    vendors.add_column("Rejected", justify="right")
    vendors.add_column("Service date label")
    for row in snapshot['vendors']:
        mark = "[green]" if row['trusted'] else "[yellow]"
        vendors.add_row(
            row['vendor'],
            f"{mark}{row['confidence']:.1f}",
            str(row['approvedCount']),
            str(row['rejectedCount']),
            str(row.get('serviceDateLabel') or ''),
        )

    patterns = Table(title="Pattern Memory")
    patterns.add_column("Pattern", style="cyan")
    patterns.add_column("Confidence", justify="right")
    patterns.add_column("Approved", justify="right")
    patterns.add_column("Rejected", justify="right")
    patterns.add_column("Action")
    for row in snapshot['patterns']:
        mark = "[green]" if row['trusted'] else "[yellow]"
        patterns.add_row(
            row['patternId'],
            f"{mark}{row['confidence']:.1f}",
            str(row['approvedCount']),
            str(row['rejectedCount']),
            str(row.get('action') or ''),
        )

    console.print(vendors)
    console.print(patterns)

    ledger = snapshot['ledger']
    accuracy = f"{ledger['accuracy']:.0%}" if ledger['accuracy'] is not None else "n/a"
    console.print()
    console.print(f"[bold]Threshold:[/] {snapshot['threshold']}")
    console.print(f"[bold]Ledger:[/] {ledger['decisions']} decision id(s), "
                  f"{ledger['approved']} approved, {ledger['rejected']} rejected, "
                  f"accuracy {accuracy}")
    console.print(f"[bold]Invoices seen:[/] {snapshot['duplicates']}")


@cli.command('check-duplicate')
@click.argument('vendor')
@click.argument('invoice_number')
@click.argument('invoice_date')
@click.pass_context
def check_duplicate(ctx: click.Context, vendor: str, invoice_number: str, invoice_date: str):
    """Check whether an invoice was already seen, without recording it."""
    pipeline = _build_pipeline(ctx)
    record = pipeline.stores.duplicates.get(vendor, invoice_number, invoice_date)

    if record is None:
        console.print(f"[green]Not seen before:[/] {vendor} {invoice_number} {invoice_date}")
    else:
        console.print(f"[red]Duplicate:[/] seen {record.seen_count} time(s), "
                      f"first at {record.first_seen_at}")


@cli.command()
@click.confirmation_option(prompt='Forget everything the memory stores have learned?')
@click.pass_context
def reset(ctx: click.Context):
    """Reset all memory stores."""
    pipeline = _build_pipeline(ctx)
    results = pipeline.reset()
    failed = [r for r in results if not r.ok]
    if failed:
        _fail(f"{len(failed)} store(s) could not be reset: {failed[0].error}")
    console.print("[green]✓ All memory stores reset[/]")


def main():
    cli(obj={})


if __name__ == '__main__':
    main()
