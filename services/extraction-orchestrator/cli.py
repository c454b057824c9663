"""Command-line entry point for batch extraction runs.

Exit codes: 0 when the batch ran to completion (even with per-document
failures), 1 when a fatal extractor error aborted it, 2 on bad arguments
or an unreadable schema.
"""

import asyncio
import json
import logging
import mimetypes
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from config import settings
from extractors import Extractor
from models import Effort, SourceDocument
from orchestrator import BatchOrchestrator, BatchOutcome
from pipeline import ConsensusMode, DocumentPipeline
from providers import build_extractors
from schema_spec import SchemaRegistry, SchemaSpec, SchemaSpecError, load_schema
from storage import BatchSummary, ProgressLedger, ResultStore, build_summary
from validator import render_report, validate as validate_tree

logger = logging.getLogger(__name__)

EXIT_ABORTED = 1
EXIT_USAGE = 2

app = typer.Typer(
    name="extraction-orchestrator",
    help="Batch structured extraction with provider fallback, consensus and validation",
    add_completion=False,
)
console = Console()


def setup_logging() -> None:
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def load_spec(path: Path) -> SchemaSpec:
    try:
        return load_schema(path)
    except SchemaSpecError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(EXIT_USAGE)


def load_documents(input_dir: Path, pattern: str) -> list[SourceDocument]:
    """Read matching files; the file name is the document id."""
    documents = []
    for path in sorted(input_dir.glob(pattern)):
        if not path.is_file():
            continue
        media_type, _ = mimetypes.guess_type(path.name)
        documents.append(SourceDocument(
            document_id=path.name,
            content=path.read_bytes(),
            filename=path.name,
            media_type=media_type or "application/octet-stream",
        ))
    return documents


async def _run_batch(
    extractors: list[Extractor],
    spec: SchemaSpec,
    documents: list[SourceDocument],
    effort: Effort,
    resume: bool,
    concurrency: int,
    mode: ConsensusMode,
    results_dir: Path,
    progress_file: Path,
) -> BatchOutcome:
    pipeline = DocumentPipeline(extractors, spec, mode=mode)
    orchestrator = BatchOrchestrator(
        pipeline,
        ProgressLedger(progress_file),
        ResultStore(results_dir),
        concurrency=concurrency,
        batch_delay=settings.BATCH_DELAY_SECONDS,
    )
    try:
        return await orchestrator.run(documents, effort=effort, resume=resume)
    finally:
        for extractor in extractors:
            await extractor.aclose()


def print_summary(summary: BatchSummary) -> None:
    table = Table(title=f"Batch summary ({summary.total_documents} documents)")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Successful", str(summary.successful))
    table.add_row("Failed", str(summary.failed))
    table.add_row("Not processed", str(summary.not_processed))
    table.add_row("Valid records", str(summary.valid_documents))
    table.add_row("Total cost", f"${summary.total_cost_usd:.4f}")
    table.add_row("Total tokens", f"{summary.total_tokens:,}")
    table.add_row("Avg cost / document", f"${summary.average_cost_per_document:.4f}")
    table.add_row("Avg time / document", f"{summary.average_seconds_per_document:.1f}s")
    table.add_row("Avg completeness", f"{summary.average_completeness:.1f}%")
    for name, entry in sorted(summary.by_extractor.items()):
        table.add_row(f"Via {name}", f"{entry.documents} (${entry.cost_usd:.4f})")
    for kind, count in sorted(summary.by_error_kind.items()):
        table.add_row(f"Errors: {kind}", str(count))
    console.print(table)

    for failure in summary.failures:
        console.print(f"[red]✗[/red] {escape(f'{failure.document_id}: [{failure.kind}] {failure.message}')}")


@app.command()
def run(
    effort: Effort = typer.Option(
        Effort(settings.DEFAULT_EFFORT), "--effort", "-e", help="Reasoning/quality effort level",
    ),
    resume: bool = typer.Option(
        True, "--resume/--no-resume", help="Skip documents already in the progress ledger",
    ),
    input_dir: Optional[Path] = typer.Option(None, "--input-dir", "-i", help="Directory of documents"),
    pattern: Optional[str] = typer.Option(None, "--pattern", "-p", help="Glob for documents in the input dir"),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", "-c", min=1, help="Documents in flight"),
    mode: Optional[ConsensusMode] = typer.Option(None, "--mode", "-m", help="Stop at first success or run all"),
    schema: Optional[Path] = typer.Option(None, "--schema", help="Schema definition file"),
    results_dir: Optional[Path] = typer.Option(None, "--results-dir", help="Where per-document results go"),
    progress_file: Optional[Path] = typer.Option(None, "--progress-file", help="Progress ledger file"),
):
    """Run a batch over every matching document in the input directory."""
    setup_logging()
    spec = load_spec(schema or settings.SCHEMA_PATH)

    directory = input_dir or settings.INPUT_DIR
    if not directory.is_dir():
        console.print(f"[red]Error:[/red] input directory {directory} does not exist")
        raise typer.Exit(EXIT_USAGE)
    documents = load_documents(directory, pattern or settings.INPUT_PATTERN)
    if not documents:
        console.print(f"No documents matching {pattern or settings.INPUT_PATTERN!r} in {directory}")
        return

    try:
        extractors = build_extractors(SchemaRegistry([spec]))
    except ValueError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(EXIT_USAGE)
    if not extractors:
        console.print("[red]Error:[/red] no extractor is configured (check EXTRACTORS and provider settings)")
        raise typer.Exit(EXIT_USAGE)

    outcome = asyncio.run(_run_batch(
        extractors,
        spec,
        documents,
        effort=effort,
        resume=resume,
        concurrency=concurrency or settings.BATCH_CONCURRENCY,
        mode=mode or ConsensusMode(settings.CONSENSUS_MODE),
        results_dir=results_dir or settings.RESULTS_DIR,
        progress_file=progress_file or settings.PROGRESS_FILE,
    ))

    print_summary(outcome.summary)
    console.print(f"Summary saved to {outcome.summary_path}")
    if outcome.aborted:
        console.print(f"[red]Batch aborted:[/red] {escape(outcome.abort_reason or '')}")
        raise typer.Exit(EXIT_ABORTED)


@app.command()
def summary(
    results_dir: Optional[Path] = typer.Option(None, "--results-dir", help="Where per-document results are"),
):
    """Rebuild the batch summary from every persisted result."""
    setup_logging()
    store = ResultStore(results_dir or settings.RESULTS_DIR)
    ids = store.document_ids()
    if not ids:
        console.print(f"No results in {store.directory}")
        return
    result = build_summary(store, ids)
    path = store.write_summary(result)
    print_summary(result)
    console.print(f"Summary saved to {path}")


@app.command()
def validate(
    file: Path = typer.Argument(..., help="JSON record: a bare tree or a saved extraction result"),
    schema: Optional[Path] = typer.Option(None, "--schema", help="Schema definition file"),
):
    """Validate one JSON record and print the report."""
    setup_logging()
    spec = load_spec(schema or settings.SCHEMA_PATH)
    try:
        data = json.loads(file.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        console.print(f"[red]Error:[/red] cannot read {file}: {escape(str(e))}")
        raise typer.Exit(EXIT_USAGE)

    # saved extraction results wrap the tree
    if isinstance(data, dict) and "document_id" in data and "tree" in data:
        data = data["tree"] or {}

    report = validate_tree(data, spec)
    typer.echo(render_report(report))
    if not report.valid:
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
