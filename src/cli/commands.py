"""CLI command implementations — one-shot pipeline runs, search and the watcher."""

from __future__ import annotations

import asyncio
import logging

import click
from rich import box
from rich.console import Console
from rich.table import Table

from src.mcp.gmail_client import MCPError, ProviderFatalError, gmail_client
from src.pipeline.config import PipelineConfig, load_topics
from src.pipeline.engine import RunOutcome, StepStatus
from src.pipeline.processor import make_thread_processor
from src.processing.types import CREATE_DRAFT
from src.storage.vector_store import THREADS_COLLECTION, ChromaVectorStore

logger = logging.getLogger(__name__)
console = Console(width=200)

_STATUS_STYLE = {
    StepStatus.OK: "green",
    StepStatus.FAILED: "red",
    StepStatus.SKIPPED: "dim",
}


def _outcome_table(outcome: RunOutcome) -> Table:
    table = Table(
        title=f"{outcome.pipeline} — thread {outcome.thread_id}",
        box=box.ROUNDED,
        show_header=True,
        header_style="bold cyan",
    )
    table.add_column("#", style="dim", width=3)
    table.add_column("Step", min_width=28)
    table.add_column("Status", width=8)
    table.add_column("Error", max_width=80)
    for i, step in enumerate(outcome.steps, start=1):
        style = _STATUS_STYLE[step.status]
        table.add_row(
            str(i),
            step.step_id,
            f"[{style}]{step.status.value}[/{style}]",
            step.error or "",
        )
    return table


def _print_outcome(outcome: RunOutcome) -> None:
    console.print(_outcome_table(outcome))
    if outcome.halted_at:
        console.print(f"  [dim]Halted after[/dim] {outcome.halted_at}")


def _connect(config: PipelineConfig):
    return gmail_client(
        topics=load_topics(config.topics_path),
        label_chunk_size=config.label_batch_size,
        label_chunk_delay=config.label_batch_delay,
    )


# ── process ──────────────────────────────────────────────────────────────────


@click.command()
@click.argument("thread_id")
@click.option("--draft/--no-draft", default=False, help="Also run the auto-draft pipeline.")
@click.pass_obj
def process(config: PipelineConfig, thread_id: str, draft: bool) -> None:
    """Vectorize, summarise and label one thread now."""
    asyncio.run(_process_async(config, thread_id, draft))


async def _process_async(config: PipelineConfig, thread_id: str, draft: bool) -> None:
    try:
        async with _connect(config) as gmail:
            processor = make_thread_processor(gmail, config)
            run = await processor.process(thread_id, draft=draft)
    except ProviderFatalError as exc:
        console.print(f"[red]Gmail rejected the connection: {exc}[/red]")
        console.print("[dim]Re-authorise the account and try again.[/dim]")
        return
    except (MCPError, ValueError) as exc:
        console.print(f"[red]Gmail error: {exc}[/red]")
        return

    _print_outcome(run.mailbox)
    if run.draft is not None:
        _print_outcome(run.draft)


# ── draft ────────────────────────────────────────────────────────────────────


@click.command()
@click.argument("thread_id")
@click.pass_obj
def draft(config: PipelineConfig, thread_id: str) -> None:
    """Generate a reply draft for one thread, regardless of AUTO_DRAFT_ENABLED."""
    asyncio.run(_draft_async(config, thread_id))


async def _draft_async(config: PipelineConfig, thread_id: str) -> None:
    try:
        async with _connect(config) as gmail:
            processor = make_thread_processor(gmail, config, auto_draft=True)
            outcome = await processor.draft(thread_id)
    except ProviderFatalError as exc:
        console.print(f"[red]Gmail rejected the connection: {exc}[/red]")
        return
    except (MCPError, ValueError) as exc:
        console.print(f"[red]Gmail error: {exc}[/red]")
        return

    _print_outcome(outcome)
    if outcome.status_of(CREATE_DRAFT) is StepStatus.OK:
        console.print("[green]Draft saved to Gmail.[/green]")


# ── search ───────────────────────────────────────────────────────────────────


def _query_engine(config: PipelineConfig):
    from src.cli.query import QueryEngine
    from src.processing.inference import AnthropicInferenceClient

    return QueryEngine(
        AnthropicInferenceClient(model=config.fast_model),
        ChromaVectorStore(config.chroma_dir, THREADS_COLLECTION),
    )


@click.command()
@click.argument("query")
@click.option("--limit", default=10, show_default=True, help="Number of results.")
@click.pass_obj
def search(config: PipelineConfig, query: str, limit: int) -> None:
    """Semantic search over thread summaries."""
    engine = _query_engine(config)
    try:
        results = asyncio.run(engine.search(query, n=limit))
    finally:
        engine.close()

    if not results:
        console.print(
            "[yellow]No matching threads. "
            "Run `email-agent watch` or `email-agent process THREAD_ID` first.[/yellow]"
        )
        return

    table = Table(box=box.ROUNDED, show_header=True, header_style="bold cyan")
    table.add_column("#", style="dim", width=3)
    table.add_column("Thread", width=18)
    table.add_column("Summary", max_width=120)
    table.add_column("Score", width=6)

    for i, result in enumerate(results, start=1):
        score = f"{max(0.0, 1.0 - result.distance):.2f}"
        table.add_row(
            str(i),
            str(result.metadata.get("thread", result.id)),
            str(result.metadata.get("summary", "")),
            score,
        )

    console.print(f"\nSearch results for [bold]{query!r}[/bold]\n")
    console.print(table)


# ── watch ────────────────────────────────────────────────────────────────────


@click.command()
@click.pass_obj
def watch(config: PipelineConfig) -> None:
    """Poll Gmail and process new mail until interrupted."""
    from src.agent.watcher import serve

    logging.getLogger().setLevel(logging.INFO)
    try:
        asyncio.run(serve(config))
    except KeyboardInterrupt:
        logger.info("Interrupted — goodbye")
