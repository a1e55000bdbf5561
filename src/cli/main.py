"""CLI entry point for the AI-powered email agent."""

import logging

import click
from dotenv import load_dotenv

from src.pipeline.config import PipelineConfig

logger = logging.getLogger(__name__)


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Show pipeline progress logs.")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """AI-powered email agent — process, draft, search and watch commands."""
    load_dotenv()
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,  # keep CLI output clean
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    )
    ctx.obj = PipelineConfig.from_env()


# Import and register commands after cli is defined to avoid circular imports.
from src.cli.commands import draft, process, search, watch  # noqa: E402

cli.add_command(process)
cli.add_command(draft)
cli.add_command(search)
cli.add_command(watch)
