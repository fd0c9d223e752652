"""
The dlengine command line.

Each download command initializes the configuration, sets up logging, creates the
controller and runs the requested jobs on an asyncio event loop.
"""

import sys
import logging
import asyncio
from types import TracebackType
from typing import List, Optional, Type

import typer

from ._version import __version__
from .config import ConfigManager
from .constants import CONFIG_FILE
from .controller import AppController
from .jobs import STATUS_DONE, JobOverrides
from .logging_config import setup_logging
from .presets import PresetStore

app = typer.Typer(
    name="dlengine",
    help="Download media with yt-dlp, recovering from format and downloader failures.",
    add_completion=False,
)


def handle_exception(exc_type: Type[BaseException], exc_value: BaseException, exc_traceback: TracebackType):
    """Logs unhandled exceptions from synchronous code."""
    logger = logging.getLogger()
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_traceback)
        return
    logger.critical("Unhandled exception:", exc_info=(exc_type, exc_value, exc_traceback))

def handle_async_exception(loop, context):
    """Logs unhandled exceptions from asyncio tasks."""
    logger = logging.getLogger()
    msg = context.get("exception", context["message"])
    logger.critical(f"Caught exception from asyncio task: {msg}")


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    version: bool = typer.Option(False, "--version", help="Show version and exit.", is_eager=True),
):
    """dlengine command line."""
    if version:
        typer.echo(f"dlengine {__version__}")
        raise typer.Exit()
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())


@app.command(name="presets")
def presets_command():
    """List the available presets."""
    for preset in PresetStore().all():
        typer.echo(f"{preset.id:<20} {preset.name} - {preset.description}")


@app.command(name="download")
def download_command(
    urls: List[str] = typer.Argument(..., help="One or more media URLs."),
    preset: Optional[str] = typer.Option(None, "-p", "--preset", help="Preset id (see 'presets')."),
    format_override: Optional[str] = typer.Option(
        None, "-f", "--format",
        help="Format shortcut (best, mp4, webm, mkv, mp3, m4a, flac, wav, alac) or a raw format expression.",
    ),
    output_dir: Optional[str] = typer.Option(None, "-o", "--output-dir", help="Destination directory."),
    filename_template: Optional[str] = typer.Option(
        None, "-t", "--filename-template", help="yt-dlp output template, relative to the destination."
    ),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Also log to the console."),
):
    """Download one or more URLs and report how each job ended."""
    # 1. Load configuration before setting up logging
    config_manager = ConfigManager(CONFIG_FILE)
    config = config_manager.load()

    # 2. Use the configured log level for file logging
    setup_logging(config.log_level, console_level_str='INFO' if verbose else None)

    # 3. Set up global exception handlers
    sys.excepthook = handle_exception

    controller = AppController(config_manager, config)
    overrides = JobOverrides(format=format_override, download_dir=output_dir, filename_template=filename_template)
    try:
        for url in urls:
            controller.add_job(url, preset, overrides)
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1) from e

    # Auto-clear may drop finished jobs from the registry, so keep our own references.
    jobs = list(reversed(controller.registry.jobs()))

    async def main_with_exception_handler():
        """Wrapper to set the asyncio exception handler for the running loop."""
        loop = asyncio.get_running_loop()
        loop.set_exception_handler(handle_async_exception)
        try:
            await controller.start_all()
        finally:
            await controller.shutdown()

    try:
        asyncio.run(main_with_exception_handler())
    except KeyboardInterrupt:
        logging.info("Interrupted by user.")
        raise typer.Exit(code=130)

    failed = 0
    for job in jobs:
        if job.status == STATUS_DONE:
            typer.echo(f"[done]   {job.title or job.url} -> {job.output_path or '(path unknown)'}")
            if job.fallback_used:
                typer.echo(f"         fallback format: {job.fallback_format}")
        else:
            failed += 1
            typer.echo(f"[failed] {job.url}: {job.status_detail}", err=True)
    if failed:
        raise typer.Exit(code=1)
