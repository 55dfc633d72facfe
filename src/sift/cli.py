"""Command line interface.

CLI module using Typer with Rich-formatted output for the crawl and validate
commands. The crawl command also owns process-level concerns: logging setup
and turning SIGINT/SIGTERM into a graceful Session.stop().
"""

# ruff: noqa: B008

import asyncio
import contextlib
import signal
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table
from rich.traceback import install as install_rich_traceback

from sift import __version__
from sift.backends import create_storage
from sift.config import CrawlerSettings, SessionOptions, SiftConfig, load_config
from sift.exceptions import ConfigError, SiftError
from sift.progress import RichSink
from sift.session import Session
from sift.state import FinalStats
from sift.utils import setup_logging

install_rich_traceback(show_locals=False)

console = Console()

app = typer.Typer(
    name="sift",
    help="sift - polite, resilient web crawler",
    add_completion=False,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"sift version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        help="Show version and exit",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """sift - polite, resilient web crawler."""
    pass


async def run_crawl(
    options: SessionOptions,
    settings: CrawlerSettings,
    db_path: str | None,
    show_pages: bool = False,
) -> FinalStats:
    """Run one session to completion, stopping gracefully on SIGINT/SIGTERM."""
    storage = create_storage(db_path)
    session = Session(
        options, storage=storage, sink=RichSink(console, show_pages=show_pages), settings=settings
    )
    loop = asyncio.get_running_loop()
    stopping: list[asyncio.Task[FinalStats]] = []

    def request_stop() -> None:
        if stopping:
            return
        console.print("\n[yellow]Stopping crawl, waiting for in-flight pages...[/yellow]")
        stopping.append(loop.create_task(session.stop()))

    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, request_stop)

    try:
        return await session.run()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.remove_signal_handler(sig)
        await storage.close()


@app.command()
def crawl(
    target: str | None = typer.Argument(None, help="Seed URL (http:// is added if missing)"),
    config: Path | None = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to YAML config file",
        exists=True,
        file_okay=True,
        dir_okay=False,
        resolve_path=True,
    ),
    depth: int | None = typer.Option(None, "--depth", "-d", help="Maximum link depth (1-5)"),
    max_pages: int | None = typer.Option(None, "--max-pages", "-n", help="Page budget (1-200)"),
    delay: int | None = typer.Option(
        None, "--delay", help="Per-domain delay in milliseconds (200-10000)"
    ),
    method: str | None = typer.Option(
        None, "--method", "-m", help="Crawl method: links, content, media or full"
    ),
    concurrency: int | None = typer.Option(
        None, "--concurrency", help="Concurrent requests (1-10)"
    ),
    retries: int | None = typer.Option(None, "--retries", help="Retries per failed page (0-5)"),
    dynamic: bool | None = typer.Option(
        None, "--dynamic/--no-dynamic", help="Render pages in a headless browser"
    ),
    respect_robots: bool | None = typer.Option(
        None, "--respect-robots/--ignore-robots", help="Honor robots.txt"
    ),
    filter_duplicates: bool | None = typer.Option(
        None, "--filter-duplicates/--allow-duplicates", help="Skip URLs already queued"
    ),
    save_media: bool | None = typer.Option(
        None, "--save-media/--no-save-media", help="Count media resources"
    ),
    content_only: bool | None = typer.Option(
        None, "--content-only/--full-content", help="Store metadata only"
    ),
    db: str | None = typer.Option(
        None, "--db", help="SQLite database path (default: SIFT_DB_PATH or in-memory)"
    ),
    no_db: bool = typer.Option(False, "--no-db", help="Keep results in memory only"),
    strict_robots: bool = typer.Option(
        False, "--strict-robots", help="Treat an unreadable robots.txt as disallow"
    ),
    show_pages: bool = typer.Option(False, "--show-pages", help="Print every stored page"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Crawl a site starting from TARGET.

    Options given on the command line override the config file's session block.
    """
    try:
        if config:
            console.print(f"[cyan]Loading configuration from:[/cyan] {config}")
            sift_config = load_config(config)
        else:
            sift_config = SiftConfig(settings=CrawlerSettings.from_env())

        settings = sift_config.settings
        if strict_robots:
            settings = settings.model_copy(update={"strict_robots": True})
        setup_logging(verbose=verbose, level=settings.log_level)

        options = sift_config.session_options(
            target=target,
            crawl_depth=depth,
            max_pages=max_pages,
            crawl_delay=delay,
            crawl_method=method,
            max_concurrent_requests=concurrency,
            retry_limit=retries,
            dynamic=dynamic,
            respect_robots=respect_robots,
            filter_duplicates=filter_duplicates,
            save_media=save_media,
            content_only=content_only,
        )
        if no_db:
            db_path = None
        else:
            db_path = db if db is not None else settings.db_path

        console.print(f"[green]Starting crawl:[/green] {options.target}")
        if db_path:
            console.print(f"[cyan]Database:[/cyan] {db_path}")

        stats = asyncio.run(run_crawl(options, settings, db_path, show_pages=show_pages))

        if stats.pages_scanned == 0 and stats.failure_count > 0:
            console.print("[red]No pages could be fetched[/red]")
            raise typer.Exit(code=1)
        console.print("[green]Crawl completed[/green]")

    except ConfigError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        raise typer.Exit(code=1) from None

    except SiftError as e:
        console.print(f"[red]Crawl failed:[/red] {e}")
        if verbose:
            console.print_exception()
        raise typer.Exit(code=1) from None

    except KeyboardInterrupt:
        console.print("\n[yellow]Crawl interrupted by user[/yellow]")
        raise typer.Exit(code=130) from None


@app.command()
def validate(
    config_path: Path = typer.Argument(
        ...,
        help="Path to YAML config file to validate",
        exists=True,
        file_okay=True,
        dir_okay=False,
        resolve_path=True,
    ),
) -> None:
    """Validate a sift configuration file and show the effective session options."""
    try:
        console.print(f"[cyan]Validating configuration:[/cyan] {config_path}")
        sift_config = load_config(config_path)
        options = sift_config.session_options()

        console.print("[green][OK] Configuration is valid![/green]\n")

        table = Table(title="Session Options")
        table.add_column("Option", style="cyan")
        table.add_column("Value", style="white")
        for name, value in options.model_dump().items():
            table.add_row(name, str(value))
        console.print(table)

    except ConfigError as e:
        console.print("[red][FAIL] Configuration validation failed:[/red]\n")
        console.print(str(e), markup=False)
        raise typer.Exit(code=1) from None
