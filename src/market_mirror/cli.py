"""Click-based CLI for market-mirror.

Thin wrapper around library modules. Every operation delegates to the
ingestion or prices packages.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from datetime import datetime
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

console = Console(stderr=True)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run_async(coro):
    """Run an async coroutine from synchronous Click code."""
    return asyncio.run(coro)


def _load_config(ctx: click.Context):
    """Load config lazily, caching on first call."""
    if "config" not in ctx.obj:
        from market_mirror.core import load_config

        ctx.obj["config"] = load_config(config_path=ctx.obj.get("config_path"))
    return ctx.obj["config"]


def _print_notification(notification) -> None:
    prefix = f"[dim]{notification.component}[/dim] " if notification.component else ""
    console.print(f"{prefix}{escape(notification.message)}")


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )


def _cancel_on_signal(importer) -> dict:
    """Route SIGINT/SIGTERM to ``importer.cancel()``. Returns the previous handlers."""
    loop = asyncio.get_running_loop()

    def _handle_signal(signum, frame):
        console.print("[yellow]Cancelling import after the current call...[/yellow]")
        loop.call_soon_threadsafe(importer.cancel)

    previous = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            previous[sig] = signal.signal(sig, _handle_signal)
        except (ValueError, OSError):
            logger.debug("Cannot install %s handler outside the main thread", sig)
    return previous


def _restore_signals(previous: dict) -> None:
    for sig, handler in previous.items():
        signal.signal(sig, handler)


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True),
    envvar="MARKET_MIRROR_CONFIG",
    default=None,
    help="Path to market-mirror.yml config file.",
)
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    default=False,
    help="Enable verbose output.",
)
@click.version_option(package_name="market-mirror")
@click.pass_context
def cli(ctx: click.Context, config: str | None, verbose: bool) -> None:
    """Market Mirror: mirror provider market data into local storage."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config
    ctx.obj["verbose"] = verbose
    ctx.obj["console"] = console
    _configure_logging(verbose)


# ---------------------------------------------------------------------------
# import
# ---------------------------------------------------------------------------


@cli.command(name="import")
@click.option(
    "--dry-run",
    is_flag=True,
    default=False,
    help="Announce each phase without fetching, writing, or deleting anything.",
)
@click.option(
    "--yes",
    "-y",
    is_flag=True,
    default=False,
    help="Skip confirmation for destructive actions such as Purge.",
)
@click.pass_context
def import_(ctx: click.Context, dry_run: bool, yes: bool) -> None:
    """Run every configured import action."""
    from market_mirror.core import ImportCancelledError, MarketMirrorError

    try:
        config = _load_config(ctx)
    except MarketMirrorError as exc:
        console.print(f"[red]Error: {escape(str(exc))}[/red]")
        raise SystemExit(1)

    async def _run():
        from market_mirror.ingestion import (
            PolygonClient,
            PolygonImporter,
            S3ObjectStore,
            SqliteStore,
            create_store,
        )
        from market_mirror.prices import SqlitePriceStore

        importer_config = config.importer
        store = SqliteStore(config.storage) if dry_run else await create_store(config.storage)
        object_store = None
        if importer_config.access_key and not dry_run:
            object_store = S3ObjectStore(
                config.provider, importer_config.access_key, importer_config.api_key
            )

        try:
            async with PolygonClient(config.provider, importer_config.api_key) as client:
                importer = PolygonImporter(
                    importer_config,
                    client=client,
                    store=store,
                    object_store=object_store,
                    price_store=SqlitePriceStore(config.storage.sqlite_path),
                    provider_config=config.provider,
                    dry_run=dry_run,
                    notify=_print_notification,
                )

                dangerous, messages = importer.contains_danger()
                if dangerous and not yes:
                    for message in messages:
                        console.print(f"[yellow]{message}[/yellow]")
                    if not click.confirm("Continue?", default=False, err=True):
                        return False

                handlers = _cancel_on_signal(importer)
                try:
                    elapsed = await importer.run()
                finally:
                    _restore_signals(handlers)

                console.print(
                    f"[green]✓[/green] Import finished in {elapsed}"
                    + (" (dry run)" if dry_run else "")
                )
                report = importer.last_sync_report
                if report is not None:
                    console.print(
                        f"Flat files: {report.downloaded} downloaded, "
                        f"{report.skipped} unchanged, {report.failed} failed"
                    )
                return True
        finally:
            await store.close()

    try:
        completed = _run_async(_run())
    except ImportCancelledError as exc:
        console.print(f"[yellow]{escape(str(exc))}[/yellow]")
        raise SystemExit(130)
    except MarketMirrorError as exc:
        console.print(f"[red]Error: {escape(str(exc))}[/red]")
        raise SystemExit(1)

    if not completed:
        console.print("[yellow]Import aborted.[/yellow]")
        raise SystemExit(1)


# ---------------------------------------------------------------------------
# load-prices
# ---------------------------------------------------------------------------


@cli.command(name="load-prices")
@click.argument("files", nargs=-1, type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--tickers",
    "-t",
    type=str,
    default=None,
    help="Comma-separated tickers to keep. Default: all rows.",
)
@click.pass_context
def load_prices(ctx: click.Context, files: tuple[str, ...], tickers: str | None) -> None:
    """Load downloaded flat files into the price store.

    With no FILES, every *.csv.gz in the configured import directory is read.
    """
    from market_mirror.core.config import POLYGON_SOURCE, split_tokens
    from market_mirror.prices import SqlitePriceStore, load_flat_file

    config = _load_config(ctx)
    paths = [Path(f) for f in files]
    if not paths:
        location = config.importer.import_file_location
        if location is None or not location.exists():
            console.print("[yellow]No files given and no import directory configured.[/yellow]")
            raise SystemExit(1)
        paths = sorted(location.glob("*.csv.gz"))

    if not paths:
        console.print("[yellow]No flat files found. Run 'import' first.[/yellow]")
        raise SystemExit(1)

    codes = [t.upper() for t in split_tokens(tickers)] or None

    async def _run():
        store = SqlitePriceStore(config.storage.sqlite_path)
        total = 0
        for path in paths:
            try:
                prices = load_flat_file(path, source=POLYGON_SOURCE, codes=codes)
            except (OSError, ValueError) as exc:
                console.print(f"[red]Error reading {path.name}: {escape(str(exc))}[/red]")
                continue
            total += await store.store_prices(prices)
            if ctx.obj["verbose"]:
                console.print(f"{path.name}: {len(prices)} prices")
        console.print(
            f"[green]✓[/green] Stored {total} prices from {len(paths)} file(s)"
        )

    _run_async(_run())


# ---------------------------------------------------------------------------
# adjusted
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("ticker")
@click.option(
    "--start",
    "-s",
    type=click.DateTime(formats=["%Y-%m-%d"]),
    default=None,
    help="First date (YYYY-MM-DD).",
)
@click.option(
    "--end",
    "-e",
    type=click.DateTime(formats=["%Y-%m-%d"]),
    default=None,
    help="Last date (YYYY-MM-DD).",
)
@click.pass_context
def adjusted(
    ctx: click.Context,
    ticker: str,
    start: datetime | None,
    end: datetime | None,
) -> None:
    """Show split-adjusted end-of-day prices for TICKER."""
    from market_mirror.core import DataIntegrityError
    from market_mirror.prices import SqlitePriceStore

    config = _load_config(ctx)

    async def _run():
        store = SqlitePriceStore(config.storage.sqlite_path)
        return await store.get_adjusted_prices(
            ticker.upper(),
            start=start.date() if start else None,
            end=end.date() if end else None,
        )

    try:
        rows = _run_async(_run())
    except DataIntegrityError as exc:
        console.print(f"[red]Error: {escape(str(exc))}[/red]")
        raise SystemExit(1)

    if not rows:
        console.print(f"[yellow]No prices stored for {ticker.upper()}.[/yellow]")
        raise SystemExit(1)

    table = Table(title=f"Adjusted prices: {ticker.upper()}")
    table.add_column("Date")
    table.add_column("Open", justify="right")
    table.add_column("High", justify="right")
    table.add_column("Low", justify="right")
    table.add_column("Close", justify="right")
    table.add_column("Factor", justify="right")
    for row in rows:
        table.add_row(
            row.date_eod.isoformat(),
            f"{row.open:.4f}",
            f"{row.high:.4f}",
            f"{row.low:.4f}",
            f"{row.close:.4f}",
            f"{row.factor:g}",
        )
    Console().print(table)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
