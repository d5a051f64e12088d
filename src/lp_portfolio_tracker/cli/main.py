"""CLI for the LP portfolio read path."""

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from rich.traceback import install

from lp_portfolio_tracker.core.config import ReadPathConfig
from lp_portfolio_tracker.core.models import DataQuality, ResolutionOutcome
from lp_portfolio_tracker.core.query_cache import QueryCacheLayer
from lp_portfolio_tracker.core.resolver import PortfolioResolver
from lp_portfolio_tracker.data import load_read_path_config
from lp_portfolio_tracker.monitoring import PerformanceMonitor
from lp_portfolio_tracker.remote import (
    BackendWarmup,
    EndpointFallbackFetcher,
    InMemoryRemoteCache,
    PortfolioUpdateListener,
    QueryFailedError,
    RedisRemoteCache,
    RemoteCache,
)
from lp_portfolio_tracker.storage import JsonFileBackupStore

install(show_locals=False)

app = typer.Typer(
    name="lp-portfolio",
    help="Read LP positions through the cache, API fallback, and local backup tiers",
    add_completion=False,
)

console = Console()

QUALITY_STYLES = {
    DataQuality.FRESH: "bold green",
    DataQuality.CACHED: "green",
    DataQuality.BACKUP: "yellow",
    DataQuality.EMPTY_FALLBACK: "bold red",
}

EndpointOption = typer.Option(None, "--endpoint", "-e", help="API base URL (repeat to set fallback order)")
RedisOption = typer.Option(None, "--redis-url", help="Redis URL for the shared cache")
BackupDirOption = typer.Option(None, "--backup-dir", help="Directory for local backups")
DebugOption = typer.Option(False, "--debug", "-d", help="Enable debug logging")


class OutputFormat(StrEnum):
    """Output format options."""

    TABLE = "table"
    JSON = "json"


@dataclass
class ReadPath:
    """Fully wired read path for one CLI invocation."""

    config: ReadPathConfig
    monitor: PerformanceMonitor
    cache: RemoteCache
    resolver: PortfolioResolver
    queries: QueryCacheLayer


def _configure_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=debug)],
        force=True,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.DEBUG if debug else logging.WARNING)


def _load_config(
    endpoints: list[str] | None,
    redis_url: str | None,
    backup_dir: Path | None,
) -> ReadPathConfig:
    try:
        return load_read_path_config(
            api_urls=endpoints or None,
            redis_url=redis_url,
            backup_dir=backup_dir,
        )
    except ValueError as e:
        console.print(f"[bold red]Invalid configuration:[/bold red] {e}")
        raise typer.Exit(code=1)


@asynccontextmanager
async def open_read_path(config: ReadPathConfig) -> AsyncIterator[ReadPath]:
    """
    Wire every tier from a configuration and tear it down afterwards.

    Pending background writes are awaited before the clients are closed.

    Parameters
    ----------
    config : ReadPathConfig
        Read path configuration

    Yields
    ------
    ReadPath
        Wired read path

    """
    monitor = PerformanceMonitor()

    async with AsyncExitStack() as stack:
        if config.redis_url:
            cache: RemoteCache = await stack.enter_async_context(
                RedisRemoteCache.from_url(config.redis_url, default_ttl=config.cache_ttl)
            )
        else:
            cache = InMemoryRemoteCache(default_ttl=config.cache_ttl)

        fetcher = await stack.enter_async_context(
            EndpointFallbackFetcher(config.api_urls, timeout=config.endpoint_timeout, monitor=monitor)
        )
        backup = JsonFileBackupStore(config.backup_dir, max_age=config.backup_max_age)
        resolver = PortfolioResolver(
            cache,
            fetcher,
            backup,
            monitor=monitor,
            cache_timeout=config.cache_timeout,
            cache_ttl=config.cache_ttl,
        )
        queries = QueryCacheLayer.from_config(resolver, config)

        try:
            yield ReadPath(config=config, monitor=monitor, cache=cache, resolver=resolver, queries=queries)
        finally:
            await queries.close()
            await resolver.drain()


@app.command()
def positions(
    address: str = typer.Argument(..., help="Wallet address to query"),
    format: OutputFormat = typer.Option(OutputFormat.TABLE, "--format", "-f", help="Output format"),
    endpoints: list[str] | None = EndpointOption,
    redis_url: str | None = RedisOption,
    backup_dir: Path | None = BackupDirOption,
    report: bool = typer.Option(False, "--report", help="Print timing stats after the read"),
    debug: bool = DebugOption,
) -> None:
    """
    Get the LP positions for a wallet address.

    Examples:

        # Read through all tiers
        lp-portfolio positions 7xKX...

        # Try a local backend before the hosted one
        lp-portfolio positions 7xKX... -e http://localhost:3001 -e https://netuno-backend.onrender.com

        # Output as JSON
        lp-portfolio positions 7xKX... --format json
    """
    _configure_logging(debug)
    config = _load_config(endpoints, redis_url, backup_dir)

    async def run() -> tuple[ResolutionOutcome, dict]:
        async with open_read_path(config) as read_path:
            outcome = await read_path.queries.fetch(address)
            return outcome, read_path.monitor.generate_report()

    try:
        with console.status(f"Fetching positions for {address}..."):
            outcome, stats = asyncio.run(run())
    except (QueryFailedError, ValueError) as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(code=1)

    if format == OutputFormat.JSON:
        _output_json(address, outcome)
    else:
        _output_table(address, outcome)

    if report:
        _output_report(stats)


@app.command()
def watch(
    address: str = typer.Argument(..., help="Wallet address to watch"),
    interval: float | None = typer.Option(None, "--interval", "-i", help="Seconds between refreshes"),
    count: int = typer.Option(0, "--count", "-n", help="Stop after this many updates (0 = run until interrupted)"),
    endpoints: list[str] | None = EndpointOption,
    redis_url: str | None = RedisOption,
    backup_dir: Path | None = BackupDirOption,
    live: bool = typer.Option(False, "--live", help="Invalidate on server push events (position-update, portfolio-refresh)"),
    debug: bool = DebugOption,
) -> None:
    """Keep an address refreshed and print every update."""
    _configure_logging(debug)
    config = _load_config(endpoints, redis_url, backup_dir)
    if interval is not None:
        config = config.model_copy(update={"refetch_interval": interval})
    if live and not config.ws_urls:
        console.print("[bold red]Error:[/bold red] --live needs push channel URLs (PORTFOLIO_WS_URLS)")
        raise typer.Exit(code=1)

    async def run() -> None:
        updates: asyncio.Queue[ResolutionOutcome] = asyncio.Queue()
        async with open_read_path(config) as read_path, AsyncExitStack() as stack:
            if live:
                listener = await stack.enter_async_context(
                    PortfolioUpdateListener.from_config(config, cache=read_path.cache, queries=read_path.queries)
                )
                await listener.subscribe_address(address)
                if listener.connected_url:
                    console.print(f"[dim]Listening for updates on {listener.connected_url}[/dim]")
            async with read_path.queries.subscribe(address, updates.put_nowait):
                received = 0
                while not count or received < count:
                    outcome = await updates.get()
                    received += 1
                    _output_update(address, outcome)

    console.print(f"[bold cyan]Watching[/bold cyan] {address} (every {config.refetch_interval:g}s)")
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("[dim]Stopped[/dim]")
    except ValueError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(code=1)


@app.command()
def warmup(
    endpoints: list[str] | None = EndpointOption,
    debug: bool = DebugOption,
) -> None:
    """Ping every configured backend's health check to wake it up."""
    _configure_logging(debug)
    config = _load_config(endpoints, None, None)

    async def run() -> set[str]:
        async with BackendWarmup() as warmer:
            return await warmer.warmup(config.api_urls)

    with console.status(f"Warming up {len(config.api_urls)} backends..."):
        warm = asyncio.run(run())

    table = Table(title="Backend Warmup", show_header=True, header_style="bold magenta")
    table.add_column("Endpoint", style="cyan")
    table.add_column("Status")
    for url in config.api_urls:
        table.add_row(url, "[green]✓ Ready[/green]" if url in warm else "[red]✗ Unreachable[/red]")
    console.print(table)

    if not warm:
        raise typer.Exit(code=1)


@app.command()
def evict(
    address: str = typer.Argument(..., help="Wallet address whose cached snapshot to drop"),
    redis_url: str | None = RedisOption,
    debug: bool = DebugOption,
) -> None:
    """Remove an address from the shared remote cache."""
    _configure_logging(debug)
    config = _load_config(None, redis_url, None)
    if not config.redis_url:
        console.print("[yellow]No Redis URL configured; nothing to evict[/yellow]")
        raise typer.Exit(code=1)

    async def run() -> None:
        async with RedisRemoteCache.from_url(config.redis_url) as cache:
            await cache.delete(address)

    try:
        asyncio.run(run())
    except Exception as e:
        console.print(f"[bold red]Failed to evict {address}:[/bold red] {e}")
        raise typer.Exit(code=1)
    console.print(f"[green]✓ Evicted[/green] {address}")


@app.command("config")
def show_config(
    endpoints: list[str] | None = EndpointOption,
    redis_url: str | None = RedisOption,
    backup_dir: Path | None = BackupDirOption,
) -> None:
    """Print the effective read path configuration."""
    config = _load_config(endpoints, redis_url, backup_dir)
    console.print_json(config.model_dump_json())


def _output_table(address: str, outcome: ResolutionOutcome) -> None:
    """Output a resolution outcome as rich tables."""
    _output_source(outcome)

    snapshot = outcome.snapshot
    if snapshot.is_empty:
        console.print("\n[yellow]No positions found[/yellow]")
        return

    table = Table(
        title=f"LP positions for {address[:6]}...{address[-4:]}",
        show_header=True,
        header_style="bold magenta",
    )
    table.add_column("Protocol", style="cyan")
    table.add_column("Pool", style="blue")
    table.add_column("Tokens", style="yellow")
    table.add_column("Amount", style="white", justify="right")
    table.add_column("USD Value", style="bold green", justify="right")

    for position in snapshot.lp_positions:
        pool = position.pool.name if position.pool and position.pool.name else "-"
        tokens = (
            f"{position.token_info.token_x.symbol}/{position.token_info.token_y.symbol}"
            if position.token_info
            else "-"
        )
        usd = f"${position.value_usd:,.2f}" if position.value_usd is not None else "-"
        table.add_row(position.protocol, pool, tokens, position.amount, usd)

    console.print("\n")
    console.print(table)

    summary = snapshot.effective_summary()
    summary_table = Table(show_header=False, box=None)
    summary_table.add_column("Label", style="bold")
    summary_table.add_column("Value", style="bold green")
    summary_table.add_row("Total Value:", f"${summary.total_value_usd:,.2f}")
    summary_table.add_row("Total Positions:", str(summary.total_positions))
    summary_table.add_row("Priced Positions:", str(summary.positions_with_prices))
    summary_table.add_row("Protocols:", ", ".join(summary.protocols) or "-")

    console.print("\n")
    console.print(summary_table)
    console.print("\n")


def _output_source(outcome: ResolutionOutcome) -> None:
    quality = outcome.data_quality
    line = f"[{QUALITY_STYLES[quality]}]Data quality: {quality.value}[/{QUALITY_STYLES[quality]}]"
    if outcome.endpoint:
        line += f" [dim](from {outcome.endpoint})[/dim]"
    if outcome.age_seconds is not None:
        line += f" [dim]({outcome.age_seconds / 60:.0f} minutes old)[/dim]"
    console.print(line)


def _output_update(address: str, outcome: ResolutionOutcome) -> None:
    summary = outcome.snapshot.effective_summary()
    console.print(
        f"[dim]{outcome.resolved_at:%H:%M:%S}[/dim] {address}: "
        f"{summary.total_positions} positions, ${summary.total_value_usd:,.2f} "
        f"[{QUALITY_STYLES[outcome.data_quality]}]{outcome.data_quality.value}[/{QUALITY_STYLES[outcome.data_quality]}]"
    )


def _output_json(address: str, outcome: ResolutionOutcome) -> None:
    """Output a resolution outcome as JSON."""
    data = {
        "address": address,
        "source": outcome.source.value,
        "dataQuality": outcome.data_quality.value,
        "endpoint": outcome.endpoint,
        "ageSeconds": outcome.age_seconds,
        "resolvedAt": outcome.resolved_at.isoformat(),
        **outcome.snapshot.model_dump(mode="json", by_alias=True),
        "summary": outcome.snapshot.effective_summary().model_dump(mode="json", by_alias=True),
    }
    # plain print keeps the output machine-readable
    print(json.dumps(data, indent=2))


def _output_report(report: dict) -> None:
    table = Table(title="Timings (ms)", show_header=True, header_style="bold magenta")
    table.add_column("Operation", style="cyan")
    table.add_column("Count", justify="right")
    table.add_column("Avg", justify="right")
    table.add_column("Min", justify="right")
    table.add_column("Max", justify="right")

    for name, stats in sorted(report["stats"].items()):
        table.add_row(name, str(stats["count"]), f"{stats['avg']:.1f}", f"{stats['min']:.1f}", f"{stats['max']:.1f}")

    console.print(table)
    for name, target in report["targets"].items():
        status = "[green]✓[/green]" if target["passed"] else "[red]✗[/red]"
        console.print(f"{status} {name}: {target['avg']:.1f}ms (target {target['target']}ms)")


if __name__ == "__main__":
    app()
