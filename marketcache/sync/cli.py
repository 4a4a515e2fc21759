"""Command line entry point for the candle cache."""

import logging
import math

import typer

from marketcache.data import config
from marketcache.data.errors import MarketCacheError
from marketcache.data.ingestion import YahooQuoteSource
from marketcache.data.intervals import Interval
from marketcache.data.store import DataStore, create_store
from marketcache.sync.engine import SyncEngine

app = typer.Typer(add_completion=False, help="Incremental OHLCV cache for Yahoo Finance data.")


def get_store(database_url: str | None) -> DataStore:
    """Factory hook, replaced in tests."""
    return create_store(database_url)


def get_source():
    """Factory hook, replaced in tests."""
    return YahooQuoteSource()


def _engine(ctx: typer.Context) -> SyncEngine:
    return SyncEngine(get_store(ctx.obj["database_url"]), get_source())


def _interval(value: str) -> Interval:
    try:
        return Interval.parse(value)
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="--interval") from exc


@app.callback()
def main(
    ctx: typer.Context,
    database_url: str | None = typer.Option(
        None, "--database-url", help="SQLAlchemy URL; defaults to the configured backend."
    ),
    log_level: str = typer.Option("INFO", "--log-level", help="Root logging level."),
):
    ctx.ensure_object(dict)
    ctx.obj["database_url"] = database_url
    level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s", force=True)


@app.command()
def init(ctx: typer.Context):
    """Create the database tables."""
    store = get_store(ctx.obj["database_url"])
    store.init_db()
    typer.echo(f"Initialized {store.dialect} database")


@app.command()
def sync(
    ctx: typer.Context,
    symbols: list[str] | None = typer.Argument(None, help="Symbols to sync; defaults to the configured list."),
    intervals: list[str] | None = typer.Option(None, "--interval", "-i", help="Interval, repeatable."),
    force: bool = typer.Option(False, "--force", "-f", help="Refetch each interval's full window."),
):
    """Bring cached candles up to date."""
    symbols = [s.upper() for s in symbols] if symbols else config.DEFAULT_SYMBOLS
    intervals = [_interval(i) for i in intervals] if intervals else config.DEFAULT_INTERVALS

    try:
        result = _engine(ctx).sync_many(symbols, intervals, force_full_refresh=force)
    except MarketCacheError as exc:
        typer.echo(f"Sync aborted: {exc}", err=True)
        raise typer.Exit(code=1) from exc

    typer.echo(f"Updated: {len(result.updated)}")
    for item in result.updated:
        typer.echo(f"  {item}")
    typer.echo(f"Up to date: {len(result.up_to_date)}")
    typer.echo(f"Failed: {len(result.failed)}")
    for item in result.failed:
        typer.echo(f"  {item}")
    typer.echo(f"Total new data points: {result.total_new_points}")
    if result.failed:
        raise typer.Exit(code=2)


@app.command()
def query(
    ctx: typer.Context,
    symbol: str,
    interval: str = typer.Option("1day", "--interval", "-i"),
    limit: int = typer.Option(20, "--limit", "-n", min=1),
):
    """Print the most recent candles, oldest first."""
    df = get_store(ctx.obj["database_url"]).query(symbol, _interval(interval), limit)
    if df.empty:
        typer.echo(f"No {interval} data for {symbol.upper()}")
        return
    typer.echo(df.to_string(index=False))


@app.command()
def age(ctx: typer.Context, symbol: str, interval: str = typer.Option("1day", "--interval", "-i")):
    """Show how old the cached data is."""
    info = get_store(ctx.obj["database_url"]).age(symbol, _interval(interval))
    minutes = "never fetched" if math.isinf(info.age_minutes) else f"{info.age_minutes:.1f} min"
    typer.echo(f"{symbol.upper()}@{interval}: {minutes}, {info.data_point_count} rows")


@app.command()
def purge(ctx: typer.Context, symbol: str):
    """Delete a symbol and all of its cached data."""
    deleted = get_store(ctx.obj["database_url"]).purge(symbol)
    typer.echo(f"Deleted {deleted} rows for {symbol.upper()}")


@app.command()
def symbols(ctx: typer.Context):
    """List known symbols."""
    df = get_store(ctx.obj["database_url"]).list_symbols()
    if df.empty:
        typer.echo("No symbols")
        return
    typer.echo(df.to_string(index=False))


@app.command()
def repair(ctx: typer.Context, symbol: str, interval: str = typer.Option("1day", "--interval", "-i")):
    """Collapse stored rows that share a canonical period."""
    removed = _engine(ctx).repair(symbol, _interval(interval))
    typer.echo(f"Removed {removed} duplicate rows for {symbol.upper()}@{interval}")


@app.command()
def health(ctx: typer.Context):
    """Check the database connection."""
    store = get_store(ctx.obj["database_url"])
    if not store.health_check():
        typer.echo(f"{store.dialect}: unhealthy", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"{store.dialect}: ok")


if __name__ == "__main__":
    app()
