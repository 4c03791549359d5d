"""
CLI entry point: trader ingest | backtest | run | strategies | health.

Every command loads config from --config (default config.yaml), prints
human-readable output, and logs fills, trades and risk events to the journal.
"""

import asyncio
import logging
import signal
import sqlite3
import sys
from datetime import datetime, timedelta, timezone

import click
from dotenv import load_dotenv

from config import ConfigError, load_config

load_dotenv()

logger = logging.getLogger("trader")

FEED_READY_TIMEOUT_S = 60.0


def _setup_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s  %(message)s",
        stream=sys.stderr,
    )


def _load(ctx: click.Context):
    try:
        return load_config(ctx.obj["config_path"])
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc


def _parse_date(value: str | None) -> datetime | None:
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt.astimezone(timezone.utc)


@click.group()
@click.option("--config", "config_path", default="config.yaml", help="Path to config file.")
@click.pass_context
def cli(ctx: click.Context, config_path: str) -> None:
    """trader: spot trading bots with drawdown protection, paper and live."""
    _setup_logging()
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


# ---------- trader ingest ----------


@cli.command()
@click.option("--days", default=30, type=int, help="Calendar days to fetch when the store is empty and --start is not given.")
@click.option("--start", "start_str", default=None, help="Start date (ISO, e.g. 2024-01-01).")
@click.option("--end", "end_str", default=None, help="End date (ISO, e.g. 2024-02-01).")
@click.option("--timeframe", "tf_override", default=None, help="Override timeframe (e.g. 1h). Defaults to config value.")
@click.pass_context
def ingest(ctx: click.Context, days: int, start_str: str | None, end_str: str | None, tf_override: str | None) -> None:
    """Fetch candles from the exchange and store them locally.

    Without --start, resumes after the newest stored candle.
    """
    cfg = _load(ctx)
    from data import get_ccxt_fetcher
    from data.candle_store import CandleStore
    from execution import ExchangeError

    store = CandleStore(cfg.data.candle_store_path)
    tf = tf_override or cfg.timeframe

    end_dt = _parse_date(end_str) or datetime.now(timezone.utc)
    start_dt = _parse_date(start_str)
    if start_dt is None:
        last = store.last_timestamp(cfg.symbol, tf)
        start_dt = last if last is not None else end_dt - timedelta(days=days)

    click.echo(f"Fetching {cfg.symbol} {tf} candles from {start_dt.isoformat()} to {end_dt.isoformat()} ...")

    async def _fetch():
        fetcher = get_ccxt_fetcher(cfg.exchange.id, sandbox=False, timeout_s=cfg.exchange.timeout_s)
        try:
            return await fetcher.fetch(cfg.symbol, tf, since=start_dt, until=end_dt)
        finally:
            await fetcher.close()

    try:
        result = asyncio.run(_fetch())
    except ExchangeError as exc:
        raise click.ClickException(f"Fetch failed: {exc}") from exc

    if result.candles:
        store.write_candles(cfg.symbol, tf, result.candles)
        click.echo(f"Stored {len(result.candles)} candles in {cfg.data.candle_store_path}")
        click.echo(f"  Range: {result.candles[0].timestamp.isoformat()} -> {result.candles[-1].timestamp.isoformat()}")
        click.echo(f"  Total {tf} candles in store: {store.count_candles(cfg.symbol, tf)}")
    else:
        click.echo("No candles returned. Check symbol, timeframe and date range.")


# ---------- trader backtest ----------


@cli.command()
@click.option("--strategy", "strategy_name", default=None, help="Strategy name (default: first configured bot's).")
@click.option("--start", "start_str", default=None, help="Start date filter (ISO).")
@click.option("--end", "end_str", default=None, help="End date filter (ISO).")
@click.option("--trades", "show_trades", is_flag=True, default=False, help="List every closed trade.")
@click.pass_context
def backtest(ctx: click.Context, strategy_name: str | None, start_str: str | None, end_str: str | None, show_trades: bool) -> None:
    """Replay stored candles through a strategy with fees, slippage and drawdown limits."""
    cfg = _load(ctx)
    from backtest import run_simulation
    from cli.output import format_simulation_summary
    from data.candle_store import CandleStore
    from journal import JournalWriter
    from strategies import get_strategy

    params: dict = {}
    if strategy_name is None:
        if not cfg.bots:
            raise click.ClickException("No bots configured; pass --strategy.")
        strategy_name = cfg.bots[0].strategy
        params = dict(cfg.bots[0].params)
    try:
        strategy = get_strategy(strategy_name, **params)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc

    store = CandleStore(cfg.data.candle_store_path)
    candles = store.get_candles(cfg.symbol, cfg.timeframe, since=_parse_date(start_str), until=_parse_date(end_str))
    bt = cfg.backtest
    if len(candles) <= bt.warmup:
        click.echo(f"Not enough candles in store ({len(candles)}, warm-up {bt.warmup}). Run 'trader ingest' first.")
        return

    journal = JournalWriter(cfg.journal.path, echo_stdout=cfg.journal.echo_stdout)

    def on_trade(trade) -> None:
        journal.trade(cfg.symbol, trade, bot=f"backtest:{strategy_name}")

    click.echo(f"Running backtest: {cfg.symbol} {cfg.timeframe}, {len(candles)} candles, strategy {strategy_name} ...")
    result = run_simulation(
        candles,
        strategy,
        symbol=cfg.symbol,
        timeframe=cfg.timeframe,
        initial_capital=bt.initial_capital,
        fee_rate=bt.fee_rate,
        position_fraction=bt.position_fraction,
        slippage_rate=bt.slippage_rate,
        warmup=bt.warmup,
        max_drawdown=bt.max_drawdown,
        on_trade=on_trade,
    )
    click.echo(format_simulation_summary(result, show_trades=show_trades))


# ---------- trader run ----------


@cli.command()
@click.option("--paper", is_flag=True, default=False, help="Trade against a simulated account on live prices (overrides mode).")
@click.option("--bot", "bot_names", multiple=True, help="Only run these bots (repeatable).")
@click.option("--duration", default=None, type=float, help="Stop after this many seconds (default: run until Ctrl+C).")
@click.pass_context
def run(ctx: click.Context, paper: bool, bot_names: tuple[str, ...], duration: float | None) -> None:
    """Run the configured bots until interrupted, then flatten and print stats."""
    cfg = _load(ctx)
    paper = paper or cfg.mode == "paper"
    if not paper and not (cfg.exchange.api_key and cfg.exchange.api_secret):
        raise click.ClickException(
            "Live mode needs EXCHANGE_API_KEY and EXCHANGE_API_SECRET (or use --paper)."
        )
    unknown = [n for n in bot_names if n not in {b.name for b in cfg.bots}]
    if unknown:
        raise click.ClickException(f"Unknown bot(s): {', '.join(unknown)}")
    if not cfg.bots:
        raise click.ClickException("No bots configured.")

    click.echo(f"{'Paper' if paper else 'LIVE'} trading {cfg.symbol} {cfg.timeframe} on {cfg.exchange.id}"
               f"{' (sandbox)' if cfg.exchange.sandbox and not paper else ''}  |  Ctrl+C to stop")
    asyncio.run(_run_bots(cfg, paper=paper, only=bot_names, duration=duration))


async def _run_bots(cfg, *, paper: bool, only: tuple[str, ...], duration: float | None) -> None:
    from cli.manager import BotManager
    from cli.output import format_all_stats
    from cli.structured_log import StructuredEventLogger
    from data import PollingMarketFeed, get_ccxt_fetcher
    from execution import SimulatedExchange, get_ccxt_exchange
    from journal import JournalWriter

    fetcher = get_ccxt_fetcher(cfg.exchange.id, sandbox=False, timeout_s=cfg.exchange.timeout_s)
    feed = PollingMarketFeed(
        fetcher,
        cfg.symbol,
        cfg.timeframe,
        history=cfg.scheduler.history,
        poll_interval_s=cfg.scheduler.feed_poll_s,
    )

    def latest_price() -> float | None:
        return feed.snapshot.price if feed.snapshot is not None else None

    def port_factory(bot):
        if paper:
            return SimulatedExchange(
                cfg.symbol,
                quote_balance=cfg.paper.quote_balance,
                base_balance=cfg.paper.base_balance,
                fee_rate=cfg.execution.fee_rate,
                price_source=latest_price,
            )
        return get_ccxt_exchange(
            cfg.exchange.id,
            cfg.symbol,
            api_key=cfg.exchange.api_key,
            api_secret=cfg.exchange.api_secret,
            sandbox=cfg.exchange.sandbox,
            timeout_s=cfg.exchange.timeout_s,
        )

    events = StructuredEventLogger(
        cfg.symbol,
        enabled=cfg.alerting.structured_logs,
        webhook_url=cfg.alerting.webhook_url,
    )
    journal = JournalWriter(cfg.journal.path, echo_stdout=cfg.journal.echo_stdout)
    manager = BotManager(cfg, feed, port_factory, events=events, journal=journal)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            # not available on this platform / thread
            logger.debug("Signal handler for %s not installed", sig)

    feed.start()
    try:
        if await feed.wait_ready(FEED_READY_TIMEOUT_S) is None:
            click.echo("Market feed not ready; bots will wait for the first snapshot.")
        for name in only or manager.names:
            await manager.start_bot(name)
        try:
            await asyncio.wait_for(stop.wait(), timeout=duration)
        except asyncio.TimeoutError:
            logger.info("Run duration of %.0fs elapsed", duration)
    finally:
        click.echo("\nShutting down bots ...")
        await manager.stop_all()
        await feed.stop()
        await fetcher.close()
        click.echo(format_all_stats(manager.all_stats().values()))


# ---------- trader strategies ----------


@cli.command()
def strategies() -> None:
    """List available strategies and their default parameters."""
    import inspect

    from strategies import STRATEGIES

    for name, factory in sorted(STRATEGIES.items()):
        doc = (inspect.getdoc(factory) or "").splitlines()
        click.echo(f"{name}: {doc[0] if doc else ''}")
        params = [
            f"{p.name}={p.default!r}"
            for p in inspect.signature(factory).parameters.values()
            if p.default is not inspect.Parameter.empty
        ]
        if params:
            click.echo(f"  {', '.join(params)}")


# ---------- trader health ----------


@cli.command()
@click.pass_context
def health(ctx: click.Context) -> None:
    """Check system health: config, strategies, candle store.

    Exit code 0 = healthy, 1 = unhealthy. Designed for Docker HEALTHCHECK.
    """
    checks: list[tuple[str, bool, str]] = []

    try:
        cfg = load_config(ctx.obj["config_path"])
        checks.append(("config", True, f"loaded ({cfg.symbol} {cfg.timeframe}, {len(cfg.bots)} bots, {cfg.mode})"))
    except ConfigError as e:
        checks.append(("config", False, str(e)))
        _print_health(checks)
        raise SystemExit(1)

    from strategies import get_strategy

    for bot in cfg.bots:
        try:
            get_strategy(bot.strategy, **bot.params)
            checks.append((f"bot:{bot.name}", True, f"{bot.strategy}, budget {bot.budget:,.2f}"))
        except (ValueError, TypeError) as e:
            checks.append((f"bot:{bot.name}", False, str(e)))

    if cfg.mode == "live":
        has_keys = bool(cfg.exchange.api_key and cfg.exchange.api_secret)
        checks.append(("credentials", has_keys, "present" if has_keys else "EXCHANGE_API_KEY / EXCHANGE_API_SECRET missing"))

    try:
        from data.candle_store import CandleStore
        store = CandleStore(cfg.data.candle_store_path)
        count = store.count_candles(cfg.symbol, cfg.timeframe)
        if count > 0:
            checks.append(("candles", True, f"{count} {cfg.timeframe} candles"))
        else:
            checks.append(("candles", False, f"no {cfg.timeframe} candles for {cfg.symbol}"))
    except (sqlite3.Error, OSError) as e:
        checks.append(("candles", False, str(e)))

    _print_health(checks)
    healthy = all(ok for _, ok, _ in checks)
    raise SystemExit(0 if healthy else 1)


def _print_health(checks: list[tuple[str, bool, str]]) -> None:
    for name, ok, detail in checks:
        status = "OK" if ok else "FAIL"
        click.echo(f"  [{status}] {name}: {detail}")
    healthy = all(ok for _, ok, _ in checks)
    click.echo(f"\nHealth: {'HEALTHY' if healthy else 'UNHEALTHY'}")


if __name__ == "__main__":
    cli()
