import asyncio, time
from contextlib import AsyncExitStack
from functools import wraps

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .adapters.clickhouse_httpx import ClickHouseStore
from .adapters.manifest_jsonl import JSONLManifest
from .adapters.parquet_sink import ParquetAnalyticalStore
from .adapters.source_jsonl import JSONLEventSource
from .adapters.sqlite_store import SQLiteLedgerStore
from .application.config import EngineConfig
from .application.ledger import DeltaLedger
from .application.sink_reconciler import SinkReconciler
from .application.use_cases import consume, open_ledger, roll_back, startup
from .application.window import CursorWindow
from .domain.errors import ReorgLedgerError
from .domain.models import Cursor
from .domain.value_types import normalize_hash
from .logs import configure_logging

console = Console()


class LedgerCLIError(click.ClickException):
    def __init__(self, err: ReorgLedgerError) -> None:
        super().__init__(f"{type(err).__name__}: {err}")
        self.exit_code = 75 if err.recoverable else 70   # EX_TEMPFAIL / EX_SOFTWARE


def _ledger_errors(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except ReorgLedgerError as e:
            raise LedgerCLIError(e) from e
    return wrapper


def _state_options(fn):
    fn = click.option("--db", "db_path", default="reorgledger.sqlite", show_default=True,
                      help="SQLite ledger file")(fn)
    fn = click.option("--manifest", "manifest_path", default="reorgledger.manifest.jsonl",
                      show_default=True, help="JSONL run manifest (last committed cursor)")(fn)
    return fn


def _sink_options(fn):
    for opt in reversed([
        click.option("--sink", type=click.Choice(["parquet", "clickhouse"]), default="parquet",
                     show_default=True),
        click.option("--sink-dir", default="balances_parquet", show_default=True,
                     help="Root dir for the parquet sink"),
        click.option("--clickhouse-url", default="http://localhost:8123", show_default=True),
        click.option("--clickhouse-database", default="default", show_default=True),
        click.option("--clickhouse-user", default="default", show_default=True),
        click.option("--clickhouse-password", default="", help="Env: REORGLEDGER_<COMMAND>_CLICKHOUSE_PASSWORD"),
        click.option("--table", default="balances", show_default=True, help="Sink table name"),
        click.option("--strategy", type=click.Choice(["auto", "range_delete", "compensate"]),
                     default="auto", show_default=True, help="How the sink mirrors rollbacks"),
    ]):
        fn = opt(fn)
    return fn


async def _open_sink(stack: AsyncExitStack, opts: dict, cfg: EngineConfig) -> SinkReconciler:
    if opts["sink"] == "clickhouse":
        store = await stack.enter_async_context(ClickHouseStore(
            opts["clickhouse_url"], database=opts["clickhouse_database"],
            user=opts["clickhouse_user"], password=opts["clickhouse_password"]))
    else:
        store = ParquetAnalyticalStore(opts["sink_dir"])
    try:
        return SinkReconciler(store, table=cfg.sink_table, strategy=cfg.sink_strategy)
    except ValueError as e:
        raise click.UsageError(str(e)) from e


@click.group()
@click.option("--log-level", default="INFO", show_default=True,
              type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False))
def cli(log_level):
    """reorgledger: fork-safe token balances from a block event stream."""
    configure_logging(log_level)


@cli.command("run")
@click.option("--events", "events_path", required=True, type=click.Path(exists=True, dir_okay=False),
              help="Recorded JSONL stream of batch/fork records")
@_state_options
@_sink_options
@click.option("--window", "window_capacity", type=int, default=64, show_default=True,
              help="Recent cursors kept for fork resolution")
@click.option("--prune-finalized/--no-prune-finalized", default=True, show_default=True,
              help="Drop rollback data below the finalized block")
@_ledger_errors
def run_cmd(events_path, db_path, manifest_path, window_capacity, prune_finalized, **sink_opts):
    """Replay an event stream into the ledger and sink, handling forks."""
    cfg = EngineConfig(window_capacity=window_capacity, sink_table=sink_opts["table"],
                       sink_strategy=sink_opts["strategy"], prune_finalized=prune_finalized)

    async def main() -> dict[str, int]:
        manifest = JSONLManifest(manifest_path)
        source = JSONLEventSource(events_path)
        async with AsyncExitStack() as stack:
            sink = await _open_sink(stack, sink_opts, cfg)
            with DeltaLedger(SQLiteLedgerStore(db_path), null_key=cfg.null_key) as ledger:
                await startup(ledger=ledger, sink=sink, manifest=manifest)
                return await consume(
                    source=source, ledger=ledger, sink=sink,
                    window=CursorWindow(cfg.window_capacity), manifest=manifest,
                    prune_finalized=cfg.prune_finalized,
                )

    t0 = time.time()
    stats = asyncio.run(main())
    console.print(f"[bold]done[/] in {time.time() - t0:.2f}s")
    console.print(
        f"[bold]summary[/]: "
        f"[green]batches[/]={stats['batches']}  transfers={stats['transfers']}  "
        f"rows={stats['rows_written']}  [yellow]forks[/]={stats['forks']}  "
        f"[red]resyncs[/]={stats['resyncs']}  compensated={stats['rows_compensated']}"
    )


@cli.command("status")
@_state_options
def status_cmd(db_path, manifest_path):
    """Show the ledger marker next to the manifest's last committed cursor."""
    store = SQLiteLedgerStore(db_path)
    try:
        store.open()
        marker, count = store.last_processed(), store.count_balances()
    except ReorgLedgerError as e:
        raise LedgerCLIError(e) from e
    finally:
        store.close()
    manifest = JSONLManifest(manifest_path)
    committed, pending = manifest.last_committed(), manifest.pending()
    at = marker.number if marker else None
    ok = at == (committed.number if committed else None) or (pending is not None and at == pending.block_number)
    console.print(Panel(
        f"ledger marker:   {marker or '-'}\n"
        f"manifest cursor: {committed or '-'}\n"
        f"balances:        {count}\n"
        f"pending step:    {f'{pending.kind} at #{pending.block_number}' if pending else '-'}\n"
        f"consistent:      {'[green]yes[/]' if ok else '[red]NO[/]'}",
        title=db_path,
    ))


@cli.command("rollback")
@click.option("--to-block", type=int, required=True, help="Keep this block, undo everything after it")
@click.option("--hash", "block_hash", default=None, help="Hash of --to-block, recorded as the new marker")
@_state_options
@_sink_options
@_ledger_errors
def rollback_cmd(to_block, block_hash, db_path, manifest_path, **sink_opts):
    """Manually roll the ledger and sink back to a block."""
    cfg = EngineConfig(sink_table=sink_opts["table"], sink_strategy=sink_opts["strategy"])
    cursor = Cursor(to_block, normalize_hash(block_hash) if block_hash else None)

    async def main() -> tuple[int, int]:
        manifest = JSONLManifest(manifest_path)
        async with AsyncExitStack() as stack:
            sink = await _open_sink(stack, sink_opts, cfg)
            with DeltaLedger(SQLiteLedgerStore(db_path), null_key=cfg.null_key) as ledger:
                pending = manifest.pending()
                halted = pending is not None and pending.kind == "halt"
                marker = await startup(ledger=ledger, sink=sink, manifest=manifest, resolve_halt=halted)
                # a halt may also be cleared in place, at the marker itself
                if marker is None or cursor.number > marker.number or \
                        (cursor.number == marker.number and not halted):
                    raise click.UsageError(f"nothing to roll back: ledger is at {marker or 'genesis'}")
                res, compensated = await roll_back(cursor, ledger=ledger, sink=sink, manifest=manifest)
                return res.keys_reverted, compensated

    keys, rows = asyncio.run(main())
    console.print(f"[bold]rolled back[/] to {cursor}: keys={keys}  sink rows={rows}")


@cli.command("balances")
@click.option("--limit", type=int, default=20, show_default=True)
@_state_options
@_ledger_errors
def balances_cmd(limit, db_path, manifest_path):
    """List the largest balances held by the ledger."""
    with DeltaLedger(SQLiteLedgerStore(db_path)) as ledger:
        open_ledger(ledger, JSONLManifest(manifest_path))
        top = sorted(ledger.balances(), key=lambda kv: kv[1], reverse=True)[:limit]
    table = Table(title=f"top {limit} balances at {ledger.marker or '-'}")
    table.add_column("address")
    table.add_column("balance", justify="right")
    for key, bal in top:
        table.add_row(key, f"{bal:,}")
    console.print(table)


def main() -> None:
    cli(auto_envvar_prefix="REORGLEDGER")


if __name__ == "__main__":
    main()
