"""CLI for permaroam (roam, history, date resolution, MCP server)."""

import asyncio
import json
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Annotated, Any

import typer
from loguru import logger

from permaroam.config import resolve_data_directory
from permaroam.core.blocktime import is_valid_ledger_date
from permaroam.core.navigator import Navigator, ResetScope, create_navigator
from permaroam.errors import GatewayError
from permaroam.logging_config import configure_logging
from permaroam.models import Channel, MediaKind, QueueOptions, Recency, TransactionMeta
from permaroam.storage import SqliteKeyValueStore

app = typer.Typer(help="permaroam: wander through random content stored on Arweave.")

DataDirOption = Annotated[
    Path | None,
    typer.Option("--data-dir", "-d", help="State directory (history database)"),
]
JsonOption = Annotated[bool, typer.Option("--json", "-j", help="Output as JSON")]
MediaOption = Annotated[MediaKind, typer.Option("--media", "-m", help="Media kind to roam")]
RecencyOption = Annotated[Recency, typer.Option("--recency", "-r", help="Newest blocks first, or random history")]
OwnerOption = Annotated[str | None, typer.Option("--owner", help="Only content from this wallet address")]
AppOption = Annotated[str | None, typer.Option("--app", help="Only content tagged with this App-Name")]


@app.callback()
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
    log_file: Annotated[
        Path | None,
        typer.Option("--log-file", help="Also write debug logs to this file (rotated at 5 MB)"),
    ] = None,
) -> None:
    configure_logging(verbose=verbose, log_file=log_file)
    ctx.obj = {"verbose": verbose, "log_file": log_file}


@contextmanager
def _open_navigator(data_dir: Path | None) -> Iterator[Navigator]:
    store = SqliteKeyValueStore.open(data_dir or resolve_data_directory())
    try:
        yield create_navigator(store)
    finally:
        store.close()


def _tx_record(tx: TransactionMeta, gateway: str = "https://arweave.net") -> dict[str, Any]:
    data = tx.to_dict()
    data["url"] = f"{gateway}/{tx.file_meta.data_tx_id if tx.file_meta else tx.id}"
    return data


def _echo_tx(tx: TransactionMeta | None, *, output_json: bool, empty: str) -> None:
    if output_json:
        typer.echo(json.dumps(_tx_record(tx) if tx else None, indent=2))
        return
    if tx is None:
        typer.echo(empty)
        return
    mined = datetime.fromtimestamp(tx.block_timestamp, tz=UTC)
    title = tx.file_meta.name if tx.file_meta else tx.id
    typer.echo(f"  {title}  [{tx.content_type or 'unknown'}]")
    typer.echo(f"    block {tx.block_height}  {mined:%Y-%m-%d %H:%M}  owner={tx.owner_address}")
    typer.echo(f"    {_tx_record(tx)['url']}")


def _run(coro: Any) -> Any:
    """Run a coroutine, turning gateway failures into a clean exit."""
    try:
        return asyncio.run(coro)
    except GatewayError as e:
        logger.error("Gateway request failed: {}", e)
        raise typer.Exit(1) from e


@app.command()
def roam(
    media: MediaOption = MediaKind.EVERYTHING,
    recency: RecencyOption = Recency.NEW,
    owner: OwnerOption = None,
    app_name: AppOption = None,
    min_block: Annotated[int | None, typer.Option("--min-block", help="Lowest block height")] = None,
    max_block: Annotated[int | None, typer.Option("--max-block", help="Highest block height")] = None,
    from_date: Annotated[
        datetime | None,
        typer.Option("--from", formats=["%Y-%m-%d"], help="Start date (UTC), resolved to blocks"),
    ] = None,
    to_date: Annotated[
        datetime | None,
        typer.Option("--to", formats=["%Y-%m-%d"], help="End date (UTC), resolved to blocks"),
    ] = None,
    link: Annotated[str | None, typer.Option("--link", "-l", help="Share link or query string to open")] = None,
    count: int = typer.Option(1, "--count", "-n", min=1, help="Number of items to show"),
    data_dir: DataDirOption = None,
    output_json: JsonOption = False,
) -> None:
    """Start a fresh roam and show the first items."""
    channel = Channel(media_kind=media, recency=recency, owner_address=owner, app_name=app_name)

    async def _roam(nav: Navigator) -> list[TransactionMeta]:
        if link:
            first = await nav.open_deep_link(link, channel)
        else:
            lo, hi = min_block, max_block
            days = [day for day in (from_date, to_date) if day is not None]
            if days:
                start, end = days[0], days[-1]
                for day in (start, end):
                    if not is_valid_ledger_date(day):
                        logger.warning("{:%Y-%m-%d} is outside the ledger's lifetime", day)
                span = await nav.resolve_date_range_span(start, end, require_exact=True)
                lo, hi = span.min, span.max
            options = QueueOptions(min_block=lo, max_block=hi) if lo is not None and hi is not None else None
            first = await nav.roam(channel, options)
        items = [first] if first else []
        while first and len(items) < count:
            tx = await nav.next(nav.queue.channel or channel)
            if tx is None:
                break
            items.append(tx)
        return items

    with _open_navigator(data_dir) as nav:
        items = _run(_roam(nav))
        if output_json:
            typer.echo(json.dumps([_tx_record(tx) for tx in items], indent=2))
            return
        if not items:
            typer.echo("No content found.")
            raise typer.Exit(1)
        window = nav.queue.window
        typer.echo(f"Roaming {nav.queue.channel.media_kind if nav.queue.channel else media} in blocks {window}:\n")
        for tx in items:
            _echo_tx(tx, output_json=False, empty="")
            typer.echo()
        share = nav.share_query(items[-1])
        if share:
            typer.echo(f"Share: ?{share}")


@app.command(name="next")
def next_cmd(
    media: MediaOption = MediaKind.EVERYTHING,
    recency: RecencyOption = Recency.NEW,
    owner: OwnerOption = None,
    app_name: AppOption = None,
    data_dir: DataDirOption = None,
    output_json: JsonOption = False,
) -> None:
    """Go forward in history, or fetch a new item of the channel."""
    channel = Channel(media_kind=media, recency=recency, owner_address=owner, app_name=app_name)
    with _open_navigator(data_dir) as nav:
        tx = _run(nav.next(channel))
        _echo_tx(tx, output_json=output_json, empty="No more content.")


@app.command()
def back(data_dir: DataDirOption = None, output_json: JsonOption = False) -> None:
    """Step back in history."""
    with _open_navigator(data_dir) as nav:
        _echo_tx(nav.back(), output_json=output_json, empty="No previous content.")


@app.command()
def forward(data_dir: DataDirOption = None, output_json: JsonOption = False) -> None:
    """Step forward in history without fetching."""
    with _open_navigator(data_dir) as nav:
        _echo_tx(nav.go_forward(), output_json=output_json, empty="Already at the newest item.")


@app.command()
def history(
    limit: int = typer.Option(20, "--limit", "-n", help="Max entries"),
    data_dir: DataDirOption = None,
    output_json: JsonOption = False,
) -> None:
    """List the navigation history, newest last."""
    with _open_navigator(data_dir) as nav:
        state = nav.history.state
        first = max(0, len(state.items) - limit)
        if output_json:
            data = {
                "index": state.index,
                "items": [_tx_record(tx) for tx in state.items[first:]],
                "total": len(state.items),
            }
            typer.echo(json.dumps(data, indent=2))
            return
        typer.echo(f"{len(state.items)} items in history:\n")
        for i, tx in enumerate(state.items[first:], start=first):
            marker = ">" if i == state.index else " "
            typer.echo(f"{marker} {i:4d}  {tx.id}  block {tx.block_height}  {tx.content_type or ''}")


@app.command()
def reset(
    scope: Annotated[ResetScope, typer.Option("--scope", "-s", help="What to reset")] = ResetScope.ALL,
    data_dir: DataDirOption = None,
) -> None:
    """Clear history, session state and caches."""
    with _open_navigator(data_dir) as nav:
        nav.reset(scope)
        typer.echo(f"Reset {scope}.")


@app.command(name="resolve-date")
def resolve_date(
    start: Annotated[datetime, typer.Argument(formats=["%Y-%m-%d"], help="Day (UTC)")],
    end: Annotated[
        datetime | None,
        typer.Argument(formats=["%Y-%m-%d"], help="Optional last day of a span"),
    ] = None,
    exact: bool = typer.Option(True, "--exact/--estimate", help="Binary search or linear estimate"),
    data_dir: DataDirOption = None,
    output_json: JsonOption = False,
) -> None:
    """Resolve a day (or a span of days) to a block range."""
    with _open_navigator(data_dir) as nav:
        if end is None:
            block_range = _run(nav.resolve_date_range(start, exact))
        else:
            block_range = _run(nav.resolve_date_range_span(start, end, exact))
        if output_json:
            typer.echo(json.dumps({"min_block": block_range.min, "max_block": block_range.max}))
        else:
            typer.echo(f"Blocks {block_range}")


@app.command(name="block-dates")
def block_dates(
    min_block: int = typer.Argument(..., min=1, help="First block"),
    max_block: int = typer.Argument(..., min=1, help="Last block"),
    data_dir: DataDirOption = None,
    output_json: JsonOption = False,
) -> None:
    """Show when the first and last block of a range were mined."""
    with _open_navigator(data_dir) as nav:
        span = _run(nav.block_range_to_dates(min_block, max_block))
    if span is None:
        logger.error("Could not fetch blocks {} and {}", min_block, max_block)
        raise typer.Exit(1)
    if output_json:
        typer.echo(
            json.dumps({"start_date": span.start_date.isoformat(), "end_date": span.end_date.isoformat()})
        )
    else:
        typer.echo(f"{span.start_date:%Y-%m-%d %H:%M} .. {span.end_date:%Y-%m-%d %H:%M} UTC")


@app.command()
def serve(ctx: typer.Context) -> None:
    """Start the MCP server (stdio transport)."""
    from permaroam.mcp.server import run_mcp_server

    run_mcp_server(**(ctx.obj or {}))
