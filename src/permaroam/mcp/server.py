"""MCP server exposing permaroam navigation tools."""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from pathlib import Path
from typing import Any

from loguru import logger
from mcp.server.fastmcp import Context, FastMCP

from permaroam.config import resolve_data_directory
from permaroam.core.blocktime import is_valid_ledger_date
from permaroam.core.navigator import Navigator, ResetScope, create_navigator
from permaroam.errors import GatewayError
from permaroam.models import Channel, MediaKind, QueueOptions, Recency, TransactionMeta
from permaroam.storage import SqliteKeyValueStore


def _serialize_tx(tx: TransactionMeta, *, gateway: str = "https://arweave.net") -> dict[str, Any]:
    data_id = tx.file_meta.data_tx_id if tx.file_meta else tx.id
    entry: dict[str, Any] = {
        "id": tx.id,
        "owner": tx.owner_address,
        "block_height": tx.block_height,
        "mined_at": datetime.fromtimestamp(tx.block_timestamp, tz=UTC).isoformat(),
        "content_type": tx.content_type,
        "data_size": tx.data_size,
        "url": f"{gateway}/{data_id}",
    }
    if tx.file_meta is not None:
        entry["file_name"] = tx.file_meta.name
    app_name = tx.tag_value("App-Name")
    if app_name:
        entry["app_name"] = app_name
    return entry


def _channel(media: str, recency: str, owner: str | None, app_name: str | None) -> Channel:
    return Channel(
        media_kind=MediaKind(media),
        recency=Recency(recency),
        owner_address=owner or None,
        app_name=app_name or None,
    )


def _item_response(nav: Navigator, tx: TransactionMeta | None, empty: str) -> dict[str, Any]:
    if tx is None:
        return {"error": empty, "item": None}
    output: dict[str, Any] = {"item": _serialize_tx(tx)}
    if nav.queue.window is not None:
        output["window"] = {"min_block": nav.queue.window.min, "max_block": nav.queue.window.max}
    share = nav.share_query(tx)
    if share:
        output["share_query"] = share
    output["history_position"] = nav.history.state.index
    return output


def _failure(nav: Navigator, e: GatewayError) -> dict[str, Any]:
    logger.warning("Tool call failed: {}", e)
    return {
        "error": f"Gateway request failed: {e}",
        "item": None,
        "auto_advance_allowed": nav.auto_advance_allowed,
    }


# --- Core functions (testable without MCP context) ---


async def roam_next(
    nav: Navigator,
    *,
    media: str = "everything",
    recency: str = "new",
    owner: str | None = None,
    app_name: str | None = None,
) -> dict[str, Any]:
    """Serve the next item: forward history first, then fresh content."""
    try:
        channel = _channel(media, recency, owner, app_name)
    except ValueError as e:
        return {"error": str(e), "item": None}
    try:
        tx = await nav.next(channel)
    except GatewayError as e:
        return _failure(nav, e)
    return _item_response(nav, tx, "No more content in this channel.")


def roam_back(nav: Navigator) -> dict[str, Any]:
    return _item_response(nav, nav.back(), "No previous content.")


def roam_forward(nav: Navigator) -> dict[str, Any]:
    return _item_response(nav, nav.go_forward(), "Already at the newest item.")


async def roam_start(
    nav: Navigator,
    *,
    media: str = "everything",
    recency: str = "new",
    owner: str | None = None,
    app_name: str | None = None,
    min_block: int | None = None,
    max_block: int | None = None,
    link: str | None = None,
) -> dict[str, Any]:
    """Start a fresh roam, optionally from a share link or within a block range."""
    try:
        channel = _channel(media, recency, owner, app_name)
    except ValueError as e:
        return {"error": str(e), "item": None}
    try:
        if link:
            tx = await nav.open_deep_link(link, channel)
        else:
            options = None
            if min_block is not None and max_block is not None:
                options = QueueOptions(min_block=min_block, max_block=max_block)
            tx = await nav.roam(channel, options)
    except GatewayError as e:
        return _failure(nav, e)
    return _item_response(nav, tx, "Couldn't start roam: no items found.")


async def roam_resolve_dates(
    nav: Navigator,
    *,
    start: str,
    end: str | None = None,
    exact: bool = True,
) -> dict[str, Any]:
    """Resolve a day, or an inclusive span of days, to a block range."""
    try:
        start_day = date.fromisoformat(start)
        end_day = date.fromisoformat(end) if end else None
    except ValueError as e:
        return {"error": f"Invalid date: {e}"}

    warnings = [
        f"{day} is outside the ledger's lifetime"
        for day in (start_day, end_day)
        if day is not None and not is_valid_ledger_date(day)
    ]
    if end_day is None:
        block_range = await nav.resolve_date_range(start_day, exact)
    else:
        block_range = await nav.resolve_date_range_span(start_day, end_day, exact)
    output: dict[str, Any] = {"min_block": block_range.min, "max_block": block_range.max}
    if warnings:
        output["warnings"] = warnings
    return output


async def roam_block_dates(nav: Navigator, *, min_block: int, max_block: int) -> dict[str, Any]:
    """Wall-clock dates of the first and last block of a range."""
    if min_block < 1 or max_block < 1:
        return {"error": "Block heights start at 1."}
    span = await nav.block_range_to_dates(min_block, max_block)
    if span is None:
        return {"error": f"Could not fetch blocks {min_block} and {max_block}."}
    return {"start_date": span.start_date.isoformat(), "end_date": span.end_date.isoformat()}


def roam_reset(nav: Navigator, *, scope: str = "all") -> dict[str, Any]:
    try:
        reset_scope = ResetScope(scope)
    except ValueError:
        return {"error": f"Unknown scope {scope!r}; use one of {[s.value for s in ResetScope]}."}
    nav.reset(reset_scope)
    return {"reset": reset_scope.value}


# --- MCP Server Setup ---


@dataclass
class ServerContext:
    """Shared resources for the MCP server lifetime."""

    navigator: Navigator
    store: SqliteKeyValueStore
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


@asynccontextmanager
async def server_lifespan(_server: FastMCP) -> AsyncIterator[ServerContext]:
    """Open the state database on startup, close on shutdown."""
    store = SqliteKeyValueStore.open(resolve_data_directory())
    try:
        yield ServerContext(navigator=create_navigator(store), store=store)
    finally:
        store.close()


mcp_server = FastMCP(
    "permaroam",
    instructions="""\
permaroam serves random content stored on Arweave, one item at a time.

## Typical Flow

1. Call roam_start_tool with a media kind (images, videos, music, websites,
   text, everything, arfs) and recency ("new" walks back from the chain tip,
   "old" samples random history).
2. Call roam_next_tool repeatedly for more items; roam_back_tool and
   roam_forward_tool walk the history without fetching.
3. Use roam_resolve_dates_tool to turn dates into block bounds for
   roam_start_tool.

Every item has a url that opens the content on a gateway, and a share_query
that reopens it in the same window via roam_start_tool(link=...).
""",
    lifespan=server_lifespan,
)


def _ctx(mcp_ctx: Context) -> ServerContext:
    return mcp_ctx.request_context.lifespan_context  # type: ignore[return-value]


# --- MCP Tool Wrappers ---


@mcp_server.tool()
async def roam_next_tool(
    ctx: Context,
    media: str = "everything",
    recency: str = "new",
    owner: str | None = None,
    app_name: str | None = None,
) -> dict[str, Any]:
    """Get the next content item of a channel.

    Replays forward history first (after roam_back_tool), otherwise fetches an
    unseen item. When auto_advance_allowed is false, several fetches failed
    in a row; ask the user before trying again.

    Args:
        media: images, videos, music, websites, text, everything or arfs.
        recency: "new" or "old".
        owner: Only content from this wallet address.
        app_name: Only content tagged with this App-Name.
    """
    server = _ctx(ctx)
    async with server.lock:
        return await roam_next(server.navigator, media=media, recency=recency, owner=owner, app_name=app_name)


@mcp_server.tool()
async def roam_back_tool(ctx: Context) -> dict[str, Any]:
    """Go back to the previous item in history."""
    server = _ctx(ctx)
    async with server.lock:
        return roam_back(server.navigator)


@mcp_server.tool()
async def roam_forward_tool(ctx: Context) -> dict[str, Any]:
    """Go forward in history without fetching new content."""
    server = _ctx(ctx)
    async with server.lock:
        return roam_forward(server.navigator)


@mcp_server.tool()
async def roam_start_tool(
    ctx: Context,
    media: str = "everything",
    recency: str = "new",
    owner: str | None = None,
    app_name: str | None = None,
    min_block: int | None = None,
    max_block: int | None = None,
    link: str | None = None,
) -> dict[str, Any]:
    """Start a fresh roam and return its first item.

    Previously seen items may appear again. Pass both min_block and max_block
    to restrict the roam to a block range, or a share_query as link.

    Args:
        media: images, videos, music, websites, text, everything or arfs.
        recency: "new" or "old".
        owner: Only content from this wallet address.
        app_name: Only content tagged with this App-Name.
        min_block: Lowest block height.
        max_block: Highest block height.
        link: Share query or URL from a previous item.
    """
    server = _ctx(ctx)
    async with server.lock:
        return await roam_start(
            server.navigator,
            media=media,
            recency=recency,
            owner=owner,
            app_name=app_name,
            min_block=min_block,
            max_block=max_block,
            link=link,
        )


@mcp_server.tool()
async def roam_resolve_dates_tool(
    ctx: Context,
    start: str,
    end: str | None = None,
    exact: bool = True,
) -> dict[str, Any]:
    """Convert a date (YYYY-MM-DD), or a span of dates, to block heights.

    Args:
        start: First day (UTC).
        end: Optional last day (UTC).
        exact: Binary search real block timestamps (slower) instead of estimating.
    """
    return await roam_resolve_dates(_ctx(ctx).navigator, start=start, end=end, exact=exact)


@mcp_server.tool()
async def roam_block_dates_tool(ctx: Context, min_block: int, max_block: int) -> dict[str, Any]:
    """Get the dates when two blocks were mined.

    Args:
        min_block: First block height.
        max_block: Last block height.
    """
    return await roam_block_dates(_ctx(ctx).navigator, min_block=min_block, max_block=max_block)


@mcp_server.tool()
async def roam_reset_tool(ctx: Context, scope: str = "all") -> dict[str, Any]:
    """Reset session state.

    Args:
        scope: "session" (seen items and window), "history", "caches" or "all".
    """
    server = _ctx(ctx)
    async with server.lock:
        return roam_reset(server.navigator, scope=scope)


def run_mcp_server(*, verbose: bool = False, log_file: Path | None = None) -> None:
    """Run the MCP server with stdio transport."""
    from permaroam.logging_config import configure_logging

    configure_logging(verbose=verbose, log_file=log_file)
    mcp_server.run(transport="stdio")
