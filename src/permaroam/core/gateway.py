"""Async gateway collaborators backed by the synchronous ArweaveApi.

Blocking HTTP calls run in worker threads, so the event loop stays free and a
caller can abandon a fetch by cancelling the awaiting task.
"""

import asyncio
from typing import Any

from loguru import logger

from permaroam.api import ArweaveApi
from permaroam.config import BLOCK_TIMEOUT, DEFAULT_HEIGHT, INFO_TIMEOUT
from permaroam.core.query import (
    BY_ID_QUERY,
    RANGE_QUERY,
    CursorStore,
    build_range_variables,
    parse_file_metadata,
    parse_range_page,
    parse_transaction,
)
from permaroam.errors import GatewayError, MalformedResponseError
from permaroam.models import BlockInfo, FileMeta, MediaKind, RangePage, TransactionMeta


class GatewayClient:
    """Implements RangeFetcherProtocol and BlockFetcherProtocol over HTTP."""

    def __init__(self, api: ArweaveApi, *, cursors: CursorStore | None = None) -> None:
        self._api = api
        self._cursors = cursors or CursorStore()

    async def fetch_transactions_in_range(
        self,
        media_kind: MediaKind,
        min_block: int,
        max_block: int,
        *,
        owner_address: str | None = None,
        app_name: str | None = None,
        page_limit: int | None = None,
        is_refill: bool = False,
    ) -> RangePage:
        """Fetch up to ``page_limit`` pages (None = all) of a block range.

        The last cursor of an unfinished range is remembered, and a refill of
        the same range resumes from it.
        """
        cursor_key = CursorStore.key(media_kind, min_block, max_block, owner_address, app_name)
        after = self._cursors.get(cursor_key) if is_refill else None
        if after:
            logger.debug("Using stored cursor for refill: {}...", after[:20])

        txs: dict[str, TransactionMeta] = {}
        pages = 0
        has_next = True
        while has_next and (page_limit is None or pages < page_limit):
            variables = build_range_variables(
                media_kind,
                min_block,
                max_block,
                owner_address=owner_address,
                app_name=app_name,
                after=after,
            )
            data = await asyncio.to_thread(self._api.graphql, RANGE_QUERY, variables)
            page = parse_range_page(data)
            for tx in page.txs:
                txs.setdefault(tx.id, tx)
            pages += 1
            has_next = page.has_next and page.last_cursor is not None
            after = page.last_cursor
            logger.debug(
                "Fetched page {}/{} of {}-{}: {} transactions, has_next={}",
                pages,
                page_limit or "all",
                min_block,
                max_block,
                len(page.txs),
                has_next,
            )

        if has_next and after:
            self._cursors.put(cursor_key, after)
        else:
            self._cursors.discard(cursor_key)

        return RangePage(txs=tuple(txs.values()), has_more=has_next)

    async def fetch_transaction_by_id(self, tx_id: str) -> TransactionMeta:
        """Look up a single transaction, e.g. for a deep link."""
        data = await asyncio.to_thread(self._api.graphql, BY_ID_QUERY, {"ids": [tx_id]})
        try:
            edges = data["transactions"]["edges"]
        except (KeyError, TypeError) as e:
            msg = f"bad transaction lookup response for {tx_id!r}"
            raise MalformedResponseError(msg) from e
        if not edges:
            msg = f"No transaction found: {tx_id!r}"
            raise GatewayError(msg)
        return parse_transaction(edges[0]["node"])

    async def fetch_file_metadata(self, tx: TransactionMeta) -> FileMeta:
        raw = await asyncio.to_thread(self._api.get_json, tx.id, timeout=BLOCK_TIMEOUT * 2)
        return parse_file_metadata(raw)

    async def fetch_block_by_height(self, height: int) -> BlockInfo:
        raw = await asyncio.to_thread(
            self._api.get_json, f"block/height/{height}", timeout=BLOCK_TIMEOUT
        )
        return BlockInfo(height=height, timestamp=_require_int(raw, "timestamp", height))

    async def get_current_block_height(self) -> int:
        """Return the chain tip, or DEFAULT_HEIGHT when /info is unreachable."""
        try:
            raw = await asyncio.to_thread(self._api.get_json, "info", timeout=INFO_TIMEOUT)
            return _require_int(raw, "height", "info")
        except GatewayError as e:
            logger.warning("Failed to fetch current block height, using {}: {}", DEFAULT_HEIGHT, e)
            return DEFAULT_HEIGHT


def _require_int(raw: Any, field: str, what: object) -> int:
    value = raw.get(field) if isinstance(raw, dict) else None
    if isinstance(value, bool) or not isinstance(value, int):
        msg = f"Invalid {field!r} in response for {what}: {value!r}"
        raise MalformedResponseError(msg)
    return value
