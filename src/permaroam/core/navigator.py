"""Navigation layer: Next / Back / Roam on top of the queue, history and resolver."""

import random
import time
from collections.abc import Awaitable, Callable
from datetime import date, datetime
from enum import StrEnum
from typing import TypeVar

from loguru import logger

from permaroam.api import ArweaveApi
from permaroam.config import MAX_AUTO_RETRY_FAILURES
from permaroam.core.blocktime import BlockTimeResolver
from permaroam.core.deeplink import build_share_query, parse_deep_link, resolve_deep_link
from permaroam.core.discovery import ContentDiscoveryQueue
from permaroam.core.gateway import GatewayClient
from permaroam.core.history import NavigationHistory
from permaroam.errors import GatewayError
from permaroam.models import BlockRange, Channel, DateSpan, QueueOptions, TransactionMeta
from permaroam.protocols import KeyValueStoreProtocol

T = TypeVar("T")


class ResetScope(StrEnum):
    SESSION = "session"  # seen IDs and queue window
    HISTORY = "history"
    CACHES = "caches"  # block-time caches
    ALL = "all"


class Navigator:
    """The API exposed to user interfaces.

    Transport failures of ``next``/``roam`` propagate as GatewayError and are
    counted; after MAX_AUTO_RETRY_FAILURES consecutive failures
    ``auto_advance_allowed`` turns False until a success or an explicit
    ``acknowledge_failures()``.
    """

    def __init__(
        self,
        queue: ContentDiscoveryQueue,
        resolver: BlockTimeResolver,
        history: NavigationHistory,
        *,
        client: GatewayClient | None = None,
    ) -> None:
        self.queue = queue
        self.resolver = resolver
        self.history = history
        self._client = client
        self._failures = 0

    # --- queue ---

    async def init_fetch_queue(self, channel: Channel, options: QueueOptions | None = None) -> BlockRange:
        return await self.queue.init(channel, options)

    async def get_next_tx(self, channel: Channel) -> TransactionMeta | None:
        """Next unseen item of ``channel``, re-initializing the queue for a new channel."""
        if self.queue.channel != channel or self.queue.window is None:
            logger.debug("Channel changed to {}, re-initializing queue", channel)
            await self.queue.init(channel)
        return await self.queue.next()

    def clear_seen_ids(self) -> None:
        self.queue.clear_seen()

    # --- block time ---

    async def resolve_date_range(self, day: date | datetime, require_exact: bool = True) -> BlockRange:
        return await self.resolver.resolve_date_range(day, require_exact)

    async def resolve_date_range_span(
        self,
        start: date | datetime,
        end: date | datetime,
        require_exact: bool = False,
    ) -> BlockRange:
        return await self.resolver.resolve_date_range_span(start, end, require_exact)

    async def block_range_to_dates(self, min_block: int, max_block: int) -> DateSpan | None:
        return await self.resolver.block_range_to_dates(min_block, max_block)

    # --- history ---

    def add_history(self, tx: TransactionMeta) -> None:
        self.history.add(tx)

    def go_back(self) -> TransactionMeta | None:
        return self.history.go_back()

    def go_forward(self) -> TransactionMeta | None:
        return self.history.go_forward()

    def peek_forward(self) -> TransactionMeta | None:
        return self.history.peek_forward()

    def reset_history(self) -> None:
        self.history.reset()

    # --- failure escalation ---

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    @property
    def auto_advance_allowed(self) -> bool:
        return self._failures < MAX_AUTO_RETRY_FAILURES

    def acknowledge_failures(self) -> None:
        self._failures = 0

    async def _counted(self, fetch: Callable[[], Awaitable[T]]) -> T:
        try:
            rv = await fetch()
        except GatewayError:
            self._failures += 1
            if self._failures == MAX_AUTO_RETRY_FAILURES:
                logger.warning("{} consecutive fetch failures, auto-advance disabled", self._failures)
            raise
        self._failures = 0
        return rv

    # --- user actions ---

    async def next(self, channel: Channel) -> TransactionMeta | None:
        """Replay forward history if there is any, otherwise serve a new item."""
        if self.history.peek_forward() is not None:
            return self.history.go_forward()
        tx = await self._counted(lambda: self.get_next_tx(channel))
        if tx is not None:
            self.history.add(tx)
        return tx

    def back(self) -> TransactionMeta | None:
        return self.history.go_back()

    async def roam(self, channel: Channel, options: QueueOptions | None = None) -> TransactionMeta | None:
        """Start a fresh shuffle of ``channel``; seen IDs are forgotten first.

        The deep-linked ``options.initial_tx`` is served first when present.
        """
        self.queue.clear_seen()
        window = await self.queue.init(channel, options)
        if options is not None and options.initial_tx is not None:
            tx: TransactionMeta | None = options.initial_tx
            self.queue.mark_seen(options.initial_tx.id)
        else:
            tx = await self._counted(self.queue.next)
        if tx is None:
            logger.info("Couldn't start roam in {}: no items found", window)
            return None
        self.history.add(tx)
        return tx

    async def open_deep_link(self, query: str, default_channel: Channel) -> TransactionMeta | None:
        """Roam from a share link; ``default_channel`` applies when the link names none."""
        if self._client is None:
            msg = "deep links need a GatewayClient"
            raise RuntimeError(msg)
        channel, options = await resolve_deep_link(parse_deep_link(query), self._client)
        return await self.roam(channel or default_channel, options)

    def share_query(self, tx: TransactionMeta | None = None) -> str | None:
        """Share-link query for ``tx`` (default: current history item) in the active window."""
        tx = tx or self.history.current()
        channel = self.queue.channel
        if tx is None or channel is None:
            return None
        effective = Channel(
            media_kind=channel.media_kind,
            recency=channel.recency,
            owner_address=self.queue.owner_address,
            app_name=self.queue.app_name,
        )
        return build_share_query(tx, effective, self.queue.window)

    def reset(self, scope: ResetScope = ResetScope.ALL) -> None:
        if scope in (ResetScope.SESSION, ResetScope.ALL):
            self.queue.reset()
        if scope in (ResetScope.HISTORY, ResetScope.ALL):
            self.history.reset()
        if scope in (ResetScope.CACHES, ResetScope.ALL):
            self.resolver.clear_caches()
        self._failures = 0
        logger.info("Reset {}", scope)


def create_navigator(
    store: KeyValueStoreProtocol,
    *,
    api: ArweaveApi | None = None,
    clock: Callable[[], float] = time.time,
    rng: random.Random | None = None,
) -> Navigator:
    """Wire a Navigator to live gateways, persisting history and seen IDs in ``store``."""
    client = GatewayClient(api or ArweaveApi())
    resolver = BlockTimeResolver(client, clock=clock)
    queue = ContentDiscoveryQueue(client, resolver, rng=rng, store=store)
    return Navigator(queue, resolver, NavigationHistory(store), client=client)
