"""Sliding-window discovery queue.

The queue samples a channel's content by walking fixed-size block windows:
backwards from the chain tip for ``new`` channels, randomly across history for
``old`` channels. Items are shuffled within a page and never served twice;
with a store, the served IDs outlive the process.
"""

import asyncio
import json
import random
from collections import deque
from enum import StrEnum

from loguru import logger

from permaroam.config import SEEN_IDS_KEY, TIP_MARGIN
from permaroam.core.blocktime import BlockTimeResolver
from permaroam.core.query import INITIAL_PAGE_LIMIT, REFILL_PAGE_LIMIT
from permaroam.errors import GatewayError, QueueSupersededError
from permaroam.models import BlockRange, Channel, MediaKind, QueueOptions, Recency, TransactionMeta
from permaroam.protocols import KeyValueStoreProtocol, RangeFetcherProtocol

WINDOW_SIZE = 10_000
MIN_OLD_BLOCK = 100_000
MAX_SLIDE_ATTEMPTS = 8

# Upper bound on pages read from a single window before sliding on.
MAX_PAGES_PER_WINDOW = 25

# Oldest IDs are forgotten beyond this.
MAX_SEEN_IDS = 10_000


class WindowMode(StrEnum):
    RECENT = "recent"
    RANDOM = "random"
    EXPLICIT = "explicit"
    FULL = "full"


class ContentDiscoveryQueue:
    """Serves unseen transactions of a channel one at a time."""

    def __init__(
        self,
        fetcher: RangeFetcherProtocol,
        resolver: BlockTimeResolver,
        *,
        rng: random.Random | None = None,
        store: KeyValueStoreProtocol | None = None,
    ) -> None:
        self._fetcher = fetcher
        self._resolver = resolver
        self._rng = rng or random.Random()
        self._store = store
        self._lock = asyncio.Lock()
        self._seen: dict[str, None] = self._load_seen()
        self._generation = 0
        self._reset_session()

    def _reset_session(self) -> None:
        self._channel: Channel | None = None
        self._mode: WindowMode | None = None
        self._window: BlockRange | None = None
        self._bounds: BlockRange | None = None
        self._owner: str | None = None
        self._app_name: str | None = None
        self._tip = 1
        self._next_recent_max: int | None = None
        self._buffer: deque[TransactionMeta] = deque()
        self._has_more = False
        self._pages_in_window = 0

    @property
    def channel(self) -> Channel | None:
        return self._channel

    @property
    def window(self) -> BlockRange | None:
        return self._window

    @property
    def owner_address(self) -> str | None:
        """Owner filter in effect, from options, the channel or a deep-linked transaction."""
        return self._owner

    @property
    def app_name(self) -> str | None:
        return self._app_name

    @property
    def has_more_in_window(self) -> bool:
        return self._has_more

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    # --- seen IDs ---

    def _load_seen(self) -> dict[str, None]:
        if self._store is None:
            return {}
        raw = self._store.get(SEEN_IDS_KEY)
        if raw is None:
            return {}
        try:
            ids = json.loads(raw)
        except ValueError:
            ids = None
        if not isinstance(ids, list):
            logger.warning("Stored seen IDs {!r} are unreadable, starting empty", SEEN_IDS_KEY)
            self._store.delete(SEEN_IDS_KEY)
            return {}
        seen = {tx_id: None for tx_id in ids[-MAX_SEEN_IDS:] if isinstance(tx_id, str)}
        logger.debug("Loaded {} seen IDs", len(seen))
        return seen

    def _save_seen(self) -> None:
        if self._store is None:
            return
        if self._seen:
            self._store.set(SEEN_IDS_KEY, json.dumps(list(self._seen), separators=(",", ":")))
        else:
            self._store.delete(SEEN_IDS_KEY)

    def mark_seen(self, tx_id: str) -> None:
        self._seen.pop(tx_id, None)
        self._seen[tx_id] = None
        while len(self._seen) > MAX_SEEN_IDS:
            del self._seen[next(iter(self._seen))]
        self._save_seen()

    def is_seen(self, tx_id: str) -> bool:
        return tx_id in self._seen

    @property
    def seen_count(self) -> int:
        return len(self._seen)

    def clear_seen(self) -> None:
        self._seen.clear()
        self._save_seen()
        logger.debug("Seen IDs cleared")

    def reset(self) -> None:
        """Forget seen IDs and the active session; ``init`` is required afterwards."""
        self._generation += 1
        self._seen.clear()
        self._save_seen()
        self._reset_session()
        logger.debug("Discovery queue reset")

    # --- windows ---

    def _recent_window_ending_at(self, hi: int) -> BlockRange:
        lo = max(1, hi - WINDOW_SIZE + 1)
        self._next_recent_max = lo - 1
        return BlockRange(lo, hi)

    def _recent_window(self) -> BlockRange | None:
        """Next window walking backwards from the tip, or None past block 1."""
        if self._next_recent_max is None or self._next_recent_max < 1:
            return None
        return self._recent_window_ending_at(self._next_recent_max)

    def _random_window(self, bounds: BlockRange) -> BlockRange:
        if bounds.span <= WINDOW_SIZE:
            return bounds
        start = self._rng.randint(bounds.min, bounds.max - WINDOW_SIZE + 1)
        return BlockRange(start, start + WINDOW_SIZE - 1)

    def _recency_window(self, recency: Recency) -> BlockRange:
        if recency is Recency.OLD:
            if self._tip - WINDOW_SIZE <= MIN_OLD_BLOCK:
                self._mode = WindowMode.FULL
                return BlockRange(1, max(1, self._tip))
            self._mode = WindowMode.RANDOM
            self._bounds = BlockRange(MIN_OLD_BLOCK, self._tip)
            return self._random_window(self._bounds)
        self._mode = WindowMode.RECENT
        return self._recent_window_ending_at(max(1, self._tip - TIP_MARGIN))

    def _slide(self) -> BlockRange | None:
        if self._mode is WindowMode.RECENT:
            return self._recent_window()
        bounds = self._bounds
        if self._mode not in (WindowMode.RANDOM, WindowMode.EXPLICIT) or bounds is None:
            return None
        if bounds.span <= WINDOW_SIZE:
            return None
        return self._random_window(bounds)

    def _enter_window(self, window: BlockRange) -> None:
        self._window = window
        self._buffer.clear()
        self._has_more = True
        self._pages_in_window = 0

    # --- session ---

    async def init(self, channel: Channel, options: QueueOptions | None = None) -> BlockRange:
        """Start a new session for ``channel``. Seen IDs are kept.

        A ``next()`` still waiting on I/O from the previous session raises
        QueueSupersededError once that I/O completes.
        """
        options = options or QueueOptions()
        self._generation += 1
        async with self._lock:
            self._reset_session()
            self._tip = await self._resolver.current_block_height()
            self._channel = channel
            self._owner = options.owner_address or channel.owner_address
            self._app_name = options.app_name or channel.app_name

            explicit = options.block_bounds
            if explicit is not None:
                lo = max(1, min(explicit))
                hi = max(lo, *explicit)
                if hi > self._tip >= lo:
                    hi = self._tip
                self._mode = WindowMode.EXPLICIT
                self._bounds = BlockRange(lo, hi)
                window = self._random_window(self._bounds)
            elif options.initial_tx is not None:
                self._owner = options.owner_address or options.initial_tx.owner_address
                window = self._recency_window(channel.recency)
            elif self._owner:
                self._mode = WindowMode.FULL
                window = BlockRange(1, max(1, self._tip))
            else:
                window = self._recency_window(channel.recency)

            self._enter_window(window)
            logger.info(
                "Queue initialized: {} {} window {} ({}), owner={}, app={}",
                channel.media_kind,
                channel.recency,
                window,
                self._mode,
                self._owner,
                self._app_name,
            )
            return window

    def _check_generation(self, generation: int) -> None:
        if generation != self._generation:
            msg = "discovery queue was re-initialized during the fetch"
            raise QueueSupersededError(msg)

    def _require_session(self) -> tuple[Channel, BlockRange]:
        if self._channel is None or self._window is None:
            msg = "init() must be called before using the queue"
            raise RuntimeError(msg)
        return self._channel, self._window

    async def _fetch_page(self, generation: int) -> None:
        channel, window = self._require_session()
        is_refill = self._pages_in_window > 0
        page = await self._fetcher.fetch_transactions_in_range(
            channel.media_kind,
            window.min,
            window.max,
            owner_address=self._owner,
            app_name=self._app_name,
            page_limit=REFILL_PAGE_LIMIT if is_refill else INITIAL_PAGE_LIMIT,
            is_refill=is_refill,
        )
        self._check_generation(generation)
        self._pages_in_window += 1

        queued = {tx.id for tx in self._buffer}
        fresh: list[TransactionMeta] = []
        for tx in page.txs:
            if tx.id in queued or self.is_seen(tx.id):
                continue
            queued.add(tx.id)
            fresh.append(tx)
        self._rng.shuffle(fresh)
        self._buffer.extend(fresh)

        # An empty page cannot advance the window, whatever has_more says.
        self._has_more = page.has_more and bool(page.txs)
        if self._pages_in_window >= MAX_PAGES_PER_WINDOW:
            self._has_more = False
        logger.debug(
            "Loaded {} of {} transactions from window {} (refill={}, has_more={})",
            len(fresh),
            len(page.txs),
            window,
            is_refill,
            self._has_more,
        )

    async def _attach_file_meta(self, tx: TransactionMeta, generation: int) -> TransactionMeta | None:
        if tx.tag_value("Entity-Type") != "file":
            logger.debug("Skipping non-file ArFS entity {}", tx.id)
            return None
        if tx.file_meta is not None:
            return tx
        try:
            file_meta = await self._fetcher.fetch_file_metadata(tx)
        except (GatewayError, OSError) as e:
            logger.warning("Skipping {}, file metadata unavailable: {}", tx.id, e)
            self.mark_seen(tx.id)
            return None
        self._check_generation(generation)
        return tx.with_file_meta(file_meta)

    async def _pop_ready(self, generation: int) -> TransactionMeta | None:
        channel, _ = self._require_session()
        while self._buffer:
            tx = self._buffer.popleft()
            if self.is_seen(tx.id):
                continue
            if channel.media_kind is MediaKind.ARFS:
                with_meta = await self._attach_file_meta(tx, generation)
                if with_meta is None:
                    continue
                tx = with_meta
            return tx
        return None

    async def next(self) -> TransactionMeta | None:
        """Return the next unseen transaction, or None when the channel is exhausted.

        Raises:
            GatewayError: the range query failed.
            QueueSupersededError: ``init`` or ``reset`` ran while this call waited on I/O.
            RuntimeError: the queue was never initialized.
        """
        async with self._lock:
            self._require_session()
            generation = self._generation
            slides = 0
            while True:
                tx = await self._pop_ready(generation)
                if tx is not None:
                    self.mark_seen(tx.id)
                    return tx
                if self._has_more:
                    await self._fetch_page(generation)
                    continue
                if slides >= MAX_SLIDE_ATTEMPTS:
                    logger.info("No unseen content after {} window slides", slides)
                    return None
                window = self._slide()
                if window is None:
                    logger.info("No further window for {}", self._channel)
                    return None
                slides += 1
                logger.debug("Window {} exhausted, sliding to {}", self._window, window)
                self._enter_window(window)

    async def peek(self, count: int = 3) -> list[TransactionMeta]:
        """Upcoming unseen items, for preloading. Nothing is consumed or marked seen."""
        async with self._lock:
            self._require_session()
            generation = self._generation
            unseen = [tx for tx in self._buffer if not self.is_seen(tx.id)]
            if len(unseen) < count and self._has_more:
                await self._fetch_page(generation)
                unseen = [tx for tx in self._buffer if not self.is_seen(tx.id)]
            return unseen[:count]
