"""Block height <-> wall-clock time resolution.

Arweave queries only understand block heights, while users think in calendar
dates. Two strategies are offered:

- estimation: linear extrapolation from a chain-tip anchor, no I/O;
- exact resolution: a bounded binary search over real block timestamps.

Exact resolution never raises on network trouble; it degrades to estimation.
"""

import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, date, datetime
from enum import StrEnum

from loguru import logger

from permaroam.config import TIP_MARGIN
from permaroam.errors import GatewayError
from permaroam.models import BlockRange, DateSpan
from permaroam.protocols import BlockFetcherProtocol

AVERAGE_BLOCK_INTERVAL = 120  # seconds

LEDGER_GENESIS = datetime(2018, 6, 1, tzinfo=UTC)

# How long a fetched chain-tip anchor is trusted, and how long to wait after a failed refresh.
ANCHOR_TTL = 60 * 60
ANCHOR_RETRY_INTERVAL = 60

# Binary search limits: stop when the bracket is this narrow (~17h of blocks) ...
BLOCK_TOLERANCE = 500
# ... or a probe lands this close to the target ...
CLOSE_ENOUGH = 6 * 60 * 60
# ... or after this many probes. The closest probe wins if within MAX_DRIFT.
MAX_PROBES = 8
MAX_DRIFT = 24 * 60 * 60

BLOCK_CACHE_TTL = 60 * 60
MAX_BLOCK_CACHE_ENTRIES = 5000

# Blocks returned for a day that has not happened yet (~1 day at 2 min/block).
FUTURE_WINDOW = 720

_DAY = 24 * 60 * 60
_NETWORK_ERRORS = (GatewayError, OSError)


class SearchMode(StrEnum):
    FIRST_AFTER = "first_after"
    LAST_BEFORE = "last_before"


@dataclass(frozen=True)
class BlockAnchor:
    """A known (height, timestamp) pair used for extrapolation."""

    height: int
    timestamp: float
    fetched_at: float = 0.0


# Used when no fresh anchor is available. Block 1,680,000 was mined around 2025-05-30.
FALLBACK_ANCHOR = BlockAnchor(height=1_680_000, timestamp=1_748_563_200)


@dataclass(frozen=True)
class _ResolvedDate:
    min_block: int
    max_block: int
    resolved_at: float


def as_utc_day(value: date | datetime) -> date:
    """Calendar day (UTC) of a date or datetime. Naive datetimes are taken as UTC."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.date()
        return value.astimezone(UTC).date()
    return value


def day_bounds(day: date) -> tuple[float, float]:
    """First and last instant (seconds) of a UTC day."""
    start = datetime(day.year, day.month, day.day, tzinfo=UTC).timestamp()
    return start, start + _DAY - 0.001


def is_valid_ledger_date(value: date | datetime, *, now: datetime | None = None) -> bool:
    """True if the day lies between ledger genesis and today."""
    day = as_utc_day(value)
    today = (now or datetime.now(UTC)).astimezone(UTC).date()
    return LEDGER_GENESIS.date() <= day <= today


class BlockTimeResolver:
    """Converts timestamps to block heights and back, with caching.

    All state (anchor, date cache, block timestamp cache) belongs to the
    instance; the clock and block fetcher are injected.
    """

    def __init__(
        self,
        blocks: BlockFetcherProtocol,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._blocks = blocks
        self._clock = clock
        self._anchor: BlockAnchor | None = None
        self._anchor_failed_at: float | None = None
        self._date_cache: dict[str, _ResolvedDate] = {}
        self._block_cache: dict[int, tuple[float, float]] = {}
        # Last endpoint of each side of a date span: (cache key, block)
        self._span_start: tuple[str, int] | None = None
        self._span_end: tuple[str, int] | None = None

    # --- estimation ---

    def _fresh_anchor(self) -> BlockAnchor | None:
        if self._anchor and self._clock() - self._anchor.fetched_at < ANCHOR_TTL:
            return self._anchor
        return None

    @property
    def anchor(self) -> BlockAnchor:
        """The anchor estimation currently uses."""
        return self._fresh_anchor() or FALLBACK_ANCHOR

    def estimate_block(self, timestamp: float) -> int:
        """Estimate the block mined at ``timestamp``. Never below 1, never does I/O."""
        if timestamp < LEDGER_GENESIS.timestamp():
            return 1
        anchor = self.anchor
        block_diff = round((anchor.timestamp - timestamp) / AVERAGE_BLOCK_INTERVAL)
        return max(1, anchor.height - block_diff)

    def estimate_timestamp(self, height: int) -> float:
        """Estimate when block ``height`` was mined."""
        anchor = self.anchor
        return anchor.timestamp - (anchor.height - height) * AVERAGE_BLOCK_INTERVAL

    def _estimate_range(self, start_ts: float, end_ts: float) -> BlockRange:
        return BlockRange(self.estimate_block(start_ts), self.estimate_block(end_ts))

    # --- network-backed lookups ---

    async def _require_anchor(self) -> BlockAnchor:
        fresh = self._fresh_anchor()
        if fresh:
            return fresh
        now = self._clock()
        if self._anchor_failed_at is not None and now - self._anchor_failed_at < ANCHOR_RETRY_INTERVAL:
            msg = "chain tip unavailable (recent refresh failed)"
            raise GatewayError(msg)
        try:
            height = await self._blocks.get_current_block_height()
            timestamp = await self.block_timestamp(height)
        except _NETWORK_ERRORS:
            self._anchor_failed_at = now
            raise
        self._anchor = BlockAnchor(height=height, timestamp=timestamp, fetched_at=now)
        self._anchor_failed_at = None
        logger.debug("Current block anchor: {} at {}", height, _iso(timestamp))
        return self._anchor

    async def refresh_anchor(self) -> BlockAnchor:
        """Return a fresh chain-tip anchor, or the fallback anchor if the network fails."""
        try:
            return await self._require_anchor()
        except _NETWORK_ERRORS as e:
            logger.warning("Failed to get current block anchor, using fallback: {}", e)
            return FALLBACK_ANCHOR

    async def current_block_height(self) -> int:
        """Chain tip from the anchor; falls back to the hardcoded anchor height."""
        return (await self.refresh_anchor()).height

    async def block_timestamp(self, height: int) -> float:
        """Exact timestamp of a block, cached. Raises GatewayError on failure."""
        now = self._clock()
        cached = self._block_cache.get(height)
        if cached is not None and now - cached[1] < BLOCK_CACHE_TTL:
            return cached[0]
        info = await self._blocks.fetch_block_by_height(height)
        self._block_cache.pop(height, None)
        self._block_cache[height] = (float(info.timestamp), now)
        self._prune_block_cache(now)
        return float(info.timestamp)

    def _prune_block_cache(self, now: float) -> None:
        if len(self._block_cache) <= MAX_BLOCK_CACHE_ENTRIES:
            return
        expired = [h for h, (_, at) in self._block_cache.items() if now - at >= BLOCK_CACHE_TTL]
        for h in expired:
            del self._block_cache[h]
        while len(self._block_cache) > MAX_BLOCK_CACHE_ENTRIES:
            del self._block_cache[next(iter(self._block_cache))]

    # --- exact resolution ---

    async def _search_block(self, target: float, mode: SearchMode) -> int | None:
        """Binary search for the block nearest ``target``; None on network failure."""
        try:
            anchor = await self._require_anchor()
        except _NETWORK_ERRORS as e:
            logger.warning("Binary search for {} skipped, no chain tip: {}", _iso(target), e)
            return None

        low, high = 1, anchor.height
        result = high if mode is SearchMode.FIRST_AFTER else low
        best, best_diff = result, math.inf
        probes = 0

        while low <= high and probes < MAX_PROBES:
            if high - low <= BLOCK_TOLERANCE:
                result = high if mode is SearchMode.FIRST_AFTER else low
                break
            mid = (low + high) // 2
            probes += 1
            try:
                mid_ts = await self.block_timestamp(mid)
            except _NETWORK_ERRORS as e:
                logger.warning("Error fetching block {} during binary search: {}", mid, e)
                return None

            diff = abs(mid_ts - target)
            if diff < best_diff:
                best, best_diff = mid, diff
            logger.debug("Probe {}: block {} = {} (diff {} min)", probes, mid, _iso(mid_ts), round(diff / 60))

            if diff <= CLOSE_ENOUGH:
                result = mid
                break
            if mid_ts < target:
                if mode is SearchMode.LAST_BEFORE:
                    result = mid
                low = mid + 1
            else:
                if mode is SearchMode.FIRST_AFTER:
                    result = mid
                high = mid - 1

        if best_diff <= MAX_DRIFT:
            result = best
        logger.debug("Resolved {} ({}) to block {} after {} probes", _iso(target), mode, result, probes)
        return max(1, result)

    async def resolve_block_for_timestamp(
        self, timestamp: float, mode: SearchMode = SearchMode.LAST_BEFORE
    ) -> int:
        """Block nearest ``timestamp`` by binary search, or an estimate if that fails."""
        found = await self._search_block(timestamp, mode)
        if found is None:
            return self.estimate_block(timestamp)
        return found

    async def resolve_date_range(
        self, day: date | datetime, require_exact: bool = True
    ) -> BlockRange:
        """Blocks mined during a UTC calendar day.

        Exact results are cached for the lifetime of the resolver. Estimates
        (requested, or as a fallback) are not cached.
        """
        day = as_utc_day(day)
        key = day.isoformat()
        cached = self._date_cache.get(key)
        if cached is not None:
            logger.debug("Using cached block range for {}: {}-{}", key, cached.min_block, cached.max_block)
            return BlockRange(cached.min_block, cached.max_block)

        start_ts, end_ts = day_bounds(day)

        if start_ts > self._clock():
            logger.warning("Future date requested: {}", key)
            tip = await self.current_block_height()
            safe_end = max(1, tip - TIP_MARGIN)
            safe_start = max(1, safe_end - FUTURE_WINDOW)
            self._remember(key, safe_start, safe_end)
            return BlockRange(safe_start, safe_end)

        if not require_exact:
            return self._estimate_range(start_ts, end_ts)

        min_block = await self._search_block(start_ts, SearchMode.FIRST_AFTER)
        max_block = None
        if min_block is not None:
            max_block = await self._search_block(end_ts, SearchMode.LAST_BEFORE)

        if min_block is None or max_block is None or not 1 <= min_block <= max_block:
            logger.warning(
                "Binary search for {} gave no usable range ({}, {}), estimating instead",
                key,
                min_block,
                max_block,
            )
            return self._estimate_range(start_ts, end_ts)

        self._remember(key, min_block, max_block)
        logger.info("Resolved {} to blocks {}-{}", key, min_block, max_block)
        return BlockRange(min_block, max_block)

    def _remember(self, key: str, min_block: int, max_block: int) -> None:
        self._date_cache[key] = _ResolvedDate(min_block, max_block, self._clock())

    def _is_settled(self, day: date, require_exact: bool) -> bool:
        """Whether the last resolution of ``day`` may be reused by a span endpoint."""
        return not require_exact or day.isoformat() in self._date_cache

    async def resolve_date_range_span(
        self,
        start: date | datetime,
        end: date | datetime,
        require_exact: bool = False,
    ) -> BlockRange:
        """Blocks from the start of ``start`` to the end of ``end``.

        An endpoint whose date did not change since the previous call is reused
        without resolving it again, so moving one handle of a range picker only
        costs one resolution. An estimate standing in for a failed exact
        resolution is never reused.
        """
        start_day, end_day = as_utc_day(start), as_utc_day(end)
        if start_day > end_day:
            start_day, end_day = end_day, start_day
        start_key = f"{start_day.isoformat()}:{require_exact}"
        end_key = f"{end_day.isoformat()}:{require_exact}"

        if self._span_start is not None and self._span_start[0] == start_key:
            min_block = self._span_start[1]
            logger.debug("Reusing start block {} for {}", min_block, start_day)
        else:
            min_block = (await self.resolve_date_range(start_day, require_exact)).min
            self._span_start = (start_key, min_block) if self._is_settled(start_day, require_exact) else None

        if self._span_end is not None and self._span_end[0] == end_key:
            max_block = self._span_end[1]
            logger.debug("Reusing end block {} for {}", max_block, end_day)
        else:
            max_block = (await self.resolve_date_range(end_day, require_exact)).max
            self._span_end = (end_key, max_block) if self._is_settled(end_day, require_exact) else None

        if min_block > max_block:
            logger.warning(
                "Inverted span {}-{} for {}..{}, estimating instead", min_block, max_block, start_day, end_day
            )
            return self._estimate_range(day_bounds(start_day)[0], day_bounds(end_day)[1])
        return BlockRange(min_block, max_block)

    async def block_range_to_dates(self, min_block: int, max_block: int) -> DateSpan | None:
        """Exact wall-clock bounds of a block range, or None if either block is unknown."""
        try:
            start_ts = await self.block_timestamp(min_block)
            end_ts = await self.block_timestamp(max_block)
        except _NETWORK_ERRORS as e:
            logger.warning("Failed to fetch block info for {} or {}: {}", min_block, max_block, e)
            return None
        return DateSpan(
            start_date=datetime.fromtimestamp(start_ts, tz=UTC),
            end_date=datetime.fromtimestamp(end_ts, tz=UTC),
        )

    # --- cache management ---

    def clear_caches(self) -> None:
        self._date_cache.clear()
        self._block_cache.clear()
        self._span_start = None
        self._span_end = None
        self._anchor = None
        self._anchor_failed_at = None
        logger.debug("All block-time caches cleared")

    @property
    def cache_size(self) -> int:
        """Number of resolved calendar days."""
        return len(self._date_cache)


def _iso(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=UTC).isoformat(timespec="seconds")
