"""Tests for block height <-> time resolution."""

import asyncio
from datetime import UTC, date, datetime

import pytest

from permaroam.core.blocktime import (
    CLOSE_ENOUGH,
    FALLBACK_ANCHOR,
    FUTURE_WINDOW,
    LEDGER_GENESIS,
    BlockTimeResolver,
    SearchMode,
    day_bounds,
    is_valid_ledger_date,
)
from permaroam.models import BlockRange
from tests.unit.fakes import TIP_TIMESTAMP, FakeChain, FakeClock


@pytest.fixture
def short_chain() -> FakeChain:
    """About four days of blocks, small enough for the search to converge."""
    return FakeChain(tip=3000)


@pytest.fixture
def short_resolver(short_chain: FakeChain, clock: FakeClock) -> BlockTimeResolver:
    return BlockTimeResolver(short_chain, clock=clock)


# --- estimation ---


def test_estimate_block_is_monotonic(resolver: BlockTimeResolver) -> None:
    timestamps = [0, LEDGER_GENESIS.timestamp() + 1, 1_600_000_000, 1_700_000_000, TIP_TIMESTAMP, 1_900_000_000]
    blocks = [resolver.estimate_block(ts) for ts in timestamps]
    assert blocks == sorted(blocks)


def test_estimate_block_never_below_one(resolver: BlockTimeResolver) -> None:
    assert resolver.estimate_block(-1e12) == 1
    assert resolver.estimate_block(0) == 1
    assert resolver.estimate_block(LEDGER_GENESIS.timestamp() - 1) == 1
    assert resolver.estimate_block(LEDGER_GENESIS.timestamp() + 60) >= 1


def test_estimate_block_uses_fallback_anchor_without_network(
    resolver: BlockTimeResolver, chain: FakeChain
) -> None:
    assert resolver.estimate_block(FALLBACK_ANCHOR.timestamp) == FALLBACK_ANCHOR.height
    assert resolver.estimate_block(FALLBACK_ANCHOR.timestamp - 3600) == FALLBACK_ANCHOR.height - 30
    assert chain.network_calls == 0


def test_estimate_timestamp_inverts_estimate_block(resolver: BlockTimeResolver) -> None:
    ts = resolver.estimate_timestamp(1_600_000)
    assert resolver.estimate_block(ts) == 1_600_000


def test_estimate_uses_fresh_anchor_then_expires(short_resolver: BlockTimeResolver, clock: FakeClock) -> None:
    anchor = asyncio.run(short_resolver.refresh_anchor())
    assert anchor.height == 3000
    assert short_resolver.estimate_block(TIP_TIMESTAMP) == 3000

    clock.advance(60 * 60 + 1)
    assert short_resolver.anchor == FALLBACK_ANCHOR
    assert short_resolver.estimate_block(TIP_TIMESTAMP) == FALLBACK_ANCHOR.height


# --- anchor ---


def test_refresh_anchor_failure_returns_fallback_and_backs_off(
    resolver: BlockTimeResolver, chain: FakeChain, clock: FakeClock
) -> None:
    chain.fail = True
    assert asyncio.run(resolver.refresh_anchor()) == FALLBACK_ANCHOR
    assert chain.height_calls == 1

    assert asyncio.run(resolver.current_block_height()) == FALLBACK_ANCHOR.height
    assert chain.height_calls == 1

    clock.advance(61)
    chain.fail = False
    assert asyncio.run(resolver.current_block_height()) == chain.tip
    assert chain.height_calls == 2


def test_anchor_is_reused_within_ttl(resolver: BlockTimeResolver, chain: FakeChain) -> None:
    asyncio.run(resolver.refresh_anchor())
    asyncio.run(resolver.refresh_anchor())
    assert chain.height_calls == 1


# --- exact resolution ---


def test_resolve_block_for_timestamp_lands_close_to_target(
    short_resolver: BlockTimeResolver, short_chain: FakeChain
) -> None:
    target = short_chain.timestamp_of(1200)
    block = asyncio.run(short_resolver.resolve_block_for_timestamp(target, SearchMode.FIRST_AFTER))
    assert abs(short_chain.timestamp_of(block) - target) <= CLOSE_ENOUGH


def test_resolve_block_for_timestamp_degrades_to_estimate(
    resolver: BlockTimeResolver, chain: FakeChain
) -> None:
    chain.fail = True
    target = 1_740_000_000
    assert asyncio.run(resolver.resolve_block_for_timestamp(target)) == resolver.estimate_block(target)


def test_resolve_date_range_exact_brackets_the_day(
    short_resolver: BlockTimeResolver, short_chain: FakeChain
) -> None:
    day = date(2025, 5, 28)
    start_ts, end_ts = day_bounds(day)

    result = asyncio.run(short_resolver.resolve_date_range(day))

    assert 1 <= result.min <= result.max
    assert abs(short_chain.timestamp_of(result.min) - start_ts) <= CLOSE_ENOUGH
    assert abs(short_chain.timestamp_of(result.max) - end_ts) <= CLOSE_ENOUGH
    assert short_resolver.cache_size == 1


def test_resolve_date_range_is_cached(short_resolver: BlockTimeResolver, short_chain: FakeChain) -> None:
    day = date(2025, 5, 28)
    first = asyncio.run(short_resolver.resolve_date_range(day))
    calls = short_chain.network_calls

    second = asyncio.run(short_resolver.resolve_date_range(day))

    assert second == first
    assert short_chain.network_calls == calls


def test_resolve_date_range_accepts_datetimes(short_resolver: BlockTimeResolver) -> None:
    by_date = asyncio.run(short_resolver.resolve_date_range(date(2025, 5, 28)))
    by_datetime = asyncio.run(short_resolver.resolve_date_range(datetime(2025, 5, 28, 17, 30, tzinfo=UTC)))
    assert by_datetime == by_date
    assert short_resolver.cache_size == 1


def test_resolve_date_range_degrades_to_estimate(resolver: BlockTimeResolver, chain: FakeChain) -> None:
    chain.fail = True
    day = date(2025, 3, 6)
    start_ts, end_ts = day_bounds(day)

    result = asyncio.run(resolver.resolve_date_range(day))

    assert result == BlockRange(resolver.estimate_block(start_ts), resolver.estimate_block(end_ts))
    assert resolver.cache_size == 0


def test_estimate_mode_is_not_cached(resolver: BlockTimeResolver, chain: FakeChain) -> None:
    day = date(2025, 3, 6)
    result = asyncio.run(resolver.resolve_date_range(day, require_exact=False))
    start_ts, _ = day_bounds(day)
    assert result.min == resolver.estimate_block(start_ts)
    assert resolver.cache_size == 0
    assert chain.network_calls == 0


def test_future_date_returns_recent_safe_window(short_resolver: BlockTimeResolver) -> None:
    result = asyncio.run(short_resolver.resolve_date_range(date(2025, 6, 5)))
    assert result == BlockRange(3000 - 15 - FUTURE_WINDOW, 3000 - 15)
    assert short_resolver.cache_size == 1


def test_inverted_search_result_falls_back_to_estimate(resolver: BlockTimeResolver) -> None:
    # Over the full chain eight probes stay days away from the target, so the
    # day start resolves above the day end.
    day = date(2025, 3, 6)
    start_ts, end_ts = day_bounds(day)

    result = asyncio.run(resolver.resolve_date_range(day))

    assert result == BlockRange(resolver.estimate_block(start_ts), resolver.estimate_block(end_ts))
    assert resolver.cache_size == 0


# --- spans ---


def test_span_reuses_unchanged_start(
    short_resolver: BlockTimeResolver, monkeypatch: pytest.MonkeyPatch
) -> None:
    resolved: list[date] = []
    real = short_resolver.resolve_date_range

    async def spy(day: date, require_exact: bool = True) -> BlockRange:
        resolved.append(day)
        return await real(day, require_exact)

    monkeypatch.setattr(short_resolver, "resolve_date_range", spy)

    first = asyncio.run(short_resolver.resolve_date_range_span(date(2025, 5, 26), date(2025, 5, 27), True))
    assert resolved == [date(2025, 5, 26), date(2025, 5, 27)]

    resolved.clear()
    second = asyncio.run(short_resolver.resolve_date_range_span(date(2025, 5, 26), date(2025, 5, 28), True))
    assert resolved == [date(2025, 5, 28)]
    assert second.min == first.min
    assert second.max >= first.max


def test_span_swaps_reversed_dates(short_resolver: BlockTimeResolver) -> None:
    result = asyncio.run(short_resolver.resolve_date_range_span(date(2025, 5, 28), date(2025, 5, 26), True))
    assert 1 <= result.min <= result.max


def test_span_does_not_reuse_estimates_after_network_failure(
    short_resolver: BlockTimeResolver, short_chain: FakeChain, clock: FakeClock
) -> None:
    short_chain.fail = True
    asyncio.run(short_resolver.resolve_date_range_span(date(2025, 5, 26), date(2025, 5, 27), True))
    assert short_resolver.cache_size == 0

    clock.advance(61)
    short_chain.fail = False
    calls_before = short_chain.network_calls
    asyncio.run(short_resolver.resolve_date_range_span(date(2025, 5, 26), date(2025, 5, 27), True))

    assert short_chain.network_calls > calls_before
    assert short_resolver.cache_size == 2


def test_span_inverted_endpoints_fall_back_to_estimate(
    resolver: BlockTimeResolver, monkeypatch: pytest.MonkeyPatch
) -> None:
    async def inverted(day: date, require_exact: bool = True) -> BlockRange:
        if day == date(2025, 3, 1):
            return BlockRange(1_600_000, 1_600_100)
        return BlockRange(1_500_000, 1_500_100)

    monkeypatch.setattr(resolver, "resolve_date_range", inverted)

    result = asyncio.run(resolver.resolve_date_range_span(date(2025, 3, 1), date(2025, 3, 2)))

    start_ts, _ = day_bounds(date(2025, 3, 1))
    _, end_ts = day_bounds(date(2025, 3, 2))
    assert result == BlockRange(resolver.estimate_block(start_ts), resolver.estimate_block(end_ts))


# --- block -> dates ---


def test_block_range_to_dates(resolver: BlockTimeResolver, chain: FakeChain) -> None:
    span = asyncio.run(resolver.block_range_to_dates(1_000_000, 1_000_720))
    assert span is not None
    assert span.start_date == datetime.fromtimestamp(chain.timestamp_of(1_000_000), tz=UTC)
    assert (span.end_date - span.start_date).total_seconds() == 720 * 120


def test_block_range_to_dates_returns_none_on_failure(resolver: BlockTimeResolver, chain: FakeChain) -> None:
    chain.fail = True
    assert asyncio.run(resolver.block_range_to_dates(1, 2)) is None


def test_block_timestamps_are_cached_for_an_hour(
    resolver: BlockTimeResolver, chain: FakeChain, clock: FakeClock
) -> None:
    asyncio.run(resolver.block_timestamp(42))
    asyncio.run(resolver.block_timestamp(42))
    assert chain.block_calls == [42]

    clock.advance(60 * 60)
    asyncio.run(resolver.block_timestamp(42))
    assert chain.block_calls == [42, 42]


def test_clear_caches(short_resolver: BlockTimeResolver, short_chain: FakeChain) -> None:
    asyncio.run(short_resolver.resolve_date_range(date(2025, 5, 28)))
    short_resolver.clear_caches()
    assert short_resolver.cache_size == 0

    calls = short_chain.network_calls
    asyncio.run(short_resolver.resolve_date_range(date(2025, 5, 28)))
    assert short_chain.network_calls > calls


# --- date validation ---


def test_is_valid_ledger_date() -> None:
    now = datetime(2025, 5, 30, 12, tzinfo=UTC)
    assert is_valid_ledger_date(date(2018, 6, 1), now=now)
    assert is_valid_ledger_date(date(2025, 5, 30), now=now)
    assert not is_valid_ledger_date(date(2018, 5, 31), now=now)
    assert not is_valid_ledger_date(date(2025, 5, 31), now=now)
