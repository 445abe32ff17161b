"""Shared test fixtures."""

import random

import pytest

from permaroam.core.blocktime import BlockTimeResolver
from permaroam.core.discovery import ContentDiscoveryQueue
from permaroam.core.history import NavigationHistory
from permaroam.core.navigator import Navigator
from permaroam.storage import MemoryKeyValueStore
from tests.unit.fakes import FakeChain, FakeClock, FakeRangeFetcher


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def chain() -> FakeChain:
    """A chain whose tip is the fallback anchor block."""
    return FakeChain()


@pytest.fixture
def resolver(chain: FakeChain, clock: FakeClock) -> BlockTimeResolver:
    return BlockTimeResolver(chain, clock=clock)


@pytest.fixture
def fetcher() -> FakeRangeFetcher:
    return FakeRangeFetcher()


@pytest.fixture
def queue(fetcher: FakeRangeFetcher, resolver: BlockTimeResolver) -> ContentDiscoveryQueue:
    return ContentDiscoveryQueue(fetcher, resolver, rng=random.Random(7))


@pytest.fixture
def store() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture
def navigator(
    queue: ContentDiscoveryQueue,
    resolver: BlockTimeResolver,
    store: MemoryKeyValueStore,
) -> Navigator:
    return Navigator(queue, resolver, NavigationHistory(store))
