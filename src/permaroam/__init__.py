"""Random-access discovery of content stored on Arweave."""

from permaroam.core.blocktime import BlockTimeResolver
from permaroam.core.discovery import ContentDiscoveryQueue
from permaroam.core.history import NavigationHistory
from permaroam.core.navigator import Navigator, ResetScope, create_navigator
from permaroam.protocols import BlockFetcherProtocol, KeyValueStoreProtocol, RangeFetcherProtocol

__all__ = [
    "BlockFetcherProtocol",
    "BlockTimeResolver",
    "ContentDiscoveryQueue",
    "KeyValueStoreProtocol",
    "NavigationHistory",
    "Navigator",
    "RangeFetcherProtocol",
    "ResetScope",
    "create_navigator",
]
