"""Collaborator protocols injected into the discovery engine."""

from typing import Protocol, runtime_checkable

from permaroam.models import BlockInfo, FileMeta, MediaKind, RangePage, TransactionMeta


@runtime_checkable
class RangeFetcherProtocol(Protocol):
    """Paged transaction queries over a block-height range."""

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
        """Return matching transactions in ``[min_block, max_block]``, newest first.

        With ``is_refill`` the fetcher continues from where the previous fetch of
        the same range stopped.
        """
        ...

    async def fetch_file_metadata(self, tx: TransactionMeta) -> FileMeta:
        """Load the file metadata JSON of an ArFS file entity."""
        ...


@runtime_checkable
class BlockFetcherProtocol(Protocol):
    """Point lookups of block timestamps and the chain tip."""

    async def fetch_block_by_height(self, height: int) -> BlockInfo:
        """Return height and timestamp (seconds) of a block."""
        ...

    async def get_current_block_height(self) -> int:
        """Return the current chain tip."""
        ...


@runtime_checkable
class KeyValueStoreProtocol(Protocol):
    """Opaque string store used to persist navigation history."""

    def get(self, key: str) -> str | None:
        """Return the stored value, or None if absent."""
        ...

    def set(self, key: str, value: str) -> None:
        """Store a value, replacing any previous one."""
        ...
