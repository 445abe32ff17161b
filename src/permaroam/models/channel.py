"""Channel filters and deep-link options for the discovery queue."""

from dataclasses import dataclass
from enum import StrEnum

from permaroam.models.transaction import TransactionMeta


class MediaKind(StrEnum):
    IMAGES = "images"
    VIDEOS = "videos"
    MUSIC = "music"
    WEBSITES = "websites"
    TEXT = "text"
    EVERYTHING = "everything"
    ARFS = "arfs"


class Recency(StrEnum):
    NEW = "new"
    OLD = "old"


@dataclass(frozen=True)
class Channel:
    """What the discovery queue looks for."""

    media_kind: MediaKind
    recency: Recency = Recency.NEW
    owner_address: str | None = None
    app_name: str | None = None


@dataclass(frozen=True)
class QueueOptions:
    """Explicit starting point for a queue session, usually from a deep link."""

    initial_tx: TransactionMeta | None = None
    min_block: int | None = None
    max_block: int | None = None
    owner_address: str | None = None
    app_name: str | None = None

    @property
    def block_bounds(self) -> tuple[int, int] | None:
        """(min_block, max_block) when both are set."""
        if self.min_block is None or self.max_block is None:
            return None
        return self.min_block, self.max_block
