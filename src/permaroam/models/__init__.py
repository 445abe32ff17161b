"""Domain models for permaroam."""

from permaroam.models.channel import Channel, MediaKind, QueueOptions, Recency
from permaroam.models.session import BlockRange, DateSpan, HistoryState
from permaroam.models.transaction import BlockInfo, FileMeta, RangePage, Tag, TransactionMeta

__all__ = [
    "BlockInfo",
    "BlockRange",
    "Channel",
    "DateSpan",
    "FileMeta",
    "HistoryState",
    "MediaKind",
    "QueueOptions",
    "RangePage",
    "Recency",
    "Tag",
    "TransactionMeta",
]
