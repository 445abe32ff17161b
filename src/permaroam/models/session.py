"""Block ranges, date spans and navigation history state."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from permaroam.models.transaction import TransactionMeta


@dataclass(frozen=True)
class BlockRange:
    """Inclusive block-height range with ``1 <= min <= max``."""

    min: int
    max: int

    def __post_init__(self) -> None:
        if self.min < 1 or self.max < self.min:
            msg = f"invalid block range: {self.min}-{self.max}"
            raise ValueError(msg)

    @property
    def span(self) -> int:
        return self.max - self.min + 1

    def __contains__(self, height: object) -> bool:
        return isinstance(height, int) and self.min <= height <= self.max

    def __str__(self) -> str:
        return f"{self.min}-{self.max}"


@dataclass(frozen=True)
class DateSpan:
    """Wall-clock bounds (UTC) of a block range."""

    start_date: datetime
    end_date: datetime


@dataclass(frozen=True)
class HistoryState:
    """Linear back/forward stack; ``index == -1`` means empty."""

    items: tuple[TransactionMeta, ...] = ()
    index: int = -1

    def __post_init__(self) -> None:
        if not -1 <= self.index < len(self.items):
            msg = f"history index {self.index} out of bounds for {len(self.items)} items"
            raise ValueError(msg)
        if self.items and self.index == -1:
            msg = "non-empty history must point at an item"
            raise ValueError(msg)

    @property
    def current(self) -> TransactionMeta | None:
        return self.items[self.index] if self.index >= 0 else None

    def to_dict(self) -> dict[str, Any]:
        return {"index": self.index, "items": [tx.to_dict() for tx in self.items]}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HistoryState":
        items = tuple(TransactionMeta.from_dict(raw) for raw in data["items"])
        return cls(items=items, index=int(data["index"]))
