"""Ledger transaction records as served to the navigation layer."""

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import Any


@dataclass(frozen=True)
class Tag:
    """A single name/value tag on a transaction."""

    name: str
    value: str


@dataclass(frozen=True)
class FileMeta:
    """Metadata of a file wrapped by an ArFS file entity."""

    data_tx_id: str
    name: str
    size: int
    content_type: str
    custom_tags: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TransactionMeta:
    """An immutable transaction record; identity is ``id``."""

    id: str
    owner_address: str
    block_height: int
    block_timestamp: int
    tags: tuple[Tag, ...] = ()
    data_size: int = 0
    bundled_in_id: str | None = None
    file_meta: FileMeta | None = None
    fee_ar: str | None = None
    quantity_ar: str | None = None

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TransactionMeta):
            return NotImplemented
        return self.id == other.id

    def __hash__(self) -> int:
        return hash(self.id)

    def tag_value(self, name: str) -> str | None:
        """Return the value of the first tag called ``name``."""
        for tag in self.tags:
            if tag.name == name:
                return tag.value
        return None

    @property
    def content_type(self) -> str | None:
        if self.file_meta is not None:
            return self.file_meta.content_type
        return self.tag_value("Content-Type")

    def with_file_meta(self, file_meta: FileMeta) -> "TransactionMeta":
        return replace(self, file_meta=file_meta)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-safe dict."""
        data: dict[str, Any] = {
            "id": self.id,
            "owner_address": self.owner_address,
            "block_height": self.block_height,
            "block_timestamp": self.block_timestamp,
            "tags": [[t.name, t.value] for t in self.tags],
            "data_size": self.data_size,
            "bundled_in_id": self.bundled_in_id,
            "fee_ar": self.fee_ar,
            "quantity_ar": self.quantity_ar,
        }
        if self.file_meta is not None:
            data["file_meta"] = {
                "data_tx_id": self.file_meta.data_tx_id,
                "name": self.file_meta.name,
                "size": self.file_meta.size,
                "content_type": self.file_meta.content_type,
                "custom_tags": dict(self.file_meta.custom_tags),
            }
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TransactionMeta":
        """Inverse of ``to_dict``. Raises KeyError/TypeError on bad input."""
        raw_file = data.get("file_meta")
        file_meta = (
            FileMeta(
                data_tx_id=raw_file["data_tx_id"],
                name=raw_file["name"],
                size=int(raw_file["size"]),
                content_type=raw_file["content_type"],
                custom_tags=dict(raw_file.get("custom_tags") or {}),
            )
            if raw_file
            else None
        )
        return cls(
            id=data["id"],
            owner_address=data["owner_address"],
            block_height=int(data["block_height"]),
            block_timestamp=int(data["block_timestamp"]),
            tags=tuple(Tag(name=n, value=v) for n, v in data.get("tags", [])),
            data_size=int(data.get("data_size", 0)),
            bundled_in_id=data.get("bundled_in_id"),
            file_meta=file_meta,
            fee_ar=data.get("fee_ar"),
            quantity_ar=data.get("quantity_ar"),
        )


@dataclass(frozen=True)
class RangePage:
    """One response of a block-range query."""

    txs: tuple[TransactionMeta, ...]
    has_more: bool


@dataclass(frozen=True)
class BlockInfo:
    """Height and timestamp (seconds) of a single block."""

    height: int
    timestamp: int
