"""GraphQL queries for block-range discovery, and parsing of their responses."""

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from loguru import logger

from permaroam.errors import MalformedResponseError
from permaroam.models import FileMeta, MediaKind, Tag, TransactionMeta

PAGE_SIZE = 100

# Pages fetched for the first page of a window vs. follow-up pages of the same window.
INITIAL_PAGE_LIMIT = 1
REFILL_PAGE_LIMIT = 2

# Stored continuation cursors expire after this many seconds.
CURSOR_TTL = 300.0

_BASE_CONTENT_TYPES: dict[MediaKind, tuple[str, ...]] = {
    MediaKind.IMAGES: (
        "image/png",
        "image/jpeg",
        "image/webp",
        "image/gif",
        "image/svg+xml",
        "image/avif",
    ),
    MediaKind.VIDEOS: ("video/mp4", "video/webm", "video/ogg"),
    MediaKind.MUSIC: (
        "audio/mpeg",
        "audio/mp3",
        "audio/wav",
        "audio/ogg",
        "audio/webm",
        "audio/mp4",
        "audio/flac",
    ),
    MediaKind.WEBSITES: (
        "application/x.arweave-manifest+json",
        "text/html",
        "application/xhtml+xml",
    ),
    MediaKind.TEXT: ("text/markdown", "application/pdf"),
    # Public ArFS file entities are JSON metadata transactions.
    MediaKind.ARFS: ("application/json",),
}


def _everything() -> tuple[str, ...]:
    seen: list[str] = []
    for kind, types in _BASE_CONTENT_TYPES.items():
        if kind is MediaKind.ARFS:
            continue
        seen.extend(ct for ct in types if ct not in seen)
    return tuple(seen)


CONTENT_TYPES: dict[MediaKind, tuple[str, ...]] = {
    **_BASE_CONTENT_TYPES,
    MediaKind.EVERYTHING: _everything(),
}

# App names whose content is curated by a known publishing address.
APP_OWNERS: dict[str, str] = {
    "Paragraph": "w5AtiFsNvORfcRtikbdrp2tzqixb05vdPw-ZhgVkD70",
    "Manifold": "NVkSolD-1AJcJ0BMfEASJjIuak3Y6CvDJZ4XOIUbU9g",
}

_TX_FIELDS = """\
            id
            bundledIn { id }
            owner { address }
            fee { ar }
            quantity { ar }
            tags { name value }
            data { size }
            block { height timestamp }"""

RANGE_QUERY = (
    """\
query FetchTxsRange(
  $min: Int!,
  $max: Int!,
  $first: Int!,
  $after: String,
  $owners: [String!],
  $tags: [TagFilter!]
) {
  transactions(
    owners: $owners
    block: { min: $min, max: $max }
    tags: $tags
    sort: HEIGHT_DESC
    first: $first
    after: $after
  ) {
    edges {
      cursor
      node {
"""
    + _TX_FIELDS
    + """
      }
    }
    pageInfo { hasNextPage }
  }
}"""
)

BY_ID_QUERY = (
    """\
query FetchTxById($ids: [ID!]!) {
  transactions(ids: $ids) {
    edges {
      node {
"""
    + _TX_FIELDS
    + """
      }
    }
  }
}"""
)


def build_range_variables(
    media_kind: MediaKind,
    min_block: int,
    max_block: int,
    *,
    owner_address: str | None = None,
    app_name: str | None = None,
    after: str | None = None,
) -> dict[str, Any]:
    """Build variables for ``RANGE_QUERY``.

    Known app names force their curating owner address.
    """
    if app_name and app_name in APP_OWNERS:
        owner_address = APP_OWNERS[app_name]

    content_types = list(CONTENT_TYPES[media_kind])
    tags: list[dict[str, Any]] = [{"name": "Content-Type", "values": content_types}]
    if media_kind is MediaKind.ARFS:
        tags.append({"name": "Entity-Type", "values": ["file"]})
    if app_name:
        tags.append({"name": "App-Name", "values": [app_name]})

    return {
        "min": min_block,
        "max": max_block,
        "first": PAGE_SIZE,
        "after": after,
        "owners": [owner_address] if owner_address else None,
        "tags": tags,
    }


def parse_transaction(node: dict[str, Any]) -> TransactionMeta:
    """Convert a GraphQL transaction node into a TransactionMeta.

    Pending transactions (no block yet) are rejected like other malformed nodes.
    """
    try:
        block = node["block"]
        if block is None:
            msg = f"transaction {node.get('id')!r} is not mined yet"
            raise MalformedResponseError(msg)
        bundled = node.get("bundledIn") or {}
        return TransactionMeta(
            id=node["id"],
            owner_address=node["owner"]["address"],
            block_height=int(block["height"]),
            block_timestamp=int(block["timestamp"]),
            tags=tuple(Tag(name=t["name"], value=t["value"]) for t in node.get("tags") or []),
            data_size=int((node.get("data") or {}).get("size") or 0),
            bundled_in_id=bundled.get("id"),
            fee_ar=(node.get("fee") or {}).get("ar"),
            quantity_ar=(node.get("quantity") or {}).get("ar"),
        )
    except (KeyError, TypeError, ValueError) as e:
        msg = f"bad transaction node: {e!r}"
        raise MalformedResponseError(msg) from e


@dataclass(frozen=True)
class ParsedPage:
    txs: tuple[TransactionMeta, ...]
    has_next: bool
    last_cursor: str | None


def parse_range_page(data: dict[str, Any]) -> ParsedPage:
    """Parse the ``data`` member of a ``RANGE_QUERY`` response.

    Individual malformed edges are skipped; a page without the expected
    structure raises MalformedResponseError.
    """
    try:
        conn = data["transactions"]
        edges = conn["edges"]
        has_next = bool(conn["pageInfo"]["hasNextPage"])
    except (KeyError, TypeError) as e:
        msg = f"bad transactions page: {e!r}"
        raise MalformedResponseError(msg) from e

    txs: list[TransactionMeta] = []
    last_cursor: str | None = None
    for edge in edges:
        last_cursor = edge.get("cursor") or last_cursor
        try:
            txs.append(parse_transaction(edge["node"]))
        except (MalformedResponseError, KeyError) as e:
            logger.warning("Skipping malformed transaction edge: {}", e)
    return ParsedPage(txs=tuple(txs), has_next=has_next, last_cursor=last_cursor)


def parse_file_metadata(raw: Any) -> FileMeta:
    """Parse the JSON body of an ArFS file entity."""
    if not isinstance(raw, dict):
        msg = f"ArFS metadata is not an object: {type(raw).__name__}"
        raise MalformedResponseError(msg)
    rest = dict(raw)
    try:
        return FileMeta(
            data_tx_id=rest.pop("dataTxId"),
            name=rest.pop("name"),
            size=int(rest.pop("size")),
            content_type=rest.pop("dataContentType"),
            custom_tags=rest,
        )
    except (KeyError, TypeError, ValueError) as e:
        msg = f"bad ArFS metadata: {e!r}"
        raise MalformedResponseError(msg) from e


class CursorStore:
    """Continuation cursors per (media, range, owner, app), expiring after ``ttl``."""

    def __init__(self, *, ttl: float = CURSOR_TTL, clock: Callable[[], float] = time.time) -> None:
        self.ttl = ttl
        self._clock = clock
        self._cursors: dict[str, tuple[str, float]] = {}

    @staticmethod
    def key(
        media_kind: MediaKind,
        min_block: int,
        max_block: int,
        owner_address: str | None,
        app_name: str | None,
    ) -> str:
        return f"{media_kind}:{min_block}-{max_block}:{owner_address or 'none'}:{app_name or 'none'}"

    def get(self, key: str) -> str | None:
        entry = self._cursors.get(key)
        if entry is None:
            return None
        cursor, stored_at = entry
        if self._clock() - stored_at >= self.ttl:
            del self._cursors[key]
            return None
        return cursor

    def put(self, key: str, cursor: str) -> None:
        self._cursors[key] = (cursor, self._clock())
        self._prune()

    def discard(self, key: str) -> None:
        self._cursors.pop(key, None)

    def _prune(self) -> None:
        now = self._clock()
        expired = [k for k, (_, at) in self._cursors.items() if now - at >= self.ttl]
        for k in expired:
            logger.debug("Cleaned up expired cursor for {}", k)
            del self._cursors[k]

    def __len__(self) -> int:
        return len(self._cursors)
