"""Share links: query strings that reopen a transaction in its channel and window.

Recognized parameters: ``txid``, ``channel`` (media kind), ``ownerAddress``,
``appName``, ``minBlock`` and ``maxBlock``.
"""

from dataclasses import dataclass
from urllib.parse import parse_qs, urlencode, urlsplit

from loguru import logger

from permaroam.core.gateway import GatewayClient
from permaroam.errors import GatewayError
from permaroam.models import BlockRange, Channel, MediaKind, QueueOptions, Recency, TransactionMeta


@dataclass(frozen=True)
class DeepLinkParams:
    tx_id: str | None = None
    media_kind: MediaKind | None = None
    owner_address: str | None = None
    app_name: str | None = None
    min_block: int | None = None
    max_block: int | None = None


def _parse_int(raw: str | None, name: str) -> int | None:
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring invalid {}: {!r}", name, raw)
        return None


def parse_deep_link(query: str) -> DeepLinkParams:
    """Parse a query string, or a full URL, into DeepLinkParams.

    Unknown media kinds and non-numeric block bounds are ignored.
    """
    if "://" in query:
        query = urlsplit(query).query
    params = {k: v[0] for k, v in parse_qs(query.lstrip("?")).items() if v}

    media_kind = None
    raw_media = params.get("channel")
    if raw_media is not None:
        try:
            media_kind = MediaKind(raw_media)
        except ValueError:
            logger.warning("Ignoring unknown channel {!r}", raw_media)

    return DeepLinkParams(
        tx_id=params.get("txid"),
        media_kind=media_kind,
        owner_address=params.get("ownerAddress"),
        app_name=params.get("appName"),
        min_block=_parse_int(params.get("minBlock"), "minBlock"),
        max_block=_parse_int(params.get("maxBlock"), "maxBlock"),
    )


def build_share_query(
    tx: TransactionMeta,
    channel: Channel,
    window: BlockRange | None = None,
) -> str:
    """Build the query string that ``parse_deep_link`` reads back."""
    params: dict[str, str] = {"txid": tx.id, "channel": str(channel.media_kind)}
    if channel.owner_address:
        params["ownerAddress"] = channel.owner_address
    if channel.app_name:
        params["appName"] = channel.app_name
    if window is not None:
        params["minBlock"] = str(window.min)
        params["maxBlock"] = str(window.max)
    return urlencode(params)


async def resolve_deep_link(
    params: DeepLinkParams,
    client: GatewayClient,
) -> tuple[Channel | None, QueueOptions]:
    """Look up the linked transaction and turn the link into queue options.

    Channels opened from a link default to ``old`` recency. A link to an ArFS
    file without a channel opens the ``arfs`` channel. A transaction that
    cannot be found is dropped from the options, the rest of the link still
    applies.
    """
    initial_tx: TransactionMeta | None = None
    if params.tx_id:
        try:
            initial_tx = await client.fetch_transaction_by_id(params.tx_id)
        except GatewayError as e:
            logger.warning("Deep-linked transaction {} unavailable: {}", params.tx_id, e)
    if initial_tx is not None and initial_tx.tag_value("Entity-Type") == "file":
        try:
            initial_tx = initial_tx.with_file_meta(await client.fetch_file_metadata(initial_tx))
        except GatewayError as e:
            logger.warning("ArFS metadata for {} unavailable: {}", initial_tx.id, e)

    channel = None
    if params.media_kind is not None:
        channel = Channel(media_kind=params.media_kind, recency=Recency.OLD)
    elif initial_tx is not None and initial_tx.file_meta is not None:
        channel = Channel(media_kind=MediaKind.ARFS, recency=Recency.OLD)

    options = QueueOptions(
        initial_tx=initial_tx,
        min_block=params.min_block,
        max_block=params.max_block,
        owner_address=params.owner_address,
        app_name=params.app_name,
    )
    return channel, options
