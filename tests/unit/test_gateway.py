"""Tests for GatewayClient over a fake ArweaveApi."""

import asyncio

import pytest

from permaroam.config import DEFAULT_HEIGHT
from permaroam.core.gateway import GatewayClient
from permaroam.core.query import CursorStore
from permaroam.errors import GatewayError, MalformedResponseError
from permaroam.models import BlockInfo, MediaKind
from permaroam.protocols import BlockFetcherProtocol, RangeFetcherProtocol
from tests.unit.fakes import FakeApi, FakeClock, make_tx, range_page, tx_node


@pytest.fixture
def api() -> FakeApi:
    return FakeApi()


@pytest.fixture
def client(api: FakeApi) -> GatewayClient:
    return GatewayClient(api, cursors=CursorStore(clock=FakeClock()))  # type: ignore[arg-type]


def test_client_satisfies_protocols(client: GatewayClient) -> None:
    assert isinstance(client, RangeFetcherProtocol)
    assert isinstance(client, BlockFetcherProtocol)


def test_single_page_fetch(api: FakeApi, client: GatewayClient) -> None:
    api.graphql_responses = [range_page([tx_node("a", 20), tx_node("b", 19)], has_next=True)]

    page = asyncio.run(client.fetch_transactions_in_range(MediaKind.IMAGES, 10, 20, page_limit=1))

    assert [tx.id for tx in page.txs] == ["a", "b"]
    assert page.has_more
    assert api.graphql_calls[0]["after"] is None
    assert api.graphql_calls[0]["min"] == 10


def test_refill_resumes_from_stored_cursor(api: FakeApi, client: GatewayClient) -> None:
    api.graphql_responses = [
        range_page([tx_node("a", 20), tx_node("b", 19)], has_next=True),
        range_page([tx_node("c", 18)], has_next=False, start=2),
    ]

    asyncio.run(client.fetch_transactions_in_range(MediaKind.IMAGES, 10, 20, page_limit=1))
    page = asyncio.run(
        client.fetch_transactions_in_range(MediaKind.IMAGES, 10, 20, page_limit=2, is_refill=True)
    )

    assert api.graphql_calls[1]["after"] == "c1"
    assert [tx.id for tx in page.txs] == ["c"]
    assert not page.has_more


def test_non_refill_starts_from_the_top(api: FakeApi, client: GatewayClient) -> None:
    api.graphql_responses = [
        range_page([tx_node("a", 20)], has_next=True),
        range_page([tx_node("a", 20)], has_next=True),
    ]
    asyncio.run(client.fetch_transactions_in_range(MediaKind.IMAGES, 10, 20, page_limit=1))
    asyncio.run(client.fetch_transactions_in_range(MediaKind.IMAGES, 10, 20, page_limit=1))
    assert api.graphql_calls[1]["after"] is None


def test_unlimited_fetch_reads_every_page_and_dedups(api: FakeApi, client: GatewayClient) -> None:
    api.graphql_responses = [
        range_page([tx_node("a", 20), tx_node("b", 19)], has_next=True),
        range_page([tx_node("b", 19), tx_node("c", 18)], has_next=True, start=2),
        range_page([tx_node("d", 17)], has_next=False, start=4),
    ]

    page = asyncio.run(client.fetch_transactions_in_range(MediaKind.IMAGES, 10, 20))

    assert [tx.id for tx in page.txs] == ["a", "b", "c", "d"]
    assert not page.has_more
    assert [c["after"] for c in api.graphql_calls] == [None, "c1", "c3"]


def test_empty_page_with_next_flag_stops(api: FakeApi, client: GatewayClient) -> None:
    api.graphql_responses = [range_page([], has_next=True)]
    page = asyncio.run(client.fetch_transactions_in_range(MediaKind.IMAGES, 10, 20))
    assert page.txs == ()
    assert not page.has_more
    assert len(api.graphql_calls) == 1


def test_range_query_failure_propagates(api: FakeApi, client: GatewayClient) -> None:
    api.graphql_responses = [GatewayError("all down")]
    with pytest.raises(GatewayError, match="all down"):
        asyncio.run(client.fetch_transactions_in_range(MediaKind.IMAGES, 10, 20, page_limit=1))


def test_fetch_transaction_by_id(api: FakeApi, client: GatewayClient) -> None:
    api.graphql_responses = [{"transactions": {"edges": [{"node": tx_node("abc", 1_500_000)}]}}]
    tx = asyncio.run(client.fetch_transaction_by_id("abc"))
    assert tx.id == "abc"
    assert tx.block_height == 1_500_000
    assert api.graphql_calls == [{"ids": ["abc"]}]


def test_fetch_transaction_by_id_not_found(api: FakeApi, client: GatewayClient) -> None:
    api.graphql_responses = [{"transactions": {"edges": []}}]
    with pytest.raises(GatewayError, match="No transaction found"):
        asyncio.run(client.fetch_transaction_by_id("nope"))


def test_fetch_file_metadata(api: FakeApi, client: GatewayClient) -> None:
    api.json_responses["meta-tx"] = {
        "name": "notes.pdf",
        "size": 99,
        "dataTxId": "data-tx",
        "dataContentType": "application/pdf",
    }
    meta = asyncio.run(client.fetch_file_metadata(make_tx("meta-tx", 5)))
    assert meta.data_tx_id == "data-tx"
    assert meta.content_type == "application/pdf"


def test_fetch_block_by_height(api: FakeApi, client: GatewayClient) -> None:
    api.json_responses["block/height/42"] = {"height": 42, "timestamp": 1_530_000_000}
    assert asyncio.run(client.fetch_block_by_height(42)) == BlockInfo(42, 1_530_000_000)


def test_malformed_block_is_rejected(api: FakeApi, client: GatewayClient) -> None:
    api.json_responses["block/height/42"] = {"height": 42, "timestamp": "soon"}
    with pytest.raises(MalformedResponseError):
        asyncio.run(client.fetch_block_by_height(42))


def test_current_block_height(api: FakeApi, client: GatewayClient) -> None:
    api.json_responses["info"] = {"height": 1_700_000, "network": "arweave.N.1"}
    assert asyncio.run(client.get_current_block_height()) == 1_700_000


@pytest.mark.parametrize("info", [None, {"height": "tall"}, {"height": True}])
def test_current_block_height_falls_back_to_default(
    api: FakeApi, client: GatewayClient, info: object
) -> None:
    if info is not None:
        api.json_responses["info"] = info
    assert asyncio.run(client.get_current_block_height()) == DEFAULT_HEIGHT
