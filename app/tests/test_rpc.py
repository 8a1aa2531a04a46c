import math

import pytest
import requests
from hexbytes import HexBytes
from web3.datastructures import AttributeDict

from conftest import FakeWeb3Factory, SyntheticChain
from app.sources.volume_pipeline.errors import ErrorCode, VolumeError
from app.sources.volume_pipeline.rpc.blocks import BlockClient
from app.sources.volume_pipeline.rpc.client import RpcClient, get_web3_client
from app.sources.volume_pipeline.rpc.events import fetch_transfer_logs, sum_transfer_logs
from app.utils.constants import TRANSFER_TOPIC
from app.utils.log_utils import address_to_topic, decode_uint, log_key, sanitize_log, walk_block_ranges
from app.utils.metrics import RunMetrics
from app.utils.retry import RetryPolicy

PAIR = "0x" + "ab" * 20
TOKEN = "0x" + "cd" * 20
OTHER = "0x" + "11" * 20


def make_rpc(settings, handler, max_attempts=2):
    factory = FakeWeb3Factory(handler)
    policy = RetryPolicy(max_attempts=max_attempts, base_delay_ms=1, max_delay_ms=10, metrics=RunMetrics())
    return RpcClient(settings, policy, factory), factory


@pytest.fixture
def chain():
    return SyntheticChain(first_ts=1_000, spacing=2, length=1_000)


@pytest.fixture
def blocks(settings, chain, sleeps):
    rpc, _ = make_rpc(settings, chain.handle)
    return BlockClient(rpc, "polygon")


# ── block by timestamp ────────────────────────────────────────────────────
def test_first_block_timestamp_resolves_to_zero(blocks):
    assert blocks.resolve_block_by_timestamp(1_000) == 0


@pytest.mark.parametrize("ts, expected", [(1_001, 0), (1_002, 1), (1_501, 250), (2_996, 998), (2_997, 998)])
def test_timestamp_resolves_to_floor_block(blocks, ts, expected):
    assert blocks.resolve_block_by_timestamp(ts) == expected


def test_timestamp_at_or_after_head_returns_latest(blocks, chain):
    assert blocks.resolve_block_by_timestamp(chain.timestamp(chain.latest)) == chain.latest
    assert blocks.resolve_block_by_timestamp(10**10) == chain.latest


def test_timestamp_before_genesis_is_a_validation_error(blocks):
    with pytest.raises(VolumeError) as exc_info:
        blocks.resolve_block_by_timestamp(999)

    assert exc_info.value.code is ErrorCode.VALIDATION
    assert exc_info.value.tag == "rpc-invalid-block-range"


@pytest.mark.parametrize("ts", [-1, "yesterday", None])
def test_invalid_timestamp_is_a_validation_error(blocks, ts):
    with pytest.raises(VolumeError) as exc_info:
        blocks.resolve_block_by_timestamp(ts)

    assert exc_info.value.code is ErrorCode.VALIDATION
    assert exc_info.value.tag == "rpc-invalid-timestamp"


def test_binary_search_fetches_logarithmic_block_count(blocks, chain):
    blocks.resolve_block_by_timestamp(1_777)

    fetched = chain.methods.count("eth_getBlockByNumber")
    # one for the head, the rest for the search
    assert fetched <= math.ceil(math.log2(chain.length)) + 2


def test_find_block_by_timestamp_within_bounds(blocks):
    assert blocks.find_block_by_timestamp(1_100, start_block=10, end_block=90) == 50
    assert blocks.find_block_by_timestamp(1_000, start_block=10, end_block=90) is None


def test_missing_block_is_reported(settings, sleeps):
    rpc, _ = make_rpc(settings, lambda m, u, p, payload: {"jsonrpc": "2.0", "id": payload["id"], "result": None})

    with pytest.raises(VolumeError) as exc_info:
        BlockClient(rpc, "polygon").get_block(5)
    assert exc_info.value.tag == "rpc-invalid-block"


# ── client ────────────────────────────────────────────────────────────────
def test_failover_to_next_url(settings, chain, sleeps):
    def handler(method, url, params, payload):
        if url == "https://base-rpc.test":
            return requests.ConnectionError("connection refused")
        return chain.handle(method, url, params, payload)

    rpc, factory = make_rpc(settings, handler)

    assert BlockClient(rpc, "base").get_latest_block() == chain.latest
    assert [c["url"] for c in factory.calls] == ["https://base-rpc.test", "https://base-rpc.test", "https://mainnet.base.org"]
    assert rpc.policy.metrics.api_call_count == 3
    assert len(sleeps) == 1


def test_transient_rpc_error_is_retried_on_same_url(settings, chain, sleeps):
    replies = iter([{"jsonrpc": "2.0", "id": 1, "error": {"code": 429, "message": "Too Many Requests"}}])

    def handler(method, url, params, payload):
        return next(replies, None) or chain.handle(method, url, params, payload)

    rpc, factory = make_rpc(settings, handler)

    assert rpc.call("polygon", "block_number", lambda w3: w3.eth.block_number) == chain.latest
    assert [c["url"] for c in factory.calls] == ["https://polygon-rpc.test"] * 2
    assert len(sleeps) == 1
    assert rpc.policy.metrics.retry_count == 1


def test_all_urls_failing_raises_last_error(settings, sleeps):
    def handler(method, url, params, payload):
        return {"jsonrpc": "2.0", "id": payload["id"], "error": {"code": -32000, "message": "execution reverted"}}

    rpc, factory = make_rpc(settings, handler)

    with pytest.raises(VolumeError) as exc_info:
        rpc.call("base", "block_number", lambda w3: w3.eth.block_number)

    assert "mainnet.base.org" in str(exc_info.value)
    assert "execution reverted" in str(exc_info.value)
    assert exc_info.value.code is ErrorCode.GENERIC
    assert len(factory.calls) == 2
    assert sleeps == []


def test_chain_without_urls_is_reported(settings):
    rpc, factory = make_rpc(settings, lambda *a: {})

    assert not rpc.has_urls("ethereum")
    with pytest.raises(VolumeError) as exc_info:
        rpc.call("ethereum", "block_number", lambda w3: w3.eth.block_number)
    assert exc_info.value.tag == "rpc-missing-url"
    assert factory.calls == []


def test_web3_clients_are_cached_per_url():
    w3 = get_web3_client("https://cached-rpc.test", timeout=7)

    assert get_web3_client("https://cached-rpc.test") is w3
    assert get_web3_client("https://other-rpc.test") is not w3
    assert w3.provider.endpoint_uri == "https://cached-rpc.test"
    assert dict(w3.provider.get_request_kwargs())["timeout"] == 7
    assert w3.provider.exception_retry_configuration is None


# ── transfer logs ─────────────────────────────────────────────────────────
def test_sum_counts_both_directions_and_self_transfers_once(settings, chain, sleeps):
    chain.add_transfer("0xaa", 0, 100, OTHER, PAIR, 5_000_000, TOKEN)
    chain.add_transfer("0xbb", 3, 200, PAIR, OTHER, 2_000_000, TOKEN)
    chain.add_transfer("0xcc", 1, 300, PAIR, PAIR, 1_000_000, TOKEN)
    chain.add_transfer("0xdd", 0, 400, OTHER, OTHER, 9_000_000, TOKEN)
    chain.add_transfer("0xee", 0, 500, OTHER, PAIR, 9_000_000, OTHER)
    chain.add_transfer("0xff", 0, 900, OTHER, PAIR, 9_000_000, TOKEN)
    rpc, _ = make_rpc(settings, chain.handle)

    total = sum_transfer_logs(rpc, PAIR, TOKEN, 50, 800, "polygon", decimals=6, chunk_size=500)

    assert total == 8.0


def test_sum_scans_in_chunks(settings, chain, sleeps):
    chain.add_transfer("0xaa", 0, 10, OTHER, PAIR, 1_000_000, TOKEN)
    chain.add_transfer("0xbb", 0, 30, OTHER, PAIR, 1_000_000, TOKEN)
    rpc, factory = make_rpc(settings, chain.handle)

    total = sum_transfer_logs(rpc, PAIR, TOKEN, 0, 34, "polygon", chunk_size=10)

    assert total == 2.0
    filters = [c["params"][0] for c in factory.calls]
    ranges = sorted({(f["fromBlock"], f["toBlock"]) for f in filters})
    assert ranges == [("0x0", "0x9"), ("0x14", "0x1d"), ("0x1e", "0x22"), ("0xa", "0x13")]
    assert len(filters) == 8
    assert {f["address"][0].lower() for f in filters} == {TOKEN}


def test_sum_of_empty_range_is_zero(settings, chain, sleeps):
    rpc, _ = make_rpc(settings, chain.handle)
    assert sum_transfer_logs(rpc, PAIR, TOKEN, 0, 100, "polygon") == 0.0


def test_fetched_logs_come_back_as_plain_hex(settings, chain):
    chain.add_transfer("0xaa", 4, 10, OTHER, PAIR, 1_000_000, TOKEN)
    rpc, _ = make_rpc(settings, chain.handle)

    (entry,) = fetch_transfer_logs(rpc, "polygon", TOKEN, 0, 20, address_to_topic(PAIR), incoming=True)

    assert entry["transactionHash"] == "0x" + "aa".rjust(64, "0")
    assert entry["logIndex"] == 4
    assert entry["blockNumber"] == 10
    assert entry["topics"] == [TRANSFER_TOPIC, address_to_topic(OTHER), address_to_topic(PAIR)]
    assert decode_uint(entry["data"]) == 1_000_000


def test_log_helpers():
    assert list(walk_block_ranges(0, 25, step=10)) == [(0, 9), (10, 19), (20, 25)]
    assert list(walk_block_ranges(7, 7, step=10)) == [(7, 7)]
    assert log_key({"transactionHash": "0xABC", "logIndex": "0x1f"}) == ("0xabc", 31)
    assert decode_uint("0x") == 0
    assert decode_uint("0x" + (1234).to_bytes(32, "big").hex()) == 1234


def test_sanitize_log_turns_web3_types_into_json():
    entry = AttributeDict({
        "transactionHash": HexBytes("0x" + "ab" * 32),
        "topics": [HexBytes(TRANSFER_TOPIC), "0x" + "00" * 32],
        "data": b"\x01",
        "logIndex": 3,
        "args": AttributeDict({"value": 1}),
    })

    assert sanitize_log(entry) == {
        "transactionHash": "0x" + "ab" * 32,
        "topics": [TRANSFER_TOPIC, "0x" + "00" * 32],
        "data": "0x01",
        "logIndex": 3,
        "args": {"value": 1},
    }
