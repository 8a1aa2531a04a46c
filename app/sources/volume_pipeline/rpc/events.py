import logging
from decimal import Decimal
from typing import List

from web3 import Web3

from app.sources.volume_pipeline.rpc.client import RpcClient
from app.utils.constants import TRANSFER_TOPIC
from app.utils.log_utils import address_to_topic, decode_uint, log_key, sanitize_log, walk_block_ranges

log = logging.getLogger(__name__)


def fetch_transfer_logs(
    rpc: RpcClient,
    chain: str,
    token_address: str,
    from_block: int,
    to_block: int,
    pair_topic: str,
    incoming: bool,
) -> List[dict]:
    """Transfer logs of `token_address` with the pair in the `to` (incoming) or `from` position."""
    topics = [TRANSFER_TOPIC, None, pair_topic] if incoming else [TRANSFER_TOPIC, pair_topic]
    params = {
        "fromBlock": from_block,
        "toBlock": to_block,
        "address": Web3.to_checksum_address(token_address),
        "topics": topics,
    }
    logs = rpc.call(chain, "get_logs", lambda w3: w3.eth.get_logs(params))
    return [sanitize_log(entry) for entry in logs or []]


def sum_transfer_logs(
    rpc: RpcClient,
    pair_address: str,
    token_address: str,
    start_block: int,
    end_block: int,
    chain: str,
    decimals: int = 6,
    chunk_size: int = 500,
) -> float:
    """
    Sum raw Transfer amounts moving into or out of `pair_address` over
    [start_block, end_block], scanning in `chunk_size` block chunks.

    A log matching both queries (a self-transfer) is counted once; identity
    is (transaction hash, log index). The total is kept as an int until the
    final scaling by 10**decimals.
    """
    pair_topic = address_to_topic(pair_address)
    seen = set()
    total_raw = 0
    total_logs = 0

    for from_block, to_block in walk_block_ranges(start_block, end_block, step=max(1, chunk_size)):
        outgoing = fetch_transfer_logs(rpc, chain, token_address, from_block, to_block, pair_topic, incoming=False)
        incoming = fetch_transfer_logs(rpc, chain, token_address, from_block, to_block, pair_topic, incoming=True)
        for entry in outgoing + incoming:
            key = log_key(entry)
            if key in seen:
                continue
            seen.add(key)
            try:
                total_raw += decode_uint(entry.get("data"))
            except ValueError:
                log.warning(f"[rpc] skipping malformed log data at {key}: {entry.get('data')!r}")
                continue
            total_logs += 1
        log.debug(f"----Scanned blocks {from_block} to {to_block} on {chain}: {len(outgoing)} out, {len(incoming)} in")

    log.info(f"[rpc] {total_logs} transfer logs for {pair_address} in blocks {start_block}-{end_block}")
    return float(Decimal(total_raw).scaleb(-int(decimals)))
