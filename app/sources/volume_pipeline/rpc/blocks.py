import logging

from web3 import Web3
from web3.exceptions import BlockNotFound

from app.sources.volume_pipeline.errors import ErrorCode, VolumeError
from app.sources.volume_pipeline.rpc.client import RpcClient
from app.utils.types import BlockHeader

logger = logging.getLogger(__name__)


def _fetch_block(w3: Web3, block_number: int):
    try:
        return w3.eth.get_block(block_number)
    except BlockNotFound:
        return None


class BlockClient:
    def __init__(self, rpc: RpcClient, chain: str):
        self.rpc = rpc
        self.chain = chain

    def get_latest_block(self) -> int:
        value = self.rpc.call(self.chain, "block_number", lambda w3: w3.eth.block_number)
        if not isinstance(value, int) or isinstance(value, bool) or value < 0:
            raise VolumeError(
                f"Invalid eth_blockNumber result for chain={self.chain}: {value!r}",
                code=ErrorCode.GENERIC,
                tag="rpc-invalid-block",
            )
        return value

    def get_block(self, block_number: int) -> BlockHeader:
        number = max(0, int(block_number))
        block = self.rpc.call(self.chain, "get_block", lambda w3: _fetch_block(w3, number))
        if block is None:
            raise VolumeError(
                f"Missing block data for chain={self.chain}, block={block_number}",
                code=ErrorCode.GENERIC,
                tag="rpc-invalid-block",
            )
        number, timestamp = block.get("number"), block.get("timestamp")
        if not isinstance(number, int) or not isinstance(timestamp, int):
            raise VolumeError(
                f"Invalid block fields for chain={self.chain}, block={block_number}",
                code=ErrorCode.GENERIC,
                tag="rpc-invalid-block",
            )
        return BlockHeader(number, timestamp)

    def get_block_timestamp(self, block_number: int) -> int:
        return self.get_block(block_number).timestamp

    def find_block_by_timestamp(self, target_ts: int, start_block: int = 0, end_block: int | None = None) -> int | None:
        """Highest block in [start_block, end_block] whose timestamp is <= target_ts, or None."""
        if end_block is None:
            end_block = self.get_latest_block()

        best = None
        while start_block <= end_block:
            mid = (start_block + end_block) // 2
            mid_ts = self.get_block_timestamp(mid)

            if mid_ts <= target_ts:
                best = mid
                start_block = mid + 1
            else:
                end_block = mid - 1
        return best

    def resolve_block_by_timestamp(self, ts) -> int:
        try:
            target_ts = int(ts)
        except (TypeError, ValueError, OverflowError):
            target_ts = -1
        if target_ts < 0:
            raise VolumeError(
                f"Invalid timestamp for RPC block lookup: {ts!r}",
                code=ErrorCode.VALIDATION,
                tag="rpc-invalid-timestamp",
            )

        latest = self.get_block(self.get_latest_block())
        if target_ts >= latest.timestamp:
            return latest.number

        block = self.find_block_by_timestamp(target_ts, 0, latest.number)
        if block is None:
            raise VolumeError(
                f"No block at or before ts={target_ts} on chain={self.chain}",
                code=ErrorCode.VALIDATION,
                tag="rpc-invalid-block-range",
            )
        logger.debug(f"[rpc] ts={target_ts} -> block {block} on {self.chain}")
        return block
