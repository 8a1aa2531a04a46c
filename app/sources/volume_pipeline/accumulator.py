"""
Per-pool volume accumulation.

One pass over a pool walks

    IDLE -> WINDOW_DETERMINED -> BLOCK_RANGE_RESOLVED -> VOLUME_SUMMED -> PERSISTED

or ends early in SKIPPED (empty window, bad address/chain, validation
failure; the checkpoint still advances) or FAILED (anything else; the
checkpoint is left alone). Indexer first; a plan-restricted indexer switches
this window to raw RPC. Block ranges start after the checkpoint's last
processed block, so a window with nothing past it persists zero volume.
"""
import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Callable, Iterable, Tuple

from app.sources.volume_pipeline.config.settings import Settings
from app.sources.volume_pipeline.errors import ErrorCode, StoreError, VolumeError
from app.sources.volume_pipeline.indexer.client import IndexerClient
from app.sources.volume_pipeline.rpc.blocks import BlockClient
from app.sources.volume_pipeline.rpc.client import RpcClient
from app.sources.volume_pipeline.rpc.events import sum_transfer_logs
from app.storage.alerts import AlertLog
from app.storage.models import Checkpoint, PoolRecord, RunEntry
from app.storage.store import VolumeStore
from app.utils.clean_util import is_supported_chain, is_valid_address, to_iso
from app.utils.types import TokenTransfer

log = logging.getLogger(__name__)


class AccumulatorState(str, Enum):
    IDLE = "idle"
    WINDOW_DETERMINED = "window_determined"
    BLOCK_RANGE_RESOLVED = "block_range_resolved"
    VOLUME_SUMMED = "volume_summed"
    PERSISTED = "persisted"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class AccumulationResult:
    pool: str
    chain: str | None = None
    state: AccumulatorState = AccumulatorState.IDLE
    start_ts: int | None = None
    end_ts: int | None = None
    start_block: int | None = None
    end_block: int | None = None
    volume_usd: float = 0.0
    source: str | None = None
    error: Exception | None = None


def sum_transfer_amounts(transfers: Iterable[TokenTransfer]) -> float:
    total = sum((t.amount for t in transfers), Decimal(0))
    return float(total)


def _validate_range(start_block, end_block, tag: str) -> None:
    if start_block is None or end_block is None or end_block < start_block:
        raise VolumeError(
            f"Invalid block range resolved: start={start_block}, end={end_block}",
            code=ErrorCode.VALIDATION,
            tag=tag,
        )


class VolumeAccumulator:
    def __init__(
        self,
        settings: Settings,
        store: VolumeStore,
        alerts: AlertLog,
        indexer: IndexerClient,
        rpc: RpcClient,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.store = store
        self.alerts = alerts
        self.indexer = indexer
        self.rpc = rpc
        self.clock = clock

    def determine_window(self, pool: PoolRecord, checkpoint: Checkpoint | None, now: int) -> Tuple[int, int]:
        start_ts = None
        if checkpoint is not None:
            start_ts = checkpoint.last_processed_timestamp
        if start_ts is None:
            start_ts = pool.last_updated_at
        if start_ts is None:
            start_ts = now - self.settings.window_seconds
        return int(start_ts), now

    def accumulate(self, address: str) -> AccumulationResult:
        """Process one window for `address`. Store I/O failures propagate; anything else ends in FAILED."""
        result = AccumulationResult(pool=address)
        try:
            self._accumulate(address, result)
        except StoreError:
            result.state = AccumulatorState.FAILED
            raise
        except Exception as exc:
            result.state = AccumulatorState.FAILED
            result.error = exc
        return result

    def _accumulate(self, address: str, result: AccumulationResult) -> None:
        pool = self.store.pools.get(address) or PoolRecord(address=address)
        chain = pool.chain or self.settings.default_chain
        token = pool.stable_token_address or self.settings.default_stable_token
        pair = pool.address or address
        result.chain = chain

        checkpoint = self.store.get_checkpoint(address, chain)
        last_block = checkpoint.last_processed_block if checkpoint else None
        start_ts, end_ts = self.determine_window(pool, checkpoint, int(self.clock()))
        result.start_ts, result.end_ts = start_ts, end_ts
        result.state = AccumulatorState.WINDOW_DETERMINED

        if start_ts >= end_ts:
            log.info(f"Skipping {address}: checkpoint start ({start_ts}) is not before end ({end_ts})")
            self._skip(address, chain, end_ts, last_block, result)
            return

        log.info(f"Processing {address} on {chain}: ts {start_ts} -> {end_ts}")

        if not is_supported_chain(chain):
            log.warning(f"Skipping {address}: unsupported chain {chain!r}")
            self.alerts.record(f"invalid-chain: {address} chain={chain}")
            self._skip(address, chain, end_ts, None, result)
            return

        if not is_valid_address(token) or not is_valid_address(pair):
            log.warning(f"Skipping {address}: invalid address format (usdc={token}, pair={pair})")
            self.alerts.record(f"invalid-address: {address} usdc={token} pair={pair}")
            self._skip(address, chain, end_ts, None, result)
            return

        try:
            try:
                volume = self._sum_via_indexer(pair, token, chain, result, last_block)
            except VolumeError as exc:
                if exc.code is not ErrorCode.PLAN_RESTRICTED or not self.rpc.has_urls(chain):
                    raise
                self.alerts.record(f"indexer-fallback-rpc: pool={address} chain={chain} reason={exc}")
                log.warning(f"[fallback] indexer plan-restricted for {chain}; using RPC for {address}")
                volume = self._sum_via_rpc(pair, token, chain, pool, result, last_block)
        except VolumeError as exc:
            if exc.code is not ErrorCode.VALIDATION:
                raise
            log.warning(f"Skipping {address}: {exc}")
            self.alerts.record(f"validation: pool={address} chain={chain} {exc.tag}: {exc}")
            self._skip(address, chain, end_ts, None, result)
            return

        result.volume_usd = volume
        result.state = AccumulatorState.VOLUME_SUMMED
        log.info(f"Total USDC transfers for {address} ({result.source}): {volume}")
        self._persist(address, chain, pool, result, last_block)

    def _resolve_range(self, start_block, end_block, last_block, tag: str, result: AccumulationResult) -> bool:
        """
        Validate the resolved range, then clip its start to the block after
        the last processed one. False when nothing is left to scan.
        """
        _validate_range(start_block, end_block, tag)
        if last_block is not None:
            start_block = max(start_block, last_block + 1)
        result.start_block, result.end_block = start_block, end_block
        result.state = AccumulatorState.BLOCK_RANGE_RESOLVED
        if start_block > end_block:
            log.info(f"No unprocessed blocks: last processed {last_block}, window ends at {end_block}")
            return False
        log.info(f"Block range {start_block} {end_block}")
        return True

    def _sum_via_indexer(self, pair: str, token: str, chain: str, result: AccumulationResult, last_block=None) -> float:
        result.source = "indexer"
        start_block = self.indexer.resolve_block_by_timestamp(result.start_ts, chain)
        end_block = self.indexer.resolve_block_by_timestamp(result.end_ts, chain)
        if not self._resolve_range(start_block, end_block, last_block, "invalid-block-range", result):
            return 0.0
        start_block = result.start_block

        transfers = self.indexer.list_token_transfers(pair, token, start_block, end_block, chain)
        return sum_transfer_amounts(transfers)

    def _sum_via_rpc(
        self, pair: str, token: str, chain: str, pool: PoolRecord, result: AccumulationResult, last_block=None
    ) -> float:
        result.source = "rpc-fallback"
        blocks = BlockClient(self.rpc, chain)
        start_block = blocks.resolve_block_by_timestamp(result.start_ts)
        end_block = blocks.resolve_block_by_timestamp(result.end_ts)
        if not self._resolve_range(start_block, end_block, last_block, "rpc-invalid-block-range", result):
            return 0.0
        start_block = result.start_block

        decimals = pool.decimals if pool.decimals is not None else self.settings.default_token_decimals
        return sum_transfer_logs(
            self.rpc,
            pair,
            token,
            start_block,
            end_block,
            chain,
            decimals=decimals,
            chunk_size=self.settings.rpc_log_block_chunk,
        )

    def _skip(self, address: str, chain: str, end_ts: int, last_block, result: AccumulationResult) -> None:
        self.store.set_checkpoint(address, chain, Checkpoint(end_ts, last_block))
        self.store.save_checkpoints()
        result.state = AccumulatorState.SKIPPED

    def _persist(self, address: str, chain: str, pool: PoolRecord, result: AccumulationResult, last_block=None) -> None:
        now = self.clock()
        pool.total_usd = pool.total_usd + max(0.0, result.volume_usd)
        pool.last_updated_at = int(now)
        self.store.pools[address] = pool

        self.store.append_run(RunEntry(
            pool=address,
            start_ts=result.start_ts,
            end_ts=result.end_ts,
            start_block=result.start_block,
            end_block=result.end_block,
            volume_usd=result.volume_usd,
            source=result.source,
            timestamp=to_iso(now),
        ))
        end_block = result.end_block if last_block is None else max(result.end_block, last_block)
        self.store.set_checkpoint(address, chain, Checkpoint(result.end_ts, end_block))
        self.store.save_pools()
        self.store.save_checkpoints()
        result.state = AccumulatorState.PERSISTED
