import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List

import requests
from web3 import Web3

from app.sources.volume_pipeline.accumulator import AccumulationResult, AccumulatorState, VolumeAccumulator
from app.sources.volume_pipeline.config.settings import Settings
from app.sources.volume_pipeline.errors import ErrorCode, VolumeError
from app.sources.volume_pipeline.indexer.client import IndexerClient
from app.sources.volume_pipeline.rpc.client import RpcClient
from app.storage.alerts import AlertLog
from app.storage.models import Checkpoint
from app.storage.store import VolumeStore
from app.utils.constants import CHAIN_SCAN_KEY_ENVS
from app.utils.metrics import RunMetrics
from app.utils.retry import HttpRetryClient, RetryPolicy

log = logging.getLogger(__name__)


def address_hash(address: str) -> int:
    """31-multiplier string hash, 32-bit. Load spreading only, not a randomness source."""
    h = 0
    for ch in address:
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    return h


def jitter_seconds(address: str, max_jitter: int) -> int:
    if max_jitter <= 0:
        return 0
    return address_hash(address) % (max_jitter + 1)


@dataclass
class RunSummary:
    results: List[AccumulationResult] = field(default_factory=list)
    alert: bool = False
    api_call_count: int = 0
    retry_count: int = 0

    def count(self, state: AccumulatorState) -> int:
        return sum(1 for r in self.results if r.state is state)


class VolumeOrchestrator:
    def __init__(
        self,
        settings: Settings,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
        web3_factory: Callable[[str], Web3] | None = None,
    ):
        self.settings = settings
        self.sleep = sleep
        self.clock = clock
        self.metrics = RunMetrics()
        self.store = VolumeStore(settings.data_dir)
        self.alerts = AlertLog(settings.data_dir, self.metrics, clock)

        http_policy = RetryPolicy(
            max_attempts=settings.api_max_attempts,
            base_delay_ms=settings.api_base_delay_ms,
            max_delay_ms=settings.api_max_delay_ms,
            metrics=self.metrics,
            on_giveup=self.alerts.on_request_giveup,
        )
        body_policy = RetryPolicy(
            max_attempts=settings.indexer_body_max_attempts,
            base_delay_ms=settings.api_base_delay_ms,
            max_delay_ms=settings.api_max_delay_ms,
            metrics=self.metrics,
        )
        http = HttpRetryClient(http_policy, session=session, timeout=settings.request_timeout)
        self.indexer = IndexerClient(settings, http, body_policy)
        self.rpc = RpcClient(settings, body_policy, web3_factory)
        self.accumulator = VolumeAccumulator(settings, self.store, self.alerts, self.indexer, self.rpc, clock)

    def run(self) -> RunSummary:
        self.store.load()
        self.metrics.reset()
        self.alerts.reset()
        summary = RunSummary()

        addresses = list(self.store.pools)
        if not addresses and self.settings.default_pair_address:
            log.info(f"Pool store empty; processing default pair {self.settings.default_pair_address}")
            addresses = [self.settings.default_pair_address]

        for address in addresses:
            delay = jitter_seconds(address, self.settings.max_jitter)
            if delay > 0:
                log.info(f"Sleeping {delay}s before processing {address}")
                self.sleep(delay)

            result = self.accumulator.accumulate(address)
            summary.results.append(result)
            if result.error is not None:
                self._handle_failure(result)

        self.alerts.finalize()
        summary.alert = self.alerts.alert
        summary.api_call_count = self.metrics.api_call_count
        summary.retry_count = self.metrics.retry_count
        log.info(
            f"✅ Done: {summary.count(AccumulatorState.PERSISTED)} persisted, "
            f"{summary.count(AccumulatorState.SKIPPED)} skipped, "
            f"{summary.count(AccumulatorState.FAILED)} failed "
            f"({summary.api_call_count} calls, {summary.retry_count} retries)"
        )
        return summary

    def _handle_failure(self, result: AccumulationResult) -> None:
        exc = result.error
        address, chain = result.pool, result.chain or self.settings.default_chain

        if isinstance(exc, VolumeError) and exc.code is ErrorCode.PLAN_RESTRICTED:
            key_hint = CHAIN_SCAN_KEY_ENVS.get(chain, "ETHERSCAN_API_KEY")
            reason = (
                f"unsupported-chain-plan: pool={address} chain={chain}; "
                f"configure {key_hint} or upgrade ETHERSCAN_API_KEY"
            )
            log.warning(reason)
            self.alerts.record(reason)
            # keep a stable start point so a later run can backfill
            if not self.store.has_checkpoint(address) and result.start_ts is not None:
                self.store.set_checkpoint(address, chain, Checkpoint(result.start_ts, None))
                self.store.save_checkpoints()
            return

        code = exc.tag if isinstance(exc, VolumeError) else type(exc).__name__
        log.error(f"Error processing {address}", exc_info=exc)
        self.alerts.raise_alert(f"pool-error: pool={address} chain={chain} code={code} msg={exc}")


def run_volume_update(settings: Settings, **kwargs) -> RunSummary:
    """One orchestrator pass over every configured pool."""
    return VolumeOrchestrator(settings, **kwargs).run()
