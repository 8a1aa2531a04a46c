"""
Etherscan-compatible indexer client.

Two calls matter to the volume job: `getblocknobytime` (timestamp -> block)
and `tokentx` (token transfer history for an address). Endpoint and key
selection is per chain: a chain-native explorer is used only when it is
explicitly configured, otherwise the unified Etherscan v2 endpoint is
addressed by `chainid`.
"""
import logging
from typing import Dict, Iterator, NamedTuple

from app.sources.volume_pipeline.config.settings import Settings
from app.sources.volume_pipeline.errors import (
    ErrorCode,
    VolumeError,
    classify_indexer_error,
    indexer_error_text,
)
from app.utils.constants import (
    CHAIN_IDS,
    CHAIN_SCAN_BASE_DEFAULTS,
    CHAIN_SCAN_KEY_ENVS,
    INDEXER_PAGE_SIZE,
)
from app.utils.retry import HttpRetryClient, RetryPolicy
from app.utils.types import TokenTransfer

log = logging.getLogger(__name__)


class IndexerEndpoint(NamedTuple):
    chain: str
    mode: str  # "native" | "etherscan-v2"
    base_url: str
    api_key: str
    key_env: str
    base_params: Dict[str, str]


def is_no_closest_block_response(payload) -> bool:
    return "no closest block found" in indexer_error_text(payload).lower()


def is_no_transfers_response(payload) -> bool:
    if not isinstance(payload, dict) or payload.get("status") != "0":
        return False
    message = str(payload.get("message") or "").lower()
    result = payload.get("result")
    result_text = result.lower() if isinstance(result, str) else ""
    for needle in ("no transactions found", "no token transfers found"):
        if needle in message or needle in result_text:
            return True
    return isinstance(result, list) and not result and ("no " in message or "no " in result_text)


def parse_block_number(result) -> int | None:
    if isinstance(result, dict):
        result = result.get("blockNumber", result.get("block"))
    try:
        text = str(result).strip()
        block = int(text, 16) if text.startswith("0x") else int(text)
    except (TypeError, ValueError):
        return None
    return block if block >= 0 else None


def make_indexer_error(context: str, payload, endpoint: IndexerEndpoint) -> VolumeError:
    text = indexer_error_text(payload) or str(payload)
    return VolumeError(
        f"{context} ({endpoint.mode} {endpoint.chain}): {text}",
        code=classify_indexer_error(payload),
        payload=payload,
    )


class IndexerClient:
    def __init__(self, settings: Settings, http: HttpRetryClient, body_policy: RetryPolicy) -> None:
        self.settings = settings
        self.http = http
        self.body_policy = body_policy

    def endpoint_for(self, chain: str) -> IndexerEndpoint:
        chain = chain if chain in CHAIN_IDS else self.settings.default_chain
        key_env = CHAIN_SCAN_KEY_ENVS[chain]
        base_override = self.settings.chain_api_base_urls.get(chain, "")
        chain_key = self.settings.chain_api_keys.get(chain, "")

        if base_override or (chain_key and key_env != "ETHERSCAN_API_KEY"):
            return IndexerEndpoint(
                chain=chain,
                mode="native",
                base_url=(base_override or CHAIN_SCAN_BASE_DEFAULTS[chain]).rstrip("/"),
                api_key=chain_key or self.settings.etherscan_api_key,
                key_env=key_env,
                base_params={},
            )

        return IndexerEndpoint(
            chain=chain,
            mode="etherscan-v2",
            base_url=self.settings.etherscan_v2_url,
            api_key=self.settings.etherscan_api_key,
            key_env="ETHERSCAN_API_KEY",
            base_params={"chainid": str(CHAIN_IDS[chain])},
        )

    def _query(self, endpoint: IndexerEndpoint, params: Dict[str, str], context: str) -> dict:
        query = {**endpoint.base_params, **params}
        if endpoint.api_key:
            query["apikey"] = endpoint.api_key

        def is_transient(payload) -> bool:
            return (
                isinstance(payload, dict)
                and payload.get("status") != "1"
                and classify_indexer_error(payload) is ErrorCode.TRANSIENT
            )

        @self.body_policy.on_result(is_transient, target=f"{context} {endpoint.chain}")
        def fetch() -> dict:
            return self.http.get_json(endpoint.base_url, params=query)

        return fetch()

    def resolve_block_by_timestamp(self, ts: int, chain: str) -> int:
        """Closest block at or before `ts`, stepping back when the indexer head lags."""
        endpoint = self.endpoint_for(chain)
        max_steps = self.settings.block_by_time_max_skew_steps
        query_ts = int(ts)

        for step in range(max_steps + 1):
            payload = self._query(
                endpoint,
                {
                    "module": "block",
                    "action": "getblocknobytime",
                    "timestamp": str(max(0, query_ts)),
                    "closest": "before",
                },
                "getblocknobytime",
            )

            if payload.get("status") == "1":
                block = parse_block_number(payload.get("result"))
                if block is not None:
                    return block
                raise VolumeError(
                    f"Invalid block number for timestamp {query_ts}: {payload.get('result')!r}",
                    code=ErrorCode.VALIDATION,
                    payload=payload,
                    tag="invalid-block-number",
                )

            if is_no_closest_block_response(payload) and step < max_steps:
                query_ts = max(0, query_ts - self.settings.block_by_time_skew_seconds)
                log.info(f"[indexer] no closest block for {chain}; retrying with ts={query_ts}")
                continue

            raise make_indexer_error("Failed to get block by time", payload, endpoint)

        raise RuntimeError(f"Unreachable: exhausted timestamp skew retries for ts={ts}")

    def fetch_token_transfers_page(
        self,
        pair_address: str,
        token_address: str,
        start_block: int,
        end_block: int,
        chain: str,
        page: int = 1,
        offset: int = INDEXER_PAGE_SIZE,
    ) -> list:
        endpoint = self.endpoint_for(chain)
        payload = self._query(
            endpoint,
            {
                "module": "account",
                "action": "tokentx",
                "contractaddress": token_address,
                "address": pair_address,
                "startblock": str(int(start_block)),
                "endblock": str(int(end_block)),
                "page": str(page),
                "offset": str(offset),
                "sort": "asc",
            },
            "tokentx",
        )
        if is_no_transfers_response(payload):
            return []
        if payload.get("status") != "1":
            raise make_indexer_error("tokentx error", payload, endpoint)
        result = payload.get("result")
        return result if isinstance(result, list) else []

    def list_token_transfers(
        self,
        pair_address: str,
        token_address: str,
        start_block: int,
        end_block: int,
        chain: str,
        page_size: int = INDEXER_PAGE_SIZE,
    ) -> Iterator[TokenTransfer]:
        """Lazily page through transfers of `token_address` to/from `pair_address`, ascending."""
        if start_block is None or end_block is None or end_block < start_block:
            raise VolumeError(
                f"Invalid block range for tokentx: start={start_block}, end={end_block}",
                code=ErrorCode.VALIDATION,
                tag="invalid-block-range",
            )

        page = 1
        while True:
            rows = self.fetch_token_transfers_page(
                pair_address, token_address, start_block, end_block, chain, page, page_size
            )
            for row in rows:
                yield TokenTransfer(
                    tx_hash=str(row.get("hash") or ""),
                    block_number=int(row.get("blockNumber") or 0),
                    from_address=str(row.get("from") or "").lower(),
                    to_address=str(row.get("to") or "").lower(),
                    raw_value=int(row.get("value") or 0),
                    decimals=int(row.get("tokenDecimal") or self.settings.default_token_decimals),
                )
            if len(rows) < page_size:
                return
            page += 1
