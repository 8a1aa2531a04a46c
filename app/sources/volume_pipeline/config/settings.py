import json
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Tuple

from app.sources.volume_pipeline.errors import ConfigError
from app.utils.constants import (
    CHAIN_IDS,
    CHAIN_RPC_ENVS,
    CHAIN_SCAN_BASE_ENVS,
    CHAIN_SCAN_KEY_ENVS,
    DEFAULT_CHAIN,
    DEFAULT_PAIR_ADDRESS,
    DEFAULT_STABLE_TOKEN,
    DEFAULT_TOKEN_DECIMALS,
    ETHERSCAN_V2_API_URL,
    PUBLIC_RPC_FALLBACKS,
)


def parse_rpc_list(value: str | None) -> List[str]:
    """Accept a JSON array or a comma/semicolon/whitespace separated list of URLs."""
    if not value or not isinstance(value, str):
        return []
    try:
        parsed = json.loads(value)
    except ValueError:
        parsed = None
    if isinstance(parsed, list):
        return [str(v).strip() for v in parsed if v and str(v).strip()]
    return [v.strip() for v in re.split(r"[,\r\n; ]+", value) if v.strip()]


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or str(raw).strip() == "":
        return default
    try:
        return int(float(raw))
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from exc


@dataclass(frozen=True)
class Settings:
    data_dir: Path = Path("public/data")

    etherscan_api_key: str = ""
    chain_api_keys: Dict[str, str] = field(default_factory=dict)
    chain_api_base_urls: Dict[str, str] = field(default_factory=dict)
    etherscan_v2_url: str = ETHERSCAN_V2_API_URL
    rpc_urls: Dict[str, Tuple[str, ...]] = field(default_factory=dict)

    default_chain: str = DEFAULT_CHAIN
    default_stable_token: str = DEFAULT_STABLE_TOKEN
    default_pair_address: str = DEFAULT_PAIR_ADDRESS
    default_token_decimals: int = DEFAULT_TOKEN_DECIMALS
    window_seconds: int = 3600
    max_jitter: int = 300

    api_max_attempts: int = 5
    api_base_delay_ms: int = 500
    api_max_delay_ms: int = 30_000
    indexer_body_max_attempts: int = 3
    block_by_time_max_skew_steps: int = 4
    block_by_time_skew_seconds: int = 30
    rpc_log_block_chunk: int = 500
    request_timeout: float = 30

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if env is None else env

        default_chain = (env.get("DEFAULT_CHAIN") or DEFAULT_CHAIN).strip().lower()
        if default_chain not in CHAIN_IDS:
            raise ConfigError(f"DEFAULT_CHAIN must be one of {sorted(CHAIN_IDS)}, got {default_chain!r}")

        rpc_urls = {}
        for chain, (list_env, *single_envs) in CHAIN_RPC_ENVS.items():
            urls: List[str] = []
            candidates = parse_rpc_list(env.get(list_env)) + [env.get(name, "") for name in single_envs]
            for url in [*candidates, *PUBLIC_RPC_FALLBACKS.get(chain, ())]:
                url = (url or "").strip()
                if url and url not in urls:
                    urls.append(url)
            rpc_urls[chain] = tuple(urls)

        return cls(
            data_dir=Path(env.get("VOLUME_DATA_DIR") or "public/data"),
            etherscan_api_key=env.get("ETHERSCAN_API_KEY", "") or "",
            chain_api_keys={c: env.get(k, "") or "" for c, k in CHAIN_SCAN_KEY_ENVS.items()},
            chain_api_base_urls={c: env.get(k, "") or "" for c, k in CHAIN_SCAN_BASE_ENVS.items()},
            etherscan_v2_url=env.get("ETHERSCAN_V2_API_URL") or ETHERSCAN_V2_API_URL,
            rpc_urls=rpc_urls,
            default_chain=default_chain,
            default_stable_token=(env.get("POLYGON_USDC") or DEFAULT_STABLE_TOKEN).lower(),
            default_pair_address=(env.get("PAIR_ADDRESS") or DEFAULT_PAIR_ADDRESS).lower(),
            default_token_decimals=_int(env, "USDC_DECIMALS", DEFAULT_TOKEN_DECIMALS),
            window_seconds=_int(env, "WINDOW_SECONDS", 3600),
            max_jitter=max(0, _int(env, "MAX_JITTER", 300)),
            api_max_attempts=max(1, _int(env, "API_MAX_ATTEMPTS", 5)),
            api_base_delay_ms=_int(env, "API_BASE_DELAY_MS", 500),
            api_max_delay_ms=_int(env, "API_MAX_DELAY_MS", 30_000),
            indexer_body_max_attempts=max(1, _int(env, "INDEXER_BODY_MAX_ATTEMPTS", 3)),
            block_by_time_max_skew_steps=max(0, _int(env, "BLOCK_BY_TIME_MAX_SKEW_STEPS", 4)),
            block_by_time_skew_seconds=max(1, _int(env, "BLOCK_BY_TIME_SKEW_SECONDS", 30)),
            rpc_log_block_chunk=max(10, _int(env, "RPC_LOG_BLOCK_CHUNK", 500)),
            request_timeout=_int(env, "REQUEST_TIMEOUT", 30),
        )

    def validate(self) -> None:
        if not self.etherscan_api_key and not any(self.chain_api_keys.values()):
            raise ConfigError(
                "At least one explorer API key is required "
                "(ETHERSCAN_API_KEY, POLYGONSCAN_API_KEY, or BASESCAN_API_KEY)"
            )

    def rpc_urls_for(self, chain: str) -> Tuple[str, ...]:
        return self.rpc_urls.get(chain, ())
