# storage/models.py
import math
from dataclasses import dataclass, field
from typing import NamedTuple

from app.utils.clean_util import normalize_address, normalize_chain, to_epoch_seconds, to_iso

import logging
log = logging.getLogger(__name__)

# On-disk field aliases, first one is what gets written back.
STABLE_TOKEN_KEYS = ("usdc", "stableTokenAddress", "stable_token_address")
TOTAL_USD_KEYS = ("total_usd", "totalUsd")
LAST_UPDATED_KEYS = ("lastUpdated", "lastUpdatedAt", "last_updated")
DECIMALS_KEYS = ("usdc_decimals", "decimals")


def _first(raw: dict, keys):
    for key in keys:
        if raw.get(key) is not None:
            return raw[key]
    return None


def _to_float(value) -> float | None:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


@dataclass
class PoolRecord:
    address: str
    chain: str | None = None
    stable_token_address: str | None = None
    total_usd: float = 0.0
    last_updated_at: int | None = None
    decimals: int | None = None
    extra: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, key: str, raw) -> "PoolRecord":
        raw = raw if isinstance(raw, dict) else {}
        consumed = {"address", "chain", *STABLE_TOKEN_KEYS, *TOTAL_USD_KEYS, *LAST_UPDATED_KEYS, *DECIMALS_KEYS}

        total = _first(raw, TOTAL_USD_KEYS)
        total_usd = _to_float(total) if total is not None else 0.0
        if total_usd is None:
            total_usd = 0.0
            log.warning(f"Pool {key}: unreadable total_usd {total!r}, treating as 0")

        decimals = _first(raw, DECIMALS_KEYS)
        try:
            decimals = int(decimals) if decimals is not None else None
        except (TypeError, ValueError):
            decimals = None

        stable = _first(raw, STABLE_TOKEN_KEYS)
        return cls(
            address=normalize_address(raw.get("address") or key),
            chain=normalize_chain(raw.get("chain"), "") or None,
            stable_token_address=normalize_address(stable) or None,
            total_usd=total_usd,
            last_updated_at=to_epoch_seconds(_first(raw, LAST_UPDATED_KEYS)),
            decimals=decimals,
            extra={k: v for k, v in raw.items() if k not in consumed},
        )

    def to_dict(self) -> dict:
        out = {"address": self.address}
        if self.chain:
            out["chain"] = self.chain
        if self.stable_token_address:
            out["usdc"] = self.stable_token_address
        if self.decimals is not None:
            out["usdc_decimals"] = self.decimals
        out["total_usd"] = self.total_usd
        out["lastUpdated"] = to_iso(self.last_updated_at) if self.last_updated_at else None
        out.update(self.extra)
        return out


@dataclass
class Checkpoint:
    last_processed_timestamp: int | None = None
    last_processed_block: int | None = None

    @classmethod
    def from_dict(cls, raw) -> "Checkpoint":
        raw = raw if isinstance(raw, dict) else {}
        ts = raw.get("lastProcessedTimestamp", raw.get("lastTimestamp"))
        block = raw.get("lastProcessedBlock", raw.get("lastBlock"))
        try:
            block = int(block) if block is not None else None
        except (TypeError, ValueError):
            block = None
        return cls(to_epoch_seconds(ts), block)

    def to_dict(self) -> dict:
        return {
            "lastProcessedTimestamp": self.last_processed_timestamp,
            "lastProcessedBlock": self.last_processed_block,
        }


class RunEntry(NamedTuple):
    pool: str
    start_ts: int
    end_ts: int
    start_block: int
    end_block: int
    volume_usd: float
    source: str
    timestamp: str

    def to_dict(self) -> dict:
        return {
            "pool": self.pool,
            "startTs": self.start_ts,
            "endTs": self.end_ts,
            "startBlock": self.start_block,
            "endBlock": self.end_block,
            "volumeUsd": self.volume_usd,
            "source": self.source,
            "timestamp": self.timestamp,
        }
