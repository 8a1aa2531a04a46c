"""
Flat-file JSON stores for the pool-volume job.

The job is the single writer of these files: every store is read fully at
start and rewritten fully (atomically) after each pool. The pool store
accepts three historical shapes and is normalised on load into one
address-keyed map.
"""
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, List

from app.sources.volume_pipeline.errors import StoreError
from app.storage.models import Checkpoint, PoolRecord, RunEntry
from app.utils.clean_util import is_valid_address, normalize_address
from app.utils.constants import CHECKPOINT_FILE, POOL_FILE, RUN_HISTORY_LIMIT, RUNS_FILE

log = logging.getLogger(__name__)

_MISSING = object()


def read_json(path: Path, default=_MISSING):
    """Parse a JSON file. A missing file yields `default`; unreadable content raises StoreError."""
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        if default is _MISSING:
            raise StoreError(f"{path} does not exist")
        return default
    except OSError as exc:
        raise StoreError(f"Unable to read {path}: {exc}") from exc
    if not text.strip():
        return default if default is not _MISSING else None
    try:
        return json.loads(text)
    except ValueError as exc:
        raise StoreError(f"Corrupt JSON in {path}: {exc}") from exc


def write_json_atomic(path: Path, data) -> None:
    """Write JSON via a temp file + os.replace; I/O failures surface as StoreError."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    except OSError as exc:
        raise StoreError(f"Unable to write {path}: {exc}") from exc
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2)
            fh.write("\n")
        os.replace(tmp, path)
    except OSError as exc:
        _discard(tmp)
        raise StoreError(f"Unable to write {path}: {exc}") from exc
    except BaseException:
        _discard(tmp)
        raise


def _discard(tmp: str) -> None:
    try:
        os.unlink(tmp)
    except OSError:
        pass


def normalize_pool_document(raw) -> Dict[str, PoolRecord]:
    """
    Accept the flat address-keyed object, the `{"pools": {...}}` wrapper or an
    array of records and return one address-keyed map (insertion order kept).
    """
    pools: Dict[str, PoolRecord] = {}
    if raw is None:
        return pools

    if isinstance(raw, list):
        items = [((item or {}).get("address"), item) for item in raw if isinstance(item, dict)]
    elif isinstance(raw, dict) and isinstance(raw.get("pools"), dict):
        items = list(raw["pools"].items())
    elif isinstance(raw, dict):
        items = [(k, v) for k, v in raw.items() if isinstance(v, dict)]
    else:
        raise StoreError(f"Unrecognised pool store shape: {type(raw).__name__}")

    for key, entry in items:
        address = normalize_address(key)
        if not address:
            continue
        pools[address] = PoolRecord.from_dict(address, entry)
    return pools


def normalize_pool_volume(raw) -> Dict[str, float | None]:
    """
    Read-side view used by consumers: address -> total USD, or None when the
    volume is unknown (missing, null or non-numeric). Accepts the modern
    `{"pools": {...}, "lastUpdated": ...}` shape and the legacy flat shape.
    """
    volumes: Dict[str, float | None] = {}
    if not isinstance(raw, dict):
        return volumes

    entries = []
    if isinstance(raw.get("pools"), dict):
        entries.extend(raw["pools"].items())
    entries.extend((k, v) for k, v in raw.items() if is_valid_address(k))

    for address, entry in entries:
        total = entry.get("total_usd", entry.get("totalUsd")) if isinstance(entry, dict) else None
        try:
            volumes[address.lower()] = float(total) if total is not None else None
        except (TypeError, ValueError):
            volumes[address.lower()] = None
    return volumes


class VolumeStore:
    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir)
        self.pool_path = self.data_dir / POOL_FILE
        self.checkpoint_path = self.data_dir / CHECKPOINT_FILE
        self.runs_path = self.data_dir / RUNS_FILE
        self.pools: Dict[str, PoolRecord] = {}
        self._checkpoints: Dict[str, dict] = {}

    def load(self) -> "VolumeStore":
        self.pools = normalize_pool_document(read_json(self.pool_path, default=None))
        checkpoints = read_json(self.checkpoint_path, default={})
        if not isinstance(checkpoints, dict):
            raise StoreError(f"Checkpoint store {self.checkpoint_path} is not an object")
        self._checkpoints = checkpoints
        log.info(f"Loaded {len(self.pools)} pool(s) and {len(self._checkpoints)} checkpoint(s) from {self.data_dir}")
        return self

    # ── checkpoints ───────────────────────────────────────────────────────
    def get_checkpoint(self, address: str, chain: str) -> Checkpoint | None:
        raw = self._checkpoints.get(address)
        if raw is None:
            raw = self._checkpoints.get(f"{address}-{chain}")
        return Checkpoint.from_dict(raw) if raw is not None else None

    def has_checkpoint(self, address: str) -> bool:
        return address in self._checkpoints

    def set_checkpoint(self, address: str, chain: str, checkpoint: Checkpoint) -> None:
        current = self.get_checkpoint(address, chain)
        if (
            current is not None
            and current.last_processed_timestamp is not None
            and checkpoint.last_processed_timestamp is not None
            and checkpoint.last_processed_timestamp < current.last_processed_timestamp
        ):
            log.warning(
                f"Refusing to move checkpoint for {address} backwards "
                f"({current.last_processed_timestamp} -> {checkpoint.last_processed_timestamp})"
            )
            checkpoint = current
        self._checkpoints[address] = checkpoint.to_dict()
        self._checkpoints.pop(f"{address}-{chain}", None)

    def save_checkpoints(self) -> None:
        write_json_atomic(self.checkpoint_path, self._checkpoints)

    # ── pools ─────────────────────────────────────────────────────────────
    def save_pools(self) -> None:
        write_json_atomic(self.pool_path, {addr: pool.to_dict() for addr, pool in self.pools.items()})

    # ── run history ───────────────────────────────────────────────────────
    def load_runs(self) -> List[dict]:
        try:
            runs = read_json(self.runs_path, default=[])
        except StoreError as exc:
            log.warning(f"Run history unreadable, starting fresh: {exc}")
            return []
        return runs if isinstance(runs, list) else []

    def append_run(self, entry: RunEntry) -> None:
        runs = self.load_runs()
        runs.append(entry.to_dict())
        write_json_atomic(self.runs_path, runs[-RUN_HISTORY_LIMIT:])

