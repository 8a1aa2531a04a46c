# app/utils/log_utils.py
from web3.datastructures import AttributeDict
from hexbytes import HexBytes
from typing import Iterator, Tuple


def sanitize_log(log) -> dict:
    """Convert a Web3 or raw JSON-RPC log to a JSON-safe dict with 0x-hex strings."""
    out = {}
    for k, v in dict(log).items():
        if isinstance(v, (bytes, bytearray, HexBytes)):
            out[k] = "0x" + bytes(v).hex()
        elif isinstance(v, AttributeDict):
            out[k] = dict(v)
        elif isinstance(v, (list, tuple)):
            out[k] = ["0x" + bytes(t).hex() if isinstance(t, (bytes, bytearray)) else t for t in v]
        else:
            out[k] = v
    return out


def address_to_topic(address: str) -> str:
    """Left-pad a 20-byte address into a 32-byte indexed topic."""
    return "0x" + "0" * 24 + address.lower().removeprefix("0x")


def _as_int(value) -> int | None:
    if value is None:
        return None
    if isinstance(value, int):
        return value
    text = str(value)
    return int(text, 16) if text.startswith("0x") else int(text)


def log_key(log: dict) -> Tuple[str, int | None]:
    """(transaction hash, log index) identity of a log entry."""
    return str(log.get("transactionHash") or "").lower(), _as_int(log.get("logIndex"))


def decode_uint(data) -> int:
    """Unsigned big-endian integer held in a log's data field ("0x" decodes to 0)."""
    if data is None:
        return 0
    return int.from_bytes(HexBytes(data), "big")


def walk_block_ranges(start: int, end: int, step: int = 500) -> Iterator[Tuple[int, int]]:
    """Yield inclusive (from_block, to_block) chunks covering [start, end]."""
    for i in range(start, end + 1, step):
        yield i, min(i + step - 1, end)
