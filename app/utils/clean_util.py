import math
import re
from datetime import datetime, timezone

from app.utils.constants import CHAIN_IDS

ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def is_valid_address(address) -> bool:
    return isinstance(address, str) and bool(ADDRESS_RE.fullmatch(address))


def normalize_address(address) -> str:
    return str(address or "").strip().lower()


def normalize_chain(chain, default: str) -> str:
    value = str(chain or "").strip().lower()
    return value or default


def is_supported_chain(chain: str) -> bool:
    return chain in CHAIN_IDS


def to_epoch_seconds(value) -> int | None:
    """
    Coerce a stored timestamp to epoch seconds.

    Accepts epoch seconds, epoch milliseconds (anything above 1e12) and
    ISO-8601 strings. Returns None for missing, unparsable or non-positive
    values.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            try:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError:
                return None
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            number = parsed.timestamp()
    elif isinstance(value, (int, float)):
        number = float(value)
    else:
        return None

    if not math.isfinite(number) or number <= 0:
        return None
    if number > 1e12:
        number = number / 1000
    return int(number)


def to_iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat().replace("+00:00", "Z")
