from enum import Enum


class ErrorCode(str, Enum):
    TRANSIENT = "TRANSIENT"
    PLAN_RESTRICTED = "PLAN_RESTRICTED"
    INVALID_KEY = "INVALID_KEY"
    VALIDATION = "VALIDATION"
    GENERIC = "GENERIC"


class VolumeError(Exception):
    """An upstream or validation failure with a fixed classification code."""

    def __init__(self, message: str, code: ErrorCode = ErrorCode.GENERIC, payload=None, tag: str | None = None):
        super().__init__(message)
        self.code = code
        self.payload = payload
        self.tag = tag or code.value.lower().replace("_", "-")


class ConfigError(Exception):
    pass


class StoreError(Exception):
    pass


# Ordered: first match wins.
_INDEXER_PATTERNS = (
    ("free api access is not supported for this chain", ErrorCode.PLAN_RESTRICTED),
    ("invalid api key", ErrorCode.INVALID_KEY),
    ("max rate limit", ErrorCode.TRANSIENT),
    ("unexpected exception", ErrorCode.TRANSIENT),
    ("query timeout", ErrorCode.TRANSIENT),
    ("temporarily unavailable", ErrorCode.TRANSIENT),
    ("timeout", ErrorCode.TRANSIENT),
)

_RPC_PATTERNS = (
    ("too many requests", ErrorCode.TRANSIENT),
    ("limit", ErrorCode.TRANSIENT),
    ("rate", ErrorCode.TRANSIENT),
    ("timed out", ErrorCode.TRANSIENT),
    ("timeout", ErrorCode.TRANSIENT),
)


def indexer_error_text(payload) -> str:
    if not isinstance(payload, dict):
        return ""
    parts = [v for v in (payload.get("message"), payload.get("result")) if isinstance(v, str)]
    return " ".join(parts).strip()


def classify_indexer_error(payload) -> ErrorCode:
    text = indexer_error_text(payload).lower()
    for needle, code in _INDEXER_PATTERNS:
        if needle in text:
            return code
    return ErrorCode.GENERIC


def classify_rpc_error(message) -> ErrorCode:
    text = str(message or "").lower()
    for needle, code in _RPC_PATTERNS:
        if needle in text:
            return code
    return ErrorCode.GENERIC
