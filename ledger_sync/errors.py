from typing import Any, Optional


class LedgerSyncError(Exception):
    pass


class ConfigError(LedgerSyncError, ValueError):
    pass


class UpstreamError(LedgerSyncError):
    """Recoverable upstream failure (network error, timeout, RPC error)."""

    def __init__(self, message: str, code: Optional[int] = None, payload: Any = None):
        super().__init__(message)
        self.code = code
        self.payload = payload


class RateLimitedError(UpstreamError):
    pass


class OversizedResponseError(UpstreamError):
    """The query would return more data than the provider allows; split the range."""


class FetchCancelled(LedgerSyncError):
    pass


class ScanWindowError(LedgerSyncError):
    def __init__(self, from_block: int, to_block: int, reason: str):
        super().__init__(f"window {from_block}-{to_block} failed: {reason}")
        self.from_block = from_block
        self.to_block = to_block
        self.reason = reason


class DecodeError(LedgerSyncError):
    def __init__(self, message: str, tx_hash: str = "", log_index: int = -1):
        super().__init__(f"{message} (tx={tx_hash or '?'} logIndex={log_index})")
        self.tx_hash = tx_hash
        self.log_index = log_index


class EventOrderError(LedgerSyncError):
    pass
