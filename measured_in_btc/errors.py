"""Error taxonomy shared by the trade engine, the valuator and the API."""

from datetime import datetime
from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base class for errors returned to API callers with a machine-readable kind."""

    kind = "ledger_error"
    status_code = 400

    def __init__(self, message: str, **extra: Any):
        self.message = message
        self.extra = extra
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.kind, "detail": self.message}
        for key, value in self.extra.items():
            payload[key] = value.isoformat() if isinstance(value, datetime) else value
        return payload


class InsufficientBalance(LedgerError):
    kind = "insufficient_balance"

    def __init__(self, symbol: str, requested: int, available: int):
        super().__init__(
            f"Insufficient {symbol} balance",
            symbol=symbol,
            requested=requested,
            available=available,
        )


class AssetLocked(LedgerError):
    kind = "asset_locked"
    status_code = 423

    def __init__(
        self,
        symbol: str,
        requested: int,
        available: int,
        locked: int,
        earliest_unlock: Optional[datetime],
        remaining_seconds: int,
    ):
        super().__init__(
            f"{symbol} is locked. Available: {available}",
            symbol=symbol,
            requested=requested,
            availableAmount=available,
            lockedAmount=locked,
            earliestUnlock=earliest_unlock,
            remainingSeconds=remaining_seconds,
        )


class UnsupportedAsset(LedgerError):
    kind = "unsupported_asset"

    def __init__(self, symbol: str):
        super().__init__(f"Unsupported asset: {symbol}", symbol=symbol)


class PriceUnavailable(LedgerError):
    kind = "price_unavailable"
    status_code = 424

    def __init__(self, symbol: str):
        super().__init__(f"Price not available for {symbol}", symbol=symbol)


class ValidationError(LedgerError):
    kind = "validation_error"


class NotFound(LedgerError):
    kind = "not_found"
    status_code = 404


class InternalError(LedgerError):
    kind = "internal_error"
    status_code = 500

    def __init__(self, message: str = "Internal server error"):
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.kind, "detail": "Internal server error"}
