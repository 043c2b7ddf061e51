"""
KAIJU TRADER — Error Taxonomy
Only ConfigurationError is meant to reach the process boundary.
"""
from typing import Optional


class KaijuTraderError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(KaijuTraderError):
    """Invalid configuration; fatal at startup."""


class DataFetchError(KaijuTraderError):
    """Transient failure talking to a market or sentiment source."""

    def __init__(self, message: str, symbol: Optional[str] = None):
        super().__init__(message)
        self.symbol = symbol


class DecisionUnavailable(KaijuTraderError):
    """AI inference timed out, failed, or returned something unusable."""


class StrategyError(KaijuTraderError):
    """A strategy raised while analyzing a snapshot."""

    def __init__(self, strategy: str, cause: Exception):
        super().__init__(f"{strategy}: {cause}")
        self.strategy = strategy
        self.cause = cause


class RiskRejected(KaijuTraderError):
    """Carries the reason a candidate signal was dropped by the risk layer."""

    def __init__(self, reason: str, symbol: str = "", detail: str = ""):
        super().__init__(f"{reason}: {symbol} {detail}".strip())
        self.reason = reason
        self.symbol = symbol
        self.detail = detail


class ExecutionBusy(KaijuTraderError):
    """An order for the symbol is already in flight."""

    def __init__(self, symbol: str):
        super().__init__(f"Execution already in flight for {symbol}")
        self.symbol = symbol


class ExecutionError(KaijuTraderError):
    """A venue refused or failed an order."""

    INSUFFICIENT_BALANCE = "insufficient_balance"
    SLIPPAGE_EXCEEDED = "slippage_exceeded"
    NETWORK_ERROR = "network_error"
    REJECTED = "rejected"
    UNSUPPORTED_SYMBOL = "unsupported_symbol"
    NO_PRICE = "no_price"
    VENUE_UNAVAILABLE = "venue_unavailable"

    def __init__(self, reason: str, message: str = ""):
        super().__init__(f"{reason}: {message}" if message else reason)
        self.reason = reason
        self.message = message


class LedgerError(KaijuTraderError):
    """A ledger mutation would break the one-position-per-symbol or append-only rules."""
