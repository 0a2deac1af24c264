from .async_utils import guarded_call, sleep_seconds
from .errors import (
    FAIL_REASON_APPROVAL_FAILED,
    FAIL_REASON_EXECUTION_ERROR,
    FAIL_REASON_INSUFFICIENT_BALANCE,
    FAIL_REASON_NO_BALANCE,
    FAIL_REASON_NO_ENDPOINTS,
    FAIL_REASON_PRICE_UNAVAILABLE,
    FAIL_REASON_TX_FAILED,
    FAIL_REASON_WATCH_TIMEOUT,
    ApprovalFailed,
    ConfigurationError,
    EndpointTransportError,
    EngineError,
    InsufficientBalance,
    LedgerRevertError,
    NoEndpointsAvailable,
    PriceUnavailable,
    TransactionFailed,
    is_insufficient_balance_message,
)
from .logging import log_event

__all__ = [
    "ApprovalFailed",
    "ConfigurationError",
    "EndpointTransportError",
    "EngineError",
    "FAIL_REASON_APPROVAL_FAILED",
    "FAIL_REASON_EXECUTION_ERROR",
    "FAIL_REASON_INSUFFICIENT_BALANCE",
    "FAIL_REASON_NO_BALANCE",
    "FAIL_REASON_NO_ENDPOINTS",
    "FAIL_REASON_PRICE_UNAVAILABLE",
    "FAIL_REASON_TX_FAILED",
    "FAIL_REASON_WATCH_TIMEOUT",
    "InsufficientBalance",
    "LedgerRevertError",
    "NoEndpointsAvailable",
    "PriceUnavailable",
    "TransactionFailed",
    "guarded_call",
    "is_insufficient_balance_message",
    "log_event",
    "sleep_seconds",
]
